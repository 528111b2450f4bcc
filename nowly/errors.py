class NowlyError(Exception):
    """Base class for errors raised by the task service."""


class StoreError(NowlyError):
    """A persistence operation failed and was rolled back."""


class NotFoundError(NowlyError):
    """Row is missing or belongs to another user."""


class ValidationError(NowlyError):
    """Input rejected before touching the database."""


class OwnershipError(StoreError):
    """A batch write referenced rows that are missing or owned by someone else."""
