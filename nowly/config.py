"""Simple runtime configuration for the Nowly task service.

Control flags are read from environment variables to allow toggling in
development or production without code changes.
"""
import os


def _trueish(v: str | None) -> bool:
    if not v:
        return False
    return v.lower() in ('1', 'true', 'yes', 'on')


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


# Default SQLite database used when DATABASE_URL is not provided. Any async
# SQLAlchemy URL works; position ordering relies on plain byte/codepoint
# collation, which is the default for both SQLite and PostgreSQL "C" columns.
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite+aiosqlite:///./nowly.db')

# Timezone (IANA name) used to decide what "today" is when checking whether
# a recurring item's watermark is stale.
DEFAULT_TIMEZONE = os.getenv('DEFAULT_TIMEZONE', 'UTC')

# When False, read endpoints skip the lazy generation pass entirely and only
# return tasks that already exist. Explicit POST /recurring/ensure still runs.
ENABLE_LAZY_GENERATION = _trueish(os.getenv('ENABLE_LAZY_GENERATION', '1'))

# How far past the anchor date the occurrence expander looks. Bounds the
# worst-case work for sparse rules (e.g. yearly items with an old start date).
GENERATION_HORIZON_DAYS = _int_env('GENERATION_HORIZON_DAYS', 365)

# Maximum number of fractional digits a position key may carry before
# insert-between gives up and asks for a rebalance.
MAX_POSITION_DECIMALS = _int_env('MAX_POSITION_DECIMALS', 12)

# SECRET_KEY should be set in the environment in production. The fallback is
# only good enough for tests; the app lifespan refuses to start with it.
SECRET_KEY = os.getenv('SECRET_KEY', 'CHANGE_ME_IN_ENV_FOR_TESTS')
ACCESS_TOKEN_EXPIRE_MINUTES = _int_env('ACCESS_TOKEN_EXPIRE_MINUTES', 60 * 24)

# When true, the app is considered to be running in development mode and the
# insecure SECRET_KEY fallback is tolerated at startup.
DEV_MODE = _trueish(os.getenv('DEV_MODE', '0'))

# Optional local overrides: define variables in nowly/local_config.py to
# extend or override the defaults above without changing versioned config.
try:
    from .local_config import *  # type: ignore  # noqa: F401,F403
except ImportError:
    # No local overrides present; proceed with defaults.
    pass
