"""Fractional position keys for ordering tasks within a day.

Keys look like LexoRank values in bucket 0::

    0|000008:       integer part only
    0|000008:i      integer part plus a base-36 fraction

The integer part is always six base-36 digits and the fraction never ends in
``0``, so plain string comparison (codepoint order, ``0-9`` < ``a-z``) agrees
with numeric order. The database must compare the ``position`` column with a
binary collation for the same reason.

Inserting between two neighbours only writes the moved row. When two
neighbours are so close that no key with at most ``MAX_POSITION_DECIMALS``
fractional digits fits between them, ``position_between`` returns
``REBALANCE_NEEDED`` and the caller is expected to rebalance the whole list.
"""
import logging
import re
from typing import Iterable

from . import config

logger = logging.getLogger(__name__)

ALPHABET = '0123456789abcdefghijklmnopqrstuvwxyz'
BASE = len(ALPHABET)
BUCKET = '0'
INTEGER_WIDTH = 6
MAX_INTEGER = BASE ** INTEGER_WIDTH - 1
# gap left between consecutive appended keys
STEP = 8

# Returned instead of a key when the caller has to rebalance. Upper case, so
# it can never be mistaken for a valid key.
REBALANCE_NEEDED = 'REBALANCE_NEEDED'

_KEY_RE = re.compile(r'^0\|([0-9a-z]{%d}):([0-9a-z]*)$' % INTEGER_WIDTH)


def _to_base36(n: int, width: int) -> str:
    digits = []
    for _ in range(width):
        n, r = divmod(n, BASE)
        digits.append(ALPHABET[r])
    return ''.join(reversed(digits))


def _format(integer: int, fraction: str = '') -> str:
    return f"{BUCKET}|{_to_base36(integer, INTEGER_WIDTH)}:{fraction.rstrip('0')}"


def parse_position(key: str | None) -> tuple[int, str] | None:
    """Split a key into (integer, fraction). Returns None for invalid keys."""
    if not isinstance(key, str):
        return None
    m = _KEY_RE.match(key)
    if not m:
        return None
    fraction = m.group(2)
    if fraction.endswith('0'):
        # '0|000001:10' would sort after '0|000001:1' despite being equal
        return None
    return int(m.group(1), BASE), fraction


def is_valid_position(key: str | None) -> bool:
    return parse_position(key) is not None


def min_position() -> str:
    """Smallest representable key; used for the first item of an empty list."""
    return _format(0)


def max_position() -> str:
    return _format(MAX_INTEGER)


def _scaled(parsed: tuple[int, str], digits: int) -> int:
    integer, fraction = parsed
    frac_val = int(fraction.ljust(digits, '0'), BASE) if digits else 0
    return integer * BASE ** digits + frac_val


def _between(lo: tuple[int, str], hi: tuple[int, str], max_decimals: int) -> str:
    digits = max(len(lo[1]), len(hi[1]))
    while digits <= max_decimals:
        lo_val = _scaled(lo, digits)
        hi_val = _scaled(hi, digits)
        if hi_val <= lo_val:
            return REBALANCE_NEEDED
        if hi_val - lo_val >= 2:
            mid = (lo_val + hi_val) // 2
            integer, frac_val = divmod(mid, BASE ** digits)
            fraction = _to_base36(frac_val, digits) if digits else ''
            return _format(integer, fraction)
        digits += 1
    return REBALANCE_NEEDED


def next_position(key: str, *, max_decimals: int | None = None) -> str:
    """Return a key greater than ``key``, used for appending at the end.

    Invalid keys are treated as an empty list and produce ``min_position()``.
    """
    parsed = parse_position(key)
    if parsed is None:
        return min_position()
    integer, _ = parsed
    if integer + STEP <= MAX_INTEGER:
        return _format(integer + STEP)
    if max_decimals is None:
        max_decimals = config.MAX_POSITION_DECIMALS
    return _between(parsed, (MAX_INTEGER, ''), max_decimals)


def position_between(before: str, after: str, *, max_decimals: int | None = None) -> str:
    """Return a key strictly between ``before`` and ``after``.

    An empty string stands for "no bound" on that side. Returns
    ``REBALANCE_NEEDED`` when no distinct key fits, when the bounds are out of
    order, or when either bound is not a valid key.
    """
    if max_decimals is None:
        max_decimals = config.MAX_POSITION_DECIMALS
    if not before and not after:
        return min_position()
    if before and not after:
        if parse_position(before) is None:
            logger.warning("position_between: invalid lower key %r", before)
            return REBALANCE_NEEDED
        return next_position(before, max_decimals=max_decimals)

    hi = parse_position(after)
    if hi is None:
        logger.warning("position_between: invalid upper key %r", after)
        return REBALANCE_NEEDED
    if not before:
        # nothing sorts below min_position(), so the lower bound is min itself
        lo = (0, '')
    else:
        lo = parse_position(before)
        if lo is None:
            logger.warning("position_between: invalid lower key %r", before)
            return REBALANCE_NEEDED
    return _between(lo, hi, max_decimals)


def generate_next_position(existing: Iterable[str]) -> str:
    """Key that appends after every valid key in ``existing``.

    Invalid or legacy keys are ignored. If nothing valid remains the list is
    treated as empty.
    """
    valid = [k for k in existing if is_valid_position(k)]
    if not valid:
        return min_position()
    return next_position(max(valid))


def rebalance_positions(count: int) -> list[str]:
    """``count`` evenly spaced, strictly ascending keys.

    Keys are spread over the whole integer space, leaving room before the
    first and after the last so the next drag to either end still fits.
    """
    if count <= 0:
        return []
    step = (MAX_INTEGER + 1) // (count + 1)
    if step < 1:
        raise ValueError(f"cannot rebalance {count} positions")
    return [_format(step * (i + 1)) for i in range(count)]
