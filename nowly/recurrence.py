"""Recurrence rules for recurring task items.

Two halves live here:

- ``build_rrule_string`` compiles a frequency selection plus its parameters
  into an RFC 5545 ``DTSTART``/``RRULE`` string via ``dateutil.rrule``. The
  string is what gets persisted on the recurring item.
- ``get_next_occurrences`` / ``get_occurrences_between`` parse a stored rule
  back with ``rrulestr`` and expand it into calendar dates.

Neither half raises on bad input: a malformed parameter set compiles to a
looser rule and an unparseable rule expands to no dates.
"""
import calendar
from datetime import date, datetime, time, timedelta
from enum import Enum
import logging
import re

from dateutil import rrule as _rrule

from . import config

logger = logging.getLogger(__name__)


class RecurringFrequency(str, Enum):
    DAILY = 'daily'
    WEEKDAYS = 'weekdays'
    WEEKENDS = 'weekends'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'
    YEARLY = 'yearly'


# 0 = Monday .. 6 = Sunday, matching date.weekday()
WEEKDAY_MAP = {
    0: _rrule.MO,
    1: _rrule.TU,
    2: _rrule.WE,
    3: _rrule.TH,
    4: _rrule.FR,
    5: _rrule.SA,
    6: _rrule.SU,
}

WEEKDAYS_PRESET = (_rrule.MO, _rrule.TU, _rrule.WE, _rrule.TH, _rrule.FR)
WEEKENDS_PRESET = (_rrule.SA, _rrule.SU)

_RULE_PART_RE = re.compile(r"([A-Z]+)=([^;\s]+)")
_DTSTART_RE = re.compile(r"DTSTART(?:;[^:]*)?:(\d{8})")


def _valid_int(value, lo: int, hi: int) -> int | None:
    # bool is an int subclass; a stray True must not become Tuesday
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    if lo <= value <= hi:
        return value
    return None


def day_exists(month, day) -> bool:
    """Whether ``month``/``day`` occurs in at least one year (Feb 29 counts)."""
    month = _valid_int(month, 1, 12)
    if month is None or _valid_int(day, 1, 31) is None:
        return False
    return day <= calendar.monthrange(2000, month)[1]


def never_occurs(rule_string: str) -> bool:
    """True for a rule pinned to month/day pairs that no calendar has.

    dateutil keeps searching such a rule year by year up to 9999 before it
    gives up, whatever UNTIL or bound the caller passes.
    """
    parts = {}
    for line in rule_string.upper().splitlines():
        if line.startswith('RRULE:'):
            parts.update(_RULE_PART_RE.findall(line[len('RRULE:'):]))
    freq = parts.get('FREQ')
    if freq not in ('YEARLY', 'MONTHLY'):
        return False
    if set(parts) & {'BYDAY', 'BYYEARDAY', 'BYWEEKNO', 'BYSETPOS'}:
        return False
    if freq == 'MONTHLY' and 'BYMONTH' not in parts:
        return False
    start = _DTSTART_RE.search(rule_string.upper())
    try:
        if 'BYMONTH' in parts:
            months = [int(v) for v in parts['BYMONTH'].split(',')]
        else:
            months = [int(start.group(1)[4:6])]
        if 'BYMONTHDAY' in parts:
            days = [int(v) for v in parts['BYMONTHDAY'].split(',')]
        else:
            days = [int(start.group(1)[6:8])]
    except (AttributeError, ValueError):
        return False
    if any(d < 0 for d in days):
        return False
    return not any(day_exists(m, d) for m in months for d in days)


def recurrence_params(frequency, weekly_days=None, monthly_day=None,
                      yearly_month=None, yearly_day=None) -> dict:
    """Map a frequency selection onto ``dateutil.rrule`` keyword arguments.

    Out-of-range parameters are dropped rather than rejected, which leaves
    dateutil to fill the field from DTSTART.
    """
    try:
        freq = RecurringFrequency(frequency)
    except ValueError:
        logger.warning("unknown recurrence frequency %r; defaulting to daily", frequency)
        return {'freq': _rrule.DAILY}

    if freq is RecurringFrequency.DAILY:
        return {'freq': _rrule.DAILY}
    if freq is RecurringFrequency.WEEKDAYS:
        return {'freq': _rrule.WEEKLY, 'byweekday': WEEKDAYS_PRESET}
    if freq is RecurringFrequency.WEEKENDS:
        return {'freq': _rrule.WEEKLY, 'byweekday': WEEKENDS_PRESET}

    if freq is RecurringFrequency.WEEKLY:
        out: dict = {'freq': _rrule.WEEKLY}
        days = []
        for d in weekly_days or ():
            v = _valid_int(d, 0, 6)
            if v is not None and WEEKDAY_MAP[v] not in days:
                days.append(WEEKDAY_MAP[v])
        if days:
            out['byweekday'] = tuple(sorted(days, key=lambda w: w.weekday))
        return out

    if freq is RecurringFrequency.MONTHLY:
        out = {'freq': _rrule.MONTHLY}
        day = _valid_int(monthly_day, 1, 31)
        if day is not None:
            out['bymonthday'] = day
        return out

    out = {'freq': _rrule.YEARLY}
    month = _valid_int(yearly_month, 1, 12)
    if month is not None:
        out['bymonth'] = month
    day = _valid_int(yearly_day, 1, 31)
    if day is not None:
        out['bymonthday'] = day
    return out


def build_rrule_string(frequency, start_date: date, end_date: date | None = None, *,
                       weekly_days=None, monthly_day=None, yearly_month=None,
                       yearly_day=None) -> str:
    """Compile a recurrence selection into a storable rule string.

    Example:
        >>> build_rrule_string('weekly', date(2025, 1, 1), weekly_days=[0, 2, 4])
        'DTSTART:20250101T000000\\nRRULE:FREQ=WEEKLY;BYDAY=MO,WE,FR'

    The end date becomes an inclusive ``UNTIL`` at midnight.
    """
    dtstart = datetime.combine(start_date, time.min)
    params = recurrence_params(frequency, weekly_days, monthly_day, yearly_month, yearly_day)
    if end_date is not None:
        params['until'] = datetime.combine(end_date, time.min)
    try:
        rule = _rrule.rrule(dtstart=dtstart, **params)
    except ValueError:
        # e.g. an UNTIL dateutil refuses; keep the bare frequency
        logger.exception("failed to build rrule for frequency=%s; retrying without parameters", frequency)
        rule = _rrule.rrule(dtstart=dtstart, freq=params['freq'])
    return str(rule)


def parse_rrule(rule_string: str | None):
    """Parse a stored rule string; returns None when it cannot be parsed."""
    if not rule_string:
        return None
    try:
        return _rrule.rrulestr(rule_string)
    except Exception:
        logger.debug("unparseable rrule string %r", rule_string, exc_info=True)
        return None


def get_next_occurrences(rule_string: str, after: date, count: int | None = None,
                         horizon_days: int | None = None) -> list[date]:
    """Return occurrence dates strictly after ``after``, ascending.

    The result is bounded by the rule's own UNTIL, by ``after`` plus the
    horizon (GENERATION_HORIZON_DAYS by default, inclusive) and by ``count``.
    Unparseable rules and rules that can never occur yield an empty list.
    """
    if count is not None and count <= 0:
        return []
    rule = parse_rrule(rule_string)
    if rule is None:
        return []
    if never_occurs(rule_string):
        logger.warning("rrule %r never occurs; nothing to expand", rule_string)
        return []
    if horizon_days is None:
        horizon_days = config.GENERATION_HORIZON_DAYS
    anchor = datetime.combine(after, time.min)
    limit = anchor + timedelta(days=horizon_days)
    dates: list[date] = []
    try:
        for dt in rule.xafter(anchor, inc=False):
            if dt > limit:
                break
            dates.append(dt.date())
            if count is not None and len(dates) >= count:
                break
    except TypeError:
        # tz-aware DTSTART compared against our naive anchor
        logger.warning("cannot expand rrule %r against a naive anchor", rule_string)
        return []
    return dates


def get_occurrences_between(rule_string: str, start: date, end: date) -> list[date]:
    """All occurrence dates in [start, end]."""
    if end < start:
        return []
    rule = parse_rrule(rule_string)
    if rule is None or never_occurs(rule_string):
        return []
    try:
        occurrences = rule.between(datetime.combine(start, time.min),
                                   datetime.combine(end, time.min), inc=True)
    except TypeError:
        logger.warning("cannot expand rrule %r against a naive range", rule_string)
        return []
    return [dt.date() for dt in occurrences]
