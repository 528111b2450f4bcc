from datetime import date

import pytest

from nowly.recurrence import (
    build_rrule_string,
    get_next_occurrences,
    day_exists,
    get_occurrences_between,
    never_occurs,
    recurrence_params,
)

# 2025-01-01 is a Wednesday
START = date(2025, 1, 1)
BEFORE_START = date(2024, 12, 31)


def test_weekly_days_compile_to_byday():
    s = build_rrule_string('weekly', START, weekly_days=[4, 0, 2])
    assert 'DTSTART:20250101T000000' in s
    assert 'FREQ=WEEKLY' in s
    assert 'BYDAY=MO,WE,FR' in s


def test_weekly_drops_invalid_days():
    s = build_rrule_string('weekly', START, weekly_days=[7, -1, True, 'x', 2])
    assert 'BYDAY=WE' in s
    assert 'TU' not in s


def test_weekly_without_valid_days_uses_start_weekday():
    s = build_rrule_string('weekly', START, weekly_days=[9])
    assert 'BYDAY' not in s
    dates = get_next_occurrences(s, BEFORE_START, count=3)
    assert dates == [date(2025, 1, 1), date(2025, 1, 8), date(2025, 1, 15)]


def test_weekday_and_weekend_presets_ignore_parameters():
    wk = build_rrule_string('weekdays', START, weekly_days=[5, 6])
    assert 'BYDAY=MO,TU,WE,TH,FR' in wk
    dates = get_next_occurrences(wk, BEFORE_START, count=5)
    assert dates == [date(2025, 1, 1), date(2025, 1, 2), date(2025, 1, 3),
                     date(2025, 1, 6), date(2025, 1, 7)]

    we = build_rrule_string('weekends', START)
    assert 'BYDAY=SA,SU' in we
    dates = get_next_occurrences(we, BEFORE_START, count=4)
    assert dates == [date(2025, 1, 4), date(2025, 1, 5), date(2025, 1, 11), date(2025, 1, 12)]


def test_monthly_day_31_skips_short_months():
    s = build_rrule_string('monthly', START, monthly_day=31)
    assert 'BYMONTHDAY=31' in s
    dates = get_next_occurrences(s, BEFORE_START, count=3)
    assert dates == [date(2025, 1, 31), date(2025, 3, 31), date(2025, 5, 31)]


def test_monthly_out_of_range_day_is_dropped():
    s = build_rrule_string('monthly', START, monthly_day=42)
    assert 'BYMONTHDAY' not in s


def test_yearly_month_and_day():
    s = build_rrule_string('yearly', START, yearly_month=7, yearly_day=4)
    assert 'BYMONTH=7' in s
    assert 'BYMONTHDAY=4' in s
    dates = get_next_occurrences(s, BEFORE_START, count=2, horizon_days=800)
    assert dates == [date(2025, 7, 4), date(2026, 7, 4)]


def test_unknown_frequency_defaults_to_daily():
    assert recurrence_params('fortnightly') == recurrence_params('daily')
    s = build_rrule_string('fortnightly', START)
    assert 'FREQ=DAILY' in s


def test_end_date_becomes_inclusive_until():
    s = build_rrule_string('daily', START, date(2025, 1, 5))
    assert 'UNTIL=20250105T000000' in s
    dates = get_next_occurrences(s, BEFORE_START, count=15)
    assert dates[-1] == date(2025, 1, 5)
    assert len(dates) == 5


def test_occurrences_are_strictly_after_anchor():
    s = build_rrule_string('daily', START)
    assert get_next_occurrences(s, date(2025, 1, 3), count=2) == [date(2025, 1, 4), date(2025, 1, 5)]


def test_horizon_bounds_open_ended_expansion():
    s = build_rrule_string('daily', START)
    assert get_next_occurrences(s, START, horizon_days=3) == [
        date(2025, 1, 2), date(2025, 1, 3), date(2025, 1, 4)]


def test_unparseable_rule_expands_to_nothing():
    assert get_next_occurrences('not a rule', START, count=5) == []
    assert get_next_occurrences('', START, count=5) == []
    assert get_next_occurrences(None, START, count=5) == []
    assert get_occurrences_between('RRULE:FREQ=SOMETIMES', START, date(2025, 2, 1)) == []


def test_zero_count_returns_empty():
    s = build_rrule_string('daily', START)
    assert get_next_occurrences(s, START, count=0) == []


def test_occurrences_between_is_inclusive():
    s = build_rrule_string('weekly', START, weekly_days=[0, 2, 4])
    dates = get_occurrences_between(s, date(2025, 1, 6), date(2025, 1, 10))
    assert dates == [date(2025, 1, 6), date(2025, 1, 8), date(2025, 1, 10)]
    assert get_occurrences_between(s, date(2025, 1, 10), date(2025, 1, 6)) == []


@pytest.mark.parametrize('month,day,expected', [
    (2, 29, True),
    (2, 30, False),
    (4, 31, False),
    (12, 31, True),
    (13, 1, False),
    (1, 0, False),
])
def test_day_exists(month, day, expected):
    assert day_exists(month, day) is expected


def test_never_occurs_detects_impossible_yearly_rules():
    assert never_occurs(build_rrule_string('yearly', START, yearly_month=2, yearly_day=30))
    assert never_occurs(build_rrule_string('yearly', START, yearly_month=6, yearly_day=31))
    assert not never_occurs(build_rrule_string('yearly', START, yearly_month=2, yearly_day=29))
    assert not never_occurs(build_rrule_string('monthly', START, monthly_day=31))
    assert not never_occurs(build_rrule_string('daily', START))
    # DTSTART supplies the missing day
    assert never_occurs('DTSTART:20250131T000000\nRRULE:FREQ=YEARLY;BYMONTH=2')


def test_impossible_yearly_rule_returns_without_scanning(monkeypatch):
    s = build_rrule_string('yearly', START, yearly_month=2, yearly_day=30)

    def fail(*a, **kw):
        raise AssertionError('rule should not be expanded')

    monkeypatch.setattr('dateutil.rrule.rrule.xafter', fail)
    monkeypatch.setattr('dateutil.rrule.rrule.between', fail)
    assert get_next_occurrences(s, BEFORE_START, count=2) == []
    assert get_occurrences_between(s, START, date(2030, 1, 1)) == []


def test_expansion_stops_at_count():
    s = build_rrule_string('daily', START)
    assert get_next_occurrences(s, BEFORE_START, count=3, horizon_days=10000) == [
        date(2025, 1, 1), date(2025, 1, 2), date(2025, 1, 3)]
