from datetime import date, timedelta

import pytest

from nowly.generation import (
    GENERATION_LIMITS,
    calculate_due_date,
    generate_tasks_from_recurring_item,
    get_generation_limit,
)
from nowly.models import RecurringItem
from nowly.position import min_position
from nowly.recurrence import build_rrule_string

START = date(2025, 1, 1)


def make_item(frequency='daily', start=START, end=None, due_offset_days=0, **params):
    return RecurringItem(
        id=7,
        user_id=3,
        title='Water plants',
        description='balcony first',
        category_id=11,
        priority='high',
        daily_section='morning',
        bonus_section='essential',
        frequency=frequency,
        rrule_string=build_rrule_string(frequency, start, end, **params),
        start_date=start,
        end_date=end,
        due_offset_days=due_offset_days,
        **params,
    )


def test_generation_limits():
    assert GENERATION_LIMITS == {
        'daily': 15, 'weekdays': 15, 'weekends': 15,
        'weekly': 8, 'monthly': 6, 'yearly': 2,
    }
    assert get_generation_limit('daily') == 15
    assert get_generation_limit('unknown') == 15


@pytest.mark.parametrize('frequency,params,expected', [
    ('daily', {}, 15),
    ('weekdays', {}, 15),
    ('weekends', {}, 15),
    ('weekly', {'weekly_days': [0, 2, 4]}, 8),
    ('monthly', {'monthly_day': 15}, 6),
    # only one July 4th fits in the one-year horizon
    ('yearly', {'yearly_month': 7, 'yearly_day': 4}, 1),
])
def test_from_scratch_generation_respects_cap(frequency, params, expected):
    tasks = generate_tasks_from_recurring_item(make_item(frequency, **params), START, set())
    assert len(tasks) == expected
    assert len(tasks) <= get_generation_limit(frequency)


def test_daily_from_start_generates_first_fifteen_days():
    tasks = generate_tasks_from_recurring_item(make_item('daily'), START, set())
    assert [t.scheduled_date for t in tasks] == [START + timedelta(days=i) for i in range(15)]


def test_weekly_mon_wed_fri():
    tasks = generate_tasks_from_recurring_item(make_item('weekly', weekly_days=[0, 2, 4]), START, set())
    dates = [t.scheduled_date for t in tasks]
    assert len(dates) == 8
    assert all(d.weekday() in (0, 2, 4) for d in dates)
    assert dates == sorted(dates)
    assert len(set(dates)) == len(dates)
    assert dates[0] == START


def test_existing_dates_are_skipped():
    existing = {date(2025, 1, 2), date(2025, 1, 5)}
    tasks = generate_tasks_from_recurring_item(make_item('daily'), START, existing)
    dates = {t.scheduled_date for t in tasks}
    assert not dates & existing
    # skipped dates do not use up the cap
    assert len(tasks) == 15
    assert max(dates) == date(2025, 1, 17)


def test_fully_materialized_window_reaches_past_it():
    existing = {START + timedelta(days=i) for i in range(15)}
    tasks = generate_tasks_from_recurring_item(make_item('daily'), START, existing)
    assert [t.scheduled_date for t in tasks] == [START + timedelta(days=15 + i) for i in range(15)]


def test_existing_dates_accept_iso_strings():
    tasks = generate_tasks_from_recurring_item(make_item('daily'), START, ['2025-01-01'])
    assert tasks[0].scheduled_date == date(2025, 1, 2)


def test_due_date_follows_offset():
    tasks = generate_tasks_from_recurring_item(make_item('daily', due_offset_days=3), START, set())
    for t in tasks:
        assert t.due_date == t.scheduled_date + timedelta(days=3)
    tasks = generate_tasks_from_recurring_item(make_item('daily'), START, set())
    assert all(t.due_date is None for t in tasks)
    assert calculate_due_date(START, -2) is None


def test_template_is_copied():
    t = generate_tasks_from_recurring_item(make_item('daily'), START, set())[0]
    assert t.user_id == 3
    assert t.recurring_item_id == 7
    assert t.title == 'Water plants'
    assert t.description == 'balcony first'
    assert t.category_id == 11
    assert t.priority == 'high'
    assert t.daily_section == 'morning'
    assert t.bonus_section == 'essential'
    assert t.completed is False
    assert t.completed_at is None


def test_positions_ascend_across_the_batch():
    tasks = generate_tasks_from_recurring_item(make_item('daily'), START, set())
    keys = [t.position for t in tasks]
    assert keys[0] == min_position()
    assert all(a < b for a, b in zip(keys, keys[1:]))


def test_positions_follow_existing_tasks_on_the_same_day():
    positions_by_date = {
        date(2025, 1, 1): ['0|000100:'],
        date(2025, 1, 3): ['garbage'],
    }
    tasks = generate_tasks_from_recurring_item(make_item('daily'), START, set(), positions_by_date)
    assert tasks[0].position > '0|000100:'
    keys = [t.position for t in tasks]
    assert all(a < b for a, b in zip(keys, keys[1:]))


def test_unparseable_rule_generates_nothing():
    item = make_item('daily')
    item.rrule_string = 'not a rule'
    assert generate_tasks_from_recurring_item(item, START, set()) == []


def test_end_date_bounds_generation():
    tasks = generate_tasks_from_recurring_item(make_item('daily', end=date(2025, 1, 10)), START, set())
    assert len(tasks) == 10
    assert tasks[-1].scheduled_date == date(2025, 1, 10)


def test_from_date_is_inclusive():
    tasks = generate_tasks_from_recurring_item(make_item('daily'), date(2025, 1, 10), set())
    assert tasks[0].scheduled_date == date(2025, 1, 10)


def test_impossible_yearly_date_generates_nothing():
    item = make_item('yearly', yearly_month=4, yearly_day=31)
    assert generate_tasks_from_recurring_item(item, START, set()) == []
