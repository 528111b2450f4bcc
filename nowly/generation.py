"""Materialize recurring items into concrete task rows.

Pure functions: nothing here touches the database. The orchestrator in
``nowly.services`` fetches existing dates and positions, calls
``generate_tasks_from_recurring_item`` and hands the result to
``TaskStore.create_batch``.
"""
from dataclasses import dataclass
from datetime import date, datetime
import logging
from typing import Iterable, Mapping

from .position import generate_next_position, min_position, next_position
from .recurrence import RecurringFrequency, get_next_occurrences
from .utils import add_days, as_date

logger = logging.getLogger(__name__)

# How many tasks one pass generates ahead, per frequency
GENERATION_LIMITS = {
    RecurringFrequency.DAILY.value: 15,
    RecurringFrequency.WEEKDAYS.value: 15,
    RecurringFrequency.WEEKENDS.value: 15,
    RecurringFrequency.WEEKLY.value: 8,
    RecurringFrequency.MONTHLY.value: 6,
    RecurringFrequency.YEARLY.value: 2,
}
DEFAULT_GENERATION_LIMIT = 15


@dataclass
class GeneratedTask:
    """A task ready for insertion; ids and timestamps come from the store."""
    user_id: int
    title: str
    description: str | None
    category_id: int | None
    priority: str | None
    daily_section: str | None
    bonus_section: str | None
    scheduled_date: date
    due_date: date | None
    recurring_item_id: int
    position: str
    completed: bool = False
    completed_at: datetime | None = None


def get_generation_limit(frequency) -> int:
    if isinstance(frequency, RecurringFrequency):
        frequency = frequency.value
    return GENERATION_LIMITS.get(frequency, DEFAULT_GENERATION_LIMIT)


def calculate_due_date(scheduled: date, due_offset_days: int | None) -> date | None:
    """scheduled + offset for a positive offset, otherwise no due date."""
    if not due_offset_days or due_offset_days <= 0:
        return None
    return add_days(scheduled, due_offset_days)


def _date_set(dates: Iterable) -> set[date]:
    out = set()
    for d in dates or ():
        if d is None:
            continue
        out.add(as_date(d))
    return out


def generate_tasks_from_recurring_item(item, from_date: date, existing_dates: Iterable = (),
                                       positions_by_date: Mapping[date, Iterable[str]] | None = None,
                                       horizon_days: int | None = None) -> list[GeneratedTask]:
    """Build the next batch of tasks for ``item`` starting at ``from_date``.

    ``from_date`` itself is eligible. Dates already in ``existing_dates`` are
    skipped and do not count against ``get_generation_limit``, so a pass that
    finds its window already materialized still reaches further ahead.

    Positions ascend across the batch. When ``positions_by_date`` carries the
    keys already used on a day, the new task for that day sorts after all of
    them.
    """
    limit = get_generation_limit(item.frequency)
    anchor = add_days(from_date, -1)
    dates = get_next_occurrences(item.rrule_string, anchor, horizon_days=horizon_days)
    if item.end_date is not None:
        end = as_date(item.end_date)
        dates = [d for d in dates if d <= end]
    if not dates:
        logger.debug("recurring item %s: no occurrences from %s", item.id, from_date)
        return []

    existing = _date_set(existing_dates)
    out: list[GeneratedTask] = []
    prev: str | None = None
    for d in dates:
        if len(out) >= limit:
            break
        if d in existing:
            continue
        position = min_position() if prev is None else next_position(prev)
        if positions_by_date:
            day_keys = list(positions_by_date.get(d) or ())
            if day_keys:
                after_day = generate_next_position(day_keys)
                if after_day > position:
                    position = after_day
        prev = position
        out.append(GeneratedTask(
            user_id=item.user_id,
            title=item.title,
            description=item.description,
            category_id=item.category_id,
            priority=item.priority,
            daily_section=item.daily_section,
            bonus_section=item.bonus_section,
            scheduled_date=d,
            due_date=calculate_due_date(d, item.due_offset_days),
            recurring_item_id=item.id,
            position=position,
        ))
    return out
