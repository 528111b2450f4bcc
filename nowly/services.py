"""Application use cases for tasks and recurring items.

Every function takes the stores it needs as keyword arguments and falls back
to the default SQL-backed stores, so tests can pass their own instances.
Ownership failures raise NotFoundError without revealing whether the row
exists for another user.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
import logging

from . import config
from .errors import NotFoundError, OwnershipError, ValidationError
from .generation import generate_tasks_from_recurring_item
from .models import BONUS_SECTIONS, DAILY_SECTIONS, PRIORITIES, RecurringItem, Task
from .position import generate_next_position, is_valid_position, min_position
from .recurrence import RecurringFrequency, build_rrule_string, day_exists
from .reorder import ReorderResult, rebalance_order, resolve_reorder
from .stores import RecurringItemStore, TaskStore
from .utils import add_days, as_date, now_utc
from . import utils

logger = logging.getLogger(__name__)

TEMPLATE_FIELDS = ('title', 'description', 'category_id', 'priority', 'daily_section', 'bonus_section')
# fields a recurring item accepts after creation
UPDATABLE_RECURRING_FIELDS = TEMPLATE_FIELDS + ('end_date', 'is_active')
UPDATABLE_TASK_FIELDS = TEMPLATE_FIELDS + ('scheduled_date', 'due_date')


@dataclass
class GenerationResult:
    generated_tasks: list[Task] = field(default_factory=list)
    # items whose pass raised; they stay stale and are retried on the next read
    failed_item_ids: list[int] = field(default_factory=list)


def _stores(recurring_store=None, task_store=None):
    return recurring_store or RecurringItemStore(), task_store or TaskStore()


def _validate_template(data: dict):
    title = data.get('title')
    if 'title' in data and (not isinstance(title, str) or not 1 <= len(title.strip()) <= 255):
        raise ValidationError('title must be 1..255 characters')
    desc = data.get('description')
    if desc is not None and len(desc) > 1000:
        raise ValidationError('description must be at most 1000 characters')
    if data.get('priority') is not None and data['priority'] not in PRIORITIES:
        raise ValidationError(f"priority must be one of {', '.join(PRIORITIES)}")
    if data.get('daily_section') is not None and data['daily_section'] not in DAILY_SECTIONS:
        raise ValidationError(f"daily_section must be one of {', '.join(DAILY_SECTIONS)}")
    if data.get('bonus_section') is not None and data['bonus_section'] not in BONUS_SECTIONS:
        raise ValidationError(f"bonus_section must be one of {', '.join(BONUS_SECTIONS)}")


def validate_recurring_input(data: dict):
    """Reject recurring item input that cannot describe a schedule.

    Raises ValidationError. Out-of-range weekday values inside an otherwise
    valid ``weekly_days`` list are tolerated; the compiler drops them.
    """
    if not data.get('title'):
        raise ValidationError('title is required')
    _validate_template(data)
    try:
        freq = RecurringFrequency(data.get('frequency'))
    except ValueError:
        raise ValidationError(f"unknown frequency {data.get('frequency')!r}")
    if data.get('start_date') is None:
        raise ValidationError('start_date is required')
    start = as_date(data['start_date'])
    end = as_date(data.get('end_date'))
    if end is not None and end < start:
        raise ValidationError('end_date must be on or after start_date')
    offset = data.get('due_offset_days') or 0
    if not 0 <= offset <= 365:
        raise ValidationError('due_offset_days must be between 0 and 365')
    if freq is RecurringFrequency.WEEKLY and not data.get('weekly_days'):
        raise ValidationError('weekly recurrence needs at least one day')
    if freq is RecurringFrequency.MONTHLY:
        if data.get('monthly_day') is None:
            raise ValidationError('monthly recurrence needs monthly_day')
        if not day_exists(1, data['monthly_day']):
            raise ValidationError('monthly_day must be between 1 and 31')
    if freq is RecurringFrequency.YEARLY:
        if data.get('yearly_month') is None or data.get('yearly_day') is None:
            raise ValidationError('yearly recurrence needs yearly_month and yearly_day')
        if not day_exists(data['yearly_month'], data['yearly_day']):
            raise ValidationError(
                f"{data['yearly_month']}/{data['yearly_day']} is not a date in any year")


def _compile_rule(item_data) -> str:
    get = item_data.get if isinstance(item_data, dict) else lambda k: getattr(item_data, k, None)
    return build_rrule_string(
        get('frequency'), as_date(get('start_date')), as_date(get('end_date')),
        weekly_days=get('weekly_days'), monthly_day=get('monthly_day'),
        yearly_month=get('yearly_month'), yearly_day=get('yearly_day'),
    )


async def _generate_for_item(item: RecurringItem, recurring_store, task_store) -> list[Task]:
    """One materialization pass for a single item; returns inserted tasks."""
    existing = await task_store.find_by_recurring_item(item.id)
    existing_dates = {t.scheduled_date for t in existing if t.scheduled_date is not None}
    if item.last_generated_date is not None:
        from_date = add_days(item.last_generated_date, 1)
    else:
        from_date = item.start_date

    # keys already used on the candidate days, so new tasks append after them
    window_end = add_days(from_date, config.GENERATION_HORIZON_DAYS)
    if item.end_date is not None and item.end_date < window_end:
        window_end = item.end_date
    positions_by_date = defaultdict(list)
    if window_end >= from_date:
        for t in await task_store.find_by_user_and_date_range(item.user_id, from_date, window_end):
            positions_by_date[t.scheduled_date].append(t.position)

    batch = generate_tasks_from_recurring_item(item, from_date, existing_dates, positions_by_date)
    created = await task_store.create_batch(batch) if batch else []
    if created:
        latest = max(t.scheduled_date for t in created)
    else:
        # nothing new; catch the watermark up with rows an earlier pass
        # inserted but never recorded
        already = [d for d in existing_dates if d >= from_date]
        latest = max(already) if already else None
    if latest is not None:
        await recurring_store.update_watermark(item.id, latest)
    logger.debug("recurring item %s: %d candidates, %d inserted from %s",
                 item.id, len(batch), len(created), from_date)
    return created


async def ensure_tasks_generated(user_id: int, recurring_store=None, task_store=None,
                                 today: date | None = None) -> GenerationResult:
    """Materialize tasks for every stale recurring item of ``user_id``.

    An item is stale when it is active and its watermark is missing or
    before ``today``. Failures are per item: the exception is logged, the
    item id recorded, and the loop moves on.
    """
    recurring_store, task_store = _stores(recurring_store, task_store)
    if today is None:
        today = utils.today()
    result = GenerationResult()
    stale = await recurring_store.get_items_needing_generation(user_id, today)
    for item in stale:
        try:
            created = await _generate_for_item(item, recurring_store, task_store)
        except Exception:
            logger.exception("task generation failed for recurring item %s", item.id)
            result.failed_item_ids.append(item.id)
            continue
        result.generated_tasks.extend(created)
    if result.generated_tasks or result.failed_item_ids:
        logger.info("generation for user %s: %d stale items, %d tasks created, %d failed",
                    user_id, len(stale), len(result.generated_tasks), len(result.failed_item_ids))
    return result


async def _owned_recurring_item(item_id: int, user_id: int, recurring_store) -> RecurringItem:
    item = await recurring_store.get_by_id(item_id)
    if item is None or item.user_id != user_id:
        logger.warning("recurring item %s not found for user %s", item_id, user_id)
        raise NotFoundError(f"recurring item {item_id} not found")
    return item


async def _owned_task(task_id: int, user_id: int, task_store) -> Task:
    task = await task_store.get_by_id(task_id)
    if task is None or task.user_id != user_id:
        logger.warning("task %s not found for user %s", task_id, user_id)
        raise NotFoundError(f"task {task_id} not found")
    return task


async def create_recurring_item(user_id: int, data: dict, recurring_store=None,
                                task_store=None) -> tuple[RecurringItem, list[Task]]:
    """Store a new recurring item and generate its first batch from start_date."""
    recurring_store, task_store = _stores(recurring_store, task_store)
    validate_recurring_input(data)
    item = RecurringItem(
        user_id=user_id,
        title=data['title'].strip(),
        description=data.get('description'),
        category_id=data.get('category_id'),
        priority=data.get('priority') or 'medium',
        daily_section=data.get('daily_section'),
        bonus_section=data.get('bonus_section'),
        frequency=RecurringFrequency(data['frequency']).value,
        weekly_days=list(data['weekly_days']) if data.get('weekly_days') else None,
        monthly_day=data.get('monthly_day'),
        yearly_month=data.get('yearly_month'),
        yearly_day=data.get('yearly_day'),
        rrule_string=_compile_rule(data),
        start_date=as_date(data['start_date']),
        end_date=as_date(data.get('end_date')),
        due_offset_days=data.get('due_offset_days') or 0,
        tasks_to_generate_ahead=data.get('tasks_to_generate_ahead') or 15,
        is_active=data.get('is_active') is not False,
    )
    item = await recurring_store.create(item)
    logger.info("created recurring item %s (%s) for user %s", item.id, item.frequency, user_id)
    created: list[Task] = []
    if item.is_active:
        created = await _generate_for_item(item, recurring_store, task_store)
        item = await recurring_store.get_by_id(item.id) or item
    return item, created


async def update_recurring_item(item_id: int, user_id: int, changes: dict, recurring_store=None,
                                task_store=None) -> RecurringItem:
    """Apply template, end date and active-flag changes.

    Already generated tasks keep their copied template. Deactivation deletes
    the item's uncompleted tasks.
    """
    recurring_store, task_store = _stores(recurring_store, task_store)
    item = await _owned_recurring_item(item_id, user_id, recurring_store)
    unknown = set(changes) - set(UPDATABLE_RECURRING_FIELDS)
    if unknown:
        raise ValidationError(f"cannot update fields: {', '.join(sorted(unknown))}")
    _validate_template(changes)
    if 'title' in changes:
        changes = dict(changes, title=changes['title'].strip())
    if 'priority' in changes and changes['priority'] is None:
        changes = dict(changes, priority='medium')

    if 'end_date' in changes:
        end = as_date(changes['end_date'])
        if end is not None and end < item.start_date:
            raise ValidationError('end_date must be on or after start_date')
        changes = dict(changes, end_date=end)
        merged = item.model_dump()
        merged['end_date'] = end
        changes['rrule_string'] = _compile_rule(merged)

    deactivating = changes.get('is_active') is False and item.is_active
    updated = await recurring_store.update(item_id, changes)
    if updated is None:
        raise NotFoundError(f"recurring item {item_id} not found")
    if deactivating:
        await task_store.delete_uncompleted_by_recurring_item(item_id)
        logger.info("deactivated recurring item %s", item_id)
    return updated


async def delete_recurring_item(item_id: int, user_id: int, recurring_store=None, task_store=None) -> None:
    """Delete the item and its uncompleted tasks; completed tasks are kept."""
    recurring_store, task_store = _stores(recurring_store, task_store)
    await _owned_recurring_item(item_id, user_id, recurring_store)
    await task_store.delete_uncompleted_by_recurring_item(item_id)
    await recurring_store.delete(item_id)
    logger.info("deleted recurring item %s for user %s", item_id, user_id)


async def list_recurring_items(user_id: int, active_only: bool = False, recurring_store=None) -> list[RecurringItem]:
    recurring_store = recurring_store or RecurringItemStore()
    return await recurring_store.get_by_user_id(user_id, active_only=active_only)


async def create_task(user_id: int, data: dict, task_store=None) -> Task:
    """Create a manual task appended to the end of its day."""
    task_store = task_store or TaskStore()
    if 'title' not in data:
        raise ValidationError('title is required')
    _validate_template(data)
    scheduled = as_date(data.get('scheduled_date'))
    if scheduled is not None:
        day = await task_store.find_by_user_and_date(user_id, scheduled)
        position = generate_next_position(t.position for t in day)
    else:
        position = min_position()
    task = Task(
        user_id=user_id,
        title=data['title'].strip(),
        description=data.get('description'),
        category_id=data.get('category_id'),
        priority=data.get('priority') or 'medium',
        daily_section=data.get('daily_section'),
        bonus_section=data.get('bonus_section'),
        scheduled_date=scheduled,
        due_date=as_date(data.get('due_date')),
        position=position,
    )
    task = await task_store.create(task)
    logger.info("created task %s for user %s on %s", task.id, user_id, scheduled)
    return task


async def update_task(task_id: int, user_id: int, changes: dict, task_store=None) -> Task:
    """Edit a task's own fields. Moving it to another day appends it there."""
    task_store = task_store or TaskStore()
    task = await _owned_task(task_id, user_id, task_store)
    unknown = set(changes) - set(UPDATABLE_TASK_FIELDS)
    if unknown:
        raise ValidationError(f"cannot update fields: {', '.join(sorted(unknown))}")
    _validate_template(changes)
    changes = dict(changes)
    if 'priority' in changes and changes['priority'] is None:
        changes['priority'] = 'medium'
    for k in ('scheduled_date', 'due_date'):
        if k in changes:
            changes[k] = as_date(changes[k])
    if 'scheduled_date' in changes and changes['scheduled_date'] != task.scheduled_date:
        if changes['scheduled_date'] is not None:
            day = await task_store.find_by_user_and_date(user_id, changes['scheduled_date'])
            changes['position'] = generate_next_position(t.position for t in day)
        else:
            changes['position'] = min_position()
    return await task_store.update(task_id, changes)


async def delete_task(task_id: int, user_id: int, task_store=None) -> None:
    task_store = task_store or TaskStore()
    await _owned_task(task_id, user_id, task_store)
    await task_store.delete(task_id)


async def toggle_task_completed(task_id: int, user_id: int, task_store=None) -> Task:
    task_store = task_store or TaskStore()
    task = await _owned_task(task_id, user_id, task_store)
    completed = not task.completed
    return await task_store.update(task_id, {
        'completed': completed,
        'completed_at': now_utc() if completed else None,
    })


async def reorder_task(task_id: int, user_id: int, new_index: int, task_store=None) -> ReorderResult:
    """Move a task within its day, rebalancing the day when keys run out."""
    task_store = task_store or TaskStore()
    task = await _owned_task(task_id, user_id, task_store)
    if task.scheduled_date is None:
        raise ValidationError('only scheduled tasks can be reordered')
    day = await task_store.find_by_user_and_date(user_id, task.scheduled_date)
    result = resolve_reorder(day, task_id, new_index)
    if result.needs_rebalance:
        await task_store.rebalance(user_id, rebalance_order(result.rebalance))
    elif result.new_position != task.position:
        await task_store.update(task_id, {'position': result.new_position})
    return result


async def apply_task_position(task_id: int, user_id: int, position: str, task_store=None) -> Task:
    """Store a key the client resolved itself."""
    task_store = task_store or TaskStore()
    if not is_valid_position(position):
        raise ValidationError(f"invalid position key {position!r}")
    await _owned_task(task_id, user_id, task_store)
    return await task_store.update(task_id, {'position': position})


async def rebalance_tasks(user_id: int, task_ids: list[int], task_store=None) -> list[tuple[int, str]]:
    """Give ``task_ids`` fresh evenly spaced keys in the given order, atomically."""
    task_store = task_store or TaskStore()
    if not task_ids:
        raise ValidationError('no tasks to rebalance')
    updates = rebalance_order(list(task_ids))
    await task_store.rebalance(user_id, updates)
    return updates


@dataclass
class RolloverResult:
    moved_tasks: list[Task] = field(default_factory=list)
    # generated tasks whose recurring item already has a task on the target day
    skipped_task_ids: list[int] = field(default_factory=list)


async def find_overdue_tasks(user_id: int, before: date | None = None, task_store=None) -> list[Task]:
    """Uncompleted tasks scheduled before ``before`` (today by default)."""
    task_store = task_store or TaskStore()
    if before is None:
        before = utils.today()
    return await task_store.find_overdue(user_id, before)


async def rollover_tasks(user_id: int, task_ids: list[int] | None = None, new_date: date | None = None,
                         task_store=None) -> RolloverResult:
    """Move tasks to ``new_date`` (today by default), appended to that day.

    Without ``task_ids`` every overdue task is moved. Moved tasks keep their
    relative order and sort after whatever the target day already holds.
    Any missing or foreign id raises OwnershipError before anything moves.
    """
    task_store = task_store or TaskStore()
    new_date = as_date(new_date) or utils.today()
    if task_ids is None:
        tasks = await task_store.find_overdue(user_id, new_date)
    else:
        tasks = []
        for tid in dict.fromkeys(task_ids):
            task = await task_store.get_by_id(tid)
            if task is None or task.user_id != user_id:
                logger.warning("rollover: task %s not found for user %s", tid, user_id)
                raise OwnershipError(f"task {tid} not found")
            tasks.append(task)
    result = RolloverResult()
    if not tasks:
        return result

    moving = {t.id for t in tasks}
    day = [t for t in await task_store.find_by_user_and_date(user_id, new_date) if t.id not in moving]
    keys = [t.position for t in day]
    taken = {t.recurring_item_id for t in day if t.recurring_item_id is not None}
    tasks.sort(key=lambda t: (t.scheduled_date is None, t.scheduled_date or new_date, t.position, t.id))
    updates = []
    for t in tasks:
        if t.recurring_item_id is not None:
            if t.recurring_item_id in taken:
                result.skipped_task_ids.append(t.id)
                continue
            taken.add(t.recurring_item_id)
        key = generate_next_position(keys)
        keys.append(key)
        updates.append((t.id, key))
    result.moved_tasks = await task_store.bulk_update_scheduled_date(user_id, new_date, updates)
    logger.info("rolled %d tasks over to %s for user %s (%d skipped)",
                len(result.moved_tasks), new_date, user_id, len(result.skipped_task_ids))
    return result
