"""Async persistence for recurring items and tasks.

Each store method opens its own session from ``async_session`` and commits
before returning, so callers never hold a session across an await of
unrelated work. SQLAlchemy failures surface as ``StoreError``.
"""
import contextlib
import dataclasses
import logging
from datetime import date
from typing import Iterable

from sqlmodel import select
from sqlalchemy import update as sqlalchemy_update
from sqlalchemy import delete as sqlalchemy_delete
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .db import async_session
from .errors import OwnershipError, StoreError
from .models import RecurringItem, Task
from .utils import now_utc

logger = logging.getLogger(__name__)

# Columns written by TaskStore.create_batch. Every row carries all of them so
# the multi-row INSERT has a uniform shape.
_BATCH_COLUMNS = (
    'user_id', 'title', 'description', 'category_id', 'priority',
    'daily_section', 'bonus_section', 'scheduled_date', 'due_date',
    'completed', 'completed_at', 'position', 'recurring_item_id',
)


class _BaseStore:
    def __init__(self, session_factory=None):
        self._session_factory = session_factory or async_session

    @contextlib.asynccontextmanager
    async def _session(self, op: str):
        try:
            async with self._session_factory() as sess:
                yield sess
        except SQLAlchemyError as e:
            logger.exception("%s.%s failed", type(self).__name__, op)
            raise StoreError(f"{op} failed: {e}") from e


class RecurringItemStore(_BaseStore):

    async def create(self, item: RecurringItem) -> RecurringItem:
        async with self._session('create') as sess:
            sess.add(item)
            await sess.commit()
            await sess.refresh(item)
            return item

    async def get_by_id(self, item_id: int) -> RecurringItem | None:
        async with self._session('get_by_id') as sess:
            return await sess.get(RecurringItem, item_id)

    async def get_by_user_id(self, user_id: int, active_only: bool = False) -> list[RecurringItem]:
        async with self._session('get_by_user_id') as sess:
            q = select(RecurringItem).where(RecurringItem.user_id == user_id)
            if active_only:
                q = q.where(RecurringItem.is_active == True)  # noqa: E712
            res = await sess.exec(q.order_by(RecurringItem.created_at, RecurringItem.id))
            return list(res.all())

    async def update(self, item_id: int, changes: dict) -> RecurringItem | None:
        async with self._session('update') as sess:
            item = await sess.get(RecurringItem, item_id)
            if item is None:
                return None
            for k, v in changes.items():
                setattr(item, k, v)
            item.updated_at = now_utc()
            sess.add(item)
            await sess.commit()
            await sess.refresh(item)
            return item

    async def delete(self, item_id: int) -> bool:
        async with self._session('delete') as sess:
            res = await sess.exec(sqlalchemy_delete(RecurringItem).where(RecurringItem.id == item_id))
            await sess.commit()
            return (res.rowcount or 0) > 0

    async def update_watermark(self, item_id: int, generated_through: date | None) -> bool:
        """Move the watermark forward to ``generated_through``.

        The comparison happens inside the UPDATE, so a concurrent pass that
        already advanced further is left alone. ``None`` resets the watermark
        unconditionally. Returns whether a row changed.
        """
        async with self._session('update_watermark') as sess:
            stmt = sqlalchemy_update(RecurringItem).where(RecurringItem.id == item_id)
            if generated_through is not None:
                stmt = stmt.where(or_(
                    RecurringItem.last_generated_date.is_(None),
                    RecurringItem.last_generated_date < generated_through,
                ))
            stmt = stmt.values(last_generated_date=generated_through, updated_at=now_utc())
            res = await sess.exec(stmt)
            await sess.commit()
            return (res.rowcount or 0) > 0

    async def get_items_needing_generation(self, user_id: int, today: date) -> list[RecurringItem]:
        """Active items whose watermark is missing or before ``today``."""
        async with self._session('get_items_needing_generation') as sess:
            q = select(RecurringItem).where(
                RecurringItem.user_id == user_id,
                RecurringItem.is_active == True,  # noqa: E712
                or_(
                    RecurringItem.last_generated_date.is_(None),
                    RecurringItem.last_generated_date < today,
                ),
            ).order_by(RecurringItem.id)
            res = await sess.exec(q)
            return list(res.all())


def _row_values(row) -> dict:
    if isinstance(row, Task):
        data = row.model_dump()
    elif dataclasses.is_dataclass(row):
        data = dataclasses.asdict(row)
    else:
        data = dict(row)
    out = {k: data.get(k) for k in _BATCH_COLUMNS}
    out['completed'] = bool(out['completed'])
    out['priority'] = out['priority'] or 'medium'
    ts = now_utc()
    out['created_at'] = ts
    out['updated_at'] = ts
    return out


class TaskStore(_BaseStore):

    async def create(self, task: Task) -> Task:
        async with self._session('create') as sess:
            sess.add(task)
            await sess.commit()
            await sess.refresh(task)
            return task

    async def create_batch(self, rows: Iterable) -> list[Task]:
        """Insert generated tasks, skipping ``(recurring_item_id, scheduled_date)``
        pairs that already exist.

        Returns only the rows this call inserted, ordered by date and
        position. A concurrent pass that got there first simply wins.
        """
        values = [_row_values(r) for r in rows]
        if not values:
            return []
        async with self._session('create_batch') as sess:
            dialect = sess.get_bind().dialect.name
            if dialect in ('sqlite', 'postgresql'):
                if dialect == 'sqlite':
                    from sqlalchemy.dialects.sqlite import insert as dialect_insert
                else:
                    from sqlalchemy.dialects.postgresql import insert as dialect_insert
                table = Task.__table__
                stmt = (
                    dialect_insert(table)
                    .values(values)
                    .on_conflict_do_nothing(index_elements=['recurring_item_id', 'scheduled_date'])
                    .returning(table.c.id)
                )
                res = await sess.exec(stmt)
                ids = [r[0] for r in res.fetchall()]
                await sess.commit()
            else:
                ids = []
                for v in values:
                    try:
                        async with sess.begin_nested():
                            t = Task(**v)
                            sess.add(t)
                        ids.append(t.id)
                    except IntegrityError:
                        logger.debug("create_batch: skipping existing task for item=%s date=%s",
                                     v.get('recurring_item_id'), v.get('scheduled_date'))
                await sess.commit()
            if not ids:
                return []
            res = await sess.exec(
                select(Task).where(Task.id.in_(ids)).order_by(Task.scheduled_date, Task.position, Task.id)
            )
            return list(res.all())

    async def get_by_id(self, task_id: int) -> Task | None:
        async with self._session('get_by_id') as sess:
            return await sess.get(Task, task_id)

    async def find_by_user_and_date(self, user_id: int, day: date) -> list[Task]:
        async with self._session('find_by_user_and_date') as sess:
            res = await sess.exec(
                select(Task)
                .where(Task.user_id == user_id, Task.scheduled_date == day)
                .order_by(Task.position, Task.id)
            )
            return list(res.all())

    async def find_by_user_and_date_range(self, user_id: int, start: date, end: date) -> list[Task]:
        async with self._session('find_by_user_and_date_range') as sess:
            res = await sess.exec(
                select(Task)
                .where(
                    Task.user_id == user_id,
                    Task.scheduled_date >= start,
                    Task.scheduled_date <= end,
                )
                .order_by(Task.scheduled_date, Task.position, Task.id)
            )
            return list(res.all())

    async def find_by_recurring_item(self, recurring_item_id: int) -> list[Task]:
        async with self._session('find_by_recurring_item') as sess:
            res = await sess.exec(
                select(Task)
                .where(Task.recurring_item_id == recurring_item_id)
                .order_by(Task.scheduled_date)
            )
            return list(res.all())

    async def find_overdue(self, user_id: int, before: date) -> list[Task]:
        """Uncompleted tasks scheduled before ``before``, oldest day first."""
        async with self._session('find_overdue') as sess:
            res = await sess.exec(
                select(Task)
                .where(
                    Task.user_id == user_id,
                    Task.completed == False,  # noqa: E712
                    Task.scheduled_date.is_not(None),
                    Task.scheduled_date < before,
                )
                .order_by(Task.scheduled_date, Task.position, Task.id)
            )
            return list(res.all())

    async def bulk_update_scheduled_date(self, user_id: int, new_date: date,
                                         updates: list[tuple[int, str]]) -> list[Task]:
        """Move every ``(task_id, position)`` to ``new_date`` in one transaction.

        Ownership is checked the same way as ``rebalance``: one missing or
        foreign id leaves every row untouched.
        """
        if not updates:
            return []
        ids = [tid for tid, _ in updates]
        if len(set(ids)) != len(ids):
            raise StoreError("bulk_update_scheduled_date: duplicate task ids")
        async with self._session('bulk_update_scheduled_date') as sess:
            res = await sess.exec(select(Task).where(Task.id.in_(ids)))
            tasks = {t.id: t for t in res.all()}
            for tid in ids:
                t = tasks.get(tid)
                if t is None or t.user_id != user_id:
                    raise OwnershipError(f"task {tid} not found or not owned by user {user_id}")
            ts = now_utc()
            for tid, key in updates:
                t = tasks[tid]
                t.scheduled_date = new_date
                t.position = key
                t.updated_at = ts
                sess.add(t)
            await sess.commit()
            logger.info("moved %d tasks to %s for user %s", len(updates), new_date, user_id)
            return [tasks[tid] for tid in ids]

    async def update(self, task_id: int, changes: dict) -> Task | None:
        async with self._session('update') as sess:
            task = await sess.get(Task, task_id)
            if task is None:
                return None
            for k, v in changes.items():
                setattr(task, k, v)
            task.updated_at = now_utc()
            sess.add(task)
            await sess.commit()
            await sess.refresh(task)
            return task

    async def delete(self, task_id: int) -> bool:
        async with self._session('delete') as sess:
            res = await sess.exec(sqlalchemy_delete(Task).where(Task.id == task_id))
            await sess.commit()
            return (res.rowcount or 0) > 0

    async def delete_uncompleted_by_recurring_item(self, recurring_item_id: int) -> int:
        """Remove pending tasks generated from an item; completed ones stay."""
        async with self._session('delete_uncompleted_by_recurring_item') as sess:
            res = await sess.exec(
                sqlalchemy_delete(Task).where(
                    Task.recurring_item_id == recurring_item_id,
                    Task.completed == False,  # noqa: E712
                )
            )
            await sess.commit()
            deleted = res.rowcount or 0
            logger.info("deleted %d uncompleted tasks for recurring item %s", deleted, recurring_item_id)
            return deleted

    async def rebalance(self, user_id: int, updates: list[tuple[int, str]]) -> None:
        """Write every ``(task_id, position)`` pair in one transaction.

        All ids are checked for existence and ownership before anything is
        written; any failure leaves every row untouched.
        """
        if not updates:
            return
        ids = [tid for tid, _ in updates]
        if len(set(ids)) != len(ids):
            raise StoreError("rebalance: duplicate task ids")
        async with self._session('rebalance') as sess:
            res = await sess.exec(select(Task).where(Task.id.in_(ids)))
            tasks = {t.id: t for t in res.all()}
            for tid in ids:
                t = tasks.get(tid)
                if t is None or t.user_id != user_id:
                    # leaving the session without commit rolls back
                    raise OwnershipError(f"rebalance: task {tid} not found or not owned by user {user_id}")
            ts = now_utc()
            for tid, key in updates:
                t = tasks[tid]
                t.position = key
                t.updated_at = ts
                sess.add(t)
            await sess.commit()
            logger.info("rebalanced %d tasks for user %s", len(updates), user_id)
