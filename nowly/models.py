from typing import List, Optional
from datetime import date, datetime
from .utils import now_utc
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, JSON, UniqueConstraint


PRIORITIES = ('high', 'medium', 'low')
DAILY_SECTIONS = ('morning', 'afternoon', 'evening')
BONUS_SECTIONS = ('essential', 'bonus')


class User(SQLModel, table=True):
    """Owner of tasks and recurring items; password stored as a passlib hash."""
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, sa_column_kwargs={"unique": True})
    password_hash: str
    created_at: datetime | None = Field(default_factory=now_utc)


class RecurringItem(SQLModel, table=True):
    """Template that materializes into dated Task rows.

    ``rrule_string`` is the compiled DTSTART/RRULE text and is what the
    expander reads; the frequency parameters are kept alongside so the rule
    can be recompiled when the end date changes.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    title: str
    description: Optional[str] = None
    category_id: Optional[int] = Field(default=None, index=True)
    priority: str = Field(default='medium')
    daily_section: Optional[str] = None
    bonus_section: Optional[str] = None
    frequency: str
    # 0 = Monday .. 6 = Sunday
    weekly_days: Optional[List[int]] = Field(default=None, sa_column=Column(JSON))
    monthly_day: Optional[int] = None
    yearly_month: Optional[int] = None
    yearly_day: Optional[int] = None
    rrule_string: str
    start_date: date
    end_date: Optional[date] = None
    due_offset_days: int = Field(default=0)
    # Generation watermark: the latest scheduled date materialized so far.
    # Only ever moves forward (see RecurringItemStore.update_watermark).
    last_generated_date: Optional[date] = Field(default=None, index=True)
    tasks_to_generate_ahead: int = Field(default=15)
    is_active: bool = Field(default=True, index=True)
    created_at: datetime | None = Field(default_factory=now_utc)
    updated_at: datetime | None = Field(default_factory=now_utc)


class Task(SQLModel, table=True):
    # one generated task per recurring item and day; NULL recurring_item_id
    # rows (manual tasks) never collide
    __table_args__ = (UniqueConstraint('recurring_item_id', 'scheduled_date'),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    title: str
    description: Optional[str] = None
    category_id: Optional[int] = Field(default=None, index=True)
    priority: str = Field(default='medium')
    daily_section: Optional[str] = None
    bonus_section: Optional[str] = None
    scheduled_date: Optional[date] = Field(default=None, index=True)
    due_date: Optional[date] = None
    completed: bool = Field(default=False)
    completed_at: Optional[datetime] = None
    # Opaque fractional key (see nowly/position.py). Compared as a plain
    # string; never parse it outside the allocator.
    position: str = Field(index=True)
    # Plain back-link to the template. No relationship and no cascade:
    # completed tasks keep the id after their template is deleted.
    recurring_item_id: Optional[int] = Field(default=None, index=True)
    created_at: datetime | None = Field(default_factory=now_utc)
    updated_at: datetime | None = Field(default_factory=now_utc)
