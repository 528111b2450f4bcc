from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from contextlib import asynccontextmanager
from datetime import date
from typing import Literal, Optional
import logging
import sys

from . import config
from . import services
from .auth import authenticate_user, create_access_token, require_login
from .db import init_db, DATABASE_URL
from .errors import NotFoundError, OwnershipError, StoreError, ValidationError
from .models import RecurringItem, Task, User
from .recurrence import RecurringFrequency
from .stores import TaskStore
from . import utils

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter('%(asctime)s %(levelname)s:%(name)s: %(message)s')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
logger.setLevel(logging.INFO)

# widest range a single GET /tasks may ask for
MAX_RANGE_DAYS = 366


@asynccontextmanager
async def lifespan(app: FastAPI):
    # The application should not start without a proper secret outside of
    # development mode.
    if config.SECRET_KEY == "CHANGE_ME_IN_ENV_FOR_TESTS" and not config.DEV_MODE:
        raise RuntimeError("SECRET_KEY not set or insecure fallback in use; set the SECRET_KEY environment variable before starting the server")
    await init_db()
    logger.info('starting server using DATABASE_URL=%s', DATABASE_URL)
    logger.info('lazy recurring generation: %s', 'enabled' if config.ENABLE_LAZY_GENERATION else 'disabled')
    yield


app = FastAPI(lifespan=lifespan)


@app.exception_handler(NotFoundError)
async def _not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={'detail': str(exc)})


@app.exception_handler(OwnershipError)
async def _ownership_handler(request: Request, exc: OwnershipError):
    return JSONResponse(status_code=404, content={'detail': str(exc)})


@app.exception_handler(ValidationError)
async def _validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={'detail': str(exc)})


@app.exception_handler(StoreError)
async def _store_error_handler(request: Request, exc: StoreError):
    logger.error('store error on %s %s: %s', request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={'detail': 'storage error'})


def _iso(v):
    return v.isoformat() if v is not None else None


def _serialize_task(t: Task) -> dict:
    return {
        'id': t.id,
        'title': t.title,
        'description': t.description,
        'category_id': t.category_id,
        'priority': t.priority,
        'daily_section': t.daily_section,
        'bonus_section': t.bonus_section,
        'scheduled_date': _iso(t.scheduled_date),
        'due_date': _iso(t.due_date),
        'completed': t.completed,
        'completed_at': _iso(t.completed_at),
        'position': t.position,
        'recurring_item_id': t.recurring_item_id,
    }


def _serialize_recurring(r: RecurringItem) -> dict:
    return {
        'id': r.id,
        'title': r.title,
        'description': r.description,
        'category_id': r.category_id,
        'priority': r.priority,
        'daily_section': r.daily_section,
        'bonus_section': r.bonus_section,
        'frequency': r.frequency,
        'weekly_days': r.weekly_days,
        'monthly_day': r.monthly_day,
        'yearly_month': r.yearly_month,
        'yearly_day': r.yearly_day,
        'rrule_string': r.rrule_string,
        'start_date': _iso(r.start_date),
        'end_date': _iso(r.end_date),
        'due_offset_days': r.due_offset_days,
        'last_generated_date': _iso(r.last_generated_date),
        'tasks_to_generate_ahead': r.tasks_to_generate_ahead,
        'is_active': r.is_active,
    }


class TokenRequest(BaseModel):
    username: str
    password: str


@app.post('/auth/token')
async def login_for_access_token(req: TokenRequest):
    user = await authenticate_user(req.username, req.password)
    if not user:
        raise HTTPException(status_code=401, detail='Incorrect username or password')
    access_token = create_access_token(data={'sub': user.username})
    return {'access_token': access_token, 'token_type': 'bearer'}


Priority = Literal['high', 'medium', 'low']
DailySection = Literal['morning', 'afternoon', 'evening']
BonusSection = Literal['essential', 'bonus']


class CreateTaskRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    category_id: Optional[int] = None
    priority: Optional[Priority] = None
    daily_section: Optional[DailySection] = None
    bonus_section: Optional[BonusSection] = None
    scheduled_date: Optional[date] = None
    due_date: Optional[date] = None


class UpdateTaskRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    category_id: Optional[int] = None
    priority: Optional[Priority] = None
    daily_section: Optional[DailySection] = None
    bonus_section: Optional[BonusSection] = None
    scheduled_date: Optional[date] = None
    due_date: Optional[date] = None


class ReorderRequest(BaseModel):
    new_index: int


class PositionRequest(BaseModel):
    position: str


class RebalanceRequest(BaseModel):
    task_ids: list[int] = Field(min_length=1)


@app.get('/tasks')
async def list_tasks(day: Optional[date] = Query(default=None, alias="date"), start: Optional[date] = None, end: Optional[date] = None,
                     current_user: User = Depends(require_login)):
    """Tasks for one day (``?date=``) or an inclusive range (``?start=&end=``).

    Stale recurring items are materialized first. Generation problems are
    logged and never fail the listing.
    """
    if day is not None:
        start = end = day
    if start is None and end is None:
        start = end = utils.today()
    elif start is None or end is None:
        start = end = start or end
    if end < start:
        raise HTTPException(status_code=400, detail='end must not be before start')
    if (end - start).days >= MAX_RANGE_DAYS:
        raise HTTPException(status_code=400, detail='date range too large')

    generated = 0
    if config.ENABLE_LAZY_GENERATION:
        try:
            result = await services.ensure_tasks_generated(current_user.id)
            generated = len(result.generated_tasks)
        except Exception:
            logger.exception('lazy generation failed for user %s', current_user.id)
    tasks = await TaskStore().find_by_user_and_date_range(current_user.id, start, end)
    return {
        'start': start.isoformat(),
        'end': end.isoformat(),
        'generated': generated,
        'tasks': [_serialize_task(t) for t in tasks],
    }


@app.post('/tasks')
async def create_task(payload: CreateTaskRequest, current_user: User = Depends(require_login)):
    task = await services.create_task(current_user.id, payload.model_dump(exclude_none=True))
    return _serialize_task(task)


@app.patch('/tasks/{task_id}')
async def update_task(task_id: int, payload: UpdateTaskRequest, current_user: User = Depends(require_login)):
    task = await services.update_task(task_id, current_user.id, payload.model_dump(exclude_unset=True))
    return _serialize_task(task)


@app.delete('/tasks/{task_id}')
async def delete_task(task_id: int, current_user: User = Depends(require_login)):
    await services.delete_task(task_id, current_user.id)
    return {'ok': True, 'deleted': task_id}


@app.post('/tasks/rebalance')
async def rebalance_tasks(payload: RebalanceRequest, current_user: User = Depends(require_login)):
    updates = await services.rebalance_tasks(current_user.id, payload.task_ids)
    return {'ok': True, 'positions': [{'task_id': tid, 'position': key} for tid, key in updates]}


@app.get('/tasks/overdue')
async def list_overdue_tasks(before: Optional[date] = None, current_user: User = Depends(require_login)):
    tasks = await services.find_overdue_tasks(current_user.id, before)
    return {'count': len(tasks), 'tasks': [_serialize_task(t) for t in tasks]}


class RolloverRequest(BaseModel):
    task_ids: Optional[list[int]] = None
    new_date: Optional[date] = None


@app.post('/tasks/rollover')
async def rollover_tasks(payload: RolloverRequest, current_user: User = Depends(require_login)):
    result = await services.rollover_tasks(current_user.id, payload.task_ids, payload.new_date)
    return {
        'moved': [_serialize_task(t) for t in result.moved_tasks],
        'skipped_task_ids': result.skipped_task_ids,
    }


@app.post('/tasks/{task_id}/complete')
async def toggle_task_completed(task_id: int, current_user: User = Depends(require_login)):
    task = await services.toggle_task_completed(task_id, current_user.id)
    return _serialize_task(task)


@app.post('/tasks/{task_id}/reorder')
async def reorder_task(task_id: int, payload: ReorderRequest, current_user: User = Depends(require_login)):
    result = await services.reorder_task(task_id, current_user.id, payload.new_index)
    task = await TaskStore().get_by_id(task_id)
    day = await TaskStore().find_by_user_and_date(current_user.id, task.scheduled_date)
    return {
        'task_id': task_id,
        'position': task.position,
        'rebalanced': result.needs_rebalance,
        'tasks': [_serialize_task(t) for t in day],
    }


@app.patch('/tasks/{task_id}/position')
async def set_task_position(task_id: int, payload: PositionRequest, current_user: User = Depends(require_login)):
    task = await services.apply_task_position(task_id, current_user.id, payload.position)
    return _serialize_task(task)


class CreateRecurringRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    category_id: Optional[int] = None
    priority: Priority = 'medium'
    daily_section: Optional[DailySection] = None
    bonus_section: Optional[BonusSection] = None
    frequency: RecurringFrequency
    weekly_days: Optional[list[int]] = None
    monthly_day: Optional[int] = Field(default=None, ge=1, le=31)
    yearly_month: Optional[int] = Field(default=None, ge=1, le=12)
    yearly_day: Optional[int] = Field(default=None, ge=1, le=31)
    start_date: date
    end_date: Optional[date] = None
    due_offset_days: int = Field(default=0, ge=0, le=365)
    tasks_to_generate_ahead: int = Field(default=15, ge=1)


class UpdateRecurringRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    category_id: Optional[int] = None
    priority: Optional[Priority] = None
    daily_section: Optional[DailySection] = None
    bonus_section: Optional[BonusSection] = None
    end_date: Optional[date] = None
    is_active: Optional[bool] = None


@app.get('/recurring')
async def list_recurring(active_only: bool = False, current_user: User = Depends(require_login)):
    items = await services.list_recurring_items(current_user.id, active_only=active_only)
    return {'items': [_serialize_recurring(r) for r in items]}


@app.post('/recurring')
async def create_recurring(payload: CreateRecurringRequest, current_user: User = Depends(require_login)):
    item, created = await services.create_recurring_item(current_user.id, payload.model_dump())
    return {
        'item': _serialize_recurring(item),
        'generated_tasks': [_serialize_task(t) for t in created],
    }


@app.post('/recurring/ensure')
async def ensure_generated(current_user: User = Depends(require_login)):
    result = await services.ensure_tasks_generated(current_user.id)
    return {
        'generated': len(result.generated_tasks),
        'tasks': [_serialize_task(t) for t in result.generated_tasks],
        'failed_item_ids': result.failed_item_ids,
    }


@app.patch('/recurring/{item_id}')
async def update_recurring(item_id: int, payload: UpdateRecurringRequest, current_user: User = Depends(require_login)):
    changes = payload.model_dump(exclude_unset=True)
    if changes.get('is_active') is None:
        changes.pop('is_active', None)
    item = await services.update_recurring_item(item_id, current_user.id, changes)
    return _serialize_recurring(item)


@app.delete('/recurring/{item_id}')
async def delete_recurring(item_id: int, current_user: User = Depends(require_login)):
    await services.delete_recurring_item(item_id, current_user.id)
    return {'ok': True, 'deleted': item_id}
