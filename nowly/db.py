from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy import event, text
from sqlalchemy.pool import NullPool

import logging

from . import config

logger = logging.getLogger(__name__)

DATABASE_URL = config.DATABASE_URL

# Use NullPool to avoid connection-pool objects being bound to a specific
# event loop (which can cause 'bound to a different event loop' errors
# during heavy concurrency in tests).
engine = create_async_engine(DATABASE_URL, echo=False, future=True, poolclass=NullPool)

async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def _is_sqlite(url: str) -> bool:
    return url.startswith('sqlite')


if _is_sqlite(DATABASE_URL):
    @event.listens_for(engine.sync_engine, 'connect')
    def _sqlite_on_connect(dbapi_conn, _record):
        # concurrent generation passes each open their own connection; wait
        # for the writer lock instead of failing with "database is locked"
        cur = dbapi_conn.cursor()
        try:
            cur.execute('PRAGMA busy_timeout = 10000')
        finally:
            cur.close()


async def init_db():
    from . import models  # noqa: F401  (register tables on SQLModel.metadata)
    async with engine.begin() as conn:
        # create tables
        await conn.run_sync(SQLModel.metadata.create_all)
        # Day lists are read by (user, date) and ordered by position.
        try:
            await conn.execute(text(
                "CREATE INDEX IF NOT EXISTS ix_task_user_day_position "
                "ON task(user_id, scheduled_date, position)"
            ))
        except Exception:
            logger.exception("failed to create ix_task_user_day_position during init_db")


async def dispose_db():
    await engine.dispose()
