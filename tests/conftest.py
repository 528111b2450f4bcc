import sys
import pathlib
import os
import tempfile
import uuid
import warnings

import pytest
import pytest_asyncio

# Point the app at a throwaway SQLite file before anything imports nowly.db;
# the engine is created at import time from config.DATABASE_URL.
_DB_DIR = tempfile.mkdtemp(prefix='nowly-tests-')
os.environ.setdefault('DATABASE_URL', f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'test.db')}")
# Ensure a secure SECRET_KEY is available during tests so the app lifespan
# check in `nowly.main` doesn't raise.
os.environ.setdefault('SECRET_KEY', 'test-secret-key-for-unit-tests')

try:
    from sqlalchemy.exc import SAWarning
    warnings.filterwarnings('ignore', category=SAWarning)
except ImportError:
    pass

# Reduce SQLAlchemy logger verbosity during tests
import logging as _logging
for _name in ('sqlalchemy', 'sqlalchemy.engine', 'sqlalchemy.pool'):
    _logging.getLogger(_name).setLevel(_logging.ERROR)

ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from httpx import AsyncClient, ASGITransport
from nowly.main import app
from nowly.db import init_db
from nowly.auth import create_user


@pytest_asyncio.fixture
async def ensure_db():
    await init_db()


@pytest_asyncio.fixture
async def user(ensure_db):
    """A fresh user per test so rows never leak between tests."""
    return await create_user(f"user-{uuid.uuid4().hex[:12]}", "testpass")


@pytest_asyncio.fixture
async def client(user):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        resp = await ac.post("/auth/token", json={"username": user.username, "password": "testpass"})
        assert resp.status_code == 200
        token = resp.json()["access_token"]
        ac.headers.update({"Authorization": f"Bearer {token}"})
        ac.user = user
        yield ac


def pytest_sessionfinish(session, exitstatus):
    """Dispose the async engine so pooled connections are closed before exit."""
    try:
        import asyncio
        from nowly import db as nowly_db
        asyncio.run(nowly_db.engine.dispose())
    except Exception:
        # best-effort: if disposal fails, don't crash pytest teardown
        pass
