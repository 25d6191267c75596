"""
Shared test fixtures for the AttendSheet test suite.

Async throughout (aiosqlite + AsyncSession). The database is a throwaway
SQLite file so background writers (audit sink, archive worker) get their own
connections; tables are created and dropped around every test.
"""

from __future__ import annotations

import asyncio
import itertools
import os
import sys
import tempfile
from datetime import datetime, timezone
from typing import AsyncGenerator

import pytest

# Ensure project root is importable
ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

_DB_DIR = tempfile.mkdtemp(prefix="attendsheet-tests-")
TEST_DATABASE_URL = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'test.db')}"

# Override environment BEFORE importing application modules
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["CORS_ORIGINS"] = '["*"]'
os.environ["SECRET_KEY"] = "test-secret-key-not-for-production"

from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from attendsheet.api.v1.deps import (get_current_active_user, get_db,
                                     require_admin, require_editor)
from attendsheet.api.v1.endpoints.auth import limiter
from attendsheet.core.clock import FixedClock
from attendsheet.core.config import settings
from attendsheet.core.exceptions import ArchiveStoreError, ChannelError
from attendsheet.db.base import Base
from attendsheet.main import app
from attendsheet.models.confirmation import ConfirmationRecord
from attendsheet.models.user import User
from attendsheet.schemas.sheets import EmployeeRow, SheetSettings
from attendsheet.services.container import build_services

test_engine = create_async_engine(TEST_DATABASE_URL, poolclass=NullPool)

TestingSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

limiter.enabled = False

NOW = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)


# ── Fakes ───────────────────────────────────────────────────────────
class FakeChannelProvider:
    """In-memory channel provider with per-id failure switches."""

    def __init__(self) -> None:
        self._seq = itertools.count(1)
        self.fail_send_message: set[str] = set()  # user ids
        self.fail_create_task: set[str] = set()  # union ids
        self.hang_create_task: set[str] = set()
        self.fail_recall_message: set[str] = set()  # message ids
        self.fail_delete_task: set[str] = set()  # task ids
        self.messages: dict[str, str] = {}
        self.tasks: dict[str, str] = {}
        self.recalled: list[str] = []
        self.deleted: list[str] = []

    async def send_message(self, user_id: str, payload: dict) -> str:
        await asyncio.sleep(0)
        if user_id in self.fail_send_message:
            raise ChannelError(f"message to {user_id} rejected")
        task_id = f"msg-{next(self._seq)}"
        self.messages[task_id] = user_id
        return task_id

    async def recall_message(self, task_id: str) -> None:
        await asyncio.sleep(0)
        if task_id in self.fail_recall_message:
            raise ChannelError("message already read")
        self.recalled.append(task_id)

    async def create_task(self, user_id: str, payload: dict) -> str:
        if user_id in self.hang_create_task:
            await asyncio.sleep(3600)
        await asyncio.sleep(0)
        if user_id in self.fail_create_task:
            raise ChannelError(f"task for {user_id} rejected")
        task_id = f"todo-{next(self._seq)}"
        self.tasks[task_id] = user_id
        return task_id

    async def delete_task(self, task_id: str) -> None:
        await asyncio.sleep(0)
        if task_id in self.fail_delete_task:
            raise ChannelError("task delete failed")
        self.deleted.append(task_id)


class FakeArchiveStore:
    """In-memory object store that tracks upload concurrency."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.fail_list = False
        self.fail_upload: set[str] = set()
        self.crash_upload: set[str] = set()
        self.uploads: list[str] = []
        self.deleted: list[str] = []
        self.active = 0
        self.max_active = 0

    async def list(self, prefix: str) -> list[str]:
        if self.fail_list:
            raise ArchiveStoreError("listing unavailable")
        return [k for k in self.objects if k.startswith(prefix)]

    async def upload(self, key: str, data: bytes) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0.01)
            if key in self.crash_upload:
                raise RuntimeError(f"store crashed on {key}")
            if key in self.fail_upload:
                raise ArchiveStoreError(f"upload of {key} failed")
            self.objects[key] = data
            self.uploads.append(key)
        finally:
            self.active -= 1

    async def delete(self, keys: list[str]) -> None:
        for key in keys:
            self.objects.pop(key, None)
            self.deleted.append(key)


# ── Database ────────────────────────────────────────────────────────
@pytest.fixture(autouse=True)
async def setup_db():
    """Create all tables before usage and drop after."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with TestingSessionLocal() as session:
        yield session


app.dependency_overrides[get_db] = _override_get_db


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def reload_record():
    """Fetch a fresh copy of a confirmation record."""

    async def _reload(record_id: int) -> ConfirmationRecord | None:
        async with TestingSessionLocal() as session:
            return await session.get(ConfirmationRecord, record_id)

    return _reload


@pytest.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Return a raw database session for direct queries in tests."""
    async with TestingSessionLocal() as session:
        yield session


# ── Services ────────────────────────────────────────────────────────
@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def channels() -> FakeChannelProvider:
    return FakeChannelProvider()


@pytest.fixture
def archive_store() -> FakeArchiveStore:
    return FakeArchiveStore()


@pytest.fixture
async def services(clock, channels, archive_store):
    svc = build_services(
        TestingSessionLocal,
        settings,
        channels=channels,
        archive_store=archive_store,
        clock=clock,
    )
    app.state.services = svc
    yield svc
    await svc.archive.drain()
    await svc.aclose()
    app.state.services = None


@pytest.fixture
def sample_rows() -> list[EmployeeRow]:
    return [
        EmployeeRow(
            employee_id="u1001",
            employee_name="张伟",
            department="研发部",
            daily_data={"1": "√", "2": "迟到10分钟", "3": "√"},
        ),
        EmployeeRow(
            employee_id="u1002",
            employee_name="李芳",
            department="市场部",
            daily_data={"1": "√", "2": "病假4小时", "3": "加班21:45"},
        ),
        EmployeeRow(
            employee_id="u1003",
            employee_name="王强",
            department="设计部",
            daily_data={"1": "缺卡", "2": "√", "3": "调休"},
        ),
    ]


@pytest.fixture
def make_sheet(services, sample_rows):
    """Factory: create a sheet (default rows) and return (sheet, records)."""

    async def _make(rows=None, company_id="acme", month="2024-05", **settings_kw):
        sheet = await services.sheets.create_sheet(
            company_id,
            month,
            rows if rows is not None else sample_rows,
            "hr@example.com",
            settings=SheetSettings(**settings_kw),
        )
        return sheet, await services.sheets.get_records(sheet.id)

    return _make


@pytest.fixture
async def async_client(services) -> AsyncGenerator[AsyncClient, None]:
    """Return a httpx AsyncClient wired to the app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ── Auth Overrides ──────────────────────────────────────────────────
async def _override_get_current_active_user():
    return User(id=1, email="test@example.com", is_active=True, role="admin")


async def _override_require_admin():
    return User(id=1, email="admin@example.com", is_active=True, role="admin")


async def _override_require_editor():
    return User(id=1, email="hr@example.com", is_active=True, role="hr")


_AUTH_OVERRIDES = {
    get_current_active_user: _override_get_current_active_user,
    require_admin: _override_require_admin,
    require_editor: _override_require_editor,
}
app.dependency_overrides.update(_AUTH_OVERRIDES)


@pytest.fixture
def real_auth():
    """Run a test against the real JWT guards."""
    for dep in _AUTH_OVERRIDES:
        app.dependency_overrides.pop(dep, None)
    yield
    app.dependency_overrides.update(_AUTH_OVERRIDES)
