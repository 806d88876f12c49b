"""Shared test fixtures.

Each test gets its own database: a fresh SQLite file by default, or the
database named by TAPBATTLE_TEST_DATABASE_URL (e.g. a throwaway PostgreSQL
database).
"""

from __future__ import annotations

import itertools
import os
from collections.abc import AsyncGenerator, Awaitable, Callable, Iterator
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from tapbattle.config import get_settings
from tapbattle.database import close_db, get_engine, init_db, run_in_transaction
from tapbattle.db.base import Base
from tapbattle.db import models  # noqa: F401
from tapbattle.ledger import service as ledger
from tapbattle.redis_client import set_redis
from tapbattle.users.service import get_or_create_user

INTERNAL_KEY = "test-internal-key"

_telegram_ids = itertools.count(700_000)


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Pin the internal key and start every test from fresh settings."""
    monkeypatch.setenv("TAPBATTLE_INTERNAL_API_KEY", INTERNAL_KEY)
    monkeypatch.setenv("TAPBATTLE_LOG_FORMAT", "console")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def override_settings(monkeypatch: pytest.MonkeyPatch) -> Callable[..., None]:
    """Override settings for one test, e.g. ``override_settings(public_capacity=2)``."""

    def _apply(**values: object) -> None:
        for key, value in values.items():
            monkeypatch.setenv(f"TAPBATTLE_{key.upper()}", str(value))
        get_settings.cache_clear()

    return _apply


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncGenerator[str, None]:
    """Initialize the engine against an empty schema."""
    url = os.environ.get("TAPBATTLE_TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'tapbattle.db'}"
    await init_db(url)
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield url
    await close_db()


@pytest.fixture
def publisher() -> Iterator[AsyncMock]:
    """Stand-in for the Redis client room events are published to."""
    mock = AsyncMock()
    mock.publish = AsyncMock(return_value=1)
    set_redis(mock)
    yield mock
    set_redis(None)


@pytest_asyncio.fixture
async def make_user(database: str) -> Callable[..., Awaitable[int]]:
    """Factory: create a user funded through the ledger, return the user id."""

    async def _make(balance: Decimal | int | str = 100, username: str | None = None) -> int:
        telegram_id = next(_telegram_ids)

        async def _create(db: AsyncSession) -> int:
            user = await get_or_create_user(db, telegram_id, username)
            if Decimal(balance) > 0:
                await ledger.deposit(db, user.id, Decimal(balance), f"test-topup-{telegram_id}")
            return user.id

        return await run_in_transaction(_create)

    return _make


async def balance_of(user_id: int) -> Decimal:
    """Stored balance, read in a fresh session."""
    return await run_in_transaction(lambda db: ledger.get_balance(db, user_id))


async def reconcile(user_id: int) -> Decimal:
    """Reconciled balance, read in a fresh session."""
    return await run_in_transaction(lambda db: ledger.reconcile(db, user_id))


@pytest_asyncio.fixture
async def client(database: str, publisher: AsyncMock) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client over the ASGI app, sharing the test database."""
    from tapbattle.main import create_app

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def user_headers(user_id: int) -> dict[str, str]:
    return {"X-User-Id": str(user_id)}


def internal_headers(user_id: int | None = None) -> dict[str, str]:
    headers = {"X-Internal-Key": INTERNAL_KEY}
    if user_id is not None:
        headers["X-User-Id"] = str(user_id)
    return headers
