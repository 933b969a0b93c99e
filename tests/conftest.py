from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from settlement.db.base import Base
from tests.support import SESSION_MODULES, FakeGateway, RecordingBroadcaster, RecordingNotifier


@pytest_asyncio.fixture
async def session_factory(tmp_path, monkeypatch):
    pytest.importorskip("aiosqlite")

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    for module in SESSION_MODULES:
        monkeypatch.setattr(module, "SessionFactory", factory)

    yield factory

    await engine.dispose()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()
