from __future__ import annotations

from collections.abc import Awaitable, Callable
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from erp_jobs.db.engine import create_engine
from erp_jobs.db.models.base import Base


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return "sqlite+aiosqlite:///" + (tmp_path / "jobs.db").as_posix()

@pytest.fixture
def open_store(db_url: str) -> Callable[[], Awaitable[AsyncEngine]]:
    async def _open() -> AsyncEngine:
        engine = create_engine(db_url)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        return engine

    return _open
