"""Service test fixtures: file-backed SQLite database, scripted oracle, wired TimeMachine.

Invariants:
    - Every test gets a fresh SQLite file under tmp_path (foreign keys on, BEGIN IMMEDIATE)
    - Settings never read .env; oracle timeout kept short so timeout tests stay fast

Design Decisions:
    - File database over :memory:: concurrent explore() uses several connections, and each
      in-memory connection would see its own empty database
"""

import pytest
from sqlalchemy import func, select

from timetravel.config import Settings
from timetravel.infrastructure.database import DatabaseSessionManager
from timetravel.services.time_machine import TimeMachine

from tests.services.fake_oracle import ScriptedOracle


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "database_url": f"sqlite+aiosqlite:///{tmp_path / 'timetravel.db'}",
        "oracle_timeout_seconds": 1.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
async def db_manager(settings):
    manager = DatabaseSessionManager(settings.database_url)
    await manager.create_all()
    yield manager
    await manager.dispose()


@pytest.fixture
def oracle():
    return ScriptedOracle()


@pytest.fixture
def machine(db_manager, oracle, settings):
    return TimeMachine(db_manager, oracle, settings)


@pytest.fixture
async def session(machine):
    return await machine.sessions.create_session("tree")


@pytest.fixture
def count_rows(db_manager):
    """Row count for a model, optionally filtered by column equality."""
    async def _count(model, **filters) -> int:
        query = select(func.count()).select_from(model)
        for column, value in filters.items():
            query = query.where(getattr(model, column) == value)
        async with db_manager.session() as db:
            return await db.scalar(query)
    return _count
