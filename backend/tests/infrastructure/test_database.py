"""Database Session Manager: tests for SQLite tuning, error mapping and rollback.

Tests cover:
    - Foreign keys are enforced on every SQLite connection
    - Integrity violations surface as DatabaseError and roll back the transaction
    - Domain errors raised inside a transaction propagate unchanged after rollback
    - health_check reports connectivity
"""

from uuid import uuid4

import pytest
from sqlalchemy import func, insert, select

from timetravel.core.errors import DatabaseError, ValidationError
from timetravel.infrastructure.database import DatabaseSessionManager
from timetravel.models.branch import Branch
from timetravel.models.session import ReasoningSession


@pytest.fixture
async def manager(tmp_path):
    manager = DatabaseSessionManager(f"sqlite+aiosqlite:///{tmp_path / 'db.sqlite'}")
    await manager.create_all()
    yield manager
    await manager.dispose()


async def _sessions(manager) -> int:
    async with manager.session() as db:
        return await db.scalar(select(func.count()).select_from(ReasoningSession))


async def test_foreign_keys_enforced(manager):
    with pytest.raises(DatabaseError) as exc:
        async with manager.transaction() as db:
            db.add(Branch(session_id=uuid4(), state="active"))
            await db.flush()
    assert exc.value.code == "DATABASE_ERROR"


async def test_integrity_error_rolls_back(manager):
    session_id = uuid4()
    with pytest.raises(DatabaseError):
        async with manager.transaction() as db:
            await db.execute(insert(ReasoningSession).values(id=session_id, mode="tree"))
            await db.execute(insert(ReasoningSession).values(id=session_id, mode="tree"))
    assert await _sessions(manager) == 0


async def test_domain_error_propagates_after_rollback(manager):
    with pytest.raises(ValidationError):
        async with manager.transaction() as db:
            db.add(ReasoningSession(mode="tree"))
            await db.flush()
            raise ValidationError("rejected", "mode")
    assert await _sessions(manager) == 0


async def test_health_check(manager):
    assert manager.is_sqlite
    assert await manager.health_check() is True
