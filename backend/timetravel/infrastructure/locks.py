"""Session Write Locks: one asyncio.Lock per session for single-writer fields.

Invariants:
    - Timeline.active_branch_id is only written while holding the owning session's lock
    - for_session() always returns the same lock for the same session id within a process

Design Decisions:
    - Per-session, not global: exploration in unrelated sessions never contends
    - In-process only; multi-process deployments still rely on the database transaction
"""

import asyncio
from uuid import UUID


class SessionWriteLocks:
    """Registry of per-session locks."""

    def __init__(self) -> None:
        self._locks: dict[UUID, asyncio.Lock] = {}

    def for_session(self, session_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def discard(self, session_id: UUID) -> None:
        """Forget a deleted session's lock."""
        self._locks.pop(session_id, None)
