"""Session Lifecycle: create, fetch and delete reasoning sessions.

Invariants:
    - mode is a SessionMode value
    - delete_session removes every record the session owns (ON DELETE CASCADE) and
      forgets the session's write lock
"""

import logging
from uuid import UUID

from sqlalchemy import delete

from timetravel.core.domain_types import SessionMode
from timetravel.core.errors import NotFoundError, ValidationError
from timetravel.infrastructure.database import DatabaseSessionManager
from timetravel.infrastructure.locks import SessionWriteLocks
from timetravel.models.session import ReasoningSession

logger = logging.getLogger(__name__)


class SessionLifecycle:

    def __init__(self, db: DatabaseSessionManager, locks: SessionWriteLocks):
        self.db = db
        self.locks = locks

    async def create_session(self, mode: SessionMode | str = SessionMode.TREE) -> ReasoningSession:
        try:
            mode = SessionMode(mode)
        except ValueError:
            raise ValidationError(f"Unknown session mode '{mode}'", "mode")
        async with self.db.transaction() as db:
            session = ReasoningSession(mode=mode.value)
            db.add(session)
            await db.flush()
        logger.info("Session created", extra={"session_id": session.id})
        return session

    async def get_session(self, session_id: UUID) -> ReasoningSession:
        async with self.db.session() as db:
            session = await db.get(ReasoningSession, session_id)
            if session is None:
                raise NotFoundError("Session", session_id)
            return session

    async def delete_session(self, session_id: UUID) -> None:
        async with self.locks.for_session(session_id):
            async with self.db.transaction() as db:
                if await db.get(ReasoningSession, session_id) is None:
                    raise NotFoundError("Session", session_id)
                await db.execute(
                    delete(ReasoningSession).where(ReasoningSession.id == session_id)
                )
        self.locks.discard(session_id)
        logger.info("Session deleted", extra={"session_id": session_id})
