"""ReasoningSession ORM: the aggregate root every other record hangs off.

Invariants:
    - mode is a SessionMode value
    - Deleting a session cascades (ON DELETE CASCADE) to branches, thoughts, cross refs,
      checkpoints, snapshots, timelines, search nodes and analyses
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import UUID

from timetravel.db.base import Base


class ReasoningSession(Base):
    """One reasoning run."""
    __tablename__ = "sessions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    mode: Mapped[str] = mapped_column(
        String(20), nullable=False, default="tree",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
