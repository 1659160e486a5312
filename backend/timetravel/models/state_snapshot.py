"""StateSnapshot ORM: full, incremental or branch snapshot node.

Invariants:
    - full and branch snapshots carry a complete payload in state_data
    - incremental snapshots carry a merge-patch against parent_snapshot_id
    - Parent pointers form a DAG; every incremental chain ends at a full snapshot
    - Immutable once written
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Text, DateTime, ForeignKey, JSON
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import UUID

from timetravel.db.base import Base


class StateSnapshot(Base):
    __tablename__ = "state_snapshots"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    session_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    snapshot_type: Mapped[str] = mapped_column(String(20), nullable=False)
    state_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    parent_snapshot_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("state_snapshots.id", ondelete="SET NULL"),
        nullable=True,
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
