"""Branch ORM: one path of a tree-mode exploration.

Invariants:
    - parent_branch_id is null (a root) or references a branch of the same session
    - Following parent pointers always reaches a root (enforced by BranchStore.create_branch)
    - state is a BranchState value; completed and abandoned are terminal
    - Deleting a parent nulls parent_branch_id here instead of deleting the child

Design Decisions:
    - No timeline_id column: ownership is the timeline_branches overlay, which avoids a
      branches <-> timelines foreign-key cycle
    - payload holds the resolved state of a restored branch (null for ordinary branches)
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Float, DateTime, ForeignKey, JSON
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import UUID

from timetravel.db.base import Base


class Branch(Base):
    """Node of the branch forest."""
    __tablename__ = "branches"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    session_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    parent_branch_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("branches.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    priority: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.8)
    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default="active",
    )
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
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
