"""SearchNode ORM: one node of the MCTS search tree, aligned 1:1 with a Branch.

Invariants:
    - At most one node per branch; a branch may have none (e.g. a restored branch)
    - parent_node_id mirrors the branch's parent_branch_id, so the node path and the
      branch path are the same sequence
    - visit_count / total_value change only through atomic increments during backprop
    - is_expanded flips false -> true exactly once (compare-and-set claim)
    - ucb_score is null while visit_count == 0 (unbounded priority); refreshed on every
      backpropagation through the node or its parent
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Text, Integer, Float, Boolean, DateTime, ForeignKey,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import UUID

from timetravel.db.base import Base


class SearchNode(Base):
    """MCTS node."""
    __tablename__ = "mcts_nodes"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    session_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    timeline_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("timelines.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    branch_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("branches.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    parent_node_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("mcts_nodes.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    visit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    prior: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    ucb_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_expanded: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False,
    )
    is_terminal: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False,
    )
    simulation_depth: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_visited: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
