"""TimelineBranch ORM: MCTS/timeline metadata overlay on a Branch.

Invariants:
    - At most one overlay per branch (branch_id is the primary key)
    - visit_count / total_value mirror the branch's SearchNode and are only ever
      changed by atomic increments
    - ucb_score is null until the branch has been visited
"""

import uuid

from sqlalchemy import Integer, Float, Boolean, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import UUID

from timetravel.db.base import Base


class TimelineBranch(Base):
    __tablename__ = "timeline_branches"

    branch_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("branches.id", ondelete="CASCADE"),
        primary_key=True,
    )
    timeline_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("timelines.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    depth: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    visit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    ucb_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    counterfactual_impact: Mapped[float | None] = mapped_column(Float, nullable=True)
    mcts_generated: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False,
    )
    alternatives_explored: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0,
    )
