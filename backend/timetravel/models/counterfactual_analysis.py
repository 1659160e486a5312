"""CounterfactualAnalysis ORM: result of one "what-if" analysis.

Invariants:
    - Written once, in the same transaction as its counterfactual branch and cross ref
    - intervention holds {"type", "payload"}; comparison holds the structured comparison
    - causal_attribution and confidence in [0.0, 1.0]
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Text, Float, DateTime, ForeignKey, JSON
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import UUID

from timetravel.db.base import Base


class CounterfactualAnalysis(Base):
    __tablename__ = "counterfactual_analyses"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    session_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    timeline_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("timelines.id", ondelete="SET NULL"),
        nullable=True,
    )
    original_branch_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("branches.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    counterfactual_branch_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("branches.id", ondelete="SET NULL"),
        nullable=True,
    )
    target_thought_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("thoughts.id", ondelete="SET NULL"),
        nullable=True,
    )
    question: Mapped[str | None] = mapped_column(Text, nullable=True)
    intervention_type: Mapped[str] = mapped_column(String(20), nullable=False)
    intervention: Mapped[dict] = mapped_column(JSON, nullable=False)
    outcome_delta: Mapped[float] = mapped_column(Float, nullable=False)
    causal_attribution: Mapped[float] = mapped_column(Float, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    comparison: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
