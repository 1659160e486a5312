"""Initial schema: sessions, branch forest, snapshots, timelines, search tree, analyses.

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-16

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _session_fk() -> sa.Column:
    return sa.Column(
        "session_id", UUID(as_uuid=True),
        sa.ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False,
    )


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(),
    )


def upgrade() -> None:
    op.create_table(
        "sessions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("mode", sa.String(20), nullable=False, server_default="tree"),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "branches",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _session_fk(),
        sa.Column(
            "parent_branch_id", UUID(as_uuid=True),
            sa.ForeignKey("branches.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("name", sa.String(200), nullable=True),
        sa.Column("priority", sa.Float, nullable=False, server_default="1.0"),
        sa.Column("confidence", sa.Float, nullable=False, server_default="0.8"),
        sa.Column("state", sa.String(20), nullable=False, server_default="active"),
        sa.Column("payload", sa.JSON, nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_branches_session_id", "branches", ["session_id"])
    op.create_index("ix_branches_parent_branch_id", "branches", ["parent_branch_id"])

    op.create_table(
        "thoughts",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _session_fk(),
        sa.Column(
            "branch_id", UUID(as_uuid=True),
            sa.ForeignKey("branches.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("sequence", sa.Integer, nullable=False),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("confidence", sa.Float, nullable=False, server_default="0.8"),
        _created_at(),
        sa.UniqueConstraint("branch_id", "sequence", name="uq_thoughts_branch_sequence"),
    )
    op.create_index("ix_thoughts_branch_id", "thoughts", ["branch_id"])

    op.create_table(
        "cross_refs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _session_fk(),
        sa.Column(
            "from_branch_id", UUID(as_uuid=True),
            sa.ForeignKey("branches.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "to_branch_id", UUID(as_uuid=True),
            sa.ForeignKey("branches.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("ref_type", sa.String(20), nullable=False),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("strength", sa.Float, nullable=False, server_default="1.0"),
        _created_at(),
    )
    op.create_index("ix_cross_refs_from_branch_id", "cross_refs", ["from_branch_id"])
    op.create_index("ix_cross_refs_to_branch_id", "cross_refs", ["to_branch_id"])

    op.create_table(
        "checkpoints",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _session_fk(),
        sa.Column(
            "branch_id", UUID(as_uuid=True),
            sa.ForeignKey("branches.id", ondelete="CASCADE"), nullable=True,
        ),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("snapshot", sa.JSON, nullable=False),
        _created_at(),
    )
    op.create_index("ix_checkpoints_session_id", "checkpoints", ["session_id"])
    op.create_index("ix_checkpoints_branch_id", "checkpoints", ["branch_id"])

    op.create_table(
        "state_snapshots",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _session_fk(),
        sa.Column("snapshot_type", sa.String(20), nullable=False),
        sa.Column("state_data", sa.JSON, nullable=False),
        sa.Column(
            "parent_snapshot_id", UUID(as_uuid=True),
            sa.ForeignKey("state_snapshots.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("description", sa.Text, nullable=True),
        _created_at(),
    )
    op.create_index("ix_state_snapshots_session_id", "state_snapshots", ["session_id"])

    op.create_table(
        "timelines",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _session_fk(),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column(
            "root_branch_id", UUID(as_uuid=True),
            sa.ForeignKey("branches.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column(
            "active_branch_id", UUID(as_uuid=True),
            sa.ForeignKey("branches.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("state", sa.String(20), nullable=False, server_default="active"),
        sa.Column("branch_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_depth", sa.Integer, nullable=False, server_default="0"),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_timelines_session_id", "timelines", ["session_id"])

    op.create_table(
        "timeline_branches",
        sa.Column(
            "branch_id", UUID(as_uuid=True),
            sa.ForeignKey("branches.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column(
            "timeline_id", UUID(as_uuid=True),
            sa.ForeignKey("timelines.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("depth", sa.Integer, nullable=False, server_default="0"),
        sa.Column("visit_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_value", sa.Float, nullable=False, server_default="0"),
        sa.Column("ucb_score", sa.Float, nullable=True),
        sa.Column("counterfactual_impact", sa.Float, nullable=True),
        sa.Column("mcts_generated", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("alternatives_explored", sa.Integer, nullable=False, server_default="0"),
    )
    op.create_index("ix_timeline_branches_timeline_id", "timeline_branches", ["timeline_id"])

    op.create_table(
        "mcts_nodes",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _session_fk(),
        sa.Column(
            "timeline_id", UUID(as_uuid=True),
            sa.ForeignKey("timelines.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "branch_id", UUID(as_uuid=True),
            sa.ForeignKey("branches.id", ondelete="CASCADE"), nullable=False, unique=True,
        ),
        sa.Column(
            "parent_node_id", UUID(as_uuid=True),
            sa.ForeignKey("mcts_nodes.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("content", sa.Text, nullable=False, server_default=""),
        sa.Column("visit_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_value", sa.Float, nullable=False, server_default="0"),
        sa.Column("prior", sa.Float, nullable=False, server_default="0.5"),
        sa.Column("ucb_score", sa.Float, nullable=True),
        sa.Column("is_expanded", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_terminal", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("simulation_depth", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_visited", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index("ix_mcts_nodes_timeline_id", "mcts_nodes", ["timeline_id"])
    op.create_index("ix_mcts_nodes_parent_node_id", "mcts_nodes", ["parent_node_id"])

    op.create_table(
        "counterfactual_analyses",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _session_fk(),
        sa.Column(
            "timeline_id", UUID(as_uuid=True),
            sa.ForeignKey("timelines.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column(
            "original_branch_id", UUID(as_uuid=True),
            sa.ForeignKey("branches.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "counterfactual_branch_id", UUID(as_uuid=True),
            sa.ForeignKey("branches.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column(
            "target_thought_id", UUID(as_uuid=True),
            sa.ForeignKey("thoughts.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("question", sa.Text, nullable=True),
        sa.Column("intervention_type", sa.String(20), nullable=False),
        sa.Column("intervention", sa.JSON, nullable=False),
        sa.Column("outcome_delta", sa.Float, nullable=False),
        sa.Column("causal_attribution", sa.Float, nullable=False),
        sa.Column("confidence", sa.Float, nullable=False),
        sa.Column("comparison", sa.JSON, nullable=False),
        _created_at(),
    )
    op.create_index(
        "ix_counterfactual_analyses_original_branch_id",
        "counterfactual_analyses", ["original_branch_id"],
    )


def downgrade() -> None:
    op.drop_table("counterfactual_analyses")
    op.drop_table("mcts_nodes")
    op.drop_table("timeline_branches")
    op.drop_table("timelines")
    op.drop_table("state_snapshots")
    op.drop_table("checkpoints")
    op.drop_table("cross_refs")
    op.drop_table("thoughts")
    op.drop_table("branches")
    op.drop_table("sessions")
