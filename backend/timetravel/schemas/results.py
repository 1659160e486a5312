"""Result Schemas: Pydantic shapes returned by engine and analyzer operations.

Invariants:
    - Every id is the UUID of a persisted record
    - StepResult.path is the search path root -> simulated node, the same order as branch_path

Design Decisions:
    - Pydantic over dataclasses: results serialize with model_dump(mode="json") for
      whatever transport sits above the core
"""

from uuid import UUID

from pydantic import BaseModel, Field

from timetravel.core.domain_types import InterventionType, MergeStrategy


class Intervention(BaseModel):
    """What-if edit applied at the target thought."""
    type: InterventionType
    payload: str | None = None


class StepResult(BaseModel):
    """Outcome of one selection/expansion/simulation/backprop pass."""
    timeline_id: UUID
    selected_node_id: UUID
    simulated_node_id: UUID
    simulated_branch_id: UUID
    reward: float
    path: list[UUID]
    expanded_branch_ids: list[UUID] = Field(default_factory=list)
    terminal: bool = False
    completed_branch_ids: list[UUID] = Field(default_factory=list)
    abandoned_branch_ids: list[UUID] = Field(default_factory=list)


class ExploreResult(BaseModel):
    """Aggregate of an explore() run."""
    timeline_id: UUID
    iterations: int
    succeeded: int
    failed: int
    rewards: list[float] = Field(default_factory=list)
    error_codes: list[str] = Field(default_factory=list)
    best_path: list[UUID] = Field(default_factory=list)


class AlternativePath(BaseModel):
    from_node_id: UUID
    branch_id: UUID
    direction: str
    expected_improvement: float


class BacktrackAdvice(BaseModel):
    """Advisory result of auto_backtrack; nothing is mutated."""
    timeline_id: UUID
    should_backtrack: bool
    reason: str
    current_branch_id: UUID | None = None
    current_confidence: float = 0.0
    current_reward: float = 0.0
    backtrack_to_branch_id: UUID | None = None
    alternatives: list[AlternativePath] = Field(default_factory=list)


class BranchComparison(BaseModel):
    """Two thought paths split at their divergence point, with search statistics."""
    branch_a_id: UUID
    branch_b_id: UUID
    shared_prefix: list[str]
    divergence_index: int
    a_only: list[str]
    b_only: list[str]
    a_visits: int = 0
    b_visits: int = 0
    a_mean_value: float | None = None
    b_mean_value: float | None = None
    recommended_branch_id: UUID | None = None


class MergeResult(BaseModel):
    merged_branch_id: UUID
    source_branch_id: UUID
    target_branch_id: UUID
    strategy: MergeStrategy
    content: str
    timeline_id: UUID | None = None
    timeline_state: str | None = None
