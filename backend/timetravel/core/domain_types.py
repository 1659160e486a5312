"""Domain Types: identity aliases and the enums that encode every valid state.

Invariants:
    - SessionId, BranchId, TimelineId, NodeId, SnapshotId wrap UUIDs
    - Reward is bounded by Settings.reward_min / reward_max (default 0.0-1.0)
    - All valid states encoded as str Enums; DB columns store .value
"""

from enum import Enum
from typing import NewType
from uuid import UUID


# ─── Identity Types ──────────────────────────────────────────────

SessionId = NewType("SessionId", UUID)
BranchId = NewType("BranchId", UUID)
ThoughtId = NewType("ThoughtId", UUID)
TimelineId = NewType("TimelineId", UUID)
NodeId = NewType("NodeId", UUID)
SnapshotId = NewType("SnapshotId", UUID)
CheckpointId = NewType("CheckpointId", UUID)


# ─── Value Types ─────────────────────────────────────────────────

Reward = NewType("Reward", float)          # Settings.reward_min-reward_max
Strength = NewType("Strength", float)      # 0.0-1.0


# ─── Enums ───────────────────────────────────────────────────────

class BranchState(str, Enum):
    """Branch lifecycle. completed and abandoned are terminal."""
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self is not BranchState.ACTIVE


class CrossRefType(str, Enum):
    """Directed relation between two branches."""
    SUPPORTS = "supports"
    CONTRADICTS = "contradicts"
    EXTENDS = "extends"
    ALTERNATIVE = "alternative"
    DEPENDS = "depends"


class SnapshotKind(str, Enum):
    """full and branch snapshots carry a complete payload; incremental carries a diff."""
    FULL = "full"
    INCREMENTAL = "incremental"
    BRANCH = "branch"


class TimelineState(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    MERGED = "merged"


class MergeStrategy(str, Enum):
    """Which side wins when two branches are merged."""
    SYNTHESIZE = "synthesize"
    PREFER_SOURCE = "prefer_source"
    PREFER_TARGET = "prefer_target"


class InterventionType(str, Enum):
    """Counterfactual intervention applied at the target thought."""
    CHANGE = "change"
    REMOVE = "remove"
    REPLACE = "replace"
    INJECT = "inject"


class SessionMode(str, Enum):
    """Reasoning mode a session was opened in."""
    TREE = "tree"
    TIMELINE = "timeline"
    MCTS = "mcts"
    COUNTERFACTUAL = "counterfactual"
    BACKTRACKING = "backtracking"
