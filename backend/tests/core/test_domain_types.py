"""Domain Types: verifies identity wrappers and enum values.

Tests:
    - NewType wrappers exist and are callable
    - Enums have expected members and serialize to string
    - Only active is a non-terminal branch state
"""

from uuid import uuid4

from timetravel.core.domain_types import (
    BranchId, NodeId, SessionId, TimelineId,
    BranchState, CrossRefType, InterventionType, SnapshotKind, SessionMode,
)


def test_identity_types_wrap_uuid():
    uid = uuid4()
    assert SessionId(uid) == uid
    assert BranchId(uid) == uid
    assert TimelineId(uid) == uid
    assert NodeId(uid) == uid


def test_branch_state_terminality():
    assert not BranchState.ACTIVE.is_terminal
    assert BranchState.COMPLETED.is_terminal
    assert BranchState.ABANDONED.is_terminal


def test_enums_serialize_to_str():
    assert CrossRefType.CONTRADICTS.value == "contradicts"
    assert SnapshotKind("incremental") is SnapshotKind.INCREMENTAL
    assert InterventionType("inject") is InterventionType.INJECT


def test_session_modes():
    assert {m.value for m in SessionMode} == {
        "tree", "timeline", "mcts", "counterfactual", "backtracking",
    }
