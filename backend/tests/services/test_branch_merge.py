"""Branch Merge and Compare: tests for merge_branches and compare_branches.

Tests cover:
    - compare_branches splits paths at the divergence point and recommends the better mean
    - merge_branches adds a "Merged" child under the target with the synthesized thought
    - the timeline moves to merged and refuses step, advance, archive and further merges
    - oracle failure or an empty reply persists nothing and leaves the timeline active
    - branches outside any timeline merge without a timeline transition
    - validation: self-merge, cross-session, unknown strategy, missing branch
"""

from uuid import uuid4

import pytest

from timetravel.core.errors import (
    EvaluationFailedError, NotFoundError, OracleUnavailableError, ValidationError,
)
from timetravel.models.branch import Branch
from timetravel.models.timeline_branch import TimelineBranch


def _poor_first_child(prefix):
    return 0.05 if "step 1.0" in prefix else 0.9


async def _two_explored_children(machine, session, oracle):
    """Timeline whose root has children step 1.0 (reward 0.05) and step 1.1 (reward 0.9)."""
    oracle.reward_fn = _poor_first_child
    timeline = await machine.engine.start_timeline(session.id, "main", "root")
    first = await machine.engine.step(timeline.id)
    await machine.engine.step(timeline.id)
    poor, good, _ = first.expanded_branch_ids
    return timeline, poor, good


# ─── compare_branches ────────────────────────────────────────────

async def test_compare_siblings(machine, session, oracle):
    _, poor, good = await _two_explored_children(machine, session, oracle)

    comparison = await machine.engine.compare_branches(poor, good)

    assert comparison.shared_prefix == ["root"]
    assert comparison.divergence_index == 1
    assert comparison.a_only == ["step 1.0"]
    assert comparison.b_only == ["step 1.1"]
    assert comparison.a_visits == 1 and comparison.b_visits == 1
    assert comparison.a_mean_value == pytest.approx(0.05)
    assert comparison.b_mean_value == pytest.approx(0.9)
    assert comparison.recommended_branch_id == good


async def test_compare_unvisited_branches_recommends_nothing(machine, session):
    a = await machine.branches.create_branch(session.id, thoughts=["x"])
    b = await machine.branches.create_branch(session.id, thoughts=["y"])
    comparison = await machine.engine.compare_branches(a.id, b.id)
    assert comparison.divergence_index == 0
    assert comparison.recommended_branch_id is None
    assert comparison.a_mean_value is None


async def test_compare_rejects_empty_and_foreign_branches(machine, session):
    a = await machine.branches.create_branch(session.id)
    b = await machine.branches.create_branch(session.id)
    with pytest.raises(ValidationError):
        await machine.engine.compare_branches(a.id, b.id)
    with pytest.raises(ValidationError):
        await machine.engine.compare_branches(a.id, a.id)

    other = await machine.sessions.create_session("tree")
    foreign = await machine.branches.create_branch(other.id, thoughts=["z"])
    with pytest.raises(ValidationError):
        await machine.engine.compare_branches(a.id, foreign.id)
    with pytest.raises(NotFoundError):
        await machine.engine.compare_branches(a.id, uuid4())


# ─── merge_branches ──────────────────────────────────────────────

async def test_merge_creates_child_of_target(machine, session, oracle, db_manager):
    timeline, poor, good = await _two_explored_children(machine, session, oracle)

    result = await machine.engine.merge_branches(poor, good, "prefer_source")

    prefix, n = oracle.generate_calls[-1]
    assert n == 1
    assert prefix[:2] == ["root", "step 1.1"]
    assert "Prefer insights from the source path" in prefix[-1]
    assert prefix[-1].endswith("root\n---\nstep 1.0")

    merged = await machine.branches.get_branch(result.merged_branch_id)
    assert merged.parent_branch_id == good
    assert merged.name == "Merged"
    assert merged.confidence == pytest.approx(0.9)
    thoughts = await machine.branches.thought_prefix(merged.id)
    assert [t.content for t in thoughts] == ["root", "step 1.1", result.content]

    refs = await machine.branches.list_cross_refs(merged.id)
    assert [(r.to_branch_id, r.ref_type) for r in refs] == [(poor, "depends")]

    async with db_manager.session() as db:
        overlay = await db.get(TimelineBranch, merged.id)
    assert overlay.timeline_id == timeline.id
    assert overlay.depth == 2


async def test_merge_marks_timeline_merged(machine, session, oracle):
    timeline, poor, good = await _two_explored_children(machine, session, oracle)
    before = await machine.engine.get_timeline(timeline.id)

    result = await machine.engine.merge_branches(poor, good)

    assert result.timeline_id == timeline.id
    assert result.timeline_state == "merged"
    refreshed = await machine.engine.get_timeline(timeline.id)
    assert refreshed.state == "merged"
    assert refreshed.branch_count == before.branch_count + 1
    with pytest.raises(ValidationError):
        await machine.engine.step(timeline.id)
    with pytest.raises(ValidationError):
        await machine.engine.advance(timeline.id, good)
    with pytest.raises(ValidationError):
        await machine.engine.archive_timeline(timeline.id)
    with pytest.raises(ValidationError):
        await machine.engine.merge_branches(good, poor)


async def test_merge_oracle_failure_persists_nothing(machine, session, oracle, count_rows):
    timeline, poor, good = await _two_explored_children(machine, session, oracle)
    branches_before = await count_rows(Branch, session_id=session.id)
    oracle.fail_with = OracleUnavailableError("generate_continuations", "down")

    with pytest.raises(EvaluationFailedError):
        await machine.engine.merge_branches(poor, good)

    assert await count_rows(Branch, session_id=session.id) == branches_before
    assert (await machine.engine.get_timeline(timeline.id)).state == "active"

    oracle.fail_with = None
    result = await machine.engine.merge_branches(poor, good)
    assert result.timeline_state == "merged"


async def test_merge_empty_reply_persists_nothing(machine, session, oracle, count_rows):
    timeline, poor, good = await _two_explored_children(machine, session, oracle)
    branches_before = await count_rows(Branch, session_id=session.id)
    oracle.empty = True

    with pytest.raises(EvaluationFailedError):
        await machine.engine.merge_branches(poor, good)

    assert await count_rows(Branch, session_id=session.id) == branches_before
    assert (await machine.engine.get_timeline(timeline.id)).state == "active"


async def test_merge_outside_timeline(machine, session):
    source = await machine.branches.create_branch(session.id, thoughts=["s"])
    target = await machine.branches.create_branch(session.id, thoughts=["t"])

    result = await machine.engine.merge_branches(source.id, target.id, "synthesize")

    assert result.timeline_id is None
    assert result.timeline_state is None
    merged = await machine.branches.get_branch(result.merged_branch_id)
    assert merged.parent_branch_id == target.id


async def test_merge_validation(machine, session):
    a = await machine.branches.create_branch(session.id, thoughts=["a"])
    b = await machine.branches.create_branch(session.id, thoughts=["b"])
    with pytest.raises(ValidationError):
        await machine.engine.merge_branches(a.id, a.id)
    with pytest.raises(ValidationError):
        await machine.engine.merge_branches(a.id, b.id, "coin_flip")
    with pytest.raises(NotFoundError):
        await machine.engine.merge_branches(uuid4(), b.id)

    other = await machine.sessions.create_session("tree")
    foreign = await machine.branches.create_branch(other.id, thoughts=["c"])
    with pytest.raises(ValidationError):
        await machine.engine.merge_branches(a.id, foreign.id)
