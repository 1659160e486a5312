"""Snapshot Store: tests for checkpoints, snapshot chains, resolution and restore.

Tests cover:
    - Checkpoint capture of a branch's thought prefix
    - Checkpoint, abandon, restore: new active branch, source untouched
    - Incremental chains resolve deterministically (identical canonical bytes)
    - Corrupt chains: cycle, missing full root, branch snapshot mid-chain, hop bound
    - Restore into a timeline moves the active branch and writes an audit snapshot
"""

from uuid import uuid4

import pytest
from sqlalchemy import delete, update

from timetravel.core.domain_types import SnapshotKind
from timetravel.core.errors import (
    CorruptChainError, NotFoundError, ValidationError,
)
from timetravel.core.snapshot_diff import canonical_bytes
from timetravel.models.state_snapshot import StateSnapshot
from timetravel.services.time_machine import TimeMachine

from tests.services.conftest import make_settings


async def _chain(machine, session_id, depth):
    """Full snapshot followed by `depth` incremental snapshots; returns (ids, expected)."""
    state = {"thoughts": ["t0"], "meta": {"score": 0.0, "tags": ["start"]}}
    full = await machine.snapshots.create_snapshot(session_id, "full", state)
    ids = [full.id]
    for step in range(1, depth + 1):
        target = {
            "thoughts": state["thoughts"] + [f"t{step}"],
            "meta": {"score": step / 10, "tags": state["meta"]["tags"]},
        }
        if step >= 2:
            target["note"] = "midway"
        patch = machine.snapshots.diff_payloads(state, target)
        snap = await machine.snapshots.create_snapshot(
            session_id, SnapshotKind.INCREMENTAL, patch, parent_snapshot_id=ids[-1],
        )
        ids.append(snap.id)
        state = target
    return ids, state


# ─── Checkpoints ─────────────────────────────────────────────────

async def test_checkpoint_captures_prefix(machine, session):
    root = await machine.branches.create_branch(session.id, thoughts=["a"])
    child = await machine.branches.create_branch(session.id, parent_id=root.id, thoughts=["b"])
    checkpoint = await machine.snapshots.create_checkpoint(child.id, "before pivot")
    assert checkpoint.snapshot["thoughts"] == ["a", "b"]
    assert checkpoint.snapshot["branch_id"] == str(child.id)
    listed = await machine.snapshots.list_checkpoints(session.id, branch_id=child.id)
    assert [c.id for c in listed] == [checkpoint.id]


async def test_checkpoint_requires_name(machine, session):
    branch = await machine.branches.create_branch(session.id)
    with pytest.raises(ValidationError):
        await machine.snapshots.create_checkpoint(branch.id, "")


async def test_checkpoint_abandon_restore(machine, session):
    branch = await machine.branches.create_branch(session.id, thoughts=["a", "b"])
    checkpoint = await machine.snapshots.create_checkpoint(
        branch.id, "cp", payload={"thoughts": ["a", "b"], "focus": "b"},
    )
    await machine.branches.transition(branch.id, "abandoned")

    restored = await machine.snapshots.restore(checkpoint)

    assert restored.id != branch.id
    assert restored.state == "active"
    assert restored.parent_branch_id is None
    assert restored.payload == {"thoughts": ["a", "b"], "focus": "b"}
    prefix = await machine.branches.thought_prefix(restored.id)
    assert [t.content for t in prefix] == ["a", "b"]
    assert (await machine.branches.get_branch(branch.id)).state == "abandoned"
    listed = await machine.snapshots.list_checkpoints(session.id)
    assert listed[0].snapshot == {"thoughts": ["a", "b"], "focus": "b"}


async def test_restore_unknown_checkpoint(machine):
    with pytest.raises(NotFoundError):
        await machine.snapshots.restore_checkpoint(uuid4())


async def test_restore_writes_branch_snapshot(machine, session):
    branch = await machine.branches.create_branch(session.id, thoughts=["a"])
    checkpoint = await machine.snapshots.create_checkpoint(branch.id, "cp")
    restored = await machine.snapshots.restore_checkpoint(checkpoint.id)
    snapshots = await machine.snapshots.list_snapshots(session.id)
    assert [s.snapshot_type for s in snapshots] == ["branch"]
    assert str(restored.id) in snapshots[0].description
    assert await machine.snapshots.resolve(snapshots[0].id) == checkpoint.snapshot


# ─── Snapshot chains ─────────────────────────────────────────────

async def test_incremental_chain_resolves(machine, session):
    ids, expected = await _chain(machine, session.id, 4)
    resolved = await machine.snapshots.resolve(ids[-1])
    assert resolved == expected
    assert resolved["note"] == "midway"


async def test_resolution_is_deterministic(machine, session):
    ids, _ = await _chain(machine, session.id, 3)
    first = await machine.snapshots.resolve(ids[-1])
    second = await machine.snapshots.resolve(ids[-1])
    assert canonical_bytes(first) == canonical_bytes(second)


async def test_resolved_payload_is_a_copy(machine, session):
    ids, _ = await _chain(machine, session.id, 1)
    resolved = await machine.snapshots.resolve(ids[0])
    resolved["thoughts"].append("tampered")
    assert await machine.snapshots.resolve(ids[0]) == {
        "thoughts": ["t0"], "meta": {"score": 0.0, "tags": ["start"]},
    }


async def test_incremental_requires_parent(machine, session):
    with pytest.raises(ValidationError):
        await machine.snapshots.create_snapshot(session.id, "incremental", {"a": 1})


async def test_unknown_snapshot_kind(machine, session):
    with pytest.raises(ValidationError):
        await machine.snapshots.create_snapshot(session.id, "delta", {"a": 1})


async def test_parent_from_other_session_rejected(machine, session):
    other = await machine.sessions.create_session("tree")
    full = await machine.snapshots.create_snapshot(other.id, "full", {"a": 1})
    with pytest.raises(ValidationError):
        await machine.snapshots.create_snapshot(
            session.id, "incremental", {"a": 2}, parent_snapshot_id=full.id,
        )


async def test_cycle_is_corrupt(machine, session, db_manager):
    ids, _ = await _chain(machine, session.id, 2)
    async with db_manager.transaction() as db:
        await db.execute(
            update(StateSnapshot)
            .where(StateSnapshot.id == ids[1])
            .values(parent_snapshot_id=ids[2])
        )
    with pytest.raises(CorruptChainError) as exc:
        await machine.snapshots.resolve(ids[2])
    assert "cycle" in exc.value.message


async def test_missing_full_root_is_corrupt(machine, session, db_manager):
    ids, _ = await _chain(machine, session.id, 2)
    async with db_manager.transaction() as db:
        await db.execute(delete(StateSnapshot).where(StateSnapshot.id == ids[0]))
    with pytest.raises(CorruptChainError):
        await machine.snapshots.resolve(ids[2])


async def test_branch_snapshot_mid_chain_is_corrupt(machine, session, db_manager):
    ids, _ = await _chain(machine, session.id, 2)
    async with db_manager.transaction() as db:
        await db.execute(
            update(StateSnapshot)
            .where(StateSnapshot.id == ids[1])
            .values(snapshot_type="branch")
        )
    with pytest.raises(CorruptChainError):
        await machine.snapshots.resolve(ids[2])


async def test_chain_longer_than_bound_is_corrupt(tmp_path, db_manager, oracle):
    settings = make_settings(tmp_path, max_snapshot_chain=2)
    machine = TimeMachine(db_manager, oracle, settings)
    session = await machine.sessions.create_session("tree")
    ids, _ = await _chain(machine, session.id, 3)
    with pytest.raises(CorruptChainError):
        await machine.snapshots.resolve(ids[-1])


async def test_restore_incremental_snapshot(machine, session):
    ids, expected = await _chain(machine, session.id, 3)
    restored = await machine.snapshots.restore_snapshot(ids[-1])
    assert restored.payload == expected
    prefix = await machine.branches.thought_prefix(restored.id)
    assert [t.content for t in prefix] == ["t0", "t1", "t2", "t3"]


# ─── Restore into a timeline ─────────────────────────────────────

async def test_restore_into_timeline_moves_active_branch(machine, session):
    timeline = await machine.engine.start_timeline(session.id, "main", "root")
    await machine.engine.step(timeline.id)
    checkpoint = await machine.snapshots.create_checkpoint(timeline.root_branch_id, "start")

    restored = await machine.snapshots.restore_checkpoint(checkpoint.id, timeline.id)

    refreshed = await machine.engine.get_timeline(timeline.id)
    assert refreshed.active_branch_id == restored.id
    assert refreshed.branch_count == timeline.branch_count + 3 + 1


async def test_restore_into_archived_timeline_rejected(machine, session):
    timeline = await machine.engine.start_timeline(session.id, "main", "root")
    checkpoint = await machine.snapshots.create_checkpoint(timeline.root_branch_id, "start")
    await machine.engine.archive_timeline(timeline.id)
    with pytest.raises(ValidationError):
        await machine.snapshots.restore_checkpoint(checkpoint.id, timeline.id)
