"""Session Lifecycle: tests for create, fetch and cascading delete.

Tests cover:
    - create_session validates the mode
    - delete_session removes branches, thoughts, snapshots, timelines and search nodes
    - delete of an unknown session raises NotFoundError
"""

from uuid import uuid4

import pytest

from timetravel.core.domain_types import SnapshotKind
from timetravel.core.errors import NotFoundError, ValidationError
from timetravel.models.branch import Branch
from timetravel.models.checkpoint import Checkpoint
from timetravel.models.search_node import SearchNode
from timetravel.models.state_snapshot import StateSnapshot
from timetravel.models.thought import Thought
from timetravel.models.timeline import Timeline
from timetravel.models.timeline_branch import TimelineBranch


async def test_create_and_get(machine):
    created = await machine.sessions.create_session("mcts")
    fetched = await machine.sessions.get_session(created.id)
    assert fetched.mode == "mcts"


async def test_unknown_mode_rejected(machine):
    with pytest.raises(ValidationError):
        await machine.sessions.create_session("freeform")


async def test_get_unknown_session(machine):
    with pytest.raises(NotFoundError):
        await machine.sessions.get_session(uuid4())


async def test_delete_cascades(machine, session, count_rows):
    timeline = await machine.engine.start_timeline(session.id, "main", "root thought")
    await machine.engine.explore(timeline.id, 3)
    branch = await machine.branches.create_branch(session.id, thoughts=["side"])
    await machine.snapshots.create_checkpoint(branch.id, "cp")
    await machine.snapshots.create_snapshot(session.id, SnapshotKind.FULL, {"k": 1})
    survivor = await machine.sessions.create_session("tree")
    await machine.branches.create_branch(survivor.id)

    await machine.sessions.delete_session(session.id)

    for model in (Branch, Thought, Checkpoint, StateSnapshot, Timeline, SearchNode):
        assert await count_rows(model, session_id=session.id) == 0
    assert await count_rows(TimelineBranch) == 0
    assert await count_rows(Branch, session_id=survivor.id) == 1
    with pytest.raises(NotFoundError):
        await machine.sessions.get_session(session.id)


async def test_delete_unknown_session(machine):
    with pytest.raises(NotFoundError):
        await machine.sessions.delete_session(uuid4())
