"""Snapshot Store: checkpoints, full/incremental snapshots, resolution and restore.

Invariants:
    - Checkpoints and snapshots are immutable once written
    - resolve() of an incremental snapshot walks to the nearest full snapshot and applies
      merge-patches root to leaf; CorruptChainError if that takes more than
      max_snapshot_chain hops or the chain ends anywhere but a full snapshot
    - Resolving the same snapshot twice gives payloads with identical canonical bytes
    - restore never mutates the source record or its branch: it creates a new active
      root branch carrying the resolved payload
    - Timeline.active_branch_id is only written under the session's write lock

Design Decisions:
    - Payloads are deep-copied on the way in and out, so callers cannot alias stored JSON
    - Each restore also writes a "branch" snapshot of the restored payload, giving an
      audit trail of time-travel jumps that is itself restorable
"""

import copy
import logging
from contextlib import nullcontext
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timetravel.config import Settings
from timetravel.core.domain_types import SnapshotKind, TimelineState
from timetravel.core.errors import (
    CorruptChainError, ErrorContext, NotFoundError, ValidationError,
)
from timetravel.core.snapshot_diff import make_patch, materialize
from timetravel.infrastructure.database import DatabaseSessionManager
from timetravel.infrastructure.locks import SessionWriteLocks
from timetravel.models.branch import Branch
from timetravel.models.checkpoint import Checkpoint
from timetravel.models.session import ReasoningSession
from timetravel.models.state_snapshot import StateSnapshot
from timetravel.models.timeline import Timeline
from timetravel.models.timeline_branch import TimelineBranch
from timetravel.services.branch_store import BranchStore

logger = logging.getLogger(__name__)

# Snapshot kinds whose state_data is a complete payload.
_SELF_CONTAINED = (SnapshotKind.FULL.value, SnapshotKind.BRANCH.value)


class SnapshotStore:
    """Owns checkpoints and the snapshot DAG."""

    def __init__(
        self,
        db: DatabaseSessionManager,
        branches: BranchStore,
        settings: Settings,
        locks: SessionWriteLocks,
    ):
        self.db = db
        self.branches = branches
        self.settings = settings
        self.locks = locks

    # ─── Writes ─────────────────────────────────────────────────

    async def create_checkpoint(
        self,
        branch_id: UUID,
        name: str,
        payload: dict | None = None,
        description: str | None = None,
    ) -> Checkpoint:
        """Checkpoint a branch; without a payload, capture its current thought prefix."""
        if not name:
            raise ValidationError("Checkpoint name must not be empty", "name")
        if payload is not None and not isinstance(payload, dict):
            raise ValidationError("Checkpoint payload must be a JSON object", "payload")

        async with self.db.transaction() as db:
            branch = await db.get(Branch, branch_id)
            if branch is None:
                raise NotFoundError("Branch", branch_id)
            if payload is None:
                prefix = await self.branches.thought_prefix_tx(db, branch_id)
                payload = {
                    "branch_id": str(branch_id),
                    "thoughts": [t.content for t in prefix],
                    "captured_at": datetime.now(timezone.utc).isoformat(),
                }
            checkpoint = Checkpoint(
                session_id=branch.session_id,
                branch_id=branch.id,
                name=name,
                description=description,
                snapshot=copy.deepcopy(payload),
            )
            db.add(checkpoint)
            await db.flush()

        logger.info(
            f"Checkpoint '{name}' created",
            extra={"session_id": branch.session_id, "branch_id": branch_id},
        )
        return checkpoint

    async def create_snapshot(
        self,
        session_id: UUID,
        kind: SnapshotKind | str,
        payload: dict,
        parent_snapshot_id: UUID | None = None,
        description: str | None = None,
    ) -> StateSnapshot:
        """Write a snapshot. For incremental snapshots, payload is a merge-patch."""
        try:
            kind = SnapshotKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown snapshot kind '{kind}'", "kind")
        if not isinstance(payload, dict):
            raise ValidationError("Snapshot payload must be a JSON object", "payload")
        if kind is SnapshotKind.INCREMENTAL and parent_snapshot_id is None:
            raise ValidationError(
                "Incremental snapshots require a parent snapshot", "parent_snapshot_id",
            )

        async with self.db.transaction() as db:
            if await db.get(ReasoningSession, session_id) is None:
                raise NotFoundError("Session", session_id)
            if parent_snapshot_id is not None:
                parent = await self._require_snapshot(db, parent_snapshot_id)
                if parent.session_id != session_id:
                    raise ValidationError(
                        "Parent snapshot belongs to another session", "parent_snapshot_id",
                    )
                await self._resolve_tx(db, parent)

            snapshot = StateSnapshot(
                session_id=session_id,
                snapshot_type=kind.value,
                state_data=copy.deepcopy(payload),
                parent_snapshot_id=parent_snapshot_id,
                description=description,
            )
            db.add(snapshot)
            await db.flush()

        logger.info(
            f"{kind.value} snapshot created",
            extra={"session_id": session_id, "snapshot_id": snapshot.id},
        )
        return snapshot

    # ─── Resolution ─────────────────────────────────────────────

    async def resolve(self, snapshot_id: UUID) -> dict:
        """Fully materialized payload of a snapshot."""
        async with self.db.session() as db:
            snapshot = await self._require_snapshot(db, snapshot_id)
            return await self._resolve_tx(db, snapshot)

    async def _resolve_tx(self, db: AsyncSession, snapshot: StateSnapshot) -> dict:
        if snapshot.snapshot_type in _SELF_CONTAINED:
            return copy.deepcopy(snapshot.state_data)

        diffs = [snapshot.state_data]
        seen = {snapshot.id}
        parent_id = snapshot.parent_snapshot_id
        for _ in range(self.settings.max_snapshot_chain):
            if parent_id is None:
                raise CorruptChainError(snapshot.id, "chain ends without a full snapshot")
            if parent_id in seen:
                raise CorruptChainError(snapshot.id, f"cycle at '{parent_id}'")
            seen.add(parent_id)
            parent = await db.get(StateSnapshot, parent_id)
            if parent is None:
                raise CorruptChainError(snapshot.id, f"missing parent '{parent_id}'")
            if parent.snapshot_type == SnapshotKind.FULL.value:
                return materialize(parent.state_data, list(reversed(diffs)))
            if parent.snapshot_type != SnapshotKind.INCREMENTAL.value:
                raise CorruptChainError(
                    snapshot.id, f"chain passes through a {parent.snapshot_type} snapshot",
                )
            diffs.append(parent.state_data)
            parent_id = parent.parent_snapshot_id
        raise CorruptChainError(
            snapshot.id, f"no full snapshot within {self.settings.max_snapshot_chain} hops",
        )

    # ─── Restore ────────────────────────────────────────────────

    async def restore_checkpoint(
        self, checkpoint_id: UUID, timeline_id: UUID | None = None,
    ) -> Branch:
        async with self.db.session() as db:
            checkpoint = await db.get(Checkpoint, checkpoint_id)
            if checkpoint is None:
                raise NotFoundError("Checkpoint", checkpoint_id)
        return await self._restore(
            checkpoint.session_id,
            checkpoint.snapshot,
            f"checkpoint '{checkpoint.name}' ({checkpoint.id})",
            timeline_id,
        )

    async def restore_snapshot(
        self, snapshot_id: UUID, timeline_id: UUID | None = None,
    ) -> Branch:
        async with self.db.session() as db:
            snapshot = await self._require_snapshot(db, snapshot_id)
            payload = await self._resolve_tx(db, snapshot)
        return await self._restore(
            snapshot.session_id, payload, f"snapshot {snapshot.id}", timeline_id,
        )

    async def restore(
        self, record: Checkpoint | StateSnapshot, timeline_id: UUID | None = None,
    ) -> Branch:
        """Restore either kind of record."""
        if isinstance(record, Checkpoint):
            return await self.restore_checkpoint(record.id, timeline_id)
        if isinstance(record, StateSnapshot):
            return await self.restore_snapshot(record.id, timeline_id)
        raise ValidationError(
            f"Cannot restore a {type(record).__name__}", "record",
        )

    async def _restore(
        self,
        session_id: UUID,
        payload: dict,
        source: str,
        timeline_id: UUID | None,
    ) -> Branch:
        lock = self.locks.for_session(session_id) if timeline_id else nullcontext()
        async with lock:
            async with self.db.transaction() as db:
                timeline = None
                if timeline_id is not None:
                    timeline = await self._require_active_timeline(db, timeline_id, session_id)

                thoughts = payload.get("thoughts")
                branch = await self.branches.create_branch_tx(
                    db,
                    session_id,
                    name=f"restored from {source}"[:200],
                    thoughts=[str(t) for t in thoughts] if isinstance(thoughts, list) else (),
                    payload=copy.deepcopy(payload),
                )
                db.add(StateSnapshot(
                    session_id=session_id,
                    snapshot_type=SnapshotKind.BRANCH.value,
                    state_data=copy.deepcopy(payload),
                    description=f"restore of {source} into branch {branch.id}",
                ))
                if timeline is not None:
                    db.add(TimelineBranch(
                        branch_id=branch.id, timeline_id=timeline.id, depth=0,
                    ))
                    timeline.active_branch_id = branch.id
                    timeline.branch_count += 1
                await db.flush()

        logger.info(
            f"Restored {source}",
            extra={
                "session_id": session_id,
                "branch_id": branch.id,
                "timeline_id": timeline_id,
            },
        )
        return branch

    # ─── Queries ────────────────────────────────────────────────

    async def list_checkpoints(
        self, session_id: UUID, branch_id: UUID | None = None,
    ) -> list[Checkpoint]:
        async with self.db.session() as db:
            query = (
                select(Checkpoint)
                .where(Checkpoint.session_id == session_id)
                .order_by(Checkpoint.created_at)
            )
            if branch_id is not None:
                query = query.where(Checkpoint.branch_id == branch_id)
            result = await db.execute(query)
            return list(result.scalars().all())

    async def list_snapshots(self, session_id: UUID) -> list[StateSnapshot]:
        async with self.db.session() as db:
            result = await db.execute(
                select(StateSnapshot)
                .where(StateSnapshot.session_id == session_id)
                .order_by(StateSnapshot.created_at)
            )
            return list(result.scalars().all())

    @staticmethod
    def diff_payloads(base: dict, target: dict) -> dict:
        """Merge-patch to store as an incremental snapshot of target over base."""
        return make_patch(base, target)

    # ─── Helpers ────────────────────────────────────────────────

    async def _require_snapshot(self, db: AsyncSession, snapshot_id: UUID) -> StateSnapshot:
        snapshot = await db.get(StateSnapshot, snapshot_id)
        if snapshot is None:
            raise NotFoundError("StateSnapshot", snapshot_id)
        return snapshot

    async def _require_active_timeline(
        self, db: AsyncSession, timeline_id: UUID, session_id: UUID,
    ) -> Timeline:
        result = await db.execute(
            select(Timeline).where(Timeline.id == timeline_id).with_for_update()
        )
        timeline = result.scalar_one_or_none()
        if timeline is None:
            raise NotFoundError("Timeline", timeline_id)
        if timeline.session_id != session_id:
            raise ValidationError(
                "Timeline belongs to another session", "timeline_id",
                ErrorContext(session_id=str(session_id), timeline_id=str(timeline_id)),
            )
        if timeline.state != TimelineState.ACTIVE.value:
            raise ValidationError(
                f"Timeline is {timeline.state}", "timeline_id",
            )
        return timeline
