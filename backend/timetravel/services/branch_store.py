"""Branch Store: the branch forest, its state machine, cross references and thoughts.

Invariants:
    - Following parent pointers from any branch reaches a root within a hop bound equal
      to the session's branch count (checked on every create_branch)
    - A branch's parent belongs to the same session
    - active -> completed | abandoned only; terminal states are final
    - Every rejection is raised before anything is added to the session, so the
      surrounding transaction commits nothing

Design Decisions:
    - Public methods open their own transaction; the *_tx variants take an open
      AsyncSession so the snapshot store, engine and analyzer can compose them into a
      single atomic write
    - Ancestry is loaded as one {id: parent_id} map per session and walked in memory
      (core/branch_rules.py)
"""

import logging
from collections.abc import Sequence
from uuid import UUID

from sqlalchemy import select, delete, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from timetravel.core.branch_rules import check_transition, walk_ancestry
from timetravel.core.domain_types import BranchState, CrossRefType
from timetravel.core.errors import (
    ErrorContext, InvalidTransitionError, NotFoundError, ValidationError,
)
from timetravel.infrastructure.database import DatabaseSessionManager
from timetravel.models.branch import Branch
from timetravel.models.cross_ref import CrossRef
from timetravel.models.session import ReasoningSession
from timetravel.models.thought import Thought

logger = logging.getLogger(__name__)


def _check_unit_interval(value: float, field: str) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValidationError(f"{field} must be within [0, 1], got {value}", field)


class BranchStore:
    """Owns branches, cross references and branch content."""

    def __init__(self, db: DatabaseSessionManager):
        self.db = db

    # ─── Public API ──────────────────────────────────────────────

    async def create_branch(
        self,
        session_id: UUID,
        parent_id: UUID | None = None,
        priority: float = 1.0,
        confidence: float = 0.8,
        name: str | None = None,
        thoughts: Sequence[str] = (),
        branch_id: UUID | None = None,
    ) -> Branch:
        async with self.db.transaction() as db:
            return await self.create_branch_tx(
                db, session_id, parent_id=parent_id, priority=priority,
                confidence=confidence, name=name, thoughts=thoughts,
                branch_id=branch_id,
            )

    async def transition(self, branch_id: UUID, new_state: BranchState | str) -> Branch:
        async with self.db.transaction() as db:
            return await self.transition_tx(db, branch_id, new_state)

    async def add_cross_ref(
        self,
        from_id: UUID,
        to_id: UUID,
        kind: CrossRefType | str,
        strength: float = 1.0,
        reason: str | None = None,
    ) -> CrossRef:
        async with self.db.transaction() as db:
            return await self.add_cross_ref_tx(db, from_id, to_id, kind, strength, reason)

    async def branch_path(self, branch_id: UUID) -> list[Branch]:
        """Branches from the root down to branch_id, inclusive."""
        async with self.db.session() as db:
            return await self.branch_path_tx(db, branch_id)

    async def thought_prefix(self, branch_id: UUID) -> list[Thought]:
        async with self.db.session() as db:
            return await self.thought_prefix_tx(db, branch_id)

    async def append_thought(
        self, branch_id: UUID, content: str, confidence: float = 0.8,
    ) -> Thought:
        async with self.db.transaction() as db:
            return await self.append_thought_tx(db, branch_id, content, confidence)

    async def get_branch(self, branch_id: UUID) -> Branch:
        async with self.db.session() as db:
            return await self._require_branch(db, branch_id)

    async def list_branches(
        self, session_id: UUID, state: BranchState | str | None = None,
    ) -> list[Branch]:
        async with self.db.session() as db:
            query = (
                select(Branch)
                .where(Branch.session_id == session_id)
                .order_by(Branch.created_at)
            )
            if state is not None:
                query = query.where(Branch.state == self._parse_state(state).value)
            result = await db.execute(query)
            return list(result.scalars().all())

    async def list_cross_refs(self, branch_id: UUID) -> list[CrossRef]:
        """Cross references touching the branch, in either direction."""
        async with self.db.session() as db:
            result = await db.execute(
                select(CrossRef)
                .where(or_(
                    CrossRef.from_branch_id == branch_id,
                    CrossRef.to_branch_id == branch_id,
                ))
                .order_by(CrossRef.created_at)
            )
            return list(result.scalars().all())

    async def delete_branch(self, branch_id: UUID) -> None:
        """Administrative purge. Children survive as roots; content and metadata cascade."""
        async with self.db.transaction() as db:
            branch = await self._require_branch(db, branch_id)
            await db.execute(delete(Branch).where(Branch.id == branch.id))
        logger.info(
            "Branch deleted",
            extra={"session_id": branch.session_id, "branch_id": branch_id},
        )

    # ─── Transaction-scoped operations ───────────────────────────

    async def create_branch_tx(
        self,
        db: AsyncSession,
        session_id: UUID,
        parent_id: UUID | None = None,
        priority: float = 1.0,
        confidence: float = 0.8,
        name: str | None = None,
        thoughts: Sequence[str] = (),
        branch_id: UUID | None = None,
        payload: dict | None = None,
    ) -> Branch:
        if await db.get(ReasoningSession, session_id) is None:
            raise NotFoundError("Session", session_id)
        _check_unit_interval(confidence, "confidence")
        if priority < 0:
            raise ValidationError(f"priority must be non-negative, got {priority}", "priority")

        if parent_id is not None:
            await self._check_parent(db, session_id, parent_id, branch_id)
        if branch_id is not None and await db.get(Branch, branch_id) is not None:
            raise ValidationError(f"Branch '{branch_id}' already exists", "branch_id")

        branch = Branch(
            session_id=session_id,
            parent_branch_id=parent_id,
            name=name,
            priority=priority,
            confidence=confidence,
            state=BranchState.ACTIVE.value,
            payload=payload,
        )
        if branch_id is not None:
            branch.id = branch_id
        db.add(branch)
        await db.flush()

        for sequence, content in enumerate(thoughts):
            db.add(Thought(
                session_id=session_id,
                branch_id=branch.id,
                sequence=sequence,
                content=content,
                confidence=confidence,
            ))
        if thoughts:
            await db.flush()

        logger.info(
            "Branch created",
            extra={"session_id": session_id, "branch_id": branch.id},
        )
        return branch

    async def transition_tx(
        self, db: AsyncSession, branch_id: UUID, new_state: BranchState | str,
    ) -> Branch:
        requested = self._parse_state(new_state)
        result = await db.execute(
            select(Branch).where(Branch.id == branch_id).with_for_update()
        )
        branch = result.scalar_one_or_none()
        if branch is None:
            raise NotFoundError("Branch", branch_id)
        current = BranchState(branch.state)
        try:
            changed = check_transition(current, requested)
        except InvalidTransitionError as e:
            e.context = ErrorContext(
                session_id=str(branch.session_id), branch_id=str(branch_id),
            )
            raise
        if changed:
            branch.state = requested.value
            await db.flush()
            logger.info(
                f"Branch {current.value} -> {requested.value}",
                extra={"session_id": branch.session_id, "branch_id": branch_id},
            )
        return branch

    async def add_cross_ref_tx(
        self,
        db: AsyncSession,
        from_id: UUID,
        to_id: UUID,
        kind: CrossRefType | str,
        strength: float = 1.0,
        reason: str | None = None,
    ) -> CrossRef:
        try:
            ref_type = CrossRefType(kind)
        except ValueError:
            raise ValidationError(f"Unknown cross reference kind '{kind}'", "kind")
        _check_unit_interval(strength, "strength")
        source = await self._require_branch(db, from_id)
        target = await self._require_branch(db, to_id)
        if source.id == target.id:
            raise ValidationError("A branch cannot reference itself", "to_id")
        if source.session_id != target.session_id:
            raise ValidationError(
                "Cross references cannot span sessions", "to_id",
            )

        ref = CrossRef(
            session_id=source.session_id,
            from_branch_id=source.id,
            to_branch_id=target.id,
            ref_type=ref_type.value,
            reason=reason,
            strength=strength,
        )
        db.add(ref)
        await db.flush()
        return ref

    async def branch_path_tx(self, db: AsyncSession, branch_id: UUID) -> list[Branch]:
        branch = await self._require_branch(db, branch_id)
        result = await db.execute(
            select(Branch).where(Branch.session_id == branch.session_id)
        )
        by_id = {b.id: b for b in result.scalars().all()}
        parent_of = {b.id: b.parent_branch_id for b in by_id.values()}
        chain = walk_ancestry(branch.id, parent_of, hop_limit=len(parent_of))
        return [by_id[i] for i in reversed(chain)]

    async def thought_prefix_tx(self, db: AsyncSession, branch_id: UUID) -> list[Thought]:
        path = await self.branch_path_tx(db, branch_id)
        order = {b.id: position for position, b in enumerate(path)}
        result = await db.execute(
            select(Thought).where(Thought.branch_id.in_(list(order)))
        )
        return sorted(
            result.scalars().all(),
            key=lambda t: (order[t.branch_id], t.sequence),
        )

    async def append_thought_tx(
        self, db: AsyncSession, branch_id: UUID, content: str, confidence: float = 0.8,
    ) -> Thought:
        branch = await self._require_branch(db, branch_id)
        if BranchState(branch.state).is_terminal:
            raise ValidationError(
                f"Cannot append to a {branch.state} branch", "branch_id",
            )
        if not content:
            raise ValidationError("Thought content must not be empty", "content")
        _check_unit_interval(confidence, "confidence")
        last = await db.scalar(
            select(func.max(Thought.sequence)).where(Thought.branch_id == branch_id)
        )
        thought = Thought(
            session_id=branch.session_id,
            branch_id=branch_id,
            sequence=0 if last is None else last + 1,
            content=content,
            confidence=confidence,
        )
        db.add(thought)
        await db.flush()
        return thought

    async def get_branch_tx(self, db: AsyncSession, branch_id: UUID) -> Branch:
        return await self._require_branch(db, branch_id)

    # ─── Helpers ────────────────────────────────────────────────

    async def _require_branch(self, db: AsyncSession, branch_id: UUID) -> Branch:
        branch = await db.get(Branch, branch_id)
        if branch is None:
            raise NotFoundError("Branch", branch_id)
        return branch

    async def _check_parent(
        self,
        db: AsyncSession,
        session_id: UUID,
        parent_id: UUID,
        candidate_id: UUID | None,
    ) -> None:
        """Parent exists, shares the session, has a finite ancestry without the candidate."""
        parent = await db.get(Branch, parent_id)
        if parent is None:
            raise ValidationError(f"Parent branch '{parent_id}' not found", "parent_id")
        if parent.session_id != session_id:
            raise ValidationError(
                f"Parent branch '{parent_id}' belongs to another session", "parent_id",
            )
        result = await db.execute(
            select(Branch.id, Branch.parent_branch_id)
            .where(Branch.session_id == session_id)
        )
        parent_of = {row.id: row.parent_branch_id for row in result}
        ancestry = walk_ancestry(parent_id, parent_of, hop_limit=len(parent_of))
        if candidate_id is not None and candidate_id in ancestry:
            raise ValidationError(
                f"Branch '{candidate_id}' is already an ancestor of '{parent_id}'",
                "branch_id",
            )

    @staticmethod
    def _parse_state(value: BranchState | str) -> BranchState:
        try:
            return BranchState(value)
        except ValueError:
            raise ValidationError(f"Unknown branch state '{value}'", "state")
