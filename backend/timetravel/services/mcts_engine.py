"""MCTS Engine: selection, expansion, simulation and backpropagation over the branch tree.

Invariants:
    - Selection starts at the search node of the timeline's active branch and descends by
      UCB1 (core/ucb.py); unvisited children always win over visited siblings
    - Every oracle call completes before the write transaction opens; an oracle failure
      raises EvaluationFailedError and leaves the tree untouched
    - Expansion attaches all candidates (Branch + TimelineBranch + SearchNode) or none;
      the leaf is claimed with a compare-and-set on is_expanded
    - Backpropagation walks the search path to the search root with atomic
      visit_count / total_value increments, so parent.visit_count >= child.visit_count
    - The search path of a node and the branch path of its branch are the same sequence
    - Virtual loss is held only while a step is in flight and is released on every exit path
    - Timeline.active_branch_id changes only through advance() (and restores), under the
      session's write lock
    - merge_branches moves the timeline to merged; a merged or archived timeline refuses
      step, advance and further merges

Design Decisions:
    - A lost expansion race discards the candidates and credits the rollout to the leaf
    - Promotion/pruning is advisory and runs inside the step transaction over the path
      just updated, never as a separate sweep
    - Selection skips abandoned children; completed branches stay selectable
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from timetravel.config import Settings
from timetravel.core.branch_rules import walk_ancestry
from timetravel.core.domain_types import BranchState, CrossRefType, MergeStrategy, TimelineState
from timetravel.core.errors import (
    ErrorContext, EvaluationFailedError, NotFoundError, ValidationError,
)
from timetravel.core.merging import compare_paths, merge_prefix
from timetravel.core.oracle_protocol import Continuation, ContinuationOracle, DEFAULT_PRIOR
from timetravel.core.ucb import ChildStats, mean_value, select_child, ucb1
from timetravel.core.virtual_loss import VirtualLossLedger
from timetravel.infrastructure.database import DatabaseSessionManager
from timetravel.infrastructure.locks import SessionWriteLocks
from timetravel.models.branch import Branch
from timetravel.models.search_node import SearchNode
from timetravel.models.thought import Thought
from timetravel.models.timeline import Timeline
from timetravel.models.timeline_branch import TimelineBranch
from timetravel.schemas.results import (
    AlternativePath, BacktrackAdvice, BranchComparison, ExploreResult, MergeResult, StepResult,
)
from timetravel.services.branch_store import BranchStore
from timetravel.services.oracle_guard import (
    ORACLE_ERRORS, bounded, checked_continuations, checked_reward,
)

logger = logging.getLogger(__name__)

MERGED_CONFIDENCE = 0.9


@dataclass(frozen=True)
class PathNode:
    """Detached view of a SearchNode on the path being explored."""
    id: UUID
    branch_id: UUID
    parent_node_id: UUID | None
    is_expanded: bool
    is_terminal: bool
    simulation_depth: int

    @classmethod
    def of(cls, node: SearchNode) -> "PathNode":
        return cls(
            node.id, node.branch_id, node.parent_node_id,
            node.is_expanded, node.is_terminal, node.simulation_depth,
        )


@dataclass
class Rollout:
    """Everything the oracle said for one step, gathered before any write."""
    reward: float
    wants_expansion: bool
    candidates: list[Continuation] = field(default_factory=list)
    chosen: int | None = None


class MCTSEngine:
    """Search over one timeline's branch tree."""

    def __init__(
        self,
        db: DatabaseSessionManager,
        branches: BranchStore,
        oracle: ContinuationOracle,
        settings: Settings,
        locks: SessionWriteLocks,
        ledger: VirtualLossLedger | None = None,
    ):
        self.db = db
        self.branches = branches
        self.oracle = oracle
        self.settings = settings
        self.locks = locks
        self.ledger = ledger or VirtualLossLedger()

    # ─── Timeline lifecycle ─────────────────────────────────────

    async def start_timeline(
        self,
        session_id: UUID,
        name: str,
        content: str,
        description: str | None = None,
    ) -> Timeline:
        """Root branch with one thought, its overlay and the search root."""
        if not name:
            raise ValidationError("Timeline name must not be empty", "name")
        if not content:
            raise ValidationError("Root thought must not be empty", "content")

        async with self.db.transaction() as db:
            root = await self.branches.create_branch_tx(
                db, session_id, name=name, thoughts=[content],
            )
            timeline = Timeline(
                session_id=session_id,
                name=name,
                description=description,
                root_branch_id=root.id,
                active_branch_id=root.id,
                state=TimelineState.ACTIVE.value,
                branch_count=1,
                max_depth=0,
            )
            db.add(timeline)
            await db.flush()
            db.add(TimelineBranch(branch_id=root.id, timeline_id=timeline.id, depth=0))
            db.add(SearchNode(
                session_id=session_id,
                timeline_id=timeline.id,
                branch_id=root.id,
                content=content,
                prior=DEFAULT_PRIOR,
                simulation_depth=0,
            ))
            await db.flush()

        logger.info(
            f"Timeline '{name}' started",
            extra={"session_id": session_id, "timeline_id": timeline.id},
        )
        return timeline

    async def get_timeline(self, timeline_id: UUID) -> Timeline:
        async with self.db.session() as db:
            return await self._require_timeline(db, timeline_id)

    async def list_nodes(self, timeline_id: UUID) -> list[SearchNode]:
        async with self.db.session() as db:
            return await self._timeline_nodes(db, timeline_id)

    async def archive_timeline(self, timeline_id: UUID) -> Timeline:
        timeline = await self.get_timeline(timeline_id)
        async with self.locks.for_session(timeline.session_id):
            async with self.db.transaction() as db:
                timeline = await self._require_timeline(db, timeline_id, for_update=True)
                if timeline.state == TimelineState.ARCHIVED.value:
                    return timeline
                if timeline.state != TimelineState.ACTIVE.value:
                    raise ValidationError(
                        f"Cannot archive a {timeline.state} timeline", "timeline_id",
                    )
                timeline.state = TimelineState.ARCHIVED.value
                await db.flush()
        logger.info("Timeline archived", extra={"timeline_id": timeline_id})
        return timeline

    # ─── Search ─────────────────────────────────────────────────

    async def step(self, timeline_id: UUID) -> StepResult:
        """One selection / expansion / simulation / backpropagation pass."""
        start_id = await self._ensure_active_node(timeline_id)
        async with self.db.session() as db:
            path = await self._select_path(db, start_id)
            with self.ledger.applied([n.id for n in path]):
                leaf = path[-1]
                prefix = [
                    t.content
                    for t in await self.branches.thought_prefix_tx(db, leaf.branch_id)
                ]
                # Release the read transaction before waiting on the oracle.
                await db.close()
                rollout = await self._rollout(timeline_id, leaf, prefix)
                return await self._commit_step(timeline_id, path, rollout)

    async def explore(
        self, timeline_id: UUID, iterations: int, concurrency: int = 1,
    ) -> ExploreResult:
        """Run `iterations` steps, at most `concurrency` at a time. Failed steps are counted."""
        if iterations < 0:
            raise ValidationError("iterations must be non-negative", "iterations")
        if concurrency < 1:
            raise ValidationError("concurrency must be at least 1", "concurrency")
        await self.get_timeline(timeline_id)

        gate = asyncio.Semaphore(concurrency)

        async def guarded_step() -> StepResult:
            async with gate:
                return await self.step(timeline_id)

        outcomes = await asyncio.gather(
            *(guarded_step() for _ in range(iterations)), return_exceptions=True,
        )
        rewards: list[float] = []
        error_codes: list[str] = []
        for outcome in outcomes:
            if isinstance(outcome, StepResult):
                rewards.append(outcome.reward)
            elif isinstance(outcome, EvaluationFailedError):
                error_codes.append(outcome.code)
            else:
                raise outcome

        best = await self.best_path(timeline_id)
        logger.info(
            f"Explored {iterations} iteration(s): {len(rewards)} ok, {len(error_codes)} failed",
            extra={"timeline_id": timeline_id},
        )
        return ExploreResult(
            timeline_id=timeline_id,
            iterations=iterations,
            succeeded=len(rewards),
            failed=len(error_codes),
            rewards=rewards,
            error_codes=error_codes,
            best_path=[b.id for b in best],
        )

    async def best_path(self, timeline_id: UUID) -> list[Branch]:
        """From the timeline root, repeatedly follow the visited child with the best mean."""
        async with self.db.session() as db:
            timeline = await self._require_timeline(db, timeline_id)
            nodes = await self._timeline_nodes(db, timeline_id)
            root = next((n for n in nodes if n.branch_id == timeline.root_branch_id), None)
            if root is None:
                return []
            children = self._children_map(nodes)
            chain = [root]
            for _ in range(len(nodes)):
                visited = [c for c in children.get(chain[-1].id, []) if c.visit_count > 0]
                if not visited:
                    break
                chain.append(max(
                    visited, key=lambda c: mean_value(c.total_value, c.visit_count),
                ))
            result = await db.execute(
                select(Branch).where(Branch.id.in_([n.branch_id for n in chain]))
            )
            by_id = {b.id: b for b in result.scalars().all()}
            return [by_id[n.branch_id] for n in chain]

    async def search_path(self, node_id: UUID) -> list[SearchNode]:
        """Search nodes from the search root down to node_id, inclusive."""
        async with self.db.session() as db:
            node = await db.get(SearchNode, node_id)
            if node is None:
                raise NotFoundError("SearchNode", node_id)
            return await self._search_path_tx(db, node)

    # ─── Active pointer ─────────────────────────────────────────

    async def advance(self, timeline_id: UUID, branch_id: UUID | None = None) -> Timeline:
        """Move the active branch: to branch_id, or to the best visited child."""
        timeline = await self.get_timeline(timeline_id)
        async with self.locks.for_session(timeline.session_id):
            async with self.db.transaction() as db:
                timeline = await self._require_timeline(db, timeline_id, for_update=True)
                self._check_active(timeline)
                target = (
                    await self._best_child_branch(db, timeline)
                    if branch_id is None
                    else await self._timeline_member(db, timeline, branch_id)
                )
                previous = timeline.active_branch_id
                timeline.active_branch_id = target
                await db.flush()

        logger.info(
            f"Active branch {previous} -> {target}",
            extra={"timeline_id": timeline_id, "branch_id": target},
        )
        return timeline

    async def auto_backtrack(
        self,
        timeline_id: UUID,
        confidence_threshold: float = 0.3,
        reward_threshold: float = 0.2,
    ) -> BacktrackAdvice:
        """Advise whether to backtrack from the current node, and where to. Read-only."""
        async with self.db.session() as db:
            timeline = await self._require_timeline(db, timeline_id)
            nodes = await self._timeline_nodes(db, timeline_id)

        if not nodes:
            return BacktrackAdvice(
                timeline_id=timeline_id, should_backtrack=False,
                reason="No search nodes in timeline",
            )
        current = next(
            (n for n in nodes
             if n.branch_id == timeline.active_branch_id and not n.is_terminal),
            None,
        )
        if current is None:
            open_nodes = [n for n in nodes if not n.is_terminal]
            if not open_nodes:
                return BacktrackAdvice(
                    timeline_id=timeline_id, should_backtrack=False,
                    reason="All search nodes are terminal",
                )
            current = max(
                open_nodes,
                key=lambda n: n.last_visited.timestamp() if n.last_visited else float("-inf"),
            )

        current_reward = (
            mean_value(current.total_value, current.visit_count)
            if current.visit_count > 0 else 0.5
        )
        current_confidence = current.prior
        advice = BacktrackAdvice(
            timeline_id=timeline_id,
            should_backtrack=False,
            reason="",
            current_branch_id=current.branch_id,
            current_confidence=current_confidence,
            current_reward=current_reward,
        )
        summary = (
            f"reward ({current_reward:.2f}) vs threshold ({reward_threshold:.2f}), "
            f"confidence ({current_confidence:.2f}) vs threshold ({confidence_threshold:.2f})"
        )
        if current_confidence >= confidence_threshold and current_reward >= reward_threshold:
            advice.reason = f"No backtracking needed: {summary}"
            return advice

        advice.should_backtrack = True
        by_id = {n.id: n for n in nodes}
        parent_of = {n.id: n.parent_node_id for n in nodes}
        lineage = walk_ancestry(current.id, parent_of, hop_limit=len(nodes))
        best_ancestor, best_value = None, 0.0
        for ancestor_id in lineage[1:]:
            ancestor = by_id[ancestor_id]
            value = mean_value(ancestor.total_value, ancestor.visit_count)
            if value > best_value:
                best_ancestor, best_value = ancestor, value

        if best_ancestor is None:
            advice.reason = f"Backtracking indicated but no better ancestor found: {summary}"
            return advice

        on_path = set(lineage)
        siblings = [
            n for n in self._children_map(nodes).get(best_ancestor.id, [])
            if n.id not in on_path
        ]
        advice.backtrack_to_branch_id = best_ancestor.branch_id
        advice.alternatives = [
            AlternativePath(
                from_node_id=best_ancestor.id,
                branch_id=s.branch_id,
                direction=s.content[:100],
                expected_improvement=(
                    mean_value(s.total_value, s.visit_count) if s.visit_count > 0 else s.prior
                ) - current_reward,
            )
            for s in siblings[:3]
        ]
        advice.reason = f"Backtracking triggered: {summary}"
        return advice

    # ─── Merge and compare ──────────────────────────────────────

    async def compare_branches(self, branch_a_id: UUID, branch_b_id: UUID) -> BranchComparison:
        """Split two branches' thought paths at their divergence point. Read-only."""
        if branch_a_id == branch_b_id:
            raise ValidationError("Cannot compare a branch with itself", "branch_b_id")
        async with self.db.session() as db:
            a = await self.branches.get_branch_tx(db, branch_a_id)
            b = await self.branches.get_branch_tx(db, branch_b_id)
            if a.session_id != b.session_id:
                raise ValidationError("Branches belong to different sessions", "branch_b_id")
            a_path = [t.content for t in await self.branches.thought_prefix_tx(db, a.id)]
            b_path = [t.content for t in await self.branches.thought_prefix_tx(db, b.id)]
            a_overlay = await db.get(TimelineBranch, a.id)
            b_overlay = await db.get(TimelineBranch, b.id)

        if not a_path and not b_path:
            raise ValidationError("Neither branch has thoughts to compare", "branch_a_id")
        divergence = compare_paths(a_path, b_path)
        a_visits = a_overlay.visit_count if a_overlay else 0
        b_visits = b_overlay.visit_count if b_overlay else 0
        a_mean = mean_value(a_overlay.total_value, a_visits) if a_visits else None
        b_mean = mean_value(b_overlay.total_value, b_visits) if b_visits else None

        recommended = None
        if a_mean is not None and (b_mean is None or a_mean > b_mean):
            recommended = a.id
        elif b_mean is not None and (a_mean is None or b_mean > a_mean):
            recommended = b.id

        return BranchComparison(
            branch_a_id=a.id,
            branch_b_id=b.id,
            shared_prefix=divergence.shared,
            divergence_index=divergence.divergence_index,
            a_only=divergence.a_only,
            b_only=divergence.b_only,
            a_visits=a_visits,
            b_visits=b_visits,
            a_mean_value=a_mean,
            b_mean_value=b_mean,
            recommended_branch_id=recommended,
        )

    async def merge_branches(
        self,
        source_id: UUID,
        target_id: UUID,
        strategy: MergeStrategy | str = MergeStrategy.SYNTHESIZE,
    ) -> MergeResult:
        """Synthesize one thought from both paths into a new child of the target.

        The timeline holding the source (else the target) moves to `merged` and
        accepts no further steps. The oracle is consulted before any write; on
        failure nothing is persisted and the timeline stays active.
        """
        try:
            strategy = MergeStrategy(strategy)
        except ValueError:
            raise ValidationError(f"Unknown merge strategy '{strategy}'", "strategy")
        if source_id == target_id:
            raise ValidationError("Cannot merge a branch into itself", "target_id")

        async with self.db.session() as db:
            source = await self.branches.get_branch_tx(db, source_id)
            target = await self.branches.get_branch_tx(db, target_id)
            if source.session_id != target.session_id:
                raise ValidationError("Cannot merge branches across sessions", "target_id")
            source_path = [
                t.content for t in await self.branches.thought_prefix_tx(db, source_id)
            ]
            target_path = [
                t.content for t in await self.branches.thought_prefix_tx(db, target_id)
            ]
            overlay = (
                await db.get(TimelineBranch, source_id) or await db.get(TimelineBranch, target_id)
            )
            timeline_id = overlay.timeline_id if overlay else None
            if timeline_id is not None:
                self._check_active(await self._require_timeline(db, timeline_id))
        session_id = source.session_id

        context = ErrorContext(
            session_id=str(session_id),
            timeline_id=str(timeline_id) if timeline_id else None,
            branch_id=str(target_id),
        )
        try:
            candidates = checked_continuations(
                await bounded(
                    self.oracle.generate_continuations(
                        merge_prefix(source_path, target_path, strategy), 1,
                    ),
                    "generate_continuations", self.settings.oracle_timeout_seconds,
                ),
                1,
            )
        except ORACLE_ERRORS as e:
            logger.warning(
                f"Merge abandoned: {e.message}",
                extra={"branch_id": target_id, "error_code": e.code},
            )
            raise EvaluationFailedError(e.message, context) from e
        if not candidates:
            raise EvaluationFailedError("oracle produced no merged thought", context)
        content = candidates[0].content

        async with self.locks.for_session(session_id):
            async with self.db.transaction() as db:
                timeline = None
                if timeline_id is not None:
                    timeline = await self._require_timeline(db, timeline_id, for_update=True)
                    self._check_active(timeline)
                merged = await self.branches.create_branch_tx(
                    db, session_id,
                    parent_id=target_id,
                    name="Merged",
                    confidence=MERGED_CONFIDENCE,
                    thoughts=[content],
                )
                await self.branches.add_cross_ref_tx(
                    db, merged.id, source_id, CrossRefType.DEPENDS,
                    reason=f"merged ({strategy.value})",
                )
                if timeline is not None:
                    target_overlay = await db.get(TimelineBranch, target_id)
                    if target_overlay is not None and target_overlay.timeline_id == timeline.id:
                        depth = target_overlay.depth + 1
                        db.add(TimelineBranch(
                            branch_id=merged.id, timeline_id=timeline.id, depth=depth,
                        ))
                        timeline.branch_count += 1
                        timeline.max_depth = max(timeline.max_depth, depth)
                    timeline.state = TimelineState.MERGED.value
                await db.flush()

        logger.info(
            f"Branches merged ({strategy.value})",
            extra={"session_id": session_id, "timeline_id": timeline_id, "branch_id": merged.id},
        )
        return MergeResult(
            merged_branch_id=merged.id,
            source_branch_id=source_id,
            target_branch_id=target_id,
            strategy=strategy,
            content=content,
            timeline_id=timeline_id,
            timeline_state=timeline.state if timeline is not None else None,
        )

    # ─── Step internals ─────────────────────────────────────────

    async def _ensure_active_node(self, timeline_id: UUID) -> UUID:
        """Search node of the active branch, created (with its ancestors) if missing."""
        async with self.db.transaction() as db:
            timeline = await self._require_timeline(db, timeline_id)
            self._check_active(timeline)
            if timeline.active_branch_id is None:
                raise ValidationError("Timeline has no active branch", "timeline_id")
            node = await self._node_for_branch(db, timeline.active_branch_id)
            if node is None:
                node = await self._attach_nodes_along_path(db, timeline)
            return node.id

    async def _attach_nodes_along_path(self, db: AsyncSession, timeline: Timeline) -> SearchNode:
        path = await self.branches.branch_path_tx(db, timeline.active_branch_id)
        parent: SearchNode | None = None
        for depth, branch in enumerate(path):
            node = await self._node_for_branch(db, branch.id)
            if node is None:
                contents = await db.scalars(
                    select(Thought.content)
                    .where(Thought.branch_id == branch.id)
                    .order_by(Thought.sequence)
                )
                node = SearchNode(
                    session_id=timeline.session_id,
                    timeline_id=timeline.id,
                    branch_id=branch.id,
                    parent_node_id=parent.id if parent else None,
                    content="\n".join(contents.all()) or (branch.name or ""),
                    prior=DEFAULT_PRIOR,
                    simulation_depth=depth,
                )
                db.add(node)
                if await db.get(TimelineBranch, branch.id) is None:
                    db.add(TimelineBranch(
                        branch_id=branch.id, timeline_id=timeline.id, depth=depth,
                    ))
                await db.flush()
            parent = node
        logger.info(
            "Search nodes attached to active branch",
            extra={"timeline_id": timeline.id, "branch_id": timeline.active_branch_id},
        )
        return parent

    async def _select_path(self, db: AsyncSession, start_id: UUID) -> list[PathNode]:
        """Search root -> start node -> UCB1 descent to a leaf."""
        start = await db.get(SearchNode, start_id)
        path = [PathNode.of(n) for n in await self._search_path_tx(db, start)]
        parent_visits = start.visit_count
        pending = self.ledger.snapshot()
        c = self.settings.exploration_constant
        for _ in range(self.settings.max_simulation_depth + 1):
            leaf = path[-1]
            if leaf.is_terminal or not leaf.is_expanded:
                break
            result = await db.execute(
                select(SearchNode)
                .join(Branch, Branch.id == SearchNode.branch_id)
                .where(SearchNode.parent_node_id == leaf.id)
                .where(Branch.state != BranchState.ABANDONED.value)
                .order_by(SearchNode.created_at)
            )
            children = list(result.scalars().all())
            if not children:
                break
            chosen = select_child(
                [ChildStats(n.id, n.visit_count, n.total_value, n.prior) for n in children],
                parent_visits,
                c,
                pending=pending,
                virtual_loss=self.settings.virtual_loss,
            )
            node = next(n for n in children if n.id == chosen.node_id)
            path.append(PathNode.of(node))
            parent_visits = node.visit_count
        return path

    async def _rollout(self, timeline_id: UUID, leaf: PathNode, prefix: list[str]) -> Rollout:
        """All oracle traffic for one step. Raises EvaluationFailedError on any oracle failure."""
        timeout = self.settings.oracle_timeout_seconds
        wants_expansion = (
            not leaf.is_terminal
            and not leaf.is_expanded
            and leaf.simulation_depth < self.settings.max_simulation_depth
        )
        try:
            candidates: list[Continuation] = []
            if wants_expansion:
                width = self.settings.expansion_width
                candidates = checked_continuations(
                    await bounded(
                        self.oracle.generate_continuations(prefix, width),
                        "generate_continuations", timeout,
                    ),
                    width,
                )
            chosen = None
            simulated_prefix = prefix
            if candidates:
                chosen = max(range(len(candidates)), key=lambda i: candidates[i].prior)
                simulated_prefix = prefix + [candidates[chosen].content]
            reward = checked_reward(
                await bounded(self.oracle.evaluate(simulated_prefix), "evaluate", timeout),
                self.settings,
            )
        except ORACLE_ERRORS as e:
            logger.warning(
                f"Step abandoned: {e.message}",
                extra={"timeline_id": timeline_id, "node_id": leaf.id, "error_code": e.code},
            )
            raise EvaluationFailedError(
                e.message,
                ErrorContext(timeline_id=str(timeline_id), node_id=str(leaf.id)),
            ) from e
        return Rollout(reward, wants_expansion, candidates, chosen)

    async def _commit_step(
        self, timeline_id: UUID, path: list[PathNode], rollout: Rollout,
    ) -> StepResult:
        leaf = path[-1]
        async with self.db.transaction() as db:
            timeline = await self._require_timeline(db, timeline_id, for_update=True)
            self._check_active(timeline)

            simulated = (leaf.id, leaf.branch_id)
            expanded: list[UUID] = []
            terminal = leaf.is_terminal
            if leaf.simulation_depth >= self.settings.max_simulation_depth and not terminal:
                await self._mark_terminal(db, leaf.id)
                terminal = True
            if rollout.wants_expansion and await self._claim_expansion(db, leaf.id):
                if rollout.candidates:
                    children = await self._attach_children(
                        db, timeline, leaf, rollout.candidates,
                    )
                    expanded = [n.branch_id for n in children]
                    chosen = children[rollout.chosen]
                    simulated = (chosen.id, chosen.branch_id)
                else:
                    await self._mark_terminal(db, leaf.id)
                    terminal = True

            backprop = [(n.id, n.branch_id) for n in path]
            if simulated[0] != leaf.id:
                backprop.append(simulated)
            await self._backpropagate(db, backprop, rollout.reward)
            completed, abandoned = await self._promote_and_prune(db, [n for n, _ in backprop])

        logger.info(
            "Step complete",
            extra={
                "timeline_id": timeline_id,
                "node_id": simulated[0],
                "branch_id": simulated[1],
                "reward": rollout.reward,
            },
        )
        return StepResult(
            timeline_id=timeline_id,
            selected_node_id=leaf.id,
            simulated_node_id=simulated[0],
            simulated_branch_id=simulated[1],
            reward=rollout.reward,
            path=[n for n, _ in backprop],
            expanded_branch_ids=expanded,
            terminal=terminal,
            completed_branch_ids=completed,
            abandoned_branch_ids=abandoned,
        )

    async def _claim_expansion(self, db: AsyncSession, node_id: UUID) -> bool:
        """Compare-and-set is_expanded false -> true. False if another step won."""
        result = await db.execute(
            update(SearchNode)
            .where(SearchNode.id == node_id)
            .where(SearchNode.is_expanded.is_(False))
            .values(is_expanded=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _mark_terminal(self, db: AsyncSession, node_id: UUID) -> None:
        await db.execute(
            update(SearchNode)
            .where(SearchNode.id == node_id)
            .values(is_terminal=True)
            .execution_options(synchronize_session=False)
        )

    async def _attach_children(
        self,
        db: AsyncSession,
        timeline: Timeline,
        leaf: PathNode,
        candidates: list[Continuation],
    ) -> list[SearchNode]:
        depth = leaf.simulation_depth + 1
        children = []
        for candidate in candidates:
            branch = await self.branches.create_branch_tx(
                db,
                timeline.session_id,
                parent_id=leaf.branch_id,
                confidence=candidate.prior,
                thoughts=[candidate.content],
            )
            db.add(TimelineBranch(
                branch_id=branch.id,
                timeline_id=timeline.id,
                depth=depth,
                mcts_generated=True,
            ))
            node = SearchNode(
                session_id=timeline.session_id,
                timeline_id=timeline.id,
                branch_id=branch.id,
                parent_node_id=leaf.id,
                content=candidate.content,
                prior=candidate.prior,
                simulation_depth=depth,
            )
            db.add(node)
            children.append(node)
        await db.flush()

        await db.execute(
            update(TimelineBranch)
            .where(TimelineBranch.branch_id == leaf.branch_id)
            .values(
                alternatives_explored=TimelineBranch.alternatives_explored + len(children),
            )
            .execution_options(synchronize_session=False)
        )
        timeline.branch_count += len(children)
        timeline.max_depth = max(timeline.max_depth, depth)
        await db.flush()
        return children

    async def _backpropagate(
        self, db: AsyncSession, path: list[tuple[UUID, UUID]], reward: float,
    ) -> None:
        """Atomic increments on every node of the path and its overlay, then a UCB refresh
        of the path and the children of every path node."""
        now = datetime.now(timezone.utc)
        for node_id, branch_id in path:
            await db.execute(
                update(SearchNode)
                .where(SearchNode.id == node_id)
                .values(
                    visit_count=SearchNode.visit_count + 1,
                    total_value=SearchNode.total_value + reward,
                    last_visited=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.execute(
                update(TimelineBranch)
                .where(TimelineBranch.branch_id == branch_id)
                .values(
                    visit_count=TimelineBranch.visit_count + 1,
                    total_value=TimelineBranch.total_value + reward,
                )
                .execution_options(synchronize_session=False)
            )

        stats = await self._stats(db, [node_id for node_id, _ in path])
        result = await db.execute(
            select(
                SearchNode.id, SearchNode.branch_id, SearchNode.parent_node_id,
                SearchNode.visit_count, SearchNode.total_value,
            )
            .where(SearchNode.parent_node_id.in_(list(stats)))
        )
        c = self.settings.exploration_constant
        scores: dict[UUID, tuple[UUID, float | None]] = {}
        for node_id, branch_id in path:
            visits, total, parent_id, _ = stats[node_id]
            if parent_id is None or parent_id not in stats:
                scores[node_id] = (branch_id, mean_value(total, visits))
        # Siblings too: their exploration term moves with the parent's visit count.
        for row in result:
            score = (
                ucb1(row.total_value, row.visit_count, stats[row.parent_node_id][0], c)
                if row.visit_count > 0 else None
            )
            scores[row.id] = (row.branch_id, score)

        for node_id, (branch_id, score) in scores.items():
            await db.execute(
                update(SearchNode).where(SearchNode.id == node_id)
                .values(ucb_score=score)
                .execution_options(synchronize_session=False)
            )
            await db.execute(
                update(TimelineBranch).where(TimelineBranch.branch_id == branch_id)
                .values(ucb_score=score)
                .execution_options(synchronize_session=False)
            )

    async def _promote_and_prune(
        self, db: AsyncSession, path_ids: list[UUID],
    ) -> tuple[list[UUID], list[UUID]]:
        """Advisory housekeeping over the path just updated and its children."""
        path_stats = await self._stats(db, path_ids)
        result = await db.execute(
            select(
                SearchNode.id, SearchNode.parent_node_id, SearchNode.branch_id,
                SearchNode.visit_count, SearchNode.total_value, Branch.state,
            )
            .join(Branch, Branch.id == SearchNode.branch_id)
            .where(SearchNode.parent_node_id.in_(path_ids))
        )
        children: dict[UUID, list] = {}
        for row in result:
            children.setdefault(row.parent_node_id, []).append(row)

        completed: list[UUID] = []
        abandoned: list[UUID] = []
        c = self.settings.exploration_constant
        for node_id in path_ids:
            visits, total, _, (branch_id, state) = path_stats[node_id]
            kids = children.get(node_id, [])

            # State was read before this pass; a parent's pruning may have abandoned the node.
            if branch_id in abandoned:
                continue
            if state == BranchState.ACTIVE.value and visits >= self.settings.completion_visit_threshold:
                own_mean = mean_value(total, visits)
                improving = any(
                    k.visit_count > 0 and mean_value(k.total_value, k.visit_count) > own_mean
                    for k in kids
                )
                if not improving:
                    await self.branches.transition_tx(db, branch_id, BranchState.COMPLETED)
                    completed.append(branch_id)

            for kid in kids:
                if kid.state != BranchState.ACTIVE.value or kid.branch_id in completed + abandoned:
                    continue
                if kid.visit_count < self.settings.prune_min_visits:
                    continue
                if ucb1(kid.total_value, kid.visit_count, visits, c) < self.settings.prune_ucb_floor:
                    await self.branches.transition_tx(db, kid.branch_id, BranchState.ABANDONED)
                    abandoned.append(kid.branch_id)
        return completed, abandoned

    async def _stats(self, db: AsyncSession, node_ids: list[UUID]) -> dict:
        """{node_id: (visit_count, total_value, parent_node_id, (branch_id, branch_state))} from the DB."""
        result = await db.execute(
            select(
                SearchNode.id, SearchNode.visit_count, SearchNode.total_value,
                SearchNode.parent_node_id, SearchNode.branch_id, Branch.state,
            )
            .join(Branch, Branch.id == SearchNode.branch_id)
            .where(SearchNode.id.in_(node_ids))
        )
        return {
            row.id: (row.visit_count, row.total_value, row.parent_node_id, (row.branch_id, row.state))
            for row in result
        }

    # ─── Queries ────────────────────────────────────────────────

    async def _search_path_tx(self, db: AsyncSession, node: SearchNode) -> list[SearchNode]:
        nodes = await self._timeline_nodes(db, node.timeline_id)
        by_id = {n.id: n for n in nodes}
        parent_of = {n.id: n.parent_node_id for n in nodes}
        chain = walk_ancestry(node.id, parent_of, hop_limit=len(nodes))
        return [by_id[i] for i in reversed(chain)]

    async def _timeline_nodes(self, db: AsyncSession, timeline_id: UUID) -> list[SearchNode]:
        result = await db.execute(
            select(SearchNode)
            .where(SearchNode.timeline_id == timeline_id)
            .order_by(SearchNode.created_at)
        )
        return list(result.scalars().all())

    async def _node_for_branch(self, db: AsyncSession, branch_id: UUID) -> SearchNode | None:
        result = await db.execute(select(SearchNode).where(SearchNode.branch_id == branch_id))
        return result.scalar_one_or_none()

    async def _best_child_branch(self, db: AsyncSession, timeline: Timeline) -> UUID:
        node = await self._node_for_branch(db, timeline.active_branch_id)
        if node is not None:
            result = await db.execute(
                select(SearchNode)
                .join(Branch, Branch.id == SearchNode.branch_id)
                .where(SearchNode.parent_node_id == node.id)
                .where(SearchNode.visit_count > 0)
                .where(Branch.state != BranchState.ABANDONED.value)
                .order_by(SearchNode.created_at)
            )
            visited = list(result.scalars().all())
            if visited:
                best = max(visited, key=lambda n: mean_value(n.total_value, n.visit_count))
                return best.branch_id
        raise ValidationError(
            "Active branch has no visited child to advance to", "branch_id",
        )

    async def _timeline_member(
        self, db: AsyncSession, timeline: Timeline, branch_id: UUID,
    ) -> UUID:
        overlay = await db.get(TimelineBranch, branch_id)
        if overlay is None or overlay.timeline_id != timeline.id:
            raise ValidationError(
                f"Branch '{branch_id}' is not part of timeline '{timeline.id}'", "branch_id",
            )
        branch = await db.get(Branch, branch_id)
        if branch.state == BranchState.ABANDONED.value:
            raise ValidationError(f"Branch '{branch_id}' is abandoned", "branch_id")
        return branch_id

    async def _require_timeline(
        self, db: AsyncSession, timeline_id: UUID, for_update: bool = False,
    ) -> Timeline:
        query = select(Timeline).where(Timeline.id == timeline_id)
        if for_update:
            query = query.with_for_update()
        timeline = (await db.execute(query)).scalar_one_or_none()
        if timeline is None:
            raise NotFoundError("Timeline", timeline_id)
        return timeline

    @staticmethod
    def _check_active(timeline: Timeline) -> None:
        if timeline.state != TimelineState.ACTIVE.value:
            raise ValidationError(
                f"Timeline '{timeline.id}' is {timeline.state}", "timeline_id",
            )

    @staticmethod
    def _children_map(nodes: list[SearchNode]) -> dict[UUID, list[SearchNode]]:
        children: dict[UUID, list[SearchNode]] = {}
        for n in nodes:
            if n.parent_node_id is not None:
                children.setdefault(n.parent_node_id, []).append(n)
        return children
