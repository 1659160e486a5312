"""Counterfactual Analyzer: clone a thought prefix, intervene, regenerate, compare.

Invariants:
    - The target thought must lie on the original branch's thought prefix (else NotFoundError)
    - The original branch and its thoughts are never mutated
    - All oracle calls finish before the write transaction; any oracle failure raises
      AnalysisIncompleteError and nothing is persisted
    - The counterfactual branch, its cross reference to the original and the analysis
      record are written in one transaction

Design Decisions:
    - The counterfactual branch is a new root holding the rewritten prefix plus the
      regenerated continuation, so its thought prefix reads on its own
    - Scores are sampled `samples` times per side; attribution and confidence come from
      the standard error of the mean difference (core/interventions.py)
"""

import logging
from typing import Any
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, or_

from timetravel.config import Settings
from timetravel.core.domain_types import InterventionType
from timetravel.core.errors import (
    AnalysisIncompleteError, ErrorContext, NotFoundError, ValidationError,
)
from timetravel.core.interventions import (
    CROSS_REF_FOR_INTERVENTION,
    ScoreSummary,
    analysis_confidence,
    apply_intervention,
    causal_attribution,
    delta_stderr,
    thought_differences,
)
from timetravel.core.oracle_protocol import ContinuationOracle
from timetravel.infrastructure.database import DatabaseSessionManager
from timetravel.models.branch import Branch
from timetravel.models.counterfactual_analysis import CounterfactualAnalysis
from timetravel.models.timeline import Timeline
from timetravel.models.timeline_branch import TimelineBranch
from timetravel.schemas.results import Intervention
from timetravel.services.branch_store import BranchStore
from timetravel.services.oracle_guard import (
    ORACLE_ERRORS, bounded, checked_continuations, checked_reward,
)

logger = logging.getLogger(__name__)

MAX_SAMPLES = 32


class CounterfactualAnalyzer:
    """Runs "what-if" analyses of existing branches."""

    def __init__(
        self,
        db: DatabaseSessionManager,
        branches: BranchStore,
        oracle: ContinuationOracle,
        settings: Settings,
    ):
        self.db = db
        self.branches = branches
        self.oracle = oracle
        self.settings = settings

    async def analyze(
        self,
        original_branch_id: UUID,
        target_thought_id: UUID,
        intervention: Intervention | dict[str, Any],
        question: str | None = None,
        samples: int = 1,
        timeline_id: UUID | None = None,
    ) -> CounterfactualAnalysis:
        intervention = self._parse_intervention(intervention)
        if not 1 <= samples <= MAX_SAMPLES:
            raise ValidationError(f"samples must be within [1, {MAX_SAMPLES}]", "samples")

        async with self.db.session() as db:
            original = await db.get(Branch, original_branch_id)
            if original is None:
                raise NotFoundError("Branch", original_branch_id)
            prefix = await self.branches.thought_prefix_tx(db, original_branch_id)
            if timeline_id is not None:
                timeline = await db.get(Timeline, timeline_id)
                if timeline is None:
                    raise NotFoundError("Timeline", timeline_id)
                if timeline.session_id != original.session_id:
                    raise ValidationError("Timeline belongs to another session", "timeline_id")
            else:
                overlay = await db.get(TimelineBranch, original_branch_id)
                timeline_id = overlay.timeline_id if overlay else None

        index = next((i for i, t in enumerate(prefix) if t.id == target_thought_id), None)
        if index is None:
            raise NotFoundError("Thought", target_thought_id)
        target = prefix[index]
        original_thoughts = [t.content for t in prefix]
        rewritten = apply_intervention(
            original_thoughts, index, intervention.type, intervention.payload,
        )

        context = ErrorContext(
            session_id=str(original.session_id), branch_id=str(original_branch_id),
        )
        regenerated, original_scores, counterfactual_scores = await self._consult_oracle(
            original_thoughts, rewritten, samples, context,
        )
        counterfactual_thoughts = rewritten + [regenerated]

        before = ScoreSummary.of(original_scores)
        after = ScoreSummary.of(counterfactual_scores)
        delta = after.mean - before.mean
        stderr = delta_stderr(before, after)
        attribution = causal_attribution(delta, stderr)
        confidence = analysis_confidence(stderr, self.settings.reward_range)
        comparison = {
            "original": before.to_dict(),
            "counterfactual": after.to_dict(),
            "outcome_delta": delta,
            "delta_stderr": stderr,
            "samples": samples,
            "intervention_point": {
                "thought_id": str(target.id),
                "branch_id": str(target.branch_id),
                "index": index,
                "original_content": target.content,
            },
            "regenerated_continuation": regenerated,
            "thought_differences": thought_differences(
                original_thoughts, counterfactual_thoughts,
            ),
        }

        async with self.db.transaction() as db:
            counterfactual = await self.branches.create_branch_tx(
                db,
                original.session_id,
                name=f"counterfactual: {intervention.type.value} at thought {index}",
                confidence=original.confidence,
                thoughts=counterfactual_thoughts,
            )
            await self.branches.add_cross_ref_tx(
                db,
                counterfactual.id,
                original.id,
                CROSS_REF_FOR_INTERVENTION[intervention.type],
                strength=attribution,
                reason=question or f"{intervention.type.value} intervention at thought {index}",
            )
            analysis = CounterfactualAnalysis(
                session_id=original.session_id,
                timeline_id=timeline_id,
                original_branch_id=original.id,
                counterfactual_branch_id=counterfactual.id,
                target_thought_id=target.id,
                question=question,
                intervention_type=intervention.type.value,
                intervention=intervention.model_dump(mode="json"),
                outcome_delta=delta,
                causal_attribution=attribution,
                confidence=confidence,
                comparison=comparison,
            )
            db.add(analysis)
            overlay = await db.get(TimelineBranch, original.id)
            if overlay is not None:
                overlay.counterfactual_impact = delta
            await db.flush()

        logger.info(
            f"Counterfactual {intervention.type.value}: delta {delta:+.3f}",
            extra={
                "session_id": original.session_id,
                "branch_id": counterfactual.id,
                "timeline_id": timeline_id,
            },
        )
        return analysis

    async def list_analyses(self, branch_id: UUID) -> list[CounterfactualAnalysis]:
        """Analyses where the branch is the original or the counterfactual."""
        async with self.db.session() as db:
            result = await db.execute(
                select(CounterfactualAnalysis)
                .where(or_(
                    CounterfactualAnalysis.original_branch_id == branch_id,
                    CounterfactualAnalysis.counterfactual_branch_id == branch_id,
                ))
                .order_by(CounterfactualAnalysis.created_at)
            )
            return list(result.scalars().all())

    async def _consult_oracle(
        self,
        original_thoughts: list[str],
        rewritten: list[str],
        samples: int,
        context: ErrorContext,
    ) -> tuple[str, list[float], list[float]]:
        """Regenerate the continuation and score both sides `samples` times."""
        timeout = self.settings.oracle_timeout_seconds
        try:
            candidates = checked_continuations(
                await bounded(
                    self.oracle.generate_continuations(rewritten, 1),
                    "generate_continuations", timeout,
                ),
                1,
            )
            if not candidates:
                raise AnalysisIncompleteError("oracle produced no continuation", context)
            regenerated = candidates[0].content
            counterfactual_thoughts = rewritten + [regenerated]
            original_scores = []
            counterfactual_scores = []
            for _ in range(samples):
                original_scores.append(checked_reward(
                    await bounded(self.oracle.evaluate(original_thoughts), "evaluate", timeout),
                    self.settings,
                ))
                counterfactual_scores.append(checked_reward(
                    await bounded(
                        self.oracle.evaluate(counterfactual_thoughts), "evaluate", timeout,
                    ),
                    self.settings,
                ))
        except ORACLE_ERRORS as e:
            logger.warning(
                f"Counterfactual abandoned: {e.message}",
                extra={"branch_id": context.branch_id, "error_code": e.code},
            )
            raise AnalysisIncompleteError(e.message, context) from e
        return regenerated, original_scores, counterfactual_scores

    @staticmethod
    def _parse_intervention(value: Intervention | dict[str, Any]) -> Intervention:
        try:
            intervention = (
                value if isinstance(value, Intervention)
                else Intervention.model_validate(value)
            )
        except PydanticValidationError as e:
            raise ValidationError(
                f"Malformed intervention: {e.error_count()} error(s)", "intervention",
            ) from e
        if intervention.type is not InterventionType.REMOVE and not intervention.payload:
            raise ValidationError(
                f"A {intervention.type.value} intervention requires a payload", "intervention",
            )
        return intervention
