"""Counterfactual Interventions: pure prefix rewriting and outcome statistics.

Invariants:
    - apply_intervention never mutates the original prefix
    - change/replace keep the prefix up to the target and substitute the target
    - remove keeps the prefix before the target (the gap closes; successors are regenerated)
    - inject keeps the prefix through the target and appends the injected thought
    - causal_attribution is in [0, 1]; 0.0 whenever the outcome did not move
"""

import math
import statistics
from collections.abc import Sequence
from dataclasses import dataclass

from timetravel.core.domain_types import CrossRefType, InterventionType


CROSS_REF_FOR_INTERVENTION: dict[InterventionType, CrossRefType] = {
    InterventionType.CHANGE: CrossRefType.EXTENDS,
    InterventionType.INJECT: CrossRefType.EXTENDS,
    InterventionType.REPLACE: CrossRefType.CONTRADICTS,
    InterventionType.REMOVE: CrossRefType.CONTRADICTS,
}

SINGLE_SAMPLE_CONFIDENCE: float = 0.5


def apply_intervention(
    prefix: Sequence[str], target_index: int,
    intervention_type: InterventionType, payload: str | None,
) -> list[str]:
    """Return the counterfactual prefix cut at the target thought."""
    if not 0 <= target_index < len(prefix):
        raise IndexError(f"target_index {target_index} outside prefix of {len(prefix)}")
    head = list(prefix[:target_index])
    if intervention_type is InterventionType.REMOVE:
        return head
    if intervention_type is InterventionType.INJECT:
        return head + [prefix[target_index], payload or ""]
    return head + [payload or ""]


@dataclass(frozen=True)
class ScoreSummary:
    """Mean and sample variance of repeated rollout scores."""
    scores: tuple[float, ...]
    mean: float
    variance: float

    @classmethod
    def of(cls, scores: Sequence[float]) -> "ScoreSummary":
        values = tuple(float(s) for s in scores)
        if not values:
            raise ValueError("ScoreSummary requires at least one score")
        variance = statistics.variance(values) if len(values) > 1 else 0.0
        return cls(values, statistics.fmean(values), variance)

    def to_dict(self) -> dict:
        return {"scores": list(self.scores), "mean": self.mean, "variance": self.variance}


def delta_stderr(original: ScoreSummary, counterfactual: ScoreSummary) -> float | None:
    """Standard error of mean(cf) - mean(original); None with a single sample each."""
    if len(original.scores) < 2 or len(counterfactual.scores) < 2:
        return None
    return math.sqrt(
        original.variance / len(original.scores)
        + counterfactual.variance / len(counterfactual.scores),
    )


def causal_attribution(delta: float, stderr: float | None) -> float:
    """Share of the delta attributable to the intervention rather than rollout noise."""
    if delta == 0.0:
        return 0.0
    if stderr is None:
        return 1.0
    return abs(delta) / (abs(delta) + stderr)


def analysis_confidence(stderr: float | None, reward_range: float) -> float:
    if stderr is None or reward_range <= 0:
        return SINGLE_SAMPLE_CONFIDENCE
    return min(1.0, max(0.0, 1.0 - 2.0 * stderr / reward_range))


def thought_differences(original: Sequence[str], counterfactual: Sequence[str]) -> list[dict]:
    """Position-by-position differences between two thought sequences."""
    diffs = []
    for index in range(max(len(original), len(counterfactual))):
        before = original[index] if index < len(original) else None
        after = counterfactual[index] if index < len(counterfactual) else None
        if before != after:
            diffs.append({"index": index, "original": before, "counterfactual": after})
    return diffs
