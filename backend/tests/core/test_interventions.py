"""Counterfactual Interventions: tests for prefix rewriting and outcome statistics.

Tests cover:
    - change/replace substitute, remove excises, inject inserts after the target
    - cross reference kind per intervention type
    - ScoreSummary, delta_stderr, causal_attribution, analysis_confidence
    - thought_differences
"""

import math

import pytest

from timetravel.core.domain_types import CrossRefType, InterventionType
from timetravel.core.interventions import (
    CROSS_REF_FOR_INTERVENTION,
    SINGLE_SAMPLE_CONFIDENCE,
    ScoreSummary,
    analysis_confidence,
    apply_intervention,
    causal_attribution,
    delta_stderr,
    thought_differences,
)

PREFIX = ["t0", "t1", "t2", "t3"]


# ─── apply_intervention ──────────────────────────────────────────

@pytest.mark.parametrize("kind", [InterventionType.CHANGE, InterventionType.REPLACE])
def test_substitution_cuts_at_target(kind):
    assert apply_intervention(PREFIX, 2, kind, "X") == ["t0", "t1", "X"]


def test_remove_closes_the_gap():
    assert apply_intervention(PREFIX, 1, InterventionType.REMOVE, None) == ["t0"]


def test_inject_inserts_after_target():
    assert apply_intervention(PREFIX, 1, InterventionType.INJECT, "X") == ["t0", "t1", "X"]


def test_apply_intervention_leaves_prefix_untouched():
    prefix = list(PREFIX)
    apply_intervention(prefix, 3, InterventionType.REPLACE, "X")
    assert prefix == PREFIX


def test_apply_intervention_rejects_out_of_range():
    with pytest.raises(IndexError):
        apply_intervention(PREFIX, 4, InterventionType.CHANGE, "X")


def test_cross_ref_kinds():
    assert CROSS_REF_FOR_INTERVENTION[InterventionType.CHANGE] is CrossRefType.EXTENDS
    assert CROSS_REF_FOR_INTERVENTION[InterventionType.INJECT] is CrossRefType.EXTENDS
    assert CROSS_REF_FOR_INTERVENTION[InterventionType.REPLACE] is CrossRefType.CONTRADICTS
    assert CROSS_REF_FOR_INTERVENTION[InterventionType.REMOVE] is CrossRefType.CONTRADICTS


# ─── statistics ──────────────────────────────────────────────────

def test_score_summary_single_sample_has_zero_variance():
    summary = ScoreSummary.of([0.7])
    assert summary.mean == 0.7
    assert summary.variance == 0.0


def test_score_summary_sample_variance():
    summary = ScoreSummary.of([0.4, 0.6])
    assert summary.mean == pytest.approx(0.5)
    assert summary.variance == pytest.approx(0.02)


def test_delta_stderr_needs_two_samples_each():
    assert delta_stderr(ScoreSummary.of([0.1]), ScoreSummary.of([0.2, 0.3])) is None


def test_delta_stderr_value():
    before = ScoreSummary.of([0.4, 0.6])
    after = ScoreSummary.of([0.7, 0.9])
    assert delta_stderr(before, after) == pytest.approx(math.sqrt(0.01 + 0.01))


def test_attribution_zero_delta_is_zero():
    assert causal_attribution(0.0, 0.1) == 0.0
    assert causal_attribution(0.0, None) == 0.0


def test_attribution_single_sample_is_full():
    assert causal_attribution(-0.3, None) == 1.0


def test_attribution_shrinks_with_noise():
    assert causal_attribution(0.3, 0.1) == pytest.approx(0.75)
    assert causal_attribution(0.3, 0.3) == pytest.approx(0.5)


def test_confidence_single_sample_default():
    assert analysis_confidence(None, 1.0) == SINGLE_SAMPLE_CONFIDENCE


def test_confidence_is_clamped():
    assert analysis_confidence(0.1, 1.0) == pytest.approx(0.8)
    assert analysis_confidence(0.9, 1.0) == 0.0


def test_thought_differences_reports_changed_positions():
    diffs = thought_differences(["a", "b", "c"], ["a", "X", "c", "d"])
    assert diffs == [
        {"index": 1, "original": "b", "counterfactual": "X"},
        {"index": 3, "original": None, "counterfactual": "d"},
    ]
