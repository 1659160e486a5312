"""Branch Merging: tests for path comparison and merge framing.

Tests cover:
    - compare_paths splits at the first differing thought
    - identical, prefix-of and fully disjoint paths
    - merge_prefix keeps the target path and appends one instruction per strategy
"""

import pytest

from timetravel.core.domain_types import MergeStrategy
from timetravel.core.merging import MERGE_INSTRUCTIONS, compare_paths, merge_prefix


# ─── compare_paths ───────────────────────────────────────────────

def test_paths_split_at_first_difference():
    divergence = compare_paths(["root", "a", "x"], ["root", "b"])
    assert divergence.shared == ["root"]
    assert divergence.divergence_index == 1
    assert divergence.a_only == ["a", "x"]
    assert divergence.b_only == ["b"]


def test_identical_paths_have_no_tails():
    divergence = compare_paths(["root", "a"], ["root", "a"])
    assert divergence.divergence_index == 2
    assert divergence.a_only == [] and divergence.b_only == []


def test_prefix_path():
    divergence = compare_paths(["root"], ["root", "a", "b"])
    assert divergence.shared == ["root"]
    assert divergence.a_only == []
    assert divergence.b_only == ["a", "b"]


def test_disjoint_paths():
    divergence = compare_paths(["p"], ["q"])
    assert divergence.divergence_index == 0
    assert divergence.a_only == ["p"]
    assert divergence.b_only == ["q"]


# ─── merge_prefix ────────────────────────────────────────────────

@pytest.mark.parametrize("strategy", list(MergeStrategy))
def test_merge_prefix_appends_one_instruction(strategy):
    prefix = merge_prefix(["s1", "s2"], ["t1", "t2"], strategy)
    assert prefix[:2] == ["t1", "t2"]
    assert len(prefix) == 3
    assert MERGE_INSTRUCTIONS[strategy] in prefix[-1]
    assert prefix[-1].endswith("s1\n---\ns2")


def test_every_strategy_has_instruction():
    assert set(MERGE_INSTRUCTIONS) == set(MergeStrategy)
