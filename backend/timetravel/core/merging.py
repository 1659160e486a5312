"""Branch Merging: pure helpers for comparing two thought paths and framing a merge.

Invariants:
    - compare_paths never reorders thoughts; a_only / b_only start at the divergence index
    - merge_prefix keeps the target path intact and appends one instruction thought
      carrying the strategy and the source path
"""

from collections.abc import Sequence
from dataclasses import dataclass

from timetravel.core.domain_types import MergeStrategy


MERGE_INSTRUCTIONS: dict[MergeStrategy, str] = {
    MergeStrategy.SYNTHESIZE:
        "Synthesize the best insights from both paths into a unified conclusion.",
    MergeStrategy.PREFER_SOURCE:
        "Prefer insights from the source path, supplementing with this path where valuable.",
    MergeStrategy.PREFER_TARGET:
        "Prefer insights from this path, supplementing with the source path where valuable.",
}

PATH_SEPARATOR = "\n---\n"


@dataclass(frozen=True)
class PathDivergence:
    shared: list[str]
    a_only: list[str]
    b_only: list[str]

    @property
    def divergence_index(self) -> int:
        return len(self.shared)


def compare_paths(a: Sequence[str], b: Sequence[str]) -> PathDivergence:
    """Split two thought paths into their common prefix and the diverging tails."""
    shared = 0
    while shared < min(len(a), len(b)) and a[shared] == b[shared]:
        shared += 1
    return PathDivergence(list(a[:shared]), list(a[shared:]), list(b[shared:]))


def merge_prefix(
    source: Sequence[str], target: Sequence[str], strategy: MergeStrategy,
) -> list[str]:
    """Thought prefix handed to the oracle to synthesize the merged thought."""
    instruction = (
        f"Merge the source path into this one. {MERGE_INSTRUCTIONS[strategy]}\n\n"
        f"SOURCE PATH:\n{PATH_SEPARATOR.join(source)}"
    )
    return [*target, instruction]
