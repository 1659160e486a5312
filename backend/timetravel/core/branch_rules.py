"""Branch Rules: pure state-machine and ancestry checks for the branch forest.

Invariants:
    - active -> completed | abandoned is the only direction of travel
    - Identity transitions are no-ops; leaving a terminal state raises InvalidTransitionError
    - walk_ancestry never follows more than hop_limit parent pointers

Design Decisions:
    - Ancestry is walked over a plain {branch_id: parent_id} mapping loaded in one query,
      so the walk is pure and the store stays a thin shell around it
"""

from collections.abc import Mapping
from uuid import UUID

from timetravel.core.domain_types import BranchState
from timetravel.core.errors import InvalidTransitionError, ValidationError


ALLOWED_TRANSITIONS: dict[BranchState, frozenset[BranchState]] = {
    BranchState.ACTIVE: frozenset({BranchState.COMPLETED, BranchState.ABANDONED}),
    BranchState.COMPLETED: frozenset(),
    BranchState.ABANDONED: frozenset(),
}


def check_transition(current: BranchState, requested: BranchState) -> bool:
    """Return True when the transition changes state, False for a no-op."""
    if current == requested:
        return False
    if requested not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, requested.value)
    return True


def walk_ancestry(
    start: UUID, parent_of: Mapping[UUID, UUID | None], hop_limit: int,
) -> list[UUID]:
    """Return [start, parent, grandparent, ..., root].

    Raises ValidationError when a pointer dangles or the chain is longer
    than hop_limit (only possible with corrupted data).
    """
    chain = [start]
    current = start
    for _ in range(hop_limit + 1):
        if current not in parent_of:
            raise ValidationError(
                f"Branch '{current}' referenced in ancestry does not exist",
                "parent_id",
            )
        parent = parent_of[current]
        if parent is None:
            return chain
        chain.append(parent)
        current = parent
    raise ValidationError(
        f"Ancestry of branch '{start}' exceeds {hop_limit} hops",
        "parent_id",
    )
