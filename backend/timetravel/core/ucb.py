"""UCB1 Scoring: pure selection math for the search tree.

Invariants:
    - ucb1() of an unvisited node is +inf, so every child is sampled once before re-visits
    - Virtual loss only ever lowers a node's effective score; it never touches stored stats
    - select_child is deterministic: ties break on higher prior, then input order
"""

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from uuid import UUID


DEFAULT_EXPLORATION_CONSTANT: float = math.sqrt(2)


@dataclass(frozen=True)
class ChildStats:
    """The slice of a SearchNode that selection needs."""
    node_id: UUID
    visit_count: int
    total_value: float
    prior: float = 0.5


def mean_value(total_value: float, visit_count: int) -> float:
    """Average backpropagated reward; 0.0 before the first visit."""
    if visit_count <= 0:
        return 0.0
    return total_value / visit_count


def ucb1(
    total_value: float, visit_count: int, parent_visits: int, exploration_constant: float,
) -> float:
    """mean + c * sqrt(ln(N_parent) / n)."""
    if visit_count <= 0:
        return math.inf
    exploration = math.sqrt(math.log(max(parent_visits, 1)) / visit_count)
    return mean_value(total_value, visit_count) + exploration_constant * exploration


def effective_score(
    child: ChildStats,
    parent_visits: int,
    exploration_constant: float,
    pending: int = 0,
    virtual_loss: float = 1.0,
) -> float:
    """UCB1 with `pending` in-flight simulations counted as visits that lost."""
    visits = child.visit_count + pending
    value = child.total_value - virtual_loss * pending
    return ucb1(value, visits, parent_visits + pending, exploration_constant)


def select_child(
    children: Sequence[ChildStats],
    parent_visits: int,
    exploration_constant: float = DEFAULT_EXPLORATION_CONSTANT,
    pending: Mapping[UUID, int] | None = None,
    virtual_loss: float = 1.0,
) -> ChildStats:
    """Pick the child maximizing effective UCB1."""
    if not children:
        raise ValueError("select_child requires at least one child")
    pending = pending or {}

    def key(child: ChildStats) -> tuple[float, float]:
        score = effective_score(
            child, parent_visits, exploration_constant,
            pending.get(child.node_id, 0), virtual_loss,
        )
        return score, child.prior

    best = children[0]
    best_key = key(best)
    for child in children[1:]:
        child_key = key(child)
        if child_key > best_key:
            best, best_key = child, child_key
    return best
