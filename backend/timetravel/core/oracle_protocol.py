"""Oracle Protocol: contract between the core and the content-generation oracle.

Invariants:
    - generate_continuations returns at most n candidates, each with a prior in [0, 1]
    - evaluate returns a reward the engine validates against its configured bounds
    - Both calls may raise OracleTimeoutError / OracleMalformedError; the core never retries

Design Decisions:
    - Protocol over ABC: any object with these two coroutines works (the Anthropic
      adapter, the scripted fake used in tests)
"""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol


DEFAULT_PRIOR: float = 0.5


@dataclass(frozen=True)
class Continuation:
    """One candidate next thought proposed by the oracle."""
    content: str
    prior: float = DEFAULT_PRIOR


class ContinuationOracle(Protocol):
    """Produces thought text and rewards for a thought prefix."""

    async def generate_continuations(
        self, thought_prefix: Sequence[str], n: int,
    ) -> list[Continuation]: ...

    async def evaluate(self, thought_prefix: Sequence[str]) -> float: ...
