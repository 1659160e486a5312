"""Oracle Guard: time-bounded oracle calls and validation of what comes back.

Invariants:
    - Every oracle call is bounded by Settings.oracle_timeout_seconds
    - Rewards must be finite real numbers inside [reward_min, reward_max]
    - Continuations must have non-empty text and a finite prior in [0, 1];
      a missing prior takes DEFAULT_PRIOR
    - Failures surface as OracleTimeoutError / OracleMalformedError / OracleUnavailableError;
      callers translate them into their own step-level error
"""

import asyncio
import math
from collections.abc import Awaitable
from numbers import Real
from typing import TypeVar

from timetravel.config import Settings
from timetravel.core.errors import (
    OracleMalformedError, OracleTimeoutError, OracleUnavailableError,
)
from timetravel.core.oracle_protocol import DEFAULT_PRIOR, Continuation

T = TypeVar("T")

ORACLE_ERRORS = (OracleTimeoutError, OracleMalformedError, OracleUnavailableError)


async def bounded(call: Awaitable[T], operation: str, timeout_seconds: float) -> T:
    """Await an oracle call, cancelling it after timeout_seconds."""
    try:
        return await asyncio.wait_for(call, timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        raise OracleTimeoutError(operation, timeout_seconds) from e


def checked_reward(value: object, settings: Settings) -> float:
    if isinstance(value, bool) or not isinstance(value, Real):
        raise OracleMalformedError("evaluate", f"reward {value!r} is not a number")
    reward = float(value)
    if not math.isfinite(reward):
        raise OracleMalformedError("evaluate", f"reward {reward} is not finite")
    if not settings.reward_min <= reward <= settings.reward_max:
        raise OracleMalformedError(
            "evaluate",
            f"reward {reward} outside [{settings.reward_min}, {settings.reward_max}]",
        )
    return reward


def checked_continuations(value: object, limit: int) -> list[Continuation]:
    """Validated candidates, truncated to limit."""
    if not isinstance(value, list):
        raise OracleMalformedError(
            "generate_continuations", f"expected a list, got {type(value).__name__}",
        )
    checked = []
    for item in value[:limit]:
        content = getattr(item, "content", None)
        prior = getattr(item, "prior", None)
        if prior is None:
            prior = DEFAULT_PRIOR
        if not isinstance(content, str) or not content.strip():
            raise OracleMalformedError("generate_continuations", "empty continuation")
        if (
            isinstance(prior, bool) or not isinstance(prior, Real)
            or not math.isfinite(prior) or not 0.0 <= prior <= 1.0
        ):
            raise OracleMalformedError(
                "generate_continuations", f"prior {prior!r} outside [0, 1]",
            )
        checked.append(Continuation(content=content, prior=float(prior)))
    return checked
