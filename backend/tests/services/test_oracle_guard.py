"""Oracle Guard: tests for bounded calls and reward / continuation validation."""

import asyncio
import math

import pytest

from timetravel.core.errors import OracleMalformedError, OracleTimeoutError
from timetravel.core.oracle_protocol import DEFAULT_PRIOR, Continuation
from timetravel.services.oracle_guard import (
    bounded, checked_continuations, checked_reward,
)


async def test_bounded_returns_result():
    async def quick():
        return 0.3
    assert await bounded(quick(), "evaluate", 1.0) == 0.3


async def test_bounded_times_out():
    with pytest.raises(OracleTimeoutError) as exc:
        await bounded(asyncio.sleep(1), "evaluate", 0.01)
    assert exc.value.operation == "evaluate"


@pytest.mark.parametrize("value", [0.0, 0.5, 1, 1.0])
def test_reward_within_range(settings, value):
    assert checked_reward(value, settings) == float(value)


@pytest.mark.parametrize("value", [
    -0.01, 1.01, math.nan, math.inf, True, "0.5", None,
])
def test_reward_rejected(settings, value):
    with pytest.raises(OracleMalformedError):
        checked_reward(value, settings)


def test_continuations_truncated():
    items = [Continuation(f"c{i}", 0.5) for i in range(5)]
    assert [c.content for c in checked_continuations(items, 3)] == ["c0", "c1", "c2"]


def test_continuations_missing_prior_defaulted():
    (candidate,) = checked_continuations([Continuation("ok", None)], 1)
    assert candidate.prior == DEFAULT_PRIOR


@pytest.mark.parametrize("value", [
    "not a list",
    [Continuation("", 0.5)],
    [Continuation("   ", 0.5)],
    [Continuation("ok", 1.5)],
    [Continuation("ok", math.nan)],
])
def test_continuations_rejected(value):
    with pytest.raises(OracleMalformedError):
        checked_continuations(value, 3)
