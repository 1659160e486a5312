"""Virtual Loss Ledger: tests for the scoped, reversible in-flight penalty.

Tests cover:
    - applied() increments on entry and removes entries on exit
    - the guard is released on exceptions and on task cancellation
    - overlapping guards stack
"""

import asyncio
from uuid import uuid4

import pytest

from timetravel.core.virtual_loss import VirtualLossLedger


def test_applied_counts_while_inside():
    ledger = VirtualLossLedger()
    a, b = uuid4(), uuid4()
    with ledger.applied([a, b]):
        assert ledger.pending(a) == 1
        assert ledger.pending(b) == 1
    assert ledger.snapshot() == {}


def test_overlapping_guards_stack():
    ledger = VirtualLossLedger()
    root, leaf = uuid4(), uuid4()
    with ledger.applied([root, leaf]):
        with ledger.applied([root]):
            assert ledger.pending(root) == 2
        assert ledger.pending(root) == 1
    assert ledger.pending(root) == 0


def test_released_on_exception():
    ledger = VirtualLossLedger()
    node = uuid4()
    with pytest.raises(RuntimeError):
        with ledger.applied([node]):
            raise RuntimeError("simulation failed")
    assert ledger.snapshot() == {}


async def test_released_on_cancellation():
    ledger = VirtualLossLedger()
    node = uuid4()
    entered = asyncio.Event()

    async def in_flight():
        with ledger.applied([node]):
            entered.set()
            await asyncio.sleep(3600)

    task = asyncio.create_task(in_flight())
    await entered.wait()
    assert ledger.pending(node) == 1
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert ledger.snapshot() == {}
