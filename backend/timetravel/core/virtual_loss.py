"""Virtual Loss Ledger: transient, reversible penalties for in-flight simulations.

Invariants:
    - applied() increments every node on the path on entry and decrements on every exit
      path (success, exception, task cancellation)
    - A node with no in-flight simulations has no entry in the ledger
    - The ledger never writes to the database
"""

from collections import Counter
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from uuid import UUID


class VirtualLossLedger:
    """Per-engine count of in-flight simulations through each search node."""

    def __init__(self) -> None:
        self._pending: Counter[UUID] = Counter()

    def pending(self, node_id: UUID) -> int:
        return self._pending.get(node_id, 0)

    def snapshot(self) -> dict[UUID, int]:
        return dict(self._pending)

    @contextmanager
    def applied(self, node_ids: Iterable[UUID]) -> Iterator[None]:
        path = list(node_ids)
        for node_id in path:
            self._pending[node_id] += 1
        try:
            yield
        finally:
            for node_id in path:
                self._pending[node_id] -= 1
                if self._pending[node_id] <= 0:
                    del self._pending[node_id]
