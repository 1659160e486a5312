"""Time Machine: one object wiring the stores, the engine and the analyzer together.

Invariants:
    - Every component shares one DatabaseSessionManager, one oracle, one Settings and
      one SessionWriteLocks, so single-writer guarantees hold across components
"""

from timetravel.config import Settings
from timetravel.core.oracle_protocol import ContinuationOracle
from timetravel.infrastructure.database import DatabaseSessionManager
from timetravel.infrastructure.locks import SessionWriteLocks
from timetravel.services.branch_store import BranchStore
from timetravel.services.counterfactual_analyzer import CounterfactualAnalyzer
from timetravel.services.mcts_engine import MCTSEngine
from timetravel.services.session_lifecycle import SessionLifecycle
from timetravel.services.snapshot_store import SnapshotStore


class TimeMachine:
    """Facade over the reasoning time-travel core."""

    def __init__(
        self,
        db: DatabaseSessionManager,
        oracle: ContinuationOracle,
        settings: Settings,
    ):
        self.db = db
        self.settings = settings
        self.locks = SessionWriteLocks()
        self.sessions = SessionLifecycle(db, self.locks)
        self.branches = BranchStore(db)
        self.snapshots = SnapshotStore(db, self.branches, settings, self.locks)
        self.engine = MCTSEngine(db, self.branches, oracle, settings, self.locks)
        self.counterfactuals = CounterfactualAnalyzer(db, self.branches, oracle, settings)

    async def close(self) -> None:
        await self.db.dispose()
