"""timetravel: branching, snapshot and MCTS time-travel engine for revisable reasoning."""

__version__ = "1.0.0"
