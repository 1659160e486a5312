"""ORM Models: SQLAlchemy declarative models for every persisted record.

Invariants:
    - All models inherit from Base (db/base.py)
    - ReasoningSession is the aggregate root; every record carries session_id

Design Decisions:
    - One file per entity for locality
    - Referential rules live in ForeignKey(ondelete=...) so the database enforces them;
      no ORM relationship cascades that could disagree with the schema
    - All models imported here so metadata is complete before create_all / Alembic autogenerate
"""

from timetravel.models.session import ReasoningSession  # noqa: F401
from timetravel.models.branch import Branch  # noqa: F401
from timetravel.models.thought import Thought  # noqa: F401
from timetravel.models.cross_ref import CrossRef  # noqa: F401
from timetravel.models.checkpoint import Checkpoint  # noqa: F401
from timetravel.models.state_snapshot import StateSnapshot  # noqa: F401
from timetravel.models.timeline import Timeline  # noqa: F401
from timetravel.models.timeline_branch import TimelineBranch  # noqa: F401
from timetravel.models.search_node import SearchNode  # noqa: F401
from timetravel.models.counterfactual_analysis import CounterfactualAnalysis  # noqa: F401
