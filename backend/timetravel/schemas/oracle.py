"""Oracle Schemas: Pydantic models for the JSON the language-model oracle returns.

Invariants:
    - Every continuation has non-empty content and a prior in [0.0, 1.0]
    - Reward bounds are NOT checked here; the engine validates rewards against Settings

Design Decisions:
    - Parsing through Pydantic: malformed model output becomes a ValidationError the
      adapter maps to OracleMalformedError, never a KeyError deep in the engine
"""

from pydantic import BaseModel, Field


class ContinuationOut(BaseModel):
    """One proposed next thought."""
    content: str = Field(min_length=1)
    prior: float = Field(default=0.5, ge=0.0, le=1.0)


class ContinuationBatch(BaseModel):
    continuations: list[ContinuationOut]


class EvaluationOut(BaseModel):
    """Score for a thought prefix."""
    reward: float
    rationale: str | None = None
