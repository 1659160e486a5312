"""Error Hierarchy: tests for codes, categories, retryability and envelopes."""

from timetravel.core.errors import (
    AnalysisIncompleteError,
    CorruptChainError,
    DatabaseError,
    ErrorCategory,
    ErrorContext,
    EvaluationFailedError,
    NotFoundError,
    OracleTimeoutError,
    TimeTravelError,
    ValidationError,
)


def test_every_error_is_a_time_travel_error():
    errors = [
        ValidationError("bad", "field"),
        NotFoundError("Branch", "b1"),
        CorruptChainError("s1", "cycle"),
        EvaluationFailedError("oracle down"),
        AnalysisIncompleteError("oracle down"),
        DatabaseError("locked", "commit"),
    ]
    assert all(isinstance(e, TimeTravelError) for e in errors)


def test_not_found_message_and_code():
    err = NotFoundError("Checkpoint", "c1")
    assert err.code == "RESOURCE_NOT_FOUND"
    assert err.category is ErrorCategory.RESOURCE_NOT_FOUND
    assert "Checkpoint 'c1' not found" in err.message


def test_oracle_failures_are_retryable():
    assert EvaluationFailedError("x").retryable
    assert AnalysisIncompleteError("x").retryable
    assert OracleTimeoutError("evaluate", 5).retryable


def test_rejections_are_not_retryable():
    assert not ValidationError("x", "f").retryable
    assert not CorruptChainError("s", "r").retryable


def test_to_response_envelope():
    ctx = ErrorContext(session_id="s1", timeline_id="t1", node_id="n1")
    body = EvaluationFailedError("reward out of range", ctx).to_response()["error"]
    assert body["code"] == "EVALUATION_FAILED"
    assert body["category"] == "external_api"
    assert body["retryable"] is True
    assert body["context"] == {
        "session_id": "s1", "timeline_id": "t1", "branch_id": None, "node_id": "n1",
    }
