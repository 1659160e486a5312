"""Anthropic Oracle: ContinuationOracle backed by the Anthropic Messages API.

Invariants:
    - Rate limits (429) and transient errors (5xx, connection, 529): retried with
      exponential backoff and jitter, at most max_retries times
    - API timeouts map to OracleTimeoutError; unparseable output to OracleMalformedError;
      anything else (and exhausted retries) to OracleUnavailableError
    - generate_continuations returns at most n candidates

Design Decisions:
    - Retry lives here, at the transport level only; the engine itself never retries a step
    - JSON-only prompts parsed with Pydantic (schemas/oracle.py)
    - ±25% jitter on backoff: prevents thundering herd when explore() runs concurrently
"""

import asyncio
import logging
import random
from collections.abc import Sequence

import anthropic
from anthropic import (
    APIError,
    APIConnectionError,
    APIStatusError,
    RateLimitError,
    APITimeoutError,
    InternalServerError,
)
from pydantic import ValidationError as PydanticValidationError

from timetravel.core.errors import (
    OracleMalformedError, OracleTimeoutError, OracleUnavailableError,
)
from timetravel.core.oracle_protocol import Continuation
from timetravel.schemas.oracle import ContinuationBatch, EvaluationOut

logger = logging.getLogger(__name__)

# OverloadedError (HTTP 529) is not re-exported by every SDK release; match on status.
_OVERLOADED_STATUS = 529

CONTINUATION_SYSTEM = (
    "You extend a chain of reasoning. Given the numbered thoughts so far, propose "
    "{n} distinct next thoughts. Reply with JSON only, shaped as "
    '{{"continuations": [{{"content": "<next thought>", "prior": <0..1 plausibility>}}]}}.'
)

EVALUATION_SYSTEM = (
    "You grade a chain of reasoning. Score how likely the numbered thoughts are to lead "
    "to a correct, useful conclusion, from {low} (hopeless) to {high} (excellent). "
    'Reply with JSON only, shaped as {{"reward": <number>, "rationale": "<one sentence>"}}.'
)


def _is_overloaded(e: APIError) -> bool:
    return isinstance(e, APIStatusError) and e.status_code == _OVERLOADED_STATUS


def format_prefix(thought_prefix: Sequence[str]) -> str:
    """Render the prefix as a numbered list for the prompt."""
    if not thought_prefix:
        return "(no thoughts yet)"
    return "\n".join(f"{i}. {t}" for i, t in enumerate(thought_prefix, start=1))


def extract_json(text: str) -> str:
    """Strip a markdown code fence around a JSON reply, if any."""
    body = text.strip()
    if body.startswith("```"):
        body = body.split("\n", 1)[1] if "\n" in body else ""
        if body.rstrip().endswith("```"):
            body = body.rstrip()[:-3]
    return body.strip()


class AnthropicOracle:
    """Continuation/evaluation oracle with retry, backoff and error mapping."""

    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 2048,
        max_retries: int = 3,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 60_000,
        timeout_seconds: float = 30.0,
        reward_range: tuple[float, float] = (0.0, 1.0),
        client: anthropic.AsyncAnthropic | None = None,
    ):
        self.client = client or anthropic.AsyncAnthropic(
            api_key=api_key,
            timeout=timeout_seconds,
        )
        self.timeout_seconds = timeout_seconds
        self.model = model
        self.max_tokens = max_tokens
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.reward_range = reward_range

    async def generate_continuations(
        self, thought_prefix: Sequence[str], n: int,
    ) -> list[Continuation]:
        text = await self._complete(
            "generate_continuations",
            CONTINUATION_SYSTEM.format(n=n),
            format_prefix(thought_prefix),
        )
        try:
            batch = ContinuationBatch.model_validate_json(extract_json(text))
        except PydanticValidationError as e:
            raise OracleMalformedError(
                "generate_continuations", f"{e.error_count()} validation error(s)",
            ) from e
        return [
            Continuation(content=c.content, prior=c.prior)
            for c in batch.continuations[:n]
        ]

    async def evaluate(self, thought_prefix: Sequence[str]) -> float:
        low, high = self.reward_range
        text = await self._complete(
            "evaluate",
            EVALUATION_SYSTEM.format(low=low, high=high),
            format_prefix(thought_prefix),
        )
        try:
            result = EvaluationOut.model_validate_json(extract_json(text))
        except PydanticValidationError as e:
            raise OracleMalformedError(
                "evaluate", f"{e.error_count()} validation error(s)",
            ) from e
        return result.reward

    async def _complete(self, operation: str, system: str, user: str) -> str:
        """One Messages API call with retry; returns the concatenated text blocks."""
        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                self._log_success(response, attempt)
                return self._response_text(operation, response)

            except RateLimitError as e:
                await self._handle_retryable(operation, e, attempt, self._extract_retry_after(e))

            except APITimeoutError as e:
                raise OracleTimeoutError(operation, self.timeout_seconds) from e

            except (APIConnectionError, InternalServerError) as e:
                await self._handle_retryable(operation, e, attempt)

            except APIError as e:
                if _is_overloaded(e):
                    await self._handle_retryable(operation, e, attempt)
                    continue
                raise OracleUnavailableError(operation, str(e)) from e
        raise OracleUnavailableError(operation, "retries exhausted")

    def _response_text(self, operation: str, response) -> str:
        parts = [
            block.text for block in response.content
            if getattr(block, "type", None) == "text"
        ]
        if not parts:
            raise OracleMalformedError(operation, "response contained no text")
        return "".join(parts)

    def _log_success(self, response, attempt: int) -> None:
        usage = response.usage
        logger.info(
            "Anthropic API success",
            extra={
                "attempt": attempt + 1,
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
            },
        )

    async def _handle_retryable(
        self, operation: str, e: Exception, attempt: int, retry_after_ms: int | None = None,
    ) -> None:
        """Sleep before the next attempt, or raise once retries are exhausted."""
        if attempt >= self.max_retries:
            raise OracleUnavailableError(
                operation, f"failure after {self.max_retries} retries: {e}",
            ) from e
        delay = retry_after_ms or self._backoff(attempt)
        logger.warning(
            f"Oracle {operation} retry after {delay}ms: {e}",
            extra={"attempt": attempt + 1},
        )
        await asyncio.sleep(delay / 1000)

    def _backoff(self, attempt: int) -> int:
        """Exponential backoff with ±25% jitter."""
        delay = min(self.max_delay_ms, (2 ** attempt) * self.base_delay_ms)
        return int(delay * random.uniform(0.75, 1.25))  # nosec B311

    def _extract_retry_after(self, error: RateLimitError) -> int | None:
        """Retry-After header in milliseconds, when present and numeric."""
        response = getattr(error, "response", None)
        if response is None:
            return None
        val = response.headers.get("retry-after")
        try:
            return int(float(val) * 1000) if val else None
        except ValueError:
            return None
