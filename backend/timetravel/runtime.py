"""Runtime: build a ready-to-use TimeMachine from settings.

Invariants:
    - Logging is configured before anything else logs
    - The database singleton (infrastructure/database.py) is initialized exactly here
"""

import logging

from timetravel.config import Settings, get_settings
from timetravel.core.oracle_protocol import ContinuationOracle
from timetravel.infrastructure.anthropic_oracle import AnthropicOracle
from timetravel.infrastructure.database import init_db
from timetravel.infrastructure.observability import setup_logging
from timetravel.services.time_machine import TimeMachine

logger = logging.getLogger(__name__)


def build_oracle(settings: Settings) -> AnthropicOracle:
    return AnthropicOracle(
        api_key=settings.anthropic_api_key,
        model=settings.anthropic_model,
        max_tokens=settings.anthropic_max_tokens,
        max_retries=settings.anthropic_max_retries,
        base_delay_ms=settings.anthropic_base_delay_ms,
        max_delay_ms=settings.anthropic_max_delay_ms,
        timeout_seconds=settings.oracle_timeout_seconds,
        reward_range=(settings.reward_min, settings.reward_max),
    )


async def build_time_machine(
    settings: Settings | None = None,
    oracle: ContinuationOracle | None = None,
    create_schema: bool = False,
) -> TimeMachine:
    """Logging, database, oracle. Pass create_schema=True to skip Alembic locally."""
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_format)
    db = init_db(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    if create_schema:
        await db.create_all()
    logger.info(f"Time machine ready (db={db.engine.url.get_backend_name()})")
    return TimeMachine(db, oracle or build_oracle(settings), settings)
