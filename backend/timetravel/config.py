"""Application Configuration: environment-driven settings via pydantic-settings.

Invariants:
    - All secrets come from environment variables (never hardcoded)
    - get_settings() is cached (lru_cache): single instance per process
    - reward_min < reward_max; every threshold is validated at load time

Design Decisions:
    - Defaults work out-of-the-box against a local SQLite file
    - postgresql:// URLs are rewritten for the asyncpg driver
"""

import math
from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Database
    database_url: str = "sqlite+aiosqlite:///./timetravel.db"

    @field_validator("database_url", mode="before")
    @classmethod
    def convert_postgres_url(cls, v: str) -> str:
        """asyncpg needs postgresql+asyncpg://."""
        if isinstance(v, str) and v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Search
    exploration_constant: float = math.sqrt(2)
    virtual_loss: float = 1.0
    expansion_width: int = 3
    max_simulation_depth: int = 8
    reward_min: float = 0.0
    reward_max: float = 1.0

    # Promotion / pruning (advisory housekeeping)
    completion_visit_threshold: int = 20
    prune_min_visits: int = 5
    prune_ucb_floor: float = 0.2

    # Snapshots
    max_snapshot_chain: int = 256

    # Oracle
    oracle_timeout_seconds: float = 30.0
    anthropic_api_key: str = "sk-ant-placeholder"
    anthropic_model: str = "claude-sonnet-4-5"
    anthropic_max_tokens: int = 2048
    anthropic_max_retries: int = 3
    anthropic_base_delay_ms: int = 1000
    anthropic_max_delay_ms: int = 60_000

    # Observability
    log_level: str = "INFO"
    log_format: str = "json"

    @model_validator(mode="after")
    def check_bounds(self) -> "Settings":
        if self.reward_min >= self.reward_max:
            raise ValueError("reward_min must be lower than reward_max")
        if self.expansion_width < 1:
            raise ValueError("expansion_width must be at least 1")
        if self.oracle_timeout_seconds <= 0:
            raise ValueError("oracle_timeout_seconds must be positive")
        return self

    @property
    def reward_range(self) -> float:
        return self.reward_max - self.reward_min


@lru_cache
def get_settings() -> Settings:
    return Settings()
