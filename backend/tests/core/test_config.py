"""Settings: tests for defaults, URL rewriting and bound validation."""

import math

import pytest
from pydantic import ValidationError

from timetravel.config import Settings


def test_defaults():
    settings = Settings(_env_file=None, database_url="sqlite+aiosqlite:///x.db")
    assert settings.exploration_constant == pytest.approx(math.sqrt(2))
    assert settings.expansion_width == 3
    assert settings.reward_range == 1.0
    assert settings.max_snapshot_chain == 256


def test_postgres_url_rewritten_for_asyncpg():
    settings = Settings(_env_file=None, database_url="postgresql://u:p@db/tt")
    assert settings.database_url == "postgresql+asyncpg://u:p@db/tt"


def test_inverted_reward_bounds_rejected():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, reward_min=1.0, reward_max=0.0)


def test_non_positive_timeout_rejected():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, oracle_timeout_seconds=0)
