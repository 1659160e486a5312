"""Runtime: tests for building a TimeMachine from settings."""

from timetravel.infrastructure.anthropic_oracle import AnthropicOracle
from timetravel.runtime import build_oracle, build_time_machine

from tests.services.conftest import make_settings
from tests.services.fake_oracle import ScriptedOracle


def test_build_oracle_uses_settings(tmp_path):
    settings = make_settings(
        tmp_path, anthropic_model="claude-test", reward_min=-1.0, reward_max=1.0,
    )
    oracle = build_oracle(settings)
    assert isinstance(oracle, AnthropicOracle)
    assert oracle.model == "claude-test"
    assert oracle.reward_range == (-1.0, 1.0)
    assert oracle.timeout_seconds == settings.oracle_timeout_seconds


async def test_build_time_machine_end_to_end(tmp_path):
    settings = make_settings(tmp_path, log_format="text")
    machine = await build_time_machine(settings, ScriptedOracle(), create_schema=True)
    try:
        assert await machine.db.health_check()
        session = await machine.sessions.create_session("timeline")
        timeline = await machine.engine.start_timeline(session.id, "main", "root")
        result = await machine.engine.explore(timeline.id, 2)
        assert result.succeeded == 2
    finally:
        await machine.close()
