import pydantic
import pytest

from careline.config import CarelineConfig, get_careline_config, read_pyproject
from careline.models import Lane
from careline.policies import ExponentialBackoff, FixedBackoff


def test_defaults_match_lane_policies():
    config = CarelineConfig()
    policies = config.lane_policies()
    assert policies[Lane.PRIORITY].attempts == 5
    assert isinstance(policies[Lane.PRIORITY].backoff, FixedBackoff)
    assert isinstance(policies[Lane.NORMAL].backoff, ExponentialBackoff)
    assert policies[Lane.SCHEDULED].keep_completed
    assert config.engine.tz.key == "UTC"
    assert config.broker.backend == "postgres"


def test_partial_lane_table_keeps_other_defaults():
    config = CarelineConfig.model_validate({"lanes": {"priority": {"attempts": 9}}})
    priority = config.lanes[Lane.PRIORITY]
    assert priority.attempts == 9
    assert priority.delay_ms == 3000
    assert priority.concurrency == 5
    assert config.lanes[Lane.NORMAL].attempts == 3


def test_invalid_settings_are_rejected():
    with pytest.raises(pydantic.ValidationError):
        CarelineConfig.model_validate({"engine": {"timezone": "Mars/Olympus_Mons"}})
    with pytest.raises(pydantic.ValidationError):
        CarelineConfig.model_validate({"engine": {"dead_letter_policy": "ignore"}})
    with pytest.raises(pydantic.ValidationError):
        CarelineConfig.model_validate({"lanes": {"priority": {"backoff": "linear"}}})


def test_environment_overrides():
    config = CarelineConfig().apply_env(
        {
            "DATABASE_URL": "postgresql://db/careline",
            "CARELINE_TIMEZONE": "Europe/Paris",
            "CARELINE_DEAD_LETTER_POLICY": "stall",
            "CARELINE_BROKER": "memory",
        }
    )
    assert config.database_url == "postgresql://db/careline"
    assert config.engine.timezone == "Europe/Paris"
    assert config.engine.dead_letter_policy == "stall"
    assert config.broker.backend == "memory"


def test_prefixed_database_url_wins():
    config = CarelineConfig().apply_env({"DATABASE_URL": "postgresql://a", "CARELINE_DATABASE_URL": "postgresql://b"})
    assert config.database_url == "postgresql://b"


def test_reads_tool_table_from_pyproject(tmp_path):
    path = tmp_path / "pyproject.toml"
    path.write_text(
        '[project]\nname = "clinic"\n\n'
        '[tool.careline]\ndatabase_url = "postgresql://localhost/clinic"\n\n'
        '[tool.careline.engine]\nreference_hour = 8\n\n'
        '[tool.careline.lanes.normal]\nconcurrency = 20\n'
    )
    config = get_careline_config(path, env=False)
    assert config.database_url == "postgresql://localhost/clinic"
    assert config.engine.reference_hour == 8
    assert config.lanes[Lane.NORMAL].concurrency == 20
    assert config.lanes[Lane.NORMAL].attempts == 3


def test_missing_or_broken_pyproject_gives_defaults(tmp_path):
    assert read_pyproject(tmp_path / "missing.toml") is None
    broken = tmp_path / "pyproject.toml"
    broken.write_text("[tool.careline\n")
    assert read_pyproject(broken) is None
    assert get_careline_config(broken, env=False) == CarelineConfig()
