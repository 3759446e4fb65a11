"""Project configuration.

Settings live under ``[tool.careline]`` in ``pyproject.toml``::

    [tool.careline]
    database_url = "postgresql://localhost/careline"

    [tool.careline.engine]
    timezone = "Europe/Paris"
    dead_letter_policy = "error"

    [tool.careline.lanes.priority]
    attempts = 5
    backoff = "fixed"
    delay_ms = 3000

Environment variables (a ``.env`` file is honoured) override the file.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import toml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import Lane
from .policies import ExponentialBackoff, FixedBackoff, LanePolicy, default_lane_policies
from .utils.logging import get_logger

logger = get_logger()


class LaneConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    attempts: int = Field(default=3, ge=1)
    backoff: Literal["fixed", "exponential"] = "exponential"
    delay_ms: int = Field(default=5000, ge=0)
    max_delay_ms: Optional[int] = None
    priority: int = 10
    concurrency: int = Field(default=1, ge=1)
    keep_completed: bool = False

    @classmethod
    def from_policy(cls, policy: LanePolicy) -> "LaneConfig":
        backoff = policy.backoff.to_config()
        return cls(
            attempts=policy.attempts,
            backoff=backoff["type"],
            delay_ms=backoff["delay_ms"],
            max_delay_ms=backoff.get("max_delay_ms"),
            priority=policy.priority,
            concurrency=policy.concurrency,
            keep_completed=policy.keep_completed,
        )

    def to_policy(self, lane: Lane) -> LanePolicy:
        if self.backoff == "fixed":
            backoff = FixedBackoff(self.delay_ms)
        else:
            backoff = ExponentialBackoff(self.delay_ms, self.max_delay_ms)
        return LanePolicy(
            lane,
            attempts=self.attempts,
            backoff=backoff,
            priority=self.priority,
            concurrency=self.concurrency,
            keep_completed=self.keep_completed,
        )


def _default_lanes() -> Dict[Lane, LaneConfig]:
    return {lane: LaneConfig.from_policy(policy) for lane, policy in default_lane_policies().items()}


class BrokerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    backend: Literal["memory", "postgres"] = "postgres"
    lease_seconds: int = Field(default=300, ge=1)
    poll_interval: float = Field(default=1.0, gt=0)


class EngineSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timezone: str = "UTC"
    reference_hour: int = Field(default=9, ge=0, le=23)
    idempotency_bucket_seconds: int = Field(default=60, ge=1)
    dead_letter_policy: Literal["error", "stall"] = "error"
    audit_queue_size: int = Field(default=1000, ge=1)

    @field_validator("timezone")
    @classmethod
    def _known_zone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return value

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class CarelineConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    database_url: Optional[str] = None
    engine: EngineSettings = Field(default_factory=EngineSettings)
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    lanes: Dict[Lane, LaneConfig] = Field(default_factory=_default_lanes)

    @field_validator("lanes", mode="before")
    @classmethod
    def _merge_defaults(cls, value: Any) -> Any:
        # partial lane tables only override the keys they name
        merged = {lane.value: cfg.model_dump() for lane, cfg in _default_lanes().items()}
        for name, overrides in (value or {}).items():
            key = name.value if isinstance(name, Lane) else str(name)
            if isinstance(overrides, LaneConfig):
                overrides = overrides.model_dump()
            merged[key] = {**merged.get(key, {}), **overrides}
        return merged

    def lane_policies(self) -> Dict[Lane, LanePolicy]:
        return {lane: cfg.to_policy(lane) for lane, cfg in self.lanes.items()}

    def apply_env(self, environ: Optional[Dict[str, str]] = None) -> "CarelineConfig":
        """Return a copy with ``CARELINE_*`` environment overrides applied."""
        env = os.environ if environ is None else environ
        data = self.model_dump()
        url = env.get("CARELINE_DATABASE_URL") or env.get("DATABASE_URL")
        if url:
            data["database_url"] = url
        if env.get("CARELINE_TIMEZONE"):
            data["engine"]["timezone"] = env["CARELINE_TIMEZONE"]
        if env.get("CARELINE_DEAD_LETTER_POLICY"):
            data["engine"]["dead_letter_policy"] = env["CARELINE_DEAD_LETTER_POLICY"]
        if env.get("CARELINE_BROKER"):
            data["broker"]["backend"] = env["CARELINE_BROKER"]
        return CarelineConfig.model_validate(data)


def read_pyproject(path: Path) -> Optional[dict]:
    """Return the ``[tool.careline]`` table of *path*, or ``None``."""
    if not path.is_file():
        logger.debug(f"pyproject.toml not found at {path}")
        return None
    try:
        data = toml.load(path)
    except PermissionError:
        logger.warning(f"Permission denied when trying to read {path}")
        return None
    except toml.TomlDecodeError as e:
        logger.warning(f"Invalid TOML in {path}: {e}")
        return None
    section = data.get("tool", {}).get("careline")
    if section is None:
        logger.debug(f"[tool.careline] configuration not found in {path}")
    return section


def get_careline_config(path: Optional[Path] = None, *, env: bool = True) -> CarelineConfig:
    """Load the effective configuration.

    Reads ``pyproject.toml`` from *path* (default: the working directory) and
    then applies environment overrides. Missing files yield the defaults.
    """
    pyproject_path = path or Path.cwd() / "pyproject.toml"
    config = CarelineConfig.model_validate(read_pyproject(pyproject_path) or {})
    if env:
        load_dotenv()
        config = config.apply_env()
    return config
