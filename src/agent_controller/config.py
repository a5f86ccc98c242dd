"""Runtime configuration for the agent controller."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from agent_controller.controller.budget import DAILY_LIMIT_MULTIPLIER
from agent_controller.controller.models import UsageLimitConfig


@dataclass(slots=True)
class AgentSettings:
    """Agent subprocess settings."""

    command: str = "claude"
    model: str | None = None
    timeout_seconds: int = 1_800
    idle_timeout_seconds: int = 120
    cwd: Path | None = None


@dataclass(slots=True)
class LoopSettings:
    """Controller loop cadence."""

    tick_interval_seconds: float = 5.0
    approval_sweep_interval_seconds: float = 30.0


@dataclass(slots=True)
class UsageSettings:
    """Token budget defaults applied when no persisted config exists."""

    max_tokens_per_hour: int = 200_000
    max_tokens_per_day: int | None = None
    pause_threshold: float = 0.8
    warning_threshold: float = 0.6
    auto_resume_on_reset: bool = True

    def to_config(self) -> UsageLimitConfig:
        per_day = self.max_tokens_per_day
        if per_day is None:
            per_day = self.max_tokens_per_hour * DAILY_LIMIT_MULTIPLIER
        return UsageLimitConfig(
            max_tokens_per_hour=self.max_tokens_per_hour,
            max_tokens_per_day=per_day,
            pause_threshold=self.pause_threshold,
            warning_threshold=self.warning_threshold,
            auto_resume_on_reset=self.auto_resume_on_reset,
        )


@dataclass(slots=True)
class NtfySettings:
    """Optional ntfy alert settings; alerts are disabled without a topic."""

    server_url: str = "https://ntfy.sh"
    topic: str | None = None
    response_topic: str | None = None
    auth_token: str | None = None
    timeout_seconds: float = 10.0

    @property
    def enabled(self) -> bool:
        return bool(self.topic)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".agent_controller.db")
    sqlite_busy_timeout_ms: int = 5_000
    agent: AgentSettings = field(default_factory=AgentSettings)
    loop: LoopSettings = field(default_factory=LoopSettings)
    usage: UsageSettings = field(default_factory=UsageSettings)
    ntfy: NtfySettings = field(default_factory=NtfySettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local use."""

        cwd_raw = os.getenv("AGENT_CONTROLLER_AGENT_CWD", "").strip()
        per_day_raw = os.getenv("AGENT_CONTROLLER_MAX_TOKENS_PER_DAY", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("AGENT_CONTROLLER_DB_PATH", ".agent_controller.db")),
            sqlite_busy_timeout_ms=_env_int("AGENT_CONTROLLER_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            agent=AgentSettings(
                command=os.getenv("AGENT_CONTROLLER_AGENT_COMMAND", "claude"),
                model=os.getenv("AGENT_CONTROLLER_AGENT_MODEL") or None,
                timeout_seconds=_env_int("AGENT_CONTROLLER_AGENT_TIMEOUT_SECONDS", 1_800),
                idle_timeout_seconds=_env_int("AGENT_CONTROLLER_AGENT_IDLE_TIMEOUT_SECONDS", 120),
                cwd=Path(cwd_raw) if cwd_raw else None,
            ),
            loop=LoopSettings(
                tick_interval_seconds=_env_float("AGENT_CONTROLLER_TICK_INTERVAL_SECONDS", 5.0),
                approval_sweep_interval_seconds=_env_float(
                    "AGENT_CONTROLLER_APPROVAL_SWEEP_INTERVAL_SECONDS",
                    30.0,
                ),
            ),
            usage=UsageSettings(
                max_tokens_per_hour=_env_int("AGENT_CONTROLLER_MAX_TOKENS_PER_HOUR", 200_000),
                max_tokens_per_day=(
                    _parse_int("AGENT_CONTROLLER_MAX_TOKENS_PER_DAY", per_day_raw)
                    if per_day_raw
                    else None
                ),
                pause_threshold=_env_float("AGENT_CONTROLLER_PAUSE_THRESHOLD", 0.8),
                warning_threshold=_env_float("AGENT_CONTROLLER_WARNING_THRESHOLD", 0.6),
                auto_resume_on_reset=_env_bool(
                    "AGENT_CONTROLLER_AUTO_RESUME_ON_RESET",
                    default=True,
                ),
            ),
            ntfy=NtfySettings(
                server_url=os.getenv("AGENT_CONTROLLER_NTFY_SERVER_URL", "https://ntfy.sh"),
                topic=os.getenv("AGENT_CONTROLLER_NTFY_TOPIC") or None,
                response_topic=os.getenv("AGENT_CONTROLLER_NTFY_RESPONSE_TOPIC") or None,
                auth_token=os.getenv("AGENT_CONTROLLER_NTFY_AUTH_TOKEN") or None,
                timeout_seconds=_env_float("AGENT_CONTROLLER_NTFY_TIMEOUT_SECONDS", 10.0),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the controller cannot run with."""

        if not self.agent.command.strip():
            raise ValueError("AGENT_CONTROLLER_AGENT_COMMAND must not be empty.")
        if self.agent.timeout_seconds <= 0:
            raise ValueError("AGENT_CONTROLLER_AGENT_TIMEOUT_SECONDS must be > 0.")
        if self.agent.idle_timeout_seconds <= 0:
            raise ValueError("AGENT_CONTROLLER_AGENT_IDLE_TIMEOUT_SECONDS must be > 0.")
        if self.loop.tick_interval_seconds <= 0:
            raise ValueError("AGENT_CONTROLLER_TICK_INTERVAL_SECONDS must be > 0.")
        if self.loop.approval_sweep_interval_seconds <= 0:
            raise ValueError("AGENT_CONTROLLER_APPROVAL_SWEEP_INTERVAL_SECONDS must be > 0.")
        if self.usage.max_tokens_per_hour <= 0:
            raise ValueError("AGENT_CONTROLLER_MAX_TOKENS_PER_HOUR must be a positive integer.")
        if self.usage.max_tokens_per_day is not None and self.usage.max_tokens_per_day <= 0:
            raise ValueError("AGENT_CONTROLLER_MAX_TOKENS_PER_DAY must be a positive integer.")
        for name, value in (
            ("AGENT_CONTROLLER_PAUSE_THRESHOLD", self.usage.pause_threshold),
            ("AGENT_CONTROLLER_WARNING_THRESHOLD", self.usage.warning_threshold),
        ):
            if not 0 < value <= 1:
                raise ValueError(f"{name} must be within (0, 1], got {value!r}.")
        if self.usage.warning_threshold > self.usage.pause_threshold:
            raise ValueError(
                "AGENT_CONTROLLER_WARNING_THRESHOLD must not exceed "
                "AGENT_CONTROLLER_PAUSE_THRESHOLD.",
            )
        if self.ntfy.enabled:
            parsed = urlparse(self.ntfy.server_url)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ValueError(
                    "Invalid AGENT_CONTROLLER_NTFY_SERVER_URL: "
                    f"{self.ntfy.server_url!r}. Expected an absolute http(s) URL.",
                )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return _parse_int(name, raw)


def _parse_int(name: str, raw: str) -> int:
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {raw!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
