# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Cycle configuration."""
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from reviewfix.errors import ConfigError
from reviewfix.models import AgentSettingsRecord, ReviewOptionsRecord

logger = logging.getLogger(__name__)

CONFIG_DIR = Path("~/.config/reviewfix").expanduser()
CONFIG_PATH = CONFIG_DIR / "config.yaml"
LOGS_DIR = CONFIG_DIR / "logs"

DEFAULT_AGENT = "claude"
DEFAULT_MAX_ITERATIONS = 5
DEFAULT_ITERATION_TIMEOUT_MS = 1_800_000


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff settings for one external invocation."""
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0, got {}".format(self.max_retries))
        if self.base_delay_ms <= 0:
            raise ValueError("base_delay_ms must be > 0, got {}".format(self.base_delay_ms))
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms ({}) must be >= base_delay_ms ({})".format(
                self.max_delay_ms, self.base_delay_ms,
            ))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPolicy":
        return cls(
            max_retries=int(data.get("max_retries", 3)),
            base_delay_ms=int(data.get("base_delay_ms", 1000)),
            max_delay_ms=int(data.get("max_delay_ms", 30000)),
        )


DEFAULT_RETRY_POLICY = RetryPolicy()


@dataclass
class AgentSettings:
    """Which agent CLI plays a role, and with which model."""
    agent: str = DEFAULT_AGENT
    model: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "AgentSettings":
        if isinstance(data, str):
            return cls(agent=data)
        if not isinstance(data, dict) or not data.get("agent"):
            raise ConfigError("agent settings need an 'agent' field: {!r}".format(data))
        return cls(agent=str(data["agent"]), model=data.get("model") or None)

    def to_record(self) -> AgentSettingsRecord:
        return AgentSettingsRecord(agent=self.agent, model=self.model)


@dataclass
class ReviewOptions:
    """What the reviewer should look at.

    Precedence: commit_sha > base_branch > custom_instructions > uncommitted.
    """
    base_branch: Optional[str] = None
    commit_sha: Optional[str] = None
    custom_instructions: Optional[str] = None

    def to_record(self) -> ReviewOptionsRecord:
        return ReviewOptionsRecord(**asdict(self))


@dataclass
class CycleConfig:
    """Configuration for a review/fix cycle.

    Can be created directly, from a dict, from a YAML file, or from
    environment variables.
    """
    reviewer: AgentSettings = field(default_factory=AgentSettings)
    fixer: AgentSettings = field(default_factory=AgentSettings)
    simplifier: Optional[AgentSettings] = None
    run_simplifier: bool = False
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    iteration_timeout_ms: int = DEFAULT_ITERATION_TIMEOUT_MS
    retry: RetryPolicy = DEFAULT_RETRY_POLICY
    logs_dir: str = str(LOGS_DIR)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CycleConfig":
        simplifier = data.get("simplifier")
        retry = data.get("retry")
        return cls(
            reviewer=AgentSettings.from_dict(data.get("reviewer", DEFAULT_AGENT)),
            fixer=AgentSettings.from_dict(data.get("fixer", DEFAULT_AGENT)),
            simplifier=AgentSettings.from_dict(simplifier) if simplifier else None,
            run_simplifier=bool(data.get("run_simplifier", False)),
            max_iterations=int(data.get("max_iterations", DEFAULT_MAX_ITERATIONS)),
            iteration_timeout_ms=int(data.get("iteration_timeout_ms", DEFAULT_ITERATION_TIMEOUT_MS)),
            retry=RetryPolicy.from_dict(retry) if retry else DEFAULT_RETRY_POLICY,
            logs_dir=os.path.expanduser(data.get("logs_dir") or str(LOGS_DIR)),
        )

    @classmethod
    def from_env(cls) -> "CycleConfig":
        """Create config from environment variables.

        Reads REVIEWFIX_REVIEWER, REVIEWFIX_FIXER, REVIEWFIX_MAX_ITERATIONS,
        REVIEWFIX_TIMEOUT_MS, REVIEWFIX_MAX_RETRIES, REVIEWFIX_LOGS_DIR, etc.
        """
        retry = RetryPolicy(
            max_retries=int(os.getenv("REVIEWFIX_MAX_RETRIES", "3")),
            base_delay_ms=int(os.getenv("REVIEWFIX_RETRY_BASE_MS", "1000")),
            max_delay_ms=int(os.getenv("REVIEWFIX_RETRY_MAX_MS", "30000")),
        )
        simplifier = os.getenv("REVIEWFIX_SIMPLIFIER", "")
        return cls(
            reviewer=AgentSettings(
                agent=os.getenv("REVIEWFIX_REVIEWER", DEFAULT_AGENT),
                model=os.getenv("REVIEWFIX_REVIEWER_MODEL") or None,
            ),
            fixer=AgentSettings(
                agent=os.getenv("REVIEWFIX_FIXER", DEFAULT_AGENT),
                model=os.getenv("REVIEWFIX_FIXER_MODEL") or None,
            ),
            simplifier=AgentSettings(agent=simplifier) if simplifier else None,
            run_simplifier=os.getenv("REVIEWFIX_RUN_SIMPLIFIER", "false").lower() == "true",
            max_iterations=int(os.getenv("REVIEWFIX_MAX_ITERATIONS", str(DEFAULT_MAX_ITERATIONS))),
            iteration_timeout_ms=int(os.getenv("REVIEWFIX_TIMEOUT_MS", str(DEFAULT_ITERATION_TIMEOUT_MS))),
            retry=retry,
            logs_dir=os.path.expanduser(os.getenv("REVIEWFIX_LOGS_DIR", str(LOGS_DIR))),
        )

    def __post_init__(self):
        """Validate config values."""
        if self.max_iterations < 1:
            logger.warning("max_iterations %s < 1, setting to 1", self.max_iterations)
            self.max_iterations = 1
        if self.iteration_timeout_ms < 1000:
            logger.warning("iteration_timeout_ms %s < 1000, clamping to 1000", self.iteration_timeout_ms)
            self.iteration_timeout_ms = 1000

    def settings_for(self, role: str) -> AgentSettings:
        """Agent settings for a role. The simplifier reuses the reviewer's unless set."""
        if role == "fixer":
            return self.fixer
        if role == "simplifier" and self.simplifier is not None:
            return self.simplifier
        return self.reviewer

    @property
    def iteration_timeout_s(self) -> float:
        return self.iteration_timeout_ms / 1000.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.simplifier is None:
            data.pop("simplifier")
        return data


def load_config(path: Optional[str] = None) -> CycleConfig:
    """Load a YAML config file, falling back to environment defaults when absent."""
    config_path = Path(path).expanduser() if path else CONFIG_PATH
    if not config_path.is_file():
        logger.debug("No config at %s, using environment defaults", config_path)
        return CycleConfig.from_env()
    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError("Invalid YAML in {}: {}".format(config_path, e)) from e
    if not isinstance(data, dict):
        raise ConfigError("Config at {} must be a mapping".format(config_path))
    try:
        return CycleConfig.from_dict(data)
    except (TypeError, ValueError) as e:
        raise ConfigError("Invalid config at {}: {}".format(config_path, e)) from e


def save_config(config: CycleConfig, path: Optional[str] = None) -> Path:
    config_path = Path(path).expanduser() if path else CONFIG_PATH
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(
        yaml.safe_dump(config.to_dict(), sort_keys=False, default_flow_style=False),
        encoding="utf-8",
    )
    return config_path
