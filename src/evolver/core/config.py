"""Configuration models for the evolution loop.

All settings are pydantic models so a YAML file is validated in one pass.
``load_config`` layers three sources, lowest precedence first: defaults, the
YAML file, then the ``EVOLUTION_*`` environment variables.

Example YAML:
    loop:
      agent_count: 3
      target_score: 85
    trial:
      command: ["python", "-m", "my_agent"]
    bridge:
      endpoints: ["http://127.0.0.1:3000", "http://127.0.0.1:3001"]
"""

from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from evolver.core.errors import ConfigurationError

ENV_TEST_DIR = "EVOLUTION_TEST_DIR"
ENV_TIMEOUT_MS = "EVOLUTION_TIMEOUT_MS"
ENV_AGENT_COUNT = "EVOLUTION_AGENT_COUNT"


def _default_base_dir() -> Path:
    return Path(tempfile.gettempdir()) / "evolution_tests"


class PathsConfig(BaseModel):
    """Filesystem locations. Sub-directories default to children of base_dir."""

    base_dir: Path = Field(default_factory=_default_base_dir)
    telemetry_dir: Path | None = None
    documents_dir: Path | None = Field(
        default=None,
        description="Working directory for documents produced by trials.",
    )
    results_dir: Path | None = None
    docs_dir: Path = Field(
        default=Path("tool-docs"),
        description="Tool documentation store (one YAML file per tool).",
    )
    history_file: Path | None = Field(
        default=None,
        description="Improvement audit trail. Defaults to results_dir/improvements.json.",
    )

    @model_validator(mode="after")
    def _derive_subdirs(self) -> PathsConfig:
        if self.telemetry_dir is None:
            self.telemetry_dir = self.base_dir / "telemetry"
        if self.documents_dir is None:
            self.documents_dir = self.base_dir / "documents"
        if self.results_dir is None:
            self.results_dir = self.base_dir / "results"
        if self.history_file is None:
            self.history_file = self.results_dir / "improvements.json"
        return self


class TimingConfig(BaseModel):
    trial_timeout_seconds: float = Field(
        default=180.0,
        gt=0,
        description="Watchdog bound for one trial.",
    )
    reset_timeout_seconds: float = Field(default=30.0, gt=0)
    delay_between_trials_seconds: float = Field(default=5.0, ge=0)
    proposer_timeout_seconds: float = Field(default=300.0, gt=0)


class PatternConfig(BaseModel):
    """Thresholds used by the pattern detector."""

    min_frequency: int = Field(
        default=2,
        ge=1,
        description="Minimum number of Runs a sequence or parameter choice must appear in.",
    )
    confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    max_sequence_length: int = Field(default=4, ge=2, le=10)
    high_deviation: float = Field(
        default=20.0,
        ge=0,
        description="Average deviation magnitude above which a visual deviation is high severity.",
    )
    low_consistency: float = Field(default=0.3, ge=0.0, le=1.0)
    parameter_score_ceiling: float = Field(
        default=70.0,
        ge=0.0,
        le=100.0,
        description="Parameter choices only count when their Runs score below this.",
    )
    parameter_precision: int = Field(
        default=1,
        ge=0,
        description="Decimals kept when bucketing numeric parameter values.",
    )


class LoopConfig(BaseModel):
    agent_count: int = Field(default=3, ge=2, le=10)
    max_generations: int = Field(default=10, ge=1)
    target_score: float = Field(default=85.0, ge=0.0, le=100.0)
    improvement_threshold: float = Field(
        default=5.0,
        ge=0.0,
        description="Minimum score gain per generation before the plateau counter advances.",
    )
    plateau_generations: int = Field(default=2, ge=1)
    noise_threshold: float = Field(
        default=2.0,
        ge=0.0,
        description="Score drop tolerated before an applied improvement is rolled back.",
    )


class GitConfig(BaseModel):
    enabled: bool = True
    repo_path: Path = Path(".")
    commit_message_prefix: str = "[Evolution]"


class TelemetryConfig(BaseModel):
    enabled: bool = True
    persist_sessions: bool = True
    max_sessions: int = Field(default=100, ge=1)


class BridgeConfig(BaseModel):
    """Scripting bridge endpoints, tried in order on every attempt."""

    endpoints: list[str] = Field(default_factory=lambda: ["http://127.0.0.1:3000"])
    timeout_seconds: float = Field(default=30.0, gt=0)
    max_attempts: int = Field(default=3, ge=1)
    retry_delay_seconds: float = Field(default=0.5, ge=0)
    comparison_tolerance: float = Field(default=0.05, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _require_endpoint(self) -> BridgeConfig:
        if not self.endpoints:
            raise ValueError("bridge.endpoints must list at least one URL")
        return self


class ProposerConfig(BaseModel):
    model: str = "claude-sonnet-4-20250514"
    api_key_env: str = "ANTHROPIC_API_KEY"
    max_tokens: int = Field(default=4096, ge=1)
    temperature: float = Field(default=0.3, ge=0.0, le=1.0)


class TrialConfig(BaseModel):
    command: list[str] = Field(
        default_factory=list,
        description="Agent command; receives the task prompt on stdin.",
    )
    env: dict[str, str] = Field(default_factory=dict)
    workflows_file: Path | None = None


class RegressionConfig(BaseModel):
    """Bridge checks an edit must pass before it is committed."""

    enabled: bool = True
    checks_file: Path | None = Field(
        default=None,
        description="YAML file of regression checks. Built-in checks when unset.",
    )


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "console"] = "console"
    file_path: Path | None = None


class EvolutionConfig(BaseModel):
    """Top-level configuration for one evolver installation."""

    paths: PathsConfig = Field(default_factory=PathsConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    patterns: PatternConfig = Field(default_factory=PatternConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    git: GitConfig = Field(default_factory=GitConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    bridge: BridgeConfig = Field(default_factory=BridgeConfig)
    proposer: ProposerConfig = Field(default_factory=ProposerConfig)
    trial: TrialConfig = Field(default_factory=TrialConfig)
    regression: RegressionConfig = Field(default_factory=RegressionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> EvolutionConfig:
        """Load configuration from a YAML file (no environment overrides)."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.model_validate(data)

    @classmethod
    def from_yaml_string(cls, yaml_str: str) -> EvolutionConfig:
        data = yaml.safe_load(yaml_str) or {}
        return cls.model_validate(data)


def _parse_int(environ: Mapping[str, str], name: str) -> int:
    raw = environ[name]
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"{name} must be an integer, got {raw!r}", code="INVALID_ENV"
        ) from e


def apply_env_overrides(
    data: dict[str, Any], environ: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """Return a copy of raw config data with ``EVOLUTION_*`` overrides applied.

    EVOLUTION_TEST_DIR replaces base_dir and every derived sub-directory,
    EVOLUTION_TIMEOUT_MS sets the trial watchdog, EVOLUTION_AGENT_COUNT the
    number of agents per generation.
    """
    env = os.environ if environ is None else environ
    merged = {key: dict(value) if isinstance(value, dict) else value for key, value in data.items()}

    if env.get(ENV_TEST_DIR):
        base = Path(env[ENV_TEST_DIR])
        paths = merged.setdefault("paths", {})
        paths["base_dir"] = base
        paths["telemetry_dir"] = base / "telemetry"
        paths["documents_dir"] = base / "documents"
        paths["results_dir"] = base / "results"

    if env.get(ENV_TIMEOUT_MS):
        merged.setdefault("timing", {})["trial_timeout_seconds"] = (
            _parse_int(env, ENV_TIMEOUT_MS) / 1000
        )

    if env.get(ENV_AGENT_COUNT):
        merged.setdefault("loop", {})["agent_count"] = _parse_int(env, ENV_AGENT_COUNT)

    return merged


def load_config(
    path: Path | None = None, environ: Mapping[str, str] | None = None
) -> EvolutionConfig:
    """Load configuration from an optional YAML file plus environment overrides.

    Raises:
        ConfigurationError: If the file is missing, is not a mapping, or fails
            validation.
    """
    data: dict[str, Any] = {}
    if path is not None:
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}", code="CONFIG_NOT_FOUND")
        try:
            loaded = yaml.safe_load(path.read_text())
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")
        data = loaded or {}

    try:
        return EvolutionConfig.model_validate(apply_env_overrides(data, environ))
    except ValidationError as e:
        raise ConfigurationError(str(e)) from e
