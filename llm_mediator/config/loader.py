"""
Configuration management and loading.

Handles mediator settings from environment variables or a YAML file.
"""

import math
import os
from dataclasses import dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from llm_mediator.core.pricing import FallbackMode
from llm_mediator.storage.spend_store import FileSpendStore, InMemorySpendStore, SpendStore


class PersistMode(Enum):
    """Where monthly spend is kept."""
    MEMORY = "memory"
    FILE = "file"


DEFAULT_BUDGET_FILE = ".cache/openai_budget.json"
DEFAULT_MODEL = "gpt-4o-mini"


@dataclass(frozen=True)
class MediatorConfig:
    """Settings for a request mediator.

    A requests_per_minute of zero or less disables rate limiting.
    """
    requests_per_minute: int = 50
    monthly_budget: float = 100.0
    max_attempts: int = 3
    pricing_fallback: FallbackMode = FallbackMode.MINI
    budget_persist: PersistMode = PersistMode.MEMORY
    budget_file: str = DEFAULT_BUDGET_FILE
    model: str = DEFAULT_MODEL
    backoff_base_ms: int = 500
    backoff_jitter_ms: int = 100
    backoff_cap_ms: int = 15_000
    log_level: str = "info"

    def __post_init__(self):
        """Validate numeric settings."""
        if not math.isfinite(self.monthly_budget):
            raise ValueError("monthly_budget must be a finite number")
        if self.monthly_budget < 0:
            raise ValueError("monthly_budget must be >= 0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        for name in ("backoff_base_ms", "backoff_jitter_ms", "backoff_cap_ms"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if not self.model or not self.model.strip():
            raise ValueError("model cannot be empty")
        if not self.budget_file or not self.budget_file.strip():
            raise ValueError("budget_file cannot be empty")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "MediatorConfig":
        """Build a config from ``OPENAI_*`` environment variables.

        Unset variables keep their defaults. An unrecognized
        OPENAI_BUDGET_PERSIST value means in-memory tracking.

        Raises:
            ValueError: If a variable holds an invalid value
        """
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}

        if env.get("OPENAI_RPM"):
            values["requests_per_minute"] = _env_number("OPENAI_RPM", env["OPENAI_RPM"], int)
        if env.get("OPENAI_MONTHLY_BUDGET"):
            values["monthly_budget"] = _env_number(
                "OPENAI_MONTHLY_BUDGET", env["OPENAI_MONTHLY_BUDGET"], float
            )
        if env.get("OPENAI_MAX_RETRIES"):
            values["max_attempts"] = _env_number("OPENAI_MAX_RETRIES", env["OPENAI_MAX_RETRIES"], int)
        if env.get("OPENAI_PRICING_FALLBACK_MODE"):
            values["pricing_fallback"] = _parse_enum(
                FallbackMode, env["OPENAI_PRICING_FALLBACK_MODE"], "OPENAI_PRICING_FALLBACK_MODE"
            )

        persist = env.get("OPENAI_BUDGET_PERSIST", "").strip().lower()
        values["budget_persist"] = PersistMode.FILE if persist == "file" else PersistMode.MEMORY
        if env.get("OPENAI_BUDGET_FILE"):
            values["budget_file"] = env["OPENAI_BUDGET_FILE"]
        if env.get("OPENAI_MODEL"):
            values["model"] = env["OPENAI_MODEL"]
        if env.get("LOG_LEVEL"):
            values["log_level"] = env["LOG_LEVEL"].lower()

        return cls(**values)


def _env_number(name: str, raw: str, kind):
    try:
        return kind(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be a valid {kind.__name__}, got {raw!r}")


def _parse_enum(enum_cls, raw: Any, path: str):
    if not isinstance(raw, str):
        raise ValueError(f"'{path}' must be a string")
    try:
        return enum_cls(raw.strip().lower())
    except ValueError:
        valid = [member.value for member in enum_cls]
        raise ValueError(f"'{path}' must be one of: {valid}")


_INT_KEYS = {
    "requests_per_minute", "max_attempts",
    "backoff_base_ms", "backoff_jitter_ms", "backoff_cap_ms",
}
_STR_KEYS = {"budget_file", "model", "log_level"}


def load_mediator_config(path: str) -> MediatorConfig:
    """Load and validate mediator configuration from a YAML file.

    Strict validation ensures no silent misconfiguration of budgets
    or rate limits. Keys that are omitted keep their defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MediatorConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Mediator config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_keys = {f.name for f in fields(MediatorConfig)}
    unknown_keys = set(raw_config.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    values: Dict[str, Any] = {}
    for key, value in raw_config.items():
        if key in _INT_KEYS:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"'{key}' must be an integer")
            values[key] = value
        elif key == "monthly_budget":
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError("'monthly_budget' must be a number")
            values[key] = float(value)
        elif key == "pricing_fallback":
            values[key] = _parse_enum(FallbackMode, value, key)
        elif key == "budget_persist":
            values[key] = _parse_enum(PersistMode, value, key)
        elif key in _STR_KEYS:
            if not isinstance(value, str):
                raise ValueError(f"'{key}' must be a string")
            values[key] = value

    return MediatorConfig(**values)


def build_spend_store(config: MediatorConfig) -> SpendStore:
    """Create the spend store selected by the configuration."""
    if config.budget_persist is PersistMode.FILE:
        return FileSpendStore(config.budget_file)
    return InMemorySpendStore()
