# src/formulabench/core/config.py
"""
Configuration schema and loading for formulabench.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction.

Formula schema files (JSON or YAML) are loaded here too, since they are
the other piece of user-supplied configuration the CLI reads.
"""

import json
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

from formulabench.contracts.enums import InvokeMode
from formulabench.contracts.schema import FormulaSchema


class CacheSettings(BaseModel):
    """Artifact cache sizing and expiry.

    Example YAML:
        cache:
          max_size: 100
          ttl_seconds: 1800      # 30 minutes
          cleanup_interval_seconds: 300
    """

    model_config = {"frozen": True}

    max_size: int = Field(default=100, gt=0, description="Maximum cached artifacts before eviction")
    ttl_seconds: float = Field(default=30 * 60, gt=0, description="Default artifact lifetime")
    cleanup_interval_seconds: float = Field(default=5 * 60, gt=0, description="Background sweep interval")
    background_sweep: bool = Field(default=True, description="Run the periodic sweep thread")


class CalculationSettings(BaseModel):
    """Timing and execution settings for the calculation pipeline."""

    model_config = {"frozen": True}

    debounce_seconds: float = Field(default=0.3, ge=0, description="Trailing debounce for cell edits")
    auto_trigger_delay_seconds: float = Field(default=0.1, ge=0, description="Delay before auto-calculating a row")
    recent_update_window_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Auto-trigger scans are suppressed while an edit is this recent",
    )
    invoke_mode: InvokeMode = Field(default=InvokeMode.THREAD, description="Run formula bodies in threads or inline")
    max_workers: int = Field(default=4, gt=0, description="Thread pool size for InvokeMode.THREAD")
    execution_log_size: int = Field(default=20, gt=0, description="Entries kept in the execution log")
    max_array_items: int = Field(default=3, gt=0, description="Item column groups per array-of-object input")

    @model_validator(mode="after")
    def validate_delays(self) -> "CalculationSettings":
        """The recent-update window must outlast the debounce or scans race edits."""
        if self.recent_update_window_seconds and self.recent_update_window_seconds < self.debounce_seconds:
            raise ValueError("recent_update_window_seconds must be >= debounce_seconds")
        return self


class LoggingSettings(BaseModel):
    """Log output format and level."""

    model_config = {"frozen": True}

    level: str = Field(default="INFO", pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    json_output: bool = False


class FormulabenchSettings(BaseModel):
    """Top-level settings.

    Example YAML:
        calculation:
          debounce_seconds: 0.3
          invoke_mode: thread
        cache:
          max_size: 50
        logging:
          level: DEBUG
    """

    model_config = {"frozen": True}

    cache: CacheSettings = Field(default_factory=CacheSettings)
    calculation: CalculationSettings = Field(default_factory=CalculationSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values."""

    def _expand_string(value: str) -> str:
        def replacer(match: re.Match[str]) -> str:
            env_value = os.environ.get(match.group(1))
            if env_value is not None:
                return env_value
            if match.group(2) is not None:
                return match.group(2)
            return match.group(0)

        return _ENV_VAR_PATTERN.sub(replacer, value)

    def _expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return _expand_string(value)
        elif isinstance(value, dict):
            return {k: _expand_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [_expand_value(item) for item in value]
        else:
            return value

    return {k: _expand_value(v) for k, v in config.items()}


def _lower_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k).lower(): _lower_keys(v) for k, v in value.items()}
    return value


def load_settings(config_path: Path | None = None) -> FormulabenchSettings:
    """Load settings from a YAML file with environment variable overrides.

    Uses Dynaconf for multi-source loading with precedence:
    1. Environment variables (FORMULABENCH_*) - highest priority
    2. Config file (formulabench.yaml)
    3. Defaults from Pydantic schema - lowest priority

    Environment variable format: FORMULABENCH_CACHE__MAX_SIZE for nested keys.

    Args:
        config_path: Path to YAML configuration file, or None for env + defaults

    Returns:
        Validated FormulabenchSettings instance

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if config_path is not None and not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="FORMULABENCH",
        settings_files=[str(config_path)] if config_path is not None else [],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k.lower(): _lower_keys(v) for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}
    raw_config = _expand_env_vars(raw_config)

    return FormulabenchSettings(**raw_config)


def load_schema(schema_path: Path) -> FormulaSchema:
    """Load a formula schema from a JSON or YAML file.

    ``source_file`` may name a Python file (relative to the schema file)
    whose text becomes ``source_code``.

    Raises:
        FileNotFoundError: If the schema or its source file doesn't exist
        ValueError: If the file is not a mapping
        ValidationError: If the schema fails Pydantic validation
    """
    if not schema_path.exists():
        raise FileNotFoundError(f"Schema file not found: {schema_path}")

    text = schema_path.read_text(encoding="utf-8")
    if schema_path.suffix.lower() == ".json":
        raw = json.loads(text)
    else:
        raw = yaml.safe_load(text)
    if not isinstance(raw, dict):
        raise ValueError(f"Schema file {schema_path} must contain a mapping, got {type(raw).__name__}")

    source_file = raw.pop("source_file", None) or raw.pop("sourceFile", None)
    if source_file is not None:
        source_path = (schema_path.parent / source_file).resolve()
        if not source_path.exists():
            raise FileNotFoundError(f"Formula source not found: {source_path}")
        raw["source_code"] = source_path.read_text(encoding="utf-8")

    return FormulaSchema.model_validate(raw)
