# src/formulabench/core/__init__.py
"""Core infrastructure: canonical hashing, paths, configuration, logging."""

from formulabench.core.canonical import (
    CANONICAL_VERSION,
    canonical_json,
    hash_source_code,
    inputs_fingerprint,
    stable_hash,
)
from formulabench.core.config import (
    CacheSettings,
    CalculationSettings,
    FormulabenchSettings,
    LoggingSettings,
    load_schema,
    load_settings,
)
from formulabench.core.logging import configure_logging, get_logger
from formulabench.core.paths import (
    FlattenedPath,
    flatten_schema,
    flatten_values,
    get_by_path,
    reconstruct_inputs,
    set_by_path,
)

__all__ = [
    "CANONICAL_VERSION",
    "CacheSettings",
    "CalculationSettings",
    "FlattenedPath",
    "FormulabenchSettings",
    "LoggingSettings",
    "canonical_json",
    "configure_logging",
    "flatten_schema",
    "flatten_values",
    "get_by_path",
    "get_logger",
    "hash_source_code",
    "inputs_fingerprint",
    "load_schema",
    "load_settings",
    "reconstruct_inputs",
    "set_by_path",
    "stable_hash",
]
