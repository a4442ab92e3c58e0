# src/formulabench/core/canonical.py
"""
Canonical JSON serialization for deterministic hashing.

Two-phase approach:
1. Normalize: convert mappings/tuples/sentinels to JSON-safe primitives
2. Serialize: deterministic JSON per RFC 8785/JCS (rfc8785 package)

Used for formula source hashes (artifact cache invalidation) and for
fingerprinting the reconstructed inputs of each calculation event.

NaN and Infinity are rejected: rfc8785 cannot represent them. Inputs that
cannot be canonicalized fall back to repr_hash(), which is stable within a
process but not across Python versions.
"""

from __future__ import annotations

import hashlib
import math
from collections.abc import Mapping
from typing import Any

import rfc8785

from formulabench.contracts.sentinels import MissingSentinel

CANONICAL_VERSION = "sha256-rfc8785-v1"


def _normalize_for_canonical(data: Any) -> Any:
    """Recursively convert ``data`` into rfc8785-serializable primitives.

    Raises:
        ValueError: If a float is NaN or infinite.
        TypeError: If a value has no JSON representation.
    """
    if isinstance(data, MissingSentinel):
        return None
    if isinstance(data, bool) or data is None or isinstance(data, str | int):
        return data
    if isinstance(data, float):
        if math.isnan(data) or math.isinf(data):
            raise ValueError(f"Cannot canonicalize non-finite float: {data}. Use None for missing values, not NaN.")
        return data
    if isinstance(data, Mapping):
        return {str(k): _normalize_for_canonical(v) for k, v in data.items()}
    if isinstance(data, list | tuple):
        return [_normalize_for_canonical(v) for v in data]
    raise TypeError(f"Cannot canonicalize value of type {type(data).__name__}")


def canonical_json(obj: Any) -> str:
    """Return the RFC 8785 canonical JSON text for ``obj``."""
    normalized = _normalize_for_canonical(obj)
    result: bytes = rfc8785.dumps(normalized)
    return result.decode("utf-8")


def stable_hash(obj: Any, version: str = CANONICAL_VERSION) -> str:
    """SHA-256 hex digest of the canonical JSON of ``obj``.

    Args:
        obj: JSON-like data
        version: Hash scheme version (only CANONICAL_VERSION is supported)
    """
    if version != CANONICAL_VERSION:
        raise ValueError(f"Unsupported canonical hash version: {version}")
    canonical = canonical_json(obj)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def repr_hash(obj: Any) -> str:
    """Fallback hash for data rfc8785 rejects (NaN, arbitrary objects)."""
    return hashlib.sha256(repr(obj).encode("utf-8")).hexdigest()


def inputs_fingerprint(inputs: Mapping[str, Any]) -> str:
    """Hash reconstructed formula inputs, falling back to repr for odd data."""
    try:
        return stable_hash(inputs)
    except (TypeError, ValueError):
        return repr_hash(inputs)


def hash_source_code(source: str) -> str:
    """Hash formula source text for artifact cache validation.

    Line endings are normalized so a CRLF checkout hashes like LF.
    """
    normalized = source.replace("\r\n", "\n").strip()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]
