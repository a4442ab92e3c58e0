# src/formulabench/engine/artifact_cache.py
"""Compiled formula artifact cache with LRU/LFU eviction and TTL expiry.

Key: formula id. Value: CompiledArtifact (the callable plus bookkeeping).

Freshness rules, applied on every read:
- an entry past ``expires_at`` is evicted and reported as a miss
- an entry whose source hash differs from the caller's hash is evicted
  and reported as a miss

A miss is a cold-path signal (``None``), not an error: the caller
recompiles.

Eviction ranks entries by ``last_accessed_at`` ascending, then
``access_count`` ascending, and removes ``ceil(max_size * 0.2)`` entries
when an insert would exceed ``max_size``.

Thread Safety:
    All entry access holds ``_lock``. A daemon sweep thread removes
    expired entries every ``cleanup_interval`` seconds until destroy().
"""

from __future__ import annotations

import math
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog

from formulabench.core.config import CacheSettings
from formulabench.engine.clock import DEFAULT_CLOCK, Clock

logger = structlog.get_logger(__name__)

ArtifactFunc = Callable[..., Any]

_EVICTION_FRACTION = 0.2
_FORCE_EVICT_FRACTION = 0.1


@dataclass(slots=True)
class CompiledArtifact:
    """An invocable formula body plus cache bookkeeping.

    Attributes:
        func: The compiled callable (sync or async)
        source_hash: Hash of the source the callable was compiled from
        created_at: Clock time of insertion
        expires_at: Clock time after which the entry is stale (None = never)
        last_accessed_at: Clock time of the last successful get()
        access_count: Number of successful get() calls
    """

    func: ArtifactFunc
    source_hash: str
    created_at: float
    expires_at: float | None
    last_accessed_at: float
    access_count: int = 0

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class ArtifactCache:
    """Formula id -> CompiledArtifact with size and time bounds.

    Example:
        cache = ArtifactCache(max_size=10, clock=MockClock())
        cache.set("f1", func, source_hash="h1")
        cache.get("f1", source_hash="h1")   # func
        cache.get("f1", source_hash="h2")   # None, entry evicted
        cache.destroy()
    """

    def __init__(
        self,
        *,
        max_size: int = 100,
        default_ttl: float | None = 30 * 60,
        cleanup_interval: float = 5 * 60,
        clock: Clock | None = None,
        background_sweep: bool = True,
    ) -> None:
        """Initialize the cache.

        Args:
            max_size: Entries allowed before an insert triggers eviction
            default_ttl: Seconds until an entry expires (None = never)
            cleanup_interval: Seconds between background sweeps
            clock: Time source. Defaults to the system clock.
            background_sweep: Start the periodic sweep thread
        """
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        self._max_size = max_size
        self._default_ttl = default_ttl
        self._cleanup_interval = cleanup_interval
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._entries: dict[str, CompiledArtifact] = {}
        self._lock = threading.RLock()
        self._evicted_total = 0

        self._shutdown_event = threading.Event()
        self._sweep_thread: threading.Thread | None = None
        if background_sweep:
            self._start_sweep()

    @classmethod
    def from_settings(cls, settings: CacheSettings, clock: Clock | None = None) -> ArtifactCache:
        return cls(
            max_size=settings.max_size,
            default_ttl=settings.ttl_seconds,
            cleanup_interval=settings.cleanup_interval_seconds,
            clock=clock,
            background_sweep=settings.background_sweep,
        )

    # --- Public API ---

    def set(self, formula_id: str, func: ArtifactFunc, source_hash: str, ttl: float | None = None) -> CompiledArtifact:
        """Store a compiled artifact, evicting first if the cache is full.

        Replacing an existing id does not count as growth.
        """
        now = self._clock.monotonic()
        effective_ttl = ttl if ttl is not None else self._default_ttl
        artifact = CompiledArtifact(
            func=func,
            source_hash=source_hash,
            created_at=now,
            expires_at=now + effective_ttl if effective_ttl is not None else None,
            last_accessed_at=now,
        )
        with self._lock:
            if formula_id not in self._entries and len(self._entries) >= self._max_size:
                self._evict_lru()
            self._entries[formula_id] = artifact
        logger.debug("Artifact cached", formula_id=formula_id, source_hash=source_hash, expires_at=artifact.expires_at)
        return artifact

    def get(self, formula_id: str, source_hash: str | None = None) -> ArtifactFunc | None:
        """Return the cached callable, or None on a miss.

        A hit updates ``last_accessed_at`` and increments ``access_count``.
        """
        artifact = self.get_artifact(formula_id, source_hash)
        return artifact.func if artifact is not None else None

    def get_artifact(self, formula_id: str, source_hash: str | None = None) -> CompiledArtifact | None:
        """Like get(), but returns the entry with its metadata."""
        with self._lock:
            now = self._clock.monotonic()
            artifact = self._fresh_entry(formula_id, now)
            if artifact is None:
                return None
            if source_hash is not None and artifact.source_hash != source_hash:
                del self._entries[formula_id]
                logger.debug(
                    "Artifact source hash mismatch",
                    formula_id=formula_id,
                    cached_hash=artifact.source_hash,
                    requested_hash=source_hash,
                )
                return None
            artifact.last_accessed_at = now
            artifact.access_count += 1
            return artifact

    def has(self, formula_id: str) -> bool:
        """Freshness check without access bookkeeping; evicts expired entries."""
        with self._lock:
            return self._fresh_entry(formula_id, self._clock.monotonic()) is not None

    def delete(self, formula_id: str) -> bool:
        with self._lock:
            return self._entries.pop(formula_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def cleanup(self) -> int:
        """Remove expired entries; returns how many were removed."""
        with self._lock:
            now = self._clock.monotonic()
            expired = [key for key, artifact in self._entries.items() if artifact.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Expired artifacts removed", count=len(expired))
        return len(expired)

    def force_evict(self, count: int | None = None) -> list[str]:
        """Evict ``count`` lowest-ranked entries (default 10% of size, rounded up)."""
        with self._lock:
            if not self._entries:
                return []
            to_evict = count if count is not None else math.ceil(len(self._entries) * _FORCE_EVICT_FRACTION)
            return self._evict_ranked(to_evict)

    def update_config(
        self,
        *,
        max_size: int | None = None,
        default_ttl: float | None = None,
        cleanup_interval: float | None = None,
    ) -> None:
        """Change limits at runtime.

        Shrinking ``max_size`` below the current size evicts immediately
        (repeated ranked passes until the cache fits). A new
        ``cleanup_interval`` restarts the sweep thread if it was running.
        """
        if max_size is not None and max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        sweep_was_running = self._sweep_thread is not None
        if cleanup_interval is not None and sweep_was_running:
            self._stop_sweep()

        with self._lock:
            if max_size is not None:
                self._max_size = max_size
            if default_ttl is not None:
                self._default_ttl = default_ttl
            if cleanup_interval is not None:
                self._cleanup_interval = cleanup_interval
            while len(self._entries) > self._max_size:
                self._evict_lru()

        if cleanup_interval is not None and sweep_was_running:
            self._start_sweep()

    def get_stats(self) -> dict[str, Any]:
        """Snapshot of size, limits and per-entry bookkeeping."""
        with self._lock:
            now = self._clock.monotonic()
            entries = [
                {
                    "key": key,
                    "source_hash": artifact.source_hash,
                    "created_at": artifact.created_at,
                    "expires_at": artifact.expires_at,
                    "is_expired": artifact.is_expired(now),
                    "last_accessed_at": artifact.last_accessed_at,
                    "access_count": artifact.access_count,
                    "age_seconds": now - artifact.created_at,
                }
                for key, artifact in self._entries.items()
            ]
            size = len(self._entries)
        total_access = sum(entry["access_count"] for entry in entries)
        return {
            "size": size,
            "max_size": self._max_size,
            "default_ttl": self._default_ttl,
            "cleanup_interval": self._cleanup_interval,
            "expired_count": sum(1 for entry in entries if entry["is_expired"]),
            "avg_access_count": round(total_access / size) if size else 0,
            "evicted_total": self._evicted_total,
            "utilization_percent": round(size / self._max_size * 100),
            "entries": entries,
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def destroy(self) -> None:
        """Stop the sweep thread and drop every entry."""
        self._stop_sweep()
        self.clear()

    # --- Internals ---

    def _fresh_entry(self, formula_id: str, now: float) -> CompiledArtifact | None:
        artifact = self._entries.get(formula_id)
        if artifact is None:
            return None
        if artifact.is_expired(now):
            del self._entries[formula_id]
            logger.debug("Artifact expired", formula_id=formula_id)
            return None
        return artifact

    def _evict_lru(self) -> None:
        self._evict_ranked(math.ceil(self._max_size * _EVICTION_FRACTION))

    def _evict_ranked(self, count: int) -> list[str]:
        ranked = sorted(
            self._entries.items(),
            key=lambda item: (item[1].last_accessed_at, item[1].access_count),
        )
        evicted = [key for key, _ in ranked[: max(count, 0)]]
        for key in evicted:
            del self._entries[key]
        if evicted:
            self._evicted_total += len(evicted)
            logger.info("Artifacts evicted", count=len(evicted), evicted_total=self._evicted_total, max_size=self._max_size)
        return evicted

    def _start_sweep(self) -> None:
        self._shutdown_event = threading.Event()
        self._sweep_thread = threading.Thread(
            target=self._sweep_loop,
            args=(self._shutdown_event, self._cleanup_interval),
            name="artifact-cache-sweep",
            daemon=True,
        )
        self._sweep_thread.start()

    def _stop_sweep(self) -> None:
        thread = self._sweep_thread
        if thread is None:
            return
        self._shutdown_event.set()
        thread.join(timeout=5.0)
        if thread.is_alive():
            logger.error("Artifact cache sweep thread did not exit within timeout")
        self._sweep_thread = None

    def _sweep_loop(self, shutdown: threading.Event, interval: float) -> None:
        while not shutdown.wait(interval):
            try:
                self.cleanup()
            except Exception as e:
                # Sweep must keep running; the next interval retries
                logger.error("Artifact cache sweep failed", error=str(e), error_type=type(e).__name__)
