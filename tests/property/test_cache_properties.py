# tests/property/test_cache_properties.py
"""Property tests for the artifact cache size bound.

Whatever order formulas are compiled and read in, the cache never holds
more than max_size entries, and the entry just written is always present.
"""

from __future__ import annotations

from hypothesis import given
from hypothesis import strategies as st

from formulabench.engine.artifact_cache import ArtifactCache
from formulabench.engine.clock import MockClock


def _formula(x: float) -> float:
    return x


operations = st.lists(
    st.tuples(st.sampled_from(["set", "get"]), st.integers(min_value=0, max_value=30)),
    min_size=1,
    max_size=120,
)


@given(max_size=st.integers(min_value=1, max_value=12), ops=operations)
def test_size_never_exceeds_max(max_size: int, ops: list[tuple[str, int]]) -> None:
    clock = MockClock()
    cache = ArtifactCache(max_size=max_size, default_ttl=None, clock=clock, background_sweep=False)
    for op, key in ops:
        clock.advance(1)
        formula_id = f"f{key}"
        if op == "set":
            cache.set(formula_id, _formula, "h")
            assert cache.has(formula_id)
        else:
            cache.get(formula_id)
        assert len(cache) <= max_size


@given(max_size=st.integers(min_value=2, max_value=12), extra=st.integers(min_value=1, max_value=20))
def test_most_recent_entry_survives_eviction(max_size: int, extra: int) -> None:
    clock = MockClock()
    cache = ArtifactCache(max_size=max_size, default_ttl=None, clock=clock, background_sweep=False)
    for index in range(max_size + extra):
        clock.advance(1)
        cache.set(f"f{index}", _formula, "h")
    assert cache.has(f"f{max_size + extra - 1}")
    assert len(cache) <= max_size
