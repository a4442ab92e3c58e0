# tests/property/test_canonical_properties.py
"""Property tests for input fingerprints.

Two calculation events with the same reconstructed inputs must carry the
same fingerprint, regardless of key insertion order.
"""

from __future__ import annotations

from typing import Any

from hypothesis import given
from hypothesis import strategies as st

from formulabench.core.canonical import canonical_json, inputs_fingerprint

_MAX_SAFE_INT = 2**53 - 1

json_primitives = (
    st.none()
    | st.booleans()
    | st.integers(min_value=-_MAX_SAFE_INT, max_value=_MAX_SAFE_INT)
    | st.floats(allow_nan=False, allow_infinity=False)
    | st.text(max_size=20)
)

json_values = st.recursive(
    json_primitives,
    lambda children: st.lists(children, max_size=5) | st.dictionaries(st.text(max_size=10), children, max_size=5),
    max_leaves=30,
)

input_dicts = st.dictionaries(st.text(min_size=1, max_size=10), json_values, max_size=8)


@given(inputs=input_dicts)
def test_fingerprint_ignores_key_order(inputs: dict[str, Any]) -> None:
    reordered = dict(reversed(list(inputs.items())))
    assert inputs_fingerprint(inputs) == inputs_fingerprint(reordered)


@given(inputs=input_dicts)
def test_canonical_json_is_deterministic(inputs: dict[str, Any]) -> None:
    assert canonical_json(inputs) == canonical_json(dict(inputs))


@given(inputs=input_dicts, key=st.text(min_size=1, max_size=10), value=st.integers(min_value=0, max_value=100))
def test_changed_inputs_change_fingerprint(inputs: dict[str, Any], key: str, value: int) -> None:
    changed = {**inputs, key: {"changed": value}}
    if changed == inputs:
        return
    assert inputs_fingerprint(changed) != inputs_fingerprint(inputs)
