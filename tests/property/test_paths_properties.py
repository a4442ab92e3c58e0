# tests/property/test_paths_properties.py
"""Property tests for flattening nested inputs into cells and back.

A row's cells are the flattened form of its inputs. Rebuilding the inputs
from the cells must give back exactly what was flattened, for any values
the schema accepts.
"""

from __future__ import annotations

from typing import Any

from hypothesis import given
from hypothesis import strategies as st

from formulabench.contracts import FormulaSchema
from formulabench.core.paths import flatten_values, header_from_path, parse_path, reconstruct_inputs

NESTED = FormulaSchema.model_validate(
    {
        "id": "nested",
        "inputs": [
            {"key": "a", "factorType": {"baseType": "number"}},
            {
                "key": "b",
                "factorType": {
                    "baseType": "object",
                    "properties": [
                        {"key": "c", "factorType": {"baseType": "number"}},
                        {"key": "flag", "factorType": {"baseType": "boolean"}},
                    ],
                },
            },
        ],
    }
)

HOLDINGS = FormulaSchema.model_validate(
    {
        "id": "holdings",
        "inputs": [
            {
                "key": "holdings",
                "factorType": {
                    "baseType": "object",
                    "array": True,
                    "properties": [
                        {"key": "symbol", "factorType": {"baseType": "string"}},
                        {"key": "amount", "factorType": {"baseType": "number"}},
                    ],
                },
            },
            {"key": "note", "factorType": {"baseType": "string", "nullable": True}},
        ],
    }
)

numbers = st.integers(min_value=-(10**12), max_value=10**12) | st.floats(allow_nan=False, allow_infinity=False)
symbols = st.text(alphabet="ABCDEFGHIJKLMNOPQRSTUVWXYZ", min_size=1, max_size=6)

nested_inputs = st.fixed_dictionaries(
    {"a": numbers, "b": st.fixed_dictionaries({"c": numbers, "flag": st.booleans()})}
)

holdings_inputs = st.fixed_dictionaries(
    {
        "holdings": st.lists(st.fixed_dictionaries({"symbol": symbols, "amount": numbers}), max_size=5),
        "note": st.none() | symbols,
    }
)

identifiers = st.from_regex(r"[a-z][a-zA-Z0-9_]{0,8}", fullmatch=True)


@given(inputs=nested_inputs)
def test_nested_objects_round_trip(inputs: dict[str, Any]) -> None:
    flat = flatten_values(NESTED, inputs)
    assert set(flat) == {"a", "b.c", "b.flag"}
    assert reconstruct_inputs(flat, NESTED) == inputs


@given(inputs=holdings_inputs)
def test_arrays_of_objects_round_trip(inputs: dict[str, Any]) -> None:
    flat = flatten_values(HOLDINGS, inputs)
    assert reconstruct_inputs(flat, HOLDINGS) == inputs


@given(inputs=holdings_inputs, limit=st.integers(min_value=1, max_value=3))
def test_array_item_limit(inputs: dict[str, Any], limit: int) -> None:
    flat = flatten_values(HOLDINGS, inputs, max_array_items=limit)
    rebuilt = reconstruct_inputs(flat, HOLDINGS)
    assert rebuilt["holdings"] == inputs["holdings"][:limit]


@given(keys=st.lists(identifiers, min_size=1, max_size=4), index=st.integers(min_value=0, max_value=50))
def test_path_segments_survive_parsing(keys: list[str], index: int) -> None:
    path = f"{keys[0]}[{index}]" + "".join(f".{key}" for key in keys[1:])
    assert parse_path(path) == [keys[0], index, *keys[1:]]
    assert header_from_path(path)
