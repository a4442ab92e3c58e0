# src/formulabench/core/paths.py
"""Flattened parameter paths for nested formula inputs.

Rows store one cell per leaf of the formula's input tree. A leaf is
addressed by a path string: dots separate object keys and brackets index
arrays of objects, e.g. ``holdings[1].amount``. Numeric dot segments
(``holdings.1.amount``) are accepted on input and mean the same thing.

Two pure functions over the same schema description are kept symmetric:

- flatten_values(): nested inputs -> {path: value} for every present leaf
- reconstruct_inputs(): {path: value} -> nested inputs, with cell coercion
  and nullable/default filling

For complete, already-typed data, reconstruct_inputs(flatten_values(x)) == x.
"""

from __future__ import annotations

import copy
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from formulabench.contracts.enums import BaseType
from formulabench.contracts.schema import FactorDef, FactorType, FormulaSchema
from formulabench.contracts.sentinels import MISSING

# Array-of-object inputs get this many item column groups by default.
DEFAULT_ARRAY_ITEMS = 3

_SEGMENT_RE = re.compile(r"([^.\[\]]+)|\[(\d+)\]")
_TRUE_STRINGS = frozenset({"true", "1"})

Segment = str | int


@dataclass(frozen=True, slots=True)
class FlattenedPath:
    """One leaf column derived from the schema.

    Attributes:
        path: Dot/bracket path (``holdings[0].amount``)
        header: Human-readable column header
        factor_type: Factor type of the leaf
        depth: Nesting depth (0 for top-level inputs)
        is_array: True when the leaf lives inside an array item
        array_index: Index of the enclosing array item, if any
        description: Description copied from the schema
        definition: The FactorDef that produced this leaf
    """

    path: str
    header: str
    factor_type: FactorType
    depth: int
    is_array: bool
    definition: FactorDef
    array_index: int | None = None
    description: str | None = None


def parse_path(path: str) -> list[Segment]:
    """Split a path into key and index segments.

    >>> parse_path("holdings[1].amount")
    ['holdings', 1, 'amount']
    >>> parse_path("holdings.1.amount")
    ['holdings', 1, 'amount']
    """
    if not path:
        raise ValueError("Path must not be empty")
    segments: list[Segment] = []
    for key, index in _SEGMENT_RE.findall(path):
        if index:
            segments.append(int(index))
        elif key.isdigit():
            segments.append(int(key))
        else:
            segments.append(key)
    return segments


def join_path(parent: str, key: str | int) -> str:
    if isinstance(key, int):
        return f"{parent}[{key}]"
    return f"{parent}.{key}" if parent else key


def get_by_path(obj: Any, path: str) -> Any:
    """Read a nested value, returning MISSING when any segment is absent."""
    current = obj
    for segment in parse_path(path):
        if isinstance(segment, int):
            if not isinstance(current, list) or segment >= len(current):
                return MISSING
            current = current[segment]
        else:
            if not isinstance(current, Mapping) or segment not in current:
                return MISSING
            current = current[segment]
        if current is MISSING:
            return MISSING
    return current


def set_by_path(obj: dict[str, Any], path: str, value: Any) -> None:
    """Write a nested value, creating intermediate dicts and lists.

    Lists are padded with None up to the written index.
    """
    segments = parse_path(path)
    current: Any = obj
    for segment, following in zip(segments, segments[1:], strict=False):
        container: Any = [] if isinstance(following, int) else {}
        current = _descend(current, segment, container)
    _assign(current, segments[-1], value)


def _descend(current: Any, segment: Segment, empty: Any) -> Any:
    if isinstance(segment, int):
        if not isinstance(current, list):
            raise TypeError(f"Cannot index non-list with [{segment}]")
        while len(current) <= segment:
            current.append(None)
        if not isinstance(current[segment], dict | list):
            current[segment] = empty
        return current[segment]
    if not isinstance(current, dict):
        raise TypeError(f"Cannot read key {segment!r} from non-object")
    if not isinstance(current.get(segment), dict | list):
        current[segment] = empty
    return current[segment]


def _assign(current: Any, segment: Segment, value: Any) -> None:
    if isinstance(segment, int):
        if not isinstance(current, list):
            raise TypeError(f"Cannot index non-list with [{segment}]")
        while len(current) <= segment:
            current.append(None)
        current[segment] = value
    else:
        if not isinstance(current, dict):
            raise TypeError(f"Cannot set key {segment!r} on non-object")
        current[segment] = value


_CAMEL_BOUNDARY = re.compile(r"([a-z])([A-Z])")
_ABBREVIATION_BOUNDARY = re.compile(r"([A-Z])([A-Z][a-z])")


def header_from_path(path: str) -> str:
    """Title-case header from the last key of a path.

    >>> header_from_path("inputs.nonUSDCHolding")
    'Non USDC Holding'
    >>> header_from_path("IMR_factor")
    'IMR Factor'
    """
    keys = [segment for segment in parse_path(path) if isinstance(segment, str)]
    if not keys:
        return path
    text = keys[-1].replace("_", " ")
    text = _CAMEL_BOUNDARY.sub(r"\1 \2", text)
    text = _ABBREVIATION_BOUNDARY.sub(r"\1 \2", text)
    words = text.split()
    return " ".join(word[:1].upper() + word[1:] for word in words)


def flatten_schema(
    inputs: Sequence[FactorDef] | FormulaSchema,
    *,
    max_array_items: int = DEFAULT_ARRAY_ITEMS,
) -> list[FlattenedPath]:
    """Derive the leaf columns of a schema in declaration order."""
    definitions = inputs.inputs if isinstance(inputs, FormulaSchema) else inputs
    return list(_flatten_defs(definitions, "", 0, None, max_array_items))


def _flatten_defs(
    definitions: Iterable[FactorDef],
    parent: str,
    depth: int,
    array_index: int | None,
    max_array_items: int,
) -> Iterable[FlattenedPath]:
    for definition in definitions:
        factor_type = definition.factor_type
        path = join_path(parent, definition.key)
        if factor_type.is_object and factor_type.properties is not None:
            if factor_type.array:
                for index in range(max_array_items):
                    yield from _flatten_defs(
                        factor_type.properties, join_path(path, index), depth + 1, index, max_array_items
                    )
            else:
                yield from _flatten_defs(factor_type.properties, path, depth + 1, array_index, max_array_items)
            continue
        header = header_from_path(path)
        if array_index is not None:
            header = f"{header} [{array_index}]"
        yield FlattenedPath(
            path=path,
            header=header,
            factor_type=factor_type,
            depth=depth,
            is_array=array_index is not None,
            array_index=array_index,
            description=definition.description,
            definition=definition,
        )


def flatten_values(
    schema: FormulaSchema | Sequence[FactorDef],
    inputs: Mapping[str, Any],
    *,
    max_array_items: int | None = None,
) -> dict[str, Any]:
    """Flatten nested inputs into ``{path: value}`` for every present leaf.

    Array-of-object items are emitted for as many items as the data holds
    (or up to ``max_array_items`` when given).
    """
    definitions = schema.inputs if isinstance(schema, FormulaSchema) else schema
    flat: dict[str, Any] = {}
    _flatten_into(flat, definitions, inputs, "", max_array_items)
    return flat


def _flatten_into(
    flat: dict[str, Any],
    definitions: Iterable[FactorDef],
    source: Any,
    parent: str,
    max_array_items: int | None,
) -> None:
    if not isinstance(source, Mapping):
        return
    for definition in definitions:
        path = join_path(parent, definition.key)
        if definition.key not in source:
            continue
        value = source[definition.key]
        factor_type = definition.factor_type
        if factor_type.is_object and factor_type.properties is not None and value is not None:
            if factor_type.array and isinstance(value, list):
                limit = len(value) if max_array_items is None else min(len(value), max_array_items)
                for index in range(limit):
                    _flatten_into(flat, factor_type.properties, value[index], join_path(path, index), max_array_items)
                continue
            if not factor_type.array:
                _flatten_into(flat, factor_type.properties, value, path, max_array_items)
                continue
        flat[path] = copy.deepcopy(value)


def coerce_cell(value: Any, factor_type: FactorType) -> Any:
    """Convert a raw cell value to the leaf's declared type.

    - numeric strings become int/float for number leaves
    - "true"/"1" (case-insensitive) become True for boolean leaves, any
      other non-empty string False
    - empty strings become None for nullable leaves and MISSING for
      non-nullable number/boolean leaves
    - unparseable numbers are returned unchanged so validation can flag them

    Returns MISSING when the cell should be treated as absent.
    """
    if value is MISSING or value is None:
        return MISSING
    if factor_type.array and not factor_type.is_object:
        return _coerce_array_cell(value, factor_type)
    if not isinstance(value, str):
        return value
    text = value.strip()
    if text == "":
        if factor_type.nullable:
            return None
        return "" if factor_type.base_type == BaseType.STRING else MISSING
    if factor_type.base_type == BaseType.NUMBER:
        return parse_number(text, default=value)
    if factor_type.base_type == BaseType.BOOLEAN:
        return text.lower() in _TRUE_STRINGS
    return value


def _coerce_array_cell(value: Any, factor_type: FactorType) -> Any:
    item_type = factor_type.model_copy(update={"array": False})
    if isinstance(value, str):
        if not value.strip():
            return None if factor_type.nullable else MISSING
        items: list[Any] = [part for part in value.split(",")]
    elif isinstance(value, list | tuple):
        items = list(value)
    else:
        return value
    coerced = [coerce_cell(item, item_type) for item in items]
    return [None if item is MISSING else item for item in coerced]


def parse_number(text: str, default: Any = MISSING) -> Any:
    """Parse ``text`` as int when integral, else float; ``default`` if neither."""
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return default


def reconstruct_inputs(
    flat: Mapping[str, Any],
    schema: FormulaSchema | Sequence[FactorDef],
) -> dict[str, Any]:
    """Rebuild nested formula inputs from flattened row data.

    Cells are coerced with coerce_cell(); absent cells are skipped. Then the
    declared tree is walked and absent keys are filled: a declared default
    wins, nullable keys become None, and objects with properties are created
    so their own nullable/default children can be filled. Non-nullable
    leaves without a value stay absent for the validator to report.
    """
    definitions = schema.inputs if isinstance(schema, FormulaSchema) else schema
    leaf_types = _leaf_types(definitions)
    result: dict[str, Any] = {}

    for path, raw in flat.items():
        factor_type = leaf_types.get(_normalize_path(path))
        value = coerce_cell(raw, factor_type) if factor_type is not None else raw
        if value is MISSING or (factor_type is None and value is None):
            continue
        set_by_path(result, path, copy.deepcopy(value))

    _fill_missing(result, definitions)
    return result


def _normalize_path(path: str) -> str:
    normalized = ""
    for segment in parse_path(path):
        normalized = join_path(normalized, segment)
    return normalized


def _leaf_types(definitions: Iterable[FactorDef]) -> dict[str, FactorType]:
    """Map every addressable leaf path (any array index) to its factor type.

    Array indices are matched structurally, so arrays longer than the
    default column count still coerce correctly.
    """
    return _LeafTypeIndex(definitions)


class _LeafTypeIndex(dict[str, FactorType]):
    """Dict-like lookup that resolves ``x[7].y`` through the ``x[*].y`` template."""

    def __init__(self, definitions: Iterable[FactorDef]) -> None:
        super().__init__()
        self._collect(definitions, "")

    def _collect(self, definitions: Iterable[FactorDef], parent: str) -> None:
        for definition in definitions:
            path = join_path(parent, definition.key)
            factor_type = definition.factor_type
            if factor_type.is_object and factor_type.properties is not None:
                child = f"{path}[*]" if factor_type.array else path
                self._collect(factor_type.properties, child)
            else:
                self[path] = factor_type

    def get(self, key: str, default: Any = None) -> Any:  # type: ignore[override]
        template = re.sub(r"\[\d+\]", "[*]", key)
        return super().get(template, default)


def _fill_missing(target: dict[str, Any], definitions: Iterable[FactorDef]) -> None:
    for definition in definitions:
        key = definition.key
        factor_type = definition.factor_type
        if key not in target:
            if definition.has_default:
                target[key] = copy.deepcopy(definition.default)
            elif factor_type.nullable:
                target[key] = None
            elif factor_type.is_object and not factor_type.array:
                target[key] = {}
            elif factor_type.array:
                target[key] = []
            else:
                continue
        value = target[key]
        if not (factor_type.is_object and factor_type.properties is not None):
            continue
        if factor_type.array and isinstance(value, list):
            for item in value:
                if isinstance(item, dict):
                    _fill_missing(item, factor_type.properties)
        elif isinstance(value, dict):
            _fill_missing(value, factor_type.properties)


def default_cell_value(factor_type: FactorType, definition: FactorDef | None = None) -> Any:
    """Initial cell value for a fresh row.

    Declared defaults win; numbers start at a positive ``min`` constraint or
    0, booleans at False, strings empty, arrays empty.
    """
    if definition is not None and definition.has_default:
        return copy.deepcopy(definition.default)
    if factor_type.array:
        return []
    if factor_type.base_type == BaseType.NUMBER:
        minimum = factor_type.constraints.min if factor_type.constraints is not None else None
        if minimum is not None and minimum > 0:
            return int(minimum) if float(minimum).is_integer() else minimum
        return 0
    if factor_type.base_type == BaseType.BOOLEAN:
        return False
    if factor_type.base_type == BaseType.OBJECT:
        return {}
    return ""


def create_initial_data(
    schema: FormulaSchema | Sequence[FactorDef],
    *,
    max_array_items: int = DEFAULT_ARRAY_ITEMS,
) -> dict[str, Any]:
    """Default cell values for a fresh row, one per leaf column."""
    return {
        column.path: default_cell_value(column.factor_type, column.definition)
        for column in flatten_schema(schema, max_array_items=max_array_items)
    }
