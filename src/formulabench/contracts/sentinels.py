"""Sentinel values shared by the engine.

Row outcomes and cell reads must tell "no value" apart from an explicit
``None``: a formula may legitimately return ``None``, and a nullable cell may
legitimately hold it.

Example usage:
    from formulabench.contracts.sentinels import MISSING

    value = store.get_value(row_id, "price")
    if value is MISSING:
        # Cell was never written
        ...
    elif value is None:
        # Cell was explicitly cleared to null
        ...
"""

from typing import Final


class MissingSentinel:
    """Sentinel class for absent values.

    This is a singleton - use the MISSING instance, not the class directly.
    Comparison should always use `is` identity, never equality.
    """

    __slots__ = ()

    def __repr__(self) -> str:
        return "<MISSING>"

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> "MissingSentinel":
        return self

    def __deepcopy__(self, memo: dict[int, object]) -> "MissingSentinel":
        return self

    def __reduce__(self) -> str:
        return "MISSING"


MISSING: Final[MissingSentinel] = MissingSentinel()
"""Singleton sentinel indicating a value is absent.

Use identity comparison: `if value is MISSING:`
"""
