# src/formulabench/engine/compiler.py
"""Formula source compilation.

Turns a FormulaSchema's Python source into a callable and registers it in
the ArtifactCache under the formula id, keyed by the source hash. The
selected function is ``schema.function_name`` when given, otherwise the
first top-level ``def``/``async def`` in the source.

Compilation errors raise CompilationError to the caller: they are a
configuration problem, not a row-level failure.
"""

from __future__ import annotations

import ast
from typing import Any

import structlog

from formulabench.contracts.errors import CompilationError
from formulabench.contracts.schema import FormulaSchema
from formulabench.core.canonical import hash_source_code
from formulabench.engine.artifact_cache import ArtifactCache, ArtifactFunc, CompiledArtifact

logger = structlog.get_logger(__name__)


def expected_source_hash(schema: FormulaSchema) -> str | None:
    """Hash the cache must match for ``schema``, or None if it has no source."""
    if schema.source_code is None:
        return None
    return hash_source_code(schema.source_code)


class FormulaCompiler:
    """Compiles formula source and stores the result in an ArtifactCache.

    Example:
        compiler = FormulaCompiler(cache)
        compiler.compile(schema)          # raises CompilationError on bad source
        cache.get(schema.id, expected_source_hash(schema))
    """

    def __init__(self, cache: ArtifactCache) -> None:
        self._cache = cache

    def compile(self, schema: FormulaSchema, *, force: bool = False, ttl: float | None = None) -> CompiledArtifact:
        """Compile ``schema.source_code`` unless a fresh artifact is cached.

        Args:
            schema: Formula with ``source_code``
            force: Recompile even when the cached hash matches
            ttl: Per-artifact TTL override in seconds

        Raises:
            CompilationError: Missing source, syntax error, error while
                executing the module body, or no function to call
        """
        if schema.source_code is None:
            raise CompilationError(schema.id, "formula has no source code")
        source_hash = hash_source_code(schema.source_code)

        if not force:
            cached = self._cache.get_artifact(schema.id, source_hash)
            if cached is not None:
                return cached

        func = compile_source(schema.id, schema.source_code, schema.function_name)
        artifact = self._cache.set(schema.id, func, source_hash, ttl=ttl)
        logger.info(
            "Formula compiled",
            formula_id=schema.id,
            function=getattr(func, "__name__", None),
            source_hash=source_hash,
        )
        return artifact

    def register(
        self,
        formula_id: str,
        func: ArtifactFunc,
        *,
        source_hash: str | None = None,
        ttl: float | None = None,
    ) -> CompiledArtifact:
        """Cache an already-built callable (in-process formulas, tests)."""
        if not callable(func):
            raise CompilationError(formula_id, f"artifact must be callable, got {type(func).__name__}")
        effective_hash = source_hash or hash_source_code(f"{func.__module__}.{func.__qualname__}")
        return self._cache.set(formula_id, func, effective_hash, ttl=ttl)

    def ensure_compiled(self, schema: FormulaSchema) -> bool:
        """Compile if the schema has source and no fresh artifact is cached.

        Returns whether an artifact is available afterwards.
        """
        if schema.source_code is None:
            return self._cache.has(schema.id)
        self.compile(schema)
        return True


def compile_source(formula_id: str, source: str, function_name: str | None = None) -> ArtifactFunc:
    """Execute ``source`` in a fresh namespace and return the formula function.

    Raises:
        CompilationError: On syntax errors, module-body exceptions, or when
            the requested function does not exist.
    """
    try:
        tree = ast.parse(source, filename=f"<formula {formula_id}>")
    except SyntaxError as e:
        raise CompilationError(formula_id, e.msg or "invalid syntax", lineno=e.lineno) from e

    name = function_name or _first_function_name(tree)
    if name is None:
        raise CompilationError(formula_id, "source defines no function")

    namespace: dict[str, Any] = {"__name__": f"formula_{formula_id}"}
    code = compile(tree, filename=f"<formula {formula_id}>", mode="exec")
    try:
        exec(code, namespace)  # noqa: S102 - formula source is trusted user input
    except Exception as e:
        raise CompilationError(formula_id, f"{type(e).__name__}: {e}") from e

    func = namespace.get(name)
    if func is None:
        raise CompilationError(formula_id, f"function {name!r} not found in source")
    if not callable(func):
        raise CompilationError(formula_id, f"{name!r} is not callable")
    return func  # type: ignore[no-any-return]


def _first_function_name(tree: ast.Module) -> str | None:
    for node in tree.body:
        if isinstance(node, ast.FunctionDef | ast.AsyncFunctionDef):
            return node.name
    return None
