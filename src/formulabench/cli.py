# src/formulabench/cli.py
"""formulabench Command Line Interface.

Entry point for the formulabench CLI tool: batch-evaluate a formula over a
file of input rows, or check that a formula schema loads and compiles.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Literal

import typer
import yaml
from pydantic import ValidationError

from formulabench import __version__
from formulabench.contracts import CompilationError, FormulaSchema, RowCalculationResult, TableRow
from formulabench.contracts.enums import InvokeMode
from formulabench.core.config import FormulabenchSettings, load_schema, load_settings
from formulabench.core.paths import flatten_schema

__all__ = ["app"]

app = typer.Typer(
    name="formulabench",
    help="formulabench: reactive row calculation for formula verification.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"formulabench version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from a .env file.

    Raises:
        typer.Exit: If an explicit env_file path doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(f"Error: .env file not found: {env_file}", fg=typer.colors.RED, err=True)
            raise typer.Exit(1)
        return load_dotenv(env_file, override=False)
    return load_dotenv(override=False)


@app.callback()
def main(
    ctx: typer.Context,
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_dotenv: bool = typer.Option(False, "--no-dotenv", help="Skip loading .env file."),
    env_file: Path | None = typer.Option(None, "--env-file", help="Path to .env file (skips automatic search)."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose/debug logging."),
    json_logs: bool = typer.Option(False, "--json-logs", help="Output structured JSON logs."),
) -> None:
    """formulabench: reactive row calculation for formula verification."""
    from formulabench.core.logging import configure_logging

    configure_logging(json_output=json_logs, level="DEBUG" if verbose else "INFO")
    ctx.obj = {"verbose": verbose, "json_logs": json_logs}

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho("Warning: --env-file ignored because --no-dotenv is set.", fg=typer.colors.YELLOW, err=True)


def _load_settings_or_exit(settings: Path | None) -> FormulabenchSettings:
    try:
        return load_settings(settings.expanduser() if settings is not None else None)
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {settings}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None


def _apply_logging_settings(ctx: typer.Context, config: FormulabenchSettings) -> None:
    """Reconfigure logging from the settings file; CLI flags win."""
    from formulabench.core.logging import configure_logging

    flags = ctx.obj or {}
    level = "DEBUG" if flags.get("verbose") else config.logging.level
    json_output = bool(flags.get("json_logs")) or config.logging.json_output
    configure_logging(json_output=json_output, level=level)


def _load_schema_or_exit(schema: Path) -> FormulaSchema:
    try:
        return load_schema(schema.expanduser())
    except FileNotFoundError as e:
        typer.echo(f"Error: Schema file not found: {e.filename or schema}", err=True)
        raise typer.Exit(1) from None
    except yaml.YAMLError as e:
        typer.echo(f"YAML syntax error in {schema}: {e}", err=True)
        raise typer.Exit(1) from None
    except json.JSONDecodeError as e:
        typer.echo(f"JSON syntax error in {schema}: {e}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Schema errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None
    except ValueError as e:
        typer.echo(f"Schema error: {e}", err=True)
        raise typer.Exit(1) from None


def load_rows(path: Path) -> list[dict[str, Any]]:
    """Read a JSON or YAML list of nested input objects.

    Raises:
        ValueError: If the file does not hold a list of mappings.
    """
    text = path.read_text(encoding="utf-8")
    data = json.loads(text) if path.suffix.lower() == ".json" else yaml.safe_load(text)
    if data is None:
        return []
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise ValueError(f"Rows file {path} must contain a list of objects")
    return data


def _jsonable(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


def _row_payload(row: TableRow, result: RowCalculationResult | None) -> dict[str, Any]:
    payload: dict[str, Any] = {"id": row.id, "is_valid": row.is_valid}
    if row.has_result:
        payload["result"] = _jsonable(row.result)
    if row.execution_time_ms is not None:
        payload["execution_time_ms"] = row.execution_time_ms
    if row.error is not None:
        payload["error"] = row.error
    payload["calculated"] = result is not None
    return payload


async def _evaluate(
    settings: FormulabenchSettings, schema: FormulaSchema, rows: list[dict[str, Any]]
) -> tuple[list[TableRow], dict[str, RowCalculationResult], Any]:
    from formulabench.engine.datasheet import DataSheet

    sheet = DataSheet(settings, auto_trigger=False)
    try:
        sheet.set_formula(schema)
        sheet.load_inputs(rows)
        results = await sheet.execute_all_rows()
        return sheet.get_rows(), results, sheet.get_metrics()
    finally:
        sheet.close()


@app.command()
def run(
    ctx: typer.Context,
    schema: Path = typer.Option(..., "--schema", "-S", help="Path to formula schema (JSON or YAML)."),
    rows: Path = typer.Option(..., "--rows", "-r", help="Path to input rows (JSON or YAML list)."),
    settings: Path | None = typer.Option(None, "--settings", "-s", help="Path to settings YAML file."),
    inline: bool = typer.Option(False, "--inline", help="Run formula bodies on the event loop thread."),
    output_format: Literal["console", "json"] = typer.Option(
        "console",
        "--format",
        "-f",
        help="Output format: 'console' (human-readable) or 'json' (structured JSON).",
    ),
) -> None:
    """Evaluate a formula over every row of an input file."""
    config = _load_settings_or_exit(settings)
    _apply_logging_settings(ctx, config)
    if inline:
        config = config.model_copy(
            update={"calculation": config.calculation.model_copy(update={"invoke_mode": InvokeMode.INLINE})}
        )
    formula = _load_schema_or_exit(schema)

    try:
        inputs = load_rows(rows.expanduser())
    except FileNotFoundError:
        typer.echo(f"Error: Rows file not found: {rows}", err=True)
        raise typer.Exit(1) from None
    except (ValueError, yaml.YAMLError) as e:
        typer.echo(f"Error reading rows: {e}", err=True)
        raise typer.Exit(1) from None

    try:
        table, results, metrics = asyncio.run(_evaluate(config, formula, inputs))
    except CompilationError as e:
        typer.echo(f"Compilation error: {e}", err=True)
        raise typer.Exit(1) from None

    failed = [row for row in table if row.error is not None]
    if output_format == "json":
        document = {
            "formula_id": formula.id,
            "rows": [_row_payload(row, results.get(row.id)) for row in table],
            "metrics": None
            if metrics is None
            else {
                "total_time": metrics.total_time,
                "average_time": metrics.average_time,
                "calculated_rows": metrics.calculated_rows,
                "total_rows": metrics.total_rows,
            },
        }
        typer.echo(json.dumps(document, indent=2))
    else:
        typer.echo(f"Formula: {formula.id} ({len(table)} rows)")
        for row in table:
            if row.error is not None:
                typer.secho(f"  {row.id}: error: {row.error}", fg=typer.colors.RED)
            elif row.has_result:
                typer.echo(f"  {row.id}: {row.result!r} ({row.execution_time_ms or 0.0:.2f} ms)")
            else:
                typer.echo(f"  {row.id}: not calculated")
        if metrics is not None:
            typer.echo(
                f"Calculated {metrics.calculated_rows}/{metrics.total_rows} rows "
                f"in {metrics.total_time:.2f} ms (avg {metrics.average_time:.2f} ms)"
            )

    if failed:
        raise typer.Exit(1)


@app.command()
def validate(
    ctx: typer.Context,
    schema: Path = typer.Option(..., "--schema", "-S", help="Path to formula schema (JSON or YAML)."),
    settings: Path | None = typer.Option(None, "--settings", "-s", help="Path to settings YAML file."),
) -> None:
    """Check that a formula schema loads and its source compiles."""
    from formulabench.engine.artifact_cache import ArtifactCache
    from formulabench.engine.compiler import FormulaCompiler

    config = _load_settings_or_exit(settings)
    _apply_logging_settings(ctx, config)
    formula = _load_schema_or_exit(schema)

    if formula.source_code is not None:
        cache = ArtifactCache(max_size=1, background_sweep=False)
        try:
            FormulaCompiler(cache).compile(formula)
        except CompilationError as e:
            typer.echo(f"Compilation error: {e}", err=True)
            raise typer.Exit(1) from None
        finally:
            cache.destroy()

    columns = flatten_schema(formula, max_array_items=config.calculation.max_array_items)
    typer.echo(f"Schema valid: {formula.id}")
    typer.echo(f"  Inputs: {', '.join(formula.input_keys) or '(none)'}")
    typer.echo(f"  Columns: {len(columns)}")
    if formula.source_code is None:
        typer.echo("  Source: (none)")
    else:
        typer.echo("  Source: compiled")


if __name__ == "__main__":
    app()
