"""Command-line interface for logica-plan."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from logica_plan.access_policy import AccessPolicy
from logica_plan.adapters import QueryResult, create_adapter
from logica_plan.config import Settings, configure_logging, load_policy
from logica_plan.errors import LogicaPlanError, Violation
from logica_plan.execution import load_executions
from logica_plan.executor import ReferencePlanExecutor, fetch_outputs
from logica_plan.guard import SqlGuard
from logica_plan.plan import Plan
from logica_plan.plan_builder import PlanBuilder
from logica_plan.plan_validator import PlanValidator

app = typer.Typer(
    name="logica-plan",
    help="Build, validate and run execution plans for compiled Logica predicates",
    add_completion=False,
)


def _fail(message: str) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(1)


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj if isinstance(ctx.obj, Settings) else Settings()


def _write_or_echo(text: str, output: Path | None) -> None:
    if output:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(text + "\n", encoding="utf-8")
        typer.echo(f"Plan written to {output}")
    else:
        typer.echo(text)


def _print_result(console: Console, predicate: str, result: QueryResult | None) -> None:
    if result is None:
        console.print(f"{predicate}: executed (no rows)")
        return

    table = Table(title=f"{predicate} ({result.row_count} rows)")
    for column in result.columns:
        table.add_column(column)
    for row in result.rows:
        table.add_row(*("NULL" if value is None else str(value) for value in row))
    console.print(table)


@app.callback()
def main_callback(
    ctx: typer.Context,
    config: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Settings file (YAML or JSON)"),
    ] = None,
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", help="Logging level (DEBUG, INFO, WARNING, ERROR)"),
    ] = None,
) -> None:
    """Load settings from the environment and an optional settings file."""
    try:
        settings = Settings.load(config)
        if log_level:
            settings.log_level = log_level.upper()
        configure_logging(settings.log_level)
    except LogicaPlanError as e:
        _fail(e.message)
    ctx.obj = settings


@app.command(name="build")
def build_cmd(
    ctx: typer.Context,
    executions_file: Annotated[Path, typer.Argument(help="JSON file with one or more compiled executions")],
    engine: Annotated[
        Optional[str],
        typer.Option("--engine", "-e", help="SQL engine (sqlite, psql)"),
    ] = None,
    final: Annotated[
        Optional[list[str]],
        typer.Option("--final", "-f", help="Final predicate (repeatable; defaults to every main predicate)"),
    ] = None,
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Write the plan to this file"),
    ] = None,
    compact: Annotated[
        bool,
        typer.Option("--compact", help="Emit compact JSON"),
    ] = False,
) -> None:
    """Merge compiled executions into a validated plan."""
    engine = (engine or _settings(ctx).engine).lower()
    try:
        executions = load_executions(executions_file)
        plan = PlanBuilder.from_executions(executions, engine=engine, final_predicates=final)
        PlanValidator.validate(plan)
    except (LogicaPlanError, FileNotFoundError) as e:
        _fail(str(e))

    _write_or_echo(plan.to_json(pretty=not compact), output)


@app.command(name="validate")
def validate_cmd(
    plan_file: Annotated[Path, typer.Argument(help="Plan JSON file")],
) -> None:
    """Validate a plan file, including its acyclicity."""
    try:
        plan = Plan.load(plan_file)
    except (LogicaPlanError, FileNotFoundError) as e:
        _fail(str(e))

    typer.echo(
        f"Plan is valid: {len(plan.config)} nodes, "
        f"{len(plan.outputs)} outputs, {len(plan.iterations)} iteration groups"
    )


@app.command(name="run")
def run_cmd(
    ctx: typer.Context,
    plan_file: Annotated[Path, typer.Argument(help="Plan JSON file")],
    database: Annotated[
        Optional[str],
        typer.Option("--database", "-d", help="SQLite path or PostgreSQL DSN"),
    ] = None,
    policy: Annotated[
        Optional[Path],
        typer.Option("--policy", "-p", help="Access policy file enforced on query nodes"),
    ] = None,
    guard: Annotated[
        Optional[list[str]],
        typer.Option("--guard", "-g", help="Only guard these nodes (repeatable; default: all)"),
    ] = None,
    page: Annotated[
        Optional[int],
        typer.Option("--page", help="Output page number (1-based)"),
    ] = None,
    per_page: Annotated[
        Optional[int],
        typer.Option("--per-page", help="Output rows per page (max 200)"),
    ] = None,
    format: Annotated[
        str,
        typer.Option("--format", "-F", help="Output format (console, json)"),
    ] = "console",
) -> None:
    """Execute a plan and print its outputs."""
    if format not in ("console", "json"):
        _fail(f"Unsupported format: {format}")

    settings = _settings(ctx)
    policy_path = policy or settings.policy_path
    if per_page is None:
        per_page = settings.per_page

    try:
        plan = Plan.load(plan_file, validate=settings.validate)
        sql_guard = SqlGuard(load_policy(policy_path)) if policy_path else None
        executor = ReferencePlanExecutor(
            guard=sql_guard,
            guarded_predicates=guard or None,
            validate=settings.validate,
        )

        adapter = create_adapter(plan.engine, database or settings.database)
        try:
            executor.execute(adapter, plan)
            results = fetch_outputs(adapter, plan, page=page, per_page=per_page)
        finally:
            adapter.close()
    except Violation as e:
        _fail(f"{e.reason.value}: {e.message}")
    except (LogicaPlanError, FileNotFoundError, ImportError, ValueError) as e:
        _fail(str(e))

    if format == "json":
        payload = {
            predicate: (result.to_dict() if result is not None else None)
            for predicate, result in results.items()
        }
        typer.echo(json.dumps(payload, indent=2, default=str))
        return

    console = Console()
    for predicate, result in results.items():
        _print_result(console, predicate, result)


@app.command(name="check-sql")
def check_sql_cmd(
    ctx: typer.Context,
    sql: Annotated[
        Optional[str],
        typer.Argument(help="SQL text (omit when using --file)"),
    ] = None,
    file: Annotated[
        Optional[Path],
        typer.Option("--file", help="Read the SQL from a file"),
    ] = None,
    policy: Annotated[
        Optional[Path],
        typer.Option("--policy", "-p", help="Access policy file (default: untrusted, no relations)"),
    ] = None,
    engine: Annotated[
        Optional[str],
        typer.Option("--engine", "-e", help="SQL engine (sqlite, psql)"),
    ] = None,
    allow_statements: Annotated[
        bool,
        typer.Option("--allow-statements", help="Skip the read-only query check"),
    ] = False,
) -> None:
    """Check one SQL statement against an access policy."""
    if file is not None:
        if not file.exists():
            _fail(f"File not found: {file}")
        sql = file.read_text(encoding="utf-8")
    if sql is None:
        _fail("Provide SQL text or --file")

    settings = _settings(ctx)
    policy_path = policy or settings.policy_path
    try:
        access_policy = load_policy(policy_path) if policy_path else AccessPolicy.untrusted(
            engine=engine or settings.engine, allowed_relations=[]
        )
        report = SqlGuard(access_policy, query_only=not allow_statements).check(
            sql, engine=engine or access_policy.engine or settings.engine
        )
    except Violation as e:
        typer.echo(json.dumps({"allowed": False, **e.to_dict()}, indent=2, default=str))
        raise typer.Exit(1)
    except (LogicaPlanError, ValueError) as e:
        _fail(str(e))

    typer.echo(json.dumps({"allowed": True, **report.to_dict()}, indent=2))


@app.command(name="policy-key")
def policy_key_cmd(
    policy: Annotated[Path, typer.Argument(help="Access policy file (YAML or JSON)")],
    engine: Annotated[
        Optional[str],
        typer.Option("--engine", "-e", help="Engine to resolve the policy for"),
    ] = None,
    show_data: Annotated[
        bool,
        typer.Option("--show-data", help="Also print the canonical policy data"),
    ] = False,
) -> None:
    """Print the cache key of an access policy."""
    try:
        access_policy = load_policy(policy)
        key = access_policy.cache_key(engine=engine)
        data = access_policy.cache_key_data(engine=engine) if show_data else None
    except (LogicaPlanError, ValueError) as e:
        _fail(str(e))

    typer.echo(key)
    if data is not None:
        typer.echo(json.dumps(data, indent=2, sort_keys=True))


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
