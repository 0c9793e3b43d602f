"""
Typer CLI for the material knowledge-graph build pipeline.

Commands:
    kgbuild db init                 - Create tables from SQLAlchemy models
    kgbuild build signature         - Build file signatures for a material set
    kgbuild build signals           - Build material signals for a material set
    kgbuild build intake            - Run path intake for a path
    kgbuild progression compact     - Compact a user's event log
    kgbuild acceptance evaluate     - Check artifact counts against thresholds
    kgbuild info                    - Show configuration
    kgbuild version                 - Show version information

Usage:
    kgbuild --help
    kgbuild build signals --user-id <uuid> --set-id <uuid> --saga-id <uuid>
    kgbuild acceptance evaluate --pages 320 --files 8 --concepts 52 --nodes 14
    kgbuild acceptance evaluate --path-id <uuid> --json
"""

from __future__ import annotations

import asyncio
import json
import sys
import uuid
from collections.abc import Awaitable, Callable
from typing import Any, Optional

import typer
from loguru import logger
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from config import get_settings
from src.core.exceptions import PipelineError

app = typer.Typer(
    help="kgbuild: material knowledge-graph build pipeline",
    no_args_is_help=True,
)

console = Console()

VERSION = "0.1.0"


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
) -> None:
    """Configure log sinks before any command runs."""
    settings = get_settings()
    logger.remove()
    logger.add(
        sys.stderr,
        level="DEBUG" if verbose else settings.log_level,
        format="<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | {message}",
    )
    if settings.log_file:
        logger.add(settings.log_file, level=settings.log_level, rotation="10 MB", retention=5)


# ========================================
# Context Builder (Dependency Injection)
# ========================================


class CLIContext:
    """
    Builds stage collaborators from settings and releases them afterwards.

    Clients are created lazily so `db init` and `acceptance` never touch the
    network configuration.
    """

    def __init__(self):
        self.settings = get_settings()
        self._llm = None
        self._vectors = None

    @property
    def llm(self):
        if self._llm is None:
            from src.integrations.llm_client import OpenAIClient

            self._llm = OpenAIClient.from_settings(self.settings)
        return self._llm

    @property
    def vectors(self):
        if self._vectors is None:
            from src.integrations.vector_store import VectorStore

            self._vectors = VectorStore.from_settings(self.settings)
        return self._vectors

    def deps(self, with_llm: bool = True):
        from src.db.database import get_async_session_factory
        from src.db.repositories import BuildStore
        from src.integrations.notifier import LoggingNotifier
        from src.pipeline.stage import BuildDeps

        return BuildDeps(
            store=BuildStore(get_async_session_factory()),
            llm=self.llm if with_llm else None,
            embedder=self.llm if with_llm else None,
            vectors=self.vectors if with_llm else None,
            notifier=LoggingNotifier(),
            settings=self.settings,
        )

    async def aclose(self) -> None:
        from src.db.database import dispose_async_engine

        if self._llm is not None:
            await self._llm.close()
        if self._vectors is not None:
            await self._vectors.close()
        await dispose_async_engine()


def _run_stage(
    runner: Callable[[Any, Any], Awaitable[Any]],
    inp: Any,
    with_llm: bool = True,
) -> dict[str, Any]:
    """Run one stage to completion and return its output as a dict."""
    ctx = CLIContext()

    async def go() -> dict[str, Any]:
        try:
            out = await runner(ctx.deps(with_llm), inp)
            return out.to_dict()
        finally:
            await ctx.aclose()

    try:
        return asyncio.run(go())
    except PipelineError as e:
        logger.error("{}", e)
        rprint(f"[red]✗[/red] {e}")
        raise typer.Exit(code=1)


def _print_output(title: str, out: dict[str, Any]) -> None:
    table = Table(title=title)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    for key, value in out.items():
        if isinstance(value, (dict, list)):
            value = json.dumps(value, default=str)
            if len(value) > 120:
                value = value[:117] + "..."
        table.add_row(key, str(value))
    console.print(table)


# ========================================
# DATABASE COMMANDS
# ========================================

db_app = typer.Typer(help="Database management")
app.add_typer(db_app, name="db")


@db_app.command("init")
def db_init() -> None:
    """
    Initialize database tables from SQLAlchemy models.

    Creates every table under src/db/models if it doesn't exist.
    Safe to run multiple times (idempotent).
    """
    from src.db.database import init_db

    logger.info("Initializing database tables...")
    count = init_db()
    rprint(f"[green]✓[/green] Database initialized ({count} tables)")


# ========================================
# BUILD COMMANDS
# ========================================

build_app = typer.Typer(help="Run a single build stage")
app.add_typer(build_app, name="build")


@build_app.command("signature")
def build_signature(
    user_id: uuid.UUID = typer.Option(..., "--user-id", help="Owner user id"),
    set_id: uuid.UUID = typer.Option(..., "--set-id", help="Material set id"),
    saga_id: uuid.UUID = typer.Option(..., "--saga-id", help="Saga id for vector namespaces"),
) -> None:
    """Build file signatures, sections and summary embeddings."""
    from src.pipeline.file_signature import run_file_signature
    from src.pipeline.stage import StageInput

    out = _run_stage(run_file_signature, StageInput(user_id, set_id, saga_id))
    _print_output("File signatures", out)


@build_app.command("signals")
def build_signals(
    user_id: uuid.UUID = typer.Option(..., "--user-id", help="Owner user id"),
    set_id: uuid.UUID = typer.Option(..., "--set-id", help="Material set id"),
    saga_id: uuid.UUID = typer.Option(..., "--saga-id", help="Saga id"),
    path_id: Optional[uuid.UUID] = typer.Option(None, "--path-id", help="Path whose concept weights to update"),
) -> None:
    """Build intents, chunk signals and set-level aggregates."""
    from src.pipeline.material_signal import run_material_signal
    from src.pipeline.stage import StageInput

    out = _run_stage(run_material_signal, StageInput(user_id, set_id, saga_id, path_id=path_id))
    _print_output("Material signals", out)


@build_app.command("intake")
def build_intake(
    user_id: uuid.UUID = typer.Option(..., "--user-id", help="Owner user id"),
    set_id: uuid.UUID = typer.Option(..., "--set-id", help="Material set id"),
    path_id: uuid.UUID = typer.Option(..., "--path-id", help="Path to attach the intake to"),
    thread_id: Optional[uuid.UUID] = typer.Option(None, "--thread-id", help="Chat thread for questions"),
    job_id: Optional[uuid.UUID] = typer.Option(None, "--job-id", help="Job id keying chat messages"),
    wait_for_user: bool = typer.Option(False, "--wait/--no-wait", help="Pause for user confirmation"),
) -> None:
    """Propose learning paths for a material set."""
    from src.pipeline.path_intake import run_path_intake
    from src.pipeline.stage import StageInput

    inp = StageInput(
        user_id,
        set_id,
        path_id=path_id,
        thread_id=thread_id,
        job_id=job_id,
        wait_for_user=wait_for_user,
    )
    out = _run_stage(run_path_intake, inp)
    out.pop("intake", None)
    out.pop("meta", None)
    _print_output("Path intake", out)


# ========================================
# PROGRESSION COMMANDS
# ========================================

progression_app = typer.Typer(help="User progression log")
app.add_typer(progression_app, name="progression")


@progression_app.command("compact")
def progression_compact(
    user_id: uuid.UUID = typer.Option(..., "--user-id", help="User whose events to compact"),
) -> None:
    """Compact new user events into progression rows."""
    from src.pipeline.progression import run_progression_compact
    from src.pipeline.stage import StageInput

    out = _run_stage(run_progression_compact, StageInput(user_id, None), with_llm=False)
    _print_output("Progression", out)
    if out.get("budget_exhausted"):
        rprint("[yellow]⚠[/yellow] Budget exhausted, run again to continue")


# ========================================
# ACCEPTANCE COMMANDS
# ========================================

acceptance_app = typer.Typer(help="Acceptance checks on build outputs")
app.add_typer(acceptance_app, name="acceptance")


def _load_path_metrics(path_id: uuid.UUID):
    """Read acceptance metrics for a built path; exits 1 on pipeline errors."""
    from src.db.database import dispose_async_engine, get_async_session_factory
    from src.db.repositories import BuildStore
    from src.pipeline.acceptance import compute_acceptance_metrics

    async def go():
        try:
            return await compute_acceptance_metrics(BuildStore(get_async_session_factory()), path_id)
        finally:
            await dispose_async_engine()

    try:
        return asyncio.run(go())
    except PipelineError as e:
        logger.error("{}", e)
        rprint(f"[red]✗[/red] {e}")
        raise typer.Exit(code=1)


@acceptance_app.command("evaluate")
def acceptance_evaluate(
    path_id: Optional[uuid.UUID] = typer.Option(
        None, "--path-id", help="Load counts for a built path from the database"
    ),
    pages: int = typer.Option(0, "--pages", help="Total page count"),
    files: int = typer.Option(0, "--files", help="File count"),
    concepts: int = typer.Option(0, "--concepts", help="Concept count"),
    edges: int = typer.Option(0, "--edges", help="Concept edge count"),
    nodes: int = typer.Option(0, "--nodes", help="Path node count"),
    units: int = typer.Option(0, "--units", help="Unit count"),
    lessons: int = typer.Option(0, "--lessons", help="Lesson count"),
    uncovered: int = typer.Option(0, "--uncovered", help="Uncovered concept count"),
    errors_file: Optional[str] = typer.Option(
        None, "--errors-file", help="Text file of job error messages, one per line"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
) -> None:
    """
    Evaluate the acceptance checks and exit non-zero on failure.

    With --path-id the counts are read from the database and the count options
    are ignored; an --errors-file still adds its prompt-size failures.
    """
    from pathlib import Path

    from src.pipeline.acceptance import (
        MAX_HINTS,
        AcceptanceMetrics,
        collect_prompt_size_failures,
        evaluate_acceptance,
    )

    if path_id is not None:
        metrics = _load_path_metrics(path_id)
    else:
        metrics = AcceptanceMetrics(
            page_count=pages,
            file_count=files,
            concept_count=concepts,
            edge_count=edges,
            node_count=nodes,
            unit_count=units,
            lesson_count=lessons,
            uncovered_concepts=uncovered,
        )

    if errors_file:
        lines = Path(errors_file).read_text(encoding="utf-8").splitlines()
        extra, extra_hints = collect_prompt_size_failures(lines)
        metrics.prompt_size_errors += extra
        metrics.prompt_error_hints = (metrics.prompt_error_hints + extra_hints)[:MAX_HINTS]
    hints = metrics.prompt_error_hints
    result = evaluate_acceptance(metrics)

    if as_json:
        rprint(json.dumps(result.to_dict(), indent=2))
    else:
        table = Table(title="Acceptance")
        table.add_column("Check", style="cyan")
        table.add_column("Result")
        table.add_column("Details", style="dim")
        for check in result.checks:
            status = "[green]✓ pass[/green]" if check.passed else "[red]✗ fail[/red]"
            table.add_row(check.id, status, check.details)
        console.print(table)
        for hint in hints:
            rprint(f"  [dim]{hint}[/dim]")

    if not result.passed:
        raise typer.Exit(code=1)


# ========================================
# INFO
# ========================================


@app.command("info")
def show_info() -> None:
    """Show configuration."""
    settings = get_settings()

    table = Table(title="material-kg-build Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Database URL", settings.database_url)
    table.add_row("OpenAI API Key", "***" if settings.openai_api_key else "Not set")
    table.add_row("OpenAI Base URL", settings.openai_base_url)
    table.add_row("Model", settings.openai_model)
    table.add_row("Embed Model", settings.openai_embed_model)
    table.add_row("Vector Store", settings.vector_store_url or "Disabled")
    table.add_row("Material Signal", str(settings.material_signal_enabled))
    table.add_row("Adaptive Params", str(settings.adaptive_params_enabled))
    table.add_row("Artifact Cache", str(settings.learning_artifact_cache_enabled))
    table.add_row("Log Level", settings.log_level)

    console.print(table)


@app.command("version")
def show_version() -> None:
    """Show version information."""
    rprint(f"[bold]material-kg-build[/bold] v{VERSION}")
    rprint("  Material knowledge-graph build stages")
    rprint("  Signatures -> Signals -> Cross-set -> Path intake")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
