"""Thin CLI wrapper for bundlesmith.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import Annotated, NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler

from bundlesmith import __version__
from bundlesmith.config import Settings, get_settings, print_settings_json
from bundlesmith.types import CacheMode, CacheRole, ProductOutcome, RunMode

app = typer.Typer(
    name="bundlesmith",
    help="bundlesmith - cached multi-platform framework bundles for package graphs",
    no_args_is_help=True,
)
console = Console()


def setup_logging(level: str) -> None:
    """Route log records through Rich on stderr.

    Args:
        level: Logging level name.
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"bundlesmith version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """bundlesmith - cached multi-platform framework bundles for package graphs."""


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        typer.echo(print_settings_json(settings))
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Output directory:    {settings.output_dir}")
        console.print(f"  Cache directory:     {settings.cache_dir}")
        console.print(f"  Work directory:      {settings.work_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print()
        console.print("[bold]Cache:[/bold]")
        console.print(f"  Cache mode:          {settings.cache_mode.value}")
        console.print(f"  Remote cache URL:    {settings.remote_cache_url or '-'}")
        console.print(f"  Lock timeout:        {settings.lock_timeout}")
        console.print()
        console.print("[bold]Toolchain:[/bold]")
        console.print(f"  Compiler command:    {' '.join(settings.compiler_command)}")
        console.print(f"  Merge command:       {' '.join(settings.merge_command)}")
        console.print(
            f"  Toolchain version:   {settings.toolchain_version or '(detected)'}"
        )
        console.print(f"  Log level:           {settings.log_level}")
        console.print()
        console.print("[bold]Concurrency:[/bold]")
        console.print(f"  Max builds:          {settings.max_concurrent_builds}")
        console.print(f"  Max tasks:           {settings.max_concurrent_tasks}")
        console.print(f"  Exclusive toolchain: {settings.toolchain_exclusive}")
        console.print(f"  Stop on first error: {settings.stop_on_first_error}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Build timeout:       {settings.build_timeout}")
        console.print(f"  Merge timeout:       {settings.merge_timeout}")


builds_app = typer.Typer(help="Build or reuse framework bundles")
app.add_typer(builds_app, name="build")


def _fail(message: str, code: str, json_output: bool) -> NoReturn:
    if json_output:
        typer.echo(json.dumps({"error": {"code": code, "message": message}}, indent=2))
    else:
        console.print(f"[red]Error ({code}): {message}[/red]")
    raise typer.Exit(code=1)


def _storage_bindings(
    settings: Settings,
    storage_dir: Path | None,
    remote_url: str | None,
    roles: list[CacheRole] | None,
) -> list:
    from bundlesmith.builds.storage import (
        HTTPCacheStorage,
        LocalCacheStorage,
        StorageBinding,
    )

    role_set = roles or [CacheRole.CONSUMER, CacheRole.PRODUCER]
    bindings = [
        StorageBinding.of(LocalCacheStorage(storage_dir or settings.cache_dir), role_set)
    ]
    url = remote_url or settings.remote_cache_url
    if url:
        bindings.append(StorageBinding.of(HTTPCacheStorage(url), role_set))
    return bindings


def _print_report(report) -> None:
    counts = report.counts()
    console.print()
    console.print(
        f"[bold]Run {report.run_id[:8]} ({report.mode.value}, "
        f"cache {report.cache_mode.value}):[/bold]"
    )
    console.print(f"  [blue]Reused: {counts[ProductOutcome.REUSED.value]}[/blue]")
    console.print(f"  [green]Rebuilt: {counts[ProductOutcome.REBUILT.value]}[/green]")
    if counts[ProductOutcome.FAILED.value]:
        console.print(f"  [red]Failed: {counts[ProductOutcome.FAILED.value]}[/red]")
    if report.cancelled:
        console.print("  [yellow]Stopped early[/yellow]")

    console.print()
    for p in report.products:
        if p.outcome is ProductOutcome.REUSED:
            source = p.cache_source.value if p.cache_source else "local"
            console.print(f"  [blue]= {p.target_name} (reused, {source})[/blue]")
        elif p.outcome is ProductOutcome.REBUILT:
            slices = ", ".join(p.slices) or "prebuilt"
            console.print(f"  [green]✓ {p.target_name} (rebuilt: {slices})[/green]")
        else:
            console.print(f"  [red]✗ {p.target_name} ({p.error_code})[/red]")
            if p.error_message:
                console.print(f"      Error: {p.error_message}")
            if p.log_path:
                console.print(f"      Log: {p.log_path}")


def _run_build(
    mode: RunMode,
    run_file: Path,
    output: Path | None,
    cache_mode: CacheMode | None,
    storage_dir: Path | None,
    remote_url: str | None,
    roles: list[CacheRole] | None,
    force: bool,
    stop_on_first_error: bool,
    json_output: bool,
) -> None:
    from bundlesmith.builds.platforms import ConfigurationError
    from bundlesmith.builds.runner import BuildExecutionError
    from bundlesmith.builds.service import Runner
    from bundlesmith.db import create_all_tables, get_engine, get_session_factory
    from bundlesmith.graph.io import GraphLoadError, load_run_document

    settings = get_settings()
    setup_logging(settings.log_level)

    try:
        document = load_run_document(run_file)
    except GraphLoadError as e:
        _fail(str(e), e.code, json_output)

    effective_mode = cache_mode or settings.cache_mode
    if effective_mode is not CacheMode.STORAGE and (storage_dir or remote_url or roles):
        _fail(
            "--storage-dir, --remote-url and --role require --cache-mode storage "
            f"(cache mode is {effective_mode.value})",
            "invalid_storage_options",
            json_output,
        )

    storages = []
    if effective_mode is CacheMode.STORAGE:
        storages = _storage_bindings(settings, storage_dir, remote_url, roles)

    engine = get_engine(settings.db_url)
    create_all_tables(engine)

    runner = Runner(
        settings,
        cache_mode=effective_mode,
        output_dir=output,
        storages=storages,
        force_rebuild=force,
        stop_on_first_error=stop_on_first_error or None,
        session_factory=get_session_factory(engine),
    )

    try:
        report = runner.run(document, run_file.resolve().parent, mode)
    except ConfigurationError as e:
        _fail(str(e), e.code, json_output)
    except BuildExecutionError as e:
        _fail(str(e), e.code, json_output)
    except KeyboardInterrupt:
        console.print("[yellow]Cancelled[/yellow]")
        raise typer.Exit(code=130) from None

    if json_output:
        typer.echo(report.model_dump_json(indent=2))
    else:
        _print_report(report)

    if not report.success:
        raise typer.Exit(code=1)


RunFileArgument = Annotated[
    Path, typer.Argument(help="Path to the run document (YAML or JSON)")
]
OutputOption = Annotated[
    Path | None,
    typer.Option("--output", "-o", help="Output directory for bundles"),
]
CacheModeOption = Annotated[
    CacheMode | None,
    typer.Option("--cache-mode", help="Cache mode: disabled, project or storage"),
]
StorageDirOption = Annotated[
    Path | None,
    typer.Option("--storage-dir", help="Local cache storage directory"),
]
RemoteUrlOption = Annotated[
    str | None,
    typer.Option("--remote-url", help="Base URL of a remote cache storage"),
]
RoleOption = Annotated[
    list[CacheRole] | None,
    typer.Option("--role", help="Storage role (can be repeated; default both)"),
]
ForceOption = Annotated[
    bool,
    typer.Option("--force", "-f", help="Rebuild even if cached"),
]
StopOption = Annotated[
    bool,
    typer.Option("--stop-on-first-error", help="Cancel remaining products on failure"),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Output as JSON"),
]


@builds_app.command("prepare")
def build_prepare(
    run_file: RunFileArgument,
    output: OutputOption = None,
    cache_mode: CacheModeOption = None,
    storage_dir: StorageDirOption = None,
    remote_url: RemoteUrlOption = None,
    roles: RoleOption = None,
    force: ForceOption = False,
    stop_on_first_error: StopOption = False,
    json_output: JsonOption = False,
) -> None:
    """Build bundles for every dependency of the root package."""
    _run_build(
        RunMode.PREPARE_DEPENDENCIES,
        run_file,
        output,
        cache_mode,
        storage_dir,
        remote_url,
        roles,
        force,
        stop_on_first_error,
        json_output,
    )


@builds_app.command("create")
def build_create(
    run_file: RunFileArgument,
    output: OutputOption = None,
    cache_mode: CacheModeOption = None,
    storage_dir: StorageDirOption = None,
    remote_url: RemoteUrlOption = None,
    roles: RoleOption = None,
    force: ForceOption = False,
    stop_on_first_error: StopOption = False,
    json_output: JsonOption = False,
) -> None:
    """Build bundles for the root package's own targets."""
    _run_build(
        RunMode.CREATE_PACKAGE,
        run_file,
        output,
        cache_mode,
        storage_dir,
        remote_url,
        roles,
        force,
        stop_on_first_error,
        json_output,
    )


@app.command()
def history(
    target: Annotated[
        str | None,
        typer.Option("--target", "-t", help="Filter by target name"),
    ] = None,
    outcome: Annotated[
        str | None,
        typer.Option("--outcome", help="Filter by outcome (reused/rebuilt/failed)"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: JsonOption = False,
) -> None:
    """List recorded product outcomes."""
    from bundlesmith.builds.service import list_history
    from bundlesmith.db import create_all_tables, get_engine, get_session_factory

    outcome_filter: ProductOutcome | None = None
    if outcome:
        try:
            outcome_filter = ProductOutcome(outcome)
        except ValueError:
            console.print(f"[red]Invalid outcome: {outcome}[/red]")
            console.print("Valid values: reused, rebuilt, failed")
            raise typer.Exit(code=1) from None

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        records = list_history(
            session, target_name=target, outcome=outcome_filter, limit=limit
        )

        if not records:
            if json_output:
                typer.echo("[]")
            else:
                console.print("[yellow]No build records found[/yellow]")
            return

        if json_output:
            output = [
                {
                    "id": r.id,
                    "run_id": r.run_id,
                    "run_mode": r.run_mode,
                    "package_id": r.package_id,
                    "target": r.target_name,
                    "outcome": r.outcome,
                    "cache_source": r.cache_source,
                    "fingerprint": r.fingerprint,
                    "bundle_path": r.bundle_path,
                    "started_at": r.started_at.isoformat() if r.started_at else None,
                    "finished_at": r.finished_at.isoformat() if r.finished_at else None,
                    "error_type": r.error_type,
                    "error_message": r.error_message,
                    "exit_code": r.exit_code,
                }
                for r in records
            ]
            typer.echo(json.dumps(output, indent=2))
        else:
            console.print(f"[bold]Found {len(records)} record(s):[/bold]")
            console.print()
            for r in records:
                color = {
                    "reused": "blue",
                    "rebuilt": "green",
                    "failed": "red",
                }.get(r.outcome, "white")
                console.print(f"  [{color}]{r.target_name}: {r.outcome}[/{color}]")
                console.print(f"    Run: {r.run_id[:8]} ({r.run_mode})")
                if r.fingerprint:
                    console.print(f"    Fingerprint: {r.fingerprint[:23]}...")
                if r.finished_at:
                    console.print(f"    Finished: {r.finished_at.isoformat()}")
                if r.error_message:
                    console.print(f"    Error: {r.error_message}")
                console.print()


__all__ = ["app", "setup_logging"]
