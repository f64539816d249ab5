"""Thin CLI wrapper for fleetpack.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from fleetpack import __version__
from fleetpack.config import Settings, get_settings, print_settings_json
from fleetpack.errors import ManifestError, ResolutionError
from fleetpack.manifest.schema import PackageSpec

app = typer.Typer(
    name="fleetpack",
    help="Fleetpack - build, verify and compose service packages from a manifest",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

STATUS_COLORS = {
    "succeeded": "green",
    "done": "green",
    "failed": "red",
    "skipped": "yellow",
    "cancelled": "yellow",
    "running": "blue",
    "pending": "white",
}

ManifestOption = Annotated[
    Path | None,
    typer.Option("--manifest", "-m", help="Package manifest (TOML, YAML or JSON)"),
]
TargetOption = Annotated[
    list[str] | None,
    typer.Option("--target", "-t", help="Target assignment KEY=VALUE (repeatable)"),
]
JsonOption = Annotated[bool, typer.Option("--json", help="Output as JSON")]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"fleetpack version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


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
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Fleetpack - build, verify and compose service packages from a manifest."""
    configure_logging("DEBUG" if verbose else get_settings().log_level)


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2))


def _settings(manifest: Path | None = None, **overrides: Any) -> Settings:
    settings = get_settings()
    update = {key: value for key, value in overrides.items() if value is not None}
    if manifest is not None:
        update["manifest_path"] = manifest
    return settings.model_copy(update=update) if update else settings


def _load_specs(settings: Settings) -> list[PackageSpec]:
    from fleetpack.manifest.io import load_manifest

    try:
        return load_manifest(settings.manifest_path)
    except ManifestError as e:
        err_console.print(f"[red]Manifest error ({e.code}): {e}[/red]")
        raise typer.Exit(code=1) from None


def _target_config(assignments: list[str] | None) -> dict[str, str]:
    from fleetpack.manifest.targets import parse_target_assignments

    try:
        return parse_target_assignments(assignments or [])
    except ValueError as e:
        err_console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None


def _describe_spec(spec: PackageSpec) -> dict[str, Any]:
    return {
        "name": spec.name,
        "service_name": spec.service_name,
        "source": spec.source.type,
        "output": spec.output.type,
        "artifact": spec.artifact_filename,
        "intermediate_only": spec.intermediate_only,
        "only_for_targets": dict(spec.only_for_targets),
    }


@app.command()
def config(json_output: JsonOption = False) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        typer.echo(print_settings_json(settings))
        return

    manual_dir_display = (
        str(settings.manual_dir) if settings.manual_dir else "(output directory)"
    )
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Manifest:            {settings.manifest_path}")
    console.print(f"  Base directory:      {settings.base_dir}")
    console.print(f"  Output directory:    {settings.output_dir}")
    console.print(f"  Manual artifacts:    {manual_dir_display}")
    console.print(f"  Download cache:      {settings.download_dir}")
    console.print(f"  Service manifests:   {settings.service_manifest_dir}")
    console.print(f"  Database URL:        {settings.db_url}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Offline mode:        {settings.offline}")
    console.print(f"  Fail fast:           {settings.fail_fast}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  Toolchain:           {settings.toolchain_command}")
    console.print()
    console.print("[bold]Concurrency:[/bold]")
    console.print(f"  Max builds:          {settings.max_concurrent_builds}")
    console.print()
    console.print("[bold]Artifact store:[/bold]")
    console.print(f"  URL:                 {settings.artifact_store_url}")
    console.print(f"  Fetch attempts:      {settings.fetch_max_attempts}")
    console.print(f"  Initial backoff:     {settings.fetch_initial_backoff}")
    console.print(f"  Backoff multiplier:  {settings.fetch_backoff_multiplier}")
    console.print(f"  Max backoff:         {settings.fetch_max_backoff}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Download timeout:    {settings.download_timeout}")
    console.print(f"  Build timeout:       {settings.build_timeout}")


@app.command("list")
def list_packages(
    manifest: ManifestOption = None,
    target: TargetOption = None,
    json_output: JsonOption = False,
) -> None:
    """List packages active for a target configuration."""
    from fleetpack.manifest.targets import filter_active

    settings = _settings(manifest)
    specs = _load_specs(settings)
    active = filter_active(specs, _target_config(target))

    if json_output:
        _echo_json([_describe_spec(spec) for spec in active])
        return

    if not active:
        console.print("[yellow]No active packages[/yellow]")
        return

    table = Table(title=f"{len(active)} of {len(specs)} package(s) active")
    table.add_column("Package", style="green")
    table.add_column("Service")
    table.add_column("Source")
    table.add_column("Artifact")
    for spec in active:
        artifact = spec.artifact_filename
        if spec.intermediate_only:
            artifact += " (intermediate)"
        table.add_row(spec.name, spec.service_name, spec.source.type, artifact)
    console.print(table)


@app.command()
def check(
    manifest: ManifestOption = None,
    target: TargetOption = None,
    json_output: JsonOption = False,
) -> None:
    """Validate the manifest and print the build order for a target."""
    from fleetpack.builds.graph import resolve
    from fleetpack.manifest.targets import filter_active

    settings = _settings(manifest)
    specs = _load_specs(settings)
    target_config = _target_config(target)

    try:
        order = resolve(filter_active(specs, target_config))
    except (ManifestError, ResolutionError) as e:
        if json_output:
            _echo_json({"valid": False, "error": {"code": e.code, "message": str(e)}})
        else:
            err_console.print(f"[red]Resolution failed ({e.code}): {e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        _echo_json(
            {
                "valid": True,
                "order": list(order),
                "edges": {k: list(v) for k, v in order.graph.edges.items()},
            }
        )
        return

    console.print(f"[green]✓ Valid manifest: {settings.manifest_path}[/green]")
    console.print(f"[bold]Build order ({len(order)} package(s)):[/bold]")
    for index, name in enumerate(order, start=1):
        members = order.graph.members(name)
        suffix = f" <- {', '.join(members)}" if members else ""
        console.print(f"  {index:3d}. {name}{suffix}")


@app.command()
def build(
    packages: Annotated[
        list[str] | None,
        typer.Argument(help="Packages to build (default: all)"),
    ] = None,
    manifest: ManifestOption = None,
    target: TargetOption = None,
    fail_fast: Annotated[
        bool | None,
        typer.Option(
            "--fail-fast/--best-effort",
            help="Cancel remaining work after the first failure",
        ),
    ] = None,
    jobs: Annotated[
        int | None,
        typer.Option("--jobs", "-j", min=1, max=64, help="Concurrent build tasks"),
    ] = None,
    output_dir: Annotated[
        Path | None,
        typer.Option("--output-dir", "-o", help="Output directory"),
    ] = None,
    offline: Annotated[
        bool | None,
        typer.Option("--offline", help="Use only cached prebuilt artifacts"),
    ] = None,
    no_record: Annotated[
        bool,
        typer.Option("--no-record", help="Do not store a build record"),
    ] = False,
    json_output: JsonOption = False,
) -> None:
    """Build packages and compose their outputs."""
    from fleetpack.builds.graph import ALL_PACKAGES
    from fleetpack.builds.service import BuildRequest, build_packages
    from fleetpack.db import open_database

    settings = _settings(
        manifest,
        max_concurrent_builds=jobs,
        output_dir=output_dir,
        offline=offline,
    )
    specs = _load_specs(settings)
    request = BuildRequest(
        targets=list(packages) if packages else [ALL_PACKAGES],
        target_config=_target_config(target),
        fail_fast=settings.fail_fast if fail_fast is None else fail_fast,
    )

    if no_record:
        report = build_packages(specs, request, settings=settings)
    else:
        with open_database(settings.db_url).begin() as session:
            report = build_packages(specs, request, settings=settings, session=session)

    if json_output:
        _echo_json(report.to_dict())
        raise typer.Exit(code=report.exit_code)

    if report.error_code:
        err_console.print(
            f"[red]Build aborted ({report.error_code}): {report.error_message}[/red]"
        )
        raise typer.Exit(code=report.exit_code)

    table = Table(title="Packages")
    table.add_column("Package")
    table.add_column("Status")
    table.add_column("Output")
    for name in report.order:
        result = report.results[name]
        color = STATUS_COLORS.get(result.status.value, "white")
        if result.artifact is not None:
            detail = str(result.artifact.path)
        else:
            detail = f"{result.error_code}: {result.error_message}"
        table.add_row(name, f"[{color}]{result.status.value}[/{color}]", detail)
    console.print(table)

    for result in report.failures():
        if result.setup_hint:
            console.print(f"[yellow]Hint for {result.package}:[/yellow]")
            console.print(result.setup_hint.strip())

    color = STATUS_COLORS.get(report.state.value, "white")
    console.print(
        f"[{color}]Build {report.state.value}[/{color}]: "
        f"{len(report.deliverables)} deliverable(s)"
    )
    if report.manifest_path is not None:
        console.print(f"  Manifest: {report.manifest_path}")
    raise typer.Exit(code=report.exit_code)


@app.command()
def history(
    run_id: Annotated[
        int | None,
        typer.Argument(help="Show packages of one run"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of runs to return"),
    ] = 20,
    package: Annotated[
        str | None,
        typer.Option("--package", "-p", help="Show builds of one package"),
    ] = None,
    json_output: JsonOption = False,
) -> None:
    """Show recorded build runs."""
    from fleetpack.builds.history import (
        BuildRunNotFoundError,
        get_run,
        list_package_builds,
        list_runs,
    )
    from fleetpack.db import open_database

    factory = open_database(_settings().db_url)

    with factory() as session:
        if package is not None:
            builds = [
                {
                    "run_id": b.run_id,
                    "status": b.status,
                    "artifact_path": b.artifact_path,
                    "sha256": b.sha256,
                    "error_code": b.error_code,
                }
                for b in list_package_builds(session, package, limit=limit)
            ]
            if json_output:
                _echo_json(builds)
                return
            if not builds:
                console.print(f"[yellow]No builds of {package} found[/yellow]")
                return
            console.print(f"[bold]Builds of {package}:[/bold]")
            for b in builds:
                color = STATUS_COLORS.get(b["status"], "white")
                detail = b["artifact_path"] or b["error_code"] or ""
                console.print(
                    f"  Run #{b['run_id']}: [{color}]{b['status']}[/{color}] {detail}"
                )
            return

        if run_id is not None:
            try:
                run = get_run(session, run_id)
            except BuildRunNotFoundError:
                err_console.print(f"[red]Build run not found: {run_id}[/red]")
                raise typer.Exit(code=1) from None

            packages = [
                {
                    "package": p.package,
                    "status": p.status,
                    "deliverable": p.deliverable,
                    "artifact_path": p.artifact_path,
                    "sha256": p.sha256,
                    "error_code": p.error_code,
                    "error_message": p.error_message,
                }
                for p in run.packages
            ]
            if json_output:
                _echo_json({"id": run.id, "state": run.state, "packages": packages})
                return
            console.print(f"[bold]Build run #{run.id}[/bold] ({run.state})")
            for p in packages:
                color = STATUS_COLORS.get(p["status"], "white")
                console.print(f"  [{color}]{p['package']}[/{color}]: {p['status']}")
                if p["error_message"]:
                    console.print(f"    Error: {p['error_message']}")
            return

        runs = list_runs(session, limit=limit)
        if json_output:
            _echo_json(
                [
                    {
                        "id": r.id,
                        "state": r.state,
                        "requested": r.requested,
                        "target_config": r.target_config,
                        "started_at": r.started_at.isoformat()
                        if r.started_at
                        else None,
                        "finished_at": r.finished_at.isoformat()
                        if r.finished_at
                        else None,
                        "error_code": r.error_code,
                        "package_count": len(r.packages),
                    }
                    for r in runs
                ]
            )
            return

        if not runs:
            console.print("[yellow]No build runs found[/yellow]")
            return

        console.print(f"[bold]Found {len(runs)} run(s):[/bold]")
        for r in runs:
            color = STATUS_COLORS.get(r.state, "white")
            requested = ", ".join(r.requested or [])
            console.print(f"  [{color}]Run #{r.id}[/{color}] {r.state}: {requested}")
            if r.error_message:
                console.print(f"    Error: {r.error_message}")


if __name__ == "__main__":
    app()
