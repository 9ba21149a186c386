from __future__ import annotations

from pathlib import Path
from typing import Callable, Mapping, Optional
import sys

import typer

from traverse_client.logging import setup_logging
from traverse_client.orchestrator import AnalysisCommand, CommandOrchestrator, build_orchestrator
from traverse_client.paths import StoragePaths, default_storage_dir

app = typer.Typer(add_completion=False, help="Run Traverse analyses against a workspace.")

OrchestratorFactory = Callable[..., CommandOrchestrator]


class SechoNotifier:
    def info(self, message: str) -> None:
        typer.secho(message)

    def warning(self, message: str) -> None:
        typer.secho(message, err=True, fg=typer.colors.YELLOW)

    def error(self, message: str) -> None:
        typer.secho(message, err=True, fg=typer.colors.RED)


class DownloadProgress:
    """Drive a typer progress bar from ``(written, total)`` callbacks."""

    def __init__(self, label: str = "Downloading Traverse LSP server") -> None:
        self.label = label
        self._bar = None
        self._seen = 0

    def __call__(self, written: int, total: int | None) -> None:
        if self._bar is None:
            if not total:
                return
            self._bar = typer.progressbar(length=total, label=self.label, file=sys.stderr)
            self._bar.__enter__()
        self._bar.update(written - self._seen)
        self._seen = written

    def close(self) -> None:
        if self._bar is not None:
            self._bar.__exit__(None, None, None)
            self._bar = None
        self._seen = 0


def _options(ctx: typer.Context) -> Mapping[str, object]:
    obj = ctx.obj
    return obj if isinstance(obj, Mapping) else {}


def _context_orchestrator_factory(ctx: typer.Context) -> OrchestratorFactory:
    candidate = _options(ctx).get("orchestrator_factory")
    if callable(candidate):
        return candidate
    return build_orchestrator


def _context_setup_logging(ctx: typer.Context) -> Callable[..., object]:
    candidate = _options(ctx).get("setup_logging")
    if callable(candidate):
        return candidate
    return setup_logging


def _confirm_fn(ctx: typer.Context) -> Callable[[str], bool]:
    if _options(ctx).get("assume_yes"):
        return lambda _prompt: True
    return lambda prompt: typer.confirm(prompt, default=True)


def _orchestrator(
    ctx: typer.Context,
    root: Path | None,
    progress: DownloadProgress,
    *,
    overrides: Mapping[str, object] | None = None,
) -> CommandOrchestrator:
    options = _options(ctx)
    merged: dict[str, object] = dict(overrides or {})
    if options.get("server_path"):
        merged["serverPath"] = options["server_path"]
    if options.get("timeout") is not None:
        merged["requestTimeoutSeconds"] = options["timeout"]
    factory = _context_orchestrator_factory(ctx)
    return factory(
        storage_dir=options.get("storage_dir"),
        project_root=root,
        overrides=merged,
        confirm_fn=_confirm_fn(ctx),
        notifier=SechoNotifier(),
        progress_fn=progress,
        debug=bool(options.get("verbose")),
    )


def _workspace(root: Path) -> Path:
    resolved = root.expanduser().absolute()
    if not resolved.is_dir():
        typer.secho(f"Workspace {resolved} is not a directory", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=2)
    return resolved


def _run_analysis(ctx: typer.Context, command: AnalysisCommand | None, root: Path) -> None:
    workspace = _workspace(root)
    progress = DownloadProgress()
    orchestrator = _orchestrator(ctx, workspace, progress)
    try:
        if command is None:
            artifacts = orchestrator.generate_all(workspace)
        else:
            artifacts = orchestrator.run(command, workspace)
    finally:
        progress.close()
        orchestrator.shutdown()
    for artifact in artifacts:
        typer.echo(str(artifact.absolute_path))
    raise typer.Exit(code=0 if artifacts else 1)


@app.callback()
def main(
    ctx: typer.Context,
    storage_dir: Optional[Path] = typer.Option(
        None,
        "--storage-dir",
        help="Private storage directory (default: $TRAVERSE_HOME or ~/.traverse).",
    ),
    server_path: Optional[str] = typer.Option(
        None,
        "--server-path",
        help="Use this server executable instead of an installed one.",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        min=0.0,
        help="Seconds to wait for an analysis before stopping the server.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging for client and server."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Answer yes to every prompt."),
) -> None:
    obj = ctx.ensure_object(dict)
    storage = storage_dir if storage_dir is not None else default_storage_dir()
    obj.update(
        {
            "storage_dir": storage,
            "server_path": server_path,
            "timeout": timeout,
            "verbose": verbose,
            "assume_yes": yes,
        }
    )
    _context_setup_logging(ctx)("DEBUG" if verbose else "INFO", StoragePaths(storage).log_dir)


@app.command("call-graph")
def call_graph(
    ctx: typer.Context,
    root: Path = typer.Argument(Path("."), help="Workspace root."),
) -> None:
    """Generate a call graph for the workspace."""
    _run_analysis(ctx, AnalysisCommand.CALL_GRAPH, root)


@app.command("sequence-diagram")
def sequence_diagram(
    ctx: typer.Context,
    root: Path = typer.Argument(Path("."), help="Workspace root."),
) -> None:
    """Generate a sequence diagram for the workspace."""
    _run_analysis(ctx, AnalysisCommand.SEQUENCE_DIAGRAM, root)


@app.command("storage-analysis")
def storage_analysis(
    ctx: typer.Context,
    root: Path = typer.Argument(Path("."), help="Workspace root."),
) -> None:
    """Generate a storage access report for the workspace."""
    _run_analysis(ctx, AnalysisCommand.STORAGE_ANALYSIS, root)


@app.command("all")
def generate_all(
    ctx: typer.Context,
    root: Path = typer.Argument(Path("."), help="Workspace root."),
) -> None:
    """Run every analysis in turn, continuing past individual failures."""
    _run_analysis(ctx, None, root)


@app.command("toggle-chunking")
def toggle_chunking(ctx: typer.Context) -> None:
    """Flip the persisted chunking flag."""
    orchestrator = _orchestrator(ctx, None, DownloadProgress())
    enabled = orchestrator.toggle_chunking()
    typer.echo(f"chunking={'on' if enabled else 'off'}")


@app.command("restart-server")
def restart_server(
    ctx: typer.Context,
    root: Path = typer.Argument(Path("."), help="Workspace root."),
) -> None:
    """Restart the server, starting it if none is running."""
    workspace = _workspace(root)
    progress = DownloadProgress()
    orchestrator = _orchestrator(ctx, workspace, progress)
    try:
        started = orchestrator.restart_server(workspace)
    finally:
        progress.close()
        orchestrator.shutdown()
    raise typer.Exit(code=0 if started else 1)


@app.command("download-server")
def download_server(
    ctx: typer.Context,
    root: Optional[Path] = typer.Argument(None, help="Workspace to start the new server in once installed."),
    version: Optional[str] = typer.Option(None, "--version", help="Release tag to install (default: latest)."),
) -> None:
    """Download and install the server build for this platform.

    With ROOT, offers to start the freshly installed server there, which also
    checks that it launches.
    """
    workspace = _workspace(root) if root is not None else None
    progress = DownloadProgress()
    overrides = {"releaseVersion": version} if version else None
    orchestrator = _orchestrator(ctx, workspace, progress, overrides=overrides)
    try:
        record = orchestrator.download_server(workspace)
    finally:
        progress.close()
        orchestrator.shutdown()
    if record is None:
        raise typer.Exit(code=1)
    typer.echo(str(record.path))


@app.command("locate")
def locate(ctx: typer.Context) -> None:
    """Print the server executable that would be used."""
    orchestrator = _orchestrator(ctx, None, DownloadProgress())
    location = orchestrator.locate()
    if location is None:
        typer.secho("No Traverse LSP server found", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"{location.path} ({location.source.value})")
