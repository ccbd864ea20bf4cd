"""Typer-based CLI for generating, previewing, and managing code artifacts."""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path

import typer

from codeforge.client import OllamaClient
from codeforge.config import ModelConfig
from codeforge.controller import GenerationController
from codeforge.errors import CodeforgeError, TransportError
from codeforge.exporter import export_artifact
from codeforge.models import FRAMEWORKS, Artifact, GenerationProgress, GenerationResult
from codeforge.preview import VIEWPORTS, PreviewRenderer, render_host_page
from codeforge.sandbox import FileSandboxHost
from codeforge.store import ProjectRepository
from codeforge.workspace import Notification, Workspace, time_ago

logger = logging.getLogger(__name__)

app = typer.Typer(add_completion=False, help="codeforge: generate front-end apps with a local LLM and preview them")

DEFAULT_DB_PATH = Path(".codeforge/projects.db")
DEFAULT_PREVIEW_ROOT = Path(".codeforge/preview")
DEFAULT_EXPORT_ROOT = Path("exports")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _echo_step(step: int, total: int, message: str) -> None:
    """Print a normalized progress step line."""
    typer.echo(f"[{step}/{total}] {message}")


def _echo_notification(notification: Notification) -> None:
    typer.echo(f"    {notification.message}", err=notification.level == "error")


class _ProgressPrinter:
    """Print a progress line whenever the percentage crosses a new 10% band."""

    def __init__(self) -> None:
        self._band = -1

    def __call__(self, progress: GenerationProgress) -> None:
        band = progress.percent // 10
        if band == self._band:
            return
        self._band = band
        typer.echo(
            f"    {progress.message} {progress.percent}% "
            f"tokens={progress.tokens_generated} ({progress.tokens_per_second:.1f}/s)"
        )


def _open_repository(db_path: Path) -> ProjectRepository:
    repository = ProjectRepository(db_path)
    repository.init_db()
    return repository


def _require_artifact(repository: ProjectRepository, artifact_id: str) -> Artifact:
    artifact = repository.get(artifact_id)
    if artifact is None:
        raise typer.BadParameter(f"Artifact not found: {artifact_id}")
    return artifact


def _format_row(artifact: Artifact) -> str:
    star = "*" if artifact.starred else " "
    return (
        f"{artifact.id} {star} {artifact.name}  "
        f"[{artifact.framework}] tokens={artifact.token_count} {time_ago(artifact.created_at)}"
    )


def _write_host_page(session_root: Path, renderer: PreviewRenderer, title: str) -> Path | None:
    if renderer.session is None or renderer.session.sandbox_url is None:
        return None
    page = session_root / "index.html"
    page.write_text(render_host_page(renderer.session, renderer.viewport, title=title), encoding="utf-8")
    return page


async def _run_generation(workspace: Workspace, raw_input: str, framework: str, config: ModelConfig) -> GenerationResult:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, workspace.cancel)
        cancel_on_interrupt = True
    except (NotImplementedError, RuntimeError):
        # No loop signal support (Windows, or not the main thread).
        logger.debug("Ctrl-C cancellation unavailable on this event loop")
        cancel_on_interrupt = False
    try:
        return await workspace.generate(raw_input, framework, config, on_progress=_ProgressPrinter())
    finally:
        if cancel_on_interrupt:
            loop.remove_signal_handler(signal.SIGINT)


@app.command("init-db")
def init_db(
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
) -> None:
    """Initialize the SQLite database schema."""
    _open_repository(db_path)
    typer.echo(f"DB initialized: {db_path}")


@app.command("generate")
def generate(
    raw_input: str = typer.Argument(..., help="App description or URL to clone"),
    framework: str = typer.Option("react", "--framework", "-f", help=f"One of: {', '.join(FRAMEWORKS)}"),
    endpoint: str | None = typer.Option(None, help="Model endpoint base URL"),
    model: str | None = typer.Option(None, help="Model identifier"),
    temperature: float | None = typer.Option(None, min=0.0, max=2.0, help="Sampling temperature"),
    max_tokens: int | None = typer.Option(None, min=1, help="Maximum tokens to generate"),
    top_p: float | None = typer.Option(None, min=0.0, max=1.0, help="Nucleus sampling top-p"),
    top_k: int | None = typer.Option(None, min=0, help="Top-k sampling"),
    repeat_penalty: float | None = typer.Option(None, min=0.0, help="Repeat penalty"),
    stream: bool | None = typer.Option(None, "--stream/--no-stream", help="Stream the response"),
    timeout_ms: int | None = typer.Option(None, min=1, help="Inactivity timeout in milliseconds"),
    context_length: int | None = typer.Option(None, min=1, help="Context window length"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
    preview_root: Path = typer.Option(DEFAULT_PREVIEW_ROOT, "--preview-dir", help="Preview output directory"),
    no_preview: bool = typer.Option(False, "--no-preview", help="Do not write a preview page"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Generate an app from a description or URL, save it, and write a preview."""
    _configure_logging(verbose)
    if framework not in FRAMEWORKS:
        raise typer.BadParameter(f"Unknown framework {framework!r}; choose one of {', '.join(FRAMEWORKS)}")
    try:
        config = ModelConfig().with_updates(
            endpoint=endpoint,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            top_p=top_p,
            top_k=top_k,
            repeat_penalty=repeat_penalty,
            stream=stream,
            timeout_ms=timeout_ms,
            context_length=context_length,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    _echo_step(1, 4, "Initializing storage")
    repository = _open_repository(db_path)

    _echo_step(2, 4, f"Generating with {config.model} at {config.base_url}")
    session_root = preview_root / "latest"
    host = FileSandboxHost(session_root)
    host.purge()
    renderer = PreviewRenderer(host)
    workspace = Workspace(
        GenerationController(OllamaClient(), repository=repository, config=config),
        renderer,
        repository,
        on_notify=_echo_notification,
    )
    try:
        result = asyncio.run(_run_generation(workspace, raw_input, framework, config))
    except CodeforgeError as exc:
        raise typer.BadParameter(str(exc)) from exc

    if not result.succeeded or result.artifact is None:
        if result.text:
            typer.echo(f"    partial output kept: {len(result.text)} characters", err=True)
        raise typer.Exit(code=1)

    _echo_step(3, 4, "Saving artifact")
    typer.echo(f"    id={result.artifact.id} tokens={result.artifact.token_count} saved={result.persisted}")

    _echo_step(4, 4, "Rendering preview")
    if no_preview:
        renderer.teardown()
        typer.echo("    --no-preview enabled: skipping preview page")
        return
    page = _write_host_page(session_root, renderer, title=result.artifact.name)
    if page is None:
        typer.echo(f"    preview unavailable: {renderer.session.last_error if renderer.session else 'no session'}")
        return
    typer.echo(f"Generation complete. id={result.artifact.id} preview={page}")


@app.command("list")
def list_projects(
    starred: bool = typer.Option(False, "--starred", help="Only starred projects"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
) -> None:
    """List saved projects, newest first."""
    repository = _open_repository(db_path)
    items = repository.list(starred_only=starred)
    for artifact in items:
        typer.echo(_format_row(artifact))
    stats = repository.stats()
    typer.echo(f"{stats['total']} projects total, {stats['starred']} starred")


@app.command("search")
def search(
    query: str = typer.Argument(..., help="Text to match in name or description"),
    starred: bool = typer.Option(False, "--starred", help="Only starred projects"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
) -> None:
    """Search saved projects by name or description (case-insensitive)."""
    repository = _open_repository(db_path)
    items = repository.search(query, starred_only=starred)
    if not items:
        typer.echo("No projects match your search criteria.")
        return
    for artifact in items:
        typer.echo(_format_row(artifact))


@app.command("show")
def show(
    artifact_id: str = typer.Argument(..., help="Artifact ID"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
) -> None:
    """Print an artifact's metadata and code."""
    artifact = _require_artifact(_open_repository(db_path), artifact_id)
    typer.echo(f"# {artifact.name}")
    typer.echo(f"- id: {artifact.id}")
    typer.echo(f"- model: {artifact.model}")
    typer.echo(f"- framework: {artifact.framework} ({artifact.language})")
    typer.echo(f"- tokens: {artifact.token_count}")
    typer.echo(f"- created: {artifact.created_at.isoformat()}")
    typer.echo(f"- tags: {', '.join(sorted(artifact.tags))}")
    typer.echo(f"- input: {artifact.source_input}")
    typer.echo("")
    typer.echo(artifact.code)


@app.command("star")
def star(
    artifact_id: str = typer.Argument(..., help="Artifact ID"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
) -> None:
    """Toggle the starred flag of a project."""
    repository = _open_repository(db_path)
    if not repository.toggle_star(artifact_id):
        raise typer.BadParameter(f"Artifact not found: {artifact_id}")
    artifact = _require_artifact(repository, artifact_id)
    typer.echo(f"{artifact.id} starred={artifact.starred}")


@app.command("rename")
def rename(
    artifact_id: str = typer.Argument(..., help="Artifact ID"),
    new_name: str = typer.Argument(..., help="New project name"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
) -> None:
    """Rename a project."""
    if not _open_repository(db_path).rename(artifact_id, new_name):
        raise typer.BadParameter(f"Could not rename {artifact_id} (missing project or blank name)")
    typer.echo(f"Renamed {artifact_id} to {new_name.strip()}")


@app.command("delete")
def delete(
    artifact_id: str = typer.Argument(..., help="Artifact ID"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
) -> None:
    """Delete a project from history."""
    if not _open_repository(db_path).delete(artifact_id):
        raise typer.BadParameter(f"Artifact not found: {artifact_id}")
    typer.echo(f"Deleted {artifact_id}")


@app.command("export")
def export(
    artifact_id: str = typer.Argument(..., help="Artifact ID"),
    output_root: Path = typer.Option(DEFAULT_EXPORT_ROOT, "--out", help="Export directory"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
) -> None:
    """Write a project's code to a single source file."""
    artifact = _require_artifact(_open_repository(db_path), artifact_id)
    path = export_artifact(artifact, output_root)
    typer.echo(f"Exported to: {path}")


@app.command("preview")
def preview(
    artifact_id: str = typer.Argument(..., help="Artifact ID"),
    viewport: str = typer.Option("desktop", help=f"One of: {', '.join(VIEWPORTS)}"),
    preview_root: Path = typer.Option(DEFAULT_PREVIEW_ROOT, "--preview-dir", help="Preview output directory"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
) -> None:
    """Write a sandboxed live preview page for a saved project."""
    if viewport not in VIEWPORTS:
        raise typer.BadParameter(f"Unknown viewport {viewport!r}; choose one of {', '.join(VIEWPORTS)}")
    artifact = _require_artifact(_open_repository(db_path), artifact_id)

    session_root = preview_root / artifact.id
    host = FileSandboxHost(session_root)
    host.purge()
    renderer = PreviewRenderer(host, viewport=viewport)
    session = renderer.render(artifact.code, artifact.framework)
    if session.status == "error":
        raise typer.BadParameter(f"Preview failed: {session.last_error}")

    page = _write_host_page(session_root, renderer, title=artifact.name)
    typer.echo(f"Preview written to: {page}")


@app.command("doctor")
def doctor(
    endpoint: str | None = typer.Option(None, help="Model endpoint base URL"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
) -> None:
    """Print local environment diagnostics used by the CLI."""
    config = ModelConfig().with_updates(endpoint=endpoint)
    typer.echo(f"DB exists: {db_path.exists()} ({db_path})")
    typer.echo(f"Endpoint: {config.base_url}")
    try:
        models = asyncio.run(OllamaClient().list_models(config))
    except TransportError as exc:
        typer.echo(f"Endpoint reachable: False ({exc})")
        return
    typer.echo("Endpoint reachable: True")
    typer.echo(f"Models: {', '.join(models) if models else '(none installed)'}")
    typer.echo(f"Configured model installed: {config.model in models}")


if __name__ == "__main__":
    app()
