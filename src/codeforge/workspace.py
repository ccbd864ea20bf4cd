"""Workspace state: current artifact, editor code, preview, and notifications."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from pydantic import BaseModel

from codeforge.config import ModelConfig
from codeforge.controller import GenerationController, ProgressCallback
from codeforge.errors import CodeforgeError, ErrorKind
from codeforge.exporter import export_artifact
from codeforge.models import Artifact, Framework, GenerationResult, StreamFragment
from codeforge.preview import PreviewRenderer
from codeforge.search import DEFAULT_QUIET_INTERVAL, DebouncedSearch
from codeforge.store import ProjectRepository

logger = logging.getLogger(__name__)


class Notification(BaseModel):
    level: Literal["success", "error", "info"]
    message: str


NotifyCallback = Callable[[Notification], None]


def failure_message(result: GenerationResult) -> str:
    if result.error is None:
        return "Generation failed"
    if result.error.kind is ErrorKind.CANCELLED:
        return "Generation cancelled"
    if result.error.kind in (ErrorKind.TRANSPORT, ErrorKind.TIMEOUT):
        return f"Failed to generate code. Please check your Ollama connection. ({result.error.detail})"
    return f"Failed to generate code: {result.error.detail}"


def time_ago(moment: datetime, now: datetime | None = None) -> str:
    """Format a timestamp relative to ``now`` the way the history list shows it."""
    current = now or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    hours = int((current - moment).total_seconds() // 3600)
    if hours < 1:
        return "Just now"
    if hours < 24:
        return f"{hours}h ago"
    days = hours // 24
    if days < 7:
        return f"{days}d ago"
    return moment.date().isoformat()


class Workspace:
    """Coordinate one controller, one preview, and the project history.

    Args:
        controller: Generation state machine; its repository should be
            ``repository`` so completed artifacts land in history.
        renderer: Preview renderer for the current code.
        repository: Project history.
        live_preview: Re-render the preview with the partial text after every
            fragment while streaming.
        on_notify: Receives each user-facing notification.
        search_interval: Quiet interval in seconds for :meth:`search_history`.
    """

    def __init__(
        self,
        controller: GenerationController,
        renderer: PreviewRenderer,
        repository: ProjectRepository,
        live_preview: bool = False,
        on_notify: NotifyCallback | None = None,
        search_interval: float = DEFAULT_QUIET_INTERVAL,
    ):
        self.controller = controller
        self.renderer = renderer
        self.repository = repository
        self.live_preview = live_preview
        self.on_notify = on_notify

        self.current: Artifact | None = None
        self.code = ""
        self.streaming_text = ""
        self.framework: Framework = "react"
        self.input = ""
        self.notifications: list[Notification] = []
        self.search_query = ""
        self.search_results: list[Artifact] = []
        self._search = DebouncedSearch(repository, self._on_search_results, search_interval)

    async def generate(
        self,
        raw_input: str,
        framework: Framework = "react",
        config: ModelConfig | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> GenerationResult:
        """Generate code and make it current; on failure keep the last good artifact.

        Raises:
            ValidationError: Blank input.
            ConcurrentGenerationError: A generation is already running.
        """
        try:
            task = self.controller.submit(
                raw_input,
                framework,
                config,
                on_progress=on_progress,
                on_fragment=lambda fragment: self._on_fragment(fragment, framework),
            )
        except CodeforgeError as exc:
            self._notify("error", str(exc))
            raise

        self.streaming_text = ""
        self.input = raw_input.strip()
        result = await task
        if result.succeeded and result.artifact is not None:
            self.current = result.artifact
            self.code = result.artifact.code
            self.framework = result.artifact.framework
            self.streaming_text = ""
            self.renderer.render(self.code, self.framework)
            message = "Code generated successfully!"
            if not result.persisted:
                message += " (not saved to history)"
            self._notify("success", message)
        else:
            self.streaming_text = result.text
            self._revert_to_last_good()
            self._notify("error", failure_message(result))
        return result

    def cancel(self) -> bool:
        return self.controller.cancel()

    def edit_code(self, code: str) -> None:
        """Replace the editor contents and refresh the preview."""
        self.code = code
        self.renderer.render(code, self.framework)

    def select(self, artifact_id: str) -> Artifact | None:
        artifact = self.repository.get(artifact_id)
        if artifact is None:
            self._notify("error", f"Project not found: {artifact_id}")
            return None
        self.current = artifact
        self.code = artifact.code
        self.input = artifact.source_input
        self.framework = artifact.framework
        self.streaming_text = ""
        self.renderer.render(self.code, self.framework)
        return artifact

    def delete(self, artifact_id: str) -> bool:
        if not self.repository.delete(artifact_id):
            self._notify("error", "Failed to delete project")
            return False
        if self.current is not None and self.current.id == artifact_id:
            self.current = None
            self.code = ""
            self.renderer.teardown()
        self._notify("success", "Project deleted")
        return True

    def toggle_star(self, artifact_id: str) -> bool:
        if not self.repository.toggle_star(artifact_id):
            self._notify("error", "Failed to update project")
            return False
        if self.current is not None and self.current.id == artifact_id:
            self.current = self.current.model_copy(update={"starred": not self.current.starred})
        self._notify("success", "Project updated")
        return True

    def rename(self, artifact_id: str, new_name: str) -> bool:
        if not self.repository.rename(artifact_id, new_name):
            self._notify("error", "Failed to rename project")
            return False
        if self.current is not None and self.current.id == artifact_id:
            self.current = self.current.model_copy(update={"name": new_name.strip()})
        self._notify("success", "Project renamed")
        return True

    def history(self, query: str = "", starred_only: bool = False) -> list[Artifact]:
        return self.repository.search(query, starred_only=starred_only)

    def search_history(self, query: str) -> None:
        """Debounce a history search; results land in ``search_results``. Needs a running loop."""
        self._search.update(query)

    def flush_search(self) -> list[Artifact]:
        """Run a pending history search now and return the latest results."""
        self._search.flush()
        return self.search_results

    def export_current(self, output_dir: Path) -> Path | None:
        if self.current is None:
            self._notify("error", "No project to download")
            return None
        artifact = self.current.model_copy(update={"code": self.code})
        path = export_artifact(artifact, output_dir)
        self._notify("success", f"Project exported to {path}")
        return path

    def _on_fragment(self, fragment: StreamFragment, framework: Framework) -> None:
        self.streaming_text += fragment.content
        if self.live_preview and self.streaming_text.strip():
            self.renderer.render(self.streaming_text, framework)

    def _on_search_results(self, query: str, results: list[Artifact]) -> None:
        self.search_query = query
        self.search_results = results

    def _revert_to_last_good(self) -> None:
        if self.current is None:
            self.code = ""
            self.renderer.teardown()
            return
        self.code = self.current.code
        self.framework = self.current.framework
        session = self.renderer.session
        if session is None or session.source_code != self.code or session.status == "idle":
            self.renderer.render(self.code, self.framework)

    def _notify(self, level: Literal["success", "error", "info"], message: str) -> None:
        notification = Notification(level=level, message=message)
        self.notifications.append(notification)
        logger.debug("Notification [%s] %s", level, message)
        if self.on_notify:
            self.on_notify(notification)
