"""Sandbox hosts that back preview documents with a disposable resource."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from codeforge.errors import PreviewSynthesisError

logger = logging.getLogger(__name__)

LoadCallback = Callable[[], None]
ErrorCallback = Callable[[str], None]

SANDBOX_PREFIX = "sandbox-"


class SandboxHandle(Protocol):
    @property
    def url(self) -> str | None: ...

    def destroy(self) -> None: ...


class SandboxHost(Protocol):
    def mount(
        self,
        document: str,
        on_load: LoadCallback,
        on_error: ErrorCallback,
        on_runtime_error: ErrorCallback | None = None,
    ) -> SandboxHandle: ...


class FileSandbox:
    """A sandbox document written to its own file; ``destroy`` deletes it."""

    def __init__(self, path: Path):
        self.path = path
        self.destroyed = False
        self._pending: asyncio.Handle | None = None

    @property
    def url(self) -> str | None:
        if self.destroyed:
            return None
        return self.path.resolve().as_uri()

    def destroy(self) -> None:
        if self.destroyed:
            return
        self.destroyed = True
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        self.path.unlink(missing_ok=True)
        logger.debug("Destroyed sandbox %s", self.path.name)


class FileSandboxHost:
    """Write each document to a fresh uniquely named file under ``root``.

    Load completion is signalled on the running event loop once the file is in
    place, or immediately when no loop is running. Runtime errors surface in
    the browser that opens the file, through the host page, so
    ``on_runtime_error`` is never called here.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def mount(
        self,
        document: str,
        on_load: LoadCallback,
        on_error: ErrorCallback,
        on_runtime_error: ErrorCallback | None = None,
    ) -> FileSandbox:
        path = self.root / f"{SANDBOX_PREFIX}{uuid.uuid4().hex}.html"
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            path.write_text(document, encoding="utf-8")
        except OSError as exc:
            raise PreviewSynthesisError(f"Could not write sandbox document: {exc}") from exc

        sandbox = FileSandbox(path)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            on_load()
            return sandbox
        sandbox._pending = loop.call_soon(self._signal_load, sandbox, on_load)
        return sandbox

    def live_documents(self) -> list[Path]:
        if not self.root.exists():
            return []
        return sorted(self.root.glob(f"{SANDBOX_PREFIX}*.html"))

    def purge(self) -> int:
        """Remove sandbox files left behind by earlier processes."""
        removed = 0
        for path in self.live_documents():
            path.unlink(missing_ok=True)
            removed += 1
        return removed

    @staticmethod
    def _signal_load(sandbox: FileSandbox, on_load: LoadCallback) -> None:
        sandbox._pending = None
        if not sandbox.destroyed:
            on_load()
