from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from codeforge.config import ModelConfig
from codeforge.models import Artifact, GenerationProgress, StreamFragment
from codeforge.store import ProjectRepository


def make_fragments(*contents: str, final: bool = True) -> list[StreamFragment]:
    """Build consecutive fragments; the last one is final unless ``final`` is False."""
    return [
        StreamFragment(content=content, index=index, is_final=final and index == len(contents) - 1)
        for index, content in enumerate(contents)
    ]


class ScriptedClient:
    """Model backend double that replays fragments and can block until released."""

    def __init__(
        self,
        fragments: list[StreamFragment] | None = None,
        error: Exception | None = None,
        hold: bool = False,
    ):
        self.fragments = list(fragments or [])
        self.error = error
        self.hold = hold
        self.calls = 0
        self.cancelled = False
        self.requests: list[tuple[object, ModelConfig]] = []
        self.holding = asyncio.Event()
        self.release = asyncio.Event()

    async def generate(self, request, config, *, on_fragment, on_progress=None) -> None:
        self.calls += 1
        self.requests.append((request, config))
        if on_progress is not None:
            on_progress(GenerationProgress(phase="queued", percent=0, message="Connecting"))
        try:
            for fragment in self.fragments:
                await asyncio.sleep(0)
                on_fragment(fragment)
            if self.hold:
                self.holding.set()
                await self.release.wait()
            if self.error is not None:
                raise self.error
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class FakeSandbox:
    def __init__(self, document: str, on_load, on_error, on_runtime_error, url: str):
        self.document = document
        self.on_load = on_load
        self.on_error = on_error
        self.on_runtime_error = on_runtime_error
        self.url = url
        self.destroyed = False

    def destroy(self) -> None:
        self.destroyed = True

    def fire_load(self) -> None:
        self.on_load()

    def fire_error(self, message: str) -> None:
        self.on_error(message)

    def fire_runtime_error(self, message: str) -> None:
        self.on_runtime_error(message)


class FakeSandboxHost:
    """Sandbox host double; tests fire sandbox signals by hand."""

    def __init__(self) -> None:
        self.mounted: list[FakeSandbox] = []

    def mount(self, document: str, on_load, on_error, on_runtime_error=None) -> FakeSandbox:
        sandbox = FakeSandbox(document, on_load, on_error, on_runtime_error, url=f"fake://sandbox/{len(self.mounted) + 1}")
        self.mounted.append(sandbox)
        return sandbox


class StepClock:
    """Monotonic clock that advances by ``step`` seconds on every read."""

    def __init__(self, step: float = 1.0):
        self.step = step
        self.now = 0.0

    def __call__(self) -> float:
        current = self.now
        self.now += self.step
        return current


@pytest.fixture
def model_config() -> ModelConfig:
    return ModelConfig(endpoint="http://ollama.test", model="codellama:test", max_tokens=100, timeout_ms=1000)


@pytest.fixture
def repository(tmp_path) -> ProjectRepository:
    repo = ProjectRepository(tmp_path / "projects.db")
    repo.init_db()
    return repo


@pytest.fixture
def sandbox_host() -> FakeSandboxHost:
    return FakeSandboxHost()


@pytest.fixture
def artifact_model() -> Artifact:
    return Artifact(
        id="artifact0001",
        name="Todo Board",
        description="Generated from: a kanban style todo app",
        source_input="a kanban style todo app",
        code="function App() { return <div>Todo</div>; }",
        framework="react",
        language="tsx",
        model="codellama:test",
        token_count=11,
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        tags={"react", "ai-generated"},
    )
