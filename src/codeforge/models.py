"""Pydantic models shared across generation, preview, and persistence layers."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, ConfigDict, Field

from codeforge.errors import ErrorKind

if TYPE_CHECKING:
    from codeforge.config import ModelConfig

Framework = Literal["react", "next", "vue", "svelte", "angular", "vanilla"]
FRAMEWORKS: tuple[str, ...] = ("react", "next", "vue", "svelte", "angular", "vanilla")

GenerationPhase = Literal["queued", "streaming", "finalizing"]
PreviewStatus = Literal["idle", "loading", "ready", "error"]


class GenerationState(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (GenerationState.QUEUED, GenerationState.STREAMING, GenerationState.FINALIZING)


class GenerationRequest(BaseModel):
    """A single submitted generation. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    raw_input: str
    model: str
    temperature: float = Field(ge=0.0, le=2.0)
    max_tokens: int = Field(gt=0)
    framework: Framework = "react"

    @classmethod
    def from_config(cls, raw_input: str, framework: Framework, config: ModelConfig) -> GenerationRequest:
        return cls(
            raw_input=raw_input,
            model=config.model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            framework=framework,
        )


class GenerationProgress(BaseModel):
    """Progress snapshot emitted repeatedly during one generation."""

    phase: GenerationPhase
    percent: int = Field(ge=0, le=100)
    message: str = ""
    tokens_generated: int = Field(default=0, ge=0)
    tokens_per_second: float = Field(default=0.0, ge=0.0)
    estimated_remaining_ms: int = Field(default=0, ge=0)


class StreamFragment(BaseModel):
    """One incremental piece of generated text.

    ``index`` is the zero-based position in the stream. ``token_count`` is the
    backend's exact cumulative token count when it reports one.
    """

    content: str = ""
    is_final: bool = False
    index: int = Field(ge=0)
    token_count: int | None = None


class Artifact(BaseModel):
    """Finalized result of one successful generation."""

    id: str
    name: str
    description: str = ""
    source_input: str
    code: str
    framework: Framework
    language: str
    model: str
    token_count: int = Field(ge=0)
    created_at: datetime
    starred: bool = False
    tags: set[str] = Field(default_factory=set)


class PreviewSession(BaseModel):
    """State of one sandboxed preview. Status changes produce copies.

    ``status`` tracks document loading only. ``runtime_error`` holds the latest
    uncaught error thrown by the previewed code once it is running.
    """

    model_config = ConfigDict(frozen=True)

    render_id: int
    source_code: str
    # As passed to render, unsupported values included.
    framework: str
    sandbox_document: str = ""
    status: PreviewStatus = "idle"
    last_error: str | None = None
    runtime_error: str | None = None
    sandbox_url: str | None = None


class GenerationError(BaseModel):
    kind: ErrorKind
    detail: str


class GenerationResult(BaseModel):
    """Terminal outcome of one generation.

    ``text`` is the accumulated model output, kept even when the run failed.
    """

    state: GenerationState
    text: str = ""
    artifact: Artifact | None = None
    error: GenerationError | None = None
    persisted: bool = False

    @property
    def succeeded(self) -> bool:
        return self.state is GenerationState.COMPLETED
