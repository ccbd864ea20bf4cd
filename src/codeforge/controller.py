"""Streaming generation state machine.

A :class:`GenerationController` runs one generation at a time::

    IDLE -> QUEUED -> STREAMING -> FINALIZING -> COMPLETED
                 \\________\\__________\\______-> FAILED

Fragments from the model client are appended strictly in order to an
accumulator owned by the active run. Every terminal outcome, including
failures and cancellation, is returned as a :class:`GenerationResult`; the
partial text is always kept.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from collections import deque
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Protocol

from pydantic import ValidationError as SchemaValidationError

from codeforge.config import ModelConfig
from codeforge.errors import (
    CodeforgeError,
    ConcurrentGenerationError,
    GenerationCancelled,
    ProtocolError,
    ValidationError,
)
from codeforge.models import (
    Artifact,
    Framework,
    GenerationError,
    GenerationPhase,
    GenerationProgress,
    GenerationRequest,
    GenerationResult,
    GenerationState,
    StreamFragment,
)
from codeforge.prompting import strip_code_fence

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
RATE_WINDOW = 5
SAVE_RETRIES = 1

ProgressCallback = Callable[[GenerationProgress], None]
FragmentCallback = Callable[[StreamFragment], None]


class ModelBackend(Protocol):
    async def generate(
        self,
        request: GenerationRequest,
        config: ModelConfig,
        *,
        on_fragment: FragmentCallback,
        on_progress: ProgressCallback | None = None,
    ) -> None: ...


class ArtifactSink(Protocol):
    def save(self, artifact: Artifact) -> Artifact: ...


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def language_for(framework: str) -> str:
    return "tsx" if framework in ("react", "next") else "javascript"


def default_artifact_name(created_at: datetime) -> str:
    return f"Generated App {created_at:%b} {created_at.day}, {created_at:%H:%M}"


def build_artifact(
    request: GenerationRequest,
    text: str,
    token_count: int,
    created_at: datetime | None = None,
) -> Artifact:
    """Assemble the artifact for a finished generation."""
    created = created_at or datetime.now(timezone.utc)
    source = request.raw_input
    excerpt = source[:100] + ("..." if len(source) > 100 else "")
    return Artifact(
        id=uuid.uuid4().hex[:12],
        name=default_artifact_name(created),
        description=f"Generated from: {excerpt}",
        source_input=source,
        code=strip_code_fence(text),
        framework=request.framework,
        language=language_for(request.framework),
        model=request.model,
        token_count=token_count,
        created_at=created,
        tags={request.framework, "ai-generated"},
    )


class GenerationController:
    """Own one generation at a time and report its progress.

    Args:
        client: Model backend, usually :class:`codeforge.client.OllamaClient`.
        repository: Optional sink that persists completed artifacts.
        config: Default configuration; ``submit`` may pass a per-call one.
        clock: Monotonic clock in seconds, used for throughput estimates.
    """

    def __init__(
        self,
        client: ModelBackend,
        repository: ArtifactSink | None = None,
        config: ModelConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.repository = repository
        self.config = config or ModelConfig()
        self._clock = clock

        self.state = GenerationState.IDLE
        self.request: GenerationRequest | None = None
        self.progress: GenerationProgress | None = None
        self.last_artifact: Artifact | None = None

        self._chunks: list[str] = []
        self._length = 0
        self._next_index = 0
        self._final_seen = False
        self._exact_tokens: int | None = None
        self._tokens = 0
        self._rates: deque[float] = deque(maxlen=RATE_WINDOW)
        self._last_sample = (0.0, 0)
        self._cancel_requested = False
        self._task: asyncio.Task[GenerationResult] | None = None
        self._transport: asyncio.Future[None] | None = None
        self._on_progress: ProgressCallback | None = None
        self._on_fragment: FragmentCallback | None = None

    @property
    def text(self) -> str:
        """Accumulated model output of the current or last run."""
        return "".join(self._chunks)

    @property
    def is_busy(self) -> bool:
        return self.state.is_active

    def submit(
        self,
        raw_input: str,
        framework: Framework = "react",
        config: ModelConfig | None = None,
        *,
        on_progress: ProgressCallback | None = None,
        on_fragment: FragmentCallback | None = None,
    ) -> asyncio.Task[GenerationResult]:
        """Start a generation and return the task resolving to its result.

        Must be called from a running event loop.

        Raises:
            ValidationError: ``raw_input`` is blank or the request is invalid.
            ConcurrentGenerationError: A generation is already active.
        """
        loop = asyncio.get_running_loop()
        text = (raw_input or "").strip()
        if not text:
            raise ValidationError("Please enter a URL or description")
        if self.is_busy:
            raise ConcurrentGenerationError(
                "A generation is already in progress",
                details={"state": self.state.value},
            )

        config = config or self.config
        try:
            request = GenerationRequest.from_config(text, framework, config)
        except SchemaValidationError as exc:
            raise ValidationError(f"Invalid generation request: {exc}") from exc

        self._reset(request, on_progress, on_fragment)
        self._transition(GenerationState.QUEUED)
        self._task = loop.create_task(self._run(request, config))
        return self._task

    def cancel(self) -> bool:
        """Abort a queued or streaming generation.

        Returns ``True`` when this call cancelled the run; later calls are no-ops.
        """
        if self._cancel_requested:
            return False
        if self.state not in (GenerationState.QUEUED, GenerationState.STREAMING):
            return False
        self._cancel_requested = True
        logger.info("Cancelling generation in state %s", self.state.value)
        if self._transport is not None and not self._transport.done():
            self._transport.cancel()
        return True

    def _reset(
        self,
        request: GenerationRequest,
        on_progress: ProgressCallback | None,
        on_fragment: FragmentCallback | None,
    ) -> None:
        self.request = request
        self.progress = None
        self._chunks = []
        self._length = 0
        self._next_index = 0
        self._final_seen = False
        self._exact_tokens = None
        self._tokens = 0
        self._rates = deque(maxlen=RATE_WINDOW)
        self._last_sample = (self._clock(), 0)
        self._cancel_requested = False
        self._transport = None
        self._on_progress = on_progress
        self._on_fragment = on_fragment

    async def _run(self, request: GenerationRequest, config: ModelConfig) -> GenerationResult:
        if self._cancel_requested:
            return self._fail(GenerationCancelled("Generation cancelled"))

        self._emit("queued", "Waiting for model")
        self._transport = asyncio.ensure_future(
            self.client.generate(
                request,
                config,
                on_fragment=self._handle_fragment,
                on_progress=self._handle_client_progress,
            )
        )
        try:
            await self._transport
        except asyncio.CancelledError:
            if not self._cancel_requested:
                self._fail(GenerationCancelled("Generation task cancelled"))
                raise
            return self._fail(GenerationCancelled("Generation cancelled"))
        except CodeforgeError as exc:
            return self._fail(exc)
        except Exception as exc:
            logger.exception("Unexpected error while streaming")
            return self._fail(ProtocolError(f"Unexpected error while streaming: {exc}"))
        finally:
            self._transport = None

        if self._cancel_requested:
            return self._fail(GenerationCancelled("Generation cancelled"))
        return self._finalize(request)

    def _handle_fragment(self, fragment: StreamFragment) -> None:
        if self._cancel_requested:
            return
        if self._final_seen:
            raise ProtocolError(
                "Fragment received after the final fragment",
                details={"index": fragment.index},
            )
        if fragment.index != self._next_index:
            raise ProtocolError(
                f"Out-of-order fragment: expected index {self._next_index}, got {fragment.index}",
                details={"expected": self._next_index, "received": fragment.index},
            )
        self._next_index += 1

        if self.state is GenerationState.QUEUED:
            self._transition(GenerationState.STREAMING)

        self._chunks.append(fragment.content)
        self._length += len(fragment.content)
        if fragment.token_count is not None:
            self._exact_tokens = fragment.token_count
        self._update_tokens()

        if self._on_fragment:
            self._on_fragment(fragment)
        self._emit("streaming", "Generating code...")

        if fragment.is_final:
            self._final_seen = True
            self._transition(GenerationState.FINALIZING)

    def _handle_client_progress(self, progress: GenerationProgress) -> None:
        if progress.tokens_generated and self._exact_tokens is None:
            self._exact_tokens = progress.tokens_generated
            self._update_tokens()
        if progress.phase == "queued" and self.state is GenerationState.QUEUED:
            self._emit("queued", progress.message)

    def _update_tokens(self) -> None:
        estimate = self._exact_tokens if self._exact_tokens is not None else math.ceil(self._length / CHARS_PER_TOKEN)
        self._tokens = max(self._tokens, estimate)

    def _final_token_count(self) -> int:
        if self._exact_tokens is not None:
            return self._exact_tokens
        return math.ceil(self._length / CHARS_PER_TOKEN)

    def _emit(self, phase: GenerationPhase, message: str, percent: int | None = None) -> None:
        if self.request is None:
            return
        max_tokens = self.request.max_tokens
        tokens = self._tokens

        now = self._clock()
        last_time, last_tokens = self._last_sample
        elapsed = now - last_time
        if elapsed > 0:
            self._rates.append(max(0, tokens - last_tokens) / elapsed)
        self._last_sample = (now, tokens)
        rate = sum(self._rates) / len(self._rates) if self._rates else 0.0

        if percent is None:
            percent = 0 if phase == "queued" else max(0, min(99, (tokens * 100) // max_tokens))
        remaining = max(0, max_tokens - tokens)
        eta_ms = int(remaining / rate * 1000) if rate > 0 and percent < 100 else 0

        self.progress = GenerationProgress(
            phase=phase,
            percent=percent,
            message=message,
            tokens_generated=tokens,
            tokens_per_second=round(rate, 2),
            estimated_remaining_ms=eta_ms,
        )
        if self._on_progress:
            self._on_progress(self.progress)

    def _finalize(self, request: GenerationRequest) -> GenerationResult:
        if self.state is not GenerationState.FINALIZING:
            self._transition(GenerationState.FINALIZING)

        text = self.text
        if not text.strip():
            return self._fail(ProtocolError("Model returned no content"))

        artifact = build_artifact(request, text, self._final_token_count())
        self._emit("finalizing", "Generation complete", percent=100)
        saved, persisted = self._persist(artifact)

        self.last_artifact = saved
        self._transition(GenerationState.COMPLETED)
        return GenerationResult(
            state=GenerationState.COMPLETED,
            text=text,
            artifact=saved,
            persisted=persisted,
        )

    def _persist(self, artifact: Artifact) -> tuple[Artifact, bool]:
        if self.repository is None:
            return artifact, False
        for attempt in range(1 + SAVE_RETRIES):
            try:
                return self.repository.save(artifact), True
            except Exception:
                logger.warning(
                    "Saving artifact %s failed (attempt %d/%d)",
                    artifact.id,
                    attempt + 1,
                    1 + SAVE_RETRIES,
                    exc_info=True,
                )
        return artifact, False

    def _fail(self, exc: CodeforgeError) -> GenerationResult:
        self._transition(GenerationState.FAILED)
        logger.info("Generation failed (%s): %s", exc.kind.value, exc)
        return GenerationResult(
            state=GenerationState.FAILED,
            text=self.text,
            error=GenerationError(kind=exc.kind, detail=str(exc)),
        )

    def _transition(self, state: GenerationState) -> None:
        logger.debug("Generation state %s -> %s", self.state.value, state.value)
        self.state = state
