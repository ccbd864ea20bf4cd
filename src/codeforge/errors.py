"""Typed exception hierarchy for generation and preview failures."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    CONCURRENT = "concurrent"
    PROTOCOL = "protocol"
    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    PREVIEW_SYNTHESIS = "preview_synthesis"
    PREVIEW_RUNTIME = "preview_runtime"


class CodeforgeError(Exception):
    """Base exception for all codeforge errors."""

    kind: ErrorKind = ErrorKind.PROTOCOL

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ValidationError(CodeforgeError):
    """Input rejected before any network call."""

    kind = ErrorKind.VALIDATION


class ConcurrentGenerationError(CodeforgeError):
    """A generation is already active on this controller."""

    kind = ErrorKind.CONCURRENT


class ProtocolError(CodeforgeError):
    """Out-of-order, malformed, or otherwise unexpected stream content."""

    kind = ErrorKind.PROTOCOL


class TransportError(CodeforgeError):
    """Network failure or non-2xx response from the model endpoint."""

    kind = ErrorKind.TRANSPORT

    def __init__(self, message: str, status_code: int | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class GenerationTimeoutError(CodeforgeError, TimeoutError):
    """No data received from the model endpoint within the inactivity window."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str, timeout_ms: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.timeout_ms = timeout_ms


class GenerationCancelled(CodeforgeError):
    kind = ErrorKind.CANCELLED


class PreviewSynthesisError(CodeforgeError):
    """The sandbox document could not be built or loaded."""

    kind = ErrorKind.PREVIEW_SYNTHESIS


class PreviewRuntimeError(CodeforgeError):
    """Generated code threw while running inside the sandbox."""

    kind = ErrorKind.PREVIEW_RUNTIME
