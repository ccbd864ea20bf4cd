"""Model endpoint and sampling configuration."""

from __future__ import annotations

import os
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ENDPOINT = "http://localhost:11434"
DEFAULT_MODEL = "codellama:7b"


def resolve_default_endpoint() -> str:
    """Return ``OLLAMA_HOST`` when set, otherwise the local default endpoint."""
    host = (os.getenv("OLLAMA_HOST") or "").strip()
    if not host:
        return DEFAULT_ENDPOINT
    if not host.startswith(("http://", "https://")):
        host = f"http://{host}"
    return host.rstrip("/")


class ModelConfig(BaseSettings):
    """Settings for one generation call.

    Values come from keyword arguments, then ``CODEFORGE_*`` environment
    variables, then the defaults below. Instances are passed explicitly to the
    client and controller; use :meth:`with_updates` to change values at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="CODEFORGE_",
        env_file=".env",
        extra="ignore",
    )

    endpoint: str = Field(default_factory=resolve_default_endpoint)
    model: str = DEFAULT_MODEL
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=4096, gt=0)
    top_p: float = Field(default=0.9, ge=0.0, le=1.0)
    top_k: int = Field(default=40, ge=0)
    repeat_penalty: float = Field(default=1.1, ge=0.0)
    stream: bool = True
    timeout_ms: int = Field(default=120_000, gt=0)
    context_length: int = Field(default=4096, gt=0)

    def with_updates(self, **changes: Any) -> ModelConfig:
        """Return a validated copy with ``changes`` applied; ``None`` values are skipped."""
        unknown = sorted(set(changes) - set(type(self).model_fields))
        if unknown:
            raise ValueError(f"Unknown configuration field(s): {', '.join(unknown)}")
        data = self.model_dump()
        data.update({key: value for key, value in changes.items() if value is not None})
        return type(self)(**data)

    @property
    def base_url(self) -> str:
        return self.endpoint.rstrip("/")

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0
