"""Export artifacts as single source files."""

from __future__ import annotations

import re
import unicodedata
from pathlib import Path

from codeforge.models import Artifact

DEFAULT_EXPORT_NAME = "generated-app.tsx"
EXPORT_MIME_TYPE = "text/plain"

EXTENSION_BY_LANGUAGE = {
    "tsx": ".tsx",
    "typescript": ".ts",
    "javascript": ".js",
    "html": ".html",
}


def _slugify(value: str) -> str:
    normalized = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", normalized).strip("-").lower()
    return slug[:80].rstrip("-")


def export_filename(artifact: Artifact | None) -> str:
    """Derive the download filename from the artifact name, or the default."""
    if artifact is None:
        return DEFAULT_EXPORT_NAME
    slug = _slugify(artifact.name)
    if not slug:
        return DEFAULT_EXPORT_NAME
    return slug + EXTENSION_BY_LANGUAGE.get(artifact.language, ".tsx")


def export_artifact(artifact: Artifact, output_dir: Path, filename: str | None = None) -> Path:
    """Write the artifact's code to ``output_dir`` and return the file path."""
    output_dir.mkdir(parents=True, exist_ok=True)
    target = output_dir / (filename or export_filename(artifact))
    target.write_text(artifact.code, encoding="utf-8")
    return target
