from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from codeforge.models import Artifact


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS artifacts (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT NOT NULL,
    source_input TEXT NOT NULL,
    code TEXT NOT NULL,
    framework TEXT NOT NULL,
    language TEXT NOT NULL,
    model TEXT NOT NULL,
    token_count INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    starred INTEGER NOT NULL DEFAULT 0,
    tags TEXT NOT NULL DEFAULT '[]'
);

CREATE INDEX IF NOT EXISTS idx_artifacts_created_at ON artifacts(created_at);
"""


def _utc_timestamp(moment: datetime) -> str:
    """ISO timestamp in UTC so that text ordering matches time ordering."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


def _row_to_artifact(row: sqlite3.Row) -> Artifact:
    data = dict(row)
    data["starred"] = bool(data["starred"])
    data["tags"] = set(json.loads(data["tags"]))
    return Artifact.model_validate(data)


class ProjectRepository:
    """SQLite-backed store of generated artifacts, keyed by artifact id."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(SCHEMA_SQL)

    def save(self, artifact: Artifact | dict[str, Any]) -> Artifact:
        """Insert or replace an artifact, assigning ``id``/``created_at`` when absent."""
        data = artifact.model_dump() if isinstance(artifact, Artifact) else dict(artifact)
        if not data.get("id"):
            data["id"] = uuid.uuid4().hex[:12]
        if not data.get("created_at"):
            data["created_at"] = datetime.now(timezone.utc)
        record = Artifact.model_validate(data)

        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO artifacts(
                    id, name, description, source_input, code, framework, language,
                    model, token_count, created_at, starred, tags
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.name,
                    record.description,
                    record.source_input,
                    record.code,
                    record.framework,
                    record.language,
                    record.model,
                    record.token_count,
                    _utc_timestamp(record.created_at),
                    int(record.starred),
                    json.dumps(sorted(record.tags)),
                ),
            )
        return record

    def get(self, artifact_id: str) -> Artifact | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM artifacts WHERE id = ?", (artifact_id,)).fetchone()
            return _row_to_artifact(row) if row else None

    def list(self, starred_only: bool = False) -> list[Artifact]:
        """Return artifacts newest first."""
        query = "SELECT * FROM artifacts"
        if starred_only:
            query += " WHERE starred = 1"
        query += " ORDER BY created_at DESC, rowid DESC"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
            return [_row_to_artifact(r) for r in rows]

    def search(self, query: str, starred_only: bool = False) -> list[Artifact]:
        """Case-insensitive substring match on name or description, newest first."""
        needle = query.strip().casefold()
        items = self.list(starred_only=starred_only)
        if not needle:
            return items
        return [
            item
            for item in items
            if needle in item.name.casefold() or needle in item.description.casefold()
        ]

    def toggle_star(self, artifact_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE artifacts SET starred = 1 - starred WHERE id = ?",
                (artifact_id,),
            )
            return cursor.rowcount > 0

    def rename(self, artifact_id: str, new_name: str) -> bool:
        name = new_name.strip()
        if not name:
            return False
        with self._connect() as conn:
            cursor = conn.execute("UPDATE artifacts SET name = ? WHERE id = ?", (name, artifact_id))
            return cursor.rowcount > 0

    def delete(self, artifact_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM artifacts WHERE id = ?", (artifact_id,))
            return cursor.rowcount > 0

    def stats(self) -> dict[str, int]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total, COALESCE(SUM(starred), 0) AS starred FROM artifacts"
            ).fetchone()
            return {"total": int(row["total"]), "starred": int(row["starred"])}
