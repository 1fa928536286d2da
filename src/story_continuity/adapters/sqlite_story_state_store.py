"""SQLite-backed persistence for whole story-state documents."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import cast

from story_continuity.core.story_schema import STORY_STATE_SCHEMA_VERSION, utc_now_iso


def _title_of(document: dict[str, object]) -> str:
    metadata = document.get("metadata")
    if isinstance(metadata, dict):
        return str(metadata.get("title", ""))
    return ""


class SQLiteStoryStatePersistence:
    """Persist one story-state document per row, replaced atomically on save."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_schema()

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self._db_path))
        connection.row_factory = sqlite3.Row
        return connection

    def _initialize_schema(self) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS story_states (
                    story_id TEXT PRIMARY KEY,
                    schema_version TEXT NOT NULL,
                    title TEXT NOT NULL,
                    document_json TEXT NOT NULL,
                    updated_at_utc TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_story_states_updated
                ON story_states(updated_at_utc DESC)
                """
            )

    def load(self, story_id: str) -> dict[str, object] | None:
        """Return the stored document, or None when the story has no record."""
        with self._connect() as connection:
            row = connection.execute(
                "SELECT document_json FROM story_states WHERE story_id = ?",
                (story_id,),
            ).fetchone()
        if row is None:
            return None
        return cast(dict[str, object], json.loads(str(row["document_json"])))

    def save(self, story_id: str, document: dict[str, object]) -> None:
        """Insert or replace the document inside one transaction."""
        schema_version = str(document.get("schema_version", STORY_STATE_SCHEMA_VERSION))
        payload = json.dumps(document, ensure_ascii=False, sort_keys=True)
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO story_states (
                    story_id, schema_version, title, document_json, updated_at_utc
                )
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(story_id) DO UPDATE SET
                    schema_version = excluded.schema_version,
                    title = excluded.title,
                    document_json = excluded.document_json,
                    updated_at_utc = excluded.updated_at_utc
                """,
                (story_id, schema_version, _title_of(document), payload, utc_now_iso()),
            )

    def delete(self, story_id: str) -> bool:
        with self._connect() as connection:
            cursor = connection.execute(
                "DELETE FROM story_states WHERE story_id = ?",
                (story_id,),
            )
        return cursor.rowcount > 0

    def list_story_ids(self) -> list[str]:
        with self._connect() as connection:
            rows = connection.execute(
                "SELECT story_id FROM story_states ORDER BY story_id ASC"
            ).fetchall()
        return [str(row["story_id"]) for row in rows]
