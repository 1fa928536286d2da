"""Document-style story-state store: one JSON file per story."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import cast

from story_continuity.core.story_schema import (
    STORY_STATE_SCHEMA_VERSION,
    normalize_story_id,
    utc_now_iso,
)
from story_continuity.domain.errors import ConfigurationError

_DOCUMENT_SUFFIX = ".json"


class JsonDocumentStoryPersistence:
    """Persist each story as ``<story_id>.json`` beside a schema meta file.

    Saves write a temp file in the same directory and swap it in with
    ``os.replace``, so a reader sees either the old or the new document.
    """

    def __init__(self, db_path: Path) -> None:
        self._root = db_path.with_name(f"{db_path.stem}.story_documents")
        self._meta_path = self._root / "_meta.json"
        self._root.mkdir(parents=True, exist_ok=True)
        self._ensure_schema_version()

    def _ensure_schema_version(self) -> None:
        if not self._meta_path.exists():
            self._meta_path.write_text(
                json.dumps(
                    {
                        "schema_key": "story_states",
                        "schema_version": STORY_STATE_SCHEMA_VERSION,
                        "updated_at_utc": utc_now_iso(),
                    },
                    ensure_ascii=False,
                ),
                encoding="utf-8",
            )
            return
        payload = json.loads(self._meta_path.read_text(encoding="utf-8"))
        version = str(payload.get("schema_version", ""))
        if version != STORY_STATE_SCHEMA_VERSION:
            raise ConfigurationError(
                "Story state schema version mismatch: "
                f"store={version}, expected={STORY_STATE_SCHEMA_VERSION}"
            )

    def _document_path(self, story_id: str) -> Path:
        return self._root / f"{normalize_story_id(story_id)}{_DOCUMENT_SUFFIX}"

    def load(self, story_id: str) -> dict[str, object] | None:
        path = self._document_path(story_id)
        if not path.exists():
            return None
        return cast(dict[str, object], json.loads(path.read_text(encoding="utf-8")))

    def save(self, story_id: str, document: dict[str, object]) -> None:
        """Write the whole document atomically."""
        target = self._document_path(story_id)
        descriptor, temp_name = tempfile.mkstemp(
            dir=self._root, prefix=f".{target.stem}.", suffix=".tmp"
        )
        try:
            with os.fdopen(descriptor, "w", encoding="utf-8") as handle:
                json.dump(document, handle, ensure_ascii=False, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, target)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise

    def delete(self, story_id: str) -> bool:
        path = self._document_path(story_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def list_story_ids(self) -> list[str]:
        return sorted(
            path.stem
            for path in self._root.glob(f"*{_DOCUMENT_SUFFIX}")
            if not path.name.startswith("_")
        )
