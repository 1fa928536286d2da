"""Factory for selecting the story-state persistence backend."""

from __future__ import annotations

import os
from pathlib import Path

from story_continuity.adapters.json_story_state_store import JsonDocumentStoryPersistence
from story_continuity.adapters.sqlite_story_state_store import SQLiteStoryStatePersistence
from story_continuity.domain.errors import ConfigurationError
from story_continuity.domain.ports import StoryPersistence


def create_story_persistence(*, data_path: Path, backend: str | None = None) -> StoryPersistence:
    """Build the configured backend; ``backend`` overrides the environment."""
    if backend is None:
        backend = os.environ.get("STORY_CONTINUITY_STATE_BACKEND", "sqlite")
    backend = backend.strip().lower()
    if backend in {"", "sqlite"}:
        return SQLiteStoryStatePersistence(db_path=data_path)
    if backend == "json-documents":
        return JsonDocumentStoryPersistence(db_path=data_path)
    raise ConfigurationError(
        "Unsupported STORY_CONTINUITY_STATE_BACKEND value. Expected sqlite or json-documents."
    )
