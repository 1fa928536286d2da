from __future__ import annotations

from pathlib import Path

import pytest

from story_continuity.adapters.json_story_state_store import JsonDocumentStoryPersistence
from story_continuity.adapters.sqlite_story_state_store import SQLiteStoryStatePersistence
from story_continuity.adapters.story_state_store_factory import create_story_persistence
from story_continuity.domain.errors import ConfigurationError


def test_factory_defaults_to_sqlite_backend(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("STORY_CONTINUITY_STATE_BACKEND", raising=False)
    persistence = create_story_persistence(data_path=tmp_path / "states.db")
    assert isinstance(persistence, SQLiteStoryStatePersistence)


def test_factory_selects_json_documents_from_env(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("STORY_CONTINUITY_STATE_BACKEND", " JSON-Documents ")
    persistence = create_story_persistence(data_path=tmp_path / "states.db")
    assert isinstance(persistence, JsonDocumentStoryPersistence)


def test_explicit_backend_overrides_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STORY_CONTINUITY_STATE_BACKEND", "json-documents")
    persistence = create_story_persistence(data_path=tmp_path / "states.db", backend="sqlite")
    assert isinstance(persistence, SQLiteStoryStatePersistence)


def test_factory_rejects_unknown_backend(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STORY_CONTINUITY_STATE_BACKEND", "redis")
    with pytest.raises(ConfigurationError, match="STORY_CONTINUITY_STATE_BACKEND"):
        create_story_persistence(data_path=tmp_path / "states.db")
