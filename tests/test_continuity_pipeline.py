from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from pathlib import Path

import pytest

from story_continuity.adapters.json_story_state_store import JsonDocumentStoryPersistence
from story_continuity.adapters.sqlite_story_state_store import SQLiteStoryStatePersistence
from story_continuity.application.continuity_pipeline import ContinuityPipeline
from story_continuity.application.story_state_store import StoryStateStore
from story_continuity.domain.errors import StoryNotFoundError
from story_continuity.domain.models import ChapterDraft, ChapterSource, NovelMetadata

STORY_ID = "ember-court"

_CHAPTERS = {
    1: "Aria walked the halls. Aria said nothing. Aria waited.",
    2: "Aria opened the window. Aria said hello. Aria waited.",
    3: "Aria climbed the stairs. Aria said goodnight. Aria slept.",
}
_RENAMED = " ".join(["Elena walked the halls."] * 7)


class _ContentSource:
    def __init__(self, chapters: dict[int, str]) -> None:
        self._chapters = chapters

    def get_chapter_text(self, novel_id: str, chapter_number: int) -> ChapterSource:
        return ChapterSource(
            text=self._chapters[chapter_number],
            published_date=datetime(2024, 3, chapter_number, tzinfo=UTC),
            title=f"Chapter {chapter_number}",
        )

    def get_novel_metadata(self, novel_id: str) -> NovelMetadata | None:
        if novel_id != STORY_ID:
            return None
        return NovelMetadata(title="Ember Court", author="R. Vale")


class _FlakyPersistence(SQLiteStoryStatePersistence):
    def __init__(self, db_path: Path) -> None:
        super().__init__(db_path)
        self.fail_saves = False

    def save(self, story_id: str, document: dict[str, object]) -> None:
        if self.fail_saves:
            raise OSError("read-only file system")
        super().save(story_id, document)


def _pipeline(
    tmp_path: Path, chapters: dict[int, str] | None = None
) -> tuple[ContinuityPipeline, _FlakyPersistence]:
    source = _ContentSource(chapters or _CHAPTERS)
    persistence = _FlakyPersistence(tmp_path / "states.db")
    store = StoryStateStore(persistence, metadata_source=source)
    return ContinuityPipeline(store, source), persistence


def _draft(number: int, text: str) -> ChapterDraft:
    return ChapterDraft(
        chapter_number=number,
        text=text,
        published_date=datetime(2024, 3, number, tzinfo=UTC),
        title=f"Chapter {number}",
    )


def test_consistent_chapter_is_accepted_and_stored(tmp_path: Path) -> None:
    pipeline, _ = _pipeline(tmp_path)

    async def scenario() -> None:
        first = await pipeline.submit_chapter(STORY_ID, _draft(1, _CHAPTERS[1]))
        second = await pipeline.submit_chapter(STORY_ID, _draft(2, _CHAPTERS[2]))
        assert first.accepted
        assert second.status == "accepted"
        assert second.score is not None
        assert second.score.passed is True
        assert second.suggestions == ()
        story = await pipeline.store.get(STORY_ID)
        assert story.chapter_numbers() == [1, 2]
        assert story.metadata.title == "Ember Court"

    asyncio.run(scenario())


def test_inconsistent_chapter_is_rejected_with_fixes(tmp_path: Path) -> None:
    pipeline, _ = _pipeline(tmp_path)

    async def scenario() -> None:
        await pipeline.submit_chapter(STORY_ID, _draft(1, _CHAPTERS[1]))
        outcome = await pipeline.submit_chapter(STORY_ID, _draft(2, _RENAMED))
        assert outcome.status == "rejected"
        assert outcome.result is not None
        assert outcome.result.valid is False
        assert [suggestion.type for suggestion in outcome.suggestions] == ["character_merge"]
        assert "Protagonist changed from Aria to Elena." in outcome.feedback
        story = await pipeline.store.get(STORY_ID)
        assert story.chapter_numbers() == [1]

    asyncio.run(scenario())


def test_persistence_failure_becomes_an_outcome(tmp_path: Path) -> None:
    pipeline, persistence = _pipeline(tmp_path)

    async def scenario() -> None:
        await pipeline.submit_chapter(STORY_ID, _draft(1, _CHAPTERS[1]))
        persistence.fail_saves = True
        outcome = await pipeline.submit_chapter(STORY_ID, _draft(2, _CHAPTERS[2]))
        assert outcome.status == "persistence_failed"
        assert "read-only file system" in outcome.error
        assert outcome.accepted is False
        persistence.fail_saves = False
        story = await pipeline.store.get(STORY_ID)
        assert story.chapter_numbers() == [1]

    asyncio.run(scenario())


def test_corrupt_stored_document_becomes_an_outcome(tmp_path: Path) -> None:
    source = _ContentSource(_CHAPTERS)
    persistence = JsonDocumentStoryPersistence(tmp_path / "states.db")
    (tmp_path / "states.story_documents" / f"{STORY_ID}.json").write_text(
        "{not json", encoding="utf-8"
    )
    pipeline = ContinuityPipeline(StoryStateStore(persistence, metadata_source=source), source)

    outcome = asyncio.run(pipeline.submit_chapter(STORY_ID, _draft(1, _CHAPTERS[1])))

    assert outcome.status == "persistence_failed"
    assert "load failed" in outcome.error
    assert outcome.result is None


def test_process_chapter_reads_from_the_content_source(tmp_path: Path) -> None:
    pipeline, _ = _pipeline(tmp_path)

    outcome = asyncio.run(pipeline.process_chapter(STORY_ID, 1))

    assert outcome.accepted
    assert outcome.chapter_number == 1


def test_unknown_story_is_not_silently_created(tmp_path: Path) -> None:
    pipeline, _ = _pipeline(tmp_path)

    with pytest.raises(StoryNotFoundError):
        asyncio.run(pipeline.submit_chapter("nameless", _draft(1, _CHAPTERS[1])))


def test_rebuild_replays_existing_chapters_without_gating(tmp_path: Path) -> None:
    chapters = {1: _CHAPTERS[1], 2: _RENAMED, 3: _CHAPTERS[3]}
    pipeline, _ = _pipeline(tmp_path, chapters)

    async def scenario() -> None:
        await pipeline.submit_chapter(STORY_ID, _draft(1, "Aria waved. Aria left. Aria ran."))
        story = await pipeline.rebuild_story(STORY_ID, 3)
        assert story.chapter_numbers() == [1, 2, 3]
        assert story.chapter(1) is not None
        assert story.chapter(1).summary == "Aria walked the halls."
        report = await pipeline.continuity_report(STORY_ID)
        assert [item.chapter_number for item in report.chapters] == [2, 3]
        assert report.validation_success_rate == 0.0
        assert report.fixable_issues >= 2

    asyncio.run(scenario())


def test_from_settings_wires_configured_backend(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("STORY_CONTINUITY_DATA_PATH", str(tmp_path / "states.db"))
    monkeypatch.setenv("STORY_CONTINUITY_STATE_BACKEND", "json-documents")
    pipeline = ContinuityPipeline.from_settings(_ContentSource(_CHAPTERS))

    outcome = asyncio.run(pipeline.process_chapter(STORY_ID, 1))

    assert outcome.accepted
    documents = JsonDocumentStoryPersistence(tmp_path / "states.db")
    assert documents.list_story_ids() == [STORY_ID]
