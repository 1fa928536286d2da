from __future__ import annotations

import asyncio
import copy
import threading
import time
from datetime import UTC, datetime

import pytest

from story_continuity.application.story_state_store import StoryStateStore
from story_continuity.core.state_extraction import build_chapter_state
from story_continuity.core.story_defaults import new_story
from story_continuity.core.story_schema import (
    ChapterState,
    CharacterProfile,
    LocationState,
    PlotProgression,
    Story,
    WorldRule,
)
from story_continuity.core.story_state_updates import apply_chapter
from story_continuity.domain.errors import (
    ChapterSequenceError,
    ConfigurationError,
    DuplicateStoryError,
    PersistenceError,
    StoryNotFoundError,
)
from story_continuity.domain.models import ChapterSource, NovelMetadata

STORY_ID = "moonlit-duchy"


class _MemoryPersistence:
    def __init__(self, *, save_delay: float = 0.0) -> None:
        self.documents: dict[str, dict[str, object]] = {}
        self.fail_saves = False
        self.save_delay = save_delay
        self.active_saves = 0
        self.max_active_saves = 0
        self._guard = threading.Lock()

    def load(self, story_id: str) -> dict[str, object] | None:
        document = self.documents.get(story_id)
        return copy.deepcopy(document) if document is not None else None

    def save(self, story_id: str, document: dict[str, object]) -> None:
        with self._guard:
            self.active_saves += 1
            self.max_active_saves = max(self.max_active_saves, self.active_saves)
        try:
            if self.save_delay:
                time.sleep(self.save_delay)
            if self.fail_saves:
                raise OSError("disk full")
            self.documents[story_id] = copy.deepcopy(document)
        finally:
            with self._guard:
                self.active_saves -= 1

    def delete(self, story_id: str) -> bool:
        return self.documents.pop(story_id, None) is not None

    def list_story_ids(self) -> list[str]:
        return sorted(self.documents)


class _MetadataSource:
    def __init__(self, known: dict[str, NovelMetadata]) -> None:
        self._known = known

    def get_chapter_text(self, novel_id: str, chapter_number: int) -> ChapterSource:
        raise AssertionError("the store never reads chapter text")

    def get_novel_metadata(self, novel_id: str) -> NovelMetadata | None:
        return self._known.get(novel_id)


def _metadata() -> NovelMetadata:
    return NovelMetadata(title="Moonlit Duchy", author="R. Vale", tropes=("contract marriage",))


def _chapter(number: int, **overrides: object) -> ChapterState:
    fields: dict[str, object] = {
        "chapter_number": number,
        "title": f"Chapter {number}",
        "protagonist": "Aria",
        "published_date": datetime(2024, 1, number, tzinfo=UTC),
    }
    fields.update(overrides)
    return ChapterState.model_validate(fields)


def _store(persistence: _MemoryPersistence | None = None, **kwargs: object) -> StoryStateStore:
    return StoryStateStore(persistence or _MemoryPersistence(), **kwargs)  # type: ignore[arg-type]


def test_initialize_persists_defaults_and_rejects_duplicates() -> None:
    persistence = _MemoryPersistence()

    async def scenario() -> None:
        store = _store(persistence)
        story = await store.initialize(STORY_ID, _metadata())
        assert story.metadata.title == "Moonlit Duchy"
        assert story.metadata.genre == "romance-fantasy"
        assert story.metadata.tropes == ["contract marriage"]
        assert {rule.rule_id for rule in story.worldbuilding.rules} >= {"magic-limits"}
        assert story.chapters == []
        with pytest.raises(DuplicateStoryError):
            await store.initialize(STORY_ID, _metadata())
        with pytest.raises(DuplicateStoryError):
            await _store(persistence).initialize(STORY_ID, _metadata())

    asyncio.run(scenario())
    assert list(persistence.documents) == [STORY_ID]


def test_get_initializes_lazily_from_metadata_source() -> None:
    persistence = _MemoryPersistence()
    store = _store(persistence, metadata_source=_MetadataSource({STORY_ID: _metadata()}))

    story = asyncio.run(store.get("Moonlit-Duchy"))

    assert story.story_id == STORY_ID
    assert story.metadata.author == "R. Vale"
    assert STORY_ID in persistence.documents


def test_get_unknown_story_without_metadata_raises() -> None:
    store = _store(metadata_source=_MetadataSource({}))

    with pytest.raises(StoryNotFoundError) as excinfo:
        asyncio.run(store.get("lost-tale"))

    assert isinstance(excinfo.value, ConfigurationError)
    assert excinfo.value.story_id == "lost-tale"


def test_story_ids_must_be_slugs() -> None:
    with pytest.raises(ValueError, match="slug"):
        asyncio.run(_store().get("not a slug!"))


def test_get_returns_private_copies() -> None:
    async def scenario() -> None:
        store = _store()
        await store.initialize(STORY_ID, _metadata())
        first = await store.get(STORY_ID)
        first.metadata.title = "Tampered"
        second = await store.get(STORY_ID)
        assert second.metadata.title == "Moonlit Duchy"

    asyncio.run(scenario())


def test_append_requires_next_chapter_number() -> None:
    async def scenario() -> None:
        store = _store()
        await store.initialize(STORY_ID, _metadata())
        await store.append_chapter(STORY_ID, _chapter(1))
        with pytest.raises(ChapterSequenceError) as skipped:
            await store.append_chapter(STORY_ID, _chapter(3))
        assert skipped.value.expected == 2
        with pytest.raises(ChapterSequenceError):
            await store.append_chapter(STORY_ID, _chapter(1))
        story = await store.get(STORY_ID)
        assert story.chapter_numbers() == [1]

    asyncio.run(scenario())


def test_non_sequential_insert_still_rejects_duplicates() -> None:
    async def scenario() -> None:
        store = _store()
        await store.initialize(STORY_ID, _metadata())
        await store.append_chapter(STORY_ID, _chapter(1))
        await store.append_chapter(STORY_ID, _chapter(5), allow_non_sequential=True)
        story = await store.append_chapter(STORY_ID, _chapter(3), allow_non_sequential=True)
        assert story.chapter_numbers() == [1, 3, 5]
        assert story.metadata.current_chapter == 5
        assert story.metadata.total_chapters == 3
        with pytest.raises(ChapterSequenceError):
            await store.append_chapter(STORY_ID, _chapter(3), allow_non_sequential=True)

    asyncio.run(scenario())


def test_append_updates_characters_threads_and_timeline() -> None:
    first = build_chapter_state(
        chapter_number=1,
        text=(
            "Aria walked through Silver Harbor. Aria used her magic. "
            "Aria smiled at Corin. Corin laughed. Corin said goodbye."
        ),
        published_date=datetime(2024, 1, 1, tzinfo=UTC),
        plot_progression=PlotProgression(
            main_arc_progress="First meeting",
            foreshadowing_planted=["a sealed letter"],
            checkov_guns_introduced=["the old bow"],
        ),
    )
    second = build_chapter_state(
        chapter_number=2,
        text="Aria has no magic now. Aria rested. Aria waited.",
        published_date=datetime(2024, 1, 2, tzinfo=UTC),
        plot_progression=PlotProgression(
            foreshadowing_resolved=["sealed letter"], checkov_guns_fired=["gun-1"]
        ),
    )

    async def scenario() -> None:
        store = _store()
        await store.initialize(STORY_ID, _metadata())
        story = await store.append_chapter(STORY_ID, first)

        aria = story.characters.find("Aria")
        assert aria is not None
        assert aria.abilities == ["magic"]
        assert aria.first_appearance_chapter == 1
        assert aria.location == "Silver Harbor"
        assert story.characters.tier_of("Aria") == "main"
        assert story.characters.tier_of("Corin") == "minor"
        assert [event.event for event in story.continuity.timeline] == ["Corin said goodbye."]
        assert story.continuity.timeline[0].participants == ["Corin"]
        assert story.continuity.timeline[0].significance == "medium"
        assert [entry.key for entry in story.continuity.location_states] == ["Silver Harbor"]
        assert story.plot_progress.foreshadowing[0].entry_id == "foreshadow-1"
        assert story.plot_progress.checkov_guns[0].entry_id == "gun-1"
        assert story.plot_progress.main_arc.current == "First meeting"
        assert story.plot_progress.main_arc.completed == ["World and character introduction"]
        assert story.chapter(1) is not None
        assert story.chapter(1).content == ""

        story = await store.append_chapter(STORY_ID, second)
        aria = story.characters.find("Aria")
        assert aria is not None
        assert aria.abilities == []
        assert aria.last_appearance_chapter == 2
        assert story.plot_progress.foreshadowing[0].resolved is True
        assert story.plot_progress.foreshadowing[0].resolution_chapter == 2
        assert story.plot_progress.checkov_guns[0].resolved is True
        assert story.metadata.current_chapter == 2
        assert story.metadata.total_chapters == 2

    asyncio.run(scenario())


def test_reloaded_story_matches_cached_snapshot() -> None:
    persistence = _MemoryPersistence()
    chapter = build_chapter_state(
        chapter_number=1,
        text="Aria drew her sword. Aria said farewell. Aria left the Old Castle.",
        published_date=datetime(2024, 1, 1, tzinfo=UTC),
    )

    async def scenario() -> None:
        store = _store(persistence)
        await store.initialize(STORY_ID, _metadata())
        await store.append_chapter(STORY_ID, chapter)
        cached = await store.get(STORY_ID)
        reloaded = await _store(persistence).get(STORY_ID)
        assert reloaded == cached

    asyncio.run(scenario())


def test_failed_save_leaves_story_unchanged() -> None:
    persistence = _MemoryPersistence()

    async def scenario() -> None:
        store = _store(persistence)
        await store.initialize(STORY_ID, _metadata())
        await store.append_chapter(STORY_ID, _chapter(1))
        before = copy.deepcopy(persistence.documents[STORY_ID])

        persistence.fail_saves = True
        with pytest.raises(PersistenceError) as excinfo:
            await store.append_chapter(STORY_ID, _chapter(2))
        assert excinfo.value.operation == "save"
        assert isinstance(excinfo.value.__cause__, OSError)
        assert persistence.documents[STORY_ID] == before
        assert (await store.get(STORY_ID)).chapter_numbers() == [1]

        persistence.fail_saves = False
        story = await store.append_chapter(STORY_ID, _chapter(2))
        assert story.chapter_numbers() == [1, 2]

    asyncio.run(scenario())


def test_slow_persistence_times_out() -> None:
    persistence = _MemoryPersistence()

    async def scenario() -> None:
        store = _store(persistence, io_timeout_seconds=0.05)
        await store.initialize(STORY_ID, _metadata())
        persistence.save_delay = 0.3
        with pytest.raises(PersistenceError) as excinfo:
            await store.append_chapter(STORY_ID, _chapter(1))
        assert isinstance(excinfo.value.__cause__, TimeoutError)
        assert persistence.active_saves == 0
        assert Story.model_validate(persistence.documents[STORY_ID]).chapter_numbers() == []
        persistence.save_delay = 0.0
        assert (await store.get(STORY_ID)).chapter_numbers() == []
        assert (await _store(persistence).get(STORY_ID)).chapter_numbers() == []

    asyncio.run(scenario())


def test_late_save_never_overwrites_a_later_commit() -> None:
    persistence = _MemoryPersistence()

    async def scenario() -> None:
        store = _store(persistence, io_timeout_seconds=0.05)
        await store.initialize(STORY_ID, _metadata())
        await store.append_chapter(STORY_ID, _chapter(1))
        persistence.save_delay = 0.2
        with pytest.raises(PersistenceError):
            await store.append_chapter(STORY_ID, _chapter(2, title="Abandoned"))
        persistence.save_delay = 0.0
        await store.append_chapter(STORY_ID, _chapter(2, title="Kept"))
        await asyncio.sleep(0.3)
        persisted = Story.model_validate(persistence.documents[STORY_ID])
        assert persisted.chapter_numbers() == [1, 2]
        assert persisted.chapter(2) is not None
        assert persisted.chapter(2).title == "Kept"

    asyncio.run(scenario())


def test_story_locks_are_released_after_use() -> None:
    async def scenario() -> None:
        store = _store()
        await store.initialize(STORY_ID, _metadata())
        await asyncio.gather(
            store.append_chapter(STORY_ID, _chapter(1)),
            store.get(STORY_ID),
        )
        assert await store.delete(STORY_ID) is True
        assert store._locks == {}

    asyncio.run(scenario())


def test_concurrent_appends_to_one_story_are_serialized() -> None:
    persistence = _MemoryPersistence(save_delay=0.01)

    async def scenario() -> list[object]:
        store = _store(persistence)
        await store.initialize(STORY_ID, _metadata())
        return await asyncio.gather(
            store.append_chapter(STORY_ID, _chapter(1)),
            store.append_chapter(STORY_ID, _chapter(1, title="Duplicate")),
            return_exceptions=True,
        )

    outcomes = asyncio.run(scenario())

    failures = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
    assert len(failures) == 1
    assert isinstance(failures[0], ChapterSequenceError)
    assert persistence.max_active_saves == 1


def test_transaction_appends_under_the_story_lock() -> None:
    async def scenario() -> None:
        store = _store()
        await store.initialize(STORY_ID, _metadata())
        async with store.transaction(STORY_ID) as transaction:
            assert transaction.story.chapter_numbers() == []
            await transaction.append_chapter(_chapter(1))
            assert transaction.story.chapter_numbers() == [1]
        assert (await store.get(STORY_ID)).chapter_numbers() == [1]

    asyncio.run(scenario())


def test_character_rule_and_location_registration() -> None:
    async def scenario() -> None:
        store = _store()
        await store.initialize(STORY_ID, _metadata())
        await store.upsert_character(
            STORY_ID, CharacterProfile(name="Corin", abilities=["sword"]), "minor"
        )
        story = await store.upsert_character(
            STORY_ID, CharacterProfile(name="Corin", abilities=["sword", "healing"]), "main"
        )
        assert story.characters.tier_of("Corin") == "main"
        assert story.characters.minor == []
        assert story.characters.find("Corin").abilities == ["sword", "healing"]

        rule = WorldRule(
            rule_id="no-dragons",
            description="Dragons are extinct.",
            aspect="creatures",
            violation_terms=["dragon"],
        )
        story = await store.add_world_rule(STORY_ID, rule)
        assert story.worldbuilding.rules[-1].rule_id == "no-dragons"
        with pytest.raises(ConfigurationError, match="already exists"):
            await store.add_world_rule(STORY_ID, rule)
        with pytest.raises(ConfigurationError):
            await store.add_world_rule(
                STORY_ID, WorldRule(rule_id="rain", description="Rain.", aspect="weather")
            )

        story = await store.register_location(STORY_ID, LocationState(name="Silver Harbor"))
        assert story.worldbuilding.geography.knows("Silver Harbor")

    asyncio.run(scenario())


def test_profiles_registered_before_appearance_keep_their_abilities() -> None:
    async def scenario() -> None:
        store = _store()
        await store.initialize(STORY_ID, _metadata())
        await store.upsert_character(STORY_ID, CharacterProfile(name="Aria", abilities=["sword"]))
        story = await store.append_chapter(
            STORY_ID,
            build_chapter_state(
                chapter_number=1,
                text="Aria used her magic. Aria rested. Aria waited.",
                published_date=datetime(2024, 1, 1, tzinfo=UTC),
            ),
        )
        aria = story.characters.find("Aria")
        assert aria is not None
        assert aria.abilities == ["magic", "sword"]
        assert aria.first_appearance_chapter == 1
        assert story.characters.tier_of("Aria") == "supporting"

    asyncio.run(scenario())


def test_delete_and_list_stories() -> None:
    async def scenario() -> None:
        store = _store()
        await store.initialize(STORY_ID, _metadata())
        await store.initialize("ember-court", NovelMetadata(title="Ember Court"))
        assert await store.list_stories() == ["ember-court", STORY_ID]
        assert await store.delete(STORY_ID) is True
        assert await store.delete(STORY_ID) is False
        assert await store.list_stories() == ["ember-court"]
        with pytest.raises(StoryNotFoundError):
            await store.get(STORY_ID)

    asyncio.run(scenario())


def test_timeline_participants_match_whole_names() -> None:
    chapter = _chapter(
        1,
        character_states=[{"key": "Al", "value": {}}, {"key": "Mira", "value": {}}],
        key_events=["Also, Mira rang the bell.", "Al and Mira left together."],
    )

    story = apply_chapter(new_story(STORY_ID, _metadata()), chapter)

    assert [event.participants for event in story.continuity.timeline] == [
        ["Mira"],
        ["Al", "Mira"],
    ]
