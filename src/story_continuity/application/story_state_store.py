"""Per-story source of truth with a read-through cache and serialized mutation."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

from pydantic import ValidationError

from story_continuity.core.continuity_validation import ensure_world_rule_checkable
from story_continuity.core.story_defaults import new_story
from story_continuity.core.story_schema import (
    ChapterState,
    CharacterProfile,
    CharacterTier,
    LocationEntry,
    LocationState,
    ProfileEntry,
    Story,
    WorldRule,
    normalize_story_id,
    upsert,
    utc_now_iso,
)
from story_continuity.core.story_state_updates import apply_chapter
from story_continuity.domain.errors import (
    ChapterSequenceError,
    ConfigurationError,
    DuplicateStoryError,
    PersistenceError,
    StoryNotFoundError,
)
from story_continuity.domain.models import NovelMetadata
from story_continuity.domain.ports import ContentSource, StoryPersistence

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT")

# ValueError covers undecodable stored documents.
_PERSISTENCE_FAILURES = (OSError, sqlite3.Error, ValueError)


class StoryTransaction:
    """Story snapshot plus an append bound to the lock held by ``transaction``."""

    def __init__(self, store: StoryStateStore, story: Story) -> None:
        self._store = store
        self.story = story

    async def append_chapter(
        self, chapter: ChapterState, *, allow_non_sequential: bool = False
    ) -> Story:
        updated = await self._store._append_locked(
            self.story.story_id, chapter, allow_non_sequential=allow_non_sequential
        )
        self.story = updated.model_copy(deep=True)
        return updated


class StoryStateStore:
    """Async access to story state over a synchronous persistence port.

    Mutations of one story are serialized by a per-story lock; different
    stories proceed independently. Reads never lock and always observe a
    whole snapshot, because the cache is only swapped after a successful save.
    """

    def __init__(
        self,
        persistence: StoryPersistence,
        *,
        metadata_source: ContentSource | None = None,
        io_timeout_seconds: float = 10.0,
    ) -> None:
        self._persistence = persistence
        self._metadata_source = metadata_source
        self._io_timeout_seconds = io_timeout_seconds
        self._cache: dict[str, Story] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _story_lock(self, story_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(story_id, asyncio.Lock())
        self._lock_users[story_id] = self._lock_users.get(story_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[story_id] -= 1
            if not self._lock_users[story_id]:
                del self._lock_users[story_id]
                del self._locks[story_id]

    async def _run_io(
        self,
        story_id: str,
        operation: str,
        call: Callable[..., ResultT],
        *args: object,
        bounded: bool = True,
    ) -> ResultT:
        worker = asyncio.ensure_future(asyncio.to_thread(call, *args))
        timeout = self._io_timeout_seconds if bounded else None
        failure: BaseException
        try:
            return await asyncio.wait_for(asyncio.shield(worker), timeout=timeout)
        except TimeoutError as exc:
            # Threads cannot be cancelled; wait so nothing lands after the failure is reported.
            await asyncio.gather(worker, return_exceptions=True)
            failure = exc
        except _PERSISTENCE_FAILURES as exc:
            failure = exc
        logger.error(
            "story_state.persistence_failed story_id=%s operation=%s error=%r",
            story_id,
            operation,
            failure,
        )
        raise PersistenceError(story_id=story_id, operation=operation, cause=failure) from failure

    async def _load(self, story_id: str) -> Story | None:
        cached = self._cache.get(story_id)
        if cached is not None:
            return cached
        document = await self._run_io(story_id, "load", self._persistence.load, story_id)
        if document is None:
            return None
        try:
            story = Story.model_validate(document)
        except ValidationError as exc:
            raise PersistenceError(story_id=story_id, operation="decode", cause=exc) from exc
        self._cache[story_id] = story
        return story

    async def _commit(self, story: Story) -> None:
        story_id = story.story_id
        document = story.model_dump(mode="json")
        try:
            await self._run_io(story_id, "save", self._persistence.save, story_id, document)
        except PersistenceError as exc:
            if isinstance(exc.__cause__, TimeoutError):
                await self._restore(story_id)
            raise
        self._cache[story_id] = story

    async def _restore(self, story_id: str) -> None:
        """Write back the last committed record after a save that outlived its timeout."""
        previous = self._cache.get(story_id)
        if previous is None:
            await self._run_io(
                story_id, "restore", self._persistence.delete, story_id, bounded=False
            )
        else:
            await self._run_io(
                story_id,
                "restore",
                self._persistence.save,
                story_id,
                previous.model_dump(mode="json"),
                bounded=False,
            )
        logger.warning("story_state.save_rolled_back story_id=%s", story_id)

    async def _create(self, story_id: str, metadata: NovelMetadata) -> Story:
        story = new_story(story_id, metadata)
        await self._commit(story)
        logger.info("story_state.initialized story_id=%s title=%s", story_id, metadata.title)
        return story

    async def _current_locked(self, story_id: str) -> Story:
        story = await self._load(story_id)
        if story is not None:
            return story
        metadata = None
        if self._metadata_source is not None:
            metadata = await asyncio.to_thread(self._metadata_source.get_novel_metadata, story_id)
        if metadata is None:
            raise StoryNotFoundError(story_id)
        return await self._create(story_id, metadata)

    async def initialize(self, story_id: str, metadata: NovelMetadata) -> Story:
        """Create a fresh story with default world rules and empty registries."""
        story_id = normalize_story_id(story_id)
        async with self._story_lock(story_id):
            if await self._load(story_id) is not None:
                raise DuplicateStoryError(story_id)
            story = await self._create(story_id, metadata)
        return story.model_copy(deep=True)

    async def get(self, story_id: str) -> Story:
        """Return a private copy of the story, initializing it lazily from metadata."""
        story_id = normalize_story_id(story_id)
        cached = self._cache.get(story_id)
        if cached is None:
            async with self._story_lock(story_id):
                cached = await self._current_locked(story_id)
        return cached.model_copy(deep=True)

    async def append_chapter(
        self, story_id: str, chapter: ChapterState, *, allow_non_sequential: bool = False
    ) -> Story:
        """Merge an accepted chapter and persist the whole story."""
        story_id = normalize_story_id(story_id)
        async with self._story_lock(story_id):
            updated = await self._append_locked(
                story_id, chapter, allow_non_sequential=allow_non_sequential
            )
        return updated.model_copy(deep=True)

    async def _append_locked(
        self, story_id: str, chapter: ChapterState, *, allow_non_sequential: bool
    ) -> Story:
        current = await self._current_locked(story_id)
        number = chapter.chapter_number
        expected = current.last_chapter_number() + 1
        if allow_non_sequential:
            if current.chapter(number) is not None:
                raise ChapterSequenceError(
                    story_id=story_id, chapter_number=number, expected=expected
                )
        elif number != expected:
            raise ChapterSequenceError(story_id=story_id, chapter_number=number, expected=expected)
        updated = apply_chapter(current, chapter)
        await self._commit(updated)
        logger.info(
            "story_state.chapter_appended story_id=%s chapter=%s total_chapters=%s",
            story_id,
            number,
            updated.metadata.total_chapters,
        )
        return updated

    async def delete(self, story_id: str) -> bool:
        story_id = normalize_story_id(story_id)
        async with self._story_lock(story_id):
            removed = await self._run_io(story_id, "delete", self._persistence.delete, story_id)
            self._cache.pop(story_id, None)
        logger.info("story_state.deleted story_id=%s removed=%s", story_id, removed)
        return removed

    async def list_stories(self) -> list[str]:
        stored = await self._run_io("*", "list", self._persistence.list_story_ids)
        return sorted(set(stored) | set(self._cache))

    async def upsert_character(
        self, story_id: str, profile: CharacterProfile, tier: CharacterTier = "supporting"
    ) -> Story:
        """Register or replace a character profile, moving it to ``tier``."""
        story_id = normalize_story_id(story_id)
        async with self._story_lock(story_id):
            updated = (await self._current_locked(story_id)).model_copy(deep=True)
            registry = updated.characters
            for tier_name in ("main", "supporting", "minor"):
                entries = getattr(registry, tier_name)
                setattr(
                    registry,
                    tier_name,
                    [entry for entry in entries if entry.key != profile.name],
                )
            upsert(getattr(registry, tier), profile.name, profile, entry_type=ProfileEntry)
            updated.metadata.updated_at_utc = utc_now_iso()
            await self._commit(updated)
        return updated.model_copy(deep=True)

    async def add_world_rule(self, story_id: str, rule: WorldRule) -> Story:
        ensure_world_rule_checkable(rule)
        story_id = normalize_story_id(story_id)
        async with self._story_lock(story_id):
            updated = (await self._current_locked(story_id)).model_copy(deep=True)
            if any(existing.rule_id == rule.rule_id for existing in updated.worldbuilding.rules):
                raise ConfigurationError(f"World rule already exists: {rule.rule_id}")
            updated.worldbuilding.rules.append(rule)
            updated.metadata.updated_at_utc = utc_now_iso()
            await self._commit(updated)
        logger.info("story_state.rule_added story_id=%s rule_id=%s", story_id, rule.rule_id)
        return updated.model_copy(deep=True)

    async def register_location(self, story_id: str, location: LocationState) -> Story:
        story_id = normalize_story_id(story_id)
        async with self._story_lock(story_id):
            updated = (await self._current_locked(story_id)).model_copy(deep=True)
            upsert(
                updated.worldbuilding.geography.locations,
                location.name,
                location,
                entry_type=LocationEntry,
            )
            updated.metadata.updated_at_utc = utc_now_iso()
            await self._commit(updated)
        return updated.model_copy(deep=True)

    @asynccontextmanager
    async def transaction(self, story_id: str) -> AsyncIterator[StoryTransaction]:
        """Hold the story's lock so a read, validate, and append run as one step."""
        story_id = normalize_story_id(story_id)
        async with self._story_lock(story_id):
            current = await self._current_locked(story_id)
            yield StoryTransaction(self, current.model_copy(deep=True))
