"""Ports for content sources, story-state persistence, and text analysis."""

from __future__ import annotations

from typing import Protocol

from story_continuity.domain.models import ChapterSource, EmotionalTone, NovelMetadata


class ContentSource(Protocol):
    """Read-only access to published chapters and novel metadata."""

    def get_chapter_text(self, novel_id: str, chapter_number: int) -> ChapterSource:
        ...

    def get_novel_metadata(self, novel_id: str) -> NovelMetadata | None:
        ...


class StoryPersistence(Protocol):
    """Stores one JSON-compatible document per story id."""

    def load(self, story_id: str) -> dict[str, object] | None:
        ...

    def save(self, story_id: str, document: dict[str, object]) -> None:
        ...

    def delete(self, story_id: str) -> bool:
        ...

    def list_story_ids(self) -> list[str]:
        ...


class TextAnalyzer(Protocol):
    """Swappable text-analysis capability behind extraction and validation."""

    def extract_character_names(self, text: str) -> set[str]:
        ...

    def count_mentions(self, name: str, text: str) -> int:
        ...

    def identify_protagonist(self, names: set[str], text: str) -> str | None:
        ...

    def extract_character_abilities(self, text: str, names: set[str]) -> dict[str, set[str]]:
        ...

    def extract_revoked_abilities(self, text: str, names: set[str]) -> dict[str, set[str]]:
        ...

    def classify_emotional_tone(self, text: str) -> EmotionalTone:
        ...

    def detect_cliffhanger(self, text: str) -> str | None:
        ...

    def extract_key_events(self, text: str) -> list[str]:
        ...

    def extract_locations(self, text: str) -> list[str]:
        ...

    def summarize(self, text: str) -> str:
        ...

    def tone_keywords(self, tone: str) -> frozenset[str]:
        ...
