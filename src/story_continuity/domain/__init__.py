"""Domain value objects, ports, and errors for story continuity."""

from story_continuity.domain.errors import (
    ChapterSequenceError,
    ConfigurationError,
    DuplicateStoryError,
    PersistenceError,
    StoryContinuityError,
    StoryNotFoundError,
)
from story_continuity.domain.models import ChapterDraft, ChapterSource, EmotionalTone, NovelMetadata
from story_continuity.domain.ports import ContentSource, StoryPersistence, TextAnalyzer

__all__ = [
    "ChapterDraft",
    "ChapterSequenceError",
    "ChapterSource",
    "ConfigurationError",
    "ContentSource",
    "DuplicateStoryError",
    "EmotionalTone",
    "NovelMetadata",
    "PersistenceError",
    "StoryContinuityError",
    "StoryNotFoundError",
    "StoryPersistence",
    "TextAnalyzer",
]
