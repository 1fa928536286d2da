"""Error taxonomy for story-state and continuity operations."""

from __future__ import annotations


class StoryContinuityError(Exception):
    """Base class for failures raised by the continuity core."""


class ConfigurationError(StoryContinuityError, RuntimeError):
    """Raised for malformed configuration such as bad world rules or weights."""


class StoryNotFoundError(ConfigurationError, LookupError):
    """Raised when a story has no record and no metadata to initialize from."""

    def __init__(self, story_id: str) -> None:
        super().__init__(f"Story state could not be loaded or initialized: {story_id}")
        self.story_id = story_id


class DuplicateStoryError(StoryContinuityError):
    """Raised when initializing a story id that already exists."""

    def __init__(self, story_id: str) -> None:
        super().__init__(f"Story already exists: {story_id}")
        self.story_id = story_id


class ChapterSequenceError(StoryContinuityError, ValueError):
    """Raised when an appended chapter number breaks the story's sequence."""

    def __init__(self, *, story_id: str, chapter_number: int, expected: int) -> None:
        super().__init__(
            f"Chapter {chapter_number} cannot be appended to {story_id}; "
            f"expected chapter {expected}."
        )
        self.story_id = story_id
        self.chapter_number = chapter_number
        self.expected = expected


class PersistenceError(StoryContinuityError):
    """Raised when loading or saving a story record fails."""

    def __init__(self, *, story_id: str, operation: str, cause: BaseException) -> None:
        super().__init__(f"Story persistence {operation} failed for {story_id}: {cause}")
        self.story_id = story_id
        self.operation = operation
