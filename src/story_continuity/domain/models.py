"""Value objects exchanged with external collaborators and text analyzers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class NovelMetadata:
    """Novel-level metadata supplied by the content source."""

    title: str
    author: str = ""
    genre: str = ""
    tropes: tuple[str, ...] = ()


@dataclass(frozen=True)
class ChapterSource:
    """Raw chapter text and publication data supplied by the content source."""

    text: str
    published_date: datetime
    title: str = ""


@dataclass(frozen=True)
class ChapterDraft:
    """A produced chapter awaiting validation, plus its plot bookkeeping."""

    chapter_number: int
    text: str
    published_date: datetime
    title: str = ""
    main_arc_progress: str = ""
    foreshadowing_planted: tuple[str, ...] = ()
    foreshadowing_resolved: tuple[str, ...] = ()
    checkov_guns_introduced: tuple[str, ...] = ()
    checkov_guns_fired: tuple[str, ...] = ()
    subplot_changes: tuple[str, ...] = ()


@dataclass(frozen=True)
class EmotionalTone:
    """Overall tone of a text and the tone its final paragraphs leave behind."""

    tone: str = "neutral"
    ending_tone: str = "neutral"
