"""Canonical story-state schema persisted per story and consumed by validation."""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Final, Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

STORY_STATE_SCHEMA_VERSION: Final[Literal["story_state.v1"]] = "story_state.v1"
MAX_KEY_EVENTS: Final[int] = 5
_STORY_ID_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]{0,119}$")

Severity = Literal["critical", "high", "medium", "low"]
CharacterTier = Literal["main", "supporting", "minor"]
StoryStatus = Literal["ongoing", "completed", "hiatus"]

KeyT = TypeVar("KeyT")
ValueT = TypeVar("ValueT")


def utc_now_iso() -> str:
    """Return current UTC timestamp in ISO-8601 form."""
    return datetime.now(UTC).isoformat()


def normalize_story_id(value: str) -> str:
    """Normalize and validate a novel slug used as the story id."""
    normalized = value.strip().lower()
    if not _STORY_ID_PATTERN.match(normalized):
        raise ValueError(f"story_id must be a lowercase slug: {value!r}")
    return normalized


class SchemaModel(BaseModel):
    """Strict model configuration for persisted story state."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class KeyValue(SchemaModel, Generic[KeyT, ValueT]):
    """One entry of a map-typed field, persisted as an ordered pair."""

    key: KeyT
    value: ValueT


def lookup(entries: Iterable[KeyValue[KeyT, ValueT]], key: KeyT) -> ValueT | None:
    """Return the value stored under ``key`` or None."""
    for entry in entries:
        if entry.key == key:
            return entry.value
    return None


def upsert(
    entries: list[KeyValue[KeyT, ValueT]],
    key: KeyT,
    value: ValueT,
    *,
    entry_type: type[KeyValue[KeyT, ValueT]],
) -> None:
    """Replace the entry under ``key`` in place or append a new one."""
    for entry in entries:
        if entry.key == key:
            entry.value = value
            return
    entries.append(entry_type(key=key, value=value))


class LocationState(SchemaModel):
    """Known place in the story world and its latest condition."""

    name: str = Field(min_length=1, max_length=200)
    description: str = ""
    current_condition: str = ""
    significance: str = ""
    connected_locations: list[str] = Field(default_factory=list)
    first_seen_chapter: int | None = Field(default=None, ge=1)


class WorldRule(SchemaModel):
    """Immutable world rule checked against every new chapter."""

    rule_id: str = Field(min_length=1, max_length=120)
    description: str = Field(min_length=1)
    aspect: str = Field(min_length=1, max_length=60)
    expected_value: str = ""
    importance: Severity = "medium"
    violation_terms: list[str] = Field(default_factory=list)

    @field_validator("aspect")
    @classmethod
    def _normalize_aspect(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("violation_terms")
    @classmethod
    def _normalize_terms(cls, values: list[str]) -> list[str]:
        terms: list[str] = []
        for value in values:
            item = value.strip().lower()
            if item and item not in terms:
                terms.append(item)
        return terms


class MagicSystem(SchemaModel):
    name: str = ""
    source: str = ""
    limitations: list[str] = Field(default_factory=list)


class Geography(SchemaModel):
    locations: list[KeyValue[str, LocationState]] = Field(default_factory=list)
    regions: list[str] = Field(default_factory=list)

    def knows(self, location: str) -> bool:
        return lookup(self.locations, location) is not None


class SocialHierarchy(SchemaModel):
    classes: list[str] = Field(default_factory=list)
    cultural_rules: list[str] = Field(default_factory=list)


class Worldbuilding(SchemaModel):
    """World settings every chapter must stay compatible with."""

    magic_system: MagicSystem = Field(default_factory=MagicSystem)
    geography: Geography = Field(default_factory=Geography)
    social_hierarchy: SocialHierarchy = Field(default_factory=SocialHierarchy)
    rules: list[WorldRule] = Field(default_factory=list)


class CharacterProfile(SchemaModel):
    """Accumulated profile of one character across all accepted chapters."""

    name: str = Field(min_length=1, max_length=120)
    expected_behavior: str = ""
    abilities: list[str] = Field(default_factory=list)
    speech_patterns: list[str] = Field(default_factory=list)
    relationship_stages: list[KeyValue[str, str]] = Field(default_factory=list)
    first_appearance_chapter: int | None = Field(default=None, ge=1)
    last_appearance_chapter: int | None = Field(default=None, ge=1)
    emotional_state: str = "neutral"
    location: str | None = None


class CharacterRegistry(SchemaModel):
    main: list[KeyValue[str, CharacterProfile]] = Field(default_factory=list)
    supporting: list[KeyValue[str, CharacterProfile]] = Field(default_factory=list)
    minor: list[KeyValue[str, CharacterProfile]] = Field(default_factory=list)

    def find(self, name: str) -> CharacterProfile | None:
        """Look a character up across all tiers."""
        for tier in (self.main, self.supporting, self.minor):
            profile = lookup(tier, name)
            if profile is not None:
                return profile
        return None

    def tier_of(self, name: str) -> CharacterTier | None:
        for tier_name in ("main", "supporting", "minor"):
            if lookup(getattr(self, tier_name), name) is not None:
                return tier_name  # type: ignore[return-value]
        return None

    def names(self) -> list[str]:
        return sorted(
            entry.key for tier in (self.main, self.supporting, self.minor) for entry in tier
        )


class ForeshadowingEntry(SchemaModel):
    """Planted narrative element that a later chapter should pay off."""

    entry_id: str = Field(min_length=1, max_length=120)
    content: str = Field(min_length=1)
    planted_chapter: int = Field(ge=1)
    resolved: bool = False
    resolution_chapter: int | None = Field(default=None, ge=1)

    def resolve(self, chapter_number: int) -> None:
        if chapter_number < self.planted_chapter:
            raise ValueError(
                f"{self.entry_id} cannot be resolved in chapter {chapter_number} "
                f"before it was planted in chapter {self.planted_chapter}."
            )
        self.resolved = True
        self.resolution_chapter = chapter_number


def find_open_thread(
    entries: Iterable[ForeshadowingEntry], reference: str, chapter_number: int
) -> ForeshadowingEntry | None:
    """First unresolved entry planted by ``chapter_number`` whose content matches."""
    needle = reference.strip().lower()
    if not needle:
        return None
    for entry in entries:
        if entry.resolved or entry.planted_chapter > chapter_number:
            continue
        if needle == entry.entry_id.lower() or needle in entry.content.lower():
            return entry
    return None


class MainArc(SchemaModel):
    current: str = ""
    completed: list[str] = Field(default_factory=list)
    upcoming: list[str] = Field(default_factory=list)
    climax_reached: bool = False


class Subplot(SchemaModel):
    subplot_id: str = Field(min_length=1)
    description: str = ""
    status: Literal["active", "resolved", "dormant"] = "active"
    related_characters: list[str] = Field(default_factory=list)


class PlotProgress(SchemaModel):
    """Main-arc stage and open plot threads."""

    main_arc: MainArc = Field(default_factory=MainArc)
    subplots: list[Subplot] = Field(default_factory=list)
    foreshadowing: list[ForeshadowingEntry] = Field(default_factory=list)
    checkov_guns: list[ForeshadowingEntry] = Field(default_factory=list)

    def unresolved_foreshadowing(self) -> list[ForeshadowingEntry]:
        return [entry for entry in self.foreshadowing if not entry.resolved]

    def unfired_guns(self) -> list[ForeshadowingEntry]:
        return [entry for entry in self.checkov_guns if not entry.resolved]


class CharacterSnapshot(SchemaModel):
    """What one chapter says about one character."""

    mention_count: int = Field(default=0, ge=0)
    abilities: list[str] = Field(default_factory=list)
    revoked_abilities: list[str] = Field(default_factory=list)
    emotional_state: str = "neutral"
    location: str | None = None


class PlotProgression(SchemaModel):
    """Plot deltas introduced by one chapter."""

    main_arc_progress: str = ""
    subplot_changes: list[str] = Field(default_factory=list)
    foreshadowing_planted: list[str] = Field(default_factory=list)
    foreshadowing_resolved: list[str] = Field(default_factory=list)
    checkov_guns_introduced: list[str] = Field(default_factory=list)
    checkov_guns_fired: list[str] = Field(default_factory=list)


class ChapterState(SchemaModel):
    """Structured, extracted representation of one installment."""

    chapter_number: int = Field(ge=1)
    title: str = ""
    summary: str = ""
    key_events: list[str] = Field(default_factory=list, max_length=MAX_KEY_EVENTS)
    protagonist: str | None = None
    character_states: list[KeyValue[str, CharacterSnapshot]] = Field(default_factory=list)
    new_characters: list[str] = Field(default_factory=list)
    location_changes: list[KeyValue[str, LocationState]] = Field(default_factory=list)
    emotional_tone: str = "neutral"
    ending_tone: str = "neutral"
    cliffhanger: str | None = None
    plot_progression: PlotProgression = Field(default_factory=PlotProgression)
    published_date: datetime
    word_count: int = Field(default=0, ge=0)
    content: str = Field(default="", exclude=True, repr=False)

    @field_validator("published_date")
    @classmethod
    def _require_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @property
    def has_cliffhanger(self) -> bool:
        return self.cliffhanger is not None

    def character_names(self) -> list[str]:
        return [entry.key for entry in self.character_states]

    def snapshot(self, name: str) -> CharacterSnapshot | None:
        return lookup(self.character_states, name)

    def validation_text(self) -> str:
        """Text the validator inspects: raw content when present, else the digest."""
        if self.content.strip():
            return self.content
        parts = [self.title, self.summary, *self.key_events]
        if self.cliffhanger:
            parts.append(self.cliffhanger)
        return " ".join(part for part in parts if part)


class TimelineEvent(SchemaModel):
    chapter_number: int = Field(ge=1)
    event: str = Field(min_length=1)
    participants: list[str] = Field(default_factory=list)
    significance: Severity = "medium"
    recorded_at_utc: str = Field(default_factory=utc_now_iso)


class Continuity(SchemaModel):
    """Ordered timeline plus latest per-character and per-location state."""

    timeline: list[TimelineEvent] = Field(default_factory=list)
    character_states: list[KeyValue[str, CharacterSnapshot]] = Field(default_factory=list)
    location_states: list[KeyValue[str, LocationState]] = Field(default_factory=list)

    def last_event(self) -> TimelineEvent | None:
        return self.timeline[-1] if self.timeline else None


class StoryMetadata(SchemaModel):
    story_id: str
    title: str = Field(min_length=1)
    author: str = ""
    genre: str = ""
    tropes: list[str] = Field(default_factory=list)
    current_chapter: int = Field(default=0, ge=0)
    total_chapters: int = Field(default=0, ge=0)
    status: StoryStatus = "ongoing"
    created_at_utc: str = Field(default_factory=utc_now_iso)
    updated_at_utc: str = Field(default_factory=utc_now_iso)

    @field_validator("story_id")
    @classmethod
    def _validate_story_id(cls, value: str) -> str:
        return normalize_story_id(value)


LocationEntry = KeyValue[str, LocationState]
ProfileEntry = KeyValue[str, CharacterProfile]
SnapshotEntry = KeyValue[str, CharacterSnapshot]
RelationshipEntry = KeyValue[str, str]
ChapterEntry = KeyValue[int, ChapterState]


class Story(SchemaModel):
    """Top-level persisted state for one serialized work."""

    schema_version: Literal["story_state.v1"] = STORY_STATE_SCHEMA_VERSION
    metadata: StoryMetadata
    worldbuilding: Worldbuilding = Field(default_factory=Worldbuilding)
    characters: CharacterRegistry = Field(default_factory=CharacterRegistry)
    plot_progress: PlotProgress = Field(default_factory=PlotProgress)
    chapters: list[KeyValue[int, ChapterState]] = Field(default_factory=list)
    continuity: Continuity = Field(default_factory=Continuity)

    @property
    def story_id(self) -> str:
        return self.metadata.story_id

    def chapter(self, chapter_number: int) -> ChapterState | None:
        return lookup(self.chapters, chapter_number)

    def chapter_numbers(self) -> list[int]:
        return [entry.key for entry in self.chapters]

    def last_chapter_number(self) -> int:
        return max(self.chapter_numbers(), default=0)

    def ordered_chapters(self) -> list[ChapterState]:
        return [entry.value for entry in sorted(self.chapters, key=lambda entry: entry.key)]
