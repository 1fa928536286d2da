"""Pure state transitions applied when a chapter joins the canon."""

from __future__ import annotations

import bisect
import re

from story_continuity.core.story_schema import (
    ChapterEntry,
    ChapterState,
    CharacterProfile,
    CharacterTier,
    ForeshadowingEntry,
    LocationEntry,
    ProfileEntry,
    SnapshotEntry,
    Story,
    Subplot,
    TimelineEvent,
    find_open_thread,
    lookup,
    upsert,
    utc_now_iso,
)

_SUPPORTING_MIN_MENTIONS = 5


def _tier_for(name: str, chapter: ChapterState, mention_count: int) -> CharacterTier:
    if name == chapter.protagonist:
        return "main"
    if mention_count >= _SUPPORTING_MIN_MENTIONS:
        return "supporting"
    return "minor"


def _merge_characters(story: Story, chapter: ChapterState) -> None:
    number = chapter.chapter_number
    registry = story.characters
    for entry in chapter.character_states:
        name, snapshot = entry.key, entry.value
        profile = registry.find(name)
        if profile is None:
            tier = _tier_for(name, chapter, snapshot.mention_count)
            getattr(registry, tier).append(
                ProfileEntry(
                    key=name,
                    value=CharacterProfile(
                        name=name,
                        abilities=sorted(set(snapshot.abilities) - set(snapshot.revoked_abilities)),
                        first_appearance_chapter=number,
                        last_appearance_chapter=number,
                        emotional_state=snapshot.emotional_state,
                        location=snapshot.location,
                    ),
                )
            )
        else:
            abilities = (set(profile.abilities) | set(snapshot.abilities)) - set(
                snapshot.revoked_abilities
            )
            profile.abilities = sorted(abilities)
            if profile.first_appearance_chapter is None:
                profile.first_appearance_chapter = number
            profile.last_appearance_chapter = max(profile.last_appearance_chapter or number, number)
            profile.emotional_state = snapshot.emotional_state
            if snapshot.location:
                profile.location = snapshot.location
        upsert(story.continuity.character_states, name, snapshot, entry_type=SnapshotEntry)


def _merge_locations(story: Story, chapter: ChapterState) -> None:
    for entry in chapter.location_changes:
        existing = lookup(story.continuity.location_states, entry.key)
        location = entry.value.model_copy(deep=True)
        if existing is not None and existing.first_seen_chapter is not None:
            location.first_seen_chapter = existing.first_seen_chapter
        upsert(story.continuity.location_states, entry.key, location, entry_type=LocationEntry)


def _append_timeline(story: Story, chapter: ChapterState) -> None:
    timeline = story.continuity.timeline
    names = chapter.character_names()
    # Keep the timeline ordered by chapter even for non-sequential inserts.
    position = bisect.bisect_right(
        [event.chapter_number for event in timeline], chapter.chapter_number
    )
    events: list[TimelineEvent] = []
    for index, text in enumerate(chapter.key_events):
        participants = sorted(
            name for name in names if re.search(rf"\b{re.escape(name)}\b", text)
        ) or sorted(names)
        is_closing = index == len(chapter.key_events) - 1
        events.append(
            TimelineEvent(
                chapter_number=chapter.chapter_number,
                event=text,
                participants=participants,
                significance="high" if is_closing and chapter.has_cliffhanger else "medium",
            )
        )
    timeline[position:position] = events


def _merge_plot(story: Story, chapter: ChapterState) -> None:
    number = chapter.chapter_number
    plot = story.plot_progress
    progression = chapter.plot_progression
    for content in progression.foreshadowing_planted:
        plot.foreshadowing.append(
            ForeshadowingEntry(
                entry_id=f"foreshadow-{len(plot.foreshadowing) + 1}",
                content=content,
                planted_chapter=number,
            )
        )
    for reference in progression.foreshadowing_resolved:
        entry = find_open_thread(plot.foreshadowing, reference, number)
        if entry is not None:
            entry.resolve(number)
    for content in progression.checkov_guns_introduced:
        plot.checkov_guns.append(
            ForeshadowingEntry(
                entry_id=f"gun-{len(plot.checkov_guns) + 1}",
                content=content,
                planted_chapter=number,
            )
        )
    for reference in progression.checkov_guns_fired:
        entry = find_open_thread(plot.checkov_guns, reference, number)
        if entry is not None:
            entry.resolve(number)

    arc = plot.main_arc
    stage = progression.main_arc_progress
    if stage and stage != arc.current:
        if arc.current:
            arc.completed.append(arc.current)
        arc.current = stage
        arc.upcoming = [item for item in arc.upcoming if item != stage]

    known = {subplot.description for subplot in plot.subplots}
    for change in progression.subplot_changes:
        if change in known:
            continue
        plot.subplots.append(
            Subplot(
                subplot_id=f"subplot-{len(plot.subplots) + 1}",
                description=change,
                related_characters=sorted(chapter.character_names()),
            )
        )
        known.add(change)


def apply_chapter(story: Story, chapter: ChapterState) -> Story:
    """Return a new story snapshot with ``chapter`` merged in.

    The input story is never mutated, so readers holding it keep a whole,
    consistent snapshot.
    """
    updated = story.model_copy(deep=True)
    stored = chapter.model_copy(update={"content": ""}, deep=True)
    upsert(updated.chapters, stored.chapter_number, stored, entry_type=ChapterEntry)
    updated.chapters.sort(key=lambda entry: entry.key)

    _merge_characters(updated, stored)
    _merge_locations(updated, stored)
    _append_timeline(updated, stored)
    _merge_plot(updated, stored)

    metadata = updated.metadata
    metadata.current_chapter = max(metadata.current_chapter, stored.chapter_number)
    metadata.total_chapters = len(updated.chapters)
    metadata.updated_at_utc = utc_now_iso()
    return updated


def story_baseline(story: Story) -> Story:
    """The story with all chapter-derived state removed.

    World settings, metadata, and profiles registered before any appearance
    are kept; everything else is rebuilt by replaying chapters.
    """
    baseline = story.model_copy(deep=True)
    baseline.chapters = []
    baseline.continuity.timeline = []
    baseline.continuity.character_states = []
    baseline.continuity.location_states = []
    baseline.plot_progress.foreshadowing = []
    baseline.plot_progress.checkov_guns = []
    baseline.plot_progress.subplots = []
    for tier_name in ("main", "supporting", "minor"):
        tier = getattr(baseline.characters, tier_name)
        kept = [entry for entry in tier if entry.value.first_appearance_chapter is None]
        setattr(baseline.characters, tier_name, kept)
    baseline.metadata.current_chapter = 0
    baseline.metadata.total_chapters = 0
    return baseline
