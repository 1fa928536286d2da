"""Five-aspect continuity validation of a new chapter against accumulated story state."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Final, Literal

from pydantic import Field

from story_continuity.core.state_extraction import HeuristicTextAnalyzer, split_sentences
from story_continuity.core.story_schema import (
    ChapterState,
    SchemaModel,
    Severity,
    Story,
    WorldRule,
    find_open_thread,
)
from story_continuity.domain.errors import ConfigurationError
from story_continuity.domain.ports import TextAnalyzer
from story_continuity.settings import Settings

logger = logging.getLogger(__name__)

ErrorType = Literal[
    "CHARACTER_NAME_CHANGED",
    "ABILITY_INCONSISTENCY",
    "WORLD_RULE_VIOLATION",
    "TIMELINE_CONTRADICTION",
    "EMOTIONAL_DISCONTINUITY",
    "PLOT_HOLE",
]
WarningType = Literal[
    "MINOR_INCONSISTENCY",
    "PACING_ISSUE",
    "CHARACTER_OOC",
    "FORESHADOWING_DELAY",
]
ContextValue = str | int | float | list[str]

BLOCKING_SEVERITIES: Final[frozenset[str]] = frozenset({"critical", "high"})
EMOTION_SCALE: Final[dict[str, float]] = {
    "positive": 1.0,
    "hopeful": 0.8,
    "neutral": 0.5,
    "uncertain": 0.4,
    "tense": 0.3,
    "negative": 0.1,
    "sad": 0.0,
}
_WORD_TOKEN = re.compile(r"[a-z']+")
# Co-occurrence cues for rules that do not carry their own violation terms.
RULE_VIOLATION_CUES: Final[dict[str, tuple[tuple[str, ...], ...]]] = {
    "magic": (
        ("unlimited", "magic"),
        ("infinite", "magic"),
        ("limitless", "magic"),
        ("endless", "magic"),
    ),
    "emotion": (
        ("fake", "emotion", "magic"),
        ("false", "feelings", "magic"),
    ),
    "magic_cost": (
        ("without any cost", "magic"),
        ("no price", "magic"),
    ),
    "bloodline": (("commoner", "born", "magic"),),
    "prophecy": (
        ("prophecy", "was false"),
        ("prophecy", "broken"),
    ),
}
_HIERARCHY_CUES: Final[tuple[str, ...]] = ("commoner", "emperor", "equal")
_SUDDEN_CUE: Final[str] = "suddenly"
_RESOLUTION_CUES: Final[frozenset[str]] = frozenset({"resolved", "ended", "solved"})


def tone_score(label: str) -> float:
    """Position of a tone label on the 0-1 emotional scale; unknown labels are neutral."""
    return EMOTION_SCALE.get(label.strip().lower(), 0.5)


def _bounded(value: float) -> float:
    return round(min(1.0, max(0.0, value)), 3)


def _has_term(term: str, *, lowered: str, words: set[str]) -> bool:
    if " " in term:
        return term in lowered
    return term in words


def violation_cues_for(rule: WorldRule) -> tuple[tuple[str, ...], ...]:
    """Term sets whose co-occurrence in a chapter violates ``rule``."""
    if rule.violation_terms:
        return (tuple(rule.violation_terms),)
    return RULE_VIOLATION_CUES.get(rule.aspect, ())


def ensure_world_rule_checkable(rule: WorldRule) -> None:
    """Reject rules the validator has no way to check."""
    if not violation_cues_for(rule):
        raise ConfigurationError(
            f"World rule {rule.rule_id!r} has no violation_terms and aspect "
            f"{rule.aspect!r} has no built-in cues."
        )


class ContinuityViolation(SchemaModel):
    """A finding with a severity; critical and high block acceptance."""

    type: ErrorType
    severity: Severity
    description: str
    chapter_number: int
    suggested_fix: str | None = None
    context: dict[str, ContextValue] = Field(default_factory=dict)

    @property
    def blocking(self) -> bool:
        return self.severity in BLOCKING_SEVERITIES


class ContinuityWarning(SchemaModel):
    """A non-blocking finding that must still be surfaced."""

    type: WarningType
    description: str
    chapter_number: int
    recommendation: str | None = None
    context: dict[str, ContextValue] = Field(default_factory=dict)


class AspectScores(SchemaModel):
    """Per-aspect confidence in [0, 1]."""

    character: float = Field(ge=0.0, le=1.0)
    world: float = Field(ge=0.0, le=1.0)
    plot: float = Field(ge=0.0, le=1.0)
    emotional: float = Field(ge=0.0, le=1.0)
    timeline: float = Field(ge=0.0, le=1.0)

    def as_pairs(self) -> list[tuple[str, float]]:
        return [
            ("character", self.character),
            ("world", self.world),
            ("plot", self.plot),
            ("emotional", self.emotional),
            ("timeline", self.timeline),
        ]


class ValidationResult(SchemaModel):
    """Merged outcome of all aspect checks for one chapter."""

    valid: bool
    errors: list[ContinuityViolation] = Field(default_factory=list)
    warnings: list[ContinuityWarning] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)
    aspect_scores: AspectScores


@dataclass(frozen=True)
class ValidationThresholds:
    """Tunable limits used by the aspect checks."""

    foreshadowing_limit: int = 10
    foreshadowing_stale_span: int = 20
    pacing_distance: float = 0.5
    discontinuity_distance: float = 0.7
    severe_discontinuity_distance: float = 0.9
    character_tone_jump: float = 0.5
    rushed_resolution_span: int = 2

    @classmethod
    def from_settings(cls, settings: Settings) -> ValidationThresholds:
        return cls(
            foreshadowing_limit=settings.foreshadowing_limit,
            foreshadowing_stale_span=settings.foreshadowing_stale_span,
        )


@dataclass
class AspectOutcome:
    errors: list[ContinuityViolation] = field(default_factory=list)
    warnings: list[ContinuityWarning] = field(default_factory=list)
    confidence: float = 1.0


def _confidence(
    outcome: AspectOutcome, *, with_errors: float, with_warnings: float, warning_allowance: int = 0
) -> float:
    if outcome.errors:
        return with_errors
    if len(outcome.warnings) > warning_allowance:
        return with_warnings
    return 1.0


class ContinuityValidator:
    """Checks a new chapter against a story's accumulated state.

    Each aspect check is a stateless function of (story, new chapter,
    previous chapter). The validator itself holds only configuration, so one
    instance can serve any number of stories concurrently.
    """

    def __init__(
        self,
        *,
        analyzer: TextAnalyzer | None = None,
        thresholds: ValidationThresholds | None = None,
    ) -> None:
        self._analyzer = analyzer or HeuristicTextAnalyzer()
        self._thresholds = thresholds or ValidationThresholds()

    @property
    def thresholds(self) -> ValidationThresholds:
        return self._thresholds

    def validate_all_aspects(self, story: Story, new_chapter: ChapterState) -> ValidationResult:
        """Run all five aspect checks and merge their findings."""
        previous = story.chapter(new_chapter.chapter_number - 1)
        character = self.validate_character_continuity(story, new_chapter, previous)
        world = self.validate_world_continuity(story, new_chapter)
        plot = self.validate_plot_continuity(story, new_chapter)
        emotional = self.validate_emotional_flow(new_chapter, previous)
        timeline = self.validate_timeline_continuity(story, new_chapter, previous)

        outcomes = (character, world, plot, emotional, timeline)
        errors = [error for outcome in outcomes for error in outcome.errors]
        warnings = [warning for outcome in outcomes for warning in outcome.warnings]
        scores = AspectScores(
            character=_bounded(character.confidence),
            world=_bounded(world.confidence),
            plot=_bounded(plot.confidence),
            emotional=_bounded(emotional.confidence),
            timeline=_bounded(timeline.confidence),
        )
        confidence = _bounded(sum(score for _, score in scores.as_pairs()) / 5)
        valid = not any(error.blocking for error in errors)
        logger.info(
            "validation.complete story_id=%s chapter=%s valid=%s errors=%s warnings=%s "
            "confidence=%s",
            story.story_id,
            new_chapter.chapter_number,
            valid,
            len(errors),
            len(warnings),
            confidence,
        )
        return ValidationResult(
            valid=valid,
            errors=errors,
            warnings=warnings,
            confidence=confidence,
            aspect_scores=scores,
        )

    def validate_character_continuity(
        self, story: Story, new_chapter: ChapterState, previous: ChapterState | None
    ) -> AspectOutcome:
        outcome = AspectOutcome()
        if previous is None:
            return outcome
        number = new_chapter.chapter_number
        if (
            previous.protagonist
            and new_chapter.protagonist
            and previous.protagonist != new_chapter.protagonist
        ):
            outcome.errors.append(
                ContinuityViolation(
                    type="CHARACTER_NAME_CHANGED",
                    severity="critical",
                    description=(
                        f"Protagonist changed from {previous.protagonist} "
                        f"to {new_chapter.protagonist}."
                    ),
                    chapter_number=number,
                    suggested_fix=(
                        f'Replace every "{new_chapter.protagonist}" with '
                        f'"{previous.protagonist}".'
                    ),
                    context={
                        "previous_name": previous.protagonist,
                        "new_name": new_chapter.protagonist,
                    },
                )
            )

        words = set(_WORD_TOKEN.findall(new_chapter.validation_text().lower()))
        for entry in sorted(new_chapter.character_states, key=lambda item: item.key):
            name, snapshot = entry.key, entry.value
            prior_snapshot = previous.snapshot(name)
            profile = story.characters.find(name)
            if prior_snapshot is None and profile is None:
                continue
            known: set[str] = set(profile.abilities) if profile else set()
            if prior_snapshot is not None:
                known.update(prior_snapshot.abilities)
            lost = sorted(known & set(snapshot.revoked_abilities))
            if lost:
                current = sorted((known - set(lost)) | set(snapshot.abilities))
                outcome.errors.append(
                    ContinuityViolation(
                        type="ABILITY_INCONSISTENCY",
                        severity="high",
                        description=f"{name} lost established abilities: {', '.join(lost)}.",
                        chapter_number=number,
                        suggested_fix=f"Keep {name}'s abilities ({', '.join(sorted(known))}).",
                        context={
                            "character": name,
                            "previous_abilities": sorted(known),
                            "new_abilities": current,
                            "lost_abilities": lost,
                        },
                    )
                )
            if prior_snapshot is None:
                continue
            jump = abs(
                tone_score(prior_snapshot.emotional_state) - tone_score(snapshot.emotional_state)
            )
            prior_keywords = self._analyzer.tone_keywords(prior_snapshot.emotional_state)
            if jump > self._thresholds.character_tone_jump and not (words & prior_keywords):
                outcome.warnings.append(
                    ContinuityWarning(
                        type="CHARACTER_OOC",
                        description=(
                            f"{name} shifts abruptly from {prior_snapshot.emotional_state} "
                            f"to {snapshot.emotional_state}."
                        ),
                        chapter_number=number,
                        recommendation="Show a gradual change or a clear triggering event.",
                        context={
                            "character": name,
                            "previous_state": prior_snapshot.emotional_state,
                            "new_state": snapshot.emotional_state,
                            "distance": round(jump, 3),
                        },
                    )
                )
        outcome.confidence = _confidence(outcome, with_errors=0.3, with_warnings=0.8)
        return outcome

    def validate_world_continuity(self, story: Story, new_chapter: ChapterState) -> AspectOutcome:
        outcome = AspectOutcome()
        number = new_chapter.chapter_number
        text = new_chapter.validation_text()
        lowered = text.lower()
        words = set(_WORD_TOKEN.findall(lowered))
        sentences = split_sentences(text)

        for rule in story.worldbuilding.rules:
            for cue in violation_cues_for(rule):
                if not all(_has_term(term, lowered=lowered, words=words) for term in cue):
                    continue
                outcome.errors.append(
                    ContinuityViolation(
                        type="WORLD_RULE_VIOLATION",
                        severity=rule.importance,
                        description=f"World rule violated: {rule.description}",
                        chapter_number=number,
                        suggested_fix=(
                            rule.expected_value or f"Rewrite to respect: {rule.description}"
                        ),
                        context={
                            "rule_id": rule.rule_id,
                            "rule": rule.description,
                            "terms": list(cue),
                            "violating_content": _evidence_sentence(sentences, cue),
                        },
                    )
                )
                break

        for location in self._analyzer.extract_locations(text):
            if story.worldbuilding.geography.knows(location):
                continue
            outcome.warnings.append(
                ContinuityWarning(
                    type="MINOR_INCONSISTENCY",
                    description=f"New location appears: {location}.",
                    chapter_number=number,
                    recommendation="Register the location in the world geography.",
                    context={"location": location},
                )
            )

        if all(cue in words for cue in _HIERARCHY_CUES):
            outcome.warnings.append(
                ContinuityWarning(
                    type="MINOR_INCONSISTENCY",
                    description=(
                        "Social hierarchy blurred: a commoner and the emperor act as equals."
                    ),
                    chapter_number=number,
                    recommendation="Reflect class differences in how they interact.",
                    context={"terms": list(_HIERARCHY_CUES)},
                )
            )
        outcome.confidence = _confidence(outcome, with_errors=0.4, with_warnings=0.8)
        return outcome

    def validate_plot_continuity(self, story: Story, new_chapter: ChapterState) -> AspectOutcome:
        outcome = AspectOutcome()
        number = new_chapter.chapter_number
        plot = story.plot_progress
        unresolved = plot.unresolved_foreshadowing()
        if len(unresolved) > self._thresholds.foreshadowing_limit:
            outcome.warnings.append(
                ContinuityWarning(
                    type="FORESHADOWING_DELAY",
                    description=f"Too many unresolved foreshadowing threads ({len(unresolved)}).",
                    chapter_number=number,
                    recommendation="Resolve some threads or commit to a resolution plan.",
                    context={"unresolved_count": len(unresolved)},
                )
            )

        stale = sorted(
            (
                entry
                for entry in [*unresolved, *plot.unfired_guns()]
                if number - entry.planted_chapter > self._thresholds.foreshadowing_stale_span
            ),
            key=lambda entry: (entry.planted_chapter, entry.entry_id),
        )
        if stale:
            outcome.warnings.append(
                ContinuityWarning(
                    type="FORESHADOWING_DELAY",
                    description="Long-unresolved threads: "
                    + ", ".join(entry.content for entry in stale),
                    chapter_number=number,
                    recommendation="Pay these threads off or retire them naturally.",
                    context={"stale_ids": [entry.entry_id for entry in stale]},
                )
            )

        for reference in new_chapter.plot_progression.foreshadowing_resolved:
            if find_open_thread(plot.foreshadowing, reference, number) is None:
                outcome.warnings.append(
                    ContinuityWarning(
                        type="MINOR_INCONSISTENCY",
                        description=f"Chapter resolves an unknown thread: {reference}.",
                        chapter_number=number,
                        recommendation="Plant the thread earlier or drop the resolution.",
                        context={"reference": reference},
                    )
                )

        sudden = next(
            (
                sentence
                for sentence in split_sentences(new_chapter.validation_text())
                if _SUDDEN_CUE in (tokens := set(_WORD_TOKEN.findall(sentence.lower())))
                and tokens & _RESOLUTION_CUES
            ),
            None,
        )
        if sudden is not None:
            rushed = sorted(
                entry.entry_id
                for reference in new_chapter.plot_progression.foreshadowing_resolved
                if (entry := find_open_thread(plot.foreshadowing, reference, number)) is not None
                and number - entry.planted_chapter < self._thresholds.rushed_resolution_span
            )
            outcome.errors.append(
                ContinuityViolation(
                    type="PLOT_HOLE",
                    severity="high" if rushed else "medium",
                    description="Conflict resolved suddenly without setup.",
                    chapter_number=number,
                    suggested_fix="Add the steps that lead to the resolution.",
                    context={"sentence": sudden, "rushed_threads": rushed},
                )
            )
        outcome.confidence = _confidence(
            outcome, with_errors=0.3, with_warnings=0.7, warning_allowance=1
        )
        return outcome

    def validate_emotional_flow(
        self, new_chapter: ChapterState, previous: ChapterState | None
    ) -> AspectOutcome:
        outcome = AspectOutcome()
        if previous is None:
            return outcome
        number = new_chapter.chapter_number
        distance = round(
            abs(tone_score(previous.ending_tone) - tone_score(new_chapter.emotional_tone)), 3
        )
        context: dict[str, ContextValue] = {
            "previous": previous.ending_tone,
            "current": new_chapter.emotional_tone,
            "distance": distance,
        }
        if distance > self._thresholds.discontinuity_distance:
            severe = distance >= self._thresholds.severe_discontinuity_distance
            outcome.errors.append(
                ContinuityViolation(
                    type="EMOTIONAL_DISCONTINUITY",
                    severity="high" if severe else "medium",
                    description=(
                        f"Emotional whiplash: {previous.ending_tone} "
                        f"to {new_chapter.emotional_tone}."
                    ),
                    chapter_number=number,
                    suggested_fix="Bridge the mood change with a transition or a clear trigger.",
                    context=context,
                )
            )
        elif distance > self._thresholds.pacing_distance:
            outcome.warnings.append(
                ContinuityWarning(
                    type="PACING_ISSUE",
                    description="The emotional shift from the previous chapter is abrupt.",
                    chapter_number=number,
                    recommendation="Consider a transition scene.",
                    context=context,
                )
            )
        outcome.confidence = _confidence(outcome, with_errors=0.5, with_warnings=0.8)
        return outcome

    def validate_timeline_continuity(
        self, story: Story, new_chapter: ChapterState, previous: ChapterState | None
    ) -> AspectOutcome:
        outcome = AspectOutcome()
        number = new_chapter.chapter_number
        if previous is not None and new_chapter.published_date < previous.published_date:
            outcome.errors.append(
                ContinuityViolation(
                    type="TIMELINE_CONTRADICTION",
                    severity="high",
                    description="Chapter is dated before the previous chapter.",
                    chapter_number=number,
                    suggested_fix="Correct the published date.",
                    context={
                        "previous": previous.published_date.isoformat(),
                        "current": new_chapter.published_date.isoformat(),
                    },
                )
            )
        last_event = story.continuity.last_event()
        if last_event is not None and number < last_event.chapter_number:
            outcome.errors.append(
                ContinuityViolation(
                    type="TIMELINE_CONTRADICTION",
                    severity="high",
                    description="Chapter precedes events already recorded on the timeline.",
                    chapter_number=number,
                    suggested_fix="Reorder the chapter after the recorded events.",
                    context={
                        "last_event_chapter": last_event.chapter_number,
                        "current_chapter": number,
                    },
                )
            )
        outcome.confidence = _confidence(outcome, with_errors=0.3, with_warnings=1.0)
        return outcome


def _evidence_sentence(sentences: list[str], terms: tuple[str, ...]) -> str:
    lowered = [sentence.lower() for sentence in sentences]
    for sentence, low in zip(sentences, lowered, strict=True):
        if all(term in low for term in terms):
            return sentence
    for sentence, low in zip(sentences, lowered, strict=True):
        if any(term in low for term in terms):
            return sentence
    return ""


_DEFAULT_VALIDATOR = ContinuityValidator()


def validate_all_aspects(story: Story, new_chapter: ChapterState) -> ValidationResult:
    """Validate with the default heuristic analyzer and thresholds."""
    return _DEFAULT_VALIDATOR.validate_all_aspects(story, new_chapter)
