"""Map continuity violations to structured remediation proposals."""

from __future__ import annotations

from collections.abc import Callable
from typing import Final, Literal

from pydantic import Field

from story_continuity.core.continuity_validation import ContinuityViolation
from story_continuity.core.story_schema import SchemaModel

SuggestionType = Literal[
    "character_merge",
    "ability_restoration",
    "rule_compliant_rewrite",
    "timeline_adjustment",
    "emotional_bridge",
    "plot_bridge",
]


class TextChange(SchemaModel):
    """Old/new text hint for one chapter."""

    target: str
    old_text: str
    new_text: str
    reason: str


class FixSuggestion(SchemaModel):
    """One proposed remediation for a blocking or notable violation."""

    type: SuggestionType
    error_type: str
    description: str
    target_chapters: list[int] = Field(min_length=1)
    changes: list[TextChange] = Field(default_factory=list)
    rationale: str
    confidence: float = Field(ge=0.0, le=1.0)


def _chapter_target(chapter_number: int) -> str:
    return f"chapter:{chapter_number}"


def _text(error: ContinuityViolation, key: str) -> str:
    value = error.context.get(key, "")
    if isinstance(value, list):
        return ", ".join(str(item) for item in value)
    return str(value)


def _character_merge(error: ContinuityViolation) -> FixSuggestion:
    previous_name = _text(error, "previous_name")
    new_name = _text(error, "new_name")
    return FixSuggestion(
        type="character_merge",
        error_type=error.type,
        description=f"Unify the protagonist name: {new_name} -> {previous_name}.",
        target_chapters=[error.chapter_number],
        changes=[
            TextChange(
                target=_chapter_target(error.chapter_number),
                old_text=new_name,
                new_text=previous_name,
                reason="Keep the protagonist's name consistent.",
            )
        ],
        rationale="Readers know the protagonist by the established name.",
        confidence=0.9,
    )


def _ability_restoration(error: ContinuityViolation) -> FixSuggestion:
    character = _text(error, "character")
    return FixSuggestion(
        type="ability_restoration",
        error_type=error.type,
        description=f"Restore {character}'s established abilities.",
        target_chapters=[error.chapter_number],
        changes=[
            TextChange(
                target=_chapter_target(error.chapter_number),
                old_text=f"abilities: {_text(error, 'new_abilities')}",
                new_text=f"abilities: {_text(error, 'previous_abilities')}",
                reason="Abilities only grow unless the story explains a loss.",
            )
        ],
        rationale="Removing an ability needs an on-page cause.",
        confidence=0.8,
    )


def _rule_compliant_rewrite(error: ContinuityViolation) -> FixSuggestion:
    return FixSuggestion(
        type="rule_compliant_rewrite",
        error_type=error.type,
        description=f"Rewrite to respect the world rule: {_text(error, 'rule')}",
        target_chapters=[error.chapter_number],
        changes=[
            TextChange(
                target=_chapter_target(error.chapter_number),
                old_text=_text(error, "violating_content"),
                new_text=error.suggested_fix or "Rewrite in line with the world rules.",
                reason="Keep the worldbuilding consistent.",
            )
        ],
        rationale="World rules are canon and may not be broken silently.",
        confidence=0.7,
    )


def _timeline_adjustment(error: ContinuityViolation) -> FixSuggestion:
    previous = _text(error, "previous") or _text(error, "last_event_chapter")
    current = _text(error, "current") or _text(error, "current_chapter")
    return FixSuggestion(
        type="timeline_adjustment",
        error_type=error.type,
        description="Move the chapter after the events it follows.",
        target_chapters=[error.chapter_number],
        changes=[
            TextChange(
                target=_chapter_target(error.chapter_number),
                old_text=current,
                new_text=previous,
                reason="Chapters must not precede what is already published.",
            )
        ],
        rationale="The published timeline only moves forward.",
        confidence=0.6,
    )


def _emotional_bridge(error: ContinuityViolation) -> FixSuggestion:
    return FixSuggestion(
        type="emotional_bridge",
        error_type=error.type,
        description="Open with a transition from the previous chapter's closing mood.",
        target_chapters=[error.chapter_number],
        changes=[
            TextChange(
                target=_chapter_target(error.chapter_number),
                old_text=_text(error, "current"),
                new_text=f"{_text(error, 'previous')} -> {_text(error, 'current')}",
                reason="Mood shifts need a visible cause.",
            )
        ],
        rationale="Abrupt emotional turns read as out of character.",
        confidence=0.5,
    )


def _plot_bridge(error: ContinuityViolation) -> FixSuggestion:
    return FixSuggestion(
        type="plot_bridge",
        error_type=error.type,
        description="Show the steps that lead to the resolution.",
        target_chapters=[error.chapter_number],
        changes=[
            TextChange(
                target=_chapter_target(error.chapter_number),
                old_text=_text(error, "sentence"),
                new_text=error.suggested_fix or "Resolve the conflict gradually.",
                reason="Sudden resolutions leave plot holes.",
            )
        ],
        rationale="Payoffs feel earned when their setup is on the page.",
        confidence=0.5,
    )


_SUGGESTION_TABLE: Final[dict[str, Callable[[ContinuityViolation], FixSuggestion]]] = {
    "CHARACTER_NAME_CHANGED": _character_merge,
    "ABILITY_INCONSISTENCY": _ability_restoration,
    "WORLD_RULE_VIOLATION": _rule_compliant_rewrite,
    "TIMELINE_CONTRADICTION": _timeline_adjustment,
    "EMOTIONAL_DISCONTINUITY": _emotional_bridge,
    "PLOT_HOLE": _plot_bridge,
}


class FixSuggestionEngine:
    """Deterministic lookup from violation type to suggestion builder."""

    def suggest_fixes(self, errors: list[ContinuityViolation]) -> list[FixSuggestion]:
        suggestions: list[FixSuggestion] = []
        for error in errors:
            builder = _SUGGESTION_TABLE.get(error.type)
            if builder is not None:
                suggestions.append(builder(error))
        return suggestions

    @staticmethod
    def supported_error_types() -> tuple[str, ...]:
        return tuple(_SUGGESTION_TABLE)


def suggest_fixes(errors: list[ContinuityViolation]) -> list[FixSuggestion]:
    """Suggestions for every violation type with a known remediation."""
    return FixSuggestionEngine().suggest_fixes(errors)
