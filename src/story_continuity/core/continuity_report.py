"""Whole-story continuity report and plain-text regeneration feedback."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from story_continuity.core.consistency_scoring import ConsistencyScore, ConsistencyScorer
from story_continuity.core.continuity_validation import ContinuityValidator, ValidationResult
from story_continuity.core.fix_suggestions import FixSuggestion, FixSuggestionEngine
from story_continuity.core.story_schema import Story
from story_continuity.core.story_state_updates import apply_chapter, story_baseline

logger = logging.getLogger(__name__)

CONTINUITY_FLOOR = 0.8
MIN_AVERAGE_WORDS = 2000
VALIDATION_SUCCESS_FLOOR = 0.9


@dataclass(frozen=True)
class ChapterReport:
    """Replayed validation of one stored chapter."""

    chapter_number: int
    result: ValidationResult
    score: ConsistencyScore
    suggestions: tuple[FixSuggestion, ...]


@dataclass(frozen=True)
class ContinuityReport:
    """Aggregate continuity health of a story."""

    story_id: str
    total_chapters: int
    chapters: tuple[ChapterReport, ...]
    total_issues: int
    fixable_issues: int
    average_confidence: float
    validation_success_rate: float
    average_word_count: float
    recommendations: tuple[str, ...]


def build_continuity_report(
    story: Story,
    *,
    validator: ContinuityValidator | None = None,
    scorer: ConsistencyScorer | None = None,
    fix_engine: FixSuggestionEngine | None = None,
) -> ContinuityReport:
    """Replay every chapter after the first against the state that preceded it."""
    validator = validator or ContinuityValidator()
    scorer = scorer or ConsistencyScorer()
    fix_engine = fix_engine or FixSuggestionEngine()

    ordered = story.ordered_chapters()
    state = story_baseline(story)
    reports: list[ChapterReport] = []
    for index, chapter in enumerate(ordered):
        if index > 0:
            result = validator.validate_all_aspects(state, chapter)
            reports.append(
                ChapterReport(
                    chapter_number=chapter.chapter_number,
                    result=result,
                    score=scorer.score(result),
                    suggestions=tuple(fix_engine.suggest_fixes(result.errors)),
                )
            )
        state = apply_chapter(state, chapter)

    total_issues = sum(len(item.result.errors) + len(item.result.warnings) for item in reports)
    fixable_issues = sum(len(item.suggestions) for item in reports)
    if reports:
        average_confidence = sum(item.result.confidence for item in reports) / len(reports)
        success_rate = sum(1 for item in reports if item.result.valid) / len(reports)
    else:
        average_confidence = 1.0
        success_rate = 1.0
    average_words = (
        sum(chapter.word_count for chapter in ordered) / len(ordered) if ordered else 0.0
    )

    recommendations: list[str] = []
    if average_confidence < CONTINUITY_FLOOR:
        recommendations.append(
            "Strengthen continuity: track character and world state more closely."
        )
    if ordered and average_words < MIN_AVERAGE_WORDS:
        recommendations.append("Increase chapter length for richer scenes.")
    if success_rate < VALIDATION_SUCCESS_FLOOR:
        recommendations.append("Tighten the validation process before publishing.")

    report = ContinuityReport(
        story_id=story.story_id,
        total_chapters=len(ordered),
        chapters=tuple(reports),
        total_issues=total_issues,
        fixable_issues=fixable_issues,
        average_confidence=round(average_confidence, 3),
        validation_success_rate=round(success_rate, 3),
        average_word_count=round(average_words, 1),
        recommendations=tuple(recommendations),
    )
    logger.info(
        "continuity_report.built story_id=%s chapters=%s issues=%s success_rate=%s",
        report.story_id,
        report.total_chapters,
        report.total_issues,
        report.validation_success_rate,
    )
    return report


def _percent(value: float) -> str:
    return f"{round(value * 100)}%"


def render_validation_feedback(
    result: ValidationResult, suggestions: list[FixSuggestion] | tuple[FixSuggestion, ...] = ()
) -> str:
    """Feedback text handed back to whatever regenerates a rejected chapter."""
    lines = ["Continuity validation feedback:"]
    if result.errors:
        lines.append("")
        lines.append("Errors to fix:")
        for number, error in enumerate(result.errors, start=1):
            lines.append(f"{number}. [{error.severity}] {error.description}")
            if error.suggested_fix:
                lines.append(f"   Fix: {error.suggested_fix}")
    if result.warnings:
        lines.append("")
        lines.append("Warnings:")
        for number, warning in enumerate(result.warnings, start=1):
            lines.append(f"{number}. {warning.description}")
            if warning.recommendation:
                lines.append(f"   Recommendation: {warning.recommendation}")
    if suggestions:
        lines.append("")
        lines.append("Suggested changes:")
        for suggestion in suggestions:
            lines.append(
                f"- {suggestion.type} ({_percent(suggestion.confidence)}): {suggestion.description}"
            )
    lines.append("")
    lines.append("Aspect scores:")
    for aspect, confidence in result.aspect_scores.as_pairs():
        lines.append(f"- {aspect}: {_percent(confidence)}")
    return "\n".join(lines)
