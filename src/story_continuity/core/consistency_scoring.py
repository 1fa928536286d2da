"""Weighted overall consistency score on top of per-aspect confidences."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final, Literal

from story_continuity.core.continuity_validation import ValidationResult
from story_continuity.domain.errors import ConfigurationError

Grade = Literal["A", "B", "C", "D", "F"]

_GRADE_FLOORS: Final[tuple[tuple[float, Grade], ...]] = (
    (0.9, "A"),
    (0.8, "B"),
    (0.7, "C"),
    (0.6, "D"),
)


@dataclass(frozen=True)
class AspectWeights:
    """Relative weight per aspect; equal by default."""

    character: float = 1.0
    world: float = 1.0
    plot: float = 1.0
    emotional: float = 1.0
    timeline: float = 1.0

    def normalized(self) -> dict[str, float]:
        raw = {
            "character": self.character,
            "world": self.world,
            "plot": self.plot,
            "emotional": self.emotional,
            "timeline": self.timeline,
        }
        if any(value < 0 for value in raw.values()):
            raise ConfigurationError("Aspect weights must be non-negative.")
        total = sum(raw.values())
        if total <= 0:
            raise ConfigurationError("At least one aspect weight must be positive.")
        return {aspect: value / total for aspect, value in raw.items()}


@dataclass(frozen=True)
class ConsistencyScore:
    """Overall score, letter grade, and gate decision for one validation."""

    overall: float
    grade: Grade
    passed: bool
    weighted: tuple[tuple[str, float], ...]


def grade_for(score: float) -> Grade:
    for floor, grade in _GRADE_FLOORS:
        if score >= floor:
            return grade
    return "F"


class ConsistencyScorer:
    """Combines aspect confidences with a configurable weighting policy."""

    def __init__(
        self, *, weights: AspectWeights | None = None, pass_threshold: float = 0.7
    ) -> None:
        if not 0.0 <= pass_threshold <= 1.0:
            raise ConfigurationError("pass_threshold must be within [0, 1].")
        self._weights = (weights or AspectWeights()).normalized()
        self._pass_threshold = pass_threshold

    def score(self, result: ValidationResult) -> ConsistencyScore:
        weighted = tuple(
            (aspect, round(confidence * self._weights[aspect], 4))
            for aspect, confidence in result.aspect_scores.as_pairs()
        )
        overall = round(min(1.0, max(0.0, sum(value for _, value in weighted))), 3)
        return ConsistencyScore(
            overall=overall,
            grade=grade_for(overall),
            passed=result.valid and overall >= self._pass_threshold,
            weighted=weighted,
        )
