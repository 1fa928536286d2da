"""Chapter gate: extract, validate against stored state, then accept or explain."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Literal

from story_continuity.adapters.story_state_store_factory import create_story_persistence
from story_continuity.application.story_state_store import StoryStateStore
from story_continuity.core.consistency_scoring import ConsistencyScore, ConsistencyScorer
from story_continuity.core.continuity_report import (
    ContinuityReport,
    build_continuity_report,
    render_validation_feedback,
)
from story_continuity.core.continuity_validation import (
    ContinuityValidator,
    ValidationResult,
    ValidationThresholds,
)
from story_continuity.core.fix_suggestions import FixSuggestion, FixSuggestionEngine
from story_continuity.core.state_extraction import HeuristicTextAnalyzer, build_chapter_state
from story_continuity.core.story_schema import ChapterState, PlotProgression, Story
from story_continuity.domain.errors import PersistenceError, StoryNotFoundError
from story_continuity.domain.models import ChapterDraft
from story_continuity.domain.ports import ContentSource, TextAnalyzer
from story_continuity.settings import Settings

logger = logging.getLogger(__name__)

ChapterStatus = Literal["accepted", "rejected", "persistence_failed"]


@dataclass(frozen=True)
class ChapterOutcome:
    """What happened to one submitted chapter."""

    story_id: str
    chapter_number: int
    status: ChapterStatus
    result: ValidationResult | None = None
    score: ConsistencyScore | None = None
    suggestions: tuple[FixSuggestion, ...] = ()
    feedback: str = ""
    error: str = ""

    @property
    def accepted(self) -> bool:
        return self.status == "accepted"


def _plot_progression(draft: ChapterDraft) -> PlotProgression:
    return PlotProgression(
        main_arc_progress=draft.main_arc_progress,
        subplot_changes=list(draft.subplot_changes),
        foreshadowing_planted=list(draft.foreshadowing_planted),
        foreshadowing_resolved=list(draft.foreshadowing_resolved),
        checkov_guns_introduced=list(draft.checkov_guns_introduced),
        checkov_guns_fired=list(draft.checkov_guns_fired),
    )


class ContinuityPipeline:
    """Gates new chapters on continuity before they join a story's canon."""

    def __init__(
        self,
        store: StoryStateStore,
        content_source: ContentSource,
        *,
        analyzer: TextAnalyzer | None = None,
        validator: ContinuityValidator | None = None,
        fix_engine: FixSuggestionEngine | None = None,
        scorer: ConsistencyScorer | None = None,
    ) -> None:
        self._store = store
        self._content_source = content_source
        self._analyzer = analyzer or HeuristicTextAnalyzer()
        self._validator = validator or ContinuityValidator(analyzer=self._analyzer)
        self._fix_engine = fix_engine or FixSuggestionEngine()
        self._scorer = scorer or ConsistencyScorer()

    @classmethod
    def from_settings(
        cls, content_source: ContentSource, settings: Settings | None = None
    ) -> ContinuityPipeline:
        """Wire the configured backend, analyzer, and thresholds together."""
        settings = settings or Settings.from_env()
        persistence = create_story_persistence(
            data_path=settings.data_path, backend=settings.state_backend
        )
        store = StoryStateStore(
            persistence,
            metadata_source=content_source,
            io_timeout_seconds=settings.io_timeout_seconds,
        )
        analyzer = HeuristicTextAnalyzer(name_min_mentions=settings.name_min_mentions)
        return cls(
            store,
            content_source,
            analyzer=analyzer,
            validator=ContinuityValidator(
                analyzer=analyzer, thresholds=ValidationThresholds.from_settings(settings)
            ),
            scorer=ConsistencyScorer(pass_threshold=settings.pass_threshold),
        )

    @property
    def store(self) -> StoryStateStore:
        return self._store

    def _extract(self, story: Story, draft: ChapterDraft) -> ChapterState:
        return build_chapter_state(
            chapter_number=draft.chapter_number,
            text=draft.text,
            published_date=draft.published_date,
            title=draft.title,
            plot_progression=_plot_progression(draft),
            known_characters=story.characters.names(),
            analyzer=self._analyzer,
        )

    async def submit_chapter(self, story_id: str, draft: ChapterDraft) -> ChapterOutcome:
        """Validate a produced chapter and append it when no blocking error is found."""
        try:
            async with self._store.transaction(story_id) as transaction:
                chapter = self._extract(transaction.story, draft)
                result = self._validator.validate_all_aspects(transaction.story, chapter)
                score = self._scorer.score(result)
                if result.valid:
                    await transaction.append_chapter(chapter)
                    outcome = ChapterOutcome(
                        story_id=transaction.story.story_id,
                        chapter_number=draft.chapter_number,
                        status="accepted",
                        result=result,
                        score=score,
                    )
                else:
                    suggestions = tuple(self._fix_engine.suggest_fixes(result.errors))
                    outcome = ChapterOutcome(
                        story_id=transaction.story.story_id,
                        chapter_number=draft.chapter_number,
                        status="rejected",
                        result=result,
                        score=score,
                        suggestions=suggestions,
                        feedback=render_validation_feedback(result, suggestions),
                    )
        except PersistenceError as exc:
            logger.error(
                "pipeline.persistence_failed story_id=%s chapter=%s operation=%s",
                story_id,
                draft.chapter_number,
                exc.operation,
            )
            return ChapterOutcome(
                story_id=story_id,
                chapter_number=draft.chapter_number,
                status="persistence_failed",
                error=str(exc),
            )
        logger.info(
            "pipeline.chapter_processed story_id=%s chapter=%s status=%s grade=%s",
            outcome.story_id,
            outcome.chapter_number,
            outcome.status,
            score.grade,
        )
        return outcome

    async def process_chapter(self, story_id: str, chapter_number: int) -> ChapterOutcome:
        """Fetch a published chapter from the content source and submit it."""
        source = await asyncio.to_thread(
            self._content_source.get_chapter_text, story_id, chapter_number
        )
        draft = ChapterDraft(
            chapter_number=chapter_number,
            text=source.text,
            published_date=source.published_date,
            title=source.title,
        )
        return await self.submit_chapter(story_id, draft)

    async def rebuild_story(self, story_id: str, chapter_count: int) -> Story:
        """Reset a story and replay its published chapters without gating them."""
        metadata = await asyncio.to_thread(self._content_source.get_novel_metadata, story_id)
        if metadata is None:
            raise StoryNotFoundError(story_id)
        await self._store.delete(story_id)
        story = await self._store.initialize(story_id, metadata)
        for chapter_number in range(1, chapter_count + 1):
            source = await asyncio.to_thread(
                self._content_source.get_chapter_text, story_id, chapter_number
            )
            chapter = build_chapter_state(
                chapter_number=chapter_number,
                text=source.text,
                published_date=source.published_date,
                title=source.title,
                known_characters=story.characters.names(),
                analyzer=self._analyzer,
            )
            story = await self._store.append_chapter(story_id, chapter)
        logger.info("pipeline.story_rebuilt story_id=%s chapters=%s", story_id, chapter_count)
        return story

    async def continuity_report(self, story_id: str) -> ContinuityReport:
        story = await self._store.get(story_id)
        return build_continuity_report(
            story,
            validator=self._validator,
            scorer=self._scorer,
            fix_engine=self._fix_engine,
        )
