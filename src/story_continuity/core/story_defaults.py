"""Default world settings and plot scaffolding for newly initialized stories."""

from __future__ import annotations

from story_continuity.core.story_schema import (
    Geography,
    MagicSystem,
    MainArc,
    PlotProgress,
    SocialHierarchy,
    Story,
    StoryMetadata,
    Worldbuilding,
    WorldRule,
)
from story_continuity.domain.models import NovelMetadata


def default_world_rules() -> list[WorldRule]:
    return [
        WorldRule(
            rule_id="magic-authenticity",
            description="Magic is rooted in genuine emotion.",
            aspect="emotion",
            expected_value="Spells draw on feelings the caster truly holds.",
            importance="medium",
        ),
        WorldRule(
            rule_id="magic-limits",
            description="Magic is limited; no one wields it without bound.",
            aspect="magic",
            expected_value="Show the daily limit or the strain of casting.",
            importance="high",
        ),
        WorldRule(
            rule_id="magic-cost",
            description="Stronger magic carries heavier costs.",
            aspect="magic_cost",
            expected_value="Make the caster pay for powerful spells.",
            importance="medium",
        ),
        WorldRule(
            rule_id="bloodline",
            description="Bloodline governs magical aptitude.",
            aspect="bloodline",
            importance="low",
        ),
        WorldRule(
            rule_id="prophecy",
            description="Prophecies are fate, though their reading can change.",
            aspect="prophecy",
            importance="low",
        ),
    ]


def default_worldbuilding() -> Worldbuilding:
    """Romance-fantasy baseline every new story starts from."""
    return Worldbuilding(
        magic_system=MagicSystem(
            name="Emotion magic",
            source="The emotional energy of the caster",
            limitations=[
                "Daily casting limit",
                "Requires sincere emotion",
                "Opposing emotions interfere",
            ],
        ),
        geography=Geography(
            regions=["Northern Duchy", "Central Empire", "Southern Trade Coast"],
        ),
        social_hierarchy=SocialHierarchy(
            classes=[
                "imperial family",
                "high nobility",
                "lesser nobility",
                "knights",
                "merchants",
                "farmers",
            ],
            cultural_rules=[
                "Nobles are expected to command magic",
                "Marriage is an instrument of political alliance",
                "Swordsmanship and magic are required education",
            ],
        ),
        rules=default_world_rules(),
    )


def default_plot_progress() -> PlotProgress:
    return PlotProgress(
        main_arc=MainArc(
            current="World and character introduction",
            upcoming=[
                "First meeting",
                "Conflict",
                "Deepening relationship",
                "Crisis",
                "Resolution",
                "Ending",
            ],
        )
    )


def new_story(story_id: str, metadata: NovelMetadata) -> Story:
    """Fresh story state with default world rules and empty registries."""
    return Story(
        metadata=StoryMetadata(
            story_id=story_id,
            title=metadata.title,
            author=metadata.author,
            genre=metadata.genre or "romance-fantasy",
            tropes=list(metadata.tropes),
        ),
        worldbuilding=default_worldbuilding(),
        plot_progress=default_plot_progress(),
    )
