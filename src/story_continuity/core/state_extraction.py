"""Heuristic chapter-state extraction from raw chapter text.

Every function here is pure and deterministic. None of them raise on empty
or unusable text: they degrade to empty collections or neutral defaults, and
downstream validation treats those as "no signal".
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Iterable
from datetime import datetime
from typing import Final

from story_continuity.core.story_schema import (
    MAX_KEY_EVENTS,
    ChapterState,
    CharacterSnapshot,
    LocationEntry,
    LocationState,
    PlotProgression,
    SnapshotEntry,
)
from story_continuity.domain.models import EmotionalTone
from story_continuity.domain.ports import TextAnalyzer

_NAME_TOKEN = re.compile(r"\b[A-Z][a-z]{2,}\b")
_WORD_TOKEN = re.compile(r"[A-Za-z']+")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?…])\s+|(?<=[.!?…][\"'”])\s+")
_LOCATION_PATTERN = re.compile(
    r"\b((?:[A-Z][a-z]+ ){1,3}"
    r"(?:Castle|Palace|Keep|Tower|Village|City|Forest|Kingdom|Duchy|Empire|Harbor|"
    r"Academy|Temple|Valley|Mountains|Mountain|River|Manor|Citadel))\b"
)
_NAME_STOPWORDS: Final[frozenset[str]] = frozenset(
    {
        "After", "All", "Although", "And", "Are", "Because", "Before", "Behind", "Beyond",
        "But", "Chapter", "Count", "Countess", "Dear", "Duchess", "Duke", "Each", "Emperor",
        "Empress", "Even", "Every", "Everything", "Finally", "For", "From", "Had", "Has",
        "Her", "Here", "His", "How", "However", "Inside", "Into", "Its", "Just", "King",
        "Lady", "Later", "Lord", "Maybe", "Meanwhile", "Near", "Nothing", "Now", "Once",
        "Only", "Our", "Outside", "Perhaps", "Prince", "Princess", "Queen", "She", "Sir",
        "Some", "Someone", "Something", "Still", "Suddenly", "That", "The", "Their", "Then",
        "There", "These", "They", "This", "Those", "Through", "Toward", "Towards", "Until",
        "Was", "Were", "What", "When", "Where", "While", "Who", "Why", "With", "Within",
        "Without", "Yes", "You", "Your",
    }
)
_ABILITY_KEYWORDS: Final[tuple[str, ...]] = (
    "magic",
    "sword",
    "strength",
    "power",
    "talent",
    "skill",
    "healing",
)
_NEGATION_CUES: Final[frozenset[str]] = frozenset(
    {
        "no",
        "not",
        "never",
        "without",
        "lost",
        "lose",
        "loses",
        "cannot",
        "can't",
        "longer",
        "powerless",
        "stripped",
    }
)
_ABILITY_WINDOW_CHARS: Final[int] = 50
_NEGATION_LOOKBACK_WORDS: Final[int] = 3
_TONE_KEYWORDS: Final[dict[str, frozenset[str]]] = {
    "positive": frozenset(
        {
            "delight", "glad", "happiness", "happy", "hope", "joy", "joyful", "laughed",
            "laughter", "love", "loved", "smile", "smiled", "warm", "warmth",
        }
    ),
    "negative": frozenset(
        {
            "afraid", "anger", "angry", "cold", "cried", "despair", "fear", "grief", "pain",
            "sad", "sadness", "sorrow", "tears", "wept",
        }
    ),
    "tense": frozenset(
        {
            "attack", "battle", "clash", "conflict", "crisis", "danger", "dangerous", "duel",
            "fight", "tension", "tense", "threat",
        }
    ),
}
_ENDING_KEYWORDS: Final[dict[str, frozenset[str]]] = {
    "hopeful": frozenset({"dawn", "happy", "hope", "hopeful", "promise", "smile", "smiled"}),
    "sad": frozenset({"grief", "mourned", "sad", "sorrow", "tears", "wept"}),
}
# Ties between categories resolve to the earliest label in each tuple.
_TONE_PRIORITY: Final[tuple[str, ...]] = ("tense", "negative", "positive")
_ENDING_PRIORITY: Final[tuple[str, ...]] = ("hopeful", "sad", "uncertain")
_ENDING_PARAGRAPHS: Final[int] = 3
_CLIFFHANGER_MARKERS: Final[frozenset[str]] = frozenset({"suddenly", "but", "then", "however"})
_CLIFFHANGER_SENTENCES: Final[int] = 3
_DIALOGUE_MARKERS: Final[frozenset[str]] = frozenset(
    {"answered", "asked", "cried", "replied", "said", "shouted", "whispered"}
)
_ACTION_MARKERS: Final[frozenset[str]] = frozenset(
    {
        "attacked", "cast", "discovered", "drew", "escaped", "fled", "fought", "kissed",
        "killed", "rescued", "revealed", "saved", "struck",
    }
)
_EVENT_MAX_CHARS: Final[int] = 120
_SUMMARY_SENTENCE_CHARS: Final[int] = 80


def split_sentences(text: str) -> list[str]:
    """Split text into stripped sentences, keeping terminal punctuation."""
    return [chunk.strip() for chunk in _SENTENCE_SPLIT.split(text) if chunk.strip()]


def _words(text: str) -> list[str]:
    return [token.lower() for token in _WORD_TOKEN.findall(text)]


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3].rstrip() + "..."


def _ending_text(text: str) -> str:
    paragraphs = [line.strip() for line in text.splitlines() if line.strip()]
    return " ".join(paragraphs[-_ENDING_PARAGRAPHS:])


def _pick(tallies: dict[str, int], priority: Iterable[str]) -> str | None:
    best: str | None = None
    best_count = 0
    for label in priority:
        count = tallies.get(label, 0)
        if count > best_count:
            best, best_count = label, count
    return best


class HeuristicTextAnalyzer:
    """Keyword and pattern heuristics standing in for an NLP model."""

    def __init__(self, *, name_min_mentions: int = 3) -> None:
        self._name_min_mentions = max(1, name_min_mentions)

    @property
    def name_min_mentions(self) -> int:
        return self._name_min_mentions

    def extract_character_names(self, text: str) -> set[str]:
        if not text:
            return set()
        location_words = {
            word for location in self.extract_locations(text) for word in location.split()
        }
        counts = Counter(
            token
            for token in _NAME_TOKEN.findall(text)
            if token not in _NAME_STOPWORDS and token not in location_words
        )
        return {name for name, count in counts.items() if count >= self._name_min_mentions}

    def count_mentions(self, name: str, text: str) -> int:
        if not name or not text:
            return 0
        return len(re.findall(rf"\b{re.escape(name)}\b", text))

    def identify_protagonist(self, names: set[str], text: str) -> str | None:
        ranked = sorted(
            ((self.count_mentions(name, text), name) for name in names),
            key=lambda pair: (-pair[0], pair[1]),
        )
        if not ranked or ranked[0][0] == 0:
            return None
        return ranked[0][1]

    def _ability_states(self, text: str, names: set[str]) -> dict[str, dict[str, bool]]:
        # Later statements about the same ability override earlier ones.
        states: dict[str, dict[str, bool]] = {}
        if not text:
            return states
        for name in sorted(names):
            hits: list[tuple[int, str, bool]] = []
            for keyword in _ABILITY_KEYWORDS:
                pattern = re.compile(
                    rf"\b{re.escape(name)}\b(?P<gap>[^.!?]{{0,{_ABILITY_WINDOW_CHARS}}}?)"
                    rf"\b{keyword}s?\b",
                    re.IGNORECASE,
                )
                for match in pattern.finditer(text):
                    lookback = _words(match.group("gap"))[-_NEGATION_LOOKBACK_WORDS:]
                    revoked = any(word in _NEGATION_CUES for word in lookback)
                    hits.append((match.end(), keyword, not revoked))
            if hits:
                states[name] = {keyword: granted for _, keyword, granted in sorted(hits)}
        return states

    def extract_character_abilities(self, text: str, names: set[str]) -> dict[str, set[str]]:
        abilities: dict[str, set[str]] = {}
        for name, states in self._ability_states(text, names).items():
            granted = {keyword for keyword, is_granted in states.items() if is_granted}
            if granted:
                abilities[name] = granted
        return abilities

    def extract_revoked_abilities(self, text: str, names: set[str]) -> dict[str, set[str]]:
        revoked: dict[str, set[str]] = {}
        for name, states in self._ability_states(text, names).items():
            lost = {keyword for keyword, is_granted in states.items() if not is_granted}
            if lost:
                revoked[name] = lost
        return revoked

    def classify_emotional_tone(self, text: str) -> EmotionalTone:
        if not text.strip():
            return EmotionalTone()
        tone = self._classify(text)
        ending_text = _ending_text(text)
        ending_words = _words(ending_text)
        ending_tallies = {
            label: sum(1 for word in ending_words if word in keywords)
            for label, keywords in _ENDING_KEYWORDS.items()
        }
        ending_tallies["uncertain"] = (
            ending_text.count("...") + ending_text.count("…") + ending_text.count("?")
        )
        ending = _pick(ending_tallies, _ENDING_PRIORITY) or tone
        return EmotionalTone(tone=tone, ending_tone=ending)

    def _classify(self, text: str) -> str:
        words = _words(text)
        tallies = {
            label: sum(1 for word in words if word in keywords)
            for label, keywords in _TONE_KEYWORDS.items()
        }
        return _pick(tallies, _TONE_PRIORITY) or "neutral"

    def detect_cliffhanger(self, text: str) -> str | None:
        for sentence in split_sentences(text)[-_CLIFFHANGER_SENTENCES:]:
            if "..." in sentence or "…" in sentence:
                return sentence
            if any(word in _CLIFFHANGER_MARKERS for word in _words(sentence)):
                return sentence
        return None

    def extract_key_events(self, text: str) -> list[str]:
        events: list[str] = []
        for sentence in split_sentences(text):
            if len(sentence) <= 10:
                continue
            words = set(_words(sentence))
            has_dialogue = '"' in sentence or "“" in sentence or bool(
                words & _DIALOGUE_MARKERS
            )
            if has_dialogue or words & _ACTION_MARKERS:
                events.append(_truncate(sentence, _EVENT_MAX_CHARS))
            if len(events) >= MAX_KEY_EVENTS:
                break
        return events

    def extract_locations(self, text: str) -> list[str]:
        locations: list[str] = []
        for match in _LOCATION_PATTERN.finditer(text):
            words = match.group(1).split()
            while len(words) > 1 and words[0] in _NAME_STOPWORDS:
                words = words[1:]
            if len(words) < 2:
                continue
            location = " ".join(words)
            if location not in locations:
                locations.append(location)
        return locations

    def summarize(self, text: str) -> str:
        sentences = [sentence for sentence in split_sentences(text) if len(sentence) > 20]
        if not sentences:
            return ""
        first = _truncate(sentences[0], _SUMMARY_SENTENCE_CHARS)
        if len(sentences) == 1:
            return first
        return f"{first} {_truncate(sentences[-1], _SUMMARY_SENTENCE_CHARS)}"

    def tone_keywords(self, tone: str) -> frozenset[str]:
        keywords = set(_TONE_KEYWORDS.get(tone, frozenset()))
        keywords.update(_ENDING_KEYWORDS.get(tone, frozenset()))
        keywords.add(tone)
        return frozenset(keywords)


_DEFAULT_ANALYZER = HeuristicTextAnalyzer()


def extract_character_names(text: str) -> set[str]:
    """Candidate character names that appear at least three times."""
    return _DEFAULT_ANALYZER.extract_character_names(text)


def identify_protagonist(names: set[str], text: str) -> str | None:
    """Most-mentioned candidate, ties broken alphabetically."""
    return _DEFAULT_ANALYZER.identify_protagonist(names, text)


def extract_character_abilities(text: str, names: set[str]) -> dict[str, set[str]]:
    """Abilities each character is shown with inside the proximity window."""
    return _DEFAULT_ANALYZER.extract_character_abilities(text, names)


def extract_revoked_abilities(text: str, names: set[str]) -> dict[str, set[str]]:
    """Abilities explicitly negated for a character ("has no magic")."""
    return _DEFAULT_ANALYZER.extract_revoked_abilities(text, names)


def classify_emotional_tone(text: str) -> EmotionalTone:
    """Overall tone plus the tone of the final paragraphs."""
    return _DEFAULT_ANALYZER.classify_emotional_tone(text)


def detect_cliffhanger(text: str) -> str | None:
    """Return the closing sentence that reads as a cliffhanger, if any."""
    return _DEFAULT_ANALYZER.detect_cliffhanger(text)


def extract_key_events(text: str) -> list[str]:
    """Dialogue and action sentences, capped at five."""
    return _DEFAULT_ANALYZER.extract_key_events(text)


def build_chapter_state(
    *,
    chapter_number: int,
    text: str,
    published_date: datetime,
    title: str = "",
    plot_progression: PlotProgression | None = None,
    known_characters: Iterable[str] = (),
    analyzer: TextAnalyzer | None = None,
) -> ChapterState:
    """Assemble a ``ChapterState`` from raw chapter text."""
    active = analyzer or _DEFAULT_ANALYZER
    names = active.extract_character_names(text)
    known = set(known_characters)
    # Established characters are tracked on any mention, below the discovery threshold.
    tracked = names | {name for name in known if active.count_mentions(name, text) > 0}
    abilities = active.extract_character_abilities(text, tracked)
    revoked = active.extract_revoked_abilities(text, tracked)
    locations = active.extract_locations(text)
    sentences = split_sentences(text)

    snapshots: list[SnapshotEntry] = []
    for name in sorted(tracked):
        pattern = re.compile(rf"\b{re.escape(name)}\b")
        mentioning = [sentence for sentence in sentences if pattern.search(sentence)]
        location = None
        for sentence in mentioning:
            for candidate in locations:
                if candidate in sentence:
                    location = candidate
        snapshots.append(
            SnapshotEntry(
                key=name,
                value=CharacterSnapshot(
                    mention_count=active.count_mentions(name, text),
                    abilities=sorted(abilities.get(name, set())),
                    revoked_abilities=sorted(revoked.get(name, set())),
                    emotional_state=active.classify_emotional_tone(" ".join(mentioning)).tone,
                    location=location,
                ),
            )
        )

    location_changes: list[LocationEntry] = []
    for location in locations:
        description = next((sentence for sentence in sentences if location in sentence), "")
        location_changes.append(
            LocationEntry(
                key=location,
                value=LocationState(
                    name=location,
                    description=_truncate(description, _EVENT_MAX_CHARS),
                    first_seen_chapter=chapter_number,
                ),
            )
        )

    tone = active.classify_emotional_tone(text)
    return ChapterState(
        chapter_number=chapter_number,
        title=title,
        summary=active.summarize(text),
        key_events=active.extract_key_events(text),
        protagonist=active.identify_protagonist(names, text),
        character_states=snapshots,
        new_characters=sorted(name for name in names if name not in known),
        location_changes=location_changes,
        emotional_tone=tone.tone,
        ending_tone=tone.ending_tone,
        cliffhanger=active.detect_cliffhanger(text),
        plot_progression=plot_progression or PlotProgression(),
        published_date=published_date,
        word_count=len(_WORD_TOKEN.findall(text)),
        content=text,
    )
