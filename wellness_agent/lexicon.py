from __future__ import annotations

"""Read-only health lexicon: canonical terms, their variants and category weights."""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple

from .utils import normalize_text

logger = logging.getLogger("wellness.lexicon")

PRIORITY_ORDER = {"high": 3, "medium": 2, "low": 1}
DEFAULT_CATEGORY = "general"


@dataclass(frozen=True)
class LexiconEntry:
    """Canonical health term with known spellings and a confidence weight."""
    term: str
    variations: FrozenSet[str]
    english_equivalents: Tuple[str, ...]
    category: str
    default_severity: str
    context_clues: Tuple[str, ...]
    base_confidence: float


@dataclass(frozen=True)
class ScoringWeights:
    symptom_match: float
    condition_match: float
    severity_multiplier: float
    duration_bonus: float
    contextual_relevance: float
    user_profile_alignment: float


@dataclass(frozen=True)
class FollowUpQuestion:
    id: str
    question: str
    category: str
    priority: str


@dataclass(frozen=True)
class HealthCategory:
    id: str
    name: str
    urgency_level: str
    scoring_weights: ScoringWeights
    follow_up_questions: Tuple[FollowUpQuestion, ...]


class HealthLexicon:
    """Immutable lookups built once from the lexicon file."""

    def __init__(
        self,
        entries: List[LexiconEntry],
        categories: Dict[str, HealthCategory],
        symptom_categories: FrozenSet[str],
        severity_markers: Dict[str, Tuple[str, ...]],
        urgent_markers: Tuple[str, ...],
        emergency_markers: Tuple[str, ...],
        temporal: Dict[str, Dict[str, Tuple[str, ...]]],
    ) -> None:
        """Purpose: Index lexicon entries by every normalized spelling.
        Inputs/Outputs: Inputs are parsed entries, categories and marker tables; no return.
        Side Effects / State: Builds read-only MappingProxyType views; nothing is mutable afterwards.
        Dependencies: normalize_text for key normalization.
        Failure Modes: Two entries claiming the same spelling keep the first one (logged).
        If Removed: Term extraction has nothing to match against.
        Testing Notes: Every variation of an entry resolves to that entry via lookup().
        """
        # Register the canonical term first, then each variation.
        index: Dict[str, LexiconEntry] = {}
        for entry in entries:
            for spelling in (entry.term, *sorted(entry.variations)):
                key = normalize_text(spelling)
                if not key:
                    continue
                existing = index.get(key)
                if existing and existing.term != entry.term:
                    logger.warning("lexicon key=%s claimed by %s and %s", key, existing.term, entry.term)
                    continue
                index[key] = entry
        self.entries: Tuple[LexiconEntry, ...] = tuple(entries)
        self.index: Mapping[str, LexiconEntry] = MappingProxyType(index)
        self.categories: Mapping[str, HealthCategory] = MappingProxyType(dict(categories))
        self.symptom_categories = symptom_categories
        self.severity_markers: Mapping[str, Tuple[str, ...]] = MappingProxyType(dict(severity_markers))
        self.urgent_markers = urgent_markers
        self.emergency_markers = emergency_markers
        self.temporal: Mapping[str, Mapping[str, Tuple[str, ...]]] = MappingProxyType(
            {family: MappingProxyType(dict(patterns)) for family, patterns in temporal.items()}
        )

    def lookup(self, text: str) -> Optional[LexiconEntry]:
        return self.index.get(normalize_text(text))

    def is_symptom_category(self, category: str) -> bool:
        return category in self.symptom_categories

    def category(self, category_id: Optional[str]) -> HealthCategory:
        """Return the category, falling back to the general weight set for unknown ids."""
        if category_id and category_id in self.categories:
            return self.categories[category_id]
        return self.categories[DEFAULT_CATEGORY]

    def weights_for(self, category_id: Optional[str]) -> ScoringWeights:
        return self.category(category_id).scoring_weights

    def follow_up_questions(self, category_ids: List[str], limit: int = 3) -> List[FollowUpQuestion]:
        """Purpose: Collect follow-up questions for the given categories.
        Inputs/Outputs: Inputs are category ids and a limit; output is questions sorted by priority.
        Side Effects / State: None.
        Dependencies: categories mapping; unknown ids are skipped.
        Failure Modes: None; returns [] when nothing matches.
        If Removed: The prompt cannot ask for missing details such as duration.
        Testing Notes: ["digestive"] returns the duration question first.
        """
        # Gather, de-duplicate by id, then order by priority (stable within a tier).
        questions: List[FollowUpQuestion] = []
        seen = set()
        for category_id in category_ids:
            category = self.categories.get(category_id)
            if not category:
                continue
            for question in category.follow_up_questions:
                if question.id in seen:
                    continue
                seen.add(question.id)
                questions.append(question)
        questions.sort(key=lambda q: PRIORITY_ORDER.get(q.priority, 0), reverse=True)
        return questions[:limit]


def load_lexicon(path: Path) -> HealthLexicon:
    """Purpose: Parse the lexicon JSON file into a HealthLexicon.
    Inputs/Outputs: Input is a Path; output is a HealthLexicon.
    Side Effects / State: Reads the file once; callers keep the returned instance.
    Dependencies: json, dataclasses above.
    Failure Modes: Missing file or malformed JSON raise to the caller (startup fails fast);
        a missing "general" category raises ValueError.
    If Removed: The extractor and scorer have no vocabulary or weights.
    Testing Notes: Load the bundled file and check entry and category counts.
    """
    # Decode and convert each section into frozen structures.
    data = json.loads(path.read_text(encoding="utf-8-sig"))
    entries = [
        LexiconEntry(
            term=normalize_text(raw["term"]),
            variations=frozenset(str(item) for item in raw.get("variations", [])),
            english_equivalents=tuple(raw.get("english_equivalents", [])),
            category=str(raw.get("category", DEFAULT_CATEGORY)),
            default_severity=str(raw.get("default_severity", "any")),
            context_clues=tuple(raw.get("context_clues", [])),
            base_confidence=max(0.0, min(1.0, float(raw.get("base_confidence", 0.8)))),
        )
        for raw in data.get("entries", [])
    ]
    categories: Dict[str, HealthCategory] = {}
    for category_id, raw in (data.get("categories") or {}).items():
        weights = raw.get("scoring_weights", {})
        categories[category_id] = HealthCategory(
            id=category_id,
            name=str(raw.get("name", category_id)),
            urgency_level=str(raw.get("urgency_level", "routine")),
            scoring_weights=ScoringWeights(
                symptom_match=float(weights.get("symptom_match", 0.0)),
                condition_match=float(weights.get("condition_match", 0.0)),
                severity_multiplier=float(weights.get("severity_multiplier", 1.0)),
                duration_bonus=float(weights.get("duration_bonus", 0.0)),
                contextual_relevance=float(weights.get("contextual_relevance", 0.0)),
                user_profile_alignment=float(weights.get("user_profile_alignment", 0.0)),
            ),
            follow_up_questions=tuple(
                FollowUpQuestion(
                    id=str(q["id"]),
                    question=str(q["question"]),
                    category=str(q.get("category", "symptoms")),
                    priority=str(q.get("priority", "low")),
                )
                for q in raw.get("follow_up_questions", [])
            ),
        )
    if DEFAULT_CATEGORY not in categories:
        raise ValueError(f"lexicon {path} has no '{DEFAULT_CATEGORY}' category")

    temporal = {
        family: {label: tuple(patterns) for label, patterns in families.items()}
        for family, families in (data.get("temporal") or {}).items()
    }
    lexicon = HealthLexicon(
        entries=entries,
        categories=categories,
        symptom_categories=frozenset(data.get("symptom_categories", [])),
        severity_markers={level: tuple(markers) for level, markers in (data.get("severity_markers") or {}).items()},
        urgent_markers=tuple(data.get("urgent_markers", [])),
        emergency_markers=tuple(data.get("emergency_markers", [])),
        temporal=temporal,
    )
    logger.info("lexicon_loaded entries=%s keys=%s categories=%s", len(entries), len(lexicon.index), len(categories))
    return lexicon
