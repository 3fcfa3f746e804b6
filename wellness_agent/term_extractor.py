from __future__ import annotations

import logging
import re
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from .lexicon import FollowUpQuestion, HealthLexicon, LexiconEntry
from .models import (
    SEVERITY_RANK,
    ExtractedItem,
    ExtractionResult,
    SeverityAssessment,
    TemporalContext,
    UserHealthProfile,
)
from .utils import contains_phrase, message_has_any_term, normalize_text, similarity

logger = logging.getLogger("wellness.extractor")

FUZZY_THRESHOLD = 0.7
FUZZY_MIN_WORD_LENGTH = 4

IMPACT_BY_SEVERITY = {"mild": "minimal", "moderate": "moderate", "severe": "significant"}
FUNCTIONAL_IMPACT_BY_SEVERITY = {"mild": 2, "moderate": 5, "severe": 8}

MALE_WORDS = ("pria", "laki laki", "cowok", "bapak", "suami")
FEMALE_WORDS = ("wanita", "perempuan", "cewek", "ibu", "istri", "hamil", "menyusui")
AGE_PATTERN = re.compile(r"\b(?:umur|usia)\s*(\d{1,3})\b")
AGE_SUFFIX_PATTERN = re.compile(r"\b(\d{1,3})\s*(?:tahun|thn|th)\b")


class TermExtractor:
    """Map colloquial Indonesian health text onto canonical lexicon terms."""

    def __init__(self, lexicon: HealthLexicon) -> None:
        self._lexicon = lexicon

    def extract(self, message: str, recent_context: str = "") -> ExtractionResult:
        """Purpose: Extract symptoms, conditions and temporal context from one turn.
        Inputs/Outputs: Inputs are the raw message and optional recent user context;
            output is an ExtractionResult with items sorted by confidence (desc).
        Side Effects / State: None; the lexicon is read-only.
        Dependencies: HealthLexicon index, normalize_text, similarity.
        Failure Modes: Never raises for string input; empty text yields an empty result.
        If Removed: The scorer has no health signal and every turn looks generic.
        Testing Notes: "Diabates saya kambuh, kolestrol juga tinggi" yields diabetes and
            kolesterol conditions with confidence above 0.7.
        """
        # Exact pass, fuzzy pass, severity override, then dedupe per canonical term.
        normalized_message = normalize_text(message)
        normalized = " ".join(part for part in (normalized_message, normalize_text(recent_context)) if part)
        if not normalized:
            return ExtractionResult()

        candidates: List[ExtractedItem] = []
        for key, entry in self._lexicon.index.items():
            if contains_phrase(normalized, key):
                candidates.append(self._build_item(entry, key, 1.0, normalized_message))

        for word in dict.fromkeys(normalized.split()):
            if len(word) < FUZZY_MIN_WORD_LENGTH:
                continue
            for key, entry in self._lexicon.index.items():
                score = similarity(word, key)
                if score >= FUZZY_THRESHOLD:
                    candidates.append(self._build_item(entry, word, score, normalized_message))

        override = self._severity_override(normalized_message)
        best: Dict[str, ExtractedItem] = {}
        for item in candidates:
            if override:
                item = replace(item, severity=override)
            current = best.get(item.term)
            if current is None or item.confidence > current.confidence:
                best[item.term] = item

        ranked = sorted(best.values(), key=lambda item: item.confidence, reverse=True)
        result = ExtractionResult(
            symptoms=tuple(item for item in ranked if item.kind == "symptom"),
            conditions=tuple(item for item in ranked if item.kind == "condition"),
            temporal=self.extract_temporal(normalized_message),
        )
        logger.debug(
            "extract symptoms=%s conditions=%s temporal=%s",
            [item.term for item in result.symptoms],
            [item.term for item in result.conditions],
            result.temporal,
        )
        return result

    def extract_temporal(self, text: str) -> TemporalContext:
        """Scan duration, frequency and progression families; first match per family wins."""
        normalized = normalize_text(text)
        found = {}
        for family in ("duration", "frequency", "progression"):
            found[family] = "unknown"
            for label, patterns in self._lexicon.temporal.get(family, {}).items():
                if message_has_any_term(normalized, patterns):
                    found[family] = label
                    break
        return TemporalContext(**found)

    def assess_severity(self, items: Iterable[ExtractedItem], text: str) -> SeverityAssessment:
        """Purpose: Summarize the extracted items into an overall severity assessment.
        Inputs/Outputs: Inputs are extracted items and the message; output is SeverityAssessment.
        Side Effects / State: None.
        Dependencies: Lexicon urgent and emergency markers.
        Failure Modes: No items yields a mild/routine assessment.
        If Removed: The scorer cannot align product strength or urgency.
        Testing Notes: "diabetes parah banget" is severe and urgent; "nyeri dada" is emergency.
        """
        # Highest item severity wins; "any" does not raise the level.
        overall = "mild"
        for item in items:
            if SEVERITY_RANK.get(item.severity, 0) > SEVERITY_RANK[overall]:
                overall = item.severity

        normalized = normalize_text(text)
        if message_has_any_term(normalized, self._lexicon.emergency_markers):
            urgency = "emergency"
        elif message_has_any_term(normalized, self._lexicon.urgent_markers):
            urgency = "urgent" if overall == "severe" else "soon"
        else:
            urgency = "routine"

        return SeverityAssessment(
            overall=overall,
            impact=IMPACT_BY_SEVERITY[overall],
            urgency=urgency,
            functional_impact=FUNCTIONAL_IMPACT_BY_SEVERITY[overall],
        )

    def build_user_profile(self, history_text: str) -> UserHealthProfile:
        """Read age, gender and chronic conditions the customer mentioned about themselves."""
        normalized = normalize_text(history_text)
        if not normalized:
            return UserHealthProfile()

        age: Optional[int] = None
        match = AGE_PATTERN.search(normalized) or AGE_SUFFIX_PATTERN.search(normalized)
        if match:
            value = int(match.group(1))
            if 0 < value < 120:
                age = value

        gender: Optional[str] = None
        if message_has_any_term(normalized, MALE_WORDS):
            gender = "male"
        elif message_has_any_term(normalized, FEMALE_WORDS):
            gender = "female"

        chronic = tuple(item.term for item in self.extract(history_text).conditions)
        return UserHealthProfile(age=age, gender=gender, chronic_conditions=chronic)

    def follow_up_questions(self, category_ids: List[str], limit: int = 3) -> List[FollowUpQuestion]:
        return self._lexicon.follow_up_questions(category_ids, limit=limit)

    def _severity_override(self, normalized_message: str) -> Optional[str]:
        for level in ("severe", "moderate", "mild"):
            if message_has_any_term(normalized_message, self._lexicon.severity_markers.get(level, ())):
                return level
        return None

    def _build_item(self, entry: LexiconEntry, matched: str, match_similarity: float, message: str) -> ExtractedItem:
        kind = "symptom" if self._lexicon.is_symptom_category(entry.category) else "condition"
        return ExtractedItem(
            term=entry.term,
            original_text=matched,
            confidence=match_similarity * entry.base_confidence,
            severity=entry.default_severity,
            kind=kind,
            category=entry.category,
            mapped_terms=entry.english_equivalents,
            context_clues=tuple(clue for clue in entry.context_clues if contains_phrase(message, clue)),
        )


def active_category(extracted: ExtractionResult) -> str:
    # First condition wins, then first symptom, else the general weight set.
    if extracted.conditions:
        return extracted.conditions[0].category
    if extracted.symptoms:
        return extracted.symptoms[0].category
    return "general"
