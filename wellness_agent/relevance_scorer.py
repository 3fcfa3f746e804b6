from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .catalog import Product
from .lexicon import HealthLexicon, ScoringWeights
from .models import (
    URGENCY_LEVELS,
    ExtractedItem,
    ExtractionResult,
    SeverityAssessment,
    TemporalContext,
    UserHealthProfile,
)
from .term_extractor import active_category
from .utils import normalize_text, similarity

logger = logging.getLogger("wellness.scorer")

MIN_RELEVANCE = 0.2
OUT_OF_STOCK_FACTOR = 0.1
REASON_THRESHOLD = 0.3
SEVERITY_BONUS = {"mild": 0.8, "moderate": 1.0, "severe": 1.3}
STRENGTH_TIERS = {
    "mild": ("mild", "gentle", "light"),
    "moderate": ("moderate", "standard", "regular"),
    "severe": ("strong", "potent", "intensive", "maximum"),
}


@dataclass(frozen=True)
class ScoringContext:
    user_profile: Optional[UserHealthProfile] = None
    urgency: Optional[str] = None
    category: Optional[str] = None


@dataclass(frozen=True)
class RecommendationReason:
    type: str
    explanation: str
    confidence: float
    evidence: Tuple[str, ...]


@dataclass(frozen=True)
class ContextualRecommendation:
    product: Product
    relevance_score: float
    reasons: Tuple[RecommendationReason, ...]
    benefits: Tuple[str, ...]
    urgency_level: str


def term_matches(item: ExtractedItem, product_term: str) -> bool:
    """Substring either way, close spelling, or an English equivalent inside the product term."""
    extracted = normalize_text(item.term)
    declared = normalize_text(product_term)
    if not extracted or not declared:
        return False
    if extracted in declared or declared in extracted:
        return True
    if similarity(extracted, declared) > 0.8:
        return True
    return any(normalize_text(mapped) in declared for mapped in item.mapped_terms if normalize_text(mapped))


class RelevanceScorer:
    """Rank catalog products against an extracted health assessment."""

    def __init__(self, lexicon: HealthLexicon) -> None:
        self._lexicon = lexicon

    def score(
        self,
        product: Product,
        extracted: ExtractionResult,
        temporal: TemporalContext,
        severity: SeverityAssessment,
        context: Optional[ScoringContext] = None,
    ) -> ContextualRecommendation:
        """Purpose: Score one product against extracted symptoms, conditions and context.
        Inputs/Outputs: Inputs are the product, extraction, temporal context, severity and an
            optional ScoringContext; output is a ContextualRecommendation with score in [0, 1].
        Side Effects / State: None.
        Dependencies: Category weights from the lexicon, term_matches.
        Failure Modes: Products without a health profile score 0 on symptom and condition
            partials instead of failing.
        If Removed: The generator receives no ranked product context.
        Testing Notes: Out-of-stock products score at most a tenth of the in-stock score.
        """
        # Four partial scores, weighted by the active category, then the alignment multiplier.
        context = context or ScoringContext()
        category_id = context.category or active_category(extracted)
        weights: ScoringWeights = self._lexicon.weights_for(category_id)

        symptom_score, symptom_evidence = self._match_score(product, extracted.symptoms)
        condition_raw, condition_evidence = self._match_score(product, extracted.conditions)
        condition_score = _clamp(condition_raw * weights.condition_match)
        temporal_score, temporal_evidence = self._temporal_score(product, temporal)
        severity_score, severity_evidence = self._severity_score(product, severity)

        base = (
            symptom_score * weights.symptom_match
            + condition_score * weights.condition_match
            + temporal_score * weights.duration_bonus
            + severity_score * weights.severity_multiplier
        )
        profile_alignment = self._profile_alignment(product, context.user_profile)
        urgency_alignment = self._urgency_alignment(product, context.urgency)
        final = min(
            base
            * (
                1
                + profile_alignment * weights.user_profile_alignment
                + urgency_alignment * weights.contextual_relevance
            ),
            1.0,
        )
        if not product.in_stock:
            final *= OUT_OF_STOCK_FACTOR
        final = _clamp(final)

        reasons: List[RecommendationReason] = []
        if symptom_score > REASON_THRESHOLD and symptom_evidence:
            reasons.append(
                RecommendationReason(
                    type="symptom_match",
                    explanation=f"Cocok untuk keluhan {', '.join(symptom_evidence)}",
                    confidence=symptom_score,
                    evidence=symptom_evidence,
                )
            )
        if condition_score > REASON_THRESHOLD and condition_evidence:
            reasons.append(
                RecommendationReason(
                    type="condition_match",
                    explanation=f"Diformulasikan untuk kondisi {', '.join(condition_evidence)}",
                    confidence=condition_score,
                    evidence=condition_evidence,
                )
            )
        if temporal_score > REASON_THRESHOLD and temporal_evidence:
            reasons.append(
                RecommendationReason(
                    type="duration_suitable",
                    explanation="Sesuai dengan lama dan pola keluhan",
                    confidence=temporal_score,
                    evidence=temporal_evidence,
                )
            )
        if severity_score > REASON_THRESHOLD and severity_evidence:
            reasons.append(
                RecommendationReason(
                    type="severity_appropriate",
                    explanation=f"Kekuatan produk sesuai keluhan {severity.overall}",
                    confidence=severity_score,
                    evidence=severity_evidence,
                )
            )

        return ContextualRecommendation(
            product=product,
            relevance_score=final,
            reasons=tuple(reasons),
            benefits=self.relevant_benefits(product, extracted),
            urgency_level=self._urgency_level(category_id, severity),
        )

    def score_batch(
        self,
        products: Sequence[Product],
        extracted: ExtractionResult,
        temporal: TemporalContext,
        severity: SeverityAssessment,
        context: Optional[ScoringContext] = None,
        limit: int = 5,
    ) -> List[ContextualRecommendation]:
        """Purpose: Score, filter, rank and truncate a batch of products.
        Inputs/Outputs: Inputs mirror score() plus a limit; output is at most `limit`
            recommendations with score >= MIN_RELEVANCE, highest first, ties in input order.
        Side Effects / State: Logs and skips a product whose scoring raises.
        Dependencies: score().
        Failure Modes: An empty catalog returns [].
        If Removed: The pipeline cannot pick the top products for the prompt.
        Testing Notes: Equal scores keep catalog order.
        """
        # Pure map, filter, stable sort, truncate.
        scored: List[ContextualRecommendation] = []
        for product in products:
            try:
                recommendation = self.score(product, extracted, temporal, severity, context)
            except Exception:
                logger.exception("score_failed product=%s", product.id)
                continue
            if recommendation.relevance_score >= MIN_RELEVANCE:
                scored.append(recommendation)
        scored.sort(key=lambda rec: rec.relevance_score, reverse=True)
        return scored[: max(limit, 0)]

    def relevant_benefits(self, product: Product, extracted: ExtractionResult) -> Tuple[str, ...]:
        terms = [normalize_text(term) for term in extracted.terms()]
        hits = [
            benefit
            for benefit in product.benefits
            if any(term and term in normalize_text(benefit) for term in terms)
        ]
        return tuple(hits[:3])

    def _match_score(self, product: Product, items: Sequence[ExtractedItem]) -> Tuple[float, Tuple[str, ...]]:
        # Average of confidence x severity bonus; a benefit-text-only match counts half.
        if not items:
            return 0.0, ()
        profile = product.health_profile
        declared: Tuple[str, ...] = (profile.symptoms + profile.conditions) if profile else ()
        benefit_text = normalize_text(" ".join(product.benefits))

        total = 0.0
        evidence: List[str] = []
        for item in items:
            weight = item.confidence * SEVERITY_BONUS.get(item.severity, 1.0)
            if any(term_matches(item, term) for term in declared):
                total += weight
                evidence.append(item.term)
            elif profile is not None and normalize_text(item.term) in benefit_text:
                total += weight * 0.5
                evidence.append(item.term)
        return _clamp(total / len(items)), tuple(evidence)

    def _temporal_score(self, product: Product, temporal: TemporalContext) -> Tuple[float, Tuple[str, ...]]:
        score = 0.5
        evidence: List[str] = []
        profile = product.health_profile
        name = normalize_text(product.name)
        if temporal.duration == "acute" and ((profile and profile.fast_acting) or "instant" in name):
            score += 0.3
            evidence.append("fast_acting")
        elif temporal.duration == "chronic" and ((profile and profile.long_term_support) or "support" in name):
            score += 0.3
            evidence.append("long_term_support")
        dosage = normalize_text(product.dosage)
        if temporal.frequency == "constant" and ("daily" in dosage or "rutin" in dosage):
            score += 0.2
            evidence.append("daily_dosage")
        return _clamp(score), tuple(evidence)

    def _severity_score(self, product: Product, severity: SeverityAssessment) -> Tuple[float, Tuple[str, ...]]:
        score = 0.5
        evidence: List[str] = []
        profile = product.health_profile
        if profile and profile.strength in STRENGTH_TIERS.get(severity.overall, ()):
            score += 0.3
            evidence.append(f"strength:{profile.strength}")
        if severity.overall == "severe" and any(
            "severe" in normalize_text(warning) or "serius" in normalize_text(warning)
            for warning in product.warnings
        ):
            score += 0.2
            evidence.append("warning_addresses_severe")
        return _clamp(score), tuple(evidence)

    def _profile_alignment(self, product: Product, user: Optional[UserHealthProfile]) -> float:
        if user is None:
            return 0.5
        score = 0.5
        suitability = normalize_text(" ".join(product.suitable_for))
        if user.age is not None:
            if user.age > 60 and ("lansia" in suitability or "elderly" in suitability):
                score += 0.2
            elif user.age < 30 and ("dewasa muda" in suitability or "aktif" in suitability):
                score += 0.2
        profile = product.health_profile
        if profile and user.chronic_conditions:
            overlap = any(
                normalize_text(condition) in declared or declared in normalize_text(condition)
                for condition in user.chronic_conditions
                for declared in profile.conditions
            )
            if overlap:
                score += 0.3
        return min(score, 1.0)

    def _urgency_alignment(self, product: Product, urgency: Optional[str]) -> float:
        if urgency is None:
            return 0.5
        fast = bool(product.health_profile and product.health_profile.fast_acting)
        if urgency == "soon":
            return 0.8 if fast else 0.6
        if urgency == "urgent":
            return 1.0 if fast else 0.3
        if urgency == "emergency":
            return 0.2
        return 0.5

    def _urgency_level(self, category_id: str, severity: SeverityAssessment) -> str:
        category_level = self._lexicon.category(category_id).urgency_level
        levels = [level for level in (category_level, severity.urgency) if level in URGENCY_LEVELS]
        if not levels:
            return "routine"
        return max(levels, key=URGENCY_LEVELS.index)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))
