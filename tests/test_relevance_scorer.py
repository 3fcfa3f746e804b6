from __future__ import annotations

from dataclasses import replace
from types import SimpleNamespace

import pytest

from wellness_agent.models import SeverityAssessment, TemporalContext, UserHealthProfile
from wellness_agent.relevance_scorer import MIN_RELEVANCE, SEVERITY_BONUS, ScoringContext

MESSAGES = [
    "Diabates saya kambuh, kolestrol juga tinggi",
    "perut begah dan kembung sejak tadi",
    "badan lemes terus, capek banget",
    "tensi naik parah, pusing kliyengan",
    "halo kak",
]
CONTEXTS = [
    None,
    ScoringContext(urgency="emergency"),
    ScoringContext(
        user_profile=UserHealthProfile(age=70, gender="female", chronic_conditions=("diabetes",)),
        urgency="urgent",
    ),
    ScoringContext(user_profile=UserHealthProfile(age=25), urgency="soon"),
]


def _assessment(extractor, message):
    extracted = extractor.extract(message)
    severity = extractor.assess_severity((*extracted.conditions, *extracted.symptoms), message)
    return extracted, severity


def test_scores_stay_in_unit_interval(extractor, scorer, catalog):
    for message in MESSAGES:
        extracted, severity = _assessment(extractor, message)
        for context in CONTEXTS:
            for product in catalog.products:
                recommendation = scorer.score(product, extracted, extracted.temporal, severity, context)
                assert 0.0 <= recommendation.relevance_score <= 1.0


def test_out_of_stock_is_at_most_a_tenth(extractor, scorer, catalog):
    for message in MESSAGES:
        extracted, severity = _assessment(extractor, message)
        for product in catalog.products:
            in_stock = scorer.score(product, extracted, extracted.temporal, severity).relevance_score
            sold_out = scorer.score(
                replace(product, in_stock=False), extracted, extracted.temporal, severity
            ).relevance_score
            assert sold_out <= 0.1 * in_stock + 1e-12


def test_missing_health_metadata_scores_low_without_error(extractor, scorer, catalog):
    extracted, severity = _assessment(extractor, MESSAGES[0])
    product = catalog.get("mganik-metafiber")
    bare = scorer.score(replace(product, health_profile=None), extracted, extracted.temporal, severity)
    full = scorer.score(product, extracted, extracted.temporal, severity)
    assert bare.relevance_score <= full.relevance_score
    assert not {reason.type for reason in bare.reasons} & {"symptom_match", "condition_match"}


def test_condition_match_produces_reasons_and_urgency(extractor, scorer, catalog):
    extracted, severity = _assessment(extractor, "Diabates saya kambuh")
    recommendation = scorer.score(catalog.get("mganik-metafiber"), extracted, extracted.temporal, severity)
    reason_types = {reason.type for reason in recommendation.reasons}
    assert {"condition_match", "severity_appropriate"} <= reason_types
    assert recommendation.urgency_level == "urgent"
    assert recommendation.benefits


def test_relevant_benefits_mention_extracted_terms(extractor, scorer, catalog):
    extracted = extractor.extract("kolesterol saya tinggi")
    benefits = scorer.relevant_benefits(catalog.get("hotto-purto-oat"), extracted)
    assert benefits
    assert all("kolesterol" in benefit.lower() for benefit in benefits)


def test_score_batch_drops_sold_out_and_truncates(extractor, scorer, catalog):
    extracted, severity = _assessment(extractor, MESSAGES[0])
    products = [replace(catalog.get("mganik-metafiber"), in_stock=False), *catalog.products]
    ranked = scorer.score_batch(products, extracted, extracted.temporal, severity, limit=3)
    assert len(ranked) == 3
    assert all(rec.relevance_score >= MIN_RELEVANCE for rec in ranked)
    assert all(rec.product.in_stock for rec in ranked)
    scores = [rec.relevance_score for rec in ranked]
    assert scores == sorted(scores, reverse=True)


def test_score_batch_keeps_input_order_for_ties(extractor, scorer, catalog):
    extracted, severity = _assessment(extractor, MESSAGES[1])
    base = catalog.get("flimty-fiber")
    twins = [replace(base, id="first"), replace(base, id="second"), replace(base, id="third")]
    ranked = scorer.score_batch(twins, extracted, extracted.temporal, severity)
    assert [rec.product.id for rec in ranked] == ["first", "second", "third"]


def test_score_batch_skips_a_product_that_fails(extractor, scorer, catalog):
    extracted, severity = _assessment(extractor, MESSAGES[0])
    # No declared terms at all: reading them raises.
    odd_profile = SimpleNamespace(kind="odd", strength="mild", fast_acting=False, long_term_support=False)
    broken = replace(catalog.get("flimty-fiber"), id="broken", health_profile=odd_profile)
    ranked = scorer.score_batch([broken, catalog.get("mganik-metafiber")], extracted, extracted.temporal, severity)
    assert [rec.product.id for rec in ranked] == ["mganik-metafiber"]


def test_empty_catalog_returns_nothing(extractor, scorer):
    extracted, severity = _assessment(extractor, MESSAGES[0])
    assert scorer.score_batch([], extracted, extracted.temporal, severity) == []


def _reason(recommendation, reason_type):
    return next((reason for reason in recommendation.reasons if reason.type == reason_type), None)


def test_category_alone_does_not_earn_a_symptom_match(extractor, scorer, catalog):
    extracted, severity = _assessment(extractor, "maag kambuh")
    assert [item.category for item in extracted.symptoms] == ["digestive"]

    recommendation = scorer.score(catalog.get("flimty-fiber"), extracted, extracted.temporal, severity)

    assert _reason(recommendation, "symptom_match") is None


def test_benefit_text_match_counts_half(extractor, scorer, catalog):
    extracted, severity = _assessment(extractor, "perut begah")
    product = catalog.get("flimty-fiber")
    # Strip the declared terms so only "Membantu mengurangi begah dan kembung" matches.
    profile = replace(product.health_profile, symptoms=(), conditions=())
    item = extracted.symptoms[0]

    recommendation = scorer.score(replace(product, health_profile=profile), extracted, extracted.temporal, severity)

    reason = _reason(recommendation, "symptom_match")
    assert reason.evidence == ("begah",)
    assert reason.confidence == pytest.approx(min(1.0, item.confidence * SEVERITY_BONUS[item.severity] * 0.5))


@pytest.mark.parametrize(
    "product_id, temporal, expected, evidence",
    [
        ("flimty-fiber", TemporalContext(duration="acute"), 0.8, ("fast_acting",)),
        ("flimty-fiber", TemporalContext(duration="acute", frequency="constant"), 1.0, ("fast_acting", "daily_dosage")),
        ("mganik-metafiber", TemporalContext(duration="chronic"), 0.8, ("long_term_support",)),
        ("mganik-metafiber", TemporalContext(frequency="constant"), 0.7, ("daily_dosage",)),
        ("mganik-metafiber", TemporalContext(duration="acute"), None, ()),
        ("mganik-superfood", TemporalContext(frequency="constant"), None, ()),
    ],
)
def test_duration_partial(extractor, scorer, catalog, product_id, temporal, expected, evidence):
    extracted, severity = _assessment(extractor, "perut begah")

    reason = _reason(scorer.score(catalog.get(product_id), extracted, temporal, severity), "duration_suitable")

    if expected is None:
        assert reason is None
    else:
        assert reason.confidence == pytest.approx(expected)
        assert reason.evidence == evidence


@pytest.mark.parametrize(
    "product_id, overall, expected, evidence",
    [
        ("mganik-metafiber", "severe", 1.0, ("strength:strong", "warning_addresses_severe")),
        ("mganik-3peptide", "severe", 0.8, ("strength:strong",)),
        ("flimty-fiber", "mild", 0.8, ("strength:mild",)),
        ("mganik-metafiber", "moderate", None, ()),
    ],
)
def test_severity_partial(extractor, scorer, catalog, product_id, overall, expected, evidence):
    extracted = extractor.extract("perut begah")

    reason = _reason(
        scorer.score(catalog.get(product_id), extracted, TemporalContext(), SeverityAssessment(overall=overall)),
        "severity_appropriate",
    )

    if expected is None:
        assert reason is None
    else:
        assert reason.confidence == pytest.approx(expected)
        assert reason.evidence == evidence
