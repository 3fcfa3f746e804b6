from __future__ import annotations

import pytest

from wellness_agent.models import IssueType, ValidationIssue
from wellness_agent.response_validator import (
    ResponseValidator,
    confidence_for,
    detect_query_intent,
    should_escalate,
)


def _issue(severity, issue_type=IssueType.IRRELEVANT_RESPONSE):
    return ValidationIssue(type=issue_type, severity=severity, description="test")


def _types(result):
    return {(issue.type, issue.severity) for issue in result.issues}


@pytest.mark.parametrize(
    "query, intent",
    [
        ("superfood rasa apa aja?", "product_info"),
        ("mau pesan 2 ya", "ordering"),
        ("oke terima kasih", "general"),
        ("hmm", "unknown"),
    ],
)
def test_detect_query_intent(query, intent):
    assert detect_query_intent(query) == intent


@pytest.mark.parametrize(
    "existing",
    [[], [_issue("high")], [_issue("medium"), _issue("low")]],
)
def test_critical_issue_costs_point_three(existing):
    before = confidence_for(existing)
    after = confidence_for([*existing, _issue("critical")])
    assert before - after == pytest.approx(0.30)


def test_confidence_is_floored_at_zero():
    assert confidence_for([_issue("critical")] * 4) == 0.0


def test_escalation_rules():
    assert should_escalate([_issue("critical", IssueType.WRONG_PRODUCT)])
    assert should_escalate([_issue("critical", IssueType.CONVERSATION_RESTART)])
    assert should_escalate([_issue("critical"), _issue("critical", IssueType.PRICE_INCONSISTENCY)])
    assert should_escalate([_issue("high")] * 3)
    assert not should_escalate([_issue("high")] * 2)
    assert not should_escalate([_issue("critical", IssueType.CONTEXT_BLEEDING)])


def test_reply_about_unrelated_product_escalates(validator):
    result = validator.validate("superfood rasa apa aja?", [], "Metafiber tersedia rasa jeruk yuzu Kak")
    assert result.should_escalate
    assert not result.is_valid
    assert (IssueType.WRONG_PRODUCT, "critical") in _types(result)


def test_flavor_question_needs_flavor_answer(validator):
    result = validator.validate("superfood rasa apa aja?", [], "mGANIK SUPERFOOD bagus untuk gula darah Kak")
    assert any(
        issue.type == IssueType.IRRELEVANT_RESPONSE and issue.expected and "flavors" in issue.expected
        for issue in result.issues
    )


def test_three_products_is_context_bleeding(validator):
    reply = "Ada mGANIK SUPERFOOD, mGANIK METAFIBER dan FLIMTY FIBER yang bisa dipilih"
    result = validator.validate("produk apa yang ada?", [], reply)
    assert (IssueType.CONTEXT_BLEEDING, "medium") in _types(result)


def test_switching_product_without_request_is_context_bleeding(validator):
    history = [
        {"role": "user", "content": "saya mau tanya superfood"},
        {"role": "assistant", "content": "mGANIK SUPERFOOD cocok untuk diabetes Kak"},
    ]
    result = validator.validate("kalau diminum kapan?", history, "FLIMTY FIBER diminum sebelum makan Kak")
    assert (IssueType.CONTEXT_BLEEDING, "high") in _types(result)


def test_greeting_after_long_history_is_restart(validator):
    history = [
        {"role": "user", "content": "halo"},
        {"role": "assistant", "content": "Halo Kak"},
        {"role": "user", "content": "saya diabetes"},
    ]
    result = validator.validate("saya diabetes", history, "Halo Kak! Ada yang bisa dibantu soal diabetes?")
    assert (IssueType.CONVERSATION_RESTART, "high") in _types(result)

    short = validator.validate("saya diabetes", history[:2], "Halo Kak! Ada yang bisa dibantu soal diabetes?")
    assert IssueType.CONVERSATION_RESTART not in {issue.type for issue in short.issues}


def test_relevance_overlap(validator):
    relevant = validator.validate("manfaat superfood untuk diabetes", [], "Superfood membantu diabetes Kak")
    assert not any(issue.description.startswith("Reply seems unrelated") for issue in relevant.issues)

    unrelated = validator.validate("manfaat superfood untuk diabetes", [], "Cuaca hari ini cerah sekali")
    assert any(issue.description.startswith("Reply seems unrelated") for issue in unrelated.issues)


def test_wrong_price_for_mentioned_product(validator):
    wrong = validator.validate("superfood harga berapa kak?", [], "mGANIK SUPERFOOD harga Rp 300.000 Kak")
    assert (IssueType.PRICE_INCONSISTENCY, "medium") in _types(wrong)

    right = validator.validate("superfood harga berapa kak?", [], "mGANIK SUPERFOOD harga Rp 320.000 Kak")
    assert IssueType.PRICE_INCONSISTENCY not in {issue.type for issue in right.issues}
    assert right.is_valid


class _BrokenCatalog:
    def find_mentions(self, text):
        raise RuntimeError("index unavailable")

    def get(self, product_id):
        return None


def test_internal_error_forces_escalation():
    result = ResponseValidator(_BrokenCatalog()).validate("superfood rasa apa aja?", [], "rasanya labu")
    assert result.should_escalate
    assert result.confidence == 0.0
    assert result.issues[0].severity == "critical"


def test_to_dict_is_serializable(validator):
    payload = validator.validate("superfood rasa apa aja?", [], "Metafiber rasa jeruk yuzu").to_dict()
    assert payload["should_escalate"] is True
    assert {"type", "severity", "description", "expected", "actual"} <= set(payload["issues"][0])


def test_first_named_product_is_the_one_asked_about(validator):
    query = "ok ya kak jadi gini aku mau nanya dong ya kak soal superfood sm hottopurto rasa apa aja"
    result = validator.validate(query, [], "mGANIK SUPERFOOD ada rasa labu dan kurma Kak")
    assert IssueType.WRONG_PRODUCT not in {issue.type for issue in result.issues}
    assert not result.should_escalate
