from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Dict, List, Optional, Sequence

from .catalog import Product, ProductCatalog
from .models import IssueType, ValidationIssue, ValidationResult
from .utils import extract_keywords, message_has_any_term, normalize_text

logger = logging.getLogger("wellness.validator")

ORDERING_KEYWORDS = (
    "mau pesan",
    "mau order",
    "mau beli",
    "pesan",
    "order",
    "beli",
    "ambil",
    "minta",
    "butuh",
    "perlu",
    "checkout",
    "bayar",
)
PRODUCT_INFO_KEYWORDS = (
    "rasa apa",
    "varian",
    "flavor",
    "harga berapa",
    "manfaat",
    "efek",
    "khasiat",
    "komposisi",
    "kandungan",
    "cara pakai",
    "dosis",
    "perbedaan",
    "bedanya",
    "info",
    "informasi",
    "detail",
)
GENERAL_KEYWORDS = (
    "halo",
    "hai",
    "selamat",
    "terima kasih",
    "thanks",
    "ok",
    "oke",
    "baik",
    "siap",
    "ya",
    "tidak",
    "sudah",
    "belum",
)
GREETING_OPENERS = (
    "selamat malam",
    "selamat pagi",
    "selamat siang",
    "selamat sore",
    "halo",
    "hai",
    "perkenalkan saya",
)
FLAVOR_QUESTION_WORDS = ("rasa", "varian", "flavor")
FLAVOR_WORDS = (
    "rasa",
    "varian",
    "flavor",
    "taste",
    "jeruk yuzu",
    "cocopandan",
    "leci",
    "kurma",
    "labu",
    "blackcurrant",
    "raspberry",
    "mango",
    "dark choco",
    "cappuccino",
    "vanilla",
    "strawberry",
    "banana",
)
PRICE_PATTERN = re.compile(r"rp[\s]*([0-9,.]+)", re.IGNORECASE)
CONFIDENCE_PENALTY = {"critical": 0.30, "high": 0.20, "medium": 0.10, "low": 0.05}
MIN_RELEVANCE_OVERLAP = 0.2


def detect_query_intent(query: str) -> str:
    """Purpose: Classify the customer query into ordering, product_info, general or unknown.
    Inputs/Outputs: Input is the raw query; output is the intent label.
    Side Effects / State: None.
    Dependencies: Keyword families above, checked ordering first, then product info, then general.
    Failure Modes: None; unmatched text is "unknown".
    If Removed: Product and price checks would run on every small-talk turn.
    Testing Notes: "superfood rasa apa aja?" -> product_info; "mau pesan 2" -> ordering.
    """
    normalized = normalize_text(query)
    if message_has_any_term(normalized, ORDERING_KEYWORDS):
        return "ordering"
    if message_has_any_term(normalized, PRODUCT_INFO_KEYWORDS):
        return "product_info"
    if message_has_any_term(normalized, GENERAL_KEYWORDS):
        return "general"
    return "unknown"


def confidence_for(issues: Sequence[ValidationIssue]) -> float:
    """Start from 1.0, subtract a fixed penalty per issue severity, floor at 0."""
    confidence = 1.0
    for issue in issues:
        confidence -= CONFIDENCE_PENALTY.get(issue.severity, 0.0)
    return max(0.0, round(confidence, 4))


def should_escalate(issues: Sequence[ValidationIssue]) -> bool:
    """Purpose: Decide whether the issue set must go to a human.
    Inputs/Outputs: Input is the accumulated issues; output is a bool.
    Side Effects / State: None.
    Dependencies: IssueType and severity labels.
    Failure Modes: None.
    If Removed: Wrong-product replies would reach the customer.
    Testing Notes: One critical wrong_product escalates; two high issues do not.
    """
    # Critical restart, two criticals, three highs, or a critical wrong product/restart.
    critical = [issue for issue in issues if issue.severity == "critical"]
    high = [issue for issue in issues if issue.severity == "high"]
    if any(issue.type == IssueType.CONVERSATION_RESTART for issue in critical):
        return True
    if len(critical) >= 2:
        return True
    if len(high) >= 3:
        return True
    return any(issue.type in (IssueType.WRONG_PRODUCT, IssueType.CONVERSATION_RESTART) for issue in critical)


class ResponseValidator:
    """Check a generated reply for drift before it reaches the customer."""

    def __init__(self, catalog: ProductCatalog) -> None:
        self._catalog = catalog

    def validate(
        self,
        query: str,
        recent_history: Sequence[Dict[str, str]],
        reply: str,
        mentioned_products: Optional[Sequence[str]] = None,
        query_intent: Optional[str] = None,
    ) -> ValidationResult:
        """Purpose: Run every reply check and aggregate them into a ValidationResult.
        Inputs/Outputs: Inputs are the query, prior turns (role/content dicts), the candidate
            reply, product ids mentioned earlier and an optional precomputed intent; output is
            ValidationResult with confidence, issues and the escalation decision.
        Side Effects / State: Logs the outcome; never mutates inputs.
        Dependencies: ProductCatalog.find_mentions, extract_keywords, should_escalate.
        Failure Modes: Any internal exception becomes a critical issue that forces escalation.
        If Removed: Hallucinated products and prices go straight to the customer.
        Testing Notes: A reply naming three catalog products always has a context_bleeding issue.
        """
        # Checks accumulate independently; none short-circuits the others.
        try:
            intent = query_intent or detect_query_intent(query)
            issues: List[ValidationIssue] = []
            self._check_restart(reply, recent_history, issues)
            if intent == "product_info":
                self._check_product_consistency(query, reply, issues)
            self._check_context_bleeding(query, reply, recent_history, mentioned_products or (), issues)
            self._check_relevance(query, reply, issues)
            if intent == "product_info":
                self._check_prices(reply, issues)
        except Exception:
            logger.exception("validation_failed query=%s", query[:100])
            issue = ValidationIssue(
                type=IssueType.IRRELEVANT_RESPONSE,
                severity="critical",
                description="Validation system error - escalating for safety",
            )
            return ValidationResult(is_valid=False, confidence=0.0, issues=(issue,), should_escalate=True)

        confidence = confidence_for(issues)
        escalate = should_escalate(issues)
        logger.info(
            "validation intent=%s confidence=%.2f issues=%s escalate=%s",
            intent,
            confidence,
            [f"{issue.type.value}:{issue.severity}" for issue in issues],
            escalate,
        )
        return ValidationResult(
            is_valid=confidence > 0.5 and not escalate,
            confidence=confidence,
            issues=tuple(issues),
            should_escalate=escalate,
        )

    def _check_restart(self, reply: str, history: Sequence[Dict[str, str]], issues: List[ValidationIssue]) -> None:
        normalized = normalize_text(reply)
        opens_with_greeting = any(
            normalized == opener or normalized.startswith(opener + " ") for opener in GREETING_OPENERS
        )
        if opens_with_greeting and len(history) > 2:
            issues.append(
                ValidationIssue(
                    type=IssueType.CONVERSATION_RESTART,
                    severity="high",
                    description="Reply restarted the conversation with a greeting",
                    actual=reply[:100],
                )
            )

    def _check_product_consistency(self, query: str, reply: str, issues: List[ValidationIssue]) -> None:
        query_products = self._catalog.find_mentions(query)
        reply_products = self._catalog.find_mentions(reply)
        if query_products and reply_products and query_products[0].id != reply_products[0].id:
            issues.append(
                ValidationIssue(
                    type=IssueType.WRONG_PRODUCT,
                    severity="critical",
                    description=f"Asked about {query_products[0].name} but reply is about {reply_products[0].name}",
                    expected=query_products[0].name,
                    actual=reply_products[0].name,
                )
            )

        normalized_query = normalize_text(query)
        if query_products and message_has_any_term(normalized_query, FLAVOR_QUESTION_WORDS):
            product = query_products[0]
            vocabulary = FLAVOR_WORDS + tuple(product.flavors)
            if not message_has_any_term(normalize_text(reply), vocabulary):
                issues.append(
                    ValidationIssue(
                        type=IssueType.IRRELEVANT_RESPONSE,
                        severity="high",
                        description="Flavor question answered without flavor information",
                        expected=f"Information about {product.name} flavors",
                        actual="No flavor information found",
                    )
                )

    def _check_context_bleeding(
        self,
        query: str,
        reply: str,
        history: Sequence[Dict[str, str]],
        mentioned_products: Sequence[str],
        issues: List[ValidationIssue],
    ) -> None:
        reply_products = self._catalog.find_mentions(reply)
        if len(reply_products) > 2:
            issues.append(
                ValidationIssue(
                    type=IssueType.CONTEXT_BLEEDING,
                    severity="medium",
                    description="Reply mentions too many different products",
                    actual=f"Mentioned {len(reply_products)} products",
                )
            )
        if not reply_products:
            return

        dominant = self._dominant_product(history, mentioned_products)
        current = reply_products[0]
        if dominant is None or dominant.id == current.id:
            return
        requested = {product.id for product in self._catalog.find_mentions(query)}
        if current.id in requested:
            return
        issues.append(
            ValidationIssue(
                type=IssueType.CONTEXT_BLEEDING,
                severity="high",
                description="Reply switched products without the customer asking",
                expected=dominant.name,
                actual=current.name,
            )
        )

    def _dominant_product(
        self, history: Sequence[Dict[str, str]], mentioned_products: Sequence[str]
    ) -> Optional[Product]:
        # Most frequent product in the last three turns; earlier mentions break an empty window.
        if len(history) >= 2:
            counts: Counter = Counter()
            for message in history[-3:]:
                for product in self._catalog.find_mentions(message.get("content", "")):
                    counts[product.id] += 1
            if counts:
                return self._catalog.get(counts.most_common(1)[0][0])
        for product_id in reversed(list(mentioned_products)):
            product = self._catalog.get(product_id)
            if product:
                return product
        return None

    def _check_relevance(self, query: str, reply: str, issues: List[ValidationIssue]) -> None:
        query_keywords = set(extract_keywords(query))
        reply_keywords = set(extract_keywords(reply))
        if not query_keywords or not reply_keywords:
            overlap = 0.0
        else:
            overlap = len(query_keywords & reply_keywords) / max(len(query_keywords), len(reply_keywords))
        if overlap < MIN_RELEVANCE_OVERLAP:
            issues.append(
                ValidationIssue(
                    type=IssueType.IRRELEVANT_RESPONSE,
                    severity="high",
                    description="Reply seems unrelated to the query",
                    actual=f"Relevance score: {overlap:.2f}",
                )
            )

    def _check_prices(self, reply: str, issues: List[ValidationIssue]) -> None:
        prices = [re.sub(r"[^0-9]", "", match) for match in PRICE_PATTERN.findall(reply)]
        prices = [price for price in prices if price]
        if not prices:
            return
        for product in self._catalog.find_mentions(reply):
            if str(product.price) not in prices:
                issues.append(
                    ValidationIssue(
                        type=IssueType.PRICE_INCONSISTENCY,
                        severity="medium",
                        description=f"Quoted price does not match {product.name}",
                        expected=f"Rp {product.price:,}".replace(",", "."),
                        actual=", ".join(prices),
                    )
                )
