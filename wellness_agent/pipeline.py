"""Per-turn conversation-intelligence pipeline.

Role:
    Turns one customer message into the reply that is actually sent. It extracts health
    terms, ranks catalog products, asks the generator for a reply, validates that reply,
    escalates rejected replies to humans and advances the conversation state.

Turn data contract (TurnContext fields passed across steps):
    - conversation: the ConversationContext read at the start of the turn (never mutated).
    - extracted/severity/profile: health signal from the current message plus recent context.
    - recommendations: ranked ContextualRecommendation values for the prompt.
    - reply/token_usage/failure: generator output, or the fallback kind when it failed.
    - validation/escalated: validator verdict and whether the router took over.
    - next_state/order: state-machine output for this turn.

Step contracts:
    Extract -> Recommend -> Prompt -> Generate -> Validate -> Escalate -> Advance -> Finalize.
    Every step returns a new TurnContext; Finalize builds the conversation value that is
    persisted once at the end of the turn.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from .catalog import Product, ProductCatalog
from .conversation_state import OrderDraft, is_order_phase, mentions_order, next_state, update_order
from .errors import AuthenticationError, GenerationServiceError, RateLimitError
from .escalation import RATE_LIMIT_MESSAGE, EscalationRouter, technical_error_message
from .gemini_client import GenerationResult
from .lexicon import FollowUpQuestion
from .models import (
    ChatMessage,
    ConversationContext,
    ConversationState,
    ExtractionResult,
    SeverityAssessment,
    UserHealthProfile,
    ValidationResult,
)
from .prompt_loader import render_prompt
from .relevance_scorer import ContextualRecommendation, RelevanceScorer, ScoringContext
from .response_validator import ResponseValidator, detect_query_intent
from .session_store import ConversationStore
from .step_runner import Step, StepRunner
from .term_extractor import TermExtractor, active_category
from .utils import mask_contact_value

logger = logging.getLogger("wellness.pipeline")

RECENT_USER_MESSAGES = 3
STATE_LABELS = {
    ConversationState.GREETING: "sapaan awal",
    ConversationState.HEALTH_INQUIRY: "menggali keluhan kesehatan",
    ConversationState.PRODUCT_RECOMMENDATION: "rekomendasi produk",
    ConversationState.ORDER_COLLECTION: "mengumpulkan data pesanan",
    ConversationState.ORDER_CONFIRMATION: "konfirmasi pesanan",
    ConversationState.CONVERSATION_COMPLETE: "pesanan selesai",
    ConversationState.GENERAL_SUPPORT: "bantuan umum",
}


class TextGenerator(Protocol):
    def generate(self, system_prompt: str, history: Sequence[Dict[str, str]]) -> GenerationResult:
        ...


@dataclass(frozen=True)
class TurnContext:
    """Immutable value threaded through the turn steps."""
    customer_id: str
    message: str
    conversation: ConversationContext
    extracted: ExtractionResult = ExtractionResult()
    severity: SeverityAssessment = SeverityAssessment()
    profile: UserHealthProfile = UserHealthProfile()
    recommendations: Tuple[ContextualRecommendation, ...] = ()
    follow_ups: Tuple[FollowUpQuestion, ...] = ()
    system_prompt: str = ""
    reply: str = ""
    token_usage: int = 0
    failure: Optional[str] = None
    validation: Optional[ValidationResult] = None
    escalated: bool = False
    mentioned: Tuple[Product, ...] = ()
    next_state: Optional[ConversationState] = None
    order: OrderDraft = OrderDraft()
    updated: Optional[ConversationContext] = None


@dataclass(frozen=True)
class TurnResult:
    reply: str
    state: ConversationState
    escalated: bool
    recommendations: Tuple[str, ...] = ()
    validation: Optional[ValidationResult] = None


class ConversationPipeline:
    """Single entry point for a customer turn."""

    def __init__(
        self,
        catalog: ProductCatalog,
        extractor: TermExtractor,
        scorer: RelevanceScorer,
        validator: ResponseValidator,
        router: EscalationRouter,
        store: ConversationStore,
        generator: TextGenerator,
        prompt_template: str,
        admin_phone: str,
        recommendation_limit: int = 5,
        history_limit: int = 20,
    ) -> None:
        """Purpose: Wire the turn collaborators and the step order.
        Inputs/Outputs: Inputs are the catalog, extractor, scorer, validator, escalation
            router, conversation store, text generator and prompt template; no return value.
        Side Effects / State: Builds the StepRunner; holds no per-turn state.
        Dependencies: StepRunner and every core component.
        Failure Modes: None at construction.
        If Removed: The chat endpoint has nothing to call.
        Testing Notes: Construct with a fake generator and an in-memory store.
        """
        # Keep collaborators and declare the ordered steps.
        self._catalog = catalog
        self._extractor = extractor
        self._scorer = scorer
        self._validator = validator
        self._router = router
        self._store = store
        self._generator = generator
        self._prompt_template = prompt_template
        self._admin_phone = admin_phone
        self._recommendation_limit = recommendation_limit
        self._history_limit = history_limit
        self._runner: StepRunner[TurnContext] = StepRunner(
            [
                Step("extract", self._step_extract),
                Step("recommend", self._step_recommend),
                Step("prompt", self._step_prompt),
                Step("generate", self._step_generate),
                Step("validate", self._step_validate, skip_if=lambda turn: turn.failure is not None),
                Step("escalate", self._step_escalate, skip_if=_should_not_escalate),
                Step("advance", self._step_advance, skip_if=lambda turn: turn.escalated or turn.failure is not None),
                Step("finalize", self._step_finalize, always_run=True),
            ]
        )

    @property
    def router(self) -> EscalationRouter:
        return self._router

    def handle_message(self, customer_id: str, message: str) -> TurnResult:
        """Purpose: Run one customer turn end to end and persist the outcome.
        Inputs/Outputs: Inputs are the customer id and raw message; output is TurnResult with
            the reply that should be sent, the resulting state and the escalation flag.
        Side Effects / State: Holds the customer's lock for the whole turn; writes the
            conversation once (compare-and-swap on the revision read); may escalate.
        Dependencies: ConversationStore, StepRunner and the step methods below.
        Failure Modes: AuthenticationError propagates; ConcurrentUpdateError propagates if the
            store changed underneath the turn. Other generation failures become apologies.
        If Removed: No reply is ever produced.
        Testing Notes: Rate-limit leaves state unchanged; escalation returns the fallback text.
        """
        # Serialize turns per customer, then read, run, and write once.
        with self._store.lock(customer_id):
            conversation = self._store.get(customer_id)
            started = time.perf_counter()
            logger.info(
                "turn_start customer=%s state=%s revision=%s",
                mask_contact_value(customer_id),
                conversation.state.value,
                conversation.revision,
            )
            turn = self._runner.run(TurnContext(customer_id=customer_id, message=message, conversation=conversation))
            stored = self._store.set(customer_id, turn.updated, expected_revision=conversation.revision)

        logger.info(
            "turn_done customer=%s state=%s escalated=%s failure=%s recommendations=%s tokens=%s latency_ms=%.0f",
            mask_contact_value(customer_id),
            stored.state.value,
            turn.escalated,
            turn.failure,
            [rec.product.id for rec in turn.recommendations],
            turn.token_usage,
            (time.perf_counter() - started) * 1000,
        )
        return TurnResult(
            reply=turn.reply,
            state=stored.state,
            escalated=turn.escalated,
            recommendations=tuple(rec.product.id for rec in turn.recommendations),
            validation=turn.validation,
        )

    def reset(self, customer_id: str) -> bool:
        with self._store.lock(customer_id):
            return self._store.reset(customer_id)

    def _step_extract(self, turn: TurnContext) -> TurnContext:
        """Purpose: Extract the health signal for this turn.
        Inputs/Outputs: Input is TurnContext; output adds extracted, severity and profile.
        Side Effects / State: None.
        Dependencies: TermExtractor.extract, assess_severity and build_user_profile.
        Failure Modes: None; no health terms yields an empty ExtractionResult.
        If Removed: Recommendations fall back to the whole catalog on every turn.
        Testing Notes: The last three user messages count as context, the current one leads.
        """
        # Current message plus the last few user messages as context.
        user_messages = [message.content for message in turn.conversation.messages if message.role == "user"]
        recent = " ".join(user_messages[-RECENT_USER_MESSAGES:])
        extracted = self._extractor.extract(turn.message, recent)
        severity = self._extractor.assess_severity((*extracted.conditions, *extracted.symptoms), turn.message)
        profile = self._extractor.build_user_profile(" ".join([*user_messages, turn.message]))
        logger.info(
            "extracted customer=%s conditions=%s symptoms=%s severity=%s urgency=%s",
            mask_contact_value(turn.customer_id),
            [item.term for item in extracted.conditions],
            [item.term for item in extracted.symptoms],
            severity.overall,
            severity.urgency,
        )
        return replace(turn, extracted=extracted, severity=severity, profile=profile)

    def _step_recommend(self, turn: TurnContext) -> TurnContext:
        # Candidates by canonical term, then rank; follow-ups only when duration is unknown.
        candidates = self._catalog.list_candidates(turn.extracted.terms())
        context = ScoringContext(user_profile=turn.profile, urgency=turn.severity.urgency)
        recommendations = self._scorer.score_batch(
            candidates,
            turn.extracted,
            turn.extracted.temporal,
            turn.severity,
            context,
            limit=self._recommendation_limit,
        )
        follow_ups: List[FollowUpQuestion] = []
        if not turn.extracted.is_empty and turn.extracted.temporal.duration == "unknown":
            follow_ups = self._extractor.follow_up_questions([active_category(turn.extracted)])
        return replace(turn, recommendations=tuple(recommendations), follow_ups=tuple(follow_ups))

    def _step_prompt(self, turn: TurnContext) -> TurnContext:
        metadata = turn.conversation.metadata
        mentioned = [
            product.name
            for product in (self._catalog.get(product_id) for product_id in metadata.get("mentioned_products", []))
            if product
        ]
        values = {
            "state": STATE_LABELS.get(turn.conversation.state, turn.conversation.state.value),
            "health_summary": _health_summary(turn.extracted, turn.severity),
            "recommendations": _recommendation_lines(turn.recommendations),
            "mentioned_products": ", ".join(mentioned) or "-",
            "order_summary": _order_summary(OrderDraft.from_dict(metadata.get("order")), self._catalog),
            "follow_up_questions": "\n".join(f"- {question.question}" for question in turn.follow_ups) or "-",
        }
        return replace(turn, system_prompt=render_prompt(self._prompt_template, values))

    def _step_generate(self, turn: TurnContext) -> TurnContext:
        """Purpose: Ask the generator for a candidate reply.
        Inputs/Outputs: Input is TurnContext with system_prompt; output adds reply and
            token_usage, or a fallback reply and failure kind.
        Side Effects / State: One generator call, no retry.
        Dependencies: TextGenerator.generate.
        Failure Modes: RateLimitError -> busy apology; other GenerationServiceError ->
            technical apology; AuthenticationError propagates to the caller.
        If Removed: The customer never gets a generated answer.
        Testing Notes: Use a fake generator that raises each error type.
        """
        # Prior turns plus the current message, capped to the history limit.
        history = [*turn.conversation.history(), {"role": "user", "content": turn.message}]
        if self._history_limit > 0:
            history = history[-self._history_limit :]
        try:
            result = self._generator.generate(turn.system_prompt, history)
        except RateLimitError:
            logger.warning("generation_rate_limited customer=%s", mask_contact_value(turn.customer_id))
            return replace(turn, reply=RATE_LIMIT_MESSAGE, failure="rate_limit")
        except AuthenticationError:
            logger.error("generation_auth_failed customer=%s", mask_contact_value(turn.customer_id))
            raise
        except GenerationServiceError as exc:
            logger.warning(
                "generation_failed customer=%s error=%s", mask_contact_value(turn.customer_id), type(exc).__name__
            )
            return replace(turn, reply=technical_error_message(self._admin_phone), failure="technical")
        return replace(turn, reply=result.text, token_usage=result.token_usage)

    def _step_validate(self, turn: TurnContext) -> TurnContext:
        metadata = turn.conversation.metadata
        validation = self._validator.validate(
            turn.message,
            turn.conversation.history(),
            turn.reply,
            mentioned_products=metadata.get("mentioned_products", []),
            query_intent=detect_query_intent(turn.message),
        )
        if not validation.is_valid and not validation.should_escalate:
            logger.warning(
                "validation_low_confidence customer=%s confidence=%.2f issues=%s",
                mask_contact_value(turn.customer_id),
                validation.confidence,
                [issue.description for issue in validation.issues],
            )
        return replace(turn, validation=validation)

    def _step_escalate(self, turn: TurnContext) -> TurnContext:
        # The rejected reply goes to humans only; the customer gets the fallback.
        history = [*turn.conversation.history(), {"role": "user", "content": turn.message}]
        fallback = self._router.escalate(turn.customer_id, turn.message, turn.reply, turn.validation, history)
        return replace(turn, reply=fallback, escalated=True)

    def _step_advance(self, turn: TurnContext) -> TurnContext:
        """Purpose: Advance the state machine and the order draft for a delivered reply.
        Inputs/Outputs: Input is a validated TurnContext; output adds mentioned, order and
            next_state.
        Side Effects / State: None.
        Dependencies: update_order, next_state and catalog mentions.
        Failure Modes: None.
        If Removed: Conversations never leave GREETING.
        Testing Notes: "mau pesan" from GREETING lands in ORDER_COLLECTION.
        """
        # Order slots first so completeness is current when the state is computed.
        current = turn.conversation.state
        metadata = turn.conversation.metadata
        user_mentions = self._catalog.find_mentions(turn.message)
        reply_mentions = self._catalog.find_mentions(turn.reply)
        order = OrderDraft.from_dict(metadata.get("order"))
        if is_order_phase(current) or mentions_order(turn.message):
            order_products = user_mentions
            if not order_products and not order.items:
                order_products = self._last_mentioned(metadata.get("mentioned_products", []))
            order = update_order(order, turn.message, order_products)
        state = next_state(current, turn.message, turn.reply, order, health_signal=not turn.extracted.is_empty)
        if state != current:
            logger.info(
                "state_transition customer=%s from=%s to=%s",
                mask_contact_value(turn.customer_id),
                current.value,
                state.value,
            )
        return replace(turn, mentioned=tuple(_unique([*user_mentions, *reply_mentions])), order=order, next_state=state)

    def _step_finalize(self, turn: TurnContext) -> TurnContext:
        # Escalated and failed turns keep state and metadata; the exchange is still recorded.
        conversation = turn.conversation
        now = time.time()
        messages = [
            *conversation.messages,
            ChatMessage(role="user", content=turn.message, timestamp=now),
            ChatMessage(role="assistant", content=turn.reply, timestamp=now),
        ]
        update: Dict[str, object] = {"messages": messages}
        if turn.next_state is not None:
            metadata = dict(conversation.metadata)
            mentioned = list(metadata.get("mentioned_products", []))
            for product in turn.mentioned:
                if product.id not in mentioned:
                    mentioned.append(product.id)
            conditions = list(metadata.get("health_conditions", []))
            for term in turn.extracted.terms():
                if term not in conditions:
                    conditions.append(term)
            metadata.update(
                {
                    "mentioned_products": mentioned,
                    "last_recommendations": [
                        {"product_id": rec.product.id, "score": round(rec.relevance_score, 4)}
                        for rec in turn.recommendations
                    ],
                    "health_conditions": conditions,
                    "order": turn.order.to_dict(),
                }
            )
            update.update({"state": turn.next_state, "metadata": metadata})
        return replace(turn, updated=conversation.model_copy(update=update))

    def _last_mentioned(self, product_ids: Sequence[str]) -> List[Product]:
        for product_id in reversed(list(product_ids)):
            product = self._catalog.get(product_id)
            if product:
                return [product]
        return []


def _should_not_escalate(turn: TurnContext) -> bool:
    return turn.failure is not None or turn.validation is None or not turn.validation.should_escalate


def _unique(products: Sequence[Product]) -> List[Product]:
    seen: Dict[str, Product] = {}
    for product in products:
        seen.setdefault(product.id, product)
    return list(seen.values())


def _health_summary(extracted: ExtractionResult, severity: SeverityAssessment) -> str:
    if extracted.is_empty:
        return "Belum ada keluhan spesifik."
    lines = [f"- {item.term} (kondisi, tingkat: {item.severity})" for item in extracted.conditions]
    lines.extend(f"- {item.term} (gejala, tingkat: {item.severity})" for item in extracted.symptoms)
    temporal = extracted.temporal
    lines.append(
        f"Durasi: {temporal.duration}, frekuensi: {temporal.frequency}, perkembangan: {temporal.progression}, "
        f"urgensi: {severity.urgency}"
    )
    return "\n".join(lines)


def _recommendation_lines(recommendations: Sequence[ContextualRecommendation]) -> str:
    if not recommendations:
        return "Tidak ada produk yang cocok secara khusus; tanyakan kebutuhan pelanggan lebih dulu."
    lines = []
    for rank, rec in enumerate(recommendations, start=1):
        product = rec.product
        price = f"Rp {product.price:,}".replace(",", ".")
        stock = "" if product.in_stock else " [stok habis]"
        lines.append(f"{rank}. {product.name} - {price}{stock} (skor {rec.relevance_score:.2f})")
        benefits = rec.benefits or product.benefits[:3]
        if benefits:
            lines.append(f"   Manfaat: {'; '.join(benefits)}")
        if product.dosage:
            lines.append(f"   Cara pakai: {product.dosage}")
        if product.flavors:
            lines.append(f"   Varian rasa: {', '.join(product.flavors)}")
        if product.warnings:
            lines.append(f"   Perhatian: {'; '.join(product.warnings)}")
        if rec.reasons:
            lines.append(f"   Alasan: {'; '.join(reason.explanation for reason in rec.reasons)}")
    return "\n".join(lines)


def _order_summary(order: OrderDraft, catalog: ProductCatalog) -> str:
    if not order.items:
        return "Belum ada pesanan."
    parts = []
    for product_id, quantity in order.items:
        product = catalog.get(product_id)
        parts.append(f"{product.name if product else product_id} x{quantity}")
    missing = [
        label
        for label, value in (("nama", order.customer_name), ("alamat", order.address), ("nomor HP", order.phone))
        if not value
    ]
    status = "data lengkap" if not missing else f"belum ada {', '.join(missing)}"
    return f"{', '.join(parts)} ({status})"
