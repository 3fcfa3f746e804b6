from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Sequence

import httpx

from .business_hours import BusinessHoursOracle, BusinessHoursStatus
from .errors import EscalationDeliveryError
from .escalation_queue import EscalationQueue
from .models import EscalationRecord, ValidationResult
from .utils import mask_contact_value, message_has_any_term, normalize_text

logger = logging.getLogger("wellness.escalation")

RATE_LIMIT_MESSAGE = "Maaf Kak, sistem kami sedang sibuk. Mohon coba lagi dalam beberapa saat ya 🙏"


@dataclass(frozen=True)
class NotificationResult:
    success: bool
    detail: str = ""


class NotificationChannel(Protocol):
    def notify(self, record: EscalationRecord) -> NotificationResult:
        ...


def technical_error_message(admin_phone: str) -> str:
    return f"Maaf Kak, ada kendala teknis sementara. Silakan coba lagi sebentar atau hubungi admin di {admin_phone} ya 😊"


def polite_escalation_message(query: str, status: BusinessHoursStatus, admin_phone: str) -> str:
    """Purpose: Build the customer-facing fallback shown instead of a rejected reply.
    Inputs/Outputs: Inputs are the customer query, business-hours status and admin phone;
        output is an Indonesian apology tailored to the question type and team availability.
    Side Effects / State: None.
    Dependencies: normalize_text and keyword matching.
    Failure Modes: None; unmatched queries get the generic text.
    If Removed: Escalated turns would have nothing safe to send.
    Testing Notes: Flavor questions mention "varian dan rasa"; off-hours mention next open time.
    """
    # Pick the topic phrase first, then append the availability sentence.
    normalized = normalize_text(query)
    if message_has_any_term(normalized, ("rasa", "varian", "flavor")):
        topic = "untuk informasi detail tentang varian dan rasa produk, biar admin yang kasih info lengkapnya ya."
    elif message_has_any_term(normalized, ("harga", "price", "berapa")):
        topic = "untuk informasi harga terbaru dan penawaran khusus, biar admin yang kasih info akuratnya ya."
    elif message_has_any_term(normalized, ("efek", "manfaat", "khasiat")):
        topic = "untuk informasi detail manfaat dan efek produk, biar admin yang jelaskan lebih lengkap ya."
    else:
        topic = "untuk memastikan Kakak mendapat informasi yang paling akurat, biar admin yang bantu langsung ya."

    if status.is_open:
        availability = f"Tim sudah diberitahu dan akan segera membantu. Atau langsung hubungi {admin_phone} 😊"
    elif status.next_open_time:
        availability = (
            f"Pertanyaan Kakak sudah tersimpan dan customer service aktif kembali {status.next_open_time}. "
            f"Untuk bantuan darurat, hubungi {admin_phone} 😊"
        )
    else:
        availability = (
            f"Pertanyaan Kakak sudah tersimpan. Customer service aktif Senin-Jumat 09:00-18:00 WIB, "
            f"untuk bantuan darurat hubungi {admin_phone} 😊"
        )
    return f"Maaf Kak, {topic} {availability}"


def format_admin_message(record: EscalationRecord) -> str:
    """Purpose: Render an escalation record as a short text for the human team.
    Inputs/Outputs: Input is an EscalationRecord; output is a multi-line string.
    Side Effects / State: None.
    Dependencies: mask_contact_value for the customer id.
    Failure Modes: Missing validation fields render as defaults.
    If Removed: Channels have nothing readable to deliver.
    Testing Notes: Only critical and high issues are listed; the reply is cut at 200 chars.
    """
    # Header, query and reply excerpt, serious issues, last three turns.
    validation = record.validation or {}
    lines = [
        "🚨 ESCALATION",
        f"Customer: {mask_contact_value(record.customer_id) or record.customer_id}",
        f"Confidence: {float(validation.get('confidence', 0.0)):.2f}",
        f"Query: {record.user_query}",
        f"AI reply: {record.ai_response[:200]}",
    ]
    serious = [
        issue for issue in validation.get("issues", []) if issue.get("severity") in ("critical", "high")
    ]
    if serious:
        lines.append("Issues:")
        lines.extend(f"- [{issue['severity']}] {issue['type']}: {issue['description']}" for issue in serious)
    if record.recent_history:
        lines.append("Recent history:")
        lines.extend(f"- {turn.get('role')}: {turn.get('content', '')[:120]}" for turn in record.recent_history[-3:])
    return "\n".join(lines)


class LoggingNotificationChannel:
    """Default channel when no webhook is configured: the admin text goes to the log."""

    def notify(self, record: EscalationRecord) -> NotificationResult:
        logger.warning("escalation_notice id=%s\n%s", record.id, format_admin_message(record))
        return NotificationResult(success=True, detail="logged")


class WebhookNotificationChannel:
    def __init__(self, url: str, timeout: float = 10.0) -> None:
        if not url:
            raise ValueError("webhook url is required")
        self._url = url
        self._timeout = timeout

    def notify(self, record: EscalationRecord) -> NotificationResult:
        """Purpose: POST the escalation to the admin webhook.
        Inputs/Outputs: Input is an EscalationRecord; output is NotificationResult(success=True).
        Side Effects / State: One outbound HTTP request.
        Dependencies: httpx.Client with the configured timeout.
        Failure Modes: Network errors and non-2xx responses raise EscalationDeliveryError.
        If Removed: Humans are only notified through logs.
        Testing Notes: Use an httpx mock transport or monkeypatch httpx.Client.
        """
        # Send the record plus the rendered admin text.
        payload = {
            "id": record.id,
            "customer_id": record.customer_id,
            "text": format_admin_message(record),
            "timestamp": record.timestamp,
            "within_business_hours": record.within_business_hours,
        }
        try:
            with httpx.Client(timeout=self._timeout) as client:
                response = client.post(self._url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise EscalationDeliveryError(f"webhook delivery failed: {exc}") from exc
        return NotificationResult(success=True, detail=str(response.status_code))


class EscalationRouter:
    """Hand failed turns to humans without delaying the customer reply."""

    def __init__(
        self,
        oracle: BusinessHoursOracle,
        queue: EscalationQueue,
        channel: NotificationChannel,
        admin_phone: str,
        executor: Optional[Executor] = None,
    ) -> None:
        self._oracle = oracle
        self._queue = queue
        self._channel = channel
        self._admin_phone = admin_phone
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="escalation-notify")

    def escalate(
        self,
        customer_id: str,
        query: str,
        reply: str,
        validation: ValidationResult,
        history: Sequence[Dict[str, str]],
    ) -> str:
        """Purpose: Record the failed turn, route it, and return the customer fallback.
        Inputs/Outputs: Inputs are the customer id, query, rejected reply, validation result
            and conversation history; output is the fallback message for the customer.
        Side Effects / State: In hours, submits one notification attempt to the executor;
            out of hours, enqueues the record for the queue consumer.
        Dependencies: BusinessHoursOracle, EscalationQueue, NotificationChannel.
        Failure Modes: Delivery and queue-write failures are logged; a failed delivery leaves
            the record pending. Neither reaches the customer.
        If Removed: Rejected replies have no safe path and no human follow-up.
        Testing Notes: With a closed oracle, enqueue is called and notify never is.
        """
        # Build the immutable record before touching any collaborator.
        status = self._oracle.is_business_hours()
        record = EscalationRecord(
            id=uuid.uuid4().hex,
            customer_id=customer_id,
            user_query=query,
            ai_response=reply,
            validation=validation.to_dict(),
            recent_history=tuple(
                {"role": turn.get("role", ""), "content": turn.get("content", "")} for turn in list(history)[-5:]
            ),
            timestamp=time.time(),
            within_business_hours=status.is_open,
        )
        logger.info(
            "escalate id=%s customer=%s open=%s confidence=%.2f",
            record.id,
            mask_contact_value(customer_id),
            status.is_open,
            validation.confidence,
        )
        if status.is_open:
            self._executor.submit(self._deliver, record)
        else:
            self._store(record)
        return polite_escalation_message(query, status, self._admin_phone)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _deliver(self, record: EscalationRecord) -> None:
        # Runs on the executor; a record the queue could not store is still sent once.
        stored = self._store(record)
        try:
            result = self._channel.notify(record)
            success, error = result.success, result.detail
        except EscalationDeliveryError as exc:
            success, error = False, str(exc)
        except Exception as exc:
            logger.exception("escalation_channel_error id=%s", record.id)
            success, error = False, repr(exc)
        if not stored:
            logger.warning("escalation_unqueued id=%s success=%s error=%s", record.id, success, error)
            return
        self._queue.record_attempt(record.id, None if success else error)
        if success:
            self._queue.mark_sent(record.id)
        else:
            logger.warning("escalation_delivery_failed id=%s error=%s", record.id, error)

    def _store(self, record: EscalationRecord) -> bool:
        try:
            self._queue.enqueue(record)
        except Exception:
            logger.exception("escalation_enqueue_failed id=%s", record.id)
            return False
        return True


def build_channel(webhook_url: str, timeout: float) -> NotificationChannel:
    if webhook_url:
        return WebhookNotificationChannel(webhook_url, timeout=timeout)
    return LoggingNotificationChannel()

