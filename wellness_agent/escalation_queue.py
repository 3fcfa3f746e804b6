from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import EscalationDeliveryError
from .models import EscalationRecord
from .utils import mask_contact_value

logger = logging.getLogger("wellness.escalation_queue")

STATUSES = ("pending", "sent", "resolved")


@dataclass(frozen=True)
class DrainReport:
    delivered: int = 0
    failed: int = 0
    skipped_closed: bool = False


class EscalationQueue:
    """Persisted escalation records with append-only status history."""

    def __init__(self, path: Optional[Path] = None) -> None:
        """Purpose: Initialize the queue and hydrate prior records from disk.
        Inputs/Outputs: Input is an optional JSON file path (None keeps the queue in memory).
        Side Effects / State: Loads entries into an in-memory list guarded by a lock.
        Dependencies: Calls _load.
        Failure Modes: A corrupt file is logged and ignored, leaving an empty queue.
        If Removed: Off-hours escalations are lost and nobody follows up on them.
        Testing Notes: Enqueue, recreate with the same path, and check pending() survives.
        """
        # Keep the backing file path and hydrate cached entries.
        self._path = path
        self._lock = threading.Lock()
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._load()

    def _load(self) -> None:
        if not self._path or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("escalation_queue_corrupt path=%s", self._path)
            return
        for entry in data.get("escalations", []):
            if isinstance(entry, dict) and isinstance(entry.get("record"), dict):
                self._entries[entry["record"]["id"]] = entry

    def _persist(self) -> None:
        """Purpose: Write every entry to disk.
        Inputs/Outputs: Writes self._path; no return value.
        Side Effects / State: Replaces the JSON file contents.
        Dependencies: json.dumps and Path.write_text.
        Failure Modes: IO errors raise to the caller.
        If Removed: Pending escalations vanish on restart.
        Testing Notes: File content mirrors list_entries().
        """
        # Callers hold self._lock.
        if not self._path:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"escalations": list(self._entries.values())}
        self._path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

    def enqueue(self, record: EscalationRecord) -> None:
        """Add a record as pending; re-enqueueing a known id is a no-op."""
        with self._lock:
            if record.id in self._entries:
                return
            payload = asdict(replace(record, status="pending"))
            payload["recent_history"] = list(payload["recent_history"])
            self._entries[record.id] = {
                "record": payload,
                "status": "pending",
                "attempts": 0,
                "last_attempt_at": None,
                "status_history": [{"status": "pending", "at": time.time(), "notes": None}],
            }
            self._persist()
        logger.info("escalation_enqueued id=%s customer=%s", record.id, mask_contact_value(record.customer_id))

    def get(self, escalation_id: str) -> Optional[EscalationRecord]:
        with self._lock:
            entry = self._entries.get(escalation_id)
            return _to_record(entry) if entry else None

    def pending(self) -> List[EscalationRecord]:
        with self._lock:
            return [_to_record(entry) for entry in self._entries.values() if entry["status"] == "pending"]

    def history(self, customer_id: str) -> List[EscalationRecord]:
        with self._lock:
            records = [
                _to_record(entry)
                for entry in self._entries.values()
                if entry["record"]["customer_id"] == customer_id
            ]
        return sorted(records, key=lambda record: record.timestamp)

    def list_entries(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        """Entries (record, status, attempts, history) for admin listings, oldest first."""
        with self._lock:
            entries = [
                json.loads(json.dumps(entry))
                for entry in self._entries.values()
                if status is None or entry["status"] == status
            ]
        return sorted(entries, key=lambda entry: entry["record"]["timestamp"])

    def status_counts(self) -> Dict[str, int]:
        with self._lock:
            counts = {status: 0 for status in STATUSES}
            for entry in self._entries.values():
                counts[entry["status"]] = counts.get(entry["status"], 0) + 1
            return counts

    def mark_sent(self, escalation_id: str) -> bool:
        return self._transition(escalation_id, "sent")

    def mark_resolved(self, escalation_id: str, notes: Optional[str] = None) -> bool:
        return self._transition(escalation_id, "resolved", notes)

    def record_attempt(self, escalation_id: str, error: Optional[str] = None) -> None:
        with self._lock:
            entry = self._entries.get(escalation_id)
            if not entry:
                return
            entry["attempts"] += 1
            entry["last_attempt_at"] = time.time()
            if error:
                entry["last_error"] = error
            self._persist()

    def drain(self, channel: Any, oracle: Any, now: Any = None) -> DrainReport:
        """Purpose: Deliver every pending record when the team is available.
        Inputs/Outputs: Inputs are a notification channel, a business-hours oracle and an
            optional clock override; output is a DrainReport.
        Side Effects / State: Marks delivered records sent; failed ones stay pending with
            the attempt counter incremented.
        Dependencies: channel.notify(record) and oracle.is_business_hours().
        Failure Modes: Delivery errors are logged per record and never abort the drain.
        If Removed: Deferred escalations are never delivered.
        Testing Notes: Closed oracle delivers nothing; a failing channel keeps records pending.
        """
        # Nothing is delivered outside business hours.
        if not oracle.is_business_hours(now).is_open:
            logger.info("escalation_drain skipped reason=closed")
            return DrainReport(skipped_closed=True)

        delivered = 0
        failed = 0
        for record in self.pending():
            try:
                result = channel.notify(record)
                success = bool(getattr(result, "success", result))
                error = None if success else str(getattr(result, "detail", "") or "channel reported failure")
            except EscalationDeliveryError as exc:
                success = False
                error = str(exc)
            except Exception as exc:
                logger.exception("escalation_channel_error id=%s", record.id)
                success = False
                error = repr(exc)
            self.record_attempt(record.id, error)
            if success:
                self.mark_sent(record.id)
                delivered += 1
            else:
                failed += 1
                logger.warning("escalation_delivery_failed id=%s error=%s", record.id, error)
        logger.info("escalation_drain delivered=%s failed=%s", delivered, failed)
        return DrainReport(delivered=delivered, failed=failed)

    def _transition(self, escalation_id: str, status: str, notes: Optional[str] = None) -> bool:
        # Append to history; the stored query and reply are never touched.
        with self._lock:
            entry = self._entries.get(escalation_id)
            if not entry:
                return False
            entry["status"] = status
            entry["status_history"].append({"status": status, "at": time.time(), "notes": notes})
            self._persist()
        logger.info("escalation_status id=%s status=%s", escalation_id, status)
        return True


def _to_record(entry: Dict[str, Any]) -> EscalationRecord:
    raw = dict(entry["record"])
    raw["recent_history"] = tuple(raw.get("recent_history", []))
    raw["status"] = entry["status"]
    return EscalationRecord(**raw)
