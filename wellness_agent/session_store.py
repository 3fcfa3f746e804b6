from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Dict, Optional

from pydantic import ValidationError

from .errors import ConcurrentUpdateError
from .models import ConversationContext
from .utils import mask_contact_value

logger = logging.getLogger("wellness.store")


class ConversationStore:
    """Conversation storage keyed by customer, with TTL expiry and revision checks."""

    def __init__(
        self,
        path: Optional[Path] = None,
        ttl_sec: int = 86400,
        history_limit: int = 20,
        clock=time.time,
    ) -> None:
        """Purpose: Initialize the store and hydrate conversations from disk if available.
        Inputs/Outputs: Inputs are an optional JSON path, default TTL, history cap and a
            clock callable; no return value.
        Side Effects / State: Loads conversations and their expiry times into memory.
        Dependencies: Calls _load; relies on the ConversationContext model.
        Failure Modes: Corrupt JSON or invalid entries are logged and skipped.
        If Removed: Every message starts a fresh conversation and state never advances.
        Testing Notes: Pass a fake clock to exercise expiry without sleeping.
        """
        # Keep configuration and preload persisted conversations if present.
        self._path = path
        self._ttl_sec = ttl_sec
        self._history_limit = history_limit
        self._clock = clock
        self._guard = threading.Lock()
        self._customer_locks: Dict[str, threading.Lock] = {}
        self._contexts: Dict[str, ConversationContext] = {}
        self._expires_at: Dict[str, float] = {}
        self._load()

    def _load(self) -> None:
        """Purpose: Load persisted conversations from disk into memory.
        Inputs/Outputs: Reads from self._path; no return value.
        Side Effects / State: Populates _contexts and _expires_at; drops expired entries.
        Dependencies: json.loads and ConversationContext.model_validate.
        Failure Modes: Missing file or JSONDecodeError leaves an empty cache.
        If Removed: Conversations do not survive a restart.
        Testing Notes: Write with one store, read back with a second store on the same path.
        """
        # Read and decode persisted JSON if present.
        if not self._path or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("conversation_store_corrupt path=%s", self._path)
            return
        now = self._clock()
        for customer_id, entry in data.get("conversations", {}).items():
            expires_at = float(entry.get("expires_at", 0))
            if expires_at and expires_at <= now:
                continue
            try:
                self._contexts[customer_id] = ConversationContext.model_validate(entry.get("context", {}))
            except ValidationError:
                logger.warning("conversation_entry_invalid customer=%s", mask_contact_value(customer_id))
                continue
            self._expires_at[customer_id] = expires_at

    def _persist(self) -> None:
        # Callers hold self._guard.
        if not self._path:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "conversations": {
                customer_id: {
                    "context": context.model_dump(mode="json"),
                    "expires_at": self._expires_at.get(customer_id, 0),
                }
                for customer_id, context in self._contexts.items()
            }
        }
        self._path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

    def get(self, customer_id: str) -> ConversationContext:
        """Purpose: Fetch the customer's conversation, or a fresh one.
        Inputs/Outputs: Input is the customer id; output is a ConversationContext.
        Side Effects / State: Expired entries are evicted.
        Dependencies: The store clock and per-entry expiry.
        Failure Modes: None; unknown customers get a GREETING context with revision 0.
        If Removed: The pipeline has no prior state to continue from.
        Testing Notes: Advance the fake clock past the TTL and expect revision 0 again.
        """
        # Evict expired entries lazily on read.
        with self._guard:
            context = self._contexts.get(customer_id)
            if context is not None and self._is_expired(customer_id):
                self._contexts.pop(customer_id, None)
                self._expires_at.pop(customer_id, None)
                self._drop_idle_lock(customer_id)
                self._persist()
                logger.info("conversation_expired customer=%s", mask_contact_value(customer_id))
                context = None
        if context is None:
            return ConversationContext(customer_id=customer_id, updated_at=self._clock())
        return context

    def set(
        self,
        customer_id: str,
        context: ConversationContext,
        ttl: Optional[int] = None,
        expected_revision: Optional[int] = None,
    ) -> ConversationContext:
        """Purpose: Store the next revision of a conversation.
        Inputs/Outputs: Inputs are the customer id, new context, optional TTL override and
            the revision the caller read; output is the stored context (revision + 1).
        Side Effects / State: Replaces the cached value, trims history and writes the file.
        Dependencies: _persist and the history limit.
        Failure Modes: ConcurrentUpdateError when expected_revision is stale.
        If Removed: Turn results are never saved.
        Testing Notes: Two writers with the same expected_revision; the second must fail.
        """
        # Compare-and-swap on revision, then write a trimmed copy.
        with self._guard:
            current = self._contexts.get(customer_id)
            if current is not None and self._is_expired(customer_id):
                current = None
            current_revision = current.revision if current is not None else 0
            if expected_revision is not None and expected_revision != current_revision:
                raise ConcurrentUpdateError(customer_id, expected_revision, current_revision)

            messages = list(context.messages)
            if self._history_limit > 0 and len(messages) > self._history_limit:
                messages = messages[-self._history_limit :]
            now = self._clock()
            stored = context.model_copy(
                update={
                    "customer_id": customer_id,
                    "messages": messages,
                    "revision": current_revision + 1,
                    "updated_at": now,
                }
            )
            self._contexts[customer_id] = stored
            lifetime = self._ttl_sec if ttl is None else ttl
            self._expires_at[customer_id] = now + lifetime if lifetime and lifetime > 0 else 0
            self._persist()
        logger.debug(
            "conversation_saved customer=%s state=%s revision=%s",
            mask_contact_value(customer_id),
            stored.state.value,
            stored.revision,
        )
        return stored

    def reset(self, customer_id: str) -> bool:
        """Delete the conversation; returns False if there was nothing to delete."""
        with self._guard:
            existed = self._contexts.pop(customer_id, None) is not None
            self._expires_at.pop(customer_id, None)
            self._drop_idle_lock(customer_id)
            if existed:
                self._persist()
        logger.info("conversation_reset customer=%s existed=%s", mask_contact_value(customer_id), existed)
        return existed

    def lock(self, customer_id: str) -> threading.Lock:
        """Per-customer lock the pipeline holds for a whole turn."""
        with self._guard:
            return self._customer_locks.setdefault(customer_id, threading.Lock())

    def _drop_idle_lock(self, customer_id: str) -> None:
        # Callers hold self._guard; a lock held by a running turn stays.
        lock = self._customer_locks.get(customer_id)
        if lock is not None and not lock.locked():
            del self._customer_locks[customer_id]

    def _is_expired(self, customer_id: str) -> bool:
        expires_at = self._expires_at.get(customer_id, 0)
        return bool(expires_at) and expires_at <= self._clock()
