from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional, Sequence, Tuple

from .catalog import Product
from .models import ConversationState
from .utils import contains_phrase, message_has_any_term, normalize_text

logger = logging.getLogger("wellness.state")

ORDER_KEYWORDS = ("pesan", "order", "beli", "checkout", "mau ambil")
HEALTH_KEYWORDS = ("sakit", "keluhan", "gejala", "diabetes", "kambuh")
PRODUCT_KEYWORDS = ("produk", "harga", "manfaat", "berapa", "rekomendasi")
REPLY_RECOMMENDATION_PHRASES = ("saya rekomendasikan",)
AFFIRM_KEYWORDS = ("ya", "benar", "konfirm", "setuju")
REPLY_CONFIRMATION_PHRASES = ("konfirmasi pesanan",)

QUANTITY_PATTERN = re.compile(r"\b(\d{1,3})\s*(?:pcs|pack|box|pouch|sachet|botol|buah)\b|\bx\s*(\d{1,3})\b|\b(\d{1,3})\s*x\b")
NAME_PATTERN = re.compile(r"\bnama\s*[:=]\s*([^\n,;]+)", re.IGNORECASE)
ADDRESS_PATTERN = re.compile(r"\balamat\s*[:=]\s*([^\n;]+)", re.IGNORECASE)
PHONE_PATTERN = re.compile(r"\+?\d[\d\- ]{6,18}\d")
ADDRESS_TAIL_PATTERN = re.compile(r",\s*(?:nama|hp|no\.? ?hp|telp|telepon|wa)\b", re.IGNORECASE)


@dataclass(frozen=True)
class OrderDraft:
    """Order slots collected so far; replaced on every update."""
    items: Tuple[Tuple[str, int], ...] = ()
    customer_name: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.items and self.customer_name and self.address and self.phone)

    def quantity(self, product_id: str) -> int:
        return dict(self.items).get(product_id, 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": {product_id: qty for product_id, qty in self.items},
            "customer_name": self.customer_name,
            "address": self.address,
            "phone": self.phone,
            "is_complete": self.is_complete,
        }

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "OrderDraft":
        if not isinstance(raw, dict):
            return cls()
        items = raw.get("items") or {}
        return cls(
            items=tuple((str(product_id), int(qty)) for product_id, qty in items.items()),
            customer_name=raw.get("customer_name"),
            address=raw.get("address"),
            phone=raw.get("phone"),
        )


def update_order(draft: OrderDraft, message: str, mentioned: Sequence[Product]) -> OrderDraft:
    """Purpose: Fold one customer message into the order draft.
    Inputs/Outputs: Inputs are the current draft, the raw message and products mentioned in
        it (in mention order); output is a new OrderDraft.
    Side Effects / State: None; the input draft is never modified.
    Dependencies: Regex slot patterns for quantity, name, address and phone.
    Failure Modes: Unparseable text leaves the draft unchanged.
    If Removed: Orders never become complete and confirmation cannot finish.
    Testing Notes: "nama: Sari, alamat: Jl. Melati 5" fills both slots; "2 pcs" sets the
        quantity of the last mentioned product.
    """
    # Items first, then quantity for the most recent product, then contact slots.
    items = dict(draft.items)
    for product in mentioned:
        items.setdefault(product.id, 1)

    quantity_match = QUANTITY_PATTERN.search(message.lower())
    if quantity_match:
        quantity = int(next(group for group in quantity_match.groups() if group))
        target = mentioned[-1].id if mentioned else (draft.items[-1][0] if draft.items else None)
        if target and quantity > 0:
            items[target] = quantity

    updated = replace(draft, items=tuple(items.items()))
    name_match = NAME_PATTERN.search(message)
    if name_match and name_match.group(1).strip():
        updated = replace(updated, customer_name=name_match.group(1).strip())
    address_match = ADDRESS_PATTERN.search(message)
    if address_match and address_match.group(1).strip():
        address = ADDRESS_TAIL_PATTERN.split(address_match.group(1))[0].strip()
        updated = replace(updated, address=address)
    for candidate in PHONE_PATTERN.findall(message):
        digits = re.sub(r"\D", "", candidate)
        if 8 <= len(digits) <= 13:
            updated = replace(updated, phone=digits)
            break
    return updated


def next_state(
    current: ConversationState,
    user_message: str,
    reply: str,
    order: OrderDraft,
    health_signal: bool = False,
) -> ConversationState:
    """Purpose: Compute the next dialogue phase from this turn's signals.
    Inputs/Outputs: Inputs are the current state, user message, generated reply, order draft
        and whether extraction found a health item; output is a ConversationState member.
    Side Effects / State: None; total over every state and input.
    Dependencies: Keyword families; precedence order > health > product/pricing > default.
    Failure Modes: None.
    If Removed: The pipeline cannot tell when to collect or confirm an order.
    Testing Notes: GREETING plus "mau pesan" moves to ORDER_COLLECTION; COMPLETE never leaves.
    """
    # Terminal and order-progress states are handled before keyword precedence.
    if current == ConversationState.CONVERSATION_COMPLETE:
        return current

    user = normalize_text(user_message)
    generated = normalize_text(reply)

    if current == ConversationState.ORDER_CONFIRMATION:
        return ConversationState.CONVERSATION_COMPLETE if order.is_complete else current

    if current == ConversationState.ORDER_COLLECTION and order.items:
        if message_has_any_term(user, AFFIRM_KEYWORDS) or any(
            contains_phrase(generated, phrase) for phrase in REPLY_CONFIRMATION_PHRASES
        ):
            return ConversationState.ORDER_CONFIRMATION

    if message_has_any_term(user, ORDER_KEYWORDS):
        return ConversationState.ORDER_COLLECTION
    if health_signal or message_has_any_term(user, HEALTH_KEYWORDS):
        return ConversationState.HEALTH_INQUIRY
    if message_has_any_term(user, PRODUCT_KEYWORDS) or any(
        contains_phrase(generated, phrase) for phrase in REPLY_RECOMMENDATION_PHRASES
    ):
        return ConversationState.PRODUCT_RECOMMENDATION
    if current == ConversationState.GREETING:
        return ConversationState.GENERAL_SUPPORT
    return current


def is_order_phase(state: ConversationState) -> bool:
    return state in (ConversationState.ORDER_COLLECTION, ConversationState.ORDER_CONFIRMATION)


def mentions_order(user_message: str) -> bool:
    return message_has_any_term(normalize_text(user_message), ORDER_KEYWORDS)
