from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

SEVERITY_RANK = {"mild": 1, "moderate": 2, "severe": 3}
URGENCY_LEVELS = ("routine", "soon", "urgent", "emergency")
ISSUE_SEVERITIES = ("low", "medium", "high", "critical")


class ConversationState(str, Enum):
    """Dialogue phase of one customer conversation."""
    GREETING = "greeting"
    HEALTH_INQUIRY = "health_inquiry"
    PRODUCT_RECOMMENDATION = "product_recommendation"
    ORDER_COLLECTION = "order_collection"
    ORDER_CONFIRMATION = "order_confirmation"
    CONVERSATION_COMPLETE = "conversation_complete"
    GENERAL_SUPPORT = "general_support"


class IssueType(str, Enum):
    WRONG_PRODUCT = "wrong_product"
    CONVERSATION_RESTART = "conversation_restart"
    IRRELEVANT_RESPONSE = "irrelevant_response"
    PRODUCT_MISMATCH = "product_mismatch"
    PRICE_INCONSISTENCY = "price_inconsistency"
    CATEGORY_MISMATCH = "category_mismatch"
    CONTEXT_BLEEDING = "context_bleeding"


@dataclass(frozen=True)
class ExtractedItem:
    """One symptom or condition detected in a message."""
    term: str
    original_text: str
    confidence: float
    severity: str
    kind: str
    category: str
    mapped_terms: Tuple[str, ...] = ()
    context_clues: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TemporalContext:
    duration: str = "unknown"
    frequency: str = "unknown"
    progression: str = "unknown"


@dataclass(frozen=True)
class ExtractionResult:
    """Symptoms, conditions and temporal context extracted from one turn."""
    symptoms: Tuple[ExtractedItem, ...] = ()
    conditions: Tuple[ExtractedItem, ...] = ()
    temporal: TemporalContext = field(default_factory=TemporalContext)

    @property
    def is_empty(self) -> bool:
        return not self.symptoms and not self.conditions

    def terms(self) -> List[str]:
        return [item.term for item in (*self.conditions, *self.symptoms)]


@dataclass(frozen=True)
class SeverityAssessment:
    overall: str = "mild"
    impact: str = "minimal"
    urgency: str = "routine"
    functional_impact: int = 2


@dataclass(frozen=True)
class UserHealthProfile:
    age: Optional[int] = None
    gender: Optional[str] = None
    chronic_conditions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ValidationIssue:
    type: IssueType
    severity: str
    description: str
    expected: Optional[str] = None
    actual: Optional[str] = None


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    confidence: float
    issues: Tuple[ValidationIssue, ...]
    should_escalate: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "confidence": self.confidence,
            "should_escalate": self.should_escalate,
            "issues": [
                {
                    "type": issue.type.value,
                    "severity": issue.severity,
                    "description": issue.description,
                    "expected": issue.expected,
                    "actual": issue.actual,
                }
                for issue in self.issues
            ],
        }


@dataclass(frozen=True)
class EscalationRecord:
    """Immutable hand-off record; status changes are stored as new copies by the queue."""
    id: str
    customer_id: str
    user_query: str
    ai_response: str
    validation: Dict[str, Any]
    recent_history: Tuple[Dict[str, str], ...]
    timestamp: float
    within_business_hours: bool
    status: str = "pending"


class ChatMessage(BaseModel):
    """One stored turn of a conversation."""
    model_config = ConfigDict(frozen=True)

    role: str
    content: str
    timestamp: float = Field(default_factory=time.time)


class ConversationContext(BaseModel):
    """Per-customer conversation value; replaced (never mutated) by each pipeline stage."""
    model_config = ConfigDict(frozen=True)

    customer_id: str
    state: ConversationState = ConversationState.GREETING
    messages: List[ChatMessage] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    revision: int = 0
    updated_at: float = Field(default_factory=time.time)

    def history(self) -> List[Dict[str, str]]:
        return [{"role": message.role, "content": message.content} for message in self.messages]


class ChatRequest(BaseModel):
    """Request payload for chat API."""
    customer_id: str = Field(min_length=1)
    message: str

    @field_validator("message")
    @classmethod
    def message_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message must not be empty")
        return value


class ChatResponse(BaseModel):
    """Response payload returned by the chat API."""
    reply: str
    state: ConversationState
    escalated: bool


class ResolveRequest(BaseModel):
    notes: Optional[str] = None
