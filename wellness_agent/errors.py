from __future__ import annotations


class GenerationServiceError(Exception):
    """Base error for failures of the generative-text service."""


class RateLimitError(GenerationServiceError):
    """The generative-text service rejected the call because of quota or rate limits."""


class AuthenticationError(GenerationServiceError):
    """The generative-text service rejected the configured credentials."""


class TransientGenerationError(GenerationServiceError):
    """Network, timeout or server-side failure of the generative-text service."""


class ConcurrentUpdateError(Exception):
    """A conversation write lost a compare-and-swap race against a newer revision."""

    def __init__(self, customer_id: str, expected: int, actual: int) -> None:
        super().__init__(f"customer={customer_id} expected revision {expected}, found {actual}")
        self.customer_id = customer_id
        self.expected = expected
        self.actual = actual


class EscalationDeliveryError(Exception):
    """A notification channel could not deliver an escalation record."""
