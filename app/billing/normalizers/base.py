from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

from app.billing.types import EventEnvelope, NormalizedPaymentEvent


class JournalEntryLike(Protocol):
    id: int | None
    provider: str
    provider_event_id: str
    event_type: str
    payload: Mapping[str, object]
    origin: str


class ProviderNormalizer(Protocol):
    provider: str

    def extract_envelope(self, payload: Mapping[str, object]) -> EventEnvelope:
        """Read the event id and native type needed to journal a delivery."""

    def normalize(self, entry: JournalEntryLike) -> NormalizedPaymentEvent:
        """Map a journal entry onto the shared event shape or raise NormalizationError."""
