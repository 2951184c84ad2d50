"""Mock gateway for environments without live credentials. Never talks to the network."""
from __future__ import annotations

import uuid
from typing import Optional

from fuep_payments.errors import MalformedPayload
from fuep_payments.utils import parse_timestamp

from .adapter import (
    CanonicalWebhookEvent,
    InitiationResult,
    PaymentContact,
    PSPAdapter,
    PSPProvider,
    jsonable,
)


class MockAdapter(PSPAdapter):
    provider_name = PSPProvider.MOCK.value
    signature_header = "x-mock-signature"
    timestamp_header = "x-mock-timestamp"
    supports_verification = False

    def __init__(self, base_url: str = "https://mock-payment.example.com", **kwargs):
        super().__init__(**kwargs)
        self.base_url = base_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings, client=None) -> "MockAdapter":
        return cls(
            base_url=settings.MOCK_BASE_URL,
            webhook_secret=settings.MOCK_WEBHOOK_SECRET,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
            client=client,
        )

    @property
    def enabled(self) -> bool:
        return True

    def initiate(self, candidate_id, purpose, amount, currency, contact: Optional[PaymentContact] = None):
        reference = f"MOCK-{uuid.uuid4().hex[:12].upper()}"
        return InitiationResult(
            provider_reference=reference,
            payment_url=f"{self.base_url}/pay/{reference}",
            raw={"candidate_id": candidate_id, "purpose": purpose, "amount": amount, "currency": currency},
        )

    def parse_webhook(self, raw_payload, signature, timestamp) -> CanonicalWebhookEvent:
        """Payload: {reference, status, amount (minor units), currency, occurred_at?, candidate_id?, purpose?}"""
        self._require_signature(signature)
        data = self._load_json(raw_payload)
        if not isinstance(data, dict):
            raise MalformedPayload("notification is not an object", provider=self.provider_name)

        reference = str(data.get("reference") or "").strip()
        amount = data.get("amount")
        if not reference or data.get("status") is None or not data.get("currency"):
            raise MalformedPayload("reference, status and currency are required", provider=self.provider_name)
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise MalformedPayload("amount must be an integer in minor units", provider=self.provider_name)

        occurred_at = None
        if data.get("occurred_at"):
            try:
                occurred_at = parse_timestamp(data["occurred_at"])
            except ValueError:
                occurred_at = None

        return CanonicalWebhookEvent(
            provider_reference=reference,
            reported_status=self.normalize_status(data["status"]),
            amount=amount,
            currency=str(data["currency"]).upper(),
            occurred_at=occurred_at,
            candidate_id=data.get("candidate_id"),
            purpose=data.get("purpose"),
            raw=jsonable(data),
        )
