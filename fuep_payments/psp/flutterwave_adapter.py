from __future__ import annotations

import json
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

from fuep_payments.errors import MalformedPayload, ProviderUnavailable
from fuep_payments.utils import parse_timestamp, to_major_units, to_minor_units

from .adapter import (
    CanonicalWebhookEvent,
    InitiationResult,
    PaymentContact,
    PSPAdapter,
    PSPProvider,
    ReportedStatus,
    StatusQueryResult,
    jsonable,
)


NOT_FOUND_MARKER = "no transaction"


class FlutterwaveAdapter(PSPAdapter):
    """Flutterwave v3 hosted payments (``/v3/payments``) with verify-by-reference."""

    provider_name = PSPProvider.FLUTTERWAVE.value
    signature_header = "verif-hash"
    timestamp_header = "x-timestamp"
    supports_verification = True

    def __init__(
        self,
        secret_key: Optional[str] = None,
        public_key: Optional[str] = None,
        base_url: str = "https://api.flutterwave.com",
        callback_url: Optional[str] = None,
        **kwargs
    ):
        super().__init__(**kwargs)
        self.secret_key = secret_key
        self.public_key = public_key
        self.base_url = base_url.rstrip("/")
        self.callback_url = callback_url

    @classmethod
    def from_settings(cls, settings, client=None) -> "FlutterwaveAdapter":
        return cls(
            secret_key=settings.FLUTTERWAVE_SECRET_KEY,
            public_key=settings.FLUTTERWAVE_PUBLIC_KEY,
            base_url=settings.FLUTTERWAVE_BASE_URL,
            callback_url=settings.PAYMENT_CALLBACK_URL,
            webhook_secret=settings.FLUTTERWAVE_WEBHOOK_SECRET,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
            client=client,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.secret_key)

    @property
    def _auth_header(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.secret_key}"}

    def initiate(self, candidate_id, purpose, amount, currency, contact: Optional[PaymentContact] = None):
        if not self.enabled:
            raise ProviderUnavailable("flutterwave is not configured", provider=self.provider_name)

        contact = contact or PaymentContact()
        tx_ref = f"FUEP-{uuid.uuid4().hex[:20].upper()}"
        payload = {
            "tx_ref": tx_ref,
            "amount": str(to_major_units(amount)),
            "currency": currency.upper(),
            "redirect_url": self.callback_url,
            "customer": {
                "email": contact.email or "",
                "phonenumber": contact.phone or "",
                "name": contact.name or candidate_id,
            },
            "meta": {"candidate_id": candidate_id, "purpose": purpose},
            "customizations": {"title": "FUEP Post-UTME", "description": f"{purpose} payment"},
        }
        response = self._request(
            "POST", f"{self.base_url}/v3/payments", initiation=True, json=payload, headers=self._auth_header
        )
        data = self._response_json(response)

        link = (data.get("data") or {}).get("link")
        if data.get("status") != "success" or not link:
            raise ProviderUnavailable(
                f"flutterwave did not return a payment link: {data.get('message')}",
                provider=self.provider_name,
            )
        return InitiationResult(provider_reference=tx_ref, payment_url=link, raw=jsonable(data))

    def query_status(self, provider_reference: str) -> StatusQueryResult:
        if not self.enabled:
            raise ProviderUnavailable("flutterwave is not configured", provider=self.provider_name)

        response = self._request(
            "GET",
            f"{self.base_url}/v3/transactions/verify_by_reference",
            passthrough=(400, 404),
            params={"tx_ref": provider_reference},
            headers=self._auth_header,
        )
        if response.status_code >= 400:
            return self._not_found_as_pending(provider_reference, response)
        body = self._response_json(response)
        data = body.get("data") or {}

        try:
            amount = to_minor_units(data["amount"]) if data.get("amount") is not None else None
        except ValueError:
            amount = None
        return StatusQueryResult(
            provider_reference=provider_reference,
            reported_status=self.normalize_status(data.get("status")),
            amount=amount,
            currency=str(data["currency"]).upper() if data.get("currency") else None,
            raw=jsonable(body),
        )

    def _not_found_as_pending(self, provider_reference: str, response) -> StatusQueryResult:
        # verify_by_reference answers 400/404 until the candidate completes checkout
        try:
            body = json.loads(response.content, parse_float=Decimal)
        except ValueError:
            body = {}
        message = str(body.get("message") or "") if isinstance(body, dict) else ""
        if NOT_FOUND_MARKER not in message.lower():
            raise ProviderUnavailable(
                f"flutterwave returned HTTP {response.status_code}: {message or 'no message'}",
                provider=self.provider_name,
                status_code=response.status_code,
            )
        return StatusQueryResult(
            provider_reference=provider_reference,
            reported_status=ReportedStatus.PENDING,
            raw=jsonable(body),
        )

    def parse_webhook(self, raw_payload, signature, timestamp) -> CanonicalWebhookEvent:
        self._require_signature(signature)
        body = self._load_json(raw_payload)
        if not isinstance(body, dict) or not isinstance(body.get("data"), dict):
            raise MalformedPayload("expected an object with a data field", provider=self.provider_name)

        data: Dict[str, Any] = body["data"]
        tx_ref = str(data.get("tx_ref") or "").strip()
        if not tx_ref or data.get("status") is None or data.get("amount") is None or not data.get("currency"):
            raise MalformedPayload("tx_ref, status, amount and currency are required", provider=self.provider_name)

        try:
            amount = to_minor_units(data["amount"])
        except ValueError as exc:
            raise MalformedPayload("amount is not a number", provider=self.provider_name) from exc

        occurred_at = None
        if data.get("created_at"):
            try:
                occurred_at = parse_timestamp(data["created_at"])
            except ValueError:
                occurred_at = None

        meta = data.get("meta") or body.get("meta_data") or {}
        if not isinstance(meta, dict):
            meta = {}

        return CanonicalWebhookEvent(
            provider_reference=tx_ref,
            reported_status=self.normalize_status(data.get("status")),
            amount=amount,
            currency=str(data["currency"]).upper(),
            occurred_at=occurred_at,
            candidate_id=meta.get("candidate_id"),
            purpose=meta.get("purpose"),
            raw=jsonable(body),
        )
