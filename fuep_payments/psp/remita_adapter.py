"""
Remita adapter.

Generates an RRR (Remita Retrieval Reference) through the e-channel
``paymentinit`` API and queries its status with the merchant hash.
"""
from __future__ import annotations

import hashlib
import json
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional
from urllib.parse import urlencode

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

# Remita answers with numeric status codes; words show up on older webhook payloads.
REMITA_STATUS_CODES = {
    "00": ReportedStatus.SUCCEEDED,
    "01": ReportedStatus.SUCCEEDED,
    "021": ReportedStatus.PENDING,
    "025": ReportedStatus.PENDING,
}

REMITA_STATUS_WORDS = {
    "success": ReportedStatus.SUCCEEDED,
    "successful": ReportedStatus.SUCCEEDED,
    "pending": ReportedStatus.PENDING,
    "processing": ReportedStatus.PENDING,
}

# paymentinit accepts "00" (approved) or "025" (RRR generated)
INIT_OK_CODES = ("00", "025")


class RemitaAdapter(PSPAdapter):
    provider_name = PSPProvider.REMITA.value
    signature_header = "x-remita-signature"
    timestamp_header = "x-remita-timestamp"
    supports_verification = True

    def __init__(
        self,
        merchant_id: Optional[str] = None,
        api_key: Optional[str] = None,
        service_type_id: Optional[str] = None,
        base_url: str = "https://remitademo.net",
        callback_url: Optional[str] = None,
        **kwargs
    ):
        super().__init__(**kwargs)
        self.merchant_id = merchant_id
        self.api_key = api_key
        self.service_type_id = service_type_id
        self.base_url = base_url.rstrip("/")
        self.callback_url = callback_url

    @classmethod
    def from_settings(cls, settings, client=None) -> "RemitaAdapter":
        return cls(
            merchant_id=settings.REMITA_MERCHANT_ID,
            api_key=settings.REMITA_SECRET_KEY,
            service_type_id=settings.REMITA_SERVICE_TYPE_ID,
            base_url=settings.REMITA_BASE_URL,
            callback_url=settings.PAYMENT_CALLBACK_URL,
            webhook_secret=settings.REMITA_WEBHOOK_SECRET,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
            client=client,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.merchant_id and self.api_key and self.service_type_id)

    def _sha512(self, *parts: str) -> str:
        return hashlib.sha512("".join(parts).encode()).hexdigest()

    def initiate(self, candidate_id, purpose, amount, currency, contact: Optional[PaymentContact] = None):
        if not self.enabled:
            raise ProviderUnavailable("remita is not configured", provider=self.provider_name)

        contact = contact or PaymentContact()
        order_id = uuid.uuid4().hex
        total = f"{to_major_units(amount):.2f}"
        api_hash = self._sha512(self.merchant_id, self.service_type_id, order_id, total, self.api_key)

        body = {
            "serviceTypeId": self.service_type_id,
            "amount": total,
            "orderId": order_id,
            "payerName": contact.name or candidate_id,
            "payerEmail": contact.email or "",
            "payerPhone": contact.phone or "",
            "description": f"FUEP {purpose} payment",
            "customFields": [
                {"name": "candidate_id", "value": candidate_id},
                {"name": "purpose", "value": purpose},
            ],
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"remitaConsumerKey={self.merchant_id},remitaConsumerToken={api_hash}",
        }
        response = self._request(
            "POST",
            f"{self.base_url}/remita/exapp/api/v1/send/api/echannelsvc/merchant/api/paymentinit",
            initiation=True,
            content=json.dumps(body),
            headers=headers,
        )
        data = self._parse_remita_body(response.text)

        code = str(data.get("statuscode", ""))
        rrr = str(data.get("RRR") or "").strip()
        if code not in INIT_OK_CODES or not rrr:
            raise ProviderUnavailable(
                f"remita refused to generate an RRR: {data.get('status') or code}",
                provider=self.provider_name,
                statuscode=code,
            )

        return InitiationResult(
            provider_reference=rrr,
            payment_url=self._payment_url(rrr),
            raw={"orderId": order_id, "statuscode": code},
        )

    def _payment_url(self, rrr: str) -> str:
        query = {
            "merchantId": self.merchant_id,
            "hash": self._sha512(self.merchant_id, rrr, self.api_key),
            "rrr": rrr,
        }
        if self.callback_url:
            query["responseurl"] = self.callback_url
        return f"{self.base_url}/remita/ecomm/finalize.reg?{urlencode(query)}"

    def _parse_remita_body(self, text: str) -> Dict[str, Any]:
        # paymentinit answers as JSONP: jsonp ({...})
        body = text.strip()
        if body.startswith("jsonp"):
            body = body[body.find("(") + 1:body.rfind(")")]
        try:
            data = json.loads(body, parse_float=Decimal)
        except ValueError as exc:
            raise ProviderUnavailable("remita returned an unreadable response", provider=self.provider_name) from exc
        if not isinstance(data, dict):
            raise ProviderUnavailable("remita returned an unexpected response", provider=self.provider_name)
        return data

    def normalize_status(self, provider_status: Any) -> ReportedStatus:
        value = str(provider_status or "").strip().lower()
        if value in REMITA_STATUS_CODES:
            return REMITA_STATUS_CODES[value]
        return REMITA_STATUS_WORDS.get(value, ReportedStatus.FAILED)

    def query_status(self, provider_reference: str) -> StatusQueryResult:
        if not self.enabled:
            raise ProviderUnavailable("remita is not configured", provider=self.provider_name)

        status_hash = self._sha512(provider_reference, self.api_key, self.merchant_id)
        response = self._request(
            "GET",
            f"{self.base_url}/remita/exapp/api/v1/send/api/echannelsvc/"
            f"{self.merchant_id}/{provider_reference}/{status_hash}/status.reg",
            headers={"Content-Type": "application/json"},
        )
        data = self._parse_remita_body(response.text)

        amount = data.get("amount")
        try:
            minor = to_minor_units(amount) if amount is not None else None
        except ValueError:
            minor = None
        return StatusQueryResult(
            provider_reference=provider_reference,
            reported_status=self.normalize_status(data.get("status")),
            amount=minor,
            currency=str(data.get("currency") or "NGN").upper(),
            raw=jsonable(data),
        )

    def parse_webhook(self, raw_payload, signature, timestamp) -> CanonicalWebhookEvent:
        self._require_signature(signature)
        data = self._load_json(raw_payload)

        # Remita batches notifications; only single-transaction batches are accepted.
        if isinstance(data, list):
            if len(data) != 1:
                raise MalformedPayload("expected exactly one notification", provider=self.provider_name)
            data = data[0]
        if not isinstance(data, dict):
            raise MalformedPayload("notification is not an object", provider=self.provider_name)

        rrr = str(data.get("rrr") or "").strip()
        status = data.get("status")
        if not rrr or status is None or data.get("amount") is None:
            raise MalformedPayload("rrr, status and amount are required", provider=self.provider_name)

        try:
            amount = to_minor_units(data["amount"])
        except ValueError as exc:
            raise MalformedPayload("amount is not a number", provider=self.provider_name) from exc

        occurred_at = None
        raw_date = data.get("transactiondate") or data.get("paymentDate")
        if raw_date:
            try:
                occurred_at = parse_timestamp(raw_date)
            except ValueError:
                occurred_at = None

        fields = {
            f.get("name"): f.get("value")
            for f in data.get("customFields") or []
            if isinstance(f, dict)
        }

        return CanonicalWebhookEvent(
            provider_reference=rrr,
            reported_status=self.normalize_status(status),
            amount=amount,
            currency=str(data.get("currency") or "NGN").upper(),
            occurred_at=occurred_at,
            candidate_id=fields.get("candidate_id"),
            purpose=fields.get("purpose"),
            raw=jsonable(data),
        )
