"""
PSP Adapter Base Class and Interface.
Provides uniform interface for the payment gateways used by the portal (Remita, Flutterwave, ...).
"""
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import httpx

from fuep_payments.errors import (
    InvalidAmount,
    InvalidSignature,
    MalformedPayload,
    ProviderUnavailable,
)


class PSPProvider(str, Enum):
    """Supported PSP providers."""
    REMITA = "remita"
    FLUTTERWAVE = "flutterwave"
    MOCK = "mock"


class ReportedStatus(str, Enum):
    """Gateway status after normalisation."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


@dataclass
class PaymentContact:
    email: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None


@dataclass
class InitiationResult:
    provider_reference: str
    payment_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CanonicalWebhookEvent:
    """Gateway-independent view of a webhook notification."""
    provider_reference: str
    reported_status: ReportedStatus
    amount: int                      # minor units
    currency: str
    occurred_at: Optional[datetime] = None
    candidate_id: Optional[str] = None
    purpose: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StatusQueryResult:
    provider_reference: str
    reported_status: ReportedStatus
    amount: Optional[int] = None
    currency: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class PSPAdapter(ABC):
    """
    Base adapter for Payment Service Providers.
    All PSP implementations must inherit from this class.

    Construction never fails on missing credentials; the adapter simply
    reports ``enabled = False`` and the registry skips it.
    """

    provider_name: str = ""
    signature_header: str = "x-signature"
    timestamp_header: str = "x-timestamp"
    supports_verification: bool = False

    def __init__(
        self,
        webhook_secret: Optional[str] = None,
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
        **kwargs
    ):
        """
        Initialize PSP adapter.

        Args:
            webhook_secret: Shared secret used to sign inbound webhooks
            timeout: Seconds before an outbound gateway call is abandoned
            client: Optional pre-built httpx client (tests inject a MockTransport)
            **kwargs: Provider-specific configuration
        """
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self._client = client
        self.config = kwargs

    @property
    @abstractmethod
    def enabled(self) -> bool:
        """True only when every credential the gateway needs is present."""

    @abstractmethod
    def initiate(
        self,
        candidate_id: str,
        purpose: str,
        amount: int,
        currency: str,
        contact: Optional[PaymentContact] = None,
    ) -> InitiationResult:
        """
        Start a payment with the gateway.

        Args:
            candidate_id: Candidate paying
            purpose: Payment purpose (application_fee, ...)
            amount: Amount in minor units (kobo)
            currency: ISO currency code
            contact: Payer contact details forwarded to the gateway

        Returns:
            InitiationResult with the gateway reference and redirect URL

        Raises:
            ProviderUnavailable: gateway unreachable, timed out or misconfigured
            InvalidAmount: gateway rejected the amount/currency pair
        """

    @abstractmethod
    def parse_webhook(
        self,
        raw_payload: bytes,
        signature: Optional[str],
        timestamp: Optional[str],
    ) -> CanonicalWebhookEvent:
        """
        Turn an authenticated webhook body into a canonical event.

        Args:
            raw_payload: Raw webhook payload bytes
            signature: Signature header value
            timestamp: Timestamp header value

        Raises:
            InvalidSignature: signature header missing
            MalformedPayload: body is not in the gateway's format
        """

    def query_status(self, provider_reference: str) -> StatusQueryResult:
        """Ask the gateway for the current status of a transaction."""
        raise ProviderUnavailable(
            f"{self.provider_name} does not support status queries",
            provider=self.provider_name,
        )

    def normalize_status(self, provider_status: Any) -> ReportedStatus:
        """
        Normalize provider-specific status to succeeded / failed / pending.
        Override in subclasses for provider-specific codes.
        """
        status_map = {
            "succeeded": ReportedStatus.SUCCEEDED,
            "success": ReportedStatus.SUCCEEDED,
            "successful": ReportedStatus.SUCCEEDED,
            "failed": ReportedStatus.FAILED,
            "cancelled": ReportedStatus.FAILED,
            "pending": ReportedStatus.PENDING,
        }
        return status_map.get(str(provider_status or "").strip().lower(), ReportedStatus.PENDING)

    # -- helpers -------------------------------------------------------------

    def _request(
        self,
        method: str,
        url: str,
        initiation: bool = False,
        passthrough: Tuple[int, ...] = (),
        **kwargs
    ) -> httpx.Response:
        """
        Send one gateway call. Transport failures and non-2xx answers become
        ProviderUnavailable. On the initiation path a 400/422 means the gateway
        refused the amount (InvalidAmount). Codes in ``passthrough`` are handed
        back for the caller to interpret.
        """
        try:
            if self._client is not None:
                response = self._client.request(method, url, timeout=self.timeout, **kwargs)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable(f"{self.provider_name} timed out", provider=self.provider_name) from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailable(
                f"{self.provider_name} unreachable: {exc.__class__.__name__}",
                provider=self.provider_name,
            ) from exc

        if response.status_code in passthrough:
            return response
        if initiation and response.status_code in (400, 422):
            raise InvalidAmount(
                f"{self.provider_name} rejected the request",
                provider=self.provider_name,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise ProviderUnavailable(
                f"{self.provider_name} returned HTTP {response.status_code}",
                provider=self.provider_name,
                status_code=response.status_code,
            )
        return response

    def _response_json(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            data = json.loads(response.content, parse_float=Decimal)
        except ValueError as exc:
            raise ProviderUnavailable(
                f"{self.provider_name} returned an unreadable response",
                provider=self.provider_name,
            ) from exc
        if not isinstance(data, dict):
            raise ProviderUnavailable(
                f"{self.provider_name} returned an unexpected response",
                provider=self.provider_name,
            )
        return data

    def _require_signature(self, signature: Optional[str]) -> None:
        if not signature:
            raise InvalidSignature("missing signature header", provider=self.provider_name)

    @staticmethod
    def _load_json(raw_payload: bytes) -> Any:
        """Decode a webhook body; floats become Decimal so amounts stay exact."""
        try:
            return json.loads(raw_payload, parse_float=Decimal)
        except (ValueError, UnicodeDecodeError) as exc:
            raise MalformedPayload("payload is not valid JSON") from exc

    def __repr__(self):
        return f"<{self.__class__.__name__}(provider={self.provider_name}, enabled={self.enabled})>"


def jsonable(data: Any) -> Any:
    """Decimals are not JSON serialisable; stored provider data keeps them as strings."""
    if isinstance(data, dict):
        return {k: jsonable(v) for k, v in data.items()}
    if isinstance(data, list):
        return [jsonable(v) for v in data]
    if isinstance(data, Decimal):
        return str(data)
    return data
