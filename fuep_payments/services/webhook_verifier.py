"""
Webhook authentication.

Every gateway signs ``timestamp + "." + raw_body`` with its shared secret.
The signature is compared in constant time and the timestamp must fall
inside the freshness window, so a captured request cannot be replayed later.
"""
import hashlib
import hmac
from datetime import datetime
from typing import Optional, Union

from fuep_payments.errors import SignatureInvalid, TimestampStale
from fuep_payments.utils import parse_timestamp, utcnow

DEFAULT_TOLERANCE_SECONDS = 300


class WebhookVerifier:
    def __init__(self, tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS, digestmod=hashlib.sha512):
        self.tolerance_seconds = tolerance_seconds
        self.digestmod = digestmod

    @staticmethod
    def _signed_bytes(raw_payload: bytes, timestamp: str) -> bytes:
        return timestamp.encode() + b"." + raw_payload

    def sign(self, raw_payload: bytes, timestamp: Union[str, int], secret: str) -> str:
        """Hex signature a gateway would send for this body and timestamp."""
        return hmac.new(
            secret.encode(), self._signed_bytes(raw_payload, str(timestamp)), self.digestmod
        ).hexdigest()

    def verify(
        self,
        raw_payload: bytes,
        signature: Optional[str],
        timestamp: Optional[str],
        secret: Optional[str],
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Returns True or raises.

        Raises:
            SignatureInvalid: no secret configured, no signature, or mismatch
            TimestampStale: timestamp missing, unparseable or outside the window
        """
        if not secret:
            raise SignatureInvalid("webhook secret not configured")
        if not signature:
            raise SignatureInvalid("signature missing")

        try:
            sent_at = parse_timestamp(timestamp)
        except ValueError as exc:
            raise TimestampStale("timestamp missing or unparseable") from exc

        skew = abs(((now or utcnow()) - sent_at).total_seconds())
        if skew > self.tolerance_seconds:
            raise TimestampStale("timestamp outside tolerance", skew_seconds=int(skew))

        expected = self.sign(raw_payload, str(timestamp).strip(), secret)
        if not hmac.compare_digest(expected.encode(), signature.strip().lower().encode()):
            raise SignatureInvalid("signature mismatch")
        return True
