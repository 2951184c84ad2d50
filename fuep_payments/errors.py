"""
Typed payment errors.

Every failure the payment subsystem can report has its own class so callers
branch on the kind instead of matching message strings. ``http_status`` is the
status the API layer answers with; webhook rejections are collapsed into a
generic response by the router regardless of the concrete class.
"""
from typing import Any, Dict, Optional


class PaymentError(Exception):
    """Base class for all payment subsystem errors."""

    code = "payment_error"
    http_status = 500

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


# -- initiation time ------------------------------------------------------

class ProviderUnavailable(PaymentError):
    """Gateway unreachable, timed out, or misconfigured."""
    code = "provider_unavailable"
    http_status = 503


class InvalidAmount(PaymentError):
    """Amount/currency rejected locally or by the gateway."""
    code = "invalid_amount"
    http_status = 422


class NoProviderAvailable(PaymentError):
    code = "no_provider_available"
    http_status = 503


# -- webhook time ---------------------------------------------------------

class UnknownProvider(PaymentError):
    code = "unknown_provider"
    http_status = 404


class SignatureInvalid(PaymentError):
    code = "signature_invalid"
    http_status = 400


class InvalidSignature(SignatureInvalid):
    """Raised by adapters when a gateway-specific signature check fails."""
    code = "invalid_signature"


class TimestampStale(PaymentError):
    code = "timestamp_stale"
    http_status = 400


class MalformedPayload(PaymentError):
    code = "malformed_payload"
    http_status = 400


class PaymentNotFound(PaymentError):
    code = "payment_not_found"
    http_status = 404


class AmountMismatch(PaymentError):
    """Reported amount/currency differs from the stored payment."""
    code = "amount_mismatch"
    http_status = 400


class ReferenceMismatch(PaymentError):
    """Webhook metadata names a different candidate or purpose than the stored payment."""
    code = "reference_mismatch"
    http_status = 400


# -- receipt time ---------------------------------------------------------

class PaymentNotSuccessful(PaymentError):
    code = "payment_not_successful"
    http_status = 409


# Webhook failures that must reach the operator channel and only ever produce
# a generic rejection for the caller.
WEBHOOK_REJECTIONS = (SignatureInvalid, TimestampStale, MalformedPayload, AmountMismatch, ReferenceMismatch)


def describe(exc: PaymentError, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Flatten an error into structured log fields."""
    fields = {"error_code": exc.code, "error": exc.message}
    fields.update(exc.context)
    if extra:
        fields.update(extra)
    return fields
