# fuep_payments/schemas_pkg/__init__.py

from .payments import (
    PaymentInitRequest,
    PaymentInitResponse,
    PaymentOut,
    ReceiptOut,
    ReceiptVerification,
    WebhookAck,
    ProviderState,
    ProvidersStatusResponse,
    PaymentStatistics,
)

__all__ = [
    "PaymentInitRequest",
    "PaymentInitResponse",
    "PaymentOut",
    "ReceiptOut",
    "ReceiptVerification",
    "WebhookAck",
    "ProviderState",
    "ProvidersStatusResponse",
    "PaymentStatistics",
]
