"""
Receipt rendering.

A receipt is derived entirely from its payment: the same payment always
renders the same serial, body and hash, so a receipt can be re-verified
later by rendering the payment again and comparing hashes.
"""
import hashlib
import hmac
import uuid

from fuep_payments.models import Payment, Receipt
from fuep_payments.utils import as_utc, format_minor_units, utcnow

RECEIPT_NAMESPACE = uuid.UUID("6f1c1b0e-3d1f-4c1a-9a43-52a3b4f0c7d1")


class ReceiptGenerator:
    def __init__(self, serial_prefix: str = "FUEP", signing_key: str = ""):
        self.serial_prefix = serial_prefix
        self.signing_key = signing_key

    @classmethod
    def from_settings(cls, settings) -> "ReceiptGenerator":
        return cls(serial_prefix=settings.RECEIPT_SERIAL_PREFIX, signing_key=settings.RECEIPT_SIGNING_KEY)

    def serial_for(self, payment: Payment) -> str:
        issued = as_utc(payment.created_at) or utcnow()
        digest = hashlib.sha256(payment.id.encode()).hexdigest()[:10].upper()
        return f"{self.serial_prefix}-{issued.year}-{digest}"

    def render(self, payment: Payment) -> str:
        """Canonical text body of the receipt."""
        paid_at = as_utc(payment.settled_at)
        lines = [
            "FEDERAL UNIVERSITY OF EDUCATION, PANKSHIN",
            "POST-UTME PAYMENT RECEIPT",
            f"Serial: {self.serial_for(payment)}",
            f"Payment ID: {payment.id}",
            f"Candidate: {payment.candidate_id}",
            f"Purpose: {payment.purpose}",
            f"Session: {payment.session or '-'}",
            f"Amount: {format_minor_units(payment.amount, payment.currency)}",
            f"Provider: {payment.provider}",
            f"Reference: {payment.provider_reference}",
            f"Paid At: {paid_at.isoformat() if paid_at else '-'}",
        ]
        return "\n".join(lines)

    @staticmethod
    def content_hash_for(body: str) -> str:
        return hashlib.sha256(body.encode("utf-8")).hexdigest()

    def qr_token_for(self, serial: str, content_hash: str) -> str:
        return hmac.new(
            self.signing_key.encode(), f"{serial}{content_hash}".encode(), hashlib.sha256
        ).hexdigest()[:32]

    def generate(self, payment: Payment) -> Receipt:
        """Build (not persist) the receipt for a succeeded payment."""
        body = self.render(payment)
        serial = self.serial_for(payment)
        content_hash = self.content_hash_for(body)
        return Receipt(
            id=str(uuid.uuid5(RECEIPT_NAMESPACE, payment.id)),
            payment_id=payment.id,
            serial=serial,
            qr_token=self.qr_token_for(serial, content_hash),
            content_hash=content_hash,
            body=body,
        )

    def matches(self, receipt: Receipt, payment: Payment) -> bool:
        """True when the stored receipt still agrees with the payment it was issued for."""
        expected_hash = self.content_hash_for(self.render(payment))
        return (
            hmac.compare_digest(receipt.content_hash, expected_hash)
            and hmac.compare_digest(receipt.content_hash, self.content_hash_for(receipt.body))
            and hmac.compare_digest(receipt.qr_token, self.qr_token_for(receipt.serial, receipt.content_hash))
        )
