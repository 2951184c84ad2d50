"""
FUEP payments – SQLAlchemy Models

This file defines the data model for:
- Payments (one row per payment attempt, never deleted)
- Payment Events (audit trail of lifecycle transitions)
- Receipts (exactly one per successful payment)
- Webhook Events (raw inbound webhook log / dead letter queue)
"""
import uuid
from enum import Enum

from sqlalchemy import (
    Column, Integer, BigInteger, String, Text, DateTime, ForeignKey,
    JSON, func, UniqueConstraint, Index, CheckConstraint
)
from sqlalchemy.orm import relationship

from .db import Base
from .utils import utcnow


class PaymentStatus(str, Enum):
    """Lifecycle states. Everything except INITIATED is terminal."""
    INITIATED = "initiated"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.FAILED, PaymentStatus.EXPIRED})


class PaymentPurpose(str, Enum):
    APPLICATION_FEE = "application_fee"
    ACCEPTANCE_FEE = "acceptance_fee"
    SCHOOL_FEES = "school_fees"
    OTHER = "other"


# Purposes whose settlement moves the candidate forward in the admissions workflow.
STATUS_AFFECTING_PURPOSES = frozenset({
    PaymentPurpose.APPLICATION_FEE,
    PaymentPurpose.ACCEPTANCE_FEE,
    PaymentPurpose.SCHOOL_FEES,
})


def _uuid() -> str:
    return str(uuid.uuid4())


# =====================================================
# PAYMENT MODEL
# =====================================================

class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=_uuid)
    candidate_id = Column(String(64), nullable=False, index=True)
    purpose = Column(String(32), nullable=False)
    session = Column(String(16), nullable=True, index=True)   # "2024/2025"

    provider = Column(String(32), nullable=False)
    provider_reference = Column(String(128), nullable=False)
    payment_url = Column(String(512), nullable=True)

    amount = Column(BigInteger, nullable=False)               # in kobo
    currency = Column(String(8), nullable=False, default="NGN")
    status = Column(String(16), nullable=False, default=PaymentStatus.INITIATED.value, index=True)

    contact_email = Column(String(255), nullable=True)
    contact_phone = Column(String(32), nullable=True)

    expires_at = Column(DateTime(timezone=True), nullable=True)
    settled_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(),
                        onupdate=utcnow, nullable=False)

    receipt = relationship("Receipt", back_populates="payment", uselist=False)
    events = relationship("PaymentEvent", back_populates="payment",
                          order_by="PaymentEvent.id")

    __table_args__ = (
        UniqueConstraint("provider", "provider_reference", name="uq_payments_provider_reference"),
        Index("ix_payments_candidate_purpose", "candidate_id", "purpose"),
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
    )

    @property
    def is_terminal(self) -> bool:
        return PaymentStatus(self.status) in TERMINAL_STATUSES

    def __repr__(self):
        return f"<Payment(id={self.id}, provider={self.provider}, ref={self.provider_reference}, status={self.status})>"


# =====================================================
# PAYMENT EVENT MODEL
# =====================================================

class PaymentEvent(Base):
    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True)
    payment_id = Column(String(36), ForeignKey("payments.id", ondelete="CASCADE"),
                        nullable=False, index=True)

    event_type = Column(String(32), nullable=False)   # initiated / webhook_received / status_changed / verified / expired
    source = Column(String(16), nullable=False)       # initiate / webhook / verify / sweep
    from_status = Column(String(16), nullable=True)
    to_status = Column(String(16), nullable=True)

    signature_hash = Column(String(64), nullable=True)
    provider_data = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    payment = relationship("Payment", back_populates="events")

    def __repr__(self):
        return f"<PaymentEvent({self.payment_id}) {self.event_type} {self.from_status}->{self.to_status}>"


# =====================================================
# RECEIPT MODEL
# =====================================================

class Receipt(Base):
    __tablename__ = "receipts"

    id = Column(String(36), primary_key=True)
    payment_id = Column(String(36), ForeignKey("payments.id", ondelete="CASCADE"),
                        nullable=False, unique=True, index=True)

    serial = Column(String(32), nullable=False, unique=True, index=True)
    qr_token = Column(String(64), nullable=False, unique=True)
    content_hash = Column(String(64), nullable=False)   # sha256 of body
    body = Column(Text, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    payment = relationship("Payment", back_populates="receipt")

    def __repr__(self):
        return f"<Receipt(serial={self.serial}, payment_id={self.payment_id})>"


# =====================================================
# WEBHOOK EVENT LOG (Dead Letter Queue)
# =====================================================

class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(32), nullable=False, index=True)  # remita, flutterwave

    headers = Column(JSON, nullable=True)
    payload = Column(JSON, nullable=False)

    status = Column(String(32), default="received", nullable=False, index=True)  # received, processed, rejected, failed
    error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<WebhookEvent(id={self.id}, provider={self.provider}, status={self.status})>"
