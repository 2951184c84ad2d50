from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from fuep_payments.models import PaymentPurpose


class PaymentInitRequest(BaseModel):
    candidate_id: str = Field(..., min_length=1, max_length=64)
    purpose: PaymentPurpose
    amount: int               # in kobo
    currency: str = "NGN"
    session: Optional[str] = Field(None, max_length=16)   # "2024/2025"
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=32)
    name: Optional[str] = None
    preferred_providers: Optional[List[str]] = None


class PaymentInitResponse(BaseModel):
    payment_id: Optional[str] = None
    provider: str
    provider_reference: str
    payment_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    status: str
    reconciliation_required: bool = False


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    candidate_id: str
    purpose: str
    session: Optional[str] = None
    provider: str
    provider_reference: str
    amount: int
    currency: str
    status: str
    payment_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None


class ReceiptOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    payment_id: str
    serial: str
    qr_token: str
    content_hash: str
    body: str
    created_at: Optional[datetime] = None


class ReceiptVerification(BaseModel):
    serial: str
    valid: bool
    payment_id: Optional[str] = None


class WebhookAck(BaseModel):
    status: str = "ok"
    duplicate: bool = False


class ProviderState(BaseModel):
    enabled: bool
    is_primary: bool


class ProvidersStatusResponse(BaseModel):
    providers: Dict[str, ProviderState]
    available: bool


class StatusTotals(BaseModel):
    count: int
    amount: int


class PurposeTotals(StatusTotals):
    collected_amount: int


class PaymentStatistics(BaseModel):
    session: Optional[str] = None
    currency: str
    total_payments: int
    collected_amount: int         # kobo, succeeded payments only
    by_status: Dict[str, StatusTotals]
    by_purpose: Dict[str, PurposeTotals]
