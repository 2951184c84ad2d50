from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status

from fuep_payments.deps import get_payment_service, require_admin_key
from fuep_payments.errors import PaymentError
from fuep_payments.logging_config import get_logger
from fuep_payments.psp.adapter import PaymentContact
from fuep_payments.schemas_pkg import payments as schemas
from fuep_payments.services.payment_service import PaymentService

logger = get_logger(__name__)

router = APIRouter()


def _http_error(exc: PaymentError) -> HTTPException:
    return HTTPException(status_code=exc.http_status, detail=exc.message)


@router.post("/init", response_model=schemas.PaymentInitResponse, status_code=status.HTTP_201_CREATED)
def init_payment(
    payload: schemas.PaymentInitRequest,
    response: Response,
    service: PaymentService = Depends(get_payment_service),
):
    """
    Start a payment with the preferred gateway (else the primary, else any enabled one)
    and return the redirect URL for the candidate.
    """
    contact = PaymentContact(email=payload.email, phone=payload.phone, name=payload.name)
    try:
        outcome = service.initiate(
            candidate_id=payload.candidate_id,
            purpose=payload.purpose.value,
            amount=payload.amount,
            currency=payload.currency,
            contact=contact,
            preferred_providers=payload.preferred_providers,
            session=payload.session,
        )
    except PaymentError as exc:
        raise _http_error(exc)

    if not outcome.persisted:
        response.status_code = status.HTTP_202_ACCEPTED

    return {
        "payment_id": outcome.payment_id,
        "provider": outcome.provider,
        "provider_reference": outcome.provider_reference,
        "payment_url": outcome.payment_url,
        "expires_at": outcome.expires_at,
        "status": "initiated",
        "reconciliation_required": not outcome.persisted,
    }


# Static paths first: "/providers/status" would otherwise match "/{payment_id}/status".

@router.get("/providers/status", response_model=schemas.ProvidersStatusResponse)
def providers_status(service: PaymentService = Depends(get_payment_service)):
    return {
        "providers": service.provider_status(),
        "available": service.registry.has_available(),
    }


@router.get(
    "/statistics",
    response_model=schemas.PaymentStatistics,
    dependencies=[Depends(require_admin_key)],
)
def payment_statistics(session: Optional[str] = None, service: PaymentService = Depends(get_payment_service)):
    """Admissions office totals, optionally for one academic session."""
    return service.payment_statistics(session=session)


@router.get("/candidates/{candidate_id}", response_model=List[schemas.PaymentOut])
def candidate_payments(
    candidate_id: str,
    session: Optional[str] = None,
    service: PaymentService = Depends(get_payment_service),
):
    return service.list_candidate_payments(candidate_id, session=session)


@router.get("/receipts/{serial}/verify", response_model=schemas.ReceiptVerification)
def verify_receipt(serial: str, service: PaymentService = Depends(get_payment_service)):
    receipt, valid = service.verify_receipt(serial)
    if receipt is None:
        raise HTTPException(status_code=404, detail="Receipt not found")
    return {"serial": serial, "valid": valid, "payment_id": receipt.payment_id}


@router.post(
    "/verify/{payment_id}",
    response_model=schemas.PaymentOut,
    dependencies=[Depends(require_admin_key)],
)
def verify_payment(payment_id: str, service: PaymentService = Depends(get_payment_service)):
    """Reconcile a payment against its gateway."""
    try:
        return service.verify_payment(payment_id)
    except PaymentError as exc:
        raise _http_error(exc)


@router.get("/{payment_id}/status", response_model=schemas.PaymentOut)
def payment_status(payment_id: str, service: PaymentService = Depends(get_payment_service)):
    payment = service.get_status(payment_id)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    return payment


@router.get("/{payment_id}/receipt", response_model=schemas.ReceiptOut)
def payment_receipt(payment_id: str, service: PaymentService = Depends(get_payment_service)):
    try:
        return service.generate_receipt(payment_id)
    except PaymentError as exc:
        raise _http_error(exc)
