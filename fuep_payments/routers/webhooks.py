"""
Gateway webhooks: POST /webhooks/{provider}
- Logs the raw request to webhook_events before anything else
- Signature, timestamp, payload and mismatch failures all answer a generic 400
- Replays against a settled payment answer 200 with duplicate=true

Only the body is read on the event loop. Database work and the settlement
callback are blocking, so they run in the threadpool.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from fuep_payments.deps import get_payment_service
from fuep_payments.errors import WEBHOOK_REJECTIONS, PaymentError, PaymentNotFound, UnknownProvider
from fuep_payments.logging_config import get_logger
from fuep_payments.schemas_pkg.payments import WebhookAck
from fuep_payments.services.payment_service import PaymentService
from fuep_payments.services.webhook_service import log_webhook, update_webhook_status

logger = get_logger(__name__)

router = APIRouter()


def handle_webhook(
    service: PaymentService,
    session_factory,
    provider: str,
    headers: dict,
    body: bytes,
) -> dict:
    adapter = service.registry.get_by_name(provider)

    # 1. Log raw webhook
    event_id = log_webhook(provider, headers, body, session_factory, redact=(adapter.signature_header,))

    signature: Optional[str] = headers.get(adapter.signature_header)
    timestamp: Optional[str] = headers.get(adapter.timestamp_header)

    # 2. Authenticate and apply
    try:
        outcome = service.process_webhook(provider, body, signature, timestamp)
    except WEBHOOK_REJECTIONS as exc:
        update_webhook_status(event_id, "rejected", exc.code, session_factory)
        raise HTTPException(status_code=400, detail="Webhook rejected")
    except (UnknownProvider, PaymentNotFound) as exc:
        update_webhook_status(event_id, "rejected", exc.code, session_factory)
        raise HTTPException(status_code=404, detail="Payment not found")
    except PaymentError as exc:
        update_webhook_status(event_id, "failed", exc.code, session_factory)
        raise HTTPException(status_code=exc.http_status, detail=exc.message)
    except Exception as exc:
        update_webhook_status(event_id, "failed", str(exc), session_factory)
        raise

    update_webhook_status(
        event_id, "processed", "duplicate" if outcome.duplicate else None, session_factory
    )
    return {"status": "ok", "duplicate": outcome.duplicate}


@router.post("/{provider}", response_model=WebhookAck)
async def receive_webhook(
    provider: str,
    request: Request,
    service: PaymentService = Depends(get_payment_service),
):
    provider = provider.lower()
    if provider not in service.registry:
        logger.warning("webhook_unknown_provider", provider=provider)
        raise HTTPException(status_code=404, detail="Unknown provider")

    body = await request.body()
    # Starlette headers are case-insensitive; adapters name them in lowercase.
    headers = {k.lower(): v for k, v in request.headers.items()}
    return await run_in_threadpool(
        handle_webhook, service, request.app.state.session_factory, provider, headers, body
    )
