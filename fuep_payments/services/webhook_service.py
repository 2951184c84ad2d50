"""
Raw webhook log (dead letter queue).

Each inbound webhook is written before it is processed and marked
processed / rejected / failed afterwards. Logging runs in its own session so
it never shares a transaction with payment updates, and a logging failure
never breaks webhook processing.
"""
import json
from typing import Any, Callable, Dict, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fuep_payments.db import SessionLocal
from fuep_payments.logging_config import get_logger
from fuep_payments.models import WebhookEvent
from fuep_payments.utils import utcnow

logger = get_logger(__name__)

# Signature headers are kept out of the log.
REDACTED_HEADERS = {"authorization", "verif-hash", "x-remita-signature", "x-mock-signature", "cookie"}


def payload_for_log(raw_payload: bytes) -> Any:
    try:
        return json.loads(raw_payload)
    except (ValueError, UnicodeDecodeError):
        return {"raw": raw_payload.decode("utf-8", errors="replace")}


def headers_for_log(headers: Dict[str, str], redact: Iterable[str] = ()) -> Dict[str, str]:
    hidden = REDACTED_HEADERS | {h.lower() for h in redact}
    return {k: ("***" if k.lower() in hidden else v) for k, v in headers.items()}


def log_webhook(
    provider: str,
    headers: Dict[str, str],
    raw_payload: bytes,
    session_factory: Callable[[], Session] = SessionLocal,
    redact: Iterable[str] = (),
) -> Optional[int]:
    """
    Log a raw webhook event to the database.
    Returns the WebhookEvent id, or None when logging failed.
    """
    db = session_factory()
    try:
        event = WebhookEvent(
            provider=provider,
            headers=headers_for_log(headers, redact),
            payload=payload_for_log(raw_payload),
            status="received",
        )
        db.add(event)
        db.commit()
        return event.id
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("webhook_log_failed", provider=provider, error=str(e))
        return None
    finally:
        db.close()


def update_webhook_status(
    event_id: Optional[int],
    status: str,
    error: Optional[str] = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> None:
    if event_id is None:
        return
    db = session_factory()
    try:
        event = db.get(WebhookEvent, event_id)
        if event:
            event.status = status
            event.processed_at = utcnow()
            if error:
                event.error = error
            db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("webhook_status_update_failed", event_id=event_id, error=str(e))
    finally:
        db.close()
