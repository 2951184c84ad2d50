import time

from fuep_payments.config import settings
from fuep_payments.db import Base, SessionLocal, engine
from fuep_payments.logging_config import get_logger
from fuep_payments.psp.registry import build_registry
from fuep_payments.services.payment_service import PaymentService
from fuep_payments.services.settlement import build_listener

# Ensure models are loaded
from fuep_payments import models  # noqa: F401

logger = get_logger("fuep_payments.worker")


def sweep_once(registry, listener, session_factory=SessionLocal) -> int:
    """Expire overdue payments in one pass. Returns how many were expired."""
    db = session_factory()
    try:
        return PaymentService(db, registry, settings=settings, listener=listener).expire_stale_payments()
    finally:
        db.close()


def start_worker():
    logger.info("worker_starting", interval_seconds=settings.EXPIRY_SWEEP_INTERVAL_SECONDS)
    # Ensure tables exist
    Base.metadata.create_all(bind=engine)

    registry = build_registry(settings)
    listener = build_listener(settings)

    while True:
        try:
            expired = sweep_once(registry, listener)
            logger.info("worker_sweep_completed", expired=expired)
            time.sleep(settings.EXPIRY_SWEEP_INTERVAL_SECONDS)
        except KeyboardInterrupt:
            logger.info("worker_stopping")
            break
        except Exception as e:
            logger.error("worker_sweep_failed", error=str(e))
            time.sleep(5)


if __name__ == "__main__":
    start_worker()
