from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fuep_payments.deps import get_db
from fuep_payments.logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.get("")
def health(request: Request, db: Session = Depends(get_db)):
    state = request.app.state
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.error("health_database_unreachable", error=str(e))
        database = "unavailable"

    providers_ok = state.registry.has_available()
    return {
        "status": "ok" if database == "ok" and providers_ok else "degraded",
        "version": state.settings.APP_VERSION,
        "database": database,
        "providers": state.registry.status(),
    }
