import hmac
from typing import Generator, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from .services.payment_service import PaymentService


def get_db(request: Request) -> Generator[Session, None, None]:
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_payment_service(request: Request, db: Session = Depends(get_db)) -> PaymentService:
    state = request.app.state
    return PaymentService(
        db,
        state.registry,
        settings=state.settings,
        verifier=state.verifier,
        receipts=state.receipts,
        listener=state.listener,
    )


def require_admin_key(request: Request, x_admin_key: Optional[str] = Header(None)) -> None:
    """Guards reconciliation endpoints when ADMIN_API_KEY is configured."""
    expected = request.app.state.settings.ADMIN_API_KEY
    if not expected:
        return
    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin key",
        )
