"""
Settlement notifications.

When a status-affecting payment succeeds, the candidate workflow is told
through ``on_payment_settled(candidate_id, purpose)``. Listener failures are
the caller's to log; they never undo the payment.
"""
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from fuep_payments.logging_config import get_logger

logger = get_logger(__name__)


class SettlementListener(ABC):
    """Candidate workflow hook for payments that move an application forward."""

    @abstractmethod
    def on_payment_settled(self, candidate_id: str, purpose: str) -> None:
        """Called once, after the succeeding transaction has committed."""


class LoggingSettlementListener(SettlementListener):
    def on_payment_settled(self, candidate_id: str, purpose: str) -> None:
        logger.info("payment_settled", candidate_id=candidate_id, purpose=purpose)


class HttpSettlementListener(SettlementListener):
    """POSTs ``{candidate_id, purpose}`` to the candidate service."""

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.Client] = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    def on_payment_settled(self, candidate_id: str, purpose: str) -> None:
        payload = {"candidate_id": candidate_id, "purpose": purpose}
        if self._client is not None:
            response = self._client.post(self.url, json=payload, timeout=self.timeout)
        else:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.url, json=payload)
        response.raise_for_status()
        logger.info("payment_settlement_notified", candidate_id=candidate_id, purpose=purpose)


def build_listener(settings) -> SettlementListener:
    if settings.SETTLEMENT_CALLBACK_URL:
        return HttpSettlementListener(settings.SETTLEMENT_CALLBACK_URL, timeout=settings.PROVIDER_TIMEOUT_SECONDS)
    return LoggingSettlementListener()
