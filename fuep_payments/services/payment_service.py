"""
Payment Service

Owns the payment lifecycle: initiated -> succeeded | failed | expired.
Terminal states are final. Every status change goes through one conditional
UPDATE (``WHERE status = 'initiated'``), so a replayed webhook, a concurrent
verification and the expiry sweep can race without double-applying side
effects: whoever updates the row first wins, everyone else sees rowcount 0.
"""
import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from fuep_payments.config import Settings, settings as default_settings
from fuep_payments.errors import (
    WEBHOOK_REJECTIONS,
    AmountMismatch,
    InvalidAmount,
    NoProviderAvailable,
    PaymentNotFound,
    PaymentNotSuccessful,
    ProviderUnavailable,
    ReferenceMismatch,
    UnknownProvider,
    describe,
)
from fuep_payments.logging_config import get_logger, get_operator_logger
from fuep_payments.models import (
    STATUS_AFFECTING_PURPOSES,
    Payment,
    PaymentEvent,
    PaymentPurpose,
    PaymentStatus,
    Receipt,
)
from fuep_payments.psp.adapter import PaymentContact, ReportedStatus
from fuep_payments.psp.registry import ProviderRegistry
from fuep_payments.utils import as_utc, utcnow

from .receipt_service import ReceiptGenerator
from .settlement import LoggingSettlementListener, SettlementListener
from .webhook_verifier import WebhookVerifier

logger = get_logger(__name__)
operator_log = get_operator_logger()


@dataclass
class InitiationOutcome:
    provider: str
    provider_reference: str
    payment_url: Optional[str]
    expires_at: Optional[datetime]
    payment: Optional[Payment] = None
    persisted: bool = True

    @property
    def payment_id(self) -> Optional[str]:
        return self.payment.id if self.payment is not None else None


@dataclass
class WebhookOutcome:
    payment: Payment
    duplicate: bool = False
    transitioned: bool = False


class PaymentService:
    def __init__(
        self,
        db: Session,
        registry: ProviderRegistry,
        settings: Settings = default_settings,
        verifier: Optional[WebhookVerifier] = None,
        receipts: Optional[ReceiptGenerator] = None,
        listener: Optional[SettlementListener] = None,
    ):
        self.db = db
        self.registry = registry
        self.settings = settings
        self.verifier = verifier or WebhookVerifier(tolerance_seconds=settings.WEBHOOK_TOLERANCE_SECONDS)
        self.receipts = receipts or ReceiptGenerator.from_settings(settings)
        self.listener = listener or LoggingSettlementListener()

    # =====================================================
    # INITIATION
    # =====================================================

    def _validate_amount(self, purpose: str, amount: int, currency: str) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount("amount must be a positive whole number of kobo", amount=amount)
        if currency != self.settings.PAYMENT_CURRENCY:
            raise InvalidAmount(
                f"currency must be {self.settings.PAYMENT_CURRENCY}", currency=currency
            )
        expected = self.settings.PURPOSE_AMOUNTS.get(purpose)
        if expected is not None and amount != expected:
            raise InvalidAmount(
                f"{purpose} costs {expected} kobo",
                purpose=purpose,
                expected_amount=expected,
                amount=amount,
            )

    def initiate(
        self,
        candidate_id: str,
        purpose: str,
        amount: int,
        currency: Optional[str] = None,
        contact: Optional[PaymentContact] = None,
        preferred_providers: Optional[Iterable[str]] = None,
        session: Optional[str] = None,
    ) -> InitiationOutcome:
        """
        Start a payment with the preferred (else primary, else any enabled) gateway.

        Raises InvalidAmount, NoProviderAvailable or ProviderUnavailable. Nothing is
        written when the gateway call fails. When the gateway succeeds but the
        write fails, the outcome comes back with ``persisted=False`` so the caller
        still learns the reference to reconcile.
        """
        currency = (currency or self.settings.PAYMENT_CURRENCY).strip().upper()
        try:
            purpose = PaymentPurpose(purpose).value
        except ValueError:
            raise InvalidAmount("unknown payment purpose", purpose=purpose)
        self._validate_amount(purpose, amount, currency)

        adapter = self.registry.get_by_preference(preferred_providers)
        if adapter is None:
            logger.error("payment_no_provider_available", candidate_id=candidate_id, purpose=purpose)
            raise NoProviderAvailable("no payment provider is enabled")

        try:
            result = adapter.initiate(candidate_id, purpose, amount, currency, contact)
        except (ProviderUnavailable, InvalidAmount) as exc:
            logger.warning(
                "payment_initiation_failed",
                **describe(exc, {"provider": adapter.provider_name, "candidate_id": candidate_id, "purpose": purpose}),
            )
            raise

        now = utcnow()
        expires_at = as_utc(result.expires_at) or now + timedelta(hours=self.settings.PAYMENT_EXPIRY_HOURS)
        payment = Payment(
            candidate_id=candidate_id,
            purpose=purpose,
            session=session,
            provider=adapter.provider_name,
            provider_reference=result.provider_reference,
            payment_url=result.payment_url,
            amount=amount,
            currency=currency,
            status=PaymentStatus.INITIATED.value,
            contact_email=contact.email if contact else None,
            contact_phone=contact.phone if contact else None,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        payment.events.append(PaymentEvent(
            event_type="initiated",
            source="initiate",
            to_status=PaymentStatus.INITIATED.value,
            provider_data=result.raw or None,
        ))

        try:
            self.db.add(payment)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            operator_log.error(
                "payment_initiation_not_persisted",
                provider=adapter.provider_name,
                provider_reference=result.provider_reference,
                candidate_id=candidate_id,
                purpose=purpose,
                amount=amount,
                error=str(exc),
            )
            return InitiationOutcome(
                provider=adapter.provider_name,
                provider_reference=result.provider_reference,
                payment_url=result.payment_url,
                expires_at=expires_at,
                persisted=False,
            )

        logger.info(
            "payment_initiated",
            payment_id=payment.id,
            provider=payment.provider,
            provider_reference=payment.provider_reference,
            candidate_id=candidate_id,
            purpose=purpose,
            amount=amount,
        )
        return InitiationOutcome(
            provider=payment.provider,
            provider_reference=payment.provider_reference,
            payment_url=payment.payment_url,
            expires_at=expires_at,
            payment=payment,
        )

    # =====================================================
    # READS
    # =====================================================

    def get_status(self, payment_id: str) -> Optional[Payment]:
        return self.db.get(Payment, payment_id)

    def _require_payment(self, payment_id: str) -> Payment:
        payment = self.get_status(payment_id)
        if payment is None:
            raise PaymentNotFound("payment not found", payment_id=payment_id)
        return payment

    def list_candidate_payments(self, candidate_id: str, session: Optional[str] = None) -> List[Payment]:
        query = select(Payment).where(Payment.candidate_id == candidate_id)
        if session:
            query = query.where(Payment.session == session)
        query = query.order_by(Payment.created_at.desc())
        return list(self.db.execute(query).scalars())

    def get_receipt(self, payment_id: str) -> Optional[Receipt]:
        return self.db.execute(
            select(Receipt).where(Receipt.payment_id == payment_id)
        ).scalar_one_or_none()

    def verify_receipt(self, serial: str) -> Tuple[Optional[Receipt], bool]:
        """Re-render the payment behind a receipt and compare hashes."""
        receipt = self.db.execute(select(Receipt).where(Receipt.serial == serial)).scalar_one_or_none()
        if receipt is None:
            return None, False
        payment = self.db.get(Payment, receipt.payment_id)
        valid = (
            payment is not None
            and payment.status == PaymentStatus.SUCCEEDED.value
            and self.receipts.matches(receipt, payment)
        )
        if not valid:
            operator_log.warning("receipt_verification_failed", serial=serial, payment_id=receipt.payment_id)
        return receipt, valid

    def provider_status(self):
        return self.registry.status()

    def payment_statistics(self, session: Optional[str] = None) -> Dict[str, Any]:
        """
        Counts and kobo totals per status and per purpose, optionally for one
        academic session. ``collected_amount`` only counts succeeded payments.
        """
        query = select(
            Payment.status,
            Payment.purpose,
            func.count(Payment.id),
            func.coalesce(func.sum(Payment.amount), 0),
        ).group_by(Payment.status, Payment.purpose)
        if session:
            query = query.where(Payment.session == session)

        by_status = {s.value: {"count": 0, "amount": 0} for s in PaymentStatus}
        by_purpose: Dict[str, Dict[str, int]] = {}
        total = collected = 0
        for status, purpose, n, amount in self.db.execute(query):
            amount = int(amount)
            by_status.setdefault(status, {"count": 0, "amount": 0})
            by_status[status]["count"] += n
            by_status[status]["amount"] += amount
            bucket = by_purpose.setdefault(purpose, {"count": 0, "amount": 0, "collected_amount": 0})
            bucket["count"] += n
            bucket["amount"] += amount
            total += n
            if status == PaymentStatus.SUCCEEDED.value:
                bucket["collected_amount"] += amount
                collected += amount

        return {
            "session": session,
            "currency": self.settings.PAYMENT_CURRENCY,
            "total_payments": total,
            "collected_amount": collected,
            "by_status": by_status,
            "by_purpose": by_purpose,
        }

    # =====================================================
    # STATUS TRANSITIONS
    # =====================================================

    def _check_amount(self, payment: Payment, amount: Optional[int], currency: Optional[str], source: str) -> None:
        if amount == payment.amount and (currency or "").upper() == payment.currency:
            return
        exc = AmountMismatch(
            "reported amount does not match payment",
            payment_id=payment.id,
            provider=payment.provider,
            provider_reference=payment.provider_reference,
            expected_amount=payment.amount,
            reported_amount=amount,
            expected_currency=payment.currency,
            reported_currency=currency,
            source=source,
        )
        operator_log.warning("payment_amount_mismatch", **describe(exc))
        raise exc

    def _transition(
        self,
        payment: Payment,
        target: PaymentStatus,
        source: str,
        provider_data=None,
        signature_hash: Optional[str] = None,
    ) -> bool:
        """
        Move an initiated payment to ``target``. Returns False when another
        writer got there first; side effects only run for the winner.
        """
        now = utcnow()
        result = self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.INITIATED.value)
            .values(status=target.value, settled_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.rollback()
            logger.info("payment_transition_skipped", payment_id=payment.id, target=target.value, source=source)
            return False

        # Reload inside the same transaction so the receipt renders the new state.
        self.db.refresh(payment)
        self.db.add(PaymentEvent(
            payment_id=payment.id,
            event_type="expired" if target == PaymentStatus.EXPIRED else "status_changed",
            source=source,
            from_status=PaymentStatus.INITIATED.value,
            to_status=target.value,
            signature_hash=signature_hash,
            provider_data=provider_data,
        ))
        if target == PaymentStatus.SUCCEEDED:
            # Receipt rides in the same transaction as the status change.
            self.db.add(self.receipts.generate(payment))

        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("payment_transition_failed", payment_id=payment.id, target=target.value)
            raise

        logger.info(
            "payment_status_changed",
            payment_id=payment.id,
            provider=payment.provider,
            provider_reference=payment.provider_reference,
            to_status=target.value,
            source=source,
        )
        if target == PaymentStatus.SUCCEEDED:
            self._notify_settled(payment)
        return True

    def _notify_settled(self, payment: Payment) -> None:
        if PaymentPurpose(payment.purpose) not in STATUS_AFFECTING_PURPOSES:
            return
        try:
            self.listener.on_payment_settled(payment.candidate_id, payment.purpose)
        except Exception as exc:
            logger.error(
                "settlement_notification_failed",
                payment_id=payment.id,
                candidate_id=payment.candidate_id,
                purpose=payment.purpose,
                error=str(exc),
            )

    def _record_event(self, payment: Payment, event_type: str, source: str, provider_data=None,
                      signature_hash: Optional[str] = None) -> None:
        self.db.add(PaymentEvent(
            payment_id=payment.id,
            event_type=event_type,
            source=source,
            from_status=payment.status,
            signature_hash=signature_hash,
            provider_data=provider_data,
        ))
        self.db.commit()

    # =====================================================
    # WEBHOOKS
    # =====================================================

    @staticmethod
    def _conflicts(payment: Payment, reported: ReportedStatus) -> bool:
        """A settled payment reported differently by the gateway (pending never conflicts)."""
        if reported == ReportedStatus.SUCCEEDED:
            return payment.status != PaymentStatus.SUCCEEDED.value
        if reported == ReportedStatus.FAILED:
            return payment.status == PaymentStatus.SUCCEEDED.value
        return False

    def process_webhook(
        self,
        provider_name: str,
        raw_payload: bytes,
        signature: Optional[str],
        timestamp: Optional[str],
    ) -> WebhookOutcome:
        """
        Authenticate, parse and apply a gateway callback.

        Replays against a settled payment succeed without side effects. A
        webhook never creates a payment.
        """
        adapter = self.registry.get_by_name(provider_name)
        if adapter is None:
            raise UnknownProvider("unknown payment provider", provider=provider_name)

        try:
            self.verifier.verify(raw_payload, signature, timestamp, adapter.webhook_secret)
            event = adapter.parse_webhook(raw_payload, signature, timestamp)
        except WEBHOOK_REJECTIONS as exc:
            operator_log.warning("webhook_rejected", **describe(exc, {"provider": adapter.provider_name}))
            raise

        payment = self.db.execute(
            select(Payment).where(
                Payment.provider == adapter.provider_name,
                Payment.provider_reference == event.provider_reference,
            )
        ).scalar_one_or_none()
        if payment is None:
            logger.warning(
                "webhook_payment_not_found",
                provider=adapter.provider_name,
                provider_reference=event.provider_reference,
            )
            raise PaymentNotFound(
                "no payment for this reference",
                provider=adapter.provider_name,
                provider_reference=event.provider_reference,
            )

        if (event.candidate_id and event.candidate_id != payment.candidate_id) or (
            event.purpose and event.purpose != payment.purpose
        ):
            exc = ReferenceMismatch(
                "webhook metadata does not match payment",
                payment_id=payment.id,
                provider=payment.provider,
                provider_reference=payment.provider_reference,
                reported_candidate_id=event.candidate_id,
                reported_purpose=event.purpose,
            )
            operator_log.warning("webhook_reference_mismatch", **describe(exc))
            raise exc

        if payment.is_terminal:
            fields = dict(
                payment_id=payment.id,
                provider=payment.provider,
                provider_reference=payment.provider_reference,
                status=payment.status,
                reported_status=event.reported_status.value,
                reported_amount=event.amount,
            )
            if self._conflicts(payment, event.reported_status):
                # Money may have moved on a payment we already closed.
                operator_log.warning("webhook_conflicts_with_terminal_state", **fields)
            else:
                logger.info("webhook_duplicate", **fields)
            return WebhookOutcome(payment=payment, duplicate=True)

        self._check_amount(payment, event.amount, event.currency, source="webhook")

        signature_hash = hashlib.sha256((signature or "").encode()).hexdigest()
        if event.reported_status == ReportedStatus.PENDING:
            self._record_event(payment, "webhook_received", "webhook", event.raw, signature_hash)
            return WebhookOutcome(payment=payment)

        target = PaymentStatus.SUCCEEDED if event.reported_status == ReportedStatus.SUCCEEDED else PaymentStatus.FAILED
        transitioned = self._transition(payment, target, "webhook", event.raw, signature_hash)
        self.db.refresh(payment)
        return WebhookOutcome(payment=payment, duplicate=not transitioned, transitioned=transitioned)

    # =====================================================
    # RECONCILIATION
    # =====================================================

    def verify_payment(self, payment_id: str) -> Payment:
        """
        Ask the gateway for the authoritative status of a payment.
        Terminal payments are returned untouched.
        """
        payment = self._require_payment(payment_id)
        if payment.is_terminal:
            return payment

        adapter = self.registry.get_by_name(payment.provider)
        if adapter is None or not adapter.enabled:
            raise ProviderUnavailable(
                f"provider {payment.provider} is not available", provider=payment.provider
            )

        if adapter.supports_verification:
            result = adapter.query_status(payment.provider_reference)
            if result.reported_status == ReportedStatus.PENDING:
                self._record_event(payment, "verified", "verify", result.raw)
            else:
                target = (
                    PaymentStatus.SUCCEEDED
                    if result.reported_status == ReportedStatus.SUCCEEDED
                    else PaymentStatus.FAILED
                )
                if target == PaymentStatus.SUCCEEDED or result.amount is not None:
                    self._check_amount(payment, result.amount, result.currency or payment.currency, source="verify")
                self._transition(payment, target, "verify", result.raw)
                self.db.refresh(payment)

        expires_at = as_utc(payment.expires_at)
        if payment.status == PaymentStatus.INITIATED.value and expires_at and expires_at < utcnow():
            self._transition(payment, PaymentStatus.EXPIRED, "verify")
            self.db.refresh(payment)
        return payment

    def expire_stale_payments(self, now: Optional[datetime] = None) -> int:
        """Expire every initiated payment past its ``expires_at``. Returns how many moved."""
        now = now or utcnow()
        overdue = list(self.db.execute(
            select(Payment).where(
                Payment.status == PaymentStatus.INITIATED.value,
                Payment.expires_at.is_not(None),
                Payment.expires_at < now,
            )
        ).scalars())

        expired = 0
        for payment in overdue:
            if self._transition(payment, PaymentStatus.EXPIRED, "sweep"):
                expired += 1
        if overdue:
            logger.info("payments_expired", count=expired, candidates=len(overdue))
        return expired

    # =====================================================
    # RECEIPTS
    # =====================================================

    def generate_receipt(self, payment_id: str) -> Receipt:
        """Return the receipt of a succeeded payment, creating it exactly once."""
        payment = self._require_payment(payment_id)
        if payment.status != PaymentStatus.SUCCEEDED.value:
            raise PaymentNotSuccessful("payment has not succeeded", payment_id=payment_id, status=payment.status)

        existing = self.get_receipt(payment_id)
        if existing is not None:
            return existing

        receipt = self.receipts.generate(payment)
        self.db.add(receipt)
        try:
            self.db.commit()
        except IntegrityError:
            # Another writer created it between the read and the insert.
            self.db.rollback()
            existing = self.get_receipt(payment_id)
            if existing is None:
                raise
            return existing
        logger.info("receipt_generated", payment_id=payment_id, serial=receipt.serial)
        return receipt
