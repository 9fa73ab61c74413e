import logging
import uuid
from decimal import Decimal
from typing import Dict, List

from sqlalchemy import case, select, update

from souk_payments.commission import to_money
from souk_payments.database import StaleWrite, run_in_transaction
from souk_payments.errors import (
    InvalidAmount,
    InvalidRequest,
    PaymentError,
    PaymentNotFound,
    RefundExceedsOriginal,
    RefundFailed,
    RefundNotSupported,
)
from souk_payments.models import IntentStatus, Order, PaymentIntent, RefundRecord, utcnow
from souk_payments.providers.base import PaymentProvider, ProviderStatus

logger = logging.getLogger(__name__)


class RefundOrchestrator:
    """
    Refunds a succeeded payment through the provider that captured it.

    The refund amount is reserved on ``PaymentIntent.refunded_amount`` with a
    compare-and-set before the provider is called, so concurrent refunds can
    never add up to more than the original payment. A failed provider call
    releases the reservation and writes no RefundRecord.
    """

    def __init__(self, session_factory, providers: Dict[str, PaymentProvider], currency: str = "EGP"):
        self.session_factory = session_factory
        self.providers = providers
        self.currency = currency

    def refund(self, payment_id: str, amount, reason: str = "") -> RefundRecord:
        amount = to_money(amount, self.currency)
        if amount <= 0:
            raise InvalidAmount("Refund amount must be greater than zero")

        intent = self._reserve(payment_id, amount)
        provider = self.providers.get(intent.method)
        if provider is None:
            self._release(payment_id, amount)
            raise RefundNotSupported(f"Refunds are not supported for {intent.method} payments")

        try:
            result = provider.refund(intent.provider_ref, amount)
        except PaymentError as exc:
            self._release(payment_id, amount)
            logger.warning("Refund of %s on %s failed: %s", amount, payment_id, exc.message)
            raise RefundFailed(f"{exc.code}: {exc.message}")
        if result.status in (ProviderStatus.FAILED, ProviderStatus.CANCELLED):
            self._release(payment_id, amount)
            raise RefundFailed(f"Provider reported refund {result.refund_ref} as {result.status}")

        record = self._record(intent, amount, reason, result)
        logger.info("Refunded %s of payment %s (%s)", amount, payment_id, result.refund_ref)
        return record

    def refunds_for(self, payment_id: str) -> List[RefundRecord]:
        with self.session_factory() as session:
            return list(session.scalars(
                select(RefundRecord)
                .where(RefundRecord.payment_id == payment_id)
                .order_by(RefundRecord.processed_at)
            ))

    def _reserve(self, payment_id: str, amount: Decimal) -> PaymentIntent:
        def work(session):
            intent = session.get(PaymentIntent, payment_id)
            if not intent:
                raise PaymentNotFound(f"Payment {payment_id} not found")
            if intent.status != IntentStatus.SUCCEEDED:
                raise InvalidRequest(f"Payment {payment_id} is {intent.status}; only succeeded payments can be refunded")
            already = intent.refunded_amount or Decimal("0")
            if already + amount > intent.amount:
                raise RefundExceedsOriginal(
                    f"Refund of {amount} exceeds the remaining {intent.amount - already} on payment {payment_id}"
                )
            result = session.execute(
                update(PaymentIntent)
                .where(PaymentIntent.id == payment_id, PaymentIntent.refunded_amount == already)
                .values(refunded_amount=already + amount, updated_at=utcnow())
            )
            if result.rowcount != 1:
                raise StaleWrite(f"payment {payment_id} refund total moved")
            return intent

        return run_in_transaction(self.session_factory, work)

    def _release(self, payment_id: str, amount: Decimal):
        def work(session):
            reserved = session.get(PaymentIntent, payment_id).refunded_amount
            result = session.execute(
                update(PaymentIntent)
                .where(PaymentIntent.id == payment_id, PaymentIntent.refunded_amount == reserved)
                .values(refunded_amount=reserved - amount, updated_at=utcnow())
            )
            if result.rowcount != 1:
                raise StaleWrite(f"payment {payment_id} refund total moved")

        run_in_transaction(self.session_factory, work)

    def _record(self, intent: PaymentIntent, amount: Decimal, reason: str, result) -> RefundRecord:
        def work(session):
            record = RefundRecord(
                id=f"rf_{uuid.uuid4().hex}",
                payment_id=intent.id,
                amount=amount,
                reason=reason or "",
                status=result.status,
                method=intent.method,
                provider_refund_ref=result.refund_ref,
                processed_at=utcnow(),
            )
            session.add(record)

            # atomic increment; refund_status reads the incremented total
            refunded = Order.refunded_amount + amount
            session.execute(
                update(Order)
                .where(Order.id == intent.order_id)
                .values(
                    refunded_amount=refunded,
                    refund_status=case((refunded >= intent.amount, "refunded"), else_="partially_refunded"),
                    refunded_at=record.processed_at,
                )
                .execution_options(synchronize_session=False)
            )
            return record

        return run_in_transaction(self.session_factory, work)
