"""
Payment Orchestrator.

Drives a payment intent through ``pending -> processing -> succeeded|failed``
(or ``pending -> cancelled``). Intent status only ever moves through a
conditional UPDATE on the current status, so when duplicate webhooks or
polls race, exactly one of them performs the settlement.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import select, update

from souk_payments.commission import FeeSchedule, calculate_commission, to_money
from souk_payments.database import StaleWrite, run_in_transaction
from souk_payments.errors import (
    IntentAlreadyTerminal,
    InvalidAmount,
    InvalidRequest,
    PaymentInProgress,
    PaymentNotFound,
    ProviderUnavailable,
)
from souk_payments.models import (
    CommissionRecord,
    IntentStatus,
    Order,
    PaymentIntent,
    PaymentMethod,
    TxnType,
    WebhookEvent,
    utcnow,
)
from souk_payments.providers.base import PaymentAction, PaymentProvider, ProviderStatus
from souk_payments.wallet import WalletLedger, wallet_id_for

logger = logging.getLogger(__name__)


@dataclass
class InitiateResult:
    intent_id: str
    status: str
    action: Optional[PaymentAction] = None
    existing: bool = False


@dataclass
class ConfirmResult:
    intent_id: str
    status: str
    already_terminal: bool = False
    failure_reason: Optional[str] = None


class PaymentOrchestrator:
    def __init__(
        self,
        session_factory,
        providers: Dict[str, PaymentProvider],
        wallets: WalletLedger,
        fee_schedule: FeeSchedule,
        currency: str = "EGP",
        min_amount: Decimal = Decimal("1.00"),
        enabled_methods=PaymentMethod.ALL,
    ):
        self.session_factory = session_factory
        self.providers = providers
        self.wallets = wallets
        self.fee_schedule = fee_schedule
        self.currency = currency
        self.min_amount = min_amount
        self.enabled_methods = tuple(enabled_methods)

    # -- lookups -------------------------------------------------------------

    def get_intent(self, intent_id: str) -> PaymentIntent:
        with self.session_factory() as session:
            intent = session.get(PaymentIntent, intent_id)
            if not intent:
                raise PaymentNotFound(f"Payment {intent_id} not found")
            return intent

    def provider_for(self, method: str) -> PaymentProvider:
        provider = self.providers.get(method)
        if method not in self.enabled_methods or provider is None:
            raise InvalidRequest(f"Payment method {method} is not enabled")
        return provider

    def provider_named(self, name: str) -> PaymentProvider:
        for method, provider in self.providers.items():
            if name in (method, getattr(provider, "name", None)):
                return provider
        raise InvalidRequest(f"Unknown payment provider {name}")

    # -- initiate ------------------------------------------------------------

    def initiate(self, amount, order_id: str, customer_id: str, vendor_id: str, method: str,
                 items: Optional[List[dict]] = None, extra: Optional[dict] = None) -> InitiateResult:
        amount = to_money(amount, self.currency)
        if amount < self.min_amount:
            raise InvalidAmount(f"Amount is below the minimum payment of {self.min_amount} {self.currency}")
        if not (order_id and customer_id and vendor_id):
            raise InvalidRequest("orderId, customerId and vendorId are required")
        if method not in PaymentMethod.ALL:
            raise InvalidRequest(f"Unknown payment method {method}")
        provider = self.provider_for(method)

        intent_id = f"pay_{uuid.uuid4().hex}"
        holder = self._claim_order(order_id, intent_id, customer_id, vendor_id, amount)
        if holder != intent_id:
            existing = self._find_intent(holder)
            if existing is None:
                raise PaymentInProgress(f"Order {order_id} already has a payment being created")
            logger.info("Order %s already has payment %s (%s)", order_id, existing.id, existing.status)
            return InitiateResult(intent_id=existing.id, status=existing.status, existing=True)

        request_extra = dict(extra or {}, idempotency_key=f"{order_id}:{intent_id}")
        try:
            payment = provider.create_payment(amount, order_id, customer_id, vendor_id, request_extra)
        except ProviderUnavailable as exc:
            if exc.provider_ref:
                # The provider already holds a transaction for this attempt; keep it on record.
                self._store_intent(intent_id, exc.provider_ref, amount, method, order_id, customer_id,
                                   vendor_id, items, IntentStatus.FAILED, failure_reason=exc.message)
                logger.warning("Payment %s for order %s recorded as failed: %s", intent_id, order_id, exc.message)
            else:
                self._release_order(intent_id)
                logger.warning("Payment for order %s not created: %s", order_id, exc.message)
            raise
        except Exception:
            self._release_order(intent_id)
            raise

        status = IntentStatus.PROCESSING if payment.status in (
            ProviderStatus.PROCESSING, ProviderStatus.SUCCEEDED) else IntentStatus.PENDING
        self._store_intent(intent_id, payment.provider_ref, amount, method, order_id, customer_id,
                           vendor_id, items, status, expires_at=payment.expires_at)
        logger.info("Payment %s created for order %s via %s (%s %s)", intent_id, order_id, method, amount,
                    self.currency)
        return InitiateResult(intent_id=intent_id, status=status, action=payment.action)

    def _claim_order(self, order_id, intent_id, customer_id, vendor_id, amount) -> Optional[str]:
        """
        Point ``Order.active_intent_id`` at ``intent_id`` unless another attempt holds it.

        Returns the id of the intent that holds the order afterwards.
        """

        def work(session):
            if not session.get(Order, order_id):
                session.add(Order(id=order_id, customer_id=customer_id, vendor_id=vendor_id, total=amount,
                                  active_intent_id=intent_id))
                session.flush()
                return intent_id
            result = session.execute(
                update(Order)
                .where(Order.id == order_id, Order.active_intent_id.is_(None))
                .values(active_intent_id=intent_id)
            )
            if result.rowcount == 1:
                return intent_id
            return session.scalar(select(Order.active_intent_id).where(Order.id == order_id))

        return run_in_transaction(self.session_factory, work)

    def _release_order(self, intent_id: str):
        run_in_transaction(self.session_factory, lambda session: self._release_claim(session, intent_id))

    @staticmethod
    def _release_claim(session, intent_id: str):
        session.execute(
            update(Order).where(Order.active_intent_id == intent_id).values(active_intent_id=None)
        )

    def _find_intent(self, intent_id: Optional[str]) -> Optional[PaymentIntent]:
        if not intent_id:
            return None
        with self.session_factory() as session:
            return session.get(PaymentIntent, intent_id)

    def _store_intent(self, intent_id, provider_ref, amount, method, order_id, customer_id, vendor_id, items,
                      status, expires_at=None, failure_reason=None):
        def work(session):
            intent = PaymentIntent(
                id=intent_id,
                provider_ref=provider_ref,
                amount=amount,
                currency=self.currency,
                status=status,
                method=method,
                order_id=order_id,
                customer_id=customer_id,
                vendor_id=vendor_id,
                items=items or [],
                expires_at=expires_at,
                failure_reason=failure_reason,
            )
            session.add(intent)
            if status in IntentStatus.TERMINAL:
                self._release_claim(session, intent_id)
            return intent

        try:
            return run_in_transaction(self.session_factory, work)
        except Exception:
            logger.error("Provider payment %s exists but intent %s was not stored", provider_ref, intent_id)
            self._release_order(intent_id)
            raise

    # -- confirm -------------------------------------------------------------

    def confirm(self, intent_id: str) -> ConfirmResult:
        """
        Ask the provider for the outcome and apply it.

        Safe under at-least-once delivery: an intent already in a terminal
        state is reported as-is and nothing is re-applied.
        """
        intent = self.get_intent(intent_id)
        if intent.status in IntentStatus.TERMINAL:
            return self._terminal_result(intent)

        provider = self.providers.get(intent.method)
        if provider is None:
            raise InvalidRequest(f"Payment method {intent.method} has no provider")
        verification = provider.confirm_payment(intent.provider_ref, expires_at=intent.expires_at)

        if verification.status == ProviderStatus.SUCCEEDED:
            settled = self._settle(intent_id, verification.verified_at)
            if not settled:
                return self._terminal_result(self.get_intent(intent_id))
        elif verification.status in (ProviderStatus.FAILED, ProviderStatus.EXPIRED):
            self._fail(intent_id, verification.failure_reason or verification.status)
        elif verification.status == ProviderStatus.CANCELLED:
            if not self._move(intent_id, (IntentStatus.PENDING,), IntentStatus.CANCELLED):
                self._fail(intent_id, "cancelled by provider")
        elif verification.status == ProviderStatus.PROCESSING:
            self._move(intent_id, (IntentStatus.PENDING,), IntentStatus.PROCESSING)
        elif verification.failure_reason:
            # declined attempt; the customer can retry on the same intent
            self._annotate(intent_id, verification.failure_reason)

        intent = self.get_intent(intent_id)
        return ConfirmResult(intent_id=intent.id, status=intent.status, failure_reason=intent.failure_reason)

    def _terminal_result(self, intent: PaymentIntent) -> ConfirmResult:
        logger.info("Payment %s already %s; confirm is a no-op", intent.id, intent.status)
        return ConfirmResult(intent_id=intent.id, status=intent.status, already_terminal=True,
                             failure_reason=intent.failure_reason)

    def _settle(self, intent_id: str, verified_at: datetime) -> bool:
        """Mark the intent succeeded, split the commission and pay the vendor, all in one unit."""

        def work(session):
            intent = session.get(PaymentIntent, intent_id)
            if intent.status in IntentStatus.TERMINAL:
                return False
            self._cas_outcome(session, intent_id, IntentStatus.SUCCEEDED,
                              confirmed_at=verified_at, failure_reason=None)

            breakdown = calculate_commission(intent.amount, self.fee_schedule, intent.currency)
            if breakdown.vendor_net > 0:
                self.wallets.ensure_wallet(session, intent.vendor_id, "vendor", intent.currency)
                self.wallets.apply(
                    session,
                    wallet_id_for(intent.vendor_id),
                    TxnType.CREDIT,
                    breakdown.vendor_net,
                    f"Order #{intent.order_id} payment",
                    reference=intent.order_id,
                    idempotency_key=f"settlement:{intent.order_id}",
                )
            else:
                logger.warning("Order %s fees exceed the gross amount, vendor receives nothing", intent.order_id)

            if not session.scalar(select(CommissionRecord).where(CommissionRecord.order_id == intent.order_id)):
                session.add(CommissionRecord(
                    order_id=intent.order_id,
                    vendor_id=intent.vendor_id,
                    payment_id=intent.id,
                    gross_amount=breakdown.gross,
                    platform_fee_amount=breakdown.platform_fee,
                    processing_fee_amount=breakdown.processing_fee,
                    vendor_net_amount=breakdown.vendor_net,
                ))

            order = session.get(Order, intent.order_id)
            if order:
                order.payment_status = "paid"
                order.paid_at = verified_at
            return True

        settled = run_in_transaction(self.session_factory, work)
        if settled:
            logger.info("Payment %s succeeded and settled", intent_id)
        return settled

    def _fail(self, intent_id: str, reason: str) -> bool:
        moved = self._move(intent_id, IntentStatus.OPEN, IntentStatus.FAILED, failure_reason=reason[:240])
        if moved:
            logger.info("Payment %s failed: %s", intent_id, reason)
        return moved

    def _move(self, intent_id, from_statuses, to_status, **values) -> bool:
        def work(session):
            try:
                if to_status == IntentStatus.FAILED:
                    self._cas_outcome(session, intent_id, to_status, **values)
                else:
                    self._cas_status(session, intent_id, from_statuses, to_status, **values)
            except StaleWrite:
                return False
            if to_status in (IntentStatus.FAILED, IntentStatus.CANCELLED):
                self._release_claim(session, intent_id)
            return True

        return run_in_transaction(self.session_factory, work)

    def _annotate(self, intent_id: str, reason: str):
        def work(session):
            session.execute(
                update(PaymentIntent)
                .where(PaymentIntent.id == intent_id, PaymentIntent.status.in_(IntentStatus.OPEN))
                .values(failure_reason=reason[:240], updated_at=utcnow())
            )

        run_in_transaction(self.session_factory, work)
        logger.info("Payment %s attempt declined: %s", intent_id, reason)

    @classmethod
    def _cas_outcome(cls, session, intent_id, to_status, **values):
        """Move an open intent to a terminal outcome, passing through ``processing``."""
        session.execute(
            update(PaymentIntent)
            .where(PaymentIntent.id == intent_id, PaymentIntent.status == IntentStatus.PENDING)
            .values(status=IntentStatus.PROCESSING, updated_at=utcnow())
        )
        cls._cas_status(session, intent_id, (IntentStatus.PROCESSING,), to_status, **values)

    @staticmethod
    def _cas_status(session, intent_id, from_statuses, to_status, **values):
        result = session.execute(
            update(PaymentIntent)
            .where(PaymentIntent.id == intent_id, PaymentIntent.status.in_(tuple(from_statuses)))
            .values(status=to_status, updated_at=utcnow(), **values)
        )
        if result.rowcount != 1:
            raise StaleWrite(f"payment {intent_id} is no longer in {from_statuses}")

    # -- cancel --------------------------------------------------------------

    def cancel(self, intent_id: str) -> PaymentIntent:
        intent = self.get_intent(intent_id)
        if intent.status in IntentStatus.TERMINAL:
            raise IntentAlreadyTerminal(f"Payment {intent_id} is already {intent.status}")
        if intent.status != IntentStatus.PENDING:
            raise InvalidRequest(f"Payment {intent_id} is {intent.status} and can no longer be cancelled")

        provider = self.providers.get(intent.method)
        if provider is not None:
            provider.cancel_payment(intent.provider_ref)
        if not self._move(intent_id, (IntentStatus.PENDING,), IntentStatus.CANCELLED):
            raise IntentAlreadyTerminal(f"Payment {intent_id} changed state while cancelling")
        logger.info("Payment %s cancelled", intent_id)
        return self.get_intent(intent_id)

    # -- webhooks ------------------------------------------------------------

    def handle_webhook(self, provider_name: str, payload: bytes, signature: Optional[str]) -> dict:
        provider = self.provider_named(provider_name)
        event = provider.parse_webhook(payload, signature)

        def record(session):
            seen = session.scalar(select(WebhookEvent).where(
                WebhookEvent.provider == provider_name, WebhookEvent.event_id == event.event_id))
            if seen:
                return False
            session.add(WebhookEvent(provider=provider_name, event_id=event.event_id,
                                     event_type=event.event_type, provider_ref=event.provider_ref))
            return True

        first_delivery = run_in_transaction(self.session_factory, record)
        if not first_delivery:
            logger.info("Webhook %s/%s delivered again", provider_name, event.event_id)

        with self.session_factory() as session:
            intent = session.scalar(
                select(PaymentIntent).where(PaymentIntent.provider_ref == event.provider_ref)
            ) if event.provider_ref else None
        if intent is None:
            logger.warning("Webhook %s/%s references unknown payment %s", provider_name, event.event_type,
                           event.provider_ref)
            return {"received": True}

        result = self.confirm(intent.id)
        return {"received": True, "paymentId": result.intent_id, "status": result.status}

    # -- reconciliation ------------------------------------------------------

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Fail open intents whose business expiry window has passed."""
        now = now or utcnow()
        with self.session_factory() as session:
            expired = list(session.scalars(
                select(PaymentIntent.id).where(
                    PaymentIntent.status.in_(IntentStatus.OPEN),
                    PaymentIntent.expires_at.is_not(None),
                    PaymentIntent.expires_at < now,
                )
            ))
        return sum(1 for intent_id in expired if self._fail(intent_id, "expired"))
