import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import stripe

from souk_payments.commission import minor_unit
from souk_payments.errors import (
    InvalidRequest,
    ProviderUnavailable,
    RefundExceedsCaptured,
    WebhookSignatureInvalid,
)
from souk_payments.models import PaymentMethod, utcnow
from souk_payments.providers.base import (
    PaymentAction,
    PaymentProvider,
    ProviderEvent,
    ProviderPayment,
    ProviderRefund,
    ProviderStatus,
    ProviderVerification,
)

logger = logging.getLogger(__name__)

STATUS_MAP = {
    "requires_payment_method": ProviderStatus.PENDING,
    "requires_confirmation": ProviderStatus.PENDING,
    "requires_action": ProviderStatus.PENDING,
    "processing": ProviderStatus.PROCESSING,
    "requires_capture": ProviderStatus.PROCESSING,
    "succeeded": ProviderStatus.SUCCEEDED,
    "canceled": ProviderStatus.CANCELLED,
}

REFUND_STATUS_MAP = {
    "succeeded": ProviderStatus.SUCCEEDED,
    "pending": ProviderStatus.PENDING,
    "requires_action": ProviderStatus.PENDING,
    "failed": ProviderStatus.FAILED,
    "canceled": ProviderStatus.CANCELLED,
}

REFUND_LIMIT_CODES = ("amount_too_large", "charge_already_refunded")


def to_minor_units(amount: Decimal, currency: str) -> int:
    return int((amount / minor_unit(currency)).to_integral_value(rounding=ROUND_HALF_UP))


def _redirect_url(intent) -> Optional[str]:
    next_action = getattr(intent, "next_action", None)
    redirect = getattr(next_action, "redirect_to_url", None) if next_action else None
    return getattr(redirect, "url", None) if redirect else None


def _failure_reason(intent) -> Optional[str]:
    error = getattr(intent, "last_payment_error", None)
    return getattr(error, "message", None) if error else None


class CardProvider(PaymentProvider):
    """Card payments through Stripe PaymentIntents (create, then confirm)."""

    method = PaymentMethod.CARD
    name = "stripe"

    def __init__(self, secret_key: str, webhook_secret: str, currency: str = "egp",
                 return_url: Optional[str] = None, timeout: float = 15.0):
        stripe.api_key = secret_key
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        self.webhook_secret = webhook_secret
        self.currency = currency.lower()
        self.return_url = return_url

    def create_payment(self, amount, order_id, customer_id, vendor_id, extra=None) -> ProviderPayment:
        extra = extra or {}
        if amount <= 0:
            raise InvalidRequest("Card payments need a positive amount")

        intent = self._call(
            stripe.PaymentIntent.create,
            amount=to_minor_units(amount, self.currency),
            currency=self.currency,
            automatic_payment_methods={"enabled": True},
            payment_method_options={"card": {"request_three_d_secure": "automatic"}},
            description=f"Order #{order_id}",
            metadata={"orderId": order_id, "customerId": customer_id, "vendorId": vendor_id},
            idempotency_key=extra.get("idempotency_key", order_id),
        )
        return ProviderPayment(
            provider_ref=intent.id,
            status=STATUS_MAP.get(intent.status, ProviderStatus.PENDING),
            action=PaymentAction(url=_redirect_url(intent), client_secret=getattr(intent, "client_secret", None)),
        )

    def verify_payment(self, provider_ref, expires_at=None) -> ProviderVerification:
        intent = self._call(stripe.PaymentIntent.retrieve, provider_ref)
        return self._verification(intent)

    def confirm_payment(self, provider_ref, expires_at=None) -> ProviderVerification:
        intent = self._call(stripe.PaymentIntent.retrieve, provider_ref)
        if intent.status != "requires_confirmation":
            return self._verification(intent)

        params = {"return_url": self.return_url} if self.return_url else {}
        try:
            intent = stripe.PaymentIntent.confirm(provider_ref, **params)
        except stripe.CardError as exc:
            logger.info("Card declined for %s: %s", provider_ref, exc.user_message)
            # The intent drops back to requires_payment_method and stays open for another card.
            return ProviderVerification(
                status=ProviderStatus.PENDING,
                verified_at=utcnow(),
                failure_reason=exc.user_message or "Card declined",
            )
        except stripe.StripeError as exc:
            raise self._translate(exc)
        return self._verification(intent)

    def cancel_payment(self, provider_ref) -> None:
        self._call(stripe.PaymentIntent.cancel, provider_ref)

    def refund(self, provider_ref, amount) -> ProviderRefund:
        try:
            refund = stripe.Refund.create(
                payment_intent=provider_ref,
                amount=to_minor_units(amount, self.currency),
            )
        except stripe.InvalidRequestError as exc:
            if exc.code in REFUND_LIMIT_CODES:
                raise RefundExceedsCaptured(exc.user_message or str(exc))
            raise self._translate(exc)
        except stripe.StripeError as exc:
            raise self._translate(exc)
        return ProviderRefund(
            refund_ref=refund.id,
            status=REFUND_STATUS_MAP.get(refund.status, ProviderStatus.PENDING),
        )

    def parse_webhook(self, payload, signature) -> ProviderEvent:
        if not self.webhook_secret:
            raise WebhookSignatureInvalid("Stripe webhook secret not configured")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError:
            raise WebhookSignatureInvalid("Invalid payload")
        except stripe.SignatureVerificationError:
            raise WebhookSignatureInvalid("Invalid signature")

        obj = event["data"]["object"]
        if event["type"].startswith("charge."):
            provider_ref = obj.get("payment_intent")
        else:
            provider_ref = obj.get("id")
        return ProviderEvent(
            event_id=event.get("id") or f"{event['type']}:{provider_ref}",
            provider_ref=provider_ref,
            event_type=event["type"],
            data=dict(obj),
        )

    def _verification(self, intent) -> ProviderVerification:
        status = STATUS_MAP.get(intent.status, ProviderStatus.PENDING)
        # a decline leaves the intent open with last_payment_error set
        reason = _failure_reason(intent)
        url = _redirect_url(intent)
        return ProviderVerification(
            status=status,
            verified_at=utcnow(),
            failure_reason=reason,
            action=PaymentAction(url=url) if url else None,
        )

    def _call(self, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except stripe.StripeError as exc:
            raise self._translate(exc)

    @staticmethod
    def _translate(exc):
        if isinstance(exc, (stripe.InvalidRequestError, stripe.CardError)):
            return InvalidRequest(exc.user_message or "Card processor rejected the request")
        logger.warning("Stripe call failed: %s", exc)
        return ProviderUnavailable("Card processor unavailable")
