import logging
import re
from datetime import timedelta

from souk_payments.errors import InvalidRequest, ProviderUnavailable, RefundExceedsCaptured, RefundNotSupported
from souk_payments.gateways import SmsGateway
from souk_payments.models import PaymentMethod, utcnow
from souk_payments.providers.base import (
    HttpProvider,
    PaymentAction,
    ProviderEvent,
    ProviderPayment,
    ProviderRefund,
    ProviderStatus,
    ProviderVerification,
    format_amount,
)

logger = logging.getLogger(__name__)

EXPIRY = timedelta(minutes=15)

PHONE_RE = re.compile(r"(\+20|0)1[0125]\d{8}")

STATUS_MAP = {
    "pending": ProviderStatus.PENDING,
    "processing": ProviderStatus.PROCESSING,
    "success": ProviderStatus.SUCCEEDED,
    "failed": ProviderStatus.FAILED,
    "declined": ProviderStatus.FAILED,
    "cancelled": ProviderStatus.CANCELLED,
    "expired": ProviderStatus.EXPIRED,
}


class VodafoneCashProvider(HttpProvider):
    """
    Mobile-wallet debit confirmed by the customer with a one-time PIN.

    The provider transaction exists as soon as ``/payments`` answers, before
    the PIN is texted. When the SMS leg fails the error carries the
    provider reference so the attempt is still recorded.
    """

    method = PaymentMethod.MOBILE_MONEY_B
    name = "vodafone_cash"

    def __init__(self, api_url, api_key, merchant_code, webhook_secret, callback_url,
                 sms: SmsGateway, timeout=15.0, http=None):
        super().__init__(api_url, api_key, webhook_secret, timeout=timeout, http=http)
        self.merchant_code = merchant_code
        self.callback_url = callback_url
        self.sms = sms

    def create_payment(self, amount, order_id, customer_id, vendor_id, extra=None) -> ProviderPayment:
        phone = (extra or {}).get("customer_phone") or ""
        if not PHONE_RE.fullmatch(phone):
            raise InvalidRequest("A valid Egyptian mobile number is required for Vodafone Cash")
        if amount <= 0:
            raise InvalidRequest("Vodafone Cash payments need a positive amount")

        data = self._call("POST", "/payments", {
            "amount": format_amount(amount),
            "currency": "EGP",
            "orderId": order_id,
            "customerPhone": phone,
            "merchantCode": self.merchant_code,
            "callbackUrl": self.callback_url,
        })
        reference = data.get("referenceId")
        if not reference:
            raise ProviderUnavailable("Vodafone Cash returned no reference")

        try:
            self.sms.send(phone, f"Your Vodafone Cash PIN for {format_amount(amount)} EGP is {data.get('pin')}")
        except ProviderUnavailable as exc:
            logger.warning("PIN delivery failed for %s", reference)
            raise ProviderUnavailable(f"PIN delivery failed: {exc.message}", provider_ref=reference)

        return ProviderPayment(
            provider_ref=reference,
            status=ProviderStatus.PENDING,
            action=PaymentAction(pin_sent=True),
            expires_at=utcnow() + EXPIRY,
        )

    def verify_payment(self, provider_ref, expires_at=None) -> ProviderVerification:
        data = self._call("GET", f"/payments/{provider_ref}")
        status = STATUS_MAP.get(data.get("status"), ProviderStatus.PENDING)
        now = utcnow()
        if status in (ProviderStatus.PENDING, ProviderStatus.PROCESSING) and expires_at and now >= expires_at:
            status = ProviderStatus.EXPIRED
        return ProviderVerification(
            status=status,
            verified_at=now,
            failure_reason=data.get("message") if status == ProviderStatus.FAILED else (
                "expired" if status == ProviderStatus.EXPIRED else None),
        )

    def refund(self, provider_ref, amount) -> ProviderRefund:
        data = self._call("POST", "/refunds", {
            "referenceId": provider_ref,
            "amount": format_amount(amount),
            "merchantCode": self.merchant_code,
        })
        return ProviderRefund(
            refund_ref=data.get("refundId", ""),
            status=STATUS_MAP.get(data.get("status"), ProviderStatus.PENDING),
        )

    def parse_webhook(self, payload, signature) -> ProviderEvent:
        data = self._verify_signature(payload, signature)
        reference = data.get("referenceId")
        return ProviderEvent(
            event_id=data.get("notificationId") or f"{reference}:{data.get('status')}",
            provider_ref=reference,
            event_type=data.get("status", ""),
            data=data,
        )

    def _raise_client_error(self, status_code, data):
        code = data.get("errorCode")
        if code == "REFUND_AMOUNT_EXCEEDED":
            raise RefundExceedsCaptured(data.get("message") or "Refund exceeds the captured amount")
        if code == "REFUND_NOT_ALLOWED":
            raise RefundNotSupported(data.get("message") or "Payment cannot be refunded")
        super()._raise_client_error(status_code, data)
