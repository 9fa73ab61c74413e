import json
import time
from datetime import timedelta

from souk_payments.errors import InvalidRequest, RefundExceedsCaptured, RefundNotSupported
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

EXPIRY = timedelta(minutes=30)

STATUS_MAP = {
    "pending": ProviderStatus.PENDING,
    "processing": ProviderStatus.PROCESSING,
    "completed": ProviderStatus.SUCCEEDED,
    "failed": ProviderStatus.FAILED,
    "rejected": ProviderStatus.FAILED,
    "cancelled": ProviderStatus.CANCELLED,
    "expired": ProviderStatus.EXPIRED,
}


class InstaPayProvider(HttpProvider):
    """Instant-payment network transfer to the marketplace IPA, paid by QR scan."""

    method = PaymentMethod.MOBILE_MONEY_A
    name = "instapay"

    def __init__(self, api_url, api_key, merchant_id, ipa, webhook_secret, callback_url, timeout=15.0, http=None):
        super().__init__(api_url, api_key, webhook_secret, timeout=timeout, http=http)
        self.merchant_id = merchant_id
        self.ipa = ipa
        self.callback_url = callback_url

    def _headers(self, body):
        headers = super()._headers(body)
        headers["X-Merchant-Id"] = self.merchant_id
        return headers

    def create_payment(self, amount, order_id, customer_id, vendor_id, extra=None) -> ProviderPayment:
        if amount <= 0:
            raise InvalidRequest("InstaPay transfers need a positive amount")

        reference = f"ORD-{order_id}-{int(time.time() * 1000)}"
        self._call("POST", "/transactions", {
            "amount": format_amount(amount),
            "currency": "EGP",
            "reference": reference,
            "ipa": self.ipa,
            "description": f"Order #{order_id}",
            "callbackUrl": self.callback_url,
        })

        qr_payload = json.dumps(
            {"ipa": self.ipa, "amount": format_amount(amount), "reference": reference},
            separators=(",", ":"),
        )
        return ProviderPayment(
            provider_ref=reference,
            status=ProviderStatus.PENDING,
            action=PaymentAction(qr_payload=qr_payload),
            expires_at=utcnow() + EXPIRY,
        )

    def verify_payment(self, provider_ref, expires_at=None) -> ProviderVerification:
        data = self._call("GET", f"/transactions/{provider_ref}")
        status = STATUS_MAP.get(data.get("status"), ProviderStatus.PENDING)
        now = utcnow()
        if status in (ProviderStatus.PENDING, ProviderStatus.PROCESSING) and expires_at and now >= expires_at:
            status = ProviderStatus.EXPIRED
        return ProviderVerification(
            status=status,
            verified_at=now,
            failure_reason=data.get("failureReason") or ("expired" if status == ProviderStatus.EXPIRED else None),
        )

    def refund(self, provider_ref, amount) -> ProviderRefund:
        data = self._call("POST", "/refunds", {
            "reference": provider_ref,
            "amount": format_amount(amount),
            "reason": "Customer requested refund",
        })
        return ProviderRefund(
            refund_ref=data.get("refundId", ""),
            status=STATUS_MAP.get(data.get("status"), ProviderStatus.PENDING),
        )

    def parse_webhook(self, payload, signature) -> ProviderEvent:
        data = self._verify_signature(payload, signature)
        reference = data.get("reference")
        return ProviderEvent(
            event_id=data.get("eventId") or f"{reference}:{data.get('status')}",
            provider_ref=reference,
            event_type=data.get("status", ""),
            data=data,
        )

    def _raise_client_error(self, status_code, data):
        code = data.get("code")
        if code == "AMOUNT_EXCEEDS_CAPTURED":
            raise RefundExceedsCaptured(data.get("message") or "Refund exceeds the captured amount")
        if code == "NOT_REFUNDABLE":
            raise RefundNotSupported(data.get("message") or "Transaction cannot be refunded")
        super()._raise_client_error(status_code, data)
