import json
from datetime import timedelta
from decimal import Decimal

import pytest
import requests
import stripe

from souk_payments.errors import (
    InvalidRequest,
    ProviderUnavailable,
    RefundExceedsCaptured,
    RefundNotSupported,
    WebhookSignatureInvalid,
)
from souk_payments.gateways import PayoutGateway, SmsGateway
from souk_payments.models import utcnow
from souk_payments.providers.base import ProviderStatus, hmac_sha256
from souk_payments.providers.card import CardProvider, to_minor_units
from souk_payments.providers.instapay import InstaPayProvider
from souk_payments.providers.vodafone_cash import VodafoneCashProvider


def stripe_intent(**fields):
    data = {"id": "pi_123", "object": "payment_intent", "status": "requires_payment_method",
            "client_secret": "pi_123_secret_abc"}
    data.update(fields)
    return stripe.PaymentIntent.construct_from(data, "sk_test")


def http_response(mocker, status_code=200, body=None):
    return mocker.Mock(status_code=status_code, json=lambda: body or {})


# -- card ---------------------------------------------------------------------

@pytest.fixture
def card():
    return CardProvider("sk_test", "whsec_test", currency="egp", return_url="https://souk.example/return")


def test_to_minor_units():
    assert to_minor_units(Decimal("1000.00"), "egp") == 100000
    assert to_minor_units(Decimal("12.35"), "egp") == 1235
    assert to_minor_units(Decimal("999"), "jpy") == 999


def test_card_create_payment(mocker, card):
    create = mocker.patch("stripe.PaymentIntent.create", return_value=stripe_intent())

    payment = card.create_payment(Decimal("1000.00"), "order-1", "customer-1", "vendor-1",
                                  {"idempotency_key": "order-1:pay_1"})

    assert payment.provider_ref == "pi_123"
    assert payment.status == ProviderStatus.PENDING
    assert payment.action.client_secret == "pi_123_secret_abc"
    kwargs = create.call_args.kwargs
    assert kwargs["amount"] == 100000
    assert kwargs["currency"] == "egp"
    assert kwargs["metadata"] == {"orderId": "order-1", "customerId": "customer-1", "vendorId": "vendor-1"}
    assert kwargs["idempotency_key"] == "order-1:pay_1"
    assert kwargs["payment_method_options"]["card"]["request_three_d_secure"] == "automatic"


def test_card_create_payment_connection_error(mocker, card):
    mocker.patch("stripe.PaymentIntent.create", side_effect=stripe.APIConnectionError("network down"))

    with pytest.raises(ProviderUnavailable):
        card.create_payment(Decimal("10.00"), "order-1", "customer-1", "vendor-1")


def test_card_create_payment_rejected(mocker, card):
    mocker.patch("stripe.PaymentIntent.create",
                 side_effect=stripe.InvalidRequestError("Amount must be at least 10", "amount"))

    with pytest.raises(InvalidRequest):
        card.create_payment(Decimal("0.10"), "order-1", "customer-1", "vendor-1")


def test_card_verify_maps_statuses(mocker, card):
    retrieve = mocker.patch("stripe.PaymentIntent.retrieve")

    retrieve.return_value = stripe_intent(status="succeeded")
    assert card.verify_payment("pi_123").status == ProviderStatus.SUCCEEDED

    retrieve.return_value = stripe_intent(status="processing")
    assert card.verify_payment("pi_123").status == ProviderStatus.PROCESSING

    retrieve.return_value = stripe_intent(status="canceled")
    assert card.verify_payment("pi_123").status == ProviderStatus.CANCELLED


def test_card_verify_declined_attempt_stays_open(mocker, card):
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=stripe_intent(
        last_payment_error={"message": "Your card was declined."}))

    verification = card.verify_payment("pi_123")

    assert verification.status == ProviderStatus.PENDING
    assert verification.failure_reason == "Your card was declined."


def test_card_verify_surfaces_3ds_redirect(mocker, card):
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=stripe_intent(
        status="requires_action",
        next_action={"type": "redirect_to_url", "redirect_to_url": {"url": "https://bank.example/3ds"}}))

    verification = card.verify_payment("pi_123")

    assert verification.status == ProviderStatus.PENDING
    assert verification.action.url == "https://bank.example/3ds"


def test_card_confirm_only_confirms_when_required(mocker, card):
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=stripe_intent(status="requires_confirmation"))
    confirm = mocker.patch("stripe.PaymentIntent.confirm", return_value=stripe_intent(status="succeeded"))

    assert card.confirm_payment("pi_123").status == ProviderStatus.SUCCEEDED
    confirm.assert_called_once_with("pi_123", return_url="https://souk.example/return")


def test_card_confirm_skips_settled_intent(mocker, card):
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=stripe_intent(status="succeeded"))
    confirm = mocker.patch("stripe.PaymentIntent.confirm")

    assert card.confirm_payment("pi_123").status == ProviderStatus.SUCCEEDED
    confirm.assert_not_called()


def test_card_confirm_decline(mocker, card):
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=stripe_intent(status="requires_confirmation"))
    mocker.patch("stripe.PaymentIntent.confirm",
                 side_effect=stripe.CardError("Your card was declined.", "card", "card_declined"))

    verification = card.confirm_payment("pi_123")

    assert verification.status == ProviderStatus.PENDING
    assert verification.failure_reason


def test_card_cancel(mocker, card):
    cancel = mocker.patch("stripe.PaymentIntent.cancel", return_value=stripe_intent(status="canceled"))

    card.cancel_payment("pi_123")

    cancel.assert_called_once_with("pi_123")


def test_card_refund(mocker, card):
    create = mocker.patch("stripe.Refund.create", return_value=stripe.Refund.construct_from(
        {"id": "re_1", "object": "refund", "status": "succeeded"}, "sk_test"))

    refund = card.refund("pi_123", Decimal("600.00"))

    assert refund.refund_ref == "re_1"
    assert refund.status == ProviderStatus.SUCCEEDED
    create.assert_called_once_with(payment_intent="pi_123", amount=60000)


def test_card_refund_over_captured(mocker, card):
    mocker.patch("stripe.Refund.create", side_effect=stripe.InvalidRequestError(
        "Refund amount is greater than charge amount", "amount", code="amount_too_large"))

    with pytest.raises(RefundExceedsCaptured):
        card.refund("pi_123", Decimal("2000.00"))


def test_card_webhook(mocker, card):
    construct = mocker.patch("stripe.Webhook.construct_event", return_value={
        "id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_123"}},
    })

    event = card.parse_webhook(b"{}", "t=1,v1=abc")

    assert event.event_id == "evt_1"
    assert event.provider_ref == "pi_123"
    assert event.event_type == "payment_intent.succeeded"
    construct.assert_called_once_with(b"{}", "t=1,v1=abc", "whsec_test")


def test_card_charge_webhook_points_at_payment_intent(mocker, card):
    mocker.patch("stripe.Webhook.construct_event", return_value={
        "id": "evt_2", "type": "charge.refunded", "data": {"object": {"id": "ch_1", "payment_intent": "pi_123"}},
    })

    assert card.parse_webhook(b"{}", "sig").provider_ref == "pi_123"


@pytest.mark.parametrize("error", [ValueError("bad json"), stripe.SignatureVerificationError("Invalid", "sig")])
def test_card_webhook_invalid(mocker, card, error):
    mocker.patch("stripe.Webhook.construct_event", side_effect=error)

    with pytest.raises(WebhookSignatureInvalid):
        card.parse_webhook(b"{}", "sig")


# -- instapay -----------------------------------------------------------------

@pytest.fixture
def instapay(mocker):
    return InstaPayProvider(
        "https://instapay.example/v1/", "ip_key", "MERCHANT-1", "SOUKSAYARAT@CIB", "ip_whsec",
        "https://souk.example/payments/webhook/instapay", http=mocker.Mock(),
    )


def test_instapay_create_payment(mocker, instapay):
    instapay.http.request.return_value = http_response(mocker, 201, {"status": "pending"})

    payment = instapay.create_payment(Decimal("1500.5"), "order-1", "customer-1", "vendor-1")

    assert payment.provider_ref.startswith("ORD-order-1-")
    assert payment.status == ProviderStatus.PENDING
    assert json.loads(payment.action.qr_payload) == {
        "ipa": "SOUKSAYARAT@CIB", "amount": "1500.50", "reference": payment.provider_ref}
    assert payment.expires_at - utcnow() > timedelta(minutes=29)

    method, url = instapay.http.request.call_args.args
    kwargs = instapay.http.request.call_args.kwargs
    assert (method, url) == ("POST", "https://instapay.example/v1/transactions")
    body = json.loads(kwargs["data"])
    assert body["amount"] == "1500.50"
    assert body["ipa"] == "SOUKSAYARAT@CIB"
    assert kwargs["headers"]["X-Merchant-Id"] == "MERCHANT-1"
    assert kwargs["headers"]["Authorization"] == "Bearer ip_key"
    assert kwargs["headers"]["X-Signature"] == hmac_sha256("ip_key", kwargs["data"])
    assert kwargs["timeout"] == 15.0


@pytest.mark.parametrize("status,expected", [
    ("completed", ProviderStatus.SUCCEEDED),
    ("rejected", ProviderStatus.FAILED),
    ("processing", ProviderStatus.PROCESSING),
    ("something-new", ProviderStatus.PENDING),
])
def test_instapay_verify_status_mapping(mocker, instapay, status, expected):
    instapay.http.request.return_value = http_response(mocker, 200, {"status": status})

    assert instapay.verify_payment("ORD-order-1-1").status == expected
    assert instapay.http.request.call_args.args == ("GET", "https://instapay.example/v1/transactions/ORD-order-1-1")


def test_instapay_pending_past_expiry_is_expired(mocker, instapay):
    instapay.http.request.return_value = http_response(mocker, 200, {"status": "pending"})

    verification = instapay.verify_payment("ORD-order-1-1", expires_at=utcnow() - timedelta(seconds=1))

    assert verification.status == ProviderStatus.EXPIRED
    assert verification.failure_reason == "expired"


def test_instapay_unreachable(instapay):
    instapay.http.request.side_effect = requests.ConnectionError("connection refused")

    with pytest.raises(ProviderUnavailable):
        instapay.verify_payment("ORD-order-1-1")


def test_instapay_server_error(mocker, instapay):
    instapay.http.request.return_value = http_response(mocker, 502, {})

    with pytest.raises(ProviderUnavailable):
        instapay.create_payment(Decimal("10.00"), "order-1", "customer-1", "vendor-1")


def test_instapay_malformed_response(mocker, instapay):
    instapay.http.request.return_value = mocker.Mock(status_code=200, json=mocker.Mock(side_effect=ValueError))

    with pytest.raises(ProviderUnavailable):
        instapay.verify_payment("ORD-order-1-1")


@pytest.mark.parametrize("code,error", [
    ("AMOUNT_EXCEEDS_CAPTURED", RefundExceedsCaptured),
    ("NOT_REFUNDABLE", RefundNotSupported),
    ("BAD_REFERENCE", InvalidRequest),
])
def test_instapay_refund_errors(mocker, instapay, code, error):
    instapay.http.request.return_value = http_response(mocker, 422, {"code": code, "message": "no"})

    with pytest.raises(error):
        instapay.refund("ORD-order-1-1", Decimal("100.00"))


def test_instapay_refund(mocker, instapay):
    instapay.http.request.return_value = http_response(mocker, 200, {"refundId": "IPR-1", "status": "completed"})

    refund = instapay.refund("ORD-order-1-1", Decimal("100.00"))

    assert refund.refund_ref == "IPR-1"
    assert refund.status == ProviderStatus.SUCCEEDED


def test_instapay_webhook(instapay):
    payload = json.dumps({"eventId": "ev-1", "reference": "ORD-order-1-1", "status": "completed"}).encode()

    event = instapay.parse_webhook(payload, hmac_sha256("ip_whsec", payload))

    assert event.event_id == "ev-1"
    assert event.provider_ref == "ORD-order-1-1"
    assert event.event_type == "completed"


@pytest.mark.parametrize("signature", [None, "", "deadbeef"])
def test_instapay_webhook_bad_signature(instapay, signature):
    payload = b'{"reference": "ORD-order-1-1", "status": "completed"}'

    with pytest.raises(WebhookSignatureInvalid):
        instapay.parse_webhook(payload, signature)


# -- vodafone cash ------------------------------------------------------------

@pytest.fixture
def sms(mocker):
    return mocker.Mock(spec=SmsGateway)


@pytest.fixture
def vodafone(mocker, sms):
    return VodafoneCashProvider(
        "https://vfcash.example/api", "vf_key", "SOUK01", "vf_whsec",
        "https://souk.example/payments/webhook/vodafone_cash", sms, http=mocker.Mock(),
    )


def test_vodafone_create_payment_texts_pin(mocker, vodafone, sms):
    vodafone.http.request.return_value = http_response(mocker, 200, {"referenceId": "VC-1", "pin": "4821"})

    payment = vodafone.create_payment(Decimal("250.00"), "order-1", "customer-1", "vendor-1",
                                      {"customer_phone": "01012345678"})

    assert payment.provider_ref == "VC-1"
    assert payment.action.pin_sent
    assert timedelta(minutes=14) < payment.expires_at - utcnow() <= timedelta(minutes=15)
    body = json.loads(vodafone.http.request.call_args.kwargs["data"])
    assert body["customerPhone"] == "01012345678"
    assert body["merchantCode"] == "SOUK01"
    phone, message = sms.send.call_args.args
    assert phone == "01012345678"
    assert "4821" in message


@pytest.mark.parametrize("phone", [None, "", "0101234567", "01312345678", "+201512345678x"])
def test_vodafone_requires_valid_phone(vodafone, phone):
    with pytest.raises(InvalidRequest):
        vodafone.create_payment(Decimal("250.00"), "order-1", "customer-1", "vendor-1", {"customer_phone": phone})
    vodafone.http.request.assert_not_called()


def test_vodafone_accepts_international_format(mocker, vodafone):
    vodafone.http.request.return_value = http_response(mocker, 200, {"referenceId": "VC-2", "pin": "1"})

    payment = vodafone.create_payment(Decimal("250.00"), "order-1", "customer-1", "vendor-1",
                                      {"customer_phone": "+201112345678"})

    assert payment.provider_ref == "VC-2"


def test_vodafone_sms_failure_keeps_reference(mocker, vodafone, sms):
    vodafone.http.request.return_value = http_response(mocker, 200, {"referenceId": "VC-3", "pin": "1"})
    sms.send.side_effect = ProviderUnavailable("SMS gateway unavailable")

    with pytest.raises(ProviderUnavailable) as exc:
        vodafone.create_payment(Decimal("250.00"), "order-1", "customer-1", "vendor-1",
                                {"customer_phone": "01012345678"})

    assert exc.value.provider_ref == "VC-3"


def test_vodafone_verify(mocker, vodafone):
    vodafone.http.request.return_value = http_response(mocker, 200, {"status": "declined", "message": "Wrong PIN"})

    verification = vodafone.verify_payment("VC-1")

    assert verification.status == ProviderStatus.FAILED
    assert verification.failure_reason == "Wrong PIN"
    assert vodafone.http.request.call_args.args == ("GET", "https://vfcash.example/api/payments/VC-1")


def test_vodafone_verify_success_ignores_expiry(mocker, vodafone):
    vodafone.http.request.return_value = http_response(mocker, 200, {"status": "success"})

    verification = vodafone.verify_payment("VC-1", expires_at=utcnow() - timedelta(minutes=5))

    assert verification.status == ProviderStatus.SUCCEEDED


def test_vodafone_refund_exceeding_capture(mocker, vodafone):
    vodafone.http.request.return_value = http_response(mocker, 400, {"errorCode": "REFUND_AMOUNT_EXCEEDED"})

    with pytest.raises(RefundExceedsCaptured):
        vodafone.refund("VC-1", Decimal("999.00"))


def test_vodafone_webhook(vodafone):
    payload = json.dumps({"notificationId": "n-1", "referenceId": "VC-1", "status": "success"}).encode()

    event = vodafone.parse_webhook(payload, hmac_sha256("vf_whsec", payload))

    assert (event.event_id, event.provider_ref) == ("n-1", "VC-1")
    with pytest.raises(WebhookSignatureInvalid):
        vodafone.parse_webhook(payload, hmac_sha256("wrong", payload))


# -- gateways -----------------------------------------------------------------

def test_sms_gateway_send(mocker):
    http = mocker.Mock()
    gateway = SmsGateway("https://sms.example/", "sms_key", http=http)

    gateway.send("01012345678", "hello")

    http.post.assert_called_once_with(
        "https://sms.example/messages",
        json={"to": "01012345678", "body": "hello"},
        headers={"Authorization": "Bearer sms_key"},
        timeout=15.0,
    )


def test_sms_gateway_failure(mocker):
    http = mocker.Mock()
    http.post.return_value.raise_for_status.side_effect = requests.HTTPError("500")

    with pytest.raises(ProviderUnavailable):
        SmsGateway("https://sms.example", "sms_key", http=http).send("01012345678", "hello")


def test_sms_gateway_not_configured(mocker):
    with pytest.raises(ProviderUnavailable):
        SmsGateway("", "", http=mocker.Mock()).send("01012345678", "hello")


def test_payout_gateway_transfer(mocker):
    http = mocker.Mock()
    http.post.return_value.json.return_value = {"id": "tr_9"}
    gateway = PayoutGateway("https://payouts.example", "po_key", http=http)

    assert gateway.transfer("EG380019000500000000263180002", Decimal("200"), "po_1") == "tr_9"
    kwargs = http.post.call_args.kwargs
    assert kwargs["json"]["amount"] == "200.00"
    assert kwargs["headers"]["Idempotency-Key"] == "po_1"


def test_payout_gateway_failure(mocker):
    http = mocker.Mock()
    http.post.side_effect = requests.Timeout("slow bank")

    with pytest.raises(ProviderUnavailable):
        PayoutGateway("https://payouts.example", "po_key", http=http).transfer("acct", Decimal("1"), "po_1")
