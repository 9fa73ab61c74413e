from decimal import Decimal

import pytest
from sqlalchemy import event, func, select

from souk_payments.errors import (
    InvalidAmount,
    InvalidRequest,
    PaymentNotFound,
    ProviderUnavailable,
    RefundExceedsCaptured,
    RefundExceedsOriginal,
    RefundFailed,
    RefundNotSupported,
)
from souk_payments.models import IntentStatus, Order, PaymentIntent, PaymentMethod, RefundRecord
from souk_payments.providers.base import ProviderStatus
from tests.db import TestingSessionLocal


@pytest.fixture
def paid_intent(services):
    intent_id = services.orchestrator.initiate(
        Decimal("1000.00"), "order-1", "customer-1", "vendor-1", PaymentMethod.CARD
    ).intent_id
    services.orchestrator.confirm(intent_id)
    return intent_id


def refund_count():
    with TestingSessionLocal() as session:
        return session.scalar(select(func.count()).select_from(RefundRecord))


def test_partial_refunds_are_capped_at_the_original(services, provider, paid_intent):
    record = services.refunds.refund(paid_intent, Decimal("600.00"), "Customer changed mind")

    assert record.amount == Decimal("600.00")
    assert record.provider_refund_ref == "re_1"
    assert record.status == ProviderStatus.SUCCEEDED
    assert provider.refunds == [("fake_1", Decimal("600.00"))]

    with pytest.raises(RefundExceedsOriginal):
        services.refunds.refund(paid_intent, Decimal("500.00"))

    assert refund_count() == 1
    assert len(provider.refunds) == 1
    assert services.orchestrator.get_intent(paid_intent).refunded_amount == Decimal("600.00")


def test_order_refund_status_follows_refunds(services, paid_intent):
    services.refunds.refund(paid_intent, "400.00")
    with TestingSessionLocal() as session:
        order = session.get(Order, "order-1")
    assert order.refund_status == "partially_refunded"
    assert order.refunded_amount == Decimal("400.00")

    services.refunds.refund(paid_intent, "600.00")
    with TestingSessionLocal() as session:
        order = session.get(Order, "order-1")
    assert order.refund_status == "refunded"
    assert order.refunded_at is not None
    assert [r.amount for r in services.refunds.refunds_for(paid_intent)] == [Decimal("400.00"), Decimal("600.00")]


@pytest.mark.parametrize("amount", ["0", "-5.00", "1.001", "abc"])
def test_refund_amount_must_be_positive(services, paid_intent, amount):
    with pytest.raises(InvalidAmount):
        services.refunds.refund(paid_intent, amount)


def test_refund_of_missing_payment(services):
    with pytest.raises(PaymentNotFound):
        services.refunds.refund("pay_missing", Decimal("10.00"))


def test_refund_requires_succeeded_payment(services, provider):
    intent_id = services.orchestrator.initiate(
        Decimal("1000.00"), "order-1", "customer-1", "vendor-1", PaymentMethod.CARD
    ).intent_id

    with pytest.raises(InvalidRequest):
        services.refunds.refund(intent_id, Decimal("10.00"))
    assert provider.refunds == []


@pytest.mark.parametrize("error", [
    ProviderUnavailable("card processor down"),
    RefundExceedsCaptured("Refund exceeds captured amount"),
])
def test_provider_error_releases_reservation(services, provider, paid_intent, error):
    provider.refund_error = error

    with pytest.raises(RefundFailed) as exc:
        services.refunds.refund(paid_intent, Decimal("250.00"))

    assert error.code in exc.value.message
    assert refund_count() == 0
    assert services.orchestrator.get_intent(paid_intent).refunded_amount == Decimal("0")

    # the full amount is still refundable afterwards
    provider.refund_error = None
    services.refunds.refund(paid_intent, Decimal("1000.00"))
    assert refund_count() == 1


def test_refund_rejected_by_provider(services, provider, paid_intent):
    provider.refund_status = ProviderStatus.FAILED

    with pytest.raises(RefundFailed):
        services.refunds.refund(paid_intent, Decimal("100.00"))

    assert refund_count() == 0
    assert services.orchestrator.get_intent(paid_intent).refunded_amount == Decimal("0")


def test_cash_payments_cannot_be_refunded(services):
    with TestingSessionLocal() as session:
        session.add(PaymentIntent(
            id="pay_cash", provider_ref="cash-1", amount=Decimal("300.00"), currency="EGP",
            status=IntentStatus.SUCCEEDED, method=PaymentMethod.CASH, order_id="order-9",
            customer_id="customer-1", vendor_id="vendor-1",
        ))
        session.commit()

    with pytest.raises(RefundNotSupported):
        services.refunds.refund("pay_cash", Decimal("100.00"))

    assert services.orchestrator.get_intent("pay_cash").refunded_amount == Decimal("0")


def test_interleaved_refunds_both_count_on_the_order(services, paid_intent):
    started = []

    def refund_alongside(orm_execute_state):
        # a second refund commits while the first is about to update the order
        statement = orm_execute_state.statement
        if orm_execute_state.is_update and getattr(statement, "table", None) is Order.__table__ and not started:
            started.append(True)
            services.refunds.refund(paid_intent, Decimal("400.00"))

    event.listen(TestingSessionLocal, "do_orm_execute", refund_alongside)
    try:
        services.refunds.refund(paid_intent, Decimal("600.00"))
    finally:
        event.remove(TestingSessionLocal, "do_orm_execute", refund_alongside)

    assert started == [True]
    assert refund_count() == 2
    assert services.orchestrator.get_intent(paid_intent).refunded_amount == Decimal("1000.00")
    with TestingSessionLocal() as session:
        order = session.get(Order, "order-1")
    assert order.refunded_amount == Decimal("1000.00")
    assert order.refund_status == "refunded"
