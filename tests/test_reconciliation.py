from datetime import timedelta
from decimal import Decimal

from souk_payments.errors import ProviderUnavailable
from souk_payments.models import IntentStatus, PaymentIntent, PaymentMethod, TxnStatus, utcnow
from tests.db import TestingSessionLocal


def test_reconcile_expires_intents_and_retries_payouts(services, payouts):
    services.wallets.open_wallet("vendor-1", "vendor")
    services.wallets.credit("wallet-vendor-1", Decimal("300.00"), "Order #order-0 payment")
    txn = services.wallets.withdraw("wallet-vendor-1", Decimal("100.00"), "acct-1")

    intent_id = services.orchestrator.initiate(
        Decimal("50.00"), "order-1", "customer-1", "vendor-1", PaymentMethod.CARD).intent_id
    with TestingSessionLocal() as session:
        session.get(PaymentIntent, intent_id).expires_at = utcnow() - timedelta(seconds=1)
        session.commit()

    payouts.transfer.side_effect = ProviderUnavailable("bank offline")
    summary = services.reconciler.run()

    assert summary == {"expiredIntents": 1, "payouts": {"completed": 0, "retrying": 1, "reversed": 0}}
    assert services.orchestrator.get_intent(intent_id).status == IntentStatus.FAILED

    payouts.transfer.side_effect = None
    summary = services.reconciler.run()

    assert summary["payouts"] == {"completed": 1, "retrying": 0, "reversed": 0}
    assert services.wallets.history("wallet-vendor-1")[-1].status == TxnStatus.COMPLETED
    assert services.wallets.history("wallet-vendor-1")[-1].id == txn.id


def test_reconcile_reverses_exhausted_payouts(services, payouts, settings):
    services.wallets.open_wallet("vendor-1", "vendor")
    services.wallets.credit("wallet-vendor-1", Decimal("300.00"), "Order #order-0 payment")
    services.wallets.withdraw("wallet-vendor-1", Decimal("100.00"), "acct-1")
    payouts.transfer.side_effect = ProviderUnavailable("bank offline")

    for _ in range(settings.payout_max_attempts):
        services.reconciler.run()
    summary = services.reconciler.run()

    assert summary["payouts"]["reversed"] == 1
    assert services.wallets.get_wallet("wallet-vendor-1").balance == Decimal("300.00")
    assert services.wallets.replay("wallet-vendor-1")
    assert services.reconciler.run()["payouts"] == {"completed": 0, "retrying": 0, "reversed": 0}
