"""
Periodic reconciliation pass.

Fails payment intents that outlived their expiry window and settles or
reverses queued withdrawals. Meant to be triggered by an external scheduler,
either through ``POST /admin/reconcile`` or ``python -m souk_payments.reconciliation``.
"""
import logging
from datetime import datetime
from typing import Optional

from souk_payments.orchestrator import PaymentOrchestrator
from souk_payments.wallet import WalletLedger

logger = logging.getLogger(__name__)


class Reconciler:
    def __init__(self, orchestrator: PaymentOrchestrator, wallets: WalletLedger, payout_max_attempts: int = 5):
        self.orchestrator = orchestrator
        self.wallets = wallets
        self.payout_max_attempts = payout_max_attempts

    def run(self, now: Optional[datetime] = None) -> dict:
        expired = self.orchestrator.sweep_expired(now)
        payouts = self.wallets.sweep_payouts(self.payout_max_attempts)
        logger.info("Reconciliation: %s intents expired, payouts %s", expired, payouts)
        return {"expiredIntents": expired, "payouts": payouts}


def main():
    from souk_payments.config import get_settings
    from souk_payments.database import Base, SessionLocal, engine
    from souk_payments.logging_config import setup_logging
    from souk_payments.main import build_services

    settings = get_settings()
    setup_logging("souk-payments-reconciler", settings.log_level)
    Base.metadata.create_all(bind=engine)
    build_services(settings, SessionLocal).reconciler.run()


if __name__ == "__main__":
    main()
