"""
Wallet Ledger.

The only component allowed to change ``Wallet.balance``. Every mutation is a
compare-and-set on the wallet's ``version`` plus exactly one
``WalletTransaction`` row, committed together; a lost race rolls both back
and the whole unit is retried against the fresh balance.
"""
import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update

from souk_payments.commission import to_money
from souk_payments.database import StaleWrite, run_in_transaction
from souk_payments.errors import (
    InsufficientBalance,
    InvalidAmount,
    InvalidRequest,
    PaymentError,
    WalletNotFound,
)
from souk_payments.models import (
    PayoutRequest,
    PayoutStatus,
    TxnStatus,
    TxnType,
    Wallet,
    WalletTransaction,
    utcnow,
)

logger = logging.getLogger(__name__)

OWNER_TYPES = ("customer", "vendor")

STALE_PAYOUT = timedelta(minutes=15)


def wallet_id_for(owner_id: str) -> str:
    return f"wallet-{owner_id}"


def signed_amount(txn: WalletTransaction) -> Decimal:
    return txn.amount if txn.type in TxnType.INBOUND else -txn.amount


class WalletLedger:
    def __init__(self, session_factory, payouts=None, currency: str = "EGP", max_retries: int = 5):
        self.session_factory = session_factory
        self.payouts = payouts
        self.currency = currency
        self.max_retries = max_retries

    # -- wallets -----------------------------------------------------------

    def open_wallet(self, owner_id: str, owner_type: str, currency: Optional[str] = None) -> Wallet:
        if owner_type not in OWNER_TYPES:
            raise InvalidRequest(f"owner_type must be one of {', '.join(OWNER_TYPES)}")

        def work(session):
            return self.ensure_wallet(session, owner_id, owner_type, currency)

        return run_in_transaction(self.session_factory, work, self.max_retries)

    def ensure_wallet(self, session, owner_id: str, owner_type: str, currency: Optional[str] = None) -> Wallet:
        """Get or create the owner's wallet inside the caller's transaction."""
        wallet = session.get(Wallet, wallet_id_for(owner_id))
        if wallet:
            return wallet
        wallet = Wallet(
            id=wallet_id_for(owner_id),
            owner_id=owner_id,
            owner_type=owner_type,
            balance=Decimal("0.00"),
            currency=(currency or self.currency).upper(),
            status="active",
            version=0,
        )
        session.add(wallet)
        session.flush()
        logger.info("Opened %s wallet %s", owner_type, wallet.id)
        return wallet

    def get_wallet(self, wallet_id: str) -> Wallet:
        with self.session_factory() as session:
            wallet = session.get(Wallet, wallet_id)
            if not wallet:
                raise WalletNotFound(f"Wallet {wallet_id} not found")
            return wallet

    def set_status(self, wallet_id: str, status: str) -> Wallet:
        if status not in ("active", "suspended"):
            raise InvalidRequest("status must be active or suspended")

        def work(session):
            wallet = session.get(Wallet, wallet_id)
            if not wallet:
                raise WalletNotFound(f"Wallet {wallet_id} not found")
            wallet.status = status
            wallet.updated_at = utcnow()
            return wallet

        return run_in_transaction(self.session_factory, work, self.max_retries)

    def history(self, wallet_id: str) -> List[WalletTransaction]:
        with self.session_factory() as session:
            if not session.get(Wallet, wallet_id):
                raise WalletNotFound(f"Wallet {wallet_id} not found")
            return list(session.scalars(
                select(WalletTransaction)
                .where(WalletTransaction.wallet_id == wallet_id)
                .order_by(WalletTransaction.seq)
            ))

    def replay(self, wallet_id: str) -> bool:
        """Re-derive every ``balance_after`` from zero and compare with the wallet."""
        balance = Decimal("0")
        for txn in self.history(wallet_id):
            balance += signed_amount(txn)
            if balance != txn.balance_after:
                logger.error("Wallet %s chain breaks at txn %s", wallet_id, txn.id)
                return False
        return balance == self.get_wallet(wallet_id).balance

    # -- balance mutations ---------------------------------------------------

    def credit(self, wallet_id, amount, description, reference=None, idempotency_key=None,
               txn_type: str = TxnType.CREDIT) -> WalletTransaction:
        if txn_type not in TxnType.INBOUND:
            raise InvalidRequest(f"{txn_type} is not a credit")
        amount = self._amount(amount)
        return run_in_transaction(
            self.session_factory,
            lambda session: self.apply(session, wallet_id, txn_type, amount, description,
                                       reference=reference, idempotency_key=idempotency_key),
            self.max_retries,
        )

    def debit(self, wallet_id, amount, description, reference=None, idempotency_key=None) -> WalletTransaction:
        amount = self._amount(amount)
        return run_in_transaction(
            self.session_factory,
            lambda session: self.apply(session, wallet_id, TxnType.DEBIT, amount, description,
                                       reference=reference, idempotency_key=idempotency_key),
            self.max_retries,
        )

    def withdraw(self, wallet_id, amount, destination: str) -> WalletTransaction:
        """
        Debit the wallet now and queue the bank payout.

        The transaction is written ``pending``; ``process_payout`` settles it
        and ``sweep_payouts`` reverses payouts that keep failing.
        """
        if not destination:
            raise InvalidRequest("A payout destination is required")
        amount = self._amount(amount)

        def work(session):
            txn = self.apply(session, wallet_id, TxnType.WITHDRAWAL, amount, "Withdrawal to bank account",
                             reference=destination, status=TxnStatus.PENDING)
            session.add(PayoutRequest(
                id=f"po_{uuid.uuid4().hex}",
                transaction_id=txn.id,
                wallet_id=wallet_id,
                amount=amount,
                destination=destination,
                status=PayoutStatus.PENDING,
            ))
            return txn

        txn = run_in_transaction(self.session_factory, work, self.max_retries)
        logger.info("Withdrawal %s of %s queued from %s", txn.id, amount, wallet_id)
        return txn

    def apply(self, session, wallet_id, txn_type, amount: Decimal, description, reference=None,
              idempotency_key=None, status=TxnStatus.COMPLETED) -> WalletTransaction:
        """
        One balance mutation inside the caller's transaction.

        Raises ``StaleWrite`` when another writer moved the wallet first.
        """
        if idempotency_key:
            existing = session.scalar(
                select(WalletTransaction).where(WalletTransaction.idempotency_key == idempotency_key)
            )
            if existing:
                logger.info("Wallet posting %s already applied as %s", idempotency_key, existing.id)
                return existing

        wallet = session.get(Wallet, wallet_id)
        if not wallet:
            raise WalletNotFound(f"Wallet {wallet_id} not found")

        if txn_type in TxnType.OUTBOUND:
            if wallet.status != "active":
                raise InvalidRequest(f"Wallet {wallet_id} is {wallet.status}")
            if wallet.balance < amount:
                raise InsufficientBalance(f"Wallet {wallet_id} balance is below {amount}")
            new_balance = wallet.balance - amount
        else:
            new_balance = wallet.balance + amount

        version = wallet.version
        result = session.execute(
            update(Wallet)
            .where(Wallet.id == wallet_id, Wallet.version == version)
            .values(balance=new_balance, version=version + 1, updated_at=utcnow())
        )
        if result.rowcount != 1:
            raise StaleWrite(f"wallet {wallet_id} moved past version {version}")

        txn = WalletTransaction(
            id=f"txn_{uuid.uuid4().hex}",
            wallet_id=wallet_id,
            seq=version + 1,
            type=txn_type,
            amount=amount,
            balance_after=new_balance,
            description=description,
            reference=reference,
            idempotency_key=idempotency_key,
            status=status,
        )
        session.add(txn)
        session.flush()
        logger.info("Wallet %s %s %s -> balance %s", wallet_id, txn_type, amount, new_balance)
        return txn

    # -- payouts -------------------------------------------------------------

    def process_payout(self, transaction_id: str) -> str:
        """
        Push one pending withdrawal to the bank. Returns the payout status.

        The payout is claimed (``pending -> in_flight``) before the transfer,
        so only one worker ever sends it and a sweep cannot reverse it
        mid-transfer.
        """
        with self.session_factory() as session:
            payout = session.scalar(select(PayoutRequest).where(PayoutRequest.transaction_id == transaction_id))
            if not payout:
                raise InvalidRequest(f"No payout for transaction {transaction_id}")
            payout_id = payout.id

        claimed = self._claim_payout(payout_id)
        if claimed is None:
            return self._payout_status(payout_id)
        destination, amount = claimed

        try:
            self.payouts.transfer(destination, amount, reference=payout_id)
        except PaymentError as exc:
            self._finish_payout(payout_id, PayoutStatus.PENDING, error=exc.message)
            return PayoutStatus.PENDING

        self._finish_payout(payout_id, PayoutStatus.COMPLETED)
        logger.info("Payout %s completed", payout_id)
        return PayoutStatus.COMPLETED

    def sweep_payouts(self, max_attempts: int, stale_after: timedelta = STALE_PAYOUT) -> dict:
        """Retry pending payouts; reverse the ones that exhausted their attempts."""
        requeued = self._requeue_stale_payouts(utcnow() - stale_after)
        if requeued:
            logger.warning("Requeued %s payouts stuck in flight", requeued)

        with self.session_factory() as session:
            pending = list(session.scalars(
                select(PayoutRequest).where(PayoutRequest.status == PayoutStatus.PENDING)
            ))
        summary = {"completed": 0, "retrying": 0, "reversed": 0}
        for payout in pending:
            if payout.attempts >= max_attempts:
                if self._reverse_payout(payout.id):
                    summary["reversed"] += 1
            elif self.process_payout(payout.transaction_id) == PayoutStatus.COMPLETED:
                summary["completed"] += 1
            else:
                summary["retrying"] += 1
        return summary

    def _payout_status(self, payout_id: str) -> str:
        with self.session_factory() as session:
            return session.get(PayoutRequest, payout_id).status

    def _claim_payout(self, payout_id: str):
        def work(session):
            payout = session.get(PayoutRequest, payout_id)
            if payout.status != PayoutStatus.PENDING:
                return None
            result = session.execute(
                update(PayoutRequest)
                .where(PayoutRequest.id == payout_id, PayoutRequest.status == PayoutStatus.PENDING,
                       PayoutRequest.attempts == payout.attempts)
                .values(status=PayoutStatus.IN_FLIGHT, attempts=payout.attempts + 1, updated_at=utcnow())
            )
            if result.rowcount != 1:
                return None
            return payout.destination, payout.amount

        return run_in_transaction(self.session_factory, work, self.max_retries)

    def _finish_payout(self, payout_id: str, status: str, error: Optional[str] = None):
        def work(session):
            result = session.execute(
                update(PayoutRequest)
                .where(PayoutRequest.id == payout_id, PayoutRequest.status == PayoutStatus.IN_FLIGHT)
                .values(status=status, last_error=(error or "")[:240] or None, updated_at=utcnow())
            )
            if result.rowcount != 1:
                logger.error("Payout %s left in_flight before its %s outcome was recorded", payout_id, status)
                return
            if status == PayoutStatus.COMPLETED:
                payout = session.get(PayoutRequest, payout_id)
                session.get(WalletTransaction, payout.transaction_id).status = TxnStatus.COMPLETED

        run_in_transaction(self.session_factory, work, self.max_retries)

    def _requeue_stale_payouts(self, cutoff) -> int:
        # transfers carry the payout id as idempotency key, so resending is safe
        def work(session):
            result = session.execute(
                update(PayoutRequest)
                .where(PayoutRequest.status == PayoutStatus.IN_FLIGHT, PayoutRequest.updated_at < cutoff)
                .values(status=PayoutStatus.PENDING, updated_at=utcnow())
            )
            return result.rowcount

        return run_in_transaction(self.session_factory, work, self.max_retries)

    def _reverse_payout(self, payout_id) -> bool:
        def work(session):
            result = session.execute(
                update(PayoutRequest)
                .where(PayoutRequest.id == payout_id, PayoutRequest.status == PayoutStatus.PENDING)
                .values(status=PayoutStatus.FAILED, updated_at=utcnow())
            )
            if result.rowcount != 1:
                return False
            payout = session.get(PayoutRequest, payout_id)
            self.apply(session, payout.wallet_id, TxnType.REFUND, payout.amount,
                       "Reversal of failed withdrawal", reference=payout.transaction_id,
                       idempotency_key=f"payout-reversal:{payout.id}")
            session.get(WalletTransaction, payout.transaction_id).status = TxnStatus.FAILED
            return True

        reversed_ = run_in_transaction(self.session_factory, work, self.max_retries)
        if reversed_:
            logger.warning("Payout %s reversed after repeated failures", payout_id)
        return reversed_

    def _amount(self, amount) -> Decimal:
        amount = to_money(amount, self.currency)
        if amount <= 0:
            raise InvalidAmount("Amount must be greater than zero")
        return amount
