from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)

from souk_payments.database import Base

Money = Numeric(18, 2)


def utcnow() -> datetime:
    # Naive UTC, the Ledger Store keeps timestamps without an offset.
    return datetime.now(timezone.utc).replace(tzinfo=None)


class IntentStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    OPEN = (PENDING, PROCESSING)
    TERMINAL = (SUCCEEDED, FAILED, CANCELLED)


class PaymentMethod:
    CARD = "card"
    MOBILE_MONEY_A = "mobile_money_a"
    MOBILE_MONEY_B = "mobile_money_b"
    BANK_TRANSFER = "bank_transfer"
    CASH = "cash"

    ALL = (CARD, MOBILE_MONEY_A, MOBILE_MONEY_B, BANK_TRANSFER, CASH)


class TxnType:
    CREDIT = "credit"
    DEBIT = "debit"
    REFUND = "refund"
    WITHDRAWAL = "withdrawal"

    INBOUND = (CREDIT, REFUND)
    OUTBOUND = (DEBIT, WITHDRAWAL)


class TxnStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PayoutStatus:
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentIntent(Base):
    __tablename__ = "payment_intents"

    id = Column(String, primary_key=True)                       # pay_<hex>
    provider_ref = Column(String, unique=True, index=True)      # pi_..., ORD-..., VC reference
    amount = Column(Money, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String, nullable=False, default=IntentStatus.PENDING)
    method = Column(String, nullable=False)

    order_id = Column(String, index=True, nullable=False)
    customer_id = Column(String, nullable=False)
    vendor_id = Column(String, nullable=False)
    items = Column(JSON, default=list)

    failure_reason = Column(String)
    refunded_amount = Column(Money, nullable=False, default=0)
    expires_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    confirmed_at = Column(DateTime)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "providerRef": self.provider_ref,
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status,
            "method": self.method,
            "metadata": {
                "orderId": self.order_id,
                "customerId": self.customer_id,
                "vendorId": self.vendor_id,
                "items": self.items or [],
            },
            "failureReason": self.failure_reason,
            "refundedAmount": str(self.refunded_amount or 0),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "confirmedAt": self.confirmed_at.isoformat() if self.confirmed_at else None,
        }


class Wallet(Base):
    __tablename__ = "wallets"

    id = Column(String, primary_key=True)                       # wallet-<owner_id>
    owner_id = Column(String, unique=True, index=True, nullable=False)
    owner_type = Column(String, nullable=False)                 # customer | vendor
    balance = Column(Money, nullable=False, default=0)
    currency = Column(String(3), nullable=False)
    status = Column(String, nullable=False, default="active")   # active | suspended
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "ownerType": self.owner_type,
            "balance": str(self.balance),
            "currency": self.currency,
            "status": self.status,
        }


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"
    __table_args__ = (UniqueConstraint("wallet_id", "seq", name="uq_wallet_txn_seq"),)

    id = Column(String, primary_key=True)
    wallet_id = Column(String, index=True, nullable=False)
    seq = Column(Integer, nullable=False)                       # wallet version after this mutation
    type = Column(String, nullable=False)
    amount = Column(Money, nullable=False)
    balance_after = Column(Money, nullable=False)
    description = Column(String, nullable=False, default="")
    reference = Column(String, index=True)
    idempotency_key = Column(String, unique=True)
    status = Column(String, nullable=False, default=TxnStatus.COMPLETED)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "walletId": self.wallet_id,
            "type": self.type,
            "amount": str(self.amount),
            "balanceAfter": str(self.balance_after),
            "description": self.description,
            "reference": self.reference,
            "status": self.status,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class PayoutRequest(Base):
    __tablename__ = "payout_requests"

    id = Column(String, primary_key=True)
    transaction_id = Column(String, unique=True, nullable=False)
    wallet_id = Column(String, index=True, nullable=False)
    amount = Column(Money, nullable=False)
    destination = Column(String, nullable=False)
    status = Column(String, nullable=False, default=PayoutStatus.PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(String)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class CommissionRecord(Base):
    __tablename__ = "commission_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, unique=True, index=True, nullable=False)
    vendor_id = Column(String, index=True, nullable=False)
    payment_id = Column(String, nullable=False)
    gross_amount = Column(Money, nullable=False)
    platform_fee_amount = Column(Money, nullable=False)
    processing_fee_amount = Column(Money, nullable=False)
    vendor_net_amount = Column(Money, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class RefundRecord(Base):
    __tablename__ = "refund_records"

    id = Column(String, primary_key=True)
    payment_id = Column(String, index=True, nullable=False)
    amount = Column(Money, nullable=False)
    reason = Column(String, nullable=False, default="")
    status = Column(String, nullable=False)
    method = Column(String, nullable=False)
    provider_refund_ref = Column(String)
    processed_at = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "paymentId": self.payment_id,
            "amount": str(self.amount),
            "reason": self.reason,
            "status": self.status,
            "method": self.method,
            "refundRef": self.provider_refund_ref,
            "processedAt": self.processed_at.isoformat() if self.processed_at else None,
        }


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True)
    customer_id = Column(String, nullable=False)
    vendor_id = Column(String, nullable=False)
    total = Column(Money, nullable=False)
    payment_status = Column(String, nullable=False, default="unpaid")   # unpaid | paid
    active_intent_id = Column(String)                                   # attempt currently holding the order
    refund_status = Column(String, nullable=False, default="none")      # none | partially_refunded | refunded
    refunded_amount = Column(Money, nullable=False, default=0)
    paid_at = Column(DateTime)
    refunded_at = Column(DateTime)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (UniqueConstraint("provider", "event_id", name="uq_webhook_provider_event"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    event_type = Column(String)
    provider_ref = Column(String, index=True)
    received_at = Column(DateTime, nullable=False, default=utcnow)
