"""Error taxonomy shared by the adapters, ledgers and orchestrators.

Provider and database exceptions are translated into these at the boundary
where they are caught, so callers only ever see a ``PaymentError``.
"""
from typing import Optional


class PaymentError(Exception):
    code = "payment_error"
    status_code = 400

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.code.replace("_", " ")
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"success": False, "message": self.message, "error": self.code}


class InvalidAmount(PaymentError):
    code = "invalid_amount"


class InvalidRequest(PaymentError):
    code = "invalid_request"


class ProviderUnavailable(PaymentError):
    """Transient provider or network failure; safe to retry with backoff.

    ``provider_ref`` is set when the provider already holds state for the
    attempt (the caller records it instead of dropping it).
    """

    code = "provider_unavailable"
    status_code = 503

    def __init__(self, message: Optional[str] = None, provider_ref: Optional[str] = None):
        super().__init__(message)
        self.provider_ref = provider_ref


class PaymentNotFound(PaymentError):
    code = "payment_not_found"
    status_code = 404


class WalletNotFound(PaymentError):
    code = "wallet_not_found"
    status_code = 404


class InsufficientBalance(PaymentError):
    code = "insufficient_balance"
    status_code = 409


class RefundExceedsOriginal(PaymentError):
    code = "refund_exceeds_original"
    status_code = 409


class RefundExceedsCaptured(PaymentError):
    code = "refund_exceeds_captured"
    status_code = 409


class RefundNotSupported(PaymentError):
    code = "refund_not_supported"


class RefundFailed(PaymentError):
    code = "refund_failed"
    status_code = 502


class WebhookSignatureInvalid(PaymentError):
    code = "webhook_signature_invalid"


class IntentAlreadyTerminal(PaymentError):
    code = "intent_already_terminal"
    status_code = 409


class InternalError(PaymentError):
    code = "internal_error"
    status_code = 500


class PaymentInProgress(PaymentError):
    code = "payment_in_progress"
    status_code = 409
