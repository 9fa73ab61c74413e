"""
Provider adapter interface.

Every payment provider (card processor, mobile-money wallets) implements
``PaymentProvider``. Provider payloads never leave the adapter: each call
returns one of the dataclasses below, and every SDK or HTTP error is
translated into the ``souk_payments.errors`` taxonomy before it is raised.
"""
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

import requests

from souk_payments.errors import (
    InvalidRequest,
    ProviderUnavailable,
    WebhookSignatureInvalid,
)

logger = logging.getLogger(__name__)


class ProviderStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


@dataclass
class PaymentAction:
    """What the customer has to do to finish paying."""

    url: Optional[str] = None           # 3-D Secure redirect
    qr_payload: Optional[str] = None    # scanned in the banking app
    pin_sent: bool = False              # PIN went out by SMS
    client_secret: Optional[str] = None  # handed to the card SDK in the browser


@dataclass
class ProviderPayment:
    provider_ref: str
    status: str
    action: Optional[PaymentAction] = None
    expires_at: Optional[datetime] = None


@dataclass
class ProviderVerification:
    status: str
    verified_at: datetime
    failure_reason: Optional[str] = None
    action: Optional[PaymentAction] = None


@dataclass
class ProviderRefund:
    refund_ref: str
    status: str


@dataclass
class ProviderEvent:
    event_id: str
    provider_ref: Optional[str]
    event_type: str
    data: dict = field(default_factory=dict)


class PaymentProvider(ABC):
    """Abstract base class for payment providers."""

    #: payment method served by the adapter (``PaymentMethod`` value)
    method: str = ""

    @abstractmethod
    def create_payment(
        self,
        amount: Decimal,
        order_id: str,
        customer_id: str,
        vendor_id: str,
        extra: Optional[dict] = None,
    ) -> ProviderPayment:
        """
        Create the provider-side payment.

        Raises:
            ProviderUnavailable: network or provider failure.
            InvalidRequest: malformed input.
        """

    @abstractmethod
    def verify_payment(self, provider_ref: str, expires_at: Optional[datetime] = None) -> ProviderVerification:
        """Poll the provider for the current status. Safe to call repeatedly."""

    def confirm_payment(self, provider_ref: str, expires_at: Optional[datetime] = None) -> ProviderVerification:
        return self.verify_payment(provider_ref, expires_at=expires_at)

    def cancel_payment(self, provider_ref: str) -> None:
        """Void the provider-side payment. Unconfirmed mobile-money transfers simply lapse."""

    @abstractmethod
    def refund(self, provider_ref: str, amount: Decimal) -> ProviderRefund:
        """
        Refund ``amount`` of a captured payment.

        Raises:
            RefundNotSupported, RefundExceedsCaptured, ProviderUnavailable
        """

    @abstractmethod
    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> ProviderEvent:
        """Verify the signature and extract the event. Raises WebhookSignatureInvalid."""


def format_amount(amount: Decimal) -> str:
    return f"{amount:.2f}"


def hmac_sha256(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


class HttpProvider(PaymentProvider):
    """Shared plumbing for the REST-based mobile-money providers."""

    name = "http"

    def __init__(self, api_url: str, api_key: str, webhook_secret: str, timeout: float = 15.0,
                 http: Optional[requests.Session] = None):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self.http = http or requests.Session()

    def _headers(self, body: bytes) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Signature": hmac_sha256(self.api_key, body),
        }

    def _call(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        body = json.dumps(payload, separators=(",", ":")).encode() if payload is not None else b""
        try:
            response = self.http.request(
                method,
                f"{self.api_url}{path}",
                data=body or None,
                headers=self._headers(body),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning("%s %s %s failed: %s", self.name, method, path, exc)
            raise ProviderUnavailable(f"{self.name} is unreachable")

        if response.status_code >= 500:
            logger.warning("%s %s %s returned %s", self.name, method, path, response.status_code)
            raise ProviderUnavailable(f"{self.name} returned {response.status_code}")
        try:
            data = response.json()
        except ValueError:
            raise ProviderUnavailable(f"{self.name} returned a malformed response")
        if response.status_code >= 400:
            self._raise_client_error(response.status_code, data)
        return data

    def _raise_client_error(self, status_code: int, data: dict):
        raise InvalidRequest(data.get("message") or f"{self.name} rejected the request")

    def _verify_signature(self, payload: bytes, signature: Optional[str]) -> dict:
        if not self.webhook_secret:
            raise WebhookSignatureInvalid(f"{self.name} webhook secret not configured")
        if not signature or not hmac.compare_digest(hmac_sha256(self.webhook_secret, payload), signature):
            raise WebhookSignatureInvalid("Invalid webhook signature")
        try:
            return json.loads(payload)
        except ValueError:
            raise WebhookSignatureInvalid("Invalid webhook payload")
