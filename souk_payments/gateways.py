"""HTTP clients for the SMS gateway and the bank payout API."""
import logging
from decimal import Decimal
from typing import Optional

import requests

from souk_payments.errors import ProviderUnavailable

logger = logging.getLogger(__name__)


class SmsGateway:
    def __init__(self, api_url: str, api_key: str, timeout: float = 15.0,
                 http: Optional[requests.Session] = None):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.http = http or requests.Session()

    def send(self, phone: str, message: str) -> None:
        if not self.api_url:
            raise ProviderUnavailable("SMS gateway not configured")
        try:
            response = self.http.post(
                f"{self.api_url}/messages",
                json={"to": phone, "body": message},
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("SMS delivery to %s failed: %s", phone[-4:].rjust(len(phone), "*"), exc)
            raise ProviderUnavailable("SMS gateway unavailable")


class PayoutGateway:
    def __init__(self, api_url: str, api_key: str, timeout: float = 30.0,
                 http: Optional[requests.Session] = None):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.http = http or requests.Session()

    def transfer(self, destination: str, amount: Decimal, reference: str) -> str:
        """Push ``amount`` to a bank account and return the transfer id."""
        if not self.api_url:
            raise ProviderUnavailable("Payout API not configured")
        try:
            response = self.http.post(
                f"{self.api_url}/transfers",
                json={"destination": destination, "amount": f"{amount:.2f}", "currency": "EGP",
                      "reference": reference},
                headers={"Authorization": f"Bearer {self.api_key}", "Idempotency-Key": reference},
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json().get("id", "")
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Payout %s failed: %s", reference, exc)
            raise ProviderUnavailable(f"Payout failed: {exc}")
