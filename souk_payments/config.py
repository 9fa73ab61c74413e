import os
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

from souk_payments.commission import minor_unit

# Force-load .env (Windows-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def _decimal(name: str, default: str) -> Decimal:
    return Decimal(os.getenv(name, default))


def _methods(raw: str) -> tuple:
    return tuple(m.strip() for m in raw.split(",") if m.strip())


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, read once at startup."""

    database_url: str = "sqlite:///./souk_payments.db"
    jwt_secret: str = ""
    app_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    # Card processor (Stripe)
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    card_currency: str = "egp"

    # Mobile money A (InstaPay-style)
    instapay_api_url: str = "https://api.instapay.eg/v1"
    instapay_api_key: str = ""
    instapay_merchant_id: str = ""
    instapay_ipa: str = "SOUKSAYARAT@CIB"
    instapay_webhook_secret: str = ""

    # Mobile money B (Vodafone-Cash-style)
    vodafone_cash_api_url: str = "https://api.vodafone.com.eg/cash"
    vodafone_cash_api_key: str = ""
    vodafone_cash_merchant_code: str = ""
    vodafone_cash_webhook_secret: str = ""

    # Collaborators
    sms_gateway_url: str = ""
    sms_gateway_api_key: str = ""
    payout_api_url: str = ""
    payout_api_key: str = ""

    # Commission schedule
    platform_rate: Decimal = Decimal("0.025")
    processing_rate: Decimal = Decimal("0.029")
    processing_fixed_fee: Decimal = Decimal("0.30")

    currency: str = "EGP"
    min_payment_amount: Decimal = Decimal("1.00")
    enabled_methods: tuple = field(default=("card", "mobile_money_a", "mobile_money_b"))
    provider_timeout_seconds: float = 15.0
    payout_max_attempts: int = 5

    def __post_init__(self):
        # money columns are stored with two decimal places
        for currency in (self.currency, self.card_currency):
            if minor_unit(currency) < Decimal("0.01"):
                raise ValueError(f"Currency {currency.upper()} needs more than two decimal places")


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", Settings.database_url),
        jwt_secret=os.getenv("JWT_SECRET", ""),
        app_url=os.getenv("APP_URL", Settings.app_url),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
        card_currency=os.getenv("CARD_CURRENCY", "egp"),
        instapay_api_url=os.getenv("INSTAPAY_API_URL", Settings.instapay_api_url),
        instapay_api_key=os.getenv("INSTAPAY_API_KEY", ""),
        instapay_merchant_id=os.getenv("INSTAPAY_MERCHANT_ID", ""),
        instapay_ipa=os.getenv("INSTAPAY_IPA", Settings.instapay_ipa),
        instapay_webhook_secret=os.getenv("INSTAPAY_WEBHOOK_SECRET", ""),
        vodafone_cash_api_url=os.getenv("VODAFONE_CASH_API_URL", Settings.vodafone_cash_api_url),
        vodafone_cash_api_key=os.getenv("VODAFONE_CASH_API_KEY", ""),
        vodafone_cash_merchant_code=os.getenv("VODAFONE_CASH_MERCHANT_CODE", ""),
        vodafone_cash_webhook_secret=os.getenv("VODAFONE_CASH_WEBHOOK_SECRET", ""),
        sms_gateway_url=os.getenv("SMS_GATEWAY_URL", ""),
        sms_gateway_api_key=os.getenv("SMS_GATEWAY_API_KEY", ""),
        payout_api_url=os.getenv("PAYOUT_API_URL", ""),
        payout_api_key=os.getenv("PAYOUT_API_KEY", ""),
        platform_rate=_decimal("PLATFORM_RATE", "0.025"),
        processing_rate=_decimal("PROCESSING_RATE", "0.029"),
        processing_fixed_fee=_decimal("PROCESSING_FIXED_FEE", "0.30"),
        currency=os.getenv("PAYMENT_CURRENCY", "EGP"),
        min_payment_amount=_decimal("MIN_PAYMENT_AMOUNT", "1.00"),
        enabled_methods=_methods(os.getenv("ENABLED_METHODS", "card,mobile_money_a,mobile_money_b")),
        provider_timeout_seconds=float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "15")),
        payout_max_attempts=int(os.getenv("PAYOUT_MAX_ATTEMPTS", "5")),
    )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return load_settings()
