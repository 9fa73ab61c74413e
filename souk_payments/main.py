from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from souk_payments.commission import FeeSchedule
from souk_payments.config import Settings, get_settings
from souk_payments.database import Base, SessionLocal, engine
from souk_payments.errors import PaymentError
from souk_payments.gateways import PayoutGateway, SmsGateway
from souk_payments.logging_config import RequestLoggingMiddleware, setup_logging
from souk_payments.models import PaymentMethod
from souk_payments.orchestrator import PaymentOrchestrator
from souk_payments.providers.base import PaymentProvider
from souk_payments.providers.card import CardProvider
from souk_payments.providers.instapay import InstaPayProvider
from souk_payments.providers.vodafone_cash import VodafoneCashProvider
from souk_payments.reconciliation import Reconciler
from souk_payments.refunds import RefundOrchestrator
from souk_payments.routes import router
from souk_payments.wallet import WalletLedger

SERVICE_NAME = "souk-payments"

settings = get_settings()
logger = setup_logging(SERVICE_NAME, settings.log_level)


@dataclass
class Services:
    orchestrator: PaymentOrchestrator
    refunds: RefundOrchestrator
    wallets: WalletLedger
    reconciler: Reconciler


def build_providers(settings: Settings, sms: SmsGateway) -> Dict[str, PaymentProvider]:
    providers = {}
    timeout = settings.provider_timeout_seconds
    if settings.stripe_secret_key:
        providers[PaymentMethod.CARD] = CardProvider(
            settings.stripe_secret_key,
            settings.stripe_webhook_secret,
            currency=settings.card_currency,
            return_url=f"{settings.app_url}/checkout/complete",
            timeout=timeout,
        )
    if settings.instapay_api_key:
        providers[PaymentMethod.MOBILE_MONEY_A] = InstaPayProvider(
            settings.instapay_api_url,
            settings.instapay_api_key,
            settings.instapay_merchant_id,
            settings.instapay_ipa,
            settings.instapay_webhook_secret,
            callback_url=f"{settings.app_url}/payments/webhook/instapay",
            timeout=timeout,
        )
    if settings.vodafone_cash_api_key:
        providers[PaymentMethod.MOBILE_MONEY_B] = VodafoneCashProvider(
            settings.vodafone_cash_api_url,
            settings.vodafone_cash_api_key,
            settings.vodafone_cash_merchant_code,
            settings.vodafone_cash_webhook_secret,
            callback_url=f"{settings.app_url}/payments/webhook/vodafone_cash",
            sms=sms,
            timeout=timeout,
        )
    return providers


def build_services(settings: Settings, session_factory, providers: Optional[Dict[str, PaymentProvider]] = None,
                   payouts: Optional[PayoutGateway] = None) -> Services:
    """Composition root: every component is created once here and injected."""
    sms = SmsGateway(settings.sms_gateway_url, settings.sms_gateway_api_key, settings.provider_timeout_seconds)
    if providers is None:
        providers = build_providers(settings, sms)
    if payouts is None:
        payouts = PayoutGateway(settings.payout_api_url, settings.payout_api_key)

    wallets = WalletLedger(session_factory, payouts=payouts, currency=settings.currency)
    orchestrator = PaymentOrchestrator(
        session_factory,
        providers,
        wallets,
        FeeSchedule.from_settings(settings),
        currency=settings.currency,
        min_amount=settings.min_payment_amount,
        enabled_methods=settings.enabled_methods,
    )
    return Services(
        orchestrator=orchestrator,
        refunds=RefundOrchestrator(session_factory, providers, currency=settings.currency),
        wallets=wallets,
        reconciler=Reconciler(orchestrator, wallets, settings.payout_max_attempts),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "services", None) is None:
        Base.metadata.create_all(bind=engine)
        app.state.services = build_services(settings, SessionLocal)
        logger.info("Payment providers enabled: %s", ", ".join(app.state.services.orchestrator.providers) or "none")
    yield


app = FastAPI(title="Souk Payments", lifespan=lifespan)

app.add_middleware(RequestLoggingMiddleware, service_name=SERVICE_NAME)
app.include_router(router)


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/healthz")
def health():
    return {"ok": True, "status": "healthy"}
