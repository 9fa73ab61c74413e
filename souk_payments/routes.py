import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from souk_payments.auth import verify_token
from souk_payments.errors import PaymentError
from souk_payments.schemas import IntentRequest, RefundRequest, WalletRequest, WithdrawRequest

logger = logging.getLogger(__name__)

router = APIRouter()

SIGNATURE_HEADERS = ("Stripe-Signature", "X-Signature")


def get_services(request: Request):
    return request.app.state.services


@router.post("/payments/intent")
def create_intent(request: IntentRequest, services=Depends(get_services), auth=Depends(verify_token)):
    extra = {"customer_phone": request.customer_phone} if request.customer_phone else {}
    result = services.orchestrator.initiate(
        request.amount,
        request.order_id,
        request.customer_id,
        request.vendor_id,
        request.method,
        items=request.items,
        extra=extra,
    )
    body = {"success": True, "intentId": result.intent_id, "status": result.status}
    if result.action:
        body.update({
            "actionUrl": result.action.url,
            "qrPayload": result.action.qr_payload,
            "pinSent": result.action.pin_sent,
            "clientSecret": result.action.client_secret,
        })
    return body


@router.get("/payments/{intent_id}")
def get_intent(intent_id: str, services=Depends(get_services), auth=Depends(verify_token)):
    return services.orchestrator.get_intent(intent_id).to_dict()


@router.post("/payments/{intent_id}/confirm")
def confirm_intent(intent_id: str, services=Depends(get_services), auth=Depends(verify_token)):
    result = services.orchestrator.confirm(intent_id)
    return {
        "success": result.status == "succeeded",
        "intentId": result.intent_id,
        "status": result.status,
        "failureReason": result.failure_reason,
    }


@router.post("/payments/{intent_id}/cancel")
def cancel_intent(intent_id: str, services=Depends(get_services), auth=Depends(verify_token)):
    intent = services.orchestrator.cancel(intent_id)
    return {"success": True, "intentId": intent.id, "status": intent.status}


@router.post("/payments/webhook/{provider}")
async def provider_webhook(provider: str, request: Request, services=Depends(get_services)):
    payload = await request.body()
    signature = next((request.headers[h] for h in SIGNATURE_HEADERS if h in request.headers), None)
    return services.orchestrator.handle_webhook(provider, payload, signature)


@router.post("/refunds")
def create_refund(request: RefundRequest, services=Depends(get_services), auth=Depends(verify_token)):
    record = services.refunds.refund(request.payment_id, request.amount, request.reason)
    return {"success": True, "refund": record.to_dict()}


@router.post("/wallets")
def open_wallet(request: WalletRequest, services=Depends(get_services), auth=Depends(verify_token)):
    return services.wallets.open_wallet(request.owner_id, request.owner_type, request.currency).to_dict()


@router.get("/wallets/{wallet_id}")
def get_wallet(wallet_id: str, services=Depends(get_services), auth=Depends(verify_token)):
    return services.wallets.get_wallet(wallet_id).to_dict()


@router.get("/wallets/{wallet_id}/transactions")
def wallet_transactions(wallet_id: str, services=Depends(get_services), auth=Depends(verify_token)):
    return [txn.to_dict() for txn in services.wallets.history(wallet_id)]


@router.post("/wallets/{wallet_id}/withdraw")
def withdraw(wallet_id: str, request: WithdrawRequest, background_tasks: BackgroundTasks,
             services=Depends(get_services), auth=Depends(verify_token)):
    txn = services.wallets.withdraw(wallet_id, request.amount, request.destination)
    background_tasks.add_task(run_payout, services.wallets, txn.id)
    return {"success": True, "transaction": txn.to_dict()}


@router.post("/admin/reconcile")
def reconcile(services=Depends(get_services), auth=Depends(verify_token)):
    return services.reconciler.run()


def run_payout(wallets, transaction_id: str):
    # A payout that fails here stays pending for the reconciliation sweep.
    try:
        wallets.process_payout(transaction_id)
    except PaymentError as exc:
        logger.warning("Payout for %s left pending: %s", transaction_id, exc.message)
