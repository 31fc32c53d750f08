"""
Router payments: PayMongo payments, client billing summaries and admin tooling.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from config import settings
from core.dependencies import (
    get_billing, get_current_user, get_document_store, is_staff, require_admin,
)
from core.exceptions import (
    bad_request_exception, credentials_exception, forbidden_exception, not_found_exception,
)
from core.security import verify_paymongo_signature
from database import DocumentStore
from models.common import PaymentStatus
from models.payment import EwalletRequest, PaymentCreate, PaymentProcess, StatusOverride
from services.billing_service import PaymentSynchronizer

logger = logging.getLogger(__name__)
router = APIRouter()


def _ensure_client_access(current_user: dict, client_id: Optional[str]) -> None:
    if not is_staff(current_user) and current_user["user_id"] != client_id:
        raise forbidden_exception()


async def _load_payment(store: DocumentStore, payment_id: str, current_user: dict) -> dict:
    payment = await store.get("payments", payment_id)
    if not payment:
        raise not_found_exception("Payment")
    _ensure_client_access(current_user, payment.get("client_id"))
    return payment


@router.post("/create", status_code=201, summary="Create a payment intent for a delivery")
async def create_payment(
    body: PaymentCreate,
    current_user: dict = Depends(get_current_user),
    store: DocumentStore = Depends(get_document_store),
    billing: PaymentSynchronizer = Depends(get_billing),
):
    delivery = await store.get("deliveries", body.delivery_id)
    if not delivery:
        raise not_found_exception("Delivery")
    _ensure_client_access(current_user, delivery.get("client_id"))

    payment = await billing.create_payment(body.delivery_id, body.amount, body.currency)
    return {
        "success": True,
        "message": "Payment created",
        "data": {
            "payment_id":        payment["id"],
            "payment_intent_id": payment["payment_intent_id"],
            "client_key":        payment["client_key"],
            "amount":            payment["amount"],
            "currency":          payment["currency"],
            "due_date":          payment["due_date"],
            "public_key":        settings.PAYMONGO_PUBLIC_KEY,
        },
    }


@router.post("/process", summary="Settle a payment from its gateway intent")
async def process_payment(
    body: PaymentProcess,
    current_user: dict = Depends(get_current_user),
    billing: PaymentSynchronizer = Depends(get_billing),
):
    payment = await billing.process_gateway_completion(body.payment_intent_id)
    return {
        "success": payment["status"] == PaymentStatus.PAID,
        "message": f"Payment {payment['status']}",
        "data": payment,
    }


@router.post("/webhook", summary="PayMongo webhook")
async def paymongo_webhook(
    request: Request,
    signature: Optional[str] = Header(None, alias="Paymongo-Signature"),
    billing: PaymentSynchronizer = Depends(get_billing),
):
    raw = await request.body()
    if settings.PAYMONGO_WEBHOOK_SECRET:
        if not verify_paymongo_signature(signature, raw, settings.PAYMONGO_WEBHOOK_SECRET):
            logger.warning("PayMongo webhook with an invalid signature")
            raise credentials_exception()

    try:
        payload = json.loads(raw)
    except ValueError:
        raise bad_request_exception("Invalid JSON")

    result = await billing.process_webhook(payload)
    return {"success": True, "message": "Webhook received", "data": result}


# ── Client standing ──────────────────────────────────────────────────────────
@router.get("/client/{client_id}", summary="Client payment summary")
async def client_summary(
    client_id: str,
    current_user: dict = Depends(get_current_user),
    billing: PaymentSynchronizer = Depends(get_billing),
):
    _ensure_client_access(current_user, client_id)
    summary = await billing.get_client_payment_summary(client_id)
    return {"success": True, "message": "Payment summary", "data": summary}


@router.get("/client/{client_id}/can-book", summary="Can the client book trucks")
async def client_can_book(
    client_id: str,
    current_user: dict = Depends(get_current_user),
    billing: PaymentSynchronizer = Depends(get_billing),
):
    _ensure_client_access(current_user, client_id)
    data = await billing.can_client_book_trucks(client_id)
    message = "Client can book trucks" if data["can_book_trucks"] else "Client has overdue payments"
    return {"success": True, "message": message, "data": data}


@router.post("/update-client-status/{client_id}", summary="Reconcile a client's payment standing")
async def update_client_status(
    client_id: str,
    current_user: dict = Depends(get_current_user),
    billing: PaymentSynchronizer = Depends(get_billing),
):
    _ensure_client_access(current_user, client_id)
    result = await billing.reconcile_client_payment_status(client_id)
    return {"success": True, "message": f"Client is {result.payment_status.value}", "data": result}


# ── Admin ────────────────────────────────────────────────────────────────────
@router.get("/overdue", summary="Payments past due (admin)")
async def overdue_payments(
    current_user: dict = Depends(require_admin),
    billing: PaymentSynchronizer = Depends(get_billing),
):
    payments = await billing.get_overdue_payments()
    return {"success": True, "message": f"{len(payments)} overdue payments", "data": payments}


@router.post("/generate-from-deliveries", summary="Create missing payment records (admin)")
async def generate_from_deliveries(
    client_id: Optional[str] = Query(None),
    current_user: dict = Depends(require_admin),
    billing: PaymentSynchronizer = Depends(get_billing),
):
    result = await billing.generate_payments_from_deliveries(client_id)
    return {"success": True, "message": f"{result['created']} payments created", "data": result}


@router.get("/", summary="List payments (admin)")
async def list_payments(
    status: Optional[PaymentStatus] = Query(None),
    limit:  int                     = Query(100, ge=1, le=500),
    current_user: dict = Depends(require_admin),
    billing: PaymentSynchronizer = Depends(get_billing),
):
    payments = await billing.list_payments(status, limit)
    return {"success": True, "message": f"{len(payments)} payments", "data": payments}


# ── Per payment / delivery ───────────────────────────────────────────────────
@router.post("/process-ewallet", summary="Start a GCash / GrabPay / Maya payment")
async def process_ewallet(
    body: EwalletRequest,
    current_user: dict = Depends(get_current_user),
    store: DocumentStore = Depends(get_document_store),
    billing: PaymentSynchronizer = Depends(get_billing),
):
    await _load_payment(store, body.payment_id, current_user)
    data = await billing.start_ewallet_payment(
        body.payment_id, body.payment_method, body.redirect.model_dump(),
    )
    return {"success": True, "message": "Redirect the client to checkout_url", "data": data}


@router.post("/{delivery_id}/cancel", summary="Cancel the payments of a cancelled delivery")
async def cancel_delivery_payments(
    delivery_id: str,
    current_user: dict = Depends(get_current_user),
    store: DocumentStore = Depends(get_document_store),
    billing: PaymentSynchronizer = Depends(get_billing),
):
    delivery = await store.get("deliveries", delivery_id)
    if not delivery:
        raise not_found_exception("Delivery")
    _ensure_client_access(current_user, delivery.get("client_id"))
    result = await billing.cancel_payment(delivery_id)
    return {"success": True, "message": f"{result['cancelled_count']} payment(s) cancelled", "data": result}


@router.post("/{payment_id}/create-link", summary="Create a PayMongo payment link")
async def create_link(
    payment_id: str,
    current_user: dict = Depends(get_current_user),
    store: DocumentStore = Depends(get_document_store),
    billing: PaymentSynchronizer = Depends(get_billing),
):
    await _load_payment(store, payment_id, current_user)
    data = await billing.create_payment_link(payment_id)
    return {"success": True, "message": "Payment link created", "data": data}


@router.put("/{payment_id}/status", summary="Override a payment status (admin)")
async def override_status(
    payment_id: str,
    body: StatusOverride,
    current_user: dict = Depends(require_admin),
    billing: PaymentSynchronizer = Depends(get_billing),
):
    payment = await billing.override_payment_status(payment_id, body.status, current_user["user_id"])
    return {"success": True, "message": f"Payment set to {body.status.value}", "data": payment}


@router.get("/{payment_id}/status", summary="Local and gateway status of a payment")
async def payment_status(
    payment_id: str,
    current_user: dict = Depends(get_current_user),
    store: DocumentStore = Depends(get_document_store),
    billing: PaymentSynchronizer = Depends(get_billing),
):
    await _load_payment(store, payment_id, current_user)
    data = await billing.get_payment_status(payment_id)
    return {"success": True, "message": f"Payment {data['status']}", "data": data}


@router.get("/{payment_id}", summary="Payment details")
async def get_payment(
    payment_id: str,
    current_user: dict = Depends(get_current_user),
    store: DocumentStore = Depends(get_document_store),
):
    payment = await _load_payment(store, payment_id, current_user)
    return {"success": True, "message": "Payment", "data": payment}
