"""
Payment synchronisation: keeps Payment records, the delivery's payment_status and
the client's booking standing consistent with each other and with PayMongo.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from config import settings
from core.exceptions import (
    bad_request_exception, conflict_exception, gateway_exception, not_found_exception,
)
from database import DocumentStore
from models.common import ClientPaymentStanding, DeliveryStatus, PaymentStatus
from models.payment import ClientPaymentSummary, Payment, PaymentView, ReconcileResult
from services.payment_service import EWALLET_SOURCE_TYPES, GatewayError, PayMongoGateway

logger = logging.getLogger(__name__)

# Statuses that still represent a billable obligation for the delivery
LIVE_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PAID, PaymentStatus.OVERDUE)

# Deliveries the reconciliation pass bills
BILLABLE_DELIVERY_STATUSES = (
    DeliveryStatus.STARTED,
    DeliveryStatus.PICKED_UP,
    DeliveryStatus.DELIVERED,
    DeliveryStatus.COMPLETED,
)

# Intent statuses that are neither a success nor a failure yet
INTENT_IN_FLIGHT = ("processing", "awaiting_next_action")

OVERRIDABLE_STATUSES = (
    PaymentStatus.PENDING, PaymentStatus.PAID, PaymentStatus.OVERDUE, PaymentStatus.FAILED,
)


def _payment_id() -> str:
    return f"pay_{uuid.uuid4().hex[:12]}"


def _as_datetime(value) -> Optional[datetime]:
    """Stored dates may be naive datetimes or ISO strings from older records."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _due_date(record: dict, now: datetime) -> datetime:
    stored = _as_datetime(record.get("due_date"))
    if stored:
        return stored
    base = _as_datetime(record.get("delivery_date")) or _as_datetime(record.get("created_at")) or now
    return base + timedelta(days=settings.PAYMENT_DUE_DAYS)


def calculate_transaction_fee(amount: float, payment_method: Optional[str]) -> float:
    if payment_method == "card":
        rate = settings.CARD_FEE_RATE
    elif payment_method in EWALLET_SOURCE_TYPES:
        rate = settings.EWALLET_FEE_RATE
    else:
        rate = settings.DEFAULT_FEE_RATE
    return round(amount * rate, 2)


def compute_payment_view(delivery: dict, now: Optional[datetime] = None) -> Optional[PaymentView]:
    """Billing line for a delivery; None for cancelled deliveries, which are never billed."""
    now = now or datetime.now(timezone.utc)
    try:
        delivery_status = DeliveryStatus(delivery.get("status") or DeliveryStatus.PENDING)
    except ValueError:
        logger.warning(f"Delivery {delivery.get('id')} has unknown status {delivery.get('status')!r}, not billed")
        return None
    payment_status = delivery.get("payment_status")

    if delivery_status == DeliveryStatus.CANCELLED or payment_status == PaymentStatus.CANCELLED:
        return None

    due_date = _due_date(delivery, now)
    if payment_status == PaymentStatus.PAID:
        status = PaymentStatus.PAID
    elif due_date < now and delivery_status == DeliveryStatus.COMPLETED:
        status = PaymentStatus.OVERDUE
    else:
        status = PaymentStatus.PENDING

    rate = delivery.get("rate")
    return PaymentView(
        delivery_id=delivery["id"],
        client_id=delivery.get("client_id"),
        truck_id=delivery.get("truck_id"),
        payment_id=delivery.get("payment_id"),
        amount=float(rate) if rate is not None else settings.DEFAULT_DELIVERY_RATE,
        currency=settings.CURRENCY,
        status=status,
        delivery_status=delivery_status,
        delivery_date=_as_datetime(delivery.get("delivery_date")),
        due_date=due_date,
    )


def _intent_payment_method(attributes: dict) -> str:
    payments = attributes.get("payments") or []
    if payments:
        source = payments[0].get("attributes", {}).get("source") or {}
        if source.get("type"):
            return source["type"]
    return attributes.get("payment_method_type") or "card"


class PaymentSynchronizer:
    def __init__(self, store: DocumentStore, gateway: PayMongoGateway):
        self.store = store
        self.gateway = gateway

    # ── Lookups ────────────────────────────────────────────────────────────
    async def _get_payment(self, payment_id: str) -> dict:
        payment = await self.store.get("payments", payment_id)
        if not payment:
            raise not_found_exception("Payment")
        return payment

    async def _find_payment(self, field: str, value: str) -> Optional[dict]:
        found = await self.store.query("payments", (field, "==", value), limit=1)
        return found[0] if found else None

    async def _live_payments(self, delivery_id: str) -> list[dict]:
        payments = await self.store.query("payments", ("delivery_id", "==", delivery_id))
        return [p for p in payments if p.get("status") in LIVE_PAYMENT_STATUSES]

    # ── Views ──────────────────────────────────────────────────────────────
    async def get_client_payment_summary(self, client_id: str) -> ClientPaymentSummary:
        now = datetime.now(timezone.utc)
        deliveries = await self.store.query("deliveries", ("client_id", "==", client_id))
        views = [v for v in (compute_payment_view(d, now) for d in deliveries) if v]

        summary = ClientPaymentSummary(client_id=client_id)
        for view in views:
            if view.status == PaymentStatus.PAID:
                summary.paid_payments += 1
                summary.total_amount_paid += view.amount
            elif view.status == PaymentStatus.OVERDUE:
                summary.overdue_payments += 1
                summary.total_amount_due += view.amount
            else:
                summary.pending_payments += 1
                summary.total_amount_due += view.amount

        summary.total_amount_due = round(summary.total_amount_due, 2)
        summary.total_amount_paid = round(summary.total_amount_paid, 2)
        summary.can_book_trucks = summary.overdue_payments == 0
        summary.payments = sorted(
            views,
            key=lambda v: v.delivery_date or v.due_date,
            reverse=True,
        )
        return summary

    # ── Creation ───────────────────────────────────────────────────────────
    async def create_payment(
        self, delivery_id: str, amount: float, currency: Optional[str] = None,
    ) -> dict:
        currency = currency or settings.CURRENCY
        if amount <= 0:
            raise bad_request_exception("Amount must be greater than zero")

        delivery = await self.store.get("deliveries", delivery_id)
        if not delivery:
            raise not_found_exception("Delivery")
        if delivery.get("status") == DeliveryStatus.CANCELLED:
            raise bad_request_exception("Cannot bill a cancelled delivery")

        existing = await self.store.query("payments", ("delivery_id", "==", delivery_id))
        if any(p.get("status") in LIVE_PAYMENT_STATUSES for p in existing):
            raise conflict_exception("Payment already exists for this delivery")

        try:
            intent = await self.gateway.create_payment_intent(amount, currency, metadata={
                "delivery_id": delivery_id,
                "client_id":   delivery.get("client_id"),
                "truck_id":    delivery.get("truck_id"),
            })
        except GatewayError as e:
            raise gateway_exception(f"Failed to create payment intent: {e}")

        now = datetime.now(timezone.utc)
        payment_id = _payment_id()
        payment = Payment(
            delivery_id=delivery_id,
            client_id=delivery["client_id"],
            amount=amount,
            currency=currency,
            delivery_date=_as_datetime(delivery.get("delivery_date")),
            due_date=_due_date(delivery, now),
            payment_intent_id=intent["id"],
            client_key=intent.get("attributes", {}).get("client_key"),
            net_amount=amount,
            created_at=now,
            updated_at=now,
        )
        doc = payment.model_dump(mode="python")

        batch = self.store.batch()
        batch.set("payments", payment_id, doc)
        # A failed attempt is superseded by the new one
        for failed in (p for p in existing if p.get("status") == PaymentStatus.FAILED):
            batch.update("payments", failed["id"], {
                "status":              PaymentStatus.CANCELLED.value,
                "cancelled_at":        now,
                "cancellation_reason": f"Superseded by {payment_id}",
                "updated_at":          now,
            })
        batch.update("deliveries", delivery_id, {
            "payment_id":     payment_id,
            "payment_status": PaymentStatus.PENDING.value,
            "updated_at":     now,
        })
        await batch.commit()

        logger.info(f"Payment {payment_id} created for delivery {delivery_id} ({amount} {currency})")
        return {"id": payment_id, **doc}

    # ── Cancellation ───────────────────────────────────────────────────────
    async def cancel_payment(self, delivery_id: str, reason: str = "Delivery cancelled") -> dict:
        """
        Local state is authoritative: gateway cancellation is attempted first and
        its errors are logged, then every local write goes out in one batch.
        Only a cancelled delivery has its payments cancelled; calling this again
        after a failed batch finishes the job, and is a no-op otherwise.
        """
        delivery = await self.store.get("deliveries", delivery_id)
        if not delivery:
            raise not_found_exception("Delivery")
        if delivery.get("status") != DeliveryStatus.CANCELLED:
            raise bad_request_exception("Payments can only be cancelled with their delivery")

        payments = await self.store.query("payments", ("delivery_id", "==", delivery_id))
        to_cancel = [
            p for p in payments
            if p.get("status") not in (PaymentStatus.PAID, PaymentStatus.CANCELLED)
        ]
        skipped_paid = sum(1 for p in payments if p.get("status") == PaymentStatus.PAID)

        for payment in to_cancel:
            intent_id = payment.get("payment_intent_id")
            if not intent_id:
                continue
            try:
                await self.gateway.cancel_payment_intent(intent_id)
            except GatewayError as e:
                logger.warning(f"Gateway cancellation of {intent_id} failed, cancelling locally: {e}")

        now = datetime.now(timezone.utc)
        batch = self.store.batch()
        for payment in to_cancel:
            batch.update("payments", payment["id"], {
                "status":              PaymentStatus.CANCELLED.value,
                "cancelled_at":        now,
                "cancellation_reason": reason,
                "updated_at":          now,
            })
        if delivery.get("payment_status") not in (PaymentStatus.PAID, PaymentStatus.CANCELLED):
            batch.update("deliveries", delivery_id, {
                "payment_status": PaymentStatus.CANCELLED.value,
                "updated_at":     now,
            })
        if len(batch):
            await batch.commit()

        logger.info(
            f"Delivery {delivery_id}: {len(to_cancel)} payment(s) cancelled, {skipped_paid} paid left untouched"
        )
        return {"delivery_id": delivery_id, "cancelled_count": len(to_cancel), "skipped_paid": skipped_paid}

    # ── Client standing ────────────────────────────────────────────────────
    async def reconcile_client_payment_status(self, client_id: str) -> ReconcileResult:
        now = datetime.now(timezone.utc)
        payments = await self.store.query(
            "payments",
            ("client_id", "==", client_id),
            ("status", "in", [PaymentStatus.PENDING.value, PaymentStatus.OVERDUE.value]),
        )
        newly_overdue = [
            p for p in payments
            if p.get("status") == PaymentStatus.PENDING and _due_date(p, now) < now
        ]
        already_overdue = sum(1 for p in payments if p.get("status") == PaymentStatus.OVERDUE)
        overdue_count = already_overdue + len(newly_overdue)
        standing = ClientPaymentStanding.OVERDUE if overdue_count else ClientPaymentStanding.CURRENT

        batch = self.store.batch()
        for payment in newly_overdue:
            batch.update("payments", payment["id"], {
                "status":     PaymentStatus.OVERDUE.value,
                "overdue_at": now,
                "updated_at": now,
            })
        batch.set("clients", client_id, {
            "payment_status":            standing.value,
            "can_book_trucks":           overdue_count == 0,
            "last_payment_status_check": now,
        })
        await batch.commit()

        if newly_overdue:
            logger.info(f"Client {client_id}: {len(newly_overdue)} payment(s) now overdue")
        return ReconcileResult(
            client_id=client_id,
            payment_status=standing,
            can_book_trucks=overdue_count == 0,
            overdue_count=overdue_count,
            newly_overdue=len(newly_overdue),
        )

    async def can_client_book_trucks(self, client_id: str) -> dict:
        client = await self.store.get("clients", client_id)
        if not client:
            raise not_found_exception("Client")
        if client.get("last_payment_status_check") is None:
            result = await self.reconcile_client_payment_status(client_id)
            return {
                "client_id":       client_id,
                "can_book_trucks": result.can_book_trucks,
                "payment_status":  result.payment_status.value,
            }
        return {
            "client_id":       client_id,
            "can_book_trucks": client.get("can_book_trucks", True),
            "payment_status":  client.get("payment_status", ClientPaymentStanding.CURRENT.value),
        }

    # ── Settlement ─────────────────────────────────────────────────────────
    async def _mark_paid(
        self,
        payment: dict,
        payment_method: Optional[str],
        gateway_payment_id: Optional[str] = None,
        transaction_fee: Optional[float] = None,
    ) -> dict:
        now = datetime.now(timezone.utc)
        amount = float(payment["amount"])
        fee = calculate_transaction_fee(amount, payment_method) if transaction_fee is None else transaction_fee
        fields = {
            "status":          PaymentStatus.PAID.value,
            "paid_at":         now,
            "payment_method":  payment_method,
            "transaction_fee": fee,
            "net_amount":      round(amount - fee, 2),
            "failure_reason":  None,
            "updated_at":      now,
        }
        if gateway_payment_id:
            fields["gateway_payment_id"] = gateway_payment_id

        batch = self.store.batch()
        batch.update("payments", payment["id"], fields)
        batch.update("deliveries", payment["delivery_id"], {
            "payment_status": PaymentStatus.PAID.value,
            "updated_at":     now,
        })
        await batch.commit()
        logger.info(f"Payment {payment['id']} paid via {payment_method} (fee {fee})")

        await self.reconcile_client_payment_status(payment["client_id"])
        return {**payment, **fields}

    async def _mark_failed(self, payment: dict, reason: str) -> dict:
        now = datetime.now(timezone.utc)
        fields = {
            "status":         PaymentStatus.FAILED.value,
            "failure_reason": reason,
            "updated_at":     now,
        }
        await self.store.update("payments", payment["id"], fields)
        logger.warning(f"Payment {payment['id']} failed: {reason}")
        return {**payment, **fields}

    async def process_gateway_completion(self, payment_intent_id: str) -> dict:
        payment = await self._find_payment("payment_intent_id", payment_intent_id)
        if not payment:
            raise not_found_exception("Payment")
        if payment.get("status") == PaymentStatus.PAID:
            return payment
        if payment.get("status") == PaymentStatus.CANCELLED:
            raise bad_request_exception("Payment was cancelled")

        try:
            intent = await self.gateway.get_payment_intent(payment_intent_id)
        except GatewayError as e:
            raise gateway_exception(f"Failed to fetch payment intent: {e}")

        attributes = intent.get("attributes", {})
        status = attributes.get("status")
        if status == "succeeded":
            gateway_payments = attributes.get("payments") or [{}]
            return await self._mark_paid(
                payment,
                _intent_payment_method(attributes),
                gateway_payment_id=gateway_payments[0].get("id"),
            )
        if status in INTENT_IN_FLIGHT:
            return payment

        error = attributes.get("last_payment_error") or {}
        reason = error.get("failed_message") or error.get("message") or "Payment failed"
        return await self._mark_failed(payment, reason)

    async def process_webhook(self, payload: dict) -> dict:
        """PayMongo event: {data: {attributes: {type, data: {id, attributes}}}}."""
        event = payload.get("data") or {}
        attributes = event.get("attributes") or {}
        event_type = attributes.get("type")
        resource = attributes.get("data") or {}
        resource_attrs = resource.get("attributes") or {}

        if event_type == "payment.paid":
            intent_id = resource_attrs.get("payment_intent_id")
            if not intent_id:
                raise bad_request_exception("payment.paid event without payment_intent_id")
            payment = await self.process_gateway_completion(intent_id)
            return {"handled": True, "event_type": event_type, "payment_id": payment["id"]}

        if event_type == "payment.failed":
            intent_id = resource_attrs.get("payment_intent_id")
            payment = await self._find_payment("payment_intent_id", intent_id) if intent_id else None
            if not payment:
                logger.warning(f"payment.failed for unknown intent {intent_id}")
                return {"handled": False, "event_type": event_type}
            if payment.get("status") != PaymentStatus.PAID:
                error = resource_attrs.get("last_payment_error") or {}
                await self._mark_failed(payment, error.get("failed_message") or "Payment failed")
            return {"handled": True, "event_type": event_type, "payment_id": payment["id"]}

        if event_type == "source.chargeable":
            source_id = resource.get("id")
            payment = await self._find_payment("source_id", source_id) if source_id else None
            if not payment:
                logger.warning(f"source.chargeable for unknown source {source_id}")
                return {"handled": False, "event_type": event_type}
            if payment.get("status") == PaymentStatus.PAID:
                return {"handled": True, "event_type": event_type, "payment_id": payment["id"]}
            try:
                charged = await self.gateway.create_payment_from_source(
                    source_id,
                    float(payment["amount"]),
                    payment.get("currency", settings.CURRENCY),
                    description=f"Payment for Delivery {payment['delivery_id']}",
                )
            except GatewayError as e:
                raise gateway_exception(f"Failed to charge source: {e}")
            await self._mark_paid(
                payment,
                resource_attrs.get("type") or payment.get("source_type"),
                gateway_payment_id=charged.get("id"),
            )
            return {"handled": True, "event_type": event_type, "payment_id": payment["id"]}

        logger.info(f"Webhook event {event_type} acknowledged")
        return {"handled": False, "event_type": event_type}

    # ── E-wallets and links ────────────────────────────────────────────────
    def _ensure_payable(self, payment: dict) -> None:
        if payment.get("status") == PaymentStatus.PAID:
            raise conflict_exception("Payment already completed")
        if payment.get("status") == PaymentStatus.CANCELLED:
            raise bad_request_exception("Payment was cancelled")

    async def start_ewallet_payment(self, payment_id: str, payment_method: str, redirect: dict) -> dict:
        if payment_method not in EWALLET_SOURCE_TYPES:
            raise bad_request_exception(
                f"Unsupported e-wallet: {payment_method}. Use one of {', '.join(EWALLET_SOURCE_TYPES)}"
            )
        payment = await self._get_payment(payment_id)
        self._ensure_payable(payment)

        try:
            source = await self.gateway.create_source(
                float(payment["amount"]), payment_method, redirect,
                currency=payment.get("currency", settings.CURRENCY),
            )
        except GatewayError as e:
            raise gateway_exception(f"Failed to create e-wallet source: {e}")

        await self.store.update("payments", payment_id, {
            "source_id":      source["id"],
            "source_type":    payment_method,
            "payment_method": payment_method,
            "updated_at":     datetime.now(timezone.utc),
        })
        source_attrs = source.get("attributes", {})
        return {
            "payment_id":   payment_id,
            "source_id":    source["id"],
            "status":       source_attrs.get("status"),
            "checkout_url": (source_attrs.get("redirect") or {}).get("checkout_url"),
        }

    async def create_payment_link(self, payment_id: str) -> dict:
        payment = await self._get_payment(payment_id)
        self._ensure_payable(payment)

        due_date = _as_datetime(payment.get("due_date"))
        remarks = f"Trucking service payment - Due: {due_date:%Y-%m-%d}" if due_date else "Trucking service payment"
        try:
            link = await self.gateway.create_link(
                float(payment["amount"]),
                f"Payment for Delivery {payment['delivery_id']}",
                remarks,
            )
        except GatewayError as e:
            raise gateway_exception(f"Failed to create payment link: {e}")

        checkout_url = link.get("attributes", {}).get("checkout_url")
        await self.store.update("payments", payment_id, {
            "payment_link_id":  link["id"],
            "payment_link_url": checkout_url,
            "updated_at":       datetime.now(timezone.utc),
        })
        return {
            "payment_id":       payment_id,
            "payment_link_id":  link["id"],
            "payment_link_url": checkout_url,
            "amount":           payment["amount"],
        }

    async def get_payment_status(self, payment_id: str) -> dict:
        payment = await self._get_payment(payment_id)
        gateway_status = None
        try:
            if payment.get("payment_intent_id"):
                intent = await self.gateway.get_payment_intent(payment["payment_intent_id"])
                gateway_status = intent.get("attributes", {}).get("status")
            elif payment.get("source_id"):
                source = await self.gateway.get_source(payment["source_id"])
                gateway_status = source.get("attributes", {}).get("status")
        except GatewayError as e:
            logger.warning(f"Gateway status for {payment_id} unavailable: {e}")

        return {
            "payment_id":     payment_id,
            "delivery_id":    payment.get("delivery_id"),
            "status":         payment.get("status"),
            "gateway_status": gateway_status,
            "amount":         payment.get("amount"),
            "paid_at":        payment.get("paid_at"),
        }

    # ── Administration ─────────────────────────────────────────────────────
    async def override_payment_status(
        self, payment_id: str, status: PaymentStatus, actor_id: Optional[str] = None,
    ) -> dict:
        status = PaymentStatus(status)
        if status not in OVERRIDABLE_STATUSES:
            raise bad_request_exception("Use the cancel endpoint to cancel a payment")
        payment = await self._get_payment(payment_id)
        if payment.get("status") == PaymentStatus.CANCELLED:
            raise bad_request_exception("Payment was cancelled")
        delivery = await self.store.get("deliveries", payment["delivery_id"])
        if delivery and delivery.get("status") == DeliveryStatus.CANCELLED:
            raise bad_request_exception("Delivery was cancelled")

        if status == PaymentStatus.PAID:
            updated = await self._mark_paid(payment, "manual", transaction_fee=0.0)
        elif status == PaymentStatus.FAILED:
            updated = await self._mark_failed(payment, f"Marked failed by {actor_id or 'admin'}")
        else:
            now = datetime.now(timezone.utc)
            fields = {"status": status.value, "updated_at": now}
            if status == PaymentStatus.OVERDUE:
                fields["overdue_at"] = now
            batch = self.store.batch()
            batch.update("payments", payment_id, fields)
            batch.update("deliveries", payment["delivery_id"], {
                "payment_status": status.value,
                "updated_at":     now,
            })
            await batch.commit()
            await self.reconcile_client_payment_status(payment["client_id"])
            updated = {**payment, **fields}

        logger.info(f"Payment {payment_id} set to {status.value} by {actor_id}")
        return updated

    async def generate_payments_from_deliveries(self, client_id: Optional[str] = None) -> dict:
        """Creates local records for billable deliveries that have none. No gateway call."""
        where = [("status", "in", [s.value for s in BILLABLE_DELIVERY_STATUSES])]
        if client_id:
            where.append(("client_id", "==", client_id))
        deliveries = await self.store.query("deliveries", *where)

        created = skipped = failed = 0
        clients: set[str] = set()
        now = datetime.now(timezone.utc)
        for delivery in deliveries:
            try:
                if await self._live_payments(delivery["id"]):
                    skipped += 1
                    continue
                rate = delivery.get("rate")
                amount = float(rate) if rate is not None else settings.DEFAULT_DELIVERY_RATE
                is_paid = delivery.get("payment_status") == PaymentStatus.PAID
                payment = Payment(
                    delivery_id=delivery["id"],
                    client_id=delivery["client_id"],
                    amount=amount,
                    currency=settings.CURRENCY,
                    status=PaymentStatus.PAID if is_paid else PaymentStatus.PENDING,
                    delivery_date=_as_datetime(delivery.get("delivery_date")),
                    due_date=_due_date(delivery, now),
                    paid_at=now if is_paid else None,
                    net_amount=amount,
                    is_legacy_payment=True,
                    created_at=now,
                    updated_at=now,
                )
                doc = payment.model_dump(mode="python")
                payment_id = _payment_id()
                batch = self.store.batch()
                batch.set("payments", payment_id, doc)
                batch.update("deliveries", delivery["id"], {
                    "payment_id":     payment_id,
                    "payment_status": doc["status"],
                    "updated_at":     now,
                })
                await batch.commit()
                created += 1
                clients.add(delivery["client_id"])
            except Exception:
                logger.exception(f"Could not create payment for delivery {delivery.get('id')}")
                failed += 1

        for cid in sorted(clients):
            await self.reconcile_client_payment_status(cid)

        logger.info(f"Payments generated: {created} created, {skipped} skipped, {failed} failed")
        return {"created": created, "skipped": skipped, "failed": failed, "clients": sorted(clients)}

    async def get_overdue_payments(self) -> list[dict]:
        now = datetime.now(timezone.utc)
        payments = await self.store.query(
            "payments",
            ("status", "in", [PaymentStatus.PENDING.value, PaymentStatus.OVERDUE.value]),
        )
        overdue = []
        for payment in payments:
            due_date = _due_date(payment, now)
            if due_date < now:
                overdue.append({**payment, "due_date": due_date, "days_past_due": (now - due_date).days})
        overdue.sort(key=lambda p: p["days_past_due"], reverse=True)
        return overdue

    async def list_payments(self, status: Optional[PaymentStatus] = None, limit: int = 100) -> list[dict]:
        where = [("status", "==", status.value)] if status else []
        return await self.store.query(
            "payments", *where, order_by="created_at", descending=True, limit=limit,
        )

    async def sweep_overdue_clients(self) -> int:
        """Reconciles every client holding a pending payment past due. Returns the client count."""
        now = datetime.now(timezone.utc)
        stale = await self.store.query(
            "payments",
            ("status", "==", PaymentStatus.PENDING.value),
            ("due_date", "<", now),
        )
        client_ids = sorted({p["client_id"] for p in stale if p.get("client_id")})
        for client_id in client_ids:
            await self.reconcile_client_payment_status(client_id)
        if client_ids:
            logger.info(f"Overdue sweep reconciled {len(client_ids)} client(s)")
        return len(client_ids)
