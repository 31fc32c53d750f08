"""
Delivery lifecycle: status state machine, crew and truck restoration,
truck statistics, client notifications and driver assignment.
"""
import logging
import random
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Optional, Union

from core.exceptions import (
    bad_request_exception, conflict_exception, forbidden_exception, not_found_exception,
)
from database import DocumentNotFound, DocumentStore, Increment, WriteConflict
from models.common import CrewStatus, DeliveryStatus, GeoPin, PaymentStatus, TruckStatus, UserRole
from models.delivery import DriverAssignment, SideEffectResult, TransitionResult
from models.notification import Notification, NotificationPriority
from services.billing_service import PaymentSynchronizer
from services.notification_service import NotificationService

logger = logging.getLogger(__name__)

# Forward-only machine; a driver may skip steps (pending → delivered)
ALLOWED_TRANSITIONS: dict[DeliveryStatus, list[DeliveryStatus]] = {
    DeliveryStatus.PENDING: [
        DeliveryStatus.ACCEPTED,
        DeliveryStatus.STARTED,
        DeliveryStatus.PICKED_UP,
        DeliveryStatus.DELIVERED,
        DeliveryStatus.COMPLETED,
        DeliveryStatus.CANCELLED,
    ],
    DeliveryStatus.ACCEPTED: [
        DeliveryStatus.STARTED,
        DeliveryStatus.PICKED_UP,
        DeliveryStatus.DELIVERED,
        DeliveryStatus.COMPLETED,
        DeliveryStatus.CANCELLED,
    ],
    DeliveryStatus.STARTED: [
        DeliveryStatus.PICKED_UP,
        DeliveryStatus.DELIVERED,
        DeliveryStatus.COMPLETED,
        DeliveryStatus.CANCELLED,
    ],
    DeliveryStatus.PICKED_UP: [
        DeliveryStatus.DELIVERED,
        DeliveryStatus.COMPLETED,
        DeliveryStatus.CANCELLED,
    ],
    DeliveryStatus.DELIVERED: [
        DeliveryStatus.COMPLETED,
    ],
    DeliveryStatus.COMPLETED: [],   # terminal
    DeliveryStatus.CANCELLED: [],   # terminal
}

# What a role may request; admins and operators may apply any transition
ROLE_TARGETS: dict[UserRole, tuple[DeliveryStatus, ...]] = {
    UserRole.DRIVER: (
        DeliveryStatus.ACCEPTED,
        DeliveryStatus.STARTED,
        DeliveryStatus.PICKED_UP,
        DeliveryStatus.DELIVERED,
        DeliveryStatus.CANCELLED,
    ),
    UserRole.CLIENT: (
        DeliveryStatus.COMPLETED,
        DeliveryStatus.CANCELLED,
    ),
}

# Per target status: timestamp fields, acting-user field, crew mirror, message, notification
STATUS_EFFECTS: dict[DeliveryStatus, dict] = {
    DeliveryStatus.ACCEPTED: {
        "timestamps": ("accepted_at",),
        "actor_field": "accepted_by",
        "crew": CrewStatus.ACCEPTED,
        "message": "Delivery accepted successfully.",
        "notification": {
            "type":    "delivery_accepted",
            "title":   "Delivery Accepted",
            "message": "Your delivery has been accepted by a driver and will begin soon.",
        },
    },
    DeliveryStatus.STARTED: {
        "timestamps": ("started_at",),
        "actor_field": "started_by",
        "crew": CrewStatus.IN_PROGRESS,
        "message": "Delivery started successfully.",
        "notification": {
            "type":    "delivery_started",
            "title":   "Delivery Started",
            "message": "Your delivery is now in progress. The driver is on the way to pick up your cargo.",
        },
    },
    DeliveryStatus.PICKED_UP: {
        "timestamps": ("picked_up_at",),
        "actor_field": "picked_up_by",
        "crew": CrewStatus.IN_PROGRESS,
        "message": "Cargo picked up successfully.",
        "notification": {
            "type":    "delivery_picked_up",
            "title":   "Cargo Picked Up",
            "message": "Your cargo has been picked up and is now in transit to the destination.",
        },
    },
    DeliveryStatus.DELIVERED: {
        "timestamps": ("delivered_at", "driver_completed_at"),
        "actor_field": "delivered_by",
        "crew": CrewStatus.DELIVERED,
        "awaiting_client_confirmation": True,
        "message": "Delivery marked as delivered. Awaiting client confirmation.",
        "notification": {
            "type":            "delivery_delivered",
            "title":           "Delivery Completed",
            "message":         "Your delivery has been completed! Please confirm receipt when convenient.",
            "action_required": True,
        },
    },
    DeliveryStatus.COMPLETED: {
        "timestamps": ("completed_at", "final_completed_at"),
        "actor_field": "completed_by",
        "crew": CrewStatus.COMPLETED,
        "awaiting_client_confirmation": False,
    },
    DeliveryStatus.CANCELLED: {
        "timestamps": ("cancelled_at",),
        "actor_field": "cancelled_by",
        "crew": CrewStatus.CANCELLED,
    },
}

# Statuses after which the truck and crew are released
RELEASING_STATUSES = (DeliveryStatus.DELIVERED, DeliveryStatus.COMPLETED, DeliveryStatus.CANCELLED)


def _event_id() -> str:
    return f"evt_{uuid.uuid4().hex[:12]}"


def parse_delivery_status(value: Union[str, DeliveryStatus]) -> DeliveryStatus:
    try:
        return DeliveryStatus(value)
    except ValueError:
        raise bad_request_exception(f"Invalid delivery status: {value}")


class DeliveryLifecycleCoordinator:
    def __init__(
        self,
        store: DocumentStore,
        notifier: NotificationService,
        billing: PaymentSynchronizer,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.billing = billing
        self.rng = rng or random.Random()

    # ── State machine ──────────────────────────────────────────────────────
    async def advance_delivery_status(
        self,
        delivery_id: str,
        actor_id: str,
        target_status: Union[str, DeliveryStatus],
        location: Optional[GeoPin] = None,
        actor_role: Union[str, UserRole] = UserRole.ADMIN,
        notes: Optional[str] = None,
    ) -> TransitionResult:
        target = parse_delivery_status(target_status)
        try:
            role = UserRole(actor_role)
        except ValueError:
            raise forbidden_exception(f"Unknown role: {actor_role}")

        delivery = await self.store.get("deliveries", delivery_id)
        if not delivery:
            raise not_found_exception("Delivery")

        self._authorize(delivery, actor_id, role, target)

        raw_status = delivery.get("status") or DeliveryStatus.PENDING.value
        current = parse_delivery_status(raw_status)
        if current == target:
            if target == DeliveryStatus.CANCELLED:
                # Retries a payment cancellation that failed after the status write
                await self.billing.cancel_payment(delivery_id)
            return TransitionResult(message=f"Delivery is already {target.value}", status=target)

        if target not in ALLOWED_TRANSITIONS[current]:
            raise bad_request_exception(f"Invalid transition: {current.value} → {target.value}")

        effect = STATUS_EFFECTS[target]
        now = datetime.now(timezone.utc)
        fields = {
            "status":              target.value,
            effect["actor_field"]: actor_id,
            "driver_status":       effect["crew"].value,
            "helper_status":       effect["crew"].value,
            "updated_at":          now,
        }
        for ts_field in effect["timestamps"]:
            fields[ts_field] = now
        if "awaiting_client_confirmation" in effect:
            fields["awaiting_client_confirmation"] = effect["awaiting_client_confirmation"]
        if location is not None:
            fields["current_location"] = location.model_dump(exclude_none=True)
            fields["last_location_update"] = now
        if target == DeliveryStatus.CANCELLED and delivery.get("payment_status") != PaymentStatus.PAID:
            fields["payment_status"] = PaymentStatus.CANCELLED.value

        try:
            await self.store.update("deliveries", delivery_id, fields, expect={"status": delivery.get("status")})
        except WriteConflict:
            raise conflict_exception("Delivery status changed concurrently, reload and retry")
        except DocumentNotFound:
            raise not_found_exception("Delivery")

        logger.info(f"Delivery {delivery_id}: {current.value} → {target.value} by {actor_id}")
        delivery = {**delivery, **fields}

        side_effects: list[SideEffectResult] = []
        if target == DeliveryStatus.DELIVERED and delivery.get("truck_id"):
            side_effects.append(await self._run_effect(
                "truck_statistics", self._update_truck_statistics(delivery, now),
            ))
        if target in RELEASING_STATUSES:
            side_effects.extend(await self._restore_resources(delivery, now))
        if effect.get("notification"):
            side_effects.append(await self._run_effect(
                "client_notification", self._notify_client(delivery, target, effect["notification"]),
            ))
        side_effects.append(await self._run_effect(
            "event_log",
            self._record_event(delivery_id, current, target, actor_id, role, notes),
        ))

        if target == DeliveryStatus.CANCELLED:
            await self.billing.cancel_payment(delivery_id)

        return TransitionResult(
            message=effect.get("message") or f"Delivery status updated to {target.value}",
            status=target,
            side_effects=side_effects,
        )

    def _authorize(self, delivery: dict, actor_id: str, role: UserRole, target: DeliveryStatus) -> None:
        if role in (UserRole.ADMIN, UserRole.OPERATOR):
            return
        if role not in ROLE_TARGETS or target not in ROLE_TARGETS[role]:
            raise forbidden_exception(f"A {role.value} cannot set a delivery to {target.value}")
        owner = delivery.get("driver_id") if role == UserRole.DRIVER else delivery.get("client_id")
        if owner != actor_id:
            raise forbidden_exception("This delivery is not assigned to you")

    # ── Side effects ───────────────────────────────────────────────────────
    async def _run_effect(self, name: str, operation: Awaitable) -> SideEffectResult:
        try:
            await operation
            return SideEffectResult(name=name)
        except Exception as e:
            logger.warning(f"Side effect {name} failed: {e}")
            return SideEffectResult(name=name, ok=False, error=str(e))

    async def _update_truck_statistics(self, delivery: dict, now: datetime) -> None:
        distance = float(delivery.get("estimated_distance") or 0)
        await self.store.update("trucks", delivery["truck_id"], {
            "total_deliveries": Increment(1),
            "total_kilometers": Increment(distance),
            "updated_at":       now,
        })

    async def _restore_resources(self, delivery: dict, now: datetime) -> list[SideEffectResult]:
        # Independent writes: a missing helper must not keep the truck busy
        results = []
        if delivery.get("truck_id"):
            results.append(await self._run_effect("truck_restore", self._restore_truck(delivery["truck_id"], now)))
        if delivery.get("driver_id"):
            results.append(await self._run_effect(
                "driver_restore", self._restore_crew("drivers", delivery["driver_id"], now),
            ))
        if delivery.get("helper_id"):
            results.append(await self._run_effect(
                "helper_restore", self._restore_crew("helpers", delivery["helper_id"], now),
            ))
        return results

    async def _restore_truck(self, truck_id: str, now: datetime) -> None:
        allocations = await self.store.query(
            "allocations",
            ("truck_id", "==", truck_id),
            ("status", "==", "active"),
            limit=1,
        )
        status = TruckStatus.FREE if allocations else TruckStatus.AVAILABLE
        await self.store.update("trucks", truck_id, {
            "status":              status.value,
            "active_delivery":     False,
            "current_delivery_id": None,
            "updated_at":          now,
        })

    async def _restore_crew(self, collection: str, member_id: str, now: datetime) -> None:
        await self.store.update(collection, member_id, {
            "status":              CrewStatus.ACTIVE.value,
            "current_delivery_id": None,
            "updated_at":          now,
        })

    async def _notify_client(self, delivery: dict, target: DeliveryStatus, template: dict) -> None:
        client_id = delivery.get("client_id")
        if not client_id:
            raise ValueError("Delivery has no client to notify")
        action_required = template.get("action_required", False)
        await self.notifier.create(Notification(
            recipient_id=client_id,
            recipient_type="client",
            type=template["type"],
            title=template["title"],
            message=template["message"],
            delivery_id=delivery["id"],
            status=target.value,
            action_required=action_required,
            priority=NotificationPriority.HIGH if action_required else NotificationPriority.NORMAL,
        ))

    async def _record_event(
        self,
        delivery_id: str,
        from_status: DeliveryStatus,
        to_status: DeliveryStatus,
        actor_id: str,
        actor_role: UserRole,
        notes: Optional[str] = None,
    ) -> None:
        """Appends a transition to delivery_events."""
        event_id = _event_id()
        await self.store.add("delivery_events", {
            "event_id":    event_id,
            "delivery_id": delivery_id,
            "event_type":  "STATUS_CHANGED",
            "from_status": from_status.value,
            "to_status":   to_status.value,
            "actor_id":    actor_id,
            "actor_role":  actor_role.value,
            "notes":       notes,
            "created_at":  datetime.now(timezone.utc),
        }, doc_id=event_id)

    # ── Drivers ────────────────────────────────────────────────────────────
    async def assign_random_driver(self, delivery_id: str) -> DriverAssignment:
        """
        Picks uniformly among active drivers. The driver is not claimed, so two
        concurrent calls may pick the same driver.
        """
        delivery = await self.store.get("deliveries", delivery_id)
        if not delivery:
            raise not_found_exception("Delivery")

        drivers = await self.store.query("drivers", ("status", "==", CrewStatus.ACTIVE.value))
        if not drivers:
            return DriverAssignment(success=False, message="No active drivers available for assignment")

        driver = self.rng.choice(drivers)
        driver_name = driver.get("name") or driver.get("driver_name") or "Unknown Driver"
        await self.store.update("deliveries", delivery_id, {
            "driver_id":          driver["id"],
            "driver_name":        driver_name,
            "driver_assigned_at": datetime.now(timezone.utc),
        })
        logger.info(f"Driver {driver['id']} assigned to delivery {delivery_id}")
        return DriverAssignment(
            success=True,
            message=f"Driver {driver_name} assigned successfully",
            driver_id=driver["id"],
            driver_name=driver_name,
        )

    async def update_driver_location(self, driver_id: str, location: GeoPin) -> dict:
        now = datetime.now(timezone.utc)
        try:
            await self.store.update("drivers", driver_id, {
                "current_location":     location.model_dump(exclude_none=True),
                "last_location_update": now,
            })
        except DocumentNotFound:
            raise not_found_exception("Driver")
        return {"driver_id": driver_id, "location": location, "updated_at": now}

    async def list_driver_deliveries(self, driver_id: str, status: Optional[str] = None) -> list[dict]:
        where = [("driver_id", "==", driver_id)]
        if status:
            where.append(("status", "==", parse_delivery_status(status).value))
        return await self.store.query("deliveries", *where, order_by="created_at", descending=True)
