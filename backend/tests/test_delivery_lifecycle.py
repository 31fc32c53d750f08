import random
from datetime import timedelta

import pytest
from fastapi import HTTPException

from models.common import DeliveryStatus, GeoPin
from services.delivery_service import DeliveryLifecycleCoordinator


def _effect(result, name):
    return next(e for e in result.side_effects if e.name == name)


async def test_driver_can_jump_straight_to_delivered(coordinator, fleet):
    result = await coordinator.advance_delivery_status("D1", "driver1", "delivered", actor_role="driver")

    assert result.success is True
    assert result.status == DeliveryStatus.DELIVERED
    assert result.message == "Delivery marked as delivered. Awaiting client confirmation."

    delivery = fleet.doc("deliveries", "D1")
    assert delivery["status"] == "delivered"
    assert delivery["awaiting_client_confirmation"] is True
    assert delivery["delivered_at"] == delivery["driver_completed_at"]
    assert delivery["delivered_by"] == "driver1"
    assert delivery["driver_status"] == "delivered"
    assert delivery["helper_status"] == "delivered"

    truck = fleet.doc("trucks", "T1")
    assert truck["total_deliveries"] == 4
    assert truck["total_kilometers"] == pytest.approx(170.0)

    notifications = list(fleet.docs["notifications"].values())
    assert len(notifications) == 1
    assert notifications[0]["recipient_id"] == "client1"
    assert notifications[0]["type"] == "delivery_delivered"
    assert notifications[0]["action_required"] is True
    assert notifications[0]["priority"] == "high"
    assert notifications[0]["is_read"] is False


async def test_completion_restores_truck_and_crew(coordinator, fleet):
    await coordinator.advance_delivery_status("D1", "driver1", "delivered", actor_role="driver")
    result = await coordinator.advance_delivery_status("D1", "operator1", "completed", actor_role="operator")

    assert result.message == "Delivery status updated to completed"
    delivery = fleet.doc("deliveries", "D1")
    assert delivery["status"] == "completed"
    assert delivery["awaiting_client_confirmation"] is False
    assert delivery["completed_at"] is not None
    assert delivery["final_completed_at"] is not None

    assert fleet.doc("trucks", "T1")["status"] == "available"
    assert fleet.doc("trucks", "T1")["current_delivery_id"] is None
    assert fleet.doc("drivers", "driver1")["status"] == "active"
    assert fleet.doc("helpers", "helper1")["status"] == "active"


async def test_truck_with_active_allocation_becomes_free(coordinator, fleet):
    fleet.seed("allocations", "A1", truck_id="T1", client_id="client1", status="active")

    await coordinator.advance_delivery_status("D1", "admin1", "completed")

    assert fleet.doc("trucks", "T1")["status"] == "free"
    assert fleet.doc("trucks", "T1")["active_delivery"] is False


async def test_repeating_a_status_changes_nothing(coordinator, fleet):
    await coordinator.advance_delivery_status("D1", "driver1", "delivered", actor_role="driver")
    await coordinator.advance_delivery_status("D1", "admin1", "completed")
    writes_before = list(fleet.writes)
    truck_before = dict(fleet.doc("trucks", "T1"))

    result = await coordinator.advance_delivery_status("D1", "admin1", "completed")

    assert result.success is True
    assert result.side_effects == []
    assert fleet.writes == writes_before
    assert fleet.doc("trucks", "T1") == truck_before
    assert len(fleet.docs["notifications"]) == 1


@pytest.mark.parametrize("alias, expected", [
    ("in-progress", "started"),
    ("picked_up", "picked-up"),
    ("awaiting-confirmation", "delivered"),
    ("  ACCEPTED ", "accepted"),
])
async def test_status_aliases_are_normalised(coordinator, fleet, alias, expected):
    result = await coordinator.advance_delivery_status("D1", "admin1", alias)
    assert result.status.value == expected
    assert fleet.doc("deliveries", "D1")["status"] == expected


async def test_unknown_status_is_rejected_before_any_write(coordinator, fleet):
    with pytest.raises(HTTPException) as exc:
        await coordinator.advance_delivery_status("D1", "admin1", "teleported")
    assert exc.value.status_code == 400
    assert fleet.writes == []


async def test_missing_delivery_is_not_found(coordinator, fleet):
    with pytest.raises(HTTPException) as exc:
        await coordinator.advance_delivery_status("nope", "admin1", "accepted")
    assert exc.value.status_code == 404
    assert exc.value.detail == "Delivery not found"
    assert fleet.writes == []


@pytest.mark.parametrize("start, target", [
    ("completed", "accepted"),
    ("cancelled", "started"),
    ("delivered", "cancelled"),
    ("picked-up", "started"),
])
async def test_backward_and_terminal_moves_are_rejected(coordinator, fleet, start, target):
    fleet.doc("deliveries", "D1")["status"] = start
    with pytest.raises(HTTPException) as exc:
        await coordinator.advance_delivery_status("D1", "admin1", target)
    assert exc.value.status_code == 400
    assert fleet.doc("deliveries", "D1")["status"] == start


async def test_driver_cannot_move_someone_elses_delivery(coordinator, fleet):
    with pytest.raises(HTTPException) as exc:
        await coordinator.advance_delivery_status("D1", "driver2", "accepted", actor_role="driver")
    assert exc.value.status_code == 403


async def test_client_may_only_confirm_or_cancel(coordinator, fleet):
    with pytest.raises(HTTPException) as exc:
        await coordinator.advance_delivery_status("D1", "client1", "started", actor_role="client")
    assert exc.value.status_code == 403

    fleet.doc("deliveries", "D1")["status"] = "delivered"
    result = await coordinator.advance_delivery_status("D1", "client1", "completed", actor_role="client")
    assert result.status == DeliveryStatus.COMPLETED


async def test_concurrent_status_change_is_a_conflict(store, fleet, notifier, billing):
    class RacingStore(type(store)):
        pass

    racing = RacingStore()
    racing.docs = fleet.docs
    plain_get = racing.get

    async def get_then_race(collection, doc_id):
        doc = await plain_get(collection, doc_id)
        if collection == "deliveries":
            racing.docs["deliveries"][doc_id]["status"] = "accepted"
        return doc

    racing.get = get_then_race
    coordinator = DeliveryLifecycleCoordinator(racing, notifier, billing)

    with pytest.raises(HTTPException) as exc:
        await coordinator.advance_delivery_status("D1", "admin1", "started")
    assert exc.value.status_code == 409


async def test_location_is_stored_with_the_transition(coordinator, fleet):
    await coordinator.advance_delivery_status(
        "D1", "driver1", "started", location=GeoPin(lat=14.5995, lng=120.9842), actor_role="driver",
    )
    delivery = fleet.doc("deliveries", "D1")
    assert delivery["current_location"] == {"lat": 14.5995, "lng": 120.9842}
    assert delivery["started_at"] is not None
    assert delivery["driver_status"] == "in_progress"


async def test_failed_side_effects_do_not_undo_the_transition(coordinator, fleet):
    fleet.fail_on("helpers")
    fleet.fail_on("notifications")

    result = await coordinator.advance_delivery_status("D1", "driver1", "delivered", actor_role="driver")

    assert fleet.doc("deliveries", "D1")["status"] == "delivered"
    assert _effect(result, "helper_restore").ok is False
    assert _effect(result, "client_notification").ok is False
    assert _effect(result, "truck_restore").ok is True
    assert _effect(result, "driver_restore").ok is True
    assert fleet.doc("drivers", "driver1")["status"] == "active"
    assert fleet.doc("trucks", "T1")["total_deliveries"] == 4


async def test_missing_truck_is_reported_not_raised(coordinator, fleet):
    del fleet.docs["trucks"]["T1"]

    result = await coordinator.advance_delivery_status("D1", "admin1", "delivered")

    assert result.success is True
    assert _effect(result, "truck_statistics").ok is False
    assert _effect(result, "truck_restore").ok is False


async def test_events_are_logged(coordinator, fleet):
    await coordinator.advance_delivery_status("D1", "driver1", "accepted", actor_role="driver", notes="on my way")

    events = list(fleet.docs["delivery_events"].values())
    assert len(events) == 1
    assert events[0]["from_status"] == "pending"
    assert events[0]["to_status"] == "accepted"
    assert events[0]["actor_role"] == "driver"
    assert events[0]["notes"] == "on my way"


# ── Cancellation and payments ────────────────────────────────────────────────
async def test_cancel_cancels_pending_payments(coordinator, fleet, gateway, now):
    fleet.seed("payments", "P1", delivery_id="D1", client_id="client1", amount=1500.0,
               status="pending", payment_intent_id="pi_1", due_date=now)

    result = await coordinator.advance_delivery_status("D1", "client1", "cancelled", actor_role="client")

    assert result.status == DeliveryStatus.CANCELLED
    assert fleet.doc("payments", "P1")["status"] == "cancelled"
    assert fleet.doc("deliveries", "D1")["payment_status"] == "cancelled"
    assert ("cancel_payment_intent", "pi_1") in gateway.calls
    assert fleet.doc("drivers", "driver1")["status"] == "active"


async def test_cancel_leaves_paid_payment_alone(coordinator, fleet, now):
    fleet.doc("deliveries", "D1")["payment_status"] = "paid"
    fleet.seed("payments", "P1", delivery_id="D1", client_id="client1", amount=1500.0,
               status="paid", payment_intent_id="pi_1", due_date=now)

    await coordinator.advance_delivery_status("D1", "admin1", "cancelled")

    assert fleet.doc("payments", "P1")["status"] == "paid"
    assert fleet.doc("deliveries", "D1")["payment_status"] == "paid"


async def test_payment_write_failure_surfaces(coordinator, fleet, now):
    fleet.seed("payments", "P1", delivery_id="D1", client_id="client1", amount=1500.0,
               status="pending", due_date=now)
    fleet.fail_on("batch")

    with pytest.raises(RuntimeError):
        await coordinator.advance_delivery_status("D1", "admin1", "cancelled")


async def test_repeating_a_cancel_finishes_payment_cancellation(coordinator, billing, fleet, now):
    fleet.seed("payments", "P1", delivery_id="D1", client_id="client1", amount=1500.0,
               status="pending", due_date=now - timedelta(days=1))
    fleet.fail_on("batch")
    with pytest.raises(RuntimeError):
        await coordinator.advance_delivery_status("D1", "admin1", "cancelled")
    assert fleet.doc("deliveries", "D1")["status"] == "cancelled"
    assert fleet.doc("payments", "P1")["status"] == "pending"

    fleet.failures.clear()
    result = await coordinator.advance_delivery_status("D1", "admin1", "cancelled")

    assert result.message == "Delivery is already cancelled"
    assert fleet.doc("payments", "P1")["status"] == "cancelled"
    reconciled = await billing.reconcile_client_payment_status("client1")
    assert reconciled.overdue_count == 0
    assert reconciled.can_book_trucks is True


# ── Drivers ──────────────────────────────────────────────────────────────────
async def test_assign_random_driver_without_active_drivers(coordinator, store):
    store.seed("deliveries", "D2", client_id="client1", status="pending")
    store.seed("drivers", "driver9", name="Off Duty", status="inactive")

    result = await coordinator.assign_random_driver("D2")

    assert result.success is False
    assert result.message == "No active drivers available for assignment"
    assert store.writes == []
    assert "driver_id" not in store.doc("deliveries", "D2")


async def test_assign_random_driver_picks_an_active_driver(store, notifier, billing):
    store.seed("deliveries", "D2", client_id="client1", status="pending")
    store.seed("drivers", "driver1", name="Juan", status="active")
    store.seed("drivers", "driver2", name="Maria", status="active")
    store.seed("drivers", "driver3", name="Busy", status="in_progress")
    coordinator = DeliveryLifecycleCoordinator(store, notifier, billing, rng=random.Random(1))

    result = await coordinator.assign_random_driver("D2")

    assert result.success is True
    assert result.driver_id in ("driver1", "driver2")
    delivery = store.doc("deliveries", "D2")
    assert delivery["driver_id"] == result.driver_id
    assert delivery["driver_name"] == result.driver_name
    assert delivery["driver_assigned_at"] is not None


async def test_assign_random_driver_unknown_delivery(coordinator, store):
    with pytest.raises(HTTPException) as exc:
        await coordinator.assign_random_driver("missing")
    assert exc.value.status_code == 404


async def test_driver_location_and_listing(coordinator, fleet, now):
    fleet.seed("deliveries", "D0", client_id="client1", driver_id="driver1", status="completed",
               created_at=now - timedelta(days=365))

    await coordinator.update_driver_location("driver1", GeoPin(lat=10.3157, lng=123.8854, speed=42.0))
    assert fleet.doc("drivers", "driver1")["current_location"]["speed"] == 42.0

    deliveries = await coordinator.list_driver_deliveries("driver1")
    assert [d["id"] for d in deliveries] == ["D1", "D0"]

    with pytest.raises(HTTPException) as exc:
        await coordinator.update_driver_location("ghost", GeoPin(lat=0, lng=0))
    assert exc.value.status_code == 404
