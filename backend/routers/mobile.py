"""
Router mobile: delivery status updates and location pings from the driver app.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from core.dependencies import (
    get_coordinator, get_current_user, is_staff, require_admin, require_driver,
)
from models.common import DeliveryStatus
from models.delivery import DeliveryActionRequest, LocationUpdate, StatusUpdateRequest
from services.delivery_service import DeliveryLifecycleCoordinator

router = APIRouter()


async def _advance(
    coordinator: DeliveryLifecycleCoordinator,
    delivery_id: str,
    current_user: dict,
    target_status,
    body: Optional[DeliveryActionRequest] = None,
) -> dict:
    result = await coordinator.advance_delivery_status(
        delivery_id,
        current_user["user_id"],
        target_status,
        location=body.location if body else None,
        actor_role=current_user["role"],
        notes=body.notes if body else None,
    )
    return {
        "success": result.success,
        "message": result.message,
        "data": {
            "delivery_id":  delivery_id,
            "status":       result.status,
            "side_effects": result.side_effects,
        },
    }


@router.get("/deliveries", summary="Deliveries of the signed-in driver")
async def my_deliveries(
    status:    Optional[str] = Query(None, description="Filter by delivery status"),
    driver_id: Optional[str] = Query(None, description="Staff only: another driver's deliveries"),
    current_user: dict = Depends(require_driver),
    coordinator: DeliveryLifecycleCoordinator = Depends(get_coordinator),
):
    target = driver_id if driver_id and is_staff(current_user) else current_user["user_id"]
    deliveries = await coordinator.list_driver_deliveries(target, status)
    return {
        "success": True,
        "message": f"{len(deliveries)} deliveries",
        "data": deliveries,
    }


@router.put("/deliveries/{delivery_id}/status", summary="Set a delivery status")
async def update_status(
    delivery_id: str,
    body: StatusUpdateRequest,
    current_user: dict = Depends(get_current_user),
    coordinator: DeliveryLifecycleCoordinator = Depends(get_coordinator),
):
    return await _advance(
        coordinator, delivery_id, current_user, body.status,
        DeliveryActionRequest(location=body.location, notes=body.notes),
    )


@router.put("/deliveries/{delivery_id}/accept", summary="Driver accepts the delivery")
async def accept_delivery(
    delivery_id: str,
    body: Optional[DeliveryActionRequest] = None,
    current_user: dict = Depends(require_driver),
    coordinator: DeliveryLifecycleCoordinator = Depends(get_coordinator),
):
    return await _advance(coordinator, delivery_id, current_user, DeliveryStatus.ACCEPTED, body)


@router.put("/deliveries/{delivery_id}/start", summary="Driver starts the delivery")
async def start_delivery(
    delivery_id: str,
    body: Optional[DeliveryActionRequest] = None,
    current_user: dict = Depends(require_driver),
    coordinator: DeliveryLifecycleCoordinator = Depends(get_coordinator),
):
    return await _advance(coordinator, delivery_id, current_user, DeliveryStatus.STARTED, body)


@router.put("/deliveries/{delivery_id}/pickup", summary="Driver picked up the cargo")
async def pickup_delivery(
    delivery_id: str,
    body: Optional[DeliveryActionRequest] = None,
    current_user: dict = Depends(require_driver),
    coordinator: DeliveryLifecycleCoordinator = Depends(get_coordinator),
):
    return await _advance(coordinator, delivery_id, current_user, DeliveryStatus.PICKED_UP, body)


@router.put("/deliveries/{delivery_id}/deliver", summary="Driver dropped off the cargo")
async def deliver_delivery(
    delivery_id: str,
    body: Optional[DeliveryActionRequest] = None,
    current_user: dict = Depends(require_driver),
    coordinator: DeliveryLifecycleCoordinator = Depends(get_coordinator),
):
    return await _advance(coordinator, delivery_id, current_user, DeliveryStatus.DELIVERED, body)


@router.put("/deliveries/{delivery_id}/confirm", summary="Client or operator confirms receipt")
async def confirm_delivery(
    delivery_id: str,
    body: Optional[DeliveryActionRequest] = None,
    current_user: dict = Depends(get_current_user),
    coordinator: DeliveryLifecycleCoordinator = Depends(get_coordinator),
):
    return await _advance(coordinator, delivery_id, current_user, DeliveryStatus.COMPLETED, body)


@router.put("/deliveries/{delivery_id}/cancel", summary="Cancel a delivery")
async def cancel_delivery(
    delivery_id: str,
    body: Optional[DeliveryActionRequest] = None,
    current_user: dict = Depends(get_current_user),
    coordinator: DeliveryLifecycleCoordinator = Depends(get_coordinator),
):
    return await _advance(coordinator, delivery_id, current_user, DeliveryStatus.CANCELLED, body)


@router.post("/deliveries/{delivery_id}/assign-driver", summary="Assign a random active driver")
async def assign_driver(
    delivery_id: str,
    current_user: dict = Depends(require_admin),
    coordinator: DeliveryLifecycleCoordinator = Depends(get_coordinator),
):
    result = await coordinator.assign_random_driver(delivery_id)
    return {
        "success": result.success,
        "message": result.message,
        "data": result.model_dump(exclude={"success", "message"}) if result.success else None,
    }


@router.put("/location", summary="Driver location ping")
async def update_location(
    body: LocationUpdate,
    current_user: dict = Depends(require_driver),
    coordinator: DeliveryLifecycleCoordinator = Depends(get_coordinator),
):
    data = await coordinator.update_driver_location(current_user["user_id"], body.location)
    return {
        "success": True,
        "message": "Driver location updated successfully",
        "data": data,
    }
