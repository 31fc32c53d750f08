from enum import Enum
from typing import Optional
from pydantic import BaseModel


class DeliveryStatus(str, Enum):
    PENDING   = "pending"
    ACCEPTED  = "accepted"
    STARTED   = "started"
    PICKED_UP = "picked-up"
    DELIVERED = "delivered"   # driver done, awaiting client confirmation
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @classmethod
    def _missing_(cls, value):
        # Spellings still sent by the mobile app and the admin console
        if isinstance(value, str):
            normalized = value.strip().lower()
            alias = _DELIVERY_STATUS_ALIASES.get(normalized, normalized)
            for member in cls:
                if member.value == alias:
                    return member
        return None


_DELIVERY_STATUS_ALIASES = {
    "in-progress":           "started",
    "in_progress":           "started",
    "picked_up":             "picked-up",
    "awaiting-confirmation": "delivered",
}


class PaymentStatus(str, Enum):
    PENDING   = "pending"
    PAID      = "paid"
    OVERDUE   = "overdue"
    FAILED    = "failed"      # Payment records only, never mirrored on a delivery
    CANCELLED = "cancelled"


class ClientPaymentStanding(str, Enum):
    CURRENT = "current"
    OVERDUE = "overdue"


class CrewStatus(str, Enum):
    """Driver/helper status, both on their own record and mirrored on the delivery."""
    ACTIVE      = "active"
    ACCEPTED    = "accepted"
    IN_PROGRESS = "in_progress"
    DELIVERED   = "delivered"
    COMPLETED   = "completed"
    CANCELLED   = "cancelled"


class TruckStatus(str, Enum):
    AVAILABLE   = "available"    # not allocated to any client
    FREE        = "free"         # allocated, free for the client to book
    ON_DELIVERY = "on-delivery"
    MAINTENANCE = "maintenance"


class UserRole(str, Enum):
    CLIENT   = "client"
    DRIVER   = "driver"
    HELPER   = "helper"
    OPERATOR = "operator"
    ADMIN    = "admin"


class GeoPin(BaseModel):
    lat: float
    lng: float
    accuracy: Optional[float] = None  # metres
    speed:    Optional[float] = None  # km/h
