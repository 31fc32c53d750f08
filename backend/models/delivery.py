from typing import Optional
from pydantic import BaseModel
from models.common import DeliveryStatus, GeoPin


class StatusUpdateRequest(BaseModel):
    status:   str
    location: Optional[GeoPin] = None
    notes:    Optional[str]    = None


class DeliveryActionRequest(BaseModel):
    location: Optional[GeoPin] = None
    notes:    Optional[str]    = None


class LocationUpdate(BaseModel):
    location: GeoPin


class SideEffectResult(BaseModel):
    """Outcome of one best-effort follow-up write of a transition."""
    name:  str
    ok:    bool = True
    error: Optional[str] = None


class TransitionResult(BaseModel):
    success:      bool = True
    message:      str
    status:       DeliveryStatus
    side_effects: list[SideEffectResult] = []


class DriverAssignment(BaseModel):
    success:     bool
    message:     str
    driver_id:   Optional[str] = None
    driver_name: Optional[str] = None
