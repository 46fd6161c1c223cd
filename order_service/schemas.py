# schemas.py
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

OrderStatusValue = Literal[
    "pending", "processing", "pickup_scheduled", "picked_up", "in_transit",
    "out_for_delivery", "delivered", "failed", "cancelled", "returned",
]
PriorityValue = Literal["low", "medium", "high", "urgent"]
DriverStatusValue = Literal["available", "busy", "offline", "on_break", "suspended"]
VehicleTypeValue = Literal["motorcycle", "van", "truck", "bicycle"]

PHONE_PATTERN = r"^\+?[\d\s\-\(\)]+$"


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def future_or_none(value: Optional[datetime]) -> Optional[datetime]:
    value = to_naive_utc(value)
    if value is not None and value < datetime.utcnow():
        raise ValueError("must be in the future")
    return value


# ------------------------- ENVELOPE -------------------------
def ok(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    return {"success": True, "message": message, "data": data}


# ------------------------- ORDERS -------------------------
class Dimensions(BaseModel):
    length: float = Field(gt=0, le=200)
    width: float = Field(gt=0, le=200)
    height: float = Field(gt=0, le=200)


class OrderItemCreate(BaseModel):
    description: str = Field(min_length=2, max_length=200)
    quantity: int = Field(gt=0)
    weight_kg: float = Field(gt=0, le=100)
    dimensions_cm: Optional[Dimensions] = None
    value: Optional[float] = Field(default=None, gt=0, le=10000)
    special_instructions: Optional[str] = Field(default=None, max_length=500)


class OrderCreate(BaseModel):
    client_id: Optional[str] = Field(default=None, min_length=1)
    pickup_address: str = Field(min_length=5, max_length=500)
    delivery_address: str = Field(min_length=5, max_length=500)
    recipient_name: str = Field(min_length=2, max_length=100)
    recipient_phone: str = Field(pattern=PHONE_PATTERN)
    items: List[OrderItemCreate] = Field(min_length=1)
    priority: PriorityValue = "medium"
    scheduled_pickup_time: Optional[datetime] = None
    special_instructions: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("scheduled_pickup_time")
    @classmethod
    def check_pickup_time(cls, value):
        return future_or_none(value)


class OrderStatusUpdate(BaseModel):
    status: OrderStatusValue
    notes: Optional[str] = Field(default=None, max_length=500)


# ------------------------- ASSIGNMENTS -------------------------
class AssignDriver(BaseModel):
    driver_id: str = Field(min_length=1)
    estimated_pickup_time: Optional[datetime] = None
    estimated_delivery_time: Optional[datetime] = None
    assignment_notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("estimated_pickup_time", "estimated_delivery_time")
    @classmethod
    def check_estimates(cls, value):
        return future_or_none(value)


class BulkAssignmentEntry(AssignDriver):
    order_id: str = Field(min_length=1)
    assignment_notes: Optional[str] = Field(default=None, max_length=500)


class BulkAssignRequest(BaseModel):
    # Entries are validated one by one so a bad entry only fails itself.
    assignments: List[Any]


class EmergencyReassign(BaseModel):
    new_driver_id: Optional[str] = None
    reason: Optional[str] = Field(default=None, max_length=1000)
    urgent: bool = False


class AssignmentStatusUpdate(BaseModel):
    status: Literal["accepted", "in_progress"]


class ProofOfDelivery(BaseModel):
    photo_url: Optional[str] = Field(default=None, max_length=2000)
    signature: Optional[str] = None


# ------------------------- DRIVERS -------------------------
class DriverCreate(BaseModel):
    user_id: Optional[str] = None
    name: str = Field(min_length=2, max_length=100)
    phone: str = Field(pattern=PHONE_PATTERN)
    license_number: str = Field(min_length=3, max_length=50)
    vehicle_type: VehicleTypeValue = "van"
    vehicle_plate: str = Field(min_length=3, max_length=20)
    vehicle_capacity_kg: float = Field(default=100, gt=0, le=10000)


class DriverStatusUpdate(BaseModel):
    status: DriverStatusValue
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
