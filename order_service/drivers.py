# order_service/drivers.py
import uuid
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func, select

from order_service.database import database
from order_service.errors import AuthorizationError, ConflictError, NotFoundError
from order_service.events import publish_event
from order_service.metrics import AVAILABLE_DRIVERS
from order_service.models import drivers, order_assignments, orders
from order_service.policy import ACTIVE_ASSIGNMENT_STATUSES

logger = logging.getLogger("order-service.drivers")


# -------------------------
# Availability gate
# -------------------------
def is_assignable(driver) -> bool:
    """A driver may take a new order only while active and available."""
    return bool(driver["is_active"]) and driver["status"] == "available"


async def fetch_driver(driver_id: str, lock: bool = False):
    query = drivers.select().where(drivers.c.id == driver_id)
    if lock:
        query = query.with_for_update()
    return await database.fetch_one(query)


async def lock_assignable_driver(driver_id: str) -> Dict[str, Any]:
    """
    Re-read the driver row inside the caller's transaction (row-locked on
    PostgreSQL) and make sure it can take an order right now.
    """
    driver = await fetch_driver(driver_id, lock=True)
    if not driver or not driver["is_active"]:
        raise NotFoundError("Driver not found or inactive")

    if not is_assignable(driver):
        raise ConflictError(f"Driver is not available (current status: {driver['status']})")
    return dict(driver)


async def mark_driver_busy(driver_id: str, now: datetime):
    """
    Flip an available driver to busy. If another transaction took the driver
    since the gate read, nothing matches and the caller's transaction is
    rolled back with a conflict.
    """
    updated = await database.fetch_val(
        drivers.update()
        .where((drivers.c.id == driver_id) & (drivers.c.status == "available") & drivers.c.is_active.is_(True))
        .values(status="busy", updated_at=now)
        .returning(drivers.c.id)
    )
    if updated is None:
        raise ConflictError("Driver is not available (taken by another assignment)")


async def release_driver(driver_id: str, now: datetime, delivered: bool = False, force: bool = False):
    """
    Hand the driver back to the pool. Without `force` only a busy driver is
    flipped, so an offline or suspended driver keeps that status.
    """
    query = drivers.update().where(drivers.c.id == driver_id)
    if not force:
        query = query.where(drivers.c.status == "busy")
    await database.execute(query.values(status="available", updated_at=now))

    if delivered:
        await database.execute(
            drivers.update()
            .where(drivers.c.id == driver_id)
            .values(
                total_deliveries=drivers.c.total_deliveries + 1,
                successful_deliveries=drivers.c.successful_deliveries + 1,
            )
        )


async def has_active_assignment(driver_id: str) -> bool:
    row = await database.fetch_one(
        select(order_assignments.c.id).where(
            (order_assignments.c.driver_id == driver_id)
            & order_assignments.c.status.in_(list(ACTIVE_ASSIGNMENT_STATUSES))
        )
    )
    return row is not None


async def fetch_driver_for_user(user: Dict[str, Any]) -> Dict[str, Any]:
    """Driver profile behind an authenticated driver token."""
    row = await database.fetch_one(drivers.select().where(drivers.c.user_id == user["id"]))
    if not row:
        raise NotFoundError("Driver profile not found for logged in user")
    return dict(row)


# -------------------------
# Registry
# -------------------------
async def create_driver(payload, user: Dict[str, Any]) -> Dict[str, Any]:
    conflict_query = drivers.select().where(drivers.c.license_number == payload.license_number)
    if payload.user_id:
        conflict_query = drivers.select().where(
            (drivers.c.license_number == payload.license_number) | (drivers.c.user_id == payload.user_id)
        )
    if await database.fetch_one(conflict_query):
        raise ConflictError("Driver already exists with this user ID or license")

    now = datetime.utcnow()
    driver = {
        "id": str(uuid.uuid4()),
        **payload.model_dump(),
        "status": "available",
        "rating": 5.0,
        "total_deliveries": 0,
        "successful_deliveries": 0,
        "is_active": True,
        "current_latitude": None,
        "current_longitude": None,
        "last_location_update": None,
        "created_at": now,
        "updated_at": now,
    }
    await database.execute(drivers.insert().values(**driver))

    await publish_event("DRIVER_CREATED", {
        "driver_id": driver["id"],
        "user_id": driver["user_id"],
        "created_by": user.get("id"),
    }, trace_id=user.get("trace_id"))
    logger.info(f"[TRACE {user.get('trace_id')}] Driver {driver['id']} created by {user.get('id')}")
    return driver


async def list_drivers(
    status: Optional[str] = None,
    vehicle_type: Optional[str] = None,
    available_only: bool = False,
    page: int = 1,
    limit: int = 50,
) -> Dict[str, Any]:
    conditions = [drivers.c.is_active.is_(True)]
    if status:
        conditions.append(drivers.c.status == status)
    if vehicle_type:
        conditions.append(drivers.c.vehicle_type == vehicle_type)
    if available_only:
        conditions.append(drivers.c.status == "available")

    total = await database.fetch_val(select(func.count()).select_from(drivers).where(*conditions))
    rows = await database.fetch_all(
        drivers.select()
        .where(*conditions)
        .order_by(drivers.c.created_at.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    )
    return {
        "drivers": [dict(row) for row in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total or 0,
            "total_pages": -(-(total or 0) // limit),
        },
    }


async def list_available_drivers(vehicle_type: Optional[str] = None, min_capacity: Optional[float] = None):
    """Assignable drivers, least loaded and best rated first."""
    active_orders = (
        select(func.count(order_assignments.c.id))
        .where(
            (order_assignments.c.driver_id == drivers.c.id)
            & order_assignments.c.status.in_(["pending", "accepted"])
            & order_assignments.c.completed_at.is_(None)
        )
        .scalar_subquery()
        .label("active_orders")
    )
    query = (
        select(drivers, active_orders)
        .where(drivers.c.is_active.is_(True) & (drivers.c.status == "available"))
    )
    if vehicle_type:
        query = query.where(drivers.c.vehicle_type == vehicle_type)
    if min_capacity is not None:
        query = query.where(drivers.c.vehicle_capacity_kg >= min_capacity)

    query = query.order_by(
        active_orders.asc(), drivers.c.rating.desc(), drivers.c.total_deliveries.desc()
    ).limit(20)

    rows = await database.fetch_all(query)
    AVAILABLE_DRIVERS.set(len(rows))
    return [dict(row) for row in rows]


async def get_driver(driver_id: str) -> Dict[str, Any]:
    driver = await fetch_driver(driver_id)
    if not driver:
        raise NotFoundError("Driver not found")

    recent = await database.fetch_all(
        select(
            order_assignments,
            orders.c.tracking_number,
            orders.c.status.label("order_status"),
        )
        .select_from(order_assignments.outerjoin(orders, orders.c.id == order_assignments.c.order_id))
        .where(order_assignments.c.driver_id == driver_id)
        .order_by(order_assignments.c.assigned_at.desc())
        .limit(10)
    )
    return {"driver": dict(driver), "recent_assignments": [dict(row) for row in recent]}


async def update_driver_status(driver_id: str, payload, user: Dict[str, Any]) -> Dict[str, Any]:
    driver = await fetch_driver(driver_id)
    if not driver:
        raise NotFoundError("Driver not found")

    if user["role"] == "driver" and driver["user_id"] != user["id"]:
        raise AuthorizationError("Drivers can only update their own status")

    if payload.status == "available" and driver["status"] != "available":
        if await has_active_assignment(driver_id):
            raise ConflictError("Driver has an active assignment and cannot be marked available")

    now = datetime.utcnow()
    values = {"status": payload.status, "updated_at": now}
    if payload.latitude is not None and payload.longitude is not None:
        values.update(
            current_latitude=payload.latitude,
            current_longitude=payload.longitude,
            last_location_update=now,
        )

    await database.execute(drivers.update().where(drivers.c.id == driver_id).values(**values))
    updated = dict(await fetch_driver(driver_id))

    await publish_event("DRIVER_STATUS_UPDATED", {
        "driver_id": driver_id,
        "old_status": driver["status"],
        "new_status": payload.status,
        "location": (
            {"latitude": payload.latitude, "longitude": payload.longitude}
            if "current_latitude" in values else None
        ),
        "updated_by": user.get("id"),
    }, trace_id=user.get("trace_id"))
    logger.info(f"[TRACE {user.get('trace_id')}] Driver {driver_id}: {driver['status']} -> {payload.status}")
    return updated


# -------------------------
# Driver app
# -------------------------
async def get_driver_profile(user: Dict[str, Any]) -> Dict[str, Any]:
    driver = await fetch_driver_for_user(user)
    active = await database.fetch_val(
        select(func.count()).select_from(order_assignments).where(
            (order_assignments.c.driver_id == driver["id"])
            & order_assignments.c.status.in_(list(ACTIVE_ASSIGNMENT_STATUSES))
        )
    )
    driver["active_assignments"] = active or 0
    return driver


async def update_own_status(payload, user: Dict[str, Any]) -> Dict[str, Any]:
    """Status change from the driver app; the driver comes from the token."""
    driver = await fetch_driver_for_user(user)
    return await update_driver_status(driver["id"], payload, user)
