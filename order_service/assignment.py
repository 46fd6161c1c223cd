# order_service/assignment.py
"""
Assignment ledger: binding orders to drivers.

Every write path here runs inside one database transaction: the order row is
re-read (locked on PostgreSQL), the driver row is re-read through the
availability gate, and the assignment, order, driver and history writes are
committed together. Events are published only after commit.
"""
import uuid
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as SchemaError
from sqlalchemy import func, select

from order_service.database import UNIQUE_VIOLATIONS, database
from order_service.drivers import (
    fetch_driver, fetch_driver_for_user, is_assignable, lock_assignable_driver,
    mark_driver_busy, release_driver,
)
from order_service.errors import ConflictError, NotFoundError, ServiceError, ValidationError
from order_service.events import publish_event
from order_service.history import append_history, count_status_write
from order_service.metrics import ORDER_ASSIGNMENTS
from order_service.models import (
    drivers, order_assignments, order_items, order_proof_of_delivery, orders,
)
from order_service.policy import (
    ACTIVE_ASSIGNMENT_STATUSES, ASSIGNABLE_STATUSES, EN_ROUTE_STATUSES,
    TERMINAL_ORDER_STATUSES,
)
from order_service.schemas import BulkAssignmentEntry

logger = logging.getLogger("order-service.assignment")

# Driver-app moves on an assignment that is still live.
ASSIGNMENT_FLOW = {
    "pending": ("accepted", "in_progress"),
    "accepted": ("in_progress",),
}


# -------------------------
# Reads
# -------------------------
async def fetch_order(order_id: str, lock: bool = False):
    query = orders.select().where(orders.c.id == order_id)
    if lock:
        query = query.with_for_update()
    return await database.fetch_one(query)


async def fetch_active_assignment(order_id: str, lock: bool = False):
    query = order_assignments.select().where(
        (order_assignments.c.order_id == order_id)
        & order_assignments.c.status.in_(list(ACTIVE_ASSIGNMENT_STATUSES))
    )
    if lock:
        query = query.with_for_update()
    return await database.fetch_one(query)


async def _fetch_driver_assignment(assignment_id: str, driver_id: str, lock: bool = False):
    query = order_assignments.select().where(
        (order_assignments.c.id == assignment_id) & (order_assignments.c.driver_id == driver_id)
    )
    if lock:
        query = query.with_for_update()
    row = await database.fetch_one(query)
    if not row:
        raise NotFoundError("Assignment not found")
    return dict(row)


# -------------------------
# Assign
# -------------------------
async def _assign_within_transaction(
    order_id: str,
    driver_id: str,
    actor: Dict[str, Any],
    estimated_pickup_time: Optional[datetime] = None,
    estimated_delivery_time: Optional[datetime] = None,
    notes: Optional[str] = None,
    history_note: Optional[str] = None,
):
    order = await fetch_order(order_id, lock=True)
    if not order:
        raise NotFoundError("Order not found")

    if order["status"] not in ASSIGNABLE_STATUSES:
        raise ConflictError(f"Order cannot be assigned in status: {order['status']}")

    if await fetch_active_assignment(order_id, lock=True):
        raise ConflictError("Order is already assigned to a driver")

    driver = await lock_assignable_driver(driver_id)

    now = datetime.utcnow()
    assignment = {
        "id": str(uuid.uuid4()),
        "order_id": order_id,
        "driver_id": driver_id,
        "assigned_by": actor.get("id"),
        "status": "pending",
        "estimated_pickup_time": estimated_pickup_time,
        "estimated_delivery_time": estimated_delivery_time,
        "assignment_notes": notes,
        "admin_notes": None,
        "assigned_at": now,
        "accepted_at": None,
        "started_at": None,
        "completed_at": None,
        "updated_at": now,
    }
    await database.execute(order_assignments.insert().values(**assignment))

    order_values = {"status": "pickup_scheduled", "updated_at": now}
    if estimated_delivery_time:
        order_values["estimated_delivery_time"] = estimated_delivery_time
    await database.execute(orders.update().where(orders.c.id == order_id).values(**order_values))

    await mark_driver_busy(driver_id, now)
    await append_history(
        order_id, "pickup_scheduled", actor,
        history_note or f"Assigned to driver {driver_id}", now,
    )
    return dict(order), driver, assignment


def _assigned_event(order, driver, assignment, actor, bulk: bool = False) -> Dict[str, Any]:
    data = {
        "order_id": order["id"],
        "tracking_number": order["tracking_number"],
        "assignment_id": assignment["id"],
        "driver_id": driver["id"],
        "driver_user_id": driver["user_id"],
        "driver_name": driver["name"],
        "estimated_pickup_time": assignment["estimated_pickup_time"],
        "estimated_delivery_time": assignment["estimated_delivery_time"],
        "assigned_by": actor.get("id"),
    }
    if bulk:
        data["bulk_assignment"] = True
    return data


async def assign_order(
    order_id: str,
    driver_id: str,
    actor: Dict[str, Any],
    estimated_pickup_time: Optional[datetime] = None,
    estimated_delivery_time: Optional[datetime] = None,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    try:
        async with database.transaction():
            order, driver, assignment = await _assign_within_transaction(
                order_id, driver_id, actor,
                estimated_pickup_time=estimated_pickup_time,
                estimated_delivery_time=estimated_delivery_time,
                notes=notes,
            )
    except UNIQUE_VIOLATIONS:
        raise ConflictError("Order is already assigned to a driver")

    count_status_write("pickup_scheduled")
    ORDER_ASSIGNMENTS.labels(mode="single").inc()
    await publish_event(
        "ORDER_ASSIGNED_TO_DRIVER",
        _assigned_event(order, driver, assignment, actor),
        trace_id=actor.get("trace_id"),
    )
    logger.info(f"[TRACE {actor.get('trace_id')}] Order {order_id} assigned to driver {driver_id}")
    return assignment


def _first_error(exc: SchemaError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(part) for part in err.get("loc", ()))
    return f"{loc}: {err.get('msg')}" if loc else err.get("msg", "Invalid assignment")


async def bulk_assign(entries: Any, actor: Dict[str, Any]) -> Dict[str, Any]:
    """
    Assign many orders in one call.

    Each entry runs the full assign chain in its own savepoint inside one
    outer transaction, so a failing entry is rolled back and reported without
    touching the others. Events go out once the outer transaction commits.
    """
    if not isinstance(entries, list) or not entries:
        raise ValidationError("Assignments array is required and must not be empty")

    successful: List[Dict[str, Any]] = []
    failed: List[Dict[str, Any]] = []
    pending_events = []

    async with database.transaction():
        for raw in entries:
            order_id = raw.get("order_id") if isinstance(raw, dict) else None
            try:
                entry = BulkAssignmentEntry.model_validate(raw)
            except SchemaError as e:
                failed.append({"order_id": order_id, "error": _first_error(e)})
                continue

            try:
                async with database.transaction():
                    order, driver, assignment = await _assign_within_transaction(
                        entry.order_id, entry.driver_id, actor,
                        estimated_pickup_time=entry.estimated_pickup_time,
                        estimated_delivery_time=entry.estimated_delivery_time,
                        notes=entry.assignment_notes,
                        history_note=f"Bulk assigned to driver {entry.driver_id}",
                    )
            except ServiceError as e:
                failed.append({"order_id": entry.order_id, "error": e.message})
                continue
            except UNIQUE_VIOLATIONS:
                failed.append({"order_id": entry.order_id, "error": "Order is already assigned to a driver"})
                continue
            except Exception:
                logger.exception(f"[TRACE {actor.get('trace_id')}] Bulk assignment of {entry.order_id} failed")
                failed.append({"order_id": entry.order_id, "error": "Unexpected error while assigning order"})
                continue

            successful.append({
                "order_id": entry.order_id,
                "assignment_id": assignment["id"],
                "driver_id": entry.driver_id,
            })
            pending_events.append(_assigned_event(order, driver, assignment, actor, bulk=True))

    for data in pending_events:
        count_status_write("pickup_scheduled")
        ORDER_ASSIGNMENTS.labels(mode="bulk").inc()
        await publish_event("ORDER_ASSIGNED_TO_DRIVER", data, trace_id=actor.get("trace_id"))

    logger.info(
        f"[TRACE {actor.get('trace_id')}] Bulk assignment: "
        f"{len(successful)} successful, {len(failed)} failed"
    )
    return {
        "successful_assignments": len(successful),
        "failed_assignments": len(failed),
        "results": {"successful": successful, "failed": failed},
    }


# -------------------------
# Emergency reassignment
# -------------------------
async def emergency_reassign(
    order_id: str,
    new_driver_id: Optional[str],
    reason: Optional[str],
    actor: Dict[str, Any],
    urgent: bool = False,
) -> Dict[str, Any]:
    if not new_driver_id or not reason:
        raise ValidationError("New driver ID and reason are required")

    try:
        async with database.transaction():
            order = await fetch_order(order_id, lock=True)
            current = await fetch_active_assignment(order_id, lock=True)
            if not order or not current:
                raise NotFoundError("Order assignment not found")

            if order["status"] in TERMINAL_ORDER_STATUSES:
                raise ConflictError(f"Order in status {order['status']} cannot be reassigned")

            if current["driver_id"] == new_driver_id:
                raise ValidationError("New driver must be different from the current driver")

            new_driver = await fetch_driver(new_driver_id, lock=True)
            if not new_driver or not is_assignable(new_driver):
                raise ConflictError("New driver is not available")

            now = datetime.utcnow()
            await database.execute(
                order_assignments.update()
                .where(order_assignments.c.id == current["id"])
                .values(
                    status="cancelled",
                    admin_notes=(current["admin_notes"] or "") + f"\nEmergency reassignment: {reason}",
                    updated_at=now,
                )
            )
            await release_driver(current["driver_id"], now, force=True)

            new_assignment = {
                "id": str(uuid.uuid4()),
                "order_id": order_id,
                "driver_id": new_driver_id,
                "assigned_by": actor.get("id"),
                "status": "pending",
                "estimated_pickup_time": current["estimated_pickup_time"],
                "estimated_delivery_time": current["estimated_delivery_time"],
                "assignment_notes": f"Emergency reassignment: {reason}",
                "admin_notes": None,
                "assigned_at": now,
                "accepted_at": None,
                "started_at": None,
                "completed_at": None,
                "updated_at": now,
            }
            await database.execute(order_assignments.insert().values(**new_assignment))
            await mark_driver_busy(new_driver_id, now)

            order_values = {"updated_at": now}
            if urgent:
                order_values["priority"] = "urgent"
            await database.execute(orders.update().where(orders.c.id == order_id).values(**order_values))

            await append_history(
                order_id, order["status"], actor,
                f"Emergency reassignment to driver {new_driver_id}: {reason}", now,
            )
    except UNIQUE_VIOLATIONS:
        raise ConflictError("Order is already assigned to a driver")

    count_status_write(order["status"])
    ORDER_ASSIGNMENTS.labels(mode="emergency").inc()
    await publish_event("ORDER_EMERGENCY_REASSIGNED", {
        "order_id": order_id,
        "old_assignment_id": current["id"],
        "old_driver_id": current["driver_id"],
        "new_assignment_id": new_assignment["id"],
        "new_driver_id": new_driver_id,
        "new_driver_user_id": new_driver["user_id"],
        "reason": reason,
        "urgent": urgent,
        "reassigned_by": actor.get("id"),
    }, trace_id=actor.get("trace_id"))
    logger.warning(
        f"[TRACE {actor.get('trace_id')}] Emergency reassignment of order {order_id}: "
        f"{current['driver_id']} -> {new_driver_id} ({reason})"
    )
    return {
        "order_id": order_id,
        "old_driver_id": current["driver_id"],
        "new_driver_id": new_driver_id,
        "new_assignment": new_assignment,
        "priority": "urgent" if urgent else order["priority"],
    }


# -------------------------
# Side effects of order status writes
# -------------------------
async def apply_assignment_side_effects(order_id: str, new_status: str, now: datetime):
    """Keep the live assignment and its driver in step with an order status write."""
    active = await fetch_active_assignment(order_id, lock=True)
    if not active:
        return None

    query = order_assignments.update().where(order_assignments.c.id == active["id"])

    if new_status in EN_ROUTE_STATUSES:
        values = {"status": "in_progress", "updated_at": now}
        if not active["started_at"]:
            values["started_at"] = now
        await database.execute(query.values(**values))

    elif new_status == "delivered":
        await database.execute(query.values(status="completed", completed_at=now, updated_at=now))
        await release_driver(active["driver_id"], now, delivered=True)

    elif new_status in ("cancelled", "returned"):
        await database.execute(query.values(status="cancelled", updated_at=now))
        await release_driver(active["driver_id"], now)

    return dict(active)


# -------------------------
# Driver app
# -------------------------
async def update_assignment_status(assignment_id: str, actor: Dict[str, Any], status: str) -> Dict[str, Any]:
    driver = await fetch_driver_for_user(actor)

    async with database.transaction():
        assignment = await _fetch_driver_assignment(assignment_id, driver["id"], lock=True)
        if status not in ASSIGNMENT_FLOW.get(assignment["status"], ()):
            raise ConflictError(f"Assignment cannot move from {assignment['status']} to {status}")

        now = datetime.utcnow()
        values = {"status": status, "updated_at": now}
        if status == "accepted":
            values["accepted_at"] = now
        elif not assignment["started_at"]:
            values["started_at"] = now

        await database.execute(
            order_assignments.update().where(order_assignments.c.id == assignment_id).values(**values)
        )
        assignment.update(values)

    await publish_event("ASSIGNMENT_STATUS_UPDATED", {
        "assignment_id": assignment_id,
        "order_id": assignment["order_id"],
        "driver_id": driver["id"],
        "status": status,
    }, trace_id=actor.get("trace_id"))
    return assignment


async def complete_delivery(
    assignment_id: str,
    actor: Dict[str, Any],
    photo_url: Optional[str] = None,
    signature: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Record proof of delivery and close the assignment.

    Uploading again for a completed assignment only replaces the proof.
    """
    driver = await fetch_driver_for_user(actor)

    async with database.transaction():
        assignment = await _fetch_driver_assignment(assignment_id, driver["id"], lock=True)
        if assignment["status"] == "cancelled":
            raise ConflictError("Assignment has been cancelled")

        order = dict(await fetch_order(assignment["order_id"], lock=True))
        already_delivered = order["status"] == "delivered"
        # Proof closes the delivery from any live status; only a cancelled or
        # returned order refuses it.
        if not already_delivered and order["status"] in TERMINAL_ORDER_STATUSES:
            raise ConflictError(f"Order cannot be delivered from status: {order['status']}")

        now = datetime.utcnow()
        existing = await database.fetch_one(
            order_proof_of_delivery.select().where(order_proof_of_delivery.c.order_id == order["id"])
        )
        if existing:
            proof = dict(existing)
            proof.update(
                assignment_id=assignment_id,
                delivery_photo_url=photo_url,
                recipient_signature=signature,
                delivered_at=now,
            )
            await database.execute(
                order_proof_of_delivery.update()
                .where(order_proof_of_delivery.c.id == proof["id"])
                .values(
                    assignment_id=assignment_id,
                    delivery_photo_url=photo_url,
                    recipient_signature=signature,
                    delivered_at=now,
                )
            )
        else:
            proof = {
                "id": str(uuid.uuid4()),
                "order_id": order["id"],
                "assignment_id": assignment_id,
                "delivery_photo_url": photo_url,
                "recipient_signature": signature,
                "delivered_at": now,
            }
            await database.execute(order_proof_of_delivery.insert().values(**proof))

        if assignment["status"] != "completed":
            await database.execute(
                order_assignments.update()
                .where(order_assignments.c.id == assignment_id)
                .values(status="completed", completed_at=now, updated_at=now)
            )
            assignment.update(status="completed", completed_at=now, updated_at=now)
            await release_driver(driver["id"], now, delivered=True)

        if not already_delivered:
            await database.execute(
                orders.update()
                .where(orders.c.id == order["id"])
                .values(status="delivered", actual_delivery_time=now, updated_at=now)
            )
            await append_history(order["id"], "delivered", actor, "Delivered with proof of delivery", now)

    if not already_delivered:
        count_status_write("delivered")
    await publish_event("ORDER_DELIVERED", {
        "order_id": order["id"],
        "tracking_number": order["tracking_number"],
        "assignment_id": assignment_id,
        "driver_id": driver["id"],
        "photo_url": photo_url,
        "delivered_at": proof["delivered_at"],
        "proof_updated_only": already_delivered,
    }, trace_id=actor.get("trace_id"))
    logger.info(f"[TRACE {actor.get('trace_id')}] Proof of delivery stored for order {order['id']}")
    return {"assignment": assignment, "proof_of_delivery": proof}


def _delivery_query():
    return select(
        order_assignments,
        orders.c.tracking_number,
        orders.c.status.label("order_status"),
        orders.c.priority,
        orders.c.pickup_address,
        orders.c.delivery_address,
        orders.c.recipient_name,
        orders.c.recipient_phone,
        orders.c.special_instructions,
    ).select_from(order_assignments.join(orders, orders.c.id == order_assignments.c.order_id))


async def list_driver_deliveries(actor: Dict[str, Any], status: Optional[str] = None) -> List[Dict[str, Any]]:
    driver = await fetch_driver_for_user(actor)
    query = _delivery_query().where(order_assignments.c.driver_id == driver["id"])
    if status:
        query = query.where(order_assignments.c.status == status)
    else:
        query = query.where(order_assignments.c.status.in_(list(ACTIVE_ASSIGNMENT_STATUSES)))

    rows = await database.fetch_all(query.order_by(order_assignments.c.assigned_at.desc()))
    return [dict(row) for row in rows]


async def get_delivery(assignment_id: str, actor: Dict[str, Any]) -> Dict[str, Any]:
    driver = await fetch_driver_for_user(actor)
    row = await database.fetch_one(
        _delivery_query().where(
            (order_assignments.c.id == assignment_id) & (order_assignments.c.driver_id == driver["id"])
        )
    )
    if not row:
        raise NotFoundError("Assignment not found")

    delivery = dict(row)
    items = await database.fetch_all(order_items.select().where(order_items.c.order_id == delivery["order_id"]))
    proof = await database.fetch_one(
        order_proof_of_delivery.select().where(order_proof_of_delivery.c.order_id == delivery["order_id"])
    )
    delivery["items"] = [dict(item) for item in items]
    delivery["proof_of_delivery"] = dict(proof) if proof else None
    return delivery


# -------------------------
# Admin views
# -------------------------
async def list_assignments(
    status: Optional[str] = None,
    driver_id: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
) -> Dict[str, Any]:
    count_query = select(func.count()).select_from(order_assignments)
    query = (
        select(
            order_assignments,
            orders.c.tracking_number,
            orders.c.status.label("order_status"),
            orders.c.priority,
            drivers.c.name.label("driver_name"),
            drivers.c.status.label("driver_status"),
        )
        .select_from(
            order_assignments
            .join(orders, orders.c.id == order_assignments.c.order_id)
            .join(drivers, drivers.c.id == order_assignments.c.driver_id)
        )
    )
    if status:
        count_query = count_query.where(order_assignments.c.status == status)
        query = query.where(order_assignments.c.status == status)
    if driver_id:
        count_query = count_query.where(order_assignments.c.driver_id == driver_id)
        query = query.where(order_assignments.c.driver_id == driver_id)

    total = await database.fetch_val(count_query)
    rows = await database.fetch_all(
        query.order_by(order_assignments.c.assigned_at.desc()).limit(limit).offset((page - 1) * limit)
    )
    return {
        "assignments": [dict(row) for row in rows],
        "pagination": {"page": page, "limit": limit, "total": total or 0},
    }
