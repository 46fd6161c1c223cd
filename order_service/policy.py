"""
Status transition policy for orders.

Two independent checks guard every status write:

* the role gate (`can_update_status`) decides whether the caller's role may
  request the target status at all;
* the transition table (`can_transition`) decides whether the order's current
  status may move to the target status.

Both are pure functions of their arguments.
"""
from typing import Dict, FrozenSet, Optional

ORDER_STATUSES = (
    "pending",
    "processing",
    "pickup_scheduled",
    "picked_up",
    "in_transit",
    "out_for_delivery",
    "delivered",
    "failed",
    "cancelled",
    "returned",
)

ACTIVE_ASSIGNMENT_STATUSES = frozenset({"pending", "accepted", "in_progress"})

ASSIGNABLE_STATUSES = frozenset({"pending", "processing", "pickup_scheduled"})
CLIENT_CANCELLABLE_STATUSES = frozenset({"pending", "processing", "pickup_scheduled", "failed"})
TERMINAL_ORDER_STATUSES = frozenset({"delivered", "cancelled", "returned"})

# Statuses that move a live assignment into the in_progress leg.
EN_ROUTE_STATUSES = frozenset({"picked_up", "in_transit", "out_for_delivery"})
# Statuses that end a live assignment and free its driver.
RELEASING_STATUSES = frozenset({"delivered", "cancelled", "returned"})

WILDCARD = "*"

ROLE_ALLOWED_STATUSES: Dict[str, FrozenSet[str]] = {
    "admin": frozenset({WILDCARD}),
    "dispatcher": frozenset({WILDCARD}),
    "driver": frozenset({"picked_up", "in_transit", "out_for_delivery", "delivered", "failed"}),
    "client": frozenset({"cancelled"}),
}

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"processing", "pickup_scheduled", "failed", "cancelled"}),
    "processing": frozenset({"pending", "pickup_scheduled", "failed", "cancelled"}),
    "pickup_scheduled": frozenset({"picked_up", "failed", "cancelled"}),
    "picked_up": frozenset({"in_transit", "out_for_delivery", "failed", "returned"}),
    "in_transit": frozenset({"out_for_delivery", "failed", "returned"}),
    "out_for_delivery": frozenset({"delivered", "failed", "returned"}),
    "failed": frozenset({
        "pending", "processing", "pickup_scheduled", "out_for_delivery", "cancelled", "returned",
    }),
    "delivered": frozenset({"returned"}),
    "cancelled": frozenset(),
    "returned": frozenset(),
}


def can_update_status(role: Optional[str], current_status: Optional[str], new_status: str) -> bool:
    """Role gate: may `role` request `new_status` for an order currently in `current_status`?"""
    allowed = ROLE_ALLOWED_STATUSES.get(role or "")
    if not allowed:
        return False

    if WILDCARD in allowed:
        return True

    if new_status not in allowed:
        return False

    if role == "client":
        return current_status in CLIENT_CANCELLABLE_STATUSES

    return True


def can_transition(current_status: str, new_status: str) -> bool:
    return new_status in TRANSITIONS.get(current_status, frozenset())


def allowed_next_statuses(current_status: str) -> FrozenSet[str]:
    return TRANSITIONS.get(current_status, frozenset())
