# pikup/core/states.py
# Single source of truth for order statuses and who may move an order between them.
from enum import Enum
from typing import Dict, Optional, Tuple


class OrderStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "inProgress"
    ARRIVED_AT_PICKUP = "arrivedAtPickup"
    PICKED_UP = "pickedUp"
    EN_ROUTE_TO_DROPOFF = "enRouteToDropoff"
    DELIVERY_IN_PROGRESS = "deliveryInProgress"  # older clients wrote this instead of enRouteToDropoff
    ARRIVED_AT_DROPOFF = "arrivedAtDropoff"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ORDER_STATES = [s.value for s in OrderStatus]
TERMINAL_STATES = {OrderStatus.COMPLETED.value, OrderStatus.CANCELLED.value}

# statuses where the customer can still back out
CANCELLABLE_STATES = {
    OrderStatus.PENDING.value,
    OrderStatus.ACCEPTED.value,
    OrderStatus.IN_PROGRESS.value,
}

S = OrderStatus
TRANSITIONS: Dict[Tuple[str, str], dict] = {
    (S.PENDING, S.ACCEPTED):                       {"roles": ["driver"]},
    (S.ACCEPTED, S.IN_PROGRESS):                   {"roles": ["driver"]},
    (S.ACCEPTED, S.ARRIVED_AT_PICKUP):             {"roles": ["driver"]},
    (S.IN_PROGRESS, S.ARRIVED_AT_PICKUP):          {"roles": ["driver"]},
    (S.ARRIVED_AT_PICKUP, S.PICKED_UP):            {"roles": ["driver"], "photos": "pickup"},
    (S.PICKED_UP, S.EN_ROUTE_TO_DROPOFF):          {"roles": ["driver"]},
    (S.PICKED_UP, S.DELIVERY_IN_PROGRESS):         {"roles": ["driver"]},
    (S.EN_ROUTE_TO_DROPOFF, S.ARRIVED_AT_DROPOFF): {"roles": ["driver"]},
    (S.DELIVERY_IN_PROGRESS, S.ARRIVED_AT_DROPOFF): {"roles": ["driver"]},
    (S.ARRIVED_AT_DROPOFF, S.COMPLETED):           {"roles": ["driver"], "photos": "dropoff"},

    (S.PENDING, S.CANCELLED):                      {"roles": ["customer"]},
    (S.ACCEPTED, S.CANCELLED):                     {"roles": ["customer"]},
    (S.IN_PROGRESS, S.CANCELLED):                  {"roles": ["customer"]},
}
TRANSITIONS = {(src.value, dst.value): rule for (src, dst), rule in TRANSITIONS.items()}


def _value(status) -> str:
    return status.value if isinstance(status, OrderStatus) else str(status)


def can_transition(src, dst, role: Optional[str] = None) -> bool:
    rule = TRANSITIONS.get((_value(src), _value(dst)))
    if not rule:
        return False
    return role is None or role in rule["roles"]


def required_photos(src, dst) -> Optional[str]:
    """Photo stage ("pickup"/"dropoff") that must be evidenced before this move, if any."""
    rule = TRANSITIONS.get((_value(src), _value(dst))) or {}
    return rule.get("photos")


def next_states(src, role: Optional[str] = None) -> list[str]:
    src = _value(src)
    return [dst for (s, dst), rule in TRANSITIONS.items() if s == src and (role is None or role in rule["roles"])]


def is_terminal(status) -> bool:
    return _value(status) in TERMINAL_STATES


def stage_timestamp_field(status) -> str:
    """Each stage stamps ``<status>At`` on the order (``arrivedAtPickupAt``, ``pickedUpAt`` ...)."""
    return f"{_value(status)}At"


# statuses up to and including the pickup confirmation collect pickup photos
_PICKUP_PHOTO_STATES = {
    OrderStatus.ACCEPTED.value,
    OrderStatus.IN_PROGRESS.value,
    OrderStatus.ARRIVED_AT_PICKUP.value,
    OrderStatus.PICKED_UP.value,
}


def photo_stage_for(dst) -> str:
    """Photo stage that evidence sent along with a move into ``dst`` belongs to."""
    return "pickup" if _value(dst) in _PICKUP_PHOTO_STATES else "dropoff"
