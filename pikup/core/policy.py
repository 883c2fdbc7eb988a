# pikup/core/policy.py
# Cancellation eligibility. Decides "may I try"; the payment service decides the money.
from dataclasses import dataclass
from typing import Any, Mapping, Union

from pikup.core.states import OrderStatus

S = OrderStatus

CANCELLATION_RULES = {
    S.PENDING.value:             (True, "Free cancellation - no driver assigned yet"),
    S.ACCEPTED.value:            (True, "Free cancellation - driver is on the way"),
    S.IN_PROGRESS.value:         (True, "Free cancellation - driver is on the way"),
    S.ARRIVED_AT_PICKUP.value:   (False, "Cannot cancel - driver has arrived at pickup location"),
    S.PICKED_UP.value:           (False, "Cannot cancel - items have been picked up"),
    S.EN_ROUTE_TO_DROPOFF.value: (False, "Cannot cancel - delivery is in progress"),
    S.DELIVERY_IN_PROGRESS.value: (False, "Cannot cancel - delivery is in progress"),
    S.ARRIVED_AT_DROPOFF.value:  (False, "Cannot cancel - driver has arrived at the dropoff location"),
    S.COMPLETED.value:           (False, "Cannot cancel - order has been completed"),
    S.CANCELLED.value:           (False, "Order is already cancelled"),
}
UNKNOWN_STATUS_REASON = "Unknown order status"


@dataclass(frozen=True)
class CancellationDecision:
    can_cancel: bool
    fee: float
    refund_amount: float
    driver_compensation: float
    reason: str


def _order_fields(order: Union[Mapping[str, Any], Any]) -> tuple:
    if isinstance(order, Mapping):
        status = order.get("status")
        total = (order.get("pricing") or {}).get("total") or 0
    else:
        status = getattr(order, "status", None)
        pricing = getattr(order, "pricing", None)
        total = (getattr(pricing, "total", None) if pricing is not None else None) or 0
    status = status.value if isinstance(status, OrderStatus) else status
    try:
        total = float(total)
    except (TypeError, ValueError):
        total = 0.0
    return status, total


def evaluate(order) -> CancellationDecision:
    """Accepts an ``Order`` model or a decoded order dict."""
    status, total = _order_fields(order)
    can_cancel, reason = CANCELLATION_RULES.get(status, (False, UNKNOWN_STATUS_REASON))
    return CancellationDecision(
        can_cancel=can_cancel,
        fee=0.0,
        refund_amount=total if can_cancel else 0.0,
        driver_compensation=0.0,
        reason=reason,
    )
