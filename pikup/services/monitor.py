# pikup/services/monitor.py
# Live views for the UI: one order's status, and the board of open offers.
from typing import Optional

from loguru import logger

from pikup.core.states import OrderStatus, is_terminal
from pikup.models.order import Order
from pikup.services.orders import OrderLifecycleManager
from pikup.services.polling import Callback, PollingSubscription, notify, subscribe


class OrderStatusMonitor:
    """
    Watches a single order. ``on_status_change(order, previous_status)``
    fires whenever the status differs from the last one seen (including the
    first read). On ``cancelled`` ``on_cancelled(order)`` fires and the watch
    ends; on ``completed`` the watch ends quietly.
    """

    def __init__(
        self,
        orders: OrderLifecycleManager,
        order_id: str,
        on_status_change: Optional[Callback] = None,
        on_cancelled: Optional[Callback] = None,
        on_error: Optional[Callback] = None,
        interval: Optional[float] = None,
    ):
        self.orders = orders
        self.order_id = order_id
        self.on_status_change = on_status_change
        self.on_cancelled = on_cancelled
        self.on_error = on_error
        self.interval = interval or orders.settings.order_status_poll_interval
        self.last_status: Optional[str] = None
        self.order: Optional[Order] = None
        self._subscription: Optional[PollingSubscription] = None

    @property
    def active(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def start(self) -> "OrderStatusMonitor":
        if self.active:
            return self

        async def fetch():
            return await self.orders.get_order(self.order_id)

        self._subscription = subscribe(
            fetch,
            self._handle,
            interval=self.interval,
            on_error=self.on_error,
            settings=self.orders.settings,
            name=f"order-status:{self.order_id}",
        )
        return self

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.stop()

    async def wait_closed(self) -> None:
        if self._subscription is not None:
            await self._subscription.wait_closed()

    async def _handle(self, order: Order) -> None:
        self.order = order
        previous = self.last_status
        if order.status != previous:
            self.last_status = order.status
            logger.bind(order_id=self.order_id).debug(f"Status changed: {previous} -> {order.status}")
            await notify(self.on_status_change, order, previous)
        if order.status == OrderStatus.CANCELLED.value:
            self.stop()
            await notify(self.on_cancelled, order)
        elif is_terminal(order.status):
            self.stop()


def watch_available_orders(
    orders: OrderLifecycleManager,
    on_orders: Callback,
    on_error: Optional[Callback] = None,
    interval: Optional[float] = None,
) -> PollingSubscription:
    """Refreshes the driver's list of open offers on the list refresh interval."""
    return subscribe(
        orders.list_available_orders,
        on_orders,
        interval=interval or orders.settings.list_refresh_interval,
        on_error=on_error,
        settings=orders.settings,
        name="available-orders",
    )
