# pikup/services/earnings.py
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from pikup.core.config import Settings, get_settings
from pikup.core.states import OrderStatus
from pikup.db.documents import DRIVERS, ORDERS, USERS, RemoteDocumentClient
from pikup.models.driver import DriverStats
from pikup.models.order import Order

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _utcnow():
    return datetime.now(timezone.utc)


def calculate_driver_earnings(total: float, settings: Optional[Settings] = None) -> float:
    """Driver share of an order total, never below the per-order minimum."""
    settings = settings or get_settings()
    share = float(total or 0) * settings.driver_earnings_percentage
    return round(max(share, settings.minimum_driver_earnings), 2)


def week_start(now: datetime) -> datetime:
    """Monday 00:00 of the week containing ``now``."""
    monday = now - timedelta(days=now.weekday())
    return monday.replace(hour=0, minute=0, second=0, microsecond=0)


def _finished_at(order: Order) -> datetime:
    return order.completed_at or order.created_at or _EPOCH


class EarningsService:
    def __init__(
        self,
        client: RemoteDocumentClient,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.client = client
        self.settings = settings or client.settings or get_settings()
        self.clock = clock

    def earnings_for(self, order: Order) -> float:
        if order.driver_earnings:
            return order.driver_earnings
        return calculate_driver_earnings(order.total, self.settings)

    async def driver_trips(self, driver_id: str) -> List[Order]:
        """Completed orders for a driver, most recent first."""
        docs = await self.client.list_documents(ORDERS)
        trips = []
        for doc in docs:
            if doc.get("assignedDriverId") != driver_id or doc.get("status") != OrderStatus.COMPLETED.value:
                continue
            order = Order.from_document(doc)
            if order.driver_earnings is None and order.total:
                order.driver_earnings = calculate_driver_earnings(order.total, self.settings)
            trips.append(order)
        trips.sort(key=_finished_at, reverse=True)
        logger.bind(driver_id=driver_id).debug(f"Found {len(trips)} completed trips.")
        return trips

    async def get_driver_profile(self, driver_id: str) -> Optional[Dict[str, Any]]:
        """The ``drivers`` document, falling back to ``users/<id>.driverProfile``."""
        doc = await self.client.find_document(DRIVERS, driver_id)
        if doc is not None and doc.fields:
            return doc.fields
        user = await self.client.find_document(USERS, driver_id)
        if user is None:
            return None
        return user.get("driverProfile")

    async def driver_stats(self, driver_id: str) -> DriverStats:
        trips = await self.driver_trips(driver_id)
        monday = week_start(self.clock())
        this_week = [t for t in trips if _finished_at(t) >= monday]
        total_earnings = sum(self.earnings_for(t) for t in trips)
        profile = await self.client.find_document(DRIVERS, driver_id)
        profile = profile.fields if profile else {}
        return DriverStats(
            current_week_trips=len(this_week),
            weekly_earnings=round(sum(self.earnings_for(t) for t in this_week), 2),
            total_trips=len(trips),
            total_earnings=round(total_earnings, 2),
            available_balance=profile.get("availableBalance") or round(total_earnings, 2),
            rating=profile.get("rating") or 4.9,
            acceptance_rate=profile.get("acceptanceRate") or 98,
            last_trip_completed_at=trips[0].completed_at if trips else None,
        )

    async def update_driver_earnings(self, driver_id: str, order: Order) -> Dict[str, Any]:
        """Adds one completed trip to the driver's running totals."""
        trip_earnings = self.earnings_for(order)
        current = await self.client.find_document(DRIVERS, driver_id)
        current = current.fields if current else {}
        updates = {
            "totalTrips": (current.get("totalTrips") or 0) + 1,
            "totalEarnings": round((current.get("totalEarnings") or 0) + trip_earnings, 2),
            "availableBalance": round((current.get("availableBalance") or 0) + trip_earnings, 2),
            "lastTripCompletedAt": self.clock(),
            "lastTripEarnings": trip_earnings,
            "acceptanceRate": current.get("acceptanceRate") or 98,
            "rating": current.get("rating") or 4.9,
        }
        await self.client.update_fields(DRIVERS, driver_id, updates, must_exist=False)
        logger.bind(driver_id=driver_id, order_id=order.id).info(f"Driver earnings updated (+{trip_earnings}).")
        return {**current, **updates}

    async def update_user_rating(self, user_id: str, new_rating: float, profile_type: str = "driverProfile") -> Dict[str, Any]:
        """
        Folds one rating into the running average stored on
        ``users/<id>.<profile_type>``. Customer profiles also count the
        completed order.
        """
        user = await self.client.get_document(USERS, user_id)
        profile = dict(user.get(profile_type) or {})
        current_rating = profile.get("rating") or 5.0
        current_count = profile.get("ratingCount") or 0
        new_count = current_count + 1
        average = (current_rating * current_count + new_rating) / new_count
        profile["rating"] = round(average, 2)
        profile["ratingCount"] = new_count
        if profile_type == "customerProfile":
            profile["completedOrders"] = (profile.get("completedOrders") or 0) + 1
        await self.client.update_fields(USERS, user_id, {
            profile_type: profile,
            "updatedAt": self.clock(),
        })
        logger.bind(user_id=user_id).info(f"Updated {profile_type} rating: {current_rating} -> {profile['rating']} ({new_count} ratings)")
        return profile
