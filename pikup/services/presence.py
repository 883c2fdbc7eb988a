# pikup/services/presence.py
# Driver online/offline sessions, heartbeats and nearby-driver lookups.
import inspect
from datetime import date, datetime, timezone
from typing import Any, Callable, List, Optional

from loguru import logger

from pikup.core.config import Settings, get_settings
from pikup.core.exceptions import AuthenticationError, PikupError
from pikup.core.geo import distance_miles, has_moved_significantly
from pikup.core.session import Session
from pikup.db.documents import USERS, RemoteDocumentClient
from pikup.models.driver import DriverSession, OnlineDriver, SessionStats
from pikup.models.order import Location
from pikup.services.payments import PaymentServiceClient
from pikup.services.polling import Callback, PollingSubscription, subscribe


def _utcnow():
    return datetime.now(timezone.utc)


def _as_location(value: Any, when: Optional[datetime] = None) -> Location:
    if isinstance(value, Location):
        return value
    if isinstance(value, dict):
        lat = value.get("latitude", value.get("lat"))
        lng = value.get("longitude", value.get("lng"))
    else:
        lat, lng = value.latitude, value.longitude
    return Location(latitude=float(lat), longitude=float(lng), timestamp=when)


def _online_driver(raw: dict, center: Location) -> Optional[OnlineDriver]:
    lat = raw.get("latitude", raw.get("lat"))
    lng = raw.get("longitude", raw.get("lng"))
    if lat is None or lng is None:
        return None
    driver = OnlineDriver.model_validate({
        **raw,
        "driverId": raw.get("driverId") or raw.get("id"),
        "latitude": lat,
        "longitude": lng,
    })
    driver.distance_miles = round(distance_miles(center, driver), 2)
    return driver


class DriverPresenceService:
    def __init__(
        self,
        client: RemoteDocumentClient,
        payments: PaymentServiceClient,
        session: Session,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.client = client
        self.payments = payments
        self.session = session
        self.settings = settings or client.settings or get_settings()
        self.clock = clock
        self.current = DriverSession(driver_id=session.uid)
        self._heartbeat: Optional[PollingSubscription] = None
        self._route_origin: Optional[Location] = None

    @property
    def driver_id(self) -> str:
        return self.session.uid

    def _log(self):
        return logger.bind(driver_id=self.driver_id, session_id=self.current.session_id)

    async def _write_status(self, online: bool, session_id: Optional[str], now: datetime) -> None:
        await self.client.update_fields(USERS, self.driver_id, {
            "driverStatus.isOnline": online,
            "driverStatus.sessionId": session_id,
            "driverStatus.lastSeenAt": now,
        }, must_exist=False)

    async def go_online(self, location: Any) -> DriverSession:
        """Opens a presence session at ``location``."""
        now = self.clock()
        loc = _as_location(location, now)
        session_id = await self.payments.driver_online(self.driver_id, loc.latitude, loc.longitude)
        self.current = DriverSession(
            driver_id=self.driver_id,
            online=True,
            session_id=session_id,
            started_at=now,
            last_heartbeat=now,
            last_location=loc,
        )
        await self._write_status(True, session_id, now)
        self._log().info("Driver online.")
        return self.current

    async def go_offline(self) -> float:
        """Closes the session. Returns its length in minutes."""
        self.stop_heartbeat()
        minutes = await self.payments.driver_offline(self.driver_id)
        await self._write_status(False, None, self.clock())
        self._log().info(f"Driver offline after {minutes} minutes.")
        self.current = DriverSession(driver_id=self.driver_id, online=False, online_minutes=minutes)
        return minutes

    async def heartbeat(self, location: Any = None) -> bool:
        now = self.clock()
        loc = _as_location(location, now) if location is not None else self.current.last_location
        if loc is None:
            raise ValueError("heartbeat needs a location before the first fix")
        await self.payments.driver_heartbeat(self.driver_id, loc.latitude, loc.longitude)
        self.current.last_heartbeat = now
        self.current.last_location = loc
        return True

    def start_heartbeat(
        self,
        location_source: Optional[Callable[[], Any]] = None,
        interval: Optional[float] = None,
        on_error: Optional[Callback] = None,
    ) -> PollingSubscription:
        """
        Sends a heartbeat every ``interval`` seconds. ``location_source``
        (sync or async) supplies the current position; without it the last
        known location is repeated.
        """
        self.stop_heartbeat()

        async def beat():
            location = None
            if location_source is not None:
                location = location_source()
                if inspect.isawaitable(location):
                    location = await location
            return await self.heartbeat(location)

        self._heartbeat = subscribe(
            beat,
            interval=interval or self.settings.heartbeat_interval,
            on_error=on_error,
            settings=self.settings,
            name=f"heartbeat:{self.driver_id}",
        )
        return self._heartbeat

    def stop_heartbeat(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.stop()
            self._heartbeat = None

    async def find_online_drivers(self, location: Any, radius_miles: Optional[float] = None) -> List[OnlineDriver]:
        """Online drivers within ``radius_miles`` of ``location``, nearest first."""
        radius = self.settings.default_radius_miles if radius_miles is None else radius_miles
        center = _as_location(location)
        raw = await self.payments.online_drivers(center.latitude, center.longitude, radius)
        drivers = []
        for item in raw:
            driver = _online_driver(item, center)
            # the service filters too; results outside the radius are dropped here as well
            if driver is not None and driver.distance_miles <= radius:
                drivers.append(driver)
        drivers.sort(key=lambda d: d.distance_miles)
        return drivers

    async def get_session_stats(self, driver_id: Optional[str] = None, day: Optional[date] = None) -> SessionStats:
        """Online minutes, trips and earnings for one day. Zeros when the service is unavailable."""
        driver_id = driver_id or self.driver_id
        day = day or self.clock().date()
        try:
            data = await self.payments.session_stats(driver_id, day)
        except AuthenticationError:
            raise
        except PikupError as e:
            logger.bind(driver_id=driver_id).warning(f"Session stats unavailable: {e}")
            return SessionStats()
        return SessionStats(
            total_online_minutes=data.get("totalOnlineMinutes") or 0,
            trips_completed=data.get("tripsCompleted") or 0,
            total_earnings=data.get("totalEarnings") or 0,
        )

    def should_refresh_route(self, location: Any) -> bool:
        """
        True when the driver moved far enough since the last route
        computation; the new position then becomes the reference.
        """
        current = _as_location(location)
        if has_moved_significantly(self._route_origin, current, self.settings.movement_threshold_miles):
            self._route_origin = current
            return True
        return False
