from datetime import datetime
from typing import Optional

from pikup.models.order import Location, StoredModel


class DriverSession(StoredModel):
    driver_id: str
    online: bool = False
    session_id: Optional[str] = None
    started_at: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None
    last_location: Optional[Location] = None
    online_minutes: float = 0.0


class OnlineDriver(StoredModel):
    driver_id: str
    latitude: float
    longitude: float
    session_id: Optional[str] = None
    last_heartbeat: Optional[datetime] = None
    distance_miles: Optional[float] = None


class SessionStats(StoredModel):
    total_online_minutes: float = 0.0
    trips_completed: int = 0
    total_earnings: float = 0.0


class DriverStats(StoredModel):
    current_week_trips: int = 0
    weekly_earnings: float = 0.0
    total_trips: int = 0
    total_earnings: float = 0.0
    available_balance: float = 0.0
    rating: float = 4.9
    acceptance_rate: float = 98
    last_trip_completed_at: Optional[datetime] = None
