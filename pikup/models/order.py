from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from pikup.core.states import OrderStatus


class StoredModel(BaseModel):
    """Field names are snake_case in Python and camelCase in the store."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_store(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Location(StoredModel):
    latitude: float
    longitude: float
    timestamp: Optional[datetime] = None


class Stop(StoredModel):
    address: Optional[str] = None
    coordinates: Optional[Location] = None


class Pricing(StoredModel):
    total: Optional[float] = 0.0


class PhotoEvidence(StoredModel):
    url: Optional[str] = None
    id: Optional[str] = None
    storage_path: Optional[str] = None
    type: Optional[str] = None
    timestamp: Optional[datetime] = None
    uploaded_by: Optional[str] = None


class OrderCreate(StoredModel):
    pickup: Stop
    dropoff: Stop
    pricing: Pricing = Field(default_factory=Pricing)
    item: Optional[Dict[str, Any]] = None
    vehicle: Optional[Dict[str, Any]] = None
    customer_photos: List[Dict[str, Any]] = Field(default_factory=list)
    insurance: Optional[Dict[str, Any]] = None
    item_value: Optional[float] = None
    payment: Optional[Dict[str, Any]] = None


class Order(StoredModel):
    id: str
    status: str = OrderStatus.PENDING.value
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    driver_id: Optional[str] = None
    assigned_driver_id: Optional[str] = None
    assigned_driver_name: Optional[str] = None
    pickup: Optional[Stop] = None
    dropoff: Optional[Stop] = None
    pricing: Optional[Pricing] = Field(default_factory=Pricing)
    payment: Optional[Dict[str, Any]] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    viewing_driver_id: Optional[str] = None
    viewed_at: Optional[datetime] = None
    reset_count: int = 0
    extended_times: int = 0

    driver_location: Optional[Location] = None
    pickup_photos: List[PhotoEvidence] = Field(default_factory=list)
    dropoff_photos: List[PhotoEvidence] = Field(default_factory=list)

    driver_earnings: Optional[float] = None
    cancellation_fee: Optional[float] = None
    refund_amount: Optional[float] = None
    driver_compensation: Optional[float] = None
    refund_id: Optional[str] = None
    cancellation_pending: bool = False

    @property
    def total(self) -> float:
        return (self.pricing.total if self.pricing else None) or 0.0

    @property
    def driver(self) -> Optional[str]:
        return self.assigned_driver_id or self.driver_id

    def photos_for(self, stage: str) -> List[PhotoEvidence]:
        return self.pickup_photos if stage == "pickup" else self.dropoff_photos

    def is_expired(self, now: datetime) -> bool:
        # expiry only means something while nobody has taken the offer
        return self.status == OrderStatus.PENDING.value and self.expires_at is not None and self.expires_at < now

    @classmethod
    def from_document(cls, doc) -> "Order":
        return cls.model_validate({**doc.fields, "id": doc.id})


class CancellationOutcome(StoredModel):
    success: bool = False
    cancellation_fee: float = 0.0
    refund_amount: float = 0.0
    driver_compensation: float = 0.0
    refund_id: Optional[str] = None
    driver_compensation_id: Optional[str] = None
    error: Optional[str] = None

    @field_validator("cancellation_fee", "refund_amount", "driver_compensation", mode="before")
    @classmethod
    def _none_is_zero(cls, v):
        return 0.0 if v is None else v


class PayoutResult(StoredModel):
    success: bool = False
    error: Optional[str] = None


class CompletionResult(BaseModel):
    order: Order
    driver_earnings: float
    payout: Optional[PayoutResult] = None
    side_effect_errors: List[str] = Field(default_factory=list)
