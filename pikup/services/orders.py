# pikup/services/orders.py
"""
Order lifecycle: creation, timed offers and their recycling, acceptance,
driver stage updates, completion and cancellation.

Every status change goes through the transition table in
``pikup.core.states``. Acceptance is a conditional write on the order's
update time, so two drivers racing for the same offer cannot both win.
"""
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from loguru import logger
from pydantic import BaseModel

from pikup.core import policy
from pikup.core.config import Settings, get_settings
from pikup.core.exceptions import (
    AuthenticationError,
    CancellationNotAllowedError,
    InvalidTransitionError,
    MissingPhotoEvidenceError,
    NotFoundError,
    PikupError,
    PolicyViolation,
    PreconditionFailedError,
)
from pikup.core.session import Session
from pikup.core.states import (
    OrderStatus,
    can_transition,
    photo_stage_for,
    required_photos,
    stage_timestamp_field,
)
from pikup.db.documents import DRIVERS, ORDERS, USERS, RemoteDocumentClient, StoredDocument
from pikup.models.order import CancellationOutcome, CompletionResult, Order, OrderCreate, PayoutResult
from pikup.services.earnings import EarningsService, calculate_driver_earnings
from pikup.services.exceptions import (
    CancellationInProgressError,
    NotOrderParticipantError,
    OrderAlreadyClaimedError,
    OrderNotFoundError,
)
from pikup.services.messaging import MessagingService
from pikup.services.payments import PaymentServiceClient
from pikup.services.polling import Callback, PollingSubscription, subscribe

S = OrderStatus
ACCEPT_ATTEMPTS = 3
STATUS_WRITE_ATTEMPTS = 3
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _utcnow():
    return datetime.now(timezone.utc)


def new_order_id(now: datetime) -> str:
    return f"pickup_{int(now.timestamp() * 1000)}_{secrets.token_hex(5)[:9]}"


def _location_dict(location: Any) -> Optional[Dict[str, float]]:
    if location is None:
        return None
    if isinstance(location, Mapping):
        return {"latitude": float(location["latitude"]), "longitude": float(location["longitude"])}
    return {"latitude": float(location.latitude), "longitude": float(location.longitude)}


def _photo_dict(photo: Any) -> Dict[str, Any]:
    if isinstance(photo, BaseModel):
        return photo.model_dump(by_alias=True, exclude_none=True)
    return dict(photo)


def normalize_photo_stage(stage: str) -> str:
    return "dropoff" if stage == "delivery" else stage


class OrderLifecycleManager:
    def __init__(
        self,
        client: RemoteDocumentClient,
        session: Session,
        payments: Optional[PaymentServiceClient] = None,
        messaging: Optional[MessagingService] = None,
        earnings: Optional[EarningsService] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.client = client
        self.session = session
        self.settings = settings or client.settings or get_settings()
        self.clock = clock
        # a payment client created here is closed by aclose()
        self._owns_payments = payments is None
        self.payments = payments or PaymentServiceClient(session, settings=self.settings)
        self.messaging = messaging or MessagingService(client, settings=self.settings, clock=clock)
        self.earnings = earnings or EarningsService(client, settings=self.settings, clock=clock)

    async def aclose(self) -> None:
        if self._owns_payments:
            await self.payments.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    def _log(self, order_id: str):
        return logger.bind(order_id=order_id, uid=self.session.uid)

    @property
    def expiry(self) -> timedelta:
        return timedelta(minutes=self.settings.order_expiry_minutes)

    # ---------- reads ----------
    async def _get_doc(self, order_id: str) -> StoredDocument:
        try:
            return await self.client.get_document(ORDERS, order_id)
        except NotFoundError as e:
            raise OrderNotFoundError(order_id) from e

    async def get_order(self, order_id: str) -> Order:
        return Order.from_document(await self._get_doc(order_id))

    async def list_customer_orders(self, customer_id: Optional[str] = None) -> List[Order]:
        """Orders placed by a customer (default: the session user), newest first."""
        customer_id = customer_id or self.session.uid
        docs = await self.client.list_documents(ORDERS)
        orders = [Order.from_document(d) for d in docs if d.get("customerId") == customer_id]
        orders.sort(key=lambda o: o.created_at or _EPOCH, reverse=True)
        return orders

    async def list_available_orders(self) -> List[Order]:
        """
        Pending offers for the signed-in driver, newest first. A driver whose
        user document says they are offline sees nothing.
        """
        user = await self.client.find_document(USERS, self.session.uid)
        if user is not None and not (user.get("driverStatus") or {}).get("isOnline"):
            self._log("-").debug("Driver is offline, no requests offered.")
            return []
        docs = await self.client.list_documents(ORDERS)
        orders = [Order.from_document(d) for d in docs if d.get("status") == S.PENDING.value]
        orders.sort(key=lambda o: o.created_at or _EPOCH, reverse=True)
        return orders

    async def get_cancellation_info(self, order_id: str) -> policy.CancellationDecision:
        return policy.evaluate(await self.get_order(order_id))

    # ---------- creation ----------
    async def create_order(self, request: Union[OrderCreate, Mapping[str, Any]]) -> Order:
        self.session.require_token()
        data = request.to_store() if isinstance(request, OrderCreate) else dict(request)
        insurance = data.get("insurance")
        if isinstance(insurance, Mapping):
            try:
                item_value = float(data.get("itemValue") or 0)
            except (TypeError, ValueError):
                item_value = 0.0
            data["itemValue"] = max(0.0, item_value)
        else:
            data.pop("insurance", None)

        now = self.clock()
        order_id = new_order_id(now)
        data.update({
            "customerId": self.session.uid,
            "customerEmail": self.session.email,
            "customerName": self.session.name,
            "status": S.PENDING.value,
            "createdAt": now,
            "updatedAt": now,
            "expiresAt": now + self.expiry,
            "extendedTimes": 0,
            "resetCount": 0,
            "viewingDriverId": None,
            "viewedAt": None,
        })
        doc = await self.client.set_document(ORDERS, order_id, data)
        self._log(order_id).info("Pickup request created.")
        return Order.from_document(doc)

    # ---------- timed offers ----------
    async def reap_expired_orders(self) -> int:
        """
        Puts every pending order whose offer window has lapsed back on the
        board with a fresh window. Returns how many were recycled.
        """
        now = self.clock()
        docs = await self.client.list_documents(ORDERS)
        recycled = 0
        for doc in docs:
            order = Order.from_document(doc)
            if not order.is_expired(now):
                continue
            try:
                await self.client.update_fields(ORDERS, doc.id, {
                    "expiresAt": now + self.expiry,
                    "viewingDriverId": None,
                    "resetCount": order.reset_count + 1,
                    "updatedAt": now,
                }, if_update_time=doc.update_time)
            except PreconditionFailedError:
                # changed since the listing (accepted, extended ...); leave it to the next sweep
                self._log(doc.id).debug("Expired request changed during sweep, skipped.")
                continue
            recycled += 1
            self._log(doc.id).info(f"Expired request re-queued (reset {order.reset_count + 1}).")
        return recycled

    def start_expiry_reaper(
        self,
        interval: Optional[float] = None,
        on_error: Optional[Callback] = None,
    ) -> PollingSubscription:
        return subscribe(
            self.reap_expired_orders,
            interval=interval or self.settings.expiry_sweep_interval,
            on_error=on_error,
            settings=self.settings,
            name="expiry-reaper",
        )

    async def claim_for_viewing(self, order_id: str, driver_id: Optional[str] = None) -> None:
        """Marks the offer as being looked at. Only a hint for other drivers' UIs."""
        await self.client.update_fields(ORDERS, order_id, {
            "viewingDriverId": driver_id or self.session.uid,
            "viewedAt": self.clock(),
        })

    async def release_viewing(self, order_id: str) -> None:
        await self.client.update_fields(ORDERS, order_id, {"viewingDriverId": None})

    async def extend_expiry(self, order_id: str, minutes: Optional[int] = None) -> datetime:
        """Gives the viewing driver more time. Returns the new expiry."""
        minutes = self.settings.extension_minutes if minutes is None else minutes
        doc = await self._get_doc(order_id)
        order = Order.from_document(doc)
        if order.status != S.PENDING.value:
            raise PolicyViolation("Only pending requests can be extended.")
        new_expiry = (order.expires_at or self.clock()) + timedelta(minutes=minutes)
        await self.client.update_fields(ORDERS, order_id, {
            "expiresAt": new_expiry,
            "extendedTimes": order.extended_times + 1,
        })
        self._log(order_id).info(f"Request timer extended by {minutes} minutes.")
        return new_expiry

    # ---------- acceptance ----------
    async def accept_order(self, order_id: str) -> Order:
        """
        Moves a pending order to accepted for the session driver.

        The write only succeeds if the order has not changed since it was
        read. If it did change and is no longer pending, somebody else got
        it first and ``OrderAlreadyClaimedError`` is raised.
        """
        log = self._log(order_id)
        for _ in range(ACCEPT_ATTEMPTS):
            doc = await self._get_doc(order_id)
            order = Order.from_document(doc)
            if order.status != S.PENDING.value:
                if order.driver and order.driver != self.session.uid:
                    raise OrderAlreadyClaimedError(order_id)
                raise InvalidTransitionError(order_id, order.status, S.ACCEPTED.value)
            if order.cancellation_pending:
                raise CancellationInProgressError(order_id)
            if not can_transition(order.status, S.ACCEPTED, self.session.role):
                raise InvalidTransitionError(order_id, order.status, S.ACCEPTED.value)
            now = self.clock()
            try:
                updated = await self.client.update_fields(ORDERS, order_id, {
                    "status": S.ACCEPTED.value,
                    "driverId": self.session.uid,
                    "assignedDriverId": self.session.uid,
                    "driverEmail": self.session.email,
                    "acceptedAt": now,
                    "updatedAt": now,
                    "viewingDriverId": None,
                }, if_update_time=doc.update_time)
            except PreconditionFailedError:
                log.debug("Order changed while accepting, re-checking.")
                continue
            log.info("Request accepted.")
            await self._after_accept(Order.from_document(updated))
            return await self.get_order(order_id)
        raise OrderAlreadyClaimedError(order_id)

    async def _after_accept(self, order: Order) -> Optional[str]:
        """Display names and the order conversation. Failures here never undo the acceptance."""
        if not order.customer_id:
            return None
        log = self._log(order.id)
        customer_name = order.customer_name or (
            order.customer_email.split("@")[0] if order.customer_email else "Customer"
        )
        driver_name = self.session.name
        try:
            stats = await self.client.find_document(DRIVERS, self.session.uid)
            rating = stats.get("rating") if stats else None
            await self.client.update_fields(ORDERS, order.id, {
                "customerName": customer_name,
                "assignedDriverName": driver_name,
                "assignedDriverRating": rating if isinstance(rating, (int, float)) else 5.0,
            })
            return await self.messaging.ensure_conversation(
                order.id, order.customer_id, self.session.uid, customer_name, driver_name,
            )
        except PikupError as e:
            log.warning(f"Post-accept bookkeeping failed: {e}")
            return None

    # ---------- driver stages ----------
    def _check_driver(self, order: Order) -> None:
        if order.driver and order.driver != self.session.uid:
            raise NotOrderParticipantError(order.id, self.session.uid)

    async def _transition(
        self,
        doc: StoredDocument,
        new_status: OrderStatus,
        *,
        location: Any = None,
        photos: Optional[Iterable[Any]] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> Order:
        """
        Writes one status move, conditional on ``doc`` still being the
        stored version. When the order changed in the meantime it is
        re-read and the move is checked again, so a stale read can never
        carry an order backwards or out of ``cancelled``.
        """
        photos = list(photos or [])
        coords = _location_dict(location)
        for _ in range(STATUS_WRITE_ATTEMPTS):
            order = Order.from_document(doc)
            if not can_transition(order.status, new_status, self.session.role):
                raise InvalidTransitionError(order.id, order.status, new_status.value)
            self._check_driver(order)
            if order.cancellation_pending:
                raise CancellationInProgressError(order.id)
            stage = required_photos(order.status, new_status)
            if stage and not photos and not order.photos_for(stage):
                raise MissingPhotoEvidenceError(stage)

            now = self.clock()
            updates: Dict[str, Any] = {
                "status": new_status.value,
                stage_timestamp_field(new_status): now,
                "updatedAt": now,
            }
            if photos:
                photo_updates, _ = self._photo_updates(photos, stage or photo_stage_for(new_status), now)
                updates.update(photo_updates)
            updates.update(extra or {})
            if coords:
                updates["driverLocation.latitude"] = coords["latitude"]
                updates["driverLocation.longitude"] = coords["longitude"]
                updates["driverLocation.timestamp"] = now
            try:
                updated = await self.client.update_fields(ORDERS, order.id, updates, if_update_time=doc.update_time)
            except PreconditionFailedError:
                self._log(order.id).debug(f"Order changed before {new_status.value} was written, re-checking.")
                doc = await self._get_doc(order.id)
                continue
            self._log(order.id).info(f"Status {order.status} -> {new_status.value}")
            return Order.from_document(updated)
        raise PreconditionFailedError(f"Order '{doc.id}' kept changing, {new_status.value} not written.")

    async def advance_status(
        self,
        order_id: str,
        new_status: Union[OrderStatus, str],
        *,
        location: Any = None,
        photos: Optional[Iterable[Any]] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> Order:
        """
        Applies one transition from the status table. Completion and
        cancellation are routed through ``complete_order`` and
        ``cancel_order`` so their side effects always run.
        """
        new_status = OrderStatus(new_status)
        if new_status == S.COMPLETED:
            return (await self.complete_order(order_id, photos=photos, location=location)).order
        if new_status == S.CANCELLED:
            await self.cancel_order(order_id)
            return await self.get_order(order_id)
        doc = await self._get_doc(order_id)
        return await self._transition(doc, new_status, location=location, photos=photos, extra=extra)

    async def start_driving(self, order_id: str, location: Any = None) -> Order:
        return await self.advance_status(order_id, S.IN_PROGRESS, location=location)

    async def arrive_at_pickup(self, order_id: str, location: Any = None) -> Order:
        return await self.advance_status(
            order_id, S.ARRIVED_AT_PICKUP, location=location, extra={"arrivedAt": self.clock()},
        )

    async def confirm_pickup(self, order_id: str, photos: Optional[Iterable[Any]] = None, location: Any = None) -> Order:
        return await self.advance_status(order_id, S.PICKED_UP, location=location, photos=photos)

    async def start_delivery(self, order_id: str, location: Any = None) -> Order:
        return await self.advance_status(order_id, S.EN_ROUTE_TO_DROPOFF, location=location)

    async def arrive_at_dropoff(self, order_id: str, location: Any = None) -> Order:
        return await self.advance_status(order_id, S.ARRIVED_AT_DROPOFF, location=location)

    async def update_driver_location(self, order_id: str, location: Any) -> bool:
        """
        Best-effort live position for the customer's map. Returns False
        when the write failed; credential problems still raise.
        """
        coords = _location_dict(location)
        if not order_id or not coords:
            return False
        now = self.clock()
        try:
            await self.client.update_fields(ORDERS, order_id, {
                "driverLocation.latitude": coords["latitude"],
                "driverLocation.longitude": coords["longitude"],
                "lastLocationUpdate": now,
                "updatedAt": now,
            })
        except AuthenticationError:
            raise
        except PikupError as e:
            self._log(order_id).warning(f"Failed to update driver location: {e}")
            return False
        return True

    async def record_photos(self, order_id: str, photos: Iterable[Any], stage: str = "pickup") -> List[Dict[str, Any]]:
        """
        Stores metadata of already-uploaded photos on the order as
        ``<stage>Photos``. Upload itself happens elsewhere.
        """
        stage = normalize_photo_stage(stage)
        now = self.clock()
        updates, photo_data = self._photo_updates(photos, stage, now)
        if not photo_data:
            return []
        await self.client.update_fields(ORDERS, order_id, updates)
        self._log(order_id).info(f"{len(photo_data)} {stage} photos recorded.")
        return photo_data

    def _photo_updates(self, photos: Iterable[Any], stage: str, now: datetime) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
        stage = normalize_photo_stage(stage)
        photo_data = []
        for photo in photos:
            item = _photo_dict(photo)
            item.setdefault("type", stage)
            item.setdefault("timestamp", now)
            item.setdefault("uploadedBy", self.session.uid)
            photo_data.append(item)
        updates = {
            f"{stage}Photos": photo_data,
            f"{stage}PhotosUploadedAt": now,
            "updatedAt": now,
        }
        return updates, photo_data

    # ---------- completion ----------
    async def complete_order(
        self,
        order_id: str,
        photos: Optional[Iterable[Any]] = None,
        location: Any = None,
        customer_rating: Optional[float] = None,
    ) -> CompletionResult:
        """
        Marks the order completed with the driver's earnings, then runs the
        side effects (customer rating, earnings profile, payout). Those are
        best-effort: their failures are reported on the result and logged,
        the order stays completed.
        """
        log = self._log(order_id)
        doc = await self._get_doc(order_id)
        order = Order.from_document(doc)
        driver_earnings = calculate_driver_earnings(order.total, self.settings)
        completed = await self._transition(doc, S.COMPLETED, photos=photos, extra={
            "driverEarnings": driver_earnings,
            "assignedDriverId": self.session.uid,
            "completedBy": self.session.uid,
            "finalLocation": _location_dict(location),
            "customerRating": customer_rating or 5,
        })

        errors: List[str] = []
        payout: Optional[PayoutResult] = None
        if customer_rating and order.customer_id:
            try:
                await self.earnings.update_user_rating(order.customer_id, customer_rating, "customerProfile")
            except PikupError as e:
                log.error(f"Customer rating update failed: {e}")
                errors.append(f"rating: {e}")
        try:
            await self.earnings.update_driver_earnings(self.session.uid, completed)
        except PikupError as e:
            log.error(f"Driver earnings update failed: {e}")
            errors.append(f"earnings: {e}")
        try:
            payout = await self._payout(completed, driver_earnings)
        except PikupError as e:
            log.error(f"Driver payout failed: {e}")
            errors.append(f"payout: {e}")
            payout = PayoutResult(success=False, error=str(e))

        log.info(f"Delivery completed with earnings {driver_earnings}")
        return CompletionResult(
            order=completed, driver_earnings=driver_earnings, payout=payout, side_effect_errors=errors,
        )

    async def _payout(self, order: Order, amount: float) -> Optional[PayoutResult]:
        profile = await self.earnings.get_driver_profile(self.session.uid) or {}
        if not (profile.get("connectAccountId") and profile.get("canReceivePayments")):
            self._log(order.id).warning("Driver not eligible for automatic payout, onboarding incomplete.")
            return None
        return await self.payments.process_trip_payout(
            trip_id=order.id,
            driver_id=self.session.uid,
            connect_account_id=profile["connectAccountId"],
            amount=amount,
            customer_payment_intent_id=(order.payment or {}).get("paymentIntentId"),
        )

    # ---------- cancellation ----------
    async def cancel_order(self, order_id: str, reason: str = "customer_request") -> CancellationOutcome:
        """
        Customer cancellation. The policy decides whether to try; the
        payment service decides the amounts, which are written back on the
        order together with ``status=cancelled``.

        Before settling, the order is put on hold with a conditional write
        (``cancellationPending``). Drivers cannot move or accept an order on
        hold, so the refund is never issued for an order that has already
        gone past the cancellable stages. A failed settlement lifts the hold.
        """
        log = self._log(order_id)
        order = await self._hold_for_cancellation(order_id)

        driver_location = _location_dict(order.driver_location)
        try:
            outcome = await self.payments.cancel_order(order_id, self.session.uid, reason, driver_location)
        except PikupError:
            await self._release_cancellation_hold(order_id)
            raise

        now = self.clock()
        await self.client.update_fields(ORDERS, order_id, {
            "status": S.CANCELLED.value,
            "cancelledAt": now,
            "cancelledBy": self.session.uid,
            "cancellationReason": reason,
            "cancellationFee": outcome.cancellation_fee,
            "refundAmount": outcome.refund_amount,
            "driverCompensation": outcome.driver_compensation,
            "refundId": outcome.refund_id,
            "compensationTransferId": outcome.driver_compensation_id,
            "cancellationPending": False,
            "updatedAt": now,
        })
        log.info(f"Order cancelled. Refund {outcome.refund_amount}, fee {outcome.cancellation_fee}")
        return outcome

    async def _hold_for_cancellation(self, order_id: str) -> Order:
        """Checks the cancellation against the stored order and marks it pending, conditionally."""
        doc = await self._get_doc(order_id)
        for _ in range(STATUS_WRITE_ATTEMPTS):
            order = Order.from_document(doc)
            decision = policy.evaluate(order)
            if not decision.can_cancel:
                raise CancellationNotAllowedError(decision.reason)
            if not can_transition(order.status, S.CANCELLED, self.session.role):
                raise InvalidTransitionError(order_id, order.status, S.CANCELLED.value)
            if order.customer_id and order.customer_id != self.session.uid:
                raise NotOrderParticipantError(order_id, self.session.uid)
            try:
                await self.client.update_fields(ORDERS, order_id, {
                    "cancellationPending": True,
                    "updatedAt": self.clock(),
                }, if_update_time=doc.update_time)
            except PreconditionFailedError:
                self._log(order_id).debug("Order changed before the cancellation hold, re-checking.")
                doc = await self._get_doc(order_id)
                continue
            return order
        raise PreconditionFailedError(f"Order '{order_id}' kept changing, cancellation not started.")

    async def _release_cancellation_hold(self, order_id: str) -> None:
        try:
            await self.client.update_fields(ORDERS, order_id, {"cancellationPending": False})
        except PikupError as e:
            self._log(order_id).error(f"Could not lift the cancellation hold: {e}")
