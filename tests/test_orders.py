import asyncio
from datetime import timedelta

import pytest

from pikup.core.exceptions import (
    AuthenticationError,
    CancellationNotAllowedError,
    InvalidTransitionError,
    MissingPhotoEvidenceError,
    PolicyViolation,
    RemoteError,
    SettlementError,
)
from pikup.core.session import Session
from pikup.db.documents import RemoteDocumentClient
from pikup.models.order import OrderCreate
from pikup.services.exceptions import (
    CancellationInProgressError,
    NotOrderParticipantError,
    OrderAlreadyClaimedError,
    OrderNotFoundError,
)
from pikup.services.orders import OrderLifecycleManager
from pikup.services.payments import PaymentServiceClient

pytestmark = pytest.mark.anyio

HERE = {"latitude": 33.75, "longitude": -84.39}


def _payment_bodies(payment_service, path):
    return [body for _, p, body in payment_service.calls if p == path]


# ---------- creation ----------
async def test_create_order_opens_a_timed_offer(customer, store, clock):
    order = await customer.orders.create_order(OrderCreate(
        pickup={"address": "1 Main St"},
        dropoff={"address": "9 Oak Ave"},
        pricing={"total": 40.0},
    ))
    assert order.id.startswith("pickup_")
    assert order.status == "pending"
    assert order.expires_at == clock() + timedelta(minutes=4)
    assert order.reset_count == 0 and order.extended_times == 0
    assert order.viewing_driver_id is None
    assert order.customer_id == "cust-1"
    assert order.total == 40.0

    stored = store.fields(f"pickupRequests/{order.id}")
    assert stored["customerName"] == "casey"
    assert "viewingDriverId" in stored and stored["viewingDriverId"] is None


async def test_create_order_keeps_lifecycle_fields_authoritative(customer, store):
    order = await customer.orders.create_order({
        "pickup": {"address": "1 Main St"},
        "status": "completed",
        "resetCount": 9,
        "insurance": {"premium": 3.5},
        "itemValue": "-20",
    })
    stored = store.fields(f"pickupRequests/{order.id}")
    assert stored["status"] == "pending"
    assert stored["resetCount"] == 0
    assert stored["insurance"] == {"premium": 3.5}
    assert stored["itemValue"] == 0


async def test_create_order_requires_a_credential(make_services, store):
    anonymous = make_services(Session(uid="cust-9"))
    with pytest.raises(AuthenticationError):
        await anonymous.orders.create_order({"pickup": {"address": "x"}})
    assert store.calls == []


async def test_missing_order(customer):
    with pytest.raises(OrderNotFoundError):
        await customer.orders.get_order("nope")


# ---------- expiry ----------
async def test_reaper_recycles_expired_offers(driver, seed_order, store, clock):
    seed_order("old", expiresAt=clock() - timedelta(minutes=1), viewingDriverId="drv-9", resetCount=2)
    seed_order("fresh")
    seed_order("taken", status="accepted", expiresAt=clock() - timedelta(minutes=10))

    assert await driver.orders.reap_expired_orders() == 1

    old = store.fields("pickupRequests/old")
    assert old["status"] == "pending"
    assert old["expiresAt"] > clock()
    assert old["viewingDriverId"] is None
    assert old["resetCount"] == 3
    assert store.fields("pickupRequests/fresh")["resetCount"] == 0
    assert store.fields("pickupRequests/taken")["expiresAt"] < clock()
    assert not any("status" == v for c in store.writes("pickupRequests/old") for k, v in c["params"])


async def test_reaper_skips_orders_changed_during_the_sweep(driver, seed_order, store, clock, monkeypatch):
    seed_order("old", expiresAt=clock() - timedelta(minutes=1))
    real_list = driver.documents.list_documents

    async def list_then_accept(collection, order_by=None):
        docs = await real_list(collection, order_by)
        seed_order("old", status="accepted", driverId="drv-2", expiresAt=clock() - timedelta(minutes=1))
        return docs

    monkeypatch.setattr(driver.documents, "list_documents", list_then_accept)
    assert await driver.orders.reap_expired_orders() == 0
    assert store.fields("pickupRequests/old")["status"] == "accepted"
    assert store.fields("pickupRequests/old")["resetCount"] == 0


async def test_expiry_reaper_runs_on_a_subscription(driver, seed_order, store, clock):
    seed_order("old", expiresAt=clock() - timedelta(minutes=1))
    reaper = driver.orders.start_expiry_reaper(interval=0.01)
    for _ in range(200):
        if store.fields("pickupRequests/old")["resetCount"] == 1:
            break
        await asyncio.sleep(0.005)
    reaper.stop()
    await reaper.wait_closed()
    assert store.fields("pickupRequests/old")["resetCount"] == 1


async def test_viewing_claim_is_a_plain_hint(driver, other_driver, seed_order, store, clock):
    seed_order("o1")
    await driver.orders.claim_for_viewing("o1")
    assert store.fields("pickupRequests/o1")["viewingDriverId"] == "drv-1"
    assert store.fields("pickupRequests/o1")["viewedAt"] == clock()

    # not exclusive: another driver can still look, and still accept
    await other_driver.orders.claim_for_viewing("o1")
    assert store.fields("pickupRequests/o1")["viewingDriverId"] == "drv-2"
    await driver.orders.release_viewing("o1")
    assert store.fields("pickupRequests/o1")["viewingDriverId"] is None


async def test_extend_expiry(driver, seed_order, store, clock):
    seed_order("o1")
    new_expiry = await driver.orders.extend_expiry("o1")
    assert new_expiry == clock() + timedelta(minutes=6)
    fields = store.fields("pickupRequests/o1")
    assert fields["expiresAt"] == new_expiry
    assert fields["extendedTimes"] == 1

    await driver.orders.extend_expiry("o1", minutes=1)
    assert store.fields("pickupRequests/o1")["extendedTimes"] == 2

    seed_order("o2", status="accepted")
    with pytest.raises(PolicyViolation):
        await driver.orders.extend_expiry("o2")


# ---------- acceptance ----------
async def test_accept_assigns_driver_and_opens_conversation(driver, seed_order, store, clock):
    seed_order("o1")
    order = await driver.orders.accept_order("o1")
    assert order.status == "accepted"
    assert order.driver_id == "drv-1" and order.assigned_driver_id == "drv-1"
    assert order.accepted_at == clock()

    fields = store.fields("pickupRequests/o1")
    assert fields["driverEmail"] == "dana@example.com"
    assert fields["assignedDriverName"] == "Dana"
    assert fields["customerName"] == "casey"
    assert fields["assignedDriverRating"] == 5

    conversation = store.fields("conversations/o1_cust-1_drv-1")
    assert conversation["requestId"] == "o1"
    assert conversation["unreadByCustomer"] == 0 and conversation["unreadByDriver"] == 0


async def test_second_driver_cannot_accept(driver, other_driver, seed_order, store):
    seed_order("o1")
    await driver.orders.accept_order("o1")
    with pytest.raises(OrderAlreadyClaimedError):
        await other_driver.orders.accept_order("o1")
    assert store.fields("pickupRequests/o1")["driverId"] == "drv-1"


async def test_acceptance_race_is_decided_by_the_store(driver, other_driver, seed_order, store, monkeypatch):
    seed_order("o1")
    stale = await other_driver.documents.get_document("pickupRequests", "o1")
    await driver.orders.accept_order("o1")

    real_get = other_driver.orders._get_doc
    reads = []

    async def first_read_is_stale(order_id):
        reads.append(order_id)
        return stale if len(reads) == 1 else await real_get(order_id)

    monkeypatch.setattr(other_driver.orders, "_get_doc", first_read_is_stale)
    with pytest.raises(OrderAlreadyClaimedError):
        await other_driver.orders.accept_order("o1")
    assert len(reads) == 2
    assert store.fields("pickupRequests/o1")["driverId"] == "drv-1"


async def test_unrelated_change_does_not_block_acceptance(driver, other_driver, seed_order, store, monkeypatch):
    seed_order("o1")
    stale = await driver.documents.get_document("pickupRequests", "o1")
    await other_driver.orders.claim_for_viewing("o1")

    real_get = driver.orders._get_doc
    reads = []

    async def first_read_is_stale(order_id):
        reads.append(order_id)
        return stale if len(reads) == 1 else await real_get(order_id)

    monkeypatch.setattr(driver.orders, "_get_doc", first_read_is_stale)
    order = await driver.orders.accept_order("o1")
    assert order.status == "accepted"
    assert order.viewing_driver_id is None
    assert len(reads) >= 2


async def test_customer_cannot_accept(customer, seed_order):
    seed_order("o1")
    with pytest.raises(InvalidTransitionError):
        await customer.orders.accept_order("o1")


async def test_conversation_failure_does_not_undo_acceptance(driver, seed_order, store, monkeypatch):
    seed_order("o1")

    async def broken(*args, **kwargs):
        raise RemoteError("conversation store down", status_code=500)

    monkeypatch.setattr(driver.messaging, "ensure_conversation", broken)
    order = await driver.orders.accept_order("o1")
    assert order.status == "accepted"
    assert store.fields("pickupRequests/o1")["status"] == "accepted"


# ---------- stages ----------
async def test_driver_stage_flow(driver, seed_order, store, clock):
    seed_order("o1", status="accepted", driverId="drv-1", assignedDriverId="drv-1")

    order = await driver.orders.start_driving("o1")
    assert order.status == "inProgress"
    assert store.fields("pickupRequests/o1")["inProgressAt"] == clock()

    order = await driver.orders.arrive_at_pickup("o1", HERE)
    assert order.status == "arrivedAtPickup"
    fields = store.fields("pickupRequests/o1")
    assert fields["arrivedAtPickupAt"] == clock()
    assert fields["driverLocation"]["latitude"] == 33.75
    assert fields["pricing"] == {"total": 40}

    with pytest.raises(MissingPhotoEvidenceError):
        await driver.orders.confirm_pickup("o1")

    order = await driver.orders.confirm_pickup("o1", photos=[{"url": "https://img.test/p1.jpg"}])
    assert order.status == "pickedUp"
    assert order.pickup_photos[0].url == "https://img.test/p1.jpg"
    assert order.pickup_photos[0].uploaded_by == "drv-1"
    assert store.fields("pickupRequests/o1")["pickupPhotosUploadedAt"] == clock()

    order = await driver.orders.start_delivery("o1")
    assert order.status == "enRouteToDropoff"
    order = await driver.orders.arrive_at_dropoff("o1")
    assert order.status == "arrivedAtDropoff"


async def test_stages_cannot_be_skipped(driver, seed_order):
    seed_order("o1", status="accepted", driverId="drv-1")
    with pytest.raises(InvalidTransitionError):
        await driver.orders.confirm_pickup("o1", photos=[{"url": "https://img.test/p1.jpg"}])


async def test_only_the_assigned_driver_moves_the_order(other_driver, seed_order):
    seed_order("o1", status="accepted", driverId="drv-1", assignedDriverId="drv-1")
    with pytest.raises(NotOrderParticipantError):
        await other_driver.orders.arrive_at_pickup("o1")


async def test_stage_move_from_a_stale_read_does_not_revive_a_cancelled_order(
    driver, customer, seed_order, store, monkeypatch,
):
    seed_order("o1", status="accepted", driverId="drv-1", assignedDriverId="drv-1")
    read = driver.orders._get_doc
    reads = [await read("o1")]
    await customer.orders.cancel_order("o1")

    async def get_doc(order_id):
        return reads.pop() if reads else await read(order_id)

    monkeypatch.setattr(driver.orders, "_get_doc", get_doc)
    with pytest.raises(InvalidTransitionError):
        await driver.orders.arrive_at_pickup("o1")
    fields = store.fields("pickupRequests/o1")
    assert fields["status"] == "cancelled"
    assert "arrivedAtPickupAt" not in fields


async def test_stage_move_retries_after_a_location_update(driver, seed_order, store, monkeypatch):
    seed_order("o1", status="accepted", driverId="drv-1", assignedDriverId="drv-1")
    read = driver.orders._get_doc
    reads = [await read("o1")]
    await driver.orders.update_driver_location("o1", HERE)

    async def get_doc(order_id):
        return reads.pop() if reads else await read(order_id)

    monkeypatch.setattr(driver.orders, "_get_doc", get_doc)
    order = await driver.orders.start_driving("o1")
    assert order.status == "inProgress"


async def test_photos_sent_with_an_unguarded_move_follow_the_target_stage(driver, seed_order, store):
    seed_order("o1", status="enRouteToDropoff", driverId="drv-1")
    await driver.orders.advance_status("o1", "arrivedAtDropoff", photos=[{"url": "https://img.test/d0.jpg"}])
    fields = store.fields("pickupRequests/o1")
    assert fields["dropoffPhotos"][0]["type"] == "dropoff"
    assert "pickupPhotos" not in fields


async def test_location_updates_are_best_effort(driver, seed_order, store, clock):
    seed_order("o1", status="accepted", driverId="drv-1")
    assert await driver.orders.update_driver_location("o1", HERE) is True
    fields = store.fields("pickupRequests/o1")
    assert fields["driverLocation"] == {"latitude": 33.75, "longitude": -84.39}
    assert fields["lastLocationUpdate"] == clock()

    assert await driver.orders.update_driver_location("missing", HERE) is False
    assert await driver.orders.update_driver_location("o1", None) is False


# ---------- completion ----------
async def test_completion_pays_the_driver(driver, seed_order, store, payment_service, clock):
    seed_order(
        "o1",
        status="arrivedAtDropoff",
        driverId="drv-1",
        assignedDriverId="drv-1",
        dropoffPhotos=[{"url": "https://img.test/d1.jpg"}],
        payment={"paymentIntentId": "pi_1"},
    )
    store.put("drivers/drv-1", {
        "connectAccountId": "acct_1", "canReceivePayments": True,
        "totalTrips": 2, "totalEarnings": 50.0, "availableBalance": 10.0,
    })
    store.put("users/cust-1", {"customerProfile": {"rating": 4.0, "ratingCount": 1}})

    result = await driver.orders.complete_order("o1", location=HERE, customer_rating=5)

    assert result.driver_earnings == 28.0
    assert result.order.status == "completed"
    assert result.side_effect_errors == []
    assert result.payout is not None and result.payout.success

    fields = store.fields("pickupRequests/o1")
    assert fields["driverEarnings"] == 28
    assert fields["completedBy"] == "drv-1"
    assert fields["completedAt"] == clock()
    assert fields["finalLocation"] == HERE

    payout = _payment_bodies(payment_service, "/process-trip-payout")[0]
    assert payout == {
        "tripId": "o1", "driverId": "drv-1", "connectAccountId": "acct_1",
        "amount": 28.0, "customerPaymentIntentId": "pi_1",
    }
    profile = store.fields("drivers/drv-1")
    assert profile["totalTrips"] == 3
    assert profile["totalEarnings"] == 78
    assert profile["availableBalance"] == 38
    customer = store.fields("users/cust-1")["customerProfile"]
    assert customer == {"rating": 4.5, "ratingCount": 2, "completedOrders": 1}


async def test_payout_failure_keeps_order_completed(driver, seed_order, store, payment_service):
    seed_order("o1", status="arrivedAtDropoff", driverId="drv-1", dropoffPhotos=[{"url": "https://img.test/d1.jpg"}])
    store.put("drivers/drv-1", {"connectAccountId": "acct_1", "canReceivePayments": True})
    payment_service.failures["/process-trip-payout"] = 502

    result = await driver.orders.complete_order("o1")
    assert store.fields("pickupRequests/o1")["status"] == "completed"
    assert result.payout is not None and not result.payout.success
    assert any(e.startswith("payout") for e in result.side_effect_errors)


async def test_completion_needs_dropoff_photos(driver, seed_order, store):
    seed_order("o1", status="arrivedAtDropoff", driverId="drv-1")
    with pytest.raises(MissingPhotoEvidenceError):
        await driver.orders.complete_order("o1")
    assert store.fields("pickupRequests/o1")["status"] == "arrivedAtDropoff"


async def test_advance_to_completed_runs_completion(driver, seed_order, store, payment_service):
    seed_order("o1", status="arrivedAtDropoff", driverId="drv-1", pricing={"total": 4.0})
    order = await driver.orders.advance_status("o1", "completed", photos=[{"url": "https://img.test/d1.jpg"}])
    assert order.status == "completed"
    assert order.driver_earnings == 5.0
    assert store.fields("pickupRequests/o1")["dropoffPhotos"][0]["url"] == "https://img.test/d1.jpg"
    # no connected payout account on file
    assert _payment_bodies(payment_service, "/process-trip-payout") == []


# ---------- cancellation ----------
async def test_cancel_accepted_order(customer, seed_order, store, payment_service, clock):
    seed_order(
        "o1", status="accepted", driverId="drv-1", assignedDriverId="drv-1",
        acceptedAt=clock(), pricing={"total": 50.0},
        driverLocation={"latitude": 33.7, "longitude": -84.4},
    )
    clock.advance(seconds=30)

    info = await customer.orders.get_cancellation_info("o1")
    assert (info.can_cancel, info.fee, info.refund_amount) == (True, 0, 50.0)

    payment_service.cancel_response = {
        "success": True, "cancellationFee": 0, "refundAmount": 50.0,
        "driverCompensation": 0, "refundId": "re_1",
    }
    outcome = await customer.orders.cancel_order("o1", reason="changed_mind")
    assert outcome.refund_amount == 50.0
    assert outcome.refund_id == "re_1"

    assert _payment_bodies(payment_service, "/cancel-order")[0] == {
        "orderId": "o1", "customerId": "cust-1", "reason": "changed_mind",
        "driverLocation": {"latitude": 33.7, "longitude": -84.4},
    }
    fields = store.fields("pickupRequests/o1")
    assert fields["status"] == "cancelled"
    assert fields["cancelledBy"] == "cust-1"
    assert fields["cancelledAt"] == clock()
    assert fields["cancellationReason"] == "changed_mind"
    assert fields["refundAmount"] == 50
    assert fields["refundId"] == "re_1"
    assert fields["compensationTransferId"] is None


async def test_settlement_amounts_come_from_payment_service(customer, seed_order, store, payment_service):
    seed_order("o1", status="pending", pricing={"total": 50.0})
    payment_service.cancel_response = {
        "success": True, "cancellationFee": 5.0, "refundAmount": 45.0,
        "driverCompensation": 5.0, "driverCompensationId": "tr_1",
    }
    outcome = await customer.orders.cancel_order("o1")
    assert (outcome.cancellation_fee, outcome.refund_amount) == (5.0, 45.0)
    fields = store.fields("pickupRequests/o1")
    assert fields["cancellationFee"] == 5
    assert fields["compensationTransferId"] == "tr_1"


async def test_cancel_after_pickup_arrival_is_refused(customer, seed_order, store, payment_service):
    seed_order("o1", status="arrivedAtPickup", driverId="drv-1")
    with pytest.raises(CancellationNotAllowedError) as info:
        await customer.orders.cancel_order("o1")
    assert info.value.reason == "Cannot cancel - driver has arrived at pickup location"
    assert payment_service.calls == []
    assert store.fields("pickupRequests/o1")["status"] == "arrivedAtPickup"


async def test_settlement_failure_leaves_order_untouched(customer, seed_order, store, payment_service):
    seed_order("o1", status="accepted", driverId="drv-1")
    payment_service.failures["/cancel-order"] = 400
    with pytest.raises(SettlementError, match="payment service unavailable"):
        await customer.orders.cancel_order("o1")
    assert store.fields("pickupRequests/o1")["status"] == "accepted"
    assert store.fields("pickupRequests/o1")["cancellationPending"] is False


async def test_driver_cannot_cancel(driver, seed_order):
    seed_order("o1", status="accepted", driverId="drv-1")
    with pytest.raises(InvalidTransitionError):
        await driver.orders.cancel_order("o1")


async def test_only_owner_cancels(make_services, seed_order):
    stranger = make_services(Session(uid="cust-2", access_token="customer-token", role="customer"))
    seed_order("o1")
    with pytest.raises(NotOrderParticipantError):
        await stranger.orders.cancel_order("o1")


async def test_cancel_is_refused_when_the_driver_arrives_first(
    customer, driver, seed_order, store, payment_service, monkeypatch,
):
    seed_order("o1", status="accepted", driverId="drv-1", assignedDriverId="drv-1")
    read = customer.orders._get_doc
    arrived = []

    async def get_doc(order_id):
        doc = await read(order_id)
        if not arrived:
            arrived.append(await driver.orders.arrive_at_pickup(order_id))
        return doc

    monkeypatch.setattr(customer.orders, "_get_doc", get_doc)
    with pytest.raises(CancellationNotAllowedError):
        await customer.orders.cancel_order("o1")
    assert payment_service.calls == []
    fields = store.fields("pickupRequests/o1")
    assert fields["status"] == "arrivedAtPickup"
    assert "cancellationPending" not in fields


async def test_driver_cannot_move_the_order_while_cancellation_settles(
    customer, driver, seed_order, store, monkeypatch,
):
    seed_order("o1", status="accepted", driverId="drv-1", assignedDriverId="drv-1")
    settle = customer.orders.payments.cancel_order
    refused = []

    async def settle_while_driver_arrives(*args, **kwargs):
        with pytest.raises(CancellationInProgressError):
            await driver.orders.arrive_at_pickup("o1")
        refused.append("o1")
        return await settle(*args, **kwargs)

    monkeypatch.setattr(customer.orders.payments, "cancel_order", settle_while_driver_arrives)
    await customer.orders.cancel_order("o1")
    assert refused == ["o1"]
    fields = store.fields("pickupRequests/o1")
    assert fields["status"] == "cancelled"
    assert fields["cancellationPending"] is False
    assert "arrivedAtPickupAt" not in fields


async def test_order_on_cancellation_hold_cannot_be_accepted(driver, seed_order, store):
    seed_order("o1", cancellationPending=True)
    with pytest.raises(CancellationInProgressError):
        await driver.orders.accept_order("o1")
    assert store.fields("pickupRequests/o1")["status"] == "pending"


async def test_manager_closes_only_the_payment_client_it_created(store, settings, customer_session, payment_service):
    documents = RemoteDocumentClient(customer_session, settings, transport=store.transport())
    own = OrderLifecycleManager(documents, customer_session, settings=settings)
    await own.aclose()
    assert own.payments._http.is_closed

    shared = PaymentServiceClient(customer_session, settings, transport=payment_service.transport())
    async with OrderLifecycleManager(documents, customer_session, payments=shared, settings=settings):
        pass
    assert not shared._http.is_closed
    await shared.aclose()
    await documents.aclose()


# ---------- listings ----------
async def test_available_orders_respect_driver_status(driver, seed_order, store, clock):
    seed_order("a", createdAt=clock() - timedelta(minutes=5))
    seed_order("b", createdAt=clock())
    seed_order("c", status="accepted")

    store.put("users/drv-1", {"driverStatus": {"isOnline": False}})
    assert await driver.orders.list_available_orders() == []

    store.put("users/drv-1", {"driverStatus": {"isOnline": True}})
    orders = await driver.orders.list_available_orders()
    assert [o.id for o in orders] == ["b", "a"]


async def test_customer_order_history(customer, seed_order, clock):
    seed_order("a", createdAt=clock() - timedelta(days=1))
    seed_order("b", createdAt=clock())
    seed_order("x", customerId="cust-2")
    orders = await customer.orders.list_customer_orders()
    assert [o.id for o in orders] == ["b", "a"]
