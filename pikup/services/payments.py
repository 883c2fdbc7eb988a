# pikup/services/payments.py
# HTTP client for the payment/settlement service, which also hosts the driver presence endpoints.
import json
from datetime import date
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger

from pikup.core.config import Settings, get_settings
from pikup.core.exceptions import RemoteError, SettlementError
from pikup.core.session import Session
from pikup.db.transport import AuthorizedClient
from pikup.models.order import CancellationOutcome, PayoutResult


def _error_text(exc: RemoteError, default: str) -> str:
    try:
        payload = json.loads(exc.body or "{}")
    except ValueError:
        return default
    return (payload.get("error") if isinstance(payload, dict) else None) or default


class PaymentServiceClient(AuthorizedClient):
    def __init__(
        self,
        session: Session,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = settings or get_settings()
        super().__init__(settings.payment_service_url, session, settings=settings, transport=transport)

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        r = await self.request("POST", path, json=body)
        return r.json() or {}

    # ---------- settlement ----------
    async def cancel_order(
        self,
        order_id: str,
        customer_id: str,
        reason: str,
        driver_location: Optional[Dict[str, float]] = None,
    ) -> CancellationOutcome:
        """
        Asks the settlement service to cancel and refund. The amounts in the
        returned outcome are authoritative.
        """
        log = logger.bind(order_id=order_id, customer_id=customer_id)
        try:
            data = await self._post("cancel-order", {
                "orderId": order_id,
                "customerId": customer_id,
                "reason": reason,
                "driverLocation": driver_location,
            })
        except RemoteError as e:
            log.warning(f"Cancellation refused by payment service: {e}")
            raise SettlementError(_error_text(e, "Failed to cancel order")) from e
        outcome = CancellationOutcome.model_validate(data)
        if not outcome.success:
            raise SettlementError(outcome.error or "Cancellation failed")
        log.info(f"Cancellation settled. Refund: {outcome.refund_amount}")
        return outcome

    async def process_trip_payout(
        self,
        trip_id: str,
        driver_id: str,
        connect_account_id: str,
        amount: float,
        customer_payment_intent_id: Optional[str] = None,
    ) -> PayoutResult:
        try:
            data = await self._post("process-trip-payout", {
                "tripId": trip_id,
                "driverId": driver_id,
                "connectAccountId": connect_account_id,
                "amount": amount,
                "customerPaymentIntentId": customer_payment_intent_id,
            })
        except RemoteError as e:
            raise SettlementError(f"Payment service error: {e.status_code}") from e
        result = PayoutResult.model_validate(data)
        if not result.success:
            raise SettlementError(result.error or "Payout failed")
        return result

    # ---------- presence ----------
    async def driver_online(self, driver_id: str, latitude: float, longitude: float) -> Optional[str]:
        """Returns the new session id."""
        data = await self._post("driver/online", {"driverId": driver_id, "latitude": latitude, "longitude": longitude})
        return data.get("sessionId")

    async def driver_offline(self, driver_id: str) -> float:
        """Returns the closed session's duration in minutes."""
        data = await self._post("driver/offline", {"driverId": driver_id})
        return float(data.get("onlineMinutes") or 0)

    async def driver_heartbeat(self, driver_id: str, latitude: float, longitude: float) -> bool:
        await self._post("driver/heartbeat", {"driverId": driver_id, "latitude": latitude, "longitude": longitude})
        return True

    async def online_drivers(self, latitude: float, longitude: float, radius_miles: float) -> List[Dict[str, Any]]:
        r = await self.request(
            "GET", "drivers/online",
            params={"lat": latitude, "lng": longitude, "radiusMiles": radius_miles},
        )
        data = r.json() or {}
        drivers = data.get("drivers") or []
        logger.debug(f"Found {data.get('count', len(drivers))} online drivers within {radius_miles} miles")
        return drivers

    async def session_stats(self, driver_id: str, day: date) -> Dict[str, Any]:
        r = await self.request("GET", f"drivers/{driver_id}/session-stats", params={"date": day.isoformat()})
        return r.json() or {}
