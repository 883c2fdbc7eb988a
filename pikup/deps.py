# pikup/deps.py
# Wires the clients and services for one signed-in session.
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import httpx
from dotenv import load_dotenv
from loguru import logger

from pikup.core.config import Settings, get_settings
from pikup.core.session import Session
from pikup.db.documents import RemoteDocumentClient
from pikup.repos.inmemory import InMemoryDocumentStore
from pikup.services.earnings import EarningsService
from pikup.services.messaging import MessagingService
from pikup.services.orders import OrderLifecycleManager
from pikup.services.payments import PaymentServiceClient
from pikup.services.presence import DriverPresenceService

load_dotenv()


@dataclass
class Services:
    documents: RemoteDocumentClient
    payments: PaymentServiceClient
    orders: OrderLifecycleManager
    presence: DriverPresenceService
    messaging: MessagingService
    earnings: EarningsService
    store: Optional[InMemoryDocumentStore] = None

    async def aclose(self):
        await self.documents.aclose()
        await self.payments.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()


def build_services(
    session: Session,
    settings: Optional[Settings] = None,
    store: Optional[InMemoryDocumentStore] = None,
    payment_transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Services:
    """
    Uses the remote document store unless ``settings.use_inmemory_store`` is
    set or a ``store`` is passed in.
    """
    settings = settings or get_settings()
    if store is None and settings.use_inmemory_store:
        logger.info("Using the in-memory document store.")
        store = InMemoryDocumentStore()
    documents = RemoteDocumentClient(session, settings=settings, transport=store.transport() if store is not None else None)
    payments = PaymentServiceClient(session, settings=settings, transport=payment_transport)
    timing = {"clock": clock} if clock else {}
    messaging = MessagingService(documents, settings=settings, **timing)
    earnings = EarningsService(documents, settings=settings, **timing)
    orders = OrderLifecycleManager(
        documents, session, payments=payments, messaging=messaging, earnings=earnings, settings=settings, **timing,
    )
    presence = DriverPresenceService(documents, payments, session, settings=settings, **timing)
    return Services(
        documents=documents,
        payments=payments,
        orders=orders,
        presence=presence,
        messaging=messaging,
        earnings=earnings,
        store=store,
    )
