# pikup/db/transport.py
# Authenticated httpx plumbing shared by the document store and the payment service.
from typing import Any, Optional

import httpx
from loguru import logger

from pikup.core.config import Settings, get_settings
from pikup.core.exceptions import (
    AuthenticationError,
    NetworkError,
    NotFoundError,
    PreconditionFailedError,
    RemoteError,
    RequestTimeoutError,
)
from pikup.core.session import Session


def raise_for_status(response: httpx.Response) -> None:
    """Maps a non-2xx response onto the library's error taxonomy."""
    if response.is_success:
        return
    status = response.status_code
    body = response.text
    where = f"{response.request.method} {response.request.url.path}"
    if status in (401, 403):
        raise AuthenticationError(f"{where} rejected credentials ({status})")
    if status == 404:
        raise NotFoundError(f"{where} not found", status_code=status, body=body)
    if status in (409, 412) or (status == 400 and "FAILED_PRECONDITION" in body):
        raise PreconditionFailedError(f"{where} precondition failed", status_code=status, body=body)
    raise RemoteError(f"{where} failed with {status}", status_code=status, body=body)


class AuthorizedClient:
    """
    Thin async wrapper over httpx that refuses to send anything without a
    bearer token and classifies failures.

    ``transport`` lets tests and offline mode plug in an ``httpx.MockTransport``.
    """

    def __init__(
        self,
        base_url: str,
        session: Session,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.session = session
        timeout = httpx.Timeout(self.settings.request_timeout, connect=self.settings.connect_timeout)
        self._http = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    def headers(self) -> dict:
        token = self.session.require_token()
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token}",
        }

    async def request(self, method: str, path: str, *, params: Any = None, json: Any = None) -> httpx.Response:
        # fails before any network activity when the session has no token
        headers = self.headers()
        log = logger.bind(method=method, path=path)
        try:
            response = await self._http.request(method, path, params=params, json=json, headers=headers)
        except httpx.TimeoutException as e:
            log.warning(f"Request timed out: {e}")
            raise RequestTimeoutError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            log.warning(f"Transport error: {e}")
            raise NetworkError(f"{method} {path} failed: {e}") from e
        if not response.is_success:
            log.debug(f"-> {response.status_code} {response.text[:200]}")
        raise_for_status(response)
        return response

    async def aclose(self):
        await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()
