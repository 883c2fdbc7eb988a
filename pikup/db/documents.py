# pikup/db/documents.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import httpx
from loguru import logger

from pikup.core.config import Settings, get_settings
from pikup.core.exceptions import NotFoundError
from pikup.core.session import Session
from pikup.db.codec import DocumentCodec, default_codec, doc_id_from_name, parse_timestamp
from pikup.db.transport import AuthorizedClient

LIST_PAGE_SIZE = 300

# collection names used by the app
ORDERS = "pickupRequests"
USERS = "users"
DRIVERS = "drivers"
CONVERSATIONS = "conversations"
MESSAGES = "messages"


@dataclass
class StoredDocument:
    id: str
    fields: Dict[str, Any] = field(default_factory=dict)
    name: Optional[str] = None
    update_time: Optional[str] = None
    create_time: Optional[str] = None

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)

    @property
    def updated(self) -> Optional[datetime]:
        return parse_timestamp(self.update_time)


class RemoteDocumentClient(AuthorizedClient):
    """
    Reads and writes against the remote schema-less document store.

    Paths are relative to the database root, e.g. ``pickupRequests/abc`` or
    ``conversations/x/messages``.
    """

    def __init__(
        self,
        session: Session,
        settings: Optional[Settings] = None,
        codec: Optional[DocumentCodec] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = settings or get_settings()
        super().__init__(settings.base_url, session, settings=settings, transport=transport)
        self.codec = codec or default_codec

    def _params(self, extra: Iterable[Tuple[str, str]] = ()) -> List[Tuple[str, str]]:
        params = list(extra)
        if self.settings.api_key:
            params.append(("key", self.settings.api_key))
        return params

    def _to_document(self, raw: Mapping[str, Any], fallback_id: Optional[str] = None) -> StoredDocument:
        name = raw.get("name")
        return StoredDocument(
            id=doc_id_from_name(name) if name else (fallback_id or ""),
            fields=self.codec.decode_document(raw),
            name=name,
            update_time=raw.get("updateTime"),
            create_time=raw.get("createTime"),
        )

    # ---------- reads ----------
    async def get_document(self, collection: str, doc_id: str) -> StoredDocument:
        """Raises NotFoundError when the document does not exist."""
        r = await self.request("GET", f"{collection}/{doc_id}", params=self._params())
        return self._to_document(r.json(), fallback_id=doc_id)

    async def find_document(self, collection: str, doc_id: str) -> Optional[StoredDocument]:
        """Like get_document, but a missing document is an expected ``None``."""
        try:
            return await self.get_document(collection, doc_id)
        except NotFoundError:
            return None

    async def list_documents(self, collection: str, order_by: Optional[str] = None) -> List[StoredDocument]:
        """Every document in a collection; filtering is up to the caller."""
        docs: List[StoredDocument] = []
        page_token: Optional[str] = None
        while True:
            extra = [("pageSize", str(LIST_PAGE_SIZE))]
            if order_by:
                extra.append(("orderBy", order_by))
            if page_token:
                extra.append(("pageToken", page_token))
            r = await self.request("GET", collection, params=self._params(extra))
            data = r.json() or {}
            docs.extend(self._to_document(raw) for raw in data.get("documents") or [])
            page_token = data.get("nextPageToken")
            if not page_token:
                return docs

    # ---------- writes ----------
    async def set_document(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> StoredDocument:
        """Create or fully replace a document (no field mask)."""
        log = logger.bind(collection=collection, doc_id=doc_id)
        r = await self.request(
            "PATCH", f"{collection}/{doc_id}",
            params=self._params(), json=self.codec.encode_document(data),
        )
        log.debug("Document written.")
        return self._to_document(r.json(), fallback_id=doc_id)

    async def update_fields(
        self,
        collection: str,
        doc_id: str,
        updates: Mapping[str, Any],
        *,
        must_exist: bool = True,
        if_update_time: Optional[str] = None,
    ) -> StoredDocument:
        """
        Partial write. ``updates`` maps field paths (dotted for nested
        fields) to new values; the update mask names exactly those paths so
        every other field on the stored document is left alone.

        ``if_update_time`` turns the write into a compare-and-set on the
        document's last update time.
        """
        if not updates:
            return await self.get_document(collection, doc_id)
        extra = [("updateMask.fieldPaths", path) for path in updates]
        if if_update_time:
            extra.append(("currentDocument.updateTime", if_update_time))
        elif must_exist:
            extra.append(("currentDocument.exists", "true"))
        log = logger.bind(collection=collection, doc_id=doc_id, field_paths=list(updates))
        r = await self.request(
            "PATCH", f"{collection}/{doc_id}",
            params=self._params(extra), json=self.codec.encode_update(updates),
        )
        log.debug("Fields updated.")
        return self._to_document(r.json(), fallback_id=doc_id)

    async def delete_document(self, collection: str, doc_id: str) -> bool:
        """Returns False when there was nothing to delete."""
        try:
            await self.request("DELETE", f"{collection}/{doc_id}", params=self._params())
        except NotFoundError:
            logger.bind(collection=collection, doc_id=doc_id).debug("Delete of absent document ignored.")
            return False
        return True
