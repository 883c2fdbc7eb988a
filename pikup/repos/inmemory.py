# pikup/repos/inmemory.py
"""
In-process document store speaking the same REST wire format as the remote
store. Mount it with ``httpx.MockTransport(store.handler)``; used by the
test-suite and by demo mode (``PIKUP_USE_INMEMORY_STORE=1``).
"""
import copy
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set
from urllib.parse import unquote

import httpx

from pikup.db.codec import DocumentCodec

DB_PREFIX = "projects/demo/databases/(default)/documents"
_MISSING = object()


def _error(status: int, code: str, message: str) -> httpx.Response:
    return httpx.Response(status, json={"error": {"code": status, "status": code, "message": message}})


class InMemoryDocumentStore:
    def __init__(self, valid_tokens: Optional[Set[str]] = None, codec: Optional[DocumentCodec] = None):
        self.docs: Dict[str, dict] = {}
        self.valid_tokens = valid_tokens
        self.codec = codec or DocumentCodec()
        self.calls: List[dict] = []
        self._last_time = datetime.now(timezone.utc)

    # ---------- helpers for tests / seeding ----------
    def put(self, path: str, data: Dict[str, Any]) -> dict:
        now = self._tick()
        self.docs[path] = {"fields": self.codec.encode_fields(data), "createTime": now, "updateTime": now}
        return self.docs[path]

    def fields(self, path: str) -> Dict[str, Any]:
        return self.codec.decode_document(self.docs[path])

    def raw(self, path: str) -> dict:
        return self.docs[path]

    def writes(self, path: Optional[str] = None) -> List[dict]:
        return [c for c in self.calls if c["method"] == "PATCH" and (path is None or c["path"] == path)]

    def _tick(self) -> str:
        now = datetime.now(timezone.utc)
        if now <= self._last_time:
            now = self._last_time + timedelta(microseconds=1)
        self._last_time = now
        return now.strftime("%Y-%m-%dT%H:%M:%S.%fZ")

    def _render(self, path: str) -> dict:
        doc = self.docs[path]
        return {
            "name": f"{DB_PREFIX}/{path}",
            "fields": copy.deepcopy(doc["fields"]),
            "createTime": doc["createTime"],
            "updateTime": doc["updateTime"],
        }

    # ---------- transport ----------
    def handler(self, request: httpx.Request) -> httpx.Response:
        raw_path = unquote(request.url.path)
        if "/documents" not in raw_path:
            return _error(404, "NOT_FOUND", "unknown route")
        path = raw_path.split("/documents", 1)[1].strip("/")
        params = request.url.params
        self.calls.append({"method": request.method, "path": path, "params": list(params.multi_items())})

        auth = request.headers.get("Authorization", "")
        if not auth.startswith("Bearer "):
            return _error(401, "UNAUTHENTICATED", "missing credential")
        if self.valid_tokens is not None and auth[len("Bearer "):] not in self.valid_tokens:
            return _error(403, "PERMISSION_DENIED", "credential rejected")

        is_document = len(path.split("/")) % 2 == 0
        if request.method == "GET":
            return self._get(path, params) if is_document else self._list(path, params)
        if request.method == "PATCH" and is_document:
            body = json.loads(request.content or b"{}")
            return self._patch(path, params, body.get("fields") or {})
        if request.method == "DELETE" and is_document:
            if path not in self.docs:
                return _error(404, "NOT_FOUND", f"No document to delete: {path}")
            del self.docs[path]
            return httpx.Response(200, json={})
        return _error(400, "INVALID_ARGUMENT", f"unsupported {request.method} {path}")

    def _get(self, path: str, params) -> httpx.Response:
        if path not in self.docs:
            return _error(404, "NOT_FOUND", f"Document {path} not found.")
        return httpx.Response(200, json=self._render(path))

    def _list(self, path: str, params) -> httpx.Response:
        depth = len(path.split("/")) + 1
        children = sorted(
            p for p in self.docs
            if p.startswith(path + "/") and len(p.split("/")) == depth
        )
        size = int(params.get("pageSize", "0") or 0) or len(children) or 1
        offset = int(params.get("pageToken", "0") or 0)
        page = children[offset:offset + size]
        out: Dict[str, Any] = {}
        if page:
            out["documents"] = [self._render(p) for p in page]
        if offset + size < len(children):
            out["nextPageToken"] = str(offset + size)
        return httpx.Response(200, json=out)

    def _patch(self, path: str, params, body_fields: dict) -> httpx.Response:
        exists = path in self.docs
        must_exist = params.get("currentDocument.exists")
        if must_exist == "true" and not exists:
            return _error(404, "NOT_FOUND", f"No document to update: {path}")
        if must_exist == "false" and exists:
            return _error(409, "ALREADY_EXISTS", f"Document already exists: {path}")
        expected = params.get("currentDocument.updateTime")
        if expected is not None and (not exists or self.docs[path]["updateTime"] != expected):
            return _error(400, "FAILED_PRECONDITION", "the stored version does not match the required base version")

        mask = params.get_list("updateMask.fieldPaths")
        now = self._tick()
        if not exists:
            self.docs[path] = {"fields": {}, "createTime": now, "updateTime": now}
        doc = self.docs[path]
        if mask:
            for field_path in mask:
                segments = field_path.split(".")
                value = self._lookup(body_fields, segments)
                if value is _MISSING:
                    self._remove(doc["fields"], segments)
                else:
                    self._assign(doc["fields"], segments, copy.deepcopy(value))
        else:
            doc["fields"] = copy.deepcopy(body_fields)
        doc["updateTime"] = now
        return httpx.Response(200, json=self._render(path))

    @staticmethod
    def _lookup(fields: dict, segments: List[str]) -> Any:
        node: Any = {"mapValue": {"fields": fields}}
        for seg in segments:
            inner = (node.get("mapValue") or {}).get("fields") if isinstance(node, dict) else None
            if not inner or seg not in inner:
                return _MISSING
            node = inner[seg]
        return node

    @staticmethod
    def _assign(fields: dict, segments: List[str], value: dict):
        for seg in segments[:-1]:
            node = fields.get(seg)
            if not isinstance(node, dict) or "mapValue" not in node:
                node = fields[seg] = {"mapValue": {"fields": {}}}
            fields = node["mapValue"].setdefault("fields", {})
        fields[segments[-1]] = value

    @staticmethod
    def _remove(fields: dict, segments: List[str]):
        for seg in segments[:-1]:
            node = fields.get(seg)
            if not isinstance(node, dict) or "mapValue" not in node:
                return
            fields = node["mapValue"].get("fields") or {}
        fields.pop(segments[-1], None)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)
