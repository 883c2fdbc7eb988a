# pikup/db/codec.py
"""
Typed-field document codec.

Every stored value is wrapped in a single-key marker object
(``{"stringValue": "..."}``, ``{"integerValue": "5"}`` ...). Encoding keeps
at most two levels of structure: a top-level object or array holds typed
sub-fields, and anything structured found inside that level is flattened
to a JSON string. Existing stored documents rely on this exact shape.

On decode, strings that start with ``{`` or ``[`` are parsed back into
structures when they are valid JSON. That is how the flattened values are
recovered by older clients; pass ``parse_json_strings=False`` to keep every
stored string a string.

Timestamps always decode as timezone-aware UTC datetimes. The store keeps
no zone information, so a naive datetime is written as UTC and read back
as the same instant with ``tzinfo=timezone.utc``.
"""
from __future__ import annotations

import json
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional


def format_timestamp(value: datetime) -> str:
    """
    ISO-8601 in UTC with a trailing Z. Whole milliseconds are written with
    three fractional digits, anything finer with all six, so no precision
    is lost. Naive datetimes are taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    if value.microsecond % 1000:
        fraction = f"{value.microsecond:06d}"
    else:
        fraction = f"{value.microsecond // 1000:03d}"
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + fraction + "Z"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accepts datetimes, ISO strings (with or without Z) and None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # fromisoformat before 3.11 only takes 3 or 6 fractional digits
    if "." in text:
        head, _, tail = text.partition(".")
        frac = ""
        rest = ""
        for i, ch in enumerate(tail):
            if not ch.isdigit():
                rest = tail[i:]
                break
            frac += ch
        text = f"{head}.{(frac + '000000')[:6]}{rest}"
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _stringify(value: Any) -> str:
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


class DocumentCodec:
    def __init__(self, parse_json_strings: bool = True):
        self.parse_json_strings = parse_json_strings

    # ---------- encode ----------
    def _encode_primitive(self, value: Any) -> Optional[dict]:
        if value is None:
            return {"nullValue": None}
        if isinstance(value, str):
            return {"stringValue": value}
        if isinstance(value, bool):  # before int, bool is an int subclass
            return {"booleanValue": value}
        if isinstance(value, int):
            return {"integerValue": str(value)}
        if isinstance(value, float):
            if value.is_integer():
                return {"integerValue": str(int(value))}
            return {"doubleValue": value}
        if isinstance(value, datetime):
            return {"timestampValue": format_timestamp(value)}
        return None

    def _encode_flat_fields(self, obj: Mapping[str, Any]) -> Dict[str, dict]:
        """One nested level: primitives stay typed, anything structured becomes a string."""
        fields = {}
        for key, nested in obj.items():
            encoded = self._encode_primitive(nested)
            if encoded is None:
                encoded = {"stringValue": _stringify(nested) if isinstance(nested, (list, tuple, dict)) else str(nested)}
            fields[str(key)] = encoded
        return fields

    def _encode_array(self, items: Iterable[Any]) -> dict:
        values = []
        for item in items:
            encoded = self._encode_primitive(item)
            if encoded is not None:
                values.append(encoded)
            elif isinstance(item, Mapping):
                try:
                    values.append({"mapValue": {"fields": self._encode_flat_fields(item)}})
                except Exception:
                    values.append({"stringValue": str(item)})
            elif isinstance(item, (list, tuple)):
                values.append({"stringValue": _stringify(list(item))})
            else:
                values.append({"stringValue": str(item)})
        return {"arrayValue": {"values": values}}

    def encode_value(self, value: Any) -> dict:
        encoded = self._encode_primitive(value)
        if encoded is not None:
            return encoded
        try:
            if isinstance(value, (list, tuple)):
                if not value:
                    return {"arrayValue": {"values": []}}
                return self._encode_array(value)
            if isinstance(value, Mapping):
                return {"mapValue": {"fields": self._encode_flat_fields(value)}}
        except Exception:
            return {"stringValue": _stringify(value)}
        return {"stringValue": str(value)}

    def encode_fields(self, data: Mapping[str, Any]) -> Dict[str, dict]:
        return {str(key): self.encode_value(value) for key, value in data.items()}

    def encode_document(self, data: Mapping[str, Any]) -> dict:
        return {"fields": self.encode_fields(data)}

    def encode_update(self, updates: Mapping[str, Any]) -> dict:
        """
        Body for a masked write. Keys may be dotted paths
        (``driverLocation.latitude``); each segment becomes a map level and
        only the leaf goes through the normal encoding rules.
        """
        root: Dict[str, dict] = {}
        for path, value in updates.items():
            segments = path.split(".")
            fields = root
            for segment in segments[:-1]:
                holder = fields.setdefault(segment, {"mapValue": {"fields": {}}})
                fields = holder["mapValue"].setdefault("fields", {})
            fields[segments[-1]] = self.encode_value(value)
        return {"fields": root}

    # ---------- decode ----------
    def _decode_string(self, text: str) -> Any:
        if self.parse_json_strings and text.startswith(("{", "[")):
            try:
                return json.loads(text)
            except ValueError:
                return text
        return text

    def decode_value(self, field: Any) -> Any:
        if not isinstance(field, Mapping):
            return field
        if "nullValue" in field:
            return None
        if "stringValue" in field:
            return self._decode_string(field["stringValue"])
        if "integerValue" in field:
            return int(field["integerValue"])
        if "doubleValue" in field:
            return float(field["doubleValue"])
        if "booleanValue" in field:
            return bool(field["booleanValue"])
        if "timestampValue" in field:
            return parse_timestamp(field["timestampValue"])
        if "mapValue" in field:
            return self.decode_fields((field["mapValue"] or {}).get("fields") or {})
        if "arrayValue" in field:
            return [self.decode_value(item) for item in (field["arrayValue"] or {}).get("values") or []]
        if "geoPointValue" in field:
            point = field["geoPointValue"] or {}
            return {"latitude": point.get("latitude", 0.0), "longitude": point.get("longitude", 0.0)}
        if "referenceValue" in field:
            return field["referenceValue"]
        return field

    def decode_fields(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        return {key: self.decode_value(value) for key, value in fields.items()}

    def decode_document(self, doc: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        if not doc:
            return {}
        if "fields" in doc:
            return self.decode_fields(doc["fields"] or {})
        if "name" in doc:
            # stored document with no fields at all
            return {}
        return self.decode_fields(doc)


def doc_id_from_name(name: str) -> str:
    return name.rstrip("/").rsplit("/", 1)[-1]


default_codec = DocumentCodec()


def encode(value: Any) -> dict:
    return default_codec.encode_value(value)


def decode(field: Any) -> Any:
    return default_codec.decode_value(field)
