"""A small CloudEvents 1.0 event model used by the webhook servers."""

from __future__ import annotations

import base64
import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

SPEC_VERSION = "1.0"
APPLICATION_JSON = "application/json"
TEXT_PLAIN = "text/plain"

_EXTENSION_NAME = re.compile(r"[a-z0-9]+")
_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1


class DeliveryError(Exception):
    """Raised by a client when an event was not delivered or was rejected."""


def _media_type(content_type: str) -> str:
    return content_type.split(";", 1)[0].strip().lower()


def _is_json(content_type: str | None) -> bool:
    if not content_type:
        return False
    media = _media_type(content_type)
    return media in (APPLICATION_JSON, "text/json") or media.endswith("+json")


def _is_text(content_type: str | None) -> bool:
    return bool(content_type) and _media_type(content_type).startswith("text/")


def _timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat().replace("+00:00", "Z")


def _attribute(value: Any) -> Any:
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    if isinstance(value, datetime):
        return _timestamp(value)
    return value


@dataclass
class CloudEvent:
    """A CloudEvent with its context attributes, extensions and encoded data."""

    type: str = ""
    source: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    subject: str | None = None
    time: datetime | None = None
    data_content_type: str | None = None
    data: bytes | None = None
    extensions: dict[str, Any] = field(default_factory=dict)
    spec_version: str = SPEC_VERSION

    def set_extension(self, name: str, value: Any) -> None:
        """Set an extension attribute; a value of None removes it."""
        name = name.lower()
        if not _EXTENSION_NAME.fullmatch(name):
            raise ValueError(
                f"bad key {name!r}: CloudEvents attribute names must consist "
                "of lower-case letters and digits"
            )
        if value is None:
            self.extensions.pop(name, None)
            return
        if isinstance(value, bool) or isinstance(value, (str, bytes, datetime)):
            self.extensions[name] = value
            return
        if isinstance(value, int):
            if not _INT32_MIN <= value <= _INT32_MAX:
                raise ValueError(f"extension {name!r}: {value} is out of range for an integer attribute")
            self.extensions[name] = value
            return
        raise TypeError(f"extension {name!r}: unsupported value type {type(value).__name__}")

    def set_data(self, content_type: str, obj: Any) -> None:
        """Encode obj as the event data for the given content type."""
        self.data_content_type = content_type
        if isinstance(obj, (bytes, bytearray)):
            self.data = bytes(obj)
            return
        if _is_json(content_type):
            self.data = json.dumps(obj, separators=(",", ":")).encode("utf-8")
            return
        if _is_text(content_type) and isinstance(obj, str):
            self.data = obj.encode("utf-8")
            return
        raise ValueError(f"cannot encode {type(obj).__name__} as {content_type!r}")

    def data_json(self) -> Any:
        """Decode the event data as JSON; None when there is no data."""
        if self.data is None:
            return None
        return json.loads(self.data)

    def to_dict(self) -> dict[str, Any]:
        """Return the structured-mode JSON representation of the event."""
        out: dict[str, Any] = {
            "specversion": self.spec_version,
            "id": self.id,
            "source": self.source,
            "type": self.type,
        }
        if self.subject:
            out["subject"] = self.subject
        if self.time is not None:
            out["time"] = _timestamp(self.time)
        if self.data_content_type:
            out["datacontenttype"] = self.data_content_type
        for name, value in self.extensions.items():
            out[name] = _attribute(value)
        if self.data is not None:
            if _is_json(self.data_content_type):
                out["data"] = json.loads(self.data)
            elif _is_text(self.data_content_type):
                out["data"] = self.data.decode("utf-8")
            else:
                out["data_base64"] = base64.b64encode(self.data).decode("ascii")
        return out