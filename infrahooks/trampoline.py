"""Receive GitHub webhooks, verify them and forward them as CloudEvents."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
import urllib.parse
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from http import HTTPStatus
from typing import Any, Protocol

from .cloudevents import APPLICATION_JSON, CloudEvent, DeliveryError

SHA1_SIGNATURE_HEADER = "x-hub-signature"
SHA256_SIGNATURE_HEADER = "x-hub-signature-256"
EVENT_TYPE_HEADER = "x-github-event"
DELIVERY_ID_HEADER = "x-github-delivery"
HOOK_ID_HEADER = "x-github-hook-id"

EVENT_TYPE_PREFIX = "dev.chainguard.github."
RETRY_DELAY = 0.01
MAX_RETRY = 3

_log = logging.getLogger(__name__)


class WebhookValidationError(Exception):
    """Raised when a webhook delivery cannot be authenticated."""


class EventClient(Protocol):
    def send(self, event: CloudEvent) -> Any: ...


def _typed(doc: Mapping[str, Any], key: str, kind: type, default: Any) -> Any:
    value = doc.get(key)
    if value is None:
        return default
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise ValueError(f"field {key!r}: expected {kind.__name__}, got {type(value).__name__}")
    return value


def _section(doc: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    return _typed(doc, key, dict, {})


@dataclass(frozen=True)
class PayloadInfo:
    """The few webhook payload fields used to set event attributes."""

    action: str = ""
    number: int = 0
    repository_full_name: str = ""
    organization_login: str = ""
    pull_request_merged: bool = False

    @classmethod
    def from_payload(cls, payload: bytes) -> PayloadInfo:
        """Parse a JSON payload; raises ValueError when it cannot be read."""
        try:
            doc = json.loads(payload)
        except (ValueError, UnicodeDecodeError) as exc:
            raise ValueError(f"invalid JSON payload: {exc}") from exc
        if doc is None:
            return cls()
        if not isinstance(doc, dict):
            raise ValueError(f"payload is a JSON {type(doc).__name__}, not an object")
        return cls(
            action=_typed(doc, "action", str, ""),
            number=_typed(doc, "number", int, 0),
            repository_full_name=_typed(_section(doc, "repository"), "full_name", str, ""),
            organization_login=_typed(_section(doc, "organization"), "login", str, ""),
            pull_request_merged=_typed(_section(doc, "pull_request"), "merged", bool, False),
        )


@dataclass
class ServerOptions:
    secrets: list[bytes] = field(default_factory=list)
    # When set, only events from these webhook IDs are forwarded.
    webhook_id: list[str] = field(default_factory=list)
    # Events from these webhook IDs are forwarded only when they are "requested" check events.
    requested_only_webhook: list[str] = field(default_factory=list)
    org_filter: list[str] = field(default_factory=list)


@dataclass
class Response:
    status: int
    body: bytes = b""


def _lower_keys(headers: Mapping[str, str]) -> dict[str, str]:
    return {name.lower(): value for name, value in headers.items()}


def _media_type(value: str) -> str:
    media = value.split(";", 1)[0].strip().lower()
    if not media:
        raise WebhookValidationError("mime: no media type")
    return media


def _extract_payload(content_type: str, body: bytes) -> bytes:
    if content_type == "application/json":
        return body
    if content_type == "application/x-www-form-urlencoded":
        form = urllib.parse.parse_qs(body.decode("utf-8", errors="replace"))
        return form.get("payload", [""])[0].encode("utf-8")
    raise WebhookValidationError(f"webhook request has unsupported Content-Type {content_type!r}")


_HASHES = {"sha1": hashlib.sha1, "sha256": hashlib.sha256}


def _check_signature(signature: str, body: bytes, secret: bytes) -> None:
    algorithm, sep, digest = signature.partition("=")
    if not sep:
        raise WebhookValidationError("missing signature")
    if algorithm not in _HASHES:
        raise WebhookValidationError(f"unknown hash type prefix: {algorithm!r}")
    try:
        expected = bytes.fromhex(digest)
    except ValueError as exc:
        raise WebhookValidationError(f"error decoding signature {signature!r}") from exc
    actual = hmac.new(secret, body, _HASHES[algorithm]).digest()
    if not hmac.compare_digest(actual, expected):
        raise WebhookValidationError("payload signature check failed")


def validate_payload(headers: Mapping[str, str], body: bytes, secrets: Iterable[bytes]) -> bytes:
    """Return the payload if it verifies against any of the secrets.

    An empty secret accepts any signature.
    """
    lowered = _lower_keys(headers)
    signature = lowered.get(SHA256_SIGNATURE_HEADER) or lowered.get(SHA1_SIGNATURE_HEADER, "")
    content_type = _media_type(lowered.get("content-type", ""))
    for secret in secrets:
        try:
            payload = _extract_payload(content_type, body)
            if secret:
                _check_signature(signature, body, secret)
        except WebhookValidationError:
            continue
        return payload
    raise WebhookValidationError("failed to validate payload")


def extract_pull_request_info(event_type: str, info: PayloadInfo) -> str:
    """Return "org/repo#number" for pull_request events, otherwise ""."""
    if event_type != "pull_request":
        return ""
    if info.number > 0 and info.repository_full_name:
        return f"{info.repository_full_name}#{info.number}"
    return ""


def is_pull_request_merged(event_type: str, info: PayloadInfo) -> bool:
    """Whether this is a pull_request event closing a merged pull request."""
    if event_type != "pull_request":
        return False
    return info.action == "closed" and info.pull_request_merged


def _rfc3339(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = moment.strftime("%Y-%m-%dT%H:%M:%S")
    if moment.microsecond:
        text += f".{moment.microsecond:06d}".rstrip("0")
    offset = moment.utcoffset() or timedelta(0)
    if offset == timedelta(0):
        return text + "Z"
    seconds = int(offset.total_seconds())
    sign = "+" if seconds >= 0 else "-"
    seconds = abs(seconds)
    return f"{text}{sign}{seconds // 3600:02d}:{seconds % 3600 // 60:02d}"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Server:
    """Webhook receiver that forwards verified deliveries to an event client."""

    def __init__(
        self,
        client: EventClient,
        options: ServerOptions | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.client = client
        self.options = options or ServerOptions()
        self.clock = clock or _utc_now

    def handle(self, headers: Mapping[str, str], body: bytes, host: str) -> Response:
        """Process one webhook delivery and return the HTTP response."""
        h = _lower_keys(headers)
        opts = self.options

        try:
            payload = validate_payload(h, body, opts.secrets)
        except WebhookValidationError as exc:
            _log.error("failed to verify webhook: %s", exc)
            return Response(HTTPStatus.FORBIDDEN, f"failed to verify webhook: {exc}".encode())

        hook_type = h.get(EVENT_TYPE_HEADER, "")
        if not hook_type:
            _log.error("missing X-GitHub-Event header")
            return Response(HTTPStatus.BAD_REQUEST)

        hook_id = h.get(HOOK_ID_HEADER, "")
        delivery_id = h.get(DELIVERY_ID_HEADER, "")
        if any(hook_id != wanted for wanted in opts.webhook_id):
            _log.warning("ignoring event from webhook due to webhook_id %r %r", hook_id, delivery_id)
            return Response(HTTPStatus.ACCEPTED)

        try:
            info = PayloadInfo.from_payload(payload)
        except ValueError as exc:
            _log.warning("failed to unmarshal payload, cloud event headers will not be set: %s", exc)
            info = PayloadInfo()

        requested = hook_type in ("check_run", "check_suite") and info.action in (
            "requested",
            "rerequested",
            "requested_action",
        )
        if not requested and hook_id in opts.requested_only_webhook:
            _log.warning("ignoring event from webhook due to non-requested event %r %r", hook_id, delivery_id)
            return Response(HTTPStatus.ACCEPTED)

        repo = info.repository_full_name
        if opts.org_filter and info.organization_login not in opts.org_filter:
            _log.warning("ignoring event from repository %r due to non-matching org", repo)
            return Response(HTTPStatus.ACCEPTED)

        event_type = EVENT_TYPE_PREFIX + hook_type
        _log.debug("forwarding event: %s", event_type)

        event = CloudEvent(type=event_type, source=host, id=delivery_id, subject=repo or None)
        event.set_extension("action", info.action)
        if hook_id:
            event.set_extension("githubhook", hook_id)
        pull_request = extract_pull_request_info(hook_type, info)
        if pull_request:
            event.set_extension("pullrequest", pull_request)
        if is_pull_request_merged(hook_type, info):
            event.set_extension("merged", True)

        recorded = {
            "hook_id": h.get(HOOK_ID_HEADER, ""),
            "delivery_id": delivery_id,
            "user_agent": h.get("user-agent", ""),
            "event": hook_type,
            "installation_target_type": h.get("x-github-installation-target-type", ""),
            "installation_target_id": h.get("x-github-installation-target-id", ""),
        }
        try:
            event.set_data(
                APPLICATION_JSON,
                {
                    "when": _rfc3339(self.clock()),
                    "headers": {k: v for k, v in recorded.items() if v},
                    "body": json.loads(payload),
                },
            )
        except ValueError as exc:
            _log.error("failed to set data: %s", exc)
            return Response(HTTPStatus.INTERNAL_SERVER_ERROR)

        try:
            self._send(event)
        except DeliveryError as exc:
            _log.error("Failed to deliver event: %s", exc)
            return Response(HTTPStatus.INTERNAL_SERVER_ERROR)
        _log.debug("event forwarded")
        return Response(HTTPStatus.OK)

    def _send(self, event: CloudEvent) -> None:
        for attempt in range(MAX_RETRY + 1):
            try:
                self.client.send(event)
                return
            except DeliveryError:
                if attempt == MAX_RETRY:
                    raise
                time.sleep(RETRY_DELAY * 2**attempt)

    def __call__(self, environ: dict[str, Any], start_response: Callable[..., Any]) -> list[bytes]:
        headers = {
            key[5:].replace("_", "-").lower(): value
            for key, value in environ.items()
            if key.startswith("HTTP_")
        }
        if environ.get("CONTENT_TYPE"):
            headers["content-type"] = environ["CONTENT_TYPE"]
        try:
            length = int(environ.get("CONTENT_LENGTH") or 0)
        except ValueError:
            length = 0
        body = environ["wsgi.input"].read(length) if length > 0 else b""
        host = environ.get("HTTP_HOST") or environ.get("SERVER_NAME", "")

        response = self.handle(headers, body, host)
        status = HTTPStatus(response.status)
        start_response(
            f"{status.value} {status.phrase}",
            [
                ("Content-Type", "text/plain; charset=utf-8"),
                ("Content-Length", str(len(response.body))),
            ],
        )
        return [response.body]