"""Record received CloudEvents to files grouped by event type."""

from __future__ import annotations

import argparse
import base64
import binascii
import json
import logging
import os
import shutil
import signal
import threading
import urllib.parse
from collections.abc import Callable
from datetime import datetime
from http import HTTPStatus
from pathlib import Path
from typing import Any
from wsgiref.simple_server import make_server

from .cloudevents import CloudEvent

DEFAULT_PORT = 8080
STRUCTURED_CONTENT_TYPE = "application/cloudevents+json"
BATCH_CONTENT_TYPE = "application/cloudevents-batch+json"

_REQUIRED = ("specversion", "id", "source", "type")
_log = logging.getLogger(__name__)


def _media_type(content_type: str) -> str:
    return content_type.split(";", 1)[0].strip().lower()


def _is_json(content_type: str | None) -> bool:
    if not content_type:
        return True
    media = _media_type(content_type)
    return media in ("application/json", "text/json") or media.endswith("+json")


def _parse_time(value: str) -> datetime:
    text = value[:-1] + "+00:00" if value.endswith(("Z", "z")) else value
    try:
        return datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"invalid time attribute {value!r}") from exc


def _require(attributes: dict[str, Any]) -> None:
    missing = [name for name in _REQUIRED if not attributes.get(name)]
    if missing:
        raise ValueError(f"missing required attributes: {', '.join(missing)}")


def _binary_event(environ: dict[str, Any], body: bytes) -> CloudEvent:
    attributes = {
        key[len("HTTP_CE_"):].replace("_", "").lower(): urllib.parse.unquote(value)
        for key, value in environ.items()
        if key.startswith("HTTP_CE_")
    }
    _require(attributes)
    event = CloudEvent(
        type=attributes.pop("type"),
        source=attributes.pop("source"),
        id=attributes.pop("id"),
        spec_version=attributes.pop("specversion"),
        subject=attributes.pop("subject", None) or None,
        data_content_type=environ.get("CONTENT_TYPE") or None,
        data=body or None,
    )
    time_value = attributes.pop("time", None)
    if time_value:
        event.time = _parse_time(time_value)
    attributes.pop("dataschema", None)
    for name, value in attributes.items():
        event.set_extension(name, value)
    return event


def _structured_event(body: bytes) -> CloudEvent:
    try:
        doc = json.loads(body)
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValueError(f"invalid structured event: {exc}") from exc
    if not isinstance(doc, dict):
        raise ValueError("structured event must be a JSON object")
    _require(doc)
    content_type = doc.pop("datacontenttype", None)
    event = CloudEvent(
        type=str(doc.pop("type")),
        source=str(doc.pop("source")),
        id=str(doc.pop("id")),
        spec_version=str(doc.pop("specversion")),
        subject=doc.pop("subject", None) or None,
        data_content_type=content_type,
    )
    time_value = doc.pop("time", None)
    if time_value:
        event.time = _parse_time(str(time_value))
    doc.pop("dataschema", None)
    if "data_base64" in doc:
        try:
            event.data = base64.b64decode(doc.pop("data_base64"), validate=True)
        except (binascii.Error, TypeError, ValueError) as exc:
            raise ValueError(f"invalid data_base64: {exc}") from exc
    elif "data" in doc:
        data = doc.pop("data")
        if isinstance(data, str) and not _is_json(content_type):
            event.data = data.encode("utf-8")
        else:
            event.data = json.dumps(data, separators=(",", ":")).encode("utf-8")
    for name, value in doc.items():
        event.set_extension(name, value)
    return event


def _remove_all(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


class Recorder:
    """Writes the data of each event to <log_path>/<type>/<id>."""

    def __init__(self, log_path: str | os.PathLike[str]) -> None:
        self.log_path = Path(log_path)

    def record(self, event: CloudEvent) -> Path:
        """Write the event's data to its file and return the file's path."""
        directory = self.log_path / event.type.lstrip("/")
        directory.mkdir(mode=0o755, parents=True, exist_ok=True)
        filename = directory / event.id.lstrip("/")
        try:
            fd = os.open(filename, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as fh:
                fh.write(event.data or b"")
        except OSError as exc:
            _log.warning("failed to write file %s; %s", filename, exc)
            try:
                _remove_all(filename)
            except OSError as rm_exc:
                _log.warning("failed to remove failed write file: %s; %s", filename, rm_exc)
            raise
        return filename

    def __call__(self, environ: dict[str, Any], start_response: Callable[..., Any]) -> list[bytes]:
        if environ.get("REQUEST_METHOD", "GET").upper() != "POST":
            return _respond(start_response, HTTPStatus.METHOD_NOT_ALLOWED, "", [("Allow", "POST")])
        try:
            length = int(environ.get("CONTENT_LENGTH") or 0)
        except ValueError:
            length = 0
        body = environ["wsgi.input"].read(length) if length > 0 else b""
        media = _media_type(environ.get("CONTENT_TYPE", ""))

        try:
            if media == BATCH_CONTENT_TYPE:
                raise ValueError("batched events are not supported")
            if media == STRUCTURED_CONTENT_TYPE:
                event = _structured_event(body)
            else:
                event = _binary_event(environ, body)
        except (ValueError, TypeError) as exc:
            return _respond(start_response, HTTPStatus.BAD_REQUEST, str(exc))

        try:
            self.record(event)
        except OSError as exc:
            return _respond(start_response, HTTPStatus.INTERNAL_SERVER_ERROR, str(exc))
        return _respond(start_response, HTTPStatus.OK, "")


def _respond(
    start_response: Callable[..., Any],
    status: HTTPStatus,
    message: str,
    extra: list[tuple[str, str]] | None = None,
) -> list[bytes]:
    body = message.encode("utf-8")
    headers = [
        ("Content-Type", "text/plain; charset=utf-8"),
        ("Content-Length", str(len(body))),
        *(extra or []),
    ]
    start_response(f"{status.value} {status.phrase}", headers)
    return [body]


def main(argv: list[str] | None = None) -> int:
    """Serve the recorder; configured by PORT and LOG_PATH."""
    parser = argparse.ArgumentParser(prog="recorder", description="Record CloudEvents to files.")
    parser.add_argument("--port", type=int, default=None, help="port to listen on (env PORT)")
    parser.add_argument("--log-path", default=None, help="directory to write events to (env LOG_PATH)")
    args = parser.parse_args(argv)

    log_path = args.log_path or os.environ.get("LOG_PATH")
    if not log_path:
        parser.error("LOG_PATH is required")
    port = args.port
    if port is None:
        try:
            port = int(os.environ.get("PORT") or DEFAULT_PORT)
        except ValueError:
            parser.error("PORT must be an integer")

    with make_server("", port, Recorder(log_path)) as server:

        def _stop(signum: int, frame: Any) -> None:
            # shutdown() blocks until serve_forever returns, so run it off the serving thread.
            threading.Thread(target=server.shutdown, daemon=True).start()

        signal.signal(signal.SIGTERM, _stop)
        _log.info("recording events to %s on port %d", log_path, port)
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            pass
    return 0