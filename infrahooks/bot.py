"""Dispatch CloudEvents carrying GitHub events to typed bot handlers."""

from __future__ import annotations

import json
import logging
import os
import signal
from collections.abc import Callable, Iterable, Mapping
from http import HTTPStatus
from typing import Any
from wsgiref.simple_server import make_server

from .cloudevents import CloudEvent
from .handlers import EventHandler
from .recorder import (
    BATCH_CONTENT_TYPE,
    STRUCTURED_CONTENT_TYPE,
    _binary_event,
    _media_type,
    _respond,
    _structured_event,
)

CONTEXT_KEY_ATTRIBUTES = "ce-attributes"
CONTEXT_KEY_TYPE = "ce-type"
CONTEXT_KEY_SUBJECT = "ce-subject"

DEFAULT_PORT = 8080

_log = logging.getLogger(__name__)


class UnknownHandlerError(TypeError):
    """A registered handler is not one of the known handler kinds."""


def _event_body(event: CloudEvent) -> Any:
    """Return the body of the wrapped GitHub event carried in the event's data."""
    raw = event.data
    if not raw:
        return {}
    try:
        wrapper = json.loads(raw)
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValueError(f"invalid event data: {exc}") from exc
    if wrapper is None:
        return {}
    if not isinstance(wrapper, Mapping):
        raise ValueError(f"event data must be a JSON object, not {type(wrapper).__name__}")
    key = "body" if "body" in wrapper else next((k for k in wrapper if k.lower() == "body"), None)
    body = wrapper.get(key) if key is not None else None
    return {} if body is None else body


class Bot:
    """A named set of handlers, at most one per event type."""

    def __init__(self, name: str, handlers: Iterable[Any] = ()) -> None:
        self.name = name
        self.handlers: dict[str, Any] = {}
        for handler in handlers:
            self.register_handler(handler)

    def register_handler(self, handler: Any) -> None:
        """Register a handler; raise ValueError if its event type already has one."""
        try:
            event_type = handler.event_type
        except AttributeError as exc:
            raise TypeError(f"{type(handler).__name__} does not declare an event type") from exc
        if event_type in self.handlers:
            raise ValueError(f"handler for event type {event_type} already registered")
        self.handlers[event_type] = handler

    def dispatch(self, event: CloudEvent) -> bool:
        """Pass the event to its handler; return False if no handler takes its type."""
        handler = self.handlers.get(event.type)
        if handler is None:
            _log.debug("ignoring event %s of type %s", event.id, event.type)
            return False
        if not isinstance(handler, EventHandler):
            raise UnknownHandlerError(f"unknown handler type {type(handler).__name__}")

        extensions = dict(event.extensions)
        context: dict[str, Any] = dict(extensions)
        context[CONTEXT_KEY_ATTRIBUTES] = extensions
        context[CONTEXT_KEY_TYPE] = event.type
        context[CONTEXT_KEY_SUBJECT] = event.subject or ""

        kind = str(handler.event_type.value).rsplit(".", 1)[-1]
        _log.debug("handling %s event", kind)
        try:
            body = _event_body(event)
            if handler.payload_type is not None:
                body = handler.payload_type.from_dict(body)
        except ValueError as exc:
            _log.error("failed to unmarshal %s event: %s", kind, exc)
            raise
        try:
            handler(context, body)
        except Exception as exc:
            _log.error("failed to handle %s event: %s", kind, exc)
            raise
        return True

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
            event = _structured_event(body) if media == STRUCTURED_CONTENT_TYPE else _binary_event(environ, body)
        except (ValueError, TypeError) as exc:
            return _respond(start_response, HTTPStatus.BAD_REQUEST, str(exc))
        try:
            self.dispatch(event)
        except Exception as exc:
            return _respond(start_response, HTTPStatus.INTERNAL_SERVER_ERROR, str(exc))
        return _respond(start_response, HTTPStatus.OK, "")


def attribute_from_context(context: Mapping[str, Any], key: str) -> Any:
    """Return the attribute stored under key, or None if it is absent."""
    return context.get(key)


def _interrupt(signum: int, frame: Any) -> None:
    raise KeyboardInterrupt


def serve(bot: Bot, port: int | None = None) -> None:
    """Receive events for the bot over HTTP; the port defaults to PORT or 8080."""
    if port is None:
        port = int(os.environ.get("PORT") or DEFAULT_PORT)
    signal.signal(signal.SIGTERM, _interrupt)
    with make_server("", port, bot) as server:
        _log.info("starting bot %s receiver on port %d", bot.name, port)
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            pass