"""A transport adapter that waits out GitHub secondary rate limits."""

from __future__ import annotations

import logging
import re
import threading
import time
from typing import Any

import requests
from requests.adapters import BaseAdapter, HTTPAdapter

# Canonical header names; lookups on responses are case-insensitive.
HEADER_RETRY_AFTER = "Retry-After"
# The time at which the current rate limit window resets, in UTC epoch seconds.
HEADER_X_RATELIMIT_RESET = "X-Ratelimit-Reset"
# The number of requests remaining in the current rate limit window.
HEADER_X_RATELIMIT_REMAINING = "X-Ratelimit-Remaining"

DEFAULT_RETRY_AFTER = 60.0

_RATE_LIMITED_STATUSES = (403, 429)
_INTEGER = re.compile(r"[+-]?\d+")

_log = logging.getLogger(__name__)


class Limiter:
    """Blocks callers while a pause is in effect."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pause_until: float | None = None
        self._pause_event: threading.Event | None = None

    def wait(self, timeout: float | None = None) -> None:
        """Block until no pause is in effect; raise TimeoutError after timeout seconds."""
        with self._lock:
            event = self._pause_event
        if event is not None and not event.wait(timeout):
            raise TimeoutError("timed out waiting for the rate limit pause to end")

    def pause_for(self, seconds: float) -> None:
        """Pause callers for the given number of seconds, unless a longer pause is active."""
        with self._lock:
            until = time.monotonic() + seconds
            if self._pause_until is not None and until <= self._pause_until:
                return
            self._pause_until = until
            if self._pause_event is not None:
                self._pause_event.set()
            event = threading.Event()
            self._pause_event = event
            timer = threading.Timer(max(seconds, 0.0), self._release, args=(event,))
            timer.daemon = True
            timer.start()

    def _release(self, event: threading.Event) -> None:
        with self._lock:
            if event is self._pause_event:
                event.set()
                self._pause_event = None
                self._pause_until = None


def _parse_int(value: str | None, header: str) -> int | None:
    if not value:
        return None
    if not _INTEGER.fullmatch(value):
        _log.warning("failed to parse %s header: %r is not an integer", header.lower(), value)
        return None
    return int(value)


class SecondaryRateLimitWaiter(BaseAdapter):
    """Retries requests that hit a rate limit once the limit has passed."""

    def __init__(self, base: BaseAdapter | None = None, default_retry_after: float = DEFAULT_RETRY_AFTER) -> None:
        super().__init__()
        self.base = base if base is not None else HTTPAdapter()
        self.limiter = Limiter()
        self.default_retry_after = default_retry_after

    def send(self, request: requests.PreparedRequest, **kwargs: Any) -> requests.Response:
        while True:
            self.limiter.wait()
            response = self.base.send(request, **kwargs)
            if not self._process_limit(response):
                return response
            response.close()

    def close(self) -> None:
        self.base.close()

    def _process_limit(self, response: requests.Response) -> bool:
        """Pause the limiter and return True if the response reports a rate limit."""
        if response.status_code not in _RATE_LIMITED_STATUSES:
            return False

        headers = response.headers
        retry_after = _parse_int(headers.get(HEADER_RETRY_AFTER), HEADER_RETRY_AFTER)
        remaining = _parse_int(headers.get(HEADER_X_RATELIMIT_REMAINING), HEADER_X_RATELIMIT_REMAINING)
        reset = _parse_int(headers.get(HEADER_X_RATELIMIT_RESET), HEADER_X_RATELIMIT_RESET)

        if retry_after is not None and retry_after > 0:
            self.limiter.pause_for(float(retry_after))
            return True

        # An absent remaining count is treated as zero.
        if (remaining or 0) == 0 and reset is not None:
            self.limiter.pause_for(reset - time.time())
            return True

        self.limiter.pause_for(self.default_retry_after)
        return True


def new_secondary_rate_limit_session(base: BaseAdapter | None = None) -> requests.Session:
    """Return a session whose HTTP(S) traffic waits out secondary rate limits."""
    session = requests.Session()
    waiter = SecondaryRateLimitWaiter(base)
    session.mount("https://", waiter)
    session.mount("http://", waiter)
    return session