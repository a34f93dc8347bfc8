"""Load webhook secrets from the environment."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping

PREFIX = "WEBHOOK_SECRET"

_log = logging.getLogger(__name__)


def load_from_env(environ: Mapping[str, str] | None = None) -> list[bytes]:
    """Return the value of every variable whose name starts with WEBHOOK_SECRET."""
    if environ is None:
        environ = os.environ
    found = []
    for name, value in environ.items():
        if name.startswith(PREFIX):
            _log.info("loading secret: %r", name)
            found.append(value.encode("utf-8"))
    return found