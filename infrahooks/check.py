"""Build GitHub Check Run requests with bounded markdown output."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

MAX_CHECK_OUTPUT_LENGTH = 65536
TRUNCATION_MESSAGE = "\n\n⚠️ _Summary has been truncated_"


class Status(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    WAITING = "waiting"
    REQUESTED = "requested"
    PENDING = "pending"


class Conclusion(str, Enum):
    ACTION_REQUIRED = "action_required"
    CANCELLED = "cancelled"
    FAILURE = "failure"
    # Neutral is sufficient to pass a required check.
    NEUTRAL = "neutral"
    SUCCESS = "success"
    TIMED_OUT = "timed_out"
    # Skipped is not sufficient to pass a required check.
    SKIPPED = "skipped"


@dataclass
class CheckRunOutput:
    title: str | None = None
    summary: str | None = None
    text: str | None = None


@dataclass
class CreateCheckRunOptions:
    name: str
    head_sha: str
    status: str | None = None
    conclusion: str | None = None
    output: CheckRunOutput | None = None


@dataclass
class UpdateCheckRunOptions:
    name: str
    status: str | None = None
    conclusion: str | None = None
    output: CheckRunOutput | None = None


_VERB = re.compile(r"%([-+# 0]*\d*(?:\.\d+)?)([a-zA-Z%])")


def _plain(arg: Any) -> str:
    if isinstance(arg, bool):
        return "true" if arg else "false"
    if arg is None:
        return "<nil>"
    return str(arg)


def _sprintf(fmt: str, args: tuple[Any, ...]) -> str:
    """Format with printf-style verbs, including %t, %v and %q."""
    remaining = iter(args)

    def replace(match: re.Match[str]) -> str:
        flags, verb = match.groups()
        if verb == "%":
            return "%"
        try:
            arg = next(remaining)
        except StopIteration:
            return f"%!{verb}(MISSING)"
        if verb in ("t", "v"):
            return f"%{flags}s" % _plain(arg)
        if verb == "q":
            return f"%{flags}s" % json.dumps(str(arg), ensure_ascii=False)
        return f"%{flags}{verb}" % (arg,)

    out = _VERB.sub(replace, fmt)
    extra = list(remaining)
    if extra:
        out += "%!(EXTRA " + ", ".join(_plain(a) for a in extra) + ")"
    return out


def _value(item: Any) -> Any:
    return item.value if isinstance(item, Enum) else item


class Builder:
    """Accumulates check run output and renders create/update requests."""

    def __init__(self, name: str, head_sha: str) -> None:
        self.name = name
        self.head_sha = head_sha
        self.summary = ""
        self.status: Status | None = None
        self.conclusion: Conclusion | None = None
        self._md = ""
        self._md_len = 0

    def writef(self, fmt: str, *args: Any) -> None:
        """Append a formatted line, truncating once the output limit is exceeded."""
        if self._md_len <= MAX_CHECK_OUTPUT_LENGTH:
            line = _sprintf(fmt, args) + "\n"
            self._md += line
            self._md_len += len(line.encode("utf-8"))

        if self._md_len > MAX_CHECK_OUTPUT_LENGTH:
            marker = TRUNCATION_MESSAGE.encode("utf-8")
            kept = self._md.encode("utf-8")[: MAX_CHECK_OUTPUT_LENGTH - len(marker)]
            self._md = kept.decode("utf-8", errors="ignore") + TRUNCATION_MESSAGE
            self._md_len = len(self._md.encode("utf-8"))

    def text(self) -> str:
        """Return the markdown written so far."""
        return self._md

    def check_run_create(self) -> CreateCheckRunOptions:
        """Return the request that creates a check run in the current state.

        An empty summary defaults to the name; a set conclusion marks the run completed.
        """
        if not self.summary:
            self.summary = self.name
        options = CreateCheckRunOptions(
            name=self.name,
            head_sha=self.head_sha,
            status=Status.IN_PROGRESS.value,
            output=CheckRunOutput(title=self.summary, summary=self.summary, text=self._md),
        )
        if self.conclusion:
            options.conclusion = _value(self.conclusion)
            options.status = Status.COMPLETED.value
        return options

    def check_run_update(self) -> UpdateCheckRunOptions:
        """Return the request that updates a check run to the current state."""
        create = self.check_run_create()
        output = create.output or CheckRunOutput()
        return UpdateCheckRunOptions(
            name=create.name,
            status=create.status,
            conclusion=create.conclusion,
            output=CheckRunOutput(title=output.title, summary=output.summary, text=output.text),
        )