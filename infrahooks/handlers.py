"""Event types and typed handlers for GitHub bot events."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar


class EventType(str, Enum):
    # GitHub events
    PULL_REQUEST = "dev.chainguard.github.pull_request"
    WORKFLOW_RUN = "dev.chainguard.github.workflow_run"
    ISSUES = "dev.chainguard.github.issues"
    ISSUE_COMMENT = "dev.chainguard.github.issue_comment"
    PUSH = "dev.chainguard.github.push"
    CHECK_RUN = "dev.chainguard.github.check_run"
    CHECK_SUITE = "dev.chainguard.github.check_suite"
    PROJECTS_V2_ITEM = "dev.chainguard.github.projects_v2_item"

    # LoFo events
    WORKFLOW_RUN_ARTIFACT = "dev.chainguard.lofo.workflow_run_artifacts"
    WORKFLOW_RUN_LOGS = "dev.chainguard.lofo.workflow_run_logs"


def _field(data: Mapping[str, Any], key: str, kind: type | tuple[type, ...], default: Any) -> Any:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, kind) or (isinstance(value, bool) and kind is int):
        raise ValueError(f"field {key!r}: unexpected {type(value).__name__} value")
    return value


def _timestamp(data: Mapping[str, Any], key: str) -> datetime | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, timezone.utc)
    if isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            return datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(f"field {key!r}: invalid timestamp {value!r}") from exc
    raise ValueError(f"field {key!r}: unexpected {type(value).__name__} value")


def _mapping(data: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ValueError(f"{what} must be a JSON object, not {type(data).__name__}")
    return data


@dataclass
class ProjectV2Item:
    id: int = 0
    node_id: str = ""
    project_node_id: str = ""
    content_node_id: str = ""
    content_type: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    archived_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ProjectV2Item:
        data = _mapping(data, "projects_v2_item")
        return cls(
            id=_field(data, "id", int, 0),
            node_id=_field(data, "node_id", str, ""),
            project_node_id=_field(data, "project_node_id", str, ""),
            content_node_id=_field(data, "content_node_id", str, ""),
            content_type=_field(data, "content_type", str, ""),
            created_at=_timestamp(data, "created_at"),
            updated_at=_timestamp(data, "updated_at"),
            archived_at=_timestamp(data, "archived_at"),
        )


@dataclass
class ProjectsV2ItemEvent:
    """A projects_v2_item event, with any action."""

    action: str = ""
    changes: Any = None
    projects_v2_item: ProjectV2Item | None = None
    organization: dict[str, Any] | None = None
    sender: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ProjectsV2ItemEvent:
        data = _mapping(data, "projects_v2_item event")
        item = data.get("projects_v2_item")
        return cls(
            action=_field(data, "action", str, ""),
            changes=data.get("changes"),
            projects_v2_item=None if item is None else ProjectV2Item.from_dict(item),
            organization=_field(data, "organization", dict, None),
            sender=_field(data, "sender", dict, None),
        )


class EventHandler:
    """A callable bound to the event type it handles.

    Handlers receive the context attributes and the decoded event body; the body
    is a plain mapping unless payload_type names a class with from_dict.
    """

    event_type: ClassVar[EventType]
    payload_type: ClassVar[type | None] = None

    def __init__(self, func: Callable[[Mapping[str, Any], Any], Any]) -> None:
        if not hasattr(type(self), "event_type"):
            raise TypeError(f"{type(self).__name__} does not declare an event type")
        self.func = func

    def __call__(self, context: Mapping[str, Any], event: Any) -> Any:
        return self.func(context, event)


class PullRequestHandler(EventHandler):
    event_type = EventType.PULL_REQUEST


class WorkflowRunHandler(EventHandler):
    event_type = EventType.WORKFLOW_RUN


class WorkflowRunLogsHandler(EventHandler):
    event_type = EventType.WORKFLOW_RUN_LOGS


class IssuesHandler(EventHandler):
    event_type = EventType.ISSUES


class IssueCommentHandler(EventHandler):
    event_type = EventType.ISSUE_COMMENT


class PushHandler(EventHandler):
    event_type = EventType.PUSH


class WorkflowRunArtifactHandler(EventHandler):
    event_type = EventType.WORKFLOW_RUN_ARTIFACT


class CheckRunHandler(EventHandler):
    event_type = EventType.CHECK_RUN


class CheckSuiteHandler(EventHandler):
    event_type = EventType.CHECK_SUITE


class ProjectsV2ItemHandler(EventHandler):
    event_type = EventType.PROJECTS_V2_ITEM
    payload_type = ProjectsV2ItemEvent