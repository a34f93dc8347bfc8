"""Typed records for GitHub webhook events as they are stored for analysis.

Every scalar is nullable, nested records are always present, and optional
sub-records are None when absent. Field names are the JSON and column names.
"""

import json
import re
import types
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Generic, Optional, TypeVar, Union, get_args, get_origin

T = TypeVar("T")

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)


def _optional() -> Any:
    """A sub-record that is left out of the encoding when absent."""
    return field(default=None, metadata={"omitempty": True})


def _many(omit_empty: bool = True) -> Any:
    return field(default_factory=list, metadata={"omitempty": omit_empty})


@dataclass
class GitHubHeaders:
    hook_id: Optional[str] = None
    delivery_id: Optional[str] = None
    user_agent: Optional[str] = None
    event: Optional[str] = None
    installation_target_type: Optional[str] = None
    installation_target_id: Optional[str] = None


@dataclass
class User:
    login: Optional[str] = None
    type: Optional[str] = None


@dataclass
class Organization:
    login: Optional[str] = None


@dataclass
class Repository:
    owner: User = field(default_factory=User)
    name: Optional[str] = None
    url: Optional[str] = None
    full_name: Optional[str] = None


@dataclass
class Installation:
    # Installation ID
    id: Optional[int] = None
    app_id: Optional[int] = None


@dataclass
class PullRequestBranch:
    ref: Optional[str] = None
    sha: Optional[str] = None
    repo: Repository = field(default_factory=Repository)
    user: User = field(default_factory=User)


@dataclass
class Label:
    name: Optional[str] = None


@dataclass
class PullRequest:
    number: Optional[int] = None
    state: Optional[str] = None
    title: Optional[str] = None

    base: PullRequestBranch = field(default_factory=PullRequestBranch)
    head: PullRequestBranch = field(default_factory=PullRequestBranch)

    labels: list[Label] = _many(omit_empty=False)

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    merged_at: Optional[datetime] = None

    mergeable: Optional[bool] = None
    mergeable_state: Optional[str] = None
    merged_by: User = field(default_factory=User)
    merge_commit_sha: Optional[str] = None

    additions: Optional[int] = None
    deletions: Optional[int] = None
    changed_files: Optional[int] = None


@dataclass
class PullRequestLinks:
    url: Optional[str] = None
    html_url: Optional[str] = None
    diff_url: Optional[str] = None
    patch_url: Optional[str] = None
    merged_at: Optional[datetime] = None


@dataclass
class PullRequestEvent:
    # assigned, opened, etc.
    action: Optional[str] = None
    sender: User = field(default_factory=User)
    assignee: User = field(default_factory=User)
    repository: Repository = field(default_factory=Repository)
    organization: Organization = field(default_factory=Organization)

    pull_request: PullRequest = field(default_factory=PullRequest)

    # Populated when the action is synchronize.
    before: Optional[str] = None
    after: Optional[str] = None

    installation: Optional[Installation] = _optional()


@dataclass
class PushEventRepository:
    owner: User = field(default_factory=User)
    name: Optional[str] = None
    url: Optional[str] = None
    full_name: Optional[str] = None


@dataclass
class PushEvent:
    push_id: Optional[int] = None
    head: Optional[str] = None
    ref: Optional[str] = None
    size: Optional[int] = None
    before: Optional[str] = None
    distinct_size: Optional[int] = None

    # Only populated by webhook events.
    action: Optional[str] = None
    after: Optional[str] = None
    base_ref: Optional[str] = None
    repository: PushEventRepository = field(default_factory=PushEventRepository)
    sender: User = field(default_factory=User)

    organization: Organization = field(default_factory=Organization)

    installation: Optional[Installation] = _optional()


@dataclass
class Workflow:
    id: Optional[int] = None
    name: Optional[str] = None
    path: Optional[str] = None
    state: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class WorkflowRun:
    id: Optional[int] = None
    run_number: Optional[int] = None
    run_attempt: Optional[int] = None
    head_branch: Optional[str] = None
    head_sha: Optional[str] = None
    name: Optional[str] = None
    event: Optional[str] = None
    status: Optional[str] = None
    run_started_at: Optional[datetime] = None

    # success, failure, cancelled, etc.
    conclusion: Optional[str] = None


@dataclass
class WorkflowRunEvent:
    # completed, etc.
    action: Optional[str] = None
    workflow: Workflow = field(default_factory=Workflow)
    workflow_run: WorkflowRun = field(default_factory=WorkflowRun)
    organization: Organization = field(default_factory=Organization)
    repository: Repository = field(default_factory=Repository)
    sender: User = field(default_factory=User)
    installation: Optional[Installation] = _optional()


@dataclass
class Issue:
    id: Optional[int] = None
    number: Optional[int] = None
    state: Optional[str] = None
    state_reason: Optional[str] = None
    locked: Optional[bool] = None
    title: Optional[str] = None
    body: Optional[str] = None
    author_association: Optional[str] = None
    user: User = field(default_factory=User)
    labels: list[Label] = _many(omit_empty=False)
    assignee: User = field(default_factory=User)
    comments: Optional[int] = None
    closed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    closed_by: User = field(default_factory=User)
    url: Optional[str] = None
    html_url: Optional[str] = None
    comments_url: Optional[str] = None
    events_url: Optional[str] = None
    labels_url: Optional[str] = None
    repository_url: Optional[str] = None
    pull_request: PullRequestLinks = field(default_factory=PullRequestLinks)
    repository: Repository = field(default_factory=Repository)
    assignees: list[User] = _many()
    node_id: Optional[str] = None
    draft: Optional[bool] = None


@dataclass
class IssueComment:
    url: Optional[str] = None
    html_url: Optional[str] = None
    diff_url: Optional[str] = None
    patch_url: Optional[str] = None
    merged_at: Optional[datetime] = None


@dataclass
class IssueCommentEvent:
    action: Optional[str] = None
    issue: Issue = field(default_factory=Issue)
    comment: IssueComment = field(default_factory=IssueComment)
    repository: Repository = field(default_factory=Repository)
    sender: User = field(default_factory=User)
    organization: Organization = field(default_factory=Organization)
    installation: Optional[Installation] = _optional()


@dataclass
class IssueEvent:
    id: Optional[int] = None
    url: Optional[str] = None
    actor: User = field(default_factory=User)
    action: Optional[str] = None
    event: Optional[str] = None
    created_at: Optional[datetime] = None
    issue: Issue = field(default_factory=Issue)
    repository: Repository = field(default_factory=Repository)
    assignee: User = field(default_factory=User)
    assigner: User = field(default_factory=User)
    commit_id: Optional[str] = None
    label: Label = field(default_factory=Label)
    lock_reason: Optional[str] = None
    requested_reviewer: User = field(default_factory=User)
    review_requester: User = field(default_factory=User)
    installation: Optional[Installation] = _optional()


@dataclass
class CheckSuite:
    id: Optional[int] = None
    head_sha: Optional[str] = None
    status: Optional[str] = None
    conclusion: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    repository: Repository = field(default_factory=Repository)
    pull_requests: list[PullRequest] = _many()


@dataclass
class CheckRun:
    id: Optional[int] = None
    head_sha: Optional[str] = None
    status: Optional[str] = None
    conclusion: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    name: Optional[str] = None
    check_suite: Optional[CheckSuite] = _optional()
    pull_requests: list[PullRequest] = _many()


@dataclass
class CheckRunEvent:
    action: Optional[str] = None
    check_run: CheckRun = field(default_factory=CheckRun)
    repository: Repository = field(default_factory=Repository)
    organization: Organization = field(default_factory=Organization)
    sender: User = field(default_factory=User)
    installation: Optional[Installation] = _optional()


@dataclass
class CheckSuiteEvent:
    action: Optional[str] = None
    check_suite: Optional[CheckSuite] = _optional()
    repository: Repository = field(default_factory=Repository)
    organization: Organization = field(default_factory=Organization)
    sender: User = field(default_factory=User)
    installation: Optional[Installation] = _optional()


@dataclass
class ProjectV2Item:
    id: Optional[int] = None
    node_id: Optional[str] = None
    project_node_id: Optional[str] = None
    content_node_id: Optional[str] = None
    content_type: Optional[str] = None
    creator: Optional[User] = _optional()
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None


@dataclass
class ProjectsV2ItemEvent:
    action: Optional[str] = None
    changes: Any = None
    projects_v2_item: Optional[ProjectV2Item] = _optional()
    organization: Optional[Organization] = _optional()
    sender: Optional[User] = _optional()
    installation: Optional[Installation] = _optional()


@dataclass
class Wrapper(Generic[T]):
    """An event body together with when it was received and its delivery headers."""

    when: datetime = ZERO_TIME
    headers: Optional[GitHubHeaders] = None
    body: T = None  # type: ignore[assignment]


_TIME = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?(?:([Zz])|([+-])(\d{2}):(\d{2}))"
)
_UNION_TYPES = (Union, types.UnionType)


def _parse_time(value: str, path: str) -> datetime:
    match = _TIME.fullmatch(value)
    if match is None:
        raise ValueError(f"{path}: invalid timestamp {value!r}")
    year, month, day, hour, minute, second, fraction, utc, sign, off_h, off_m = match.groups()
    if utc:
        tz = timezone.utc
    else:
        offset = timedelta(hours=int(off_h), minutes=int(off_m))
        tz = timezone(offset if sign == "+" else -offset)
    micro = int((fraction or "")[:6].ljust(6, "0"))
    try:
        return datetime(
            int(year), int(month), int(day), int(hour), int(minute), int(second), micro, tzinfo=tz
        )
    except ValueError as exc:
        raise ValueError(f"{path}: invalid timestamp {value!r}: {exc}") from exc


def _format_time(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d}"
        f"T{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
    )
    if moment.microsecond:
        text += f".{moment.microsecond:06d}".rstrip("0")
    offset = moment.utcoffset() or timedelta(0)
    if offset == timedelta(0):
        return text + "Z"
    seconds = int(offset.total_seconds())
    sign = "+" if seconds >= 0 else "-"
    seconds = abs(seconds)
    return f"{text}{sign}{seconds // 3600:02d}:{seconds % 3600 // 60:02d}"


def _bind(tp: Any, bindings: Mapping[Any, Any]) -> Any:
    if isinstance(tp, TypeVar):
        return bindings.get(tp, Any)
    return tp


def _decode_struct(cls: type, value: Any, path: str, bindings: Mapping[Any, Any]) -> Any:
    if value is None:
        return cls()
    if not isinstance(value, Mapping):
        raise ValueError(f"{path}: expected a JSON object, got {type(value).__name__}")
    folded = {key.lower(): key for key in value}
    kwargs = {}
    for f in fields(cls):
        key = f.name if f.name in value else folded.get(f.name.lower())
        if key is None:
            continue
        kwargs[f.name] = _decode(f.type, value[key], f"{path}.{f.name}", bindings)
    return cls(**kwargs)


def _decode(tp: Any, value: Any, path: str, bindings: Mapping[Any, Any]) -> Any:
    tp = _bind(tp, bindings)
    if tp is Any:
        return value
    origin = get_origin(tp)
    if origin in _UNION_TYPES:
        if value is None:
            return None
        inner = [arg for arg in get_args(tp) if arg is not type(None)]
        return _decode(inner[0], value, path, bindings)
    if origin is list:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError(f"{path}: expected a JSON array, got {type(value).__name__}")
        (item,) = get_args(tp)
        return [_decode(item, v, f"{path}[{i}]", bindings) for i, v in enumerate(value)]
    if origin is not None and is_dataclass(origin):
        params = getattr(origin, "__parameters__", ())
        inner_bindings = {p: _bind(a, bindings) for p, a in zip(params, get_args(tp))}
        return _decode_struct(origin, value, path, inner_bindings)
    if isinstance(tp, type) and is_dataclass(tp):
        return _decode_struct(tp, value, path, {})
    if tp is datetime:
        if value is None:
            return ZERO_TIME
        if not isinstance(value, str):
            raise ValueError(f"{path}: expected a timestamp string, got {type(value).__name__}")
        return _parse_time(value, path)
    if value is None:
        return None
    if tp is bool:
        if not isinstance(value, bool):
            raise ValueError(f"{path}: expected a boolean, got {type(value).__name__}")
        return value
    if tp is int:
        if not isinstance(value, int) or isinstance(value, bool):
            raise ValueError(f"{path}: expected an integer, got {type(value).__name__}")
        return value
    if tp is str:
        if not isinstance(value, str):
            raise ValueError(f"{path}: expected a string, got {type(value).__name__}")
        return value
    raise TypeError(f"{path}: cannot decode into {tp!r}")


def decode(cls: Any, data: Any) -> Any:
    """Decode a JSON document, or data already parsed from one, into cls.

    cls is one of the record classes or a parametrised Wrapper such as
    Wrapper[PullRequestEvent]. Keys match field names case-insensitively and
    unknown keys are ignored. Raises ValueError on mismatched values.
    """
    if isinstance(data, (str, bytes, bytearray)):
        try:
            data = json.loads(data)
        except (ValueError, UnicodeDecodeError) as exc:
            raise ValueError(f"invalid JSON document: {exc}") from exc
    target = get_origin(cls) or cls
    if not (isinstance(target, type) and is_dataclass(target)):
        raise TypeError(f"{cls!r} is not a record class")
    return _decode(cls, data, type(data).__name__ if data is None else target.__name__, {})


def encode(obj: Any) -> Any:
    """Return the JSON-compatible form of a record; absent sub-records are left out."""
    if is_dataclass(obj) and not isinstance(obj, type):
        out = {}
        for f in fields(obj):
            value = getattr(obj, f.name)
            if f.metadata.get("omitempty") and (value is None or value == []):
                continue
            out[f.name] = encode(value)
        return out
    if isinstance(obj, list):
        return [encode(item) for item in obj]
    if isinstance(obj, datetime):
        return _format_time(obj)
    return obj