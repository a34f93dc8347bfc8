import io
import json

import pytest

from infrahooks.bot import (
    CONTEXT_KEY_ATTRIBUTES,
    CONTEXT_KEY_SUBJECT,
    CONTEXT_KEY_TYPE,
    Bot,
    UnknownHandlerError,
    attribute_from_context,
)
from infrahooks.cloudevents import CloudEvent
from infrahooks.handlers import (
    EventType,
    ProjectsV2ItemEvent,
    ProjectsV2ItemHandler,
    PullRequestHandler,
    PushHandler,
)


def make_event(event_type, data, subject="org/repo"):
    payload = None if data is None else json.dumps(data).encode("utf-8")
    event = CloudEvent(
        type=event_type,
        source="localhost",
        id="5678",
        spec_version="1.0",
        subject=subject,
        data_content_type="application/json",
        data=payload,
    )
    event.set_extension("action", "opened")
    return event


class Recording:
    def __init__(self):
        self.calls = []

    def __call__(self, context, body):
        self.calls.append((context, body))


def test_dispatch_passes_context_and_body():
    seen = Recording()
    bot = Bot("test", [PullRequestHandler(seen)])
    body = {"action": "opened", "number": 7}
    event = make_event(EventType.PULL_REQUEST.value, {"when": "2024-01-01T00:00:00Z", "body": body})

    assert bot.dispatch(event) is True
    assert len(seen.calls) == 1
    context, got = seen.calls[0]
    assert got == body
    assert context["action"] == "opened"
    assert context[CONTEXT_KEY_TYPE] == "dev.chainguard.github.pull_request"
    assert context[CONTEXT_KEY_SUBJECT] == "org/repo"
    assert context[CONTEXT_KEY_ATTRIBUTES]["action"] == "opened"


def test_dispatch_ignores_unregistered_type():
    seen = Recording()
    bot = Bot("test", [PushHandler(seen)])
    event = make_event(EventType.ISSUES.value, {"body": {}})
    assert bot.dispatch(event) is False
    assert seen.calls == []


def test_duplicate_handler_rejected():
    bot = Bot("test", [PushHandler(Recording())])
    with pytest.raises(ValueError):
        bot.register_handler(PushHandler(Recording()))


def test_register_requires_event_type():
    bot = Bot("test")
    with pytest.raises(TypeError):
        bot.register_handler(object())


def test_unknown_handler_kind():
    class Impostor:
        event_type = EventType.PUSH

    bot = Bot("test")
    bot.register_handler(Impostor())
    with pytest.raises(UnknownHandlerError):
        bot.dispatch(make_event(EventType.PUSH.value, {"body": {}}))


def test_handler_error_propagates():
    def fail(context, body):
        raise RuntimeError("boom")

    bot = Bot("test", [PushHandler(fail)])
    with pytest.raises(RuntimeError, match="boom"):
        bot.dispatch(make_event(EventType.PUSH.value, {"body": {}}))


def test_invalid_data_raises():
    seen = Recording()
    bot = Bot("test", [PushHandler(seen)])
    event = make_event(EventType.PUSH.value, [1, 2])
    with pytest.raises(ValueError):
        bot.dispatch(event)
    assert seen.calls == []


def test_missing_data_gives_empty_body():
    seen = Recording()
    bot = Bot("test", [PushHandler(seen)])
    assert bot.dispatch(make_event(EventType.PUSH.value, None)) is True
    assert seen.calls[0][1] == {}


def test_projects_v2_item_payload_is_typed():
    seen = Recording()
    bot = Bot("test", [ProjectsV2ItemHandler(seen)])
    body = {"action": "edited", "projects_v2_item": {"id": 42, "node_id": "node"}}
    bot.dispatch(make_event(EventType.PROJECTS_V2_ITEM.value, {"body": body}))
    got = seen.calls[0][1]
    assert isinstance(got, ProjectsV2ItemEvent)
    assert got.action == "edited"
    assert got.projects_v2_item.id == 42
    assert got.projects_v2_item.node_id == "node"


def test_attribute_from_context():
    context = {"githubhook": "1234"}
    assert attribute_from_context(context, "githubhook") == "1234"
    assert attribute_from_context(context, "missing") is None


def call_wsgi(app, body, content_type, extra=None):
    environ = {
        "REQUEST_METHOD": "POST",
        "CONTENT_TYPE": content_type,
        "CONTENT_LENGTH": str(len(body)),
        "wsgi.input": io.BytesIO(body),
        **(extra or {}),
    }
    statuses = []
    app(environ, lambda status, headers: statuses.append(status))
    return statuses[0]


def test_wsgi_structured_event():
    seen = Recording()
    bot = Bot("test", [PushHandler(seen)])
    doc = {
        "specversion": "1.0",
        "id": "5678",
        "source": "localhost",
        "type": EventType.PUSH.value,
        "subject": "org/repo",
        "action": "push",
        "datacontenttype": "application/json",
        "data": {"body": {"ref": "refs/heads/main"}},
    }
    status = call_wsgi(bot, json.dumps(doc).encode(), "application/cloudevents+json")
    assert status.startswith("200")
    context, body = seen.calls[0]
    assert body == {"ref": "refs/heads/main"}
    assert attribute_from_context(context, "action") == "push"


def test_wsgi_binary_event_handler_failure():
    def fail(context, body):
        raise RuntimeError("boom")

    bot = Bot("test", [PushHandler(fail)])
    headers = {
        "HTTP_CE_SPECVERSION": "1.0",
        "HTTP_CE_ID": "5678",
        "HTTP_CE_SOURCE": "localhost",
        "HTTP_CE_TYPE": EventType.PUSH.value,
    }
    status = call_wsgi(bot, b'{"body": {}}', "application/json", headers)
    assert status.startswith("500")


def test_wsgi_rejects_malformed_event():
    bot = Bot("test")
    status = call_wsgi(bot, b"not json", "application/cloudevents+json")
    assert status.startswith("400")


def test_wsgi_rejects_get():
    bot = Bot("test")
    statuses = []
    bot({"REQUEST_METHOD": "GET"}, lambda status, headers: statuses.append(status))
    assert statuses[0].startswith("405")