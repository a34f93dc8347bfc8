import hashlib
import hmac
import io
import json
import urllib.parse
from datetime import datetime, timezone

import pytest

from infrahooks.cloudevents import DeliveryError
from infrahooks.trampoline import (
    PayloadInfo,
    Server,
    ServerOptions,
    WebhookValidationError,
    extract_pull_request_info,
    is_pull_request_merged,
    validate_payload,
)

SECRET = b"secret"
FIXED_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClient:
    def __init__(self):
        self.events = []

    def send(self, event):
        self.events.append(event)


class FailingClient:
    def __init__(self):
        self.calls = 0

    def send(self, event):
        self.calls += 1
        raise DeliveryError("nack")


def make_request(event_type, payload, key):
    body = (json.dumps(payload) + "\n").encode()
    sig = "sha256=" + hmac.new(key or b"", body, hashlib.sha256).hexdigest()
    headers = {
        "Content-Type": "application/json",
        "X-Hub-Signature-256": sig,
        "X-GitHub-Event": event_type,
        "X-Github-Hook-ID": "1234",
        "X-GitHub-Delivery": "5678",
        "User-Agent": "TestTrampoline",
    }
    return headers, body


def send(server, event_type, payload, key):
    headers, body = make_request(event_type, payload, key)
    return server.handle(headers, body, "localhost")


def test_trampoline():
    client = FakeClient()
    server = Server(client, ServerOptions(secrets=[b"placeholder", SECRET]), clock=lambda: FIXED_TIME)
    body = {"action": "push", "repository": {"full_name": "org/repo"}, "foo": "bar"}

    resp = send(server, "push", body, SECRET)
    assert resp.status == 200

    assert len(client.events) == 1
    event = client.events[0]
    assert event.type == "dev.chainguard.github.push"
    assert event.source == "localhost"
    assert event.id == "5678"
    assert event.data_content_type == "application/json"
    assert event.subject == "org/repo"
    assert event.extensions == {"action": "push", "githubhook": "1234"}
    assert event.data_json() == {
        "when": "2024-01-01T00:00:00Z",
        "headers": {
            "hook_id": "1234",
            "delivery_id": "5678",
            "user_agent": "TestTrampoline",
            "event": "push",
        },
        "body": body,
    }


def test_forbidden():
    server = Server(FakeClient(), ServerOptions())
    resp = send(server, "push", None, None)
    assert resp.status == 403
    assert resp.body.startswith(b"failed to verify webhook")


def test_bad_signature_is_forbidden():
    client = FakeClient()
    server = Server(client, ServerOptions(secrets=[SECRET]))
    resp = send(server, "push", {"action": "push"}, b"placeholder")
    assert resp.status == 403
    assert client.events == []


def test_webhook_id_filter():
    server = Server(FakeClient(), ServerOptions(secrets=[SECRET], webhook_id=["doesnotmatch"]))
    resp = send(server, "check_run", None, SECRET)
    assert resp.status == 202


def test_webhook_id_filter_matching_passes():
    client = FakeClient()
    server = Server(client, ServerOptions(secrets=[SECRET], webhook_id=["1234"]))
    resp = send(server, "push", None, SECRET)
    assert resp.status == 200
    assert len(client.events) == 1


def test_requested_only_webhook():
    server = Server(FakeClient(), ServerOptions(secrets=[SECRET], requested_only_webhook=["1234"]))
    resp = send(
        server,
        "check_run",
        {
            "action": "requested",
            "repository": {"full_name": "org/repo"},
            "organization": {"login": "org"},
        },
        SECRET,
    )
    assert resp.status == 200

    resp = send(server, "check_run", None, SECRET)
    assert resp.status == 202


@pytest.mark.parametrize(
    "event_type,info,expected",
    [
        ("pull_request", PayloadInfo(number=123, repository_full_name="foo/bar"), "foo/bar#123"),
        ("push", PayloadInfo(number=123, repository_full_name="foo/bar"), ""),
        ("pull_request", PayloadInfo(repository_full_name="foo/bar"), ""),
        ("pull_request", PayloadInfo(number=123), ""),
    ],
)
def test_extract_pull_request_info(event_type, info, expected):
    assert extract_pull_request_info(event_type, info) == expected


def test_pull_request_extension():
    client = FakeClient()
    server = Server(client, ServerOptions(secrets=[SECRET]), clock=lambda: FIXED_TIME)
    pr_payload = {
        "action": "opened",
        "number": 123,
        "repository": {"full_name": "foo/bar"},
        "organization": {"login": "foo"},
    }
    resp = send(server, "pull_request", pr_payload, SECRET)
    assert resp.status == 200
    assert len(client.events) == 1
    assert client.events[0].extensions["pullrequest"] == "foo/bar#123"

    client.events.clear()
    non_pr_payload = {
        "action": "push",
        "repository": {"full_name": "foo/bar"},
        "organization": {"login": "foo"},
    }
    resp = send(server, "push", non_pr_payload, SECRET)
    assert resp.status == 200
    assert len(client.events) == 1
    assert "pullrequest" not in client.events[0].extensions


@pytest.mark.parametrize(
    "event_type,info,expected",
    [
        ("pull_request", PayloadInfo(action="closed", pull_request_merged=True), True),
        ("pull_request", PayloadInfo(action="closed", pull_request_merged=False), False),
        ("pull_request", PayloadInfo(action="opened", pull_request_merged=False), False),
        ("push", PayloadInfo(action="closed", pull_request_merged=True), False),
    ],
)
def test_is_pull_request_merged(event_type, info, expected):
    assert is_pull_request_merged(event_type, info) is expected


def test_merged_extension():
    client = FakeClient()
    server = Server(client, ServerOptions(secrets=[SECRET]))
    payload = {
        "action": "closed",
        "number": 7,
        "repository": {"full_name": "foo/bar"},
        "pull_request": {"merged": True},
    }
    resp = send(server, "pull_request", payload, SECRET)
    assert resp.status == 200
    assert client.events[0].extensions["merged"] is True


def test_org_filter():
    server = Server(FakeClient(), ServerOptions(secrets=[SECRET], org_filter=["org"]))
    resp = send(server, "pull_request", {"action": "opened"}, SECRET)
    assert resp.status == 202

    resp = send(
        server,
        "pull_request",
        {
            "action": "opened",
            "repository": {"full_name": "org/repo"},
            "organization": {"login": "org"},
        },
        SECRET,
    )
    assert resp.status == 200


def test_missing_event_header():
    server = Server(FakeClient(), ServerOptions(secrets=[SECRET]))
    headers, body = make_request("push", None, SECRET)
    del headers["X-GitHub-Event"]
    assert server.handle(headers, body, "localhost").status == 400


def test_delivery_failure_returns_500():
    client = FailingClient()
    server = Server(client, ServerOptions(secrets=[SECRET]))
    resp = send(server, "push", {"action": "push"}, SECRET)
    assert resp.status == 500
    assert client.calls == 4


def test_unparseable_payload_info_still_forwards():
    client = FakeClient()
    server = Server(client, ServerOptions(secrets=[SECRET]))
    resp = send(server, "push", {"action": 5}, SECRET)
    assert resp.status == 200
    assert client.events[0].extensions == {"action": "", "githubhook": "1234"}


def test_payload_info_from_payload():
    info = PayloadInfo.from_payload(
        b'{"action":"closed","number":3,"repository":{"full_name":"a/b"},'
        b'"organization":{"login":"a"},"pull_request":{"merged":true}}'
    )
    assert info == PayloadInfo("closed", 3, "a/b", "a", True)
    assert PayloadInfo.from_payload(b"null") == PayloadInfo()
    with pytest.raises(ValueError):
        PayloadInfo.from_payload(b"[1, 2]")
    with pytest.raises(ValueError):
        PayloadInfo.from_payload(b"not json")


def test_validate_payload_sha1_and_form():
    payload = b'{"a":1}'
    body = urllib.parse.urlencode({"payload": payload.decode()}).encode()
    sig = "sha1=" + hmac.new(SECRET, body, hashlib.sha1).hexdigest()
    headers = {"Content-Type": "application/x-www-form-urlencoded", "X-Hub-Signature": sig}
    assert validate_payload(headers, body, [SECRET]) == payload


def test_validate_payload_errors():
    headers, body = make_request("push", {"a": 1}, SECRET)
    with pytest.raises(WebhookValidationError):
        validate_payload(headers, body, [b"placeholder"])
    with pytest.raises(WebhookValidationError):
        validate_payload({**headers, "Content-Type": "text/xml"}, body, [SECRET])
    with pytest.raises(WebhookValidationError, match="no media type"):
        validate_payload({**headers, "Content-Type": ""}, body, [SECRET])


def test_validate_payload_empty_secret_skips_signature():
    headers, body = make_request("push", {"a": 1}, b"placeholder")
    assert validate_payload(headers, body, [b""]) == body


def test_wsgi_call():
    client = FakeClient()
    server = Server(client, ServerOptions(secrets=[SECRET]), clock=lambda: FIXED_TIME)
    headers, body = make_request("push", {"action": "push"}, SECRET)
    environ = {
        "REQUEST_METHOD": "POST",
        "CONTENT_TYPE": headers["Content-Type"],
        "CONTENT_LENGTH": str(len(body)),
        "HTTP_HOST": "localhost",
        "HTTP_X_HUB_SIGNATURE_256": headers["X-Hub-Signature-256"],
        "HTTP_X_GITHUB_EVENT": "push",
        "HTTP_X_GITHUB_HOOK_ID": "1234",
        "HTTP_X_GITHUB_DELIVERY": "5678",
        "HTTP_USER_AGENT": "TestTrampoline",
        "wsgi.input": io.BytesIO(body),
    }
    seen = {}

    def start_response(status, response_headers):
        seen["status"] = status

    result = server(environ, start_response)
    assert seen["status"] == "200 OK"
    assert result == [b""]
    assert client.events[0].source == "localhost"
    assert client.events[0].id == "5678"