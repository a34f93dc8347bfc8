import base64
import io
import json
from http import HTTPStatus

import pytest

from infrahooks.cloudevents import CloudEvent
from infrahooks.recorder import Recorder, main

EVENT_TYPE = "dev.chainguard.github.push"


def _status_line(status):
    return f"{status.value} {status.phrase}"


def _call(app, body=b"", method="POST", content_type="application/json", headers=None):
    captured = {}

    def start_response(status, response_headers):
        captured["status"] = status
        captured["headers"] = response_headers

    environ = {
        "REQUEST_METHOD": method,
        "CONTENT_TYPE": content_type,
        "CONTENT_LENGTH": str(len(body)),
        "wsgi.input": io.BytesIO(body),
    }
    environ.update(headers or {})
    result = b"".join(app(environ, start_response))
    return captured["status"], result


def _binary_headers(event_id="evt-1"):
    return {
        "HTTP_CE_ID": event_id,
        "HTTP_CE_SOURCE": "localhost",
        "HTTP_CE_TYPE": EVENT_TYPE,
        "HTTP_CE_SPECVERSION": "1.0",
        "HTTP_CE_ACTION": "opened",
    }


def test_record_writes_data(tmp_path):
    data = b'{"ref":"refs/heads/main"}'
    event = CloudEvent(type=EVENT_TYPE, source="localhost", id="evt-1", data=data)
    path = Recorder(tmp_path).record(event)
    assert path == tmp_path / EVENT_TYPE / "evt-1"
    assert path.read_bytes() == data


def test_record_file_is_private(tmp_path):
    event = CloudEvent(type=EVENT_TYPE, source="localhost", id="evt-2", data=b"x")
    path = Recorder(tmp_path).record(event)
    assert path.stat().st_mode & 0o777 == 0o600


def test_record_failure_removes_file(tmp_path):
    target = tmp_path / EVENT_TYPE / "evt-3"
    (target / "nested").mkdir(parents=True)
    event = CloudEvent(type=EVENT_TYPE, source="localhost", id="evt-3", data=b"x")
    with pytest.raises(OSError):
        Recorder(tmp_path).record(event)
    assert not target.exists()


def test_binary_mode_request(tmp_path):
    body = b'{"action":"opened"}'
    status, _ = _call(Recorder(tmp_path), body, headers=_binary_headers())
    assert status == _status_line(HTTPStatus.OK)
    assert (tmp_path / EVENT_TYPE / "evt-1").read_bytes() == body


def test_structured_mode_request(tmp_path):
    data = {"action": "opened", "number": 7}
    doc = {
        "specversion": "1.0",
        "id": "evt-4",
        "source": "localhost",
        "type": EVENT_TYPE,
        "datacontenttype": "application/json",
        "data": data,
    }
    status, _ = _call(
        Recorder(tmp_path), json.dumps(doc).encode(), content_type="application/cloudevents+json"
    )
    assert status == _status_line(HTTPStatus.OK)
    assert json.loads((tmp_path / EVENT_TYPE / "evt-4").read_bytes()) == data


def test_structured_mode_base64_data(tmp_path):
    raw = b"\x00\x01binary"
    doc = {
        "specversion": "1.0",
        "id": "evt-5",
        "source": "localhost",
        "type": EVENT_TYPE,
        "data_base64": base64.b64encode(raw).decode(),
    }
    status, _ = _call(
        Recorder(tmp_path), json.dumps(doc).encode(), content_type="application/cloudevents+json"
    )
    assert status == _status_line(HTTPStatus.OK)
    assert (tmp_path / EVENT_TYPE / "evt-5").read_bytes() == raw


def test_missing_id_is_bad_request(tmp_path):
    headers = _binary_headers()
    del headers["HTTP_CE_ID"]
    status, _ = _call(Recorder(tmp_path), b"{}", headers=headers)
    assert status == _status_line(HTTPStatus.BAD_REQUEST)
    assert list(tmp_path.iterdir()) == []


def test_non_post_is_rejected(tmp_path):
    status, _ = _call(Recorder(tmp_path), method="GET", headers=_binary_headers())
    assert status == _status_line(HTTPStatus.METHOD_NOT_ALLOWED)
    assert list(tmp_path.iterdir()) == []


def test_write_failure_is_server_error(tmp_path):
    (tmp_path / EVENT_TYPE / "evt-1" / "nested").mkdir(parents=True)
    status, _ = _call(Recorder(tmp_path), b"{}", headers=_binary_headers())
    assert status == _status_line(HTTPStatus.INTERNAL_SERVER_ERROR)
    assert not (tmp_path / EVENT_TYPE / "evt-1").exists()


def test_main_requires_log_path(monkeypatch):
    monkeypatch.delenv("LOG_PATH", raising=False)
    with pytest.raises(SystemExit) as excinfo:
        main([])
    assert excinfo.value.code == 2