import threading

import pytest
import requests

from app.assembly_client import AssemblyClient
from app.errors import (
    RequestCancelled,
    TranscriptionFailed,
    TransportError,
    UpstreamError,
    UpstreamTimeout,
)


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else str(body)

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeSession:
    """按顺序返回预设响应（或抛出预设异常）的 requests.Session 替身。"""

    def __init__(self, *responses):
        self.headers = {}
        self.responses = list(responses)
        self.requests = []

    def request(self, method, url, timeout=None, **kwargs):
        self.requests.append((method, url, timeout, kwargs))
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _client(session, **kwargs):
    kwargs.setdefault("poll_interval_s", 0)
    return AssemblyClient(
        api_key="secret",
        base_url="https://api.example.test/",
        request_timeout_s=5,
        session=session,
        **kwargs,
    )


def _completed(**extra):
    body = {
        "id": "tr_1",
        "status": "completed",
        "text": "hello world",
        "utterances": [
            {"speaker": "A", "text": "hello", "start": 0, "end": 500},
            {"speaker": "B", "text": "world", "start": 500, "end": 900},
        ],
    }
    body.update(extra)
    return FakeResponse(200, body)


def test_transcribe_uploads_submits_and_polls():
    session = FakeSession(
        FakeResponse(200, {"upload_url": "https://cdn.example.test/u/1"}),
        FakeResponse(200, {"id": "tr_1", "status": "queued"}),
        FakeResponse(200, {"id": "tr_1", "status": "queued"}),
        FakeResponse(200, {"id": "tr_1", "status": "processing"}),
        _completed(),
    )

    transcript = _client(session).transcribe(b"RIFF....")

    assert transcript.id == "tr_1"
    assert transcript.text == "hello world"
    assert [(u.speaker, u.text) for u in transcript.utterances] == [("A", "hello"), ("B", "world")]

    assert session.headers["authorization"] == "secret"
    upload, submit = session.requests[0], session.requests[1]
    assert upload[0:3] == ("POST", "https://api.example.test/v2/upload", 5)
    assert upload[3]["data"] == b"RIFF...."
    assert submit[1] == "https://api.example.test/v2/transcript"
    assert submit[3]["json"] == {"audio_url": "https://cdn.example.test/u/1", "speaker_labels": True}
    assert all(r[1] == "https://api.example.test/v2/transcript/tr_1" for r in session.requests[2:])


def test_transcript_without_utterances():
    session = FakeSession(
        FakeResponse(200, {"upload_url": "u"}),
        FakeResponse(200, {"id": "tr_1"}),
        _completed(utterances=None),
    )

    transcript = _client(session).transcribe(b"x")

    assert transcript.utterances is None
    assert transcript.to_dict() == {"text": "hello world"}


def test_error_status_raises_transcription_failed_with_service_message():
    session = FakeSession(
        FakeResponse(200, {"upload_url": "u"}),
        FakeResponse(200, {"id": "tr_1"}),
        FakeResponse(200, {"id": "tr_1", "status": "error", "error": "Audio duration is too short."}),
    )

    with pytest.raises(TranscriptionFailed) as exc_info:
        _client(session).transcribe(b"x")

    assert exc_info.value.message == "Audio duration is too short."
    assert exc_info.value.kind == "upstream"


def test_http_error_carries_service_error_field():
    session = FakeSession(FakeResponse(401, {"error": "Authentication error, API token missing/invalid"}))

    with pytest.raises(UpstreamError) as exc_info:
        _client(session).upload(b"x")

    assert exc_info.value.message == "Authentication error, API token missing/invalid"
    assert exc_info.value.status_code == 401


def test_request_timeout_is_typed():
    session = FakeSession(requests.ReadTimeout("read timed out"))

    with pytest.raises(UpstreamTimeout):
        _client(session).upload(b"x")


def test_connection_failure_is_transport_error():
    session = FakeSession(requests.ConnectionError("connection refused"))

    with pytest.raises(TransportError) as exc_info:
        _client(session).upload(b"x")

    assert exc_info.value.kind == "transport"


def test_transient_poll_failures_are_retried():
    session = FakeSession(
        FakeResponse(200, {"upload_url": "u"}),
        FakeResponse(200, {"id": "tr_1"}),
        requests.ConnectionError("reset"),
        FakeResponse(503, None, text="Service Unavailable"),
        _completed(),
    )

    transcript = _client(session).transcribe(b"x")

    assert transcript.text == "hello world"


def test_poll_deadline_raises_timeout():
    processing = [FakeResponse(200, {"id": "tr_1", "status": "processing"}) for _ in range(1000)]
    session = FakeSession(
        FakeResponse(200, {"upload_url": "u"}),
        FakeResponse(200, {"id": "tr_1"}),
        *processing,
    )

    with pytest.raises(UpstreamTimeout):
        _client(session, poll_interval_s=0.01, max_poll_time_s=0.05).transcribe(b"x")


def test_cancel_before_start_sends_nothing():
    session = FakeSession()
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(RequestCancelled):
        _client(session).transcribe(b"x", cancel=cancel)

    assert session.requests == []


def test_cancel_during_polling_stops():
    cancel = threading.Event()

    class CancellingSession(FakeSession):
        def request(self, method, url, timeout=None, **kwargs):
            response = super().request(method, url, timeout=timeout, **kwargs)
            if len(self.requests) == 3:
                cancel.set()
            return response

    session = CancellingSession(
        FakeResponse(200, {"upload_url": "u"}),
        FakeResponse(200, {"id": "tr_1"}),
        FakeResponse(200, {"id": "tr_1", "status": "processing"}),
        _completed(),
    )

    with pytest.raises(RequestCancelled):
        _client(session, poll_interval_s=0.01).transcribe(b"x", cancel=cancel)

    assert len(session.requests) == 3


def test_lemur_task_returns_response_text():
    session = FakeSession(FakeResponse(200, {"request_id": "req_1", "response": "1. Sentiment Analysis: Calm"}))

    reply = _client(session).lemur_task(["tr_1"], prompt="analyze", final_model="anthropic/claude-3-5-sonnet")

    assert reply == "1. Sentiment Analysis: Calm"
    method, url, _, kwargs = session.requests[0]
    assert (method, url) == ("POST", "https://api.example.test/lemur/v3/generate/task")
    assert kwargs["json"] == {
        "transcript_ids": ["tr_1"],
        "prompt": "analyze",
        "final_model": "anthropic/claude-3-5-sonnet",
    }


def test_lemur_task_without_response_is_upstream_error():
    session = FakeSession(FakeResponse(200, {"request_id": "req_1"}))

    with pytest.raises(UpstreamError):
        _client(session).lemur_task(["tr_1"], prompt="p", final_model="m")
