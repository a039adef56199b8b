"""Tests for the HTTP surface."""
import base64
import io
import sys
import wave

import pytest
from fastapi.testclient import TestClient

from assessment.errors import PermanentRemoteError
from assessment.main import app
from assessment.routers import session as session_router

from conftest import CORRECT_ANSWERS


@pytest.fixture
def client(session, monkeypatch):
    monkeypatch.setattr(session_router, "_session", session)
    with TestClient(app) as test_client:
        yield test_client


def ready(client) -> dict:
    view = client.get("/stage", params={"wait": True}).json()
    assert view["status"] == "ready", view
    return view


def test_info(client) -> None:
    body = client.get("/info").json()
    assert body["status"] == "ok"
    assert body["exam"] == "German A1"


def test_full_assessment_over_http(client, sink) -> None:
    view = client.post("/session/start").json()
    assert view["stage"] == "home"
    assert view["prefetched"] == ["reading"]

    assert client.post("/session/begin").json()["stage"] == "reading"
    stage = ready(client)
    assert "correct_answer_index" not in stage["content"]["parts"][0]["questions"][0]
    assert client.post("/stage/answers", json={"answers": CORRECT_ANSWERS}).json() == {"score": 100.0}
    assert client.post("/stage/complete").json()["stage"] == "listening"

    ready(client)
    track = client.get("/stage/audio")
    assert track.status_code == 200
    assert track.headers["content-type"] == "audio/wav"
    with wave.open(io.BytesIO(track.content), "rb") as wav:
        assert wav.getframerate() == 4
        assert wav.getnframes() == 13
    assert client.post("/stage/audio/play").json()["is_playing"] is True
    assert client.post("/stage/audio/pause").json()["is_playing"] is False
    assert client.post("/stage/audio/rewind").status_code == 404
    client.post("/stage/answers", json={"answers": {}})
    assert client.post("/stage/complete").json()["stage"] == "writing"

    ready(client)
    assert client.post("/stage/writing", json={"text": "   "}).status_code == 400
    result = client.post("/stage/writing", json={"text": "Liebe Anna, ich komme."}).json()
    assert result["score"] == 72
    assert client.post("/stage/complete").json()["stage"] == "speaking"

    ready(client)
    both = {"audio_base64": base64.b64encode(b"rec").decode(), "text": "Hallo"}
    assert client.post("/stage/speaking", json=both).status_code == 422
    assert client.post("/stage/speaking", json={}).status_code == 422
    assert client.post("/stage/speaking", json={"audio_base64": "not base64!"}).status_code == 400
    view = client.post("/stage/speaking/input-error", json={"message": "Microphone not found"}).json()
    assert view["text_fallback"] is True
    assert client.post("/stage/speaking", json={"text": "Ich wohne in Köln."}).json()["score"] == 72
    view = client.post("/stage/complete").json()
    assert view["stage"] == "details"
    assert view["scores"] == {"reading": 100.0, "listening": 0.0, "writing": 72.0, "speaking": 72.0}

    assert client.post("/stage/complete").status_code == 409
    bad = client.post("/session/details", json={"name": "Asha", "phone": "0123456789"})
    assert bad.status_code == 400
    view = client.post("/session/details", json={"name": "Asha", "phone": "9847012345"}).json()
    assert view["stage"] == "results"

    report = client.get("/session/report").json()
    assert report["average"] == 61
    assert report["passed"]["listening"] is False

    view = client.post("/session/restart").json()
    assert view["stage"] == "home"
    assert view["prefetched"] == ["reading"]
    assert view["average"] == 0
    assert len(sink.records) == 1


def test_score_endpoint_errors(client) -> None:
    client.post("/session/begin")
    assert client.post("/session/score", json={"stage": "reading", "value": 150}).status_code == 400
    assert client.post("/session/score", json={"stage": "writing", "value": 10}).status_code == 409
    assert client.post("/session/score", json={"stage": "reading", "value": 55}).json()["stage"] == "listening"


def test_wrong_stage_action_is_conflict(client) -> None:
    assert client.post("/session/restart").status_code == 409
    assert client.get("/stage").status_code == 409
    client.post("/session/begin")
    assert client.post("/stage/writing", json={"text": "Hallo"}).status_code == 409


def test_remote_failure_is_bad_gateway(client, gemini) -> None:
    client.post("/session/begin")
    client.post("/session/score", json={"stage": "reading", "value": 50})
    client.post("/session/score", json={"stage": "listening", "value": 50})
    ready(client)

    def broken(prompt):
        raise PermanentRemoteError("No text response from Gemini")

    gemini.on_generate = broken
    response = client.post("/stage/writing", json={"text": "Hallo"})
    assert response.status_code == 502
    view = client.get("/stage").json()
    assert view["submission_error"] == "No text response from Gemini"


def test_audio_track_needs_listening_stage(client) -> None:
    client.post("/session/begin")
    assert client.get("/stage/audio").status_code == 409


def test_playback_without_output_device_is_unavailable(client, session, monkeypatch) -> None:
    monkeypatch.setitem(sys.modules, "sounddevice", None)
    session.playback_factory = None
    client.post("/session/begin")
    client.post("/session/score", json={"stage": "reading", "value": 50})
    ready(client)
    response = client.post("/stage/audio/play")
    assert response.status_code == 503
    assert client.get("/stage").json()["is_playing"] is False
    assert client.get("/stage/audio").status_code == 200
