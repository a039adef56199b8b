"""Tests for the fire-and-forget result sink."""
from urllib.parse import parse_qs

import httpx
import pytest

from assessment.schemas import SubmissionRecord
from assessment.submission import ResultSink


def make_record() -> SubmissionRecord:
    return SubmissionRecord(
        name="Asha",
        phone="9847012345",
        language="Malayalam",
        reading_score=100,
        listening_score=67,
        writing_score=72,
        speaking_score=72,
        average_score=78,
        timestamp="2026-10-17T09:30:00+00:00",
    )


@pytest.mark.asyncio
async def test_posts_form_encoded_record() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["request"] = request
        return httpx.Response(200, text="ok")

    sink = ResultSink("https://example.test/exec", transport=httpx.MockTransport(handler))
    await sink.submit(make_record())
    request = seen["request"]
    assert request.method == "POST"
    assert request.headers["content-type"] == "application/x-www-form-urlencoded"
    form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
    assert form == {
        "name": "Asha",
        "phone": "9847012345",
        "language": "Malayalam",
        "readingScore": "100",
        "listeningScore": "67",
        "writingScore": "72",
        "speakingScore": "72",
        "averageScore": "78",
        "timestamp": "2026-10-17T09:30:00+00:00",
    }


@pytest.mark.asyncio
async def test_failure_is_swallowed(caplog) -> None:
    sink = ResultSink("https://example.test/exec", transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    await sink.submit(make_record())
    assert "failed" in caplog.text


@pytest.mark.asyncio
async def test_network_error_is_swallowed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    sink = ResultSink("https://example.test/exec", transport=httpx.MockTransport(handler))
    await sink.submit(make_record())


@pytest.mark.asyncio
async def test_missing_url_sends_nothing(caplog) -> None:
    calls = []
    sink = ResultSink("", transport=httpx.MockTransport(lambda r: calls.append(r) or httpx.Response(200)))
    await sink.submit(make_record())
    assert calls == []
    assert "RESULTS_WEBHOOK_URL" in caplog.text
