"""Test configuration and fakes shared by the test modules."""
import asyncio
import inspect
import json
from typing import Any, Callable, Dict, List, Optional

import numpy as np
import pytest

from assessment.content import ContentService
from assessment.schemas import TextInput
from assessment.session import AssessmentSession
from assessment.settings import Settings
from assessment.stages import QuizStage, SpeakingStage, WritingStage


# Segment returned for "Teil 1 ..." and for every other part
SEGMENT_ONE = b"\x01\x00\x02\x00"
SEGMENT_TWO = b"\xff\x7f\x00\x80\x00\x00"


def make_settings(**overrides: Any) -> Settings:
    values = {
        "GEMINI_API_KEY": "test-key",
        "RETRY_MAX_ATTEMPTS": 3,
        "RETRY_BASE_DELAY_MS": 1500,
        # 4 Hz keeps the silence gap short: 2 s -> 8 samples -> 16 bytes
        "AUDIO_SAMPLE_RATE": 4,
        "AUDIO_SILENCE_SECONDS": 2.0,
        "RESULTS_WEBHOOK_URL": None,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def parts_payload(kinds=("Email", "Notice"), questions_per_part: int = 3) -> Dict[str, Any]:
    """Model output for a two-part test; question n has correct index (n - 1) % 3."""
    parts = []
    for p_idx, kind in enumerate(kinds, start=1):
        parts.append(
            {
                "id": f"model-part-{p_idx}",
                "type": kind,
                "title": f"{kind} title",
                "content": f"{kind} text number {p_idx}.",
                "questions": [
                    {
                        "id": "q",
                        "text": f"Question {q_idx}?",
                        "options": ["A", "B", "C"],
                        "correctAnswerIndex": (q_idx - 1) % 3,
                    }
                    for q_idx in range(1, questions_per_part + 1)
                ],
            }
        )
    return {"parts": parts}


TASK_PAYLOAD = {"topic": "Travel", "instructions": "Write to a friend about your holiday."}
EVALUATION_PAYLOAD = {"score": 72, "feedback": "Good job.", "corrections": ["ich bin -> ich war"]}


def default_generate(prompt: str) -> str:
    if "reading test" in prompt:
        return json.dumps(parts_payload())
    if "listening script" in prompt:
        return json.dumps(parts_payload(kinds=("Dialogue", "Announcement")))
    if "Evaluate" in prompt:
        return json.dumps(EVALUATION_PAYLOAD)
    if "writing task" in prompt or "speaking task" in prompt:
        return json.dumps(TASK_PAYLOAD)
    raise AssertionError(f"unexpected prompt: {prompt}")


def default_speech(text: str) -> bytes:
    return SEGMENT_ONE if text.startswith("Teil 1.") else SEGMENT_TWO


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class FakeGemini:
    """
    Stand-in for GeminiClient.

    ``on_generate``, ``on_speech`` and ``on_multimodal`` may return a value,
    return an awaitable, or raise. Every call is recorded with its model.
    """

    def __init__(self) -> None:
        self.on_generate: Callable[[str], Any] = default_generate
        self.on_speech: Callable[[str], Any] = default_speech
        self.on_multimodal: Callable[[List[Dict[str, Any]]], Any] = lambda parts: json.dumps(EVALUATION_PAYLOAD)
        self.generate_calls: List[tuple] = []
        self.speech_calls: List[tuple] = []
        self.multimodal_calls: List[tuple] = []
        self.clients_created = 0
        self.clients_closed = 0

    def factory(self, model: Optional[str] = None) -> "_FakeClient":
        self.clients_created += 1
        return _FakeClient(self, model)


class _FakeClient:
    def __init__(self, owner: FakeGemini, model: Optional[str]) -> None:
        self.owner = owner
        self.model = model

    async def generate(self, prompt: str, *, response_schema=None) -> str:
        self.owner.generate_calls.append((self.model, prompt))
        return await _resolve(self.owner.on_generate(prompt))

    async def generate_multimodal(self, parts, *, role: str = "user", response_schema=None) -> str:
        self.owner.multimodal_calls.append((self.model, parts))
        return await _resolve(self.owner.on_multimodal(parts))

    async def synthesize_speech(self, text: str, *, voice: Optional[str] = None) -> bytes:
        self.owner.speech_calls.append((self.model, text, voice))
        return await _resolve(self.owner.on_speech(text))

    async def aclose(self) -> None:
        self.owner.clients_closed += 1


class FakeSleep:
    """Backoff sleep that records requested delays (ms) without waiting."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay_ms: float) -> None:
        self.delays.append(delay_ms)


class FakeSource:
    def __init__(self, samples: np.ndarray, offset: int, on_finished: Callable[[], None]) -> None:
        self.samples = samples
        self.position = offset
        self.on_finished = on_finished
        self.started = False
        self.stopped = False

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def advance(self, frames: int) -> None:
        self.position = min(len(self.samples), self.position + frames)

    def finish(self) -> None:
        self.position = len(self.samples)
        self.on_finished()


class FakeContext:
    def __init__(self, sample_rate: int) -> None:
        self.sample_rate = sample_rate
        self.sources: List[FakeSource] = []
        self.closed = False

    def create_source(self, samples, offset, on_finished) -> FakeSource:
        source = FakeSource(samples, offset, on_finished)
        self.sources.append(source)
        return source

    def close(self) -> None:
        self.closed = True

    def active_sources(self) -> List[FakeSource]:
        return [s for s in self.sources if s.started and not s.stopped]


class FakePlayback:
    """Context factory recording every context it creates."""

    def __init__(self) -> None:
        self.contexts: List[FakeContext] = []

    def __call__(self, sample_rate: int) -> FakeContext:
        context = FakeContext(sample_rate)
        self.contexts.append(context)
        return context


class RecordingSink:
    def __init__(self) -> None:
        self.records = []

    async def submit(self, record) -> None:
        self.records.append(record)


async def settle(rounds: int = 10) -> None:
    """Let pending tasks run a few loop iterations."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def app_settings() -> Settings:
    return make_settings()


@pytest.fixture
def gemini() -> FakeGemini:
    return FakeGemini()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def playback() -> FakePlayback:
    return FakePlayback()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def content(app_settings, gemini, fake_sleep) -> ContentService:
    return ContentService(app_settings, client_factory=gemini.factory, sleep=fake_sleep)


@pytest.fixture
def session(content, app_settings, sink, playback) -> AssessmentSession:
    return AssessmentSession(content, sink=sink, app_settings=app_settings, playback_factory=playback)


# Every answer right for parts_payload()
CORRECT_ANSWERS = {"p1-q1": 0, "p1-q2": 1, "p1-q3": 2, "p2-q1": 0, "p2-q2": 1, "p2-q3": 2}


async def finish_stage(session, answers=None) -> None:
    """Wait for the active stage, answer it and report its score."""
    controller = session.active
    await controller.wait()
    if isinstance(controller, QuizStage):
        controller.submit_answers(CORRECT_ANSWERS if answers is None else answers)
    elif isinstance(controller, WritingStage):
        await controller.evaluate("Liebe Anna, ich komme am Montag.")
    elif isinstance(controller, SpeakingStage):
        await controller.evaluate(TextInput(text="Ich wohne in Köln."))
    controller.complete()
