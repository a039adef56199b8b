"""
Content Fetchers

This module generates and grades the content of the four assessment stages
using Gemini. It handles:
- Reading tests (two short texts with multiple-choice questions)
- Listening scripts plus one synthesized audio segment per script part
- Writing and speaking tasks
- Evaluation of writing and speaking submissions

Every remote call goes through the retry executor on its own, so each
synthesis call of the listening fan-out has an independent retry budget.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import random
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from pydantic import ValidationError

from .errors import InputError, PermanentRemoteError
from .gemini_client import GeminiClient
from .retry import execute
from .schemas import (
    AudioInput,
    EvaluationResult,
    ListeningBundle,
    ListeningContent,
    ReadingContent,
    SpeakingResponse,
    SpeakingTask,
    TextInput,
    WritingTask,
)
from .settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Everyday A1 topics; one is picked per generation so repeated tests differ
TOPICS: List[str] = [
    "Shopping", "Family", "Free time", "Travel", "Food", "Daily routine",
    "Weather", "Housing", "Work", "Friends", "Health", "Holidays",
]

PARTS_PER_TEST = 2
QUESTIONS_PER_PART = 3
MAX_RESPONSE_CHARS = 8000


# ============================================================================
# RESPONSE SCHEMAS
# ============================================================================

_QUESTION_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "id": {"type": "STRING"},
        "text": {"type": "STRING"},
        "options": {"type": "ARRAY", "items": {"type": "STRING"}},
        "correctAnswerIndex": {"type": "INTEGER"},
    },
}

PARTS_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "parts": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "id": {"type": "STRING"},
                    "type": {"type": "STRING"},
                    "title": {"type": "STRING"},
                    "content": {"type": "STRING"},
                    "questions": {"type": "ARRAY", "items": _QUESTION_SCHEMA},
                },
            },
        }
    },
}

TASK_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {"topic": {"type": "STRING"}, "instructions": {"type": "STRING"}},
}

EVALUATION_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "score": {"type": "INTEGER"},
        "feedback": {"type": "STRING"},
        "corrections": {"type": "ARRAY", "items": {"type": "STRING"}},
    },
}


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def random_context(rng: Optional[random.Random] = None) -> str:
    """
    Build the variety hint appended to generation prompts.

    Args:
        rng: Optional random source (tests pass a seeded one)

    Returns:
        str: e.g. "Focus: Travel. ID: 417."
    """
    rng = rng or random
    topic = rng.choice(TOPICS)
    return f"Focus: {topic}. ID: {rng.randrange(1000)}."


def _extract_json_object(text: str) -> Dict[str, Any]:
    """
    Extract a JSON object from model output.

    Handles raw JSON, JSON wrapped in markdown code fences, and JSON embedded
    in surrounding text.

    Raises:
        PermanentRemoteError: If no JSON object can be extracted
    """
    try:
        data = json.loads(text)
        if isinstance(data, dict):
            return data
    except ValueError:
        pass

    code_block = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", text)
    if code_block:
        try:
            data = json.loads(code_block.group(1))
            if isinstance(data, dict):
                return data
        except ValueError:
            pass

    first = text.find("{")
    last = text.rfind("}")
    if first != -1 and last != -1 and last > first:
        try:
            data = json.loads(text[first : last + 1])
            if isinstance(data, dict):
                return data
        except ValueError:
            pass

    raise PermanentRemoteError("Model did not return valid JSON.")


def _normalize_parts(data: Dict[str, Any], expected_parts: int) -> List[Dict[str, Any]]:
    """
    Normalize the ``parts`` array of a reading/listening response.

    Question ids are reassigned as ``p{part}-q{n}`` so they are unique within
    the content instance whatever the model produced.

    Raises:
        PermanentRemoteError: If the part count is wrong or fields are missing
    """
    parts = data.get("parts")
    if not isinstance(parts, list) or len(parts) != expected_parts:
        raise PermanentRemoteError(f"Model did not return exactly {expected_parts} parts")

    normed: List[Dict[str, Any]] = []
    for p_idx, part in enumerate(parts, start=1):
        if not isinstance(part, dict):
            raise PermanentRemoteError("Invalid part format from model")
        questions = part.get("questions") or []
        if not isinstance(questions, list):
            raise PermanentRemoteError("Invalid question list from model")
        normed_questions = []
        for q_idx, q in enumerate(questions, start=1):
            if not isinstance(q, dict):
                raise PermanentRemoteError("Invalid question format from model")
            correct = q.get("correctAnswerIndex", q.get("correct_answer_index"))
            normed_questions.append(
                {
                    "id": f"p{p_idx}-q{q_idx}",
                    "text": str(q.get("text", "")).strip(),
                    "options": [str(o).strip() for o in (q.get("options") or [])],
                    "correct_answer_index": correct if isinstance(correct, int) else -1,
                }
            )
        normed.append(
            {
                "id": f"part-{p_idx}",
                "type": str(part.get("type", "")).strip(),
                "title": str(part.get("title", "")).strip(),
                "content": str(part.get("content", "")).strip(),
                "questions": normed_questions,
            }
        )
    return normed


def _build_model(model_cls: Callable[..., T], **fields: Any) -> T:
    try:
        return model_cls(**fields)
    except ValidationError as err:
        raise PermanentRemoteError(f"Model returned malformed content: {err}") from err


def spoken_part_text(index: int, part_type: str, content: str, label: str) -> str:
    """Text handed to speech synthesis for the ``index``-th (0-based) part."""
    return f"{label} {index + 1}. {part_type}. {content}"


def _full_script(content_parts: List[Dict[str, Any]], label: str) -> str:
    return " ... ... ".join(
        f"{label} {i + 1}. {p['type']}. ... {p['content']}" for i, p in enumerate(content_parts)
    )


def _parse_evaluation(text: str) -> EvaluationResult:
    data = _extract_json_object(text)
    score = data.get("score")
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        raise PermanentRemoteError("Evaluation did not include a numeric score")
    corrections = data.get("corrections") or []
    if not isinstance(corrections, list):
        corrections = [corrections]
    return _build_model(
        EvaluationResult,
        score=max(0, min(100, int(round(score)))),
        feedback=str(data.get("feedback", "")).strip(),
        corrections=[str(c).strip() for c in corrections if str(c).strip()],
    )


# ============================================================================
# CONTENT SERVICE
# ============================================================================

class ContentService:
    """
    Stage content fetchers and evaluators backed by Gemini.

    Attributes:
        settings: Runtime settings (models, retry policy, exam language/level)
        client_factory: Callable returning a client for a given model; a new
            client is created for every attempt and closed afterwards
        sleep: Backoff sleep handed to the retry executor (milliseconds)
    """

    def __init__(
        self,
        app_settings: Optional[Settings] = None,
        *,
        client_factory: Optional[Callable[..., Any]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.settings = app_settings or default_settings
        self.client_factory = client_factory or GeminiClient
        self.sleep = sleep
        self.rng = rng

    @property
    def exam(self) -> str:
        return f"{self.settings.exam_language} {self.settings.exam_level}"

    async def _call(self, model: str, call: Callable[[Any], Awaitable[T]]) -> T:
        """
        Run one remote call through the retry executor.

        Args:
            model: Gemini model name for the client
            call: Coroutine function receiving the client

        Returns:
            The result of ``call``.
        """

        async def operation() -> T:
            client = self.client_factory(model=model)
            try:
                return await call(client)
            finally:
                await client.aclose()

        kwargs: Dict[str, Any] = {
            "max_attempts": self.settings.retry_max_attempts,
            "base_delay_ms": self.settings.retry_base_delay_ms,
        }
        if self.sleep is not None:
            kwargs["sleep"] = self.sleep
        return await execute(operation, **kwargs)

    async def _generate_json(self, prompt: str, schema: Dict[str, Any], *, model: Optional[str] = None) -> Dict[str, Any]:
        async def call(client: Any) -> Dict[str, Any]:
            return _extract_json_object(await client.generate(prompt, response_schema=schema))

        return await self._call(model or self.settings.gemini_model, call)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def reading_prompt(self) -> str:
        return (
            f"Create {self.exam} reading test. {PARTS_PER_TEST} parts. "
            "Part 1: Email (40 words). Part 2: Notice/Sign (20 words). "
            f"{random_context(self.rng)} {QUESTIONS_PER_PART} multiple-choice questions per part."
        )

    async def fetch_reading(self) -> ReadingContent:
        """
        Generate a reading test.

        Returns:
            ReadingContent: Two parts with three questions each

        Raises:
            RemoteError: If generation fails after retries or the response is malformed
        """
        prompt = self.reading_prompt()

        async def call(client: Any) -> ReadingContent:
            data = _extract_json_object(await client.generate(prompt, response_schema=PARTS_SCHEMA))
            return _build_model(ReadingContent, parts=_normalize_parts(data, PARTS_PER_TEST))

        content = await self._call(self.settings.gemini_model, call)
        logger.info("Generated reading test with %d questions", len(content.questions()))
        return content

    # ------------------------------------------------------------------
    # Listening
    # ------------------------------------------------------------------

    def listening_prompt(self) -> str:
        return (
            f"Create {self.exam} listening script. {PARTS_PER_TEST} parts. "
            "Part 1: Dialogue. Part 2: Announcement. "
            f"{random_context(self.rng)} Simple sentences. {QUESTIONS_PER_PART} questions per part."
        )

    async def fetch_listening_script(self) -> ListeningContent:
        """Generate the listening script and its questions, without audio."""
        prompt = self.listening_prompt()
        label = self.settings.listening_part_label

        async def call(client: Any) -> ListeningContent:
            data = _extract_json_object(await client.generate(prompt, response_schema=PARTS_SCHEMA))
            parts = _normalize_parts(data, PARTS_PER_TEST)
            return _build_model(ListeningContent, parts=parts, full_script=_full_script(parts, label))

        return await self._call(self.settings.gemini_model, call)

    async def synthesize(self, text: str) -> bytes:
        """Synthesize ``text`` into raw 16-bit PCM with the configured voice."""
        voice = self.settings.gemini_tts_voice

        async def call(client: Any) -> bytes:
            return await client.synthesize_speech(text, voice=voice)

        return await self._call(self.settings.gemini_model_tts, call)

    async def fetch_listening(self) -> ListeningBundle:
        """
        Generate a listening script and synthesize one audio segment per part.

        The synthesis calls are launched together. If any of them fails after
        its retries, the remaining calls are cancelled and the failure is
        raised; no partial set of segments is ever returned.

        Returns:
            ListeningBundle: Script plus segments in part order
        """
        content = await self.fetch_listening_script()
        label = self.settings.listening_part_label
        tasks = [
            asyncio.ensure_future(self.synthesize(spoken_part_text(i, part.type, part.content, label)))
            for i, part in enumerate(content.parts)
        ]
        try:
            segments = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise
        logger.info("Synthesized %d listening segments", len(segments))
        return ListeningBundle(content=content, audio_segments=list(segments))

    # ------------------------------------------------------------------
    # Writing / Speaking tasks
    # ------------------------------------------------------------------

    async def fetch_writing(self) -> WritingTask:
        prompt = f"{self.exam} writing task. {random_context(self.rng)} Ask user to write short email covering 3 points."
        data = await self._generate_json(prompt, TASK_SCHEMA)
        return _build_model(
            WritingTask,
            topic=str(data.get("topic", "")).strip(),
            instructions=str(data.get("instructions", "")).strip(),
        )

    async def fetch_speaking(self) -> SpeakingTask:
        prompt = f"{self.exam} speaking task. {random_context(self.rng)} Instructions only."
        data = await self._generate_json(prompt, TASK_SCHEMA)
        return _build_model(
            SpeakingTask,
            topic=str(data.get("topic", "")).strip(),
            instructions=str(data.get("instructions", "")).strip(),
        )

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate_writing(self, task: WritingTask, text: str) -> EvaluationResult:
        """
        Grade a written answer.

        Args:
            task: The writing task that was answered
            text: The user's answer

        Raises:
            InputError: If the answer is blank
        """
        text = (text or "").strip()
        if not text:
            raise InputError("Please write your answer before submitting.")
        text = text[:MAX_RESPONSE_CHARS]
        prompt = (
            f"Task: {task.instructions}\nUser Text: {text}\n\n"
            f"Evaluate for {self.exam}. Score out of 100. Feedback & corrections."
        )

        async def call(client: Any) -> EvaluationResult:
            return _parse_evaluation(await client.generate(prompt, response_schema=EVALUATION_SCHEMA))

        return await self._call(self.settings.gemini_model_evaluation, call)

    async def evaluate_speaking(self, task: SpeakingTask, response: SpeakingResponse) -> EvaluationResult:
        """
        Grade a spoken answer, given either as a recording or as typed text.

        Args:
            task: The speaking task that was answered
            response: Exactly one of AudioInput or TextInput

        Raises:
            InputError: If the response is empty
        """
        if isinstance(response, AudioInput):
            if not response.data:
                raise InputError("The recording is empty.")
            graded: Dict[str, Any] = {
                "inlineData": {
                    "mimeType": response.mime_type,
                    "data": base64.b64encode(response.data).decode("ascii"),
                }
            }
        elif isinstance(response, TextInput):
            answer = response.text.strip()
            if not answer:
                raise InputError("Please type your answer before submitting.")
            graded = {"text": f"User text: {answer[:MAX_RESPONSE_CHARS]}"}
        else:
            raise TypeError(f"Unsupported speaking response: {type(response).__name__}")

        parts = [
            graded,
            {"text": f"Task: {task.instructions}. Evaluate {self.exam} speech. Score (0-100), feedback & corrections."},
        ]

        async def call(client: Any) -> EvaluationResult:
            return _parse_evaluation(await client.generate_multimodal(parts, response_schema=EVALUATION_SCHEMA))

        return await self._call(self.settings.gemini_model_evaluation, call)
