"""
Stage controllers.

A controller is mounted by the session when a module stage becomes current
and torn down when the session moves on (or is closed). It owns the stage's
loading/error state, the user's answers and, for listening, the assembled
audio and its player. Scores only leave a controller through
``session.report_score``.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from pydantic import BaseModel

from .audio import AssembledAudio, AudioPlayer, ContextFactory, assemble, encode_wav
from .errors import InputError, TransitionError
from .schemas import (
	EvaluationResult,
	ListeningBundle,
	ListeningContent,
	ReadingContent,
	SpeakingResponse,
	SpeakingTask,
	Stage,
	WritingTask,
)

if TYPE_CHECKING:
	from .session import AssessmentSession

logger = logging.getLogger(__name__)


class StageStatus(str, Enum):
	LOADING = "loading"
	READY = "ready"
	ERROR = "error"
	CLOSED = "closed"


class StageView(BaseModel):
	stage: Stage
	status: StageStatus
	error: Optional[str] = None
	content: Optional[Dict[str, Any]] = None
	submitted: bool = False
	score: Optional[float] = None
	answers: Dict[str, int] = {}
	result: Optional[EvaluationResult] = None
	submission_error: Optional[str] = None
	is_playing: bool = False
	text_fallback: bool = False
	input_error: Optional[str] = None


class StageController:
	stage: Stage

	def __init__(self, session: "AssessmentSession", prefetched: Optional[asyncio.Task] = None) -> None:
		self.session = session
		self.status = StageStatus.LOADING
		self.error: Optional[str] = None
		self.content: Any = None
		self._prefetched = prefetched
		self._task: Optional[asyncio.Task] = None
		self._generation = 0
		self._closed = False

	@property
	def closed(self) -> bool:
		return self._closed

	def load(self) -> asyncio.Task:
		"""Start loading, from the prefetched task when the session handed one over."""
		prefetched, self._prefetched = self._prefetched, None
		return self._spawn(prefetched)

	def retry(self) -> asyncio.Task:
		"""Re-run the fetch from scratch in the foreground; only a failed load can be retried."""
		if self._closed:
			raise TransitionError(f"{self.stage.value} stage is closed")
		if self.status is StageStatus.LOADING and self._task is not None and not self._task.done():
			return self._task
		if self.status is not StageStatus.ERROR:
			raise TransitionError(f"{self.stage.value} stage has nothing to retry ({self.status.value})")
		logger.info("Retrying %s stage", self.stage.value)
		return self._spawn(None)

	async def wait(self) -> None:
		"""Wait for the current load to settle (ready or error)."""
		task = self._task
		if task is None:
			return
		try:
			await asyncio.shield(task)
		except asyncio.CancelledError:
			if not task.cancelled():
				raise

	def close(self) -> None:
		if self._closed:
			return
		self._closed = True
		self.status = StageStatus.CLOSED
		if self._prefetched is not None:
			self._prefetched.cancel()
			self._prefetched = None
		if self._task is not None and not self._task.done():
			self._task.cancel()
		self._release()
		logger.debug("%s stage torn down", self.stage.value)

	def complete(self) -> float:
		"""Report this stage's score to the session, which then moves on."""
		self._require_ready()
		score = self._score()
		self.session.report_score(self.stage, score)
		return score

	def view(self) -> StageView:
		return StageView(
			stage=self.stage,
			status=self.status,
			error=self.error,
			content=self.public_content() if self.status is StageStatus.READY else None,
		)

	def public_content(self) -> Optional[Dict[str, Any]]:
		if self.content is None:
			return None
		return self.content.model_dump()

	def _spawn(self, prefetched: Optional[asyncio.Task]) -> asyncio.Task:
		if self._task is not None and not self._task.done():
			self._task.cancel()
		self._generation += 1
		self.status = StageStatus.LOADING
		self.error = None
		self._task = asyncio.get_running_loop().create_task(
			self._run(self._generation, prefetched), name=f"load-{self.stage.value}"
		)
		return self._task

	async def _run(self, generation: int, prefetched: Optional[asyncio.Task]) -> None:
		try:
			content = await self.session.obtain_content(self.stage, prefetched)
			if self._is_stale(generation):
				return
			self._accept(content)
		except Exception as exc:
			if self._is_stale(generation):
				return
			logger.error("Loading %s stage failed: %s", self.stage.value, exc)
			self.status = StageStatus.ERROR
			self.error = str(exc) or type(exc).__name__
			return
		self.status = StageStatus.READY
		logger.info("%s stage ready", self.stage.value)

	def _is_stale(self, generation: int) -> bool:
		return self._closed or generation != self._generation

	def _accept(self, content: Any) -> None:
		self.content = content

	def _release(self) -> None:
		pass

	def _require_ready(self) -> None:
		if self._closed:
			raise TransitionError(f"{self.stage.value} stage is closed")
		if self.status is not StageStatus.READY:
			raise TransitionError(f"{self.stage.value} stage is not ready ({self.status.value})")

	def _score(self) -> float:
		raise NotImplementedError


class QuizStage(StageController):
	"""Multiple-choice stage graded locally against the generated answer key."""

	content: Optional[ReadingContent | ListeningContent]

	def __init__(self, session: "AssessmentSession", prefetched: Optional[asyncio.Task] = None) -> None:
		super().__init__(session, prefetched)
		self.answers: Dict[str, int] = {}
		self.submitted = False
		self.score: Optional[float] = None

	def submit_answers(self, answers: Dict[str, int]) -> float:
		self._require_ready()
		if self.submitted:
			raise TransitionError("Answers were already submitted")
		questions = {q.id: q for q in self.content.questions()}
		for question_id, choice in answers.items():
			question = questions.get(question_id)
			if question is None:
				raise InputError(f"Unknown question id: {question_id}")
			if not 0 <= choice < len(question.options):
				raise InputError(f"Answer for {question_id} must be between 0 and {len(question.options) - 1}")
		correct = sum(1 for q in questions.values() if answers.get(q.id) == q.correct_answer_index)
		total = len(questions)
		self.answers = dict(answers)
		self.score = (correct / total) * 100 if total > 0 else 0.0
		self.submitted = True
		logger.info("%s answers graded: %d/%d correct", self.stage.value, correct, total)
		return self.score

	def public_content(self) -> Optional[Dict[str, Any]]:
		if self.content is None:
			return None
		if self.submitted:
			return self.content.model_dump()
		# answer key stays hidden until the answers are graded
		return self.content.model_dump(exclude={"parts": {"__all__": {"questions": {"__all__": {"correct_answer_index"}}}}})

	def view(self) -> StageView:
		view = super().view()
		view.submitted = self.submitted
		view.score = self.score
		view.answers = dict(self.answers)
		return view

	def _score(self) -> float:
		if not self.submitted or self.score is None:
			raise TransitionError("Submit your answers first")
		return self.score


class ReadingStage(QuizStage):
	stage = Stage.READING


class ListeningStage(QuizStage):
	stage = Stage.LISTENING

	def __init__(self, session: "AssessmentSession", prefetched: Optional[asyncio.Task] = None) -> None:
		super().__init__(session, prefetched)
		self.audio: Optional[AssembledAudio] = None
		self.player: Optional[AudioPlayer] = None

	@property
	def is_playing(self) -> bool:
		return self.player is not None and self.player.is_playing

	def play(self) -> None:
		self._require_player().play()

	def pause(self) -> None:
		self._require_player().pause()

	def stop(self) -> None:
		self._require_player().stop()

	def wav(self) -> bytes:
		"""The assembled track as a WAV file, for clients that play it themselves."""
		self._require_ready()
		if self.audio is None:
			raise TransitionError("Listening audio is not ready")
		return encode_wav(self.audio)

	def view(self) -> StageView:
		view = super().view()
		view.is_playing = self.is_playing
		return view

	def _accept(self, bundle: ListeningBundle) -> None:
		audio = assemble(
			bundle.audio_segments,
			self.session.settings.audio_silence_seconds,
			self.session.settings.audio_sample_rate,
		)
		factory: Optional[ContextFactory] = self.session.playback_factory
		if self.player is not None:
			self.player.close()
		self.audio = audio
		self.player = AudioPlayer(audio, factory)
		self.content = bundle.content
		logger.info("Listening audio assembled: %.1f s", audio.duration_seconds)

	def _release(self) -> None:
		if self.player is not None:
			self.player.close()

	def _require_player(self) -> AudioPlayer:
		self._require_ready()
		if self.player is None:
			raise TransitionError("Listening audio is not ready")
		return self.player


class _EvaluatedStage(StageController):
	"""Stage whose answer is graded remotely."""

	def __init__(self, session: "AssessmentSession", prefetched: Optional[asyncio.Task] = None) -> None:
		super().__init__(session, prefetched)
		self.result: Optional[EvaluationResult] = None
		self.submission_error: Optional[str] = None
		self.evaluating = False

	async def _evaluate(self, make_call) -> EvaluationResult:
		self._require_ready()
		if self.evaluating:
			raise TransitionError("An evaluation is already running")
		self.evaluating = True
		self.submission_error = None
		try:
			result = await make_call()
		except InputError:
			raise
		except Exception as exc:
			if not self._closed:
				self.submission_error = str(exc) or type(exc).__name__
			raise
		finally:
			self.evaluating = False
		if not self._closed:
			self.result = result
		return result

	def view(self) -> StageView:
		view = super().view()
		view.result = self.result
		view.submission_error = self.submission_error
		view.submitted = self.result is not None
		view.score = self.result.score if self.result is not None else None
		return view

	def _score(self) -> float:
		if self.result is None:
			raise TransitionError("Submit your answer first")
		return self.result.score


class WritingStage(_EvaluatedStage):
	stage = Stage.WRITING
	content: Optional[WritingTask]

	async def evaluate(self, text: str) -> EvaluationResult:
		self._require_ready()
		return await self._evaluate(lambda: self.session.content.evaluate_writing(self.content, text))


class SpeakingStage(_EvaluatedStage):
	stage = Stage.SPEAKING
	content: Optional[SpeakingTask]

	def __init__(self, session: "AssessmentSession", prefetched: Optional[asyncio.Task] = None) -> None:
		super().__init__(session, prefetched)
		self.text_fallback = False
		self.input_error: Optional[str] = None

	def report_input_error(self, error: InputError) -> None:
		"""Record a microphone failure; the user continues by typing their answer."""
		logger.warning("Speaking input unavailable: %s", error)
		self.input_error = str(error)
		self.text_fallback = True

	async def evaluate(self, response: SpeakingResponse) -> EvaluationResult:
		self._require_ready()
		return await self._evaluate(lambda: self.session.content.evaluate_speaking(self.content, response))

	def view(self) -> StageView:
		view = super().view()
		view.text_fallback = self.text_fallback
		view.input_error = self.input_error
		return view


STAGE_CONTROLLERS: Dict[Stage, type] = {
	Stage.READING: ReadingStage,
	Stage.LISTENING: ListeningStage,
	Stage.WRITING: WritingStage,
	Stage.SPEAKING: SpeakingStage,
}

__all__: List[str] = [
	"StageStatus",
	"StageView",
	"StageController",
	"QuizStage",
	"ReadingStage",
	"ListeningStage",
	"WritingStage",
	"SpeakingStage",
	"STAGE_CONTROLLERS",
]
