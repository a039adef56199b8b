"""
Assessment Session Orchestrator

Owns the stage state machine, the score board and the one-stage-ahead
preload cache for a single user session:

    home -> reading -> listening -> writing -> speaking -> details -> results -> home

Entering a stage kicks off a background fetch of the next stage's content.
When a stage becomes current it takes its cached task (if any) and a stage
controller is mounted to load and run it. Scores flow back only through
``report_score``.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from datetime import datetime, timezone
from functools import partial
from typing import Awaitable, Callable, Dict, List, Optional, Set

from pydantic import BaseModel

from .audio import ContextFactory
from .content import ContentService
from .errors import InputError, TransitionError
from .report import ScoreReport, build_report
from .schemas import (
	MODULE_STAGES,
	ScoreBoard,
	Stage,
	StageContent,
	SubmissionRecord,
	UserDetails,
)
from .settings import Settings, settings as default_settings
from .stages import STAGE_CONTROLLERS, StageController, StageView
from .submission import ResultSink

logger = logging.getLogger(__name__)

# Stage reached after a module stage reports its score
NEXT_STAGE: Dict[Stage, Stage] = {
	Stage.READING: Stage.LISTENING,
	Stage.LISTENING: Stage.WRITING,
	Stage.WRITING: Stage.SPEAKING,
	Stage.SPEAKING: Stage.DETAILS,
}

# Stage whose content is fetched in the background while the key stage is current
PREFETCH_AHEAD: Dict[Stage, Stage] = {
	Stage.HOME: Stage.READING,
	Stage.READING: Stage.LISTENING,
	Stage.LISTENING: Stage.WRITING,
	Stage.WRITING: Stage.SPEAKING,
}

PHONE_BLOCKLIST = ("1234567890", "9876543210", "0123456789")


def validate_phone(phone: str) -> Optional[str]:
	"""Return a user-facing problem with ``phone``, or None when it is acceptable."""
	digits = re.sub(r"\D", "", phone or "")
	if len(digits) != 10:
		return "Phone number must be exactly 10 digits."
	if digits.startswith("0"):
		return "Phone number cannot start with 0."
	if digits in PHONE_BLOCKLIST:
		return "Please enter a valid, real phone number."
	if re.fullmatch(r"(\d)\1+", digits):
		return "Please enter a valid phone number (not repeated digits)."
	return None


class PreloadCache:
	"""At most one pending-or-finished fetch task per stage, each consumed once."""

	def __init__(self) -> None:
		self._slots: Dict[Stage, asyncio.Task] = {}

	def __contains__(self, stage: Stage) -> bool:
		return stage in self._slots

	def __len__(self) -> int:
		return len(self._slots)

	def stages(self) -> List[Stage]:
		return list(self._slots)

	def put(self, stage: Stage, task: asyncio.Task) -> None:
		if stage in self._slots:
			raise ValueError(f"{stage.value} is already cached")
		self._slots[stage] = task

	def peek(self, stage: Stage) -> Optional[asyncio.Task]:
		return self._slots.get(stage)

	def take(self, stage: Stage) -> Optional[asyncio.Task]:
		return self._slots.pop(stage, None)

	def clear(self) -> None:
		for task in self._slots.values():
			task.cancel()
		self._slots.clear()


class SessionView(BaseModel):
	stage: Stage
	scores: ScoreBoard
	average: int
	prefetched: List[Stage]
	details: UserDetails
	active: Optional[StageView] = None


class AssessmentSession:
	"""
	One user's pass through the assessment.

	Args:
		content: Fetchers/evaluators used for every stage
		sink: Receives the result record when details are submitted
		app_settings: Runtime settings (audio parameters, default language)
		playback_factory: Creates the audio playback context for listening stages
	"""

	def __init__(
		self,
		content: ContentService,
		*,
		sink: Optional[ResultSink] = None,
		app_settings: Optional[Settings] = None,
		playback_factory: Optional[ContextFactory] = None,
	) -> None:
		self.settings = app_settings or default_settings
		self.content = content
		self.sink = sink or ResultSink(self.settings.results_webhook_url)
		self.playback_factory = playback_factory
		self.stage = Stage.HOME
		self.scores = ScoreBoard()
		self.details = self._blank_details()
		self.cache = PreloadCache()
		self.active: Optional[StageController] = None
		self.last_submission: Optional[SubmissionRecord] = None
		self._submissions: Set[asyncio.Task] = set()
		self._fetchers: Dict[Stage, Callable[[], Awaitable[StageContent]]] = {
			Stage.READING: content.fetch_reading,
			Stage.LISTENING: content.fetch_listening,
			Stage.WRITING: content.fetch_writing,
			Stage.SPEAKING: content.fetch_speaking,
		}

	# ------------------------------------------------------------------
	# Transitions
	# ------------------------------------------------------------------

	def start(self) -> None:
		"""Enter the home screen: warm up the reading test in the background."""
		if self.stage is not Stage.HOME:
			raise TransitionError(f"Cannot start from {self.stage.value}")
		self._prefetch(PREFETCH_AHEAD[Stage.HOME])

	def begin(self) -> StageController:
		if self.stage is not Stage.HOME:
			raise TransitionError(f"Cannot begin the test from {self.stage.value}")
		self._enter(Stage.READING)
		return self.active

	def report_score(self, stage: Stage, value: float) -> Stage:
		"""Store the score of the current module stage and advance to the next stage."""
		if stage not in MODULE_STAGES or stage is not self.stage:
			raise TransitionError(f"Cannot report a {stage.value} score while at {self.stage.value}")
		if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value) or not 0 <= value <= 100:
			raise ValueError(f"Score must be between 0 and 100, got {value!r}")
		self.scores.record(stage, float(value))
		logger.info("%s score recorded: %.1f", stage.value, value)
		self._enter(NEXT_STAGE[stage])
		return self.stage

	def submit_details(self, details: UserDetails) -> SubmissionRecord:
		"""Validate the user's details, move to results and send the record to the sink."""
		if self.stage is not Stage.DETAILS:
			raise TransitionError(f"Cannot submit details while at {self.stage.value}")
		name = (details.name or "").strip()
		if not name:
			raise InputError("Please enter your full name.")
		problem = validate_phone(details.phone)
		if problem:
			raise InputError(problem)
		self.details = UserDetails(
			name=name,
			phone=details.phone.strip(),
			language=details.language or self.settings.default_user_language,
		)
		record = SubmissionRecord(
			name=self.details.name,
			phone=self.details.phone,
			language=self.details.language,
			reading_score=round(self.scores.reading),
			listening_score=round(self.scores.listening),
			writing_score=round(self.scores.writing),
			speaking_score=round(self.scores.speaking),
			average_score=self.scores.average,
			timestamp=datetime.now(timezone.utc).isoformat(),
		)
		self.last_submission = record
		self._enter(Stage.RESULTS)
		task = asyncio.get_running_loop().create_task(self.sink.submit(record), name="submit-result")
		self._submissions.add(task)
		task.add_done_callback(self._submission_done)
		return record

	def restart(self) -> None:
		"""Back to home with a clean score board, blank details and an empty cache."""
		if self.stage is not Stage.RESULTS:
			raise TransitionError(f"Cannot restart from {self.stage.value}")
		self.cache.clear()
		self.scores = ScoreBoard()
		self.details = self._blank_details()
		self.last_submission = None
		self._enter(Stage.HOME)
		logger.info("Session restarted")

	async def close(self) -> None:
		"""Tear down the active stage and background work (process shutdown)."""
		if self.active is not None:
			self.active.close()
			self.active = None
		self.cache.clear()
		pending = list(self._submissions)
		for task in pending:
			task.cancel()
		if pending:
			await asyncio.gather(*pending, return_exceptions=True)

	# ------------------------------------------------------------------
	# Content
	# ------------------------------------------------------------------

	def consume_prefetch(self, stage: Stage) -> Optional[asyncio.Task]:
		return self.cache.take(stage)

	async def obtain_content(self, stage: Stage, prefetched: Optional[asyncio.Task] = None) -> StageContent:
		"""
		Content for ``stage``: the prefetched result when it succeeded,
		otherwise a fresh foreground fetch.
		"""
		if prefetched is not None:
			try:
				return await asyncio.shield(prefetched)
			except asyncio.CancelledError:
				if not prefetched.cancelled():
					prefetched.cancel()
					raise
				logger.warning("Prefetch of %s was cancelled, fetching in foreground", stage.value)
			except Exception as exc:
				logger.warning("Prefetch of %s failed (%s), fetching in foreground", stage.value, exc)
		logger.info("Fetching %s content", stage.value)
		return await self._fetchers[stage]()

	# ------------------------------------------------------------------
	# Views
	# ------------------------------------------------------------------

	def view(self) -> SessionView:
		return SessionView(
			stage=self.stage,
			scores=self.scores.model_copy(),
			average=self.scores.average,
			prefetched=self.cache.stages(),
			details=self.details.model_copy(),
			active=self.active.view() if self.active is not None else None,
		)

	def report(self) -> ScoreReport:
		return build_report(self.scores)

	# ------------------------------------------------------------------
	# Internals
	# ------------------------------------------------------------------

	def _blank_details(self) -> UserDetails:
		return UserDetails(language=self.settings.default_user_language)

	def _enter(self, stage: Stage) -> None:
		previous, self.active = self.active, None
		if previous is not None:
			previous.close()
		self.stage = stage
		logger.info("Entered %s", stage.value)
		controller_cls = STAGE_CONTROLLERS.get(stage)
		if controller_cls is not None:
			controller = controller_cls(self, self.consume_prefetch(stage))
			self.active = controller
			controller.load()
		if stage is not Stage.HOME and stage in PREFETCH_AHEAD:
			self._prefetch(PREFETCH_AHEAD[stage])

	def _prefetch(self, stage: Stage) -> None:
		if stage in self.cache:
			return
		task = asyncio.get_running_loop().create_task(self._fetchers[stage](), name=f"prefetch-{stage.value}")
		task.add_done_callback(partial(self._prefetch_done, stage))
		self.cache.put(stage, task)
		logger.debug("Prefetching %s", stage.value)

	@staticmethod
	def _prefetch_done(stage: Stage, task: asyncio.Task) -> None:
		if task.cancelled():
			logger.debug("Prefetch of %s cancelled", stage.value)
			return
		exc = task.exception()
		if exc is not None:
			logger.error("Background load of %s failed: %s", stage.value, exc)
		else:
			logger.info("Background load of %s ready", stage.value)

	def _submission_done(self, task: asyncio.Task) -> None:
		self._submissions.discard(task)
		if task.cancelled():
			return
		exc = task.exception()
		if exc is not None:
			logger.error("Result submission crashed: %s", exc)
