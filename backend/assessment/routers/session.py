from __future__ import annotations
import base64
import binascii
import logging
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, model_validator

from ..content import ContentService
from ..errors import DecodeError, InputError, PlaybackUnavailableError, RemoteError, TransitionError
from ..report import ScoreReport
from ..schemas import AudioInput, EvaluationResult, SpeakingResponse, Stage, TextInput, UserDetails
from ..session import AssessmentSession, SessionView
from ..stages import ListeningStage, SpeakingStage, StageController, StageView, WritingStage, QuizStage

logger = logging.getLogger(__name__)

router = APIRouter(tags=["assessment"])

_session: Optional[AssessmentSession] = None


def get_session() -> AssessmentSession:
	"""One assessment session per process, created on first use."""
	global _session
	if _session is None:
		_session = AssessmentSession(ContentService())
	return _session


async def shutdown_session() -> None:
	global _session
	if _session is not None:
		await _session.close()
		_session = None


@contextmanager
def _mapped_errors() -> Iterator[None]:
	try:
		yield
	except (InputError, ValueError) as e:
		raise HTTPException(status_code=400, detail=str(e))
	except TransitionError as e:
		raise HTTPException(status_code=409, detail=str(e))
	except (RemoteError, DecodeError) as e:
		logger.error("Remote failure: %s", e)
		raise HTTPException(status_code=502, detail=str(e))
	except PlaybackUnavailableError as e:
		logger.warning("Playback unavailable: %s", e)
		raise HTTPException(status_code=503, detail=str(e))


def _active(session: AssessmentSession, kind: type = StageController) -> StageController:
	controller = session.active
	if controller is None:
		raise HTTPException(status_code=409, detail=f"No active stage at {session.stage.value}")
	if not isinstance(controller, kind):
		raise HTTPException(status_code=409, detail=f"Not supported by the {controller.stage.value} stage")
	return controller


class ScoreRequest(BaseModel):
	stage: Stage
	value: float


class AnswersRequest(BaseModel):
	answers: Dict[str, int]


class GradeResponse(BaseModel):
	score: float


class WritingRequest(BaseModel):
	text: str


class SpeakingRequest(BaseModel):
	audio_base64: Optional[str] = None
	mime_type: str = "audio/webm"
	text: Optional[str] = None

	@model_validator(mode="after")
	def _exactly_one(self) -> "SpeakingRequest":
		if (self.audio_base64 is None) == (self.text is None):
			raise ValueError("Provide exactly one of audio_base64 or text")
		return self

	def to_response(self) -> SpeakingResponse:
		if self.text is not None:
			return TextInput(text=self.text)
		try:
			data = base64.b64decode(self.audio_base64, validate=True)
		except (binascii.Error, ValueError):
			raise InputError("audio_base64 is not valid base64")
		if not data:
			raise InputError("The recording is empty.")
		return AudioInput(data=data, mime_type=self.mime_type)


class InputErrorRequest(BaseModel):
	message: str


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

@router.get("/session", response_model=SessionView)
async def session_view(session: AssessmentSession = Depends(get_session)):
	return session.view()


@router.post("/session/start", response_model=SessionView)
async def session_start(session: AssessmentSession = Depends(get_session)):
	with _mapped_errors():
		session.start()
	return session.view()


@router.post("/session/begin", response_model=SessionView)
async def session_begin(session: AssessmentSession = Depends(get_session)):
	with _mapped_errors():
		session.begin()
	return session.view()


@router.post("/session/score", response_model=SessionView)
async def session_score(req: ScoreRequest, session: AssessmentSession = Depends(get_session)):
	with _mapped_errors():
		session.report_score(req.stage, req.value)
	return session.view()


@router.post("/session/details", response_model=SessionView)
async def session_details(req: UserDetails, session: AssessmentSession = Depends(get_session)):
	with _mapped_errors():
		session.submit_details(req)
	return session.view()


@router.get("/session/report", response_model=ScoreReport)
async def session_report(session: AssessmentSession = Depends(get_session)):
	return session.report()


@router.post("/session/restart", response_model=SessionView)
async def session_restart(session: AssessmentSession = Depends(get_session)):
	with _mapped_errors():
		session.restart()
		session.start()
	return session.view()


# ---------------------------------------------------------------------------
# Active stage
# ---------------------------------------------------------------------------

@router.get("/stage", response_model=StageView)
async def stage_view(
	wait: bool = Query(False, description="Block until the stage finished loading"),
	session: AssessmentSession = Depends(get_session),
):
	controller = _active(session)
	if wait:
		await controller.wait()
	return controller.view()


@router.post("/stage/retry", response_model=StageView)
async def stage_retry(session: AssessmentSession = Depends(get_session)):
	controller = _active(session)
	with _mapped_errors():
		controller.retry()
	return controller.view()


@router.post("/stage/answers", response_model=GradeResponse)
async def stage_answers(req: AnswersRequest, session: AssessmentSession = Depends(get_session)):
	controller = _active(session, QuizStage)
	with _mapped_errors():
		score = controller.submit_answers(req.answers)
	return GradeResponse(score=score)


@router.post("/stage/writing", response_model=EvaluationResult)
async def stage_writing(req: WritingRequest, session: AssessmentSession = Depends(get_session)):
	controller = _active(session, WritingStage)
	with _mapped_errors():
		return await controller.evaluate(req.text)


@router.post("/stage/speaking", response_model=EvaluationResult)
async def stage_speaking(req: SpeakingRequest, session: AssessmentSession = Depends(get_session)):
	controller = _active(session, SpeakingStage)
	with _mapped_errors():
		return await controller.evaluate(req.to_response())


@router.post("/stage/speaking/input-error", response_model=StageView)
async def stage_speaking_input_error(req: InputErrorRequest, session: AssessmentSession = Depends(get_session)):
	controller = _active(session, SpeakingStage)
	controller.report_input_error(InputError(req.message))
	return controller.view()


@router.post("/stage/complete", response_model=SessionView)
async def stage_complete(session: AssessmentSession = Depends(get_session)):
	controller = _active(session)
	with _mapped_errors():
		controller.complete()
	return session.view()


@router.get("/stage/audio", response_class=Response)
async def stage_audio_track(session: AssessmentSession = Depends(get_session)):
	controller = _active(session, ListeningStage)
	with _mapped_errors():
		data = controller.wav()
	return Response(content=data, media_type="audio/wav")


@router.post("/stage/audio/{action}", response_model=StageView)
async def stage_audio(action: str, session: AssessmentSession = Depends(get_session)):
	controller = _active(session, ListeningStage)
	handlers = {"play": controller.play, "pause": controller.pause, "stop": controller.stop}
	if action not in handlers:
		raise HTTPException(status_code=404, detail=f"Unknown audio action: {action}")
	with _mapped_errors():
		handlers[action]()
	return controller.view()
