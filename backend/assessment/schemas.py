from __future__ import annotations

from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Stage(str, Enum):
	HOME = "home"
	READING = "reading"
	LISTENING = "listening"
	WRITING = "writing"
	SPEAKING = "speaking"
	DETAILS = "details"
	RESULTS = "results"


MODULE_STAGES = (Stage.READING, Stage.LISTENING, Stage.WRITING, Stage.SPEAKING)


class Question(BaseModel):
	model_config = ConfigDict(frozen=True)

	id: str
	text: str
	options: List[str] = Field(min_length=2)
	correct_answer_index: int

	@model_validator(mode="after")
	def check_index_in_bounds(self) -> "Question":
		if not 0 <= self.correct_answer_index < len(self.options):
			raise ValueError(
				f"correct_answer_index {self.correct_answer_index} out of range for {len(self.options)} options"
			)
		return self


class TestPart(BaseModel):
	model_config = ConfigDict(frozen=True)

	id: str
	type: str
	title: str = ""
	content: str
	questions: List[Question] = Field(min_length=1)


class _PartsContent(BaseModel):
	model_config = ConfigDict(frozen=True)

	parts: List[TestPart] = Field(min_length=1)

	@model_validator(mode="after")
	def check_unique_question_ids(self):
		seen = set()
		for question in self.questions():
			if question.id in seen:
				raise ValueError(f"duplicate question id {question.id!r}")
			seen.add(question.id)
		return self

	def questions(self) -> List[Question]:
		return [q for part in self.parts for q in part.questions]


class ReadingContent(_PartsContent):
	kind: Literal["reading"] = "reading"


class ListeningContent(_PartsContent):
	kind: Literal["listening"] = "listening"
	full_script: str = ""


class WritingTask(BaseModel):
	model_config = ConfigDict(frozen=True)

	kind: Literal["writing"] = "writing"
	topic: str
	instructions: str


class SpeakingTask(BaseModel):
	model_config = ConfigDict(frozen=True)

	kind: Literal["speaking"] = "speaking"
	topic: str
	instructions: str


class ListeningBundle(BaseModel):
	"""Listening script plus one raw PCM segment per part, in part order."""

	model_config = ConfigDict(frozen=True)

	content: ListeningContent
	audio_segments: List[bytes]


StageContent = Union[ReadingContent, ListeningBundle, WritingTask, SpeakingTask]


class EvaluationResult(BaseModel):
	model_config = ConfigDict(frozen=True)

	score: int = Field(ge=0, le=100)
	feedback: str
	corrections: List[str] = Field(default_factory=list)


class AudioInput(BaseModel):
	model_config = ConfigDict(frozen=True)

	kind: Literal["audio"] = "audio"
	data: bytes = Field(min_length=1)
	mime_type: str = "audio/webm"


class TextInput(BaseModel):
	model_config = ConfigDict(frozen=True)

	kind: Literal["text"] = "text"
	text: str


SpeakingResponse = Annotated[Union[AudioInput, TextInput], Field(discriminator="kind")]


class ScoreBoard(BaseModel):
	model_config = ConfigDict(validate_assignment=True)

	reading: float = Field(default=0, ge=0, le=100)
	listening: float = Field(default=0, ge=0, le=100)
	writing: float = Field(default=0, ge=0, le=100)
	speaking: float = Field(default=0, ge=0, le=100)

	@property
	def average(self) -> int:
		return round((self.reading + self.listening + self.writing + self.speaking) / 4)

	def record(self, stage: Stage, value: float) -> None:
		if stage not in MODULE_STAGES:
			raise ValueError(f"{stage.value} has no score")
		setattr(self, stage.value, value)


class UserDetails(BaseModel):
	name: str = ""
	phone: str = ""
	language: Optional[str] = None


class SubmissionRecord(BaseModel):
	"""Result row sent to the sink; serialized with the sheet's column names."""

	name: str
	phone: str
	language: str
	reading_score: int = Field(serialization_alias="readingScore")
	listening_score: int = Field(serialization_alias="listeningScore")
	writing_score: int = Field(serialization_alias="writingScore")
	speaking_score: int = Field(serialization_alias="speakingScore")
	average_score: int = Field(serialization_alias="averageScore")
	timestamp: str

	def form_fields(self) -> dict:
		return {key: str(value) for key, value in self.model_dump(by_alias=True).items()}
