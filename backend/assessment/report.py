from __future__ import annotations
from typing import Dict

from pydantic import BaseModel

from .schemas import ScoreBoard

PASS_MARK = 60


class ExamAdvice(BaseModel):
	title: str
	content: str


class ScoreReport(BaseModel):
	scores: Dict[str, int]
	passed: Dict[str, bool]
	average: int
	advice: ExamAdvice


def exam_advice(score: int) -> ExamAdvice:
	if score >= 90:
		return ExamAdvice(
			title="Ready for the Exam! (Sehr Gut)",
			content=(
				"Your performance is outstanding! You are well-prepared for the real A1 exam. "
				"To ensure a perfect score, double-check article genders (der/die/das) and read every "
				"question carefully to avoid silly mistakes. Viel Glück!"
			),
		)
	if score >= 80:
		return ExamAdvice(
			title="Very Good Performance (Gut)",
			content=(
				"You have a solid grasp of the basics. To push for 100%, review plural forms and irregular "
				"verb conjugations. Practice speaking aloud to improve your confidence and fluency."
			),
		)
	if score >= PASS_MARK:
		return ExamAdvice(
			title="Good Start - Keep Practicing (Befriedigend)",
			content=(
				"You are passing, but there's room for improvement. Focus on the 'Akkusativ' case and modal "
				"verbs (können, wollen, müssen). Try listening to German radio or podcasts to get used to "
				"the speed of native speakers."
			),
		)
	return ExamAdvice(
		title="Needs More Preparation (Ausreichend)",
		content=(
			"Don't be discouraged! Focus on building your daily vocabulary (numbers, days, family members) "
			"and basic sentence structure. Regular practice with flashcards and repeating audio exercises "
			"will help immensely."
		),
	)


def build_report(board: ScoreBoard) -> ScoreReport:
	scores = {
		"reading": round(board.reading),
		"listening": round(board.listening),
		"writing": round(board.writing),
		"speaking": round(board.speaking),
	}
	average = board.average
	return ScoreReport(
		scores=scores,
		passed={name: value >= PASS_MARK for name, value in scores.items()},
		average=average,
		advice=exam_advice(average),
	)
