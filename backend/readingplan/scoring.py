"""Reading fluency and comprehension scoring.

Everything here is a pure function of its inputs; persisting the result on the
Assessment row is the caller's job.

Fluency is measured as words-correct-per-minute: every reading error removes
``ERROR_PENALTY_WORDS`` words from the passage count before dividing by the
elapsed minutes. Both fluency (wpm) and comprehension (percent correct) are
then mapped onto a common 0-100 scale against the grade benchmark:

    value <= min         ->  0 .. AT_GRADE_FLOOR        (linear from zero)
    min < value <= max   ->  AT_GRADE_FLOOR .. ABOVE_GRADE_FLOOR
    value > max          ->  ABOVE_GRADE_FLOOR .. SCORE_CEILING (saturates one band-width above max)

The composite score is a fixed weighted average of the two, and the reading
level label is read off the composite using the same floors.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Sequence, Union

from .benchmarks import BenchmarkRange
from .errors import DomainErrorResult, ErrorCode


MIN_READING_SECONDS = 10.0
ERROR_PENALTY_WORDS = 1.0

AT_GRADE_FLOOR = 60.0
ABOVE_GRADE_FLOOR = 90.0
SCORE_CEILING = 100.0
SLIGHTLY_BELOW_FLOOR = 45.0

FLUENCY_WEIGHT = 0.5
COMPREHENSION_WEIGHT = 0.5

LABEL_ABOVE = "Above Grade Level"
LABEL_AT = "At Grade Level"
LABEL_SLIGHTLY_BELOW = "Slightly Below Grade Level"
LABEL_BELOW = "Below Grade Level"


@dataclass(frozen=True)
class ReadingSession:
	student_id: int
	grade_level: int
	passage_word_count: int
	elapsed_seconds: float
	error_count: int


@dataclass(frozen=True)
class ScoreResult:
	words_per_minute: float
	penalized_wpm: float
	accuracy: float
	fluency_score: float
	comprehension_percent: float
	comprehension_score: float
	composite_score: float
	reading_level_label: str
	correct_answers: int
	total_questions: int

	def to_dict(self) -> Dict[str, Any]:
		return dict(self.__dict__)


class ScoringError(DomainErrorResult):
	pass


def normalize_to_band(value: float, band_min: float, band_max: float) -> float:
	"""Map ``value`` onto the 0-100 scale for a benchmark band."""
	span = band_max - band_min
	if span <= 0:
		raise ValueError("benchmark band must have max > min")
	if value <= band_min:
		if band_min <= 0:
			return AT_GRADE_FLOOR
		return AT_GRADE_FLOOR * max(0.0, value) / band_min
	if value <= band_max:
		return AT_GRADE_FLOOR + (ABOVE_GRADE_FLOOR - AT_GRADE_FLOOR) * (value - band_min) / span
	over = min(1.0, (value - band_max) / span)
	return ABOVE_GRADE_FLOOR + (SCORE_CEILING - ABOVE_GRADE_FLOOR) * over


def penalized_words_per_minute(word_count: int, elapsed_seconds: float, error_count: int) -> float:
	minutes = elapsed_seconds / 60.0
	correct_words = max(0.0, word_count - ERROR_PENALTY_WORDS * error_count)
	return correct_words / minutes


def _normalize_answer(value: Any) -> str:
	return str(value).strip().lower()


def comprehension_percent(questions: Sequence[Mapping[str, Any]], answers: Optional[Mapping[Any, Any]]) -> tuple[float, int]:
	"""Percent of questions answered correctly, and the number correct.

	Answers are keyed by question index; JSON round-trips turn those keys into
	strings, so both forms are accepted.
	"""
	if not questions:
		return 0.0, 0
	answers = answers or {}
	correct = 0
	for idx, question in enumerate(questions):
		given = answers.get(idx, answers.get(str(idx)))
		expected = question.get("correctAnswer")
		if given is None or expected is None:
			continue
		if _normalize_answer(given) == _normalize_answer(expected):
			correct += 1
	return 100.0 * correct / len(questions), correct


def composite_score(fluency: float, comprehension: float) -> float:
	return round(FLUENCY_WEIGHT * fluency + COMPREHENSION_WEIGHT * comprehension, 2)


def reading_level_label(composite: float) -> str:
	if composite >= ABOVE_GRADE_FLOOR:
		return LABEL_ABOVE
	if composite >= AT_GRADE_FLOOR:
		return LABEL_AT
	if composite >= SLIGHTLY_BELOW_FLOOR:
		return LABEL_SLIGHTLY_BELOW
	return LABEL_BELOW


def score(
	session: ReadingSession,
	benchmark: Optional[BenchmarkRange],
	questions: Sequence[Mapping[str, Any]] = (),
	answers: Optional[Mapping[Any, Any]] = None,
	*,
	min_seconds: float = MIN_READING_SECONDS,
) -> Union[ScoreResult, ScoringError]:
	if session.elapsed_seconds <= min_seconds:
		return ScoringError.of(
			ErrorCode.INVALID_ATTEMPT,
			f"Reading session too short ({session.elapsed_seconds:.0f}s), please read the whole passage and try again.",
		)
	if benchmark is None or benchmark.grade != session.grade_level:
		return ScoringError.of(
			ErrorCode.INVALID_GRADE_LEVEL,
			f"No reading benchmark exists for grade {session.grade_level}.",
		)
	if session.passage_word_count <= 0:
		raise ValueError("passage_word_count must be positive")
	if session.error_count < 0:
		raise ValueError("error_count must not be negative")

	raw_wpm = session.passage_word_count / (session.elapsed_seconds / 60.0)
	wcpm = penalized_words_per_minute(session.passage_word_count, session.elapsed_seconds, session.error_count)
	accuracy = 100.0 * max(0, session.passage_word_count - session.error_count) / session.passage_word_count

	fluency = normalize_to_band(wcpm, benchmark.wpm_min, benchmark.wpm_max)
	comp_pct, correct = comprehension_percent(questions, answers)
	comprehension = normalize_to_band(comp_pct, benchmark.comprehension_min, benchmark.comprehension_max)
	composite = composite_score(fluency, comprehension)

	return ScoreResult(
		words_per_minute=round(raw_wpm, 2),
		penalized_wpm=round(wcpm, 2),
		accuracy=round(accuracy, 2),
		fluency_score=round(fluency, 2),
		comprehension_percent=round(comp_pct, 2),
		comprehension_score=round(comprehension, 2),
		composite_score=composite,
		reading_level_label=reading_level_label(composite),
		correct_answers=correct,
		total_questions=len(questions),
	)
