import pytest

from readingplan.benchmarks import BenchmarkTable
from readingplan.errors import ErrorCode
from readingplan.scoring import (
	LABEL_ABOVE,
	LABEL_AT,
	LABEL_BELOW,
	LABEL_SLIGHTLY_BELOW,
	ReadingSession,
	ScoreResult,
	ScoringError,
	comprehension_percent,
	normalize_to_band,
	reading_level_label,
	score,
)


GRADE3 = BenchmarkTable.defaults().get(3)
QUESTIONS = [{"question": f"q{i}", "correctAnswer": f"a{i}"} for i in range(5)]
ALL_RIGHT = {str(i): f"a{i}" for i in range(5)}


def _session(**overrides):
	values = dict(student_id=1, grade_level=3, passage_word_count=150, elapsed_seconds=60.0, error_count=2)
	values.update(overrides)
	return ReadingSession(**values)


def test_worked_example_grade_three():
	result = score(_session(), GRADE3, QUESTIONS, ALL_RIGHT)
	assert isinstance(result, ScoreResult)
	assert result.words_per_minute == 150.0
	assert result.penalized_wpm == 148.0
	assert result.accuracy == pytest.approx(98.67)
	assert result.fluency_score == pytest.approx(91.33)
	assert result.comprehension_percent == 100.0
	assert result.comprehension_score == 96.0
	assert result.composite_score == pytest.approx(93.67)
	assert result.reading_level_label == LABEL_ABOVE
	assert (result.correct_answers, result.total_questions) == (5, 5)


def test_scoring_is_deterministic():
	first = score(_session(), GRADE3, QUESTIONS, ALL_RIGHT)
	second = score(_session(), GRADE3, QUESTIONS, ALL_RIGHT)
	assert first == second


def test_short_session_is_invalid_attempt():
	result = score(_session(elapsed_seconds=9.5), GRADE3, QUESTIONS, ALL_RIGHT)
	assert isinstance(result, ScoringError)
	assert result.code == ErrorCode.INVALID_ATTEMPT


def test_minimum_duration_must_be_exceeded():
	at_minimum = score(_session(elapsed_seconds=10.0), GRADE3)
	assert isinstance(at_minimum, ScoringError)
	assert at_minimum.code == ErrorCode.INVALID_ATTEMPT
	assert isinstance(score(_session(elapsed_seconds=10.5), GRADE3), ScoreResult)


def test_invalid_attempt_is_reported_before_grade_problems():
	result = score(_session(elapsed_seconds=3, grade_level=13), None)
	assert result.code == ErrorCode.INVALID_ATTEMPT


def test_missing_benchmark_is_invalid_grade_level():
	result = score(_session(grade_level=13), BenchmarkTable.defaults().get(13))
	assert isinstance(result, ScoringError)
	assert result.code == ErrorCode.INVALID_GRADE_LEVEL


def test_benchmark_for_another_grade_is_rejected():
	result = score(_session(grade_level=4), GRADE3)
	assert result.code == ErrorCode.INVALID_GRADE_LEVEL


def test_bad_session_values_raise():
	with pytest.raises(ValueError):
		score(_session(passage_word_count=0), GRADE3)
	with pytest.raises(ValueError):
		score(_session(error_count=-1), GRADE3)


def test_normalize_to_band_shape():
	assert normalize_to_band(80, 80, 140) == 60.0
	assert normalize_to_band(40, 80, 140) == 30.0
	assert normalize_to_band(110, 80, 140) == 75.0
	assert normalize_to_band(140, 80, 140) == 90.0
	assert normalize_to_band(500, 80, 140) == 100.0
	assert normalize_to_band(0, 80, 140) == 0.0


def test_normalize_rejects_empty_band():
	with pytest.raises(ValueError):
		normalize_to_band(10, 50, 50)


def test_more_errors_never_raise_the_score():
	low = score(_session(error_count=20), GRADE3, QUESTIONS, ALL_RIGHT)
	high = score(_session(error_count=0), GRADE3, QUESTIONS, ALL_RIGHT)
	assert low.fluency_score < high.fluency_score


def test_comprehension_matching_ignores_case_and_whitespace():
	pct, correct = comprehension_percent(QUESTIONS, {0: " A0 ", "1": "a1", "2": "wrong"})
	assert correct == 2
	assert pct == 40.0


def test_no_questions_scores_zero_comprehension():
	result = score(_session(), GRADE3)
	assert result.comprehension_percent == 0.0
	assert result.comprehension_score == 0.0


def test_label_floors():
	assert reading_level_label(90) == LABEL_ABOVE
	assert reading_level_label(89.99) == LABEL_AT
	assert reading_level_label(60) == LABEL_AT
	assert reading_level_label(45) == LABEL_SLIGHTLY_BELOW
	assert reading_level_label(44.9) == LABEL_BELOW
