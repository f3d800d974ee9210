from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import update
from sqlalchemy.orm import Session

from .auth import get_current_parent
from .students import get_owned_student
from ..benchmarks import BenchmarkTable
from ..db import get_db
from ..errors import ErrorCode, ReadingPlanError
from ..generator import FALLBACK_ASSESSMENT, ContentGenerator, GenerationError, call_with_retries, get_generator, validate_assessment
from ..models import (
	Assessment,
	ASSESSMENT_COMPLETED,
	ASSESSMENT_IN_PROGRESS,
	ASSESSMENT_NOT_STARTED,
	Parent,
	Student,
)
from ..scoring import ReadingSession, ScoringError, score
from ..settings import settings


router = APIRouter(prefix="/assessments", tags=["assessments"])
benchmark_router = APIRouter(prefix="/benchmarks", tags=["benchmarks"])

logger = logging.getLogger(__name__)


class AssessmentCreate(BaseModel):
	student_id: int


class ReadingTelemetry(BaseModel):
	reading_time: float = Field(ge=0, description="Seconds spent reading the passage aloud")
	error_count: int = Field(ge=0)


class SubmitAnswers(BaseModel):
	# question index -> chosen option text
	answers: Dict[str, str] = Field(default_factory=dict)


def benchmark_table(db: Session) -> BenchmarkTable:
	table = BenchmarkTable.load(db)
	return table if table.all() else BenchmarkTable.defaults()


def _word_count(passage: str) -> int:
	return len(passage.split())


def assessment_out(a: Assessment) -> Dict[str, Any]:
	scored = a.status == ASSESSMENT_COMPLETED
	questions = []
	for q in a.questions or []:
		item = {"question": q.get("question"), "options": q.get("options", []), "type": q.get("type")}
		# the answer key is only revealed once the attempt is scored
		if scored:
			item["correctAnswer"] = q.get("correctAnswer")
		questions.append(item)
	out: Dict[str, Any] = {
		"id": a.id,
		"student_id": a.student_id,
		"status": a.status,
		"passage": a.passage,
		"passage_word_count": a.passage_word_count,
		"questions": questions,
		"reading_time": a.reading_time,
		"error_count": a.error_count,
		"created_at": a.created_at,
	}
	if scored:
		out["answers"] = a.answers
		out["result"] = {
			"words_per_minute": a.words_per_minute,
			"accuracy": a.accuracy,
			"fluency_score": a.fluency_score,
			"comprehension_score": a.comprehension_score,
			"composite_score": a.composite_score,
			"reading_level_label": a.reading_level_label,
			"scored_at": a.scored_at,
		}
	return out


def _owned_assessment(db: Session, parent: Parent, assessment_id: int) -> Assessment:
	a = db.get(Assessment, assessment_id)
	if a is None or a.student is None or a.student.parent_id != parent.id:
		raise HTTPException(status_code=404, detail="Assessment not found")
	return a


@router.post("", status_code=201)
async def create_assessment(
	req: AssessmentCreate,
	parent: Parent = Depends(get_current_parent),
	db: Session = Depends(get_db),
	generator: ContentGenerator = Depends(get_generator),
):
	student = get_owned_student(db, parent, req.student_id)
	unfinished = (
		db.query(Assessment)
		.filter(Assessment.student_id == student.id, Assessment.status != ASSESSMENT_COMPLETED)
		.order_by(Assessment.id.desc())
		.first()
	)
	if unfinished is not None:
		return assessment_out(unfinished)

	async def _assessment() -> Dict[str, Any]:
		return validate_assessment(await generator.generate_assessment(grade_level=student.grade_level))

	try:
		payload = await call_with_retries(_assessment, what="assessment passage")
	except GenerationError as e:
		logger.warning("Assessment generation failed for student %s, using fallback passage: %s", student.id, e)
		payload = FALLBACK_ASSESSMENT
	a = Assessment(
		student_id=student.id,
		status=ASSESSMENT_NOT_STARTED,
		passage=payload["passage"],
		passage_word_count=_word_count(payload["passage"]),
		questions=list(payload["questions"]),
	)
	db.add(a)
	db.commit()
	return assessment_out(a)


@router.get("")
def list_assessments(
	student_id: Optional[int] = None,
	parent: Parent = Depends(get_current_parent),
	db: Session = Depends(get_db),
):
	q = db.query(Assessment).join(Student, Assessment.student_id == Student.id).filter(Student.parent_id == parent.id)
	if student_id is not None:
		q = q.filter(Assessment.student_id == student_id)
	return [assessment_out(a) for a in q.order_by(Assessment.id).all()]


@router.get("/{assessment_id}")
def get_assessment(assessment_id: int, parent: Parent = Depends(get_current_parent), db: Session = Depends(get_db)):
	return assessment_out(_owned_assessment(db, parent, assessment_id))


@router.put("/{assessment_id}/reading")
def submit_reading(
	assessment_id: int,
	req: ReadingTelemetry,
	parent: Parent = Depends(get_current_parent),
	db: Session = Depends(get_db),
):
	"""Store the raw reading telemetry. Can be resent any number of times before scoring."""
	a = _owned_assessment(db, parent, assessment_id)
	if a.status == ASSESSMENT_COMPLETED:
		raise ReadingPlanError(code=ErrorCode.ALREADY_SCORED)
	a.reading_time = req.reading_time
	a.error_count = req.error_count
	a.status = ASSESSMENT_IN_PROGRESS
	db.commit()
	return assessment_out(a)


@router.put("/{assessment_id}/submit")
def submit_answers(
	assessment_id: int,
	req: SubmitAnswers,
	parent: Parent = Depends(get_current_parent),
	db: Session = Depends(get_db),
):
	a = _owned_assessment(db, parent, assessment_id)
	if a.status == ASSESSMENT_COMPLETED:
		return assessment_out(a)
	if a.reading_time is None or a.error_count is None:
		raise HTTPException(status_code=400, detail="Submit the reading first")

	session = ReadingSession(
		student_id=a.student_id,
		grade_level=a.student.grade_level,
		passage_word_count=a.passage_word_count,
		elapsed_seconds=a.reading_time,
		error_count=a.error_count,
	)
	result = score(
		session,
		benchmark_table(db).get(session.grade_level),
		a.questions or [],
		req.answers,
		min_seconds=settings.min_reading_seconds,
	)
	if isinstance(result, ScoringError):
		raise result.to_exception()

	# Conditional on the status so concurrent submits score at most once
	stored = db.execute(
		update(Assessment)
		.where(Assessment.id == a.id, Assessment.status != ASSESSMENT_COMPLETED)
		.values(
			answers=req.answers,
			words_per_minute=result.penalized_wpm,
			accuracy=result.accuracy,
			fluency_score=result.fluency_score,
			comprehension_score=result.comprehension_score,
			composite_score=result.composite_score,
			reading_level_label=result.reading_level_label,
			status=ASSESSMENT_COMPLETED,
			scored_at=datetime.utcnow(),
			updated_at=datetime.utcnow(),
		)
	)
	db.commit()
	if stored.rowcount == 1:
		logger.info("Assessment %s scored: %s (%.2f)", a.id, result.reading_level_label, result.composite_score)
	db.refresh(a)
	return assessment_out(a)


@benchmark_router.get("")
def list_benchmarks(db: Session = Depends(get_db)) -> List[Dict[str, Any]]:
	return [b.to_dict() for b in benchmark_table(db).all()]
