from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker

from .auth import get_current_parent
from .plans import prime_day, progress_out
from .students import get_owned_student
from ..db import get_db, get_session_factory
from ..generator import ContentGenerator, get_generator
from ..ledger import ProgressKey, ProgressLedger
from ..models import DAY_AVAILABLE, Parent


router = APIRouter(prefix="/activities", tags=["activities"])
progress_router = APIRouter(prefix="/progress", tags=["progress"])


class ResponseIn(BaseModel):
	question: str = Field(min_length=1, max_length=512)
	answer: Any = None
	# when the student answered, on the device; replays keep the original time
	answered_at: Optional[datetime] = None
	time_spent: Optional[int] = Field(default=None, ge=0)
	expected_version: Optional[int] = None


class CompleteIn(BaseModel):
	time_spent: Optional[int] = Field(default=None, ge=0)
	expected_version: Optional[int] = None


def _utc_naive(value: Optional[datetime]) -> Optional[datetime]:
	if value is None or value.tzinfo is None:
		return value
	return value.astimezone(timezone.utc).replace(tzinfo=None)


def _owned_key(db: Session, parent: Parent, progress_key: str) -> ProgressKey:
	key = ProgressKey.parse(progress_key)
	get_owned_student(db, parent, key.student_id)
	return key


@router.post("/{progress_key}/responses")
def record_response(
	progress_key: str,
	req: ResponseIn,
	parent: Parent = Depends(get_current_parent),
	db: Session = Depends(get_db),
):
	key = _owned_key(db, parent, progress_key)
	outcome = ProgressLedger(db).record_response(
		key,
		req.question,
		req.answer,
		answered_at=_utc_naive(req.answered_at),
		time_spent=req.time_spent,
		expected_version=req.expected_version,
	)
	return {
		"key": str(key),
		"recorded": outcome.recorded,
		"question": outcome.response.question,
		"answer": outcome.response.answer,
		"is_correct": outcome.response.is_correct,
		"score": outcome.response.score,
		"feedback": outcome.response.feedback,
		"progress": progress_out(outcome.progress),
	}


@router.post("/{progress_key}/complete")
def complete_activity(
	progress_key: str,
	background_tasks: BackgroundTasks,
	req: Optional[CompleteIn] = None,
	parent: Parent = Depends(get_current_parent),
	db: Session = Depends(get_db),
	session_factory: sessionmaker = Depends(get_session_factory),
	generator: ContentGenerator = Depends(get_generator),
):
	req = req or CompleteIn()
	key = _owned_key(db, parent, progress_key)
	outcome = ProgressLedger(db).mark_complete(key, req.time_spent, expected_version=req.expected_version)
	change = outcome.day_change
	if change is not None and change.next_day_index is not None and change.next_day_state == DAY_AVAILABLE:
		background_tasks.add_task(prime_day, key.plan_id, change.next_day_index, session_factory, generator)
	return {
		"key": str(key),
		"newly_completed": outcome.newly_completed,
		"progress": progress_out(outcome.progress),
		"day_change": change.to_dict() if change is not None else None,
	}


@progress_router.get("/{student_id}/{plan_id}/{day_index}")
def get_progress(
	student_id: int,
	plan_id: int,
	day_index: int,
	parent: Parent = Depends(get_current_parent),
	db: Session = Depends(get_db),
):
	"""Everything a device needs to resume a day: per-activity progress and the answers given so far."""
	get_owned_student(db, parent, student_id)
	rows = ProgressLedger(db).load_progress(student_id, plan_id, day_index)
	return {
		"student_id": student_id,
		"plan_id": plan_id,
		"day_index": day_index,
		"activities": {
			activity_type: {
				**progress_out(p),
				"responses": [
					{
						"question": r.question,
						"answer": r.answer,
						"is_correct": r.is_correct,
						"score": r.score,
						"answered_at": r.answered_at,
					}
					for r in p.responses
				],
			}
			for activity_type, p in rows.items()
		},
	}
