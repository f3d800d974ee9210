from __future__ import annotations
import asyncio
from typing import Any, Dict, Optional
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .auth import get_current_parent
from .students import get_owned_student, plan_summary, student_age
from ..content_cache import ContentCache
from ..db import get_db, get_session_factory
from ..errors import GenerationFailed, GenerationPending
from ..generator import ContentGenerator, GenerationError, call_with_retries, get_generator, validate_story
from ..ledger import ProgressLedger
from ..models import ACTIVITY_TYPES, Parent, Plan, PLAN_ACTIVE, PLAN_FAILED, PLAN_GENERATING, Story
from ..progression import PLAN_LENGTH_DAYS, check_access, create_days


router = APIRouter(prefix="/plans", tags=["plans"])

logger = logging.getLogger(__name__)


class PlanCreate(BaseModel):
	student_id: int
	name: str = Field(min_length=1, max_length=100)
	theme: str = Field(min_length=1, max_length=50)


def get_content_cache(
	session_factory: sessionmaker = Depends(get_session_factory),
	generator: ContentGenerator = Depends(get_generator),
) -> ContentCache:
	return ContentCache(session_factory, generator)


def progress_out(progress) -> Dict[str, Any]:
	return {
		"status": progress.status,
		"started_at": progress.started_at,
		"completed_at": progress.completed_at,
		"time_spent": progress.time_spent,
		"attempts": progress.attempts,
		"version": progress.version,
	}


def _owned_plan(db: Session, parent: Parent, plan_id: int) -> Plan:
	plan = db.get(Plan, plan_id)
	if plan is None or plan.student is None or plan.student.parent_id != parent.id:
		raise HTTPException(status_code=404, detail="Plan not found")
	return plan


async def generate_plan_story(plan_id: int, session_factory: sessionmaker, generator: ContentGenerator) -> None:
	"""Background step after POST /plans: write the story, create the days, activate the plan."""
	with session_factory() as db:
		plan = db.get(Plan, plan_id)
		if plan is None or plan.status != PLAN_GENERATING:
			return
		student = plan.student
		kwargs = dict(
			student_name=student.name,
			student_age=student_age(student),
			grade_level=student.grade_level,
			interests=list(student.interests or []),
			theme=plan.theme,
		)

	async def _story() -> Dict[str, Any]:
		return validate_story(await generator.generate_story(**kwargs))

	try:
		story = await call_with_retries(_story, what="story")
	except GenerationError as e:
		logger.error("Story generation failed for plan %s: %s", plan_id, e)
		with session_factory() as db:
			plan = db.get(Plan, plan_id)
			plan.status = PLAN_FAILED
			plan.active_slot = None
			plan.failure_reason = str(e)
			db.commit()
		return

	with session_factory() as db:
		plan = db.get(Plan, plan_id)
		db.add(Story(
			plan_id=plan.id,
			title=story["title"],
			themes=story.get("themes") or [],
			part1=story["part1"],
			part2=story["part2"],
			part3=story["part3"],
			vocabulary=story.get("vocabulary") or [],
		))
		create_days(db, plan, PLAN_LENGTH_DAYS)
		plan.status = PLAN_ACTIVE
		db.commit()
	logger.info("Plan %s is active", plan_id)


async def _activity_entry(
	cache: ContentCache,
	plan: Plan,
	story_text: str,
	age: int,
	day_index: int,
	activity_type: str,
	*,
	force: bool = False,
	prior: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
	try:
		served = await cache.get_or_generate(
			plan.id, day_index, activity_type, age, story_text,
			prior_activity_context=prior, force=force,
		)
	except GenerationPending as e:
		return {"status": "pending", "content": None, "detail": e.message}
	except GenerationFailed as e:
		return {"status": "failed", "content": None, "detail": e.message}
	return served.to_dict()


def _prior_context(plan: Plan, day_index: int) -> Optional[Dict[str, Any]]:
	if day_index <= 1 or plan.story is None:
		return None
	return {"story_title": plan.story.title, "previous_chapter": plan.story.part(day_index - 1)}


async def prime_day(plan_id: int, day_index: int, session_factory: sessionmaker, generator: ContentGenerator) -> None:
	"""Generate a freshly unlocked day's activities ahead of the first visit."""
	with session_factory() as db:
		plan = db.get(Plan, plan_id)
		if plan is None or plan.story is None:
			return
		if check_access(plan, day_index) is not None:
			return
		story_text = plan.story.part(day_index)
		age = student_age(plan.student)
		prior = _prior_context(plan, day_index)
	cache = ContentCache(session_factory, generator)
	for activity_type in ACTIVITY_TYPES:
		entry = await _activity_entry(cache, plan, story_text, age, day_index, activity_type, prior=prior)
		if entry["status"] in ("pending", "failed"):
			logger.info("Priming plan %s day %s %s: %s", plan_id, day_index, activity_type, entry["status"])


@router.post("", status_code=202)
def create_plan(
	req: PlanCreate,
	background_tasks: BackgroundTasks,
	parent: Parent = Depends(get_current_parent),
	db: Session = Depends(get_db),
	session_factory: sessionmaker = Depends(get_session_factory),
	generator: ContentGenerator = Depends(get_generator),
):
	student = get_owned_student(db, parent, req.student_id)
	plan = Plan(
		student_id=student.id,
		name=req.name.strip(),
		theme=req.theme.strip(),
		status=PLAN_GENERATING,
		active_slot=student.id,
	)
	db.add(plan)
	try:
		db.commit()
	except IntegrityError:
		db.rollback()
		raise HTTPException(status_code=409, detail="This student already has an active plan")
	logger.info("Plan %s created for student %s, generating story", plan.id, student.id)
	background_tasks.add_task(generate_plan_story, plan.id, session_factory, generator)
	return plan_summary(plan)


@router.get("/{plan_id}")
def get_plan(plan_id: int, parent: Parent = Depends(get_current_parent), db: Session = Depends(get_db)):
	plan = _owned_plan(db, parent, plan_id)
	out = plan_summary(plan)
	if plan.story is not None:
		out["story"] = {"title": plan.story.title, "themes": plan.story.themes, "vocabulary": plan.story.vocabulary}
	return out


@router.get("/{plan_id}/days/{day_index}")
async def get_day(
	plan_id: int,
	day_index: int,
	parent: Parent = Depends(get_current_parent),
	db: Session = Depends(get_db),
	cache: ContentCache = Depends(get_content_cache),
):
	plan = _owned_plan(db, parent, plan_id)
	error = check_access(plan, day_index)
	if error is not None:
		raise error.to_exception()
	story_text = plan.story.part(day_index)
	age = student_age(plan.student)
	prior = _prior_context(plan, day_index)
	entries = await asyncio.gather(*(
		_activity_entry(cache, plan, story_text, age, day_index, t, prior=prior) for t in ACTIVITY_TYPES
	))
	progress = ProgressLedger(db).load_progress(plan.student_id, plan.id, day_index)
	day = next(d for d in plan.days if d.day_index == day_index)
	return {
		"plan_id": plan.id,
		"day_index": day_index,
		"state": day.state,
		"story_title": plan.story.title,
		"story_text": story_text,
		"activities": dict(zip(ACTIVITY_TYPES, entries)),
		"progress": {t: progress_out(p) for t, p in progress.items()},
	}


@router.post("/{plan_id}/days/{day_index}/activities/{activity_type}/regenerate")
async def regenerate_activity(
	plan_id: int,
	day_index: int,
	activity_type: str,
	parent: Parent = Depends(get_current_parent),
	db: Session = Depends(get_db),
	cache: ContentCache = Depends(get_content_cache),
):
	if activity_type not in ACTIVITY_TYPES:
		raise HTTPException(status_code=404, detail=f"Unknown activity type {activity_type!r}")
	plan = _owned_plan(db, parent, plan_id)
	error = check_access(plan, day_index)
	if error is not None:
		raise error.to_exception()
	served = await cache.get_or_generate(
		plan.id, day_index, activity_type, student_age(plan.student), plan.story.part(day_index),
		prior_activity_context=_prior_context(plan, day_index), force=True,
	)
	return {"activity_type": activity_type, **served.to_dict()}
