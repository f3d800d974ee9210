"""Day lifecycle within a plan: locked -> available -> complete, never backwards.

Day 1 starts available; each later day unlocks when the one before it
completes, and a day completes once every activity type has a completed
progress row. Completion is recomputed from persisted progress rows inside the
caller's transaction, so running it again is always safe.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from .errors import DomainErrorResult, ErrorCode
from .models import (
	ACTIVITY_TYPES,
	ActivityProgress,
	Day,
	DAY_AVAILABLE,
	DAY_COMPLETE,
	DAY_LOCKED,
	Plan,
	PLAN_ACTIVE,
	PLAN_COMPLETED,
	PLAN_FAILED,
	PLAN_GENERATING,
	PROGRESS_COMPLETED,
)

logger = logging.getLogger(__name__)

# One day per story part
PLAN_LENGTH_DAYS = 3


class ProgressionError(DomainErrorResult):
	pass


@dataclass(frozen=True)
class DayStateChange:
	day_index: int
	state: str
	completed_at: Optional[datetime]
	next_day_index: Optional[int] = None
	next_day_state: Optional[str] = None
	plan_status: Optional[str] = None

	def to_dict(self) -> dict:
		return {
			"day_index": self.day_index,
			"state": self.state,
			"completed_at": self.completed_at,
			"next_day_index": self.next_day_index,
			"next_day_state": self.next_day_state,
			"plan_status": self.plan_status,
		}


def initial_state(day_index: int) -> str:
	return DAY_AVAILABLE if day_index == 1 else DAY_LOCKED


def create_days(db: Session, plan: Plan, length: int = PLAN_LENGTH_DAYS) -> List[Day]:
	days = [Day(plan_id=plan.id, day_index=i, state=initial_state(i)) for i in range(1, length + 1)]
	db.add_all(days)
	return days


def find_day(plan: Plan, day_index: int) -> Optional[Day]:
	return next((d for d in plan.days if d.day_index == day_index), None)


def check_access(plan: Plan, day_index: int) -> Optional[ProgressionError]:
	if plan.status in (PLAN_GENERATING, PLAN_FAILED):
		return ProgressionError.of(ErrorCode.PLAN_NOT_READY)
	day = find_day(plan, day_index)
	if day is None:
		return ProgressionError.of(ErrorCode.NOT_FOUND, f"Day {day_index} not found.")
	if day.state == DAY_LOCKED:
		return ProgressionError.of(
			ErrorCode.DAY_LOCKED,
			f"Day {day_index} is locked. Complete day {day_index - 1} first.",
		)
	return None


def can_access(plan: Plan, day_index: int) -> bool:
	return check_access(plan, day_index) is None


def plan_status(days: Iterable[Day]) -> str:
	days = list(days)
	if days and all(d.state == DAY_COMPLETE for d in days):
		return PLAN_COMPLETED
	return PLAN_ACTIVE


def completed_activity_types(db: Session, plan: Plan, day_index: int) -> set:
	rows = (
		db.query(ActivityProgress.activity_type)
		.filter(
			ActivityProgress.student_id == plan.student_id,
			ActivityProgress.plan_id == plan.id,
			ActivityProgress.day_index == day_index,
			ActivityProgress.status == PROGRESS_COMPLETED,
		)
		.all()
	)
	return {t for (t,) in rows}


def on_activity_completed(db: Session, plan: Plan, day_index: int, activity_type: str) -> Optional[DayStateChange]:
	"""Re-evaluate the day after ``activity_type`` completed; returns the change, if any.

	Runs inside the caller's transaction and does not commit.
	"""
	days = (
		db.query(Day)
		.filter(Day.plan_id == plan.id)
		.order_by(Day.day_index)
		.with_for_update()
		.populate_existing()
		.all()
	)
	day = next((d for d in days if d.day_index == day_index), None)
	if day is None or day.state != DAY_AVAILABLE:
		return None
	missing = set(ACTIVITY_TYPES) - completed_activity_types(db, plan, day_index)
	if missing:
		logger.debug("Plan %s day %s still waiting on %s after %s", plan.id, day_index, sorted(missing), activity_type)
		return None

	day.state = DAY_COMPLETE
	day.completed_at = datetime.utcnow()
	next_day = next((d for d in days if d.day_index == day_index + 1), None)
	if next_day is not None and next_day.state == DAY_LOCKED:
		next_day.state = DAY_AVAILABLE
	status = plan_status(days)
	if status == PLAN_COMPLETED and plan.status != PLAN_COMPLETED:
		plan.status = PLAN_COMPLETED
		plan.active_slot = None
		logger.info("Plan %s completed", plan.id)
	db.flush()
	logger.info(
		"Plan %s day %s complete%s",
		plan.id,
		day_index,
		f", day {next_day.day_index} unlocked" if next_day is not None else "",
	)
	return DayStateChange(
		day_index=day_index,
		state=day.state,
		completed_at=day.completed_at,
		next_day_index=next_day.day_index if next_day is not None else None,
		next_day_state=next_day.state if next_day is not None else None,
		plan_status=plan.status,
	)
