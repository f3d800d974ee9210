"""Per-activity progress and the answers given along the way.

The resumable unit is the progress key (student, plan, day, activity type);
there is exactly one ActivityProgress row per key, enforced by a unique
constraint. Individual answers are stored one row per (progress, question):

* replaying an answer with the client timestamp it was first recorded with
  changes nothing (offline clients replay their buffer on reconnect);
* each distinct answer counts one attempt, the first time it is seen;
* the stored answer is the one with the latest client timestamp
  (last-write-wins), so an old answer replayed late never overwrites a
  correction, while switching back to an earlier answer does.
"""
from __future__ import annotations
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .errors import ErrorCode, InvalidProgressKey, ReadingPlanError, StaleWrite
from .generator import fallback_content
from .models import (
	ACTIVITY_TYPES,
	ActivityContent,
	ActivityProgress,
	ActivityResponse,
	Plan,
	PROGRESS_COMPLETED,
	PROGRESS_IN_PROGRESS,
	PROGRESS_NOT_STARTED,
)
from .progression import DayStateChange, check_access, on_activity_completed
from .schemas import ContentValidationError, Evaluation, parse_activity_content
from .settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressKey:
	student_id: int
	plan_id: int
	day_index: int
	activity_type: str

	@classmethod
	def parse(cls, raw: str) -> "ProgressKey":
		parts = raw.split(":")
		if len(parts) != 4:
			raise InvalidProgressKey(f"Malformed activity key {raw!r}; expected student:plan:day:activity.")
		student, plan, day, activity_type = parts
		try:
			key = cls(int(student), int(plan), int(day), activity_type)
		except ValueError as e:
			raise InvalidProgressKey(f"Malformed activity key {raw!r}.") from e
		if activity_type not in ACTIVITY_TYPES:
			raise InvalidProgressKey(f"Unknown activity type {activity_type!r}.")
		return key

	def __str__(self) -> str:
		return f"{self.student_id}:{self.plan_id}:{self.day_index}:{self.activity_type}"


@dataclass
class ResponseOutcome:
	progress: ActivityProgress
	response: ActivityResponse
	# False when the call was a replay of an answer already on record
	recorded: bool
	evaluation: Evaluation


@dataclass
class CompletionOutcome:
	progress: ActivityProgress
	newly_completed: bool
	day_change: Optional[DayStateChange]


def _same_answer(a: Any, b: Any) -> bool:
	return json.dumps(a, sort_keys=True) == json.dumps(b, sort_keys=True)


def _is_replay(response: ActivityResponse, entry: Dict[str, Any], stamped: bool) -> bool:
	"""A resend of an answer already in the history with the same client timestamp.

	Unstamped resends only count as replays of the answer currently stored.
	"""
	if not stamped:
		return _same_answer(response.answer, entry["answer"])
	return any(
		h.get("answered_at") == entry["answered_at"] and _same_answer(h.get("answer"), entry["answer"])
		for h in response.history or []
	)


class ProgressLedger:
	def __init__(self, db: Session) -> None:
		self.db = db

	def record_response(
		self,
		key: ProgressKey,
		question: str,
		answer: Any,
		*,
		answered_at: Optional[datetime] = None,
		time_spent: Optional[int] = None,
		expected_version: Optional[int] = None,
	) -> ResponseOutcome:
		self._accessible_plan(key)
		progress = self._progress_for_update(key)
		self._check_version(progress, expected_version)
		now = datetime.utcnow()
		stamped = answered_at is not None
		answered_at = answered_at or now
		evaluation = self._evaluate(key, question, answer)

		response = (
			self.db.query(ActivityResponse)
			.filter(ActivityResponse.progress_id == progress.id, ActivityResponse.question == question)
			.first()
		)
		entry = {"answer": answer, "answered_at": answered_at.isoformat()}
		recorded = True
		if response is None:
			response = ActivityResponse(
				progress_id=progress.id,
				question=question,
				answer=answer,
				is_correct=evaluation.is_correct,
				feedback=evaluation.feedback,
				score=evaluation.score,
				time_spent=time_spent,
				answered_at=answered_at,
				history=[entry],
			)
			self.db.add(response)
			progress.attempts += 1
		elif _is_replay(response, entry, stamped):
			recorded = False
		else:
			history = response.history or []
			if not any(_same_answer(h.get("answer"), answer) for h in history):
				progress.attempts += 1
			response.history = [*history, entry]
			if response.answered_at is None or answered_at >= response.answered_at:
				response.answer = answer
				response.is_correct = evaluation.is_correct
				response.feedback = evaluation.feedback
				response.score = evaluation.score
				response.time_spent = time_spent
				response.answered_at = answered_at

		if progress.status == PROGRESS_NOT_STARTED:
			progress.status = PROGRESS_IN_PROGRESS
			progress.started_at = now
		self._commit(key)
		if not recorded:
			logger.debug("Duplicate response replay ignored for %s question=%r", key, question)
		return ResponseOutcome(progress=progress, response=response, recorded=recorded, evaluation=evaluation)

	def mark_complete(
		self,
		key: ProgressKey,
		time_spent: Optional[int] = None,
		*,
		expected_version: Optional[int] = None,
	) -> CompletionOutcome:
		plan = self._accessible_plan(key)
		progress = self._progress_for_update(key)
		self._check_version(progress, expected_version)
		now = datetime.utcnow()
		newly_completed = progress.status != PROGRESS_COMPLETED
		if newly_completed:
			progress.status = PROGRESS_COMPLETED
			progress.completed_at = now
			progress.started_at = progress.started_at or now
		if time_spent is not None:
			progress.time_spent = time_spent
		self.db.flush()
		# Recomputed from persisted rows on every call; a day that already
		# completed reports no change the second time.
		day_change = on_activity_completed(self.db, plan, key.day_index, key.activity_type)
		self._commit(key)
		return CompletionOutcome(progress=progress, newly_completed=newly_completed, day_change=day_change)

	def load_progress(self, student_id: int, plan_id: int, day_index: int) -> Dict[str, ActivityProgress]:
		rows = (
			self.db.query(ActivityProgress)
			.filter(
				ActivityProgress.student_id == student_id,
				ActivityProgress.plan_id == plan_id,
				ActivityProgress.day_index == day_index,
			)
			.all()
		)
		return {row.activity_type: row for row in rows}

	def _accessible_plan(self, key: ProgressKey) -> Plan:
		plan = self.db.get(Plan, key.plan_id)
		if plan is None or plan.student_id != key.student_id:
			raise ReadingPlanError("Plan not found.", code=ErrorCode.NOT_FOUND)
		error = check_access(plan, key.day_index)
		if error is not None:
			raise error.to_exception()
		return plan

	def _query_progress(self, key: ProgressKey):
		return self.db.query(ActivityProgress).filter(
			ActivityProgress.student_id == key.student_id,
			ActivityProgress.plan_id == key.plan_id,
			ActivityProgress.day_index == key.day_index,
			ActivityProgress.activity_type == key.activity_type,
		)

	def _progress_for_update(self, key: ProgressKey) -> ActivityProgress:
		progress = self._query_progress(key).with_for_update().populate_existing().first()
		if progress is not None:
			return progress
		progress = ActivityProgress(
			student_id=key.student_id,
			plan_id=key.plan_id,
			day_index=key.day_index,
			activity_type=key.activity_type,
			status=PROGRESS_NOT_STARTED,
			attempts=0,
		)
		self.db.add(progress)
		try:
			self.db.flush()
		except IntegrityError:
			# Another device created the row first; use theirs.
			self.db.rollback()
			progress = self._query_progress(key).with_for_update().first()
			if progress is None:
				raise StaleWrite()
		return progress

	@staticmethod
	def _check_version(progress: ActivityProgress, expected_version: Optional[int]) -> None:
		if expected_version is not None and progress.version is not None and progress.version != expected_version:
			raise StaleWrite(
				f"This activity was updated from another device (version {progress.version}, you had {expected_version}). Reload and try again."
			)

	def _commit(self, key: ProgressKey) -> None:
		try:
			self.db.commit()
		except (StaleDataError, IntegrityError) as e:
			self.db.rollback()
			logger.warning("Stale write on %s: %s", key, e)
			raise StaleWrite() from e

	def _evaluate(self, key: ProgressKey, question: str, answer: Any) -> Evaluation:
		row = (
			self.db.query(ActivityContent)
			.filter(
				ActivityContent.plan_id == key.plan_id,
				ActivityContent.day_index == key.day_index,
				ActivityContent.activity_type == key.activity_type,
			)
			.first()
		)
		payload = row.content if row is not None else None
		if payload is None:
			# Nothing cached: the student was shown the fallback template, if anything.
			if not settings.use_fallback_templates:
				return Evaluation()
			payload = fallback_content(key.activity_type)
			if payload is None:
				return Evaluation()
		try:
			content = parse_activity_content(key.activity_type, payload)
		except ContentValidationError:
			logger.warning("Cached %s content for plan %s day %s no longer validates", key.activity_type, key.plan_id, key.day_index)
			return Evaluation()
		return content.evaluate(question, answer)
