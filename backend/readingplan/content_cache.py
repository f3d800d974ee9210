"""Cache of generated activity content keyed by (plan, day, activity type).

Rows live in ``activity_content`` so every server instance shares them. A row
doubles as the generation reservation: whoever inserts the ``pending`` marker
(or flips an idle row to ``pending`` with a conditional UPDATE) holds a lease
and is the only caller that invokes the generator for that key. Everybody else
polls the row, or is served the previous content while the new one is made.
"""
from __future__ import annotations
import asyncio
import hashlib
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .errors import GenerationFailed, GenerationPending
from .generator import ContentGenerator, GenerationError, GenerationRequest, call_with_retries, fallback_content, screen_content
from .models import ActivityContent, GENERATION_FAILED, GENERATION_PENDING, GENERATION_READY
from .schemas import ContentValidationError, parse_activity_content
from .settings import Settings, settings

logger = logging.getLogger(__name__)

SERVED_READY = "ready"
SERVED_STALE = "stale"
SERVED_FALLBACK = "fallback"


def generation_input_hash(story_text: str, activity_type: str, student_age: int) -> str:
	h = hashlib.sha256()
	for part in (story_text, activity_type, str(student_age)):
		h.update(part.encode("utf-8"))
		h.update(b"\x00")
	return h.hexdigest()


@dataclass(frozen=True)
class CachedContent:
	plan_id: int
	day_index: int
	activity_type: str
	content: Dict[str, Any]
	status: str
	content_hash: Optional[str] = None
	expires_at: Optional[datetime] = None

	def to_dict(self) -> Dict[str, Any]:
		return {"status": self.status, "content": self.content, "expires_at": self.expires_at}


@dataclass(frozen=True)
class _Key:
	plan_id: int
	day_index: int
	activity_type: str

	def __str__(self) -> str:
		return f"plan={self.plan_id} day={self.day_index} type={self.activity_type}"


class ContentCache:
	def __init__(
		self,
		session_factory: sessionmaker,
		generator: ContentGenerator,
		*,
		config: Settings = settings,
		clock: Callable[[], datetime] = datetime.utcnow,
	) -> None:
		self._session_factory = session_factory
		self._generator = generator
		self._config = config
		self._clock = clock

	async def get_or_generate(
		self,
		plan_id: int,
		day_index: int,
		activity_type: str,
		student_age: int,
		story_text: str,
		*,
		prior_activity_context: Optional[Dict[str, Any]] = None,
		force: bool = False,
	) -> CachedContent:
		key = _Key(plan_id, day_index, activity_type)
		input_hash = generation_input_hash(story_text, activity_type, student_age)
		deadline = time.monotonic() + self._config.generation_wait_seconds
		waited = False
		while True:
			with self._session_factory() as db:
				row = self._load(db, key)
				if row is not None and not force and self._is_fresh(row, input_hash):
					return self._served(row, SERVED_READY)
				if row is not None and waited and row.generation_status == GENERATION_FAILED:
					# the generation we were waiting on gave up; don't pay for another round
					return self._exhausted(key, row.content, row.last_error)
				token = self._claim(db, key, row, student_age)
				if token is None:
					row = self._load(db, key)
					if row is not None and row.content is not None and row.generation_status == GENERATION_PENDING:
						return self._served(row, SERVED_STALE)
			if token is not None:
				request = GenerationRequest(
					story_text=story_text,
					activity_type=activity_type,
					student_age=student_age,
					prior_activity_context=prior_activity_context,
				)
				# Shielded so a requester going away doesn't abort a generation others are waiting on.
				task = asyncio.ensure_future(self._generate_and_store(key, token, request, input_hash))
				return await asyncio.shield(task)
			waited = True
			force = False
			if time.monotonic() >= deadline:
				raise GenerationPending()
			await asyncio.sleep(self._config.generation_poll_seconds)

	def _load(self, db: Session, key: _Key) -> Optional[ActivityContent]:
		return (
			db.query(ActivityContent)
			.filter(
				ActivityContent.plan_id == key.plan_id,
				ActivityContent.day_index == key.day_index,
				ActivityContent.activity_type == key.activity_type,
			)
			.populate_existing()
			.first()
		)

	def _is_fresh(self, row: ActivityContent, input_hash: str) -> bool:
		if row.generation_status != GENERATION_READY or row.content is None:
			return False
		if row.content_hash != input_hash:
			return False
		return row.expires_at is None or row.expires_at > self._clock()

	def _claim(self, db: Session, key: _Key, row: Optional[ActivityContent], student_age: int) -> Optional[str]:
		token = uuid.uuid4().hex
		now = self._clock()
		lease_until = now + timedelta(seconds=self._config.generation_lease_seconds)
		if row is None:
			db.add(ActivityContent(
				plan_id=key.plan_id,
				day_index=key.day_index,
				activity_type=key.activity_type,
				student_age=student_age,
				generation_status=GENERATION_PENDING,
				lease_token=token,
				lease_expires_at=lease_until,
			))
			try:
				db.commit()
			except IntegrityError:
				db.rollback()
				return None
			return token
		result = db.execute(
			update(ActivityContent)
			.where(
				ActivityContent.id == row.id,
				or_(
					ActivityContent.generation_status != GENERATION_PENDING,
					ActivityContent.lease_expires_at.is_(None),
					ActivityContent.lease_expires_at < now,
				),
			)
			.values(generation_status=GENERATION_PENDING, lease_token=token, lease_expires_at=lease_until)
		)
		db.commit()
		return token if result.rowcount == 1 else None

	async def _generate_valid(self, request: GenerationRequest) -> Dict[str, Any]:
		raw = await self._generator.generate_activity(request)
		try:
			payload = parse_activity_content(request.activity_type, raw).model_dump()
		except ContentValidationError as e:
			raise GenerationError(str(e)) from e
		screen_content(payload)
		return payload

	async def _generate_and_store(self, key: _Key, token: str, request: GenerationRequest, input_hash: str) -> CachedContent:
		logger.info("Generating activity content (%s)", key)
		try:
			payload = await call_with_retries(
				lambda: self._generate_valid(request),
				what=f"{key.activity_type} content",
				config=self._config,
			)
		except GenerationError as e:
			logger.error("Activity content generation exhausted retries (%s): %s", key, e)
			previous = self._release_after_failure(key, token, str(e))
			return self._exhausted(key, previous, str(e))

		now = self._clock()
		expires_at = None
		if self._config.content_ttl_hours > 0:
			expires_at = now + timedelta(hours=self._config.content_ttl_hours)
		with self._session_factory() as db:
			result = db.execute(
				update(ActivityContent)
				.where(
					ActivityContent.plan_id == key.plan_id,
					ActivityContent.day_index == key.day_index,
					ActivityContent.activity_type == key.activity_type,
					ActivityContent.lease_token == token,
				)
				.values(
					content=payload,
					content_hash=input_hash,
					student_age=request.student_age,
					expires_at=expires_at,
					generation_status=GENERATION_READY,
					lease_token=None,
					lease_expires_at=None,
					last_error=None,
					updated_at=now,
				)
			)
			db.commit()
		if result.rowcount != 1:
			logger.warning("Lease lost before storing generated content (%s); result not cached", key)
		return CachedContent(
			plan_id=key.plan_id,
			day_index=key.day_index,
			activity_type=key.activity_type,
			content=payload,
			status=SERVED_READY,
			content_hash=input_hash,
			expires_at=expires_at,
		)

	def _release_after_failure(self, key: _Key, token: str, error: str) -> Optional[Dict[str, Any]]:
		with self._session_factory() as db:
			row = self._load(db, key)
			if row is None or row.lease_token != token:
				return row.content if row is not None else None
			# Previous content, if any, stays servable.
			row.generation_status = GENERATION_READY if row.content is not None else GENERATION_FAILED
			row.lease_token = None
			row.lease_expires_at = None
			row.last_error = error
			db.commit()
			return row.content

	def _exhausted(self, key: _Key, previous: Optional[Dict[str, Any]], error: Optional[str]) -> CachedContent:
		if previous is not None:
			return CachedContent(key.plan_id, key.day_index, key.activity_type, previous, SERVED_STALE)
		if self._config.use_fallback_templates:
			template = fallback_content(key.activity_type)
			if template is not None:
				logger.info("Serving fallback template (%s)", key)
				content = parse_activity_content(key.activity_type, template).model_dump()
				return CachedContent(key.plan_id, key.day_index, key.activity_type, content, SERVED_FALLBACK)
		raise GenerationFailed(f"Could not create the {key.activity_type} activity right now. Please try again.")

	@staticmethod
	def _served(row: ActivityContent, status: str) -> CachedContent:
		return CachedContent(
			plan_id=row.plan_id,
			day_index=row.day_index,
			activity_type=row.activity_type,
			content=row.content,
			status=status,
			content_hash=row.content_hash,
			expires_at=row.expires_at,
		)


def purge_expired_content(db: Session, *, older_than: timedelta, now: Optional[datetime] = None) -> int:
	"""Delete cache rows that expired, or failed, more than ``older_than`` ago."""
	threshold = (now or datetime.utcnow()) - older_than
	expired = db.query(ActivityContent).filter(
		or_(
			ActivityContent.expires_at < threshold,
			(ActivityContent.generation_status == GENERATION_FAILED) & (ActivityContent.updated_at < threshold),
		)
	)
	removed = expired.delete(synchronize_session=False)
	db.commit()
	return removed
