import asyncio
from datetime import datetime, timedelta

import pytest

from readingplan.content_cache import (
	SERVED_FALLBACK,
	SERVED_READY,
	SERVED_STALE,
	ContentCache,
	generation_input_hash,
	purge_expired_content,
)
from readingplan.errors import GenerationFailed, GenerationPending
from readingplan.models import ActivityContent, GENERATION_FAILED, GENERATION_PENDING, GENERATION_READY
from readingplan.settings import settings

from conftest import STORY


T0 = datetime(2026, 1, 5, 8, 0, 0)


def _cache(session_factory, generator, clock=lambda: T0, **overrides):
	return ContentCache(session_factory, generator, config=settings.model_copy(update=overrides), clock=clock)


def _get(cache, plan, activity_type="who", story=STORY["part1"], **kwargs):
	return asyncio.run(cache.get_or_generate(plan.id, 1, activity_type, 9, story, **kwargs))


def _row(session_factory, plan, activity_type="who"):
	with session_factory() as db:
		return db.query(ActivityContent).filter_by(plan_id=plan.id, day_index=1, activity_type=activity_type).one()


def test_first_request_generates_and_caches(session_factory, generator, active_plan):
	cache = _cache(session_factory, generator)
	served = _get(cache, active_plan)
	assert served.status == SERVED_READY
	assert served.content["real_characters"][0]["name"] == "Milo"
	row = _row(session_factory, active_plan)
	assert row.generation_status == GENERATION_READY
	assert row.content_hash == generation_input_hash(STORY["part1"], "who", 9)
	assert row.expires_at == T0 + timedelta(hours=24)
	assert row.lease_token is None

	again = _get(cache, active_plan)
	assert again.status == SERVED_READY
	assert again.content == served.content
	assert len(generator.activity_calls) == 1


def test_concurrent_requests_generate_once(session_factory, generator, active_plan):
	generator.delay = 0.05
	cache = _cache(session_factory, generator)

	async def burst():
		return await asyncio.gather(*(
			cache.get_or_generate(active_plan.id, 1, "main-idea", 9, STORY["part1"]) for _ in range(5)
		))

	results = asyncio.run(burst())
	assert len(generator.activity_calls) == 1
	assert {r.status for r in results} == {SERVED_READY}
	assert all(r.content == results[0].content for r in results)


def test_expired_content_is_regenerated(session_factory, generator, active_plan):
	_get(_cache(session_factory, generator), active_plan)
	later = _cache(session_factory, generator, clock=lambda: T0 + timedelta(hours=25))
	assert _get(later, active_plan).status == SERVED_READY
	assert len(generator.activity_calls) == 2


def test_zero_ttl_never_expires(session_factory, generator, active_plan):
	_get(_cache(session_factory, generator, content_ttl_hours=0), active_plan)
	assert _row(session_factory, active_plan).expires_at is None
	much_later = _cache(session_factory, generator, clock=lambda: T0 + timedelta(days=365))
	_get(much_later, active_plan)
	assert len(generator.activity_calls) == 1


def test_changed_inputs_invalidate_the_entry(session_factory, generator, active_plan):
	cache = _cache(session_factory, generator)
	_get(cache, active_plan)
	_get(cache, active_plan, story=STORY["part1"] + " Edited.")
	assert len(generator.activity_calls) == 2
	assert _row(session_factory, active_plan).content_hash == generation_input_hash(STORY["part1"] + " Edited.", "who", 9)


def test_force_regenerates_fresh_content(session_factory, generator, active_plan):
	cache = _cache(session_factory, generator)
	_get(cache, active_plan)
	_get(cache, active_plan, force=True)
	assert len(generator.activity_calls) == 2


def test_failure_without_previous_content_serves_fallback(session_factory, generator, active_plan):
	generator.fail_activities = True
	served = _get(_cache(session_factory, generator), active_plan)
	assert served.status == SERVED_FALLBACK
	assert served.content["question"] == "Who was in this chapter?"
	assert served.content["type"] == "who"
	assert served.content["decoy_characters"][0]["name"] == "A stranger from another story"
	assert len(generator.activity_calls) == settings.generation_max_attempts
	row = _row(session_factory, active_plan)
	# the template is served but never cached
	assert row.content is None
	assert row.generation_status == GENERATION_FAILED
	assert "scripted activity failure" in row.last_error


def test_failure_without_fallback_raises(session_factory, generator, active_plan):
	generator.fail_activities = True
	cache = _cache(session_factory, generator, use_fallback_templates=False)
	with pytest.raises(GenerationFailed):
		_get(cache, active_plan)


def test_failed_regeneration_keeps_serving_previous_content(session_factory, generator, active_plan):
	first = _get(_cache(session_factory, generator), active_plan)
	generator.fail_activities = True
	later = _cache(session_factory, generator, clock=lambda: T0 + timedelta(hours=30))
	served = _get(later, active_plan)
	assert served.status == SERVED_STALE
	assert served.content == first.content
	assert _row(session_factory, active_plan).content == first.content


def test_invalid_payload_is_retried_and_not_cached(session_factory, generator, active_plan):
	generator.activity_override = {"question": "Who?", "real_characters": []}
	served = _get(_cache(session_factory, generator), active_plan)
	assert served.status == SERVED_FALLBACK
	assert len(generator.activity_calls) == settings.generation_max_attempts
	assert _row(session_factory, active_plan).content is None


def test_policy_screen_rejects_payload(session_factory, generator, active_plan):
	generator.activity_override = {"question": "Who?", "real_characters": [{"name": "An offensive troll"}]}
	served = _get(_cache(session_factory, generator), active_plan)
	assert served.status == SERVED_FALLBACK
	assert _row(session_factory, active_plan).content is None


def _hold_lease(session_factory, plan, *, content=None):
	with session_factory() as db:
		db.add(ActivityContent(
			plan_id=plan.id,
			day_index=1,
			activity_type="who",
			student_age=9,
			content=content,
			generation_status=GENERATION_PENDING,
			lease_token="someone-else",
			lease_expires_at=T0 + timedelta(minutes=10),
		))
		db.commit()


def test_waiter_gets_previous_content_while_someone_else_regenerates(session_factory, generator, active_plan):
	old = {"question": "Old who", "real_characters": [{"name": "Milo"}]}
	_hold_lease(session_factory, active_plan, content=old)
	served = _get(_cache(session_factory, generator), active_plan)
	assert served.status == SERVED_STALE
	assert served.content == old
	assert generator.activity_calls == []


def test_waiter_gives_up_with_pending(session_factory, generator, active_plan):
	_hold_lease(session_factory, active_plan)
	cache = _cache(session_factory, generator, generation_wait_seconds=0.05)
	with pytest.raises(GenerationPending):
		_get(cache, active_plan)
	assert generator.activity_calls == []


def test_expired_lease_is_taken_over(session_factory, generator, active_plan):
	_hold_lease(session_factory, active_plan)
	after_lease = _cache(session_factory, generator, clock=lambda: T0 + timedelta(minutes=11))
	assert _get(after_lease, active_plan).status == SERVED_READY
	assert len(generator.activity_calls) == 1


def test_purge_removes_long_expired_and_failed_rows(session_factory, generator, active_plan):
	_get(_cache(session_factory, generator), active_plan, activity_type="who")
	generator.fail_activities = True
	_get(_cache(session_factory, generator), active_plan, activity_type="where")
	with session_factory() as db:
		kept = purge_expired_content(db, older_than=timedelta(days=7), now=T0 + timedelta(days=2))
		assert kept == 0
	with session_factory() as db:
		removed = purge_expired_content(db, older_than=timedelta(days=7), now=datetime.utcnow() + timedelta(days=30))
		assert removed == 2
		assert db.query(ActivityContent).count() == 0
