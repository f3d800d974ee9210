from datetime import datetime, timedelta

from sqlalchemy import create_engine, inspect

from readingplan.cleanup import purge_stale_rows
from readingplan.db import ensure_schema
from readingplan.models import ActivityContent, AuthSession, GENERATION_READY


def test_ensure_schema_adds_missing_columns(tmp_path):
	engine = create_engine(f"sqlite:///{tmp_path / 'old.db'}", future=True)
	with engine.begin() as conn:
		conn.exec_driver_sql(
			"CREATE TABLE activity_responses (id INTEGER PRIMARY KEY, progress_id INTEGER NOT NULL, "
			"question VARCHAR(512) NOT NULL, answer JSON, created_at DATETIME NOT NULL)"
		)
		conn.exec_driver_sql("INSERT INTO activity_responses (progress_id, question, answer, created_at) VALUES (1, 'q', '\"a\"', '2025-01-01')")

	added = ensure_schema(engine)
	assert added == ["activity_responses.answered_at", "activity_responses.history"]
	columns = {c["name"] for c in inspect(engine).get_columns("activity_responses")}
	assert {"answered_at", "history"} <= columns
	with engine.connect() as conn:
		assert conn.exec_driver_sql("SELECT history FROM activity_responses").scalar() == "[]"

	assert ensure_schema(engine) == []
	engine.dispose()


def test_ensure_schema_is_a_no_op_on_current_schema(engine):
	assert ensure_schema(engine) == []


def test_cleanup_purges_old_cache_rows_and_idle_sessions(db, active_plan):
	now = datetime(2026, 6, 1)
	db.add_all([
		ActivityContent(plan_id=active_plan.id, day_index=1, activity_type="who", student_age=9, content={"q": 1},
			generation_status=GENERATION_READY, expires_at=now - timedelta(days=10)),
		ActivityContent(plan_id=active_plan.id, day_index=1, activity_type="where", student_age=9, content={"q": 2},
			generation_status=GENERATION_READY, expires_at=now - timedelta(days=1)),
		AuthSession(session_id="old", parent_id=active_plan.student.parent_id, last_activity_at=now - timedelta(days=30)),
		AuthSession(session_id="recent", parent_id=active_plan.student.parent_id, last_activity_at=now - timedelta(hours=2)),
	])
	db.commit()

	assert purge_stale_rows(db, retention_days=7, now=now) == 2
	assert [r.activity_type for r in db.query(ActivityContent).all()] == ["where"]
	assert [s.session_id for s in db.query(AuthSession).all()] == ["recent"]
