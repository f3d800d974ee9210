from __future__ import annotations
from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from .settings import settings


DATABASE_URL = settings.database_url or "sqlite:///./reading_plans.db"

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=_connect_args, future=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()


def get_db():
	db = SessionLocal()
	try:
		yield db
	finally:
		db.close()


def get_session_factory() -> sessionmaker:
	# Services that open short-lived sessions of their own (content cache, background jobs)
	return SessionLocal


# Columns added after the first release; dev databases get them patched in place.
_ADDITIVE_COLUMNS = {
	"activity_content": {
		"generation_status": "VARCHAR(16) DEFAULT 'ready' NOT NULL",
		"lease_token": "VARCHAR(64)",
		"lease_expires_at": "DATETIME",
		"last_error": "TEXT",
	},
	"activity_progress": {
		"version": "INTEGER DEFAULT 1 NOT NULL",
	},
	"activity_responses": {
		"answered_at": "DATETIME",
		"history": "JSON DEFAULT '[]' NOT NULL",
	},
}


# Best-effort lightweight migrations for development (SQLite-friendly)
def ensure_schema(bind: Engine | None = None) -> list[str]:
	bind = bind or engine
	added: list[str] = []
	try:
		inspector = inspect(bind)
		tables = set(inspector.get_table_names())
	except Exception:
		return added
	for table, columns in _ADDITIVE_COLUMNS.items():
		if table not in tables:
			continue
		existing = {c["name"] for c in inspector.get_columns(table)}
		with bind.begin() as conn:
			for name, ddl in columns.items():
				if name not in existing:
					conn.exec_driver_sql(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}")
					added.append(f"{table}.{name}")
	return added
