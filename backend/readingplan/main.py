from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .db import Base, engine, get_db, ensure_schema
from .benchmarks import seed_benchmarks
from .cleanup import purge_stale_rows
from .errors import ReadingPlanError
from .settings import settings
from .routers import auth
from .routers import students
from .routers import assessments
from .routers import plans
from .routers import activities
import asyncio
import logging

logging.basicConfig(
	level=getattr(logging, settings.log_level.upper(), logging.INFO),
	format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Reading Plans API")
app.include_router(auth.router)
app.include_router(students.router)
app.include_router(assessments.router)
app.include_router(assessments.benchmark_router)
app.include_router(plans.router)
app.include_router(activities.router)
app.include_router(activities.progress_router)


@app.exception_handler(ReadingPlanError)
async def reading_plan_error_handler(request: Request, exc: ReadingPlanError):
	return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/info")
def root():
	return {"status": "ok", "gemini_configured": bool(settings.gemini_api_key)}


def _run_cleanup() -> None:
	db = next(get_db())
	try:
		purge_stale_rows(db)
	finally:
		db.close()


async def _cleanup_watcher():
	# Startup already ran one pass; then daily
	while True:
		await asyncio.sleep(24 * 60 * 60)
		try:
			_run_cleanup()
		except Exception:
			logger.exception("Periodic cleanup failed")


@app.on_event("startup")
async def startup_event():
	# Initialize DB schema
	Base.metadata.create_all(bind=engine)
	# Apply lightweight dev migrations
	added = ensure_schema()
	if added:
		logger.info("Added missing columns: %s", ", ".join(added))
	db = next(get_db())
	try:
		seed_benchmarks(db)
	finally:
		db.close()
	try:
		_run_cleanup()
	except Exception:
		logger.exception("Startup cleanup failed")
	asyncio.create_task(_cleanup_watcher())
