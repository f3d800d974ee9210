from __future__ import annotations
from datetime import datetime, timedelta
from typing import Optional
import logging

from sqlalchemy import delete
from sqlalchemy.orm import Session

from .content_cache import purge_expired_content
from .models import AuthSession
from .settings import settings

logger = logging.getLogger(__name__)


def purge_stale_rows(db: Session, *, retention_days: Optional[int] = None, now: Optional[datetime] = None) -> int:
	"""Drop cache rows expired (or failed) beyond the retention window and idle auth sessions."""
	days = settings.cleanup_retention_days if retention_days is None else retention_days
	now = now or datetime.utcnow()
	window = timedelta(days=days)
	removed = purge_expired_content(db, older_than=window, now=now)
	# Sessions are kept alive by activity; an idle one past the window is dead weight
	res = db.execute(delete(AuthSession).where(AuthSession.last_activity_at < now - window))
	removed += res.rowcount or 0
	db.commit()
	if removed:
		logger.info("Cleanup removed %d rows older than %d days", removed, days)
	return removed
