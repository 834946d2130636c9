from __future__ import annotations
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.orm import Session

from .models import AuthSession, utcnow


SESSION_IDLE_LIMIT = timedelta(days=7)


def purge_idle_auth_sessions(db: Session, now: Optional[datetime] = None) -> int:
	"""Drop login sessions with no activity for a week; their tokens stop validating."""
	threshold = (now or utcnow()) - SESSION_IDLE_LIMIT
	res = db.execute(delete(AuthSession).where(AuthSession.last_activity_at < threshold))
	db.commit()
	return res.rowcount or 0
