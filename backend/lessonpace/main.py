from __future__ import annotations
import asyncio
import logging

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .cleanup import purge_idle_auth_sessions
from .db import Base, SessionLocal, engine, ensure_schema
from .errors import LessonError
from .settings import settings
from .routers import auth
from .routers import lessons
from .routers import sessions
from .routers import responses
from .routers import realtime


logger = logging.getLogger(__name__)

app = FastAPI(title="Lesson Pacing API")
app.include_router(auth.router)
app.include_router(lessons.router)
app.include_router(sessions.router)
app.include_router(responses.router)
app.include_router(realtime.router)


@app.exception_handler(LessonError)
async def lesson_error_handler(request: Request, exc: LessonError):
	return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.get("/health")
def health():
	return {"status": "ok"}


def _run_cleanup() -> None:
	db = SessionLocal()
	try:
		removed = purge_idle_auth_sessions(db)
		if removed:
			logger.info("purged %d idle login sessions", removed)
	except Exception:
		logger.exception("login session cleanup failed")
	finally:
		db.close()


async def _cleanup_watcher():
	# Run once at startup, then daily
	while True:
		_run_cleanup()
		await asyncio.sleep(24 * 60 * 60)


@app.on_event("startup")
async def startup_event():
	logging.basicConfig(level=settings.log_level.upper())
	# Initialize DB schema
	Base.metadata.create_all(bind=engine)
	# Apply lightweight dev migrations
	try:
		ensure_schema()
	except Exception:
		logger.exception("schema migration failed; continuing with existing tables")
	asyncio.create_task(_cleanup_watcher())


def run() -> None:
	uvicorn.run("lessonpace.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
	run()
