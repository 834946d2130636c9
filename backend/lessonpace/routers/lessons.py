"""
Teacher authoring: lessons, slides and their response schemas.
"""
from __future__ import annotations
from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import service, store
from ..db import get_db
from ..models import utcnow
from ..realtime import RealtimeHub, get_notifier, publish
from ..schemas import LessonCreate, SlideCreate, SlideUpdate
from .auth import User, require_teacher


router = APIRouter(tags=["lessons"])


@router.post("/lessons", status_code=201)
async def create_lesson(payload: LessonCreate, user: User = Depends(require_teacher), db: Session = Depends(get_db)) -> Dict[str, Any]:
	lesson = service.create_lesson(db, payload.title, owner=user.username)
	return {"id": lesson.id, "title": lesson.title}


@router.get("/lessons/{lesson_id}/slides")
async def list_slides(lesson_id: str, user: User = Depends(require_teacher), db: Session = Depends(get_db)) -> List[Dict[str, Any]]:
	store.get_lesson(db, lesson_id)
	return [service.slide_view(slide) for slide in store.list_slides(db, lesson_id)]


@router.post("/lessons/{lesson_id}/slides", status_code=201)
async def add_slide(
	lesson_id: str,
	payload: SlideCreate,
	user: User = Depends(require_teacher),
	db: Session = Depends(get_db),
	notifier: RealtimeHub = Depends(get_notifier),
) -> Dict[str, Any]:
	slide = service.add_slide(db, lesson_id, payload)
	await publish(notifier, service.Invalidation(lesson_id, None, "lesson-slide"))
	return service.slide_view(slide)


@router.get("/slides/{slide_id}")
async def get_slide(slide_id: str, user: User = Depends(require_teacher), db: Session = Depends(get_db)) -> Dict[str, Any]:
	return service.slide_view(store.get_slide(db, slide_id))


@router.patch("/slides/{slide_id}")
async def update_slide(
	slide_id: str,
	payload: SlideUpdate,
	user: User = Depends(require_teacher),
	db: Session = Depends(get_db),
	notifier: RealtimeHub = Depends(get_notifier),
) -> Dict[str, Any]:
	view, invalidation = service.update_slide(db, slide_id, payload)
	await publish(notifier, invalidation)
	return view


@router.post("/lessons/{lesson_id}/sessions")
async def open_session(
	lesson_id: str,
	user: User = Depends(require_teacher),
	db: Session = Depends(get_db),
	notifier: RealtimeHub = Depends(get_notifier),
) -> Dict[str, Any]:
	row = service.open_session(db, lesson_id)
	await publish(notifier, service.Invalidation(lesson_id, row.id, "lesson-session"))
	return service.session_view(row, utcnow())
