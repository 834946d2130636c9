"""
Student working-state autosave and submission, plus the teacher-side
assessment input.

Student write failures come back as a bare "Not saved, try again." with the
original status code; the reason is only logged.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from .. import service
from ..db import get_db
from ..errors import LessonError
from ..models import utcnow
from ..realtime import RealtimeHub, get_notifier, publish
from ..reconcile import MergedCell
from ..schemas import ResponseUpdate
from .auth import User, get_current_user, require_teacher


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["responses"])

NOT_SAVED = "Not saved, try again."


def _not_saved(exc: LessonError, user: User) -> HTTPException:
	logger.warning("write from %s rejected: %s", user.username, exc.detail)
	return HTTPException(status_code=exc.status_code, detail=NOT_SAVED)


def _cell_json(cell: Optional[MergedCell]) -> Optional[Dict[str, Any]]:
	if cell is None:
		return None
	return cell.model_dump(by_alias=True, exclude_none=True, mode="json")


@router.put("/{session_id}/slides/{slide_id}/working")
async def save_working_state(
	session_id: str,
	slide_id: str,
	payload: ResponseUpdate,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
	notifier: RealtimeHub = Depends(get_notifier),
) -> Dict[str, Any]:
	try:
		cell, invalidation = service.save_working_state(db, session_id, slide_id, user.username, user.role, payload, utcnow())
	except LessonError as exc:
		raise _not_saved(exc, user) from exc
	await publish(notifier, invalidation)
	return {"saved": invalidation is not None, "response": _cell_json(cell)}


@router.post("/{session_id}/slides/{slide_id}/submit")
async def submit_response(
	session_id: str,
	slide_id: str,
	payload: ResponseUpdate,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
	notifier: RealtimeHub = Depends(get_notifier),
) -> Dict[str, Any]:
	try:
		cell, invalidation = service.submit_response(db, session_id, slide_id, user.username, user.role, payload, utcnow())
	except LessonError as exc:
		raise _not_saved(exc, user) from exc
	await publish(notifier, invalidation)
	return {"saved": True, "response": _cell_json(cell)}


@router.get("/{session_id}/slides/{slide_id}/assessment-input")
async def assessment_input(
	session_id: str,
	slide_id: str,
	student_id: str,
	user: User = Depends(require_teacher),
	db: Session = Depends(get_db),
) -> Dict[str, Any]:
	return service.assessment_input(db, session_id, slide_id, student_id)
