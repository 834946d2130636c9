"""
Session control (teacher) and pacing-aware state/navigation (students).
"""
from __future__ import annotations
from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import service, store
from ..db import get_db
from ..models import utcnow
from ..realtime import RealtimeHub, get_notifier, publish
from ..schemas import NavigateRequest, NavigateResult, RevealRequest, SessionUpdate
from .auth import User, get_current_user, require_teacher


router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.get("/{session_id}")
async def get_session(session_id: str, user: User = Depends(require_teacher), db: Session = Depends(get_db)) -> Dict[str, Any]:
	return service.session_view(store.get_session(db, session_id), utcnow())


@router.patch("/{session_id}")
async def update_session(
	session_id: str,
	payload: SessionUpdate,
	user: User = Depends(require_teacher),
	db: Session = Depends(get_db),
	notifier: RealtimeHub = Depends(get_notifier),
) -> Dict[str, Any]:
	view, invalidation = service.update_session(db, session_id, payload, utcnow())
	await publish(notifier, invalidation)
	return view


@router.post("/{session_id}/reveal")
async def reveal_blocks(
	session_id: str,
	payload: RevealRequest,
	user: User = Depends(require_teacher),
	db: Session = Depends(get_db),
	notifier: RealtimeHub = Depends(get_notifier),
) -> Dict[str, Any]:
	result, invalidation = service.reveal_blocks(db, session_id, payload, utcnow())
	await publish(notifier, invalidation)
	return result


@router.get("/{session_id}/heatmap")
async def heatmap(session_id: str, user: User = Depends(require_teacher), db: Session = Depends(get_db)) -> Dict[str, Any]:
	return service.heatmap(db, session_id, utcnow())


@router.get("/{session_id}/state")
async def student_state(session_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> Dict[str, Any]:
	return service.student_state(db, session_id, user.username, utcnow())


@router.post("/{session_id}/navigate", response_model=NavigateResult, response_model_by_alias=True)
async def navigate(
	session_id: str,
	payload: NavigateRequest,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
	notifier: RealtimeHub = Depends(get_notifier),
) -> NavigateResult:
	result, invalidation = service.navigate(db, session_id, user.username, payload.current_slide_index, utcnow())
	await publish(notifier, invalidation)
	return result
