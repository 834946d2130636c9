"""
Thin repository wrapper to isolate SQLAlchemy queries from the pacing and
response logic.

Upserts are atomic per (session, slide, student) key through the unique
constraints on the record tables. Nothing here commits except `commit`;
callers write one unit and commit it. Connection-level failures surface as
`Transient`; there are no retries.
"""
from __future__ import annotations
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Set, Type

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from .errors import NotFound, Transient
from .models import (
	AuthUser,
	Lesson,
	LessonResponse,
	LessonSession,
	LessonSessionState,
	LessonSlide,
	LessonStudentSlideState,
)
from .pacing import PaceConfig, SessionControl, dump_pace_config, load_pace_config
from .reconcile import ResponseRecord, WorkingStateRecord
from .responses import parse
from .settings import settings


@contextmanager
def storage_errors(db: Session) -> Iterator[None]:
	try:
		yield
	except IntegrityError:
		raise
	except DBAPIError as exc:
		db.rollback()
		raise Transient("Storage unavailable") from exc


def commit(db: Session) -> None:
	with storage_errors(db):
		db.commit()


# -------- Lessons / slides --------

def get_lesson(db: Session, lesson_id: str) -> Lesson:
	with storage_errors(db):
		lesson = db.get(Lesson, lesson_id)
	if lesson is None:
		raise NotFound("Lesson not found")
	return lesson


def get_slide(db: Session, slide_id: str) -> LessonSlide:
	with storage_errors(db):
		slide = db.get(LessonSlide, slide_id)
	if slide is None:
		raise NotFound("Slide not found")
	return slide


def list_slides(db: Session, lesson_id: str) -> List[LessonSlide]:
	with storage_errors(db):
		return (
			db.query(LessonSlide)
			.filter(LessonSlide.lesson_id == lesson_id)
			.order_by(LessonSlide.index.asc())
			.all()
		)


def find_slide_by_index(db: Session, lesson_id: str, index: int) -> Optional[LessonSlide]:
	with storage_errors(db):
		return (
			db.query(LessonSlide)
			.filter(LessonSlide.lesson_id == lesson_id, LessonSlide.index == index)
			.first()
		)


# -------- Sessions --------

def get_session(db: Session, session_id: str) -> LessonSession:
	with storage_errors(db):
		row = db.get(LessonSession, session_id)
	if row is None:
		raise NotFound("Lesson session not found")
	return row


def find_active_session(db: Session, lesson_id: str) -> Optional[LessonSession]:
	with storage_errors(db):
		return (
			db.query(LessonSession)
			.filter(LessonSession.lesson_id == lesson_id, LessonSession.is_active.is_(True))
			.order_by(LessonSession.updated_at.desc())
			.first()
		)


def refresh_for_commit(db: Session, row: LessonSession) -> LessonSession:
	"""Re-read the session row under a row lock (where the engine supports one)."""
	with storage_errors(db):
		db.refresh(row, with_for_update=True)
	return row


def control_from_row(row: LessonSession) -> SessionControl:
	return SessionControl(
		mode=row.mode or "instructor",
		is_frozen=bool(row.is_frozen),
		timer_running=bool(row.timer_running),
		timer_ends_at=row.timer_ends_at,
		timer_remaining_sec=row.timer_remaining_sec,
	)


def apply_control(row: LessonSession, control: SessionControl) -> None:
	row.mode = control.mode
	row.is_frozen = control.is_frozen
	row.timer_running = control.timer_running
	row.timer_ends_at = control.timer_ends_at
	row.timer_remaining_sec = control.timer_remaining_sec


def find_pacing_config(db: Session, session_id: str) -> Optional[PaceConfig]:
	return load_pace_config(get_session(db, session_id).pace_config)


def upsert_pacing_config(db: Session, session_id: str, config: Optional[PaceConfig], now: datetime) -> LessonSession:
	row = get_session(db, session_id)
	row.pace_config = dump_pace_config(config)
	row.updated_at = now
	with storage_errors(db):
		db.flush()
	return row


# -------- Student positions --------

def get_position(db: Session, session_id: str, user_id: str) -> Optional[LessonSessionState]:
	with storage_errors(db):
		return db.get(LessonSessionState, (session_id, user_id))


def set_position(db: Session, session_id: str, user_id: str, index: int, now: datetime) -> LessonSessionState:
	return _upsert(
		db,
		LessonSessionState,
		{"session_id": session_id, "user_id": user_id},
		{"current_slide_index": index, "updated_at": now},
	)


def list_positions(db: Session, session_id: str) -> List[LessonSessionState]:
	with storage_errors(db):
		return db.query(LessonSessionState).filter(LessonSessionState.session_id == session_id).all()


# -------- Records --------

def _upsert(db: Session, model: Type[Any], keys: Dict[str, Any], fields: Dict[str, Any]) -> Any:
	with storage_errors(db):
		row = db.query(model).filter_by(**keys).first()
		if row is None:
			row = model(**keys, **fields)
			db.add(row)
			try:
				db.flush()
				return row
			except IntegrityError:
				# Lost a create race for the same key; fall through to update the winner's row
				db.rollback()
				row = db.query(model).filter_by(**keys).one()
		for name, value in fields.items():
			setattr(row, name, value)
		db.flush()
		return row


def _record_keys(session_id: str, slide_id: str, user_id: str) -> Dict[str, str]:
	return {"session_id": session_id, "slide_id": slide_id, "user_id": user_id}


def find_response_record(db: Session, session_id: str, slide_id: str, user_id: str) -> Optional[LessonResponse]:
	with storage_errors(db):
		return db.query(LessonResponse).filter_by(**_record_keys(session_id, slide_id, user_id)).first()


def upsert_response_record(db: Session, session_id: str, slide_id: str, user_id: str, **fields: Any) -> LessonResponse:
	return _upsert(db, LessonResponse, _record_keys(session_id, slide_id, user_id), fields)


def find_working_state_record(db: Session, session_id: str, slide_id: str, user_id: str) -> Optional[LessonStudentSlideState]:
	with storage_errors(db):
		return db.query(LessonStudentSlideState).filter_by(**_record_keys(session_id, slide_id, user_id)).first()


def upsert_working_state_record(db: Session, session_id: str, slide_id: str, user_id: str, **fields: Any) -> LessonStudentSlideState:
	return _upsert(db, LessonStudentSlideState, _record_keys(session_id, slide_id, user_id), fields)


def list_response_records(db: Session, session_id: str, user_id: Optional[str] = None) -> List[LessonResponse]:
	with storage_errors(db):
		query = db.query(LessonResponse).filter(LessonResponse.session_id == session_id)
		if user_id is not None:
			query = query.filter(LessonResponse.user_id == user_id)
		return query.order_by(LessonResponse.updated_at.asc()).all()


def list_working_state_records(db: Session, session_id: str, user_id: Optional[str] = None) -> List[LessonStudentSlideState]:
	with storage_errors(db):
		query = db.query(LessonStudentSlideState).filter(LessonStudentSlideState.session_id == session_id)
		if user_id is not None:
			query = query.filter(LessonStudentSlideState.user_id == user_id)
		return query.order_by(LessonStudentSlideState.updated_at.asc()).all()


def to_response_record(row: LessonResponse) -> ResponseRecord:
	return ResponseRecord(
		student_id=row.user_id,
		slide_id=row.slide_id,
		updated_at=row.updated_at,
		response_text=row.response or "",
		document=parse(row.response_json),
		drawing_path=row.drawing_path or "",
	)


def to_working_state_record(row: LessonStudentSlideState) -> WorkingStateRecord:
	return WorkingStateRecord(
		student_id=row.user_id,
		slide_id=row.slide_id,
		updated_at=row.updated_at,
		response_text=row.response_text or "",
		document=parse(row.response_json),
		drawing_path=row.drawing_path or "",
		drawing_text=row.drawing_text or "",
		drawing_snapshot=row.drawing_snapshot,
	)


# -------- Users --------

def display_names(db: Session, usernames: List[str]) -> Dict[str, str]:
	if not usernames:
		return {}
	with storage_errors(db):
		rows = db.query(AuthUser).filter(AuthUser.username.in_(usernames)).all()
	return {row.username: row.display_name or row.username for row in rows}


def teacher_usernames(db: Session, usernames: List[str]) -> Set[str]:
	"""Which of `usernames` act as teachers (configured, seeded or stored with the teacher role)."""
	if not usernames:
		return set()
	with storage_errors(db):
		rows = (
			db.query(AuthUser.username)
			.filter(AuthUser.username.in_(usernames), AuthUser.role == "teacher")
			.all()
		)
	stored = {row.username for row in rows}
	return {name for name in usernames if name in stored or settings.configured_teacher(name)}
