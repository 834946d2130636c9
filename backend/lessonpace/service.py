"""
Lesson orchestration (business logic):
- Owns the write paths for working state, submissions, pacing and session control.
- Applies the freeze / allowed-slide / visible-block gates on every student write.
- Builds the reconciled views for students, the teacher heatmap and assessment callers.

Every state-affecting call returns an `Invalidation` the web layer hands to
the realtime notifier after the write has committed.
"""
from __future__ import annotations
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from . import store
from .blocks import SlideSchema, load_schema, normalize_schema
from .errors import InvalidRequest, NotFound, SessionFrozen
from .models import Lesson, LessonSession, LessonSlide
from .pacing import (
	SessionControl,
	allowed_slides_of,
	clamp_slide_index,
	dump_pace_config,
	ensure_blocks_visible,
	ensure_drawing_visible,
	ensure_slide_allowed,
	ensure_student_can_navigate,
	ensure_student_can_write,
	load_pace_config,
	merge_pace_config,
	resolve_current_slide,
	resolve_navigation_target,
	resolve_visible_blocks,
	set_slide_reveal,
)
from .reconcile import MergedCell, overlay_documents, reconcile
from .responses import merge_update, parse, stringify, summarize_document, to_iso
from .schemas import NavigateResult, ResponseUpdate, RevealRequest, SessionUpdate, SlideCreate, SlideUpdate, TimerAction


logger = logging.getLogger(__name__)

TEACHER = "teacher"
_SIDE_FIELDS = ("response_text", "drawing_path", "drawing_text", "drawing_snapshot")


@dataclass
class Invalidation:
	lesson_id: Optional[str]
	session_id: Optional[str]
	source: str


def _iso(moment: Optional[datetime]) -> Optional[str]:
	return to_iso(moment) if moment is not None else None


def slide_schema(slide: LessonSlide) -> SlideSchema:
	return load_schema(slide.response_config, prompt=slide.prompt, response_type=slide.response_type)


def _slide_summary(slides: List[LessonSlide]) -> List[Dict[str, Any]]:
	return [{"id": s.id, "index": s.index} for s in slides]


def session_view(row: LessonSession, now: datetime) -> Dict[str, Any]:
	control = store.control_from_row(row)
	pace = load_pace_config(row.pace_config)
	return {
		"id": row.id,
		"lessonId": row.lesson_id,
		"mode": row.mode,
		"currentSlideIndex": row.current_slide_index,
		"isFrozen": bool(row.is_frozen),
		"paceConfig": pace.to_json() if pace is not None else None,
		"timerRunning": bool(row.timer_running),
		"timerEndsAt": _iso(row.timer_ends_at),
		"timerRemainingSec": row.timer_remaining_sec,
		"remainingSeconds": control.remaining_seconds(now),
	}


def _expire_timer(db: Session, row: LessonSession, now: datetime) -> SessionControl:
	control = store.control_from_row(row)
	if control.expire(now):
		store.apply_control(row, control)
		row.updated_at = now
		store.commit(db)
		logger.info("session %s timer ended; session frozen", row.id)
	return control


# ---- Authoring ---------------------------------------------------------------

def create_lesson(db: Session, title: str, owner: Optional[str]) -> Lesson:
	title = (title or "").strip()
	if not title:
		raise InvalidRequest("title is required")
	lesson = Lesson(title=title, owner=owner)
	db.add(lesson)
	store.commit(db)
	return lesson


def add_slide(db: Session, lesson_id: str, payload: SlideCreate) -> LessonSlide:
	store.get_lesson(db, lesson_id)
	slides = store.list_slides(db, lesson_id)
	next_index = (slides[-1].index if slides else 0) + 1
	schema = normalize_schema(payload.response_config or {}, prompt=payload.prompt, response_type=payload.response_type)
	slide = LessonSlide(
		lesson_id=lesson_id,
		index=next_index,
		text=payload.text or "",
		prompt=payload.prompt,
		response_type=payload.response_type,
		response_config=json.dumps(schema.to_json()),
	)
	db.add(slide)
	store.commit(db)
	return slide


def slide_view(slide: LessonSlide) -> Dict[str, Any]:
	return {
		"id": slide.id,
		"lessonId": slide.lesson_id,
		"index": slide.index,
		"text": slide.text or "",
		"prompt": slide.prompt or "",
		"responseType": slide.response_type or "text",
		"responseConfig": slide_schema(slide).to_json(),
	}


def update_slide(db: Session, slide_id: str, payload: SlideUpdate) -> Tuple[Dict[str, Any], Invalidation]:
	fields = payload.model_fields_set
	if not fields:
		raise InvalidRequest("No updates")
	slide = store.get_slide(db, slide_id)

	if "prompt" in fields:
		slide.prompt = payload.prompt
	if "text" in fields:
		slide.text = payload.text
	if "response_type" in fields:
		slide.response_type = payload.response_type

	if payload.response_config is not None or payload.scene_data is not None:
		try:
			base = json.loads(slide.response_config) if slide.response_config else {}
		except ValueError:
			base = {}
		if not isinstance(base, dict):
			base = {}
		merged = {**base, **(payload.response_config or {})}
		if payload.scene_data is not None:
			merged["sceneData"] = payload.scene_data
		schema = normalize_schema(merged, prompt=slide.prompt, response_type=slide.response_type)
		slide.response_config = json.dumps(schema.to_json())

	store.commit(db)
	logger.info("slide %s updated (%s)", slide.id, ", ".join(sorted(fields)))
	return slide_view(slide), Invalidation(slide.lesson_id, None, "lesson-slide")


# ---- Session control ---------------------------------------------------------

def open_session(db: Session, lesson_id: str) -> LessonSession:
	store.get_lesson(db, lesson_id)
	row = store.find_active_session(db, lesson_id)
	if row is None:
		row = LessonSession(lesson_id=lesson_id, mode="instructor", current_slide_index=1, is_active=True)
		db.add(row)
		store.commit(db)
		logger.info("opened session %s for lesson %s", row.id, lesson_id)
	return row


def _apply_timer(control: SessionControl, action: TimerAction, now: datetime) -> None:
	if action.action == "start":
		if action.seconds is None:
			raise InvalidRequest("seconds is required to start a timer")
		control.start_timer(action.seconds, now)
	elif action.action == "pause":
		control.pause_timer(now)
	elif action.action == "resume":
		control.resume_timer(now)
	else:
		control.clear_timer()


def update_session(db: Session, session_id: str, payload: SessionUpdate, now: datetime) -> Tuple[Dict[str, Any], Invalidation]:
	fields = payload.model_fields_set
	if not fields:
		raise InvalidRequest("No updates")
	row = store.get_session(db, session_id)
	control = store.control_from_row(row)
	control.expire(now)

	if payload.mode is not None:
		control.set_mode(payload.mode)
	if payload.is_frozen is not None:
		control.set_frozen(payload.is_frozen)
	if payload.timer is not None:
		_apply_timer(control, payload.timer, now)
	if payload.current_slide_index is not None:
		count = len(store.list_slides(db, row.lesson_id))
		row.current_slide_index = clamp_slide_index(payload.current_slide_index, count)
	if "pace_config" in fields:
		if payload.pace_config is None:
			row.pace_config = None
		else:
			merged = merge_pace_config(load_pace_config(row.pace_config), payload.pace_config)
			row.pace_config = dump_pace_config(merged)

	store.apply_control(row, control)
	row.updated_at = now
	store.commit(db)
	logger.info("session %s updated (%s)", row.id, ", ".join(sorted(fields)))
	return session_view(row, now), Invalidation(row.lesson_id, row.id, "lesson-session")


def reveal_blocks(db: Session, session_id: str, payload: RevealRequest, now: datetime) -> Tuple[Dict[str, Any], Invalidation]:
	row = store.get_session(db, session_id)
	slide = store.get_slide(db, payload.slide_id)
	if slide.lesson_id != row.lesson_id:
		raise NotFound("Slide not found in this lesson")
	schema = slide_schema(slide)

	block_ids = None
	if payload.block_ids is not None:
		block_ids = [str(block_id).strip() for block_id in payload.block_ids if str(block_id).strip()]
		known = set(schema.block_ids())
		unknown = [block_id for block_id in block_ids if block_id not in known]
		if unknown:
			raise InvalidRequest(f"Unknown block ids for this slide: {', '.join(unknown)}")

	pace = set_slide_reveal(load_pace_config(row.pace_config), slide.id, block_ids)
	store.upsert_pacing_config(db, row.id, pace, now)
	store.commit(db)
	visible = resolve_visible_blocks(schema, slide.id, pace)
	logger.info("session %s slide %s reveal set to %s", row.id, slide.id, block_ids)
	result = {
		"slideId": slide.id,
		"visibleBlockIds": [block.id for block in visible],
		"paceConfig": pace.to_json() if pace is not None else None,
	}
	return result, Invalidation(row.lesson_id, row.id, "lesson-reveal")


# ---- Student reads -----------------------------------------------------------

def _current_index(db: Session, row: LessonSession, user_id: str, slide_count: int, allowed: List[int], now: datetime) -> int:
	if row.mode == "student":
		position = store.get_position(db, row.id, user_id)
		stored = position.current_slide_index if position is not None else 1
		resolved = resolve_current_slide(stored, allowed, slide_count)
		if position is None or resolved != stored:
			store.set_position(db, row.id, user_id, resolved, now)
			store.commit(db)
		return resolved
	stored = row.current_slide_index
	resolved = resolve_current_slide(stored, allowed, slide_count)
	if resolved != stored:
		row.current_slide_index = resolved
		store.commit(db)
	return resolved


def _student_cell(db: Session, session_id: str, slide_id: str, user_id: str, schema: Optional[SlideSchema]) -> Optional[MergedCell]:
	response = store.find_response_record(db, session_id, slide_id, user_id)
	state = store.find_working_state_record(db, session_id, slide_id, user_id)
	cells = reconcile(
		[store.to_response_record(response)] if response is not None else [],
		[store.to_working_state_record(state)] if state is not None else [],
		{slide_id: schema} if schema is not None else {},
	)
	return cells.get((user_id, slide_id))


def student_state(db: Session, session_id: str, user_id: str, now: datetime) -> Dict[str, Any]:
	row = store.get_session(db, session_id)
	_expire_timer(db, row, now)
	lesson = store.get_lesson(db, row.lesson_id)
	slides = store.list_slides(db, row.lesson_id)
	pace = load_pace_config(row.pace_config)
	index = _current_index(db, row, user_id, len(slides), allowed_slides_of(pace), now)
	slide = next((s for s in slides if s.index == index), None)

	result: Dict[str, Any] = {
		"lesson": {"id": lesson.id, "title": lesson.title},
		"session": session_view(row, now),
		"currentSlideIndex": index,
		"currentSlideId": slide.id if slide is not None else None,
		"slides": _slide_summary(slides),
		"slide": None,
		"visibleBlocks": [],
		"response": None,
	}
	if slide is None:
		return result

	schema = slide_schema(slide)
	visible = resolve_visible_blocks(schema, slide.id, pace)
	cell = _student_cell(db, row.id, slide.id, user_id, schema)
	result["slide"] = {"id": slide.id, "index": slide.index, "text": slide.text or "", "prompt": slide.prompt or ""}
	result["visibleBlocks"] = [block.model_dump(by_alias=True, exclude_none=True) for block in visible]
	result["response"] = cell.model_dump(by_alias=True, exclude_none=True, mode="json") if cell is not None else None
	return result


def navigate(db: Session, session_id: str, user_id: str, requested: int, now: datetime) -> Tuple[NavigateResult, Optional[Invalidation]]:
	row = store.get_session(db, session_id)
	control = _expire_timer(db, row, now)
	ensure_student_can_navigate(control)

	slide_count = len(store.list_slides(db, row.lesson_id))
	allowed = allowed_slides_of(store.find_pacing_config(db, row.id))
	position = store.get_position(db, row.id, user_id)
	current = position.current_slide_index if position is not None else 1

	target = clamp_slide_index(resolve_navigation_target(requested, current, allowed), slide_count)
	accepted = (not allowed or requested in allowed) and target == requested
	if not accepted:
		logger.info("session %s: %s asked for slide %s, landed on %s", row.id, user_id, requested, target)

	result = NavigateResult(current_slide_index=target, requested_slide_index=requested, accepted=accepted)
	if position is not None and target == current:
		return result, None
	store.set_position(db, row.id, user_id, target, now)
	store.commit(db)
	return result, Invalidation(row.lesson_id, row.id, "lesson-state")


# ---- Student writes ----------------------------------------------------------

def _write_context(
	db: Session,
	session_id: str,
	slide_id: str,
	role: str,
	update: ResponseUpdate,
	now: datetime,
) -> Tuple[LessonSession, LessonSlide, SlideSchema]:
	row = store.get_session(db, session_id)
	control = _expire_timer(db, row, now)
	if role != TEACHER:
		ensure_student_can_write(control)
	slide = store.get_slide(db, slide_id)
	if slide.lesson_id != row.lesson_id:
		raise NotFound("Slide not found in this lesson")
	schema = slide_schema(slide)
	if role != TEACHER:
		pace = load_pace_config(row.pace_config)
		ensure_slide_allowed(slide.index, pace)
		visible = resolve_visible_blocks(schema, slide.id, pace)
		ensure_blocks_visible((update.blocks or {}).keys(), visible)
		ensure_drawing_visible(update.model_fields_set, visible)
	return row, slide, schema


def _commit_write(db: Session, row: LessonSession, role: str, now: datetime) -> None:
	# Freeze is decided at commit time, not when the request started
	if role != TEACHER:
		store.refresh_for_commit(db, row)
		control = store.control_from_row(row)
		if control.is_frozen or control.expire(now):
			db.rollback()
			raise SessionFrozen()
	store.commit(db)


def save_working_state(
	db: Session,
	session_id: str,
	slide_id: str,
	user_id: str,
	role: str,
	update: ResponseUpdate,
	now: datetime,
) -> Tuple[Optional[MergedCell], Optional[Invalidation]]:
	"""Autosave: merge the update into the working-state record."""
	row, slide, schema = _write_context(db, session_id, slide_id, role, update, now)
	fields = update.model_fields_set
	existing = store.find_working_state_record(db, row.id, slide.id, user_id)

	document = parse(existing.response_json) if existing is not None else None
	if update.blocks is not None:
		document = merge_update(document, update.blocks, now=now)
	serialized = stringify(document) if document is not None else None

	values: Dict[str, Any] = {"response_json": serialized}
	for name in _SIDE_FIELDS:
		if name in fields:
			values[name] = getattr(update, name) or None

	if existing is None:
		if not any(values.values()):
			return None, None
	elif all(getattr(existing, name) == value for name, value in values.items()):
		# Same content as stored; leave the record and its timestamp alone
		return _student_cell(db, row.id, slide.id, user_id, schema), None

	values["updated_at"] = now
	store.upsert_working_state_record(db, row.id, slide.id, user_id, **values)
	_commit_write(db, row, role, now)
	return _student_cell(db, row.id, slide.id, user_id, schema), Invalidation(row.lesson_id, row.id, "lesson-state")


def submit_response(
	db: Session,
	session_id: str,
	slide_id: str,
	user_id: str,
	role: str,
	update: ResponseUpdate,
	now: datetime,
) -> Tuple[Optional[MergedCell], Invalidation]:
	"""
	Explicit submit into the durable record. With no blocks in the update the
	current working-state document is what gets submitted.
	"""
	row, slide, schema = _write_context(db, session_id, slide_id, role, update, now)
	fields = update.model_fields_set
	existing = store.find_response_record(db, row.id, slide.id, user_id)
	working = store.find_working_state_record(db, row.id, slide.id, user_id)

	document = parse(existing.response_json) if existing is not None else None
	if update.blocks is not None:
		document = merge_update(document, update.blocks, now=now, submitted=True)
	else:
		working_doc = parse(working.response_json) if working is not None else None
		document = merge_update(overlay_documents(document, working_doc), {}, now=now, submitted=True)

	def pick(name: str, column: str) -> Optional[str]:
		if name in fields:
			return getattr(update, name) or None
		if existing is not None and getattr(existing, column):
			return getattr(existing, column)
		return getattr(working, name, None) if working is not None else None

	response_text = pick("response_text", "response")
	drawing_path = pick("drawing_path", "drawing_path")
	response_type = "drawing" if drawing_path and not (document.blocks or response_text) else "text"

	store.upsert_response_record(
		db,
		row.id,
		slide.id,
		user_id,
		response=response_text,
		response_json=stringify(document),
		drawing_path=drawing_path,
		response_type=response_type,
		updated_at=now,
	)
	_commit_write(db, row, role, now)
	return _student_cell(db, row.id, slide.id, user_id, schema), Invalidation(row.lesson_id, row.id, "lesson-response")


# ---- Teacher views -----------------------------------------------------------

def heatmap(db: Session, session_id: str, now: datetime) -> Dict[str, Any]:
	row = store.get_session(db, session_id)
	_expire_timer(db, row, now)
	lesson = store.get_lesson(db, row.lesson_id)
	slides = store.list_slides(db, row.lesson_id)
	schemas = {slide.id: slide_schema(slide) for slide in slides}

	responses = store.list_response_records(db, row.id)
	states = store.list_working_state_records(db, row.id)
	positions = store.list_positions(db, row.id)
	cells = reconcile(
		[store.to_response_record(r) for r in responses],
		[store.to_working_state_record(s) for s in states],
		schemas,
	)

	observed: List[str] = []
	for user_id in [r.user_id for r in responses] + [p.user_id for p in positions] + [s.user_id for s in states]:
		if user_id not in observed:
			observed.append(user_id)
	# Teachers writing through the student endpoints are previews, not students
	teachers = store.teacher_usernames(db, observed)
	student_ids = [user_id for user_id in observed if user_id not in teachers]
	positions = [p for p in positions if p.user_id not in teachers]
	names = store.display_names(db, student_ids)
	students = sorted(
		({"id": user_id, "name": names.get(user_id, user_id)} for user_id in student_ids),
		key=lambda student: student["name"].lower(),
	)

	return {
		"lesson": {"id": lesson.id, "title": lesson.title},
		"session": session_view(row, now),
		"slides": _slide_summary(slides),
		"students": students,
		"states": [
			{"userId": p.user_id, "currentSlideIndex": p.current_slide_index, "updatedAt": _iso(p.updated_at)}
			for p in positions
		],
		"responses": [
			{"key": cell.key, **cell.model_dump(by_alias=True, exclude_none=True, mode="json")}
			for cell in cells.values()
			if cell.student_id not in teachers
		],
	}


def assessment_input(db: Session, session_id: str, slide_id: str, student_id: str) -> Dict[str, Any]:
	"""Read-only view handed to the LLM assessment collaborator."""
	row = store.get_session(db, session_id)
	slide = store.get_slide(db, slide_id)
	if slide.lesson_id != row.lesson_id:
		raise NotFound("Slide not found in this lesson")
	schema = slide_schema(slide)
	cell = _student_cell(db, row.id, slide.id, student_id, schema)
	if cell is None:
		raise NotFound("No response from this student on this slide")
	text = summarize_document(
		schema.blocks,
		cell.document,
		fallback_text=cell.response_text,
		drawing_path=cell.drawing_path,
		drawing_text=cell.drawing_text,
	)
	return {
		"studentId": student_id,
		"slideId": slide.id,
		"text": text,
		"completion": cell.completion.model_dump(by_alias=True),
		"updatedAt": _iso(cell.updated_at),
	}
