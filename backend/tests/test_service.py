from __future__ import annotations
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import DBAPIError

from lessonpace import service, store
from lessonpace.errors import Forbidden, InvalidRequest, NotFound, SessionFrozen, Transient
from lessonpace.models import AuthUser
from lessonpace.responses import parse
from lessonpace.schemas import ResponseUpdate, RevealRequest, SessionUpdate, SlideCreate, SlideUpdate, TimerAction
from lessonpace.settings import settings


T0 = datetime(2025, 3, 1, 9, 0, 0)

QUESTION = {
	"blocks": [
		{"type": "prompt", "id": "p1", "content": "What is 2+2?"},
		{"type": "text", "id": "t1", "label": "Answer"},
		{"type": "mcq", "id": "m1", "label": "Sure?", "choices": ["Yes", "No"], "required": False},
		{"type": "drawing", "id": "d1"},
	],
}


@pytest.fixture
def lesson(db):
	lesson = service.create_lesson(db, "Arithmetic", owner="teacher1")
	slides = [
		service.add_slide(db, lesson.id, SlideCreate(prompt=f"Slide {n}", response_config=QUESTION))
		for n in range(1, 4)
	]
	session = service.open_session(db, lesson.id)
	return lesson, slides, session


def _save(db, session, slide, user="student1", role="student", now=T0, **fields):
	return service.save_working_state(db, session.id, slide.id, user, role, ResponseUpdate(**fields), now)


def test_slides_are_numbered_in_order(db, lesson):
	_, slides, _ = lesson
	assert [s.index for s in slides] == [1, 2, 3]
	assert service.slide_schema(slides[0]).block_ids() == ["p1", "t1", "m1", "d1"]


def test_blank_title_rejected(db):
	with pytest.raises(InvalidRequest):
		service.create_lesson(db, "  ", owner=None)


def test_open_session_reuses_active_session(db, lesson):
	lesson_row, _, session = lesson
	assert service.open_session(db, lesson_row.id).id == session.id


def test_update_slide_merges_config(db, lesson):
	_, slides, _ = lesson
	view, invalidation = service.update_slide(
		db, slides[0].id, SlideUpdate(response_config={"blockRevealMode": "teacher"}, scene_data={"elements": []}),
	)
	assert view["responseConfig"]["blockRevealMode"] == "teacher"
	assert view["responseConfig"]["sceneData"] == {"elements": []}
	assert [b["id"] for b in view["responseConfig"]["blocks"]] == ["p1", "t1", "m1", "d1"]
	assert invalidation.source == "lesson-slide"

	with pytest.raises(InvalidRequest, match="No updates"):
		service.update_slide(db, slides[0].id, SlideUpdate())


def test_working_state_partial_updates(db, lesson):
	_, slides, session = lesson
	_save(db, session, slides[0], blocks={"t1": {"value": "4"}})
	cell, invalidation = _save(db, session, slides[0], now=T0 + timedelta(seconds=5), blocks={"m1": {"value": "Yes"}})

	assert invalidation.session_id == session.id
	assert cell.document.blocks["t1"].value == "4"
	assert cell.document.blocks["m1"].value == "Yes"
	assert cell.completion.required_done == 1


def test_identical_autosave_writes_nothing(db, lesson):
	_, slides, session = lesson
	_save(db, session, slides[0], blocks={"t1": {"value": "4"}}, drawing_text="sum")
	record = store.find_working_state_record(db, session.id, slides[0].id, "student1")
	stored = (record.response_json, record.updated_at)

	cell, invalidation = _save(db, session, slides[0], now=T0 + timedelta(minutes=1), blocks={"t1": {"value": "4"}}, drawing_text="sum")
	assert invalidation is None
	db.refresh(record)
	assert (record.response_json, record.updated_at) == stored
	assert cell.drawing_text == "sum"


def test_empty_first_autosave_creates_nothing(db, lesson):
	_, slides, session = lesson
	cell, invalidation = _save(db, session, slides[0], blocks={"t1": {"value": "  "}})
	assert (cell, invalidation) == (None, None)
	assert store.find_working_state_record(db, session.id, slides[0].id, "student1") is None


def test_submit_without_blocks_submits_working_document(db, lesson):
	_, slides, session = lesson
	_save(db, session, slides[0], blocks={"t1": {"value": "4"}}, drawing_path="d/1.png")
	cell, invalidation = service.submit_response(
		db, session.id, slides[0].id, "student1", "student", ResponseUpdate(), T0 + timedelta(minutes=1),
	)
	assert invalidation.source == "lesson-response"

	record = store.find_response_record(db, session.id, slides[0].id, "student1")
	document = parse(record.response_json)
	assert document.blocks["t1"].value == "4"
	assert document.meta.last_submitted_at == "2025-03-01T09:01:00.000Z"
	assert record.drawing_path == "d/1.png"
	assert record.response_type == "text"
	assert cell.source == "response"


def test_drawing_only_submission(db, lesson):
	_, slides, session = lesson
	service.submit_response(db, session.id, slides[1].id, "student1", "student", ResponseUpdate(drawing_path="d/2.png"), T0)
	record = store.find_response_record(db, session.id, slides[1].id, "student1")
	assert record.response_type == "drawing"


def test_frozen_session_rejects_student_writes(db, lesson):
	_, slides, session = lesson
	service.update_session(db, session.id, SessionUpdate(is_frozen=True), T0)
	with pytest.raises(SessionFrozen):
		_save(db, session, slides[0], blocks={"t1": {"value": "4"}})
	with pytest.raises(SessionFrozen):
		service.submit_response(db, session.id, slides[0].id, "student1", "student", ResponseUpdate(response_text="4"), T0)

	# Teachers are not gated
	cell, _ = _save(db, session, slides[0], user="teacher1", role="teacher", blocks={"t1": {"value": "demo"}})
	assert cell.document.blocks["t1"].value == "demo"


def test_freeze_is_checked_at_commit(db, lesson, monkeypatch):
	_, slides, session = lesson

	def frozen_meanwhile(db, row):
		row.is_frozen = True
		return row

	monkeypatch.setattr(store, "refresh_for_commit", frozen_meanwhile)
	with pytest.raises(SessionFrozen):
		_save(db, session, slides[0], blocks={"t1": {"value": "4"}})
	monkeypatch.undo()

	assert store.find_working_state_record(db, session.id, slides[0].id, "student1") is None


def test_expired_timer_freezes_session(db, lesson):
	_, slides, session = lesson
	view, _ = service.update_session(db, session.id, SessionUpdate(timer=TimerAction(action="start", seconds=30)), T0)
	assert view["timerRunning"] is True
	assert view["remainingSeconds"] == 30

	with pytest.raises(SessionFrozen):
		_save(db, session, slides[0], now=T0 + timedelta(seconds=31), blocks={"t1": {"value": "late"}})

	row = store.get_session(db, session.id)
	assert row.is_frozen is True
	assert row.timer_running is False
	assert row.timer_remaining_sec == 0

	view, _ = service.update_session(db, session.id, SessionUpdate(timer=TimerAction(action="start", seconds=10)), T0 + timedelta(minutes=1))
	assert view["isFrozen"] is False


def test_timer_start_requires_seconds(db, lesson):
	_, _, session = lesson
	with pytest.raises(InvalidRequest):
		service.update_session(db, session.id, SessionUpdate(timer=TimerAction(action="start")), T0)


def test_allowed_slides_gate_writes(db, lesson):
	_, slides, session = lesson
	service.update_session(db, session.id, SessionUpdate(pace_config={"allowedSlides": [1]}), T0)
	with pytest.raises(Forbidden, match="Slide not allowed"):
		_save(db, session, slides[1], blocks={"t1": {"value": "x"}})


def test_hidden_blocks_gate_writes(db, lesson):
	_, slides, session = lesson
	service.reveal_blocks(db, session.id, RevealRequest(slide_id=slides[0].id, block_ids=["t1"]), T0)
	with pytest.raises(Forbidden, match="m1"):
		_save(db, session, slides[0], blocks={"m1": {"value": "Yes"}})
	cell, _ = _save(db, session, slides[0], blocks={"t1": {"value": "4"}})
	assert cell.completion.required_done == 1


def test_hidden_drawing_gates_drawing_fields(db, lesson):
	_, slides, session = lesson
	service.reveal_blocks(db, session.id, RevealRequest(slide_id=slides[0].id, block_ids=["t1"]), T0)
	with pytest.raises(Forbidden, match="Drawing"):
		_save(db, session, slides[0], drawing_path="d/1.png")
	with pytest.raises(Forbidden, match="Drawing"):
		service.submit_response(db, session.id, slides[0].id, "student1", "student", ResponseUpdate(drawing_text="a square"), T0)
	assert store.find_working_state_record(db, session.id, slides[0].id, "student1") is None

	service.reveal_blocks(db, session.id, RevealRequest(slide_id=slides[0].id, block_ids=["t1", "d1"]), T0)
	cell, _ = _save(db, session, slides[0], drawing_path="d/1.png")
	assert cell.drawing_path == "d/1.png"


def test_storage_outage_is_transient(db, lesson, monkeypatch):
	_, _, session = lesson

	def lost_connection(*args, **kwargs):
		raise DBAPIError("SELECT", {}, Exception("server closed the connection unexpectedly"))

	monkeypatch.setattr(db, "get", lost_connection)
	with pytest.raises(Transient, match="Storage unavailable"):
		service.student_state(db, session.id, "student1", T0)


def test_reveal_rejects_unknown_ids(db, lesson):
	_, slides, session = lesson
	with pytest.raises(InvalidRequest, match="nope"):
		service.reveal_blocks(db, session.id, RevealRequest(slide_id=slides[0].id, block_ids=["t1", "nope"]), T0)


def test_reveal_keeps_other_slides(db, lesson):
	_, slides, session = lesson
	service.reveal_blocks(db, session.id, RevealRequest(slide_id=slides[0].id, block_ids=["t1"]), T0)
	result, invalidation = service.reveal_blocks(db, session.id, RevealRequest(slide_id=slides[1].id, block_ids=[]), T0)
	assert result["paceConfig"]["revealedBlockIdsBySlide"] == {slides[0].id: ["t1"], slides[1].id: []}
	assert result["visibleBlockIds"] == ["p1"]
	assert invalidation.source == "lesson-reveal"


def test_reveal_rejects_slide_from_other_lesson(db, lesson):
	_, _, session = lesson
	other = service.create_lesson(db, "Other", owner=None)
	stray = service.add_slide(db, other.id, SlideCreate(prompt="x"))
	with pytest.raises(NotFound):
		service.reveal_blocks(db, session.id, RevealRequest(slide_id=stray.id, block_ids=None), T0)


def test_null_pace_config_clears_everything(db, lesson):
	_, _, session = lesson
	service.update_session(db, session.id, SessionUpdate(pace_config={"allowedSlides": [1, 2]}), T0)
	view, _ = service.update_session(db, session.id, SessionUpdate(pace_config={"revealedBlockIdsBySlide": {"x": ["t1"]}}), T0)
	assert view["paceConfig"] == {"allowedSlides": [1, 2], "revealedBlockIdsBySlide": {"x": ["t1"]}}
	view, _ = service.update_session(db, session.id, SessionUpdate(pace_config=None), T0)
	assert view["paceConfig"] is None


def test_navigation_snaps_and_reports(db, lesson):
	_, _, session = lesson
	with pytest.raises(Forbidden, match="instructor-paced"):
		service.navigate(db, session.id, "student1", 2, T0)

	service.update_session(db, session.id, SessionUpdate(mode="student", pace_config={"allowedSlides": [1, 3]}), T0)
	result, invalidation = service.navigate(db, session.id, "student1", 2, T0)
	assert (result.current_slide_index, result.accepted) == (3, False)
	assert invalidation.source == "lesson-state"

	result, invalidation = service.navigate(db, session.id, "student1", 3, T0)
	assert (result.current_slide_index, result.accepted) == (3, True)
	assert invalidation is None


def test_navigation_clamps_to_last_slide(db, lesson):
	_, _, session = lesson
	service.update_session(db, session.id, SessionUpdate(mode="student"), T0)
	result, _ = service.navigate(db, session.id, "student1", 9, T0)
	assert (result.current_slide_index, result.accepted) == (3, False)


def test_student_state_snaps_to_allowed_slide(db, lesson):
	_, slides, session = lesson
	service.update_session(db, session.id, SessionUpdate(mode="student"), T0)
	service.navigate(db, session.id, "student1", 2, T0)
	service.update_session(db, session.id, SessionUpdate(pace_config={"allowedSlides": [3]}), T0)

	state = service.student_state(db, session.id, "student1", T0)
	assert state["currentSlideIndex"] == 3
	assert state["currentSlideId"] == slides[2].id
	assert store.get_position(db, session.id, "student1").current_slide_index == 3


def test_instructor_paced_state_follows_session(db, lesson):
	_, slides, session = lesson
	service.update_session(db, session.id, SessionUpdate(current_slide_index=2), T0)
	state = service.student_state(db, session.id, "student1", T0)
	assert state["currentSlideId"] == slides[1].id
	assert [b["id"] for b in state["visibleBlocks"]] == ["p1", "t1", "m1", "d1"]
	assert state["response"] is None


def test_heatmap_and_assessment_input(db, lesson):
	_, slides, session = lesson
	_save(db, session, slides[0], user="bob", blocks={"t1": {"value": "4"}, "m1": {"value": "Yes"}})
	_save(db, session, slides[0], user="alice", blocks={"t1": {"value": "5"}})

	heatmap = service.heatmap(db, session.id, T0)
	assert [s["id"] for s in heatmap["students"]] == ["alice", "bob"]
	cells = {cell["key"]: cell for cell in heatmap["responses"]}
	assert cells[f"bob:{slides[0].id}"]["completion"]["requiredDone"] == 1
	assert cells[f"bob:{slides[0].id}"]["source"] == "state"

	result = service.assessment_input(db, session.id, slides[0].id, "bob")
	assert result["text"] == "Answer: 4\nSure?: Yes"
	assert result["completion"]["requiredTotal"] == 1

	with pytest.raises(NotFound):
		service.assessment_input(db, session.id, slides[1].id, "bob")


def test_heatmap_leaves_out_teacher_previews(db, lesson, monkeypatch):
	_, slides, session = lesson
	monkeypatch.setattr(settings, "teacher_usernames", "ms_frizzle")
	db.add(AuthUser(username="teacher1", password_hash="x", role="teacher"))
	db.commit()
	for user in ("teacher1", "ms_frizzle", "bob"):
		_save(db, session, slides[0], user=user, role="teacher" if user != "bob" else "student", blocks={"t1": {"value": "4"}})
	service.update_session(db, session.id, SessionUpdate(mode="student"), T0)
	service.navigate(db, session.id, "teacher1", 2, T0)
	service.navigate(db, session.id, "bob", 3, T0)

	heatmap = service.heatmap(db, session.id, T0)
	assert [s["id"] for s in heatmap["students"]] == ["bob"]
	assert [cell["key"] for cell in heatmap["responses"]] == [f"bob:{slides[0].id}"]
	assert [state["userId"] for state in heatmap["states"]] == ["bob"]
