from __future__ import annotations
from datetime import datetime, timedelta

import pytest

from lessonpace.blocks import normalize_schema
from lessonpace.errors import Forbidden, SessionFrozen
from lessonpace.pacing import (
	PaceConfig,
	SessionControl,
	dump_pace_config,
	ensure_blocks_visible,
	ensure_drawing_visible,
	ensure_slide_allowed,
	ensure_student_can_navigate,
	ensure_student_can_write,
	load_pace_config,
	merge_pace_config,
	parse_pace_config,
	resolve_current_slide,
	resolve_navigation_target,
	resolve_visible_blocks,
	set_slide_reveal,
)


T0 = datetime(2025, 3, 1, 9, 0, 0)


def _teacher_paced_schema(**extra):
	return normalize_schema({
		"blocks": [
			{"type": "prompt", "id": "p1", "content": "What is 2+2?"},
			{"type": "text", "id": "t1"},
		],
		"blockRevealMode": "teacher",
		**extra,
	})


# ---- Navigation ----

def test_forward_request_snaps_to_next_allowed():
	assert resolve_navigation_target(5, 3, [1, 2, 3, 6, 7]) == 6


def test_backward_request_snaps_to_previous_allowed():
	assert resolve_navigation_target(2, 3, [1, 3, 6]) == 1


def test_allowed_or_unrestricted_request_is_honoured():
	assert resolve_navigation_target(6, 3, [1, 3, 6]) == 6
	assert resolve_navigation_target(4, 3, []) == 4
	assert resolve_navigation_target(4, 3, None) == 4


def test_no_allowed_slide_in_direction_stays_put():
	assert resolve_navigation_target(9, 3, [1, 2, 3]) == 3
	assert resolve_navigation_target(1, 3, [3, 4]) == 3
	assert resolve_navigation_target(3, 3, [1, 6]) == 3


def test_current_slide_resolution():
	assert resolve_current_slide(2, [3, 5], 10) == 3
	assert resolve_current_slide(12, [], 5) == 5
	assert resolve_current_slide(0, None, 5) == 1
	assert resolve_current_slide(4, [4], 2) == 2


# ---- Pace configuration ----

def test_parse_sanitizes_allowed_slides():
	config = parse_pace_config({"allowedSlides": [3, "2", 2, -1, "x", 1.5, True, 4.0]})
	assert config.allowed_slides == [2, 3, 4]
	assert parse_pace_config({}) is None
	assert parse_pace_config("nope") is None


def test_partial_updates_do_not_clobber_each_other():
	merged = merge_pace_config(None, {"allowedSlides": [1, 2]})
	merged = merge_pace_config(merged, {"revealedBlockIdsBySlide": {"s1": ["b1"]}})
	assert merged.to_json() == {"allowedSlides": [1, 2], "revealedBlockIdsBySlide": {"s1": ["b1"]}}


def test_null_field_clears_only_that_field():
	current = PaceConfig(allowed_slides=[1], revealed_block_ids_by_slide={"s1": ["b1"]})
	merged = merge_pace_config(current, {"allowedSlides": None})
	assert merged.allowed_slides is None
	assert merged.revealed_block_ids_by_slide == {"s1": ["b1"]}
	assert merge_pace_config(merged, {"revealedBlockIdsBySlide": None}) is None


def test_reveal_for_one_slide_leaves_others():
	current = PaceConfig(revealed_block_ids_by_slide={"s1": ["b1"], "s2": ["b2"]})
	updated = set_slide_reveal(current, "s1", ["b3", "b3", " "])
	assert updated.revealed_block_ids_by_slide == {"s1": ["b3"], "s2": ["b2"]}
	dropped = set_slide_reveal(updated, "s2", None)
	assert dropped.revealed_block_ids_by_slide == {"s1": ["b3"]}
	assert current.revealed_block_ids_by_slide["s1"] == ["b1"]


def test_storage_form():
	assert dump_pace_config(None) is None
	assert dump_pace_config(PaceConfig()) is None
	stored = dump_pace_config(PaceConfig(allowed_slides=[2, 1]))
	assert load_pace_config(stored).allowed_slides == [1, 2]
	assert load_pace_config("{oops") is None


# ---- Block visibility ----

def test_teacher_reveal_mode_shows_only_prompt_by_default():
	schema = _teacher_paced_schema()
	assert [b.id for b in resolve_visible_blocks(schema, "s1", None)] == ["p1"]


def test_slide_override_reveals_blocks():
	schema = _teacher_paced_schema()
	pace = PaceConfig(revealed_block_ids_by_slide={"s1": ["t1"]})
	assert [b.id for b in resolve_visible_blocks(schema, "s1", pace)] == ["p1", "t1"]
	# An override for another slide changes nothing here
	assert [b.id for b in resolve_visible_blocks(schema, "s2", pace)] == ["p1"]


def test_empty_override_still_shows_prompts():
	schema = normalize_schema({"blocks": [{"type": "prompt", "id": "p1", "content": "Q"}, {"type": "text", "id": "t1"}]})
	pace = PaceConfig(revealed_block_ids_by_slide={"s1": []})
	assert [b.id for b in resolve_visible_blocks(schema, "s1", pace)] == ["p1"]
	assert [b.id for b in resolve_visible_blocks(schema, "s1", None)] == ["p1", "t1"]


def test_configured_default_visible_blocks():
	schema = _teacher_paced_schema(defaultVisibleBlockIds=["t1"])
	assert [b.id for b in resolve_visible_blocks(schema, "s1", None)] == ["p1", "t1"]


# ---- Gates ----

def test_write_and_navigation_gates():
	ensure_student_can_write(SessionControl())
	with pytest.raises(SessionFrozen):
		ensure_student_can_write(SessionControl(is_frozen=True))
	with pytest.raises(Forbidden, match="instructor-paced"):
		ensure_student_can_navigate(SessionControl(mode="instructor"))
	with pytest.raises(SessionFrozen):
		ensure_student_can_navigate(SessionControl(mode="student", is_frozen=True))


def test_slide_and_block_gates():
	ensure_slide_allowed(2, None)
	ensure_slide_allowed(2, PaceConfig(allowed_slides=[2]))
	with pytest.raises(Forbidden, match="Slide not allowed"):
		ensure_slide_allowed(3, PaceConfig(allowed_slides=[2]))

	visible = resolve_visible_blocks(_teacher_paced_schema(), "s1", None)
	ensure_blocks_visible(["p1"], visible)
	with pytest.raises(Forbidden, match="t1"):
		ensure_blocks_visible(["p1", "t1"], visible)


def test_drawing_fields_need_a_visible_drawing_block():
	schema = _teacher_paced_schema(blocks=[
		{"type": "prompt", "id": "p1", "content": "Sketch a square"},
		{"type": "drawing", "id": "d1"},
	])
	hidden = resolve_visible_blocks(schema, "s1", None)
	ensure_drawing_visible(["blocks", "response_text"], hidden)
	with pytest.raises(Forbidden, match="Drawing"):
		ensure_drawing_visible(["drawing_text"], hidden)

	shown = resolve_visible_blocks(schema, "s1", PaceConfig(revealed_block_ids_by_slide={"s1": ["d1"]}))
	ensure_drawing_visible(["drawing_path", "drawing_snapshot"], shown)


# ---- Timer ----

def test_timer_counts_down_and_pauses():
	control = SessionControl()
	control.start_timer(60, T0)
	assert control.remaining_seconds(T0 + timedelta(seconds=10.5)) == 50

	control.pause_timer(T0 + timedelta(seconds=10))
	assert (control.timer_running, control.timer_ends_at, control.timer_remaining_sec) == (False, None, 50)
	assert control.remaining_seconds(T0 + timedelta(hours=1)) == 50

	resumed_at = T0 + timedelta(minutes=5)
	control.resume_timer(resumed_at)
	assert control.timer_running is True
	assert control.timer_ends_at == resumed_at + timedelta(seconds=50)


def test_expired_timer_freezes():
	control = SessionControl()
	control.start_timer(30, T0)
	assert control.expire(T0 + timedelta(seconds=29)) is False
	assert control.expire(T0 + timedelta(seconds=30)) is True
	assert control.is_frozen is True
	assert control.timer_remaining_sec == 0
	assert control.expire(T0 + timedelta(seconds=31)) is False


def test_starting_a_timer_lifts_freeze():
	control = SessionControl(is_frozen=True)
	control.start_timer(10, T0)
	assert control.is_frozen is False


def test_clear_timer():
	control = SessionControl()
	control.start_timer(10, T0)
	control.clear_timer()
	assert control.remaining_seconds(T0) is None
	control.resume_timer(T0)
	assert control.timer_running is False


def test_unknown_mode_rejected():
	with pytest.raises(ValueError):
		SessionControl().set_mode("chaos")
