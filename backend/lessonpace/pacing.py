"""
Pacing: which slides and which blocks a student may currently see, how a
navigation request is adjudicated, and the session control state
(pacing mode, freeze, countdown timer) that gates every student write.

Everything here is pure; persistence and notification live in `service`.
"""
from __future__ import annotations
import json
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .blocks import Block, SlideSchema
from .errors import Forbidden, SessionFrozen


MODES = ("instructor", "student")


class PaceConfig(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

	allowed_slides: Optional[List[int]] = None
	revealed_block_ids_by_slide: Optional[Dict[str, List[str]]] = None

	def is_empty(self) -> bool:
		return self.allowed_slides is None and self.revealed_block_ids_by_slide is None

	def to_json(self) -> Dict[str, Any]:
		return self.model_dump(by_alias=True, exclude_none=True)


def _unique_positive_ints(value: Any) -> List[int]:
	if not isinstance(value, list):
		return []
	result: set[int] = set()
	for item in value:
		if isinstance(item, bool):
			continue
		if isinstance(item, (int, float)):
			number = item
		else:
			try:
				number = int(str(item or "").strip())
			except ValueError:
				continue
		if isinstance(number, float):
			if not math.isfinite(number) or not number.is_integer():
				continue
			number = int(number)
		if number > 0:
			result.add(number)
	return sorted(result)


def _unique_strings(value: Any) -> List[str]:
	if not isinstance(value, list):
		return []
	result: List[str] = []
	for item in value:
		text = str(item).strip() if item is not None else ""
		if text and text not in result:
			result.append(text)
	return result


def _parse_reveal_map(value: Any) -> Optional[Dict[str, List[str]]]:
	if not isinstance(value, dict):
		return None
	result: Dict[str, List[str]] = {}
	for slide_id, ids in value.items():
		key = str(slide_id or "").strip()
		if key:
			result[key] = _unique_strings(ids)
	return result


def parse_pace_config(raw: Any) -> Optional[PaceConfig]:
	if not isinstance(raw, dict):
		return None
	config = PaceConfig()
	has_value = False
	if "allowedSlides" in raw and raw["allowedSlides"] is not None:
		config.allowed_slides = _unique_positive_ints(raw["allowedSlides"])
		has_value = True
	reveal_map = _parse_reveal_map(raw.get("revealedBlockIdsBySlide"))
	if reveal_map is not None:
		config.revealed_block_ids_by_slide = reveal_map
		has_value = True
	return config if has_value else None


def load_pace_config(stored: Optional[str]) -> Optional[PaceConfig]:
	if not stored or not stored.strip():
		return None
	try:
		return parse_pace_config(json.loads(stored))
	except ValueError:
		return None


def dump_pace_config(config: Optional[PaceConfig]) -> Optional[str]:
	if config is None or config.is_empty():
		return None
	return json.dumps(config.to_json(), separators=(",", ":"))


def merge_pace_config(current: Optional[PaceConfig], incoming: Any) -> Optional[PaceConfig]:
	"""
	Merge a partial update. Only fields present on `incoming` are touched;
	a present field set to null clears it.
	"""
	merged = current.model_copy(deep=True) if current is not None else PaceConfig()
	if not isinstance(incoming, dict):
		return None if merged.is_empty() else merged
	parsed = parse_pace_config(incoming) or PaceConfig()
	if "allowedSlides" in incoming:
		merged.allowed_slides = parsed.allowed_slides
	if "revealedBlockIdsBySlide" in incoming:
		merged.revealed_block_ids_by_slide = parsed.revealed_block_ids_by_slide
	return None if merged.is_empty() else merged


def set_slide_reveal(current: Optional[PaceConfig], slide_id: str, block_ids: Optional[Iterable[str]]) -> Optional[PaceConfig]:
	"""Replace one slide's block override; other slides keep theirs. None drops the override."""
	merged = current.model_copy(deep=True) if current is not None else PaceConfig()
	reveal_map = dict(merged.revealed_block_ids_by_slide or {})
	if block_ids is None:
		reveal_map.pop(slide_id, None)
	else:
		reveal_map[slide_id] = _unique_strings(list(block_ids))
	merged.revealed_block_ids_by_slide = reveal_map or None
	return None if merged.is_empty() else merged


def allowed_slides_of(config: Optional[PaceConfig]) -> List[int]:
	if config is None or not config.allowed_slides:
		return []
	return list(config.allowed_slides)


# ---- Block visibility --------------------------------------------------------

def default_visible_ids(schema: SlideSchema) -> set[str]:
	if schema.block_reveal_mode != "teacher":
		return set(schema.block_ids())
	known = set(schema.block_ids())
	configured = [block_id for block_id in (schema.default_visible_block_ids or []) if block_id in known]
	if configured:
		return set(configured)
	return {block.id for block in schema.blocks if block.type == "prompt"}


def resolve_visible_blocks(schema: SlideSchema, slide_id: Optional[str], pace: Optional[PaceConfig]) -> List[Block]:
	visible = default_visible_ids(schema)
	if slide_id and pace is not None and pace.revealed_block_ids_by_slide is not None:
		override = pace.revealed_block_ids_by_slide.get(str(slide_id))
		if override is not None:
			# The override replaces the defaults for this slide
			visible = set(override)
	return [block for block in schema.blocks if block.type == "prompt" or block.id in visible]


# ---- Navigation --------------------------------------------------------------

def resolve_navigation_target(requested: int, current: int, allowed: Optional[Sequence[int]]) -> int:
	if not allowed or requested in allowed:
		return requested
	if requested > current:
		later = [idx for idx in allowed if idx > current]
		return min(later) if later else current
	if requested < current:
		earlier = [idx for idx in allowed if idx < current]
		return max(earlier) if earlier else current
	return current


def clamp_slide_index(index: int, slide_count: int) -> int:
	return max(1, min(index, max(slide_count, 1)))


def resolve_current_slide(stored: int, allowed: Optional[Sequence[int]], slide_count: int) -> int:
	"""Where a reader lands: first allowed slide if theirs was restricted, then clamped."""
	index = stored
	if allowed and index not in allowed:
		index = min(allowed)
	return clamp_slide_index(index, slide_count)


# ---- Session control ---------------------------------------------------------

@dataclass
class SessionControl:
	"""
	{instructor, student} x {running, frozen} plus a countdown timer.

	While the timer runs, `timer_ends_at` is authoritative; while paused,
	`timer_remaining_sec` is. `timer_running` says which one is live.
	"""
	mode: str = "instructor"
	is_frozen: bool = False
	timer_running: bool = False
	timer_ends_at: Optional[datetime] = None
	timer_remaining_sec: Optional[int] = None

	def remaining_seconds(self, now: datetime) -> Optional[int]:
		if self.timer_running:
			if self.timer_ends_at is None:
				return None
			return max(0, math.ceil((self.timer_ends_at - now).total_seconds()))
		return self.timer_remaining_sec

	def set_mode(self, mode: str) -> None:
		if mode not in MODES:
			raise ValueError(f"mode must be one of {MODES}")
		self.mode = mode

	def set_frozen(self, frozen: bool) -> None:
		self.is_frozen = frozen

	def start_timer(self, seconds: int, now: datetime) -> None:
		self.is_frozen = False
		self.timer_running = True
		self.timer_ends_at = now + timedelta(seconds=max(0, seconds))
		self.timer_remaining_sec = None

	def pause_timer(self, now: datetime) -> None:
		if not self.timer_running:
			return
		self.timer_remaining_sec = self.remaining_seconds(now) or 0
		self.timer_running = False
		self.timer_ends_at = None

	def resume_timer(self, now: datetime) -> None:
		if self.timer_running or not self.timer_remaining_sec:
			return
		self.start_timer(self.timer_remaining_sec, now)

	def clear_timer(self) -> None:
		self.timer_running = False
		self.timer_ends_at = None
		self.timer_remaining_sec = None

	def expire(self, now: datetime) -> bool:
		"""Stop a timer whose end has passed and freeze the session. Returns True if anything changed."""
		if not self.timer_running or self.timer_ends_at is None or self.timer_ends_at > now:
			return False
		self.timer_running = False
		self.timer_ends_at = None
		self.timer_remaining_sec = 0
		self.is_frozen = True
		return True


def ensure_student_can_write(control: SessionControl) -> None:
	if control.is_frozen:
		raise SessionFrozen()


def ensure_student_can_navigate(control: SessionControl) -> None:
	if control.mode != "student":
		raise Forbidden("Session is instructor-paced")
	ensure_student_can_write(control)


def ensure_slide_allowed(slide_index: int, pace: Optional[PaceConfig]) -> None:
	allowed = allowed_slides_of(pace)
	if allowed and slide_index not in allowed:
		raise Forbidden("Slide not allowed")


def ensure_blocks_visible(block_ids: Iterable[str], visible: Sequence[Block]) -> None:
	visible_ids = {block.id for block in visible}
	hidden = sorted({str(block_id).strip() for block_id in block_ids} - visible_ids)
	if hidden:
		raise Forbidden(f"Blocks not available: {', '.join(hidden)}")


DRAWING_FIELDS = ("drawing_path", "drawing_text", "drawing_snapshot")


def ensure_drawing_visible(fields: Iterable[str], visible: Sequence[Block]) -> None:
	"""Drawing artifacts count as answers to a drawing block, so one must be visible."""
	touched = set(fields) & set(DRAWING_FIELDS)
	if touched and not any(block.type == "drawing" for block in visible):
		raise Forbidden("Drawing not available")
