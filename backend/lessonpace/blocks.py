"""
Slide response schema: the typed vocabulary of blocks a teacher can put on a
slide, and the sanitizer that turns arbitrary stored or incoming config into
that vocabulary.

The four block kinds form a closed tagged union discriminated on `type`.
Sanitizing drops anything it cannot make sense of; it never raises.
"""
from __future__ import annotations
import json
import math
import re
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .settings import settings


BLOCK_TYPES = ("prompt", "text", "mcq", "drawing")
REVEAL_MODES = ("all", "teacher")


class _BlockBase(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

	id: str


class PromptBlock(_BlockBase):
	type: Literal["prompt"] = "prompt"
	title: str = "Prompt"
	content: str
	label: Optional[str] = None
	# Prompts never count toward completion
	required: bool = False


class TextBlock(_BlockBase):
	type: Literal["text"] = "text"
	label: str = "Your response"
	placeholder: str = "Type your response..."
	required: bool = True
	max_chars: Optional[int] = None


class McqBlock(_BlockBase):
	type: Literal["mcq"] = "mcq"
	label: str = "Choose one"
	choices: List[str]
	multi: bool = False
	require_explain: bool = False
	required: bool = True


class DrawingBlock(_BlockBase):
	type: Literal["drawing"] = "drawing"
	label: str = "Show your work"
	required: bool = False


Block = Annotated[Union[PromptBlock, TextBlock, McqBlock, DrawingBlock], Field(discriminator="type")]


class SlideSchema(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

	version: int = 1
	blocks: List[Block]
	scene_data: Optional[Dict[str, Any]] = None
	widgets: Optional[List[str]] = None
	block_reveal_mode: Optional[Literal["all", "teacher"]] = None
	default_visible_block_ids: Optional[List[str]] = None

	def block_ids(self) -> List[str]:
		return [block.id for block in self.blocks]

	def get_block(self, block_id: str) -> Optional[Block]:
		for block in self.blocks:
			if block.id == block_id:
				return block
		return None

	def to_json(self) -> Dict[str, Any]:
		return self.model_dump(by_alias=True, exclude_none=True)


# Keys the normalizer owns; everything else on the source is carried through untouched
_SCHEMA_KEYS = {
	"version", "blocks", "sceneData", "widgets", "blockRevealMode", "defaultVisibleBlockIds",
	"scene_data", "block_reveal_mode", "default_visible_block_ids",
}
_ID_UNSAFE = re.compile(r"[^a-zA-Z0-9_-]")


def _as_str(value: Any, fallback: str = "") -> str:
	return value if isinstance(value, str) else fallback


def _as_bool(value: Any, fallback: bool) -> bool:
	return value if isinstance(value, bool) else fallback


def _as_positive_int(value: Any) -> Optional[int]:
	if isinstance(value, bool) or not isinstance(value, (int, float)):
		return None
	if not math.isfinite(value) or value <= 0:
		return None
	return int(value)


def normalize_id(raw: str, fallback: str) -> str:
	value = raw.strip()
	if not value:
		return fallback
	return _ID_UNSAFE.sub("_", value)[: settings.max_block_id_length] or fallback


def make_block_id(block_type: str, idx: int) -> str:
	return f"{block_type}_{idx + 1}"


def sanitize_choices(value: Any) -> List[str]:
	if not isinstance(value, list):
		return []
	choices: List[str] = []
	for item in value:
		text = _as_str(item).strip()
		if text and text not in choices:
			choices.append(text)
	return choices[: settings.max_mcq_choices]


# ---- Factories ---------------------------------------------------------------

def create_prompt_block(content: str, title: str = "Prompt", id: str = "prompt_1") -> PromptBlock:
	return PromptBlock(id=id, title=title, content=content.strip())


def create_text_block(
	label: str = "Your response",
	*,
	id: str = "text_1",
	placeholder: Optional[str] = None,
	required: bool = True,
	max_chars: Optional[int] = None,
) -> TextBlock:
	return TextBlock(
		id=id,
		label=label,
		placeholder=placeholder or "Type your response...",
		required=required,
		max_chars=max_chars,
	)


def create_mcq_block(
	label: str,
	choices: List[str],
	*,
	id: str = "mcq_1",
	multi: bool = False,
	require_explain: bool = False,
	required: bool = True,
) -> McqBlock:
	return McqBlock(
		id=id,
		label=label,
		choices=sanitize_choices(choices),
		multi=multi,
		require_explain=require_explain,
		required=required,
	)


def create_drawing_block(label: str = "Show your work", *, id: str = "drawing_1", required: bool = False) -> DrawingBlock:
	return DrawingBlock(id=id, label=label, required=required)


# ---- Sanitizing --------------------------------------------------------------

def sanitize_block(source: Any, idx: int) -> Optional[Block]:
	"""Return a clean block, or None when the element is unusable."""
	if not isinstance(source, dict):
		return None
	block_type = _as_str(source.get("type"))
	if block_type not in BLOCK_TYPES:
		return None
	block_id = normalize_id(_as_str(source.get("id")), make_block_id(block_type, idx))

	if block_type == "prompt":
		content = _as_str(source.get("content")).strip()
		if not content:
			return None
		title = _as_str(source.get("title"), "Prompt").strip() or "Prompt"
		return PromptBlock(id=block_id, title=title, content=content)

	if block_type == "text":
		return TextBlock(
			id=block_id,
			label=_as_str(source.get("label")).strip() or "Your response",
			placeholder=_as_str(source.get("placeholder")) or "Type your response...",
			required=_as_bool(source.get("required"), True),
			max_chars=_as_positive_int(source.get("maxChars")),
		)

	if block_type == "mcq":
		choices = sanitize_choices(source.get("choices"))
		if not choices:
			return None
		return McqBlock(
			id=block_id,
			label=_as_str(source.get("label")).strip() or "Choose one",
			choices=choices,
			multi=_as_bool(source.get("multi"), False),
			require_explain=_as_bool(source.get("requireExplain"), False),
			required=_as_bool(source.get("required"), True),
		)

	return DrawingBlock(
		id=block_id,
		label=_as_str(source.get("label")).strip() or "Show your work",
		required=_as_bool(source.get("required"), False),
	)


def dedupe_ids(blocks: List[Block]) -> List[Block]:
	seen: set[str] = set()
	result: List[Block] = []
	for idx, block in enumerate(blocks):
		block_id = block.id
		while block_id in seen:
			block_id = f"{block_id}_{idx + 1}"
		seen.add(block_id)
		result.append(block if block_id == block.id else block.model_copy(update={"id": block_id}))
	return result


def _declared_widgets(source: Dict[str, Any]) -> List[str]:
	widgets = source.get("widgets")
	if not isinstance(widgets, list):
		return []
	return [w.lower() for w in (_as_str(item).strip() for item in widgets) if w]


def build_legacy_blocks(source: Dict[str, Any], prompt: Optional[str] = None, response_type: Optional[str] = None) -> List[Block]:
	"""Synthesize blocks for configs stored before slides carried a `blocks` list."""
	blocks: List[Block] = []
	prompt_text = (prompt or _as_str(source.get("prompt"))).strip()
	if prompt_text:
		blocks.append(create_prompt_block(prompt_text))

	choices = sanitize_choices(source.get("choices"))
	if choices:
		blocks.append(create_mcq_block(
			_as_str(source.get("label")) or "Choose your answer",
			choices,
			multi=_as_bool(source.get("multi"), False),
			require_explain=_as_bool(source.get("explain"), False),
		))

	widgets = _declared_widgets(source)
	kind = (response_type or _as_str(source.get("responseType"))).lower()
	include_text = (
		"text" in widgets
		or kind in ("text", "both")
		or (not choices and "drawing" not in widgets)
	)
	include_drawing = "drawing" in widgets or kind in ("drawing", "both")

	if include_text:
		blocks.append(create_text_block())
	if include_drawing:
		blocks.append(create_drawing_block())
	return blocks


def normalize_schema(raw: Any, *, prompt: Optional[str] = None, response_type: Optional[str] = None) -> SlideSchema:
	source: Dict[str, Any] = dict(raw) if isinstance(raw, dict) else {}
	raw_blocks = source.get("blocks")

	if isinstance(raw_blocks, list):
		blocks = [b for b in (sanitize_block(item, idx) for idx, item in enumerate(raw_blocks)) if b is not None]
	else:
		blocks = build_legacy_blocks(source, prompt=prompt, response_type=response_type)

	# A slide must always have something to complete
	if not any(block.type != "prompt" for block in blocks):
		blocks.append(create_text_block())

	blocks = dedupe_ids(blocks)

	data: Dict[str, Any] = {key: value for key, value in source.items() if key not in _SCHEMA_KEYS}
	data["version"] = 1
	data["blocks"] = [block.model_dump(by_alias=True) for block in blocks]

	scene_data = source.get("sceneData")
	if isinstance(scene_data, dict):
		data["sceneData"] = scene_data

	if isinstance(source.get("widgets"), list):
		data["widgets"] = [w for w in (_as_str(item).strip() for item in source["widgets"]) if w]

	reveal_mode = _as_str(source.get("blockRevealMode")).lower()
	if reveal_mode in REVEAL_MODES:
		data["blockRevealMode"] = reveal_mode

	if isinstance(source.get("defaultVisibleBlockIds"), list):
		valid_ids = {block.id for block in blocks}
		visible: List[str] = []
		for item in source["defaultVisibleBlockIds"]:
			block_id = _as_str(item).strip()
			if block_id in valid_ids and block_id not in visible:
				visible.append(block_id)
		data["defaultVisibleBlockIds"] = visible

	return SlideSchema.model_validate(data)


def load_schema(stored: Optional[str], *, prompt: Optional[str] = None, response_type: Optional[str] = None) -> SlideSchema:
	"""Normalize a schema persisted as JSON text; unreadable text counts as empty config."""
	raw: Any = {}
	if stored and stored.strip():
		try:
			raw = json.loads(stored)
		except ValueError:
			raw = {}
	return normalize_schema(raw, prompt=prompt, response_type=response_type)
