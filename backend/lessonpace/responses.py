"""
Per-student, per-slide response document: block id -> entry.

Normalizing is canonical: an already-normalized document normalizes to
itself and serializes to the same bytes. Entries with neither a value nor an
explanation are dropped so stored documents never accumulate placeholders.
"""
from __future__ import annotations
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .blocks import Block
from .settings import settings


EntryValue = Union[str, List[str]]


class ResponseEntry(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

	value: Optional[EntryValue] = None
	explain: Optional[str] = None
	updated_at: str


class ResponseMeta(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

	last_submitted_at: Optional[str] = None


class ResponseDocument(BaseModel):
	version: int = 1
	blocks: Dict[str, ResponseEntry] = Field(default_factory=dict)
	meta: Optional[ResponseMeta] = None

	def is_empty(self) -> bool:
		return not self.blocks and not (self.meta and self.meta.last_submitted_at)

	def to_json(self) -> Dict[str, Any]:
		return self.model_dump(by_alias=True, exclude_none=True)


def to_iso(moment: datetime) -> str:
	if moment.tzinfo is None:
		moment = moment.replace(tzinfo=timezone.utc)
	moment = moment.astimezone(timezone.utc)
	return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def _now_iso() -> str:
	return to_iso(datetime.now(timezone.utc))


def normalize_value(value: Any) -> Optional[EntryValue]:
	if isinstance(value, str):
		return value.strip() or None
	if isinstance(value, list):
		items: List[str] = []
		for item in value:
			text = item.strip() if isinstance(item, str) else ""
			if text and text not in items:
				items.append(text)
		return items or None
	return None


def normalize_entry(source: Any, default_stamp: Optional[str] = None) -> Optional[ResponseEntry]:
	if not isinstance(source, dict):
		return None
	value = normalize_value(source.get("value"))
	explain = source.get("explain")
	explain = explain.strip() if isinstance(explain, str) else ""
	if value is None and not explain:
		return None
	stamp = source.get("updatedAt")
	if not isinstance(stamp, str) or not stamp:
		stamp = default_stamp or _now_iso()
	return ResponseEntry(value=value, explain=explain or None, updated_at=stamp)


def _as_source(raw: Any) -> Any:
	if isinstance(raw, ResponseDocument):
		return raw.to_json()
	return raw


def normalize_document(raw: Any) -> ResponseDocument:
	source = _as_source(raw)
	if not isinstance(source, dict):
		return ResponseDocument()

	source_blocks = source.get("blocks")
	if not isinstance(source_blocks, dict):
		source_blocks = {}

	blocks: Dict[str, ResponseEntry] = {}
	for block_id, entry in source_blocks.items():
		key = str(block_id).strip()
		if not key:
			continue
		normalized = normalize_entry(entry)
		if normalized is not None:
			blocks[key] = normalized

	document = ResponseDocument(blocks=blocks)
	meta = source.get("meta")
	if isinstance(meta, dict):
		submitted = meta.get("lastSubmittedAt")
		if isinstance(submitted, str) and submitted.strip():
			document.meta = ResponseMeta(last_submitted_at=submitted.strip())
	return document


def stringify(raw: Any) -> Optional[str]:
	"""Serialized form for storage, or None when there is nothing worth writing."""
	document = normalize_document(raw)
	if document.is_empty():
		return None
	return json.dumps(document.to_json(), separators=(",", ":"), ensure_ascii=False)


def parse(persisted: Optional[str]) -> Optional[ResponseDocument]:
	if not persisted or not persisted.strip():
		return None
	try:
		return normalize_document(json.loads(persisted))
	except ValueError:
		return None


def merge_update(
	current: Optional[ResponseDocument],
	updates: Mapping[str, Any],
	*,
	now: Optional[datetime] = None,
	submitted: bool = False,
) -> ResponseDocument:
	"""
	Apply a partial update to a stored document.

	- entries named in `updates` replace the stored entry; `None` removes it
	- entries not named are left untouched
	- an entry whose value and explanation are unchanged keeps its timestamp
	"""
	stamp = to_iso(now or datetime.now(timezone.utc))
	base = current.to_json() if current is not None else {"version": 1, "blocks": {}}
	blocks: Dict[str, Any] = dict(base.get("blocks") or {})

	for block_id, patch in updates.items():
		key = str(block_id).strip()
		if not key:
			continue
		if patch is None:
			blocks.pop(key, None)
			continue
		incoming = normalize_entry(patch, default_stamp=stamp)
		if incoming is None:
			blocks.pop(key, None)
			continue
		existing = normalize_entry(blocks.get(key))
		if existing is not None and existing.value == incoming.value and existing.explain == incoming.explain:
			continue
		incoming.updated_at = stamp
		blocks[key] = incoming.model_dump(by_alias=True, exclude_none=True)

	base["blocks"] = blocks
	if submitted:
		base["meta"] = {"lastSubmittedAt": stamp}
	return normalize_document(base)


# ---- Assessment text ---------------------------------------------------------

def _render_entry(block: Block, entry: Optional[ResponseEntry]) -> str:
	if entry is None:
		return ""
	if block.type == "mcq":
		if isinstance(entry.value, list):
			selection = ", ".join(entry.value)
		else:
			selection = entry.value or ""
		explain = f" | Explain: {entry.explain}" if entry.explain else ""
		return f"{selection}{explain}".strip()
	if isinstance(entry.value, list):
		return ", ".join(entry.value)
	if isinstance(entry.value, str):
		return entry.value
	return entry.explain or ""


def summarize_document(
	blocks: Sequence[Block],
	document: Optional[ResponseDocument],
	*,
	fallback_text: Optional[str] = None,
	drawing_path: Optional[str] = None,
	drawing_text: Optional[str] = None,
) -> str:
	"""Render a response as labelled plain-text lines for LLM assessment."""
	entries = document.blocks if document is not None else {}
	lines: List[str] = []
	for block in blocks:
		if block.type == "prompt":
			continue
		rendered = _render_entry(block, entries.get(block.id))
		if not rendered:
			continue
		label = block.label or block.type.upper()
		lines.append(f"{label}: {rendered}")

	if not lines and fallback_text and fallback_text.strip():
		lines.append(fallback_text.strip())

	if drawing_text and drawing_text.strip():
		lines.append(f"Drawing Notes: {drawing_text.strip()}")
	elif drawing_path and drawing_path.strip():
		lines.append("Drawing submitted.")

	return "\n".join(lines)[: settings.assessment_text_limit]
