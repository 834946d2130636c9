from __future__ import annotations
from typing import Dict, Optional, Sequence

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .blocks import Block, DrawingBlock, McqBlock, PromptBlock, TextBlock
from .responses import ResponseDocument, ResponseEntry


class SlideCompletion(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

	required_total: int = 0
	required_done: int = 0
	block_status: Dict[str, bool] = {}


def block_is_required(block: Block) -> bool:
	if block.type == "prompt":
		return False
	return block.required is not False


def _has_value(entry: Optional[ResponseEntry]) -> bool:
	if entry is None:
		return False
	if isinstance(entry.value, str):
		return bool(entry.value.strip())
	if isinstance(entry.value, list):
		return len(entry.value) > 0
	return False


def _has_explain(entry: Optional[ResponseEntry]) -> bool:
	return entry is not None and bool((entry.explain or "").strip())


def _mcq_complete(block: McqBlock, entry: Optional[ResponseEntry]) -> bool:
	if entry is None:
		return False
	if block.multi:
		valid_selection = isinstance(entry.value, list) and len(entry.value) > 0
	else:
		valid_selection = isinstance(entry.value, str) and bool(entry.value.strip())
	if not valid_selection:
		return False
	return _has_explain(entry) if block.require_explain else True


def _drawing_complete(entry: Optional[ResponseEntry], drawing_path: str, drawing_text: str) -> bool:
	# Drawings may live outside the document as a separate artifact
	return (
		_has_value(entry)
		or _has_explain(entry)
		or bool(drawing_path.strip())
		or bool(drawing_text.strip())
	)


def block_complete(block: Block, entry: Optional[ResponseEntry], drawing_path: str = "", drawing_text: str = "") -> bool:
	if isinstance(block, PromptBlock):
		return True
	if isinstance(block, TextBlock):
		return _has_value(entry)
	if isinstance(block, McqBlock):
		return _mcq_complete(block, entry)
	if isinstance(block, DrawingBlock):
		return _drawing_complete(entry, drawing_path, drawing_text)
	raise TypeError(f"unhandled block type: {type(block).__name__}")


def evaluate(
	blocks: Sequence[Block],
	document: Optional[ResponseDocument],
	*,
	drawing_path: Optional[str] = None,
	drawing_text: Optional[str] = None,
) -> SlideCompletion:
	"""Per-block and slide-level completion. Pure; safe to call repeatedly."""
	entries = document.blocks if document is not None else {}
	status: Dict[str, bool] = {}
	required_total = 0
	required_done = 0

	for block in blocks:
		done = block_complete(block, entries.get(block.id), drawing_path or "", drawing_text or "")
		status[block.id] = done
		if block_is_required(block):
			required_total += 1
			if done:
				required_done += 1

	return SlideCompletion(required_total=required_total, required_done=required_done, block_status=status)
