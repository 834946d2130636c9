"""
Merge durable response records and working-state records into one cell per
(student, slide).

Durable records are laid down first. A working-state record then wins unless
the durable record is strictly newer; where the winning working state leaves
a field blank, the durable value shows through.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Literal, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .blocks import SlideSchema
from .completion import SlideCompletion, evaluate
from .responses import ResponseDocument


logger = logging.getLogger(__name__)

CellKey = Tuple[str, str]


@dataclass
class ResponseRecord:
	student_id: str
	slide_id: str
	updated_at: datetime
	response_text: str = ""
	document: Optional[ResponseDocument] = None
	drawing_path: str = ""


@dataclass
class WorkingStateRecord:
	student_id: str
	slide_id: str
	updated_at: datetime
	response_text: str = ""
	document: Optional[ResponseDocument] = None
	drawing_path: str = ""
	drawing_text: str = ""
	drawing_snapshot: Optional[str] = None


class MergedCell(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

	student_id: str
	slide_id: str
	response_text: str = ""
	document: Optional[ResponseDocument] = None
	drawing_path: str = ""
	drawing_text: str = ""
	drawing_snapshot: Optional[str] = None
	updated_at: datetime
	source: Literal["response", "state"]
	completion: SlideCompletion = SlideCompletion()

	@property
	def key(self) -> str:
		return f"{self.student_id}:{self.slide_id}"


def _has_entries(document: Optional[ResponseDocument]) -> bool:
	return document is not None and bool(document.blocks)


def overlay_documents(base: Optional[ResponseDocument], top: Optional[ResponseDocument]) -> Optional[ResponseDocument]:
	"""Entries from `top` win block by block; blocks `top` leaves out come from `base`."""
	if not _has_entries(top):
		if base is None:
			return top
		if top is not None and top.meta is not None:
			return base.model_copy(update={"meta": top.meta})
		return base
	if base is None:
		return top
	blocks = dict(base.blocks)
	blocks.update(top.blocks)
	return ResponseDocument(blocks=blocks, meta=top.meta or base.meta)


def _from_response(record: ResponseRecord) -> MergedCell:
	return MergedCell(
		student_id=record.student_id,
		slide_id=record.slide_id,
		response_text=record.response_text or "",
		document=record.document,
		drawing_path=record.drawing_path or "",
		updated_at=record.updated_at,
		source="response",
	)


def _from_state(state: WorkingStateRecord, existing: Optional[MergedCell]) -> MergedCell:
	if existing is None:
		return MergedCell(
			student_id=state.student_id,
			slide_id=state.slide_id,
			response_text=state.response_text or "",
			document=state.document,
			drawing_path=state.drawing_path or "",
			drawing_text=state.drawing_text or "",
			drawing_snapshot=state.drawing_snapshot or None,
			updated_at=state.updated_at,
			source="state",
		)
	snapshot = state.drawing_snapshot if state.drawing_snapshot and state.drawing_snapshot.strip() else None
	return MergedCell(
		student_id=state.student_id,
		slide_id=state.slide_id,
		response_text=state.response_text or existing.response_text,
		document=overlay_documents(existing.document, state.document),
		drawing_path=state.drawing_path or existing.drawing_path,
		drawing_text=state.drawing_text or existing.drawing_text,
		drawing_snapshot=snapshot or existing.drawing_snapshot,
		updated_at=state.updated_at,
		source="state",
	)


def reconcile(
	responses: Optional[Iterable[ResponseRecord]],
	states: Optional[Iterable[WorkingStateRecord]],
	schemas: Optional[Mapping[str, SlideSchema]] = None,
) -> Dict[CellKey, MergedCell]:
	cells: Dict[CellKey, MergedCell] = {}

	for record in responses or ():
		cells[(record.student_id, record.slide_id)] = _from_response(record)

	for state in states or ():
		key = (state.student_id, state.slide_id)
		existing = cells.get(key)
		# Ties go to the working state
		if existing is not None and existing.updated_at > state.updated_at:
			continue
		cells[key] = _from_state(state, existing)

	schemas = schemas or {}
	for cell in cells.values():
		schema = schemas.get(cell.slide_id)
		blocks = schema.blocks if schema is not None else []
		cell.completion = evaluate(
			blocks,
			cell.document,
			drawing_path=cell.drawing_path,
			drawing_text=cell.drawing_text,
		)

	logger.debug("reconciled %d cells", len(cells))
	return cells
