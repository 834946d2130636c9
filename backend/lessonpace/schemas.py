"""
Pydantic models for the HTTP API. Field names are camelCase on the wire.
"""
from __future__ import annotations
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _ApiModel(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---- Teacher: authoring ----

class LessonCreate(_ApiModel):
	title: str


class SlideCreate(_ApiModel):
	prompt: Optional[str] = None
	text: Optional[str] = None
	response_type: Optional[str] = None
	response_config: Optional[Dict[str, Any]] = None


class SlideUpdate(_ApiModel):
	prompt: Optional[str] = None
	text: Optional[str] = None
	response_type: Optional[str] = None
	response_config: Optional[Dict[str, Any]] = None
	scene_data: Optional[Dict[str, Any]] = None


# ---- Teacher: session control ----

class TimerAction(_ApiModel):
	action: Literal["start", "pause", "resume", "clear"]
	seconds: Optional[int] = Field(default=None, ge=0)


class SessionUpdate(_ApiModel):
	mode: Optional[Literal["instructor", "student"]] = None
	is_frozen: Optional[bool] = None
	current_slide_index: Optional[int] = None
	# Partial: only keys present inside are merged; null clears the whole config
	pace_config: Optional[Dict[str, Any]] = None
	timer: Optional[TimerAction] = None


class RevealRequest(_ApiModel):
	slide_id: str
	# None drops the slide's override and falls back to the schema defaults
	block_ids: Optional[List[str]] = None


# ---- Student ----

class NavigateRequest(_ApiModel):
	current_slide_index: int


class ResponseUpdate(_ApiModel):
	# block id -> {value, explain}; null removes the entry
	blocks: Optional[Dict[str, Optional[Dict[str, Any]]]] = None
	response_text: Optional[str] = None
	drawing_path: Optional[str] = None
	drawing_text: Optional[str] = None
	drawing_snapshot: Optional[str] = None


class NavigateResult(_ApiModel):
	current_slide_index: int
	requested_slide_index: int
	accepted: bool
