from __future__ import annotations
import uuid
from datetime import datetime, timezone
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from .db import Base


def utcnow() -> datetime:
	# Naive UTC; SQLite drops tzinfo on the way back
	return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
	return uuid.uuid4().hex


class AuthUser(Base):
	__tablename__ = "auth_users"
	# Primary key is username
	username = Column(String(128), primary_key=True, index=True)
	password_hash = Column(String(256), nullable=False)
	display_name = Column(String(256), nullable=True)
	role = Column(String(16), default="student", nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class AuthSession(Base):
	__tablename__ = "auth_sessions"
	session_id = Column(String(64), primary_key=True)
	username = Column(String(128), nullable=False, index=True)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	last_activity_at = Column(DateTime, default=utcnow, nullable=False)


class Lesson(Base):
	__tablename__ = "lessons"
	id = Column(String(64), primary_key=True, default=new_id)
	title = Column(String(256), nullable=False)
	owner = Column(String(128), nullable=True)
	is_active = Column(Boolean, default=True, nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class LessonSlide(Base):
	__tablename__ = "lesson_slides"
	id = Column(String(64), primary_key=True, default=new_id)
	lesson_id = Column(String(64), ForeignKey("lessons.id"), nullable=False, index=True)
	# 1-based position within the lesson
	index = Column(Integer, nullable=False)
	text = Column(Text, nullable=True)
	prompt = Column(Text, nullable=True)
	response_type = Column(String(32), nullable=True)
	response_config = Column(Text, nullable=True)  # JSON string
	created_at = Column(DateTime, default=utcnow, nullable=False)
	updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
	__table_args__ = (UniqueConstraint("lesson_id", "index"),)


class LessonSession(Base):
	__tablename__ = "lesson_sessions"
	id = Column(String(64), primary_key=True, default=new_id)
	lesson_id = Column(String(64), ForeignKey("lessons.id"), nullable=False, index=True)
	mode = Column(String(16), default="instructor", nullable=False)
	current_slide_index = Column(Integer, default=1, nullable=False)
	is_active = Column(Boolean, default=True, nullable=False)
	is_frozen = Column(Boolean, default=False, nullable=False)
	pace_config = Column(Text, nullable=True)  # JSON string
	timer_running = Column(Boolean, default=False, nullable=False)
	timer_ends_at = Column(DateTime, nullable=True)
	timer_remaining_sec = Column(Integer, nullable=True)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class LessonSessionState(Base):
	__tablename__ = "lesson_session_states"
	# Where each student is in a student-paced session
	session_id = Column(String(64), ForeignKey("lesson_sessions.id"), primary_key=True)
	user_id = Column(String(128), primary_key=True)
	current_slide_index = Column(Integer, default=1, nullable=False)
	updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class LessonResponse(Base):
	__tablename__ = "lesson_responses"
	# Durable record, written on explicit submit
	id = Column(String(64), primary_key=True, default=new_id)
	session_id = Column(String(64), ForeignKey("lesson_sessions.id"), nullable=False, index=True)
	slide_id = Column(String(64), ForeignKey("lesson_slides.id"), nullable=False)
	user_id = Column(String(128), nullable=False)
	response = Column(Text, nullable=True)
	response_json = Column(Text, nullable=True)
	response_type = Column(String(32), default="text", nullable=False)
	drawing_path = Column(String(512), nullable=True)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	updated_at = Column(DateTime, default=utcnow, nullable=False)
	__table_args__ = (UniqueConstraint("session_id", "slide_id", "user_id"),)


class LessonStudentSlideState(Base):
	__tablename__ = "lesson_student_slide_states"
	# Working state, autosaved on every edit
	id = Column(String(64), primary_key=True, default=new_id)
	session_id = Column(String(64), ForeignKey("lesson_sessions.id"), nullable=False, index=True)
	slide_id = Column(String(64), ForeignKey("lesson_slides.id"), nullable=False)
	user_id = Column(String(128), nullable=False)
	response_text = Column(Text, nullable=True)
	response_json = Column(Text, nullable=True)
	drawing_path = Column(String(512), nullable=True)
	drawing_text = Column(Text, nullable=True)
	drawing_snapshot = Column(Text, nullable=True)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	updated_at = Column(DateTime, default=utcnow, nullable=False)
	__table_args__ = (UniqueConstraint("session_id", "slide_id", "user_id"),)
