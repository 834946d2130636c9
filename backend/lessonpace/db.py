from __future__ import annotations
from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import sessionmaker, declarative_base
from .settings import settings


DATABASE_URL = settings.database_url or "sqlite:///./lessonpace.db"

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=_connect_args, future=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()


def get_db():
	db = SessionLocal()
	try:
		yield db
	finally:
		db.close()


# Best-effort lightweight migrations for development (SQLite-friendly)
def ensure_schema(bind=None) -> None:
	bind = bind or engine
	inspector = inspect(bind)
	tables = set(inspector.get_table_names())
	if "lesson_student_slide_states" in tables:
		cols = {c["name"] for c in inspector.get_columns("lesson_student_slide_states")}
		with bind.begin() as conn:
			if "drawing_snapshot" not in cols:
				conn.exec_driver_sql("ALTER TABLE lesson_student_slide_states ADD COLUMN drawing_snapshot TEXT")
			if "drawing_text" not in cols:
				conn.exec_driver_sql("ALTER TABLE lesson_student_slide_states ADD COLUMN drawing_text TEXT")
	if "lesson_sessions" in tables:
		cols = {c["name"] for c in inspector.get_columns("lesson_sessions")}
		with bind.begin() as conn:
			if "timer_remaining_sec" not in cols:
				conn.exec_driver_sql("ALTER TABLE lesson_sessions ADD COLUMN timer_remaining_sec INTEGER")
