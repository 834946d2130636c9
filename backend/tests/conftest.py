from __future__ import annotations
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from lessonpace import models  # noqa: F401  registers the tables on Base
from lessonpace.db import Base, get_db
from lessonpace.main import app
from lessonpace.realtime import get_notifier
from lessonpace.routers.auth import User, get_current_user


class RecordingNotifier:
	def __init__(self) -> None:
		self.events: List[Dict[str, Any]] = []

	async def notify(self, event: str, *, lesson_id: Optional[str] = None, session_id: Optional[str] = None, source: Optional[str] = None) -> int:
		self.events.append({"event": event, "lessonId": lesson_id, "sessionId": session_id, "source": source})
		return 0

	def sources(self) -> List[str]:
		return [event["source"] for event in self.events]


class Identity:
	"""Who the overridden `get_current_user` says is calling."""

	def __init__(self) -> None:
		self.user = User(username="teacher1", role="teacher")

	def teacher(self, username: str = "teacher1") -> None:
		self.user = User(username=username, role="teacher")

	def student(self, username: str = "student1") -> None:
		self.user = User(username=username, role="student")


@pytest.fixture
def engine():
	engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
	Base.metadata.create_all(bind=engine)
	yield engine
	engine.dispose()


@pytest.fixture
def session_factory(engine):
	return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
	session = session_factory()
	yield session
	session.close()


@pytest.fixture
def notifier():
	return RecordingNotifier()


@pytest.fixture
def identity():
	return Identity()


@pytest.fixture
def raw_client(session_factory, notifier):
	"""Client with real bearer-token auth."""
	def override_get_db():
		session = session_factory()
		try:
			yield session
		finally:
			session.close()

	app.dependency_overrides[get_db] = override_get_db
	app.dependency_overrides[get_notifier] = lambda: notifier
	yield TestClient(app)
	app.dependency_overrides.clear()


@pytest.fixture
def client(raw_client, identity):
	app.dependency_overrides[get_current_user] = lambda: identity.user
	return raw_client
