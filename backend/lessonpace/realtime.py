"""
Room-based fan-out of invalidation events over WebSockets.

Clients join `lesson:<id>` and/or `session:<id>` rooms and refetch when an
event arrives. Delivery is best-effort: a failed send drops that socket and
`notify` never raises, so a write that already committed is never failed by
its notification. Polling covers anything missed.
"""
from __future__ import annotations
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket


logger = logging.getLogger(__name__)

LESSON_UPDATE = "lesson:update"


def room_names(lesson_id: Optional[str] = None, session_id: Optional[str] = None) -> List[str]:
	rooms: List[str] = []
	if lesson_id:
		rooms.append(f"lesson:{lesson_id}")
	if session_id:
		rooms.append(f"session:{session_id}")
	return rooms


class RealtimeHub:
	def __init__(self) -> None:
		# room -> sockets
		self.rooms: Dict[str, Set[WebSocket]] = defaultdict(set)
		self.connections: Set[WebSocket] = set()

	async def connect(self, websocket: WebSocket) -> None:
		await websocket.accept()
		self.connections.add(websocket)

	def join(self, websocket: WebSocket, lesson_id: Optional[str] = None, session_id: Optional[str] = None) -> List[str]:
		self.connections.add(websocket)
		rooms = room_names(lesson_id, session_id)
		for room in rooms:
			self.rooms[room].add(websocket)
		return rooms

	def disconnect(self, websocket: WebSocket) -> None:
		self.connections.discard(websocket)
		for room in list(self.rooms):
			members = self.rooms[room]
			members.discard(websocket)
			if not members:
				del self.rooms[room]

	def recipients(self, lesson_id: Optional[str] = None, session_id: Optional[str] = None) -> Set[WebSocket]:
		rooms = room_names(lesson_id, session_id)
		if not rooms:
			return set(self.connections)
		targets: Set[WebSocket] = set()
		for room in rooms:
			targets.update(self.rooms.get(room, ()))
		return targets

	async def notify(
		self,
		event: str,
		*,
		lesson_id: Optional[str] = None,
		session_id: Optional[str] = None,
		source: Optional[str] = None,
	) -> int:
		"""Send `event` to every socket in the affected rooms. Returns the number delivered."""
		try:
			if not lesson_id and not session_id:
				logger.info("broadcasting %s to all clients (no scope)", event)
			payload: Dict[str, Any] = {"event": event}
			if lesson_id:
				payload["lessonId"] = lesson_id
			if session_id:
				payload["sessionId"] = session_id
			if source:
				payload["source"] = source

			delivered = 0
			for websocket in list(self.recipients(lesson_id, session_id)):
				try:
					await websocket.send_json(payload)
					delivered += 1
				except Exception as exc:
					logger.warning("dropping realtime client after failed send: %s", exc)
					self.disconnect(websocket)
			return delivered
		except Exception:
			logger.exception("realtime notify failed for %s", event)
			return 0


hub = RealtimeHub()


def get_notifier() -> RealtimeHub:
	return hub


async def publish(notifier: Any, invalidation: Any) -> None:
	"""Fan out a committed write's invalidation; failures are logged, never raised."""
	if invalidation is None:
		return
	try:
		await notifier.notify(
			LESSON_UPDATE,
			lesson_id=invalidation.lesson_id,
			session_id=invalidation.session_id,
			source=invalidation.source,
		)
	except Exception:
		logger.exception("realtime notify failed for %s", invalidation.source)
