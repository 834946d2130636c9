from __future__ import annotations
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..realtime import hub


logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


# Client connects: ws://<host>/ws?lessonId=...&sessionId=...
# and may send {"type": "join", "lessonId": ..., "sessionId": ...} later
@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket, lessonId: Optional[str] = None, sessionId: Optional[str] = None):
	await hub.connect(websocket)
	rooms = hub.join(websocket, lesson_id=lessonId, session_id=sessionId)
	await websocket.send_json({"type": "joined", "rooms": rooms})
	try:
		while True:
			try:
				message = await websocket.receive_json()
			except ValueError:
				logger.debug("ignoring non-JSON websocket frame")
				continue
			if isinstance(message, dict) and message.get("type") == "join":
				rooms = hub.join(websocket, lesson_id=message.get("lessonId"), session_id=message.get("sessionId"))
				await websocket.send_json({"type": "joined", "rooms": rooms})
	except WebSocketDisconnect:
		pass
	finally:
		hub.disconnect(websocket)
