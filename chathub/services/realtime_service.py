"""
Realtime Service
Keeps the WebSocket connections of each user and pushes chat events to them.
"""
from typing import Any, Dict, Set

from fastapi import WebSocket

from chathub.logging_config import get_logger
from chathub.models import Conversation, Message
from chathub.schemas.chat import ConversationOut, MessageOut

logger = get_logger("realtime_service")

NEW_MESSAGE = "newMessage"
NEW_CONVERSATION = "newConversation"


def room_for(user_id: int) -> str:
    return f"user:{user_id}"


class ConnectionManager:
    """
    Manages WebSocket connections per user room.

    A user may hold several connections (tabs, devices); every event for the
    user goes to all of them. Connections that fail to receive are dropped.
    """

    def __init__(self):
        # Structure: {"user:<id>": Set[WebSocket]}
        self.rooms: Dict[str, Set[WebSocket]] = {}
        self.connection_rooms: Dict[WebSocket, str] = {}

    def join(self, websocket: WebSocket, user_id: int) -> None:
        """Register an accepted, authenticated connection."""
        room = room_for(user_id)
        self.rooms.setdefault(room, set()).add(websocket)
        self.connection_rooms[websocket] = room
        logger.info(
            "WebSocket joined",
            extra={"context": {"room": room, "connections": len(self.rooms[room])}},
        )

    def leave(self, websocket: WebSocket) -> None:
        room = self.connection_rooms.pop(websocket, None)
        if room is None:
            return
        members = self.rooms.get(room)
        if members is not None:
            members.discard(websocket)
            if not members:
                del self.rooms[room]
        logger.info("WebSocket left", extra={"context": {"room": room}})

    async def send(self, websocket: WebSocket, event: str, data: Any) -> None:
        await websocket.send_json({"event": event, "data": data})

    async def emit(self, user_id: int, event: str, data: Any) -> int:
        """Push one event to every connection of the user. Returns deliveries."""
        room = room_for(user_id)
        connections = list(self.rooms.get(room, ()))
        if not connections:
            return 0

        frame = {"event": event, "data": data}
        delivered = 0
        failed = []
        for connection in connections:
            try:
                await connection.send_json(frame)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping dead WebSocket in {room}: {e.__class__.__name__}")
                failed.append(connection)

        for connection in failed:
            self.leave(connection)

        logger.debug(f"Broadcast {event} to {room}: sent={delivered}, failed={len(failed)}")
        return delivered

    async def emit_new_message(self, user_id: int, message: Message) -> int:
        return await self.emit(user_id, NEW_MESSAGE, MessageOut.model_validate(message).model_dump(mode="json"))

    async def emit_new_conversation(self, user_id: int, conversation: Conversation) -> int:
        return await self.emit(
            user_id, NEW_CONVERSATION, ConversationOut.model_validate(conversation).model_dump(mode="json")
        )

    def connection_count(self, user_id: int = None) -> int:
        if user_id is not None:
            return len(self.rooms.get(room_for(user_id), ()))
        return sum(len(members) for members in self.rooms.values())
