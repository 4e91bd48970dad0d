import json
from enum import Enum
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from chathub.auth import InvalidToken, decode_access_token, extract_bearer
from chathub.container import Container
from chathub.errors import ConversationNotFound
from chathub.logging_config import get_logger
from chathub.schemas.chat import ConversationOut, MessageOut
from chathub.services.conversation_service import get_owned_conversation, list_conversations
from chathub.services.message_service import list_messages

logger = get_logger("websocket")

router = APIRouter(tags=["websocket"])

BEARER_SUBPROTOCOL = "bearer"


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    JOINED = "joined"
    DISCONNECTED = "disconnected"


def extract_token(websocket: WebSocket) -> tuple[Optional[str], Optional[str]]:
    """Return (token, subprotocol to accept with).

    Looks at the Authorization header, the ``token`` query parameter and the
    ``Sec-WebSocket-Protocol: bearer, <jwt>`` pair browsers can send.
    """
    token = extract_bearer(websocket.headers.get("authorization"))
    if token:
        return token, None

    token = websocket.query_params.get("token")
    if token:
        return token, None

    protocols = [p.strip() for p in websocket.headers.get("sec-websocket-protocol", "").split(",") if p.strip()]
    if len(protocols) >= 2 and protocols[0].lower() == BEARER_SUBPROTOCOL:
        return protocols[1], BEARER_SUBPROTOCOL
    return None, None


async def handle_request(container: Container, websocket: WebSocket, user_id: int, frame: dict) -> None:
    manager = container.broadcaster
    event = frame.get("event")
    data = frame.get("data") or {}

    db = container.session_factory()
    try:
        if event == "getConversations":
            conversations = list_conversations(db, user_id)
            await manager.send(
                websocket,
                "conversations",
                [ConversationOut.model_validate(c).model_dump(mode="json") for c in conversations],
            )
        elif event == "getMessages":
            try:
                conversation_id = int(data.get("conversationId"))
                conversation = get_owned_conversation(db, user_id, conversation_id)
            except (TypeError, ValueError, ConversationNotFound):
                await manager.send(websocket, "error", {"message": "Conversation not found"})
                return
            messages = list_messages(db, conversation.id)
            await manager.send(
                websocket,
                "messages",
                {
                    "conversationId": conversation.id,
                    "messages": [MessageOut.model_validate(m).model_dump(mode="json") for m in messages],
                },
            )
        else:
            await manager.send(websocket, "error", {"message": f"Unknown event: {event}"})
    finally:
        db.close()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    Realtime channel for the web client.

    Frames in both directions are JSON objects ``{"event": ..., "data": ...}``.
    Client requests: ``getConversations``, ``getMessages {conversationId}``.
    Server pushes: ``newMessage``, ``newConversation``, and ``error {message}``
    for failed requests.
    """
    container: Container = websocket.app.state.container
    manager = container.broadcaster
    state = ConnectionState.CONNECTING
    logger.debug("WebSocket connection opened", extra={"context": {"state": state.value}})

    token, subprotocol = extract_token(websocket)
    state = ConnectionState.AUTHENTICATING
    try:
        if not token:
            raise InvalidToken("Missing token")
        user_id = decode_access_token(token)
    except InvalidToken as e:
        logger.warning(f"WebSocket rejected: {e}")
        state = ConnectionState.DISCONNECTED
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept(subprotocol=subprotocol)
    manager.join(websocket, user_id)
    state = ConnectionState.JOINED

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
                if not isinstance(frame, dict):
                    raise ValueError("frame must be an object")
            except ValueError:
                await manager.send(websocket, "error", {"message": "Invalid frame"})
                continue

            try:
                await handle_request(container, websocket, user_id, frame)
            except WebSocketDisconnect:
                raise
            except Exception as e:
                logger.error(f"WebSocket request failed: {e}", extra={"context": {"user_id": user_id}}, exc_info=True)
                await manager.send(websocket, "error", {"message": "Request failed"})
    except WebSocketDisconnect:
        pass
    finally:
        manager.leave(websocket)
        state = ConnectionState.DISCONNECTED
        logger.debug(f"WebSocket closed for user {user_id}", extra={"context": {"state": state.value}})
