from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from chathub.models import Message
from chathub.models.message import SENDER_CLIENT


def append_message(
    db: Session,
    conversation_id: int,
    sender_type: str,
    text: Optional[str],
    platform: str,
    timestamp: datetime,
    external_message_id: Optional[str] = None,
    delivery_status: Optional[str] = None,
) -> Message:
    """Add a message row and flush so it gets an id. Caller commits."""
    message = Message(
        conversation_id=conversation_id,
        sender_type=sender_type,
        text=text,
        platform=platform,
        timestamp=timestamp,
        external_message_id=external_message_id,
        delivery_status=delivery_status,
    )
    db.add(message)
    db.flush()
    return message


def list_messages(db: Session, conversation_id: int) -> list[Message]:
    """All messages of a conversation, oldest first."""
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.timestamp.asc(), Message.id.asc())
        .all()
    )


def get_recent_messages(db: Session, conversation_id: int, limit: int = 10) -> list[Message]:
    """Last `limit` messages, returned oldest first."""
    rows = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.timestamp.desc(), Message.id.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(rows))


def get_latest_message(db: Session, conversation_id: int) -> Optional[Message]:
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.timestamp.desc(), Message.id.desc())
        .first()
    )


def build_history(messages: list[Message], latest_text: Optional[str] = None) -> list[dict]:
    """Map stored messages to chat-completion turns.

    client -> user, everything else -> assistant. The latest inbound text is
    appended unless it is already the most recent turn.
    """
    turns = [
        {"role": "user" if m.sender_type == SENDER_CLIENT else "assistant", "content": m.text or ""}
        for m in messages
        if m.text
    ]
    if latest_text:
        latest_turn = {"role": "user", "content": latest_text}
        if not turns or turns[-1] != latest_turn:
            turns.append(latest_turn)
    return turns
