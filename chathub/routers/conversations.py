from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from chathub.auth import get_current_user_id
from chathub.database import get_db
from chathub.errors import ConversationNotFound
from chathub.schemas.chat import ConversationOut, MessageOut
from chathub.services.conversation_service import get_owned_conversation, list_conversations
from chathub.services.message_service import list_messages

router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.get("", response_model=list[ConversationOut])
async def get_conversations(
    platform: Optional[str] = Query(default=None),
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return [ConversationOut.model_validate(c) for c in list_conversations(db, user_id, platform=platform)]


@router.get("/{conversation_id}/messages", response_model=list[MessageOut])
async def get_messages(
    conversation_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        conversation = get_owned_conversation(db, user_id, conversation_id)
    except ConversationNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return [MessageOut.model_validate(m) for m in list_messages(db, conversation.id)]
