from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from chathub.auth import get_current_user_id
from chathub.container import Container
from chathub.database import get_db
from chathub.dependencies import get_container
from chathub.errors import ChatHubError, CompletionError, ConversationNotFound
from chathub.logging_config import get_logger
from chathub.schemas.chat import AutoReplyToggle, MessageOut, ReplyTextResponse, TestReplyRequest

logger = get_logger("ai_assistant_router")

router = APIRouter(prefix="/ai-assistant", tags=["ai-assistant"])

AI_UNAVAILABLE = "AI service unavailable"


@router.post("/test-reply", response_model=ReplyTextResponse)
async def test_reply(
    request: TestReplyRequest,
    user_id: int = Depends(get_current_user_id),
    container: Container = Depends(get_container),
):
    result = await container.assistant.generate_simple_reply(request.text)
    if not result.ok:
        raise HTTPException(status_code=503, detail=AI_UNAVAILABLE)
    return ReplyTextResponse(reply=result.value)


@router.post("/auto-reply/enable", response_model=AutoReplyToggle)
async def set_auto_reply(
    request: AutoReplyToggle,
    user_id: int = Depends(get_current_user_id),
    container: Container = Depends(get_container),
):
    # Process-wide flag, not per user.
    container.runtime_state.auto_reply_enabled = request.enabled
    logger.info("Auto-reply toggled", extra={"context": {"enabled": request.enabled, "user_id": user_id}})
    return AutoReplyToggle(enabled=container.runtime_state.auto_reply_enabled)


@router.get("/auto-reply/status", response_model=AutoReplyToggle)
async def get_auto_reply_status(
    user_id: int = Depends(get_current_user_id),
    container: Container = Depends(get_container),
):
    return AutoReplyToggle(enabled=container.runtime_state.auto_reply_enabled)


@router.post("/conversations/{conversation_id}/auto-reply", response_model=MessageOut)
async def reply_to_conversation(
    conversation_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    try:
        message = await container.orchestrator.reply_to_conversation(db, user_id, conversation_id)
    except ConversationNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except CompletionError as e:
        raise HTTPException(status_code=503, detail=AI_UNAVAILABLE) from e
    except ChatHubError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return MessageOut.model_validate(message)
