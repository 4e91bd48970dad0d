from fastapi import APIRouter, Depends, HTTPException

from chathub.auth import get_current_user_id
from chathub.container import Container
from chathub.dependencies import get_container
from chathub.errors import CompletionError, KnowledgeBaseError, NoKnowledgeBase
from chathub.logging_config import get_logger
from chathub.schemas.chat import AskQuestionRequest, AskQuestionResponse

logger = get_logger("knowledge_router")

router = APIRouter(prefix="/knowledge", tags=["knowledge"])


@router.post("/ask", response_model=AskQuestionResponse)
async def ask_question(
    request: AskQuestionRequest,
    user_id: int = Depends(get_current_user_id),
    container: Container = Depends(get_container),
):
    try:
        answer = await container.knowledge.answer(user_id, request.question)
    except NoKnowledgeBase as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except (KnowledgeBaseError, CompletionError) as e:
        logger.error(f"Knowledge answer failed: {e}", extra={"context": {"user_id": user_id}})
        raise HTTPException(status_code=503, detail="AI service unavailable") from e
    return AskQuestionResponse(answer=answer.answer, used_chunks=answer.used_chunks)
