from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.orm import Session

from chathub.errors import CompletionError
from chathub.logging_config import get_logger
from chathub.services.knowledge_service import KnowledgeBaseClient
from chathub.services.llm import LLMProvider
from chathub.services.message_service import build_history, get_recent_messages
from chathub.services.result import AI_ERROR, RAG_ERROR, Result

logger = get_logger("ai_service")

SOURCE_KNOWLEDGE = "knowledge"
SOURCE_HISTORY = "history"


@dataclass
class GeneratedReply:
    text: str
    source: str  # knowledge, history


class AiAssistant:
    """Generates replies from the user's knowledge base or the conversation history."""

    def __init__(
        self,
        llm: LLMProvider,
        knowledge: Optional[KnowledgeBaseClient] = None,
        system_prompt: str = "You are an AI support assistant. Answer concisely and helpfully.",
        history_limit: int = 10,
        max_tokens: int = 800,
    ):
        self.llm = llm
        self.knowledge = knowledge
        self.system_prompt = system_prompt
        self.history_limit = history_limit
        self.max_tokens = max_tokens

    async def complete(self, system_prompt: str, turns: List[dict]) -> str:
        messages = [{"role": "system", "content": system_prompt}, *turns]
        response = await self.llm.generate(messages, max_tokens=self.max_tokens)
        content = (response.content or "").strip()
        if not content:
            raise CompletionError("Empty completion")
        return content

    async def generate_simple_reply(self, text: str) -> Result[str]:
        """One-shot reply without history, used by the test endpoint."""
        try:
            return Result.success(await self.complete(self.system_prompt, [{"role": "user", "content": text}]))
        except Exception as e:
            logger.error(f"Simple reply failed: {e}")
            return Result.from_exception(e, AI_ERROR)

    async def answer_from_knowledge(self, user_id: int, question: str) -> Result[Optional[str]]:
        """Knowledge base answer, or success(None) when the user has no documents."""
        if self.knowledge is None:
            return Result.success(None)
        try:
            if not await self.knowledge.has_knowledge_base(user_id):
                return Result.success(None)
            answer = await self.knowledge.answer(user_id, question)
            return Result.success(answer.answer)
        except Exception as e:
            return Result.from_exception(e, RAG_ERROR)

    async def generate_reply(
        self,
        db: Session,
        user_id: int,
        conversation_id: int,
        latest_text: str,
    ) -> Result[GeneratedReply]:
        """
        Knowledge base first (when the user has one), otherwise the last
        messages of the conversation plus the system prompt.
        """
        knowledge = await self.answer_from_knowledge(user_id, latest_text)
        if knowledge.ok and knowledge.value:
            return Result.success(GeneratedReply(text=knowledge.value, source=SOURCE_KNOWLEDGE))
        if not knowledge.ok:
            logger.warning(
                f"Knowledge base reply failed, falling back to history: {knowledge.error}",
                extra={"context": {"user_id": user_id, "error_code": knowledge.error_code}},
            )

        try:
            history = get_recent_messages(db, conversation_id, limit=self.history_limit)
            turns = build_history(history, latest_text)
            text = await self.complete(self.system_prompt, turns)
            return Result.success(GeneratedReply(text=text, source=SOURCE_HISTORY))
        except Exception as e:
            logger.error(
                f"Reply generation failed: {e}",
                extra={"context": {"conversation_id": conversation_id}},
            )
            return Result.from_exception(e, AI_ERROR)
