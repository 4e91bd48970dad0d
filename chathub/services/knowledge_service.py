from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from chathub.errors import KnowledgeBaseError, NoKnowledgeBase
from chathub.logging_config import get_logger
from chathub.services.llm import LLMProvider

logger = get_logger("knowledge_service")

RAG_SYSTEM_PROMPT = (
    "You are a support assistant. Answer the user's question using ONLY the information "
    "in the knowledge base context below. If the context does not contain the answer, "
    "say that you do not know. Do not invent facts.\n\n{context}"
)


@dataclass
class KnowledgeAnswer:
    answer: str
    used_chunks: List[str] = field(default_factory=list)


def format_knowledge_context(results: List[dict]) -> str:
    """Format knowledge search results for LLM context."""
    if not results:
        return "Knowledge base context: (no relevant documents found)"

    context_parts = ["Knowledge base context:"]
    for i, r in enumerate(results, 1):
        text = r.get("text", "")
        if text:
            context_parts.append(f"{i}. {text}")

    return "\n".join(context_parts)


class KnowledgeBaseClient:
    """Per-user document retrieval over Qdrant plus a grounded completion."""

    def __init__(
        self,
        llm: LLMProvider,
        qdrant_host: str,
        collection: str,
        embedding_url: str,
        api_key: Optional[str] = None,
        top_k: int = 5,
        timeout_seconds: float = 30.0,
        max_tokens: int = 800,
    ):
        self.llm = llm
        self.qdrant_host = qdrant_host.rstrip("/")
        self.collection = collection
        self.embedding_url = embedding_url
        self.api_key = api_key
        self.top_k = top_k
        self.timeout_seconds = timeout_seconds
        self.max_tokens = max_tokens

    def _headers(self) -> dict:
        return {"api-key": self.api_key} if self.api_key else {}

    def _user_filter(self, user_id: int) -> dict:
        return {"must": [{"key": "user_id", "match": {"value": user_id}}]}

    async def _post(self, url: str, payload: dict, headers: Optional[dict] = None) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                return await client.post(url, headers=headers or {}, json=payload)
        except httpx.HTTPError as e:
            raise KnowledgeBaseError(f"Knowledge base unreachable: {e.__class__.__name__}") from e

    async def has_knowledge_base(self, user_id: int) -> bool:
        response = await self._post(
            f"{self.qdrant_host}/collections/{self.collection}/points/count",
            {"filter": self._user_filter(user_id), "exact": True},
            self._headers(),
        )
        if response.status_code == 404:
            return False
        if response.status_code != 200:
            raise KnowledgeBaseError(f"Qdrant count error: {response.status_code} - {response.text[:200]}")
        return response.json().get("result", {}).get("count", 0) > 0

    async def get_embedding(self, text: str) -> List[float]:
        response = await self._post(self.embedding_url, {"inputs": text})
        if response.status_code != 200:
            raise KnowledgeBaseError(f"Embedding error: {response.status_code} - {response.text[:200]}")

        data = response.json()
        # Handle different response formats
        if isinstance(data, list) and len(data) > 0:
            return data[0] if isinstance(data[0], list) else data
        return data.get("embedding") or data.get("embeddings")

    async def search(self, user_id: int, query: str, limit: Optional[int] = None) -> List[dict]:
        embedding = await self.get_embedding(query)
        response = await self._post(
            f"{self.qdrant_host}/collections/{self.collection}/points/search",
            {
                "vector": embedding,
                "limit": limit or self.top_k,
                "filter": self._user_filter(user_id),
                "with_payload": True,
            },
            self._headers(),
        )
        if response.status_code != 200:
            logger.error(f"Qdrant search error: {response.status_code} - {response.text[:200]}")
            raise KnowledgeBaseError(f"Qdrant search error: {response.status_code}")

        results = []
        for point in response.json().get("result", []):
            payload = point.get("payload", {})
            results.append(
                {
                    "score": point.get("score"),
                    "text": payload.get("content") or payload.get("text"),
                    "source": payload.get("source") or payload.get("metadata", {}).get("doc_name"),
                }
            )

        logger.info(f"Knowledge search: found {len(results)} results", extra={"context": {"user_id": user_id}})
        return results

    async def answer(self, user_id: int, question: str) -> KnowledgeAnswer:
        if not await self.has_knowledge_base(user_id):
            raise NoKnowledgeBase(user_id)

        results = await self.search(user_id, question)
        chunks = [r["text"] for r in results if r.get("text")]
        messages = [
            {"role": "system", "content": RAG_SYSTEM_PROMPT.format(context=format_knowledge_context(results))},
            {"role": "user", "content": question},
        ]
        response = await self.llm.generate(messages, temperature=0.2, max_tokens=self.max_tokens)
        answer = (response.content or "").strip()
        if not answer:
            raise KnowledgeBaseError("Empty answer from completion backend")
        return KnowledgeAnswer(answer=answer, used_chunks=chunks)
