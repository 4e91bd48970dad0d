from chathub.services.llm.base import LLMProvider, LLMResponse
from chathub.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMProvider", "LLMResponse", "OpenAIProvider"]
