from wacanda.services.llm.base import LLMError, LLMProvider, LLMResponse
from wacanda.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMError", "LLMProvider", "LLMResponse", "OpenAIProvider"]
