from whatsflow.services.llm.base import LLMError, LLMProvider, LLMResponse
from whatsflow.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMError", "LLMProvider", "LLMResponse", "OpenAIProvider"]
