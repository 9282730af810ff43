from app.services.llm.base import (
    LLMProvider,
    LLMResponse,
    RemoteProviderError,
    RemoteThreadError,
    RemoteTimeoutError,
    RemoteUnavailableError,
    RunStatus,
    ThreadedLLMProvider,
    ThreadMessage,
)
from app.services.llm.openai_provider import OpenAIProvider
from app.services.llm.openai_threads import OpenAIThreadsProvider

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "OpenAIProvider",
    "OpenAIThreadsProvider",
    "RemoteProviderError",
    "RemoteThreadError",
    "RemoteTimeoutError",
    "RemoteUnavailableError",
    "RunStatus",
    "ThreadedLLMProvider",
    "ThreadMessage",
]
