from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

TERMINAL_RUN_STATUSES = {"completed", "failed", "cancelled", "expired", "incomplete", "requires_action"}


class RemoteProviderError(Exception):
    """Base class for AI provider failures."""


class RemoteThreadError(RemoteProviderError):
    """Creating, appending to or running a remote thread failed."""


class RemoteTimeoutError(RemoteProviderError):
    """A run did not finish within the polling budget."""


class RemoteUnavailableError(RemoteProviderError):
    """Both the threaded and the stateless backend failed for a turn."""


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None

    @property
    def total_tokens(self) -> int:
        return int((self.usage or {}).get("total_tokens") or 0)


@dataclass
class RunStatus:
    status: str
    usage: Optional[dict] = None
    last_error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    @property
    def total_tokens(self) -> int:
        return int((self.usage or {}).get("total_tokens") or 0)


@dataclass
class ThreadMessage:
    role: str
    content: str
    run_id: Optional[str] = None


class LLMProvider(ABC):
    """Stateless single-shot completion backend."""

    @abstractmethod
    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> LLMResponse:
        """Generate response from LLM."""
        pass


class ThreadedLLMProvider(ABC):
    """Stateful backend that keeps conversation history in a remote thread."""

    @abstractmethod
    def create_thread(self) -> str:
        pass

    @abstractmethod
    def append_message(self, thread_id: str, role: str, content: str) -> None:
        pass

    @abstractmethod
    def run(self, thread_id: str, assistant_id: str) -> str:
        """Start a run and return its id."""
        pass

    @abstractmethod
    def get_run_status(self, thread_id: str, run_id: str) -> RunStatus:
        pass

    @abstractmethod
    def list_messages(self, thread_id: str, limit: int = 20) -> List[ThreadMessage]:
        """Newest first."""
        pass
