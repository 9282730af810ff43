from typing import List, Optional

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.services.llm.base import RemoteThreadError, RunStatus, ThreadedLLMProvider, ThreadMessage

logger = get_logger("llm.openai_threads")


class OpenAIThreadsProvider(ThreadedLLMProvider):
    """OpenAI Assistants v2: threads, messages and runs."""

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")
        self.timeout_seconds = timeout_seconds or settings.llm_timeout_seconds
        self.transport = transport

    def _request(self, method: str, path: str, json: Optional[dict] = None, params: Optional[dict] = None) -> dict:
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = client.request(
                    method,
                    f"{self.base_url}{path}",
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                        "OpenAI-Beta": "assistants=v2",
                    },
                    json=json,
                    params=params,
                )
        except httpx.HTTPError as e:
            logger.error(f"OpenAI threads request failed: {method} {path}: {e}")
            raise RemoteThreadError(f"OpenAI threads request failed: {e}") from e

        if response.status_code != 200:
            logger.error(f"OpenAI threads error: {method} {path}: {response.status_code} {response.text}")
            raise RemoteThreadError(f"OpenAI threads API error: {response.status_code} - {response.text}")
        return response.json()

    def create_thread(self) -> str:
        data = self._request("POST", "/threads", json={})
        thread_id = data.get("id")
        if not thread_id:
            raise RemoteThreadError("OpenAI returned a thread without id")
        return thread_id

    def append_message(self, thread_id: str, role: str, content: str) -> None:
        self._request("POST", f"/threads/{thread_id}/messages", json={"role": role, "content": content})

    def run(self, thread_id: str, assistant_id: str) -> str:
        data = self._request("POST", f"/threads/{thread_id}/runs", json={"assistant_id": assistant_id})
        run_id = data.get("id")
        if not run_id:
            raise RemoteThreadError("OpenAI returned a run without id")
        return run_id

    def get_run_status(self, thread_id: str, run_id: str) -> RunStatus:
        data = self._request("GET", f"/threads/{thread_id}/runs/{run_id}")
        last_error = data.get("last_error") or {}
        return RunStatus(
            status=data.get("status", "unknown"),
            usage=data.get("usage"),
            last_error=last_error.get("message") if isinstance(last_error, dict) else None,
        )

    def list_messages(self, thread_id: str, limit: int = 20) -> List[ThreadMessage]:
        data = self._request("GET", f"/threads/{thread_id}/messages", params={"order": "desc", "limit": limit})
        messages = []
        for item in data.get("data", []):
            parts = [
                part["text"]["value"]
                for part in item.get("content", [])
                if part.get("type") == "text" and part.get("text", {}).get("value")
            ]
            messages.append(
                ThreadMessage(role=item.get("role", ""), content="\n".join(parts), run_id=item.get("run_id"))
            )
        return messages
