"""Resolve an AI reply for one inbound message, keeping thread continuity.

Flow for a single call:

    record (new or reused) -> thread ensured -> history replayed (new only)
    -> message sent -> run polled -> reply extracted

Any failure on the threaded path yields a NEEDS_FALLBACK result, and the turn
is re-sent to the stateless completion backend. If that fails too the caller
gets UNAVAILABLE_MESSAGE. Provider errors never escape resolve().
"""

import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.database import utcnow
from app.logging_config import get_logger, tenant_logger
from app.models import Assistant, ConversationRecord
from app.services.alert_service import alert_error
from app.services.conversation_service import (
    append_assistant_message,
    append_user_message,
    claim_thread_creation,
    confirm_remote_thread,
    discard_remote_thread,
    get_or_create_conversation,
    load_remote_thread_id,
    messages_for_api,
    release_thread_claim,
)
from app.services.formatting import markdown_to_whatsapp
from app.services.llm.base import (
    LLMProvider,
    RemoteProviderError,
    RemoteThreadError,
    RemoteTimeoutError,
    RemoteUnavailableError,
    ThreadedLLMProvider,
)
from app.services.result import Result
from app.services.session_store import SessionStoreError

logger = get_logger("thread_resolver")

UNAVAILABLE_MESSAGE = "Assistant temporarily unavailable. Please try again in a few minutes."

BACKEND_THREAD = "thread"
BACKEND_STATELESS = "stateless"
BACKEND_FALLBACK = "fallback"
BACKEND_UNAVAILABLE = "unavailable"

REPLAY_ROLES = {"user", "assistant"}


@dataclass
class AssistantConfig:
    system_prompt: str
    model: str
    temperature: float
    max_tokens: int
    reuse_window_minutes: int
    remote_assistant_id: Optional[str] = None
    threading_enabled: bool = True

    @property
    def supports_threads(self) -> bool:
        return self.threading_enabled and bool(self.remote_assistant_id)

    @classmethod
    def from_assistant(cls, assistant: Assistant) -> "AssistantConfig":
        threaded = bool(assistant.threading_enabled and assistant.remote_assistant_id)
        default_window = (
            settings.conversation_reuse_window_minutes if threaded else settings.chat_reuse_window_minutes
        )
        return cls(
            system_prompt=assistant.full_system_context(),
            model=assistant.model or settings.default_model,
            temperature=assistant.temperature if assistant.temperature is not None else settings.default_temperature,
            max_tokens=assistant.max_tokens or settings.default_max_tokens,
            reuse_window_minutes=assistant.reuse_window_minutes or default_window,
            remote_assistant_id=assistant.remote_assistant_id,
            threading_enabled=bool(assistant.threading_enabled),
        )


@dataclass
class ResolvedReply:
    text: str
    backend: str
    conversation_id: Optional[str] = None
    remote_thread_id: Optional[str] = None
    conversation_created: bool = False
    tokens_used: int = 0
    error: Optional[str] = None


@dataclass
class Completion:
    text: str
    tokens_used: int
    backend: str
    remote_thread_id: Optional[str] = None


def _history_messages(history: Optional[list[dict]]) -> list[dict]:
    return [
        {"role": entry["role"], "content": entry["content"]}
        for entry in history or []
        if entry.get("role") in REPLAY_ROLES and entry.get("content")
    ]


class ThreadContinuityResolver:
    def __init__(
        self,
        db: Session,
        completions: LLMProvider,
        threads: Optional[ThreadedLLMProvider] = None,
        *,
        poll_attempts: Optional[int] = None,
        poll_interval_seconds: Optional[float] = None,
        claim_wait_attempts: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.completions = completions
        self.threads = threads
        self.poll_attempts = poll_attempts or settings.run_poll_attempts
        self.poll_interval_seconds = (
            settings.run_poll_interval_seconds if poll_interval_seconds is None else poll_interval_seconds
        )
        self.claim_wait_attempts = claim_wait_attempts or settings.thread_claim_wait_attempts
        self.sleep = sleep
        self.clock = clock

    def resolve(
        self,
        tenant_id: str,
        contact_id: str,
        contact_phone: Optional[str],
        text: str,
        assistant: AssistantConfig,
        history: Optional[list[dict]] = None,
    ) -> ResolvedReply:
        log = tenant_logger(logger, tenant_id, contact_id=contact_id)

        try:
            record, created = get_or_create_conversation(
                self.db,
                tenant_id,
                contact_id,
                contact_phone,
                assistant.system_prompt,
                assistant.reuse_window_minutes,
                now=self.clock(),
            )
        except SessionStoreError as e:
            log.error("Conversation store unavailable, answering without a record", context={"error": str(e)})
            messages = self._stateless_messages(assistant, history, text, fresh=True)
            outcome = self._complete(messages, assistant, BACKEND_STATELESS)
            return self._finish(None, False, outcome, tenant_id, log)

        conversation_id = record.id
        fresh = (record.message_count or 0) == 0
        prior_turns = messages_for_api(record, include_system=False)

        try:
            record = append_user_message(self.db, record, text, now=self.clock())
        except SessionStoreError as e:
            log.warning("Could not store user message", context={"conversation_id": conversation_id, "error": str(e)})

        if assistant.supports_threads and self.threads is not None:
            outcome = self._run_threaded(record, text, assistant, history, fresh, prior_turns, log)
            if outcome.needs_fallback:
                log.warning(
                    "Threaded backend failed, falling back to stateless",
                    context={"conversation_id": conversation_id, "error": outcome.error, "code": outcome.error_code},
                )
                messages = self._stateless_messages(assistant, history, text, fresh)
                outcome = self._complete(messages, assistant, BACKEND_FALLBACK)
        else:
            messages = self._stateless_messages(assistant, history, text, fresh, prior_turns)
            outcome = self._complete(messages, assistant, BACKEND_STATELESS)

        return self._finish(record, created, outcome, tenant_id, log)

    # === THREADED PATH ===

    def _run_threaded(
        self,
        record: ConversationRecord,
        text: str,
        assistant: AssistantConfig,
        history: Optional[list[dict]],
        fresh: bool,
        prior_turns: list[dict],
        log,
    ) -> Result[Completion]:
        ensured = self._ensure_thread(record, log)
        if not ensured.ok:
            return Result.fallback(ensured.error, ensured.error_code)
        thread_id, created_thread = ensured.value

        try:
            if created_thread:
                # Seed a new thread with the caller history, or the stored turns once the record has some.
                for entry in _history_messages(history if fresh else prior_turns):
                    self.threads.append_message(thread_id, entry["role"], entry["content"])
            self.threads.append_message(thread_id, "user", text)
            run_id = self.threads.run(thread_id, assistant.remote_assistant_id)
            status = self._poll_run(thread_id, run_id)
            reply = self._latest_assistant_reply(thread_id, run_id)
        except RemoteTimeoutError as e:
            self._forget_new_thread(record, thread_id, created_thread, log)
            return Result.fallback(str(e), "remote_timeout")
        except RemoteProviderError as e:
            self._forget_new_thread(record, thread_id, created_thread, log)
            return Result.fallback(str(e), "remote_thread_error")

        return Result.success(Completion(reply, status.total_tokens, BACKEND_THREAD, thread_id))

    def _ensure_thread(self, record: ConversationRecord, log) -> Result[tuple[str, bool]]:
        """Return (thread_id, created_by_this_call), creating at most one thread per record."""
        if record.remote_thread_id:
            return Result.success((record.remote_thread_id, False))

        token = uuid.uuid4().hex
        try:
            claimed = claim_thread_creation(self.db, record, token, now=self.clock())
        except SessionStoreError as e:
            return Result.fallback(str(e), "store_error")
        if not claimed:
            return self._await_thread(record, log)

        try:
            thread_id = self.threads.create_thread()
        except RemoteProviderError as e:
            self._release_claim(record, token, log)
            return Result.fallback(str(e), "remote_thread_error")

        try:
            confirmed = confirm_remote_thread(self.db, record, token, thread_id)
        except SessionStoreError as e:
            # The claim stays in place until it goes stale, so no second thread
            # is created for this record in the meantime.
            log.error(
                "Remote thread created but not stored",
                context={"conversation_id": record.id, "remote_thread_id": thread_id, "error": str(e)},
            )
            return Result.fallback(str(e), "store_error")

        if not confirmed:
            log.warning(
                "Thread claim lost, discarding created thread",
                context={"conversation_id": record.id, "orphan_thread_id": thread_id},
            )
            return self._await_thread(record, log)

        log.info("Remote thread created", context={"conversation_id": record.id, "remote_thread_id": thread_id})
        return Result.success((thread_id, True))

    def _await_thread(self, record: ConversationRecord, log) -> Result[tuple[str, bool]]:
        """Another request holds the creation claim; wait for its thread id."""
        for _ in range(self.claim_wait_attempts):
            try:
                thread_id = load_remote_thread_id(self.db, record)
            except SessionStoreError as e:
                return Result.fallback(str(e), "store_error")
            if thread_id:
                return Result.success((thread_id, False))
            self.sleep(self.poll_interval_seconds)

        log.warning("Timed out waiting for thread creation", context={"conversation_id": record.id})
        return Result.fallback("Timed out waiting for another request to create the thread", "claim_wait_timeout")

    def _release_claim(self, record: ConversationRecord, token: str, log) -> None:
        try:
            release_thread_claim(self.db, record, token)
        except SessionStoreError as e:
            log.warning("Could not release thread claim", context={"conversation_id": record.id, "error": str(e)})

    def _forget_new_thread(self, record: ConversationRecord, thread_id: str, created_thread: bool, log) -> None:
        """A thread created during a failed turn would miss that turn; drop it."""
        if not created_thread:
            return
        try:
            discard_remote_thread(self.db, record, thread_id)
        except SessionStoreError as e:
            log.warning("Could not discard remote thread", context={"conversation_id": record.id, "error": str(e)})

    def _poll_run(self, thread_id: str, run_id: str):
        for _ in range(self.poll_attempts):
            status = self.threads.get_run_status(thread_id, run_id)
            if status.succeeded:
                return status
            if status.is_terminal:
                raise RemoteThreadError(f"Run {run_id} ended with status {status.status}: {status.last_error}")
            self.sleep(self.poll_interval_seconds)
        raise RemoteTimeoutError(f"Run {run_id} did not complete after {self.poll_attempts} polls")

    def _latest_assistant_reply(self, thread_id: str, run_id: str) -> str:
        for message in self.threads.list_messages(thread_id):
            if message.role == "assistant" and message.run_id == run_id and message.content:
                return message.content
        raise RemoteThreadError(f"Run {run_id} added no assistant reply to thread {thread_id}")

    # === STATELESS PATH ===

    def _stateless_messages(
        self,
        assistant: AssistantConfig,
        history: Optional[list[dict]],
        text: str,
        fresh: bool,
        prior_turns: Optional[list[dict]] = None,
    ) -> list[dict]:
        messages = [{"role": "system", "content": assistant.system_prompt}]
        if fresh:
            messages.extend(_history_messages(history))
        messages.extend(prior_turns or [])
        messages.append({"role": "user", "content": text})
        return messages

    def _complete(self, messages: list[dict], assistant: AssistantConfig, backend: str) -> Result[Completion]:
        try:
            response = self.completions.generate(
                messages,
                model=assistant.model,
                temperature=assistant.temperature,
                max_tokens=assistant.max_tokens,
            )
        except RemoteProviderError as e:
            return Result.failure(str(e), "stateless_error")
        if not response.content:
            return Result.failure("Stateless backend returned an empty reply", "empty_reply")
        return Result.success(Completion(response.content, response.total_tokens, backend))

    # === RESULT ===

    def _finish(
        self,
        record: Optional[ConversationRecord],
        created: bool,
        outcome: Result[Completion],
        tenant_id: str,
        log,
    ) -> ResolvedReply:
        conversation_id = record.id if record is not None else None

        if not outcome.ok:
            error = RemoteUnavailableError(outcome.error or "AI backends unavailable")
            log.error(
                "All AI backends failed",
                context={"conversation_id": conversation_id, "error": str(error), "code": outcome.error_code},
            )
            alert_error(
                "AI backends unavailable",
                {"tenant_id": tenant_id, "conversation_id": conversation_id, "error": str(error)},
            )
            return ResolvedReply(
                text=UNAVAILABLE_MESSAGE,
                backend=BACKEND_UNAVAILABLE,
                conversation_id=conversation_id,
                remote_thread_id=self._stored_thread_id(record),
                conversation_created=created,
                error=str(error),
            )

        completion = outcome.value
        if record is not None:
            try:
                record = append_assistant_message(
                    self.db, record, completion.text, completion.tokens_used, now=self.clock()
                )
            except SessionStoreError as e:
                log.warning(
                    "Could not store assistant reply",
                    context={"conversation_id": conversation_id, "error": str(e)},
                )

        log.info(
            "AI reply resolved",
            context={
                "conversation_id": conversation_id,
                "backend": completion.backend,
                "tokens_used": completion.tokens_used,
            },
        )
        return ResolvedReply(
            text=markdown_to_whatsapp(completion.text),
            backend=completion.backend,
            conversation_id=conversation_id,
            remote_thread_id=completion.remote_thread_id or self._stored_thread_id(record),
            conversation_created=created,
            tokens_used=completion.tokens_used,
        )

    def _stored_thread_id(self, record: Optional[ConversationRecord]) -> Optional[str]:
        if record is None:
            return None
        try:
            return load_remote_thread_id(self.db, record)
        except SessionStoreError:
            return None
