import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("MAINTENANCE_WORKER_ENABLED", "false")

from collections import defaultdict
from decimal import Decimal
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import app.models  # noqa: F401
from app.database import Base
from app.models import Assistant, Product, TenantSettings
from app.services.llm.base import (
    LLMProvider,
    LLMResponse,
    RemoteProviderError,
    RemoteThreadError,
    RunStatus,
    ThreadedLLMProvider,
    ThreadMessage,
)

class FakeCompletions(LLMProvider):
    """Stateless backend double that records every request."""

    def __init__(self, reply: str = "Stateless reply", error: str | None = None):
        self.reply = reply
        self.error = error
        self.calls: list[dict] = []

    def generate(self, messages, model=None, temperature=0.7, max_tokens=1000):
        self.calls.append(
            {"messages": [dict(m) for m in messages], "model": model, "temperature": temperature, "max_tokens": max_tokens}
        )
        if self.error:
            raise RemoteProviderError(self.error)
        return LLMResponse(content=self.reply, model=model or "test-model", usage={"total_tokens": 7})


class FakeThreads(ThreadedLLMProvider):
    """Threaded backend double.

    statuses is the sequence returned by successive polls of one run; the last
    entry repeats. fail_on names operations that raise RemoteThreadError.
    Hooks run before the named operation completes, to interleave requests.
    With add_reply off, completed runs leave no assistant message behind.
    """

    def __init__(self, reply: str = "Thread reply", statuses=None, fail_on=None, add_reply=True):
        self.reply = reply
        self.add_reply = add_reply
        self.statuses = list(statuses or ["completed"])
        self.fail_on = set(fail_on or [])
        self.threads: dict[str, list[tuple[str, str]]] = {}
        self.message_runs: dict[str, list] = defaultdict(list)
        self.create_calls = 0
        self.runs: dict[str, str] = {}
        self.polls: dict[str, int] = defaultdict(int)
        self.hooks: dict[str, list] = defaultdict(list)

    def _fire(self, name):
        hooks = self.hooks.pop(name, [])
        for hook in hooks:
            hook()

    def create_thread(self):
        if "create" in self.fail_on:
            raise RemoteThreadError("create failed")
        self.create_calls += 1
        thread_id = f"th_{self.create_calls}"
        self.threads[thread_id] = []
        self._fire("create")
        return thread_id

    def append_message(self, thread_id, role, content):
        if "append" in self.fail_on:
            raise RemoteThreadError("append failed")
        self.threads[thread_id].append((role, content))
        self.message_runs[thread_id].append(None)

    def run(self, thread_id, assistant_id):
        if "run" in self.fail_on:
            raise RemoteThreadError("run failed")
        run_id = f"run_{len(self.runs) + 1}"
        self.runs[run_id] = thread_id
        return run_id

    def get_run_status(self, thread_id, run_id):
        index = self.polls[run_id]
        self.polls[run_id] += 1
        self._fire("poll")
        status = self.statuses[min(index, len(self.statuses) - 1)]
        if status == "completed":
            if self.add_reply:
                self.threads[thread_id].append(("assistant", self.reply))
                self.message_runs[thread_id].append(run_id)
            return RunStatus(status=status, usage={"total_tokens": 42})
        return RunStatus(status=status)

    def list_messages(self, thread_id, limit=20):
        entries = zip(self.threads[thread_id], self.message_runs[thread_id])
        return [
            ThreadMessage(role=role, content=content, run_id=run_id) for (role, content), run_id in reversed(list(entries))
        ]


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'storebot.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def catalog(db):
    """Two products for tenant T1 and one for T2."""
    db.add_all(
        [
            Product(tenant_id="T1", sku="SKU-001", name="Green Tea", price=Decimal("4.50"), stock_quantity=10),
            Product(tenant_id="T1", sku="SKU-002", name="Teapot", price=Decimal("25.00"), stock_quantity=0),
            Product(tenant_id="T2", sku="SKU-001", name="Other Tenant Tea", price=Decimal("1.00"), stock_quantity=99),
        ]
    )
    db.add(TenantSettings(tenant_id="T1", currency="USD"))
    db.commit()
    return db


@pytest.fixture
def threaded_assistant(db):
    assistant = Assistant(
        tenant_id="T1",
        name="Shop bot",
        system_instructions="You are a tea shop assistant.",
        knowledge_base="SKU-001 Green Tea 4.50",
        remote_assistant_id="asst_123",
        threading_enabled=True,
        reuse_window_minutes=24 * 60,
    )
    db.add(assistant)
    db.commit()
    return assistant


@pytest.fixture
def make_completions():
    return FakeCompletions


@pytest.fixture
def make_threads():
    return FakeThreads
