"""
Shared pytest fixtures for evna tests.

Provides in-memory collaborators so tests never touch the network or
spawn floatctl.
"""

import asyncio
from pathlib import Path
from typing import Optional

import pytest

from evna.types import Conversation, Message, SearchResult


class FakeStore:
    """In-memory DataStore with the same ordering and fuzzy project rules."""

    def __init__(self):
        self.messages: list[Message] = []
        self.queries: list[dict] = []
        self.fail_writes: Optional[Exception] = None
        self.fail_queries: Optional[Exception] = None

    async def write(self, message: Message) -> None:
        if self.fail_writes is not None:
            raise self.fail_writes
        if any(m.id == message.id for m in self.messages):
            raise ValueError(f"duplicate message id {message.id}")
        self.messages.append(message)

    async def query_recent(self, limit, project=None, client_type=None, since=None):
        self.queries.append({
            "limit": limit, "project": project,
            "client_type": client_type, "since": since,
        })
        if self.fail_queries is not None:
            raise self.fail_queries
        rows = list(self.messages)
        if project:
            wanted = project.lower()
            rows = [m for m in rows if m.project and (
                wanted in m.project.lower() or m.project.lower() in wanted)]
        if client_type:
            rows = [m for m in rows if m.client_type == client_type]
        if since:
            rows = [m for m in rows if m.timestamp >= since]
        rows.sort(key=lambda m: m.timestamp, reverse=True)
        return rows[:limit]


class FakeHistorical:
    """HistoricalSearch returning canned results and recording calls."""

    def __init__(self, results: Optional[list[SearchResult]] = None):
        self.results = list(results or [])
        self.calls: list[dict] = []
        self.error: Optional[Exception] = None
        self.started = asyncio.Event()

    async def search(self, query, limit, project=None, since=None, threshold=0.5):
        self.started.set()
        self.calls.append({
            "query": query, "limit": limit, "project": project,
            "since": since, "threshold": threshold,
        })
        if self.error is not None:
            raise self.error
        return self.results[:limit]


class FakeTrigger:
    """SyncTrigger recording each call."""

    def __init__(self, output: str = "sync started"):
        self.output = output
        self.calls: list[tuple[str, int]] = []
        self.error: Optional[Exception] = None

    async def trigger(self, daemon_type: str, file_count: int) -> str:
        self.calls.append((daemon_type, file_count))
        if self.error is not None:
            raise self.error
        return self.output


def _make_message(
    id="msg-1",
    conversation_id="conv-1",
    role="user",
    content="hello",
    timestamp="2025-10-31T09:00:00",
    project=None,
    meeting=None,
    markers=(),
    client_type="desktop",
) -> Message:
    return Message(
        id=id,
        conversation_id=conversation_id,
        role=role,
        content=content,
        timestamp=timestamp,
        project=project,
        meeting=meeting,
        markers=tuple(markers),
        client_type=client_type,
    )


def _make_result(
    id="file-1",
    content="historical note",
    timestamp="2025-10-20T12:00:00",
    similarity=0.8,
    title: Optional[str] = "bridge.md",
    project=None,
) -> SearchResult:
    return SearchResult(
        message=Message(
            id=id, conversation_id=id, role="assistant",
            content=content, timestamp=timestamp, project=project,
        ),
        conversation=Conversation(id=id, conv_id=id, created_at=timestamp, title=title),
        similarity=similarity,
    )


@pytest.fixture
def make_message():
    """Factory for Message objects with sensible defaults."""
    return _make_message


@pytest.fixture
def make_result():
    """Factory for historical SearchResult objects."""
    return _make_result


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def fake_historical():
    return FakeHistorical()


@pytest.fixture
def fake_trigger():
    return FakeTrigger()


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Isolate tests from real credentials and the user's store."""
    for var in ("CLOUDFLARE_ACCOUNT_ID", "AUTORAG_API_TOKEN", "FLOATCTL_BIN", "EVNA_VERBOSE"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("EVNA_STORE_PATH", str(tmp_path / "store"))
    return tmp_path / "store"


@pytest.fixture
def ev(clean_env, fake_historical, fake_trigger):
    """An Evna over a temporary SQLite store with fake remote collaborators."""
    from evna.api import Evna
    instance = Evna(clean_env, historical=fake_historical, trigger=fake_trigger)
    yield instance
    asyncio.run(instance.aclose())
