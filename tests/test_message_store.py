"""
Tests for the SQLite active context store.
"""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from evna.config import ProjectConfig
from evna.message_store import MessageStore
from evna.projects import ProjectRegistry
from evna.protocol import DataStore
from evna.types import Annotation, format_utc


@pytest.fixture
def store(tmp_path):
    registry = ProjectRegistry([
        ProjectConfig("floatctl-rs", ["floatctl", "float/floatctl"]),
    ])
    s = MessageStore(tmp_path / "active_context.db", registry)
    yield s
    s.close()


class TestWriteAndQuery:

    def test_satisfies_protocol(self, store):
        assert isinstance(store, DataStore)

    @pytest.mark.asyncio
    async def test_newest_first(self, store, make_message):
        await store.write(make_message(id="a", timestamp="2025-10-31T09:00:00"))
        await store.write(make_message(id="b", timestamp="2025-10-31T11:00:00"))
        await store.write(make_message(id="c", timestamp="2025-10-31T10:00:00"))

        rows = await store.query_recent(10)
        assert [m.id for m in rows] == ["b", "c", "a"]

    @pytest.mark.asyncio
    async def test_limit(self, store, make_message):
        for i in range(5):
            await store.write(make_message(id=f"m{i}", timestamp=f"2025-10-31T0{i}:00:00"))
        rows = await store.query_recent(2)
        assert [m.id for m in rows] == ["m4", "m3"]

    @pytest.mark.asyncio
    async def test_round_trip_fields(self, store, make_message):
        original = make_message(
            id="x", project="evna", meeting="standup", client_type="claude_code",
            markers=(Annotation("ctx", "review"), Annotation("project", "evna")),
        )
        await store.write(original)
        [row] = await store.query_recent(1)
        assert row == original

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, store, make_message):
        await store.write(make_message(id="dup"))
        with pytest.raises(sqlite3.IntegrityError):
            await store.write(make_message(id="dup", content="other"))
        assert store.count() == 1

    @pytest.mark.asyncio
    async def test_conversation_registered_once(self, store, make_message):
        await store.write(make_message(id="a", conversation_id="conv-9",
                                       timestamp="2025-10-31T09:00:00"))
        await store.write(make_message(id="b", conversation_id="conv-9",
                                       timestamp="2025-10-31T10:00:00"))
        conv = store.get_conversation("conv-9")
        assert conv.conv_id == "conv-9"
        assert conv.created_at == "2025-10-31T09:00:00"
        assert store.get_conversation("missing") is None


class TestFilters:

    @pytest.mark.asyncio
    async def test_project_alias_expansion(self, store, make_message):
        await store.write(make_message(id="a", project="float/floatctl"))
        await store.write(make_message(id="b", project="floatctl-rs",
                                       timestamp="2025-10-31T10:00:00"))
        await store.write(make_message(id="c", project="evna",
                                       timestamp="2025-10-31T11:00:00"))

        rows = await store.query_recent(10, project="floatctl")
        assert {m.id for m in rows} == {"a", "b"}

    @pytest.mark.asyncio
    async def test_project_match_is_case_insensitive_substring(self, store, make_message):
        await store.write(make_message(id="a", project="float/evna"))
        rows = await store.query_recent(10, project="EVNA")
        assert [m.id for m in rows] == ["a"]

    @pytest.mark.asyncio
    async def test_comma_separated_projects(self, store, make_message):
        await store.write(make_message(id="a", project="evna"))
        await store.write(make_message(id="b", project="floatctl-rs",
                                       timestamp="2025-10-31T10:00:00"))
        await store.write(make_message(id="c", project="rangle",
                                       timestamp="2025-10-31T11:00:00"))
        rows = await store.query_recent(10, project="evna, floatctl")
        assert {m.id for m in rows} == {"a", "b"}

    @pytest.mark.asyncio
    async def test_client_filter(self, store, make_message):
        await store.write(make_message(id="a", client_type="desktop"))
        await store.write(make_message(id="b", client_type="claude_code",
                                       timestamp="2025-10-31T10:00:00"))
        rows = await store.query_recent(10, client_type="claude_code")
        assert [m.id for m in rows] == ["b"]

    @pytest.mark.asyncio
    async def test_since(self, store, make_message):
        await store.write(make_message(id="old", timestamp="2025-10-01T00:00:00"))
        await store.write(make_message(id="new", timestamp="2025-10-30T00:00:00"))
        rows = await store.query_recent(10, since="2025-10-15T00:00:00")
        assert [m.id for m in rows] == ["new"]


class TestPrune:

    @pytest.mark.asyncio
    async def test_prune_removes_only_expired(self, store, make_message):
        now = datetime.now(timezone.utc)
        await store.write(make_message(id="old", timestamp=format_utc(now - timedelta(hours=48))))
        await store.write(make_message(id="fresh", timestamp=format_utc(now - timedelta(hours=1))))

        assert store.prune(36) == 1
        rows = await store.query_recent(10)
        assert [m.id for m in rows] == ["fresh"]

    def test_prune_empty(self, store):
        assert store.prune(36) == 0
