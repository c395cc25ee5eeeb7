"""
Tests for client-aware context selection.
"""

import pytest

from evna.active_context import NO_ACTIVE_CONTEXT, ActiveContextStream
from evna.session import ClientAwareSession, other_client


@pytest.fixture
def populated(fake_store, make_message):
    fake_store.messages = [
        make_message(id=f"cc{i}", client_type="claude_code", timestamp=f"2025-10-31T1{i}:00:00")
        for i in range(5)
    ] + [
        make_message(id=f"d{i}", client_type="desktop", timestamp=f"2025-10-31T0{i}:00:00")
        for i in range(2)
    ]
    return fake_store


@pytest.fixture
def stream(populated):
    return ActiveContextStream(populated)


def test_other_client():
    assert other_client("desktop") == "claude_code"
    assert other_client("claude_code") == "desktop"


class TestClientAwareSession:

    @pytest.mark.asyncio
    async def test_requires_session(self, stream):
        session = ClientAwareSession(stream)
        assert session.key is None
        with pytest.raises(RuntimeError):
            await session.get_client_aware_context(True)

    def test_rejects_unknown_client(self, stream):
        with pytest.raises(ValueError):
            ClientAwareSession(stream).set_session("conv-1", "browser")

    def test_rejects_negative_tail(self, stream):
        with pytest.raises(ValueError):
            ClientAwareSession(stream, cross_client_tail=-1)

    def test_key(self, stream):
        session = ClientAwareSession(stream)
        session.set_session("conv-1", "desktop")
        assert session.key == ("conv-1", "desktop")

    @pytest.mark.asyncio
    async def test_first_message_sees_every_client(self, stream, populated):
        session = ClientAwareSession(stream)
        session.set_session("conv-1", "desktop")
        messages = await session.get_client_aware_context(True, limit=10)
        assert {m.client_type for m in messages} == {"desktop", "claude_code"}
        assert populated.queries[-1]["client_type"] is None

    @pytest.mark.asyncio
    async def test_subsequent_message_sees_only_current_client(self, stream, populated):
        session = ClientAwareSession(stream)
        session.set_session("conv-1", "claude_code")
        messages = await session.get_client_aware_context(False, limit=10)
        assert [m.id for m in messages] == ["cc4", "cc3", "cc2", "cc1", "cc0"]
        assert populated.queries[-1]["client_type"] == "claude_code"

    @pytest.mark.asyncio
    async def test_cross_client_tail_reserves_room(self, stream):
        session = ClientAwareSession(stream, cross_client_tail=1)
        session.set_session("conv-1", "claude_code")
        messages = await session.get_client_aware_context(False, limit=4)
        assert [m.id for m in messages] == ["cc4", "cc3", "cc2", "d1"]

    @pytest.mark.asyncio
    async def test_first_message_ignores_tail(self, stream, populated):
        session = ClientAwareSession(stream, cross_client_tail=2)
        session.set_session("conv-1", "claude_code")
        await session.get_client_aware_context(True, limit=3)
        assert len(populated.queries) == 1

    @pytest.mark.asyncio
    async def test_project_passed_through(self, stream, populated):
        session = ClientAwareSession(stream)
        session.set_session("conv-1", "desktop")
        await session.get_client_aware_context(False, project="evna")
        assert populated.queries[-1]["project"] == "evna"

    @pytest.mark.asyncio
    async def test_render(self, stream):
        session = ClientAwareSession(stream)
        session.set_session("conv-1", "claude_code")
        text = await session.render(False, limit=2)
        assert text.startswith("## claude_code → desktop Cross-Client Context\n")
        assert "Active Context Stream (2 messages)" in text

    @pytest.mark.asyncio
    async def test_render_empty(self, fake_store):
        session = ClientAwareSession(ActiveContextStream(fake_store))
        session.set_session("conv-1", "desktop")
        assert await session.render(False) == NO_ACTIVE_CONTEXT
