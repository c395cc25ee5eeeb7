"""
End-to-end tests of the Evna facade over a real SQLite store.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from evna.api import Evna
from evna.config import EvnaConfig, ProjectConfig, save_config
from evna.errors import RetrievalFailed
from evna.types import SOURCE_ACTIVE, SOURCE_HISTORICAL, format_utc


class TestEvna:

    def test_creates_store(self, ev, clean_env):
        assert ev.store_path == clean_env
        assert (clean_env / "evna.toml").exists()
        assert (clean_env / "active_context.db").exists()

    @pytest.mark.asyncio
    async def test_capture_then_context(self, ev):
        await ev.capture("conv-1", "user", "ctx::review project::evna parser", client_type="desktop")
        await ev.capture("conv-1", "assistant", "ran git diff", client_type="claude_code")

        messages = await ev.context()
        assert [m.role for m in messages] == ["assistant", "user"]
        only_evna = await ev.context(project="evna")
        assert [m.content for m in only_evna] == ["ctx::review project::evna parser"]

    @pytest.mark.asyncio
    async def test_search_fuses_both_tiers(self, ev, fake_historical, make_result):
        fake_historical.results = [make_result(id="f1", similarity=0.7)]
        await ev.capture("conv-1", "user", "project::evna fusion ordering")

        results = await ev.search("fusion")
        assert [r.source for r in results] == [SOURCE_ACTIVE, SOURCE_HISTORICAL]
        assert fake_historical.calls[0]["threshold"] == 0.5
        assert fake_historical.calls[0]["limit"] == 20

    @pytest.mark.asyncio
    async def test_zero_limit_is_rejected(self, ev, fake_historical):
        with pytest.raises(ValueError, match="limit must be >= 1"):
            await ev.search("fusion", limit=0)
        assert fake_historical.calls == []

    @pytest.mark.asyncio
    async def test_session(self, ev):
        await ev.capture("conv-1", "user", "desktop chat", client_type="desktop")
        await ev.capture("conv-1", "user", "cli work", client_type="claude_code")
        session = ev.session("conv-1", "claude_code")
        messages = await session.get_client_aware_context(False)
        assert [m.content for m in messages] == ["cli work"]

    @pytest.mark.asyncio
    async def test_prune(self, ev):
        old = datetime.now(timezone.utc) - timedelta(hours=48)
        await ev.stream.capture_message("conv-1", "user", "stale", timestamp=old)
        await ev.capture("conv-1", "user", "fresh")
        assert ev.prune() == 1
        assert [m.content for m in await ev.context()] == ["fresh"]

    def test_coalescer_from_config(self, ev, fake_trigger):
        c = ev.coalescer
        assert c is ev.coalescer
        assert c.enabled
        assert c.watch_dir == ev.config.coalescer.watch_path

    def test_projects_from_config(self, clean_env, fake_historical):
        config = EvnaConfig(path=clean_env)
        config.projects["floatctl"] = ProjectConfig("floatctl-rs", ["floatctl"])
        save_config(config)
        instance = Evna(clean_env, historical=fake_historical)
        try:
            assert instance.parser.extract_metadata("project::floatctl").project == "floatctl-rs"
        finally:
            asyncio.run(instance.aclose())


class TestWithoutHistorical:

    def test_retriever_requires_configuration(self, clean_env):
        instance = Evna(clean_env)
        try:
            with pytest.raises(RetrievalFailed, match="not configured"):
                instance.retriever
        finally:
            asyncio.run(instance.aclose())

    def test_autorag_client_from_environment(self, clean_env, monkeypatch):
        monkeypatch.setenv("CLOUDFLARE_ACCOUNT_ID", "acct")
        monkeypatch.setenv("AUTORAG_API_TOKEN", "token")
        instance = Evna(clean_env)
        try:
            assert instance.retriever is not None
        finally:
            asyncio.run(instance.aclose())
