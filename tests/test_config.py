"""
Tests for TOML configuration of an evna store.
"""

from pathlib import Path

import pytest

from evna.config import (
    CONFIG_FILENAME, AutoRAGConfig, EvnaConfig, ProjectConfig,
    get_store_path, load_config, load_or_create_config, save_config,
)


@pytest.fixture(autouse=True)
def no_credentials(monkeypatch):
    monkeypatch.delenv("CLOUDFLARE_ACCOUNT_ID", raising=False)
    monkeypatch.delenv("AUTORAG_API_TOKEN", raising=False)


class TestStorePath:

    def test_explicit_wins(self, monkeypatch, tmp_path):
        monkeypatch.setenv("EVNA_STORE_PATH", "/somewhere/else")
        assert get_store_path(tmp_path) == tmp_path

    def test_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("EVNA_STORE_PATH", str(tmp_path))
        assert get_store_path() == tmp_path

    def test_default(self, monkeypatch):
        monkeypatch.delenv("EVNA_STORE_PATH", raising=False)
        assert get_store_path() == Path.home() / ".evna"


class TestLoadSave:

    def test_create_with_defaults(self, tmp_path):
        config = load_or_create_config(tmp_path)
        assert (tmp_path / CONFIG_FILENAME).exists()
        assert config.retrieval.limit == 10
        assert config.retrieval.threshold == 0.5
        assert config.retrieval.lookback_days == 7
        assert config.coalescer.debounce_ms == 5000
        assert config.coalescer.daemon_type == "dispatch"
        assert config.coalescer.suffix == ".md"
        assert config.autorag.rag_id == "sysops-beta"
        assert not config.autorag.configured
        assert config.db_path == tmp_path / "active_context.db"

    def test_round_trip(self, tmp_path):
        config = EvnaConfig(path=tmp_path)
        config.retrieval.limit = 25
        config.coalescer.enabled = False
        config.coalescer.watch_dir = "~/notes"
        config.projects["floatctl"] = ProjectConfig("floatctl-rs", ["floatctl", "float/floatctl"])
        save_config(config)

        loaded = load_config(tmp_path)
        assert loaded.retrieval.limit == 25
        assert loaded.coalescer.enabled is False
        assert loaded.coalescer.watch_path == Path.home() / "notes"
        assert loaded.projects["floatctl"].canonical == "floatctl-rs"
        assert loaded.projects["floatctl"].aliases == ["floatctl", "float/floatctl"]
        assert loaded.created == config.created

    def test_missing_config(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path)

    def test_newer_version_rejected(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("[store]\nversion = 99\n")
        with pytest.raises(ValueError, match="newer"):
            load_config(tmp_path)

    def test_unknown_keys_ignored(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text(
            "[retrieval]\nlimit = 3\nfuture_option = true\n"
        )
        assert load_config(tmp_path).retrieval.limit == 3

    def test_invalid_project_section(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text('[projects]\nevna = "oops"\n')
        with pytest.raises(ValueError):
            load_config(tmp_path)


class TestCredentials:

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("CLOUDFLARE_ACCOUNT_ID", "acct")
        monkeypatch.setenv("AUTORAG_API_TOKEN", "token")
        assert AutoRAGConfig().configured

    def test_env_credentials_not_written(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CLOUDFLARE_ACCOUNT_ID", "acct")
        monkeypatch.setenv("AUTORAG_API_TOKEN", "token")
        save_config(EvnaConfig(path=tmp_path))
        text = (tmp_path / CONFIG_FILENAME).read_text()
        assert "api_token" not in text
        assert "account_id" not in text

    def test_file_credentials_written(self, tmp_path):
        config = EvnaConfig(path=tmp_path)
        config.autorag.account_id = "file-acct"
        config.autorag.api_token = "file-token"
        save_config(config)
        loaded = load_config(tmp_path)
        assert loaded.autorag.account_id == "file-acct"
        assert loaded.autorag.configured
