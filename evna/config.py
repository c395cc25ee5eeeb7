"""
Configuration management for evna stores.

The configuration is stored as a TOML file in the store directory.
It holds retrieval defaults, the write coalescer settings, historical
search credentials, and the known project aliases.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import tomli_w


CONFIG_FILENAME = "evna.toml"
CONFIG_VERSION = 1

DEFAULT_STORE_DIR = Path.home() / ".evna"


def get_store_path(explicit: Optional[Path] = None) -> Path:
    """Resolve the store directory: explicit path, EVNA_STORE_PATH, or ~/.evna."""
    if explicit is not None:
        return Path(explicit).expanduser()
    env = os.environ.get("EVNA_STORE_PATH")
    if env:
        return Path(env).expanduser()
    return DEFAULT_STORE_DIR


@dataclass
class RetrievalConfig:
    """Defaults for fused search and the active tier."""
    limit: int = 10
    threshold: float = 0.5
    lookback_days: int = 7
    active_ttl_hours: int = 36


@dataclass
class CoalescerConfig:
    """Settings for the dispatch directory watcher."""
    enabled: bool = True
    debounce_ms: int = 5000
    daemon_type: str = "dispatch"
    watch_dir: str = "~/float-hub/float.dispatch"
    suffix: str = ".md"
    floatctl_bin: str = "floatctl"
    timeout_s: float = 30.0

    @property
    def watch_path(self) -> Path:
        return Path(self.watch_dir).expanduser()


@dataclass
class AutoRAGConfig:
    """Credentials and options for the historical search service."""
    account_id: Optional[str] = field(
        default_factory=lambda: os.environ.get("CLOUDFLARE_ACCOUNT_ID"))
    api_token: Optional[str] = field(
        default_factory=lambda: os.environ.get("AUTORAG_API_TOKEN"))
    rag_id: str = "sysops-beta"
    rewrite_query: bool = True
    enable_reranking: bool = True

    @property
    def configured(self) -> bool:
        return bool(self.account_id and self.api_token)


@dataclass
class ProjectConfig:
    """A known project: canonical name plus the aliases it drifts under."""
    canonical: str
    aliases: list[str] = field(default_factory=list)


@dataclass
class EvnaConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    coalescer: CoalescerConfig = field(default_factory=CoalescerConfig)
    autorag: AutoRAGConfig = field(default_factory=AutoRAGConfig)
    projects: dict[str, ProjectConfig] = field(default_factory=dict)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def db_path(self) -> Path:
        """Path to the active context SQLite database."""
        return self.path / "active_context.db"

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def _section(data: dict, cls, keys: tuple[str, ...]):
    """Build a dataclass from the known keys of a TOML section."""
    return cls(**{k: v for k, v in data.items() if k in keys})


def load_config(store_path: Path) -> EvnaConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    retrieval = _section(data.get("retrieval", {}), RetrievalConfig,
                         ("limit", "threshold", "lookback_days", "active_ttl_hours"))
    coalescer = _section(data.get("coalescer", {}), CoalescerConfig,
                         ("enabled", "debounce_ms", "daemon_type", "watch_dir",
                          "suffix", "floatctl_bin", "timeout_s"))
    autorag = _section(data.get("autorag", {}), AutoRAGConfig,
                       ("account_id", "api_token", "rag_id",
                        "rewrite_query", "enable_reranking"))

    projects: dict[str, ProjectConfig] = {}
    for name, section in data.get("projects", {}).items():
        if not isinstance(section, dict):
            raise ValueError(f"Invalid [projects.{name}] section")
        projects[name] = ProjectConfig(
            canonical=section.get("canonical", name),
            aliases=list(section.get("aliases", [])),
        )

    return EvnaConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        retrieval=retrieval,
        coalescer=coalescer,
        autorag=autorag,
        projects=projects,
    )


def save_config(config: EvnaConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist. Credentials taken from the
    environment are not written back to disk.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    autorag = {
        "rag_id": config.autorag.rag_id,
        "rewrite_query": config.autorag.rewrite_query,
        "enable_reranking": config.autorag.enable_reranking,
    }
    if config.autorag.account_id and config.autorag.account_id != os.environ.get("CLOUDFLARE_ACCOUNT_ID"):
        autorag["account_id"] = config.autorag.account_id
    if config.autorag.api_token and config.autorag.api_token != os.environ.get("AUTORAG_API_TOKEN"):
        autorag["api_token"] = config.autorag.api_token

    c = config.coalescer
    r = config.retrieval
    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "retrieval": {
            "limit": r.limit,
            "threshold": r.threshold,
            "lookback_days": r.lookback_days,
            "active_ttl_hours": r.active_ttl_hours,
        },
        "coalescer": {
            "enabled": c.enabled,
            "debounce_ms": c.debounce_ms,
            "daemon_type": c.daemon_type,
            "watch_dir": c.watch_dir,
            "suffix": c.suffix,
            "floatctl_bin": c.floatctl_bin,
            "timeout_s": c.timeout_s,
        },
        "autorag": autorag,
        "projects": {
            name: {"canonical": p.canonical, "aliases": p.aliases}
            for name, p in config.projects.items()
        },
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> EvnaConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = EvnaConfig(path=store_path)
    save_config(config)
    return config
