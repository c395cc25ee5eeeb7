"""
Evna: the wired-up context fusion pipeline.

Both front-ends (CLI and MCP server) go through this class. It resolves
the store directory and configuration, builds the collaborators, and owns
their lifetimes.

Example:
    ev = Evna()
    await ev.capture("conv-1", "user", "ctx::refactor project::evna")
    results = await ev.search("what was the refactor about?")
    await ev.aclose()
"""

import logging
from pathlib import Path
from typing import Optional, Union

from .active_context import ActiveContextStream
from .annotations import AnnotationParser
from .coalescer import FloatctlSyncTrigger, WriteCoalescer
from .config import EvnaConfig, get_store_path, load_or_create_config
from .errors import RetrievalFailed
from .fusion import FusionRetriever
from .historical import AutoRAGClient
from .message_store import MessageStore
from .projects import ProjectRegistry
from .protocol import DataStore, HistoricalSearch, SyncTrigger
from .session import ClientAwareSession
from .types import SOURCE_HISTORICAL, Message, SearchResult

logger = logging.getLogger(__name__)


class Evna:
    """Context fusion over a local active tier and a remote historical tier."""

    def __init__(
        self,
        store_path: Optional[Union[str, Path]] = None,
        *,
        config: Optional[EvnaConfig] = None,
        store: Optional[DataStore] = None,
        historical: Optional[HistoricalSearch] = None,
        trigger: Optional[SyncTrigger] = None,
    ) -> None:
        """
        Open (or create) an evna store.

        Args:
            store_path: Store directory; EVNA_STORE_PATH or ~/.evna if omitted
            config: Pre-loaded config (skips filesystem config discovery)
            store: Injected data store (skips SQLite creation)
            historical: Injected historical search (skips AutoRAG client)
            trigger: Injected sync trigger for the write coalescer
        """
        if config is not None:
            self._config = config
        else:
            self._config = load_or_create_config(get_store_path(store_path))
        self._store_path = self._config.path

        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._store_path)

        self._projects = ProjectRegistry(self._config.projects.values())
        self._parser = AnnotationParser(self._projects)

        self._owns_store = store is None
        self._store = store if store is not None else MessageStore(
            self._config.db_path, self._projects)
        self._stream = ActiveContextStream(self._store, self._parser)

        self._owns_historical = historical is None
        self._historical = historical
        if historical is None and self._config.autorag.configured:
            a = self._config.autorag
            self._historical = AutoRAGClient(
                a.account_id, a.api_token,
                rag_id=a.rag_id,
                rewrite_query=a.rewrite_query,
                enable_reranking=a.enable_reranking,
            )

        self._trigger = trigger
        self._coalescer: Optional[WriteCoalescer] = None
        logger.debug("Opened evna store at %s", self._store_path)

    @property
    def config(self) -> EvnaConfig:
        return self._config

    @property
    def store_path(self) -> Path:
        return self._store_path

    @property
    def projects(self) -> ProjectRegistry:
        return self._projects

    @property
    def parser(self) -> AnnotationParser:
        return self._parser

    @property
    def stream(self) -> ActiveContextStream:
        return self._stream

    @property
    def store(self) -> DataStore:
        return self._store

    @property
    def retriever(self) -> FusionRetriever:
        """
        Fusion retriever over both tiers.

        Raises:
            RetrievalFailed: If no historical search is configured
        """
        if self._historical is None:
            raise RetrievalFailed(
                "Historical search is not configured "
                "(set CLOUDFLARE_ACCOUNT_ID and AUTORAG_API_TOKEN)",
                tier=SOURCE_HISTORICAL,
            )
        return FusionRetriever(
            self._stream, self._historical,
            lookback_days=self._config.retrieval.lookback_days,
        )

    def session(self, conversation_id: str, client_type: str,
                *, cross_client_tail: int = 0) -> ClientAwareSession:
        """A client-aware session bound to one conversation and client."""
        session = ClientAwareSession(self._stream, cross_client_tail=cross_client_tail)
        session.set_session(conversation_id, client_type)
        return session

    @property
    def coalescer(self) -> WriteCoalescer:
        """The write coalescer for the configured dispatch directory (created once)."""
        if self._coalescer is None:
            c = self._config.coalescer
            trigger = self._trigger or FloatctlSyncTrigger(c.floatctl_bin, timeout=c.timeout_s)
            self._coalescer = WriteCoalescer(
                c.watch_path, trigger,
                enabled=c.enabled,
                debounce_ms=c.debounce_ms,
                daemon_type=c.daemon_type,
                suffix=c.suffix,
            )
        return self._coalescer

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def capture(
        self,
        conversation_id: str,
        role: str,
        content: str,
        client_type: Optional[str] = None,
    ) -> Message:
        return await self._stream.capture_message(
            conversation_id, role, content, client_type=client_type)

    async def context(
        self,
        limit: Optional[int] = None,
        project: Optional[str] = None,
        client_type: Optional[str] = None,
        since: Optional[str] = None,
    ) -> list[Message]:
        return await self._stream.query_context(
            self._config.retrieval.limit if limit is None else limit,
            project=project, client_type=client_type, since=since,
        )

    async def search(
        self,
        query: str,
        limit: Optional[int] = None,
        project: Optional[str] = None,
        since: Optional[str] = None,
        threshold: Optional[float] = None,
    ) -> list[SearchResult]:
        r = self._config.retrieval
        return await self.retriever.search(
            query,
            limit=r.limit if limit is None else limit,
            project=project,
            since=since,
            threshold=r.threshold if threshold is None else threshold,
        )

    def prune(self, older_than_hours: Optional[int] = None) -> int:
        """Drop active-tier messages older than the TTL. Returns count deleted."""
        hours = older_than_hours or self._config.retrieval.active_ttl_hours
        if not isinstance(self._store, MessageStore):
            logger.info("Store %s does not support pruning", type(self._store).__name__)
            return 0
        return self._store.prune(hours)

    async def aclose(self) -> None:
        """Stop the watcher and close owned clients and stores."""
        if self._coalescer is not None:
            await self._coalescer.stop()
        if self._owns_historical and isinstance(self._historical, AutoRAGClient):
            await self._historical.aclose()
        if self._owns_store and isinstance(self._store, MessageStore):
            self._store.close()
        if self._ops_log_handler is not None:
            logging.getLogger("evna").removeHandler(self._ops_log_handler)
            self._ops_log_handler.close()
            self._ops_log_handler = None
