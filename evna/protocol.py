"""
Protocol definitions for the collaborators of the fusion pipeline.

- DataStore: the recency tier's storage (SQLite locally, Postgres remotely)
- HistoricalSearch: the similarity-ranked archive (AutoRAG)
- SyncTrigger: the out-of-process action the write coalescer fires
"""

from typing import Optional, Protocol, runtime_checkable

from .types import Message, SearchResult


@runtime_checkable
class DataStore(Protocol):
    """
    Storage for captured messages.

    Implemented by:
    - MessageStore (local SQLite)
    """

    async def write(self, message: Message) -> None: ...

    async def query_recent(
        self,
        limit: int,
        project: Optional[str] = None,
        client_type: Optional[str] = None,
        since: Optional[str] = None,
    ) -> list[Message]:
        """Most recent messages first. Project matching is fuzzy."""
        ...


@runtime_checkable
class HistoricalSearch(Protocol):
    """
    Long-horizon similarity search.

    Implemented by:
    - AutoRAGClient (Cloudflare AI Search)
    """

    async def search(
        self,
        query: str,
        limit: int,
        project: Optional[str] = None,
        since: Optional[str] = None,
        threshold: float = 0.5,
    ) -> list[SearchResult]:
        """Results ranked by similarity, highest first."""
        ...


@runtime_checkable
class SyncTrigger(Protocol):
    """
    Idempotent external sync action.

    Implemented by:
    - FloatctlSyncTrigger (``floatctl sync trigger``)
    """

    async def trigger(self, daemon_type: str, file_count: int) -> str:
        """Run the sync. Returns opaque output text for logging."""
        ...
