"""
HTTP client for the historical search tier (Cloudflare AI Search / AutoRAG).

Archived dispatch documents, bridges and daily notes are indexed by the
hosted service; this client only queries it. Transient failures (5xx,
timeouts, connection errors) are retried with exponential backoff.
Anything else surfaces as RetrievalFailed so an outage is never mistaken
for "no relevant history".
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from urllib.parse import urlparse

import httpx

from .errors import RetrievalFailed
from .types import SOURCE_HISTORICAL, Conversation, Message, SearchResult, format_utc, utc_now

logger = logging.getLogger(__name__)

API_BASE = "https://api.cloudflare.com/client/v4"
RERANK_MODEL = "@cf/baai/bge-reranker-base"

MAX_RETRIES = 3
RETRY_BACKOFF_BASE = 1.0  # seconds: 1, 2, 4
DEFAULT_TIMEOUT = 30.0

# Folder holding work content; personal daily notes live elsewhere
PROJECT_FOLDER = "dispatch/"


def _epoch_to_utc(value) -> str:
    if value is None:
        return utc_now()
    return format_utc(datetime.fromtimestamp(float(value), tz=timezone.utc))


def result_from_autorag(data: dict) -> SearchResult:
    """Convert one AutoRAG search hit to a SearchResult.

    AutoRAG indexes whole files, so the file id doubles as both the
    message's conversation id and the conversation's identifiers.
    """
    attributes = data.get("attributes") or {}
    file_id = data.get("file_id", "")
    timestamp = _epoch_to_utc(attributes.get("modified_date"))
    content = "\n\n".join(c.get("text", "") for c in data.get("content") or [])
    return SearchResult(
        message=Message(
            id=file_id,
            conversation_id=file_id,
            role="assistant",
            content=content,
            timestamp=timestamp,
            project=attributes.get("folder") or None,
        ),
        conversation=Conversation(
            id=file_id,
            conv_id=file_id,
            title=data.get("filename") or None,
            created_at=timestamp,
        ),
        similarity=float(data.get("score", 0.0)),
        source=SOURCE_HISTORICAL,
    )


class AutoRAGClient:
    """Async HTTP client for AutoRAG search."""

    def __init__(
        self,
        account_id: str,
        api_token: str,
        *,
        rag_id: str = "sysops-beta",
        api_base: str = API_BASE,
        rewrite_query: bool = True,
        enable_reranking: bool = True,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        api_base = api_base.rstrip("/")
        # Refuse non-HTTPS for remote APIs (bearer token would be sent in cleartext)
        if not api_base.startswith("https://"):
            host = urlparse(api_base).hostname or ""
            if host not in ("localhost", "127.0.0.1", "::1"):
                raise ValueError(
                    f"AutoRAG API URL must use HTTPS (got {api_base}). "
                    "Use HTTPS to protect API credentials, or use localhost for local development."
                )

        self._rag_id = rag_id
        self._rewrite_query = rewrite_query
        self._enable_reranking = enable_reranking
        self._client = httpx.AsyncClient(
            base_url=f"{api_base}/accounts/{account_id}/ai-search/rags",
            headers={
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def _build_body(self, query: str, limit: int, project: str | None, threshold: float) -> dict:
        body: dict = {
            "query": query,
            "rewrite_query": self._rewrite_query,
            "max_num_results": limit,
            "ranking_options": {"score_threshold": threshold},
            "reranking": {"enabled": self._enable_reranking, "model": RERANK_MODEL},
        }
        if project:
            # Project is frontmatter metadata, not a folder; semantic matching
            # handles project relevance, the filter only drops personal notes
            body["filters"] = {"type": "eq", "key": "folder", "value": PROJECT_FOLDER}
        return body

    async def search(
        self,
        query: str,
        limit: int,
        project: str | None = None,
        since: str | None = None,
        threshold: float = 0.5,
    ) -> list[SearchResult]:
        """POST /{rag_id}/search -> results ranked by similarity.

        ``since`` is accepted for protocol compatibility; the service has no
        time filter, so it is not sent.
        """
        body = self._build_body(query, limit, project, threshold)
        path = f"/{self._rag_id}/search"

        last_error: Exception | None = None
        for attempt in range(MAX_RETRIES):
            try:
                resp = await self._client.post(path, json=body)
                resp.raise_for_status()
                data = resp.json()
                hits = (data.get("result") or {}).get("data") or []
                return [result_from_autorag(hit) for hit in hits]
            except httpx.HTTPStatusError as e:
                if e.response.status_code < 500:
                    raise RetrievalFailed(
                        f"AutoRAG search rejected: {e.response.status_code} {e.response.text}",
                        tier=SOURCE_HISTORICAL,
                    ) from e
                last_error = e
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_error = e
            except (ValueError, KeyError, TypeError) as e:
                raise RetrievalFailed(
                    f"AutoRAG returned an unreadable response: {e}", tier=SOURCE_HISTORICAL,
                ) from e

            if attempt < MAX_RETRIES - 1:
                delay = RETRY_BACKOFF_BASE * (2 ** attempt)
                logger.warning(
                    "AutoRAG transient error (attempt %d/%d), retrying in %.1fs: %s",
                    attempt + 1, MAX_RETRIES, delay, last_error,
                )
                await asyncio.sleep(delay)

        raise RetrievalFailed(
            f"AutoRAG search failed after {MAX_RETRIES} attempts: {last_error}",
            tier=SOURCE_HISTORICAL,
        ) from last_error

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
