"""
Two-tier retrieval: active context stream fused with historical search.

The active tier is cheap and already project- and time-scoped, so its
recency stands in for relevance; it gets a small quota so it never crowds
out the historical tier. The historical tier is over-fetched to survive
deduplication against the active tier without a second round trip.

Result order is part of the contract: active results always come first,
regardless of their (sentinel) similarity.
"""

import asyncio
import logging
import math
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Optional

from .active_context import ActiveContextStream
from .errors import RetrievalFailed
from .protocol import HistoricalSearch
from .types import (
    SOURCE_ACTIVE, SOURCE_HISTORICAL, Conversation, Message, SearchResult,
    format_utc, normalize_timestamp,
)

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_DAYS = 7
ACTIVE_RATIO = 0.3
ACTIVE_MIN = 3
# Marks "recent context", not a computed similarity
ACTIVE_SIMILARITY = 0.9
HISTORICAL_OVERFETCH = 2
DEDUP_PREFIX_CHARS = 50

NO_RESULTS = "**No results found**"


def active_quota(limit: int) -> int:
    """Messages requested from the active tier for a given result limit."""
    return max(math.floor(limit * ACTIVE_RATIO), ACTIVE_MIN)


def dedup_key(result: SearchResult) -> str:
    """Composite identity: conversation, timestamp and content prefix.

    Historical results may carry no stable message id, so ids are not used.
    """
    msg = result.message
    return f"{msg.conversation_id}::{msg.timestamp}::{msg.content[:DEDUP_PREFIX_CHARS]}"


def deduplicate(results: list[SearchResult]) -> list[SearchResult]:
    """Keep the first result for each composite key, preserving order."""
    seen: set[str] = set()
    kept = []
    for result in results:
        key = dedup_key(result)
        if key in seen:
            continue
        seen.add(key)
        kept.append(result)
    return kept


def _active_result(msg: Message) -> SearchResult:
    return SearchResult(
        message=msg,
        conversation=Conversation(
            id=msg.conversation_id,
            conv_id=msg.conversation_id,
            created_at=msg.timestamp,
        ),
        similarity=ACTIVE_SIMILARITY,
        source=SOURCE_ACTIVE,
    )


class FusionRetriever:
    """Search across the active context stream and the historical archive."""

    def __init__(
        self,
        stream: ActiveContextStream,
        historical: HistoricalSearch,
        *,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    ):
        self._stream = stream
        self._historical = historical
        self._lookback_days = lookback_days

    async def search(
        self,
        query: str,
        limit: int = 10,
        project: Optional[str] = None,
        since: Optional[str] = None,
        threshold: float = 0.5,
    ) -> list[SearchResult]:
        """
        Fused, deduplicated search.

        Args:
            query: Natural language query for the historical tier
            limit: Maximum results returned
            project: Project filter for both tiers
            since: Lower time bound (defaults to the lookback window)
            threshold: Minimum historical similarity

        Returns:
            Active-tier results, then historical results, at most ``limit``

        Raises:
            ValueError: If limit < 1
            RetrievalFailed: If either tier fails
        """
        if limit < 1:
            raise ValueError("limit must be >= 1")

        if since:
            lookback = normalize_timestamp(since)
        else:
            lookback = format_utc(
                datetime.now(timezone.utc) - timedelta(days=self._lookback_days))

        quota = active_quota(limit)
        logger.debug("search %r: active quota %d, historical %d since %s",
                     query, quota, limit * HISTORICAL_OVERFETCH, lookback)

        active_task = self._stream.query_context(quota, project=project, since=lookback)
        historical_task = self._historical.search(
            query, limit * HISTORICAL_OVERFETCH,
            project=project, since=since or lookback, threshold=threshold,
        )
        # Both tiers are in flight together; order below is fixed by tier
        active, historical = await asyncio.gather(
            active_task, historical_task, return_exceptions=True,
        )

        for tier, outcome in ((SOURCE_ACTIVE, active), (SOURCE_HISTORICAL, historical)):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.warning("%s tier failed for %r: %s", tier, query, outcome)
                if isinstance(outcome, RetrievalFailed):
                    raise outcome
                raise RetrievalFailed(f"{tier} search failed: {outcome}", tier=tier) from outcome

        merged = [_active_result(m) for m in active]
        merged.extend(replace(r, source=SOURCE_HISTORICAL) for r in historical)
        results = deduplicate(merged)[:limit]
        logger.info("search %r: %d active + %d historical -> %d results",
                    query, len(active), len(historical), len(results))
        return results


def format_results(results: list[SearchResult]) -> str:
    """Render fused results as numbered markdown sections."""
    if not results:
        return NO_RESULTS

    lines = [f"# Search Results ({len(results)} matches)\n"]
    for idx, result in enumerate(results, 1):
        msg, conv = result.message, result.conversation
        is_active = result.source == SOURCE_ACTIVE
        project_tag = f" [{msg.project}]" if msg.project else ""
        source_tag = " 🔴 Recent" if is_active else ""
        if conv and conv.title:
            title = conv.title
        elif is_active:
            title = "Active Context"
        elif conv:
            title = conv.conv_id
        else:
            title = "Unknown"

        lines.append(f"## {idx}. {msg.timestamp}{project_tag}{source_tag} "
                     f"(similarity: {result.similarity:.2f})")
        lines.append(f"**Conversation**: {title}")
        lines.append(f"**Role**: {msg.role}")
        lines.append("")
        lines.append(msg.content)
        lines.append("")
        lines.append("---")
        lines.append("")

    return "\n".join(lines)
