"""
Client-aware context selection.

Two front-ends (desktop chat and claude_code) write into the same active
context stream. At the start of a turn the agent benefits from seeing
everything; mid-turn it already has continuity and only needs its own
client's recent messages, plus optionally a short tail of what the other
client has been doing.
"""

import logging
from typing import Optional

from .active_context import NO_ACTIVE_CONTEXT, ActiveContextStream
from .types import CLIENT_TYPES, Message

logger = logging.getLogger(__name__)


def other_client(client_type: str) -> str:
    return "claude_code" if client_type == "desktop" else "desktop"


class ClientAwareSession:
    """
    Session-bound policy over an ActiveContextStream.

    Sessions are process-local: the key ``(conversation_id, client_type)``
    lives only as long as this object.
    """

    def __init__(self, stream: ActiveContextStream, *, cross_client_tail: int = 0):
        """
        Args:
            stream: The active context stream to query
            cross_client_tail: Messages from the other client always appended
                to non-first queries (0 disables the tail)
        """
        if cross_client_tail < 0:
            raise ValueError("cross_client_tail must be >= 0")
        self._stream = stream
        self._cross_client_tail = cross_client_tail
        self._conversation_id: Optional[str] = None
        self._current_client: Optional[str] = None

    @property
    def key(self) -> Optional[tuple[str, str]]:
        if self._conversation_id is None or self._current_client is None:
            return None
        return (self._conversation_id, self._current_client)

    def set_session(self, conversation_id: str, current_client: str) -> None:
        if current_client not in CLIENT_TYPES:
            raise ValueError(
                f"Unknown client type: {current_client!r} (expected one of {', '.join(CLIENT_TYPES)})"
            )
        self._conversation_id = conversation_id
        self._current_client = current_client
        logger.debug("Session bound to %s/%s", conversation_id, current_client)

    async def get_client_aware_context(
        self,
        is_first_message: bool,
        project: Optional[str] = None,
        limit: int = 10,
    ) -> list[Message]:
        """
        Messages for the bound session.

        First message of a turn: every client, unfiltered. Otherwise only
        the current client's messages, followed by the cross-client tail.
        """
        if self.key is None:
            raise RuntimeError("set_session() must be called before querying context")

        if is_first_message:
            return await self._stream.query_context(limit, project=project)

        messages = await self._stream.query_context(
            limit, project=project, client_type=self._current_client,
        )
        if self._cross_client_tail:
            tail = await self._stream.query_context(
                self._cross_client_tail,
                project=project,
                client_type=other_client(self._current_client),
            )
            # Reserve room for the tail so it is always included
            keep = max(limit - len(tail), 0)
            seen = {m.id for m in messages[:keep]}
            messages = messages[:keep] + [m for m in tail if m.id not in seen]
        return messages[:limit]

    async def render(
        self,
        is_first_message: bool,
        project: Optional[str] = None,
        limit: int = 10,
    ) -> str:
        """Client-aware context as markdown."""
        messages = await self.get_client_aware_context(is_first_message, project, limit)
        return self.format_context(messages)

    def format_context(self, messages: list[Message]) -> str:
        if not messages:
            return NO_ACTIVE_CONTEXT
        current = self._current_client
        header = f"## {current} → {other_client(current)} Cross-Client Context\n"
        return "\n".join([header, self._stream.format_context(messages)])
