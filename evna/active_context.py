"""
Active context stream: capture and query of the recency tier.

Every captured message is run through the annotation parser before it is
written, so stored markers always match the content. Queries delegate to
the data store, which owns ordering and fuzzy project matching.
"""

import logging
import re
import secrets
import time
from datetime import datetime
from typing import Optional, Union

from .annotations import PERSONA_KEYS, AnnotationParser
from .errors import CaptureFailed, RetrievalFailed
from .protocol import DataStore
from .types import ROLES, SOURCE_ACTIVE, Message, normalize_timestamp, utc_now

logger = logging.getLogger(__name__)

NO_ACTIVE_CONTEXT = "**No active context available**"

_CODE_BLOCK_RE = re.compile(r"```[\s\S]*?```")
_FILE_PATH_RE = re.compile(r"/[\w/-]+\.\w+")
_SHELL_RE = re.compile(r"\b(cargo|npm|git|bash|cd|ls|grep)\s+", re.IGNORECASE)

_CLIENT_BADGES = {"claude_code": "💻", "desktop": "💬"}
_ROLE_BADGES = {"user": "👤", "assistant": "🤖", "system": "⚙️"}


def detect_client_type(content: str) -> str:
    """Guess the capturing client from content when the caller didn't say.

    Code fences, file paths and shell commands point at ``claude_code``;
    everything else is treated as ``desktop``.
    """
    if (_CODE_BLOCK_RE.search(content) or _FILE_PATH_RE.search(content)
            or _SHELL_RE.search(content)):
        return "claude_code"
    return "desktop"


def generate_message_id() -> str:
    return f"msg_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def smart_truncate(content: str, max_length: int = 1200) -> str:
    """
    Truncate at a sentence or word boundary and mark how much was kept.

    Prefers the last sentence end within 100 chars of the limit, then the
    last space within 50 chars, then a hard cut. Appends ``[kept/total]``.
    """
    total = len(content)
    if total <= max_length:
        return content

    search_text = content[:min(max_length + 50, total)]
    end = max(search_text.rfind(". "), search_text.rfind("! "), search_text.rfind("? "))

    if end > max_length - 100:
        truncated = content[:end + 1].strip()
    else:
        space = content.rfind(" ", 0, max_length + 1)
        if space > max_length - 50:
            truncated = content[:space].strip() + "..."
        else:
            truncated = content[:max_length].strip() + "..."

    return f"{truncated} [{len(truncated)}/{total}]"


class ActiveContextStream:
    """Capture and query of recently seen messages."""

    def __init__(self, store: DataStore, parser: Optional[AnnotationParser] = None):
        self._store = store
        self._parser = parser or AnnotationParser()

    @property
    def store(self) -> DataStore:
        return self._store

    async def capture_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        timestamp: Union[str, datetime, None] = None,
        client_type: Optional[str] = None,
        *,
        message_id: Optional[str] = None,
    ) -> Message:
        """
        Parse annotations from ``content`` and write the message.

        Args:
            conversation_id: Conversation the message belongs to
            role: "user", "assistant" or "system"
            content: Raw message text
            timestamp: Capture time; now when omitted
            client_type: Capturing client; detected from content when omitted
            message_id: Explicit id; generated when omitted

        Returns:
            The stored Message

        Raises:
            ValueError: If role is not recognized
            CaptureFailed: If the store write fails (not retried)
        """
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role!r} (expected one of {', '.join(ROLES)})")

        markers = tuple(self._parser.parse(content))
        metadata = self._parser.extract_metadata(content)
        message = Message(
            id=message_id or generate_message_id(),
            conversation_id=conversation_id,
            role=role,
            content=content,
            timestamp=normalize_timestamp(timestamp) if timestamp else utc_now(),
            project=metadata.project,
            meeting=metadata.meeting,
            markers=markers,
            client_type=client_type or detect_client_type(content),
        )

        try:
            await self._store.write(message)
        except Exception as e:
            logger.error("Failed to capture message %s: %s", message.id, e)
            raise CaptureFailed(f"Failed to store active context: {e}") from e

        logger.info("Captured %s (%s, %d markers)", message.id, message.client_type, len(markers))
        return message

    async def query_context(
        self,
        limit: int = 10,
        project: Optional[str] = None,
        client_type: Optional[str] = None,
        since: Optional[str] = None,
        *,
        personas: Optional[list[str]] = None,
        exclude_conversation: Optional[str] = None,
    ) -> list[Message]:
        """
        Recent messages, newest first.

        Args:
            limit: Maximum messages returned
            project: Raw project filter, passed through to the store
            client_type: Only this client's messages; None for all clients
            since: Lower timestamp bound
            personas: Keep only messages invoking one of these personas
            exclude_conversation: Drop messages from this conversation

        Raises:
            RetrievalFailed: If the store query fails
        """
        post_filter = bool(personas) or exclude_conversation is not None
        try:
            messages = await self._store.query_recent(
                limit * 2 if post_filter else limit,
                project=project,
                client_type=client_type,
                since=since,
            )
        except Exception as e:
            logger.error("Active context query failed: %s", e)
            raise RetrievalFailed(f"Failed to query active context: {e}", tier=SOURCE_ACTIVE) from e

        if exclude_conversation is not None:
            messages = [m for m in messages if m.conversation_id != exclude_conversation]
        if personas:
            wanted = {p.lower() for p in personas}
            messages = [
                m for m in messages
                if any(a.key.lower() in wanted for a in m.markers)
            ]
        return messages[:limit]

    def format_context(self, messages: list[Message]) -> str:
        """Render messages as a markdown block, one section per message."""
        if not messages:
            return NO_ACTIVE_CONTEXT

        lines = [f"## 🔴 Active Context Stream ({len(messages)} messages)\n"]
        for idx, msg in enumerate(messages, 1):
            client = _CLIENT_BADGES.get(msg.client_type or "", "❔")
            role = _ROLE_BADGES.get(msg.role, msg.role)
            lines.append(f"### {idx}. {client} {role} {msg.role} @ {msg.timestamp}")

            if msg.project:
                lines.append(f"**Project**: {msg.project}")
            personas = [a.key.lower() for a in msg.markers
                        if a.key.lower() in PERSONA_KEYS]
            if personas:
                lines.append(f"**Personas**: {', '.join(dict.fromkeys(personas))}")
            mode = next((a.value for a in msg.markers if a.key.lower() == "mode"), None)
            if mode:
                lines.append(f"**Mode**: {mode}")

            lines.append(f"\n{smart_truncate(msg.content)}\n")
            lines.append("---\n")

        return "\n".join(lines)
