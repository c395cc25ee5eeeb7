"""
Data types for the context fusion pipeline.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


ROLES = ("user", "assistant", "system")
CLIENT_TYPES = ("desktop", "claude_code")

# SearchResult.source values
SOURCE_ACTIVE = "active_context"
SOURCE_HISTORICAL = "historical"


def utc_now() -> str:
    """Current UTC timestamp in canonical format: YYYY-MM-DDTHH:MM:SS.

    All timestamps in evna are UTC, stored without timezone suffix.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


def format_utc(dt: datetime) -> str:
    """Format a datetime as a canonical UTC timestamp string."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Handles both the canonical format (no suffix) and formats that
    include microseconds, 'Z', or '+00:00' suffixes.
    """
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def normalize_timestamp(value) -> str:
    """Coerce a datetime or timestamp string to canonical UTC format."""
    if isinstance(value, datetime):
        return format_utc(value)
    return format_utc(parse_utc_timestamp(value))


@dataclass(frozen=True)
class Annotation:
    """An inline ``key::value`` marker extracted from message content."""
    key: str
    value: str

    def __str__(self) -> str:
        return f"{self.key}::{self.value}"


@dataclass(frozen=True)
class Message:
    """
    A captured conversation message.

    Immutable once captured. ``markers`` is always the parse of
    ``content``; re-parsing the content reproduces the same sequence.
    """
    id: str
    conversation_id: str
    role: str
    content: str
    timestamp: str
    project: Optional[str] = None
    meeting: Optional[str] = None
    markers: tuple[Annotation, ...] = ()
    client_type: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "project": self.project,
            "meeting": self.meeting,
            "markers": [{"key": a.key, "value": a.value} for a in self.markers],
            "client_type": self.client_type,
        }


@dataclass(frozen=True)
class Conversation:
    """A group of messages.

    ``id`` is the storage identifier and ``conv_id`` the caller-visible one;
    they may differ and both are preserved.
    """
    id: str
    conv_id: str
    created_at: str
    title: Optional[str] = None
    markers: tuple[Annotation, ...] = ()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conv_id": self.conv_id,
            "title": self.title,
            "created_at": self.created_at,
            "markers": [{"key": a.key, "value": a.value} for a in self.markers],
        }


@dataclass(frozen=True)
class SearchResult:
    """
    One entry of a fused search answer.

    Attributes:
        message: The matched message
        conversation: Conversation the message belongs to
        similarity: Relevance in [0, 1]. Active-tier results carry a fixed
            sentinel, historical results a true similarity score.
        source: ``"active_context"`` or ``"historical"``
    """
    message: Message
    conversation: Optional[Conversation]
    similarity: float
    source: str = SOURCE_HISTORICAL

    def __str__(self) -> str:
        return f"{self.message.id} [{self.similarity:.3f}] {self.source}"

    def to_dict(self) -> dict:
        return {
            "message": self.message.to_dict(),
            "conversation": self.conversation.to_dict() if self.conversation else None,
            "similarity": self.similarity,
            "source": self.source,
        }


@dataclass
class MessageMetadata:
    """Structured metadata folded from a message's annotations."""
    project: Optional[str] = None
    issue: Optional[str] = None
    meeting: Optional[str] = None
    personas: list[str] = field(default_factory=list)
    connections: list[str] = field(default_factory=list)
    highlights: list[str] = field(default_factory=list)
    patterns: list[str] = field(default_factory=list)
    commands: list[str] = field(default_factory=list)
    ctx: dict[str, str] = field(default_factory=dict)
    extracted_timestamp: Optional[str] = None
