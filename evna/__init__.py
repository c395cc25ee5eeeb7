"""
Evna context fusion

Live conversation context fused with semantic search over historical
archives.

Quick Start:
    from evna import Evna

    ev = Evna()  # uses ~/.evna/
    await ev.capture("conv-1", "user", "ctx::review project::evna parser edge cases")
    results = await ev.search("parser edge cases")

CLI Usage:
    evna capture "ctx::2025-10-31 @ 9:00 AM project::evna morning review"
    evna context --client claude_code --subsequent
    evna search "annotation grammar" --project evna
    evna watch

Environment Variables:
    EVNA_STORE_PATH        - Override default store location
    EVNA_VERBOSE           - Set to 1 for debug logging
    CLOUDFLARE_ACCOUNT_ID  - Account for historical search
    AUTORAG_API_TOKEN      - API token for historical search
    FLOATCTL_BIN           - floatctl binary used by the write coalescer

The store is initialized automatically on first use. Configuration is persisted
in a TOML file within the store directory.
"""

from .active_context import ActiveContextStream
from .annotations import AnnotationParser, parse_annotations
from .api import Evna
from .coalescer import FloatctlSyncTrigger, WriteCoalescer
from .errors import CaptureFailed, EvnaError, RetrievalFailed, SyncTriggerFailed
from .fusion import FusionRetriever, format_results
from .session import ClientAwareSession
from .types import Annotation, Conversation, Message, MessageMetadata, SearchResult

__version__ = "0.1.0"
__all__ = [
    "Evna",
    "AnnotationParser",
    "parse_annotations",
    "ActiveContextStream",
    "ClientAwareSession",
    "FusionRetriever",
    "format_results",
    "WriteCoalescer",
    "FloatctlSyncTrigger",
    "Annotation",
    "Message",
    "MessageMetadata",
    "Conversation",
    "SearchResult",
    "EvnaError",
    "CaptureFailed",
    "RetrievalFailed",
    "SyncTriggerFailed",
]
