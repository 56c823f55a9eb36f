"""
Transport abstraction for the remote store and its change feed.

This module provides pluggable backends for:
- PostgREST-style query/mutation API (httpx)
- Realtime change feed over websockets (aiohttp)
- In-memory store and feed (for testing)

The remote store is the source of truth. The client cache is a derived
view that can be rebuilt from a full fetch.

Invariants:
    - Every failure surfaces as a TransportError subclass
    - Change events are at-least-once and carry no ordering guarantee
    - Uniqueness violations surface as ConflictError

How to change safely:
    - New backends must implement the QueryTransport/ChangeFeed protocols
    - Exercise new backends against the same scenarios as the memory backend
"""

from .base import (
    ChangeEvent,
    ChangeFeed,
    ChangeKind,
    FeedState,
    Join,
    OrderBy,
    QueryTransport,
    create_transport,
)
from .memory import InMemoryBackend
from .postgrest import PostgrestTransport
from .realtime import RealtimeFeed

__all__ = [
    # Protocols and types
    "QueryTransport",
    "ChangeFeed",
    "ChangeEvent",
    "ChangeKind",
    "FeedState",
    "Join",
    "OrderBy",
    # Factory
    "create_transport",
    # Implementations
    "InMemoryBackend",
    "PostgrestTransport",
    "RealtimeFeed",
]
