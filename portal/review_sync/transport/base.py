"""
Base protocols and types for the remote store transports.

This module defines the QueryTransport and ChangeFeed protocols that every
backend implements, along with the change event, feed state and join
description types shared by all of them.

Invariants:
    - Change events carry the collection, the kind, and either the affected
      id or enough of the row to extract it
    - Transports never mutate caller-supplied rows
    - Every transport failure is a TransportError subclass

How to change safely:
    - Protocol changes require updating the memory, PostgREST and realtime
      implementations together
    - Keep Join rendering backend-neutral; backends interpret it themselves
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

if TYPE_CHECKING:
    from ..config import ConnectionSettings


class ChangeKind(str, Enum):
    """Kind of remote change carried by a notification."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class FeedState(str, Enum):
    """Subscription health as reported by the change feed."""

    CONNECTED = "connected"
    DEGRADED = "degraded"
    CLOSED = "closed"


@dataclass(frozen=True)
class ChangeEvent:
    """A change notification from the feed.

    The row is possibly partial: join fields are never included and
    some feeds only deliver the primary key.

    Attributes:
        kind: insert, update or delete
        collection: Table name the change applies to
        record_id: Identity of the affected row (None if not extractable)
        row: Whatever columns the feed delivered
        received_ms: Arrival time (Unix ms)

    Example:
        {
            "type": "INSERT",
            "table": "validation_history",
            "record": {"id": 7, "scan_id": 42},
            "old_record": {}
        }
    """

    kind: ChangeKind
    collection: str
    record_id: Any
    row: Dict[str, Any] = field(default_factory=dict)
    received_ms: int = field(default_factory=lambda: int(time.time() * 1000))

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> ChangeEvent:
        """Create from a feed payload.

        Args:
            data: Payload with ``type``, ``table`` and ``record``/``old_record``

        Returns:
            ChangeEvent instance

        Raises:
            ValueError: If the kind or table is missing or unknown, or the
                record is not an object
        """
        missing = [f for f in ("type", "table") if not data.get(f)]
        if missing:
            raise ValueError(f"Missing required fields: {missing}")

        try:
            kind = ChangeKind(str(data["type"]).lower())
        except ValueError:
            raise ValueError(f"Unknown change type: {data['type']}")

        if kind is ChangeKind.DELETE:
            row = data.get("old_record") or data.get("old") or {}
        else:
            row = data.get("record") or data.get("new") or {}
        if not isinstance(row, dict):
            raise ValueError(f"Change record is not an object: {type(row).__name__}")

        return cls(
            kind=kind,
            collection=str(data["table"]),
            record_id=row.get("id"),
            row=dict(row),
        )


@dataclass(frozen=True)
class Join:
    """An embedded relation fetched alongside a row.

    Attributes:
        alias: Key the joined row is stored under (e.g. "farmer_profile")
        table: Joined table
        local_key: Column on the parent row referencing ``table.id``
        constraint: Foreign key name, used to disambiguate relations
        columns: Columns to select from the joined row (empty = all)
        joins: Nested joins on the joined row
    """

    alias: str
    table: str
    local_key: str
    constraint: Optional[str] = None
    columns: Tuple[str, ...] = ()
    joins: Tuple["Join", ...] = ()


@dataclass(frozen=True)
class OrderBy:
    """Ordering of a bulk fetch."""

    column: str
    descending: bool = True


OnEvent = Callable[[ChangeEvent], None]
OnState = Callable[[FeedState, Optional[BaseException]], None]
Unsubscribe = Callable[[], None]


@runtime_checkable
class QueryTransport(Protocol):
    """Protocol for fetch/insert/update against the remote store.

    All calls are asynchronous and fallible. Timeouts are the transport's
    responsibility and surface as TransportUnavailableError.
    """

    async def fetch_many(
        self,
        collection: str,
        *,
        joins: Sequence[Join] = (),
        filters: Optional[Dict[str, Any]] = None,
        order: Optional[OrderBy] = None,
        columns: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch rows with their joins.

        Args:
            collection: Table name
            joins: Embedded relations to resolve
            filters: Column equality filters; list/tuple/set values mean "in"
            order: Optional ordering
            columns: Columns to select (default all)

        Returns:
            Matching rows (possibly empty)

        Raises:
            TransportError: If the store rejects the query
            TransportUnavailableError: If the store cannot be reached
        """
        ...

    async def fetch_one(
        self,
        collection: str,
        record_id: Any,
        *,
        joins: Sequence[Join] = (),
    ) -> Optional[Dict[str, Any]]:
        """Point-fetch one row by id; None when absent."""
        ...

    async def count(self, collection: str) -> int:
        """Exact row count of a table."""
        ...

    async def insert(self, collection: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a row and return it as stored.

        Raises:
            ConflictError: If a uniqueness constraint rejects the row
            TransportError: For other failures
        """
        ...

    async def update(
        self,
        collection: str,
        patch: Dict[str, Any],
        *,
        match: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        """Patch every row matching ``match``; returns the updated rows."""
        ...


@runtime_checkable
class ChangeFeed(Protocol):
    """Protocol for the push-based change feed.

    Ordering contract:
        - None. Events are at-least-once and may arrive out of commit order
        - State callbacks report connected/degraded/closed transitions
    """

    def subscribe(self, channel: str, on_event: OnEvent, on_state: OnState) -> Unsubscribe:
        """Subscribe to changes on the tracked tables.

        Args:
            channel: Channel name (unique per session)
            on_event: Called once per received change event
            on_state: Called on every feed state transition

        Returns:
            Callable that ends the subscription
        """
        ...


def create_transport(settings: "ConnectionSettings") -> Tuple[QueryTransport, ChangeFeed]:
    """Factory function to create the remote transports from settings.

    Args:
        settings: Connection settings

    Returns:
        (query transport, change feed) pair

    Raises:
        ValueError: If the settings do not name a store URL
    """
    from .postgrest import PostgrestTransport
    from .realtime import RealtimeFeed

    if not settings.url:
        raise ValueError("SUPABASE_URL is required to create a remote transport")
    return PostgrestTransport(settings), RealtimeFeed(settings)
