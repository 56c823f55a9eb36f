"""
In-memory remote store and change feed for testing.

This module provides a backend that implements both QueryTransport and
ChangeFeed over plain dictionaries, for:
- Unit tests
- Integration tests
- The local demo, without a hosted store

Invariants:
    - All data is lost on process exit
    - Enforces the (scan_id, expert_id) uniqueness of validation_history
    - Emits a change event for every write while the feed is connected
    - Returned rows are copies; callers cannot mutate stored rows

How to change safely:
    - This is test-only code, changes don't affect the remote transports
    - Keep interface compatible with the QueryTransport/ChangeFeed protocols
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from ..errors import ConflictError, TransportError
from .base import (
    ChangeEvent,
    ChangeKind,
    FeedState,
    Join,
    OnEvent,
    OnState,
    OrderBy,
    Unsubscribe,
)

logger = logging.getLogger(__name__)


DEFAULT_UNIQUE_KEYS: Dict[str, Tuple[Tuple[str, ...], ...]] = {
    "validation_history": (("scan_id", "expert_id"),),
}


@dataclass
class _InjectedFailure:
    """A failure armed for the next matching operation."""

    operation: str
    collection: Optional[str]
    error: BaseException
    remaining: int = 1

    def matches(self, operation: str, collection: str) -> bool:
        if self.operation != operation:
            return False
        return self.collection is None or self.collection == collection


class InMemoryBackend:
    """In-memory implementation of QueryTransport and ChangeFeed.

    Attributes:
        calls: Log of (operation, collection) for every transport call
        emit_partial_rows: Deliver only the primary key in change events
        latency: Seconds each call sleeps, to force handler interleaving

    Example:
        >>> backend = InMemoryBackend()
        >>> backend.seed("scans", [{"id": 42, "status": "Pending Validation"}])
        >>> row = await backend.fetch_one("scans", 42)
    """

    def __init__(
        self,
        *,
        emit_partial_rows: bool = False,
        latency: float = 0.0,
        unique_keys: Optional[Dict[str, Tuple[Tuple[str, ...], ...]]] = None,
    ) -> None:
        self.emit_partial_rows = emit_partial_rows
        self.latency = latency
        self.calls: List[Tuple[str, str]] = []
        self._tables: Dict[str, Dict[Any, Dict[str, Any]]] = defaultdict(dict)
        self._next_id: Dict[str, int] = defaultdict(lambda: 1)
        self._unique = unique_keys if unique_keys is not None else DEFAULT_UNIQUE_KEYS
        self._failures: List[_InjectedFailure] = []
        self._subscribers: Dict[str, Tuple[OnEvent, OnState]] = {}
        self._feed_state = FeedState.CONNECTED
        self._broken_joins: Set[str] = set()

    # Query transport

    async def fetch_many(
        self,
        collection: str,
        *,
        joins: Sequence[Join] = (),
        filters: Optional[Dict[str, Any]] = None,
        order: Optional[OrderBy] = None,
        columns: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        await self._enter("fetch_many", collection)

        rows = [r for r in self._tables[collection].values() if self._matches(r, filters)]
        if order is not None:
            present = [r for r in rows if r.get(order.column) is not None]
            absent = [r for r in rows if r.get(order.column) is None]
            present.sort(key=lambda r: r[order.column], reverse=order.descending)
            rows = present + absent

        return [self._project(r, columns, joins) for r in rows]

    async def fetch_one(
        self,
        collection: str,
        record_id: Any,
        *,
        joins: Sequence[Join] = (),
    ) -> Optional[Dict[str, Any]]:
        await self._enter("fetch_one", collection)

        row = self._tables[collection].get(record_id)
        if row is None:
            return None
        return self._project(row, None, joins)

    async def count(self, collection: str) -> int:
        await self._enter("count", collection)
        return len(self._tables[collection])

    async def insert(self, collection: str, row: Dict[str, Any]) -> Dict[str, Any]:
        await self._enter("insert", collection)

        stored = copy.deepcopy(row)
        self._check_unique(collection, stored, ignore_id=None)
        if stored.get("id") is None:
            stored["id"] = self._allocate_id(collection)
        elif stored["id"] in self._tables[collection]:
            raise ConflictError(
                f'duplicate key value violates unique constraint "{collection}_pkey"'
            )
        else:
            self._bump_id(collection, stored["id"])

        self._tables[collection][stored["id"]] = stored
        self._emit(ChangeKind.INSERT, collection, stored)
        return copy.deepcopy(stored)

    async def update(
        self,
        collection: str,
        patch: Dict[str, Any],
        *,
        match: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        await self._enter("update", collection)

        updated = []
        for row in list(self._tables[collection].values()):
            if not self._matches(row, match):
                continue
            candidate = {**row, **copy.deepcopy(patch)}
            self._check_unique(collection, candidate, ignore_id=row["id"])
            row.update(copy.deepcopy(patch))
            updated.append(copy.deepcopy(row))
            self._emit(ChangeKind.UPDATE, collection, row)
        return updated

    # Change feed

    def subscribe(self, channel: str, on_event: OnEvent, on_state: OnState) -> Unsubscribe:
        self._subscribers[channel] = (on_event, on_state)
        logger.debug("In-memory feed subscribed", extra={"channel": channel})
        on_state(self._feed_state, None)

        def unsubscribe() -> None:
            self._subscribers.pop(channel, None)
            logger.debug("In-memory feed unsubscribed", extra={"channel": channel})

        return unsubscribe

    # Testing helpers

    def seed(self, collection: str, rows: Sequence[Dict[str, Any]]) -> None:
        """Store rows without emitting events (testing helper)."""
        for row in rows:
            stored = copy.deepcopy(dict(row))
            if stored.get("id") is None:
                stored["id"] = self._allocate_id(collection)
            else:
                self._bump_id(collection, stored["id"])
            self._tables[collection][stored["id"]] = stored

    def get_row(self, collection: str, record_id: Any) -> Optional[Dict[str, Any]]:
        """Current stored row, without joins (testing helper)."""
        row = self._tables[collection].get(record_id)
        return copy.deepcopy(row) if row is not None else None

    def rows(self, collection: str) -> List[Dict[str, Any]]:
        """All stored rows of a table (testing helper)."""
        return [copy.deepcopy(r) for r in self._tables[collection].values()]

    def delete(self, collection: str, record_id: Any) -> bool:
        """Delete a row as another client would, emitting a delete event."""
        row = self._tables[collection].pop(record_id, None)
        if row is None:
            return False
        self._emit(ChangeKind.DELETE, collection, row)
        return True

    def emit(self, event: ChangeEvent) -> None:
        """Deliver a hand-built event to every subscriber (testing helper)."""
        for on_event, _ in list(self._subscribers.values()):
            on_event(event)

    def set_feed_state(self, state: FeedState, error: Optional[BaseException] = None) -> None:
        """Report a feed state transition to every subscriber."""
        self._feed_state = state
        for _, on_state in list(self._subscribers.values()):
            on_state(state, error)

    def fail_next(
        self,
        operation: str,
        collection: Optional[str] = None,
        error: Optional[BaseException] = None,
        times: int = 1,
    ) -> None:
        """Arm a failure for the next matching operation(s).

        Args:
            operation: fetch_many, fetch_one, count, insert or update
            collection: Restrict to one table (None = any)
            error: Exception to raise (default: TransportError)
            times: Number of consecutive matching calls that fail
        """
        self._failures.append(
            _InjectedFailure(
                operation=operation,
                collection=collection,
                error=error or TransportError(f"injected {operation} failure", status=500),
                remaining=times,
            )
        )

    def break_join(self, alias: str) -> None:
        """Make a join come back empty, as for rows predating a backfill."""
        self._broken_joins.add(alias)

    def call_count(self, operation: Optional[str] = None) -> int:
        """Number of transport calls, optionally of one operation."""
        if operation is None:
            return len(self.calls)
        return sum(1 for op, _ in self.calls if op == operation)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # Internals

    async def _enter(self, operation: str, collection: str) -> None:
        self.calls.append((operation, collection))
        await asyncio.sleep(self.latency)

        for failure in self._failures:
            if failure.matches(operation, collection):
                failure.remaining -= 1
                if failure.remaining <= 0:
                    self._failures.remove(failure)
                raise failure.error

    def _emit(self, kind: ChangeKind, collection: str, row: Dict[str, Any]) -> None:
        if self._feed_state is not FeedState.CONNECTED:
            return
        delivered = {"id": row["id"]} if self.emit_partial_rows else copy.deepcopy(row)
        self.emit(
            ChangeEvent(kind=kind, collection=collection, record_id=row["id"], row=delivered)
        )

    def _project(
        self,
        row: Dict[str, Any],
        columns: Optional[Sequence[str]],
        joins: Sequence[Join],
    ) -> Dict[str, Any]:
        if columns:
            result = {c: copy.deepcopy(row.get(c)) for c in columns}
        else:
            result = copy.deepcopy(row)
        for join in joins:
            result[join.alias] = self._resolve_join(row, join)
        return result

    def _resolve_join(self, row: Dict[str, Any], join: Join) -> Optional[Dict[str, Any]]:
        if join.alias in self._broken_joins:
            return None
        target = self._tables[join.table].get(row.get(join.local_key))
        if target is None:
            return None
        return self._project(target, join.columns or None, join.joins)

    def _check_unique(
        self,
        collection: str,
        row: Dict[str, Any],
        ignore_id: Any,
    ) -> None:
        for key in self._unique.get(collection, ()):
            values = tuple(row.get(c) for c in key)
            for existing in self._tables[collection].values():
                if existing["id"] == ignore_id:
                    continue
                if tuple(existing.get(c) for c in key) == values:
                    raise ConflictError(
                        f'duplicate key value violates unique constraint on {collection} {key}',
                        detail=f"Key {key}=({', '.join(map(str, values))}) already exists.",
                    )

    def _allocate_id(self, collection: str) -> int:
        record_id = self._next_id[collection]
        self._next_id[collection] = record_id + 1
        return record_id

    def _bump_id(self, collection: str, record_id: Any) -> None:
        if isinstance(record_id, int) and record_id >= self._next_id[collection]:
            self._next_id[collection] = record_id + 1

    @staticmethod
    def _matches(row: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
        if not filters:
            return True
        for column, expected in filters.items():
            value = row.get(column)
            if isinstance(expected, (list, tuple, set, frozenset)):
                if value not in expected:
                    return False
            elif value != expected:
                return False
        return True
