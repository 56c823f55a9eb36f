"""
Change event applier for the review sync cache.

The ChangeEventApplier consumes change notifications from the feed and
merges them into the RecordStore. It ensures:
- No event is applied before the first full load has produced a baseline
- Inserts and updates are applied from a full point-fetch (with joins),
  never from the partial row carried by the notification
- Duplicate and out-of-order deliveries converge, since upsert overwrites

Invariants:
    - Events are started in arrival order; handlers may interleave while
      awaiting their point-fetch
    - A point-fetch that fails or comes back empty drops the event
    - A result fetched for a superseded session is discarded
    - Applier errors are counted and logged, never raised into the feed

How to change safely:
    - Test idempotency with duplicate and reordered event injection
    - Keep point-fetch joins identical to the bulk load (see queries.py)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Set

from ..errors import ReviewSyncError, StaleReadError, describe_error
from ..models import Collection, Scan, ValidationRecord
from ..transport.base import ChangeEvent, ChangeKind, QueryTransport
from .phase import PhaseTracker
from .queries import JOINS_BY_COLLECTION
from .store import RecordStore

logger = logging.getLogger(__name__)


@dataclass
class ApplyOutcome:
    """Result of applying one change event.

    Attributes:
        event: The change event
        applied: Whether the store was changed (or confirmed) by the event
        ignored: Event arrived before a baseline existed, targets an
            untracked collection, or belonged to a superseded session
        dropped: Event referenced a record that could not be fetched
        error: Error message if processing failed
    """

    event: ChangeEvent
    applied: bool = False
    ignored: bool = False
    dropped: bool = False
    error: Optional[str] = None


class ChangeEventApplier:
    """Applies change notifications to the RecordStore.

    Thread safety:
        Runs on the event loop; ``handle`` may be passed directly to a
        ChangeFeed as its event callback.

    Example:
        >>> applier = ChangeEventApplier(store, transport, phase)
        >>> unsubscribe = feed.subscribe("channel", applier.handle, on_state)
    """

    def __init__(
        self,
        store: RecordStore,
        transport: QueryTransport,
        phase: PhaseTracker,
        count_step: int = 1,
    ) -> None:
        """Initialize the applier.

        Args:
            store: Record store to merge into
            transport: Query transport used for point-fetches
            phase: Load phase shared with the reconciliation scheduler
            count_step: Amount the profile count moves per insert/delete
        """
        self.store = store
        self.transport = transport
        self.phase = phase
        self.count_step = count_step

        self._tasks: Set[asyncio.Task] = set()
        self._applied_count = 0
        self._ignored_count = 0
        self._dropped_count = 0
        self._error_count = 0

    @property
    def pending(self) -> int:
        """Number of events scheduled but not yet processed."""
        return len(self._tasks)

    def handle(self, event: ChangeEvent) -> None:
        """Feed callback: schedule processing of one event."""
        task = asyncio.get_running_loop().create_task(self._run(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for every scheduled event to finish processing."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def apply_event(self, event: ChangeEvent) -> ApplyOutcome:
        """Apply a single change event.

        This is the core application logic, separate from the feed callback
        for testability.

        Args:
            event: Change event to apply

        Returns:
            ApplyOutcome describing what happened
        """
        if not self.phase.is_ready:
            return ApplyOutcome(event=event, ignored=True)

        if event.collection == Collection.PROFILES.value:
            return self._apply_profile_event(event)

        if event.collection not in JOINS_BY_COLLECTION:
            logger.debug("Ignoring event for untracked collection", extra={"collection": event.collection})
            return ApplyOutcome(event=event, ignored=True)

        if event.record_id is None:
            return ApplyOutcome(event=event, dropped=True, error="event carries no record id")

        if event.kind is ChangeKind.DELETE:
            self.store.remove(event.collection, event.record_id)
            return ApplyOutcome(event=event, applied=True)

        token = self.phase.token()
        try:
            record = await self._fetch_record(event.collection, event.record_id)
        except StaleReadError as e:
            return ApplyOutcome(event=event, dropped=True, error=e.message)
        except ReviewSyncError as e:
            logger.warning(
                "Point-fetch failed, dropping event",
                extra={
                    "collection": event.collection,
                    "record_id": event.record_id,
                    "error": describe_error(e),
                },
            )
            return ApplyOutcome(event=event, dropped=True, error=describe_error(e))

        if not self.phase.is_current(token) or not self.phase.is_ready:
            return ApplyOutcome(event=event, ignored=True)

        if isinstance(record, ValidationRecord):
            self.store.apply_validation(record)
        else:
            self.store.upsert(Collection.SCANS, record)
        return ApplyOutcome(event=event, applied=True)

    async def _run(self, event: ChangeEvent) -> None:
        try:
            outcome = await self.apply_event(event)
        except Exception as e:
            self._error_count += 1
            logger.error(f"Error applying change event: {e}", exc_info=True)
            return

        if outcome.applied:
            self._applied_count += 1
            logger.debug(
                "Applied change event",
                extra={
                    "kind": event.kind.value,
                    "collection": event.collection,
                    "record_id": event.record_id,
                },
            )
        elif outcome.ignored:
            self._ignored_count += 1
        elif outcome.dropped:
            self._dropped_count += 1
            logger.debug(
                "Dropped stale change event",
                extra={"collection": event.collection, "record_id": event.record_id},
            )
        if outcome.error and not outcome.dropped:
            self._error_count += 1

    def _apply_profile_event(self, event: ChangeEvent) -> ApplyOutcome:
        if event.kind is ChangeKind.INSERT:
            self.store.adjust_count(self.count_step)
        elif event.kind is ChangeKind.DELETE:
            self.store.adjust_count(-self.count_step)
        else:
            return ApplyOutcome(event=event, ignored=True)
        return ApplyOutcome(event=event, applied=True)

    async def _fetch_record(self, collection: str, record_id: Any) -> Scan | ValidationRecord:
        """Point-fetch a record with the bulk-load joins.

        Raises:
            StaleReadError: If the record no longer exists or cannot be parsed
            TransportError: If the fetch fails
        """
        row = await self.transport.fetch_one(
            collection,
            record_id,
            joins=JOINS_BY_COLLECTION[collection],
        )
        if not row:
            raise StaleReadError(collection, record_id)
        try:
            if collection == Collection.SCANS.value:
                return Scan.from_row(row)
            return ValidationRecord.from_row(row)
        except ValueError as e:
            logger.warning(f"Unparseable {collection} row {record_id}: {e}")
            raise StaleReadError(collection, record_id) from e

    @property
    def stats(self) -> dict[str, Any]:
        """Get applier statistics."""
        return {
            "in_flight": len(self._tasks),
            "applied_count": self._applied_count,
            "ignored_count": self._ignored_count,
            "dropped_count": self._dropped_count,
            "error_count": self._error_count,
        }
