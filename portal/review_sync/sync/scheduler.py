"""
Full reconciliation of the record store against the remote store.

The ReconciliationScheduler performs bulk reloads of scans, validations
and the profile count. It runs on identity arrival (first load), when the
presentation regains visibility, when the change feed degrades, and on an
explicit user retry.

Invariants:
    - At most one reload per session is in flight; extra requests are
      dropped, never queued
    - No reload runs without an identity
    - A reload commits all collections in one store batch, or nothing
    - A reload finishing after its session was reset is discarded
    - A row that fails to parse is skipped and counted, never fatal to the load
    - The first successful reload moves the phase to Ready, which is what
      lets the applier start processing events

How to change safely:
    - Keep the bulk joins in queries.py in step with the point-fetch joins
    - Backfill failures must stay non-fatal; the rows are still usable
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set, TypeVar

from ..config import ReconcileConfig
from ..errors import ReviewSyncError, describe_error
from ..models import Collection, ProfileRef, Scan, ValidationRecord
from ..transport.base import FeedState, QueryTransport
from .phase import PhaseToken, PhaseTracker
from .queries import (
    EXPERT_PROFILE_COLUMNS,
    SCAN_JOINS,
    SCAN_ORDER,
    VALIDATION_JOINS,
    VALIDATION_ORDER,
)
from .session import IdentityProvider
from .store import RecordStore

logger = logging.getLogger(__name__)

_DEGRADED = (FeedState.DEGRADED, FeedState.CLOSED)

T = TypeVar("T")


class ReconciliationScheduler:
    """Performs full reloads and decides when they are needed.

    Example:
        >>> scheduler = ReconciliationScheduler(store, transport, phase, gate)
        >>> await scheduler.on_identity_available()
        >>> scheduler.on_feed_state(FeedState.DEGRADED, None)
    """

    def __init__(
        self,
        store: RecordStore,
        transport: QueryTransport,
        phase: PhaseTracker,
        identity: IdentityProvider,
        config: Optional[ReconcileConfig] = None,
    ) -> None:
        self.store = store
        self.transport = transport
        self.phase = phase
        self.identity = identity
        self.config = config or ReconcileConfig()

        self._in_flight: Optional[PhaseToken] = None
        self._feed_state: Optional[FeedState] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._reload_count = 0
        self._dropped_count = 0
        self._failure_count = 0
        self._skipped_rows = 0

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None and self.phase.is_current(self._in_flight)

    @property
    def feed_state(self) -> Optional[FeedState]:
        return self._feed_state

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def pending(self) -> int:
        """Number of background reloads not yet finished."""
        return len(self._tasks)

    async def reload(self, force_spinner: bool = False) -> bool:
        """Fetch everything and replace the store contents.

        Args:
            force_spinner: Raise the loading flag even after the first load

        Returns:
            True if fresh data was committed to the store
        """
        identity = self.identity.current_identity()
        if not identity:
            return False
        if self.in_flight:
            self._dropped_count += 1
            logger.debug("Reload already in flight, dropping request")
            return False

        token = self.phase.begin_load()
        self._in_flight = token
        if force_spinner or not self.phase.is_ready:
            self.store.set_status(loading=True)

        try:
            self.store.set_status(error=None)
            scans, validations, count = await self._fetch_snapshot()

            if not self.phase.is_current(token) or self.identity.current_identity() != identity:
                logger.info("Discarding reload for a superseded session")
                return False

            with self.store.batch():
                self.store.set_all(Collection.SCANS, scans)
                self.store.set_all(Collection.VALIDATIONS, validations)
                self.store.set_count(count)
                self.phase.complete_load(token)

            self._reload_count += 1
            logger.info(
                "Reconciled record store",
                extra={"scans": len(scans), "validations": len(validations), "profiles": count},
            )
            return True

        except (ReviewSyncError, ValueError) as e:
            self._failure_count += 1
            logger.error(f"Error fetching dashboard data: {describe_error(e)}")
            if self.phase.is_current(token):
                self.store.set_status(error=f"Failed to load data: {describe_error(e)}")
                self.phase.fail_load(token)
            return False

        finally:
            if self._in_flight == token:
                self._in_flight = None
            if self.phase.is_current(token):
                self.store.set_status(loading=False)

    async def on_identity_available(self) -> bool:
        """First load for a new session, with spinner."""
        return await self.reload(force_spinner=True)

    async def on_visibility_change(self, visible: bool) -> bool:
        """Reload when the presentation comes back to the foreground."""
        if not visible:
            return False
        return await self.reload()

    async def retry(self) -> bool:
        """Explicit user-initiated retry."""
        return await self.reload(force_spinner=True)

    def on_feed_state(self, state: FeedState, error: Optional[BaseException] = None) -> None:
        """Feed state callback.

        Entering degraded/closed triggers exactly one reload (when a baseline
        exists) and starts fallback polling. Returning to connected stops the
        polling and reloads once more, since the feed never replays what was
        missed in between.
        """
        previous = self._feed_state
        self._feed_state = state

        if state is FeedState.CONNECTED:
            self._stop_polling()
            if previous in _DEGRADED:
                logger.info("Change feed recovered, reconciling missed changes")
                if self.phase.is_ready:
                    self.spawn(self.reload())
            return

        if previous in _DEGRADED:
            return

        logger.warning(
            "Change feed lost, falling back to full reconciliation",
            extra={"state": state.value, "error": describe_error(error) if error else None},
        )
        if self.phase.is_ready:
            self.spawn(self.reload())
        self._start_polling()

    def spawn(self, coro: Any) -> asyncio.Task:
        """Run a reload (or other coroutine) in the background."""
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for background reloads to finish (polling excluded)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def reset(self) -> None:
        """Forget feed state and stop polling (session ended)."""
        self._feed_state = None
        self._stop_polling()

    async def stop(self) -> None:
        self.reset()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _fetch_snapshot(self) -> tuple[List[Scan], List[ValidationRecord], int]:
        scan_rows, validation_rows, count = await asyncio.gather(
            self.transport.fetch_many(
                Collection.SCANS.value,
                joins=SCAN_JOINS,
                order=SCAN_ORDER,
            ),
            self.transport.fetch_many(
                Collection.VALIDATIONS.value,
                joins=VALIDATION_JOINS,
                order=VALIDATION_ORDER,
            ),
            self.transport.count(Collection.PROFILES.value),
        )

        scans = self._parse_rows(Collection.SCANS, Scan.from_row, scan_rows)
        validations = self._parse_rows(
            Collection.VALIDATIONS, ValidationRecord.from_row, validation_rows
        )
        validations = await self._backfill_expert_profiles(validations)
        return scans, validations, count

    def _parse_rows(
        self,
        collection: Collection,
        parse: Callable[[Dict[str, Any]], T],
        rows: List[Dict[str, Any]],
    ) -> List[T]:
        """Parse bulk rows, skipping (and counting) any that fail to parse."""
        parsed: List[T] = []
        for row in rows:
            try:
                parsed.append(parse(row))
            except ValueError as e:
                self._skipped_rows += 1
                logger.warning(
                    f"Skipping unparseable {collection.value} row {row.get('id')}: {e}"
                )
        return parsed

    async def _backfill_expert_profiles(
        self,
        validations: List[ValidationRecord],
    ) -> List[ValidationRecord]:
        """Resolve expert profiles the join left empty, in one batched fetch."""
        missing = sorted({v.expert_id for v in validations if v.needs_expert_profile})
        if not missing:
            return validations

        try:
            rows = await self.transport.fetch_many(
                Collection.PROFILES.value,
                filters={"id": missing},
                columns=EXPERT_PROFILE_COLUMNS,
            )
        except ReviewSyncError as e:
            logger.error(f"Error fetching expert profiles: {describe_error(e)}")
            return validations

        profiles = {}
        for row in rows:
            profile = ProfileRef.from_row(row)
            if profile is not None:
                profiles[profile.id] = profile

        logger.debug(
            "Backfilled expert profiles",
            extra={"requested": len(missing), "resolved": len(profiles)},
        )
        return [
            v.with_expert_profile(profiles[v.expert_id])
            if v.needs_expert_profile and v.expert_id in profiles
            else v
            for v in validations
        ]

    def _start_polling(self) -> None:
        if self.config.fallback_poll_seconds <= 0 or self.polling:
            return
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())

    def _stop_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    async def _poll_loop(self) -> None:
        interval = self.config.fallback_poll_seconds
        while self._feed_state in _DEGRADED:
            await asyncio.sleep(interval)
            if self._feed_state not in _DEGRADED:
                break
            await self.reload()

    @property
    def stats(self) -> dict[str, Any]:
        """Get scheduler statistics."""
        return {
            "phase": self.phase.phase.value,
            "in_flight": self.in_flight,
            "feed_state": self._feed_state.value if self._feed_state else None,
            "polling": self.polling,
            "reload_count": self._reload_count,
            "dropped_count": self._dropped_count,
            "failure_count": self._failure_count,
            "skipped_rows": self._skipped_rows,
        }
