"""
Read markers over the scans awaiting validation.

The PendingInbox treats every pending scan as a notification for the
expert. Scans the expert has seen are marked read; the unread count is the
number of pending scans without a marker.

Invariants:
    - Markers only exist for scans that are currently pending; a scan that
      is validated, corrected or removed loses its marker on the next store
      change
    - The inbox never mutates the store
    - Markers are session state; clearing the store drops them all

How to change safely:
    - Keep pruning inside the store listener so it runs in the same step
      as the change that made a scan non-pending
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, List, Optional, Set

from ..models import Scan
from .store import RecordStore

logger = logging.getLogger(__name__)


class PendingInbox:
    """Pending scans with per-scan read markers.

    Example:
        >>> inbox = PendingInbox(store)
        >>> inbox.unread_count
        3
        >>> inbox.mark_read([42])
        True
        >>> inbox.unread_count
        2
    """

    def __init__(self, store: RecordStore) -> None:
        self.store = store
        self._read: Set[int] = set()
        self._unsubscribe: Optional[Callable[[], None]] = store.subscribe(self._on_store_change)

    @property
    def pending(self) -> List[Scan]:
        """Scans awaiting validation, newest first."""
        return self.store.pending_scans()

    @property
    def unread(self) -> List[Scan]:
        return [scan for scan in self.pending if scan.id not in self._read]

    @property
    def unread_count(self) -> int:
        return sum(1 for scan in self.pending if scan.id not in self._read)

    @property
    def read_ids(self) -> Set[int]:
        return set(self._read)

    def is_read(self, scan_id: int) -> bool:
        return scan_id in self._read

    def mark_read(self, scan_ids: Iterable[int]) -> bool:
        """Mark pending scans as read.

        Ids of scans that are not pending are ignored.

        Returns:
            True if at least one new marker was added
        """
        pending_ids = {scan.id for scan in self.pending}
        added = {scan_id for scan_id in scan_ids if scan_id in pending_ids} - self._read
        if not added:
            return False
        self._read |= added
        logger.debug("Marked scans as read", extra={"scan_ids": sorted(added)})
        return True

    def mark_all_read(self) -> bool:
        return self.mark_read(scan.id for scan in self.pending)

    def close(self) -> None:
        """Stop following the store."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_store_change(self, store: RecordStore) -> None:
        if not self._read:
            return
        pending_ids = {scan.id for scan in store.pending_scans()}
        stale = self._read - pending_ids
        if stale:
            self._read -= stale
            logger.debug("Dropped read markers", extra={"scan_ids": sorted(stale)})
