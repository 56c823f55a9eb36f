"""
In-memory replica of the remote scans and validation history.

The RecordStore is the single mutable shared resource of the sync core.
It is written by three producers only (the change event applier, the
reconciliation scheduler and the mutation coordinator's optimistic step)
and read by presentation through immutable snapshots.

Invariants:
    - A collection never holds two records with the same id
    - upsert overwrites, remove of an absent id is a no-op
    - Mutations are synchronous; inside batch() listeners fire once, after
      the whole step, so no reader observes a partial update
    - A validation's outcome is reflected onto its scan in the same step,
      and only when it is the most recent validation held for that scan
    - The profile count never goes negative

How to change safely:
    - Never add an await inside a mutation; atomicity relies on the event
      loop not interleaving synchronous code
    - New derived fields must be recomputed inside the mutating batch
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from ..models import Collection, Record, Scan, ScanStatus, ScanType, ValidationRecord

logger = logging.getLogger(__name__)

Listener = Callable[["RecordStore"], None]

_UNSET: Any = object()


class RecordStore:
    """Client-side replica of scans, validations and the profile count.

    Example:
        >>> store = RecordStore()
        >>> unsubscribe = store.subscribe(lambda s: render(s.scans))
        >>> store.upsert(Collection.SCANS, scan)
        >>> store.pending_scans(ScanType.LEAF_DISEASE)
    """

    def __init__(self) -> None:
        self._scans: Dict[int, Scan] = {}
        self._validations: Dict[int, ValidationRecord] = {}
        self._count = 0
        self._loading = False
        self._error: Optional[str] = None
        self._version = 0
        self._listeners: List[Listener] = []
        self._batch_depth = 0
        self._dirty = False
        self._snapshots: Dict[str, Tuple[Any, ...]] = {}

    # --- Read operations ---

    @property
    def scans(self) -> Tuple[Scan, ...]:
        """Scans, newest first."""
        return self._snapshot(Collection.SCANS.value, self._scans)

    @property
    def validations(self) -> Tuple[ValidationRecord, ...]:
        """Validation records, most recently validated first."""
        return self._snapshot(Collection.VALIDATIONS.value, self._validations)

    @property
    def count(self) -> int:
        return self._count

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def version(self) -> int:
        """Incremented on every committed change."""
        return self._version

    def get(self, collection: Union[Collection, str], record_id: Any) -> Optional[Record]:
        return self._table(collection).get(record_id)

    def get_scan(self, scan_id: int) -> Optional[Scan]:
        return self._scans.get(scan_id)

    def pending_scans(
        self,
        scan_type: Optional[ScanType] = None,
        on_date: Optional[date] = None,
    ) -> List[Scan]:
        """Scans awaiting validation, optionally filtered by type and day."""
        result = []
        for scan in self.scans:
            if not scan.is_pending:
                continue
            if scan_type is not None and scan.scan_type is not scan_type:
                continue
            if on_date is not None and scan.created_on() != on_date:
                continue
            result.append(scan)
        return result

    def validations_for(self, scan_id: int) -> List[ValidationRecord]:
        return [v for v in self.validations if v.scan_id == scan_id]

    def __len__(self) -> int:
        return len(self._scans) + len(self._validations)

    # --- Write operations ---

    def upsert(self, collection: Union[Collection, str], record: Record) -> None:
        """Insert or overwrite a record by id."""
        table = self._table(collection)
        self._check_type(collection, record)
        table[record.id] = record
        self._changed()

    def remove(self, collection: Union[Collection, str], record_id: Any) -> bool:
        """Remove a record; returns False (and changes nothing) if absent."""
        table = self._table(collection)
        if table.pop(record_id, None) is None:
            return False
        self._changed()
        return True

    def set_all(self, collection: Union[Collection, str], records: Iterable[Record]) -> None:
        """Replace a whole collection; later duplicates overwrite earlier ones."""
        table = self._table(collection)
        replacement = {}
        for record in records:
            self._check_type(collection, record)
            replacement[record.id] = record
        table.clear()
        table.update(replacement)
        self._changed()

    def adjust_count(self, delta: int) -> int:
        """Move the derived count by ``delta``, clamped at zero."""
        updated = max(0, self._count + delta)
        if updated != self._count:
            self._count = updated
            self._changed()
        return self._count

    def set_count(self, value: int) -> None:
        value = max(0, value)
        if value != self._count:
            self._count = value
            self._changed()

    def apply_validation(self, record: ValidationRecord) -> bool:
        """Upsert a validation and reflect its outcome onto the parent scan.

        Returns:
            True if the parent scan was updated
        """
        with self.batch():
            self._validations[record.id] = record
            self._changed()
            latest = max(
                (v for v in self._validations.values() if v.scan_id == record.scan_id),
                key=ValidationRecord.sort_key,
            )
            if latest.id != record.id:
                return False
            return self.reflect_outcome(record.scan_id, record.status, record.expert_validation)

    def reflect_outcome(
        self,
        scan_id: int,
        status: ScanStatus,
        expert_validation: Optional[str],
    ) -> bool:
        """Set a scan's status and determination; False if the scan is absent."""
        scan = self._scans.get(scan_id)
        if scan is None:
            return False
        updated = scan.with_outcome(status, expert_validation)
        if updated != scan:
            self._scans[scan_id] = updated
            self._changed()
        return True

    def set_status(self, *, loading: Any = _UNSET, error: Any = _UNSET) -> None:
        """Update the loading flag and/or the last load error."""
        changed = False
        if loading is not _UNSET and loading != self._loading:
            self._loading = bool(loading)
            changed = True
        if error is not _UNSET and error != self._error:
            self._error = error
            changed = True
        if changed:
            self._changed()

    def clear(self) -> None:
        """Purge everything (used when the identity goes away)."""
        with self.batch():
            self._scans.clear()
            self._validations.clear()
            self._count = 0
            self._loading = False
            self._error = None
            self._changed()

    # --- Change notification ---

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @contextmanager
    def batch(self) -> Iterator[RecordStore]:
        """Group mutations so listeners are notified once, at the end."""
        self._batch_depth += 1
        try:
            yield self
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._dirty:
                self._dirty = False
                self._notify()

    # --- Internals ---

    def _table(self, collection: Union[Collection, str]) -> Dict[int, Any]:
        name = Collection(collection)
        if name is Collection.SCANS:
            return self._scans
        if name is Collection.VALIDATIONS:
            return self._validations
        raise ValueError(f"{name.value} is not a record collection")

    @staticmethod
    def _check_type(collection: Union[Collection, str], record: Record) -> None:
        expected = Scan if Collection(collection) is Collection.SCANS else ValidationRecord
        if not isinstance(record, expected):
            raise TypeError(
                f"{Collection(collection).value} holds {expected.__name__}, "
                f"got {type(record).__name__}"
            )

    def _snapshot(self, key: str, table: Dict[int, Any]) -> Tuple[Any, ...]:
        cached = self._snapshots.get(key)
        if cached is None:
            cached = tuple(sorted(table.values(), key=lambda r: r.sort_key(), reverse=True))
            self._snapshots[key] = cached
        return cached

    def _changed(self) -> None:
        self._version += 1
        self._snapshots.clear()
        if self._batch_depth:
            self._dirty = True
        else:
            self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Store listener failed")
