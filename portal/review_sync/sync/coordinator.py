"""
Optimistic "validate a scan" workflow with compensating rollback.

The MutationCoordinator executes an expert's confirm/correct decision as a
sequence of transport calls:

    1. transition the scan's status and expert determination
    2. insert the validation record (update it on a uniqueness conflict)
    3. on success: update the store, clear drafts, reconcile
    4. on audit failure: revert the scan's status and determination (best effort)

Invariants:
    - Precondition failures never reach the transport
    - A failed step never leaves a partial patch in the store
    - No permanent status change without a matching validation record,
      unless the compensating write itself fails; that case is recorded
      in ``unresolved`` and a reconciliation is scheduled
    - At most one submit per scan is outstanding; other scans proceed

How to change safely:
    - Keep the steps sequential; they are not split across the change feed
    - Never retry the whole workflow automatically
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from ..errors import (
    ConflictError,
    PartialFailureError,
    ReviewSyncError,
    ValidationPreconditionError,
    describe_error,
)
from ..models import Collection, ScanStatus, ValidationRecord, format_timestamp, utcnow
from ..transport.base import QueryTransport
from .scheduler import ReconciliationScheduler
from .session import IdentityProvider
from .store import RecordStore

logger = logging.getLogger(__name__)

Notifier = Callable[[str, str], None]


class Action(str, Enum):
    CONFIRM = "confirm"
    CORRECT = "correct"


def log_notifier(level: str, message: str) -> None:
    """Default notifier: user-facing messages go to the log."""
    if level == "error":
        logger.warning(message)
    else:
        logger.info(message)


class DraftBook:
    """Per-scan draft notes and corrected values held before submit."""

    def __init__(self) -> None:
        self._notes: Dict[int, str] = {}
        self._decisions: Dict[int, str] = {}

    def set_note(self, scan_id: int, note: str) -> None:
        self._notes[scan_id] = note

    def set_decision(self, scan_id: int, decision: str) -> None:
        self._decisions[scan_id] = decision

    def note(self, scan_id: int) -> Optional[str]:
        return self._notes.get(scan_id)

    def decision(self, scan_id: int) -> Optional[str]:
        return self._decisions.get(scan_id)

    def has_decision(self, scan_id: int) -> bool:
        return bool((self._decisions.get(scan_id) or "").strip())

    def delete(self, scan_id: int) -> None:
        self._notes.pop(scan_id, None)
        self._decisions.pop(scan_id, None)

    def clear(self) -> None:
        self._notes.clear()
        self._decisions.clear()

    def __contains__(self, scan_id: object) -> bool:
        return scan_id in self._notes or scan_id in self._decisions


@dataclass
class SubmitResult:
    """Result of one submit.

    Attributes:
        scan_id: Target scan
        action: confirm or correct
        success: Whether the decision was recorded
        skipped: Another submit for this scan was already in flight
        record: Validation record written (None if the store returned none)
        error: Error message if failed
        error_code: Code of the error class that caused the failure
        rolled_back: After a partial failure, whether the status was reverted
    """

    scan_id: int
    action: Action
    success: bool
    skipped: bool = False
    record: Optional[ValidationRecord] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    rolled_back: Optional[bool] = None

    @property
    def rollback_failed(self) -> bool:
        return self.rolled_back is False


@dataclass
class Inconsistency:
    """A scan left transitioned without an audit record."""

    scan_id: int
    intended_status: ScanStatus
    original_status: ScanStatus
    error: str
    detected_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class _SubmitPlan:
    scan_id: int
    action: Action
    expert_id: str
    ai_prediction: str
    determination: str
    status: ScanStatus
    original_status: ScanStatus
    original_determination: Optional[str]
    note: Optional[str]
    timestamp: str


class MutationCoordinator:
    """Runs the confirm/correct workflow for expert decisions.

    Example:
        >>> coordinator = MutationCoordinator(store, transport, gate, scheduler)
        >>> result = await coordinator.submit(42, "confirm")
        >>> result.success
        True
    """

    def __init__(
        self,
        store: RecordStore,
        transport: QueryTransport,
        identity: IdentityProvider,
        scheduler: ReconciliationScheduler,
        notifier: Optional[Notifier] = None,
        drafts: Optional[DraftBook] = None,
    ) -> None:
        self.store = store
        self.transport = transport
        self.identity = identity
        self.scheduler = scheduler
        self.notifier = notifier or log_notifier
        self.drafts = drafts or DraftBook()

        self._in_flight: Set[int] = set()
        self._unresolved: List[Inconsistency] = []

    @property
    def unresolved(self) -> List[Inconsistency]:
        """Scans whose rollback failed, oldest first."""
        return list(self._unresolved)

    def is_processing(self, scan_id: int) -> bool:
        return scan_id in self._in_flight

    async def submit(
        self,
        scan_id: int,
        action: Action | str,
        note: Optional[str] = None,
        corrected_value: Optional[str] = None,
    ) -> SubmitResult:
        """Record an expert decision on a scan.

        Args:
            scan_id: Scan to act on
            action: "confirm" (prediction is right) or "correct"
            note: Optional comment (defaults to the scan's draft note)
            corrected_value: Determination for "correct" (defaults to draft)

        Returns:
            SubmitResult describing the outcome
        """
        action = Action(action)
        if scan_id in self._in_flight:
            logger.debug("Submit already in flight", extra={"scan_id": scan_id})
            return SubmitResult(scan_id=scan_id, action=action, success=False, skipped=True)

        try:
            plan = self._plan(scan_id, action, note, corrected_value)
        except ValidationPreconditionError as e:
            self.notifier("error", e.message)
            return SubmitResult(
                scan_id=scan_id,
                action=action,
                success=False,
                error=e.message,
                error_code=e.code,
            )

        self._in_flight.add(scan_id)
        try:
            return await self._execute(plan)
        finally:
            self._in_flight.discard(scan_id)

    def _plan(
        self,
        scan_id: int,
        action: Action,
        note: Optional[str],
        corrected_value: Optional[str],
    ) -> _SubmitPlan:
        """Check preconditions and compute the writes.

        Raises:
            ValidationPreconditionError: If the submit cannot proceed
        """
        scan = self.store.get_scan(scan_id)
        if scan is None:
            raise ValidationPreconditionError("Scan not found", field_name="scan_id")

        expert_id = self.identity.current_identity()
        if not expert_id:
            raise ValidationPreconditionError(
                "You must be signed in to validate scans.", field_name="identity"
            )

        note = _clean(note if note is not None else self.drafts.note(scan_id))
        corrected = _clean(
            corrected_value if corrected_value is not None else self.drafts.decision(scan_id)
        )

        if action is Action.CORRECT and not corrected:
            raise ValidationPreconditionError(
                "Please select or enter the corrected result.", field_name="corrected_value"
            )

        determination = scan.ai_prediction if action is Action.CONFIRM else corrected
        if not determination:
            raise ValidationPreconditionError(
                "Unable to determine validation result.", field_name="ai_prediction"
            )

        return _SubmitPlan(
            scan_id=scan_id,
            action=action,
            expert_id=expert_id,
            ai_prediction=scan.ai_prediction,
            determination=determination,
            status=ScanStatus.VALIDATED if action is Action.CONFIRM else ScanStatus.CORRECTED,
            original_status=scan.status,
            original_determination=scan.expert_validation,
            note=note,
            timestamp=format_timestamp(utcnow()) or "",
        )

    async def _execute(self, plan: _SubmitPlan) -> SubmitResult:
        failure_message = (
            "Failed to confirm validation"
            if plan.action is Action.CONFIRM
            else "Failed to correct validation"
        )

        try:
            await self.transport.update(
                Collection.SCANS.value,
                {
                    "status": plan.status.value,
                    "expert_validation": plan.determination,
                    "updated_at": plan.timestamp,
                },
                match={"id": plan.scan_id},
            )
        except ReviewSyncError as e:
            logger.error(
                f"Error transitioning scan status: {describe_error(e)}",
                extra={"scan_id": plan.scan_id, "action": plan.action.value},
            )
            self.notifier("error", failure_message)
            return SubmitResult(
                scan_id=plan.scan_id,
                action=plan.action,
                success=False,
                error=describe_error(e),
                error_code=e.code,
            )

        try:
            row = await self._write_audit(plan)
        except ReviewSyncError as e:
            rolled_back = await self._compensate(plan, e)
            failure = PartialFailureError(
                f"Validation record for scan {plan.scan_id} failed: {describe_error(e)}",
                scan_id=plan.scan_id,
                original_status=plan.original_status.value,
                rolled_back=rolled_back,
            )
            logger.error(failure.message, extra=failure.details)
            self.notifier("error", failure_message)
            return SubmitResult(
                scan_id=plan.scan_id,
                action=plan.action,
                success=False,
                error=describe_error(e),
                error_code=failure.code,
                rolled_back=rolled_back,
            )

        record = self._apply_locally(plan, row)
        self.drafts.delete(plan.scan_id)
        self.notifier(
            "success",
            f"Validation for scan {plan.scan_id} confirmed"
            if plan.action is Action.CONFIRM
            else f"Validation for scan {plan.scan_id} corrected",
        )

        await self.scheduler.reload()
        return SubmitResult(scan_id=plan.scan_id, action=plan.action, success=True, record=record)

    async def _write_audit(self, plan: _SubmitPlan) -> Optional[Dict[str, Any]]:
        """Insert the validation record, or update the expert's existing one."""
        payload = {
            "scan_id": plan.scan_id,
            "expert_id": plan.expert_id,
            "ai_prediction": plan.ai_prediction,
            "expert_validation": plan.determination,
            "status": plan.status.value,
            "validated_at": plan.timestamp,
            "expert_comment": plan.note,
        }
        try:
            return await self.transport.insert(Collection.VALIDATIONS.value, payload)
        except ConflictError:
            logger.info(
                "Validation already recorded by this expert, updating it",
                extra={"scan_id": plan.scan_id},
            )
            rows = await self.transport.update(
                Collection.VALIDATIONS.value,
                payload,
                match={"scan_id": plan.scan_id, "expert_id": plan.expert_id},
            )
            return rows[0] if rows else None

    def _apply_locally(
        self,
        plan: _SubmitPlan,
        row: Optional[Dict[str, Any]],
    ) -> Optional[ValidationRecord]:
        record = None
        if row:
            try:
                record = ValidationRecord.from_row(row)
            except ValueError as e:
                logger.warning(f"Unparseable validation row returned by insert: {e}")

        with self.store.batch():
            if record is not None:
                existing = self.store.get(Collection.VALIDATIONS, record.id)
                if isinstance(existing, ValidationRecord) and existing.expert_profile:
                    record = record.with_expert_profile(existing.expert_profile)
                self.store.apply_validation(record)
            self.store.reflect_outcome(plan.scan_id, plan.status, plan.determination)
        return record

    async def _compensate(self, plan: _SubmitPlan, cause: ReviewSyncError) -> bool:
        """Revert the scan's status; record an inconsistency if that fails."""
        try:
            await self.transport.update(
                Collection.SCANS.value,
                {
                    "status": plan.original_status.value,
                    "expert_validation": plan.original_determination,
                    "updated_at": format_timestamp(utcnow()),
                },
                match={"id": plan.scan_id},
            )
            logger.info("Rolled back scan status", extra={"scan_id": plan.scan_id})
            return True
        except ReviewSyncError as e:
            logger.error(
                f"Failed to rollback scan update: {describe_error(e)}",
                extra={
                    "scan_id": plan.scan_id,
                    "original_status": plan.original_status.value,
                    "cause": describe_error(cause),
                },
            )
            self._unresolved.append(
                Inconsistency(
                    scan_id=plan.scan_id,
                    intended_status=plan.status,
                    original_status=plan.original_status,
                    error=describe_error(e),
                )
            )
            self.scheduler.spawn(self.scheduler.reload())
            return False


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None
