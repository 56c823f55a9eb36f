"""
Sync module for the review cache - replica, event application, reconciliation.

This module handles:
- The in-memory record store and its change notifications
- Applying change feed events via full-record point-fetches
- Full reloads on session start, visibility regain and feed degradation
- The confirm/correct mutation workflow with compensating rollback
- Read markers over the pending scans

The store is a derived view of the remote store. It can always be
rebuilt from scratch by a full reconciliation.

Invariants:
    - Only the applier, the scheduler and the coordinator mutate the store
    - No event is applied before the first reconciliation completes
    - Late async results from a reset session are discarded

How to change safely:
    - Verify idempotency with duplicate and reordered event injection tests
    - Keep bulk and point-fetch joins in queries.py in step
"""

from .applier import ApplyOutcome, ChangeEventApplier
from .coordinator import Action, DraftBook, Inconsistency, MutationCoordinator, SubmitResult
from .inbox import PendingInbox
from .phase import PhaseTracker, SyncPhase
from .scheduler import ReconciliationScheduler
from .session import IdentityProvider, SessionGate
from .store import RecordStore

__all__ = [
    "RecordStore",
    "ChangeEventApplier",
    "ApplyOutcome",
    "ReconciliationScheduler",
    "MutationCoordinator",
    "Action",
    "DraftBook",
    "SubmitResult",
    "Inconsistency",
    "PendingInbox",
    "PhaseTracker",
    "SyncPhase",
    "IdentityProvider",
    "SessionGate",
]
