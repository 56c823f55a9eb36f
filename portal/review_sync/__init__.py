"""
Review Sync - client-side cache and mutation coordinator for the expert portal.

This package keeps an in-memory replica of the portal's scans and
validation history consistent with the hosted store:
- Full reconciliation establishes a baseline snapshot
- A push-based change feed keeps it current between reconciliations
- Expert decisions are written through an optimistic, compensating workflow

Architecture:
    ┌──────────────┐  identity  ┌──────────────────────┐  fetch  ┌──────────┐
    │ SessionGate  │───────────▶│ReconciliationScheduler│───────▶│          │
    └──────────────┘            └──────────┬───────────┘         │  Remote  │
                                           │ set_all             │  store   │
    ┌──────────────┐  events   ┌───────────▼──────────┐  fetch   │ (REST +  │
    │ Change feed  │──────────▶│  ChangeEventApplier  │─────────▶│  feed)   │
    └──────────────┘           └───────────┬──────────┘          │          │
                                           │ upsert/remove       │          │
                               ┌───────────▼──────────┐          │          │
                               │     RecordStore      │          │          │
                               └───────────▲──────────┘          │          │
                                           │ optimistic step     │          │
                               ┌───────────┴──────────┐  writes  │          │
                               │ MutationCoordinator  │─────────▶│          │
                               └──────────────────────┘          └──────────┘

Invariants:
    - The remote store is the source of truth
    - The RecordStore is a derived view that a full reload can rebuild
    - A scan's status equals its most recent validation's status
    - At most one validation record per (scan, expert)
"""

from ._version import __version__

__all__ = ["__version__"]
