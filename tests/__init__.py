"""
Review Sync Test Suite.

This package contains:
- unit/: Unit tests (no network; in-memory backend, httpx.MockTransport)
- integration/: Integration tests (SyncClient wired to the in-memory backend)
"""
