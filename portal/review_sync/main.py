"""
Review Sync - Main entry point.

This module wires the sync core together:
- SessionGate (identity)
- RecordStore (replica)
- ReconciliationScheduler (full reloads)
- ChangeEventApplier (feed -> store)
- MutationCoordinator (expert decisions)

Usage:
    python -m portal.review_sync.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The feed is subscribed only while an identity is present
    - Sign-out purges the store and drafts and discards in-flight results
    - A new identity always starts with a spinner-visible full load

How to change safely:
    - Keep identity handling synchronous; async work goes through spawn()
    - Test sign-in/sign-out sequences against the in-memory backend
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from typing import Any, Callable, Optional

import json_log_formatter

from .config import ConnectionSettings, SyncConfig
from .models import Collection
from .sync import (
    Action,
    ChangeEventApplier,
    DraftBook,
    IdentityProvider,
    MutationCoordinator,
    PendingInbox,
    PhaseTracker,
    ReconciliationScheduler,
    RecordStore,
    SessionGate,
    SubmitResult,
)
from .sync.coordinator import Notifier
from .transport import ChangeFeed, QueryTransport, create_transport

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "global-data-changes-"


def setup_logging(config: SyncConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Sync configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


class SyncClient:
    """Review sync orchestrator.

    Owns the store and the components that write to it, and reacts to
    identity changes reported by the identity provider.

    Attributes:
        store: Record store read by presentation
        phase: Load phase shared by scheduler and applier
        scheduler: Reconciliation scheduler
        applier: Change event applier
        coordinator: Mutation coordinator
        inbox: Read markers over the pending scans

    Example:
        >>> backend = InMemoryBackend()
        >>> gate = SessionGate()
        >>> client = SyncClient(backend, backend, gate)
        >>> client.start()
        >>> gate.sign_in("expert-1")
        >>> await client.drain()
        >>> client.store.scans
    """

    def __init__(
        self,
        transport: QueryTransport,
        feed: ChangeFeed,
        identity: IdentityProvider,
        config: Optional[SyncConfig] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.config = config or SyncConfig()
        self.transport = transport
        self.feed = feed
        self.identity = identity

        self.store = RecordStore()
        self.phase = PhaseTracker()
        self.drafts = DraftBook()
        self.inbox = PendingInbox(self.store)
        self.scheduler = ReconciliationScheduler(
            self.store,
            transport,
            self.phase,
            identity,
            config=self.config.reconcile,
        )
        self.applier = ChangeEventApplier(
            self.store,
            transport,
            self.phase,
            count_step=self.config.applier.count_step,
        )
        self.coordinator = MutationCoordinator(
            self.store,
            transport,
            identity,
            self.scheduler,
            notifier=notifier,
            drafts=self.drafts,
        )

        self._unsubscribe_feed: Optional[Callable[[], None]] = None
        self._unsubscribe_identity: Optional[Callable[[], None]] = None
        self._channel: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._unsubscribe_identity is not None

    @property
    def channel(self) -> Optional[str]:
        """Name of the subscribed feed channel, if any."""
        return self._channel

    def start(self) -> None:
        """Begin reacting to identity changes (hydrates if already signed in)."""
        if self.running:
            logger.warning("Sync client already running")
            return

        self._unsubscribe_identity = self.identity.on_identity_change(self._on_identity)
        logger.info("Sync client started")
        identity = self.identity.current_identity()
        if identity:
            self._hydrate(identity)

    async def stop(self) -> None:
        """Stop reacting to identity changes and release the feed."""
        if not self.running:
            return

        logger.info("Stopping sync client")
        if self._unsubscribe_identity is not None:
            self._unsubscribe_identity()
            self._unsubscribe_identity = None
        self._close_feed()
        await self.scheduler.stop()
        await self.applier.drain()
        logger.info("Sync client stopped")

    async def set_visibility(self, visible: bool) -> bool:
        """Presentation visibility changed; reloads when it becomes visible."""
        return await self.scheduler.on_visibility_change(visible)

    async def retry(self) -> bool:
        """User-initiated reload."""
        return await self.scheduler.retry()

    async def submit(
        self,
        scan_id: int,
        action: Action | str,
        note: Optional[str] = None,
        corrected_value: Optional[str] = None,
    ) -> SubmitResult:
        """Record an expert decision (see MutationCoordinator.submit)."""
        return await self.coordinator.submit(scan_id, action, note, corrected_value)

    async def drain(self) -> None:
        """Wait until background reloads and queued events are processed."""
        while self.scheduler.pending or self.applier.pending:
            await self.scheduler.drain()
            await self.applier.drain()

    @property
    def stats(self) -> dict[str, Any]:
        """Get combined statistics."""
        return {
            "channel": self._channel,
            "scans": len(self.store.scans),
            "validations": len(self.store.validations),
            "profiles": self.store.count,
            "scheduler": self.scheduler.stats,
            "applier": self.applier.stats,
            "unresolved": len(self.coordinator.unresolved),
            "unread": self.inbox.unread_count,
        }

    def _on_identity(self, identity: Optional[str]) -> None:
        self._purge()
        if identity:
            self._hydrate(identity)

    def _hydrate(self, identity: str) -> None:
        token = getattr(self.identity, "access_token", None)
        for component in (self.transport, self.feed):
            set_token = getattr(component, "set_access_token", None)
            if set_token is not None:
                set_token(token)

        self._channel = f"{CHANNEL_PREFIX}{identity}"
        self._unsubscribe_feed = self.feed.subscribe(
            self._channel,
            self.applier.handle,
            self.scheduler.on_feed_state,
        )
        logger.info("Subscribed to change feed", extra={"channel": self._channel})
        self.scheduler.spawn(self.scheduler.on_identity_available())

    def _purge(self) -> None:
        self._close_feed()
        self.phase.reset()
        self.scheduler.reset()
        self.store.clear()
        self.drafts.clear()
        logger.info("Session data purged")

    def _close_feed(self) -> None:
        if self._unsubscribe_feed is not None:
            self._unsubscribe_feed()
            self._unsubscribe_feed = None
            logger.info("Unsubscribed from change feed", extra={"channel": self._channel})
        self._channel = None


def _log_store(store: RecordStore) -> None:
    logger.info(
        "Store updated",
        extra={
            "version": store.version,
            "pending": len(store.pending_scans()),
            "scans": len(store.scans),
            "validations": len(store.validations),
            "profiles": store.count,
            "loading": store.loading,
            "error": store.error,
        },
    )


async def run(config: SyncConfig, settings: ConnectionSettings, shutdown: asyncio.Event) -> None:
    """Run a sync client until ``shutdown`` is set."""
    transport, feed = create_transport(settings)
    gate = SessionGate()
    client = SyncClient(transport, feed, gate, config=config)
    client.store.subscribe(_log_store)

    client.start()
    expert_id = os.getenv("REVIEW_SYNC_EXPERT_ID")
    if expert_id:
        gate.sign_in(expert_id, access_token=os.getenv("REVIEW_SYNC_ACCESS_TOKEN"))
    else:
        logger.warning("REVIEW_SYNC_EXPERT_ID not set, waiting without a session")

    try:
        await shutdown.wait()
    finally:
        gate.sign_out()
        await client.stop()
        await feed.close()
        await transport.close()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = SyncConfig.from_env()
        settings = ConnectionSettings()
        if not settings.url:
            raise ValueError("SUPABASE_URL is required")
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    config.log_config()
    logger.info(f"Tracking {', '.join(c.value for c in Collection)} at {settings.rest_url}")

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    shutdown = asyncio.Event()

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        shutdown.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(run(config, settings, shutdown))
    except KeyboardInterrupt:
        pass
    finally:
        loop.close()


if __name__ == "__main__":
    main()
