#!/usr/bin/env python3
"""
Review Sync Demo - confirm, correct and roll back expert decisions.

This demo runs the sync client against the in-memory backend, so no
hosted store is needed.
"""

import asyncio

from portal.review_sync.config import ReconcileConfig, SyncConfig
from portal.review_sync.errors import TransportError
from portal.review_sync.main import SyncClient
from portal.review_sync.sync import SessionGate
from portal.review_sync.transport import FeedState, InMemoryBackend


def show(store, inbox=None):
    for scan in store.scans:
        print(
            f"  scan {scan.id:>3}  {scan.scan_type.value:<15} {scan.status.value:<19} "
            f"ai={scan.ai_prediction!r} expert={scan.expert_validation!r}"
        )
    print(f"  validations={len(store.validations)} profiles={store.count}")
    if inbox is not None:
        print(f"  unread={inbox.unread_count}")


async def main():
    print("=" * 60)
    print("Review Sync Demo - Expert decisions")
    print("=" * 60)

    backend = InMemoryBackend()
    backend.seed(
        "profiles",
        [
            {"id": "expert-1", "username": "drlee", "full_name": "Dr. Lee"},
            {"id": "farmer-1", "username": "joe", "full_name": "Farmer Joe"},
        ],
    )
    backend.seed(
        "scans",
        [
            {
                "id": 42,
                "farmer_id": "farmer-1",
                "scan_type": "leaf_disease",
                "ai_prediction": "Downy Mildew",
                "status": "Pending Validation",
                "created_at": "2026-03-01T08:00:00+00:00",
            },
            {
                "id": 43,
                "farmer_id": "farmer-1",
                "scan_type": "fruit_maturity",
                "ai_prediction": "Ripe",
                "status": "Pending Validation",
                "created_at": "2026-03-01T09:00:00+00:00",
            },
            {
                "id": 44,
                "farmer_id": "farmer-1",
                "scan_type": "leaf_disease",
                "ai_prediction": "Leaf Spot",
                "status": "Pending Validation",
                "created_at": "2026-03-01T10:00:00+00:00",
            },
        ],
    )

    gate = SessionGate()
    client = SyncClient(
        backend,
        backend,
        gate,
        config=SyncConfig(reconcile=ReconcileConfig(fallback_poll_seconds=0)),
        notifier=lambda level, message: print(f"  [{level}] {message}"),
    )
    client.start()

    print("\n[Step 1] Signing in...")
    gate.sign_in("expert-1")
    await client.drain()
    print(f"  channel={client.channel}")
    client.inbox.mark_read([44])
    show(client.store, client.inbox)

    print("\n[Step 2] Confirming scan 42...")
    await client.submit(42, "confirm")
    await client.drain()
    show(client.store)

    print("\n[Step 3] Correcting scan 43 with a draft...")
    client.drafts.set_decision(43, "Overripe")
    client.drafts.set_note(43, "Skin is wrinkled")
    await client.submit(43, "correct")
    await client.drain()
    show(client.store)

    print("\n[Step 4] Correcting scan 44 without a value...")
    await client.submit(44, "correct")

    print("\n[Step 5] Audit write fails for scan 44, status is rolled back...")
    backend.fail_next("insert", "validation_history", error=TransportError("permission denied", status=403))
    result = await client.submit(44, "confirm")
    await client.drain()
    print(f"  error_code={result.error_code} rolled_back={result.rolled_back}")
    show(client.store)

    print("\n[Step 6] Feed drops while another client registers a farmer...")
    backend.set_feed_state(FeedState.DEGRADED, ConnectionError("socket closed"))
    backend.seed("profiles", [{"id": "farmer-2", "username": "ann"}])
    await client.drain()
    backend.set_feed_state(FeedState.CONNECTED)
    show(client.store)

    print("\n[Step 7] Signing out...")
    gate.sign_out()
    show(client.store)

    await client.stop()
    print("\n" + "=" * 60)
    print(f"Done. Scheduler stats: {client.scheduler.stats}")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
