"""
Integration tests for SyncClient with the in-memory backend.

Tests cover:
- Session lifecycle: hydrate on sign-in, purge on sign-out
- Live change events from other clients
- Feed degradation and recovery
- Read markers following decisions
- Expert decisions flowing through writes, events and reconciliation
"""

import asyncio

import pytest

from portal.review_sync.config import ReconcileConfig, SyncConfig
from portal.review_sync.main import SyncClient
from portal.review_sync.models import ScanStatus
from portal.review_sync.sync import SessionGate, SyncPhase
from portal.review_sync.transport import ChangeEvent, ChangeKind, FeedState, InMemoryBackend


def _config():
    return SyncConfig(reconcile=ReconcileConfig(fallback_poll_seconds=0))


class TestSessionLifecycle:
    """Tests for identity-driven hydrate/purge."""

    @pytest.fixture
    def backend(self, backend, make_scan, make_validation):
        backend.seed("scans", [make_scan(i) for i in range(1, 6)])
        backend.seed("validation_history", [make_validation(1, scan_id=5, expert_id="expert-1")])
        return backend

    @pytest.fixture
    async def client(self, backend):
        gate = SessionGate()
        client = SyncClient(backend, backend, gate, config=_config())
        client.start()
        yield client
        await client.stop()

    @pytest.mark.asyncio
    async def test_sign_in_hydrates(self, client, backend):
        loading = []
        client.store.subscribe(lambda s: loading.append(s.loading))

        client.identity.sign_in("expert-1", access_token="jwt")
        await client.drain()

        assert client.channel == "global-data-changes-expert-1"
        assert backend.subscriber_count == 1
        assert client.phase.phase is SyncPhase.READY
        assert len(client.store.scans) == 5
        assert client.store.count == 2
        assert True in loading
        assert client.store.loading is False

    @pytest.mark.asyncio
    async def test_start_with_existing_session(self, backend):
        client = SyncClient(backend, backend, SessionGate("expert-1"), config=_config())

        client.start()
        await client.drain()

        assert len(client.store.scans) == 5
        await client.stop()
        assert backend.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_sign_out_purges(self, client, backend):
        client.identity.sign_in("expert-1")
        await client.drain()
        client.drafts.set_note(1, "draft")

        client.identity.sign_out()

        assert client.store.scans == ()
        assert client.store.validations == ()
        assert client.store.count == 0
        assert 1 not in client.drafts
        assert client.channel is None
        assert backend.subscriber_count == 0
        assert client.phase.phase is SyncPhase.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_sign_out_during_first_load(self, make_scan, make_profile):
        """A load that finishes after sign-out never repopulates the store."""
        backend = InMemoryBackend(latency=0.03)
        backend.seed("profiles", [make_profile("expert-1")])
        backend.seed("scans", [make_scan(1)])
        gate = SessionGate()
        client = SyncClient(backend, backend, gate, config=_config())
        client.start()

        gate.sign_in("expert-1")
        await asyncio.sleep(0.01)
        gate.sign_out()
        await client.drain()

        assert client.store.scans == ()
        assert client.store.loading is False
        assert client.phase.phase is SyncPhase.UNINITIALIZED
        await client.stop()

    @pytest.mark.asyncio
    async def test_switching_identity_reloads(self, client, backend):
        client.identity.sign_in("expert-1")
        await client.drain()
        loads = backend.call_count("count")

        client.identity.sign_in("expert-2")
        await client.drain()

        assert client.channel == "global-data-changes-expert-2"
        assert backend.subscriber_count == 1
        assert backend.call_count("count") == loads + 1
        assert len(client.store.scans) == 5

    @pytest.mark.asyncio
    async def test_events_before_first_load_are_ignored(self, make_scan, make_profile):
        backend = InMemoryBackend(latency=0.02)
        backend.seed("profiles", [make_profile("expert-1")])
        backend.seed("scans", [make_scan(1)])
        gate = SessionGate()
        client = SyncClient(backend, backend, gate, config=_config())
        client.start()

        gate.sign_in("expert-1")
        backend.emit(ChangeEvent(kind=ChangeKind.INSERT, collection="profiles", record_id="p-9"))
        await client.drain()

        assert client.applier.stats["ignored_count"] == 1
        assert client.store.count == 1
        await client.stop()


class TestLiveUpdates:
    """Tests for change events while signed in."""

    @pytest.fixture
    async def client(self, backend, make_scan):
        backend.seed("scans", [make_scan(i) for i in range(1, 101)])
        client = SyncClient(backend, backend, SessionGate("expert-1"), config=_config())
        client.start()
        await client.drain()
        yield client
        await client.stop()

    @pytest.mark.asyncio
    async def test_remote_insert_and_delete(self, client, backend, make_scan):
        await backend.insert("scans", make_scan(101, ai_prediction="Scab"))
        await client.drain()

        scan = client.store.get_scan(101)
        assert scan.ai_prediction == "Scab"
        assert scan.farmer_profile.full_name == "Farmer Joe"

        backend.delete("scans", 101)
        await client.drain()
        assert client.store.get_scan(101) is None

    @pytest.mark.asyncio
    async def test_profile_count_follows_events(self, client, backend, make_profile):
        await backend.insert("profiles", make_profile("farmer-2"))
        await client.drain()
        assert client.store.count == 3

        backend.delete("profiles", "farmer-2")
        backend.delete("profiles", "farmer-1")
        await client.drain()
        assert client.store.count == 1

    @pytest.mark.asyncio
    async def test_degraded_feed_reconciles_once(self, client, backend, make_scan):
        """Missed events during an outage are recovered by one full reload."""
        loads = backend.call_count("count")

        backend.set_feed_state(FeedState.DEGRADED, ConnectionError("socket closed"))
        for i in range(101, 111):
            backend.seed("scans", [make_scan(i)])
        backend.set_feed_state(FeedState.CLOSED)
        await client.drain()

        assert backend.call_count("count") == loads + 1
        assert len(client.store.scans) == 110

        backend.set_feed_state(FeedState.CONNECTED)
        await backend.insert("scans", make_scan(111))
        await client.drain()
        assert len(client.store.scans) == 111

    @pytest.mark.asyncio
    async def test_visibility_regain_reloads(self, client, backend):
        loads = backend.call_count("count")

        assert await client.set_visibility(False) is False
        assert await client.set_visibility(True) is True

        assert backend.call_count("count") == loads + 1

    @pytest.mark.asyncio
    async def test_retry(self, client, backend):
        backend.fail_next("count")
        assert await client.retry() is False
        assert client.store.error is not None

        assert await client.retry() is True
        assert client.store.error is None


class TestDecisions:
    """Expert decisions through the whole client."""

    @pytest.fixture
    async def client(self, backend, make_scan):
        backend.seed("scans", [make_scan(42, ai_prediction="Downy Mildew"), make_scan(43)])
        notices = []
        client = SyncClient(
            backend,
            backend,
            SessionGate("expert-1"),
            config=_config(),
            notifier=lambda level, message: notices.append((level, message)),
        )
        client.notices = notices
        client.start()
        await client.drain()
        yield client
        await client.stop()

    @pytest.mark.asyncio
    async def test_confirm_converges_with_own_events(self, client, backend):
        """Own writes echoed by the feed leave one consistent record."""
        result = await client.submit(42, "confirm")
        await client.drain()

        assert result.success
        scan = client.store.get_scan(42)
        assert scan.status is ScanStatus.VALIDATED
        records = client.store.validations_for(42)
        assert len(records) == 1
        assert records[0].expert_validation == "Downy Mildew"
        assert records[0].expert_profile.full_name == "Dr. Expert"
        assert [s.id for s in client.store.pending_scans()] == [43]
        assert client.notices == [("success", "Validation for scan 42 confirmed")]

    @pytest.mark.asyncio
    async def test_other_expert_decision_arrives_by_event(self, client, backend, make_validation):
        await backend.update("scans", {"status": "Corrected", "expert_validation": "Rust"}, match={"id": 43})
        await backend.insert(
            "validation_history",
            make_validation(None, scan_id=43, expert_id="farmer-1", status="Corrected", expert_validation="Rust"),
        )
        await client.drain()

        scan = client.store.get_scan(43)
        assert scan.status is ScanStatus.CORRECTED
        assert scan.expert_validation == "Rust"

    @pytest.mark.asyncio
    async def test_rejected_correction_leaves_everything(self, client, backend):
        calls = backend.call_count()

        result = await client.submit(42, "correct", corrected_value="")
        await client.drain()

        assert not result.success
        assert backend.call_count() == calls
        assert client.store.get_scan(42).is_pending

    @pytest.mark.asyncio
    async def test_stats(self, client):
        stats = client.stats

        assert stats["channel"] == "global-data-changes-expert-1"
        assert stats["scans"] == 2
        assert stats["scheduler"]["phase"] == "ready"
        assert stats["unresolved"] == 0
        assert stats["unread"] == 2

    @pytest.mark.asyncio
    async def test_decided_scan_leaves_the_inbox(self, client):
        client.inbox.mark_read([42, 43])

        await client.submit(42, "confirm")
        await client.drain()

        assert client.inbox.read_ids == {43}
        assert client.inbox.unread_count == 0

    @pytest.mark.asyncio
    async def test_remote_change_during_outage_arrives_on_reconnect(self, client, backend):
        backend.set_feed_state(FeedState.DEGRADED, ConnectionError("socket closed"))
        await client.drain()

        await backend.update("scans", {"status": "Validated", "expert_validation": "Downy Mildew"}, match={"id": 43})
        backend.set_feed_state(FeedState.CONNECTED)
        await client.drain()

        assert client.store.get_scan(43).status is ScanStatus.VALIDATED
