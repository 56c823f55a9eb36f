"""
Unit tests for ChangeEventApplier.

Tests cover:
- Events before the first load are ignored
- Point-fetch with joins instead of partial event rows
- Duplicate and out-of-order delivery
- Deletes and the profile count
- Superseded sessions and failed point-fetches
"""

import asyncio

import pytest

from portal.review_sync.models import Collection, Scan, ScanStatus
from portal.review_sync.sync import ChangeEventApplier, PhaseTracker, RecordStore
from portal.review_sync.transport import ChangeEvent, ChangeKind, InMemoryBackend


def _event(kind, collection, record_id, **row):
    return ChangeEvent(kind=kind, collection=collection, record_id=record_id, row={"id": record_id, **row})


class TestChangeEventApplier:
    """Tests for ChangeEventApplier.apply_event."""

    @pytest.fixture
    def store(self, make_scan):
        s = RecordStore()
        s.set_all(Collection.SCANS, [Scan.from_row(make_scan(42))])
        s.set_count(10)
        return s

    @pytest.fixture
    def phase(self):
        p = PhaseTracker()
        p.complete_load(p.begin_load())
        return p

    @pytest.fixture
    def backend(self, backend, make_scan):
        backend.seed("scans", [make_scan(42)])
        return backend

    @pytest.fixture
    def applier(self, store, backend, phase):
        return ChangeEventApplier(store, backend, phase)

    @pytest.mark.asyncio
    async def test_events_before_ready_are_ignored(self, store, backend, make_scan):
        """Nothing is applied until the first load produced a baseline."""
        phase = PhaseTracker()
        applier = ChangeEventApplier(store, backend, phase)
        backend.seed("scans", [make_scan(50)])
        version = store.version

        outcome = await applier.apply_event(_event(ChangeKind.INSERT, "scans", 50))

        assert outcome.ignored
        assert store.version == version
        assert backend.call_count() == 0

    @pytest.mark.asyncio
    async def test_insert_point_fetches_with_joins(self, applier, store, backend, make_scan):
        """The stored scan comes from the point-fetch, joins included."""
        backend.seed("scans", [make_scan(43, ai_prediction="Leaf Spot")])

        outcome = await applier.apply_event(_event(ChangeKind.INSERT, "scans", 43))

        assert outcome.applied
        scan = store.get_scan(43)
        assert scan.ai_prediction == "Leaf Spot"
        assert scan.farmer_profile.full_name == "Farmer Joe"
        assert backend.call_count("fetch_one") == 1

    @pytest.mark.asyncio
    async def test_update_replaces_record(self, applier, store, backend):
        await backend.update("scans", {"ai_prediction": "Rust"}, match={"id": 42})

        await applier.apply_event(_event(ChangeKind.UPDATE, "scans", 42))

        assert store.get_scan(42).ai_prediction == "Rust"
        assert len(store.scans) == 1

    @pytest.mark.asyncio
    async def test_duplicate_validation_inserts_converge(self, applier, store, backend, make_validation):
        """Two deliveries of insert id=7 leave exactly one record id=7."""
        backend.seed("validation_history", [make_validation(7, scan_id=42)])
        event = _event(ChangeKind.INSERT, "validation_history", 7, scan_id=42)

        outcomes = await asyncio.gather(applier.apply_event(event), applier.apply_event(event))

        assert all(o.applied for o in outcomes)
        assert [v.id for v in store.validations] == [7]
        record = store.get(Collection.VALIDATIONS, 7)
        assert record.expert_profile.full_name == "Dr. Expert"
        assert record.scan.farmer_profile.full_name == "Farmer Joe"

    @pytest.mark.asyncio
    async def test_validation_event_reflects_onto_scan(self, applier, store, backend, make_validation):
        backend.seed(
            "validation_history",
            [make_validation(8, scan_id=42, status="Corrected", expert_validation="Rust")],
        )

        await applier.apply_event(_event(ChangeKind.INSERT, "validation_history", 8))

        scan = store.get_scan(42)
        assert scan.status is ScanStatus.CORRECTED
        assert scan.expert_validation == "Rust"

    @pytest.mark.asyncio
    async def test_delete_absent_is_noop(self, applier, store):
        version = store.version

        outcome = await applier.apply_event(_event(ChangeKind.DELETE, "scans", 999))

        assert outcome.applied
        assert store.version == version
        assert store.count == 10

    @pytest.mark.asyncio
    async def test_delete_present_removes_record(self, applier, store, backend):
        outcome = await applier.apply_event(_event(ChangeKind.DELETE, "scans", 42))

        assert outcome.applied
        assert store.get_scan(42) is None
        assert store.count == 10
        assert backend.call_count() == 0

    @pytest.mark.asyncio
    async def test_profile_events_move_count(self, applier, store, backend):
        """Profile inserts/deletes move the count by one step, updates do not."""
        await applier.apply_event(_event(ChangeKind.INSERT, "profiles", "p-new"))
        assert store.count == 11

        update = await applier.apply_event(_event(ChangeKind.UPDATE, "profiles", "p-new"))
        assert update.ignored
        assert store.count == 11

        await applier.apply_event(_event(ChangeKind.DELETE, "profiles", "p-new"))
        await applier.apply_event(_event(ChangeKind.DELETE, "profiles", "p-old"))
        assert store.count == 9
        assert backend.call_count() == 0

    @pytest.mark.asyncio
    async def test_profile_count_clamps_at_zero(self, store, backend, phase):
        store.set_count(0)
        applier = ChangeEventApplier(store, backend, phase, count_step=3)

        await applier.apply_event(_event(ChangeKind.DELETE, "profiles", "p"))

        assert store.count == 0

    @pytest.mark.asyncio
    async def test_untracked_collection_ignored(self, applier):
        outcome = await applier.apply_event(_event(ChangeKind.INSERT, "notifications", 1))
        assert outcome.ignored

    @pytest.mark.asyncio
    async def test_missing_record_is_dropped(self, applier, store):
        """An event for a row deleted before the fetch is dropped."""
        version = store.version

        outcome = await applier.apply_event(_event(ChangeKind.UPDATE, "scans", 77))

        assert outcome.dropped
        assert store.version == version

    @pytest.mark.asyncio
    async def test_failed_point_fetch_is_dropped(self, applier, store, backend):
        backend.fail_next("fetch_one")

        outcome = await applier.apply_event(_event(ChangeKind.UPDATE, "scans", 42))

        assert outcome.dropped
        assert "injected fetch_one failure" in outcome.error

    @pytest.mark.asyncio
    async def test_event_without_id_is_dropped(self, applier):
        event = ChangeEvent(kind=ChangeKind.INSERT, collection="scans", record_id=None)

        outcome = await applier.apply_event(event)

        assert outcome.dropped

    @pytest.mark.asyncio
    async def test_result_for_superseded_session_is_discarded(self, store, phase, make_scan):
        """A fetch that completes after a reset never reaches the store."""
        slow = InMemoryBackend(latency=0.05)
        slow.seed("scans", [make_scan(60)])
        applier = ChangeEventApplier(store, slow, phase)

        task = asyncio.create_task(applier.apply_event(_event(ChangeKind.INSERT, "scans", 60)))
        await asyncio.sleep(0.01)
        phase.reset()
        outcome = await task

        assert outcome.ignored
        assert store.get_scan(60) is None


class TestApplierHandle:
    """Tests for the feed callback path."""

    @pytest.mark.asyncio
    async def test_handle_and_drain(self, backend, make_scan, make_validation):
        phase = PhaseTracker()
        phase.complete_load(phase.begin_load())
        store = RecordStore()
        applier = ChangeEventApplier(store, backend, phase)
        backend.seed("scans", [make_scan(1), make_scan(2)])

        applier.handle(_event(ChangeKind.INSERT, "scans", 1))
        applier.handle(_event(ChangeKind.INSERT, "scans", 2))
        applier.handle(_event(ChangeKind.UPDATE, "scans", 3))
        assert applier.pending == 3
        await applier.drain()

        assert [s.id for s in store.scans] == [2, 1]
        assert applier.stats["applied_count"] == 2
        assert applier.stats["dropped_count"] == 1
        assert applier.stats["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_partial_rows_are_not_trusted(self, make_scan, make_profile):
        """Feeds delivering only the key still yield complete records."""
        backend = InMemoryBackend(emit_partial_rows=True)
        backend.seed("profiles", [make_profile("farmer-1", "Farmer Joe")])
        phase = PhaseTracker()
        phase.complete_load(phase.begin_load())
        store = RecordStore()
        applier = ChangeEventApplier(store, backend, phase)
        backend.subscribe("test", applier.handle, lambda state, error: None)

        await backend.insert("scans", make_scan(5, ai_prediction="Scab"))
        await applier.drain()

        scan = store.get_scan(5)
        assert scan.ai_prediction == "Scab"
        assert scan.farmer_profile.display_name == "Farmer Joe"

    @pytest.mark.asyncio
    async def test_handler_errors_are_counted(self, backend):
        """Unexpected errors never escape into the feed."""
        phase = PhaseTracker()
        phase.complete_load(phase.begin_load())
        store = RecordStore()
        applier = ChangeEventApplier(store, backend, phase)
        backend.fail_next("fetch_one", error=RuntimeError("boom"))

        applier.handle(_event(ChangeKind.INSERT, "scans", 9))
        await applier.drain()

        assert applier.stats["error_count"] == 1
        assert store.get_scan(9) is None
