"""
Tests for the sync engine: ordering, abort-and-resume, the offline no-op,
single-flight runs and the trigger wiring.
"""
import asyncio

import httpx
import pytest

from aegis.core.errors import PublishError
from aegis.services.alert_dispatcher import AlertDispatcher
from aegis.services.connectivity import ConnectivityMonitor
from aegis.services.photo_compression import DATA_URL_PREFIX, compress_image
from aegis.services.record_store import RecordStore
from aegis.services.remote_store import InMemoryRemoteStore
from aegis.services.sync_engine import SyncEngine, SyncEngineState, TriggerSource


class FakeConnectivity:
    """Connectivity with a plain flag and no online listeners."""

    def __init__(self, online: bool = True):
        self.is_online = online


class RecordingPublisher:
    """In-memory remote store that records every attempt and can reject by description."""

    def __init__(self, fail_on=()):
        self.remote = InMemoryRemoteStore()
        self.calls = []
        self.fail_on = set(fail_on)

    async def publish(self, record):
        self.calls.append(record)
        if record.description in self.fail_on:
            raise PublishError(f"rejected {record.description}")
        return await self.remote.publish(record)

    @property
    def descriptions(self):
        return [doc["description"] for doc in self.remote.documents.values()]


class BlockingPublisher(RecordingPublisher):
    """Holds the first publish open until released."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def publish(self, record):
        self.entered.set()
        await self.release.wait()
        return await super().publish(record)


class ExplodingPublisher:
    async def publish(self, record):
        raise RuntimeError("unexpected")


class RaisingDispatcher:
    def __init__(self):
        self.calls = 0

    async def notify(self, record):
        self.calls += 1
        raise RuntimeError("webhook client crashed")


class SilentDispatcher:
    def __init__(self):
        self.notified = []

    async def notify(self, record):
        self.notified.append(record)


class NeverMarksStore(RecordStore):
    def mark_synced(self, local_id, remote_id=None):
        return False


async def wait_for(predicate, timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _field(payload, name):
    return next(f["value"] for f in payload["embeds"][0]["fields"] if f["name"] == name)


def _engine(store, publisher, dispatcher=None, connectivity=None, **kwargs):
    kwargs.setdefault("interval_seconds", 3600)
    return SyncEngine(
        store=store,
        publisher=publisher,
        dispatcher=dispatcher or SilentDispatcher(),
        connectivity=connectivity or FakeConnectivity(),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# One sync run
# ---------------------------------------------------------------------------

class TestSyncRun:

    @pytest.mark.asyncio
    async def test_reports_publish_in_order_with_alerts(self, store, make_record, make_photo, webhook):
        """A plain report, a critical one with a photo, and an SOS report all reach the cloud in order."""
        dispatcher, captured = webhook
        original_photo = make_photo(1200, 900)
        id_a = store.append(make_record(description="A", severity="Medium"))
        id_b = store.append(make_record(description="B", severity="Critical", photo_data=original_photo))
        id_c = store.append(make_record(description="C", severity="Low", is_sos=True))

        publisher = RecordingPublisher()
        engine = _engine(store, publisher, dispatcher=dispatcher)
        result = await engine.sync_reports()

        assert result.completed is True
        assert result.synced == [id_a, id_b, id_c]
        assert publisher.descriptions == ["A", "B", "C"]
        assert store.query_pending() == []
        assert engine.state is SyncEngineState.IDLE

        # B and C alert, A does not
        assert len(captured) == 2
        titles = [payload["embeds"][0]["title"] for payload in captured]
        assert titles[0] == "Type: Flood"
        assert titles[1].startswith("🆘 SOS")

        uploaded_b = list(publisher.remote.documents.values())[1]
        assert uploaded_b["photoData"].startswith(DATA_URL_PREFIX)
        assert uploaded_b["photoData"] != original_photo
        # The local copy keeps the original photo
        assert store.get(id_b).photo_data == original_photo

    @pytest.mark.asyncio
    async def test_low_critical_high_scenario(self, store, make_record, make_photo, webhook):
        """Low without photo, Critical with photo, High: all published in order, B and C alerted, only B compressed."""
        dispatcher, captured = webhook
        compressed = []

        def tracking_compress(raw, max_dimension, quality, max_bytes):
            compressed.append(raw)
            return compress_image(raw, max_dimension, quality, max_bytes)

        photo = make_photo(1600, 1200)
        id_a = store.append(make_record(description="A", severity="Low"))
        id_b = store.append(make_record(description="B", severity="Critical", photo_data=photo))
        id_c = store.append(make_record(description="C", severity="High"))

        publisher = RecordingPublisher()
        engine = _engine(store, publisher, dispatcher=dispatcher, compress=tracking_compress)
        result = await engine.sync_reports()

        assert result.synced == [id_a, id_b, id_c]
        assert publisher.descriptions == ["A", "B", "C"]
        assert compressed == [photo]
        assert [_field(p, "Severity") for p in captured] == ["Critical", "High"]
        assert [_field(p, "Description") for p in captured] == ["B", "C"]
        assert store.query_pending() == []
        assert engine.state is SyncEngineState.IDLE

    @pytest.mark.asyncio
    async def test_remote_id_recorded_locally(self, store, make_record):
        local_id = store.append(make_record())
        publisher = RecordingPublisher()
        await _engine(store, publisher).sync_reports()
        stored = store.get(local_id)
        assert stored.remote_id in publisher.remote.documents

    @pytest.mark.asyncio
    async def test_empty_queue_completes_quietly(self, store):
        publisher = RecordingPublisher()
        result = await _engine(store, publisher).sync_reports()
        assert result.completed is True
        assert result.pending == 0
        assert publisher.calls == []

    @pytest.mark.asyncio
    async def test_offline_is_a_noop(self, store, make_record):
        store.append(make_record())
        publisher = RecordingPublisher()
        dispatcher = SilentDispatcher()
        engine = _engine(store, publisher, dispatcher=dispatcher, connectivity=FakeConnectivity(False))

        result = await engine.sync_reports()

        assert result.offline is True
        assert publisher.calls == []
        assert dispatcher.notified == []
        assert store.count_pending() == 1
        assert engine.state is SyncEngineState.IDLE


class TestAbortAndResume:

    @pytest.mark.asyncio
    async def test_publish_failure_stops_the_run(self, store, make_record):
        id_a = store.append(make_record(description="A"))
        id_b = store.append(make_record(description="B"))
        id_c = store.append(make_record(description="C"))
        publisher = RecordingPublisher(fail_on={"B"})
        engine = _engine(store, publisher)

        result = await engine.sync_reports()

        assert result.completed is False
        assert result.synced == [id_a]
        assert result.aborted_at == id_b
        assert "rejected B" in result.error
        # C was never attempted
        assert [r.description for r in publisher.calls] == ["A", "B"]
        assert [r.local_id for r in store.query_pending()] == [id_b, id_c]
        assert engine.state is SyncEngineState.IDLE

    @pytest.mark.asyncio
    async def test_next_run_resumes_at_the_failed_report(self, store, make_record):
        for name in "ABC":
            store.append(make_record(description=name))
        publisher = RecordingPublisher(fail_on={"B"})
        engine = _engine(store, publisher)

        await engine.sync_reports()
        publisher.fail_on.clear()
        result = await engine.sync_reports()

        assert result.completed is True
        assert [r.description for r in publisher.calls] == ["A", "B", "B", "C"]
        assert publisher.descriptions == ["A", "B", "C"]
        assert store.query_pending() == []

    @pytest.mark.asyncio
    async def test_unexpected_error_releases_the_guard(self, store, make_record):
        store.append(make_record())
        engine = _engine(store, ExplodingPublisher())

        result = await engine.sync_reports()
        assert result.error == "unexpected"
        assert engine.state is SyncEngineState.IDLE

        engine._publisher = RecordingPublisher()
        result = await engine.sync_reports()
        assert result.completed is True
        assert store.count_pending() == 0

    @pytest.mark.asyncio
    async def test_mark_failure_aborts(self, session_factory, make_record):
        store = NeverMarksStore(session_factory=session_factory)
        first = store.append(make_record(description="A"))
        store.append(make_record(description="B"))
        publisher = RecordingPublisher()

        result = await _engine(store, publisher).sync_reports()

        assert result.aborted_at == first
        assert result.synced == []
        assert [r.description for r in publisher.calls] == ["A"]


class TestPhotoHandling:

    @pytest.mark.asyncio
    async def test_undecodable_photo_uploads_without_it(self, store, make_record):
        local_id = store.append(make_record(photo_data="data:image/jpeg;base64,bm90IGFuIGltYWdl"))
        publisher = RecordingPublisher()

        result = await _engine(store, publisher).sync_reports()

        assert result.synced == [local_id]
        assert result.photos_dropped == [local_id]
        assert list(publisher.remote.documents.values())[0]["photoData"] is None

    @pytest.mark.asyncio
    async def test_compressor_exception_is_contained(self, store, make_record):
        def broken_compress(*args):
            raise MemoryError("image too large")

        local_id = store.append(make_record(photo_data="data:image/png;base64,AAAA"))
        publisher = RecordingPublisher()

        result = await _engine(store, publisher, compress=broken_compress).sync_reports()

        assert result.synced == [local_id]
        assert publisher.calls[0].photo_data is None

    @pytest.mark.asyncio
    async def test_compression_settings_are_passed_through(self, store, make_record):
        seen = []

        def fake_compress(raw, max_dimension, quality, max_bytes):
            seen.append((max_dimension, quality, max_bytes))
            return DATA_URL_PREFIX + "AAAA"

        store.append(make_record(photo_data="data:image/png;base64,AAAA"))
        engine = _engine(store, RecordingPublisher(), compress=fake_compress,
                         max_dimension=320, quality=0.7, max_photo_bytes=50_000)
        await engine.sync_reports()
        assert seen == [(320, 0.7, 50_000)]


class TestAlerts:

    @pytest.mark.asyncio
    async def test_failing_dispatcher_still_marks_synced(self, store, make_record):
        """A published report is marked Synced even when its alert blows up, so it is never re-published."""
        local_id = store.append(make_record(severity="Critical"))
        publisher = RecordingPublisher()
        dispatcher = RaisingDispatcher()
        engine = _engine(store, publisher, dispatcher=dispatcher)

        result = await engine.sync_reports()
        assert result.completed is True
        assert result.synced == [local_id]
        assert store.count_pending() == 0

        await engine.sync_reports()
        assert len(publisher.calls) == 1
        assert len(publisher.remote.documents) == 1
        assert dispatcher.calls == 1

    @pytest.mark.asyncio
    async def test_unreachable_webhook_does_not_block_sync(self, store, make_record):
        def handler(request):
            raise httpx.ConnectError("webhook down", request=request)

        dispatcher = AlertDispatcher(
            webhook_url="https://hooks.example.test/down",
            transport=httpx.MockTransport(handler),
        )
        store.append(make_record(severity="Critical"))
        result = await _engine(store, RecordingPublisher(), dispatcher=dispatcher).sync_reports()
        assert result.completed is True
        assert store.count_pending() == 0

    @pytest.mark.asyncio
    async def test_alert_sent_after_publish(self, store, make_record):
        order = []

        class OrderedPublisher(RecordingPublisher):
            async def publish(self, record):
                order.append("publish")
                return await super().publish(record)

        class OrderedDispatcher(SilentDispatcher):
            async def notify(self, record):
                order.append("notify")

        store.append(make_record(severity="High"))
        await _engine(store, OrderedPublisher(), dispatcher=OrderedDispatcher()).sync_reports()
        assert order == ["publish", "notify"]


class TestSingleFlight:

    @pytest.mark.asyncio
    async def test_concurrent_calls_are_skipped(self, store, make_record):
        store.append(make_record(description="A"))
        publisher = BlockingPublisher()
        engine = _engine(store, publisher)

        first = asyncio.create_task(engine.sync_reports())
        await asyncio.wait_for(publisher.entered.wait(), timeout=3)
        assert engine.is_running

        others = await asyncio.gather(*(engine.sync_reports() for _ in range(5)))
        assert all(r.skipped for r in others)

        publisher.release.set()
        result = await first
        assert result.synced and len(publisher.calls) == 1
        assert engine.state is SyncEngineState.IDLE


# ---------------------------------------------------------------------------
# Triggers and lifecycle
# ---------------------------------------------------------------------------

class TestTriggers:

    @pytest.mark.asyncio
    async def test_trigger_before_start_is_ignored(self, store):
        engine = _engine(store, RecordingPublisher())
        assert engine.trigger(TriggerSource.MANUAL) is False

    @pytest.mark.asyncio
    async def test_startup_run_drains_existing_queue(self, store, make_record):
        store.append(make_record())
        engine = _engine(store, RecordingPublisher())
        await engine.start()
        try:
            await wait_for(lambda: engine.last_result is not None)
            assert engine.last_result.source == TriggerSource.STARTUP
            assert engine.last_result.synced
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_new_local_report_triggers_sync(self, store, make_record):
        publisher = RecordingPublisher()
        engine = _engine(store, publisher)
        await engine.start()
        try:
            await wait_for(lambda: engine.last_result is not None)
            store.append(make_record(description="fresh"))
            await wait_for(lambda: engine.last_result.source == TriggerSource.RECORD_STORE)
            assert publisher.descriptions == ["fresh"]
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_coming_online_triggers_sync(self, store, make_record):
        monitor = ConnectivityMonitor()
        monitor.set_online(False)
        publisher = RecordingPublisher()
        engine = _engine(store, publisher, connectivity=monitor)
        await engine.start()
        try:
            store.append(make_record(description="queued"))
            await asyncio.sleep(0.05)
            assert publisher.calls == []

            monitor.set_online(True)
            await wait_for(lambda: engine.last_result is not None)
            assert engine.last_result.source == TriggerSource.ONLINE
            assert publisher.descriptions == ["queued"]
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_trigger_dropped_while_running(self, store, make_record):
        publisher = BlockingPublisher()
        engine = _engine(store, publisher)
        await engine.start()
        try:
            await wait_for(lambda: engine.last_result is not None)
            store.append(make_record())
            await asyncio.wait_for(publisher.entered.wait(), timeout=3)
            assert engine.trigger(TriggerSource.MANUAL) is False
            publisher.release.set()
            await wait_for(lambda: engine.last_result.source == TriggerSource.RECORD_STORE)
            assert len(publisher.calls) == 1
        finally:
            publisher.release.set()
            await engine.stop()

    @pytest.mark.asyncio
    async def test_timer_picks_up_work(self, store, make_record):
        connectivity = FakeConnectivity(False)
        publisher = RecordingPublisher()
        engine = _engine(store, publisher, connectivity=connectivity, interval_seconds=0.05)
        await engine.start()
        try:
            store.append(make_record(description="late"))
            # Let the push-triggered run see the device offline first
            await asyncio.sleep(0)
            connectivity.is_online = True
            await wait_for(lambda: engine.last_result is not None)
            assert engine.last_result.source == TriggerSource.TIMER
            assert publisher.descriptions == ["late"]
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_trigger_from_another_thread(self, store, make_record):
        publisher = RecordingPublisher()
        engine = _engine(store, publisher)
        await engine.start()
        try:
            await wait_for(lambda: engine.last_result is not None)
            store.append(make_record(description="first"))
            await wait_for(lambda: engine.last_result.source == TriggerSource.RECORD_STORE)
            accepted = await asyncio.to_thread(engine.trigger, TriggerSource.MANUAL)
            assert accepted is True
            await wait_for(lambda: engine.last_result.source == TriggerSource.MANUAL)
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_stop_unsubscribes(self, store, make_record):
        publisher = RecordingPublisher()
        engine = _engine(store, publisher)
        await engine.start()
        await wait_for(lambda: engine.last_result is not None)
        await engine.stop()

        store.append(make_record())
        await asyncio.sleep(0.05)
        assert publisher.calls == []


class TestCompletion:

    @pytest.mark.asyncio
    async def test_listener_fires_when_reports_synced(self, store, make_record):
        events = []
        engine = _engine(store, RecordingPublisher())
        engine.on_complete(events.append)

        await engine.sync_reports()
        assert events == []

        store.append(make_record())
        await engine.sync_reports()
        assert len(events) == 1
        assert events[0].completed is True

    @pytest.mark.asyncio
    async def test_no_completion_on_abort(self, store, make_record):
        events = []
        store.append(make_record(description="A"))
        engine = _engine(store, RecordingPublisher(fail_on={"A"}))
        engine.on_complete(events.append)
        await engine.sync_reports()
        assert events == []

    def test_result_serializes(self, store):
        engine = _engine(store, RecordingPublisher())
        result = asyncio.run(engine.sync_reports(TriggerSource.MANUAL))
        data = result.to_dict()
        assert data["source"] == "manual"
        assert data["completed"] is True
        assert data["finished_at"] >= data["started_at"]
