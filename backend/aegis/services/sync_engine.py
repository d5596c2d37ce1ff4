"""
Offline-first Sync Engine.
Pushes queued field reports to the cloud once the device is back online.

Every stimulus (startup, connectivity restored, a new local report, the
periodic timer, a manual request) is a message into ``trigger``. At most one
sync run is active at a time; triggers that arrive during a run are dropped,
and the timer or the next push picks up whatever the run left behind.

Per run, reports go out strictly oldest first, one at a time:
compress photo -> publish -> alert -> mark synced. A publish or store failure
ends the run at that report so nothing after it jumps the queue.
"""
import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from ..core.errors import PublishError, StoreError
from .photo_compression import compress_image
from .record_store import IncidentRecord

logger = logging.getLogger(__name__)


class SyncEngineState(str, Enum):
    IDLE = "idle"
    SYNC_RUNNING = "sync_running"


class TriggerSource:
    STARTUP = "startup"
    ONLINE = "online"
    RECORD_STORE = "record_store"
    TIMER = "timer"
    MANUAL = "manual"


@dataclass
class SyncResult:
    """Outcome of one pass over the pending queue."""
    source: str
    skipped: bool = False     # Another run was active
    offline: bool = False
    pending: int = 0
    synced: List[int] = field(default_factory=list)
    photos_dropped: List[int] = field(default_factory=list)
    aborted_at: Optional[int] = None
    error: Optional[str] = None
    completed: bool = False
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "skipped": self.skipped,
            "offline": self.offline,
            "pending": self.pending,
            "synced": list(self.synced),
            "photos_dropped": list(self.photos_dropped),
            "aborted_at": self.aborted_at,
            "error": self.error,
            "completed": self.completed,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


CompletionListener = Callable[[SyncResult], None]


class SyncEngine:
    """
    Single-flight orchestrator over the record store, photo compression,
    remote publisher and alert dispatcher.

    Parameters
    ----------
    store : RecordStore
        Local queue; ``query_pending`` and ``mark_synced`` are used.
    publisher
        Object with ``async publish(record) -> remote_id``.
    dispatcher
        Object with ``async notify(record)``; expected never to raise.
    connectivity
        Object with an ``is_online`` attribute.
    compress : callable, optional
        ``(raw, max_dimension, quality, max_bytes) -> data_url | None``.
    """

    def __init__(
        self,
        store: Any,
        publisher: Any,
        dispatcher: Any,
        connectivity: Any,
        interval_seconds: float = 15.0,
        max_dimension: int = 600,
        quality: float = 0.5,
        max_photo_bytes: Optional[int] = None,
        compress: Optional[Callable] = None,
    ) -> None:
        self._store = store
        self._publisher = publisher
        self._dispatcher = dispatcher
        self._connectivity = connectivity
        self._interval = float(interval_seconds)
        self._max_dimension = max_dimension
        self._quality = quality
        self._max_photo_bytes = max_photo_bytes
        self._compress = compress or compress_image

        self._state = SyncEngineState.IDLE
        self._last_result: Optional[SyncResult] = None
        self._completion_listeners: List[CompletionListener] = []

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._runs: Set[asyncio.Task] = set()
        self._unsubscribers: List[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> SyncEngineState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is SyncEngineState.SYNC_RUNNING

    @property
    def last_result(self) -> Optional[SyncResult]:
        return self._last_result

    def on_complete(self, listener: CompletionListener) -> None:
        """Register a callback for runs that drained the queue."""
        self._completion_listeners.append(listener)

    # ------------------------------------------------------------------
    # The sync run
    # ------------------------------------------------------------------

    async def sync_reports(self, source: str = TriggerSource.MANUAL) -> SyncResult:
        """
        Run one pass over the pending queue. Never raises.
        The guard is tested and set before the first await, which makes it
        atomic on the event loop.
        """
        result = SyncResult(source=source)

        if self._state is SyncEngineState.SYNC_RUNNING:
            logger.info("Sync already in progress, skipping %s trigger", source)
            result.skipped = True
            result.finished_at = time.time()
            return result

        if not self._connectivity.is_online:
            logger.info("Offline, waiting for signal (%s trigger)", source)
            result.offline = True
            result.finished_at = time.time()
            return result

        self._state = SyncEngineState.SYNC_RUNNING
        current: Optional[IncidentRecord] = None
        try:
            pending = await asyncio.to_thread(self._store.query_pending)
            result.pending = len(pending)
            if pending:
                logger.info("Online, found %d reports to sync (%s)", len(pending), source)

            for current in pending:
                await self._sync_one(current, result)
            current = None

            result.completed = True
            if result.synced:
                logger.info("All offline reports synced to cloud (%d)", len(result.synced))
                self._emit_complete(result)
        except PublishError as exc:
            result.aborted_at = current.local_id if current else None
            result.error = str(exc)
            logger.error("Sync stopped at report %s: %s", result.aborted_at, exc)
        except StoreError as exc:
            result.aborted_at = current.local_id if current else None
            result.error = str(exc)
            logger.error("Sync stopped, local store error: %s", exc)
        except Exception as exc:
            result.aborted_at = current.local_id if current else None
            result.error = str(exc)
            logger.exception("Unexpected sync error")
        finally:
            self._state = SyncEngineState.IDLE
            result.finished_at = time.time()
            self._last_result = result

        return result

    async def _sync_one(self, record: IncidentRecord, result: SyncResult) -> None:
        photo = None
        if record.photo_data:
            photo = await self._compress_photo(record)
            if photo is None:
                result.photos_dropped.append(record.local_id)

        upload = record.with_photo(photo)
        remote_id = await self._publisher.publish(upload)
        try:
            await self._dispatcher.notify(upload)
        except Exception as exc:
            # Already published; a lost alert must not leave the report Pending
            logger.warning("Alert for report %s failed: %s", record.local_id, exc)

        marked = await asyncio.to_thread(self._store.mark_synced, record.local_id, remote_id)
        if not marked:
            raise StoreError(f"Report {record.local_id} was not Pending when marking it synced")
        result.synced.append(record.local_id)
        logger.debug("Report %s synced as %s", record.local_id, remote_id)

    async def _compress_photo(self, record: IncidentRecord) -> Optional[str]:
        try:
            photo = await asyncio.to_thread(
                self._compress,
                record.photo_data,
                self._max_dimension,
                self._quality,
                self._max_photo_bytes,
            )
        except Exception as exc:
            logger.warning("Photo compression failed for report %s: %s", record.local_id, exc)
            return None
        if photo is None:
            logger.warning("Uploading report %s without its photo", record.local_id)
        return photo

    def _emit_complete(self, result: SyncResult) -> None:
        for listener in list(self._completion_listeners):
            try:
                listener(result)
            except Exception as exc:
                logger.warning("Sync completion listener failed: %s", exc)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def trigger(self, source: str) -> bool:
        """
        Ask for a sync run from any thread. Returns False when the engine is
        not started or a run is already active (the trigger is dropped).
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("Sync engine not started, ignoring %s trigger", source)
            return False
        if self.is_running:
            logger.info("Sync already in progress, dropping %s trigger", source)
            return False
        if threading.get_ident() == self._loop_thread:
            self._launch(source)
        else:
            loop.call_soon_threadsafe(self._launch, source)
        return True

    def _launch(self, source: str) -> None:
        if self._loop is None:
            return
        if self.is_running:
            logger.info("Sync already in progress, dropping %s trigger", source)
            return
        task = self._loop.create_task(self.sync_reports(source))
        self._runs.add(task)
        task.add_done_callback(self._runs.discard)

    def _on_pending_change(self, pending: int) -> None:
        if pending > 0:
            self.trigger(TriggerSource.RECORD_STORE)

    def _on_online(self) -> None:
        self.trigger(TriggerSource.ONLINE)

    async def _timer(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self.trigger(TriggerSource.TIMER)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Wire up triggers, start the timer and kick off the startup run."""
        if self._loop is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()

        if hasattr(self._store, "subscribe"):
            self._unsubscribers.append(self._store.subscribe(self._on_pending_change))
        if hasattr(self._connectivity, "on_online"):
            self._unsubscribers.append(self._connectivity.on_online(self._on_online))

        self._timer_task = asyncio.create_task(self._timer())
        logger.info("Sync engine started (interval=%.0fs)", self._interval)
        self.trigger(TriggerSource.STARTUP)

    async def stop(self) -> None:
        """Stop triggering and wait for an active run to finish."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        if self._timer_task is not None:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None

        self._loop = None
        self._loop_thread = None
        if self._runs:
            await asyncio.gather(*self._runs, return_exceptions=True)
        logger.info("Sync engine stopped")
