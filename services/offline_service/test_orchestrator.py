"""Tests for sync orchestration.

Tests cover:
- No-op while offline or while a sync is running
- Queue items and annotation flags after a sync
- Partial failure, backoff and lock release
- Startup reconciliation
"""

import asyncio
import pytest
from datetime import datetime, timedelta

from shared.analytics import AnalyticsTracker
from shared.db_operations import DatabaseOperations
from shared.exceptions import StorageError, SyncError, SyncTransportError
from shared.models import ActionType
from services.offline_service.annotations import AnnotationStore
from services.offline_service.connectivity import ConnectivityMonitor
from services.offline_service.orchestrator import SYNC_LOCK_NAME, SyncOrchestrator
from services.offline_service.sync_queue import SyncQueue
from services.offline_service.transport import LocalTransport


class RecordingTransport:
    """Transport that records pushes and fails on chosen item IDs."""

    def __init__(self, fail_ids=()):
        self.fail_ids = set(fail_ids)
        self.begun = []
        self.pushed = []

    async def begin(self, items):
        self.begun.append([item["id"] for item in items])

    async def push(self, item):
        if item["id"] in self.fail_ids:
            raise SyncTransportError(f"remote rejected item {item['id']}")
        self.pushed.append(item["id"])


class BlockingTransport(RecordingTransport):
    """Transport whose begin waits until released."""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def begin(self, items):
        self.started.set()
        await self.release.wait()


# Test fixtures

@pytest.fixture
def db_ops():
    return DatabaseOperations(database_url="sqlite:///:memory:")


@pytest.fixture
def analytics(db_ops):
    return AnalyticsTracker(db_ops)


@pytest.fixture
def queue(db_ops, analytics):
    return SyncQueue(db_ops, analytics=analytics, max_attempts=3)


@pytest.fixture
def store(db_ops, queue):
    return AnnotationStore(db_ops, sync_queue=queue)


@pytest.fixture
def monitor(analytics):
    return ConnectivityMonitor(analytics=analytics, reconnect_delay=0, initially_online=False)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def orchestrator(db_ops, queue, monitor, analytics, transport):
    return SyncOrchestrator(db_ops, queue, monitor, analytics=analytics, transport=transport)


def event_names(analytics):
    return [e["event"] for e in analytics.get_events()]


@pytest.mark.asyncio
async def test_sync_is_noop_while_offline(orchestrator, store, queue, analytics, transport):
    store.save_note({"reference": "John 3:16", "content": "Love"})

    assert await orchestrator.sync_pending_changes() is None

    assert "sync_started" not in event_names(analytics)
    assert transport.begun == []
    assert queue.count_pending() == 1
    assert orchestrator.last_sync_time is None


@pytest.mark.asyncio
async def test_sync_is_noop_while_sync_in_flight(db_ops, queue, monitor, analytics, store):
    transport = BlockingTransport()
    orchestrator = SyncOrchestrator(db_ops, queue, monitor, analytics=analytics, transport=transport)
    store.save_note({"reference": "John 3:16", "content": "Love"})
    monitor.set_online(True)

    first = asyncio.create_task(orchestrator.sync_pending_changes())
    await asyncio.wait_for(transport.started.wait(), timeout=5)

    assert orchestrator.is_syncing is True
    assert await orchestrator.sync_pending_changes() is None
    assert event_names(analytics).count("sync_started") == 1

    transport.release.set()
    summary = await first

    assert summary.items_synced == 1
    assert orchestrator.is_syncing is False


@pytest.mark.asyncio
async def test_offline_annotations_sync_once_online(orchestrator, store, queue, monitor, db_ops, analytics):
    """Test that each offline mutation has one pending item and all are synced afterwards."""
    note = store.save_note({"reference": "John 3:16", "content": "Love"})
    highlight = store.save_highlight({"reference": "John 3:16", "color": "green"})
    queue.add(ActionType.LOG_ACTIVITY, {"activity": "chapter_read"})

    pending = queue.get_pending()
    assert [i["data"].get("note_id") for i in pending].count(note["id"]) == 1
    assert [i["data"].get("highlight_id") for i in pending].count(highlight["id"]) == 1

    monitor.set_online(True)
    summary = await orchestrator.sync_pending_changes()

    assert summary.items_synced == 3
    assert summary.note_actions == 1
    assert summary.highlight_actions == 1
    assert summary.activity_actions == 1

    assert store.get_note(note["id"])["synced"] is True
    assert store.get_highlight(highlight["id"])["synced"] is True
    assert all(item["status"] == "completed" for item in queue.get_all())
    assert all(item["synced_at"] is not None for item in queue.get_all())
    assert orchestrator.last_sync_time is not None

    completed = analytics.get_events("sync_completed")[0]
    assert completed["items_synced"] == 3
    assert completed["note_actions"] == 1


@pytest.mark.asyncio
async def test_items_pushed_in_insertion_order(orchestrator, store, monitor, transport, queue):
    note = store.save_note({"reference": "Gen 1:1", "content": "one"})
    store.save_note({"id": note["id"], "reference": "Gen 1:1", "content": "two"})
    store.delete_note(note["id"])
    expected = [item["id"] for item in queue.get_pending()]

    monitor.set_online(True)
    await orchestrator.sync_pending_changes()

    assert transport.begun == [expected]
    assert transport.pushed == expected


@pytest.mark.asyncio
async def test_highlight_end_to_end_from_offline_to_online(orchestrator, store, queue, monitor, analytics):
    """Test a highlight made offline syncing after the connection returns."""
    monitor.set_reconnect_handler(orchestrator.sync_pending_changes)
    monitor.set_online(False)

    highlight = store.save_highlight({"reference": "Psalm 23:1", "color": "blue"})
    assert store.get_highlight(highlight["id"])["synced"] is False
    assert queue.count_pending() == 1

    monitor.set_online(True)
    await monitor.pending_reconnect

    assert store.get_highlight(highlight["id"])["synced"] is True
    assert queue.count_pending() == 0
    assert queue.get_all()[0]["status"] == "completed"

    names = event_names(analytics)
    assert names.index("connection_restored") < names.index("sync_started") < names.index("sync_completed")


@pytest.mark.asyncio
async def test_empty_queue_returns_zero_summary(orchestrator, monitor, analytics):
    monitor.set_online(True)

    summary = await orchestrator.sync_pending_changes()

    assert summary.items_synced == 0
    assert "sync_started" in event_names(analytics)
    assert "sync_completed" not in event_names(analytics)


@pytest.mark.asyncio
async def test_push_failure_keeps_remaining_items_pending(db_ops, queue, monitor, analytics, store):
    """Test that a failed push records the failure and stops the run."""
    first = store.save_note({"reference": "Gen 1:1", "content": "one"})
    second = store.save_note({"reference": "Gen 1:2", "content": "two"})
    third = store.save_note({"reference": "Gen 1:3", "content": "three"})
    first_item, second_item, third_item = [i["id"] for i in queue.get_pending()]

    transport = RecordingTransport(fail_ids={second_item})
    orchestrator = SyncOrchestrator(db_ops, queue, monitor, analytics=analytics, transport=transport)
    monitor.set_online(True)

    with pytest.raises(SyncError):
        await orchestrator.sync_pending_changes()

    assert db_ops.get('sync_queue', first_item)["status"] == "completed"
    failed = db_ops.get('sync_queue', second_item)
    assert failed["status"] == "pending"
    assert failed["attempts"] == 1
    assert "remote rejected" in failed["last_error"]
    assert failed["next_attempt_at"] is not None
    untouched = db_ops.get('sync_queue', third_item)
    assert untouched["status"] == "pending"
    assert untouched["attempts"] == 0

    assert store.get_note(first["id"])["synced"] is True
    assert store.get_note(second["id"])["synced"] is False
    assert store.get_note(third["id"])["synced"] is False

    assert "sync_failed" in event_names(analytics)
    assert orchestrator.is_syncing is False
    assert orchestrator.last_sync_time is None
    # The advisory lock was released
    assert db_ops.acquire_lock(SYNC_LOCK_NAME, "another-process") is True


@pytest.mark.asyncio
async def test_entity_stays_unsynced_while_other_items_outstanding(db_ops, queue, monitor, analytics, store):
    note = store.save_note({"reference": "Gen 1:1", "content": "one"})
    store.save_note({"id": note["id"], "reference": "Gen 1:1", "content": "two"})
    create_item, update_item = [i["id"] for i in queue.get_pending()]

    transport = RecordingTransport(fail_ids={update_item})
    orchestrator = SyncOrchestrator(db_ops, queue, monitor, analytics=analytics, transport=transport)
    monitor.set_online(True)

    with pytest.raises(SyncError):
        await orchestrator.sync_pending_changes()

    assert db_ops.get('sync_queue', create_item)["status"] == "completed"
    assert store.get_note(note["id"])["synced"] is False


@pytest.mark.asyncio
async def test_note_actions_wait_behind_backing_off_create(db_ops, queue, monitor, analytics, store):
    """Test that a note's update and delete never reach the remote before its create."""
    note = store.save_note({"reference": "Gen 1:1", "content": "one"})
    store.save_note({"id": note["id"], "reference": "Gen 1:1", "content": "two"})
    store.delete_note(note["id"])
    other = store.save_note({"reference": "Gen 1:2", "content": "other"})
    create_item, update_item, delete_item, other_item = [i["id"] for i in queue.get_all()]

    transport = RecordingTransport(fail_ids={create_item})
    orchestrator = SyncOrchestrator(db_ops, queue, monitor, analytics=analytics, transport=transport)
    monitor.set_online(True)

    with pytest.raises(SyncError):
        await orchestrator.sync_pending_changes()
    assert transport.pushed == []

    # The remote recovers while the create is still backing off
    transport.fail_ids.clear()
    summary = await orchestrator.sync_pending_changes()

    assert summary.items_synced == 1
    assert transport.pushed == [other_item]
    for item_id in (create_item, update_item, delete_item):
        assert db_ops.get('sync_queue', item_id)["status"] == "pending"
    assert store.get_note(other["id"])["synced"] is True

    db_ops.update_sync_item(create_item, {"next_attempt_at": datetime.utcnow() - timedelta(seconds=1)})
    summary = await orchestrator.sync_pending_changes()

    assert summary.items_synced == 3
    assert transport.pushed == [other_item, create_item, update_item, delete_item]
    assert queue.count_pending() == 0


@pytest.mark.asyncio
async def test_note_actions_wait_behind_failed_create(db_ops, queue, monitor, analytics, store, transport):
    """Test that a dead-lettered create holds back its note until requeued."""
    note = store.save_note({"reference": "Gen 1:1", "content": "one"})
    create_item = queue.get_pending()[0]["id"]
    for _ in range(queue.max_attempts):
        queue.record_failure(create_item, "remote rejected")
    store.save_note({"id": note["id"], "reference": "Gen 1:1", "content": "two"})
    highlight = store.save_highlight({"reference": "Gen 1:2"})
    update_item, highlight_item = [i["id"] for i in queue.get_all()][1:]

    orchestrator = SyncOrchestrator(db_ops, queue, monitor, analytics=analytics, transport=transport)
    monitor.set_online(True)

    summary = await orchestrator.sync_pending_changes()

    assert summary.items_synced == 1
    assert transport.pushed == [highlight_item]
    assert db_ops.get('sync_queue', update_item)["status"] == "pending"
    assert store.get_note(note["id"])["synced"] is False
    assert store.get_highlight(highlight["id"])["synced"] is True

    assert queue.requeue_failed() == 1
    await orchestrator.sync_pending_changes()

    assert transport.pushed == [highlight_item, create_item, update_item]
    assert store.get_note(note["id"])["synced"] is True


@pytest.mark.asyncio
async def test_lock_storage_error_reports_sync_failure(orchestrator, store, monitor, db_ops, analytics, monkeypatch):
    store.save_note({"reference": "Gen 1:1", "content": "one"})
    monitor.set_online(True)

    def broken_lock(*args, **kwargs):
        raise StorageError("database is locked")

    monkeypatch.setattr(db_ops, "acquire_lock", broken_lock)

    with pytest.raises(SyncError) as exc_info:
        await orchestrator.sync_pending_changes()

    assert isinstance(exc_info.value.__cause__, StorageError)
    assert "sync_failed" in event_names(analytics)
    assert orchestrator.is_syncing is False


@pytest.mark.asyncio
async def test_sync_skipped_when_another_process_holds_lock(orchestrator, store, monitor, db_ops, analytics, queue):
    store.save_note({"reference": "Gen 1:1", "content": "one"})
    monitor.set_online(True)
    db_ops.acquire_lock(SYNC_LOCK_NAME, "another-process")

    assert await orchestrator.sync_pending_changes() is None

    assert "sync_started" not in event_names(analytics)
    assert queue.count_pending() == 1


@pytest.mark.asyncio
async def test_local_transport_is_default(db_ops, queue, monitor, store):
    orchestrator = SyncOrchestrator(db_ops, queue, monitor)
    assert isinstance(orchestrator.transport, LocalTransport)

    orchestrator.transport.delay = 0
    store.save_note({"reference": "Gen 1:1", "content": "one"})
    monitor.set_online(True)

    summary = await orchestrator.sync_pending_changes()
    assert summary.items_synced == 1


def test_reconcile_flips_entities_with_completed_items(orchestrator, store, queue, db_ops):
    """Test that startup reconciliation repairs flags left behind by an interrupted run."""
    done = store.save_note({"reference": "Gen 1:1", "content": "synced remotely"})
    waiting = store.save_note({"reference": "Gen 1:2", "content": "still pending"})
    local_only = store.save_highlight({"reference": "Gen 1:3"}, enqueue=False)

    done_item = next(i for i in queue.get_pending() if i["data"]["note_id"] == done["id"])
    db_ops.update_sync_item(done_item["id"], {"status": "completed"})

    assert orchestrator.reconcile() == 1

    assert store.get_note(done["id"])["synced"] is True
    assert store.get_note(waiting["id"])["synced"] is False
    assert store.get_highlight(local_only["id"])["synced"] is False
    assert orchestrator.reconcile() == 0
