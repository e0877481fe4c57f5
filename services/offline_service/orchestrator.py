"""Sync orchestration: flushes the sync queue when the remote is reachable."""

import asyncio
import logging
import os
import socket
import uuid
from dataclasses import asdict
from datetime import datetime
from typing import Optional

from shared.analytics import AnalyticsTracker
from shared.db_operations import DatabaseOperations
from shared.exceptions import StorageError, SyncError
from shared.models import ActionType, SyncStatus, SyncSummary
from services.offline_service.connectivity import ConnectivityMonitor
from services.offline_service.sync_queue import ENTITY_FIELDS, SyncQueue, entity_ref
from services.offline_service.transport import LocalTransport

logger = logging.getLogger(__name__)

SYNC_LOCK_NAME = "sync"
LAST_SYNC_TIME_KEY = "last_sync_time"


class SyncOrchestrator:
    """Pushes pending queue items and marks the annotations they cover as synced."""

    def __init__(
        self,
        db_ops: DatabaseOperations,
        sync_queue: SyncQueue,
        connectivity: ConnectivityMonitor,
        analytics: Optional[AnalyticsTracker] = None,
        transport=None,
        lock_ttl: float = 300.0
    ):
        """
        Initialize the sync orchestrator.

        Args:
            db_ops: Local store
            sync_queue: Queue of pending actions
            connectivity: Connectivity monitor consulted before each run
            analytics: Optional analytics tracker
            transport: Object with async begin(items) and push(item);
                defaults to LocalTransport
            lock_ttl: Seconds before an abandoned cross-process sync lock expires
        """
        self.db_ops = db_ops
        self.sync_queue = sync_queue
        self.connectivity = connectivity
        self.analytics = analytics
        self.transport = transport or LocalTransport()
        self.lock_ttl = lock_ttl
        self.owner = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self._lock = asyncio.Lock()

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    @property
    def last_sync_time(self) -> Optional[datetime]:
        value = self.db_ops.get_value(LAST_SYNC_TIME_KEY)
        return datetime.fromisoformat(value) if value else None

    def _track(self, event: str, **data):
        if self.analytics:
            self.analytics.track(event, **data)

    async def sync_pending_changes(self) -> Optional[SyncSummary]:
        """
        Push every due pending item to the remote.

        Does nothing and returns None while offline or while another sync
        is running, in this process or in another one sharing the store.

        Returns:
            SyncSummary of the run, or None if it did not run

        Raises:
            SyncError: If pushing or recording an item failed. Items already
                completed stay completed; the rest stay pending.
        """
        if not self.connectivity.is_online:
            logger.debug("Offline, skipping sync")
            return None

        if self._lock.locked():
            logger.debug("Sync already in progress, skipping")
            return None

        async with self._lock:
            try:
                acquired = self.db_ops.acquire_lock(SYNC_LOCK_NAME, self.owner, self.lock_ttl)
            except StorageError as e:
                raise self._failed(e) from e

            if not acquired:
                logger.info("Sync lock held by another process, skipping")
                return None

            try:
                return await self._run_sync()
            finally:
                self.db_ops.release_lock(SYNC_LOCK_NAME, self.owner)

    async def _run_sync(self) -> SyncSummary:
        self._track("sync_started")

        try:
            pending_items = self.sync_queue.get_pending()

            if not pending_items:
                logger.info("No pending changes to sync")
                return SyncSummary()

            summary = SyncSummary()
            for item in pending_items:
                category = ActionType(item["action_type"]).category
                if category == "note":
                    summary.note_actions += 1
                elif category == "highlight":
                    summary.highlight_actions += 1
                else:
                    summary.activity_actions += 1

            logger.info(
                f"Syncing {len(pending_items)} items: {summary.note_actions} note, "
                f"{summary.highlight_actions} highlight, {summary.activity_actions} activity"
            )

            await self.transport.begin(pending_items)

            for item in pending_items:
                try:
                    await self.transport.push(item)
                except Exception as e:
                    self.sync_queue.record_failure(item["id"], str(e))
                    raise

                self._complete_item(item)
                summary.items_synced += 1

            self.db_ops.set_value(LAST_SYNC_TIME_KEY, datetime.utcnow().isoformat())

            logger.info(f"Sync completed: {summary.items_synced} items synced")
            self._track("sync_completed", **asdict(summary))

            return summary

        except Exception as e:
            raise self._failed(e) from e

    def _failed(self, error: Exception) -> SyncError:
        logger.error(f"Sync failed: {error}", exc_info=True)
        self._track("sync_failed", error=str(error))
        return SyncError(f"Sync failed: {error}")

    def _complete_item(self, item: dict):
        """
        Mark an item completed and its entity synced in one transaction.

        The entity stays unsynced while another pending or failed item
        still refers to it.
        """
        ref = entity_ref(item)

        with self.db_ops.batch() as batch:
            self.sync_queue.stage_completion(batch, item)

            if ref is not None:
                partition, entity_id = ref
                if batch.has_outstanding_sync_items(ENTITY_FIELDS[partition], entity_id, exclude_id=item["id"]):
                    return
                # Deleted entities have nothing to flag
                if batch.get(partition, entity_id) is not None:
                    batch.put(partition, {"id": entity_id, "synced": True})

    def reconcile(self) -> int:
        """
        Repair entities left unsynced although all their queue items completed.

        Returns:
            Number of entities marked synced
        """
        items = self.sync_queue.get_all()
        referenced = set()
        outstanding = set()
        for item in items:
            ref = entity_ref(item)
            if ref is None:
                continue
            referenced.add(ref)
            if item["status"] != SyncStatus.COMPLETED.value:
                outstanding.add(ref)

        unsynced = [
            (partition, entity["id"])
            for partition in ("notes", "highlights")
            for entity in self.db_ops.get_by_index(partition, "synced", False)
        ]
        to_fix = [ref for ref in unsynced if ref in referenced and ref not in outstanding]

        if to_fix:
            with self.db_ops.batch() as batch:
                for partition, entity_id in to_fix:
                    batch.put(partition, {"id": entity_id, "synced": True})
            logger.info(f"Reconciled {len(to_fix)} annotations with completed sync items")

        return len(to_fix)
