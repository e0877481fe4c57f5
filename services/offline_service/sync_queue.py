"""Append-only queue of annotation mutations waiting to reach the remote."""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from shared.analytics import AnalyticsTracker
from shared.db_operations import DatabaseOperations, WriteBatch
from shared.models import ActionType, SyncStatus

logger = logging.getLogger(__name__)

# Payload field holding the ID of the annotation an item refers to
ENTITY_FIELDS = {"notes": "note_id", "highlights": "highlight_id"}


def _action_type(action_type) -> ActionType:
    try:
        return ActionType(action_type)
    except ValueError:
        raise ValueError(f"Unknown sync action type: {action_type}")


def entity_ref(item: dict) -> Optional[Tuple[str, str]]:
    """Return the (partition, id) of the note or highlight a queue item refers to."""
    category = ActionType(item["action_type"]).category
    data = item.get("data") or {}
    partition = {"note": "notes", "highlight": "highlights"}.get(category)
    if partition and data.get(ENTITY_FIELDS[partition]):
        return partition, data[ENTITY_FIELDS[partition]]
    return None


class SyncQueue:
    """
    Records pending note, highlight and activity actions.

    Items are never deleted. They move from pending to completed, or to
    failed once max_attempts pushes have failed.
    """

    def __init__(
        self,
        db_ops: DatabaseOperations,
        analytics: Optional[AnalyticsTracker] = None,
        max_attempts: int = 5,
        backoff_base: float = 2.0,
        backoff_max: float = 300.0
    ):
        self.db_ops = db_ops
        self.analytics = analytics
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    def _build_item(self, action_type, data: Dict[str, Any]) -> dict:
        return {
            "action_type": _action_type(action_type).value,
            "data": data,
            "created_at": datetime.utcnow(),
            "status": SyncStatus.PENDING.value,
            "attempts": 0,
        }

    def add(self, action_type, data: Dict[str, Any]) -> int:
        """
        Append an action to the queue.

        Args:
            action_type: An ActionType or its string value
            data: Action payload

        Returns:
            The new item's ID

        Raises:
            ValueError: If the action type is unknown
        """
        item_id = self.db_ops.put('sync_queue', self._build_item(action_type, data))
        self.notify_added(action_type)
        return item_id

    def stage(self, batch: WriteBatch, action_type, data: Dict[str, Any]) -> int:
        """Append an action inside an open write batch. Call notify_added after commit."""
        return batch.put('sync_queue', self._build_item(action_type, data))

    def notify_added(self, action_type):
        action = _action_type(action_type).value
        logger.debug(f"Queued {action} for sync")
        if self.analytics:
            self.analytics.track("item_added_to_sync_queue", action_type=action)

    def get_pending(self, now: Optional[datetime] = None) -> List[dict]:
        """
        Get pending items that are due, in insertion order.

        Items backing off after a failed push are skipped until their
        next_attempt_at has passed. Later items for the same note or
        highlight are held back with them, as are items queued after a
        failed item for the same annotation, so one annotation's actions
        always reach the remote in the order they were made.
        """
        now = now or datetime.utcnow()
        outstanding = sorted(
            self.db_ops.get_pending_sync_items() + self.get_failed(),
            key=lambda item: item["id"]
        )

        blocked = set()
        due = []
        for item in outstanding:
            ref = entity_ref(item)
            waiting = (
                item["status"] == SyncStatus.FAILED.value
                or (item["next_attempt_at"] is not None and item["next_attempt_at"] > now)
            )
            if waiting or ref in blocked:
                if ref is not None:
                    blocked.add(ref)
                continue
            due.append(item)
        return due

    def get_all(self) -> List[dict]:
        return self.db_ops.get_all('sync_queue')

    def get_failed(self) -> List[dict]:
        return self.db_ops.get_by_index('sync_queue', 'status', SyncStatus.FAILED.value)

    def count_pending(self) -> int:
        return len(self.db_ops.get_pending_sync_items())

    def backoff_delay(self, attempts: int) -> float:
        """Seconds to wait before retrying an item that has failed attempts times."""
        return min(self.backoff_max, self.backoff_base * (2 ** (attempts - 1)))

    def record_failure(self, item_id: int, error: str) -> Optional[dict]:
        """
        Record a failed push for an item.

        The item is retried after an exponential backoff, and moved to failed
        once it reaches max_attempts.

        Returns:
            The updated item or None if not found
        """
        item = self.db_ops.get('sync_queue', item_id)
        if item is None:
            return None

        attempts = (item["attempts"] or 0) + 1
        updates = {"attempts": attempts, "last_error": error}

        if attempts >= self.max_attempts:
            updates.update(status=SyncStatus.FAILED.value, next_attempt_at=None)
            logger.warning(f"Sync item {item_id} failed {attempts} times, giving up: {error}")
        else:
            delay = self.backoff_delay(attempts)
            updates["next_attempt_at"] = datetime.utcnow() + timedelta(seconds=delay)
            logger.warning(
                f"Sync item {item_id} failed (attempt {attempts}/{self.max_attempts}): {error}. "
                f"Retrying in {delay:.2f} seconds"
            )

        return self.db_ops.update_sync_item(item_id, updates)

    def requeue_failed(self, item_id: Optional[int] = None) -> int:
        """
        Move failed items back to pending with their attempts reset.

        Args:
            item_id: Requeue only this item; all failed items if None

        Returns:
            Number of items requeued
        """
        failed = self.get_failed()
        if item_id is not None:
            failed = [item for item in failed if item["id"] == item_id]

        with self.db_ops.batch() as batch:
            for item in failed:
                batch.put('sync_queue', {
                    "id": item["id"],
                    "status": SyncStatus.PENDING.value,
                    "attempts": 0,
                    "next_attempt_at": None,
                })

        if failed:
            logger.info(f"Requeued {len(failed)} failed sync items")
        return len(failed)

    def stage_completion(self, batch: WriteBatch, item: dict):
        """Mark an item completed inside an open write batch."""
        batch.put('sync_queue', {
            "id": item["id"],
            "status": SyncStatus.COMPLETED.value,
            "synced_at": datetime.utcnow(),
            "next_attempt_at": None,
        })
