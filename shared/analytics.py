"""Offline usage analytics recorded in the local key/value store."""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from shared.db_operations import DatabaseOperations
from shared.exceptions import StorageError

logger = logging.getLogger(__name__)

ANALYTICS_KEY = "offline-analytics"


class AnalyticsTracker:
    """Appends offline/sync/download events to a capped, persisted log."""

    def __init__(
        self,
        db_ops: DatabaseOperations,
        online_status: Optional[Callable[[], bool]] = None,
        max_events: int = 1000
    ):
        """
        Initialize the tracker.

        Args:
            db_ops: Local store holding the event log
            online_status: Callable reporting current connectivity, stamped on each event
            max_events: Number of most recent events kept
        """
        self.db_ops = db_ops
        self.online_status = online_status
        self.max_events = max_events

    def track(self, event: str, **data) -> Optional[dict]:
        """
        Record an analytics event.

        Storage failures are logged and never raised, so tracking cannot
        break the action being tracked.

        Args:
            event: Event name, e.g. 'sync_completed'
            **data: Extra fields stored with the event

        Returns:
            The recorded event, or None if it could not be stored
        """
        analytics_event = {
            "event": event,
            "timestamp": datetime.utcnow().isoformat(),
            "is_online": self.online_status() if self.online_status else None,
            **data
        }

        try:
            events = self.db_ops.get_value(ANALYTICS_KEY, [])
            events.append(analytics_event)
            if len(events) > self.max_events:
                events = events[-self.max_events:]
            self.db_ops.set_value(ANALYTICS_KEY, events)
        except StorageError as e:
            logger.error(f"Error tracking analytics event {event}: {e}")
            return None

        logger.debug(f"Analytics: {analytics_event}")
        return analytics_event

    def get_events(self, event: Optional[str] = None) -> List[dict]:
        """Get recorded events, optionally only those with a given name."""
        events = self.db_ops.get_value(ANALYTICS_KEY, [])
        if event:
            return [e for e in events if e.get("event") == event]
        return events

    def get_summary(self) -> dict:
        """
        Summarize connectivity, sync and download outcomes.

        Returns:
            Dictionary with event counts, success rates and the raw events
        """
        events = self.get_events()

        def count(name: str) -> int:
            return sum(1 for e in events if e.get("event") == name)

        sync_attempts = count("sync_started")
        sync_successes = count("sync_completed")
        downloads_started = count("translation_download_started")
        downloads_completed = count("translation_download_completed")

        return {
            "total_events": len(events),
            "connection_losses": count("connection_lost"),
            "sync_attempts": sync_attempts,
            "sync_successes": sync_successes,
            "sync_failures": count("sync_failed"),
            "sync_success_rate": (sync_successes / sync_attempts) * 100 if sync_attempts else 0,
            "downloads_started": downloads_started,
            "downloads_completed": downloads_completed,
            "download_success_rate": (
                (downloads_completed / downloads_started) * 100 if downloads_started else 0
            ),
            "raw_events": events,
        }
