"""Shared data models for the offline Bible cache and annotation sync."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class HighlightColor(str, Enum):
    """The fixed highlight palette. YELLOW is the default."""
    YELLOW = "#fff59d"
    GREEN = "#a5d6a7"
    BLUE = "#90caf9"
    PINK = "#f48fb1"
    ORANGE = "#ffcc80"
    PURPLE = "#ce93d8"


DEFAULT_HIGHLIGHT_COLOR = HighlightColor.YELLOW


class ActionType(str, Enum):
    """Kinds of mutation recorded in the sync queue."""
    CREATE_NOTE = "create_note"
    UPDATE_NOTE = "update_note"
    DELETE_NOTE = "delete_note"
    CREATE_HIGHLIGHT = "create_highlight"
    DELETE_HIGHLIGHT = "delete_highlight"
    LOG_ACTIVITY = "log_activity"

    @property
    def category(self) -> str:
        """Return 'note', 'highlight' or 'activity'."""
        if self in (ActionType.CREATE_NOTE, ActionType.UPDATE_NOTE, ActionType.DELETE_NOTE):
            return "note"
        if self in (ActionType.CREATE_HIGHLIGHT, ActionType.DELETE_HIGHLIGHT):
            return "highlight"
        return "activity"


class SyncStatus(str, Enum):
    """Status of a sync queue item."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class DownloadStatus(str, Enum):
    """Status of a translation download."""
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    CANCELED = "canceled"
    FAILED = "failed"


@dataclass
class TranslationInfo:
    """Catalog entry for a downloadable translation."""
    id: str
    abbreviation: str
    name: str
    language: str
    estimated_size: str
    estimated_size_bytes: int
    description: Optional[str] = None

    def to_record(self) -> dict:
        """Build a translations partition row that is not yet downloaded."""
        return {
            "id": self.id,
            "abbreviation": self.abbreviation,
            "name": self.name,
            "language": self.language,
            "description": self.description,
            "estimated_size": self.estimated_size,
            "estimated_size_bytes": self.estimated_size_bytes,
            "downloaded": False,
            "downloaded_at": None,
            "downloaded_size": 0,
        }


@dataclass
class SyncSummary:
    """Counts reported at the end of a sync run."""
    items_synced: int = 0
    note_actions: int = 0
    highlight_actions: int = 0
    activity_actions: int = 0
