"""Notes and verse highlights stored locally with offline sync support."""

import logging
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from shared.db_operations import DatabaseOperations
from shared.models import ActionType, DEFAULT_HIGHLIGHT_COLOR, HighlightColor
from services.offline_service.sync_queue import SyncQueue

logger = logging.getLogger(__name__)

NOTE_FIELDS = ('id', 'reference', 'verse_id', 'title', 'content', 'created_at')
HIGHLIGHT_FIELDS = ('id', 'reference', 'verse_id', 'color', 'created_at')


def generate_id(prefix: str) -> str:
    """Build an ID like 'note_1700000000000_3f9a1c2b7'."""
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def resolve_color(color: Optional[str]) -> str:
    """
    Resolve a palette color given by hex value or name.

    Raises:
        ValueError: If the color is not in the palette
    """
    if color is None:
        return DEFAULT_HIGHLIGHT_COLOR.value
    try:
        return HighlightColor(str(color).lower()).value
    except ValueError:
        pass
    try:
        return HighlightColor[str(color).upper()].value
    except KeyError:
        raise ValueError(f"Unknown highlight color: {color}")


class AnnotationStore:
    """Saves, queries and deletes notes and highlights.

    Every mutation is written together with its sync queue item in one
    transaction when a queue is configured.
    """

    def __init__(self, db_ops: DatabaseOperations, sync_queue: Optional[SyncQueue] = None):
        self.db_ops = db_ops
        self.sync_queue = sync_queue

    def _should_enqueue(self, enqueue: bool) -> bool:
        return enqueue and self.sync_queue is not None

    # Notes

    def save_note(self, data: Dict[str, Any], enqueue: bool = True) -> dict:
        """
        Create or update a note.

        A note given with an ID is queued as update_note, otherwise as
        create_note. The note is marked unsynced either way.

        Args:
            data: Note fields (reference, content, optional id, verse_id, title, created_at)
            enqueue: Whether to add a sync queue item

        Returns:
            The stored note

        Raises:
            ValueError: If a new note has no reference
        """
        action = ActionType.UPDATE_NOTE if data.get('id') else ActionType.CREATE_NOTE
        note = {field: data[field] for field in NOTE_FIELDS if field in data}
        note['id'] = data.get('id') or generate_id('note')

        with self.db_ops.batch() as batch:
            existing = batch.get('notes', note['id'])
            if existing is None and not note.get('reference'):
                raise ValueError("A note requires a reference")

            now = datetime.utcnow()
            note['created_at'] = note.get('created_at') or (existing or {}).get('created_at') or now
            note['updated_at'] = now
            note['synced'] = False
            if existing is None:
                note.setdefault('content', "")

            batch.put('notes', note)
            stored = batch.get('notes', note['id'])

            if self._should_enqueue(enqueue):
                self.sync_queue.stage(batch, action, {
                    "note_id": stored['id'],
                    "reference": stored['reference'],
                    "content": stored['content'],
                })

        if self._should_enqueue(enqueue):
            self.sync_queue.notify_added(action)

        logger.info(f"Saved note {stored['id']} for {stored['reference']}")
        return stored

    def delete_note(self, note_id: str, enqueue: bool = True) -> bool:
        """
        Delete a note and queue delete_note.

        Returns:
            False if the note did not exist; nothing is queued then
        """
        with self.db_ops.batch() as batch:
            if not batch.delete('notes', note_id):
                return False
            if self._should_enqueue(enqueue):
                self.sync_queue.stage(batch, ActionType.DELETE_NOTE, {"note_id": note_id})

        if self._should_enqueue(enqueue):
            self.sync_queue.notify_added(ActionType.DELETE_NOTE)

        logger.info(f"Deleted note {note_id}")
        return True

    def get_note(self, note_id: str) -> Optional[dict]:
        return self.db_ops.get('notes', note_id)

    def get_notes_by_reference(self, reference: str) -> List[dict]:
        return self.db_ops.get_by_index('notes', 'reference', reference)

    def get_all_notes(self) -> List[dict]:
        """Get all notes, most recently updated first."""
        notes = self.db_ops.get_all('notes')
        return sorted(notes, key=lambda note: note['updated_at'], reverse=True)

    def search_notes(self, term: str) -> List[dict]:
        """Case-insensitive search over note content, reference and title."""
        term = term.lower()
        return [
            note for note in self.get_all_notes()
            if any(term in (note.get(field) or "").lower() for field in ('content', 'reference', 'title'))
        ]

    def get_unsynced_notes(self) -> List[dict]:
        return self.db_ops.get_by_index('notes', 'synced', False)

    # Highlights

    def save_highlight(self, data: Dict[str, Any], enqueue: bool = True) -> dict:
        """
        Create or update a highlight and queue create_highlight.

        Args:
            data: Highlight fields (reference, optional id, verse_id, color, created_at)
            enqueue: Whether to add a sync queue item

        Returns:
            The stored highlight

        Raises:
            ValueError: If the color is unknown or a new highlight has no reference
        """
        highlight = {field: data[field] for field in HIGHLIGHT_FIELDS if field in data}
        highlight['id'] = data.get('id') or generate_id('highlight')
        highlight['color'] = resolve_color(data.get('color'))

        with self.db_ops.batch() as batch:
            existing = batch.get('highlights', highlight['id'])
            if existing is None and not highlight.get('reference'):
                raise ValueError("A highlight requires a reference")

            highlight['created_at'] = (
                highlight.get('created_at') or (existing or {}).get('created_at') or datetime.utcnow()
            )
            highlight['synced'] = False

            batch.put('highlights', highlight)
            stored = batch.get('highlights', highlight['id'])

            if self._should_enqueue(enqueue):
                self.sync_queue.stage(batch, ActionType.CREATE_HIGHLIGHT, {
                    "highlight_id": stored['id'],
                    "reference": stored['reference'],
                    "color": stored['color'],
                })

        if self._should_enqueue(enqueue):
            self.sync_queue.notify_added(ActionType.CREATE_HIGHLIGHT)

        logger.info(f"Saved highlight {stored['id']} for {stored['reference']}")
        return stored

    def delete_highlight(self, highlight_id: str, enqueue: bool = True) -> bool:
        """Delete a highlight and queue delete_highlight. False if it did not exist."""
        with self.db_ops.batch() as batch:
            if not batch.delete('highlights', highlight_id):
                return False
            if self._should_enqueue(enqueue):
                self.sync_queue.stage(batch, ActionType.DELETE_HIGHLIGHT, {"highlight_id": highlight_id})

        if self._should_enqueue(enqueue):
            self.sync_queue.notify_added(ActionType.DELETE_HIGHLIGHT)

        logger.info(f"Deleted highlight {highlight_id}")
        return True

    def get_highlight(self, highlight_id: str) -> Optional[dict]:
        return self.db_ops.get('highlights', highlight_id)

    def get_highlights_by_reference(self, reference: str) -> List[dict]:
        return self.db_ops.get_by_index('highlights', 'reference', reference)

    def get_all_highlights(self) -> List[dict]:
        """Get all highlights, newest first."""
        highlights = self.db_ops.get_all('highlights')
        return sorted(highlights, key=lambda highlight: highlight['created_at'], reverse=True)

    def get_highlights_by_color(self, color: str) -> List[dict]:
        return self.db_ops.get_by_index('highlights', 'color', resolve_color(color))

    def get_unsynced_highlights(self) -> List[dict]:
        return self.db_ops.get_by_index('highlights', 'synced', False)

    def get_statistics(self) -> dict:
        """
        Summarize stored annotations.

        Returns:
            Totals, unsynced counts, highlight counts per color and the five
            most recent notes and highlights
        """
        notes = self.get_all_notes()
        highlights = self.get_all_highlights()

        return {
            "total_notes": len(notes),
            "total_highlights": len(highlights),
            "unsynced_notes": sum(1 for note in notes if not note['synced']),
            "unsynced_highlights": sum(1 for highlight in highlights if not highlight['synced']),
            "highlights_by_color": {
                color.value: sum(1 for highlight in highlights if highlight['color'] == color.value)
                for color in HighlightColor
            },
            "recent_notes": notes[:5],
            "recent_highlights": highlights[:5],
        }
