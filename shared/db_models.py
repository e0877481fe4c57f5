"""SQLAlchemy database models for the offline Bible store."""

from sqlalchemy import (
    Column, String, Integer, Boolean, Text, DateTime, JSON, Index
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func


Base = declarative_base()


class Translation(Base):
    """Model for translations table."""
    __tablename__ = 'translations'

    id = Column(String(100), primary_key=True)
    abbreviation = Column(String(20), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    language = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    estimated_size = Column(String(50), nullable=True)
    estimated_size_bytes = Column(Integer, default=0)
    downloaded = Column(Boolean, nullable=False, default=False)
    downloaded_at = Column(DateTime, nullable=True)
    downloaded_size = Column(Integer, default=0)

    __table_args__ = (
        Index('idx_translations_downloaded_at', 'downloaded_at'),
    )


class Book(Base):
    """Model for books table."""
    __tablename__ = 'books'

    id = Column(String(255), primary_key=True)  # "{translation_id}_{book_id}"
    translation_id = Column(String(100), nullable=False)
    book_id = Column(String(50), nullable=False)
    name = Column(String(255), nullable=True)
    abbreviation = Column(String(50), nullable=True)

    __table_args__ = (
        Index('idx_books_translation_id', 'translation_id'),
        Index('idx_books_book_id', 'book_id'),
    )


class Chapter(Base):
    """Model for chapters table."""
    __tablename__ = 'chapters'

    id = Column(String(255), primary_key=True)  # "{translation_id}_{chapter_id}"
    translation_id = Column(String(100), nullable=False)
    book_id = Column(String(50), nullable=False)
    chapter_id = Column(String(100), nullable=False)
    chapter_number = Column(String(20), nullable=True)  # API numbers can be "intro"
    reference = Column(String(255), nullable=True)

    __table_args__ = (
        Index('idx_chapters_translation_id', 'translation_id'),
        Index('idx_chapters_book_id', 'book_id'),
        Index('idx_chapters_chapter_number', 'chapter_number'),
    )


class Verse(Base):
    """Model for verses table. One row holds the content blob of a passage."""
    __tablename__ = 'verses'

    id = Column(String(255), primary_key=True)
    translation_id = Column(String(100), nullable=False)
    book_id = Column(String(50), nullable=True)
    chapter_id = Column(String(100), nullable=True)
    reference = Column(String(255), nullable=False)
    content = Column(JSON, nullable=True)
    cached_at = Column(DateTime, nullable=False, server_default=func.now())

    __table_args__ = (
        Index('idx_verses_translation_id', 'translation_id'),
        Index('idx_verses_book_id', 'book_id'),
        Index('idx_verses_chapter_id', 'chapter_id'),
        Index('idx_verses_reference', 'reference'),
    )


class Note(Base):
    """Model for notes table."""
    __tablename__ = 'notes'

    id = Column(String(100), primary_key=True)
    reference = Column(String(255), nullable=False)
    verse_id = Column(String(255), nullable=True)
    title = Column(String(255), nullable=True)
    content = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now())
    synced = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index('idx_notes_verse_id', 'verse_id'),
        Index('idx_notes_reference', 'reference'),
        Index('idx_notes_created_at', 'created_at'),
        Index('idx_notes_synced', 'synced'),
    )


class Highlight(Base):
    """Model for highlights table."""
    __tablename__ = 'highlights'

    id = Column(String(100), primary_key=True)
    reference = Column(String(255), nullable=False)
    verse_id = Column(String(255), nullable=True)
    color = Column(String(20), nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    synced = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index('idx_highlights_verse_id', 'verse_id'),
        Index('idx_highlights_reference', 'reference'),
        Index('idx_highlights_color', 'color'),
        Index('idx_highlights_synced', 'synced'),
    )


class SyncQueueItem(Base):
    """Model for sync_queue table. Rows are never deleted."""
    __tablename__ = 'sync_queue'

    id = Column(Integer, primary_key=True, autoincrement=True)
    action_type = Column(String(50), nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    status = Column(String(20), nullable=False, default='pending')  # pending, completed, failed
    synced_at = Column(DateTime, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    next_attempt_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_sync_queue_action_type', 'action_type'),
        Index('idx_sync_queue_created_at', 'created_at'),
        Index('idx_sync_queue_status', 'status'),
    )


class DownloadProgress(Base):
    """Model for download_progress table. One row per translation."""
    __tablename__ = 'download_progress'

    translation_id = Column(String(100), primary_key=True)
    status = Column(String(20), nullable=False)  # downloading, completed, canceled, failed
    progress = Column(Integer, nullable=False, default=0)
    current_step = Column(String(255), nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)


class KeyValue(Base):
    """Model for key_values table. Values are JSON-serialized strings."""
    __tablename__ = 'key_values'

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())


class SyncLock(Base):
    """Model for sync_locks table. An advisory lock shared across processes."""
    __tablename__ = 'sync_locks'

    name = Column(String(100), primary_key=True)
    owner = Column(String(255), nullable=False)
    acquired_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)


# Partition name -> model
PARTITIONS = {
    'translations': Translation,
    'books': Book,
    'chapters': Chapter,
    'verses': Verse,
    'notes': Note,
    'highlights': Highlight,
    'sync_queue': SyncQueueItem,
    'download_progress': DownloadProgress,
}

# Partition name -> columns usable with get_by_index
INDEXES = {
    'translations': ('abbreviation', 'downloaded_at'),
    'books': ('translation_id', 'book_id'),
    'chapters': ('translation_id', 'book_id', 'chapter_number'),
    'verses': ('translation_id', 'book_id', 'chapter_id', 'reference'),
    'notes': ('verse_id', 'reference', 'created_at', 'synced'),
    'highlights': ('verse_id', 'reference', 'color', 'synced'),
    'sync_queue': ('action_type', 'created_at', 'status'),
    'download_progress': (),
}
