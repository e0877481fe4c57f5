"""Database operations for the offline Bible store.

The store is partitioned: each partition is a table keyed by its primary key,
with a fixed set of secondary indexes usable through ``get_by_index``. Items
go in and come out as plain dicts.
"""

import json
import logging
import os
import shutil
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import create_engine, select
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from shared.config import get_database_url
from shared.db_models import Base, INDEXES, PARTITIONS, KeyValue, SyncLock, SyncQueueItem
from shared.exceptions import StorageError

logger = logging.getLogger(__name__)


def _primary_key(model) -> str:
    return model.__mapper__.primary_key[0].name


def _to_dict(row) -> dict:
    return {column.name: getattr(row, column.name) for column in row.__table__.columns}


class WriteBatch:
    """Puts and deletes staged on one session and committed together."""

    def __init__(self, db_ops: 'DatabaseOperations', session: Session):
        self._db_ops = db_ops
        self._session = session

    def get(self, partition: str, key: Any) -> Optional[dict]:
        """Read an item as seen by this batch."""
        model = self._db_ops._model(partition)
        row = self._session.get(model, key)
        return _to_dict(row) if row is not None else None

    def put(self, partition: str, item: Dict[str, Any]) -> Any:
        """
        Insert or update an item.

        Args:
            partition: Partition name
            item: Column values; the primary key may be omitted for
                auto-incremented partitions

        Returns:
            The primary key of the stored item
        """
        model = self._db_ops._model(partition)
        unknown = set(item) - set(model.__table__.columns.keys())
        if unknown:
            raise StorageError(f"Unknown fields for partition '{partition}': {sorted(unknown)}")

        pk = _primary_key(model)
        key = item.get(pk)
        row = self._session.get(model, key) if key is not None else None

        if row is None:
            row = model(**item)
            self._session.add(row)
        else:
            for field, value in item.items():
                setattr(row, field, value)

        # Flush so auto-incremented keys are assigned
        self._session.flush()
        return getattr(row, pk)

    def delete(self, partition: str, key: Any) -> bool:
        """Delete an item by key. Returns False if it did not exist."""
        model = self._db_ops._model(partition)
        row = self._session.get(model, key)
        if row is None:
            return False
        self._session.delete(row)
        self._session.flush()
        return True

    def delete_by_index(self, partition: str, index_name: str, value: Any) -> int:
        """Delete every item whose indexed column equals value."""
        model = self._db_ops._indexed_column(partition, index_name)
        column = getattr(model, index_name)
        return self._session.query(model).filter(column == value).delete(
            synchronize_session=False
        )

    def has_outstanding_sync_items(self, field: str, value: str, exclude_id: Optional[int] = None) -> bool:
        """Check for pending or failed queue items whose payload field equals value."""
        stmt = select(SyncQueueItem.id).where(
            SyncQueueItem.status.in_(('pending', 'failed')),
            SyncQueueItem.data[field].as_string() == value
        )
        if exclude_id is not None:
            stmt = stmt.where(SyncQueueItem.id != exclude_id)
        return self._session.execute(stmt.limit(1)).first() is not None


class DatabaseOperations:
    """Handles all local store operations for the offline subsystem."""

    def __init__(self, database_url: Optional[str] = None):
        """Initialize database connection. The schema is created lazily."""
        self.database_url = database_url or get_database_url()

        engine_kwargs: Dict[str, Any] = {"pool_pre_ping": True}
        url = make_url(self.database_url)
        if url.get_backend_name() == "sqlite":
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if url.database in (None, "", ":memory:"):
                # One shared connection, otherwise each connection sees its own empty database
                engine_kwargs["poolclass"] = StaticPool

        self.engine = create_engine(self.database_url, **engine_kwargs)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

        self._initialized = False
        self._init_lock = threading.Lock()

    def create_tables(self):
        """Create all tables in the database."""
        Base.metadata.create_all(bind=self.engine)

    def init(self):
        """
        Create the schema on first use.

        Idempotent; concurrent first callers block on one initialization.
        """
        if self._initialized:
            return
        with self._init_lock:
            if self._initialized:
                return
            try:
                self.create_tables()
            except SQLAlchemyError as e:
                raise StorageError(f"Failed to initialize local store: {e}") from e
            self._initialized = True
            logger.info(f"Local store initialized at {make_url(self.database_url).render_as_string(hide_password=True)}")

    def get_session(self) -> Session:
        """Get a new database session."""
        self.init()
        return self.SessionLocal()

    @contextmanager
    def _session_scope(self, description: str) -> Iterator[Session]:
        session = self.get_session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"{description} failed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def batch(self) -> Iterator[WriteBatch]:
        """
        Stage several writes and commit them in one transaction.

        Either every staged write is committed or none is.
        """
        with self._session_scope("Write batch") as session:
            yield WriteBatch(self, session)

    def _model(self, partition: str):
        try:
            return PARTITIONS[partition]
        except KeyError:
            raise StorageError(f"Unknown partition '{partition}'")

    def _indexed_column(self, partition: str, index_name: str):
        model = self._model(partition)
        if index_name not in INDEXES[partition]:
            raise StorageError(f"Partition '{partition}' has no index '{index_name}'")
        return model

    # Generic Partition Operations

    def put(self, partition: str, item: Dict[str, Any]) -> Any:
        """
        Insert or update an item in a partition.

        Args:
            partition: Partition name
            item: Column values

        Returns:
            The primary key of the stored item
        """
        with self.batch() as batch:
            return batch.put(partition, item)

    def get(self, partition: str, key: Any) -> Optional[dict]:
        """
        Get an item by primary key.

        Args:
            partition: Partition name
            key: Primary key value

        Returns:
            The item as a dict or None if not found
        """
        model = self._model(partition)
        with self._session_scope(f"Get {partition}/{key}") as session:
            row = session.get(model, key)
            return _to_dict(row) if row is not None else None

    def get_all(self, partition: str) -> List[dict]:
        """Get every item of a partition in primary key order."""
        model = self._model(partition)
        with self._session_scope(f"Get all {partition}") as session:
            stmt = select(model).order_by(getattr(model, _primary_key(model)))
            return [_to_dict(row) for row in session.execute(stmt).scalars().all()]

    def get_by_index(self, partition: str, index_name: str, value: Any) -> List[dict]:
        """
        Get items whose secondary index column equals value.

        Args:
            partition: Partition name
            index_name: One of the partition's declared indexes
            value: Value to match

        Returns:
            Matching items in primary key order
        """
        model = self._indexed_column(partition, index_name)
        with self._session_scope(f"Query {partition}.{index_name}") as session:
            stmt = select(model).where(
                getattr(model, index_name) == value
            ).order_by(
                getattr(model, _primary_key(model))
            )
            return [_to_dict(row) for row in session.execute(stmt).scalars().all()]

    def delete(self, partition: str, key: Any) -> bool:
        """Delete an item by primary key. Returns False if it did not exist."""
        with self.batch() as batch:
            return batch.delete(partition, key)

    def clear(self, partition: str) -> int:
        """Delete every item in a partition. Returns the number removed."""
        model = self._model(partition)
        with self._session_scope(f"Clear {partition}") as session:
            return session.query(model).delete(synchronize_session=False)

    # Key/Value Operations

    def get_value(self, key: str, default: Any = None) -> Any:
        """Get a JSON-decoded value from the key/value store."""
        with self._session_scope(f"Get value {key}") as session:
            row = session.get(KeyValue, key)
            if row is None or row.value is None:
                return default
            return json.loads(row.value)

    def set_value(self, key: str, value: Any):
        """Store a value as a JSON-serialized string."""
        serialized = json.dumps(value, default=str)
        with self._session_scope(f"Set value {key}") as session:
            row = session.get(KeyValue, key)
            if row is None:
                session.add(KeyValue(key=key, value=serialized, updated_at=datetime.utcnow()))
            else:
                row.value = serialized
                row.updated_at = datetime.utcnow()

    def delete_value(self, key: str) -> bool:
        """Remove a key. Returns False if it did not exist."""
        with self._session_scope(f"Delete value {key}") as session:
            row = session.get(KeyValue, key)
            if row is None:
                return False
            session.delete(row)
            return True

    # Advisory Lock Operations

    def acquire_lock(self, name: str, owner: str, ttl: float = 300.0) -> bool:
        """
        Take an advisory lock shared by every process using this database.

        Args:
            name: Lock name
            owner: Identifier of the caller
            ttl: Seconds after which an unreleased lock may be taken over

        Returns:
            True if the lock is now held by owner
        """
        now = datetime.utcnow()
        try:
            with self._session_scope(f"Acquire lock {name}") as session:
                lock = session.get(SyncLock, name)
                if lock is not None and lock.owner != owner and lock.expires_at > now:
                    return False

                if lock is None:
                    lock = SyncLock(name=name)
                    session.add(lock)
                lock.owner = owner
                lock.acquired_at = now
                lock.expires_at = now + timedelta(seconds=ttl)
            return True
        except StorageError as e:
            # Another process inserted the same lock row first
            if isinstance(e.__cause__, IntegrityError):
                return False
            raise

    def release_lock(self, name: str, owner: str) -> bool:
        """Release a lock held by owner."""
        with self._session_scope(f"Release lock {name}") as session:
            deleted = session.query(SyncLock).filter(
                SyncLock.name == name,
                SyncLock.owner == owner
            ).delete(synchronize_session=False)
            return deleted > 0

    def get_storage_estimate(self) -> Optional[dict]:
        """
        Estimate storage used by a file-backed SQLite store.

        Returns:
            Dictionary with usage, quota and percentage, or None when the
            store is not a SQLite file
        """
        url = make_url(self.database_url)
        if url.get_backend_name() != "sqlite" or url.database in (None, "", ":memory:"):
            return None

        path = os.path.abspath(url.database)
        usage = os.path.getsize(path) if os.path.exists(path) else 0
        quota = shutil.disk_usage(os.path.dirname(path)).total
        return {
            "usage": usage,
            "quota": quota,
            "percentage": (usage / quota) * 100 if quota else 0,
        }

    # Translation Operations

    def save_translation(self, translation: dict) -> str:
        return self.put('translations', translation)

    def get_translation(self, translation_id: str) -> Optional[dict]:
        return self.get('translations', translation_id)

    def get_all_translations(self) -> List[dict]:
        return self.get_all('translations')

    def delete_translation(self, translation_id: str) -> dict:
        """
        Delete a translation and all of its books, chapters and verses.

        The cascade is committed in one transaction.

        Args:
            translation_id: The translation ID

        Returns:
            Number of rows removed per partition
        """
        with self.batch() as batch:
            removed = {'translations': int(batch.delete('translations', translation_id))}
            for partition in ('books', 'chapters', 'verses'):
                removed[partition] = batch.delete_by_index(partition, 'translation_id', translation_id)
        return removed

    def delete_translation_content(self, translation_id: str) -> dict:
        """Delete the books, chapters and verses of a translation, keeping its row."""
        with self.batch() as batch:
            return {
                partition: batch.delete_by_index(partition, 'translation_id', translation_id)
                for partition in ('books', 'chapters', 'verses')
            }

    # Verse Operations

    def save_verse(self, verse: dict) -> str:
        return self.put('verses', verse)

    def get_verse(self, verse_id: str) -> Optional[dict]:
        return self.get('verses', verse_id)

    def get_verses_by_reference(
        self,
        reference: str,
        translation_id: Optional[str] = None
    ) -> List[dict]:
        """Get cached verses for a reference, optionally for one translation."""
        verses = self.get_by_index('verses', 'reference', reference)
        if translation_id:
            return [v for v in verses if v['translation_id'] == translation_id]
        return verses

    def get_verses_by_chapter(self, chapter_id: str) -> List[dict]:
        return self.get_by_index('verses', 'chapter_id', chapter_id)

    # Sync Queue Operations

    def get_pending_sync_items(self) -> List[dict]:
        """Get pending queue items in insertion order."""
        return self.get_by_index('sync_queue', 'status', 'pending')

    def update_sync_item(self, item_id: int, updates: dict) -> Optional[dict]:
        """
        Apply field updates to a queue item.

        Returns:
            The updated item or None if not found
        """
        with self.batch() as batch:
            if batch.get('sync_queue', item_id) is None:
                return None
            batch.put('sync_queue', {**updates, 'id': item_id})
            return batch.get('sync_queue', item_id)

    # Download Progress Operations

    def save_download_progress(self, progress: dict) -> str:
        return self.put('download_progress', progress)

    def get_download_progress(self, translation_id: str) -> Optional[dict]:
        return self.get('download_progress', translation_id)

    def delete_download_progress(self, translation_id: str) -> bool:
        return self.delete('download_progress', translation_id)
