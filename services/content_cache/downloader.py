"""Downloads Bible translations into the local store for offline reading."""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from shared.analytics import AnalyticsTracker
from shared.db_operations import DatabaseOperations
from shared.exceptions import DownloadCanceledError, StorageError, TranslationNotFoundError
from shared.models import DownloadStatus
from services.content_cache.bible_client import BibleClient
from services.content_cache.catalog import AVAILABLE_TRANSLATIONS, find_translation

logger = logging.getLogger(__name__)

CONTENT_PARTITIONS = ('translations', 'books', 'chapters', 'verses', 'download_progress')


@dataclass
class DownloadToken:
    """Cancellation handle for one in-flight download."""
    task: asyncio.Task
    canceled: bool = False

    def cancel(self):
        self.canceled = True
        self.task.cancel()


class ContentCache:
    """Downloads, tracks and removes offline copies of Bible translations."""

    def __init__(
        self,
        db_ops: DatabaseOperations,
        client: BibleClient,
        analytics: Optional[AnalyticsTracker] = None,
        chapter_delay: float = 0.1
    ):
        """
        Initialize the content cache.

        Args:
            db_ops: Local store
            client: Remote Bible API client
            analytics: Optional analytics tracker
            chapter_delay: Seconds to wait between chapter fetches (rate limiting)
        """
        self.db_ops = db_ops
        self.client = client
        self.analytics = analytics
        self.chapter_delay = chapter_delay
        self._downloads: Dict[str, DownloadToken] = {}

    def _track(self, event: str, **data):
        if self.analytics:
            self.analytics.track(event, **data)

    def _report(self, progress: dict, on_progress: Optional[Callable[[dict], None]]):
        self.db_ops.save_download_progress(dict(progress))
        if on_progress:
            on_progress(dict(progress))

    def get_available_translations(self) -> List[dict]:
        """Get the catalog of downloadable translations."""
        return [asdict(translation) for translation in AVAILABLE_TRANSLATIONS]

    def is_downloading(self, translation_id: str) -> bool:
        return translation_id in self._downloads

    async def download_translation(
        self,
        translation_id: str,
        on_progress: Optional[Callable[[dict], None]] = None
    ) -> dict:
        """
        Download every book, chapter and verse of a translation.

        Progress is persisted and passed to on_progress after each step:
        0 at start, 5 while fetching structure, 10-95 across chapters, and
        100 on completion.

        Args:
            translation_id: ID of a catalog translation
            on_progress: Optional callback receiving a copy of the progress record

        Returns:
            Dictionary with success flag and the stored translation record

        Raises:
            TranslationNotFoundError: If the ID is not in the catalog
            DownloadCanceledError: If cancel_download was called for this ID
            BibleAPIError: If the remote API fails
        """
        translation_meta = find_translation(translation_id)
        if translation_meta is None:
            raise TranslationNotFoundError(f"Translation {translation_id} not found")

        # A second download for the same ID replaces the earlier token
        token = DownloadToken(task=asyncio.current_task())
        self._downloads[translation_id] = token

        logger.info(f"Starting download of {translation_meta.abbreviation} ({translation_id})")
        self._track("translation_download_started", translation_id=translation_id)

        progress = {
            "translation_id": translation_id,
            "status": DownloadStatus.DOWNLOADING.value,
            "progress": 0,
            "current_step": "Initializing...",
            "started_at": datetime.utcnow(),
            "completed_at": None,
            "error": None,
        }

        try:
            self._report(progress, on_progress)

            translation = translation_meta.to_record()
            self.db_ops.save_translation(translation)

            progress.update(progress=5, current_step="Fetching Bible structure...")
            self._report(progress, on_progress)

            books = await self.client.list_books(translation_id)

            # Fetch every chapter list up front so progress can be proportional
            book_chapters = []
            for book in books:
                chapters = await self.client.get_book_chapters(translation_id, book["id"])
                book_chapters.append((book, chapters))

            total_chapters = sum(len(chapters) for _, chapters in book_chapters)
            processed_chapters = 0
            downloaded_bytes = 0

            for book, chapters in book_chapters:
                self.db_ops.put('books', {
                    "id": f"{translation_id}_{book['id']}",
                    "translation_id": translation_id,
                    "book_id": book["id"],
                    "name": book.get("name"),
                    "abbreviation": book.get("abbreviation"),
                })

                for chapter in chapters:
                    self.db_ops.put('chapters', {
                        "id": f"{translation_id}_{chapter['id']}",
                        "translation_id": translation_id,
                        "book_id": book["id"],
                        "chapter_id": chapter["id"],
                        "chapter_number": str(chapter.get("number")),
                        "reference": chapter.get("reference"),
                    })

                    chapter_content = await self.client.get_chapter(translation_id, chapter["id"])

                    if chapter_content.get("content"):
                        verse = {
                            "id": f"{translation_id}_{chapter['id']}",
                            "translation_id": translation_id,
                            "book_id": book["id"],
                            "chapter_id": chapter["id"],
                            "reference": chapter.get("reference") or chapter["id"],
                            "content": chapter_content["content"],
                            "cached_at": datetime.utcnow(),
                        }
                        self.db_ops.save_verse(verse)
                        downloaded_bytes += len(json.dumps(verse, default=str))

                    processed_chapters += 1
                    progress.update(
                        progress=10 + (processed_chapters * 85) // total_chapters,
                        current_step=f"Downloading {book.get('name', book['id'])} {chapter.get('number')}..."
                    )
                    self._report(progress, on_progress)

                    if self.chapter_delay:
                        await asyncio.sleep(self.chapter_delay)

            translation.update(
                downloaded=True,
                downloaded_at=datetime.utcnow(),
                downloaded_size=downloaded_bytes
            )
            self.db_ops.save_translation(translation)

            progress.update(
                status=DownloadStatus.COMPLETED.value,
                progress=100,
                current_step="Download complete!",
                completed_at=datetime.utcnow()
            )
            self._report(progress, on_progress)

            logger.info(
                f"Downloaded {translation_meta.abbreviation}: {processed_chapters} chapters, "
                f"{downloaded_bytes} bytes"
            )
            self._track(
                "translation_download_completed",
                translation_id=translation_id,
                downloaded_size=downloaded_bytes
            )

            return {"success": True, "translation": translation}

        except asyncio.CancelledError:
            self._mark_canceled(progress)
            if not token.canceled:
                # Cancelled from outside, e.g. shutdown
                raise
            asyncio.current_task().uncancel()
            self._track("translation_download_canceled", translation_id=translation_id)
            raise DownloadCanceledError(f"Download of {translation_id} canceled") from None

        except Exception as e:
            logger.error(f"Download of {translation_id} failed: {e}", exc_info=True)
            progress.update(
                status=DownloadStatus.FAILED.value,
                current_step=f"Error: {e}",
                error=str(e)
            )
            try:
                self.db_ops.save_download_progress(dict(progress))
            except StorageError as storage_error:
                logger.error(f"Could not record failed download of {translation_id}: {storage_error}")
            self._track("translation_download_failed", translation_id=translation_id, error=str(e))
            raise

        finally:
            if self._downloads.get(translation_id) is token:
                del self._downloads[translation_id]

    def _mark_canceled(self, progress: dict):
        translation_id = progress["translation_id"]
        logger.info(f"Download of {translation_id} canceled, discarding partial content")

        progress.update(status=DownloadStatus.CANCELED.value, current_step="Download canceled")
        self.db_ops.save_download_progress(dict(progress))

        # Partial rows are discarded so the next download starts from a clean slate
        self.db_ops.delete_translation_content(translation_id)

    def cancel_download(self, translation_id: str) -> bool:
        """
        Cancel an in-flight download.

        Returns:
            True if a download was running and has been signalled
        """
        token = self._downloads.pop(translation_id, None)
        if token is None:
            return False
        token.cancel()
        return True

    async def delete_translation(self, translation_id: str) -> dict:
        """
        Delete a downloaded translation with its books, chapters, verses and progress.

        Args:
            translation_id: The translation ID

        Returns:
            Dictionary with success flag and rows removed per partition
        """
        token = self._downloads.get(translation_id)
        if self.cancel_download(translation_id) and token.task is not asyncio.current_task():
            # The canceled task writes its final progress row while unwinding
            await asyncio.wait([token.task])

        removed = self.db_ops.delete_translation(translation_id)
        self.db_ops.delete_download_progress(translation_id)

        logger.info(f"Deleted translation {translation_id}: {removed}")
        self._track("translation_deleted", translation_id=translation_id)

        return {"success": True, "removed": removed}

    def get_downloaded_translations(self) -> List[dict]:
        return [t for t in self.db_ops.get_all_translations() if t["downloaded"]]

    def is_translation_downloaded(self, translation_id: str) -> bool:
        translation = self.db_ops.get_translation(translation_id)
        return bool(translation and translation["downloaded"])

    def get_download_progress(self, translation_id: str) -> Optional[dict]:
        return self.db_ops.get_download_progress(translation_id)

    def get_storage_info(self) -> dict:
        """
        Get storage usage for offline content.

        Returns:
            Store usage estimate plus bytes and count of downloaded translations
        """
        estimate = self.db_ops.get_storage_estimate() or {}
        translations = self.get_downloaded_translations()

        return {
            **estimate,
            "bible_storage": sum(t["downloaded_size"] or 0 for t in translations),
            "translations_count": len(translations),
        }

    def get_cached_verse(self, reference: str, translation_id: Optional[str] = None) -> Optional[dict]:
        """Get the first cached passage for a reference, or None."""
        verses = self.db_ops.get_verses_by_reference(reference, translation_id)
        return verses[0] if verses else None

    def cache_passage(self, passage: dict, translation_id: str) -> dict:
        """
        Cache a single passage fetched while online.

        Args:
            passage: Dictionary with reference and content, optionally id,
                book_id and chapter_id
            translation_id: Translation the passage belongs to

        Returns:
            The stored verse record
        """
        verse = {
            "id": passage.get("id") or f"{translation_id}_{passage['reference']}",
            "translation_id": translation_id,
            "book_id": passage.get("book_id"),
            "chapter_id": passage.get("chapter_id"),
            "reference": passage["reference"],
            "content": passage.get("content"),
            "cached_at": datetime.utcnow(),
        }
        self.db_ops.save_verse(verse)
        return verse

    def clear_all_data(self) -> dict:
        """Remove all offline Bible content. Notes, highlights and the sync queue are kept."""
        for partition in CONTENT_PARTITIONS:
            self.db_ops.clear(partition)
        logger.info("Cleared all offline Bible content")
        return {"success": True}
