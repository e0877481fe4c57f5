"""Tests for offline translation downloads."""

import asyncio
import pytest
from unittest.mock import AsyncMock, Mock

from shared.analytics import AnalyticsTracker
from shared.db_operations import DatabaseOperations
from shared.exceptions import BibleAPIError, DownloadCanceledError, TranslationNotFoundError
from services.content_cache.downloader import ContentCache

NIV = "de4e12af7f28f599-02"
KJV = "de4e12af7f28f599-01"

BOOKS = [
    {"id": "GEN", "name": "Genesis", "abbreviation": "Gen"},
    {"id": "EXO", "name": "Exodus", "abbreviation": "Exod"},
]

CHAPTERS = {
    "GEN": [
        {"id": "GEN.1", "number": "1", "reference": "Genesis 1"},
        {"id": "GEN.2", "number": "2", "reference": "Genesis 2"},
    ],
    "EXO": [
        {"id": "EXO.1", "number": "1", "reference": "Exodus 1"},
    ],
}


def chapter_content(bible_id, chapter_id):
    return {"id": chapter_id, "content": [{"type": "verse", "number": "1", "text": f"{chapter_id} text"}]}


def make_bible_client():
    client = Mock()
    client.list_books = AsyncMock(return_value=BOOKS)
    client.get_book_chapters = AsyncMock(side_effect=lambda bible_id, book_id: CHAPTERS[book_id])
    client.get_chapter = AsyncMock(side_effect=chapter_content)
    return client


@pytest.fixture
def db_ops():
    return DatabaseOperations(database_url="sqlite:///:memory:")


@pytest.fixture
def analytics(db_ops):
    return AnalyticsTracker(db_ops)


@pytest.fixture
def bible_client():
    return make_bible_client()


@pytest.fixture
def cache(db_ops, bible_client, analytics):
    return ContentCache(db_ops, bible_client, analytics=analytics, chapter_delay=0)


@pytest.mark.asyncio
async def test_download_stores_translation_content(cache, db_ops):
    """Test a full download of books, chapters and verses."""
    result = await cache.download_translation(NIV)

    assert result["success"] is True
    translation = db_ops.get_translation(NIV)
    assert translation["downloaded"] is True
    assert translation["downloaded_at"] is not None
    assert translation["downloaded_size"] > 0

    assert {b["book_id"] for b in db_ops.get_by_index('books', 'translation_id', NIV)} == {"GEN", "EXO"}
    assert len(db_ops.get_by_index('chapters', 'translation_id', NIV)) == 3
    verses = db_ops.get_by_index('verses', 'translation_id', NIV)
    assert {v["id"] for v in verses} == {f"{NIV}_GEN.1", f"{NIV}_GEN.2", f"{NIV}_EXO.1"}

    assert cache.is_translation_downloaded(NIV) is True
    assert [t["id"] for t in cache.get_downloaded_translations()] == [NIV]


@pytest.mark.asyncio
async def test_chapter_lists_fetched_once_per_book(cache, bible_client):
    await cache.download_translation(NIV)

    assert bible_client.list_books.await_count == 1
    assert bible_client.get_book_chapters.await_count == len(BOOKS)
    assert bible_client.get_chapter.await_count == 3


@pytest.mark.asyncio
async def test_download_progress_is_monotonic_and_ends_at_100(cache):
    """Test the reported progress sequence of a download."""
    updates = []

    await cache.download_translation(NIV, on_progress=updates.append)

    values = [u["progress"] for u in updates]
    assert values[:2] == [0, 5]
    assert values == sorted(values)
    assert values[-1] == 100
    assert values[2:-1] == [10 + (n * 85) // 3 for n in (1, 2, 3)]

    assert updates[0]["current_step"] == "Initializing..."
    assert updates[1]["current_step"] == "Fetching Bible structure..."
    assert updates[2]["current_step"] == "Downloading Genesis 1..."
    assert updates[-1]["current_step"] == "Download complete!"
    assert updates[-1]["status"] == "completed"

    progress = cache.get_download_progress(NIV)
    assert progress["status"] == "completed"
    assert progress["progress"] == 100
    assert progress["completed_at"] is not None


@pytest.mark.asyncio
async def test_download_with_no_chapters_completes(cache, bible_client, db_ops):
    bible_client.list_books = AsyncMock(return_value=[])
    updates = []

    await cache.download_translation(KJV, on_progress=updates.append)

    assert [u["progress"] for u in updates] == [0, 5, 100]
    assert db_ops.get_translation(KJV)["downloaded"] is True


@pytest.mark.asyncio
async def test_download_unknown_translation(cache):
    with pytest.raises(TranslationNotFoundError):
        await cache.download_translation("not-a-translation")


@pytest.mark.asyncio
async def test_download_tracks_analytics(cache, analytics):
    await cache.download_translation(NIV)

    names = [e["event"] for e in analytics.get_events()]
    assert names == ["translation_download_started", "translation_download_completed"]


@pytest.mark.asyncio
async def test_cancel_discards_partial_download(cache, bible_client, db_ops, analytics):
    """Test that a canceled download leaves no content and can be restarted."""
    second_chapter_started = asyncio.Event()

    async def slow_chapter(bible_id, chapter_id):
        if chapter_id == "GEN.2":
            second_chapter_started.set()
            await asyncio.sleep(60)
        return chapter_content(bible_id, chapter_id)

    bible_client.get_chapter = AsyncMock(side_effect=slow_chapter)

    task = asyncio.create_task(cache.download_translation(NIV))
    await asyncio.wait_for(second_chapter_started.wait(), timeout=5)

    assert cache.is_downloading(NIV) is True
    assert cache.cancel_download(NIV) is True

    with pytest.raises(DownloadCanceledError):
        await task

    assert cache.is_downloading(NIV) is False
    assert db_ops.get_translation(NIV)["downloaded"] is False
    progress = cache.get_download_progress(NIV)
    assert progress["status"] == "canceled"
    assert progress["current_step"] == "Download canceled"
    for partition in ('books', 'chapters', 'verses'):
        assert db_ops.get_by_index(partition, 'translation_id', NIV) == []
    assert "translation_download_canceled" in [e["event"] for e in analytics.get_events()]

    # A fresh download starts over
    bible_client.get_chapter = AsyncMock(side_effect=chapter_content)
    result = await cache.download_translation(NIV)

    assert result["success"] is True
    assert cache.get_download_progress(NIV)["progress"] == 100
    assert len(db_ops.get_by_index('verses', 'translation_id', NIV)) == 3


def test_cancel_without_download(cache):
    assert cache.cancel_download(NIV) is False


@pytest.mark.asyncio
async def test_failure_marks_progress_failed(cache, bible_client, db_ops, analytics):
    """Test that an API failure is recorded and re-raised, keeping partial rows."""
    async def failing_chapter(bible_id, chapter_id):
        if chapter_id == "EXO.1":
            raise BibleAPIError("Bible API returned 500", status_code=500)
        return chapter_content(bible_id, chapter_id)

    bible_client.get_chapter = AsyncMock(side_effect=failing_chapter)

    with pytest.raises(BibleAPIError):
        await cache.download_translation(NIV)

    progress = cache.get_download_progress(NIV)
    assert progress["status"] == "failed"
    assert progress["error"] == "Bible API returned 500"
    assert progress["current_step"] == "Error: Bible API returned 500"
    assert db_ops.get_translation(NIV)["downloaded"] is False
    assert len(db_ops.get_by_index('verses', 'translation_id', NIV)) == 2
    assert cache.is_downloading(NIV) is False
    assert "translation_download_failed" in [e["event"] for e in analytics.get_events()]


@pytest.mark.asyncio
async def test_delete_translation_removes_everything(cache, db_ops):
    await cache.download_translation(NIV)
    await cache.download_translation(KJV)

    result = await cache.delete_translation(NIV)

    assert result["success"] is True
    assert result["removed"]["verses"] == 3
    assert db_ops.get_translation(NIV) is None
    assert cache.get_download_progress(NIV) is None
    for partition in ('books', 'chapters', 'verses'):
        assert db_ops.get_by_index(partition, 'translation_id', NIV) == []
        assert db_ops.get_by_index(partition, 'translation_id', KJV) != []


@pytest.mark.asyncio
async def test_delete_translation_during_download(cache, bible_client, db_ops):
    """Test that deleting an in-flight download leaves no progress row behind."""
    second_chapter_started = asyncio.Event()

    async def slow_chapter(bible_id, chapter_id):
        if chapter_id == "GEN.2":
            second_chapter_started.set()
            await asyncio.sleep(60)
        return chapter_content(bible_id, chapter_id)

    bible_client.get_chapter = AsyncMock(side_effect=slow_chapter)

    task = asyncio.create_task(cache.download_translation(NIV))
    await asyncio.wait_for(second_chapter_started.wait(), timeout=5)

    result = await cache.delete_translation(NIV)

    assert result["success"] is True
    assert task.done()
    with pytest.raises(DownloadCanceledError):
        await task

    assert cache.is_downloading(NIV) is False
    assert cache.get_download_progress(NIV) is None
    assert db_ops.get_translation(NIV) is None
    for partition in ('books', 'chapters', 'verses'):
        assert db_ops.get_by_index(partition, 'translation_id', NIV) == []


def test_available_translations(cache):
    translations = cache.get_available_translations()

    assert [t["abbreviation"] for t in translations] == ["NIV", "KJV", "ESV", "NLT"]
    assert translations[0]["id"] == NIV
    assert translations[0]["estimated_size_bytes"] == 4500000


def test_cache_passage_and_get_cached_verse(cache):
    cache.cache_passage({"reference": "John 3:16", "content": "For God so loved the world"}, NIV)

    verse = cache.get_cached_verse("John 3:16")
    assert verse["id"] == f"{NIV}_John 3:16"
    assert verse["content"] == "For God so loved the world"

    assert cache.get_cached_verse("John 3:16", translation_id=KJV) is None
    assert cache.get_cached_verse("John 3:17") is None


@pytest.mark.asyncio
async def test_storage_info(tmp_path, bible_client):
    db = DatabaseOperations(database_url=f"sqlite:///{tmp_path / 'bible.db'}")
    cache = ContentCache(db, bible_client, chapter_delay=0)

    await cache.download_translation(NIV)
    info = cache.get_storage_info()

    assert info["translations_count"] == 1
    assert info["bible_storage"] == db.get_translation(NIV)["downloaded_size"]
    assert info["usage"] > 0


@pytest.mark.asyncio
async def test_clear_all_data_keeps_annotations(cache, db_ops):
    await cache.download_translation(NIV)
    db_ops.put('notes', {"id": "n1", "reference": "Genesis 1", "content": "Creation"})

    cache.clear_all_data()

    assert db_ops.get_all_translations() == []
    assert db_ops.get_all('verses') == []
    assert db_ops.get('notes', "n1") is not None
