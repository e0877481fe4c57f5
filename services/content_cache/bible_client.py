"""HTTP client for the remote Bible content API."""

import logging
from typing import Dict, List, Optional

import httpx

from shared.exceptions import BibleAPIError
from services.content_cache.retry import retry_with_exponential_backoff

logger = logging.getLogger(__name__)


def _is_retryable(error: BibleAPIError) -> bool:
    # Network failures carry no status code
    return error.status_code is None or error.status_code == 429 or error.status_code >= 500


class BibleClient:
    """Lists books and chapters and fetches chapter content for a translation."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize the Bible API client.

        Args:
            base_url: API base URL, e.g. https://api.scripture.api.bible/v1
            api_key: Static API key sent in the api-key header
            timeout: Request timeout in seconds
            client: Optional preconfigured httpx client
        """
        self.base_url = base_url
        self.client = client or httpx.AsyncClient(
            base_url=base_url,
            headers={"api-key": api_key},
            timeout=timeout
        )

    async def aclose(self):
        await self.client.aclose()

    @retry_with_exponential_backoff(
        max_retries=3,
        initial_delay=1.0,
        exponential_base=2.0,
        exceptions=(BibleAPIError,),
        should_retry=_is_retryable
    )
    async def _get(self, path: str, params: Optional[Dict] = None) -> Dict:
        try:
            response = await self.client.get(path, params=params)
        except httpx.TransportError as e:
            raise BibleAPIError(f"Request to {path} failed: {e}") from e

        if response.status_code != 200:
            raise BibleAPIError(
                f"Bible API returned {response.status_code} for {path}: {response.text}",
                status_code=response.status_code
            )

        return response.json()

    async def list_books(self, bible_id: str) -> List[Dict]:
        """
        List the books of a translation.

        Args:
            bible_id: Translation ID

        Returns:
            Book dictionaries with id, name and abbreviation
        """
        data = await self._get(f"/bibles/{bible_id}/books")
        return data.get("data") or []

    async def get_book_chapters(self, bible_id: str, book_id: str) -> List[Dict]:
        """
        List the chapters of one book.

        Args:
            bible_id: Translation ID
            book_id: Book ID, e.g. 'GEN'

        Returns:
            Chapter dictionaries with id, number and reference, in API order
        """
        data = await self._get(
            f"/bibles/{bible_id}/books/{book_id}",
            params={"include-chapters": "true"}
        )
        return (data.get("data") or {}).get("chapters") or []

    async def get_chapter(self, bible_id: str, chapter_id: str) -> Dict:
        """
        Fetch the content of a chapter as JSON with verse numbers.

        Args:
            bible_id: Translation ID
            chapter_id: Chapter ID, e.g. 'GEN.1'

        Returns:
            Chapter dictionary whose 'content' holds the verse structure
        """
        data = await self._get(
            f"/bibles/{bible_id}/chapters/{chapter_id}",
            params={"content-type": "json", "include-verse-numbers": "true"}
        )
        return data.get("data") or {}
