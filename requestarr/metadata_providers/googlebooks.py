"""Google Books metadata provider.

Volumes are exposed to the request flow as ``gb-<volumeId>`` so they never collide
with Open Library work ids. ``GOOGLEBOOKS_API_KEY`` is optional and only raises the
anonymous quota.

API Documentation: https://developers.google.com/books/docs/v1/using
"""

import requests
from typing import Any, Dict, List, Optional

from requestarr.core.config import config as app_config
from requestarr.core.logger import setup_logger
from requestarr.core.utils import get_ssl_verify
from requestarr.metadata_providers import (
    BookMetadata,
    MetadataProvider,
    register_provider,
    register_provider_kwargs,
)

logger = setup_logger(__name__)

GOOGLE_BOOKS_BASE_URL = "https://www.googleapis.com/books/v1"
BOOK_ID_PREFIX = "gb-"
MAX_RESULTS = 40
_COVER_SIZES = ("large", "medium", "small", "thumbnail", "smallThumbnail")


def to_volume_id(book_id: str) -> str:
    volume_id = book_id.strip()
    return volume_id[len(BOOK_ID_PREFIX):] if volume_id.startswith(BOOK_ID_PREFIX) else volume_id


def _best_cover(image_links: Dict[str, str]) -> Optional[str]:
    url = next((image_links[size] for size in _COVER_SIZES if image_links.get(size)), None)
    if not url:
        return None
    # Page-curl overlay and mixed-content http links
    return url.replace("&edge=curl", "").replace("http://", "https://")


@register_provider_kwargs("google")
def _googlebooks_kwargs() -> Dict[str, Any]:
    return {"api_key": app_config.get("GOOGLEBOOKS_API_KEY", "")}


@register_provider("google")
class GoogleBooksProvider(MetadataProvider):
    """Google Books metadata provider using REST API."""

    name = "google"
    display_name = "Google Books"
    id_prefix = BOOK_ID_PREFIX

    def __init__(self, api_key: Optional[str] = None, timeout: int = 15):
        self.api_key = api_key or ""
        self.timeout = timeout
        self.session = requests.Session()

    def search(self, query: str, limit: int = 20) -> List[BookMetadata]:
        query = (query or "").strip()
        if not query:
            return []

        params = {"q": query, "maxResults": max(1, min(limit, MAX_RESULTS)), "printType": "books"}
        payload = self._make_request("/volumes", params) or {}
        books = [book for book in map(self._parse_volume, payload.get("items") or []) if book]
        logger.info(f"Google Books search '{query}' returned {len(books)} results")
        return books

    def get_book(self, book_id: str) -> Optional[BookMetadata]:
        """Fetch one volume; accepts the id with or without the ``gb-`` prefix."""
        volume_id = to_volume_id(book_id)
        if not volume_id:
            return None
        payload = self._make_request(f"/volumes/{volume_id}", {})
        return self._parse_volume(payload) if payload else None

    def _make_request(self, endpoint: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        url = f"{GOOGLE_BOOKS_BASE_URL}{endpoint}"
        if self.api_key:
            params = {**params, "key": self.api_key}

        try:
            response = self.session.get(url, params=params, timeout=self.timeout, verify=get_ssl_verify(url))
            response.raise_for_status()
            return response.json()
        except requests.Timeout:
            logger.warning(f"Google Books request to {endpoint} timed out")
        except requests.HTTPError as e:
            status = getattr(e.response, "status_code", None)
            if status == 404:
                logger.debug(f"Google Books: nothing at {endpoint}")
            elif status in (403, 429):
                logger.error(f"Google Books quota exhausted or API key rejected (HTTP {status})")
            else:
                logger.error(f"Google Books HTTP error for {endpoint}: {e}")
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Google Books request to {endpoint} failed: {e}")
        return None

    def _parse_volume(self, volume: Dict[str, Any]) -> Optional[BookMetadata]:
        volume_id = volume.get("id")
        info = volume.get("volumeInfo") or {}
        if not volume_id or not info.get("title"):
            return None

        identifiers: Dict[str, str] = {}
        for entry in info.get("industryIdentifiers") or []:
            identifiers.setdefault(entry.get("type", ""), entry.get("identifier", ""))

        year = str(info.get("publishedDate") or "")[:4]

        return BookMetadata(
            provider=self.name,
            provider_id=volume_id,
            book_id=f"{BOOK_ID_PREFIX}{volume_id}",
            title=info["title"],
            authors=list(info.get("authors") or []),
            isbn_10=identifiers.get("ISBN_10") or None,
            isbn_13=identifiers.get("ISBN_13") or None,
            cover_url=_best_cover(info.get("imageLinks") or {}),
            description=info.get("description"),
            publisher=info.get("publisher"),
            publish_year=int(year) if year.isdigit() else None,
            language=info.get("language"),
            genres=list(info.get("categories") or [])[:5],
            source_url=info.get("infoLink"),
        )
