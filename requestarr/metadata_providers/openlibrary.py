"""Open Library metadata provider.

Search goes through ``/search.json``; details come from the works API plus
one author lookup. No API key is needed.
"""

import re
import requests
from typing import Any, Dict, List, Optional

from requestarr.core.logger import setup_logger
from requestarr.core.utils import get_ssl_verify
from requestarr.metadata_providers import BookMetadata, MetadataProvider, register_provider

logger = setup_logger(__name__)

OPEN_LIBRARY_BASE_URL = "https://openlibrary.org"
COVERS_BASE_URL = "https://covers.openlibrary.org/b/id"

_WORK_ID_RE = re.compile(r"^(?:/works/)?(OL\d+W)$")


def to_work_id(book_id: str) -> Optional[str]:
    """Accept 'OL123W' or '/works/OL123W' and return 'OL123W'."""
    match = _WORK_ID_RE.match((book_id or "").strip())
    return match.group(1) if match else None


def _cover_url(cover_id: Any) -> Optional[str]:
    if not cover_id or (isinstance(cover_id, int) and cover_id < 0):
        return None
    return f"{COVERS_BASE_URL}/{cover_id}-L.jpg"


def _text_value(value: Any) -> Optional[str]:
    # Descriptions are either plain strings or {"type": ..., "value": ...}
    if isinstance(value, dict):
        value = value.get("value")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


@register_provider("openLibrary")
class OpenLibraryProvider(MetadataProvider):
    """Open Library metadata provider."""

    name = "openLibrary"
    display_name = "Open Library"

    def __init__(self, timeout: int = 15):
        self.timeout = timeout
        self.session = requests.Session()

    def owns_book_id(self, book_id: str) -> bool:
        return to_work_id(book_id) is not None

    def search(self, query: str, limit: int = 20) -> List[BookMetadata]:
        query = (query or "").strip()
        if not query:
            return []

        result = self._make_request(
            "/search.json",
            {
                "q": query,
                "limit": max(1, min(limit, 100)),
                "fields": "key,title,author_name,isbn,cover_i,first_publish_year,publisher,language,subject",
            },
        )
        if not result:
            return []

        books = []
        for doc in result.get("docs", []):
            book = self._parse_search_doc(doc)
            if book:
                books.append(book)

        logger.info(f"Open Library search '{query}' returned {len(books)} results")
        return books

    def get_book(self, book_id: str) -> Optional[BookMetadata]:
        work_id = to_work_id(book_id)
        if work_id is None:
            logger.debug(f"Not an Open Library work id: {book_id}")
            return None

        work = self._make_request(f"/works/{work_id}.json", {})
        if not work or not work.get("title"):
            return None

        authors: List[str] = []
        for entry in work.get("authors", [])[:3]:
            author_key = (entry.get("author") or {}).get("key")
            if not author_key:
                continue
            author = self._make_request(f"{author_key}.json", {})
            if author and author.get("name"):
                authors.append(author["name"])

        covers = work.get("covers") or []
        return BookMetadata(
            provider=self.name,
            provider_id=work_id,
            book_id=work_id,
            title=work["title"],
            authors=authors,
            cover_url=_cover_url(covers[0]) if covers else None,
            description=_text_value(work.get("description")),
            genres=list(work.get("subjects") or [])[:5],
            source_url=f"{OPEN_LIBRARY_BASE_URL}/works/{work_id}",
        )

    def _parse_search_doc(self, doc: Dict[str, Any]) -> Optional[BookMetadata]:
        work_id = to_work_id(str(doc.get("key") or ""))
        title = doc.get("title")
        if not work_id or not title:
            return None

        isbn_10 = None
        isbn_13 = None
        for isbn in doc.get("isbn") or []:
            if len(isbn) == 13 and not isbn_13:
                isbn_13 = isbn
            elif len(isbn) == 10 and not isbn_10:
                isbn_10 = isbn

        publishers = doc.get("publisher") or []
        languages = doc.get("language") or []
        return BookMetadata(
            provider=self.name,
            provider_id=work_id,
            book_id=work_id,
            title=title,
            authors=list(doc.get("author_name") or []),
            isbn_10=isbn_10,
            isbn_13=isbn_13,
            cover_url=_cover_url(doc.get("cover_i")),
            publisher=publishers[0] if publishers else None,
            publish_year=doc.get("first_publish_year"),
            language=languages[0] if languages else None,
            genres=list(doc.get("subject") or [])[:5],
            source_url=f"{OPEN_LIBRARY_BASE_URL}/works/{work_id}",
        )

    def _make_request(self, endpoint: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        url = f"{OPEN_LIBRARY_BASE_URL}{endpoint}"
        try:
            response = self.session.get(url, params=params, timeout=self.timeout, verify=get_ssl_verify(url))
            response.raise_for_status()
            return response.json()
        except requests.Timeout:
            logger.warning("Open Library request timed out")
            return None
        except requests.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                logger.debug(f"Open Library: not found {endpoint}")
            else:
                logger.error(f"Open Library HTTP error: {e}")
            return None
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Open Library request failed: {e}")
            return None
