"""Point the app at throwaway directories before any requestarr module is imported."""

import os
import tempfile

_TEST_ROOT = tempfile.mkdtemp(prefix="requestarr-tests-")

os.environ.setdefault("CONFIG_DIR", os.path.join(_TEST_ROOT, "config"))
os.environ.setdefault("LOG_ROOT", os.path.join(_TEST_ROOT, "log"))
os.environ.setdefault("ENABLE_LOGGING", "false")
os.environ.setdefault("START_BACKGROUND_JOBS", "false")
os.makedirs(os.environ["CONFIG_DIR"], exist_ok=True)

from typing import Any, Dict, List, Optional  # noqa: E402

import pytest  # noqa: E402

from requestarr.core.acquisition import AcquisitionBackend  # noqa: E402
from requestarr.core.models import AuthorRef, BookRef, DownloadStatus  # noqa: E402


class FakeAcquisitionBackend(AcquisitionBackend):
    """In-memory backend that records every call.

    Put an exception in ``failures[method]`` to make that method raise, or in
    ``download_statuses[book_id]`` to fail a single status lookup.
    """

    name = "Fake"

    def __init__(self, matcher=None):
        super().__init__(matcher)
        self.authors: List[AuthorRef] = []
        self.books: List[BookRef] = []
        self.calls: List[tuple] = []
        self.failures: Dict[str, Exception] = {}
        self.download_statuses: Dict[str, Any] = {}
        self.tags: Dict[str, List[str]] = {}
        self.previous_tags: Dict[str, List[str]] = {}
        self._next_id = 100

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, *args))
        failure = self.failures.get(method)
        if failure is not None:
            raise failure

    def _new_id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]

    def find_author(self, name: str) -> Optional[AuthorRef]:
        self._record("find_author", name)
        for author in self.authors:
            if self.matcher(author.name, name):
                return author
        return None

    def add_author(self, name: str) -> AuthorRef:
        self._record("add_author", name)
        author = AuthorRef(id=self._new_id(), name=name)
        self.authors.append(author)
        return author

    def find_book(self, author: AuthorRef, title: str) -> Optional[BookRef]:
        self._record("find_book", author.id, title)
        for book in self.books:
            if book.author_id == author.id and self.matcher(book.title, title):
                return book
        return None

    def add_book(self, author: AuthorRef, title: str) -> BookRef:
        self._record("add_book", author.id, title)
        book = BookRef(id=self._new_id(), title=title, author_id=author.id)
        self.books.append(book)
        return book

    def trigger_search(self, book: BookRef) -> None:
        self._record("trigger_search", book.id)

    def get_download_status(self, book: BookRef) -> DownloadStatus:
        self._record("get_download_status", book.id)
        status = self.download_statuses.get(book.id, DownloadStatus(downloaded=False))
        if isinstance(status, Exception):
            raise status
        return status

    def set_tags(self, book: BookRef, tags: List[str], previous: Optional[List[str]] = None) -> None:
        self._record("set_tags", book.id, list(tags))
        self.previous_tags[book.id] = list(previous or [])
        self.tags[book.id] = list(tags)


@pytest.fixture
def fake_backend():
    return FakeAcquisitionBackend()
