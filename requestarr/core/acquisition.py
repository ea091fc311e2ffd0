"""Acquisition backend interface and the find-or-create reconciliation flow."""

from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from requestarr.core.logger import setup_logger
from requestarr.core.models import AcquisitionOutcome, AuthorRef, BookRef, DownloadStatus
from requestarr.core.utils import normalize_match_text, strip_redundant_author

logger = setup_logger(__name__)

# (candidate, wanted) -> bool
NameMatcher = Callable[[str, str], bool]


class ExternalSystemError(Exception):
    """An acquisition-system call failed (transport, HTTP status, bad payload or rejection)."""


def exact_name_match(candidate: str, wanted: str) -> bool:
    """Case-insensitive match ignoring periods and repeated whitespace."""
    normalized = normalize_match_text(wanted)
    return bool(normalized) and normalize_match_text(candidate) == normalized


class AcquisitionBackend(ABC):
    """External system that sources book files (for example Readarr).

    Every method may raise ExternalSystemError. Lookups return None when
    nothing matches; create methods return a handle to the new entry.
    """

    name: str = "unknown"

    def __init__(self, matcher: Optional[NameMatcher] = None):
        self.matcher: NameMatcher = matcher or exact_name_match

    @abstractmethod
    def find_author(self, name: str) -> Optional[AuthorRef]:
        pass

    @abstractmethod
    def find_book(self, author: AuthorRef, title: str) -> Optional[BookRef]:
        pass

    @abstractmethod
    def add_author(self, name: str) -> AuthorRef:
        pass

    @abstractmethod
    def add_book(self, author: AuthorRef, title: str) -> BookRef:
        pass

    @abstractmethod
    def trigger_search(self, book: BookRef) -> None:
        pass

    @abstractmethod
    def get_download_status(self, book: BookRef) -> DownloadStatus:
        pass

    @abstractmethod
    def set_tags(self, book: BookRef, tags: List[str], previous: Optional[List[str]] = None) -> None:
        """Replace the advisory tag set attached to the book's entry.

        ``previous`` is the tag set last pushed for this book; labels in it that
        are missing from ``tags`` get removed.
        """
        pass


def acquire_book(backend: AcquisitionBackend, *, title: str, author: str) -> AcquisitionOutcome:
    """Make sure the book exists in the acquisition system and start a search for it.

    Existence is always checked before creating an author or book, so running
    this again after a partial failure never duplicates external entries.
    Errors are captured on the returned outcome rather than raised.
    """
    outcome = AcquisitionOutcome()
    clean_title = strip_redundant_author(title, author)
    step = "Author lookup"

    try:
        author_ref = backend.find_author(author)
        if author_ref is None:
            step = "Adding author"
            logger.info(f"Author '{author}' not found in {backend.name}, adding")
            author_ref = backend.add_author(author)
            outcome.author_created = True
        outcome.author = author_ref

        step = "Book lookup"
        book_ref = backend.find_book(author_ref, clean_title)
        if book_ref is None:
            step = "Adding book"
            logger.info(f"Book '{clean_title}' not found under '{author_ref.name}', adding")
            book_ref = backend.add_book(author_ref, clean_title)
            outcome.book_created = True
        outcome.book = book_ref

        step = "Search"
        backend.trigger_search(book_ref)
        outcome.search_triggered = True
    except ExternalSystemError as e:
        logger.warning(f"{step} failed for '{clean_title}' by '{author}': {e}")
        outcome.error = f"{step} failed: {e}"
    except Exception as e:
        logger.error_trace(f"Unexpected error acquiring '{clean_title}' by '{author}': {e}")
        outcome.error = f"{step} failed: unexpected error: {e}"

    return outcome
