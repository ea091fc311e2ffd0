"""Data structures and enums used across the application."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class RequestStatus(str, Enum):
    """User-visible lifecycle stage of a book request."""
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    AVAILABLE = "available"


class AcquisitionStatus(str, Enum):
    """Reconciliation stage of a request against the acquisition system."""
    PENDING = "pending"
    ADDED = "added"
    DOWNLOADED = "downloaded"
    ERROR = "error"


class BookSource(str, Enum):
    """Metadata provider that issued a request's book_id."""
    GOOGLE = "google"
    OPEN_LIBRARY = "openLibrary"


# Allowed status edges. Rewriting the current status is handled separately as a no-op.
STATUS_TRANSITIONS: Dict[RequestStatus, frozenset] = {
    RequestStatus.PENDING: frozenset({RequestStatus.APPROVED, RequestStatus.DENIED}),
    RequestStatus.APPROVED: frozenset({RequestStatus.AVAILABLE}),
    RequestStatus.DENIED: frozenset(),
    RequestStatus.AVAILABLE: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in STATUS_TRANSITIONS.items() if not targets
)


@dataclass(frozen=True)
class AuthorRef:
    """Handle to an author entry in the acquisition system."""
    id: str
    name: str


@dataclass(frozen=True)
class BookRef:
    """Handle to a book entry in the acquisition system."""
    id: str
    title: str
    author_id: Optional[str] = None


@dataclass
class DownloadStatus:
    """Download state reported by the acquisition system for one book."""
    downloaded: bool
    percent: float = 0.0
    size_on_disk: int = 0
    title: Optional[str] = None


@dataclass
class AcquisitionOutcome:
    """Result of one find-or-create pass against the acquisition system."""
    author: Optional[AuthorRef] = None
    book: Optional[BookRef] = None
    author_created: bool = False
    book_created: bool = False
    search_triggered: bool = False
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.book is not None and self.search_triggered

    def describe(self) -> str:
        """Human-readable summary stored as the request's acquisition_message."""
        if self.error is not None:
            return self.error
        if self.book_created:
            return "Added to Readarr and search triggered"
        return "Found existing book in Readarr and search triggered"


@dataclass
class StatusCheckResult:
    """Aggregate counts returned by one status-check pass."""
    updated_count: int = 0
    downloaded_count: int = 0
    metadata_stats: Dict[str, int] = field(default_factory=lambda: {"updated": 0, "failed": 0})
    failed_request_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": (
                f"Checked {self.updated_count} requests, "
                f"{self.downloaded_count} newly downloaded"
            ),
            "updated_count": self.updated_count,
            "downloaded_count": self.downloaded_count,
            "metadata_stats": dict(self.metadata_stats),
            "failed_request_ids": list(self.failed_request_ids),
        }
