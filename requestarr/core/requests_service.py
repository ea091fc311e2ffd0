"""Request lifecycle helpers and service-level validation."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, TYPE_CHECKING

from requestarr.core.acquisition import ExternalSystemError, acquire_book
from requestarr.core.logger import setup_logger
from requestarr.core.models import (
    STATUS_TRANSITIONS,
    TERMINAL_STATUSES,
    AcquisitionStatus,
    BookRef,
    BookSource,
    RequestStatus,
)

if TYPE_CHECKING:
    from requestarr.core.acquisition import AcquisitionBackend
    from requestarr.core.user_db import UserDB

logger = setup_logger(__name__)

VALID_REQUEST_STATUSES = frozenset(status.value for status in RequestStatus)
VALID_ACQUISITION_STATUSES = frozenset(status.value for status in AcquisitionStatus)
VALID_DUPLICATE_POLICIES = frozenset({"any", "pending", "allow"})
DEFAULT_DUPLICATE_POLICY = "any"

MAX_TITLE_LENGTH = 500
MAX_AUTHOR_LENGTH = 300
MAX_BOOK_ID_LENGTH = 255
MAX_ISBN_LENGTH = 32
MAX_URL_LENGTH = 2048
MAX_ADMIN_NOTE_LENGTH = 1000
MAX_TAGS = 50
MAX_TAG_LENGTH = 64
REQUESTED_TAG = "user-requested"

_SOURCE_ALIASES = {
    "google": BookSource.GOOGLE.value,
    "googlebooks": BookSource.GOOGLE.value,
    "google_books": BookSource.GOOGLE.value,
    "openlibrary": BookSource.OPEN_LIBRARY.value,
    "open_library": BookSource.OPEN_LIBRARY.value,
}
_ACQUIRED_STATES = frozenset({AcquisitionStatus.ADDED.value, AcquisitionStatus.DOWNLOADED.value})
_DOWNLOAD_EVENT_TYPES = frozenset({"download", "bookfileimport"})


class RequestServiceError(ValueError):
    """Structured error raised by request lifecycle service methods."""

    default_status_code = 400

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code if status_code is not None else self.default_status_code
        self.code = code


class ValidationError(RequestServiceError):
    """Bad input to a creation/update call; raised before any state change."""


class ForbiddenError(RequestServiceError):
    default_status_code = 403


class NotFoundError(RequestServiceError):
    default_status_code = 404


class ConflictError(RequestServiceError):
    """Transition not allowed from the current state, or duplicate request."""

    default_status_code = 409


class DuplicateRequestError(ConflictError):
    def __init__(self, message: str = "Book already requested"):
        super().__init__(message, code="duplicate_request")


def normalize_request_status(status: Any) -> str:
    """Validate and normalize request status values."""
    if isinstance(status, RequestStatus):
        return status.value
    if not isinstance(status, str):
        raise ValueError(f"Invalid request status: {status}")
    normalized = status.strip().lower()
    if normalized not in VALID_REQUEST_STATUSES:
        raise ValueError(f"Invalid request status: {status}")
    return normalized


def normalize_acquisition_status(status: Any) -> str:
    """Validate and normalize acquisition status values."""
    if isinstance(status, AcquisitionStatus):
        return status.value
    if not isinstance(status, str):
        raise ValueError(f"Invalid acquisition_status: {status}")
    normalized = status.strip().lower()
    if normalized not in VALID_ACQUISITION_STATUSES:
        raise ValueError(f"Invalid acquisition_status: {status}")
    return normalized


def normalize_source(source: Any) -> str | None:
    """Map a provider name or alias onto a BookSource value."""
    if source is None:
        return None
    if isinstance(source, BookSource):
        return source.value
    if not isinstance(source, str):
        raise ValueError(f"Invalid source: {source}")
    normalized = source.strip()
    if not normalized:
        return None
    resolved = _SOURCE_ALIASES.get(normalized.lower())
    if resolved is None:
        raise ValueError(f"Invalid source: {source}")
    return resolved


def infer_source(book_id: Any) -> str | None:
    """Guess the issuing provider from a namespaced book id."""
    if not isinstance(book_id, str):
        return None
    normalized = book_id.strip()
    if normalized.startswith("gb-"):
        return BookSource.GOOGLE.value
    if normalized.startswith(("OL", "/works/", "/books/")):
        return BookSource.OPEN_LIBRARY.value
    return None


def normalize_duplicate_policy(policy: Any) -> str:
    if policy is None:
        return DEFAULT_DUPLICATE_POLICY
    if not isinstance(policy, str) or policy.strip().lower() not in VALID_DUPLICATE_POLICIES:
        raise ValueError(f"Invalid duplicate request policy: {policy}")
    return policy.strip().lower()


def validate_status_transition(current_status: Any, new_status: Any) -> tuple[str, str]:
    """Validate request status transitions against the lifecycle graph."""
    current = normalize_request_status(current_status)
    new = normalize_request_status(new_status)
    if new == current:
        return current, new
    if RequestStatus(new) not in STATUS_TRANSITIONS[RequestStatus(current)]:
        if RequestStatus(current) in TERMINAL_STATUSES:
            raise ValueError("Terminal request statuses are immutable")
        raise ValueError(f"Invalid status transition: {current} -> {new}")
    return current, new


def _required_text(data: dict[str, Any], field: str, max_length: int) -> str:
    value = data.get(field)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    normalized = value.strip()
    if len(normalized) > max_length:
        raise ValidationError(f"{field} must be <= {max_length} characters")
    return normalized


def _optional_text(value: Any, field: str, max_length: int) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    normalized = value.strip()
    if len(normalized) > max_length:
        raise ValidationError(f"{field} must be <= {max_length} characters")
    return normalized or None


def normalize_tags(tags: Any) -> list[str]:
    """Validate a tag list: strings only, stripped, de-duplicated in order."""
    if not isinstance(tags, (list, tuple)):
        raise ValidationError("tags must be an array of strings")

    normalized: list[str] = []
    seen: set[str] = set()
    for tag in tags:
        if not isinstance(tag, str):
            raise ValidationError("tags must be an array of strings")
        cleaned = tag.strip()
        if not cleaned:
            continue
        if len(cleaned) > MAX_TAG_LENGTH:
            raise ValidationError(f"tags must be <= {MAX_TAG_LENGTH} characters each")
        if cleaned in seen:
            continue
        seen.add(cleaned)
        normalized.append(cleaned)

    if len(normalized) > MAX_TAGS:
        raise ValidationError(f"at most {MAX_TAGS} tags are allowed")
    return normalized


def _normalize_admin_note(admin_note: Any) -> str | None:
    if admin_note is None:
        return None
    if not isinstance(admin_note, str):
        raise ValidationError("admin_note must be a string")
    normalized = admin_note.strip()
    if len(normalized) > MAX_ADMIN_NOTE_LENGTH:
        raise ValidationError(f"admin_note must be <= {MAX_ADMIN_NOTE_LENGTH} characters")
    return normalized or None


def _now_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def create_request(
    user_db: "UserDB",
    *,
    user_id: int,
    book_id: Any,
    title: Any,
    author: Any,
    cover: Any = None,
    isbn: Any = None,
    source: Any = None,
    duplicate_policy: Any = DEFAULT_DUPLICATE_POLICY,
    max_pending_per_user: int | None = None,
) -> dict[str, Any]:
    """Create a pending request after service-level validation.

    No acquisition-system calls are made here; resources are only committed
    once an admin approves.
    """
    payload = {"book_id": book_id, "title": title, "author": author}
    normalized_title = _required_text(payload, "title", MAX_TITLE_LENGTH)
    normalized_author = _required_text(payload, "author", MAX_AUTHOR_LENGTH)
    normalized_book_id = _required_text(payload, "book_id", MAX_BOOK_ID_LENGTH)
    normalized_cover = _optional_text(cover, "cover", MAX_URL_LENGTH)
    normalized_isbn = _optional_text(isbn, "isbn", MAX_ISBN_LENGTH)

    try:
        normalized_source = normalize_source(source) or infer_source(normalized_book_id)
        policy = normalize_duplicate_policy(duplicate_policy)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    if max_pending_per_user is not None:
        pending_count = user_db.count_user_pending_requests(user_id)
        if pending_count >= max_pending_per_user:
            raise ConflictError(
                "Maximum pending requests reached for this user",
                code="max_pending_reached",
            )

    try:
        return user_db.create_request(
            user_id=user_id,
            book_id=normalized_book_id,
            title=normalized_title,
            author=normalized_author,
            cover=normalized_cover,
            isbn=normalized_isbn,
            source=normalized_source,
            duplicate_scope=None if policy == "allow" else policy,
        )
    except DuplicateRequestError:
        raise
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def list_requests(
    user_db: "UserDB",
    *,
    user_id: int | None = None,
    status: Any = None,
    acquisition_status: Any = None,
    limit: int | None = None,
    offset: int = 0,
) -> list[dict[str, Any]]:
    """List requests newest first, optionally filtered."""
    try:
        return user_db.list_requests(
            user_id=user_id,
            status=status or None,
            acquisition_status=acquisition_status or None,
            limit=limit,
            offset=offset,
        )
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def ensure_request_access(
    user_db: "UserDB",
    *,
    request_id: int,
    actor_user_id: int | None,
    is_admin: bool,
) -> dict[str, Any]:
    """Get request by ID and enforce ownership for non-admin actors."""
    request_row = user_db.get_request(request_id)
    if request_row is None:
        raise NotFoundError("Request not found")

    if not is_admin:
        if actor_user_id is None or request_row["user_id"] != actor_user_id:
            raise ForbiddenError("Forbidden")

    return request_row


def _require_status(request_row: dict[str, Any], expected: RequestStatus, action: str) -> None:
    current = request_row["status"]
    if current == expected.value:
        return
    if RequestStatus(current) in TERMINAL_STATUSES:
        raise ConflictError(
            "Request is already in a terminal state",
            code="stale_transition",
        )
    raise ConflictError(
        f"Cannot {action} a request with status '{current}'",
        code="stale_transition",
    )


def deny_request(
    user_db: "UserDB",
    *,
    request_id: int,
    admin_user_id: int,
    admin_note: Any = None,
) -> dict[str, Any]:
    """Deny a pending request. Purely local; the acquisition system is never contacted."""
    request_row = ensure_request_access(
        user_db,
        request_id=request_id,
        actor_user_id=admin_user_id,
        is_admin=True,
    )
    _require_status(request_row, RequestStatus.PENDING, "deny")
    normalized_admin_note = _normalize_admin_note(admin_note)

    try:
        return user_db.update_request(
            request_id,
            expected_current_status="pending",
            status="denied",
            admin_note=normalized_admin_note,
            reviewed_by=admin_user_id,
            reviewed_at=_now_timestamp(),
        )
    except ValueError as exc:
        raise ConflictError(str(exc), code="stale_transition") from exc


def _acquisition_settled(request_row: dict[str, Any], force: bool) -> bool:
    acquisition_status = request_row["acquisition_status"]
    if acquisition_status == AcquisitionStatus.DOWNLOADED.value:
        logger.debug("Request #%s already downloaded; approval is a no-op", request_row["id"])
        return True
    if acquisition_status in _ACQUIRED_STATES and not force:
        logger.debug("Request #%s already added to Readarr; approval is a no-op", request_row["id"])
        return True
    return False


def _with_approval_tags(user_db: "UserDB", request_row: dict[str, Any]) -> list[str]:
    """The request's tags plus the requester's username and the requested marker."""
    defaults = [REQUESTED_TAG]
    requester = user_db.get_user(user_id=request_row["user_id"])
    username = str((requester or {}).get("username") or "").strip().lower()
    if username:
        defaults.insert(0, username[:MAX_TAG_LENGTH])

    tags = list(request_row.get("tags") or [])
    for tag in defaults:
        if tag not in tags:
            tags.append(tag)
    return tags


def approve_request(
    user_db: "UserDB",
    backend: "AcquisitionBackend | None",
    *,
    request_id: int,
    admin_user_id: int,
    force: bool = False,
) -> dict[str, Any]:
    """Approve a request and reconcile it with the acquisition system.

    The status flips to approved before any external call so the admin's
    intent is recorded even when acquisition fails. Acquisition failures are
    stored on the request (acquisition_status=error) instead of raised.
    Calling this again on a failed request retries; on an already added
    request it does nothing unless ``force`` is set. A successful acquisition
    tags the request with the requester's username and ``user-requested``.
    """
    request_row = ensure_request_access(
        user_db,
        request_id=request_id,
        actor_user_id=admin_user_id,
        is_admin=True,
    )
    if not isinstance(force, bool):
        raise ValidationError("force must be a boolean")

    current_status = request_row["status"]
    if RequestStatus(current_status) in TERMINAL_STATUSES:
        raise ConflictError(
            "Request is already in a terminal state",
            code="stale_transition",
        )

    if current_status == RequestStatus.PENDING.value:
        try:
            request_row = user_db.update_request(
                request_id,
                expected_current_status="pending",
                status="approved",
                reviewed_by=admin_user_id,
                reviewed_at=_now_timestamp(),
            )
        except ValueError as exc:
            # Losing a race against another approval is not a conflict
            request_row = user_db.get_request(request_id)
            if request_row is None or request_row["status"] != RequestStatus.APPROVED.value:
                raise ConflictError(str(exc), code="stale_transition") from exc
            logger.debug("Request #%s was approved concurrently", request_id)
            if _acquisition_settled(request_row, force):
                return request_row
    elif _acquisition_settled(request_row, force):
        return request_row

    if backend is None:
        logger.warning("Request #%s approved but no acquisition backend is configured", request_id)
        return user_db.update_request(
            request_id,
            acquisition_status="error",
            acquisition_message="Readarr is not configured",
        )

    outcome = acquire_book(
        backend,
        title=request_row["title"],
        author=request_row["author"],
    )

    updates: dict[str, Any] = {"acquisition_message": outcome.describe()}
    if outcome.book is not None:
        updates["acquisition_id"] = outcome.book.id
    if outcome.succeeded:
        updates["acquisition_status"] = "added"
        updates["tags"] = _with_approval_tags(user_db, request_row)
        logger.info(
            "Request #%s '%s' reconciled with Readarr (book_id=%s, author_created=%s, book_created=%s)",
            request_id,
            request_row["title"],
            outcome.book.id if outcome.book else None,
            outcome.author_created,
            outcome.book_created,
        )
    else:
        updates["acquisition_status"] = "error"
        logger.warning(
            "Request #%s '%s' approved but acquisition failed: %s",
            request_id,
            request_row["title"],
            outcome.error,
        )

    updated = user_db.update_request(request_id, **updates)
    if outcome.succeeded:
        try:
            backend.set_tags(outcome.book, updated["tags"])
        except ExternalSystemError as exc:
            logger.warning("Request #%s approved but Readarr tagging failed: %s", request_id, exc)
        except Exception as exc:
            logger.error_trace(f"Unexpected error tagging request #{request_id} in Readarr: {exc}")
    return updated


def mark_available(
    user_db: "UserDB",
    *,
    request_id: int,
    admin_user_id: int,
) -> dict[str, Any]:
    """Move an approved request to available. Never happens automatically."""
    request_row = ensure_request_access(
        user_db,
        request_id=request_id,
        actor_user_id=admin_user_id,
        is_admin=True,
    )
    _require_status(request_row, RequestStatus.APPROVED, "mark available")

    try:
        return user_db.update_request(
            request_id,
            expected_current_status="approved",
            status="available",
            reviewed_by=admin_user_id,
            reviewed_at=_now_timestamp(),
        )
    except ValueError as exc:
        raise ConflictError(str(exc), code="stale_transition") from exc


def reset_acquisition(
    user_db: "UserDB",
    *,
    request_id: int,
    admin_user_id: int,
) -> dict[str, Any]:
    """Forget Readarr state for an approved request so the next approval starts fresh."""
    request_row = ensure_request_access(
        user_db,
        request_id=request_id,
        actor_user_id=admin_user_id,
        is_admin=True,
    )
    _require_status(request_row, RequestStatus.APPROVED, "reset acquisition for")

    try:
        return user_db.update_request(
            request_id,
            expected_current_status="approved",
            acquisition_status="pending",
            acquisition_id=None,
            acquisition_message=None,
        )
    except ValueError as exc:
        raise ConflictError(str(exc), code="stale_transition") from exc


def mark_externally_downloaded(
    user_db: "UserDB",
    *,
    request_id: int,
    admin_user_id: int,
) -> dict[str, Any]:
    """Record that an approved request's book was obtained outside Readarr."""
    request_row = ensure_request_access(
        user_db,
        request_id=request_id,
        actor_user_id=admin_user_id,
        is_admin=True,
    )
    _require_status(request_row, RequestStatus.APPROVED, "mark downloaded")

    try:
        return user_db.update_request(
            request_id,
            expected_current_status="approved",
            acquisition_status="downloaded",
            acquisition_message="Marked as downloaded outside Readarr",
        )
    except ValueError as exc:
        raise ConflictError(str(exc), code="stale_transition") from exc


def update_tags(
    user_db: "UserDB",
    backend: "AcquisitionBackend | None",
    *,
    request_id: int,
    tags: Any,
) -> tuple[dict[str, Any], str | None]:
    """Replace a request's tags and mirror them to the acquisition system.

    The local update is always committed. Returns the updated request and a
    sync error message (None when the mirror succeeded or was not needed).
    """
    normalized_tags = normalize_tags(tags)
    request_row = user_db.get_request(request_id)
    if request_row is None:
        raise NotFoundError("Request not found")

    try:
        updated = user_db.update_request(request_id, tags=normalized_tags)
    except ValueError as exc:
        raise NotFoundError(str(exc)) from exc

    acquisition_id = updated.get("acquisition_id")
    if backend is None or not acquisition_id:
        return updated, None

    book = BookRef(id=str(acquisition_id), title=updated["title"])
    try:
        backend.set_tags(book, normalized_tags, previous=request_row["tags"])
    except ExternalSystemError as exc:
        logger.warning("Tags saved for request #%s but Readarr sync failed: %s", request_id, exc)
        return updated, str(exc)
    except Exception as exc:
        logger.error_trace(f"Unexpected error syncing tags for request #{request_id}: {exc}")
        return updated, f"Unexpected error: {exc}"

    logger.debug("Synced %d tag(s) to Readarr for request #%s", len(normalized_tags), request_id)
    return updated, None


def record_download_event(
    user_db: "UserDB",
    *,
    acquisition_id: Any,
    event_type: Any,
) -> list[dict[str, Any]]:
    """Apply a Readarr webhook event to every approved request tracking that book."""
    if acquisition_id is None or str(acquisition_id).strip() == "":
        raise ValidationError("Missing book ID")
    if not isinstance(event_type, str) or not event_type.strip():
        raise ValidationError("Missing eventType")

    normalized_event = event_type.strip().lower()
    rows = user_db.list_requests(status="approved", acquisition_id=str(acquisition_id).strip())
    updated: list[dict[str, Any]] = []

    for row in rows:
        current = row["acquisition_status"]
        if normalized_event in _DOWNLOAD_EVENT_TYPES:
            if current == AcquisitionStatus.DOWNLOADED.value:
                continue
            changes = {
                "acquisition_status": "downloaded",
                "acquisition_message": "Book downloaded and imported by Readarr",
            }
        elif normalized_event == "grab":
            if current != AcquisitionStatus.ADDED.value:
                continue
            changes = {"acquisition_message": "Release grabbed by Readarr, download in progress"}
        else:
            continue

        try:
            updated.append(
                user_db.update_request(
                    row["id"],
                    expected_current_status="approved",
                    expected_acquisition_status=current,
                    **changes,
                )
            )
        except ValueError as exc:
            logger.debug("Skipped webhook update for request #%s: %s", row["id"], exc)

    return updated
