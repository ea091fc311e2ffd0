"""Request lifecycle API routes."""

from __future__ import annotations

from typing import Any, Callable, Optional

from flask import Flask, jsonify, request, session

from requestarr.core.acquisition import AcquisitionBackend
from requestarr.core.config import config as app_config
from requestarr.core.logger import setup_logger
from requestarr.core.notifications import (
    NotificationEvent,
    context_from_request,
    notify_admin,
    notify_user,
)
from requestarr.core.requests_service import (
    DEFAULT_DUPLICATE_POLICY,
    RequestServiceError,
    approve_request,
    create_request,
    deny_request,
    list_requests,
    mark_available,
    mark_externally_downloaded,
    reset_acquisition,
    update_tags,
)
from requestarr.core.status_check import DEFAULT_MAX_WORKERS, run_status_check
from requestarr.core.user_db import UserDB
from requestarr.core.utils import as_bool, normalize_optional_text
from requestarr.metadata_providers import BookMetadata, get_provider, resolve_provider_for_book_id

logger = setup_logger(__name__)

BackendFactory = Callable[[], Optional[AcquisitionBackend]]


def _error_response(
    message: str,
    status_code: int,
    *,
    code: str | None = None,
):
    payload: dict[str, Any] = {"error": message}
    if code is not None:
        payload["code"] = code
    return jsonify(payload), status_code


def _require_db_user_id() -> tuple[int | None, Any | None]:
    raw_user_id = session.get("db_user_id")
    if raw_user_id is None:
        return None, (jsonify({"error": "Unauthorized"}), 401)
    try:
        return int(raw_user_id), None
    except (TypeError, ValueError):
        return None, _error_response(
            "User identity is unavailable for request workflow",
            403,
            code="user_identity_unavailable",
        )


def _require_admin_user_id() -> tuple[int | None, Any | None]:
    admin_user_id, gate = _require_db_user_id()
    if gate is not None:
        return None, gate
    if not session.get("is_admin", False):
        return None, (jsonify({"error": "Admin access required"}), 403)
    return admin_user_id, None


def _resolve_request_username(user_db: UserDB, request_row: dict[str, Any]) -> str | None:
    try:
        requester = user_db.get_user(user_id=int(request_row.get("user_id")))
    except (TypeError, ValueError):
        return None
    if not isinstance(requester, dict):
        return None
    return normalize_optional_text(requester.get("username"))


def notify_request_event(
    user_db: UserDB,
    *,
    event: NotificationEvent,
    request_row: dict[str, Any],
    notify_owner: bool = True,
    notify_admins: bool = True,
) -> None:
    """Fan a lifecycle event out to admin and requester notification routes."""
    context = context_from_request(
        event,
        request_row,
        username=_resolve_request_username(user_db, request_row),
    )
    if notify_admins:
        try:
            notify_admin(event, context)
        except Exception as exc:
            logger.warning("Failed to trigger admin notification for '%s': %s", event.value, exc)
    if notify_owner:
        try:
            notify_user(request_row.get("user_id"), event, context)
        except Exception as exc:
            logger.warning(
                "Failed to trigger user notification for '%s' (user_id=%s): %s",
                event.value,
                request_row.get("user_id"),
                exc,
            )


def _fetch_book_metadata(book_id: str, source: str | None) -> BookMetadata | None:
    """Look up missing display fields from the provider that issued the book id."""
    try:
        if source:
            provider = get_provider(source)
        else:
            resolved = resolve_provider_for_book_id(book_id)
            if resolved is None:
                return None
            _, provider = resolved
    except ValueError:
        return None
    if not provider.is_available():
        return None
    return provider.get_book(book_id)


def _first_present(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def register_request_routes(
    app: Flask,
    user_db: UserDB,
    *,
    get_backend: BackendFactory,
) -> None:
    """Register request lifecycle and admin review routes."""

    @app.route("/api/requests", methods=["POST"])
    def api_create_request():
        db_user_id, db_gate = _require_db_user_id()
        if db_gate is not None or db_user_id is None:
            return db_gate

        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"error": "No data provided"}), 400

        book_id = _first_present(data, "book_id", "bookId")
        title = data.get("title")
        author = data.get("author")
        cover = data.get("cover")
        isbn = data.get("isbn")
        source = data.get("source")

        if isinstance(book_id, str) and book_id.strip() and (
            not normalize_optional_text(title) or not normalize_optional_text(author)
        ):
            metadata = _fetch_book_metadata(book_id.strip(), normalize_optional_text(source))
            if metadata is not None:
                title = normalize_optional_text(title) or metadata.title
                author = normalize_optional_text(author) or metadata.author
                cover = cover or metadata.cover_url
                isbn = isbn or metadata.isbn
                source = source or metadata.provider

        max_pending = app_config.get("MAX_PENDING_REQUESTS_PER_USER", 20, user_id=db_user_id)
        try:
            created = create_request(
                user_db,
                user_id=db_user_id,
                book_id=book_id,
                title=title,
                author=author,
                cover=cover,
                isbn=isbn,
                source=source,
                duplicate_policy=app_config.get("DUPLICATE_REQUEST_POLICY", DEFAULT_DUPLICATE_POLICY),
                max_pending_per_user=max_pending if max_pending and max_pending > 0 else None,
            )
        except RequestServiceError as exc:
            return _error_response(str(exc), exc.status_code, code=exc.code)

        logger.info(
            "Request created #%s for '%s' by %s",
            created["id"],
            created["title"],
            session.get("user_id") or f"user#{db_user_id}",
        )
        notify_request_event(
            user_db,
            event=NotificationEvent.REQUEST_CREATED,
            request_row=created,
            notify_owner=False,
        )
        return jsonify(created), 201

    @app.route("/api/requests", methods=["GET"])
    def api_list_requests():
        db_user_id, db_gate = _require_db_user_id()
        if db_gate is not None or db_user_id is None:
            return db_gate

        try:
            rows = list_requests(
                user_db,
                user_id=db_user_id,
                status=request.args.get("status"),
                acquisition_status=request.args.get("acquisition_status"),
                limit=request.args.get("limit", type=int),
                offset=request.args.get("offset", type=int, default=0) or 0,
            )
        except RequestServiceError as exc:
            return _error_response(str(exc), exc.status_code, code=exc.code)
        return jsonify(rows)

    @app.route("/api/admin/requests", methods=["GET"])
    def api_admin_list_requests():
        _, admin_gate = _require_admin_user_id()
        if admin_gate is not None:
            return admin_gate

        try:
            rows = list_requests(
                user_db,
                status=request.args.get("status"),
                acquisition_status=request.args.get("acquisition_status"),
                limit=request.args.get("limit", type=int),
                offset=request.args.get("offset", type=int, default=0) or 0,
            )
        except RequestServiceError as exc:
            return _error_response(str(exc), exc.status_code, code=exc.code)

        user_cache: dict[int, str] = {}
        for row in rows:
            requester_id = row["user_id"]
            if requester_id not in user_cache:
                requester = user_db.get_user(user_id=requester_id)
                user_cache[requester_id] = requester.get("username", "") if requester else ""
            row["username"] = user_cache[requester_id]

        return jsonify(rows)

    @app.route("/api/admin/requests/count", methods=["GET"])
    def api_admin_request_counts():
        _, admin_gate = _require_admin_user_id()
        if admin_gate is not None:
            return admin_gate

        by_status = user_db.count_requests_by_status()
        return jsonify(
            {
                "pending": by_status["pending"],
                "total": sum(by_status.values()),
                "by_status": by_status,
            }
        )

    @app.route("/api/admin/requests/<int:request_id>/approve", methods=["POST"])
    def api_admin_approve_request(request_id: int):
        admin_user_id, admin_gate = _require_admin_user_id()
        if admin_gate is not None or admin_user_id is None:
            return admin_gate

        data = request.get_json(silent=True) or {}
        if not isinstance(data, dict):
            return jsonify({"error": "Invalid payload"}), 400

        previous = user_db.get_request(request_id)
        try:
            updated = approve_request(
                user_db,
                get_backend(),
                request_id=request_id,
                admin_user_id=admin_user_id,
                force=as_bool(data.get("force"), False),
            )
        except RequestServiceError as exc:
            return _error_response(str(exc), exc.status_code, code=exc.code)

        logger.info(
            "Request approved #%s for '%s' by %s (acquisition: %s)",
            updated["id"],
            updated["title"],
            session.get("user_id") or f"user#{admin_user_id}",
            updated["acquisition_status"],
        )
        if previous is not None and previous["status"] == "pending":
            notify_request_event(user_db, event=NotificationEvent.REQUEST_APPROVED, request_row=updated)
        if updated["acquisition_status"] == "error":
            notify_request_event(
                user_db,
                event=NotificationEvent.ACQUISITION_FAILED,
                request_row=updated,
                notify_owner=False,
            )

        return jsonify(updated)

    @app.route("/api/admin/requests/<int:request_id>/deny", methods=["POST"])
    def api_admin_deny_request(request_id: int):
        admin_user_id, admin_gate = _require_admin_user_id()
        if admin_gate is not None or admin_user_id is None:
            return admin_gate

        data = request.get_json(silent=True) or {}
        if not isinstance(data, dict):
            return jsonify({"error": "Invalid payload"}), 400

        try:
            updated = deny_request(
                user_db,
                request_id=request_id,
                admin_user_id=admin_user_id,
                admin_note=data.get("admin_note"),
            )
        except RequestServiceError as exc:
            return _error_response(str(exc), exc.status_code, code=exc.code)

        logger.info("Request denied #%s for '%s'", updated["id"], updated["title"])
        notify_request_event(
            user_db,
            event=NotificationEvent.REQUEST_DENIED,
            request_row=updated,
            notify_admins=False,
        )
        return jsonify(updated)

    @app.route("/api/admin/requests/<int:request_id>/available", methods=["POST"])
    def api_admin_mark_available(request_id: int):
        admin_user_id, admin_gate = _require_admin_user_id()
        if admin_gate is not None or admin_user_id is None:
            return admin_gate

        try:
            updated = mark_available(user_db, request_id=request_id, admin_user_id=admin_user_id)
        except RequestServiceError as exc:
            return _error_response(str(exc), exc.status_code, code=exc.code)

        logger.info("Request #%s for '%s' marked available", updated["id"], updated["title"])
        notify_request_event(
            user_db,
            event=NotificationEvent.REQUEST_AVAILABLE,
            request_row=updated,
            notify_admins=False,
        )
        return jsonify(updated)

    @app.route("/api/admin/requests/<int:request_id>/tags", methods=["PUT"])
    def api_admin_update_tags(request_id: int):
        _, admin_gate = _require_admin_user_id()
        if admin_gate is not None:
            return admin_gate

        data = request.get_json(silent=True)
        if not isinstance(data, dict) or "tags" not in data:
            return jsonify({"error": "tags must be an array of strings"}), 400

        try:
            updated, sync_error = update_tags(
                user_db,
                get_backend(),
                request_id=request_id,
                tags=data.get("tags"),
            )
        except RequestServiceError as exc:
            return _error_response(str(exc), exc.status_code, code=exc.code)

        payload = dict(updated)
        payload["tag_sync_error"] = sync_error
        return jsonify(payload)

    @app.route("/api/admin/requests/<int:request_id>/reset-acquisition", methods=["POST"])
    def api_admin_reset_acquisition(request_id: int):
        admin_user_id, admin_gate = _require_admin_user_id()
        if admin_gate is not None or admin_user_id is None:
            return admin_gate

        try:
            updated = reset_acquisition(user_db, request_id=request_id, admin_user_id=admin_user_id)
        except RequestServiceError as exc:
            return _error_response(str(exc), exc.status_code, code=exc.code)

        logger.info("Acquisition state reset for request #%s", updated["id"])
        return jsonify(updated)

    @app.route("/api/admin/requests/<int:request_id>/external-download", methods=["POST"])
    def api_admin_external_download(request_id: int):
        admin_user_id, admin_gate = _require_admin_user_id()
        if admin_gate is not None or admin_user_id is None:
            return admin_gate

        try:
            updated = mark_externally_downloaded(
                user_db,
                request_id=request_id,
                admin_user_id=admin_user_id,
            )
        except RequestServiceError as exc:
            return _error_response(str(exc), exc.status_code, code=exc.code)

        logger.info("Request #%s marked as downloaded outside Readarr", updated["id"])
        return jsonify(updated)

    @app.route("/api/admin/requests/check-status", methods=["POST"])
    def api_admin_check_status():
        _, admin_gate = _require_admin_user_id()
        if admin_gate is not None:
            return admin_gate

        backend = get_backend()
        if backend is None:
            return _error_response("Readarr is not configured", 503, code="backend_unavailable")

        result = run_status_check(
            user_db,
            backend,
            max_workers=app_config.get("STATUS_CHECK_WORKERS", DEFAULT_MAX_WORKERS),
            on_downloaded=lambda row: notify_request_event(
                user_db,
                event=NotificationEvent.BOOK_DOWNLOADED,
                request_row=row,
            ),
        )
        return jsonify(result.to_dict())
