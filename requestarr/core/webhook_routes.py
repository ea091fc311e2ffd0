"""Inbound Readarr webhook endpoint."""

from __future__ import annotations

import hmac
from typing import Any

from flask import Flask, jsonify, request

from requestarr.core.config import config as app_config
from requestarr.core.logger import setup_logger
from requestarr.core.notifications import NotificationEvent
from requestarr.core.request_routes import notify_request_event
from requestarr.core.requests_service import RequestServiceError, record_download_event
from requestarr.core.user_db import UserDB

logger = setup_logger(__name__)

WEBHOOK_SECRET_HEADER = "X-Webhook-Secret"


def _secret_is_valid(provided: str | None) -> bool:
    expected = str(app_config.get("WEBHOOK_SECRET", "") or "")
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def _extract_book_ids(payload: dict[str, Any]) -> list[str]:
    """Readarr sends ``book`` on some events and a ``books`` list on others."""
    book_ids: list[str] = []
    candidates: list[Any] = []
    if isinstance(payload.get("book"), dict):
        candidates.append(payload["book"])
    if isinstance(payload.get("books"), list):
        candidates.extend(payload["books"])

    for book in candidates:
        if not isinstance(book, dict) or book.get("id") is None:
            continue
        book_id = str(book["id"])
        if book_id not in book_ids:
            book_ids.append(book_id)
    return book_ids


def register_webhook_routes(app: Flask, user_db: UserDB) -> None:
    """Register the Readarr webhook receiver."""

    @app.route("/api/webhooks/readarr", methods=["POST"])
    def api_readarr_webhook():
        provided = request.headers.get(WEBHOOK_SECRET_HEADER) or request.args.get("secret")
        if not _secret_is_valid(provided):
            logger.warning("Rejected Readarr webhook from %s: invalid secret", request.remote_addr)
            return jsonify({"error": "Invalid webhook secret"}), 403

        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return jsonify({"error": "Invalid webhook payload"}), 400

        event_type = payload.get("eventType")
        if not isinstance(event_type, str) or not event_type.strip():
            return jsonify({"error": "Invalid webhook: Missing eventType"}), 400

        if event_type == "Test":
            logger.info("Received Readarr test webhook")
            return jsonify({"message": "Test event received"})

        book_ids = _extract_book_ids(payload)
        if not book_ids:
            if event_type in {"Grab", "Download", "BookFileImport"}:
                return jsonify({"error": "Missing book ID"}), 400
            return jsonify({"message": f"Ignored event {event_type}"})

        updated: list[dict[str, Any]] = []
        for book_id in book_ids:
            try:
                updated.extend(
                    record_download_event(user_db, acquisition_id=book_id, event_type=event_type)
                )
            except RequestServiceError as exc:
                return jsonify({"error": str(exc)}), exc.status_code

        logger.info(
            "Readarr webhook %s for book(s) %s updated %d request(s)",
            event_type,
            ", ".join(book_ids),
            len(updated),
        )

        for row in updated:
            if row["acquisition_status"] == "downloaded":
                notify_request_event(user_db, event=NotificationEvent.BOOK_DOWNLOADED, request_row=row)

        return jsonify(
            {
                "message": f"{event_type} event processed",
                "book_ids": book_ids,
                "updated_request_ids": [row["id"] for row in updated],
            }
        )
