"""Apprise notification dispatch for request lifecycle events.

Admins subscribe through ``ADMIN_NOTIFICATION_ROUTES`` and requesters through their
own ``USER_NOTIFICATION_ROUTES`` setting. Both are lists of ``{"event", "url"}`` rows
where ``event`` is a :class:`NotificationEvent` value or ``"all"``.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Union
from urllib.parse import urlsplit

import apprise

from requestarr.core.config import config as app_config
from requestarr.core.logger import setup_logger

logger = setup_logger(__name__)

_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="Notify")

ALL_EVENTS = "all"
_ASSET_KWARGS = {"app_id": "Requestarr", "app_desc": "Requestarr notifications"}


class NotificationEvent(str, Enum):
    """Request lifecycle notification event identifiers."""

    REQUEST_CREATED = "request_created"
    REQUEST_APPROVED = "request_approved"
    REQUEST_DENIED = "request_denied"
    REQUEST_AVAILABLE = "request_available"
    ACQUISITION_FAILED = "acquisition_failed"
    BOOK_DOWNLOADED = "book_downloaded"


_NOTIFY_TYPES = {
    NotificationEvent.REQUEST_CREATED: apprise.NotifyType.INFO,
    NotificationEvent.REQUEST_APPROVED: apprise.NotifyType.SUCCESS,
    NotificationEvent.REQUEST_DENIED: apprise.NotifyType.WARNING,
    NotificationEvent.REQUEST_AVAILABLE: apprise.NotifyType.SUCCESS,
    NotificationEvent.ACQUISITION_FAILED: apprise.NotifyType.FAILURE,
    NotificationEvent.BOOK_DOWNLOADED: apprise.NotifyType.SUCCESS,
}

# (heading, body template, optional detail field, detail label)
_TEMPLATES: dict[NotificationEvent, tuple[str, str, str | None, str]] = {
    NotificationEvent.REQUEST_CREATED: ("New Request", '{username} requested "{title}" by {author}', None, ""),
    NotificationEvent.REQUEST_APPROVED: ("Request Approved", 'Request for "{title}" by {author} was approved.', None, ""),
    NotificationEvent.REQUEST_DENIED: (
        "Request Denied",
        'Request for "{title}" by {author} was denied.',
        "admin_note",
        "Note",
    ),
    NotificationEvent.REQUEST_AVAILABLE: (
        "Book Available",
        '"{title}" by {author} is now available in the library.',
        None,
        "",
    ),
    NotificationEvent.ACQUISITION_FAILED: (
        "Acquisition Failed",
        'Could not send "{title}" by {author} to Readarr.',
        "error_message",
        "Error",
    ),
    NotificationEvent.BOOK_DOWNLOADED: (
        "Book Downloaded",
        '"{title}" by {author} was downloaded by Readarr.',
        None,
        "",
    ),
}


@dataclass
class NotificationContext:
    event: NotificationEvent
    title: str
    author: str
    username: str | None = None
    admin_note: str | None = None
    error_message: str | None = None


def context_from_request(
    event: NotificationEvent,
    request_row: dict[str, Any],
    *,
    username: str | None = None,
) -> NotificationContext:
    """Build a notification context from a stored request row."""
    return NotificationContext(
        event=event,
        title=request_row.get("title") or "",
        author=request_row.get("author") or "",
        username=username,
        admin_note=request_row.get("admin_note"),
        error_message=request_row.get("acquisition_message"),
    )


def _split_urls(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        candidates: list[Any] = value.replace("\n", ",").split(",")
    elif isinstance(value, (list, tuple)):
        candidates = list(value)
    else:
        candidates = [value]

    urls: list[str] = []
    for candidate in candidates:
        # Pasted URLs sometimes carry zero-width characters that Apprise cannot encode
        url = str(candidate or "").encode("ascii", errors="ignore").decode("ascii").strip()
        if url and url not in urls:
            urls.append(url)
    return urls


def normalize_routes(value: Any) -> list[dict[str, str]]:
    if not isinstance(value, list):
        return []

    known = {ALL_EVENTS} | {event.value for event in NotificationEvent}
    routes: list[dict[str, str]] = []

    for row in value:
        if not isinstance(row, dict):
            continue
        url = str(row.get("url") or "").strip()
        if not url:
            continue

        raw = row.get("event")
        raw_events = raw if isinstance(raw, (list, tuple, set)) else [raw]
        events = [str(item or "").strip().lower() for item in raw_events]
        events = [event for event in dict.fromkeys(events) if event in known]
        if ALL_EVENTS in events:
            events = [ALL_EVENTS]

        for event in events:
            route = {"event": event, "url": url}
            if route not in routes:
                routes.append(route)

    return routes


def _resolve_admin_routes() -> list[dict[str, str]]:
    return normalize_routes(app_config.get("ADMIN_NOTIFICATION_ROUTES", []))


def _resolve_user_routes(user_id: int) -> list[dict[str, str]]:
    return normalize_routes(app_config.get("USER_NOTIFICATION_ROUTES", [], user_id=user_id))


def _urls_for_event(routes: list[dict[str, str]], event: NotificationEvent) -> list[str]:
    return _split_urls([route["url"] for route in routes if route["event"] in (ALL_EVENTS, event.value)])


def _render_message(context: NotificationContext) -> tuple[str, str]:
    heading, template, detail_field, detail_label = _TEMPLATES[context.event]
    body = template.format(
        title=str(context.title or "").strip() or "Unknown title",
        author=str(context.author or "").strip() or "Unknown author",
        username=str(context.username or "").strip() or "A user",
    )
    if detail_field:
        detail = str(getattr(context, detail_field) or "").strip()
        if detail:
            body += f"\n{detail_label}: {detail}"
    return heading, body


def _dispatch_to_apprise(
    urls: Iterable[str],
    *,
    title: str,
    body: str,
    notify_type: Any,
) -> dict[str, Any]:
    targets = _split_urls(list(urls))
    if not targets:
        return {"success": False, "message": "No notification URLs configured"}

    sent = 0
    failures: list[str] = []

    # One Apprise instance per URL so a single bad target cannot mask the others
    for url in targets:
        scheme = urlsplit(url).scheme or "unknown"
        client = apprise.Apprise(asset=apprise.AppriseAsset(**_ASSET_KWARGS))
        if not client.add(url):
            logger.warning("Apprise rejected notification URL for scheme '%s'", scheme)
            failures.append(f"{scheme}: route URL rejected by Apprise")
            continue

        try:
            ok = bool(client.notify(title=title, body=body, notify_type=notify_type))
        except Exception as e:
            logger.warning("Apprise raised %s for scheme '%s': %s", type(e).__name__, scheme, e)
            failures.append(f"{scheme}: notify raised {type(e).__name__}: {e}")
            continue

        if ok:
            sent += 1
            logger.debug("Notification delivered via %s", scheme)
        else:
            logger.warning("Apprise delivery failed for scheme '%s'", scheme)
            failures.append(f"{scheme}: delivery failed")

    if sent:
        message = f"Notification sent to {sent} URL(s)"
        if failures:
            message += f" ({len(failures)} URL(s) failed)"
        result: dict[str, Any] = {"success": True, "message": message}
    else:
        result = {"success": False, "message": "Notification delivery failed"}
    if failures:
        result["details"] = failures
    return result


def _send_event(context: NotificationContext, urls: list[str]) -> dict[str, Any]:
    title, body = _render_message(context)
    return _dispatch_to_apprise(urls, title=title, body=body, notify_type=_NOTIFY_TYPES[context.event])


def _deliver(recipient: Union[str, int], context: NotificationContext, urls: list[str]) -> None:
    result = _send_event(context, urls)
    if not result.get("success"):
        logger.warning(
            "Notification '%s' for %s failed: %s",
            context.event.value,
            recipient,
            result.get("message"),
        )


def _queue(recipient: Union[str, int], context: NotificationContext, urls: list[str]) -> None:
    if not urls:
        return
    try:
        _executor.submit(_deliver, recipient, context, urls)
    except RuntimeError as e:
        # Executor already shut down during interpreter exit
        logger.warning("Could not queue notification '%s' for %s: %s", context.event.value, recipient, e)


def notify_admin(event: NotificationEvent, context: NotificationContext) -> None:
    """Queue an admin notification if any admin route subscribes to ``event``."""
    _queue("admin", context, _urls_for_event(_resolve_admin_routes(), event))


def notify_user(user_id: int | None, event: NotificationEvent, context: NotificationContext) -> None:
    """Queue a notification to the requester's own routes."""
    try:
        normalized = int(user_id)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return
    if normalized < 1:
        return
    _queue(normalized, context, _urls_for_event(_resolve_user_routes(normalized), event))


def send_test_notification(urls: list[str]) -> dict[str, Any]:
    """Synchronously send a sample notification to ``urls`` and report the outcome."""
    targets = _split_urls(urls)
    if not targets:
        return {"success": False, "message": "No notification URLs configured"}

    sample = NotificationContext(
        event=NotificationEvent.REQUEST_CREATED,
        title="Requestarr Test Notification",
        author="Requestarr",
        username="Requestarr",
    )
    return _send_event(sample, targets)
