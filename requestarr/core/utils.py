"""Shared utility functions for requestarr."""

import re
from typing import Any, Optional


def normalize_http_url(
    url: Optional[str],
    *,
    default_scheme: str = "http",
    strip_trailing_slash: bool = True,
) -> str:
    """Normalize a configured HTTP URL for requests and links."""
    if not isinstance(url, str):
        return ""

    normalized = url.strip()
    if not normalized:
        return ""

    if (normalized.startswith("\"") and normalized.endswith("\"")) or (
        normalized.startswith("'") and normalized.endswith("'")
    ):
        normalized = normalized[1:-1].strip()
        if not normalized:
            return ""

    if "://" not in normalized:
        scheme = default_scheme.strip().rstrip(":/")
        if scheme:
            normalized = f"{scheme}://{normalized}"

    if strip_trailing_slash:
        normalized = normalized.rstrip("/")

    return normalized


def get_ssl_verify(url: str) -> bool:
    """Whether TLS certificates should be verified for an outbound URL."""
    from requestarr.core.config import config

    if not url.lower().startswith("https://"):
        return True
    return bool(config.get("SSL_VERIFY", True))


_WHITESPACE_RE = re.compile(r"\s+")


def normalize_match_text(value: Any) -> str:
    """Lowercase, drop periods and collapse whitespace for name/title comparison."""
    if not isinstance(value, str):
        return ""
    text = value.lower().replace(".", "")
    return _WHITESPACE_RE.sub(" ", text).strip()


def lastname_first(name: Optional[str]) -> str:
    """Convert 'Frank Herbert' to 'Herbert, Frank'. Single-word names are returned as-is."""
    if not name:
        return ""
    parts = name.strip().split()
    if len(parts) < 2:
        return name.strip()
    return f"{parts[-1]}, {' '.join(parts[:-1])}"


def strip_redundant_author(title: str, author: str) -> str:
    """Turn 'Dune by Frank Herbert' into 'Dune' when the suffix repeats the author."""
    if not title or not author or " by " not in title or title.startswith("by "):
        return title
    head, _, tail = title.rpartition(" by ")
    if normalize_match_text(tail) == normalize_match_text(author) and head.strip():
        return head.strip()
    return title


def normalize_optional_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def as_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off", ""}:
            return False
    return bool(value)

