"""Readarr acquisition backend."""

from typing import Optional

from requestarr.acquisition.readarr.api import ReadarrClient
from requestarr.acquisition.readarr.backend import ReadarrBackend
from requestarr.core.config import config
from requestarr.core.logger import setup_logger

logger = setup_logger(__name__)

__all__ = ["ReadarrBackend", "ReadarrClient", "build_readarr_backend"]


def build_readarr_backend() -> Optional[ReadarrBackend]:
    """Create a backend from config, or None when Readarr is not configured."""
    url = config.get("READARR_URL", "")
    api_key = config.get("READARR_API_KEY", "")
    if not url or not api_key:
        logger.warning("READARR_URL or READARR_API_KEY not set; approvals will not reach Readarr")
        return None

    client = ReadarrClient(url, api_key, timeout=config.get("READARR_TIMEOUT", 30))
    return ReadarrBackend(
        client,
        quality_profile_id=config.get("READARR_QUALITY_PROFILE_ID", 0) or None,
        metadata_profile_id=config.get("READARR_METADATA_PROFILE_ID", 0) or None,
        root_folder=config.get("READARR_ROOT_FOLDER", "") or None,
    )
