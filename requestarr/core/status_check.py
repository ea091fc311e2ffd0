"""Status-polling reconciliation between approved requests and the acquisition system."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional, TYPE_CHECKING

from requestarr.core.acquisition import ExternalSystemError
from requestarr.core.logger import setup_logger
from requestarr.core.models import BookRef, DownloadStatus, StatusCheckResult

if TYPE_CHECKING:
    from requestarr.core.acquisition import AcquisitionBackend
    from requestarr.core.user_db import UserDB

logger = setup_logger(__name__)

DOWNLOADED_MESSAGE = "Book is downloaded and available in Readarr"
DEFAULT_MAX_WORKERS = 4


def _progress_message(status: DownloadStatus) -> str:
    if status.percent > 0:
        return f"Waiting for download ({status.percent:.0f}% of book files present)"
    return "Waiting for download"


def _check_one(backend: "AcquisitionBackend", request_row: Dict[str, Any]) -> DownloadStatus:
    book = BookRef(id=str(request_row["acquisition_id"]), title=request_row["title"])
    return backend.get_download_status(book)


def run_status_check(
    user_db: "UserDB",
    backend: "AcquisitionBackend",
    *,
    max_workers: int = DEFAULT_MAX_WORKERS,
    on_downloaded: Optional[Callable[[Dict[str, Any]], None]] = None,
) -> StatusCheckResult:
    """Poll download state for every approved request that was added to the backend.

    Candidates are checked concurrently on a bounded pool. A failing check is
    counted and leaves that request untouched; the rest of the batch proceeds.
    Writes happen only when something changed, so repeated runs are no-ops.
    """
    candidates = user_db.list_tracked_requests()
    result = StatusCheckResult(updated_count=len(candidates))
    if not candidates:
        return result

    workers = max(1, min(int(max_workers), len(candidates)))
    logger.info(f"Checking download status for {len(candidates)} request(s) with {workers} worker(s)")

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="StatusCheck") as executor:
        futures = [
            (row, executor.submit(_check_one, backend, row))
            for row in candidates
        ]

        # Writes happen on this thread; UserDB serializes them anyway.
        for row, future in futures:
            request_id = row["id"]
            try:
                status = future.result()
            except ExternalSystemError as e:
                logger.warning(f"Status check failed for request #{request_id}: {e}")
                result.metadata_stats["failed"] += 1
                result.failed_request_ids.append(request_id)
                continue
            except Exception as e:
                logger.error_trace(f"Unexpected error checking request #{request_id}: {e}")
                result.metadata_stats["failed"] += 1
                result.failed_request_ids.append(request_id)
                continue

            result.metadata_stats["updated"] += 1

            if status.downloaded:
                changes = {
                    "acquisition_status": "downloaded",
                    "acquisition_message": DOWNLOADED_MESSAGE,
                }
            else:
                message = _progress_message(status)
                if message == row.get("acquisition_message"):
                    continue
                changes = {"acquisition_message": message}

            try:
                updated = user_db.update_request(
                    request_id,
                    expected_current_status="approved",
                    expected_acquisition_status="added",
                    **changes,
                )
            except ValueError as e:
                logger.debug(f"Skipped status update for request #{request_id}: {e}")
                continue

            if status.downloaded:
                result.downloaded_count += 1
                logger.info(f"Request #{request_id} '{row['title']}' is downloaded")
                if on_downloaded is not None:
                    try:
                        on_downloaded(updated)
                    except Exception as e:
                        logger.error_trace(f"Download callback failed for request #{request_id}: {e}")

    logger.info(
        f"Status check complete: {result.metadata_stats['updated']} confirmed, "
        f"{result.metadata_stats['failed']} failed, {result.downloaded_count} newly downloaded"
    )
    return result


class StatusCheckScheduler:
    """Daemon thread that runs a job on a fixed interval until stopped."""

    def __init__(self, interval_seconds: float, job: Callable[[], Any]):
        self.interval_seconds = float(interval_seconds)
        self._job = job
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """Start the loop. Returns False when disabled (interval <= 0) or already running."""
        if self.interval_seconds <= 0:
            logger.info("Scheduled status check disabled")
            return False
        if self.is_running:
            return False

        self._stop_event.clear()

        def run_loop():
            while not self._stop_event.wait(self.interval_seconds):
                self.run_once()

        self._thread = threading.Thread(target=run_loop, name="StatusCheckScheduler", daemon=True)
        self._thread.start()
        logger.info(f"Scheduled status check every {self.interval_seconds:.0f}s")
        return True

    def run_once(self) -> None:
        try:
            self._job()
        except Exception as e:
            logger.error_trace(f"Scheduled status check failed: {e}")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
