"""Tests for download status polling and the background scheduler."""

import os
import tempfile
import threading

import pytest

from requestarr.core.acquisition import ExternalSystemError
from requestarr.core.models import DownloadStatus
from requestarr.core.status_check import (
    DOWNLOADED_MESSAGE,
    StatusCheckScheduler,
    run_status_check,
)
from requestarr.core.user_db import UserDB


@pytest.fixture
def user_db():
    with tempfile.TemporaryDirectory() as tmpdir:
        db = UserDB(os.path.join(tmpdir, "users.db"))
        db.initialize()
        yield db


@pytest.fixture
def reader(user_db):
    return user_db.create_user(username="reader")


def _tracked_request(user_db, user, acquisition_id: str, *, acquisition_status: str = "added"):
    created = user_db.create_request(
        user_id=user["id"],
        book_id=f"gb-{acquisition_id}",
        title=f"Book {acquisition_id}",
        author="Some Author",
    )
    return user_db.update_request(
        created["id"],
        status="approved",
        acquisition_status=acquisition_status,
        acquisition_id=acquisition_id,
    )


def test_status_check_marks_downloaded_and_keeps_going_after_failures(user_db, reader, fake_backend):
    ready = _tracked_request(user_db, reader, "1")
    broken = _tracked_request(user_db, reader, "2")
    waiting = _tracked_request(user_db, reader, "3")
    fake_backend.download_statuses["1"] = DownloadStatus(downloaded=True, percent=100.0)
    fake_backend.download_statuses["2"] = ExternalSystemError("Readarr returned HTTP 404")
    fake_backend.download_statuses["3"] = DownloadStatus(downloaded=False, percent=40.0)
    notified = []

    result = run_status_check(user_db, fake_backend, max_workers=2, on_downloaded=notified.append)

    assert result.updated_count == 3
    assert result.downloaded_count == 1
    assert result.metadata_stats == {"updated": 2, "failed": 1}
    assert result.failed_request_ids == [broken["id"]]

    ready_row = user_db.get_request(ready["id"])
    assert ready_row["acquisition_status"] == "downloaded"
    assert ready_row["acquisition_message"] == DOWNLOADED_MESSAGE
    assert [row["id"] for row in notified] == [ready["id"]]

    broken_row = user_db.get_request(broken["id"])
    assert broken_row["acquisition_status"] == "added"
    assert broken_row["acquisition_message"] is None

    waiting_row = user_db.get_request(waiting["id"])
    assert waiting_row["acquisition_status"] == "added"
    assert waiting_row["acquisition_message"] == "Waiting for download (40% of book files present)"


def test_status_check_is_idempotent(user_db, reader, fake_backend):
    ready = _tracked_request(user_db, reader, "1")
    waiting = _tracked_request(user_db, reader, "2")
    fake_backend.download_statuses["1"] = DownloadStatus(downloaded=True)

    run_status_check(user_db, fake_backend)
    ready_after_first = user_db.get_request(ready["id"])
    waiting_after_first = user_db.get_request(waiting["id"])

    second = run_status_check(user_db, fake_backend)

    # Downloaded requests drop out of the tracked set
    assert second.updated_count == 1
    assert second.downloaded_count == 0
    assert user_db.get_request(ready["id"]) == ready_after_first
    assert user_db.get_request(waiting["id"]) == waiting_after_first
    assert waiting_after_first["acquisition_message"] == "Waiting for download"


def test_failing_download_callback_does_not_stop_the_check(user_db, reader, fake_backend):
    first = _tracked_request(user_db, reader, "1")
    second = _tracked_request(user_db, reader, "2")
    fake_backend.download_statuses["1"] = DownloadStatus(downloaded=True)
    fake_backend.download_statuses["2"] = DownloadStatus(downloaded=True)
    seen = []

    def failing_callback(row):
        seen.append(row["id"])
        raise RuntimeError("notification backend down")

    result = run_status_check(user_db, fake_backend, max_workers=1, on_downloaded=failing_callback)

    assert result.downloaded_count == 2
    assert sorted(seen) == sorted([first["id"], second["id"]])
    assert user_db.get_request(first["id"])["acquisition_status"] == "downloaded"
    assert user_db.get_request(second["id"])["acquisition_status"] == "downloaded"


def test_status_check_ignores_untracked_requests(user_db, reader, fake_backend):
    _tracked_request(user_db, reader, "9", acquisition_status="error")
    user_db.create_request(user_id=reader["id"], book_id="gb-x", title="Pending", author="A")

    result = run_status_check(user_db, fake_backend)

    assert result.updated_count == 0
    assert result.to_dict()["message"] == "Checked 0 requests, 0 newly downloaded"
    assert fake_backend.calls == []


def test_scheduler_disabled_for_non_positive_interval():
    scheduler = StatusCheckScheduler(0, lambda: None)

    assert scheduler.start() is False
    assert not scheduler.is_running


def test_scheduler_survives_failing_job():
    calls = []
    second_run = threading.Event()

    def job():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("Readarr down")
        second_run.set()

    scheduler = StatusCheckScheduler(0.01, job)
    assert scheduler.start() is True
    assert scheduler.start() is False
    try:
        assert second_run.wait(2.0)
    finally:
        scheduler.stop()

    assert len(calls) >= 2
    assert not scheduler.is_running
