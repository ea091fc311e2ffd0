"""Tests for the Readarr HTTP client."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from requestarr.acquisition.readarr import build_readarr_backend
from requestarr.acquisition.readarr.api import ReadarrClient
from requestarr.core.acquisition import ExternalSystemError


def _response(status_code=200, json_data=None, text=None):
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    response.ok = status_code < 400
    if json_data is not None:
        response.json.return_value = json_data
        response.content = b"{}"
        response.text = text or "{}"
    else:
        response.json.side_effect = ValueError("no json")
        response.content = (text or "").encode()
        response.text = text or ""
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(response=response)
    return response


@pytest.fixture
def client():
    return ReadarrClient("readarr.local:8787/", "secret-key", timeout=5)


def test_client_normalizes_url_and_sets_api_key(client):
    assert client.base_url == "http://readarr.local:8787"
    assert client._session.headers["X-Api-Key"] == "secret-key"


def test_lookup_author_passes_term(client):
    with patch.object(client._session, "request", return_value=_response(json_data=[{"authorName": "Frank Herbert"}])) as mock_request:
        results = client.lookup_author("Herbert, Frank")

    assert results == [{"authorName": "Frank Herbert"}]
    kwargs = mock_request.call_args.kwargs
    assert kwargs["method"] == "GET"
    assert kwargs["url"] == "http://readarr.local:8787/api/v1/author/lookup"
    assert kwargs["params"] == {"term": "Herbert, Frank"}
    assert kwargs["timeout"] == 5


def test_run_command_posts_body(client):
    with patch.object(client._session, "request", return_value=_response(json_data={"id": 1})) as mock_request:
        client.run_command("BookSearch", bookIds=[31])

    assert mock_request.call_args.kwargs["json"] == {"name": "BookSearch", "bookIds": [31]}


def test_empty_body_returns_default(client):
    with patch.object(client._session, "request", return_value=_response(text="")):
        assert client.edit_authors({"authorIds": [1]}) is None
        assert client.get_tags() == []


def test_http_error_includes_validation_messages(client):
    error = _response(
        status_code=400,
        json_data=[{"propertyName": "Path", "errorMessage": "Path is already configured"}],
    )
    with patch.object(client._session, "request", return_value=error):
        with pytest.raises(ExternalSystemError) as exc_info:
            client.add_author({"authorName": "Frank Herbert"})

    assert str(exc_info.value) == "Readarr returned HTTP 400: Path is already configured"


def test_http_error_with_message_object(client):
    error = _response(status_code=401, json_data={"message": "Unauthorized"})
    with patch.object(client._session, "request", return_value=error):
        with pytest.raises(ExternalSystemError, match="Readarr returned HTTP 401: Unauthorized"):
            client.get_authors()


def test_connection_errors_become_external_errors(client):
    with patch.object(client._session, "request", side_effect=requests.exceptions.ConnectionError("refused")):
        with pytest.raises(ExternalSystemError, match="Could not reach Readarr"):
            client.get_book(31)


def test_test_connection_reports_version(client):
    with patch.object(client._session, "request", return_value=_response(json_data={"version": "0.4.18"})):
        assert client.test_connection() == (True, "Connected to Readarr 0.4.18")

    with patch.object(client._session, "request", side_effect=requests.exceptions.Timeout("slow")):
        ok, message = client.test_connection()
    assert ok is False
    assert message.startswith("Could not reach Readarr")


def test_build_backend_requires_url_and_key(monkeypatch):
    monkeypatch.delenv("READARR_URL", raising=False)
    monkeypatch.setenv("READARR_API_KEY", "key")
    assert build_readarr_backend() is None

    monkeypatch.setenv("READARR_URL", "http://readarr:8787")
    monkeypatch.setenv("READARR_QUALITY_PROFILE_ID", "3")
    backend = build_readarr_backend()

    assert backend is not None
    assert backend.client.base_url == "http://readarr:8787"
    assert backend._quality_profile_id == 3
    assert backend._metadata_profile_id is None
