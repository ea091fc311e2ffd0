"""Tests for the Google Books metadata provider."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from requestarr.metadata_providers import get_provider, resolve_provider_for_book_id
from requestarr.metadata_providers.googlebooks import GoogleBooksProvider, to_volume_id

DUNE_VOLUME = {
    "id": "B1hSG45JCX4C",
    "volumeInfo": {
        "title": "Dune",
        "authors": ["Frank Herbert"],
        "publisher": "Penguin",
        "publishedDate": "2005-08-02",
        "description": "Desert planet.",
        "industryIdentifiers": [
            {"type": "ISBN_10", "identifier": "0441013597"},
            {"type": "ISBN_13", "identifier": "9780441013593"},
        ],
        "imageLinks": {"thumbnail": "http://books.google.com/cover?id=1&edge=curl"},
        "categories": ["Fiction"],
        "language": "en",
        "infoLink": "https://books.google.com/books?id=B1hSG45JCX4C",
    },
}


def _response(json_data=None, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = json_data
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(response=response)
    return response


@pytest.fixture
def provider():
    return GoogleBooksProvider(api_key="test-key", timeout=3)


def test_to_volume_id_strips_prefix():
    assert to_volume_id("gb-abc") == "abc"
    assert to_volume_id(" abc ") == "abc"


def test_search_parses_volumes(provider):
    with patch.object(provider.session, "get", return_value=_response({"items": [DUNE_VOLUME, {"id": "x"}]})) as mock_get:
        results = provider.search("dune", limit=100)

    assert len(results) == 1
    book = results[0]
    assert book.book_id == "gb-B1hSG45JCX4C"
    assert book.author == "Frank Herbert"
    assert book.isbn == "9780441013593"
    assert book.publish_year == 2005
    assert book.cover_url == "https://books.google.com/cover?id=1"

    params = mock_get.call_args.kwargs["params"]
    assert params["maxResults"] == 40
    assert params["key"] == "test-key"
    assert params["printType"] == "books"


def test_search_blank_query_skips_request(provider):
    with patch.object(provider.session, "get") as mock_get:
        assert provider.search("   ") == []
    mock_get.assert_not_called()


def test_get_book_accepts_prefixed_id(provider):
    with patch.object(provider.session, "get", return_value=_response(DUNE_VOLUME)) as mock_get:
        book = provider.get_book("gb-B1hSG45JCX4C")

    assert mock_get.call_args.args[0].endswith("/volumes/B1hSG45JCX4C")
    assert book.title == "Dune"


def test_http_errors_return_empty_results(provider):
    with patch.object(provider.session, "get", return_value=_response(status_code=403)):
        assert provider.search("dune") == []
    with patch.object(provider.session, "get", side_effect=requests.Timeout()):
        assert provider.get_book("gb-abc") is None


def test_api_key_omitted_when_not_configured():
    provider = GoogleBooksProvider()
    with patch.object(provider.session, "get", return_value=_response({"items": []})) as mock_get:
        provider.search("dune")

    assert "key" not in mock_get.call_args.kwargs["params"]


def test_registry_builds_provider_from_config(monkeypatch):
    monkeypatch.setenv("GOOGLEBOOKS_API_KEY", "from-env")

    provider = get_provider("google")

    assert isinstance(provider, GoogleBooksProvider)
    assert provider.api_key == "from-env"
    name, resolved = resolve_provider_for_book_id("gb-abc")
    assert name == "google"
    assert isinstance(resolved, GoogleBooksProvider)
