"""Tests for the Readarr acquisition backend."""

from unittest.mock import MagicMock

import pytest

from requestarr.acquisition.readarr.api import ReadarrClient
from requestarr.acquisition.readarr.backend import ReadarrBackend
from requestarr.core.acquisition import ExternalSystemError, acquire_book
from requestarr.core.models import AuthorRef, BookRef


@pytest.fixture
def client():
    mock_client = MagicMock(spec=ReadarrClient)
    mock_client.get_quality_profiles.return_value = [{"id": 1, "name": "eBook"}]
    mock_client.get_metadata_profiles.return_value = [{"id": 2, "name": "Standard"}]
    mock_client.get_root_folders.return_value = [{"id": 1, "path": "/books"}]
    mock_client.get_authors.return_value = []
    mock_client.get_author_books.return_value = []
    mock_client.get_tags.return_value = []
    mock_client.run_command.return_value = {"id": 900, "status": "queued"}
    return mock_client


@pytest.fixture
def backend(client):
    return ReadarrBackend(client)


class TestAuthors:
    def test_find_author_matches_normalized_name(self, backend, client):
        client.get_authors.return_value = [
            {"id": 3, "authorName": "Ursula K. Le Guin"},
            {"id": 4, "authorName": "Frank Herbert"},
        ]

        assert backend.find_author("frank herbert") == AuthorRef(id="4", name="Frank Herbert")
        assert backend.find_author("Ursula K Le Guin") == AuthorRef(id="3", name="Ursula K. Le Guin")
        assert backend.find_author("Isaac Asimov") is None

    def test_add_author_tries_lastname_first_and_uses_profiles(self, backend, client):
        client.lookup_author.side_effect = [
            [],
            [
                {"authorName": "Frank Herbert Jr", "foreignAuthorId": "x"},
                {"authorName": "Frank Herbert", "foreignAuthorId": "58", "titleSlug": "frank-herbert"},
            ],
        ]
        client.add_author.return_value = {"id": 12, "authorName": "Frank Herbert"}

        author = backend.add_author("Frank Herbert")

        assert author == AuthorRef(id="12", name="Frank Herbert")
        assert [call.args[0] for call in client.lookup_author.call_args_list] == [
            "Herbert, Frank",
            "Frank Herbert",
        ]
        payload = client.add_author.call_args.args[0]
        assert payload["foreignAuthorId"] == "58"
        assert payload["qualityProfileId"] == 1
        assert payload["metadataProfileId"] == 2
        assert payload["rootFolderPath"] == "/books"
        assert payload["addOptions"] == {"monitor": "none", "searchForMissingBooks": False}

    def test_add_author_without_lookup_results_raises(self, backend, client):
        client.lookup_author.return_value = []

        with pytest.raises(ExternalSystemError, match="not found in Readarr metadata"):
            backend.add_author("Nobody Known")
        client.add_author.assert_not_called()

    def test_configured_profiles_skip_discovery(self, client):
        backend = ReadarrBackend(client, quality_profile_id=5, metadata_profile_id=6, root_folder="/media/books")
        client.lookup_author.return_value = [{"authorName": "Frank Herbert", "foreignAuthorId": "58"}]
        client.add_author.return_value = {"id": 12, "authorName": "Frank Herbert"}

        backend.add_author("Frank Herbert")

        client.get_quality_profiles.assert_not_called()
        client.get_metadata_profiles.assert_not_called()
        client.get_root_folders.assert_not_called()
        assert client.add_author.call_args.args[0]["rootFolderPath"] == "/media/books"

    def test_missing_profiles_raise(self, backend, client):
        client.get_quality_profiles.return_value = []
        client.lookup_author.return_value = [{"authorName": "Frank Herbert"}]

        with pytest.raises(ExternalSystemError, match="No quality profiles"):
            backend.add_author("Frank Herbert")


class TestBooks:
    def test_find_book_searches_author_books(self, backend, client):
        client.get_author_books.return_value = [
            {"id": 30, "title": "Dune Messiah", "authorId": 12},
            {"id": 31, "title": "Dune", "authorId": 12},
        ]

        book = backend.find_book(AuthorRef(id="12", name="Frank Herbert"), "dune")

        client.get_author_books.assert_called_once_with(12)
        assert book == BookRef(id="31", title="Dune", author_id="12")

    def test_add_book_prefers_exact_title_and_author(self, backend, client):
        client.lookup_book.return_value = [
            {"title": "Dune (Graphic Novel)", "authorName": "Brian Herbert", "foreignBookId": "1"},
            {"title": "Dune", "authorName": "Frank Herbert", "foreignBookId": "234225"},
        ]
        client.add_book.return_value = {"id": 31, "title": "Dune", "authorId": 12}

        book = backend.add_book(AuthorRef(id="12", name="Frank Herbert"), "Dune")

        client.lookup_book.assert_called_once_with("Dune Frank Herbert")
        payload = client.add_book.call_args.args[0]
        assert payload["foreignBookId"] == "234225"
        assert payload["authorId"] == 12
        assert payload["addOptions"] == {"searchForNewBook": False}
        assert book == BookRef(id="31", title="Dune", author_id="12")

    def test_add_book_falls_back_to_same_author_result(self, backend, client):
        client.lookup_book.return_value = [
            {"title": "Something Else", "authorName": "Other", "foreignBookId": "1"},
            {"title": "Dune: Deluxe Edition", "authorId": 12, "foreignBookId": "2"},
        ]
        client.add_book.return_value = {"id": 40, "title": "Dune: Deluxe Edition", "authorId": 12}

        backend.add_book(AuthorRef(id="12", name="Frank Herbert"), "Dune")

        assert client.add_book.call_args.args[0]["foreignBookId"] == "2"

    def test_add_book_with_empty_lookup_raises(self, backend, client):
        client.lookup_book.return_value = []

        with pytest.raises(ExternalSystemError, match="not found in Readarr metadata"):
            backend.add_book(AuthorRef(id="12", name="Frank Herbert"), "Unknown")

    def test_trigger_search_runs_book_search_command(self, backend, client):
        backend.trigger_search(BookRef(id="31", title="Dune"))

        client.run_command.assert_called_once_with("BookSearch", bookIds=[31])

    def test_non_numeric_ids_are_rejected(self, backend):
        with pytest.raises(ExternalSystemError, match="Invalid Readarr book id"):
            backend.trigger_search(BookRef(id="abc", title="Dune"))


class TestDownloadStatus:
    def test_downloaded_when_book_files_present(self, backend, client):
        client.get_book.return_value = {
            "id": 31,
            "title": "Dune",
            "statistics": {"bookFileCount": 1, "percentOfBooks": 100.0, "sizeOnDisk": 2048},
        }

        status = backend.get_download_status(BookRef(id="31", title="Dune"))

        assert status.downloaded is True
        assert status.percent == 100.0
        assert status.size_on_disk == 2048

    def test_not_downloaded_without_statistics(self, backend, client):
        client.get_book.return_value = {"id": 31, "title": "Dune"}

        status = backend.get_download_status(BookRef(id="31", title="Dune"))

        assert status.downloaded is False
        assert status.percent == 0.0

    def test_missing_book_raises(self, backend, client):
        client.get_book.return_value = {}

        with pytest.raises(ExternalSystemError, match="not found in Readarr"):
            backend.get_download_status(BookRef(id="31", title="Dune"))


class TestTags:
    def test_set_tags_creates_missing_labels_and_applies_to_author(self, backend, client):
        client.get_tags.return_value = [{"id": 1, "label": "scifi"}]
        client.create_tag.return_value = {"id": 2, "label": "book-club"}

        backend.set_tags(BookRef(id="31", title="Dune", author_id="12"), ["SciFi", "Book-Club"])

        client.create_tag.assert_called_once_with("book-club")
        client.edit_authors.assert_called_once_with({"authorIds": [12], "tags": [1, 2], "applyTags": "add"})
        client.get_book.assert_not_called()

    def test_set_tags_resolves_author_from_book(self, backend, client):
        client.get_book.return_value = {"id": 31, "authorId": 12}
        client.get_tags.return_value = [{"id": 1, "label": "scifi"}]

        backend.set_tags(BookRef(id="31", title="Dune"), ["scifi"])

        client.get_book.assert_called_once_with(31)
        assert client.edit_authors.call_args.args[0]["authorIds"] == [12]

    def test_empty_tag_list_without_previous_tags_is_noop(self, backend, client):
        backend.set_tags(BookRef(id="31", title="Dune", author_id="12"), [])

        client.edit_authors.assert_not_called()
        client.get_tags.assert_not_called()

    def test_dropped_tags_are_removed_from_author(self, backend, client):
        client.get_tags.return_value = [{"id": 1, "label": "a"}, {"id": 2, "label": "b"}]
        book = BookRef(id="31", title="Dune", author_id="12")

        backend.set_tags(book, ["a", "b"])
        backend.set_tags(book, ["a"], previous=["a", "b"])
        backend.set_tags(book, [], previous=["a"])

        assert [c.args[0] for c in client.edit_authors.call_args_list] == [
            {"authorIds": [12], "tags": [1, 2], "applyTags": "add"},
            {"authorIds": [12], "tags": [1], "applyTags": "add"},
            {"authorIds": [12], "tags": [2], "applyTags": "remove"},
            {"authorIds": [12], "tags": [1], "applyTags": "remove"},
        ]
        client.create_tag.assert_not_called()

    def test_removing_unknown_label_does_not_create_it(self, backend, client):
        client.get_tags.return_value = [{"id": 1, "label": "a"}]

        backend.set_tags(BookRef(id="31", title="Dune", author_id="12"), [], previous=["Gone"])

        client.create_tag.assert_not_called()
        client.edit_authors.assert_not_called()


def test_acquire_book_end_to_end_against_mock_client(backend, client):
    client.lookup_author.return_value = [{"authorName": "Frank Herbert", "foreignAuthorId": "58"}]
    client.add_author.return_value = {"id": 12, "authorName": "Frank Herbert"}
    client.lookup_book.return_value = [{"title": "Dune", "authorName": "Frank Herbert", "foreignBookId": "234225"}]
    client.add_book.return_value = {"id": 31, "title": "Dune", "authorId": 12}

    outcome = acquire_book(backend, title="Dune", author="Frank Herbert")

    assert outcome.succeeded
    assert outcome.book == BookRef(id="31", title="Dune", author_id="12")
    client.get_author_books.assert_called_once_with(12)
    client.run_command.assert_called_once_with("BookSearch", bookIds=[31])
