"""Tests for the find-or-create acquisition flow."""

from requestarr.core.acquisition import ExternalSystemError, acquire_book, exact_name_match
from requestarr.core.models import AuthorRef, BookRef
from requestarr.core.utils import lastname_first, strip_redundant_author


def test_exact_name_match_ignores_case_periods_and_spacing():
    assert exact_name_match("J.R.R. Tolkien", "jrr  tolkien")
    assert exact_name_match("Dune", " dune ")
    assert not exact_name_match("Dune Messiah", "Dune")
    assert not exact_name_match("", "")


def test_strip_redundant_author_only_removes_matching_suffix():
    assert strip_redundant_author("Dune by Frank Herbert", "Frank Herbert") == "Dune"
    assert strip_redundant_author("Stand by Me", "Stephen King") == "Stand by Me"
    assert strip_redundant_author("Dune", "Frank Herbert") == "Dune"


def test_lastname_first():
    assert lastname_first("Frank Herbert") == "Herbert, Frank"
    assert lastname_first("Ursula K. Le Guin") == "Guin, Ursula K. Le"
    assert lastname_first("Homer") == "Homer"
    assert lastname_first(None) == ""


def test_acquire_book_creates_missing_entries(fake_backend):
    outcome = acquire_book(fake_backend, title="Dune", author="Frank Herbert")

    assert outcome.succeeded
    assert outcome.author_created
    assert outcome.book_created
    assert outcome.search_triggered
    assert outcome.describe() == "Added to Readarr and search triggered"
    assert fake_backend.calls[-1] == ("trigger_search", outcome.book.id)


def test_acquire_book_checks_book_under_existing_author(fake_backend):
    fake_backend.authors.append(AuthorRef(id="5", name="Frank Herbert"))
    fake_backend.books.append(BookRef(id="50", title="Dune", author_id="5"))

    outcome = acquire_book(fake_backend, title="Dune", author="Frank Herbert")

    assert outcome.succeeded
    assert not outcome.author_created
    assert not outcome.book_created
    assert outcome.book.id == "50"
    assert fake_backend.call_names() == ["find_author", "find_book", "trigger_search"]


def test_acquire_book_labels_the_failing_step(fake_backend):
    fake_backend.failures["trigger_search"] = ExternalSystemError("command queue full")

    outcome = acquire_book(fake_backend, title="Dune", author="Frank Herbert")

    assert not outcome.succeeded
    assert outcome.book is not None
    assert outcome.error == "Search failed: command queue full"
    assert outcome.describe() == "Search failed: command queue full"


def test_acquire_book_captures_unexpected_errors(fake_backend):
    fake_backend.failures["add_author"] = KeyError("id")

    outcome = acquire_book(fake_backend, title="Dune", author="Frank Herbert")

    assert not outcome.succeeded
    assert outcome.author is None
    assert outcome.error.startswith("Adding author failed: unexpected error")
