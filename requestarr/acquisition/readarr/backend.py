"""Readarr implementation of the acquisition backend."""

import threading
from typing import Any, Dict, List, Optional

from requestarr.acquisition.readarr.api import ReadarrClient
from requestarr.core.acquisition import AcquisitionBackend, ExternalSystemError, NameMatcher
from requestarr.core.logger import setup_logger
from requestarr.core.models import AuthorRef, BookRef, DownloadStatus
from requestarr.core.utils import lastname_first

logger = setup_logger(__name__)


def _as_author_ref(data: Dict[str, Any], fallback_name: str = "") -> AuthorRef:
    author_id = data.get("id")
    if author_id is None:
        raise ExternalSystemError("Readarr returned an author without an id")
    return AuthorRef(id=str(author_id), name=str(data.get("authorName") or fallback_name))


def _as_book_ref(data: Dict[str, Any], fallback_title: str = "") -> BookRef:
    book_id = data.get("id")
    if book_id is None:
        raise ExternalSystemError("Readarr returned a book without an id")
    author_id = data.get("authorId")
    return BookRef(
        id=str(book_id),
        title=str(data.get("title") or fallback_title),
        author_id=str(author_id) if author_id is not None else None,
    )


def _as_int_id(value: str, kind: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ExternalSystemError(f"Invalid Readarr {kind} id: {value!r}") from e


class ReadarrBackend(AcquisitionBackend):
    """Find-or-create authors and books in Readarr and drive its searches.

    Profiles not pinned in config fall back to the first one Readarr reports.
    They are resolved on first use and cached for the backend's lifetime.
    """

    name = "Readarr"

    def __init__(
        self,
        client: ReadarrClient,
        *,
        quality_profile_id: Optional[int] = None,
        metadata_profile_id: Optional[int] = None,
        root_folder: Optional[str] = None,
        matcher: Optional[NameMatcher] = None,
    ):
        super().__init__(matcher)
        self.client = client
        self._quality_profile_id = quality_profile_id
        self._metadata_profile_id = metadata_profile_id
        self._root_folder = root_folder
        self._profile_lock = threading.Lock()

    def _resolve_profiles(self) -> Dict[str, Any]:
        with self._profile_lock:
            if not self._quality_profile_id:
                profiles = self.client.get_quality_profiles()
                if not profiles:
                    raise ExternalSystemError("No quality profiles found in Readarr")
                self._quality_profile_id = profiles[0]["id"]
                logger.info(f"Using Readarr quality profile: {profiles[0].get('name')} (ID: {self._quality_profile_id})")

            if not self._metadata_profile_id:
                profiles = self.client.get_metadata_profiles()
                if not profiles:
                    raise ExternalSystemError("No metadata profiles found in Readarr")
                self._metadata_profile_id = profiles[0]["id"]
                logger.info(f"Using Readarr metadata profile: {profiles[0].get('name')} (ID: {self._metadata_profile_id})")

            if not self._root_folder:
                folders = self.client.get_root_folders()
                if not folders:
                    raise ExternalSystemError("No root folders found in Readarr")
                self._root_folder = folders[0]["path"]
                logger.info(f"Using Readarr root folder: {self._root_folder}")

            return {
                "qualityProfileId": self._quality_profile_id,
                "metadataProfileId": self._metadata_profile_id,
                "rootFolderPath": self._root_folder,
            }

    def find_author(self, name: str) -> Optional[AuthorRef]:
        for author in self.client.get_authors():
            if self.matcher(str(author.get("authorName") or ""), name):
                logger.debug(f"Found existing Readarr author '{author.get('authorName')}' (ID: {author.get('id')})")
                return _as_author_ref(author, name)
        return None

    def _lookup_author(self, name: str) -> Dict[str, Any]:
        # Readarr's author search does better with "Lastname, Firstname".
        terms = [lastname_first(name)]
        if name.strip() not in terms:
            terms.append(name.strip())

        for term in terms:
            results = self.client.lookup_author(term)
            if not results:
                continue
            for result in results:
                if self.matcher(str(result.get("authorName") or ""), name):
                    return result
            logger.debug(f"No exact author match for '{name}' using term '{term}', taking first result")
            return results[0]

        raise ExternalSystemError(f"Author '{name}' not found in Readarr metadata")

    def add_author(self, name: str) -> AuthorRef:
        candidate = self._lookup_author(name)
        payload = {
            "authorName": candidate.get("authorName") or name,
            "foreignAuthorId": candidate.get("foreignAuthorId"),
            "titleSlug": candidate.get("titleSlug"),
            "monitored": True,
            "monitorNewItems": "none",
            "addOptions": {"monitor": "none", "searchForMissingBooks": False},
            **self._resolve_profiles(),
        }
        created = self.client.add_author(payload)
        logger.info(f"Added author '{payload['authorName']}' to Readarr (ID: {created.get('id')})")
        return _as_author_ref(created, name)

    def find_book(self, author: AuthorRef, title: str) -> Optional[BookRef]:
        books = self.client.get_author_books(_as_int_id(author.id, "author"))
        for book in books:
            if self.matcher(str(book.get("title") or ""), title):
                return _as_book_ref(book, title)
        return None

    def _lookup_book(self, author: AuthorRef, title: str) -> Dict[str, Any]:
        results = self.client.lookup_book(f"{title} {author.name}")
        if not results:
            raise ExternalSystemError(f"Book '{title}' not found in Readarr metadata")

        for result in results:
            if self.matcher(str(result.get("title") or ""), title) and self.matcher(
                str(result.get("authorName") or ""), author.name
            ):
                return result

        for result in results:
            if str(result.get("authorId")) == author.id or self.matcher(
                str(result.get("authorName") or ""), author.name
            ):
                return result

        logger.debug(f"No lookup result for '{title}' matched author '{author.name}', taking first result")
        return results[0]

    def add_book(self, author: AuthorRef, title: str) -> BookRef:
        candidate = self._lookup_book(author, title)
        profiles = self._resolve_profiles()
        payload = {
            "authorId": _as_int_id(author.id, "author"),
            "foreignBookId": candidate.get("foreignBookId"),
            "title": candidate.get("title") or title,
            "monitored": True,
            "addOptions": {"searchForNewBook": False},
            **profiles,
        }
        created = self.client.add_book(payload)
        logger.info(f"Added book '{payload['title']}' to Readarr (ID: {created.get('id')})")
        return _as_book_ref(created, title)

    def trigger_search(self, book: BookRef) -> None:
        command = self.client.run_command("BookSearch", bookIds=[_as_int_id(book.id, "book")])
        logger.info(f"Triggered Readarr search for book {book.id} (command {command.get('id')}, {command.get('status')})")

    def get_download_status(self, book: BookRef) -> DownloadStatus:
        data = self.client.get_book(_as_int_id(book.id, "book"))
        if not data:
            raise ExternalSystemError(f"Book with ID {book.id} not found in Readarr")
        stats = data.get("statistics") or {}
        try:
            file_count = int(stats.get("bookFileCount") or 0)
            percent = float(stats.get("percentOfBooks") or 0)
            size_on_disk = int(stats.get("sizeOnDisk") or 0)
        except (TypeError, ValueError) as e:
            raise ExternalSystemError(f"Unexpected statistics for Readarr book {book.id}: {e}") from e
        return DownloadStatus(
            downloaded=file_count > 0,
            percent=percent,
            size_on_disk=size_on_disk,
            title=data.get("title"),
        )

    def _tag_ids(self, labels: List[str], existing: Dict[str, int], create: bool) -> List[int]:
        tag_ids: List[int] = []
        for key in labels:
            if key not in existing:
                if not create:
                    continue
                created = self.client.create_tag(key)
                if created.get("id") is None:
                    raise ExternalSystemError(f"Readarr did not create tag '{key}'")
                existing[key] = created["id"]
            if existing[key] not in tag_ids:
                tag_ids.append(existing[key])
        return tag_ids

    def _resolve_author_id(self, book: BookRef) -> int:
        author_id = book.author_id
        if author_id is None:
            data = self.client.get_book(_as_int_id(book.id, "book"))
            author_id = data.get("authorId")
            if author_id is None:
                raise ExternalSystemError(f"Could not resolve the author of Readarr book {book.id}")
        return _as_int_id(str(author_id), "author")

    def set_tags(self, book: BookRef, tags: List[str], previous: Optional[List[str]] = None) -> None:
        # Readarr stores tag labels lowercased
        wanted = list(dict.fromkeys(label.lower() for label in tags))
        dropped = [label for label in dict.fromkeys(label.lower() for label in previous or []) if label not in wanted]
        if not wanted and not dropped:
            return

        author_id = self._resolve_author_id(book)
        existing = {
            str(tag.get("label") or "").lower(): tag["id"]
            for tag in self.client.get_tags()
            if tag.get("id") is not None
        }

        # Readarr tags live on authors; apply deltas so tags from other requests survive.
        add_ids = self._tag_ids(wanted, existing, create=True)
        if add_ids:
            self.client.edit_authors({"authorIds": [author_id], "tags": add_ids, "applyTags": "add"})
            logger.debug(f"Applied Readarr tags {add_ids} to author {author_id}")

        remove_ids = [tag_id for tag_id in self._tag_ids(dropped, existing, create=False) if tag_id not in add_ids]
        if remove_ids:
            self.client.edit_authors({"authorIds": [author_id], "tags": remove_ids, "applyTags": "remove"})
            logger.debug(f"Removed Readarr tags {remove_ids} from author {author_id}")
