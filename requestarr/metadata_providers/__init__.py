"""Book metadata providers used to search catalogs and fill request display fields."""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from requestarr.core.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class BookMetadata:
    """Descriptive book record returned by a metadata provider."""
    provider: str
    provider_id: str
    title: str
    book_id: str
    authors: List[str] = field(default_factory=list)
    isbn_10: Optional[str] = None
    isbn_13: Optional[str] = None
    cover_url: Optional[str] = None
    description: Optional[str] = None
    publisher: Optional[str] = None
    publish_year: Optional[int] = None
    language: Optional[str] = None
    genres: List[str] = field(default_factory=list)
    source_url: Optional[str] = None

    @property
    def author(self) -> str:
        return ", ".join(a for a in self.authors if a)

    @property
    def isbn(self) -> Optional[str]:
        return self.isbn_13 or self.isbn_10

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["author"] = self.author
        data["isbn"] = self.isbn
        data["source"] = self.provider
        return data


class MetadataProvider(ABC):
    """Catalog search client. Failures are logged and surface as empty results."""

    name: str = ""
    display_name: str = ""
    requires_auth: bool = False
    # Prefix that marks this provider's ids in a request's book_id
    id_prefix: str = ""

    @abstractmethod
    def search(self, query: str, limit: int = 20) -> List[BookMetadata]:
        pass

    @abstractmethod
    def get_book(self, book_id: str) -> Optional[BookMetadata]:
        pass

    def is_available(self) -> bool:
        return True

    def owns_book_id(self, book_id: str) -> bool:
        return bool(self.id_prefix) and book_id.startswith(self.id_prefix)


_PROVIDERS: Dict[str, Type[MetadataProvider]] = {}
_PROVIDER_KWARGS: Dict[str, Callable[[], Dict[str, Any]]] = {}


def register_provider(name: str) -> Callable[[Type[MetadataProvider]], Type[MetadataProvider]]:
    """Class decorator adding a provider to the registry under ``name``."""
    def decorator(cls: Type[MetadataProvider]) -> Type[MetadataProvider]:
        _PROVIDERS[name] = cls
        return cls
    return decorator


def register_provider_kwargs(name: str) -> Callable[[Callable[[], Dict[str, Any]]], Callable[[], Dict[str, Any]]]:
    """Register a factory for a provider's constructor kwargs (read at instantiation time)."""
    def decorator(func: Callable[[], Dict[str, Any]]) -> Callable[[], Dict[str, Any]]:
        _PROVIDER_KWARGS[name] = func
        return func
    return decorator


def list_providers() -> List[Dict[str, Any]]:
    return [
        {"name": name, "display_name": cls.display_name, "requires_auth": cls.requires_auth}
        for name, cls in _PROVIDERS.items()
    ]


def get_provider(name: str) -> MetadataProvider:
    """Instantiate a registered provider. Raises ValueError for unknown names."""
    cls = _PROVIDERS.get(name)
    if cls is None:
        raise ValueError(f"Unknown metadata provider: {name}")
    kwargs_factory = _PROVIDER_KWARGS.get(name)
    kwargs = kwargs_factory() if kwargs_factory else {}
    return cls(**kwargs)


def resolve_provider_for_book_id(book_id: str) -> Optional[Tuple[str, MetadataProvider]]:
    """Find the provider that issued ``book_id`` from its prefix."""
    if not isinstance(book_id, str) or not book_id.strip():
        return None
    for name in _PROVIDERS:
        provider = get_provider(name)
        if provider.owns_book_id(book_id.strip()):
            return name, provider
    return None


# Registers the built-in providers.
from requestarr.metadata_providers import googlebooks, openlibrary  # noqa: E402,F401
