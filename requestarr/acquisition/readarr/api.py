"""Readarr v1 API client."""

from typing import Any, Dict, List, Optional, Tuple

import requests

from requestarr.core.acquisition import ExternalSystemError
from requestarr.core.logger import setup_logger
from requestarr.core.utils import get_ssl_verify, normalize_http_url

logger = setup_logger(__name__)


class ReadarrClient:
    """Thin wrapper over the Readarr REST endpoints used for acquisition."""

    def __init__(self, url: str, api_key: str, timeout: int = 30):
        self.base_url = normalize_http_url(url)
        self.api_key = api_key
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({
            "X-Api-Key": api_key,
            "Accept": "application/json",
        })

    def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Any] = None,
    ) -> Any:
        """Make an API request to Readarr. Returns parsed JSON (None for empty bodies)."""
        url = self.base_url + endpoint
        logger.debug(f"Readarr API: {method} {url}")

        try:
            response = self._session.request(
                method=method,
                url=url,
                params=params,
                json=json_data,
                timeout=self.timeout,
                verify=get_ssl_verify(url),
            )

            if not response.ok:
                logger.error(f"Readarr API error response: {response.text[:500]}")

            response.raise_for_status()
            if not response.content:
                return None
            return response.json()

        except requests.exceptions.JSONDecodeError as e:
            logger.error(f"Invalid JSON response from Readarr: {e}")
            raise ExternalSystemError(f"Invalid JSON response from Readarr: {e}") from e
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else "unknown"
            detail = _error_detail(e.response)
            logger.error(f"Readarr API HTTP error: {status} on {method} {endpoint}")
            message = f"Readarr returned HTTP {status}"
            if detail:
                message += f": {detail}"
            raise ExternalSystemError(message) from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Readarr API request failed: {e}")
            raise ExternalSystemError(f"Could not reach Readarr: {e}") from e

    def test_connection(self) -> Tuple[bool, str]:
        """Test connection to Readarr. Returns (success, message)."""
        logger.info(f"Testing Readarr connection to: {self.base_url}")
        try:
            data = self._request("GET", "/api/v1/system/status") or {}
        except ExternalSystemError as e:
            return False, str(e)
        version = data.get("version", "unknown")
        logger.info(f"Readarr connection successful: version {version}")
        return True, f"Connected to Readarr {version}"

    def get_quality_profiles(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/v1/qualityprofile") or []

    def get_metadata_profiles(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/v1/metadataprofile") or []

    def get_root_folders(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/v1/rootfolder") or []

    def get_authors(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/v1/author") or []

    def lookup_author(self, term: str) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/v1/author/lookup", params={"term": term}) or []

    def add_author(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/api/v1/author", json_data=payload) or {}

    def edit_authors(self, payload: Dict[str, Any]) -> Any:
        return self._request("PUT", "/api/v1/author/editor", json_data=payload)

    def get_author_books(self, author_id: int) -> List[Dict[str, Any]]:
        return self._request(
            "GET",
            "/api/v1/book",
            params={"authorId": author_id, "includeAllAuthorBooks": "true"},
        ) or []

    def get_book(self, book_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/api/v1/book/{book_id}") or {}

    def lookup_book(self, term: str) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/v1/book/lookup", params={"term": term}) or []

    def add_book(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/api/v1/book", json_data=payload) or {}

    def run_command(self, name: str, **body: Any) -> Dict[str, Any]:
        return self._request("POST", "/api/v1/command", json_data={"name": name, **body}) or {}

    def get_tags(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/v1/tag") or []

    def create_tag(self, label: str) -> Dict[str, Any]:
        return self._request("POST", "/api/v1/tag", json_data={"label": label}) or {}


def _error_detail(response: Optional[requests.Response]) -> str:
    """Pull a readable message out of a Readarr error body (validation list or message object)."""
    if response is None:
        return ""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200].strip()

    if isinstance(body, list):
        messages = [str(item.get("errorMessage")) for item in body if isinstance(item, dict) and item.get("errorMessage")]
        return "; ".join(messages)
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or "")
    return ""
