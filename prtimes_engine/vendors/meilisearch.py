"""Client utilities for the Meilisearch REST API."""

import logging
from typing import Any, Dict, List, Optional, Sequence

import requests

logger = logging.getLogger(__name__)
_SESSION = requests.Session()

# Index settings every deployment must carry. The index holds only canonical
# records and ``dedupeKey`` holds canonical_key() for each, so results match
# the snapshot and database paths.
DISTINCT_ATTRIBUTE = "dedupeKey"
SEARCHABLE_ATTRIBUTES = [
    "companyName",
    "pressReleaseTitle",
    "industry",
    "address",
    "representative",
]
FILTERABLE_ATTRIBUTES = [
    "industry",
    "pressReleaseType",
    "listingStatus",
    "capitalFilter",
    "establishedYearFilter",
    "deliveryDateTimestamp",
]
MAX_TOTAL_HITS = 1000000
SORTABLE_ATTRIBUTES = [
    "deliveryDateTimestamp",
    "id",
]


class MeiliSearchError(RuntimeError):
    """Raised when Meilisearch is unreachable or returns a non-successful response."""


class MeiliSearchIndex:
    """Thin wrapper around one Meilisearch index. Requests are never retried."""

    def __init__(self, host: str, index_uid: str, api_key: str = "", timeout: float = 2.0) -> None:
        if not host:
            raise MeiliSearchError("Meilisearch host is not configured")
        self.host = host.rstrip("/")
        self.index_uid = index_uid
        self.api_key = api_key
        self.timeout = timeout

    def _request(self, method: str, path: str, *, json: Any = None, params: Optional[Dict[str, Any]] = None) -> Any:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        url = f"{self.host}/indexes/{self.index_uid}{path}"
        try:
            response = _SESSION.request(method, url, json=json, params=params, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            raise MeiliSearchError(f"{method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            try:
                message = response.json().get("message")
            except ValueError:
                message = response.text[:200]
            logger.error("Meilisearch %s %s failed: status=%s message=%s", method, path, response.status_code, message)
            raise MeiliSearchError(message or f"HTTP {response.status_code}")
        return response.json()

    def search(
        self,
        query: str,
        *,
        filter: Optional[List[Any]] = None,
        limit: int = 20,
        offset: int = 0,
        sort: Optional[Sequence[str]] = None,
        attributes_to_search_on: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"q": query, "limit": limit, "offset": offset}
        if filter:
            body["filter"] = filter
        if sort:
            body["sort"] = list(sort)
        if attributes_to_search_on:
            body["attributesToSearchOn"] = list(attributes_to_search_on)
        return self._request("POST", "/search", json=body)

    def add_documents(self, documents: List[Dict[str, Any]], primary_key: str = "id") -> Dict[str, Any]:
        return self._request("POST", "/documents", json=documents, params={"primaryKey": primary_key})

    def delete_all_documents(self) -> Dict[str, Any]:
        return self._request("DELETE", "/documents")

    def delete_documents(self, document_ids: Sequence[int]) -> Dict[str, Any]:
        return self._request("POST", "/documents/delete-batch", json=list(document_ids))

    def update_searchable_attributes(self, attributes: Sequence[str]) -> Dict[str, Any]:
        return self._request("PUT", "/settings/searchable-attributes", json=list(attributes))

    def update_filterable_attributes(self, attributes: Sequence[str]) -> Dict[str, Any]:
        return self._request("PUT", "/settings/filterable-attributes", json=list(attributes))

    def update_sortable_attributes(self, attributes: Sequence[str]) -> Dict[str, Any]:
        return self._request("PUT", "/settings/sortable-attributes", json=list(attributes))

    def update_distinct_attribute(self, attribute: str) -> Dict[str, Any]:
        return self._request("PUT", "/settings/distinct-attribute", json=attribute)

    def update_pagination(self, max_total_hits: int) -> Dict[str, Any]:
        return self._request("PATCH", "/settings/pagination", json={"maxTotalHits": max_total_hits})

    def get_settings(self) -> Dict[str, Any]:
        return self._request("GET", "/settings")

    def get_stats(self) -> Dict[str, Any]:
        return self._request("GET", "/stats")


def configure_index(index: MeiliSearchIndex) -> None:
    """Apply the attribute settings the search orchestrator relies on."""
    index.update_searchable_attributes(SEARCHABLE_ATTRIBUTES)
    index.update_filterable_attributes(FILTERABLE_ATTRIBUTES)
    index.update_sortable_attributes(SORTABLE_ATTRIBUTES)
    index.update_distinct_attribute(DISTINCT_ATTRIBUTE)
    index.update_pagination(MAX_TOTAL_HITS)
    logger.info("Configured Meilisearch index %s (distinct=%s)", index.index_uid, DISTINCT_ATTRIBUTE)


def check_index_contract(index: MeiliSearchIndex) -> bool:
    """True when the live index deduplicates on the canonical key."""
    settings = index.get_settings()
    distinct = settings.get("distinctAttribute")
    if distinct != DISTINCT_ATTRIBUTE:
        logger.warning(
            "Meilisearch index %s distinctAttribute=%r, expected %r; results will not be canonical",
            index.index_uid,
            distinct,
            DISTINCT_ATTRIBUTE,
        )
        return False
    return True


def quote_filter_value(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'
