"""Three-tier company search: Meilisearch, then the in-memory snapshot, then PostgreSQL.

Each tier returns the same ``SearchResult`` envelope. A tier that raises is
logged and skipped; only when every tier fails does the caller see an error.

The full-text tier is skipped for company-name queries, since the engine
matches words and prefixes rather than substrings, and while the index lags
behind a load or delete that the next snapshot rebuild has not pushed yet.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from prtimes_engine.core import releases
from prtimes_engine.core.cache import CacheLifecycleManager
from prtimes_engine.core.snapshot import filter_snapshot
from prtimes_engine.etl.transform import from_search_hit, iter_document_batches, timestamp_ms, to_api_dict
from prtimes_engine.models import CompanyRelease, SearchFilter, SearchResult, SearchSnapshot
from prtimes_engine.vendors.meilisearch import MeiliSearchIndex, quote_filter_value

logger = logging.getLogger(__name__)

METHOD_FULLTEXT = "meilisearch"
METHOD_SNAPSHOT = "snapshot"
METHOD_DATABASE = "database"

CACHE_HIT = "hit"
CACHE_MISS = "miss"
CACHE_FALLBACK = "fallback"

FULLTEXT_SORT = ("deliveryDateTimestamp:desc", "id:desc")
INDEX_PUSH_BATCH_SIZE = 1000


class SearchUnavailableError(RuntimeError):
    """Raised when every search tier failed for a request."""


def build_fulltext_filter(search: SearchFilter) -> List[Any]:
    """Meilisearch array filter: the outer list is ANDed, inner lists are ORed."""
    clauses: List[Any] = []
    for attribute, values in (
        ("industry", search.industry),
        ("pressReleaseType", search.press_release_type),
        ("listingStatus", search.listing_status),
    ):
        if values:
            clauses.append([f"{attribute} = {quote_filter_value(value)}" for value in values])
    for attribute, lower, upper in (
        ("capitalFilter", search.capital_min, search.capital_max),
        ("establishedYearFilter", search.established_year_min, search.established_year_max),
    ):
        if lower is None and upper is None:
            continue
        clauses.append(f"{attribute} > 0")
        if lower is not None:
            clauses.append(f"{attribute} >= {lower}")
        if upper is not None:
            clauses.append(f"{attribute} <= {upper}")
    if search.delivery_date_from is not None:
        clauses.append(f"deliveryDateTimestamp >= {timestamp_ms(search.delivery_date_from)}")
    if search.delivery_date_to is not None:
        if search.delivery_date_from is None:
            # Records without a delivery date are indexed at 0.
            clauses.append("deliveryDateTimestamp != 0")
        clauses.append(f"deliveryDateTimestamp <= {timestamp_ms(search.delivery_date_to)}")
    return clauses


def push_snapshot_changes(
    index: MeiliSearchIndex,
    indexed: Optional[SearchSnapshot],
    current: SearchSnapshot,
    *,
    batch_size: int = INDEX_PUSH_BATCH_SIZE,
) -> Tuple[int, int]:
    """Make the index hold exactly the canonical records of ``current``.

    ``indexed`` is the snapshot the index was last brought in line with. When
    it is unknown the index is cleared and refilled. Returns the number of
    documents (added or replaced, removed).
    """
    if indexed is None:
        index.delete_all_documents()
        changed: List[CompanyRelease] = list(current.records)
        removed: List[int] = []
    else:
        previous: Dict[int, CompanyRelease] = {record.id: record for record in indexed.records}
        current_ids = {record.id for record in current.records}
        removed = [record_id for record_id in previous if record_id not in current_ids]
        changed = [record for record in current.records if previous.get(record.id) != record]
        if removed:
            index.delete_documents(removed)

    for batch in iter_document_batches(changed, batch_size):
        index.add_documents(batch)
    return len(changed), len(removed)


class FulltextIndexState:
    """Generation counter telling whether the index reflects the durable store.

    Writers call ``mark_stale`` once their change is committed. A push can only
    clear the generations that existed before its snapshot build started.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._generation = 0
        self._synced_generation = 0

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    @property
    def is_fresh(self) -> bool:
        with self._lock:
            return self._synced_generation == self._generation

    def mark_stale(self) -> None:
        with self._lock:
            self._generation += 1

    def mark_synced(self, generation: int) -> None:
        with self._lock:
            self._synced_generation = max(self._synced_generation, generation)


class SearchOrchestrator:
    def __init__(
        self,
        cache: CacheLifecycleManager,
        *,
        fulltext_index: Optional[MeiliSearchIndex] = None,
        preferred_path: str = "fulltext",
    ) -> None:
        self.cache = cache
        self.fulltext_index = fulltext_index
        self.preferred_path = preferred_path
        self.index_state = FulltextIndexState()
        self._indexed_snapshot: Optional[SearchSnapshot] = None

    def mark_fulltext_stale(self) -> None:
        self.index_state.mark_stale()

    def rebuild_snapshot(self, build: Callable[[], SearchSnapshot]) -> SearchSnapshot:
        """Run ``build`` and push the resulting canonical set to the full-text index.

        Used as the cache's builder, so calls never overlap. The first build
        adopts the index as it is unless a write already marked it stale;
        later builds push only the records that changed.
        """
        generation = self.index_state.generation
        snapshot = build()
        if self.fulltext_index is None:
            return snapshot
        if self._indexed_snapshot is None and self.index_state.is_fresh:
            self._indexed_snapshot = snapshot
            return snapshot

        try:
            changed, removed = push_snapshot_changes(self.fulltext_index, self._indexed_snapshot, snapshot)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Full-text index update failed; full-text search stays off until the next rebuild: %s", exc)
            self._indexed_snapshot = None
            self.index_state.mark_stale()
            return snapshot

        self._indexed_snapshot = snapshot
        self.index_state.mark_synced(generation)
        logger.info("Full-text index updated: %d documents pushed, %d removed", changed, removed)
        return snapshot

    def _fulltext_eligible(self, search: SearchFilter) -> bool:
        if self.preferred_path != "fulltext" or self.fulltext_index is None:
            return False
        if search.company_name:
            return False
        if not self.index_state.is_fresh:
            logger.debug("Skipping full-text search: index is behind the store")
            return False
        return True

    def _paths(self, search: SearchFilter) -> List[Tuple[str, Callable[[SearchFilter], SearchResult]]]:
        paths: List[Tuple[str, Callable[[SearchFilter], SearchResult]]] = []
        if self._fulltext_eligible(search):
            paths.append((METHOD_FULLTEXT, self._search_fulltext))
        paths.append((METHOD_SNAPSHOT, self._search_snapshot))
        paths.append((METHOD_DATABASE, self._search_database))
        return paths

    def search(self, search: SearchFilter) -> SearchResult:
        started = time.monotonic()
        failures = []
        for method, path in self._paths(search):
            try:
                result = path(search)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Search via %s failed, falling back: %s", method, exc)
                failures.append(f"{method}: {exc}")
                continue
            result.elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.info(
                "Search served by %s: total=%d returned=%d in %dms",
                method,
                result.total_count,
                len(result.companies),
                result.elapsed_ms,
            )
            return result
        raise SearchUnavailableError("; ".join(failures) or "no search path available")

    def _search_fulltext(self, search: SearchFilter) -> SearchResult:
        response = self.fulltext_index.search(
            "",
            filter=build_fulltext_filter(search),
            limit=0 if search.count_only else search.page_size,
            offset=0 if search.count_only else search.offset,
            sort=FULLTEXT_SORT,
        )
        hits = response.get("hits", [])
        total = response.get("estimatedTotalHits", len(hits))
        return SearchResult(
            companies=[] if search.count_only else [from_search_hit(hit) for hit in hits],
            total_count=int(total),
            page=search.page,
            page_size=search.page_size,
            search_method=METHOD_FULLTEXT,
            cache=CACHE_MISS,
        )

    def _search_snapshot(self, search: SearchFilter) -> SearchResult:
        snapshot, built_now = self.cache.acquire()
        matches = filter_snapshot(snapshot, search)
        companies = []
        if not search.count_only:
            window = matches[search.offset:search.offset + search.page_size]
            companies = [to_api_dict(record) for record in window]
        return SearchResult(
            companies=companies,
            total_count=len(matches),
            page=search.page,
            page_size=search.page_size,
            search_method=METHOD_SNAPSHOT,
            cache=CACHE_MISS if built_now else CACHE_HIT,
            raw_count=snapshot.raw_count if _is_unfiltered(search) else None,
        )

    def _search_database(self, search: SearchFilter) -> SearchResult:
        total, raw_total = releases.count_deduplicated(search)
        companies = []
        if not search.count_only and total:
            records = releases.search_deduplicated(search, limit=search.page_size, offset=search.offset)
            companies = [to_api_dict(record) for record in records]
        return SearchResult(
            companies=companies,
            total_count=total,
            page=search.page,
            page_size=search.page_size,
            search_method=METHOD_DATABASE,
            cache=CACHE_FALLBACK,
            raw_count=raw_total,
        )


def _is_unfiltered(search: SearchFilter) -> bool:
    return not any(
        (
            search.company_name,
            search.industry,
            search.press_release_type,
            search.listing_status,
            search.capital_min,
            search.capital_max,
            search.established_year_min,
            search.established_year_max,
            search.delivery_date_from,
            search.delivery_date_to,
        )
    )
