"""Deduplicated in-memory snapshot of the company store plus its secondary indices."""

import bisect
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set, Tuple

from prtimes_engine.core import releases
from prtimes_engine.etl.canonical import canonical_key, extract_domain, is_usable_website
from prtimes_engine.models import CompanyRelease, SearchFilter, SearchSnapshot, as_naive_utc

logger = logging.getLogger(__name__)

# Lower bounds of the capital brackets, in units of 10,000 yen.
CAPITAL_BRACKETS: Tuple[int, ...] = (0, 1000, 5000, 10000, 50000, 100000)

_OLDEST = datetime.min


def capital_bracket(amount: Optional[int]) -> Optional[int]:
    """Lower bound of the bracket containing ``amount``; None for missing or non-positive amounts."""
    if not amount or amount <= 0:
        return None
    return CAPITAL_BRACKETS[bisect.bisect_right(CAPITAL_BRACKETS, amount) - 1]


def brackets_between(lower: Optional[int], upper: Optional[int]) -> List[int]:
    """Brackets that can hold a positive amount in ``[lower, upper]``."""
    if upper is not None and upper <= 0:
        return []
    first = capital_bracket(lower) if lower is not None and lower > 0 else CAPITAL_BRACKETS[0]
    last = capital_bracket(upper) if upper is not None else CAPITAL_BRACKETS[-1]
    return [bracket for bracket in CAPITAL_BRACKETS if first <= bracket <= last]


def _recency(record: CompanyRelease) -> Tuple[datetime, int]:
    delivered = as_naive_utc(record.delivery_date) if record.delivery_date else _OLDEST
    return delivered, record.id


def build_snapshot(records: Iterable[CompanyRelease]) -> SearchSnapshot:
    """Keep the latest record per canonical key and index the survivors.

    Latest means the greatest delivery date; equal dates go to the higher id.
    Records without a usable website are skipped. A website that does not
    parse falls back to the name key and is counted in ``malformed_websites``.
    """
    best: Dict[str, CompanyRelease] = {}
    raw_count = 0
    malformed = 0

    for record in records:
        if not is_usable_website(record.company_website):
            continue
        raw_count += 1
        if extract_domain(record.company_website) is None:
            malformed += 1
        key = canonical_key(record)
        current = best.get(key)
        if current is None or _recency(record) > _recency(current):
            best[key] = record

    ordered = tuple(sorted(best.values(), key=_recency, reverse=True))

    by_industry: Dict[str, List[int]] = defaultdict(list)
    by_capital: Dict[int, List[int]] = defaultdict(list)
    by_listing: Dict[str, List[int]] = defaultdict(list)
    by_press_type: Dict[str, List[int]] = defaultdict(list)
    for record in ordered:
        if record.business_category:
            by_industry[record.business_category].append(record.id)
        bracket = capital_bracket(record.capital_amount_numeric)
        if bracket is not None:
            by_capital[bracket].append(record.id)
        if record.listing_status:
            by_listing[record.listing_status].append(record.id)
        if record.press_release_type:
            by_press_type[record.press_release_type].append(record.id)

    snapshot = SearchSnapshot(
        records=ordered,
        by_industry=_freeze(by_industry),
        by_capital_bracket=_freeze(by_capital),
        by_listing_status=_freeze(by_listing),
        by_press_release_type=_freeze(by_press_type),
        raw_count=raw_count,
        malformed_websites=malformed,
        built_at=datetime.now(timezone.utc),
    )
    logger.info(
        "Snapshot built: raw=%d canonical=%d malformed_websites=%d industries=%d capital_brackets=%d "
        "listing_statuses=%d press_types=%d",
        raw_count,
        len(ordered),
        malformed,
        len(snapshot.by_industry),
        len(snapshot.by_capital_bracket),
        len(snapshot.by_listing_status),
        len(snapshot.by_press_release_type),
    )
    return snapshot


def build_snapshot_from_store(statement_timeout_ms: int = 60000) -> SearchSnapshot:
    """Build a snapshot from every usable row in ``prtimes_companies``."""
    return build_snapshot(releases.iter_usable_releases(statement_timeout_ms))


def _freeze(index):
    return {key: tuple(ids) for key, ids in sorted(index.items())}


def _union(index, values: Iterable) -> Set[int]:
    ids: Set[int] = set()
    for value in values:
        ids.update(index.get(value, ()))
    return ids


def filter_snapshot(snapshot: SearchSnapshot, search: SearchFilter) -> List[CompanyRelease]:
    """Apply a filter using the secondary indices, newest first.

    Values within one dimension are unioned and dimensions are intersected.
    Remaining predicates (name substring, exact capital bounds, year and date
    ranges) are checked per surviving record.
    """
    candidates: Optional[Set[int]] = None
    dimensions = (
        (snapshot.by_industry, search.industry),
        (snapshot.by_press_release_type, search.press_release_type),
        (snapshot.by_listing_status, search.listing_status),
    )
    for index, values in dimensions:
        if not values:
            continue
        ids = _union(index, values)
        candidates = ids if candidates is None else candidates & ids
    if search.capital_min is not None or search.capital_max is not None:
        ids = _union(snapshot.by_capital_bracket, brackets_between(search.capital_min, search.capital_max))
        candidates = ids if candidates is None else candidates & ids

    if candidates is not None and not candidates:
        return []
    return [
        record
        for record in snapshot.records
        if (candidates is None or record.id in candidates) and search.matches(record)
    ]
