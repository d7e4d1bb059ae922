"""Read queries against ``prtimes_companies``."""

import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple

from psycopg2 import extras

from prtimes_engine.core.db import get_connection
from prtimes_engine.etl.canonical import CANONICAL_KEY_SQL, USABLE_WEBSITE_SQL
from prtimes_engine.etl.transform import to_company_release
from prtimes_engine.models import CompanyRelease, SearchFilter

logger = logging.getLogger(__name__)

_SELECT_USABLE = f"""
SELECT *
FROM prtimes_companies
WHERE {USABLE_WEBSITE_SQL}
ORDER BY delivery_date DESC, id DESC
"""


def iter_usable_releases(statement_timeout_ms: int, itersize: int = 5000) -> Iterator[CompanyRelease]:
    """Stream every row with a usable website through a server-side cursor.

    The query runs under ``statement_timeout`` so a runaway scan fails fast
    instead of blocking snapshot builds indefinitely.
    """
    with get_connection() as conn:
        try:
            with conn.cursor() as cur:
                cur.execute("SET LOCAL statement_timeout = %s", (int(statement_timeout_ms),))
            with conn.cursor(name="prtimes_snapshot", cursor_factory=extras.RealDictCursor) as cur:
                cur.itersize = itersize
                cur.execute(_SELECT_USABLE)
                for row in cur:
                    yield to_company_release(row)
        finally:
            conn.rollback()


def build_where(search: SearchFilter) -> Tuple[str, List[Any]]:
    """Translate a filter into a parameterised WHERE clause over usable rows.

    Any range excludes missing and non-positive values, the same as the
    snapshot and full-text paths.
    """
    conditions = [USABLE_WEBSITE_SQL]
    params: List[Any] = []

    if search.company_name:
        conditions.append("company_name ILIKE %s")
        params.append(f"%{_escape_like(search.company_name)}%")
    if search.industry:
        conditions.append("business_category = ANY(%s)")
        params.append(list(search.industry))
    if search.press_release_type:
        conditions.append("press_release_type = ANY(%s)")
        params.append(list(search.press_release_type))
    if search.listing_status:
        conditions.append("listing_status = ANY(%s)")
        params.append(list(search.listing_status))
    for column, lower, upper in (
        ("capital_amount_numeric", search.capital_min, search.capital_max),
        ("established_year", search.established_year_min, search.established_year_max),
    ):
        if lower is None and upper is None:
            continue
        conditions.append(f"{column} > 0")
        if lower is not None:
            conditions.append(f"{column} >= %s")
            params.append(lower)
        if upper is not None:
            conditions.append(f"{column} <= %s")
            params.append(upper)
    if search.delivery_date_from is not None:
        conditions.append("delivery_date >= %s")
        params.append(search.delivery_date_from)
    if search.delivery_date_to is not None:
        conditions.append("delivery_date <= %s")
        params.append(search.delivery_date_to)

    return "WHERE " + " AND ".join(conditions), params


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# Latest usable row per canonical key. Filters apply to this set afterwards,
# so a company whose latest release does not match is excluded rather than
# represented by an older release.
DEDUPLICATED_CTE = f"""
WITH deduplicated AS (
    SELECT DISTINCT ON (canonical_key) *
    FROM (
        SELECT *, {CANONICAL_KEY_SQL} AS canonical_key
        FROM prtimes_companies
        WHERE {USABLE_WEBSITE_SQL}
    ) keyed
    ORDER BY canonical_key, delivery_date DESC NULLS LAST, id DESC
)
"""


def search_deduplicated(search: SearchFilter, limit: Optional[int], offset: int) -> List[CompanyRelease]:
    """Latest record per canonical key matching the filter, newest first."""
    where, params = build_where(search)
    query = DEDUPLICATED_CTE + f"SELECT * FROM deduplicated {where} ORDER BY delivery_date DESC NULLS LAST, id DESC"
    if limit is not None:
        query += " LIMIT %s OFFSET %s"
        params = params + [limit, offset]
    with get_connection() as conn:
        try:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(query, params)
                rows = cur.fetchall()
        finally:
            conn.rollback()
    return [to_company_release(row) for row in rows]


def count_deduplicated(search: SearchFilter) -> Tuple[int, int]:
    """Return (canonical count, raw row count) for a filter."""
    where, params = build_where(search)
    query = DEDUPLICATED_CTE + f"""
SELECT
    (SELECT COUNT(*) FROM deduplicated {where}) AS total,
    (SELECT COUNT(*) FROM prtimes_companies {where}) AS raw_total
"""
    with get_connection() as conn:
        try:
            with conn.cursor() as cur:
                cur.execute(query, params + params)
                total, raw_total = cur.fetchone()
        finally:
            conn.rollback()
    return int(total or 0), int(raw_total or 0)


_CATEGORY_QUERIES = {
    "industries": (
        "SELECT DISTINCT business_category AS value FROM prtimes_companies "
        "WHERE business_category IS NOT NULL AND business_category <> '' ORDER BY value"
    ),
    "listingStatuses": (
        "SELECT DISTINCT listing_status AS value, CASE WHEN listing_status = '-' THEN 0 ELSE 1 END AS sort_order "
        "FROM prtimes_companies WHERE listing_status IS NOT NULL ORDER BY sort_order, value"
    ),
    "pressReleaseTypes": (
        "SELECT DISTINCT press_release_type AS value FROM prtimes_companies "
        "WHERE press_release_type IS NOT NULL AND press_release_type <> '' ORDER BY value"
    ),
    "category1": (
        "SELECT DISTINCT press_release_category1 AS value, "
        "CASE WHEN press_release_category1 = '-' THEN 0 ELSE 1 END AS sort_order "
        "FROM prtimes_companies WHERE press_release_category1 IS NOT NULL ORDER BY sort_order, value"
    ),
    "category2": (
        "SELECT DISTINCT press_release_category2 AS value, "
        "CASE WHEN press_release_category2 = '-' THEN 0 ELSE 1 END AS sort_order "
        "FROM prtimes_companies WHERE press_release_category2 IS NOT NULL ORDER BY sort_order, value"
    ),
}


def list_categories() -> Dict[str, List[str]]:
    """Distinct filter values offered by the search screen."""
    categories: Dict[str, List[str]] = {}
    with get_connection() as conn:
        try:
            with conn.cursor() as cur:
                for name, query in _CATEGORY_QUERIES.items():
                    cur.execute(query)
                    categories[name] = [row[0] for row in cur.fetchall()]
        finally:
            conn.rollback()
    return categories
