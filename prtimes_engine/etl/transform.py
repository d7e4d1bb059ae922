"""Utilities for moving PR TIMES records between database rows, API payloads and search documents."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

from prtimes_engine.etl.canonical import canonical_key
from prtimes_engine.models import CompanyRelease, SearchFilter, as_naive_utc

logger = logging.getLogger(__name__)

_ROW_FIELDS = CompanyRelease.__dataclass_fields__.keys()

# Document fields used only by the full-text engine; stripped from API output.
_DOCUMENT_ONLY_FIELDS = ("deliveryDateTimestamp", "capitalFilter", "establishedYearFilter", "dedupeKey", "batchId")


def to_company_release(row: Mapping[str, Any]) -> CompanyRelease:
    """Build a record from a ``prtimes_companies`` row, ignoring unknown columns."""
    values = {name: row[name] for name in _ROW_FIELDS if name in row}
    for name in ("press_release_url", "press_release_title", "press_release_type",
                 "press_release_category1", "press_release_category2", "business_category",
                 "address", "phone_number", "representative", "listing_status",
                 "capital_amount_text", "established_date_text"):
        if values.get(name) is None:
            values[name] = ""
    values["company_name"] = values.get("company_name") or ""
    return CompanyRelease(**values)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def to_api_dict(record: CompanyRelease) -> Dict[str, Any]:
    return {
        "id": record.id,
        "deliveryDate": _iso(record.delivery_date),
        "pressReleaseUrl": record.press_release_url,
        "pressReleaseTitle": record.press_release_title,
        "pressReleaseType": record.press_release_type,
        "pressReleaseCategory1": record.press_release_category1,
        "pressReleaseCategory2": record.press_release_category2,
        "companyName": record.company_name,
        "companyWebsite": record.company_website,
        "industry": record.business_category,
        "address": record.address,
        "phoneNumber": record.phone_number,
        "representative": record.representative,
        "listingStatus": record.listing_status,
        "capitalAmountText": record.capital_amount_text,
        "establishedDateText": record.established_date_text,
        "capitalAmountNumeric": record.capital_amount_numeric,
        "establishedYear": record.established_year,
        "establishedMonth": record.established_month,
        "createdAt": _iso(record.created_at),
        "updatedAt": _iso(record.updated_at),
    }


def to_search_document(record: CompanyRelease) -> Dict[str, Any]:
    """Full-text document for one record; ``dedupeKey`` backs the index's distinct attribute."""
    document = to_api_dict(record)
    document["deliveryDateTimestamp"] = timestamp_ms(record.delivery_date)
    # Range filters cannot compare null, so missing values filter as 0.
    document["capitalFilter"] = record.capital_amount_numeric or 0
    document["establishedYearFilter"] = record.established_year or 0
    document["batchId"] = record.batch_id
    document["dedupeKey"] = canonical_key(record)
    return document


def from_search_hit(hit: Mapping[str, Any]) -> Dict[str, Any]:
    """Turn a full-text hit back into the API shape produced by ``to_api_dict``."""
    return {key: value for key, value in hit.items() if key not in _DOCUMENT_ONLY_FIELDS and not key.startswith("_")}


def iter_document_batches(records: Iterable[CompanyRelease], size: int) -> Iterator[List[Dict[str, Any]]]:
    batch: List[Dict[str, Any]] = []
    for record in records:
        batch.append(to_search_document(record))
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def timestamp_ms(value: Optional[datetime]) -> int:
    """Epoch milliseconds, reading naive datetimes as UTC."""
    if value is None:
        return 0
    return int(as_naive_utc(value).replace(tzinfo=timezone.utc).timestamp() * 1000)


def _safe_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            return int(value)
        if isinstance(value, str):
            return int(float(value.strip()))
    except (ValueError, OverflowError):
        return None
    return None


def _positive_int(value: Any) -> Optional[int]:
    number = _safe_int(value)
    if number is None or number <= 0:
        return None
    return number


def _strip_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    value_str = str(value).strip()
    return value_str or None


def _string_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, Iterable):
        return []
    return [item for item in (_strip_or_none(entry) for entry in value) if item]


def _parse_datetime(value: Any) -> Optional[datetime]:
    text = _strip_or_none(value)
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Ignoring unparseable date filter %r", text)
        return None


def parse_search_filter(payload: Any) -> SearchFilter:
    """Build a SearchFilter from a request body; anything malformed is dropped, never raised."""
    if not isinstance(payload, Mapping):
        return SearchFilter()

    page = _positive_int(payload.get("page")) or 1
    limit = _positive_int(payload.get("limit")) or 1000000

    return SearchFilter(
        company_name=_strip_or_none(payload.get("companyName")),
        industry=_string_list(payload.get("industry")),
        press_release_type=_string_list(payload.get("pressReleaseType")),
        listing_status=_string_list(payload.get("listingStatus")),
        capital_min=_positive_int(payload.get("capitalMin")),
        capital_max=_positive_int(payload.get("capitalMax")),
        established_year_min=_positive_int(payload.get("establishedYearMin")),
        established_year_max=_positive_int(payload.get("establishedYearMax")),
        delivery_date_from=_parse_datetime(payload.get("deliveryDateFrom")),
        delivery_date_to=_parse_datetime(payload.get("deliveryDateTo")),
        page=page,
        limit=limit,
        export_all=bool(payload.get("exportAll", False)),
        table_only=bool(payload.get("tableOnly", False)),
        count_only=bool(payload.get("countOnly", False)),
    )
