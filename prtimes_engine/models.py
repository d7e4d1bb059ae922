"""Core data models shared by the PR TIMES ingestion and search engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

# Column order of the PR TIMES export CSV accepted by the bulk loader.
CSV_COLUMNS: Tuple[str, ...] = (
    "delivery_date",
    "press_release_url",
    "press_release_title",
    "press_release_type",
    "press_release_category1",
    "press_release_category2",
    "company_name",
    "company_website",
    "business_category",
    "address",
    "phone_number",
    "representative",
    "listing_status",
    "capital_amount_text",
    "established_date_text",
    "capital_amount_numeric",
    "established_year",
    "established_month",
)

BATCH_PROCESSING = "processing"
BATCH_COMPLETED = "completed"
BATCH_PARTIAL = "partial"
BATCH_FAILED = "failed"
BATCH_STATUSES = (BATCH_PROCESSING, BATCH_COMPLETED, BATCH_PARTIAL, BATCH_FAILED)


def derive_batch_status(success_count: int, error_count: int) -> str:
    """Terminal status of a batch as a pure function of its counters."""
    if success_count == 0 and error_count > 0:
        return BATCH_FAILED
    if error_count == 0:
        return BATCH_COMPLETED
    return BATCH_PARTIAL


@dataclass(frozen=True, slots=True)
class CompanyRelease:
    """One promoted PR TIMES row as stored in ``prtimes_companies``."""

    id: int
    company_name: str
    delivery_date: Optional[datetime] = None
    press_release_url: str = ""
    press_release_title: str = ""
    press_release_type: str = ""
    press_release_category1: str = ""
    press_release_category2: str = ""
    company_website: Optional[str] = None
    business_category: str = ""
    address: str = ""
    phone_number: str = ""
    representative: str = ""
    listing_status: str = ""
    capital_amount_text: str = ""
    established_date_text: str = ""
    capital_amount_numeric: Optional[int] = None
    established_year: Optional[int] = None
    established_month: Optional[int] = None
    batch_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(slots=True)
class UploadBatch:
    """Lifecycle record for one CSV ingestion run (``prtimes_uploads``)."""

    batch_id: str
    filename: str
    total_records: int
    file_size_kb: int = 0
    uploaded_by: str = "admin"
    status: str = BATCH_PROCESSING
    success_records: int = 0
    error_records: int = 0
    id: Optional[int] = None
    upload_date: Optional[datetime] = None

    def to_api(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "uploadDate": self.upload_date.isoformat() if self.upload_date else None,
            "totalRecords": self.total_records,
            "successRecords": self.success_records,
            "errorRecords": self.error_records,
            "fileSizeKb": self.file_size_kb,
            "uploadedBy": self.uploaded_by,
            "batchId": self.batch_id,
            "status": self.status,
        }


@dataclass(slots=True)
class SearchFilter:
    """Structured search request accepted by the orchestrator."""

    company_name: Optional[str] = None
    industry: List[str] = field(default_factory=list)
    press_release_type: List[str] = field(default_factory=list)
    listing_status: List[str] = field(default_factory=list)
    capital_min: Optional[int] = None
    capital_max: Optional[int] = None
    established_year_min: Optional[int] = None
    established_year_max: Optional[int] = None
    delivery_date_from: Optional[datetime] = None
    delivery_date_to: Optional[datetime] = None
    page: int = 1
    limit: int = 1000000
    export_all: bool = False
    table_only: bool = False
    count_only: bool = False

    @property
    def page_size(self) -> int:
        if self.table_only:
            return 50
        if self.export_all:
            return 1000000
        return self.limit

    @property
    def offset(self) -> int:
        if self.export_all:
            return 0
        return (self.page - 1) * self.page_size

    def matches(self, record: CompanyRelease) -> bool:
        """Evaluate every predicate against a single record."""
        if self.company_name and self.company_name.lower() not in (record.company_name or "").lower():
            return False
        if self.industry and record.business_category not in self.industry:
            return False
        if self.press_release_type and record.press_release_type not in self.press_release_type:
            return False
        if self.listing_status and record.listing_status not in self.listing_status:
            return False
        if not _in_range(record.capital_amount_numeric, self.capital_min, self.capital_max):
            return False
        if not _in_range(record.established_year, self.established_year_min, self.established_year_max):
            return False
        if self.delivery_date_from or self.delivery_date_to:
            if record.delivery_date is None:
                return False
            delivered = as_naive_utc(record.delivery_date)
            if self.delivery_date_from and delivered < as_naive_utc(self.delivery_date_from):
                return False
            if self.delivery_date_to and delivered > as_naive_utc(self.delivery_date_to):
                return False
        return True


def _in_range(value: Optional[int], lower: Optional[int], upper: Optional[int]) -> bool:
    if lower is None and upper is None:
        return True
    if not value or value <= 0:
        return False
    if lower is not None and value < lower:
        return False
    if upper is not None and value > upper:
        return False
    return True


@dataclass(frozen=True)
class SearchSnapshot:
    """Deduplicated, indexed view of the durable store at one point in time.

    Secondary indices map an attribute value to the ids of the canonical
    records carrying it, in snapshot order.
    """

    records: Tuple[CompanyRelease, ...]
    by_industry: Dict[str, Tuple[int, ...]]
    by_capital_bracket: Dict[int, Tuple[int, ...]]
    by_listing_status: Dict[str, Tuple[int, ...]]
    by_press_release_type: Dict[str, Tuple[int, ...]]
    raw_count: int
    malformed_websites: int = 0
    built_at: Optional[datetime] = field(default=None, compare=False)

    def __len__(self) -> int:
        return len(self.records)


@dataclass(slots=True)
class SearchResult:
    """Response envelope shared by every search path."""

    companies: List[Dict[str, Any]]
    total_count: int
    page: int
    page_size: int
    search_method: str
    cache: str
    raw_count: Optional[int] = None
    elapsed_ms: int = 0

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return -(-self.total_count // self.page_size)

    def to_api(self) -> Dict[str, Any]:
        total_pages = self.total_pages
        payload: Dict[str, Any] = {
            "companies": self.companies,
            "pagination": {
                "currentPage": self.page,
                "totalPages": total_pages,
                "totalCount": self.total_count,
                "hasNextPage": self.page < total_pages,
                "hasPrevPage": self.page > 1,
            },
            "_responseTime": self.elapsed_ms,
            "_cache": self.cache,
            "_searchMethod": self.search_method,
        }
        if self.raw_count is not None:
            payload["_rawCount"] = self.raw_count
        return payload


def as_naive_utc(value: datetime) -> datetime:
    """Drop tzinfo after converting to UTC so mixed timestamps compare."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value
