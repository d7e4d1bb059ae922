"""COPY-based bulk loading of PR TIMES CSV exports into ``prtimes_companies``.

A run streams the CSV into a temporary staging table with ``COPY ... FROM
STDIN`` and promotes the rows that carry a company name with a single
``INSERT ... SELECT``. Staging, promotion and the batch's terminal status
share one transaction, so readers never see a half-promoted batch.
"""

import logging
import time
from dataclasses import dataclass
from typing import BinaryIO, Callable, Optional

from prtimes_engine.core import batches
from prtimes_engine.core.config import ROW_ERROR_POLICIES, get_settings
from prtimes_engine.core.db import get_connection
from prtimes_engine.models import BATCH_FAILED, CSV_COLUMNS, UploadBatch, derive_batch_status

logger = logging.getLogger(__name__)

STAGING_TABLE = "prtimes_staging"

# Field parsers that return NULL instead of raising, so one bad cell cannot
# abort the set-based promotion. pg_temp functions live for the session only.
_CREATE_HELPERS = """
CREATE OR REPLACE FUNCTION pg_temp.prtimes_try_int(value text) RETURNS integer AS $$
BEGIN
    IF value IS NULL OR btrim(value) = '' THEN
        RETURN NULL;
    END IF;
    RETURN btrim(value)::numeric::integer;
EXCEPTION WHEN others THEN
    RETURN NULL;
END;
$$ LANGUAGE plpgsql IMMUTABLE;

CREATE OR REPLACE FUNCTION pg_temp.prtimes_try_timestamp(value text) RETURNS timestamp AS $$
BEGIN
    IF value IS NULL OR btrim(value) = '' THEN
        RETURN NULL;
    END IF;
    RETURN btrim(value)::timestamp;
EXCEPTION WHEN others THEN
    RETURN NULL;
END;
$$ LANGUAGE plpgsql STABLE;
"""

_CREATE_STAGING = (
    f"CREATE TEMPORARY TABLE {STAGING_TABLE} ("
    + ", ".join(f"{column} text" for column in CSV_COLUMNS)
    + ") ON COMMIT DROP;"
)

_PROMOTE = f"""
INSERT INTO prtimes_companies (
    delivery_date, press_release_url, press_release_title, press_release_category1,
    press_release_category2, company_name, company_website, business_category,
    listing_status, press_release_type, address, phone_number, representative,
    capital_amount_text, established_date_text, capital_amount_numeric,
    established_year, established_month, batch_id
)
SELECT
    COALESCE(pg_temp.prtimes_try_timestamp(delivery_date), NOW()),
    COALESCE(SUBSTRING(press_release_url, 1, 1000), ''),
    COALESCE(press_release_title, ''),
    COALESCE(SUBSTRING(press_release_category1, 1, 100), ''),
    COALESCE(SUBSTRING(press_release_category2, 1, 100), ''),
    SUBSTRING(btrim(company_name), 1, 255),
    NULLIF(SUBSTRING(btrim(company_website), 1, 1000), ''),
    COALESCE(SUBSTRING(business_category, 1, 100), ''),
    COALESCE(SUBSTRING(listing_status, 1, 200), ''),
    COALESCE(SUBSTRING(press_release_type, 1, 100), ''),
    COALESCE(SUBSTRING(address, 1, 500), ''),
    COALESCE(SUBSTRING(phone_number, 1, 100), ''),
    COALESCE(SUBSTRING(representative, 1, 200), ''),
    COALESCE(SUBSTRING(capital_amount_text, 1, 200), ''),
    COALESCE(SUBSTRING(established_date_text, 1, 100), ''),
    pg_temp.prtimes_try_int(capital_amount_numeric),
    pg_temp.prtimes_try_int(established_year),
    pg_temp.prtimes_try_int(established_month),
    %(batch_id)s
FROM {STAGING_TABLE}
WHERE company_name IS NOT NULL AND btrim(company_name) <> '';
"""


@dataclass(slots=True)
class LoadOutcome:
    batch_id: str
    status: str
    staged: int = 0
    promoted: int = 0
    success: int = 0
    errors: int = 0


def copy_statement(null_marker: str = "") -> str:
    quoted = null_marker.replace("'", "''")
    return (
        f"COPY {STAGING_TABLE} ({', '.join(CSV_COLUMNS)}) FROM STDIN "
        f"WITH (FORMAT csv, HEADER true, DELIMITER ',', NULL '{quoted}')"
    )


def count_data_rows(stream: BinaryIO) -> int:
    """Count non-blank lines minus the header, then rewind the stream."""
    lines = sum(1 for line in stream if line.strip())
    stream.seek(0)
    return max(0, lines - 1)


def resolve_counts(staged: int, promoted: int, policy: str):
    """Map staged/promoted row counts to (success, errors, rolled_back) for a row error policy."""
    excluded = max(0, staged - promoted)
    if policy == "ignore":
        return promoted, 0, False
    if policy == "reject" and excluded:
        return 0, excluded, True
    return promoted, excluded, False


class BulkLoader:
    """Runs COPY-based ingestion runs and records them as upload batches."""

    def __init__(
        self,
        *,
        row_error_policy: Optional[str] = None,
        null_marker: str = "",
        on_promoted: Optional[Callable[[], None]] = None,
    ) -> None:
        policy = row_error_policy or get_settings().row_error_policy
        if policy not in ROW_ERROR_POLICIES:
            raise ValueError(f"row_error_policy must be one of {', '.join(ROW_ERROR_POLICIES)}")
        self.row_error_policy = policy
        self.null_marker = null_marker
        self.on_promoted = on_promoted

    def start(self, stream: BinaryIO, *, filename: str, file_size: int, uploaded_by: str) -> UploadBatch:
        """Create the ``processing`` batch record for an upload about to be loaded."""
        total = count_data_rows(stream)
        return batches.create_batch(
            filename=filename,
            total_records=total,
            file_size_bytes=file_size,
            uploaded_by=uploaded_by,
        )

    def run(self, batch_id: str, stream: BinaryIO) -> LoadOutcome:
        """Stage, promote and finalise one batch. Failures are recorded on the batch, not raised."""
        started = time.monotonic()
        logger.info("Starting bulk COPY for batch %s", batch_id)
        try:
            outcome = self._stage_and_promote(batch_id, stream)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Bulk load failed for batch %s: %s", batch_id, exc)
            self._record_failure(batch_id)
            return LoadOutcome(batch_id=batch_id, status=BATCH_FAILED, errors=1)

        logger.info(
            "Bulk load for batch %s finished in %.1fs: status=%s success=%d errors=%d",
            batch_id,
            time.monotonic() - started,
            outcome.status,
            outcome.success,
            outcome.errors,
        )

        if outcome.success > 0 and self.on_promoted is not None:
            try:
                self.on_promoted()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Post-load refresh trigger failed for batch %s: %s", batch_id, exc)
        return outcome

    def _stage_and_promote(self, batch_id: str, stream: BinaryIO) -> LoadOutcome:
        with get_connection() as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute(_CREATE_HELPERS)
                    cur.execute(_CREATE_STAGING)
                    cur.copy_expert(copy_statement(self.null_marker), stream)
                    cur.execute(f"SELECT count(*) FROM {STAGING_TABLE}")
                    staged = cur.fetchone()[0]
                    logger.info("COPY staged %d rows for batch %s", staged, batch_id)

                    cur.execute(_PROMOTE, {"batch_id": batch_id})
                    promoted = cur.rowcount or 0

                success, errors, rolled_back = resolve_counts(staged, promoted, self.row_error_policy)
                if rolled_back:
                    conn.rollback()
                    promoted = 0
                    logger.warning("Batch %s rejected: %d of %d rows failed validation", batch_id, errors, staged)

                status = derive_batch_status(success, errors)
                batches.update_progress(batch_id, success=success, error=errors, status=status, conn=conn)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        return LoadOutcome(
            batch_id=batch_id,
            status=status,
            staged=staged,
            promoted=promoted,
            success=success,
            errors=errors,
        )

    @staticmethod
    def _record_failure(batch_id: str) -> None:
        try:
            batches.mark_failed(batch_id)
        except Exception as exc:  # noqa: BLE001
            logger.error("Unable to mark batch %s as failed: %s", batch_id, exc)

    def load(self, stream: BinaryIO, *, filename: str, file_size: int, uploaded_by: str) -> LoadOutcome:
        batch = self.start(stream, filename=filename, file_size=file_size, uploaded_by=uploaded_by)
        return self.run(batch.batch_id, stream)
