"""Upload batch tracking for PR TIMES CSV ingestion runs."""

import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from psycopg2 import extras

from prtimes_engine.core.db import get_connection, transaction
from prtimes_engine.models import BATCH_FAILED, BATCH_PROCESSING, BATCH_STATUSES, UploadBatch

logger = logging.getLogger(__name__)


class BatchNotFoundError(RuntimeError):
    """Raised when a batch id is unknown."""


_INSERT_BATCH = """
INSERT INTO prtimes_uploads (
    filename,
    total_records,
    file_size_kb,
    uploaded_by,
    batch_id,
    status,
    success_records,
    error_records,
    progress_count
) VALUES (
    %(filename)s,
    %(total_records)s,
    %(file_size_kb)s,
    %(uploaded_by)s,
    %(batch_id)s,
    'processing',
    0,
    0,
    0
)
RETURNING id, upload_date;
"""

_UPDATE_PROGRESS = """
UPDATE prtimes_uploads
SET success_records = %(success)s,
    error_records = %(error)s,
    progress_count = %(processed)s,
    total_records = GREATEST(total_records, %(processed)s),
    status = %(status)s
WHERE batch_id = %(batch_id)s AND status = 'processing';
"""

_SELECT_PROGRESS = """
SELECT progress_count, total_records, success_records, error_records, status
FROM prtimes_uploads
WHERE batch_id = %s;
"""

_SELECT_BATCHES = """
SELECT id, filename, upload_date, total_records, success_records,
       error_records, file_size_kb, uploaded_by, batch_id, status
FROM prtimes_uploads
ORDER BY upload_date DESC
LIMIT %s;
"""


def new_batch_id() -> str:
    return f"bulk_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def create_batch(
    *,
    filename: str,
    total_records: int,
    file_size_bytes: int = 0,
    uploaded_by: str = "admin",
    batch_id: Optional[str] = None,
) -> UploadBatch:
    """Record a new batch in the ``processing`` state."""
    batch = UploadBatch(
        batch_id=batch_id or new_batch_id(),
        filename=filename,
        total_records=max(0, total_records),
        file_size_kb=round(file_size_bytes / 1024),
        uploaded_by=uploaded_by,
    )
    with transaction() as conn:
        with conn.cursor() as cur:
            cur.execute(
                _INSERT_BATCH,
                {
                    "filename": batch.filename,
                    "total_records": batch.total_records,
                    "file_size_kb": batch.file_size_kb,
                    "uploaded_by": batch.uploaded_by,
                    "batch_id": batch.batch_id,
                },
            )
            row = cur.fetchone()
    if row:
        batch.id, batch.upload_date = row[0], row[1]
    logger.info("Created batch %s for %s (%d rows)", batch.batch_id, filename, batch.total_records)
    return batch


def update_progress(batch_id: str, *, success: int, error: int, status: str, conn=None) -> None:
    """Move a processing batch to new counters and status.

    Terminal batches are left untouched. When ``conn`` is given the update
    joins the caller's transaction instead of committing on its own.
    """
    if status not in BATCH_STATUSES:
        raise ValueError(f"unknown batch status {status!r}")
    params = {
        "batch_id": batch_id,
        "success": success,
        "error": error,
        "processed": success + error,
        "status": status,
    }
    if conn is not None:
        with conn.cursor() as cur:
            cur.execute(_UPDATE_PROGRESS, params)
        return
    with transaction() as own_conn:
        with own_conn.cursor() as cur:
            cur.execute(_UPDATE_PROGRESS, params)


def mark_failed(batch_id: str, error_count: int = 1) -> None:
    update_progress(batch_id, success=0, error=error_count, status=BATCH_FAILED)


def get_progress(batch_id: str) -> Dict[str, Any]:
    """Read-only progress view polled by the admin UI."""
    with get_connection() as conn:
        try:
            with conn.cursor() as cur:
                cur.execute(_SELECT_PROGRESS, (batch_id,))
                row = cur.fetchone()
        finally:
            conn.rollback()
    if row is None:
        raise BatchNotFoundError(batch_id)
    processed, total, success, errors, status = row
    return {
        "processed": processed or 0,
        "total": total or 0,
        "success": success or 0,
        "errors": errors or 0,
        "status": status,
    }


def list_batches(limit: int = 50) -> List[UploadBatch]:
    with get_connection() as conn:
        try:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(_SELECT_BATCHES, (limit,))
                rows = cur.fetchall()
        finally:
            conn.rollback()
    return [
        UploadBatch(
            id=row["id"],
            batch_id=row["batch_id"],
            filename=row["filename"],
            upload_date=row["upload_date"],
            total_records=row["total_records"] or 0,
            success_records=row["success_records"] or 0,
            error_records=row["error_records"] or 0,
            file_size_kb=row["file_size_kb"] or 0,
            uploaded_by=row["uploaded_by"],
            status=row["status"] or BATCH_PROCESSING,
        )
        for row in rows
    ]


def delete_batch(batch_id: str) -> Dict[str, int]:
    """Delete the companies a batch promoted, then the batch itself, atomically."""
    with transaction() as conn:
        with conn.cursor() as cur:
            cur.execute("DELETE FROM prtimes_companies WHERE batch_id = %s", (batch_id,))
            deleted_companies = cur.rowcount or 0
            cur.execute("DELETE FROM prtimes_uploads WHERE batch_id = %s", (batch_id,))
            deleted_uploads = cur.rowcount or 0
    if deleted_uploads == 0 and deleted_companies == 0:
        raise BatchNotFoundError(batch_id)
    logger.info("Deleted batch %s (%d companies)", batch_id, deleted_companies)
    return {"deletedCompanies": deleted_companies, "deletedUploads": deleted_uploads}
