"""HTTP entrypoint for PR TIMES uploads, batch tracking and company search."""

from __future__ import annotations

import csv
import io
import logging
import os
import tempfile
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, Optional

from flask import Flask, Response, jsonify, request

from prtimes_engine.core import batches, releases
from prtimes_engine.core.bulk_loader import BulkLoader
from prtimes_engine.core.cache import CacheLifecycleManager
from prtimes_engine.core.config import Settings, get_settings
from prtimes_engine.core.search import SearchOrchestrator, SearchUnavailableError
from prtimes_engine.core.snapshot import build_snapshot_from_store
from prtimes_engine.etl.transform import parse_search_filter
from prtimes_engine.vendors.meilisearch import MeiliSearchIndex, check_index_contract

# ---------- Logging ----------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _fulltext_index(settings: Settings) -> Optional[MeiliSearchIndex]:
    if not settings.meilisearch_host:
        return None
    return MeiliSearchIndex(
        settings.meilisearch_host,
        settings.meilisearch_index,
        api_key=settings.meilisearch_api_key,
        timeout=settings.meilisearch_timeout,
    )


# ---------- App, executor & services ----------
app = Flask(__name__)
_executor = ThreadPoolExecutor(max_workers=4)

_settings = get_settings()
_cache = CacheLifecycleManager(
    lambda: _orchestrator.rebuild_snapshot(_build_from_store),
    debounce_seconds=_settings.cache_refresh_debounce,
    wait_timeout=_settings.snapshot_wait_timeout,
)
_orchestrator = SearchOrchestrator(
    _cache,
    fulltext_index=_fulltext_index(_settings),
    preferred_path=_settings.search_preferred_path,
)
_loader = BulkLoader(row_error_policy=_settings.row_error_policy, on_promoted=lambda: _store_changed())

# ---------- Routes ----------


@app.get("/")
def root() -> Any:
    """Simple root to avoid 404 on GET /"""
    return "ok", 200


@app.get("/healthz")
def healthcheck() -> Any:
    """Lightweight health endpoint; does not touch the database."""
    snapshot = _cache.snapshot
    return (
        jsonify(
            {
                "status": "ok",
                "snapshot": _cache.state.value,
                "snapshotSize": len(snapshot) if snapshot is not None else 0,
                "fulltext": _orchestrator.fulltext_index is not None,
                "fulltextFresh": _orchestrator.index_state.is_fresh,
                "revision": os.getenv("K_REVISION", "unknown"),
            }
        ),
        200,
    )


@app.post("/prtimes/bulk-upload")
def bulk_upload() -> Any:
    """Accept a PR TIMES CSV (multipart field ``file``) and load it in the background."""
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        return jsonify({"error": "No file uploaded"}), 400

    settings = get_settings()
    max_bytes = settings.max_upload_mb * 1024 * 1024

    handle = tempfile.NamedTemporaryFile(prefix="prtimes_upload_", suffix=".csv", delete=False)
    tmp_path = handle.name
    try:
        upload.save(handle)
        handle.close()
        file_size = os.path.getsize(tmp_path)
        if file_size > max_bytes:
            _remove_quietly(tmp_path)
            return jsonify({"error": f"File too large. Maximum size is {settings.max_upload_mb}MB"}), 400

        with open(tmp_path, "rb") as stream:
            batch = _loader.start(
                stream,
                filename=upload.filename,
                file_size=file_size,
                uploaded_by=request.form.get("uploadedBy") or settings.uploaded_by,
            )
    except Exception as exc:  # noqa: BLE001
        handle.close()
        _remove_quietly(tmp_path)
        logger.exception("Bulk upload failed before loading: %s", exc)
        return jsonify({"error": "Failed to process bulk upload"}), 500

    logger.info("Queueing bulk load for batch %s (%s)", batch.batch_id, upload.filename)
    _executor.submit(_run_load_safe, batch.batch_id, tmp_path)

    return (
        jsonify(
            {
                "message": "Bulk CSV upload started (using COPY command)",
                "batchId": batch.batch_id,
                "totalRecords": batch.total_records,
                "method": "COPY",
            }
        ),
        202,
    )


@app.get("/prtimes/progress/<batch_id>")
def batch_progress(batch_id: str) -> Any:
    try:
        progress = batches.get_progress(batch_id)
    except batches.BatchNotFoundError:
        return jsonify({"error": "Upload not found"}), 404
    except Exception as exc:  # noqa: BLE001
        logger.exception("Progress fetch failed for %s: %s", batch_id, exc)
        return jsonify({"error": "Failed to fetch progress"}), 500
    return jsonify(progress), 200


@app.get("/prtimes/uploads")
def upload_history() -> Any:
    limit = request.args.get("limit", default=50, type=int)
    if limit is None or limit <= 0:
        return jsonify({"error": "limit must be positive"}), 400
    try:
        uploads = batches.list_batches(limit)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Upload history fetch failed: %s", exc)
        return jsonify({"error": "Failed to fetch upload history"}), 500
    return jsonify({"uploads": [upload.to_api() for upload in uploads]}), 200


@app.delete("/prtimes/uploads")
@app.delete("/prtimes/uploads/<batch_id>")
def delete_upload(batch_id: Optional[str] = None) -> Any:
    batch_id = batch_id or request.args.get("batchId")
    if not batch_id:
        return jsonify({"error": "Batch ID is required"}), 400
    try:
        deleted = batches.delete_batch(batch_id)
    except batches.BatchNotFoundError:
        return jsonify({"error": "Upload not found"}), 404
    except Exception as exc:  # noqa: BLE001
        logger.exception("Upload batch delete failed for %s: %s", batch_id, exc)
        return jsonify({"error": "Failed to delete upload batch"}), 500

    _store_changed()
    return jsonify({"message": "Upload batch deleted successfully", **deleted}), 200


@app.post("/prtimes/search")
def search_companies() -> Any:
    search = parse_search_filter(request.get_json(silent=True, force=True))
    try:
        result = _orchestrator.search(search)
    except SearchUnavailableError as exc:
        logger.error("All search paths failed: %s", exc)
        return jsonify(_error_envelope("Failed to search PR TIMES companies", search.page)), 500
    return jsonify(result.to_api()), 200


@app.post("/prtimes/export")
def export_companies() -> Any:
    """CSV of company name and website for every canonical company matching the filter."""
    search = parse_search_filter(request.get_json(silent=True, force=True))
    search.export_all = True
    search.count_only = False
    try:
        result = _orchestrator.search(search)
    except SearchUnavailableError as exc:
        logger.error("Export failed, all search paths failed: %s", exc)
        return jsonify({"error": "Failed to export PR TIMES companies"}), 500

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["会社名", "ホームページURL"])
    for company in result.companies:
        writer.writerow([company.get("companyName") or "", company.get("companyWebsite") or ""])

    filename = f"prtimes_export_{datetime.now().strftime('%Y%m%d_%H%M%S')}.csv"
    return Response(
        "\ufeff" + buffer.getvalue(),
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@app.get("/prtimes/categories")
def categories() -> Any:
    try:
        values = releases.list_categories()
    except Exception as exc:  # noqa: BLE001
        logger.exception("Category fetch failed: %s", exc)
        return jsonify({"error": "Failed to fetch categories"}), 500
    return jsonify(values), 200


# ---------- Internals ----------


def _build_from_store():
    return build_snapshot_from_store(_settings.snapshot_statement_timeout_ms)


def _store_changed() -> None:
    """Run once a load or delete has committed: mark the full-text index stale and schedule a rebuild."""
    _orchestrator.mark_fulltext_stale()
    _cache.refresh_in_background()


def _error_envelope(message: str, page: int) -> Dict[str, Any]:
    return {
        "error": message,
        "companies": [],
        "pagination": {
            "currentPage": page,
            "totalPages": 0,
            "totalCount": 0,
            "hasNextPage": False,
            "hasPrevPage": False,
        },
    }


def _run_load_safe(batch_id: str, path: str) -> None:
    try:
        with open(path, "rb") as stream:
            _loader.run(batch_id, stream)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Bulk load job failed for %s: %s", batch_id, exc)
    finally:
        _remove_quietly(path)


def _remove_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except OSError as exc:
        logger.warning("Failed to delete temp file %s: %s", path, exc)


def _warm_up() -> None:
    """Build the first snapshot and verify the full-text index settings ahead of traffic."""
    try:
        _cache.ensure_ready()
    except Exception as exc:  # noqa: BLE001
        logger.warning("Initial snapshot build failed; the first search will retry: %s", exc)
    if _orchestrator.fulltext_index is not None:
        try:
            check_index_contract(_orchestrator.fulltext_index)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Unable to read Meilisearch settings: %s", exc)


def main() -> None:
    port = get_settings().server_port
    _executor.submit(_warm_up)
    logger.info("[BOOT] Binding on 0.0.0.0:%d", port)
    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
