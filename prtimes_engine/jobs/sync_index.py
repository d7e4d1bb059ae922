"""CLI job that rebuilds the Meilisearch index from the canonical company set.

Only the latest release per canonical key is indexed, so filters evaluated by
the engine see the same records as the snapshot and database search paths.
"""

import argparse
import logging
from typing import Iterable

from prtimes_engine.core.config import ConfigError, get_settings
from prtimes_engine.core.db import init_pool
from prtimes_engine.core.snapshot import build_snapshot_from_store
from prtimes_engine.etl.transform import iter_document_batches
from prtimes_engine.models import CompanyRelease
from prtimes_engine.vendors.meilisearch import MeiliSearchIndex, configure_index

logger = logging.getLogger(__name__)


def sync_index(index: MeiliSearchIndex, records: Iterable[CompanyRelease], *, batch_size: int, configure: bool) -> int:
    """Replace the index contents with ``records``; returns the number of documents sent."""
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")

    if configure:
        configure_index(index)
    index.delete_all_documents()

    sent = 0
    for number, batch in enumerate(iter_document_batches(records, batch_size), start=1):
        task = index.add_documents(batch)
        sent += len(batch)
        logger.info("Uploaded batch %d (%d documents, task=%s)", number, len(batch), task.get("taskUid"))
    return sent


def run_sync_job(*, batch_size: int, configure: bool) -> None:
    settings = get_settings()
    if not settings.meilisearch_host:
        raise ConfigError("MEILISEARCH_HOST is required to sync the full-text index")

    init_pool()
    # Offline job: allow the full scan far more time than a request-path build.
    snapshot = build_snapshot_from_store(settings.snapshot_statement_timeout_ms * 10)
    index = MeiliSearchIndex(
        settings.meilisearch_host,
        settings.meilisearch_index,
        api_key=settings.meilisearch_api_key,
        timeout=max(settings.meilisearch_timeout, 30.0),
    )
    sent = sync_index(index, snapshot.records, batch_size=batch_size, configure=configure)
    stats = index.get_stats()
    logger.info(
        "Sent %d canonical documents (%d raw rows); index reports %s documents",
        sent,
        snapshot.raw_count,
        stats.get("numberOfDocuments"),
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Rebuild the Meilisearch index from prtimes_companies")
    parser.add_argument("--batch-size", dest="batch_size", type=int, default=1000, help="Documents per request")
    parser.add_argument(
        "--skip-settings",
        dest="configure",
        action="store_false",
        help="Do not re-apply searchable/filterable/sortable/distinct settings",
    )
    return parser


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    parser = build_parser()
    args = parser.parse_args()

    try:
        run_sync_job(batch_size=args.batch_size, configure=args.configure)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        raise SystemExit(2) from exc


if __name__ == "__main__":
    main()
