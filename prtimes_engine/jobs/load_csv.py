"""CLI job to bulk load a PR TIMES CSV export from disk."""

import argparse
import logging
import os

from prtimes_engine.core.bulk_loader import BulkLoader
from prtimes_engine.core.config import ROW_ERROR_POLICIES, get_settings
from prtimes_engine.core.db import init_pool
from prtimes_engine.models import BATCH_FAILED

logger = logging.getLogger(__name__)


def run_load_job(*, path: str, uploaded_by: str, row_error_policy: str) -> int:
    """Load one file synchronously and return a process exit code."""
    if not os.path.isfile(path):
        raise FileNotFoundError(path)

    init_pool()
    loader = BulkLoader(row_error_policy=row_error_policy)
    with open(path, "rb") as stream:
        outcome = loader.load(
            stream,
            filename=os.path.basename(path),
            file_size=os.path.getsize(path),
            uploaded_by=uploaded_by,
        )

    logger.info(
        "Batch %s: status=%s staged=%d success=%d errors=%d",
        outcome.batch_id,
        outcome.status,
        outcome.staged,
        outcome.success,
        outcome.errors,
    )
    return 1 if outcome.status == BATCH_FAILED else 0


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Bulk load a PR TIMES CSV into prtimes_companies")
    parser.add_argument("path", help="CSV file in the PR TIMES export column order")
    parser.add_argument("--uploaded-by", dest="uploaded_by", default=settings.uploaded_by, help="Submitter recorded on the batch")
    parser.add_argument(
        "--row-error-policy",
        dest="row_error_policy",
        choices=ROW_ERROR_POLICIES,
        default=settings.row_error_policy,
        help="How rows without a company name affect the batch counters",
    )
    return parser


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    parser = build_parser()
    args = parser.parse_args()

    raise SystemExit(
        run_load_job(
            path=args.path,
            uploaded_by=args.uploaded_by,
            row_error_policy=args.row_error_policy,
        )
    )


if __name__ == "__main__":
    main()
