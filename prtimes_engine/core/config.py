"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ROW_ERROR_POLICIES = ("count", "ignore", "reject")
SEARCH_PATHS = ("fulltext", "snapshot")


class ConfigError(RuntimeError):
    """Raised when mandatory configuration is missing or invalid."""


@dataclass(frozen=True)
class Settings:
    database_url: str
    server_port: int = 8080
    meilisearch_host: str = ""
    meilisearch_api_key: str = ""
    meilisearch_index: str = "prtimes_companies"
    meilisearch_timeout: float = 2.0
    search_preferred_path: str = "fulltext"
    snapshot_statement_timeout_ms: int = 60000
    snapshot_wait_timeout: float = 90.0
    cache_refresh_debounce: float = 2.0
    row_error_policy: str = "count"
    max_upload_mb: int = 100
    uploaded_by: str = "admin"


def _choice(name: str, default: str, allowed) -> str:
    value = (os.getenv(name) or default).strip().lower()
    if value not in allowed:
        raise ConfigError(f"{name} must be one of {', '.join(allowed)} (got {value!r})")
    return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    database_url = os.getenv("DATABASE_URL", "")
    server_port = int(os.getenv("PORT") or os.getenv("SERVER_PORT", "8080"))
    meilisearch_host = os.getenv("MEILISEARCH_HOST", "").rstrip("/")
    meilisearch_api_key = os.getenv("MEILISEARCH_API_KEY", "")
    meilisearch_index = os.getenv("MEILISEARCH_INDEX") or "prtimes_companies"
    meilisearch_timeout = float(os.getenv("MEILISEARCH_TIMEOUT", "2.0"))
    search_preferred_path = _choice("SEARCH_PREFERRED_PATH", "fulltext", SEARCH_PATHS)
    snapshot_statement_timeout_ms = int(os.getenv("SNAPSHOT_STATEMENT_TIMEOUT_MS", "60000"))
    snapshot_wait_timeout = float(os.getenv("SNAPSHOT_WAIT_TIMEOUT", "90"))
    cache_refresh_debounce = float(os.getenv("CACHE_REFRESH_DEBOUNCE", "2.0"))
    row_error_policy = _choice("ROW_ERROR_POLICY", "count", ROW_ERROR_POLICIES)
    max_upload_mb = int(os.getenv("MAX_UPLOAD_MB", "100"))
    uploaded_by = os.getenv("UPLOADED_BY") or "admin"

    if not database_url:
        logger.warning("DATABASE_URL is not set; database operations will fail.")
    if not meilisearch_host:
        logger.warning("MEILISEARCH_HOST is not configured; full-text search is disabled.")

    return Settings(
        database_url=database_url,
        server_port=server_port,
        meilisearch_host=meilisearch_host,
        meilisearch_api_key=meilisearch_api_key,
        meilisearch_index=meilisearch_index,
        meilisearch_timeout=meilisearch_timeout,
        search_preferred_path=search_preferred_path,
        snapshot_statement_timeout_ms=snapshot_statement_timeout_ms,
        snapshot_wait_timeout=snapshot_wait_timeout,
        cache_refresh_debounce=cache_refresh_debounce,
        row_error_policy=row_error_policy,
        max_upload_mb=max_upload_mb,
        uploaded_by=uploaded_by,
    )
