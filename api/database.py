"""
Aggregation service wiring for the API.

Provides a get_service() dependency returning a process-wide
AggregationService backed by the SQLite database at APP_DB_PATH
(default: budget.sqlite).  The service owns the result cache, so it is
built once and shared by every request.

Raises a friendly 503 when the database file is missing.
"""

import logging
import threading
from pathlib import Path

from fastapi import HTTPException

from analytics.exchange_rates import ExchangeRateTable
from analytics.service import AggregationService
from utils.cache import ResultCache
from utils.config import AppConfig
from utils.database import SQLiteClassificationLookup, SQLiteStorage
from utils.query import Dialect

logger = logging.getLogger(__name__)

_DB_PATH: Path = AppConfig.from_env().db_path
_service: AggregationService | None = None
_service_lock = threading.Lock()


def get_db_path() -> Path:
    """Return the configured database path."""
    return _DB_PATH


def build_service(cfg: AppConfig, db_path: Path | None = None) -> AggregationService:
    """Construct an AggregationService from configuration.

    Args:
        cfg: Application configuration.
        db_path: Override ``cfg.db_path``.
    """
    path = db_path or cfg.db_path
    rates = (
        ExchangeRateTable.from_json(cfg.eur_rates_path)
        if cfg.eur_rates_path is not None else ExchangeRateTable()
    )
    cache = ResultCache(
        max_items=cfg.cache_max_items,
        max_bytes=cfg.cache_max_bytes,
        ttl_seconds=cfg.cache_ttl_seconds,
    )
    logger.info("aggregation service using %s (cache items=%d bytes=%d ttl=%.0fs)",
                path, cfg.cache_max_items, cfg.cache_max_bytes, cfg.cache_ttl_seconds)
    return AggregationService(
        storage=SQLiteStorage(path),
        rates=rates,
        lookup=SQLiteClassificationLookup(path),
        cache=cache,
        dialect=Dialect.SQLITE,
        query_timeout=cfg.query_timeout_seconds,
        max_workers=cfg.max_workers,
    )


def set_service(service: AggregationService | None, db_path: Path | None = None) -> None:
    """Install (or reset) the shared service; used by create_app() and tests."""
    global _service, _DB_PATH
    with _service_lock:
        if _service is not None and _service is not service:
            _service.close()
        _service = service
        if db_path is not None:
            _DB_PATH = Path(db_path)


def get_service() -> AggregationService:
    """FastAPI dependency: return the shared AggregationService.

    Usage in a route::

        from api.database import get_service
        from fastapi import Depends

        @router.post("/example")
        def example(service=Depends(get_service)):
            ...
    """
    global _service
    if _service is not None:
        return _service
    if not _DB_PATH.exists():
        raise HTTPException(
            status_code=503,
            detail=(
                f"Database not found at '{_DB_PATH}'. "
                "Set APP_DB_PATH to a budget database."
            ),
        )
    with _service_lock:
        if _service is None:
            _service = build_service(AppConfig.from_env(), _DB_PATH)
    return _service
