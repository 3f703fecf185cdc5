"""
FastAPI application factory for the budget analytics API.

Usage:
    python -m api.app                    # Dev server on port 8000
    APP_DB_PATH=/data/budget.sqlite python -m api.app

OpenAPI docs available at http://localhost:8000/docs after starting.

The API is a thin transport over analytics.AggregationService: routes
parse HTTP input, call the service and translate its errors:

    ValidationError   -> 400 Bad request
    StorageError      -> 503 Aggregation failed (retryable)
    CompilationError  -> 500 Internal server error

Structured JSON logging when APP_LOG_FORMAT=json.
"""

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

import api.database as _db_mod
from analytics.errors import CompilationError, StorageError, ValidationError
from analytics.service import AggregationService
from api.database import get_db_path
from api.routes import aggregations
from utils.config import AppConfig

# ── Configuration ─────────────────────────────────────────────────────────────
_cfg = AppConfig.from_env()

# ── Structured JSON logging ───────────────────────────────────────────────────


class _JsonFormatter(logging.Formatter):
    """Emit log records as newline-delimited JSON."""

    def format(self, record: logging.LogRecord) -> str:
        data: dict = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Merge extra fields added via logger.info("...", extra={...})
        for key in ("method", "path", "status", "duration_ms", "request_id",
                    "dimension"):
            if hasattr(record, key):
                data[key] = getattr(record, key)
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(data)


_logger = logging.getLogger("budget_analytics_api")
_handler = logging.StreamHandler()
if _cfg.log_format == "json":
    _handler.setFormatter(_JsonFormatter())
else:
    _handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    )
logging.basicConfig(handlers=[_handler], level=logging.INFO, force=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Warn about a missing database on startup; release workers on shutdown."""
    _logger.info("starting with settings %s", _cfg.to_dict())
    db_path = get_db_path()
    if _db_mod._service is None and not db_path.exists():
        _logger.warning("Database not found at %s; aggregations will return 503", db_path)
    yield
    _db_mod.set_service(None)


def _error(status_code: int, error: str, detail: str | None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "detail": detail, "status_code": status_code},
    )


def create_app(
    db_path: Path | None = None,
    service: AggregationService | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        db_path: Override the database path (useful for testing).
        service: Use this AggregationService instead of building one from
            the environment (useful for testing).

    Returns:
        Configured FastAPI application instance.
    """
    if service is not None or db_path is not None:
        _db_mod.set_service(service, db_path=db_path)

    app = FastAPI(
        title="Romanian Budget Analytics API",
        summary="Aggregates of Romanian public-budget execution data.",
        description=(
            "## Budget Analytics API\n\n"
            "Aggregates budget execution line items by territorial unit (UAT), "
            "county, entity, functional or economic classification.\n\n"
            "### Key concepts\n"
            "- **Amounts** are in RON, or EUR for the `*_euro` normalizations "
            "(converted per year with BNR yearly average rates).\n"
            "- **Per-capita** amounts divide by the population of the aggregated "
            "scope and are 0 when the population is unknown.\n"
            "- **account_category**: `vn` (income) or `ch` (expense).\n"
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # ── Request logging middleware ────────────────────────────────────────────

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log each request with its duration and a request ID."""
        request_id = str(uuid.uuid4())[:8]
        start = time.monotonic()
        path = request.url.path
        response = await call_next(request)
        duration_ms = (time.monotonic() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        if _cfg.log_format == "json":
            _logger.info(
                "request",
                extra={
                    "method": request.method,
                    "path": path,
                    "status": response.status_code,
                    "duration_ms": round(duration_ms, 1),
                    "request_id": request_id,
                },
            )
        else:
            _logger.info(
                "method=%s path=%s status=%d duration_ms=%.1f rid=%s",
                request.method, path, response.status_code, duration_ms,
                request_id,
            )
        if duration_ms > 500:
            _logger.warning(
                "slow_request method=%s path=%s duration_ms=%.1f",
                request.method, path, duration_ms,
            )
        return response

    # ── Error handling ────────────────────────────────────────────────────────

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return _error(400, "Bad request", str(exc))

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        return _error(503, "Aggregation failed", str(exc))

    @app.exception_handler(CompilationError)
    async def compilation_error_handler(request: Request, exc: CompilationError):
        _logger.error("query compilation failed: %s", exc)
        return _error(500, "Internal server error", None)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return _error(400, "Bad request", str(exc))

    # ── Health check ──────────────────────────────────────────────────────────

    @app.get("/health", tags=["meta"], summary="Health check")
    def health():
        """Return 200 OK if the API is running and the database exists."""
        db_path = get_db_path()
        if _db_mod._service is None and not db_path.exists():
            return JSONResponse(
                status_code=503,
                content={"status": "no_database", "database": str(db_path)},
            )
        return {"status": "ok", "database": str(db_path)}

    # ── Register routers ──────────────────────────────────────────────────────

    prefix = "/api/v1"
    app.include_router(aggregations.router, prefix=prefix)

    return app


# Singleton instance for uvicorn
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.app:app", host=_cfg.api_host, port=_cfg.api_port,
                log_level="info")
