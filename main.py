#!/usr/bin/env python3
"""
Budget Analytics API - launch the aggregation web server.

Bind address, port and database default to the APP_HOST, APP_PORT and
APP_DB_PATH settings read by AppConfig; flags override them.

Usage:
    python main.py                          # APP_HOST:APP_PORT (127.0.0.1:8000)
    python main.py --port 9000
    python main.py --db /data/budget.sqlite
    python main.py --reload                 # development auto-reload
"""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

import uvicorn

from utils.config import AppConfig

logger = logging.getLogger("budget_analytics_api.main")


def build_parser(cfg: AppConfig) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Launch the budget analytics aggregation API.",
    )
    parser.add_argument("--host", default=cfg.api_host,
                        help=f"Bind address (default: {cfg.api_host})")
    parser.add_argument("--port", type=int, default=cfg.api_port,
                        help=f"Port to listen on (default: {cfg.api_port})")
    parser.add_argument("--db", type=Path, default=None,
                        help=f"SQLite database (default: {cfg.db_path})")
    parser.add_argument("--reload", action="store_true",
                        help="Restart the server when source files change")
    return parser


def main(argv: list[str] | None = None) -> None:
    cfg = AppConfig.from_env()
    args = build_parser(cfg).parse_args(argv)

    # api.app reads its settings from the environment when uvicorn imports it
    if args.db is not None:
        os.environ["APP_DB_PATH"] = str(args.db)
    db_path = args.db if args.db is not None else cfg.db_path
    if not db_path.exists():
        logger.warning("database not found at %s; aggregations will return 503", db_path)

    logger.info("serving aggregations on http://%s:%d/docs (database %s)",
                args.host, args.port, db_path)
    uvicorn.run(
        "api.app:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    main()
