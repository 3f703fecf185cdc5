"""Shared utilities for the budget analytics tools."""

# Result cache
from utils.cache import ResultCache, json_size

# SQL fragment builders
from utils.query import (
    Dialect,
    Fragment,
    build_order_clause,
    escape_like,
    in_clause,
    like_any_clause,
    render,
)

# Configuration
from utils.config import Config, AppConfig

# Database utilities
from utils.database import (
    create_schema,
    connect,
    register_decimal_functions,
    batch_insert,
    SQLiteStorage,
    SQLiteClassificationLookup,
)

__all__ = [
    # Cache
    "ResultCache",
    "json_size",
    # Query
    "Dialect",
    "Fragment",
    "build_order_clause",
    "escape_like",
    "in_clause",
    "like_any_clause",
    "render",
    # Config
    "Config",
    "AppConfig",
    # Database
    "create_schema",
    "connect",
    "register_decimal_functions",
    "batch_insert",
    "SQLiteStorage",
    "SQLiteClassificationLookup",
]
