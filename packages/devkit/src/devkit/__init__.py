"""Common runtime devkit for service infrastructure concerns."""

from devkit.config import ServiceSettings, load_settings
from devkit.db import (
    AsyncDatabaseManager,
    create_async_engine,
    create_session_factory,
    db_constraint_name,
    db_error_code,
    is_transient_db_error,
    is_unique_violation,
    normalize_postgres_dsn,
)
from devkit.observability import (
    TraceIdLogFilter,
    configure_access_log_filter,
    configure_logging,
    configure_otel,
    get_trace_id,
    set_trace_id,
)

__all__ = [
    "AsyncDatabaseManager",
    "ServiceSettings",
    "configure_logging",
    "configure_otel",
    "TraceIdLogFilter",
    "configure_access_log_filter",
    "create_async_engine",
    "create_session_factory",
    "db_constraint_name",
    "db_error_code",
    "get_trace_id",
    "is_transient_db_error",
    "is_unique_violation",
    "load_settings",
    "normalize_postgres_dsn",
    "set_trace_id",
]
