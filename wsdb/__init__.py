"""Asyncio client for a remote SQL/CL daemon over a secure WebSocket."""

from __future__ import annotations

from .config import (
    ClientConfig,
    DaemonServer,
    JDBCOptions,
    PoolOptions,
    QueryOptions,
    load_config,
    save_config,
    url_to_daemon,
)
from .models import (
    DEFAULT_PORT,
    CLCommandResult,
    ConfigError,
    ConnectionBackendError,
    ConnectionResult,
    ExplainResults,
    ExplainType,
    GetTraceDataResult,
    JobStatus,
    QueryResult,
    QueryState,
    QueryTypeError,
    RequestTimeoutError,
    ServerError,
    ServerResponse,
    ServerTraceDest,
    ServerTraceLevel,
    SetConfigResult,
    TransactionEndType,
    UsageError,
    VersionCheckResult,
    WsdbError,
)
from .pool import Pool
from .query import Query, QueryExecutionError, QueryRegistry
from .session import SQLJob
from .tls import get_certificate, get_root_certificate

__all__ = [
    "CLCommandResult",
    "ClientConfig",
    "ConfigError",
    "ConnectionBackendError",
    "ConnectionResult",
    "DEFAULT_PORT",
    "DaemonServer",
    "ExplainResults",
    "ExplainType",
    "GetTraceDataResult",
    "JDBCOptions",
    "JobStatus",
    "Pool",
    "PoolOptions",
    "Query",
    "QueryExecutionError",
    "QueryOptions",
    "QueryRegistry",
    "QueryResult",
    "QueryState",
    "QueryTypeError",
    "RequestTimeoutError",
    "SQLJob",
    "ServerError",
    "ServerResponse",
    "ServerTraceDest",
    "ServerTraceLevel",
    "SetConfigResult",
    "TransactionEndType",
    "UsageError",
    "VersionCheckResult",
    "WsdbError",
    "get_certificate",
    "get_root_certificate",
    "load_config",
    "save_config",
    "url_to_daemon",
]
