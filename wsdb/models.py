"""Shared enums, errors and protocol payload models used across the client modules."""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import Any, Generic, Literal, Mapping, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

DEFAULT_PORT = 8076

T = TypeVar("T")


class WsdbError(RuntimeError):
    """Base class for every error raised by the client."""


class UsageError(WsdbError, ValueError):
    """Raised when the caller misuses the API; nothing was sent to the server."""


class QueryTypeError(UsageError, TypeError):
    """Raised when a statement is not a string."""


class ConfigError(WsdbError, ValueError):
    """Raised when a connection URI or configuration file is invalid."""


class ConnectionBackendError(WsdbError):
    """Raised when the secure channel cannot be opened or has gone away."""


class RequestTimeoutError(WsdbError, TimeoutError):
    """Raised when a correlated response did not arrive in time."""


class ServerError(WsdbError):
    """Raised when the daemon answers a request with ``success != true``."""

    def __init__(self, message: str, response: ServerResponse | None = None) -> None:
        super().__init__(message)
        self.response = response

    @property
    def sql_state(self) -> str | None:
        return self.response.sql_state if self.response else None

    @property
    def sql_rc(self) -> int | None:
        return self.response.sql_rc if self.response else None


class JobStatus(str, Enum):
    """Lifecycle of a SQL job."""

    NOT_STARTED = "notStarted"
    CONNECTING = "connecting"
    READY = "ready"
    BUSY = "busy"
    ENDED = "ended"


class QueryState(IntEnum):
    """Execution state of a single statement."""

    NOT_YET_RUN = 1
    RUN_MORE_DATA_AVAILABLE = 2
    RUN_DONE = 3
    ERROR = 4


class ExplainType(str, Enum):
    RUN = "run"
    DO_NOT_RUN = "doNotRun"


class TransactionEndType(str, Enum):
    COMMIT = "COMMIT"
    ROLLBACK = "ROLLBACK"


class ServerTraceLevel(str, Enum):
    OFF = "OFF"
    ON = "ON"
    ERRORS = "ERRORS"
    DATASTREAM = "DATASTREAM"


class ServerTraceDest(str, Enum):
    FILE = "FILE"
    IN_MEM = "IN_MEM"


class ServerResponse(BaseModel):
    """Fields common to every daemon response; unknown fields are kept."""

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    success: bool = False
    error: str | None = None
    sql_rc: int | None = None
    sql_state: str | None = None


class ConnectionResult(ServerResponse):
    job: str | None = None


class VersionCheckResult(ServerResponse):
    build_date: str | None = None
    version: str | None = None


class GetTraceDataResult(ServerResponse):
    tracedata: str | None = None


class SetConfigResult(ServerResponse):
    tracedest: str | None = None
    tracelevel: str | None = None


class ColumnMetaData(BaseModel):
    model_config = ConfigDict(extra="allow")

    display_size: int | None = None
    label: str | None = None
    name: str | None = None
    type: str | None = None
    precision: int | None = None
    scale: int | None = None


class ParameterDetail(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str | None = None
    mode: Literal["IN", "OUT", "INOUT"] | None = None
    precision: int | None = None
    scale: int | None = None
    name: str | None = None


class ParameterResult(BaseModel):
    """Output parameter returned by a procedure call; ``value`` is set for OUT/INOUT."""

    model_config = ConfigDict(extra="allow")

    index: int | None = None
    type: str | None = None
    precision: int | None = None
    scale: int | None = None
    name: str | None = None
    ccsid: int | None = None
    value: Any = None


class QueryMetaData(BaseModel):
    model_config = ConfigDict(extra="allow")

    column_count: int | None = None
    columns: list[ColumnMetaData] | None = None
    parameters: list[ParameterDetail] | None = None
    job: str | None = None


class QueryResult(ServerResponse, Generic[T]):
    """Rows and status for one execute/fetch_more round trip."""

    metadata: QueryMetaData | None = None
    is_done: bool = False
    has_results: bool = False
    update_count: int | None = None
    data: list[T] = Field(default_factory=list)
    parameter_count: int | None = None
    output_parms: list[ParameterResult] | None = None


class JobLogEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    MESSAGE_ID: str | None = None
    SEVERITY: Any = None
    MESSAGE_TIMESTAMP: str | None = None
    FROM_LIBRARY: str | None = None
    FROM_PROGRAM: str | None = None
    MESSAGE_TYPE: str | None = None
    MESSAGE_TEXT: str | None = None
    MESSAGE_SECOND_LEVEL_TEXT: str | None = None


class CLCommandResult(QueryResult[dict[str, Any]]):
    joblog: list[JobLogEntry] | None = None


class ExplainResults(QueryResult[dict[str, Any]]):
    vemetadata: QueryMetaData | None = None
    vedata: Any = None


ResponseT = TypeVar("ResponseT", bound=ServerResponse)


def parse_response(model: type[ResponseT], payload: Mapping[str, Any]) -> ResponseT:
    """Validate a daemon payload, raising ServerError when it does not fit ``model``."""

    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ServerError(f"Malformed {model.__name__} response: {exc.error_count()} invalid field(s)") from exc


__all__ = [
    "CLCommandResult",
    "ColumnMetaData",
    "ConfigError",
    "ConnectionBackendError",
    "ConnectionResult",
    "DEFAULT_PORT",
    "ExplainResults",
    "ExplainType",
    "GetTraceDataResult",
    "JobLogEntry",
    "JobStatus",
    "ParameterDetail",
    "ParameterResult",
    "QueryMetaData",
    "QueryResult",
    "QueryState",
    "QueryTypeError",
    "RequestTimeoutError",
    "ServerError",
    "ServerResponse",
    "ServerTraceDest",
    "ServerTraceLevel",
    "SetConfigResult",
    "TransactionEndType",
    "UsageError",
    "VersionCheckResult",
    "WsdbError",
    "parse_response",
]
