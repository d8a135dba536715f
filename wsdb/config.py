"""Connection configuration models and loading helpers."""

from __future__ import annotations

import base64
import binascii
import logging
import os
from pathlib import Path
from typing import Any, Mapping, Sequence, Union
from urllib.parse import unquote, urlsplit

import tomllib

from pydantic import BaseModel, Field, ValidationError

from .models import DEFAULT_PORT, ConfigError

LOG = logging.getLogger(__name__)

CONFIG_FILE = Path.home() / ".config" / "wsdb" / "config.toml"

URI_SCHEME = "db2i"

ENV_PREFIX = "WSDB_"

JDBCValue = Union[str, int, bool, Sequence[str]]
JDBCOptions = Mapping[str, JDBCValue]

JDBC_OPTION_NAMES = frozenset(
    {
        # Format properties
        "naming",
        "date format",
        "date separator",
        "decimal separator",
        "time format",
        "time separator",
        # Other properties
        "full open",
        "access",
        "autocommit exception",
        "bidi string type",
        "bidi implicit reordering",
        "bidi numeric ordering",
        "data truncation",
        "driver",
        "errors",
        "extended metadata",
        "hold input locators",
        "hold statements",
        "ignore warnings",
        "keep alive",
        "key ring name",
        "key ring password",
        "metadata source",
        "proxy server",
        "remarks",
        "secondary URL",
        "secure",
        "server trace",
        "thread used",
        "toolbox trace",
        "trace",
        "translate binary",
        "translate boolean",
        # System properties
        "libraries",
        "auto commit",
        "concurrent access resolution",
        "cursor hold",
        "cursor sensitivity",
        "database name",
        "decfloat rounding mode",
        "maximum precision",
        "maximum scale",
        "minimum divide scale",
        "package ccsid",
        "transaction isolation",
        "translate hex",
        "true autocommit",
        "XA loosely coupled support",
        # Performance properties
        "big decimal",
        "block criteria",
        "block size",
        "data compression",
        "extended dynamic",
        "lazy close",
        "lob threshold",
        "maximum blocked input rows",
        "package",
        "package add",
        "package cache",
        "package criteria",
        "package error",
        "package library",
        "prefetch",
        "qaqqinilib",
        "query optimize goal",
        "query timeout mechanism",
        "query storage limit",
        "receive buffer size",
        "send buffer size",
        "variable field compression",
        # Sort properties
        "sort",
        "sort language",
        "sort table",
        "sort weight",
    }
)


class DaemonServer(BaseModel):
    """Where the daemon lives and how to authenticate against it."""

    host: str
    port: int = DEFAULT_PORT
    user: str
    password: str
    ca: str | bytes | None = None
    reject_unauthorized: bool | None = None
    ignore_unauthorized: bool = False


class QueryOptions(BaseModel):
    """Per-statement options."""

    is_terse_results: bool | None = None
    is_cl_command: bool = False
    parameters: list[Any] | None = None


class PoolOptions(BaseModel):
    """Sizing and credentials for a job pool."""

    creds: DaemonServer
    opts: dict[str, JDBCValue] = Field(default_factory=dict)
    max_size: int
    starting_size: int


class ServerSettings(BaseModel):
    """``[server]`` table of config.toml; credentials may come from the environment."""

    host: str = "localhost"
    port: int = DEFAULT_PORT
    user: str | None = None
    password: str | None = None
    ca_file: str | None = None


class PoolSettings(BaseModel):
    max_size: int = 5
    starting_size: int = 1


class ClientConfig(BaseModel):
    """Shape of the client configuration file."""

    server: ServerSettings = Field(default_factory=ServerSettings)
    jdbc: dict[str, JDBCValue] = Field(default_factory=dict)
    pool: PoolSettings = Field(default_factory=PoolSettings)

    def daemon_server(self) -> DaemonServer:
        """Build connection details, raising ConfigError when credentials are missing."""

        server = self.server
        if not server.user or not server.password:
            raise ConfigError("Missing required field user/password in [server] configuration.")
        ca: str | None = None
        if server.ca_file:
            try:
                ca = Path(server.ca_file).expanduser().read_text()
            except OSError as exc:
                raise ConfigError(f"Cannot read CA file '{server.ca_file}': {exc}") from exc
        return DaemonServer(
            host=server.host,
            port=server.port,
            user=server.user,
            password=server.password,
            ca=ca,
        )

    def pool_options(self) -> PoolOptions:
        return PoolOptions(
            creds=self.daemon_server(),
            opts=dict(self.jdbc),
            max_size=self.pool.max_size,
            starting_size=self.pool.starting_size,
        )


def serialize_jdbc_options(options: JDBCOptions) -> str:
    """Render options as the semicolon-joined ``key=value`` string the daemon expects."""

    parts: list[str] = []
    for name, value in options.items():
        if name not in JDBC_OPTION_NAMES:
            LOG.debug("Passing through unknown JDBC option", extra={"option": name})
        if isinstance(value, bool):
            rendered = "true" if value else "false"
        elif isinstance(value, (list, tuple)):
            rendered = ",".join(str(item) for item in value)
        else:
            rendered = str(value)
        parts.append(f"{name}={rendered}")
    return ";".join(parts)


def url_to_daemon(uri: str) -> DaemonServer:
    """Parse ``db2i://user:BASE64(password:extra)@host:port`` into connection details."""

    parsed = urlsplit(uri)
    if parsed.scheme != URI_SCHEME:
        raise ConfigError(f"Invalid protocol {parsed.scheme}:. Only {URI_SCHEME} is supported.")

    fields = {
        "username": parsed.username,
        "password": parsed.password,
        "hostname": parsed.hostname,
    }
    for name, value in fields.items():
        if not value:
            raise ConfigError(f"Missing required field {name}.")

    try:
        decoded = base64.b64decode(unquote(parsed.password or ""), validate=False).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise ConfigError("Password segment is not valid base64.") from exc
    password = decoded.split(":", 1)[0]

    try:
        port = parsed.port or DEFAULT_PORT
    except ValueError as exc:
        raise ConfigError(f"Invalid port in '{uri}'.") from exc

    return DaemonServer(
        host=parsed.hostname or "",
        port=port,
        user=unquote(parsed.username or ""),
        password=password,
    )


def load_config() -> ClientConfig:
    """Load configuration from disk and the environment; fall back to defaults."""

    try:
        data = _read_config_file()
    except FileNotFoundError:
        data = {}
    except (tomllib.TOMLDecodeError, OSError):
        LOG.warning("Ignoring unreadable config file", extra={"path": str(CONFIG_FILE)})
        data = {}

    server = dict(data.get("server") or {})
    server.update(_environment_overrides())
    try:
        return ClientConfig(
            server=ServerSettings(**server),
            jdbc=data.get("jdbc") or {},
            pool=PoolSettings(**(data.get("pool") or {})),
        )
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


def save_config(config: ClientConfig) -> None:
    """Persist configuration to disk. The password is never written."""

    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    server = config.server
    lines: list[str] = ["[server]", f'host = "{server.host}"', f"port = {server.port}"]
    if server.user:
        lines.append(f'user = "{server.user}"')
    if server.ca_file:
        lines.append(f'ca_file = "{server.ca_file}"')
    lines.append("")
    lines.append("[pool]")
    lines.append(f"max_size = {config.pool.max_size}")
    lines.append(f"starting_size = {config.pool.starting_size}")
    if config.jdbc:
        lines.append("")
        lines.append("[jdbc]")
        for name in sorted(config.jdbc):
            lines.append(f'"{name}" = {_toml_value(config.jdbc[name])}')
    CONFIG_FILE.write_text("\n".join(lines) + "\n")


def _toml_value(value: JDBCValue) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(f'"{item}"' for item in value) + "]"
    return f'"{value}"'


def _read_config_file() -> dict[str, dict[str, object]]:
    with CONFIG_FILE.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, dict[str, object]] = {}
    server = raw.get("server")
    if isinstance(server, dict):
        parsed: dict[str, object] = {}
        for key in ("host", "user", "password", "ca_file"):
            value = server.get(key)
            if isinstance(value, str):
                parsed[key] = value
        port = server.get("port")
        if isinstance(port, int):
            parsed["port"] = port
        data["server"] = parsed
    jdbc = raw.get("jdbc")
    if isinstance(jdbc, dict):
        data["jdbc"] = {
            str(name): value
            for name, value in jdbc.items()
            if isinstance(value, (str, int, bool, list))
        }
    pool = raw.get("pool")
    if isinstance(pool, dict):
        data["pool"] = {
            key: pool[key]
            for key in ("max_size", "starting_size")
            if isinstance(pool.get(key), int)
        }
    return data


def _environment_overrides() -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key in ("host", "user", "password"):
        value = os.environ.get(f"{ENV_PREFIX}{key.upper()}")
        if value:
            overrides[key] = value
    port = os.environ.get(f"{ENV_PREFIX}PORT")
    if port:
        try:
            overrides["port"] = int(port)
        except ValueError as exc:
            raise ConfigError(f"{ENV_PREFIX}PORT must be an integer, got '{port}'.") from exc
    return overrides


__all__ = [
    "CONFIG_FILE",
    "ClientConfig",
    "DaemonServer",
    "JDBCOptions",
    "JDBC_OPTION_NAMES",
    "PoolOptions",
    "PoolSettings",
    "QueryOptions",
    "ServerSettings",
    "load_config",
    "save_config",
    "serialize_jdbc_options",
    "url_to_daemon",
]
