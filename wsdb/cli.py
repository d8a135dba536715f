"""Command line front-end: run one statement and print its rows as JSON lines."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Sequence, TextIO

from .config import DaemonServer, load_config, url_to_daemon
from .models import WsdbError
from .session import SQLJob

LOG = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="wsdb", description="Run a statement against the daemon.")
    parser.add_argument("statement", help="SQL statement, or CL command with --cl")
    parser.add_argument("--uri", help="db2i://user:BASE64(password:extra)@host:port")
    parser.add_argument("--rows", type=int, default=100, help="rows fetched per round trip")
    parser.add_argument("--cl", action="store_true", help="run the statement as a CL command")
    parser.add_argument("--verbose", action="store_true", help="log protocol activity to stderr")
    return parser


def resolve_server(uri: str | None) -> DaemonServer:
    if uri:
        return url_to_daemon(uri)
    return load_config().daemon_server()


async def run_statement(
    server: DaemonServer,
    statement: str,
    *,
    rows: int,
    cl: bool,
    out: TextIO,
    job: SQLJob | None = None,
) -> bool:
    """Run ``statement`` to completion, writing each row; returns the success flag."""

    job = job or SQLJob(load_config().jdbc)
    async with job:
        await job.connect(server)
        query = job.clcommand(statement) if cl else job.query(statement)
        result = await query.execute(rows)
        while True:
            for row in result.data:
                out.write(json.dumps(row, default=str) + "\n")
            if result.is_done or not result.success:
                break
            result = await query.fetch_more(rows)
        await query.close()
        if not result.success and result.error:
            LOG.error("Command failed", extra={"error": result.error})
        return result.success


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, stream=sys.stderr)
    try:
        server = resolve_server(args.uri)
        ok = asyncio.run(
            run_statement(server, args.statement, rows=args.rows, cl=args.cl, out=sys.stdout)
        )
    except WsdbError as exc:
        print(f"wsdb: {exc}", file=sys.stderr)
        return 1
    return 0 if ok else 1
