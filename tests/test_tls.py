"""Tests for certificate trust decisions and retrieval."""

from __future__ import annotations

import asyncio
import socket
import ssl
from pathlib import Path

import pytest
from cryptography.hazmat.primitives.serialization import Encoding

from certs import CertificateAuthority
from wsdb.config import DaemonServer
from wsdb.models import ConnectionBackendError
from wsdb.tls import (
    LEGACY_PROTOCOL_HINT,
    build_ssl_context,
    describe_tls_failure,
    get_certificate,
    get_root_certificate,
    is_self_issued,
    load_certificate,
    resolve_reject_unauthorized,
)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _server(**overrides: object) -> DaemonServer:
    return DaemonServer(host="127.0.0.1", user="liama", password="secret", **overrides)  # type: ignore[arg-type]


def _unused_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_load_certificate_accepts_pem_and_der(authority: CertificateAuthority) -> None:
    der = authority.root.public_bytes(Encoding.DER)

    assert load_certificate(authority.root_pem) == authority.root
    assert load_certificate(authority.root_pem.encode("ascii")) == authority.root
    assert load_certificate(der) == authority.root


def test_self_issued_detection(authority: CertificateAuthority) -> None:
    assert is_self_issued(authority.root_pem) is True
    assert is_self_issued(authority.leaf_pem) is False


def test_reject_unauthorized_resolution(authority: CertificateAuthority) -> None:
    assert resolve_reject_unauthorized(_server()) is True
    assert resolve_reject_unauthorized(_server(ca=authority.root_pem)) is True
    assert resolve_reject_unauthorized(_server(ca=authority.leaf_pem)) is False
    assert resolve_reject_unauthorized(_server(ca=authority.leaf_pem, reject_unauthorized=True)) is True
    assert resolve_reject_unauthorized(_server(reject_unauthorized=False)) is False
    assert resolve_reject_unauthorized(_server(ca=authority.root_pem, ignore_unauthorized=True)) is False


def test_ssl_context_trusts_supplied_root(authority: CertificateAuthority) -> None:
    context = build_ssl_context(_server(ca=authority.root_pem))

    assert context.verify_mode is ssl.CERT_REQUIRED
    assert context.check_hostname is True
    subjects = [dict(field[0] for field in cert["subject"]) for cert in context.get_ca_certs()]
    assert {"commonName": "wsdb test root"} in subjects


def test_ssl_context_without_verification(authority: CertificateAuthority) -> None:
    context = build_ssl_context(_server(ca=authority.leaf_pem))

    assert context.verify_mode is ssl.CERT_NONE
    assert context.check_hostname is False


def test_describe_tls_failure() -> None:
    verify_error = ssl.SSLCertVerificationError(1, "[SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed")
    verify_error.verify_message = "self-signed certificate in certificate chain"

    assert describe_tls_failure(verify_error) == "self-signed certificate in certificate chain"
    legacy = describe_tls_failure(ssl.SSLError(1, "[SSL: UNSUPPORTED_PROTOCOL] unsupported protocol"))
    assert legacy.endswith(LEGACY_PROTOCOL_HINT)
    assert describe_tls_failure(ConnectionRefusedError(111, "Connection refused")) == "[Errno 111] Connection refused"
    assert describe_tls_failure(TimeoutError()) == "TimeoutError"


@pytest.mark.anyio
async def test_certificate_retrieval(authority: CertificateAuthority, tmp_path: Path) -> None:
    async def _handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            await reader.read()
        except (OSError, ssl.SSLError):  # pragma: no cover - client may drop abruptly
            pass
        writer.close()

    server = await asyncio.start_server(_handle, "127.0.0.1", 0, ssl=authority.server_context(tmp_path))
    port = server.sockets[0].getsockname()[1]
    try:
        leaf = await get_certificate(_server(port=port))
        root_pem = await get_root_certificate(_server(port=port))
    finally:
        server.close()
        await server.wait_closed()

    assert leaf == authority.leaf.public_bytes(Encoding.DER)
    # Without access to the full presented chain only the leaf is available.
    expected = authority.root_pem if hasattr(ssl.SSLObject, "get_unverified_chain") else authority.leaf_pem
    assert root_pem == expected


@pytest.mark.anyio
async def test_certificate_retrieval_failure() -> None:
    with pytest.raises(ConnectionBackendError, match="Cannot read certificate"):
        await get_certificate(_server(port=_unused_port()), timeout=2.0)
