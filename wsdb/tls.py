"""TLS helpers: trust decisions for the daemon channel and certificate retrieval."""

from __future__ import annotations

import asyncio
import logging
import ssl

from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding

from .config import DaemonServer
from .models import ConnectionBackendError

LOG = logging.getLogger(__name__)

_LEGACY_PROTOCOL_MARKERS = (
    "unsupported protocol",
    "wrong version number",
    "no protocols available",
    "tlsv1 alert protocol version",
)

LEGACY_PROTOCOL_HINT = (
    "The server may only offer a TLS protocol version this client refuses; "
    "check the daemon's TLS configuration"
)


def load_certificate(data: str | bytes) -> x509.Certificate:
    """Load a PEM (text or bytes) or DER certificate."""

    raw = data.encode("ascii") if isinstance(data, str) else data
    if b"-----BEGIN" in raw:
        return x509.load_pem_x509_certificate(raw)
    return x509.load_der_x509_certificate(raw)


def is_self_issued(data: str | bytes) -> bool:
    """True when the certificate's subject equals its issuer."""

    cert = load_certificate(data)
    return cert.subject == cert.issuer


def resolve_reject_unauthorized(server: DaemonServer) -> bool:
    """Decide whether the channel must verify the peer certificate.

    An explicit ``reject_unauthorized`` wins. Otherwise verification stays on,
    except when the supplied ``ca`` is not self-issued: that is the daemon's own
    leaf certificate rather than a root, and a chain cannot be built from it.
    """

    if server.ignore_unauthorized:
        return False
    if server.reject_unauthorized is not None:
        return server.reject_unauthorized
    if server.ca:
        return is_self_issued(server.ca)
    return True


def build_ssl_context(server: DaemonServer) -> ssl.SSLContext:
    """SSL context for the daemon channel, trusting ``server.ca`` when given."""

    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
    if server.ca:
        cert = load_certificate(server.ca)
        context.load_verify_locations(cadata=cert.public_bytes(Encoding.PEM).decode("ascii"))
    if not resolve_reject_unauthorized(server):
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def describe_tls_failure(exc: BaseException) -> str:
    """Human readable message for a failed handshake, with a hint for legacy protocols."""

    verify_message = getattr(exc, "verify_message", None)
    if isinstance(exc, ssl.SSLCertVerificationError) and verify_message:
        message = str(verify_message)
    else:
        message = str(exc) or exc.__class__.__name__
    lowered = str(exc).lower()
    if any(marker in lowered for marker in _LEGACY_PROTOCOL_MARKERS):
        return f"{message}. {LEGACY_PROTOCOL_HINT}"
    return message


async def _peer_chain(server: DaemonServer, *, timeout: float) -> list[bytes]:
    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(server.host, server.port, ssl=context),
            timeout=timeout,
        )
    except (OSError, TimeoutError) as exc:
        raise ConnectionBackendError(
            f"Cannot read certificate from {server.host}:{server.port}: {describe_tls_failure(exc)}"
        ) from exc
    try:
        ssl_object = writer.get_extra_info("ssl_object")
        chain_reader = getattr(ssl_object, "get_unverified_chain", None)
        chain = list(chain_reader() or []) if chain_reader else []
        if not chain:
            leaf = ssl_object.getpeercert(binary_form=True)
            chain = [leaf] if leaf else []
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except (OSError, ssl.SSLError):  # pragma: no cover - best effort
            pass
    if not chain:
        raise ConnectionBackendError(f"{server.host}:{server.port} presented no certificate")
    return [bytes(cert) for cert in chain]


async def get_certificate(server: DaemonServer, *, timeout: float = 5.0) -> bytes:
    """DER encoded leaf certificate presented by the daemon (not verified)."""

    chain = await _peer_chain(server, timeout=timeout)
    return chain[0]


async def get_root_certificate(server: DaemonServer, *, timeout: float = 5.0) -> str:
    """PEM of the last certificate the daemon presents, usable as ``DaemonServer.ca``."""

    chain = await _peer_chain(server, timeout=timeout)
    root = x509.load_der_x509_certificate(chain[-1])
    LOG.debug(
        "Fetched daemon certificate",
        extra={"host": server.host, "subject": root.subject.rfc4514_string()},
    )
    return root.public_bytes(Encoding.PEM).decode("ascii")


__all__ = [
    "build_ssl_context",
    "describe_tls_failure",
    "get_certificate",
    "get_root_certificate",
    "is_self_issued",
    "load_certificate",
    "resolve_reject_unauthorized",
]
