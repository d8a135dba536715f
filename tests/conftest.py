"""Shared fixtures."""

from __future__ import annotations

import pytest

from certs import CertificateAuthority, make_authority
from fakes import FakeDaemon
from wsdb.config import DaemonServer
from wsdb.query import QueryRegistry


@pytest.fixture
def daemon() -> FakeDaemon:
    return FakeDaemon()


@pytest.fixture
def creds() -> DaemonServer:
    return DaemonServer(host="ibmi.example.com", user="liama", password="secret")


@pytest.fixture
def registry() -> QueryRegistry:
    return QueryRegistry()


@pytest.fixture(scope="session")
def authority() -> CertificateAuthority:
    return make_authority()
