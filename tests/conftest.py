"""
Shared fixtures for the service_common test suite.
"""

from typing import Dict, Optional

import pytest
from prometheus_client import CollectorRegistry
from starlette.requests import Request

from service_common.auth import Authenticator, Authorizer
from service_common.metrics import MetricsCollector
from service_common.testing import (
    TEST_AUDIENCE,
    TEST_ISSUER,
    MockTokenGenerator,
    create_user_repository,
)


def make_request(headers: Optional[Dict[str, str]] = None, path: str = "/") -> Request:
    """Build a bare Starlette request."""
    scope = {
        "type": "http",
        "method": "GET",
        "path": path,
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "query_string": b"",
        "client": ("127.0.0.1", 50000),
    }
    return Request(scope)


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="session")
def token_generator():
    """RSA-backed token generator, shared because key generation is slow."""
    return MockTokenGenerator()


@pytest.fixture
def metrics():
    return MetricsCollector("test", CollectorRegistry())


@pytest.fixture
def users():
    """Users 1 (read), 2 (read + write) and 3 (no permissions)."""
    return create_user_repository()


@pytest.fixture
def authenticator(users, token_generator, metrics):
    return Authenticator(
        users,
        token_generator.key_store(),
        issuer=TEST_ISSUER,
        audience=TEST_AUDIENCE,
        metrics=metrics,
    )


@pytest.fixture
def authorizer(users, authenticator, metrics):
    return Authorizer(users, authenticator, metrics)
