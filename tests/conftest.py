"""
Main pytest configuration for LearnHub backend tests.

Fixtures for settings, bearer tokens and a test client wired to the full
application.
"""

import os
import time
from typing import Any, Dict, Optional

import jwt
import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing app modules
os.environ["ENVIRONMENT"] = "test"
os.environ["RATE_LIMIT_STORE"] = "memory"
os.environ["JWT_SECRET"] = "test-secret-key-for-rate-limit-tests-only"
os.environ["LOG_LEVEL"] = "WARNING"

from learnhub.core.config import Settings
from learnhub.main import create_app

TEST_JWT_SECRET = os.environ["JWT_SECRET"]


def make_token(
    user_id: Optional[str] = "user-1",
    role: str = "student",
    plan: Optional[str] = None,
    expires_in: int = 3600,
    secret: str = TEST_JWT_SECRET,
) -> str:
    claims: Dict[str, Any] = {"role": role, "exp": int(time.time()) + expires_in}
    if user_id is not None:
        claims["_id"] = user_id
    if plan is not None:
        claims["subscriptionPlan"] = plan
    return jwt.encode(claims, secret, algorithm="HS256")


def auth_header(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def settings() -> Settings:
    """Settings with small quotas so limits are reached quickly."""
    return Settings(
        ENVIRONMENT="test",
        RATE_LIMIT_STORE="memory",
        RATE_LIMIT_GUEST_MAX=3,
        RATE_LIMIT_AUTH_MAX=5,
        RATE_LIMIT_PREMIUM_MAX=8,
        RATE_LIMIT_ADMIN_MAX=50,
        JWT_SECRET=TEST_JWT_SECRET,
        LOG_LEVEL="WARNING",
    )


@pytest.fixture
def app(settings):
    return create_app(settings=settings)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return auth_header(make_token(user_id="admin-1", role="admin"))


@pytest.fixture
def user_headers() -> Dict[str, str]:
    return auth_header(make_token(user_id="user-1", role="student"))


@pytest.fixture
def premium_headers() -> Dict[str, str]:
    return auth_header(make_token(user_id="user-2", role="student", plan="premium"))


@pytest.fixture
def token_factory():
    """Build bearer headers for arbitrary claims."""

    def factory(**kwargs) -> Dict[str, str]:
        return auth_header(make_token(**kwargs))

    return factory
