"""Shared test fixtures for pytest.

Minimal env defaults are set before the app module is imported so the
module-level settings load without an external .env file.
"""

import os

os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test-batchgen.db")

import pytest

from batchgen_service.config import Settings


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        replicate_api_token="test-token",
        jwt_secret="test-secret",
        default_model="test-model",
    )
