"""Tests for bearer token verification."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from batchgen_service.auth import decode_user_id
from batchgen_service.config import Settings
from batchgen_service.errors import Unauthenticated


def _token(claims, secret: str = "test-secret") -> str:
    return jwt.encode(claims, secret, algorithm="HS256")


def test_valid_token_yields_subject(settings):
    assert decode_user_id(_token({"sub": "user-1"}), settings) == "user-1"


def test_wrong_secret_rejected(settings):
    with pytest.raises(Unauthenticated):
        decode_user_id(_token({"sub": "user-1"}, secret="other"), settings)


def test_expired_token_rejected(settings):
    expired = datetime.now(timezone.utc) - timedelta(minutes=5)
    with pytest.raises(Unauthenticated):
        decode_user_id(_token({"sub": "user-1", "exp": expired}), settings)


def test_missing_subject_rejected(settings):
    with pytest.raises(Unauthenticated, match="sub"):
        decode_user_id(_token({"role": "authenticated"}), settings)


def test_audience_checked_when_configured():
    settings = Settings(_env_file=None, jwt_secret="test-secret", jwt_audience="authenticated")
    assert decode_user_id(_token({"sub": "u", "aud": "authenticated"}), settings) == "u"
    with pytest.raises(Unauthenticated):
        decode_user_id(_token({"sub": "u", "aud": "anon"}), settings)


def test_unconfigured_secret_rejects_everything():
    settings = Settings(_env_file=None, jwt_secret=None)
    with pytest.raises(Unauthenticated):
        decode_user_id(_token({"sub": "u"}), settings)
