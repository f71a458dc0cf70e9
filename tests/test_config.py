"""Unit tests for core/config.py -- Settings validation.

Covers:
- DEBUG mode auto-generates a SECRET_KEY
- production mode without SECRET_KEY refuses to start
- short SECRET_KEY / PREVIOUS_SECRET_KEYS entries are rejected
- verification_keys lists the current key first
- access-token TTL bounds
"""

import pytest
from pydantic import ValidationError

from core.config import Settings

KEY = "k" * 32


def test_debug_generates_secret_key():
    s = Settings(debug=True, secret_key="")
    assert len(s.secret_key) >= 32


def test_production_requires_secret_key():
    with pytest.raises(ValidationError, match="SECRET_KEY is required"):
        Settings(debug=False, secret_key="")


def test_short_secret_key_rejected():
    with pytest.raises(ValidationError, match="at least 32"):
        Settings(debug=False, secret_key="short")


def test_short_previous_key_rejected():
    with pytest.raises(ValidationError, match="PREVIOUS_SECRET_KEYS"):
        Settings(debug=False, secret_key=KEY, previous_secret_keys=["short"])


def test_verification_keys_current_first():
    old = "o" * 32
    s = Settings(debug=False, secret_key=KEY, previous_secret_keys=[old])
    assert s.verification_keys == [KEY, old]


def test_defaults():
    s = Settings(debug=False, secret_key=KEY)
    assert s.access_token_ttl_seconds == 900
    assert s.refresh_token_ttl_seconds == 7 * 24 * 60 * 60
    assert s.jwt_issuer == "chatauth"
    assert s.jwt_audience == "chatauth-users"


@pytest.mark.parametrize("ttl", [0, 3601])
def test_access_ttl_bounds(ttl):
    with pytest.raises(ValidationError):
        Settings(debug=False, secret_key=KEY, access_token_ttl_seconds=ttl)
