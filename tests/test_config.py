"""
tests/test_config.py -- Unit tests for Settings validation.

Covers:
  - SECRET_KEY policy: auto-generated in DEBUG, required otherwise, minimum length
  - JOIN_TOKEN_SECRET falls back to SECRET_KEY
  - PUBLIC_URL must be absolute; trailing slash stripped
  - secure_cookies derived from the PUBLIC_URL scheme unless set
  - Join-token leeway bounded to 60 seconds
  - MESH_PUBLIC_URL falls back to MESH_CONTROL_URL
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings

_KEY = "k" * 48


def test_debug_autogenerates_secret_key():
    settings = Settings(debug=True, secret_key="")
    assert len(settings.secret_key) >= 32
    assert settings.join_token_secret == settings.secret_key


def test_production_requires_secret_key():
    with pytest.raises(ValidationError):
        Settings(debug=False, secret_key="")


def test_short_secret_key_rejected():
    with pytest.raises(ValidationError):
        Settings(debug=True, secret_key="short")


def test_short_join_token_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(secret_key=_KEY, join_token_secret="short")


def test_public_url_normalized_and_cookie_security_derived():
    https = Settings(secret_key=_KEY, public_url="https://gate.example.test/")
    assert https.public_url == "https://gate.example.test"
    assert https.secure_cookies is True

    http = Settings(secret_key=_KEY, public_url="http://localhost:9080")
    assert http.secure_cookies is False

    forced = Settings(secret_key=_KEY, public_url="http://localhost:9080", secure_cookies=True)
    assert forced.secure_cookies is True


def test_relative_public_url_rejected():
    with pytest.raises(ValidationError):
        Settings(secret_key=_KEY, public_url="/gate")


@pytest.mark.parametrize("leeway", [-1, 61])
def test_leeway_bounds(leeway):
    with pytest.raises(ValidationError):
        Settings(secret_key=_KEY, join_token_leeway_seconds=leeway)


def test_mesh_public_url_fallback():
    settings = Settings(secret_key=_KEY, mesh_control_url="http://mesh:8080/", mesh_public_url="")
    assert settings.mesh_control_url == "http://mesh:8080"
    assert settings.mesh_public_url == "http://mesh:8080"

    explicit = Settings(secret_key=_KEY, mesh_public_url="https://mesh.example.test")
    assert explicit.mesh_public_url == "https://mesh.example.test"
