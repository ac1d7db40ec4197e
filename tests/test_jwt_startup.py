"""
tests/test_jwt_startup — Supabase JWT Secret & Claim Verification
==================================================================
The API refuses to import when SUPABASE_JWT_SECRET is missing, blank,
too short, or a known weak default.  Tokens must be HS256 with the
``authenticated`` audience and carry ``sub`` and ``email``.
"""

from __future__ import annotations

import importlib
import os
import time
from unittest.mock import patch

import jwt
import pytest
from conftest import make_token

from changemaker.errors import AuthenticationError


def _reload_deps():
    import changemaker.api.deps as deps_mod
    return importlib.reload(deps_mod)


@pytest.fixture
def restore_deps():
    """Reload deps with the session's secret once the test is done."""
    original = os.environ.get("SUPABASE_JWT_SECRET")
    yield
    if original is not None:
        os.environ["SUPABASE_JWT_SECRET"] = original
    else:
        os.environ.pop("SUPABASE_JWT_SECRET", None)
    try:
        _reload_deps()
    except RuntimeError:
        pass  # no usable secret in this environment


@pytest.mark.usefixtures("restore_deps")
class TestSecretValidation:
    def test_missing_secret(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("SUPABASE_JWT_SECRET", None)
            with pytest.raises(RuntimeError, match="is not set"):
                _reload_deps()

    @pytest.mark.parametrize("secret, message", [
        ("", "is not set"),
        ("super-secret-jwt-token-with-at-least-32-characters-long", "known weak default"),
        ("your-super-secret-jwt-token-with-at-least-32-characters-long", "known weak default"),
        ("change-me", "known weak default"),
        ("tooshort", "too short"),
        ("x" * 31, "too short"),
    ])
    def test_rejected(self, secret, message):
        with patch.dict(os.environ, {"SUPABASE_JWT_SECRET": secret}):
            with pytest.raises(RuntimeError, match=message):
                _reload_deps()

    def test_accepts_project_secret(self):
        secret = "s" * 32
        with patch.dict(os.environ, {"SUPABASE_JWT_SECRET": secret}):
            assert _reload_deps().JWT_SECRET == secret


class TestTokenClaims:
    def _claims(self, token: str) -> dict:
        from changemaker.api.deps import get_token_claims
        return get_token_claims(f"Bearer {token}")

    def test_valid_supabase_token(self):
        claims = self._claims(make_token(user_metadata={"timezone": "UTC"}))
        assert claims["sub"] == "supabase-alice"
        assert claims["user_metadata"] == {"timezone": "UTC"}

    def test_missing_header(self):
        from changemaker.api.deps import get_token_claims
        with pytest.raises(AuthenticationError, match="Authentication required"):
            get_token_claims(None)
        with pytest.raises(AuthenticationError):
            get_token_claims("Basic abc")

    def test_expired(self):
        with pytest.raises(AuthenticationError, match="Invalid token"):
            self._claims(make_token(exp=int(time.time()) - 10))

    def test_wrong_secret(self):
        token = jwt.encode(
            {"sub": "x", "email": "x@example.com", "aud": "authenticated"},
            "another-secret-that-is-long-enough-000000",
            algorithm="HS256",
        )
        with pytest.raises(AuthenticationError, match="Invalid token"):
            self._claims(token)

    def test_missing_sub(self):
        with pytest.raises(AuthenticationError, match="session data"):
            self._claims(make_token(sub=""))
