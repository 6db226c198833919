"""
tests/test_jwt_startup.py — JWT Secret & Token Validation
==========================================================
The API refuses to import with an unusable ``JWT_SECRET``; at request
time only tokens it signed, naming a numeric user id, are accepted.
"""

from __future__ import annotations

import importlib
import os
from unittest.mock import patch

import jwt
import pytest
from conftest import make_token
from fastapi import HTTPException

from voicegate.api import deps


class TestSecretAtStartup:

    @pytest.fixture(autouse=True)
    def _restore_secret(self):
        original = os.environ.get("JWT_SECRET")
        yield
        if original is not None:
            os.environ["JWT_SECRET"] = original
        else:
            os.environ.pop("JWT_SECRET", None)
        try:
            importlib.reload(deps)
        except RuntimeError:
            pass

    def _reload(self) -> str:
        importlib.reload(deps)
        return deps.JWT_SECRET

    def test_missing(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("JWT_SECRET", None)
            with pytest.raises(RuntimeError, match="is not set"):
                self._reload()

    def test_empty(self):
        with patch.dict(os.environ, {"JWT_SECRET": ""}):
            with pytest.raises(RuntimeError, match="is not set"):
                self._reload()

    @pytest.mark.parametrize("secret", ["voicegate-dev-secret-change-me", "change-me"])
    def test_known_defaults(self, secret):
        with patch.dict(os.environ, {"JWT_SECRET": secret}):
            with pytest.raises(RuntimeError, match="known weak default"):
                self._reload()

    def test_too_short(self):
        with patch.dict(os.environ, {"JWT_SECRET": "tooshort"}):
            with pytest.raises(RuntimeError, match="too short"):
                self._reload()

    def test_strong_secret(self):
        with patch.dict(os.environ, {"JWT_SECRET": "v" * 48}):
            assert self._reload() == "v" * 48


class TestBearerToken:

    def test_valid_token(self):
        payload = deps.get_current_user(f"Bearer {make_token(7, role='moderator')}")
        assert deps.current_user_id(payload) == 7
        assert deps.require_staff(payload) is payload

    def test_foreign_signature(self):
        forged = jwt.encode({"sub": "7", "role": "admin"}, "x" * 40, algorithm="HS256")
        with pytest.raises(HTTPException) as excinfo:
            deps.get_current_user(f"Bearer {forged}")
        assert excinfo.value.status_code == 401

    def test_subject_must_be_user_id(self):
        with pytest.raises(HTTPException, match="subject"):
            deps.get_current_user(f"Bearer {make_token('discord-7')}")

    def test_member_is_not_staff(self):
        payload = deps.get_current_user(f"Bearer {make_token(7)}")
        with pytest.raises(HTTPException) as excinfo:
            deps.require_staff(payload)
        assert excinfo.value.status_code == 403

    def test_moderator_is_not_admin(self):
        payload = deps.get_current_user(f"Bearer {make_token(7, role='moderator')}")
        with pytest.raises(HTTPException):
            deps.require_admin(payload)
