"""Tests for admin API authentication."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from unittest.mock import AsyncMock

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from wingman.auth import (
    WS_CLOSE_NOT_CONFIGURED,
    WS_CLOSE_UNAUTHORIZED,
    check_admin_token,
    require_admin_token,
    require_admin_ws,
)


# ── Fixture: mock settings for auth tests ──────────────────────────

class FakeSettings:
    def __init__(self, admin_api_key="", debug=False):
        self.admin_api_key = admin_api_key
        self.debug = debug


# ── Tests: HTTP dependency ─────────────────────────────────────────

class TestRequireAdminToken:
    """Test the require_admin_token dependency directly."""

    async def test_rejects_no_token_when_key_set(self, monkeypatch):
        monkeypatch.setattr("wingman.auth.settings", FakeSettings(admin_api_key="secret"))
        with pytest.raises(HTTPException) as exc_info:
            await require_admin_token(credentials=None)
        assert exc_info.value.status_code == 401

    async def test_rejects_wrong_token(self, monkeypatch):
        monkeypatch.setattr("wingman.auth.settings", FakeSettings(admin_api_key="secret"))
        creds = HTTPAuthorizationCredentials(scheme="Bearer", credentials="wrong")
        with pytest.raises(HTTPException) as exc_info:
            await require_admin_token(credentials=creds)
        assert exc_info.value.status_code == 401

    async def test_allows_correct_token(self, monkeypatch):
        monkeypatch.setattr("wingman.auth.settings", FakeSettings(admin_api_key="secret"))
        creds = HTTPAuthorizationCredentials(scheme="Bearer", credentials="secret")
        # Should not raise
        await require_admin_token(credentials=creds)

    async def test_allows_no_key_debug_mode(self, monkeypatch):
        monkeypatch.setattr("wingman.auth.settings", FakeSettings(admin_api_key="", debug=True))
        await require_admin_token(credentials=None)

    async def test_rejects_no_key_production(self, monkeypatch):
        monkeypatch.setattr("wingman.auth.settings", FakeSettings(admin_api_key="", debug=False))
        with pytest.raises(HTTPException) as exc_info:
            await require_admin_token(credentials=None)
        assert exc_info.value.status_code == 403


# ── Tests: WebSocket token check ───────────────────────────────────

class TestRequireAdminWs:
    async def test_accepts_valid_query_token(self, monkeypatch):
        monkeypatch.setattr("wingman.auth.settings", FakeSettings(admin_api_key="secret"))
        ws = AsyncMock()
        assert await require_admin_ws(ws, token="secret") is True
        ws.close.assert_not_called()

    async def test_bad_token_closes_4001(self, monkeypatch):
        monkeypatch.setattr("wingman.auth.settings", FakeSettings(admin_api_key="secret"))
        ws = AsyncMock()
        assert await require_admin_ws(ws, token="nope") is False
        assert ws.close.call_args.kwargs["code"] == WS_CLOSE_UNAUTHORIZED

    async def test_unconfigured_closes_4003(self, monkeypatch):
        monkeypatch.setattr("wingman.auth.settings", FakeSettings(admin_api_key=""))
        ws = AsyncMock()
        assert await require_admin_ws(ws, token="") is False
        assert ws.close.call_args.kwargs["code"] == WS_CLOSE_NOT_CONFIGURED


class TestCheckAdminToken:
    def test_empty_token_with_key(self, monkeypatch):
        monkeypatch.setattr("wingman.auth.settings", FakeSettings(admin_api_key="secret"))
        assert check_admin_token("") == 401

    def test_match(self, monkeypatch):
        monkeypatch.setattr("wingman.auth.settings", FakeSettings(admin_api_key="secret"))
        assert check_admin_token("secret") is None
