# ─────────────────────────────────────────────────────────────────────────────
# Tests — Authorizer verdicts
# ─────────────────────────────────────────────────────────────────────────────

from pathlib import Path

import pytest

from servicekit.auth import Authorizer, Verdict
from servicekit.config import DEFAULT_PASSPHRASE_ENV
from servicekit.keystore import KeyStore

from conftest import PASSPHRASE


def _authorizer(key_file: Path | None, passphrase: str | None = PASSPHRASE) -> Authorizer:
    return Authorizer(KeyStore(key_file, passphrase), passphrase_env=DEFAULT_PASSPHRASE_ENV)


class TestAuthorize:
    """Tests for Authorizer.authorize()."""

    @pytest.mark.asyncio
    async def test_header_match_is_allowed(self, key_file: Path):
        assert await _authorizer(key_file).authorize("abc123", None) is Verdict.ALLOWED

    @pytest.mark.asyncio
    async def test_body_match_is_allowed(self, key_file: Path):
        assert await _authorizer(key_file).authorize(None, "xyz789") is Verdict.ALLOWED

    @pytest.mark.asyncio
    async def test_body_match_with_wrong_header_is_allowed(self, key_file: Path):
        assert await _authorizer(key_file).authorize("wrong", "abc123") is Verdict.ALLOWED

    @pytest.mark.asyncio
    async def test_header_match_with_wrong_body_is_allowed(self, key_file: Path):
        assert await _authorizer(key_file).authorize("abc123", "wrong") is Verdict.ALLOWED

    @pytest.mark.asyncio
    async def test_no_match_is_denied(self, key_file: Path):
        assert await _authorizer(key_file).authorize("wrong", "also-wrong") is Verdict.DENIED

    @pytest.mark.asyncio
    async def test_no_credentials_is_denied(self, key_file: Path):
        assert await _authorizer(key_file).authorize(None, None) is Verdict.DENIED

    @pytest.mark.asyncio
    async def test_comparison_is_exact(self, key_file: Path):
        authorizer = _authorizer(key_file)
        assert await authorizer.authorize("ABC123", None) is Verdict.DENIED
        assert await authorizer.authorize(" abc123", None) is Verdict.DENIED
        assert await authorizer.authorize("abc12", None) is Verdict.DENIED

    @pytest.mark.asyncio
    async def test_undecryptable_key_file_denies(self, key_file: Path):
        assert await _authorizer(key_file, "wrong").authorize("abc123", None) is Verdict.DENIED


class TestMisconfiguration:
    @pytest.mark.asyncio
    async def test_missing_key_file_is_misconfigured(self):
        verdict = await _authorizer(None).authorize("abc123", None)
        assert verdict is Verdict.MISCONFIGURED
        assert verdict.allowed is False

    @pytest.mark.asyncio
    async def test_missing_passphrase_is_misconfigured(self, key_file: Path):
        assert await _authorizer(key_file, None).authorize("abc123", None) is Verdict.MISCONFIGURED

    @pytest.mark.asyncio
    async def test_diagnostic_logged_once(self, logs):
        authorizer = _authorizer(None)
        for _ in range(3):
            await authorizer.authorize("abc123", None)

        diagnostics = [e for e in logs if e["event"] == "authorization_misconfigured"]
        assert len(diagnostics) == 1
        assert diagnostics[0]["log_level"] == "warning"
        assert "key_file_path" in diagnostics[0]["detail"]
        assert DEFAULT_PASSPHRASE_ENV in diagnostics[0]["detail"]
