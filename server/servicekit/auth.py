# ─────────────────────────────────────────────────────────────────────────────
# Authorizer — credential check for private routes
# ─────────────────────────────────────────────────────────────────────────────
# Design decisions:
#   - Header and body credentials are equally valid; either may match.
#   - Uses secrets.compare_digest for constant-time comparison.
#   - A missing key file or passphrase yields MISCONFIGURED, which callers
#     answer exactly like DENIED. The operator diagnostic is logged once.
# ─────────────────────────────────────────────────────────────────────────────


import enum
import secrets

import structlog

from servicekit.exceptions import ConfigurationMissingError
from servicekit.keystore import KeyStore

logger = structlog.get_logger(__name__)


class Verdict(enum.Enum):
    ALLOWED = "allowed"
    DENIED = "denied"
    MISCONFIGURED = "misconfigured"

    @property
    def allowed(self) -> bool:
        return self is Verdict.ALLOWED


class Authorizer:
    """Decide whether a request's credentials match a known API key."""

    def __init__(self, key_store: KeyStore, *, passphrase_env: str):
        self._key_store = key_store
        self._passphrase_env = passphrase_env
        self._misconfiguration_reported = False

    async def authorize(
        self, header_credential: str | None, body_credential: str | None
    ) -> Verdict:
        if not self._key_store.is_configured:
            self._report_misconfiguration()
            return Verdict.MISCONFIGURED

        candidates = [c for c in (header_credential, body_credential) if c]
        if not candidates:
            return Verdict.DENIED

        keys = await self._key_store.load_keys()
        for key in keys:
            for candidate in candidates:
                if secrets.compare_digest(candidate.encode("utf-8"), key.encode("utf-8")):
                    return Verdict.ALLOWED
        return Verdict.DENIED

    def _report_misconfiguration(self) -> None:
        if self._misconfiguration_reported:
            return
        self._misconfiguration_reported = True
        error = ConfigurationMissingError(self._passphrase_env)
        logger.warning("authorization_misconfigured", detail=error.message)
