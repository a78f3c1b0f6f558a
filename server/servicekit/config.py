# ─────────────────────────────────────────────────────────────────────────────
# Settings — Pydantic v2 BaseSettings
# ─────────────────────────────────────────────────────────────────────────────
# Frozen once built. Services read their Settings through a ServiceContext,
# and Service.configure() refuses replacements after listen() has started.
# ─────────────────────────────────────────────────────────────────────────────


import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PASSPHRASE_ENV = "SERVICEKIT_KEY_PASSPHRASE"


class TransportSettings(BaseModel):
    """TLS material and the HTTPS enforcement switch."""

    model_config = ConfigDict(frozen=True)

    cert_path: Path | None = None
    key_path: Path | None = None
    force_secure: bool = False
    redirect_port: int = 80  # plain-HTTP listener used when force_secure is on

    @property
    def has_certificates(self) -> bool:
        return self.cert_path is not None and self.key_path is not None


class Settings(BaseSettings):
    """Service configuration sourced from arguments and environment variables.

    Environment variables use the ``SERVICEKIT_`` prefix; nested transport
    fields use ``__`` (``SERVICEKIT_TRANSPORT__FORCE_SECURE=true``).

    The logged client address is the ASGI peer. Behind a reverse proxy
    that is the proxy, unless uvicorn's ``forwarded_allow_ips`` trusts it
    or ``log_forwarded_for`` is enabled to log the first X-Forwarded-For
    entry instead.
    """

    model_config = SettingsConfigDict(
        env_prefix="SERVICEKIT_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
        frozen=True,
    )

    # ── Identity ─────────────────────────────────────────────────────────────
    app_name: str = "Service"

    # ── Filesystem ───────────────────────────────────────────────────────────
    log_directory: Path | None = Path("log")
    view_directory: Path | None = Path("views")

    # ── Authorization ────────────────────────────────────────────────────────
    key_file_path: Path | None = None
    key_passphrase_env: str = DEFAULT_PASSPHRASE_ENV
    body_credential_field: str = "authorization"

    # ── Transport ────────────────────────────────────────────────────────────
    transport: TransportSettings | None = None

    # ── Logging ──────────────────────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool = True
    normalize_loopback: bool = True  # display ::1 as 127.0.0.1
    log_forwarded_for: bool = False

    def key_passphrase(self) -> str | None:
        """Read the key-file passphrase from the process environment."""
        return os.environ.get(self.key_passphrase_env) or None

    @property
    def force_secure(self) -> bool:
        return self.transport is not None and self.transport.force_secure


@lru_cache
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
