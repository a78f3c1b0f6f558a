# ─────────────────────────────────────────────────────────────────────────────
# Key Store — lazily decrypted, process-wide API key cache
# ─────────────────────────────────────────────────────────────────────────────
# The key file is read and decrypted in a thread executor so the event loop
# keeps serving while PBKDF2 runs. An asyncio.Lock serializes the first
# decryption; requests that queued behind it find the cache already filled.
# Failures are never cached: the next request tries again.
# ─────────────────────────────────────────────────────────────────────────────


import asyncio
from pathlib import Path

import structlog

from servicekit.exceptions import DecryptionError
from servicekit.keyfile import decrypt_file

logger = structlog.get_logger(__name__)


def split_keys(plaintext: str) -> tuple[str, ...]:
    """Split decrypted key-file text into keys, dropping empty lines."""
    return tuple(line for line in plaintext.splitlines() if line)


class KeyStore:
    """In-memory cache of the API keys held in an encrypted key file.

    The store is *unconfigured* when either the key-file path or the
    passphrase is missing; ``load_keys()`` then returns an empty tuple.
    """

    def __init__(self, key_file_path: Path | None, passphrase: str | None):
        self._key_file_path = key_file_path
        self._passphrase = passphrase
        self._keys: tuple[str, ...] | None = None
        self._lock = asyncio.Lock()
        self.decrypt_count = 0

    @property
    def is_configured(self) -> bool:
        return self._key_file_path is not None and bool(self._passphrase)

    @property
    def is_loaded(self) -> bool:
        return self._keys is not None

    async def load_keys(self) -> tuple[str, ...]:
        """Return the decrypted keys, decrypting the file on first use."""
        if not self.is_configured:
            return ()
        if self._keys is not None:
            return self._keys

        async with self._lock:
            if self._keys is not None:
                return self._keys

            loop = asyncio.get_running_loop()
            try:
                keys = await loop.run_in_executor(None, self._decrypt_sync)
            except (OSError, DecryptionError) as e:
                logger.error(
                    "key_file_unavailable",
                    path=str(self._key_file_path),
                    error_type=type(e).__name__,
                )
                return ()

            self._keys = keys
            logger.info("key_file_decrypted", path=str(self._key_file_path), key_count=len(keys))
            return keys

    def _decrypt_sync(self) -> tuple[str, ...]:
        """Synchronous read + decrypt. Runs in executor."""
        self.decrypt_count += 1
        return split_keys(decrypt_file(self._key_file_path, self._passphrase))

    def invalidate(self) -> None:
        """Drop the cached keys; the next load decrypts the file again."""
        self._keys = None
        logger.info("key_cache_invalidated")
