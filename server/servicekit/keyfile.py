#!/usr/bin/env python3
"""
Key-file tooling — encrypt and decrypt newline-delimited API key files.

Operators encrypt the plain key list ahead of deployment; at runtime only
the KeyStore decrypts it. The passphrase always comes from an environment
variable, never from the command line.

File format
───────────
  servicekit1$<urlsafe-b64 salt>$<fernet token>

The Fernet key is derived from the passphrase with PBKDF2-HMAC-SHA256 and
a random per-file salt.

Usage
─────
  export SERVICEKIT_KEY_PASSPHRASE=...
  python -m servicekit.keyfile encrypt keys.txt keys.enc
  python -m servicekit.keyfile decrypt keys.enc
"""

from __future__ import annotations

import argparse
import base64
import os
import sys
import textwrap
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from servicekit.config import DEFAULT_PASSPHRASE_ENV
from servicekit.exceptions import DecryptionError

_MAGIC = b"servicekit1"
_SEPARATOR = b"$"
_SALT_BYTES = 16
_KDF_ITERATIONS = 390_000


def _derive_key(passphrase: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=_KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))


# ── Text ────────────────────────────────────────────────────────────────────


def encrypt_text(text: str, passphrase: str) -> bytes:
    """Encrypt ``text`` with a passphrase-derived key."""
    salt = os.urandom(_SALT_BYTES)
    token = Fernet(_derive_key(passphrase, salt)).encrypt(text.encode("utf-8"))
    return _SEPARATOR.join([_MAGIC, base64.urlsafe_b64encode(salt), token])


def decrypt_text(blob: bytes, passphrase: str) -> str:
    """Decrypt a blob produced by :func:`encrypt_text`.

    Raises DecryptionError for a wrong passphrase, a corrupt token or a
    blob that is not in the servicekit format.
    """
    parts = blob.strip().split(_SEPARATOR)
    if len(parts) != 3 or parts[0] != _MAGIC:
        raise DecryptionError("not a servicekit key file")

    try:
        salt = base64.urlsafe_b64decode(parts[1])
    except ValueError as e:
        raise DecryptionError("malformed salt") from e

    try:
        plaintext = Fernet(_derive_key(passphrase, salt)).decrypt(parts[2])
    except InvalidToken as e:
        raise DecryptionError() from e

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("plaintext is not UTF-8") from e


# ── Files ───────────────────────────────────────────────────────────────────


def encrypt_file(source_path: str | Path, dest_path: str | Path, passphrase: str) -> None:
    """Encrypt the text file at ``source_path`` into ``dest_path``."""
    text = Path(source_path).read_bytes().decode("utf-8")
    Path(dest_path).write_bytes(encrypt_text(text, passphrase))


def decrypt_file(path: str | Path, passphrase: str) -> str:
    """Return the plaintext of an encrypted key file, byte-for-byte."""
    return decrypt_text(Path(path).read_bytes(), passphrase)


# ── CLI ─────────────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="python -m servicekit.keyfile",
        description="Encrypt or decrypt a servicekit API key file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent(f"""\
            The passphrase is read from ${DEFAULT_PASSPHRASE_ENV}
            (or the variable named by --passphrase-env).

            Examples:
              python -m servicekit.keyfile encrypt keys.txt keys.enc
              python -m servicekit.keyfile decrypt keys.enc
        """),
    )
    parser.add_argument(
        "--passphrase-env",
        default=DEFAULT_PASSPHRASE_ENV,
        help="Environment variable holding the passphrase",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    enc = sub.add_parser("encrypt", help="Encrypt a plain key file")
    enc.add_argument("source", help="Plain newline-delimited key file")
    enc.add_argument("dest", help="Where to write the encrypted file")

    dec = sub.add_parser("decrypt", help="Print the plaintext of an encrypted key file")
    dec.add_argument("path", help="Encrypted key file")

    args = parser.parse_args(argv)

    passphrase = os.environ.get(args.passphrase_env)
    if not passphrase:
        print(f"${args.passphrase_env} is not set", file=sys.stderr)
        return 2

    if args.command == "encrypt":
        encrypt_file(args.source, args.dest, passphrase)
        print(f"Encrypted {args.source} -> {args.dest}")
        return 0

    try:
        sys.stdout.write(decrypt_file(args.path, passphrase))
    except DecryptionError as e:
        print(e.message, file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
