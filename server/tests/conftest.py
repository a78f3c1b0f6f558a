# ─────────────────────────────────────────────────────────────────────────────
# Test Fixtures — shared across all tests
# ─────────────────────────────────────────────────────────────────────────────


from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
import structlog
from fastapi.testclient import TestClient
from structlog.testing import capture_logs

from servicekit.config import DEFAULT_PASSPHRASE_ENV, Settings
from servicekit.keyfile import encrypt_file
from servicekit.service import Service

PASSPHRASE = "pass123"
KEYS = ("abc123", "xyz789")


@pytest.fixture
def passphrase(monkeypatch: pytest.MonkeyPatch) -> str:
    """Expose the key-file passphrase through the environment."""
    monkeypatch.setenv(DEFAULT_PASSPHRASE_ENV, PASSPHRASE)
    return PASSPHRASE


@pytest.fixture(autouse=True)
def no_ambient_passphrase(monkeypatch: pytest.MonkeyPatch) -> None:
    """Tests start without a passphrase unless they ask for one."""
    monkeypatch.delenv(DEFAULT_PASSPHRASE_ENV, raising=False)


@pytest.fixture
def key_file(tmp_path: Path) -> Path:
    """Encrypted key file holding KEYS, with a blank line between them."""
    source = tmp_path / "keys.txt"
    source.write_bytes(("\n\n".join(KEYS) + "\n").encode("utf-8"))
    dest = tmp_path / "keys.enc"
    encrypt_file(source, dest, PASSPHRASE)
    return dest


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    """Settings for testing — console logs, no log files unless requested."""

    def _make(**overrides) -> Settings:
        values = {
            "app_name": "Test",
            "log_directory": None,
            "view_directory": tmp_path / "views",
            "log_json": False,
            "log_level": "DEBUG",
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def make_service(make_settings: Callable[..., Settings]) -> Callable[..., Service]:
    """Build a Service whose logging counts as already configured.

    The lazy setup would otherwise call structlog.configure() on the first
    request and replace the capture_logs() processors mid-test.
    """

    def _make(**overrides) -> Service:
        service = Service(make_settings(**overrides))
        service.context.logging.configured = True
        return service

    return _make


@pytest.fixture
def logs() -> Iterator[list[dict]]:
    """Captured structlog event dicts."""
    with capture_logs() as captured:
        yield captured


@pytest.fixture
def client_for() -> Iterator[Callable[..., TestClient]]:
    """TestClient factory; clients are closed after the test."""
    clients: list[TestClient] = []

    def _make(service: Service, **kwargs) -> TestClient:
        client = TestClient(service.app, **kwargs)
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.close()


def completed(captured: list[dict]) -> list[dict]:
    """Only the request_completed entries."""
    return [entry for entry in captured if entry["event"] == "request_completed"]


@pytest.fixture(autouse=True)
def reset_structlog() -> Iterator[None]:
    yield
    structlog.reset_defaults()
