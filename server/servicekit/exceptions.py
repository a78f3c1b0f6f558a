# ─────────────────────────────────────────────────────────────────────────────
# Custom Exceptions + FastAPI Exception Handlers
# ─────────────────────────────────────────────────────────────────────────────


import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = structlog.get_logger(__name__)


# ── Exception hierarchy ──────────────────────────────────────────────────────


class ServiceKitError(Exception):
    """Base exception for all servicekit errors."""

    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ConfigurationMissingError(ServiceKitError):
    """Describes the state where private routes have no key material.

    Never raised on the request path: the authorizer degrades to a denial
    and logs this message once for the operator.
    """

    def __init__(self, passphrase_env: str):
        super().__init__(
            "Private routes need both a key_file_path setting and the "
            f"{passphrase_env} environment variable; denying all private requests",
            status_code=403,
        )


class DecryptionError(ServiceKitError):
    """Raised when ciphertext cannot be decrypted with the given passphrase."""

    def __init__(self, reason: str = "wrong passphrase or corrupt ciphertext"):
        super().__init__(f"Decryption failed: {reason}")


class TransportCertUnreadableError(ServiceKitError):
    """Raised at startup when secure transport is requested but unusable."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"TLS file '{path}' is unreadable: {reason}")


class MissingHostError(ServiceKitError):
    """Raised when an insecure request must be redirected but has no host.

    Neither a Host header nor the server address is available to build the
    https target, so the request is rejected instead of served in plaintext.
    """

    def __init__(self, path: str):
        super().__init__(
            f"Cannot redirect '{path}' to https: the request names no host",
            status_code=400,
        )


class ConfigurationLockedError(ServiceKitError):
    """Raised when configuration is replaced after the server started."""

    def __init__(self):
        super().__init__("Configuration cannot change once the service is listening")


# ── Handler registration ────────────────────────────────────────────────────


def register_exception_handlers(app: FastAPI) -> None:
    """Register servicekit exception handlers on the FastAPI app.

    Handlers that raise ServiceKitError subclasses get a structured JSON
    response with the error's status code.
    """

    @app.exception_handler(ServiceKitError)
    async def servicekit_error_handler(request: Request, exc: ServiceKitError) -> JSONResponse:
        logger.error("servicekit_error", error=exc.message, error_type=type(exc).__name__)
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": exc.message, "type": type(exc).__name__},
        )
