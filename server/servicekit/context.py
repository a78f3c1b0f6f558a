# ─────────────────────────────────────────────────────────────────────────────
# Service Context — every per-process collaborator, built from one Settings
# ─────────────────────────────────────────────────────────────────────────────
# No module-level state: the key cache, the authorizer's one-time diagnostic
# and the logging guard all live here, owned by a Service.
# ─────────────────────────────────────────────────────────────────────────────


from dataclasses import dataclass

from servicekit.auth import Authorizer
from servicekit.config import Settings
from servicekit.keystore import KeyStore
from servicekit.logging_config import LoggingSetup
from servicekit.request_log import ResponseLogger
from servicekit.transport import TransportGuard


@dataclass(frozen=True)
class ServiceContext:
    settings: Settings
    logging: LoggingSetup
    key_store: KeyStore
    authorizer: Authorizer
    transport_guard: TransportGuard
    response_logger: ResponseLogger

    @classmethod
    def from_settings(cls, settings: Settings) -> "ServiceContext":
        logging_setup = LoggingSetup(settings)
        key_store = KeyStore(settings.key_file_path, settings.key_passphrase())
        return cls(
            settings=settings,
            logging=logging_setup,
            key_store=key_store,
            authorizer=Authorizer(key_store, passphrase_env=settings.key_passphrase_env),
            transport_guard=TransportGuard(settings.transport),
            response_logger=ResponseLogger(
                settings.app_name,
                logging_setup,
                normalize_loopback=settings.normalize_loopback,
                log_forwarded_for=settings.log_forwarded_for,
                redact_fields=frozenset({settings.body_credential_field}),
            ),
        )
