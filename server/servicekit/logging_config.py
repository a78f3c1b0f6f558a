# ─────────────────────────────────────────────────────────────────────────────
# Logging Configuration — structlog to stdout + date-named log files
# ─────────────────────────────────────────────────────────────────────────────


import datetime
import logging
import sys
from pathlib import Path

import structlog

from servicekit.config import Settings


class DatedFileHandler(logging.FileHandler):
    """Write to ``<directory>/<YYYY-MM-DD>.log``, switching files at midnight."""

    def __init__(self, directory: Path, encoding: str = "utf-8"):
        self._directory = Path(directory)
        self._directory.mkdir(parents=True, exist_ok=True)
        self._date = datetime.date.today()
        super().__init__(self._path_for(self._date), encoding=encoding, delay=True)

    def _path_for(self, date: datetime.date) -> str:
        return str(self._directory / f"{date.isoformat()}.log")

    def emit(self, record: logging.LogRecord) -> None:
        today = datetime.date.today()
        if today != self._date:
            self.acquire()
            try:
                self.close()
                self._date = today
                self.baseFilename = self._path_for(today)
            finally:
                self.release()
        super().emit(record)


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    log_directory: Path | None = None,
) -> None:
    """Configure structlog for structured logging.

    JSON output gives one parseable object per line with timestamp, level,
    logger name, and structured fields. Console output is used for local
    development (human-readable). When ``log_directory`` is set the same
    lines are also written to a file named after the current date.

    Note: structlog >=25.4 is required for Python 3.13.4+ compatibility
    (fixes a backwards-incompatible change in logging.Logger.isEnabledFor).
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[*shared_processors, renderer],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)

    if log_directory is not None:
        # Files always get JSON so they stay machine-parseable.
        file_handler = DatedFileHandler(log_directory)
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processors=[*shared_processors, structlog.processors.JSONRenderer()],
            )
        )
        root.addHandler(file_handler)

    root.setLevel(getattr(logging, log_level.upper()))


class LoggingSetup:
    """Run configure_logging() at most once for a service.

    Called eagerly from listen() and lazily by the response logger, so a
    request that arrives before startup still finds logging configured.
    """

    def __init__(self, settings: Settings):
        self._settings = settings
        self.configured = False

    def ensure(self) -> None:
        if self.configured:
            return
        self.configured = True
        configure_logging(
            log_level=self._settings.log_level,
            json_output=self._settings.log_json,
            log_directory=self._settings.log_directory,
        )
