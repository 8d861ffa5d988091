"""structlog configuration: JSON lines to the console, a rotating catalog log and per-job logs."""

from __future__ import annotations

import logging
import logging.config
import logging.handlers
import os
from pathlib import Path
from typing import Any, Iterable

import structlog

ROOT_LOGGER = "catalog_mirror"
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5
REDACTED_KEYS = frozenset(
    {"access_token", "authorization", "client_secret", "cookie", "secret_key", "session_cookie"}
)

_configured = False


def _log_dir() -> Path:
    home = os.environ.get("CATALOG_MIRROR_HOME")
    if home:
        return Path(home).expanduser().resolve() / "logs"
    return Path(__file__).resolve().parents[1] / "logs"


def redact_secrets(_logger: Any, _method: str, event_dict: dict) -> dict:
    """Mask credential-looking fields before they reach any handler."""

    for key in event_dict.keys() & REDACTED_KEYS:
        if event_dict[key]:
            event_dict[key] = "***"
    return event_dict


def _rotating(path: Path, level: str) -> dict:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "level": level,
        "filename": str(path),
        "maxBytes": LOG_MAX_BYTES,
        "backupCount": LOG_BACKUPS,
        "encoding": "utf-8",
        "formatter": "json",
    }


def configure_logging(verbose: bool = False) -> structlog.BoundLogger:
    """Install handlers once per process and return the application logger.

    Later calls only raise the console level when ``verbose`` is requested.
    """

    global _configured
    log_dir = _log_dir()
    (log_dir / "jobs").mkdir(parents=True, exist_ok=True)

    if _configured:
        if verbose:
            for handler in logging.getLogger(ROOT_LOGGER).handlers:
                if not isinstance(handler, logging.FileHandler):
                    handler.setLevel(logging.DEBUG)
            logging.getLogger(ROOT_LOGGER).setLevel(logging.DEBUG)
        return structlog.get_logger(ROOT_LOGGER)

    level = "DEBUG" if verbose else "INFO"
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "json": {
                    "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                    "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                }
            },
            "handlers": {
                "console": {"class": "logging.StreamHandler", "level": level, "formatter": "json"},
                "catalog_file": _rotating(log_dir / "catalog.log", "INFO"),
                "error_file": _rotating(log_dir / "error.log", "ERROR"),
            },
            "loggers": {
                ROOT_LOGGER: {
                    "handlers": ["console", "catalog_file", "error_file"],
                    "level": level,
                    "propagate": False,
                },
            },
        }
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.add_log_level,
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True
    return structlog.get_logger(ROOT_LOGGER)


def job_logger(job_name: str) -> structlog.BoundLogger:
    """Logger for one background job; its records also land in ``logs/jobs/<job>.log``."""

    configure_logging()
    path = log_path(job_name)
    name = f"{ROOT_LOGGER}.job.{job_name}"
    py_logger = logging.getLogger(name)
    attached = any(
        isinstance(handler, logging.FileHandler) and handler.baseFilename == str(path)
        for handler in py_logger.handlers
    )
    if not attached:
        handler = logging.handlers.RotatingFileHandler(
            path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8"
        )
        root_handlers = logging.getLogger(ROOT_LOGGER).handlers
        if root_handlers:
            handler.setFormatter(root_handlers[0].formatter)
        handler.setLevel(logging.INFO)
        py_logger.addHandler(handler)
    return structlog.get_logger(name).bind(job=job_name)


def log_path(job_name: str | None = None) -> Path:
    if job_name:
        return _log_dir() / "jobs" / f"{job_name}.log"
    return _log_dir() / "catalog.log"


def tail_log(path: Path, line_count: int = 100) -> list[str]:
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8", errors="ignore") as stream:
        return stream.readlines()[-line_count:]


def available_job_logs() -> Iterable[Path]:
    jobs_dir = _log_dir() / "jobs"
    if not jobs_dir.exists():
        return []
    return sorted(jobs_dir.glob("*.log"))


__all__ = [
    "available_job_logs",
    "configure_logging",
    "job_logger",
    "log_path",
    "redact_secrets",
    "tail_log",
]
