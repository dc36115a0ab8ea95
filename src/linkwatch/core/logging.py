"""Logging setup for the monitoring service.

Settings come from the ``logging`` section of ``config/local.yml``::

    logging:
      directory: /var/log/linkwatch
      filename: linkwatch.log
      level: INFO
      max_bytes: 5242880
      backup_count: 5

The service runs for weeks, so the log file rotates by size. When the
configured directory cannot be written, ``./logs`` is used instead and a
warning is logged once the handlers are in place.
"""

from __future__ import annotations

import logging
import re
import sys
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Mapping

import yaml

PROJECT_ROOT = Path(__file__).resolve().parents[3]
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config" / "local.yml"
FALLBACK_DIRECTORY = Path("./logs")

LOG_FORMAT = "%(asctime)s | %(levelname)s | device=%(device)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that flood INFO with per-request or per-packet lines.
NOISY_LOGGERS = ("paramiko", "apscheduler", "httpx", "httpcore")


@dataclass(slots=True)
class LogSettings:
    directory: Path = Path("/var/log/linkwatch")
    filename: str = "linkwatch.log"
    level: int = logging.INFO
    max_bytes: int = 5 * 1024 * 1024
    backup_count: int = 5

    @classmethod
    def from_mapping(cls, section: Mapping[str, Any]) -> LogSettings:
        defaults = cls()
        directory = section.get("directory")
        return cls(
            directory=Path(directory).expanduser() if directory else defaults.directory,
            filename=str(section.get("filename") or defaults.filename),
            level=parse_level(section.get("level"), defaults.level),
            max_bytes=int(section.get("max_bytes") or defaults.max_bytes),
            backup_count=int(section.get("backup_count") or defaults.backup_count),
        )


class RecordContextFilter(logging.Filter):
    """Fill in ``device`` and redact credentials before a record is emitted."""

    REDACT_PATTERN = re.compile(r"\b(password|passwd|secret|token|sid)=([^\s;:&]+)", re.IGNORECASE)

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "device", None):
            record.device = "-"

        try:
            message = record.getMessage()
        except (TypeError, ValueError):  # pragma: no cover - malformed record
            return True
        redacted = self.REDACT_PATTERN.sub(r"\1=***", message)
        if redacted != message:
            record.msg, record.args = redacted, ()
        return True


def parse_level(value: Any, default: int = logging.INFO) -> int:
    """Accept ``"debug"``, ``"INFO"`` or a numeric level."""

    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        level = logging.getLevelName(value.strip().upper())
        if isinstance(level, int):
            return level
    return default


def read_log_settings(config_path: Path) -> LogSettings:
    """Return the ``logging`` section of ``config_path`` or the defaults."""

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        return LogSettings()
    except (OSError, yaml.YAMLError):  # pragma: no cover - unreadable file
        return LogSettings()

    section = data.get("logging") if isinstance(data, Mapping) else None
    return LogSettings.from_mapping(section if isinstance(section, Mapping) else {})


def _first_writable(*candidates: Path) -> Path:
    for candidate in candidates:
        try:
            candidate.mkdir(parents=True, exist_ok=True)
            marker = candidate / ".write-test"
            marker.touch()
            marker.unlink()
        except OSError:
            continue
        return candidate
    raise OSError(f"None of the log directories is writable: {', '.join(map(str, candidates))}")


def setup_logging(config_path: str | Path | None = None, cli_level: int | None = None) -> logging.Logger:
    """Install file and stdout handlers on the root logger.

    ``cli_level`` (from ``--debug``) wins over ``logging.level``. Returns the
    ``linkwatch`` logger.
    """

    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    if not path.is_absolute():
        path = PROJECT_ROOT / path
    settings = read_log_settings(path)
    level = settings.level if cli_level is None else cli_level

    directory = _first_writable(settings.directory, FALLBACK_DIRECTORY)
    log_path = directory / settings.filename

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    context_filter = RecordContextFilter()
    handlers: list[logging.Handler] = [
        RotatingFileHandler(
            log_path, maxBytes=settings.max_bytes, backupCount=settings.backup_count, encoding="utf-8"
        ),
        logging.StreamHandler(sys.stdout),
    ]

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(level)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)
        root.addHandler(handler)

    third_party_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(third_party_level)

    logger = logging.getLogger("linkwatch")
    if not path.exists():
        logger.info("No logging settings at %s, using defaults.", path)
    if directory != settings.directory:
        logger.warning("Log directory %s is not writable, using %s instead.", settings.directory, directory)
    logger.info("Logging to %s at level %s", log_path, logging.getLevelName(level))
    return logger
