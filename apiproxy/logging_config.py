import datetime
import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Iterable, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .settings import Settings, settings as default_settings


_LOGGING_CONFIGURED = False

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
REDACTED = "***REDACTED***"

# Headers that may carry caller or pooled credentials.
SENSITIVE_HEADERS = frozenset({"authorization", "x-api-key", "x-goog-api-key"})


def resolve_timezone(name: str | None) -> datetime.tzinfo:
    """
    LOG_TIMEZONE if it names a known zone, else the host's local zone.
    """
    if name:
        try:
            return ZoneInfo(name)
        except ZoneInfoNotFoundError:
            pass
    return datetime.datetime.now().astimezone().tzinfo or datetime.timezone.utc


class GatewayLogFormatter(logging.Formatter):
    """
    ISO-8601 timestamps (millisecond precision) in a fixed timezone, so
    logs from instances in different regions line up.
    """

    def __init__(self, fmt: str = LOG_FORMAT, *, tz: datetime.tzinfo | None = None):
        super().__init__(fmt)
        self.tz = tz or resolve_timezone(None)

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        stamp = datetime.datetime.fromtimestamp(record.created, tz=self.tz)
        return stamp.strftime(datefmt) if datefmt else stamp.isoformat(timespec="milliseconds")


def redact_headers(
    headers: Mapping[str, str] | Iterable[tuple[str, str]],
) -> dict[str, str]:
    """
    Copy headers into a plain dict with credential values masked.
    """
    items = headers.items() if isinstance(headers, Mapping) else headers
    return {
        key: REDACTED if key.lower() in SENSITIVE_HEADERS else value
        for key, value in items
    }


def _build_file_handler(log_dir: Path, formatter: logging.Formatter) -> logging.Handler:
    log_dir.mkdir(parents=True, exist_ok=True)
    # Rolled at midnight; a week of files is kept.
    handler = TimedRotatingFileHandler(
        log_dir / "apiproxy.log", when="midnight", backupCount=7, encoding="utf-8"
    )
    handler.setFormatter(formatter)
    # uvicorn access logs stay on the console only.
    handler.addFilter(lambda record: record.name.startswith("apiproxy"))
    return handler


def setup_logging(config: Settings | None = None, *, log_dir: Path | None = None) -> None:
    """
    Configure gateway logging.

    The "apiproxy" logger tree writes to a daily-rotated file under ./logs/
    and propagates to a root console handler shared with uvicorn.
    """
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    cfg = config or default_settings
    level = logging.getLevelName(str(cfg.log_level).upper())
    if not isinstance(level, int):
        level = logging.INFO

    formatter = GatewayLogFormatter(tz=resolve_timezone(cfg.log_timezone))

    app_logger = logging.getLogger("apiproxy")
    app_logger.setLevel(level)
    app_logger.propagate = True
    app_logger.addHandler(_build_file_handler(log_dir or Path("logs"), formatter))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    if not any(type(h) is logging.StreamHandler for h in root_logger.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    _LOGGING_CONFIGURED = True


logger = logging.getLogger("apiproxy")
