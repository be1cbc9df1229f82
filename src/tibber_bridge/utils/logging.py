"""Log output for the bridge: JSON lines for collectors, text for terminals."""

import json
import logging
import sys
from datetime import datetime, timezone

from ..config.settings import LoggingConfig


# Present on every LogRecord; anything else was passed through `extra`
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message"}

_LEVEL_COLORS = {
    logging.DEBUG: '\033[36m',
    logging.INFO: '\033[32m',
    logging.WARNING: '\033[33m',
    logging.ERROR: '\033[31m',
    logging.CRITICAL: '\033[35m',
}
_RESET = '\033[0m'

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = {
    'websockets': logging.INFO,
    'aiohttp': logging.WARNING,
    'urllib3': logging.WARNING,
    'influxdb_client': logging.WARNING,
}


def _utc(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


class JSONFormatter(logging.Formatter):
    """One JSON object per record, including any `extra` attributes."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': _utc(record).isoformat(timespec='milliseconds').replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        entry.update(
            (key, value) for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS
        )
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """``2024-01-01 00:00:00 [INFO] logger: message``, level colored on a tty."""

    def __init__(self, use_colors: bool = False):
        super().__init__()
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        level = record.levelname
        if self.use_colors and record.levelno in _LEVEL_COLORS:
            level = f"{_LEVEL_COLORS[record.levelno]}{level}{_RESET}"

        line = f"{_utc(record):%Y-%m-%d %H:%M:%S} [{level}] {record.name}: {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ServiceContextFilter(logging.Filter):
    """Stamps every record with the service name."""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def filter(self, record):
        record.service = self.service_name
        return True


def _make_handler(output: str) -> logging.Handler:
    target = output.lower()
    if target == 'stdout':
        return logging.StreamHandler(sys.stdout)
    if target == 'stderr':
        return logging.StreamHandler(sys.stderr)
    return logging.FileHandler(output)


def setup_logging(config: LoggingConfig, service_name: str = "tibber-influx-bridge") -> None:
    """
    Route all logging through a single handler on the root logger.

    Args:
        config: Level, format (json, pretty or plain) and output (stdout,
            stderr or a file path)
        service_name: Added to every record as ``service``
    """
    if config.format == 'json':
        formatter = JSONFormatter()
    else:
        formatter = TextFormatter(use_colors=config.format == 'pretty')

    handler = _make_handler(config.output)
    handler.setFormatter(formatter)
    handler.addFilter(ServiceContextFilter(service_name))

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.level.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(handler)

    for name, level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    logging.getLogger(__name__).info(
        f"Logging configured: level={config.level}, format={config.format}, "
        f"output={config.output}, service={service_name}"
    )
