"""
Logging configuration for tiercache.

Every component logs through a ``CacheLogger``, which stamps records with
the component name, the cache operation and any keyword fields. Records
emitted inside a ``CorrelationContext`` (one maintenance job run, for
example) share a correlation ID.
"""

import json
import logging
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Optional, Union
from uuid import uuid4

correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)

# Attributes every LogRecord carries; anything else came in through `extra`
_RESERVED_ATTRS = frozenset(vars(logging.makeLogRecord({})).keys()) | {'message', 'asctime'}

_NOISY_LOGGERS = ('sqlalchemy', 'aiosqlite', 'asyncio')


class CorrelationFilter(logging.Filter):
    """Fill in correlation ID, component and operation on every record."""

    def filter(self, record):
        record.correlation_id = correlation_id.get() or '-'
        if not hasattr(record, 'component'):
            record.component = record.name.rsplit('.', 1)[-1]
        if not hasattr(record, 'operation'):
            record.operation = '-'
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record, including fields passed as extras."""

    def format(self, record):
        payload = {
            'timestamp': datetime.utcnow().isoformat() + 'Z',
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'correlation_id': getattr(record, 'correlation_id', '-'),
            'component': getattr(record, 'component', '-'),
            'operation': getattr(record, 'operation', '-'),
            'line': record.lineno,
        }

        for key, value in record.__dict__.items():
            if key not in payload and key not in _RESERVED_ATTRS and not key.startswith('_'):
                payload[key] = value

        if record.exc_info:
            exc_type, exc_value, exc_tb = record.exc_info
            payload['exception'] = {
                'type': exc_type.__name__,
                'message': str(exc_value),
                'traceback': traceback.format_exception(exc_type, exc_value, exc_tb),
            }

        return json.dumps(payload, default=str)


class ColoredFormatter(logging.Formatter):
    """Console formatter: colored level, then component and correlation ID."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def format(self, record):
        line = super().format(record)
        color = self.COLORS.get(record.levelname, '')
        component = getattr(record, 'component', '-')
        corr = getattr(record, 'correlation_id', '-')[:8]
        return f"{color}{line}{self.RESET} [{component}] [{corr}]"


class CacheLogger:
    """Logger wrapper that stamps every record with component and operation."""

    def __init__(self, name: str, component: str = None):
        self.logger = logging.getLogger(name)
        self.component = component or name.split('.')[-1]

    def _log(self, level: int, message: str, operation: Optional[str], exc_info: bool = False, **fields):
        if not self.logger.isEnabledFor(level):
            return
        extra = {'component': self.component, 'operation': operation or '-', **fields}
        self.logger.log(level, message, exc_info=exc_info, extra=extra)

    def debug(self, message: str, operation: str = None, **fields):
        self._log(logging.DEBUG, message, operation, **fields)

    def info(self, message: str, operation: str = None, **fields):
        self._log(logging.INFO, message, operation, **fields)

    def warning(self, message: str, operation: str = None, **fields):
        self._log(logging.WARNING, message, operation, **fields)

    def error(self, message: str, operation: str = None, **fields):
        self._log(logging.ERROR, message, operation, **fields)

    def exception(self, message: str, operation: str = None, **fields):
        """Log at ERROR with the active exception's traceback."""
        self._log(logging.ERROR, message, operation, exc_info=True, **fields)


class LoggingConfig:
    """Root logger setup for applications embedding tiercache."""

    DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    @classmethod
    def setup_logging(
        cls,
        level: Union[str, int] = logging.INFO,
        format_type: str = 'json',
        log_file: Optional[str] = None,
        console_output: bool = True,
    ):
        """
        Install handlers on the root logger.

        Args:
            level: Logging level
            format_type: 'json', 'colored', or 'standard' for the console
            log_file: Optional file that always receives JSON lines
            console_output: Log to stdout
        """
        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()

        correlation_filter = CorrelationFilter()
        handlers = []

        if console_output:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setFormatter(cls._build_formatter(format_type))
            handlers.append(console_handler)

        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(JSONFormatter())
            handlers.append(file_handler)

        for handler in handlers:
            handler.setLevel(level)
            handler.addFilter(correlation_filter)
            root_logger.addHandler(handler)

        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

        CacheLogger(__name__, 'logging_config').info(
            "Logging system initialized",
            operation="setup_logging",
            format_type=format_type,
            log_file=log_file
        )

    @classmethod
    def _build_formatter(cls, format_type: str) -> logging.Formatter:
        if format_type == 'json':
            return JSONFormatter()
        if format_type == 'colored':
            return ColoredFormatter(cls.DEFAULT_FORMAT)
        return logging.Formatter(cls.DEFAULT_FORMAT)


class CorrelationContext:
    """Tag every record logged inside the block with one correlation ID."""

    def __init__(self, correlation_id_value: str = None):
        self.correlation_id_value = correlation_id_value or uuid4().hex
        self._token = None

    def __enter__(self):
        self._token = correlation_id.set(self.correlation_id_value)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        correlation_id.reset(self._token)


def get_logger(name: str, component: str = None) -> CacheLogger:
    """Get a component logger."""
    return CacheLogger(name, component)


def get_correlation_id() -> Optional[str]:
    """Get current correlation ID."""
    return correlation_id.get()
