"""
Logging configuration for Attendance Service.

Every record carries the service name and the thread it was logged from, so
lines from extraction workers and background jobs can be told apart. Output
goes to stdout and, when a log file is configured, to a rotating file.
"""

import logging
import logging.handlers
import os
import sys
from typing import Optional

LOG_FORMAT = '[%(levelname)s] [service=%(service)s] [%(threadName)s] %(message)s'

# Third-party loggers that are chatty at INFO
_NOISY_LOGGERS = ('werkzeug', 'urllib3')


class ServiceContextFilter(logging.Filter):
    """Stamp the service name on every record."""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self.service_name
        return True


def setup_logging(
    service_name: str,
    debug: bool = False,
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> None:
    """
    Configure root logging for the service.

    Args:
        service_name: Service name for log context
        debug: Enable debug level logging (also un-mutes werkzeug/urllib3)
        log_file: Optional path of a rotating log file
        max_bytes: Rotate the log file at this size
        backup_count: Rotated files to keep
    """
    level = logging.DEBUG if debug else logging.INFO
    formatter = logging.Formatter(LOG_FORMAT)
    context = ServiceContextFilter(service_name)

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
        ))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(context)
        root_logger.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if debug else logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
