import logging
import sys
from datetime import datetime, timezone
from typing import IO, Optional

from pythonjsonlogger import jsonlogger

HANDLER_NAME = "reflection-json"
LOG_FORMAT = "%(timestamp)s %(level)s %(service)s %(logger)s %(message)s"

# Chatty at INFO; only shown when the service itself runs at DEBUG.
QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "httpx", "uvicorn.access")


class ReflectionJsonFormatter(jsonlogger.JsonFormatter):
    """
    One JSON object per line. Anything passed through `extra=` (session_id,
    record_id, template_id) lands as a top-level key.
    """

    def __init__(self, service: str, *args, **kwargs):
        super().__init__(LOG_FORMAT, *args, **kwargs)
        self.service = service

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record['timestamp'] = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        log_record['level'] = record.levelname
        log_record['service'] = self.service
        log_record['logger'] = record.name
        if record.levelno >= logging.WARNING:
            log_record['source'] = f"{record.module}:{record.lineno}"


def setup_logging(log_level_str: str = "INFO", service: str = "reflection-engine", stream: Optional[IO] = None):
    """
    Routes the root logger to a JSON handler on `stream` (stdout by default).
    Calling again swaps the handler instead of stacking a second one.
    """
    log_level = getattr(logging, log_level_str.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in [h for h in root_logger.handlers if h.get_name() == HANDLER_NAME]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.set_name(HANDLER_NAME)
    handler.setFormatter(ReflectionJsonFormatter(service))
    root_logger.addHandler(handler)

    quiet_level = logging.DEBUG if log_level <= logging.DEBUG else logging.WARNING
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    root_logger.info(f"JSON logging ready for {service} at {logging.getLevelName(log_level)}")
