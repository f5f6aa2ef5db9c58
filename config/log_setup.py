"""
config/log_setup.py
One-line JSON logs for the API and the Celery workers. The API tags every
record emitted while serving a request with that request's id.
"""

import json
import logging
import os
from contextvars import ContextVar
from typing import Optional

from config.settings import settings

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Libraries that log every request or statement at INFO
_NOISY = ("httpx", "httpcore", "sqlalchemy.engine", "twilio.http_client")


class JSONFormatter(logging.Formatter):
    def __init__(self, component: str):
        super().__init__()
        self.component = component

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "logger": record.name,
            "component": self.component,
            "instance": os.getenv("INSTANCE_NAME", "local"),
            "msg": record.getMessage(),
        }
        request_id = request_id_var.get()
        if request_id:
            entry["request_id"] = request_id
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(component: str = "api") -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter(component))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)

    for name in _NOISY:
        logging.getLogger(name).setLevel(logging.WARNING)
