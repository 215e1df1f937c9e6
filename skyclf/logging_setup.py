import json
import logging
from datetime import datetime, timezone

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

# Library loggers that are too chatty at INFO
_QUIET_LOGGERS = ("docker", "urllib3")


class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_record = {
            "timestamp": datetime.now(timezone.utc).replace(microsecond=0).isoformat(),
            "logger": record.name,
            "module": record.module,
            "level": record.levelname,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
            "thread": record.threadName,
        }
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_record)


def configure_logging(level: str = "info", json_logs: bool = False) -> logging.Logger:
    """Install a single console handler on the root logger.

    Calling this again replaces the handler installed by a previous call
    instead of stacking a second one.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(_LEVELS.get(level.lower(), logging.INFO))

    for handler in list(root_logger.handlers):
        if getattr(handler, "_skyclf_handler", False):
            root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter() if json_logs else logging.Formatter(LOG_FORMAT))
    handler._skyclf_handler = True
    root_logger.addHandler(handler)

    for logger_name in _QUIET_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    return root_logger
