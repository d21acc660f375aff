"""
coder-openapi :: Structured Logging

Human-readable colored output for development, JSON lines for production
and for log files. Records may carry a request id and a model id; both
formatters render them.
"""

import json
import logging
import sys
import time
from typing import List, Optional, Tuple

from coder_openapi.core.config import LoggingConfig

ROOT_LOGGER = "coder_openapi"

# Chatty third-party loggers kept at WARNING unless we run at DEBUG
_NOISY = ("aiohttp.access", "huggingface_hub", "urllib3", "filelock")

# record attribute -> short tag in human output
_TAGS = (("model", "model"), ("request_id", "req"))

_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[41m",
}
_RESET = "\033[0m"


def _record_tags(record: logging.LogRecord) -> List[Tuple[str, str]]:
    return [(attr, getattr(record, attr)) for attr, _ in _TAGS if hasattr(record, attr)]


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_record_tags(record))
        entry.update(getattr(record, "extra_data", {}))
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    """Colored single-line formatter."""

    def format(self, record: logging.LogRecord) -> str:
        color = _COLORS.get(record.levelno, "")
        ts = self.formatTime(record, "%H:%M:%S")
        msg = f"{color}{ts} [{record.levelname:>7}]{_RESET} {record.name}: {record.getMessage()}"
        short = dict(_TAGS)
        tags = [f"{short[attr]}={value}" for attr, value in _record_tags(record)]
        if tags:
            msg += " [" + " ".join(tags) + "]"
        if record.exc_info and record.exc_info[1]:
            msg += "\n" + self.formatException(record.exc_info)
        return msg


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the coder_openapi logger tree.

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON lines on stderr instead of colored text
        log_file: optional file, always written as JSON
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()
    logger.propagate = False

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(JSONFormatter() if json_output else HumanFormatter())
    logger.addHandler(console)

    if log_file:
        fh = logging.FileHandler(log_file)
        fh.setFormatter(JSONFormatter())
        logger.addHandler(fh)

    third_party_level = logging.DEBUG if logger.level <= logging.DEBUG else logging.WARNING
    for name in _NOISY:
        logging.getLogger(name).setLevel(third_party_level)

    return logger


def configure_from(config: LoggingConfig) -> logging.Logger:
    return setup_logging(config.level, json_output=config.json, log_file=config.file)


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


class RequestLogger(logging.LoggerAdapter):
    """
    Logger bound to one chat-completion request.

    Keyword arguments other than the standard logging ones end up in the
    record's extra_data, e.g. log.info("done", completion_tokens=4).
    """

    _PASSTHROUGH = ("exc_info", "stack_info", "stacklevel")

    def __init__(self, request_id: str, model: str, logger: Optional[logging.Logger] = None):
        super().__init__(logger or get_logger(f"{ROOT_LOGGER}.request"),
                         {"request_id": request_id, "model": model})
        self.start_time = time.perf_counter()

    def process(self, msg, kwargs):
        data = {key: kwargs.pop(key) for key in list(kwargs) if key not in self._PASSTHROUGH}
        kwargs["extra"] = dict(self.extra, extra_data=data)
        return msg, kwargs

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.start_time) * 1000
