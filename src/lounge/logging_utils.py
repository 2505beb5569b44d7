from __future__ import annotations

import logging
from copy import copy, deepcopy
from typing import Any
from urllib.parse import unquote

from rich.console import Console
from rich.logging import RichHandler
from uvicorn.config import LOGGING_CONFIG
from uvicorn.logging import AccessFormatter as UvicornAccessFormatter

LOGGER_NAME = "lounge"


def configure_logging(debug: bool = False, console: Console | None = None) -> logging.Logger:
    """Attach a single rich handler to the ``lounge`` logger."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=debug,
        rich_tracebacks=debug,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def _decode_path(value: str) -> str:
    return unquote(value, encoding="utf-8", errors="replace")


class Utf8AccessFormatter(UvicornAccessFormatter):
    """Access log formatter that prints percent-decoded book and chapter paths."""

    def formatMessage(self, record):  # type: ignore[override]
        args = record.args
        if not isinstance(args, tuple) or len(args) != 5:
            return super().formatMessage(record)
        client_addr, method, full_path, http_version, status_code = args
        if not isinstance(full_path, str):
            return super().formatMessage(record)
        new_record = copy(record)
        new_record.args = (client_addr, method, _decode_path(full_path), http_version, status_code)
        return super().formatMessage(new_record)


def build_uvicorn_log_config(debug: bool = False) -> dict[str, Any]:
    config = deepcopy(LOGGING_CONFIG)
    formatter = config.get("formatters", {}).get("access")
    if isinstance(formatter, dict):
        formatter["()"] = "lounge.logging_utils.Utf8AccessFormatter"
    if debug:
        for name in ("uvicorn", "uvicorn.error"):
            entry = config.get("loggers", {}).get(name)
            if isinstance(entry, dict):
                entry["level"] = "DEBUG"
    return config


__all__ = ["Utf8AccessFormatter", "build_uvicorn_log_config", "configure_logging"]
