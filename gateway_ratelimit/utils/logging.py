"""
Console logging for resolution passes.

Level and format come from Settings (GWRL_LOG_LEVEL, GWRL_LOG_FORMAT). In
JSON mode every record also carries the controller name, so lines from
several resolvers writing to one collector can be told apart.
"""
from __future__ import annotations

import logging
from typing import Optional

from pythonjsonlogger import jsonlogger

from gateway_ratelimit.config import Settings

TEXT_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _level_from_name(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def build_formatter(config: Settings) -> logging.Formatter:
    if config.LOG_FORMAT == "json":
        return jsonlogger.JsonFormatter(
            fmt=JSON_FORMAT,
            rename_fields={"levelname": "level", "name": "logger"},
            static_fields={"controller": config.CONTROLLER_NAME},
        )
    return logging.Formatter(fmt=TEXT_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z")


def setup_logging(force: bool = False, *, level: Optional[int] = None,
                  logger: Optional[logging.Logger] = None,
                  config: Optional[Settings] = None) -> None:
    """Attach a console handler to the root logger, or to the given logger.

    A logger that already has handlers is left alone unless force is set.
    An explicit level wins over the configured one.
    """
    target_logger = logger or logging.getLogger()
    if target_logger.handlers and not force:
        return

    for handler in list(target_logger.handlers):
        target_logger.removeHandler(handler)

    config = config or Settings()
    target_logger.setLevel(level if level is not None else _level_from_name(config.LOG_LEVEL))

    handler = logging.StreamHandler()
    handler.setFormatter(build_formatter(config))
    target_logger.addHandler(handler)
