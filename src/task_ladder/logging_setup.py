"""Stderr logging for the CLI; stdout carries only the JSON result."""

from __future__ import annotations

import logging
import sys

_HANDLER_NAME = "task-ladder-stderr"
_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level_name: str) -> None:
    """Attach one stderr handler to the package logger, replacing a previous one.

    ``level_name`` must already be validated by ``Settings.validate``.
    """

    package_logger = logging.getLogger("task_ladder")
    for handler in list(package_logger.handlers):
        if handler.get_name() == _HANDLER_NAME:
            package_logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(_FORMAT))
    package_logger.addHandler(handler)
    package_logger.setLevel(level_name)
