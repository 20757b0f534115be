from __future__ import annotations

import logging

from rich.logging import RichHandler

_HANDLER_NAME = "datasmith-rich"


def level_for_verbosity(verbosity: int) -> int:
    if verbosity >= 2:
        return logging.DEBUG
    if verbosity == 1:
        return logging.INFO
    return logging.WARNING


def configure_logging(verbosity: int = 0) -> None:
    root = logging.getLogger()
    level = level_for_verbosity(verbosity)
    root.setLevel(level)
    if any(getattr(h, "name", None) == _HANDLER_NAME for h in root.handlers):
        return
    handler = RichHandler(rich_tracebacks=True, show_path=False, markup=False)
    handler.name = _HANDLER_NAME
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root.addHandler(handler)
