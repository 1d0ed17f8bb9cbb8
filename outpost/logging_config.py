"""Logging setup for the outpost agent."""

import logging
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def setup_logging(
    level: Union[int, str] = logging.INFO, log_file: Optional[Path] = None
) -> logging.Logger:
    """Configure the ``outpost`` logger with console and optional file output.

    Calling it again replaces the handlers installed by the previous call.
    """
    if isinstance(level, str):
        level = _LEVELS.get(level.lower(), logging.INFO)

    root = logging.getLogger("outpost")
    root.setLevel(level)
    for handler in list(root.handlers):
        if getattr(handler, "_outpost_handler", False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    handlers = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, mode="a"))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler._outpost_handler = True
        root.addHandler(handler)

    root.propagate = False
    return root
