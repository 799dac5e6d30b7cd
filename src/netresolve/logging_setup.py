"""Logging infrastructure.

Sets up the ``netresolve`` logger with a Rich console handler for
*stderr* and an optional file handler with timestamps.

Each subsystem logs under its own module name, so the chatty parts of a
resolution (``netresolve.dataflow`` propagation traces,
``netresolve.network`` merge decisions) can be turned up or down on their
own with *module_levels*.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Optional

from rich.console import Console
from rich.logging import RichHandler

from netresolve.config import ResolutionConfig

ROOT_LOGGER = "netresolve"


def _level(name: str) -> int:
    return getattr(logging, name.upper(), logging.INFO)


def _qualified(name: str) -> str:
    """``"dataflow"`` -> ``"netresolve.dataflow"``; full names are kept."""
    if name == ROOT_LOGGER or name.startswith(f"{ROOT_LOGGER}."):
        return name
    return f"{ROOT_LOGGER}.{name}"


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    *,
    console: Console | None = None,
    module_levels: Mapping[str, str] | None = None,
) -> logging.Logger:
    """Configure the ``netresolve`` logger.

    Parameters
    ----------
    level:
        Logging level name (e.g. ``"DEBUG"``, ``"INFO"``).
    log_file:
        Optional path to a log file, written with timestamps.
    console:
        Optional Rich console for the console handler.
    module_levels:
        Level names for sub-loggers, keyed by module name with or without
        the ``netresolve.`` prefix (e.g. ``{"dataflow": "DEBUG"}``).

    Returns
    -------
    logging.Logger
        The configured ``netresolve`` logger.
    """
    numeric_level = _level(level)
    overrides = {
        _qualified(name): _level(value) for name, value in (module_levels or {}).items()
    }
    # handlers must let through the most verbose of the configured levels
    handler_level = min([numeric_level, *overrides.values()])

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(numeric_level)
    logger.handlers.clear()
    for name, module_level in overrides.items():
        logging.getLogger(name).setLevel(module_level)

    rich_handler = RichHandler(
        console=console or Console(stderr=True),
        show_time=True,
        show_path=False,
        markup=False,
    )
    rich_handler.setLevel(handler_level)
    logger.addHandler(rich_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(str(log_file))
        file_handler.setLevel(handler_level)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(name)s | %(levelname)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(file_handler)

    return logger


def setup_logging_from_config(
    config: ResolutionConfig, *, console: Console | None = None
) -> logging.Logger:
    """Configure the ``netresolve`` logger from the ``log_*`` options."""
    return setup_logging(
        config.log_level,
        config.log_file,
        console=console,
        module_levels=config.log_levels,
    )
