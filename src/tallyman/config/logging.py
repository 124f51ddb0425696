"""Root logger setup shared by the CLI and the worker."""

from __future__ import annotations

import logging

from .env import env_choice

LOG_LEVEL_VARIABLE = "TALLYMAN_LOG_LEVEL"
_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def configure_logging(*, level: int | None = None, force: bool = False) -> None:
    """Initialise the root logger once.

    Without an explicit ``level`` the ``TALLYMAN_LOG_LEVEL`` environment
    variable decides, defaulting to INFO. Records carry the thread name so the
    output of concurrent queue workers can be told apart. Pass ``force=True``
    to reconfigure during tests or specialised entry points.
    """

    if level is None:
        level = logging.getLevelNamesMapping()[env_choice(LOG_LEVEL_VARIABLE, "INFO", _LEVELS)]
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(threadName)s %(name)s] %(message)s",
        datefmt="%H:%M:%S",
        force=force,
    )
