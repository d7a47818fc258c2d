"""A basic logging helper shared by the command-line tools."""
import logging
import sys

LOG_FORMAT = "%(levelname)s: %(message)s"

LEVEL_NAMES = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def setup_logging(level=logging.INFO, fmt=LOG_FORMAT):
    """Route log records to stdout at ``level`` (an int or a name like "DEBUG")."""
    if isinstance(level, str):
        name = level.strip().upper()
        if name not in LEVEL_NAMES:
            raise ValueError(f"Unknown log level {level!r}; expected one of {', '.join(LEVEL_NAMES)}")
        level = getattr(logging, name)
    logging.basicConfig(
        level=level,
        format=fmt,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )
