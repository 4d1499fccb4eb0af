"""Logging setup shared by the dgrep entry points."""

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level: str = "WARNING") -> None:
    """Send dgrep log records to stderr at the given level.

    Stdout is left to the report so the two never interleave.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger("dgrep")
    root.handlers[:] = [handler]
    root.setLevel(level.upper())
    root.propagate = False

    logging.getLogger("asyncio").setLevel(logging.WARNING)
