"""
Logger factory for prion_fem modules.

Messages go to stdout (and optionally to a log file). When a process group
is given, only its rank 0 emits records, so parallel runs print each line
once.
"""

import logging
import os
import sys
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .parallel import ProcessGroup


def _default_filename_for(name: str) -> str:
    # 'prion_fem.newton' -> 'prion_fem_newton.log'
    return f"{name.replace('.', '_')}.log"


class RootRankFilter(logging.Filter):
    """Drop records on every rank except 0."""

    def __init__(self, rank: int):
        super().__init__()
        self.rank = rank

    def filter(self, record: logging.LogRecord) -> bool:
        return self.rank == 0


def get_logger(
    name: str,
    group: Optional["ProcessGroup"] = None,
    outdir: Optional[str] = None,
    filename: Optional[str] = None,
    level: int = logging.INFO,
    force: bool = False,
) -> logging.Logger:
    """
    Return a standardised logger.

    Args:
        name: Logger name.
        group: Process group; if given, only rank 0 emits.
        outdir: Directory for a log file (None writes to stdout only).
        filename: Log file name (default derived from ``name``).
        level: Log level.
        force: Replace existing handlers to allow reconfiguration.

    Returns:
        The configured logger.
    """
    logger = logging.getLogger(name)

    if logger.handlers and not force:
        return logger

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for flt in list(logger.filters):
        logger.removeFilter(flt)

    logger.setLevel(level)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(stream_handler)

    if outdir is not None:
        os.makedirs(outdir, exist_ok=True)
        filepath = os.path.join(outdir, filename or _default_filename_for(name))
        file_handler = logging.FileHandler(filepath)
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(file_handler)

    if group is not None:
        logger.addFilter(RootRankFilter(group.rank))

    logger.propagate = False

    return logger
