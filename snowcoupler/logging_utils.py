# -*- coding: utf-8 -*-
"""Logging setup for snowcoupler (MPI-rank aware)."""

# Import logging.
import logging

# Import sys for the stream handler.
import sys


class RankFilter(logging.Filter):
    """Attach the MPI rank to every record."""

    def __init__(self, rank: int) -> None:
        super().__init__()
        self.rank = int(rank)

    def filter(self, record: logging.LogRecord) -> bool:
        record.rank = self.rank
        return True


def setup_logging(level: str = "INFO", rank: int = 0) -> logging.Logger:
    """Configure the package logger; safe to call more than once."""
    logger = logging.getLogger("snowcoupler")
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    # Drop handlers from a previous call (e.g. repeated runs in one interpreter).
    for h in list(logger.handlers):
        logger.removeHandler(h)
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RankFilter(rank))
    handler.setFormatter(
        logging.Formatter("%(asctime)s | rank%(rank)d | %(levelname)s | %(name)s | %(message)s")
    )
    logger.addHandler(handler)
    logger.propagate = False
    return logger
