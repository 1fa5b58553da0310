# -*- coding: utf-8 -*-
"""Shared-memory parallel helpers (thread-based)."""

from __future__ import annotations

# Import dataclass for structured config.
from dataclasses import dataclass

# Import typing primitives.
from typing import Callable, List, Sequence, TypeVar

# Import stdlib helpers.
from concurrent.futures import ThreadPoolExecutor
import os

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class SharedMemoryConfig:
    """Number of worker slices (and threads) per process."""

    workers: int

    @classmethod
    def from_dict(cls, cfg: dict) -> "SharedMemoryConfig":
        """Build config from the raw ``compute`` dictionary."""
        raw_workers = cfg.get("workers", None)
        # Default: use hardware concurrency if available.
        workers = int(raw_workers) if raw_workers not in (None, "") else max(1, os.cpu_count() or 1)
        return cls(workers=max(1, workers))


def parallel_map(fn: Callable[[T], R], items: Sequence[T], workers: int) -> List[R]:
    """Apply ``fn`` to every item and return results in item order.

    All tasks are joined before returning. An exception escaping ``fn`` is
    re-raised here, after every task finished.
    """
    if workers <= 1 or len(items) <= 1:
        return [fn(item) for item in items]
    with ThreadPoolExecutor(max_workers=workers) as ex:
        futures = [ex.submit(fn, item) for item in items]
        # Leaving the context waits for every future.
    return [fut.result() for fut in futures]
