# -*- coding: utf-8 -*-
"""MPI utilities for snowcoupler.

This module provides:
- MPI initialization (optional)
- column-slab decomposition helpers shared by processes and workers
- the MPIContext capability handed to every component that communicates
"""

# Import typing primitives.
from typing import Any, List, Optional, Tuple

# Import dataclass for structured configs.
from dataclasses import dataclass

# Import logging.
import logging

# Import sys for optional early exits when MPI is disabled explicitly.
import sys

# Import numpy for counts/displacements arrays.
import numpy as np


# Try importing mpi4py; allow serial fallback.
try:
    from mpi4py import MPI  # type: ignore
    HAVE_MPI = True
except Exception:
    MPI = None  # type: ignore
    HAVE_MPI = False

logger = logging.getLogger("snowcoupler.mpi")

# Message tags for point-to-point exchanges.
TAG_CELLS = 11
TAG_SNOW = 21
TAG_SNO = 31


@dataclass(frozen=True)
class MPIConfig:
    """User-facing MPI configuration resolved from JSON/CLI."""

    enabled: bool
    local_io: bool

    @classmethod
    def from_dict(cls, cfg: dict, world_size: int | None = None) -> "MPIConfig":
        """Build MPIConfig with safe defaults."""
        world = int(world_size) if world_size is not None else 1
        enabled_raw = cfg.get("enabled", None)
        enabled = bool(enabled_raw) if enabled_raw is not None else (HAVE_MPI and world > 1)
        # If mpi4py is missing, force-disable even if the user requested it.
        if enabled and not HAVE_MPI:
            enabled = False
        local_io = bool(cfg.get("local_io", True))
        return cls(enabled=enabled, local_io=local_io)


def slab_counts_starts(total: int, parts: int) -> tuple[np.ndarray, np.ndarray]:
    """Compute slab widths and starts for `parts` consumers of `total` columns."""
    if parts < 1:
        raise ValueError(f"Cannot split {total} columns into {parts} parts")
    if total < 0:
        raise ValueError(f"Negative domain size {total}")
    # Start with floor division.
    counts = np.full(parts, total // parts, dtype=np.int64)
    # Distribute remainder to the first parts.
    counts[: (total % parts)] += 1
    # Compute starts as prefix sums of counts.
    starts = np.zeros(parts, dtype=np.int64)
    starts[1:] = np.cumsum(counts[:-1])
    return counts, starts


def array_slice_params(total: int, parts: int) -> List[Tuple[int, int]]:
    """Return `parts` (offset, width) pairs covering [0, total) without gaps."""
    counts, starts = slab_counts_starts(total, parts)
    return [(int(s), int(c)) for s, c in zip(starts, counts)]


class MPIContext:
    """Distributed coordination capability.

    Created once at process start by :func:`initialize_mpi` (or
    :meth:`serial`) and passed explicitly to the components that need rank
    information or collectives. ``finalize`` is called once at exit.
    """

    master_rank = 0

    def __init__(self, comm: Any, rank: int, size: int, world_size: int, local_io: bool = True) -> None:
        self.comm = comm
        self.rank = int(rank)
        self.size = int(size)
        self.world_size = int(world_size)
        self.local_io = bool(local_io)

    @classmethod
    def serial(cls, local_io: bool = True) -> "MPIContext":
        """Context for a single process without MPI."""
        return cls(comm=None, rank=0, size=1, world_size=1, local_io=local_io)

    @property
    def active(self) -> bool:
        """True when collectives actually cross process boundaries."""
        return self.comm is not None and self.size > 1

    @property
    def master(self) -> bool:
        return self.rank == self.master_rank

    def slice_for(self, total: int, rank: Optional[int] = None) -> tuple[int, int]:
        """Return (start, width) of the domain columns owned by a rank."""
        idx = self.rank if rank is None else int(rank)
        start, width = array_slice_params(total, self.size)[idx]
        return start, width

    def allreduce_sum(self, arr: np.ndarray) -> np.ndarray:
        """Element-wise sum of `arr` across all processes (blocking collective)."""
        if not self.active:
            return arr
        send = np.ascontiguousarray(arr, dtype=np.float64)
        recv = np.empty_like(send)
        self.comm.Allreduce(send, recv, op=MPI.SUM)
        return recv

    def allreduce_int(self, value: int) -> int:
        """Sum an integer across all processes."""
        if not self.active:
            return int(value)
        return int(self.comm.allreduce(int(value), op=MPI.SUM))

    def bcast(self, obj: Any) -> Any:
        """Broadcast a picklable object from the master."""
        if not self.active:
            return obj
        return self.comm.bcast(obj, root=self.master_rank)

    def send(self, obj: Any, dest: int, tag: int = 0) -> None:
        """Send a picklable collection; the caller must drop its reference afterwards."""
        if not self.active:
            raise RuntimeError("Point-to-point send requires an active MPI communicator")
        self.comm.send(obj, dest=int(dest), tag=tag)

    def receive(self, source: int, tag: int = 0) -> Any:
        """Receive a collection sent with :meth:`send`."""
        if not self.active:
            raise RuntimeError("Point-to-point receive requires an active MPI communicator")
        return self.comm.recv(source=int(source), tag=tag)

    def barrier(self) -> None:
        if self.active:
            self.comm.Barrier()

    def abort(self, code: int = 1) -> None:
        """Terminate every process abnormally."""
        if self.active:
            self.comm.Abort(code)
        sys.exit(code)

    def finalize(self) -> None:
        """Release MPI resources (once, at exit)."""
        if HAVE_MPI and self.comm is not None and not MPI.Is_finalized():
            MPI.Finalize()
        self.comm = None


def initialize_mpi(mpi_cfg: MPIConfig) -> MPIContext:
    """Return an MPIContext honoring user MPI preferences."""
    if not HAVE_MPI:
        return MPIContext.serial(local_io=mpi_cfg.local_io)

    world = MPI.COMM_WORLD
    world_rank = world.Get_rank()
    world_size = world.Get_size()

    # Auto-disable when only one rank is present.
    if world_size == 1:
        return MPIContext.serial(local_io=mpi_cfg.local_io)

    # Respect explicit disable requests even if launched under mpirun.
    if not mpi_cfg.enabled:
        if world_rank != 0:
            # Non-root ranks exit quietly so only rank0 proceeds in serial mode.
            MPI.Finalize()
            sys.exit(0)
        ctx = MPIContext.serial(local_io=mpi_cfg.local_io)
        ctx.world_size = world_size
        return ctx

    return MPIContext(world, world_rank, world_size, world_size, local_io=mpi_cfg.local_io)
