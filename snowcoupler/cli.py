# -*- coding: utf-8 -*-
"""Command line interface for snowcoupler."""

# Import argparse for CLI parsing.
import argparse

# Import typing primitives.
from typing import Optional, Sequence


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    # Create argument parser with a program name.
    ap = argparse.ArgumentParser(prog="snowcoupler")
    # Configuration file path.
    ap.add_argument("--config", default="config.json", help="Path to configuration JSON file.")
    # Logging level.
    ap.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    # Common operational overrides for pipelines.
    ap.add_argument("--start", default=None, help="Simulation start (ISO-8601).")
    ap.add_argument("--end", default=None, help="Simulation end (ISO-8601).")
    ap.add_argument("--restart", action="store_true", help="Read coordinate-keyed initial profiles.")
    ap.add_argument("--snowpath", default=None, help="Directory holding initial snow profiles.")
    ap.add_argument("--grid-path", default=None, help="Directory for gridded output.")
    ap.add_argument("--workers", default=None, type=int, help="Worker threads per process.")
    ap.add_argument(
        "--mpi-mode",
        default=None,
        choices=["auto", "enabled", "disabled"],
        help="Force MPI on/off or auto-detect based on launcher.",
    )
    ap.add_argument(
        "--gather-io",
        action="store_true",
        help="Gather special points and checkpoints on rank0 instead of writing them per rank.",
    )
    # Return parsed args.
    return ap.parse_args(argv)
