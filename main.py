#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""snowcoupler entry point.

This file is intentionally small:
- parse CLI
- load+merge configuration
- initialize MPI (optional)
- load+broadcast domain
- run the simulation

All real logic lives in the `snowcoupler/` package.
"""

# Import logging (for module-level logger).
import logging

# Import stdlib helpers.
import importlib.util
import sys
from typing import Any, Dict, List, Optional

# Import lightweight config helpers early for shared utilities.
from snowcoupler.config import deep_update, default_config, load_json


def _require_numpy() -> None:
    """Validate that NumPy is available before importing snowcoupler modules."""
    if importlib.util.find_spec("numpy") is None:
        raise ModuleNotFoundError(
            "NumPy is required to run snowcoupler. Activate your virtual environment "
            f"or install it with '{sys.executable} -m pip install numpy'."
        )


def apply_cli_overrides(cfg: Dict[str, Any], args: Any) -> Dict[str, Any]:
    """Apply CLI overrides (only options that were explicitly supplied)."""
    if args.start is not None:
        cfg["model"]["start_time"] = args.start
    if args.end is not None:
        cfg["model"]["end_time"] = args.end
    if args.restart:
        cfg["input"]["restart"] = True
    if args.snowpath is not None:
        cfg["input"]["snowpath"] = args.snowpath
    if args.grid_path is not None:
        cfg["output"]["grid_path"] = args.grid_path
    if args.workers is not None:
        cfg.setdefault("compute", {})["workers"] = int(args.workers)
    # MPI overrides (independent from how the launcher was invoked).
    mpi_cfg_overrides = cfg.setdefault("compute", {}).setdefault("mpi", {})
    if args.mpi_mode is not None:
        if args.mpi_mode == "enabled":
            mpi_cfg_overrides["enabled"] = True
        elif args.mpi_mode == "disabled":
            mpi_cfg_overrides["enabled"] = False
        else:
            mpi_cfg_overrides["enabled"] = None
    if args.gather_io:
        mpi_cfg_overrides["local_io"] = False
    return cfg


def main(argv: Optional[List[str]] = None) -> int:
    """Program entry point."""
    _require_numpy()

    # Import CLI parser.
    from snowcoupler.cli import parse_args

    # Import configuration validation.
    from snowcoupler.config import validate_config

    # Import logging configuration.
    from snowcoupler.logging_utils import setup_logging

    # Import MPI utilities.
    from snowcoupler.mpi_utils import HAVE_MPI, MPI, MPIConfig, initialize_mpi

    # Import domain I/O.
    from snowcoupler.domain import read_domain_netcdf_rank0, bcast_domain

    # Import errors raised by a failed step.
    from snowcoupler.errors import StepFailedError

    # Import simulation driver.
    from snowcoupler.simulation import run_simulation, summarize

    # Parse command-line arguments into a structured namespace.
    args = parse_args(argv)

    # Defaults, then the user file, then CLI overrides.
    cfg = default_config()
    cfg = deep_update(cfg, load_json(args.config))
    cfg = apply_cli_overrides(cfg, args)
    validate_config(cfg)

    # Resolve MPI preferences and initialize the coordination context.
    world_size_guess = MPI.COMM_WORLD.Get_size() if HAVE_MPI else 1
    mpi_cfg = MPIConfig.from_dict(cfg.get("compute", {}).get("mpi", {}), world_size=world_size_guess)
    ctx = initialize_mpi(mpi_cfg)

    # Configure logging (include rank so MPI logs are distinguishable).
    setup_logging(args.log_level, ctx.rank)
    logger = logging.getLogger("snowcoupler")
    if ctx.master and not ctx.active and ctx.world_size > 1:
        logger.info(
            "MPI explicitly disabled in configuration; running serial on rank0 (world_size=%d).",
            ctx.world_size,
        )

    # Load domain (rank0) and broadcast if running under MPI.
    dom0 = read_domain_netcdf_rank0(cfg) if ctx.master else None
    if ctx.master:
        logger.info("Domain loaded (rank0): %s", dom0.dem.shape)
    dom = bcast_domain(ctx, dom0)

    try:
        coordinator = run_simulation(ctx, cfg, dom)
    except StepFailedError as exc:
        logger.error("%s", exc)
        ctx.abort(1)
        return 1

    if ctx.master:
        logger.info("snowcoupler finished: %s", summarize(coordinator))
    ctx.finalize()
    return 0


if __name__ == "__main__":
    sys.exit(main())
