# -*- coding: utf-8 -*-
"""Sanity check for the distributed grid reduction and special-point gather.

Run under MPI, e.g. ``mpirun -n 3 python tests/validate_mpi_reduce.py``.
"""

# Import stdlib helpers.
from datetime import datetime, timezone
import os
import tempfile

# Import MPI for distributed test harness.
from mpi4py import MPI

# Import numpy for array handling.
import numpy as np

# Import local helpers.
from snowcoupler.cellmodel import CellMeta, CellParameters, TemperatureIndexCell
from snowcoupler.config import deep_update, default_config
from snowcoupler.coordinator import StepCoordinator
from snowcoupler.domain import Domain
from snowcoupler.grid import Geolocation, Grid
from snowcoupler.mpi_utils import MPIContext
from snowcoupler.profiles import Layer, SnowProfile

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _domain(nx: int, ny: int) -> Domain:
    """Flat domain whose DEM encodes the column index."""
    geo = Geolocation(0.0, 0.0, 100.0, None)
    dem = np.tile(1000.0 + np.arange(nx, dtype=np.float64), (ny, 1))
    return Domain(
        dem=dem,
        landuse=np.full((ny, nx), 11.0),
        slope=np.zeros((ny, nx)),
        azimuth=np.zeros((ny, nx)),
        geo=geo,
        x_name="x",
        y_name="y",
        x_vals=np.arange(nx) * 100.0 + 50.0,
        y_vals=np.arange(ny) * 100.0 + 50.0,
        grid_mapping_name=None,
        grid_mapping_attrs={},
    )


def _cells(ctx: MPIContext, dom: Domain) -> list:
    """Cells of this rank's slab; the initial SWE encodes (ix, iy)."""
    start, width = ctx.slice_for(dom.nx)
    params = CellParameters()
    cells = []
    for iy in range(dom.ny):
        for ix in range(start, start + width):
            swe = 100.0 * ix + iy + 1.0
            layer = Layer(swe / 200.0, 200.0, 268.0, 0.0, START)
            meta = CellMeta(f"{ix}_{iy}_mpi", f"{ix}_{iy}", ix, iy, 100.0 * ix, 100.0 * iy, 1000.0, None, 0.0, 0.0, 11)
            cells.append(TemperatureIndexCell(meta, SnowProfile(date=START, layers=[layer]), params))
    return cells


def main() -> None:
    """Compare the reduced SWE grid with the expected encoding on every rank."""
    comm = MPI.COMM_WORLD
    ctx = MPIContext(comm, comm.Get_rank(), comm.Get_size(), comm.Get_size(), local_io=False)
    dom = _domain(nx=11, ny=3)

    outdir = ctx.bcast(tempfile.mkdtemp(prefix="snowcoupler_mpi_") if ctx.master else None)
    cfg = deep_update(
        default_config(),
        {
            "output": {"grids_write": False, "meteo_path": outdir},
            "compute": {"workers": 2},
        },
    )
    points = [(0, 0), (5, 1), (10, 2)]
    coord = StepCoordinator(ctx, cfg, dom, _cells(ctx, dom), points=points, start_date=START)

    swe = coord.get_grid("SWE").values
    iy, ix = np.indices(dom.shape)
    if not np.allclose(swe, 100.0 * ix + iy + 1.0):
        raise RuntimeError(f"Rank {ctx.rank}: reduced SWE grid does not match the cell layout")

    # One cold step; every rank must finish it and agree on the failure count.
    values = {name: Grid.full(dom.geo, dom.shape, v) for name, v in
              (("psum", 0.0), ("psum_ph", 0.0), ("vw", 1.0), ("rh", 0.7), ("ta", 265.0),
               ("iswr", 0.0), ("ilwr", 250.0), ("diffuse", 0.0))}
    coord.set_radiation(values["iswr"], values["ilwr"], values["diffuse"], 0.0, START)
    coord.set_meteo(values["psum"], values["psum_ph"], values["vw"], values["rh"], values["ta"], START)

    ctx.barrier()
    if ctx.master:
        written = sorted(f for f in os.listdir(outdir) if f.endswith(".smet"))
        expected = sorted(f"{x}_{y}_mpi.smet" for x, y in points)
        if written != expected:
            raise RuntimeError(f"Special points written on rank0: {written}, expected {expected}")
        print("Distributed reduction and gather checks passed.")
    ctx.finalize()


if __name__ == "__main__":
    main()
