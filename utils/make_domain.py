#!/usr/bin/env python3
"""Create a synthetic snowcoupler case: domain NetCDF, hourly forcing and cold-start profiles."""
from __future__ import annotations

import argparse  # Parse command-line arguments for the CLI.
from dataclasses import dataclass  # Provide a simple data container for grid metadata.
from datetime import datetime, timedelta, timezone  # Forcing time axis and metadata.
from pathlib import Path  # Output directory handling.
from typing import Iterable  # Type hints for land-use classes.

import numpy as np  # Numerical arrays and math utilities.
from tqdm import tqdm  # Progress bar for long-running workflows.
import xarray as xr  # Dataset and DataArray abstractions for NetCDF.

from snowcoupler.profiles import Layer, SnowProfile, landuse_key, make_profile_io  # Profile writer shared with the coupler.


@dataclass
class GridSpec:
    x_name: str  # Name of the x-coordinate dimension.
    y_name: str  # Name of the y-coordinate dimension.
    x: np.ndarray  # 1D cell-center coordinates, west to east.
    y: np.ndarray  # 1D cell-center coordinates, north to south (north-up file).


def _build_grid(nx: int, ny: int, x0: float, y0: float, cellsize: float) -> GridSpec:
    # Guard against invalid resolution values early.
    if cellsize <= 0:
        raise ValueError("Cell size must be positive")
    x = x0 + (np.arange(nx) + 0.5) * cellsize
    # North-up like most GIS exports; the coupler flips rows on read.
    y = (y0 + (np.arange(ny) + 0.5) * cellsize)[::-1]
    return GridSpec(x_name="x", y_name="y", x=x, y=y)


def _synthetic_dem(grid: GridSpec, base_m: float, relief_m: float) -> np.ndarray:
    # A single ridge rising towards the north-east corner.
    xx, yy = np.meshgrid(
        np.linspace(0.0, 1.0, grid.x.size),
        np.linspace(1.0, 0.0, grid.y.size),
    )
    return base_m + relief_m * (0.6 * xx + 0.4 * yy) + 0.05 * relief_m * np.sin(6.0 * xx) * np.cos(4.0 * yy)


def _landuse_from_dem(dem: np.ndarray, classes: Iterable[int], water_band_m: float) -> np.ndarray:
    codes = list(classes)
    edges = np.quantile(dem, np.linspace(0.0, 1.0, len(codes) + 1)[1:-1])
    landuse = np.asarray(codes, dtype=np.float64)[np.digitize(dem, edges)]
    # Lowest band becomes a lake (land-use 1, never simulated).
    landuse[dem < dem.min() + water_band_m] = 1.0
    return landuse


def _coord(values: np.ndarray, name: str) -> xr.DataArray:
    axis = "projection_x_coordinate" if name == "x" else "projection_y_coordinate"
    return xr.DataArray(values, dims=(name,), attrs={"standard_name": axis, "units": "m"})


def write_domain(path: Path, grid: GridSpec, dem: np.ndarray, landuse: np.ndarray, epsg: int) -> None:
    ds = xr.Dataset(coords={grid.x_name: _coord(grid.x, grid.x_name), grid.y_name: _coord(grid.y, grid.y_name)})
    dims = (grid.y_name, grid.x_name)
    ds["dem"] = xr.DataArray(
        dem,
        dims=dims,
        attrs={"standard_name": "surface_altitude", "units": "m", "grid_mapping": "crs"},
    )
    ds["landuse"] = xr.DataArray(
        landuse,
        dims=dims,
        attrs={"long_name": "land_use_class", "units": "1", "grid_mapping": "crs"},
    )
    ds["crs"] = xr.DataArray(0, attrs={"epsg_code": f"EPSG:{epsg}"})
    ds.attrs.update(
        {
            "title": "snowcoupler synthetic domain",
            "history": f"{datetime.now(timezone.utc).isoformat()}: domain created",
            "Conventions": "CF-1.10",
        }
    )
    ds.to_netcdf(path)


def write_forcing(path: Path, grid: GridSpec, dem: np.ndarray, start: datetime, hours: int, progress: tqdm) -> None:
    ny, nx = dem.shape
    shape = (hours, ny, nx)
    fields = {name: np.empty(shape, dtype=np.float32) for name in ("ta", "rh", "vw", "psum", "psum_ph", "iswr", "ilwr", "diffuse")}
    elevation = np.empty(hours, dtype=np.float32)
    lapse = -0.0065 * (dem - dem.min())
    for k in range(hours):
        hour = (start + timedelta(hours=k)).hour
        day = np.sin(np.pi * (hour - 6) / 12.0)
        ta = 268.15 + 4.0 * day + lapse
        fields["ta"][k] = ta
        fields["rh"][k] = 0.8
        fields["vw"][k] = 3.0
        # One snowfall burst on the first day.
        fields["psum"][k] = 1.5 if 6 <= k < 12 else 0.0
        fields["psum_ph"][k] = np.clip((ta - 273.15) / 2.0 + 0.5, 0.0, 1.0)
        fields["iswr"][k] = max(0.0, 600.0 * day)
        fields["diffuse"][k] = 0.2 * fields["iswr"][k]
        fields["ilwr"][k] = 260.0
        elevation[k] = max(0.0, 35.0 * day)
        progress.update(1)
    times = np.array([np.datetime64(start.replace(tzinfo=None)) + np.timedelta64(k, "h") for k in range(hours)])
    ds = xr.Dataset(coords={"time": times, grid.x_name: _coord(grid.x, grid.x_name), grid.y_name: _coord(grid.y, grid.y_name)})
    for name, arr in fields.items():
        ds[name] = xr.DataArray(arr, dims=("time", grid.y_name, grid.x_name))
    ds["solar_elevation"] = xr.DataArray(elevation, dims=("time",), attrs={"units": "degree"})
    ds.attrs["title"] = "snowcoupler synthetic forcing"
    ds.to_netcdf(path)


def write_profiles(directory: Path, experiment: str, classes: Iterable[int], start: datetime, hs_m: float) -> None:
    io = make_profile_io("smet", directory)
    deposited = start - timedelta(days=30)
    for code in classes:
        key = landuse_key(experiment, code)
        layers = [Layer(thickness=hs_m, density=250.0, temperature=270.0, liquid_fraction=0.0, deposition_date=deposited)] if hs_m > 0 else []
        io.write(key, SnowProfile(date=start, layers=layers, station_id=key, station_name=key))


def build_case(
    outdir: str,
    nx: int,
    ny: int,
    cellsize: float,
    x0: float,
    y0: float,
    epsg: int,
    start: datetime,
    hours: int,
    experiment: str,
    classes: Iterable[int],
    hs_m: float,
) -> None:
    root = Path(outdir)
    root.mkdir(parents=True, exist_ok=True)
    classes = list(classes)
    with tqdm(total=hours + 3, desc="Building case", unit="step") as progress:
        progress.set_description("Preparing grid")
        grid = _build_grid(nx, ny, x0, y0, cellsize)
        dem = _synthetic_dem(grid, base_m=1200.0, relief_m=1500.0)
        landuse = _landuse_from_dem(dem, classes, water_band_m=20.0)
        progress.update(1)

        progress.set_description("Writing domain")
        write_domain(root / "domain.nc", grid, dem, landuse, epsg)
        progress.update(1)

        progress.set_description("Writing forcing")
        write_forcing(root / "meteo.nc", grid, dem, start, hours, progress)

        progress.set_description("Writing profiles")
        write_profiles(root / "snowfiles", experiment, classes, start, hs_m)
        progress.update(1)


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)  # CLI parser with module docstring.
    parser.add_argument("--output", required=True, help="Output directory")
    parser.add_argument("--nx", type=int, default=40, help="Number of columns")
    parser.add_argument("--ny", type=int, default=30, help="Number of rows")
    parser.add_argument("--cellsize", type=float, default=100.0, help="Cell size in metres")
    parser.add_argument("--x0", type=float, default=780000.0, help="Western edge (projected)")
    parser.add_argument("--y0", type=float, default=185000.0, help="Southern edge (projected)")
    parser.add_argument("--epsg", type=int, default=21781, help="Projection EPSG code")
    parser.add_argument("--start", default="2024-01-01T00:00:00", help="Forcing start (UTC)")
    parser.add_argument("--hours", type=int, default=48, help="Forcing length in hours")
    parser.add_argument("--experiment", default="snowcoupler", help="Experiment name used in profile keys")
    parser.add_argument("--classes", type=int, nargs="+", default=[11, 12, 13], help="Land-use classes")
    parser.add_argument("--hs", type=float, default=0.5, help="Initial snow depth (m)")
    args = parser.parse_args()  # Parse CLI arguments.

    build_case(
        outdir=args.output,
        nx=args.nx,
        ny=args.ny,
        cellsize=args.cellsize,
        x0=args.x0,
        y0=args.y0,
        epsg=args.epsg,
        start=datetime.fromisoformat(args.start).replace(tzinfo=timezone.utc),
        hours=args.hours,
        experiment=args.experiment,
        classes=args.classes,
        hs_m=args.hs,
    )


if __name__ == "__main__":
    main()  # Entry point for CLI execution.
