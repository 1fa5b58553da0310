# -*- coding: utf-8 -*-
"""Gridded output writers (rank0 only).

Two variants share one contract and are chosen once from
``output.grid_format``:
- NetcdfGridWriter: one CF-friendly NetCDF file per grid and date
- AsciiGridWriter: ESRI ASCII grids (.asc)

``write(grid, param, date)`` addresses a recognized parameter by identity,
``write_named(grid, filename)`` writes any grid under a literal name.
"""

from __future__ import annotations

# Import datetime utilities for time encoding.
from datetime import datetime, timezone

# Import typing primitives.
from typing import Any, Dict, Optional

# Import stdlib helpers.
from pathlib import Path
import logging

# Import numpy.
import numpy as np

# Import xarray.
import xarray as xr

# Import local modules.
from .grid import Grid
from .parameters import CF_METADATA
from .time_utils import num_label, utc_now_iso

logger = logging.getLogger("snowcoupler.io")

TIME_UNITS = "hours since 1900-01-01 00:00:0.0"


def _time_to_hours_since_1900(dt: datetime) -> float:
    """Convert datetime to hours since 1900-01-01 UTC."""
    base = datetime(1900, 1, 1, tzinfo=timezone.utc)
    return (dt - base).total_seconds() / 3600.0


def _coord_attrs(name: str, epsg: Optional[int]) -> Dict[str, str]:
    """Return CF-style coordinate attributes for the x/y axes."""
    lname = name.lower()
    if "lat" in lname:
        return {"long_name": "latitude", "units": "degrees_north"}
    if "lon" in lname:
        return {"long_name": "longitude", "units": "degrees_east"}
    if epsg == 4326:
        return {"long_name": lname, "units": "degrees"}
    axis = "projection_x_coordinate" if lname.startswith("x") else "projection_y_coordinate"
    return {"standard_name": axis, "long_name": lname, "units": "m"}


class NetcdfGridWriter:
    """One NetCDF file per (date, parameter)."""

    kind = "netcdf"
    suffix = ".nc"

    def __init__(
        self,
        outdir: str | Path,
        out_cfg: Optional[Dict[str, Any]] = None,
        x_name: str = "x",
        y_name: str = "y",
        grid_mapping_name: Optional[str] = None,
        grid_mapping_attrs: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.outdir = Path(outdir)
        self.out_cfg = dict(out_cfg or {})
        self.x_name = x_name
        self.y_name = y_name
        self.grid_mapping_name = grid_mapping_name
        self.grid_mapping_attrs = dict(grid_mapping_attrs or {})

    def _dataset(self, grid: Grid, var: str, attrs: Dict[str, Any], date: Optional[datetime]) -> xr.Dataset:
        g = grid.geo
        x = g.xllcorner + (np.arange(grid.nx) + 0.5) * g.cellsize
        y = g.yllcorner + (np.arange(grid.ny) + 0.5) * g.cellsize
        values = np.where(grid.nodata_mask(), np.nan, grid.values).astype(np.float32)
        coords = {
            self.x_name: xr.DataArray(x, dims=(self.x_name,), attrs=_coord_attrs(self.x_name, g.epsg)),
            self.y_name: xr.DataArray(y, dims=(self.y_name,), attrs=_coord_attrs(self.y_name, g.epsg)),
        }
        dims: tuple[str, ...] = (self.y_name, self.x_name)
        if date is not None:
            coords["time"] = xr.DataArray(
                np.array([_time_to_hours_since_1900(date)], dtype=np.float64),
                dims=("time",),
                attrs={"long_name": "time", "units": TIME_UNITS},
            )
            values = values[None, ...]
            dims = ("time",) + dims
        ds = xr.Dataset(coords=coords)
        ds[var] = xr.DataArray(values, dims=dims, attrs=dict(attrs))
        if self.grid_mapping_name and self.grid_mapping_attrs:
            gm = self.grid_mapping_name
            ds[gm] = xr.DataArray(0, attrs=self.grid_mapping_attrs)
            ds[var].attrs["grid_mapping"] = gm
        ds.attrs["title"] = self.out_cfg.get("title", "snowcoupler distributed snow cover")
        ds.attrs["institution"] = self.out_cfg.get("institution", "")
        ds.attrs["source"] = "snowcoupler"
        ds.attrs["history"] = f"{utc_now_iso()}: grid written by snowcoupler"
        ds.attrs["Conventions"] = self.out_cfg.get("Conventions", "CF-1.10")
        if g.epsg is not None:
            ds.attrs["epsg"] = int(g.epsg)
        return ds

    def _to_netcdf(self, ds: xr.Dataset, var: str, path: Path, nodata: float) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        ds.to_netcdf(path, encoding={var: {"_FillValue": np.float32(nodata)}})
        return path

    def write(self, grid: Grid, param: str, date: datetime) -> Path:
        key = param.upper()
        attrs = dict(CF_METADATA.get(key, {"long_name": key.lower()}))
        ds = self._dataset(grid, key, attrs, date)
        return self._to_netcdf(ds, key, self.outdir / f"{num_label(date)}_{key}{self.suffix}", grid.nodata)

    def write_named(self, grid: Grid, filename: str) -> Path:
        path = self.outdir / filename
        # Drop the leading date label only; parameter names keep their underscores.
        stem = Path(filename).stem
        prefix, _, rest = stem.partition("_")
        var = (rest if prefix.isdigit() and rest else stem) or "grid"
        ds = self._dataset(grid, var, {"long_name": var.lower()}, None)
        return self._to_netcdf(ds, var, path.with_suffix(self.suffix), grid.nodata)


class AsciiGridWriter:
    """ESRI ASCII grids, north row first."""

    kind = "ascii"
    suffix = ".asc"

    def __init__(self, outdir: str | Path, precision: int = 3) -> None:
        self.outdir = Path(outdir)
        self.precision = int(precision)

    def write_named(self, grid: Grid, filename: str) -> Path:
        path = (self.outdir / filename).with_suffix(self.suffix)
        path.parent.mkdir(parents=True, exist_ok=True)
        g = grid.geo
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(f"ncols        {grid.nx}\n")
            fh.write(f"nrows        {grid.ny}\n")
            fh.write(f"xllcorner    {g.xllcorner:.6f}\n")
            fh.write(f"yllcorner    {g.yllcorner:.6f}\n")
            fh.write(f"cellsize     {g.cellsize:.6f}\n")
            fh.write(f"NODATA_value {grid.nodata:.0f}\n")
            np.savetxt(fh, grid.values[::-1, :], fmt=f"%.{self.precision}f", delimiter=" ")
        return path

    def write(self, grid: Grid, param: str, date: datetime) -> Path:
        return self.write_named(grid, f"{num_label(date)}_{param.upper()}{self.suffix}")


GridWriter = NetcdfGridWriter | AsciiGridWriter


def make_grid_writer(kind: str, outdir: str | Path, **kwargs: Any) -> GridWriter:
    """Select the grid output variant once, from configuration."""
    key = str(kind).strip().lower()
    if key == "netcdf":
        return NetcdfGridWriter(outdir, **kwargs)
    if key == "ascii":
        return AsciiGridWriter(outdir)
    raise ValueError(f"Unknown grid format '{kind}' (expected 'netcdf' or 'ascii')")
