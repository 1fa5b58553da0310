# -*- coding: utf-8 -*-
"""Domain reading and broadcasting (NetCDF-only)."""

# Import typing primitives.
from typing import Any, Dict, Optional

# Import dataclass for structured domain object.
from dataclasses import dataclass

# Import logging.
import logging

# Import numpy for arrays.
import numpy as np

# Import xarray for NetCDF reading.
import xarray as xr

# Import local modules.
from .grid import NODATA, Geolocation, Grid
from .mpi_utils import MPIContext

logger = logging.getLogger("snowcoupler.domain")

# Land-use code of water bodies (never simulated).
LANDUSE_WATER = 1

# Land-use classes are sometimes stored with a 10000 offset.
LANDUSE_OFFSET = 10000


@dataclass
class Domain:
    """Domain data required by the coupler.

    All arrays are indexed [iy, ix] with row 0 at the southern edge.
    """
    dem: np.ndarray
    landuse: np.ndarray
    slope: np.ndarray
    azimuth: np.ndarray
    geo: Geolocation
    x_name: str
    y_name: str
    x_vals: np.ndarray
    y_vals: np.ndarray
    grid_mapping_name: Optional[str]
    grid_mapping_attrs: Dict[str, Any]

    @property
    def shape(self) -> tuple[int, int]:
        return int(self.dem.shape[0]), int(self.dem.shape[1])

    @property
    def ny(self) -> int:
        return self.shape[0]

    @property
    def nx(self) -> int:
        return self.shape[1]

    def dem_grid(self) -> Grid:
        return Grid(values=self.dem.copy(), geo=self.geo)

    def landuse_grid(self) -> Grid:
        return Grid(values=self.landuse.copy(), geo=self.geo)

    def template(self, value: float = NODATA) -> Grid:
        """Full-domain grid filled with a constant."""
        return Grid.full(self.geo, self.shape, value)


def round_landuse(value: float) -> int:
    """Return the integer land-use class, stripping the optional 10000 offset."""
    v = float(value)
    if v >= LANDUSE_OFFSET:
        v -= LANDUSE_OFFSET
    return int(np.floor(v + 0.0001))


def skip_cell(landuse: float, dem: float) -> bool:
    """True for cells that never hold a snow model (nodata or water)."""
    if landuse == NODATA or dem == NODATA:
        return True
    if not (np.isfinite(landuse) and np.isfinite(dem)):
        return True
    return round_landuse(landuse) == LANDUSE_WATER


def slope_azimuth(dem: np.ndarray, cellsize: float) -> tuple[np.ndarray, np.ndarray]:
    """Compute slope (degrees) and azimuth (degrees clockwise from north, downslope).

    Rows are assumed south to north. Cells touching nodata get nodata.
    """
    z = np.where(dem == NODATA, np.nan, dem.astype(np.float64))
    if z.shape[0] < 2 or z.shape[1] < 2:
        flat = np.where(np.isfinite(z), 0.0, NODATA)
        return flat, flat.copy()
    dz_dy, dz_dx = np.gradient(z, float(cellsize))
    slope = np.degrees(np.arctan(np.hypot(dz_dx, dz_dy)))
    azimuth = np.mod(np.degrees(np.arctan2(-dz_dx, -dz_dy)), 360.0)
    invalid = ~np.isfinite(slope)
    slope[invalid] = NODATA
    azimuth[invalid] = NODATA
    # Flat cells have no aspect; report north like most GIS tools.
    azimuth[(slope == 0.0)] = 0.0
    return slope, azimuth


def _epsg_from(dom_cfg: Dict[str, Any], gm_attrs: Dict[str, Any]) -> Optional[int]:
    """Resolve the projection code from config or CF grid mapping attributes."""
    if dom_cfg.get("epsg") not in (None, ""):
        return int(dom_cfg["epsg"])
    for key in ("epsg_code", "epsg"):
        raw = gm_attrs.get(key, None)
        if raw is None:
            continue
        text = str(raw).upper().replace("EPSG:", "").strip()
        if text.isdigit():
            return int(text)
    return None


def read_domain_netcdf_rank0(cfg: Dict[str, Any]) -> Domain:
    """Read domain NetCDF on rank 0."""
    # Extract domain configuration.
    dom_cfg = cfg["domain"]
    path = dom_cfg["domain_nc"]
    varmap = dom_cfg.get("varmap", {})

    # Open dataset.
    ds = xr.open_dataset(path)

    # Resolve variable names.
    dem_name = varmap.get("dem", "dem")
    lus_name = varmap.get("landuse", "landuse")
    x_name = varmap.get("x", "x")
    y_name = varmap.get("y", "y")

    # Read arrays (NaN and _FillValue both become the nodata sentinel).
    dem = np.asarray(ds[dem_name].values, dtype=np.float64)
    landuse = np.asarray(ds[lus_name].values, dtype=np.float64)
    dem = np.where(np.isfinite(dem), dem, NODATA)
    landuse = np.where(np.isfinite(landuse), landuse, NODATA)
    if dem.shape != landuse.shape:
        ds.close()
        raise ValueError(f"DEM {dem.shape} and land-use {landuse.shape} grids differ in shape")

    # Read coordinates from coords or variables.
    x_vals = np.asarray(ds.coords[x_name].values if x_name in ds.coords else ds[x_name].values, dtype=np.float64)
    y_vals = np.asarray(ds.coords[y_name].values if y_name in ds.coords else ds[y_name].values, dtype=np.float64)

    # Preserve CF grid mapping if present.
    gm_name = ds[dem_name].attrs.get("grid_mapping", None)
    gm_attrs: Dict[str, Any] = {}
    if gm_name and gm_name in ds:
        gm_attrs = dict(ds[gm_name].attrs)

    # Close dataset.
    ds.close()

    # North-up files are flipped so row 0 is the southern edge.
    if y_vals.size > 1 and y_vals[0] > y_vals[-1]:
        dem = dem[::-1, :].copy()
        landuse = landuse[::-1, :].copy()
        y_vals = y_vals[::-1].copy()
    if x_vals.size > 1 and x_vals[0] > x_vals[-1]:
        dem = dem[:, ::-1].copy()
        landuse = landuse[:, ::-1].copy()
        x_vals = x_vals[::-1].copy()

    # Cell size from coordinate spacing (coordinates are cell centers).
    if x_vals.size > 1:
        cellsize = float(np.median(np.abs(np.diff(x_vals))))
    elif y_vals.size > 1:
        cellsize = float(np.median(np.abs(np.diff(y_vals))))
    else:
        cellsize = float(dom_cfg.get("cellsize", 1.0))
    geo = Geolocation(
        xllcorner=float(x_vals[0]) - 0.5 * cellsize,
        yllcorner=float(y_vals[0]) - 0.5 * cellsize,
        cellsize=cellsize,
        epsg=_epsg_from(dom_cfg, gm_attrs),
    )

    slope, azimuth = slope_azimuth(dem, cellsize)

    # Return domain object.
    return Domain(
        dem=dem,
        landuse=landuse,
        slope=slope,
        azimuth=azimuth,
        geo=geo,
        x_name=x_name,
        y_name=y_name,
        x_vals=x_vals,
        y_vals=y_vals,
        grid_mapping_name=gm_name,
        grid_mapping_attrs=gm_attrs,
    )


def bcast_domain(ctx: MPIContext, dom0: Optional[Domain]) -> Domain:
    """Broadcast Domain from rank0 to all ranks."""
    if not ctx.active:
        if dom0 is None:
            raise ValueError("Serial runs need the domain read locally")
        return dom0

    # Prepare metadata dict on root.
    if ctx.master:
        meta = {
            "shape": dom0.dem.shape,
            "geo": dom0.geo,
            "x_name": dom0.x_name,
            "y_name": dom0.y_name,
            "x_vals": dom0.x_vals,
            "y_vals": dom0.y_vals,
            "grid_mapping_name": dom0.grid_mapping_name,
            "grid_mapping_attrs": dom0.grid_mapping_attrs,
        }
    else:
        meta = None

    # Broadcast metadata (pickle-based).
    meta = ctx.bcast(meta)
    H, W = meta["shape"]

    # Allocate or reuse arrays, then broadcast them as raw buffers.
    arrays = []
    for name in ("dem", "landuse", "slope", "azimuth"):
        if ctx.master:
            arr = np.ascontiguousarray(getattr(dom0, name), dtype=np.float64)
        else:
            arr = np.empty((H, W), dtype=np.float64)
        ctx.comm.Bcast(arr, root=ctx.master_rank)
        arrays.append(arr)
    dem, landuse, slope, azimuth = arrays

    return Domain(
        dem=dem,
        landuse=landuse,
        slope=slope,
        azimuth=azimuth,
        geo=meta["geo"],
        x_name=meta["x_name"],
        y_name=meta["y_name"],
        x_vals=np.asarray(meta["x_vals"]),
        y_vals=np.asarray(meta["y_vals"]),
        grid_mapping_name=meta["grid_mapping_name"],
        grid_mapping_attrs=dict(meta["grid_mapping_attrs"]),
    )
