# -*- coding: utf-8 -*-
"""Meteorological and radiation forcing (rank0 read, broadcast)."""

# Import dataclass for structured source definition.
from dataclasses import dataclass, field

# Import typing primitives.
from typing import Any, Dict, Optional, Tuple

# Import stdlib helpers.
from datetime import datetime
import logging

# Import numpy.
import numpy as np

# Import xarray.
import xarray as xr

# Import local modules.
from .errors import ConfigurationError
from .mpi_utils import MPIContext
from .time_utils import to_datetime64

logger = logging.getLogger("snowcoupler.forcing")

METEO_FIELDS = ("TA", "RH", "VW", "PSUM", "PSUM_PH")
RADIATION_FIELDS = ("ISWR", "ILWR", "DIFFUSE")
OPTIONAL_DEFAULTS = {"DIFFUSE": 0.0, "SOLAR_ELEVATION": 0.0}


@dataclass
class ForcingSource:
    """Forcing source configuration."""
    kind: str
    path: Optional[str] = None
    time_var: str = "time"
    select: str = "previous"
    varmap: Dict[str, str] = field(default_factory=dict)
    values: Dict[str, float] = field(default_factory=dict)


@dataclass
class ForcingFrame:
    """Full-domain forcing of one step."""
    fields: Dict[str, np.ndarray]
    solar_elevation: float = 0.0

    def __getitem__(self, name: str) -> np.ndarray:
        return self.fields[name.upper()]


# Simple cache to avoid reopening NetCDF files each step.
_NC_CACHE: Dict[str, xr.Dataset] = {}
# Track the last time index logged per file to avoid duplicate messages.
_TIME_LOG: Dict[str, int] = {}


def xr_open_cached(path: str) -> xr.Dataset:
    """Open a NetCDF dataset with caching."""
    if path not in _NC_CACHE:
        _NC_CACHE[path] = xr.open_dataset(path, decode_times=True)
    return _NC_CACHE[path]


def xr_close_cache() -> None:
    """Close all cached datasets."""
    for ds in _NC_CACHE.values():
        ds.close()
    _NC_CACHE.clear()
    _TIME_LOG.clear()


def build_forcing_source(cfg: Dict[str, Any]) -> ForcingSource:
    """Parse cfg['forcing'] into a ForcingSource."""
    fc = cfg.get("forcing", {})
    kind = str(fc.get("kind", "netcdf")).strip().lower()
    if kind not in ("netcdf", "scalar"):
        raise ConfigurationError(f"Unknown forcing kind '{kind}' (expected 'netcdf' or 'scalar')")
    if kind == "netcdf" and not fc.get("path"):
        raise ConfigurationError("forcing.kind 'netcdf' requires forcing.path")
    return ForcingSource(
        kind=kind,
        path=fc.get("path", None),
        time_var=str(fc.get("time_var", "time")),
        select=str(fc.get("select", "previous")).lower(),
        varmap={str(k).upper(): str(v) for k, v in fc.get("varmap", {}).items()},
        values={str(k).upper(): float(v) for k, v in fc.get("values", {}).items()},
    )


def pick_time_index(time_vals: np.ndarray, target: np.datetime64, select: str = "previous") -> int:
    """Pick the time index used for a step.

    ``previous`` takes the last record at or before the target (the first
    record when the target precedes the axis), ``nearest`` the closest one.
    """
    tv = np.asarray(time_vals)
    if tv.dtype.kind != "M":
        raise ValueError("Time axis is not datetime64; verify CF time decoding.")
    if select == "nearest":
        return int(np.argmin(np.abs(tv - target)))
    if select != "previous":
        raise ValueError(f"Unknown time selection '{select}'")
    idx = int(np.searchsorted(tv, target, side="right")) - 1
    return max(0, idx)


def _log_time_usage(path: str, time_vals: np.ndarray, idx: int) -> None:
    """Log when the forcing file advances to a new time index."""
    if _TIME_LOG.get(path, None) == idx:
        return
    logger.info(
        "Forcing '%s': using record at %s (index=%d)",
        path,
        np.datetime_as_string(np.asarray(time_vals)[idx], unit="s"),
        idx,
    )
    _TIME_LOG[path] = idx


def _north_up(ds: xr.Dataset, da: xr.DataArray) -> bool:
    ydim = da.dims[-2]
    if ydim in ds.coords and ds.sizes[ydim] > 1:
        y = np.asarray(ds[ydim].values)
        return bool(y[0] > y[-1])
    return False


def read_forcing_rank0(src: ForcingSource, shape: Tuple[int, int], date: datetime) -> ForcingFrame:
    """Read the forcing fields of one step on rank0."""
    H, W = shape
    fields: Dict[str, np.ndarray] = {}

    if src.kind == "scalar":
        for name in METEO_FIELDS + RADIATION_FIELDS:
            if name not in src.values and name not in OPTIONAL_DEFAULTS:
                raise ConfigurationError(f"Scalar forcing requires a value for '{name}'")
            value = src.values.get(name, OPTIONAL_DEFAULTS.get(name, 0.0))
            fields[name] = np.full((H, W), float(value), dtype=np.float64)
        elevation = float(src.values.get("SOLAR_ELEVATION", 0.0))
        return ForcingFrame(fields=fields, solar_elevation=elevation)

    ds = xr_open_cached(src.path)
    if src.time_var not in ds:
        raise ValueError(f"Forcing dataset missing time variable '{src.time_var}'")
    time_vals = np.asarray(ds[src.time_var].values)
    it = pick_time_index(time_vals, to_datetime64(date), src.select)
    _log_time_usage(src.path, time_vals, it)

    for name in METEO_FIELDS + RADIATION_FIELDS:
        var = src.varmap.get(name, name.lower())
        if var not in ds:
            if name in OPTIONAL_DEFAULTS:
                fields[name] = np.full((H, W), OPTIONAL_DEFAULTS[name], dtype=np.float64)
                continue
            raise ValueError(f"Forcing variable '{var}' ({name}) not found in {src.path}")
        da = ds[var]
        if da.ndim == 3:
            tdim = src.time_var if src.time_var in da.dims else da.dims[0]
            arr = np.asarray(da.isel({tdim: it}).values, dtype=np.float64)
        elif da.ndim == 2:
            arr = np.asarray(da.values, dtype=np.float64)
        else:
            raise ValueError(f"Forcing variable '{var}' must be 2D or 3D (time,y,x)")
        if _north_up(ds, da):
            arr = arr[::-1, :]
        if arr.shape != (H, W):
            raise ValueError(f"Forcing '{var}' shape {arr.shape} != domain shape {(H, W)}")
        fields[name] = np.ascontiguousarray(arr)

    elevation = OPTIONAL_DEFAULTS["SOLAR_ELEVATION"]
    se_var = src.varmap.get("SOLAR_ELEVATION", "solar_elevation")
    if se_var in ds:
        se = ds[se_var]
        elevation = float(se.isel({src.time_var: it}).values) if src.time_var in se.dims else float(se.values)
    return ForcingFrame(fields=fields, solar_elevation=elevation)


def load_forcing(ctx: MPIContext, src: ForcingSource, shape: Tuple[int, int], date: datetime) -> ForcingFrame:
    """Read forcing on the master and broadcast it to every rank."""
    frame = read_forcing_rank0(src, shape, date) if ctx.master else None
    return ctx.bcast(frame)
