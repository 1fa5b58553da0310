# -*- coding: utf-8 -*-
"""Configuration handling for snowcoupler.

The coupler is configured via:
1) A JSON configuration file (config.json).
2) Optional CLI overrides (handled in cli.py).
"""

# Import JSON for reading configuration files.
import json

# Import typing primitives.
from typing import Any, Dict

# Import local errors.
from .errors import ConfigurationError


def default_config() -> Dict[str, Any]:
    """Return a complete default configuration dictionary."""
    return {
        "domain": {
            "domain_nc": "domain.nc",
            "epsg": None,
            "varmap": {
                "dem": "dem",
                "landuse": "landuse",
                "x": "x",
                "y": "y",
            },
        },
        "model": {
            "start_time": "2024-10-01T00:00:00Z",
            "end_time": "2024-10-02T00:00:00Z",
            "dt_s": 3600,
            "canopy": False,
            "soil": False,
            "cell": {
                "ddf_mm_per_k_day": 3.0,
                "t_melt_k": 273.15,
                "fresh_snow_density": 100.0,
                "max_density": 450.0,
                "densification_per_day": 0.02,
                "albedo_fresh": 0.85,
                "albedo_min": 0.5,
                "albedo_decay_days": 10.0,
                "liquid_holding": 0.05,
                "glacier_swe_kgm2": 5000.0,
                "max_swe_kgm2": 1.0e6,
            },
        },
        "forcing": {
            "kind": "netcdf",
            "path": "meteo.nc",
            "time_var": "time",
            "select": "previous",
            "varmap": {
                "TA": "ta",
                "RH": "rh",
                "VW": "vw",
                "PSUM": "psum",
                "PSUM_PH": "psum_ph",
                "ISWR": "iswr",
                "ILWR": "ilwr",
                "DIFFUSE": "diffuse",
                "SOLAR_ELEVATION": "solar_elevation",
            },
            "values": {},
        },
        "input": {
            "snow_format": "smet",
            "snowpath": "input/snowfiles",
            "experiment": "snowcoupler",
            "restart": False,
            "special_points": [],
            "points_file": None,
        },
        "output": {
            "grids_write": True,
            "grids_parameters": "HS SWE TOP_ALB",
            "grids_start": 0.0,
            "grids_days_between": 1.0,
            "grid_format": "netcdf",
            "grid_path": "output/grids",
            "ts_write": False,
            "ts_start": 0.0,
            "ts_days_between": 1.0 / 24.0,
            "prof_write": False,
            "prof_start": 0.0,
            "prof_days_between": 1.0,
            "meteo_path": "output/points",
            "time_zone": 0.0,
            "mask_glaciers": False,
            "mask_dynamic": False,
            "soil_temperature_depth": None,
            "snow_write": False,
            "Conventions": "CF-1.10",
            "title": "snowcoupler distributed snow cover",
            "institution": "",
        },
        "restart": {
            "out_dir": "output/snowfiles",
            "every_steps": 0,
            "write_final": True,
        },
        "compute": {
            "workers": None,
            "mpi": {
                "enabled": None,
                "local_io": True,
            },
        },
    }


def load_json(path: str) -> Dict[str, Any]:
    """Load a JSON file into a Python dictionary."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def deep_update(base: Dict[str, Any], other: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge dict `other` into dict `base` (non-destructive)."""
    out = dict(base)
    for k, v in other.items():
        # If both sides are dicts, merge recursively.
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = deep_update(out[k], v)  # type: ignore[arg-type]
        else:
            out[k] = v
    return out


def validate_config(cfg: Dict[str, Any]) -> None:
    """Reject settings the coupler cannot run with."""
    mcfg = cfg.get("model", {})
    if float(mcfg.get("dt_s", 0) or 0) <= 0.0:
        raise ConfigurationError("model.dt_s must be positive.")
    ocfg = cfg.get("output", {})
    for key in ("grids_days_between", "ts_days_between", "prof_days_between"):
        if float(ocfg.get(key, 0.0) or 0.0) < 0.0:
            raise ConfigurationError(f"output.{key} must be non-negative.")
    if str(ocfg.get("grid_format", "netcdf")).lower() not in ("netcdf", "ascii"):
        raise ConfigurationError("output.grid_format must be 'netcdf' or 'ascii'.")
    if str(cfg.get("input", {}).get("snow_format", "smet")).lower() not in ("smet", "netcdf"):
        raise ConfigurationError("input.snow_format must be 'smet' or 'netcdf'.")
    workers = cfg.get("compute", {}).get("workers", None)
    if workers not in (None, "") and int(workers) < 1:
        raise ConfigurationError("compute.workers must be >= 1.")
