# -*- coding: utf-8 -*-
"""Initial snow/soil profiles and the two profile file formats.

Profiles are keyed by a plain string:
- ``{experiment}_{landuse}`` for a cold start (one profile per land-use class)
- ``{ix}_{iy}_{experiment}`` for a restart (one profile per cell)

Two serializations are supported, selected once from ``input.snow_format``:
a SMET-like text file (``.sno``) and a NetCDF file (``.nc``).
"""

from __future__ import annotations

# Import dataclasses.
from dataclasses import dataclass, field

# Import typing primitives.
from typing import List, Optional

# Import stdlib helpers.
from datetime import datetime, timezone
from pathlib import Path
import logging

# Import numpy and xarray for the NetCDF variant.
import numpy as np
import xarray as xr

# Import local modules.
from .errors import ReadFailureError
from .grid import NODATA
from .time_utils import iso_label, parse_iso8601_to_utc_datetime, to_datetime64

logger = logging.getLogger("snowcoupler.profiles")

PROFILE_FIELDS = ("timestamp", "Layer_Thick", "T", "Rho", "Theta_W")


@dataclass
class Layer:
    """One snow layer, bottom to top ordering inside a profile."""
    thickness: float          # m
    density: float            # kg m-3
    temperature: float        # K
    liquid_fraction: float    # liquid water mass fraction [0, 1]
    deposition_date: datetime


@dataclass
class SnowProfile:
    """Instantaneous snow (and optionally soil) profile of a cell."""
    date: datetime
    layers: List[Layer] = field(default_factory=list)
    soil: bool = False
    station_id: str = ""
    station_name: str = ""

    @property
    def height(self) -> float:
        return float(sum(l.thickness for l in self.layers))

    @property
    def swe(self) -> float:
        return float(sum(l.thickness * l.density for l in self.layers))

    def oldest_deposition(self) -> Optional[datetime]:
        if not self.layers:
            return None
        return min(l.deposition_date for l in self.layers)


def landuse_key(experiment: str, landuse_code: int) -> str:
    return f"{experiment}_{int(landuse_code)}"


def coordinate_key(ix: int, iy: int, experiment: str) -> str:
    return f"{int(ix)}_{int(iy)}_{experiment}"


class SmetProfileIO:
    """SMET-like ``.sno`` text files."""

    kind = "smet"
    suffix = ".sno"

    def __init__(self, directory: str | Path, out_directory: str | Path | None = None) -> None:
        self.directory = Path(directory)
        self.out_directory = Path(out_directory) if out_directory is not None else self.directory

    def path(self, key: str, directory: Path | None = None) -> Path:
        return (directory or self.directory) / f"{key}{self.suffix}"

    def exists(self, key: str) -> bool:
        return self.path(key).is_file()

    def read(self, key: str) -> SnowProfile:
        path = self.path(key)
        header: dict[str, str] = {}
        rows: list[list[str]] = []
        in_data = False
        with open(path, "r", encoding="utf-8") as fh:
            first = fh.readline().strip()
            if not first.startswith("SMET"):
                raise ReadFailureError(f"{path} is not a SMET profile")
            for raw in fh:
                line = raw.strip()
                if not line or line.startswith("#"):
                    continue
                if line == "[HEADER]":
                    continue
                if line == "[DATA]":
                    in_data = True
                    continue
                if in_data:
                    rows.append(line.split())
                else:
                    k, _, v = line.partition("=")
                    header[k.strip()] = v.strip()

        fields = header.get("fields", " ".join(PROFILE_FIELDS)).split()
        missing = [f for f in PROFILE_FIELDS if f not in fields]
        if missing:
            raise ReadFailureError(f"{path} lacks profile fields {missing}")
        col = {name: fields.index(name) for name in PROFILE_FIELDS}
        layers = []
        for row in rows:
            layers.append(
                Layer(
                    thickness=float(row[col["Layer_Thick"]]),
                    density=float(row[col["Rho"]]),
                    temperature=float(row[col["T"]]),
                    liquid_fraction=float(row[col["Theta_W"]]),
                    deposition_date=parse_iso8601_to_utc_datetime(row[col["timestamp"]]),
                )
            )
        return SnowProfile(
            date=parse_iso8601_to_utc_datetime(header.get("ProfileDate")),
            layers=layers,
            soil=header.get("soil", "false").lower() == "true",
            station_id=header.get("station_id", ""),
            station_name=header.get("station_name", key),
        )

    def write(self, key: str, profile: SnowProfile) -> Path:
        path = self.path(key, self.out_directory)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as fh:
            fh.write("SMET 1.1 ASCII\n")
            fh.write("[HEADER]\n")
            fh.write(f"station_id   = {profile.station_id or key}\n")
            fh.write(f"station_name = {profile.station_name or key}\n")
            fh.write(f"nodata       = {NODATA:.0f}\n")
            fh.write("tz           = 0\n")
            fh.write(f"ProfileDate  = {iso_label(profile.date)}\n")
            fh.write(f"HS_Last      = {profile.height:.6f}\n")
            fh.write(f"nSnowLayerData = {len(profile.layers)}\n")
            fh.write(f"soil         = {'true' if profile.soil else 'false'}\n")
            fh.write(f"fields       = {' '.join(PROFILE_FIELDS)}\n")
            fh.write("[DATA]\n")
            for l in profile.layers:
                fh.write(
                    f"{iso_label(l.deposition_date)} {l.thickness:.6f} {l.temperature:.3f} "
                    f"{l.density:.3f} {l.liquid_fraction:.6f}\n"
                )
        return path


class NetcdfProfileIO:
    """One NetCDF file per profile, layers along a ``layer`` dimension."""

    kind = "netcdf"
    suffix = ".nc"

    def __init__(self, directory: str | Path, out_directory: str | Path | None = None) -> None:
        self.directory = Path(directory)
        self.out_directory = Path(out_directory) if out_directory is not None else self.directory

    def path(self, key: str, directory: Path | None = None) -> Path:
        return (directory or self.directory) / f"{key}{self.suffix}"

    def exists(self, key: str) -> bool:
        return self.path(key).is_file()

    def read(self, key: str) -> SnowProfile:
        with xr.open_dataset(self.path(key)) as ds:
            dep = np.asarray(ds["deposition_date"].values) if "deposition_date" in ds else np.array([])
            layers = []
            for i in range(int(ds.sizes.get("layer", 0))):
                layers.append(
                    Layer(
                        thickness=float(ds["thickness"].values[i]),
                        density=float(ds["density"].values[i]),
                        temperature=float(ds["temperature"].values[i]),
                        liquid_fraction=float(ds["liquid_fraction"].values[i]),
                        deposition_date=_from_datetime64(dep[i]),
                    )
                )
            return SnowProfile(
                date=parse_iso8601_to_utc_datetime(str(ds.attrs.get("profile_date", ""))),
                layers=layers,
                soil=bool(int(ds.attrs.get("soil", 0))),
                station_id=str(ds.attrs.get("station_id", "")),
                station_name=str(ds.attrs.get("station_name", key)),
            )

    def write(self, key: str, profile: SnowProfile) -> Path:
        path = self.path(key, self.out_directory)
        path.parent.mkdir(parents=True, exist_ok=True)
        ls = profile.layers
        ds = xr.Dataset(
            data_vars={
                "thickness": (("layer",), np.array([l.thickness for l in ls], dtype=np.float64), {"units": "m"}),
                "density": (("layer",), np.array([l.density for l in ls], dtype=np.float64), {"units": "kg m-3"}),
                "temperature": (("layer",), np.array([l.temperature for l in ls], dtype=np.float64), {"units": "K"}),
                "liquid_fraction": (("layer",), np.array([l.liquid_fraction for l in ls], dtype=np.float64), {"units": "1"}),
                "deposition_date": (
                    ("layer",),
                    np.array([to_datetime64(l.deposition_date) for l in ls], dtype="datetime64[ns]"),
                ),
            },
            attrs={
                "profile_date": iso_label(profile.date),
                "soil": int(bool(profile.soil)),
                "station_id": profile.station_id or key,
                "station_name": profile.station_name or key,
            },
        )
        ds.to_netcdf(path)
        return path


ProfileIO = SmetProfileIO | NetcdfProfileIO


def make_profile_io(kind: str, directory: str | Path, out_directory: str | Path | None = None) -> ProfileIO:
    """Select the profile serialization once, from configuration."""
    key = str(kind).strip().lower()
    if key == "smet":
        return SmetProfileIO(directory, out_directory)
    if key == "netcdf":
        return NetcdfProfileIO(directory, out_directory)
    raise ValueError(f"Unknown snow profile format '{kind}' (expected 'smet' or 'netcdf')")


def _from_datetime64(value: np.datetime64) -> datetime:
    seconds = (np.datetime64(value, "s") - np.datetime64(0, "s")) / np.timedelta64(1, "s")
    return datetime.fromtimestamp(float(seconds), tz=timezone.utc)


def read_initial_state(
    io: ProfileIO,
    experiment: str,
    ix: int,
    iy: int,
    landuse_code: int,
    is_special: bool,
    is_restart: bool,
    start_date: datetime,
) -> SnowProfile:
    """Read the initial profile of one cell.

    Restarts read the coordinate-keyed profile. Cold starts read the
    land-use profile, except special points which prefer a coordinate-keyed
    profile when one exists. Layers deposited after ``start_date`` are
    rejected.
    """
    grid_key = coordinate_key(ix, iy, experiment)
    lus_key = landuse_key(experiment, landuse_code)

    if is_restart:
        key = grid_key
    elif is_special and io.exists(grid_key):
        key = grid_key
    else:
        key = lus_key

    try:
        profile = io.read(key)
    except ReadFailureError:
        raise
    except (OSError, ValueError, KeyError, IndexError) as exc:
        raise ReadFailureError(f"Can not read snow profile '{key}' for cell ({ix},{iy}): {exc}") from exc

    oldest = profile.oldest_deposition()
    if oldest is not None and oldest > start_date:
        raise ReadFailureError(
            f"A layer can not be younger than the start date! Please check profile '{key}'"
        )
    return profile
