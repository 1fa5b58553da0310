# -*- coding: utf-8 -*-
"""Special-point (point of interest) registry and output path.

Special points are single cells with extra output: a SMET time series
with one line per step, an optional ``.met`` time series and ``.pro``
profile dumps at their own cadences, and a one-off ``.sno`` profile.
"""

from __future__ import annotations

# Import typing primitives.
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

# Import stdlib helpers.
from datetime import datetime
from functools import lru_cache
from pathlib import Path
import getpass
import logging
import math

# Import pyproj for geographic coordinates in headers.
from pyproj import Transformer

# Import local modules.
from .cellmodel import CellMeta
from .domain import round_landuse
from .grid import NODATA
from .mpi_utils import TAG_SNOW, MPIContext
from .profiles import ProfileIO
from .time_utils import iso_label, output_due, utc_now_iso
from .worker import PointSnapshot, SliceWorker

logger = logging.getLogger("snowcoupler.points")

Point = Tuple[int, int]

CANOPY_COMMENT = (
    "ISWR/RSWR are above the canopy, ISWR_can/RSWR_can and PSUM/PSUM_PH are below the canopy"
)


def prepare_points(coords: Iterable[Sequence[int]], ctx: Optional[MPIContext] = None) -> List[Point]:
    """Deduplicate (ix, iy) points and sort them by row, then column.

    Duplicates are reported (by the master only) and dropped.
    """
    pts: List[Point] = []
    first_seen: Dict[Point, int] = {}
    for ii, c in enumerate(coords):
        p = (int(c[0]), int(c[1]))
        if p in first_seen:
            if ctx is None or ctx.master:
                logger.warning(
                    "POI #%d (%d,%d) is a duplicate of POI #%d (%d,%d)",
                    ii, p[0], p[1], first_seen[p], p[0], p[1],
                )
            continue
        first_seen[p] = ii
        pts.append(p)
    return sorted(pts, key=lambda p: (p[1], p[0]))


def points_in_range(points: Sequence[Point], x0: int, width: int) -> List[Point]:
    """Points whose column lies in [x0, x0+width), translated to local columns."""
    return [(ix - x0, iy) for ix, iy in points if x0 <= ix < x0 + width]


def is_special(points: Sequence[Point], ix: int, iy: int) -> bool:
    return (int(ix), int(iy)) in points


def read_points_file(path: str | Path) -> List[Point]:
    """Read 'ix iy' pairs, one per line ('#' starts a comment)."""
    out: List[Point] = []
    with open(path, "r", encoding="utf-8") as fh:
        for raw in fh:
            line = raw.split("#", 1)[0].strip()
            if not line:
                continue
            parts = line.replace(",", " ").split()
            out.append((int(parts[0]), int(parts[1])))
    return out


@lru_cache(maxsize=8)
def _to_wgs84(epsg: int) -> Transformer:
    return Transformer.from_crs(f"EPSG:{epsg}", "EPSG:4326", always_xy=True)


def lat_lon(meta: CellMeta) -> Tuple[float, float]:
    """Geographic coordinates of a cell, nodata when the projection is unknown."""
    if meta.epsg is None:
        return NODATA, NODATA
    lon, lat = _to_wgs84(int(meta.epsg)).transform(meta.easting, meta.northing)
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return NODATA, NODATA
    return float(lat), float(lon)


def _run_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


class SmetPointWriter:
    """Per-point SMET text stream: header once, one fixed-width line per step."""

    def __init__(
        self,
        outdir: str | Path,
        tz: float = 0.0,
        canopy: bool = False,
        soil_temperature: bool = False,
    ) -> None:
        self.outdir = Path(outdir)
        self.tz = float(tz)
        self.canopy = bool(canopy)
        self.soil_temperature = bool(soil_temperature)
        self.creation = utc_now_iso()
        self.user = _run_user()

    def path(self, meta: CellMeta) -> Path:
        return self.outdir / f"{meta.station_name}.smet"

    def fields(self) -> str:
        f = "timestamp TA TSS TSG VW DW VW_MAX ISWR OSWR ILWR PSUM PSUM_PH HS RH"
        if self.soil_temperature:
            f += " TSOIL"
        if self.canopy:
            f += " ISWR_can RSWR_can"
        return f

    def header(self, meta: CellMeta, landuse_code: float) -> str:
        lat, lon = lat_lon(meta)
        epsg = float(meta.epsg) if meta.epsg is not None else NODATA
        lines = [
            "SMET 1.1 ASCII",
            "[HEADER]",
            f"station_name = {meta.station_name}",
            f"station_id   = {meta.station_id}",
            f"altitude     = {meta.altitude:11.1f}",
            f"latitude     = {lat:11.8f}",
            f"longitude    = {lon:11.8f}",
            f"easting      = {meta.easting:11.1f}",
            f"northing     = {meta.northing:11.1f}",
            f"epsg         = {epsg:11.0f}",
            f"slope        = {meta.slope:11.1f}",
            f"azimuth      = {meta.azimuth:11.1f}",
            f"landuse      = {float(round_landuse(landuse_code)):11.0f}",
            f"nodata       = {NODATA:11.0f}",
            f"tz           = {self.tz:11.0f}",
            f"source       = snowcoupler run by {self.user}",
            f"creation     = {self.creation}",
        ]
        if self.canopy:
            lines.append(f"comment      = {CANOPY_COMMENT}")
        lines.append(f"fields       = {self.fields()}")
        lines.append("[DATA]")
        return "\n".join(lines) + "\n"

    def line(self, snap: PointSnapshot) -> str:
        m = snap.meteo
        parts = [
            iso_label(m.date),
            f"{m.ta:8.2f}",
            f"{m.tss:8.2f}",
            f"{m.ts0:8.2f}",
            f"{m.vw:6.1f}",
            f"{m.dw:5.0f}",
            f"{m.vw_max:6.1f}",
            f"{m.iswr:6.0f}",
            f"{m.rswr:6.0f}",
            f"{m.ilwr:6.3f}",
            f"{m.psum:6.3f}",
            f"{m.psum_ph:6.3f}",
            f"{m.hs / snap.meta.cos_slope:8.3f}",
            f"{m.rh:7.3f}",
        ]
        if self.soil_temperature:
            parts.append(f"{(m.ts[0] if m.ts else NODATA):8.2f}")
        if self.canopy:
            parts.append(f"{snap.flux.sw_in:6.0f}")
            parts.append(f"{snap.flux.sw_out:6.0f}")
        return " ".join(parts) + " \n"

    def write(self, snap: PointSnapshot) -> Path:
        path = self.path(snap.meta)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as fh:
            # A restarted run continues the stream of the previous one.
            if fh.tell() == 0:
                fh.write(self.header(snap.meta, snap.landuse))
            fh.write(self.line(snap))
        return path


class TimeSeriesWriter:
    """Snow time series (``.met``) and profile dumps (``.pro``) of special points."""

    MET_FIELDS = "timestamp HS SWE TSS TSG ALBEDO MELT RUNOFF MNS"

    def __init__(self, outdir: str | Path) -> None:
        self.outdir = Path(outdir)

    def write_met(self, snap: PointSnapshot) -> Path:
        path = self.outdir / f"{snap.meta.station_name}.met"
        path.parent.mkdir(parents=True, exist_ok=True)
        p = snap.profile
        albedo = snap.flux.sw_out / snap.flux.sw_in if snap.flux.sw_in > 0.0 else NODATA
        with open(path, "a", encoding="utf-8") as fh:
            if fh.tell() == 0:
                fh.write(f"# station_id = {snap.meta.station_id}\n")
                fh.write(f"# fields = {self.MET_FIELDS}\n")
            fh.write(
                f"{iso_label(snap.meteo.date)} {p.height:.4f} {p.swe:.3f} {snap.meteo.tss:.2f} "
                f"{snap.meteo.ts0:.2f} {albedo:.3f} {snap.flux.melt:.4f} {snap.flux.runoff:.4f} "
                f"{snap.flux.mass_change:.4f}\n"
            )
        return path

    def write_profile(self, date: datetime, snap: PointSnapshot) -> Path:
        path = self.outdir / f"{snap.meta.station_name}.pro"
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as fh:
            fh.write(f"[PROFILE {iso_label(date)}] layers={len(snap.profile.layers)}\n")
            for l in snap.profile.layers:
                fh.write(
                    f"{l.thickness:.4f} {l.density:.2f} {l.temperature:.2f} "
                    f"{l.liquid_fraction:.4f} {iso_label(l.deposition_date)}\n"
                )
        return path


class SpecialPointOutput:
    """Gathers special-point snapshots and writes them, in a deterministic order."""

    def __init__(
        self,
        ctx: MPIContext,
        points: Sequence[Point],
        out_cfg: Dict[str, Any],
        dt_s: float,
        profile_io: Optional[ProfileIO] = None,
        canopy: bool = False,
    ) -> None:
        self.ctx = ctx
        self.points = list(points)
        self.dt_s = float(dt_s)
        self.ts_write = bool(out_cfg.get("ts_write", False))
        self.ts_start = float(out_cfg.get("ts_start", 0.0))
        self.ts_days_between = float(out_cfg.get("ts_days_between", 0.0))
        self.prof_write = bool(out_cfg.get("prof_write", False))
        self.prof_start = float(out_cfg.get("prof_start", 0.0))
        self.prof_days_between = float(out_cfg.get("prof_days_between", 0.0))
        self.snow_write = bool(out_cfg.get("snow_write", False))
        outdir = out_cfg.get("meteo_path", "output/points")
        self.smet = SmetPointWriter(
            outdir,
            tz=float(out_cfg.get("time_zone", 0.0) or 0.0),
            canopy=canopy,
            soil_temperature=out_cfg.get("soil_temperature_depth", None) not in (None, NODATA),
        )
        self.series = TimeSeriesWriter(outdir)
        self.profile_io = profile_io
        self.snow_poi_written = False

    def write_snapshots(self, date: datetime, snaps: Sequence[PointSnapshot]) -> None:
        ts = self.ts_write and output_due(date, self.ts_start, self.ts_days_between, self.dt_s)
        pr = self.prof_write and output_due(date, self.prof_start, self.prof_days_between, self.dt_s)
        for snap in snaps:
            self.smet.write(snap)
            if ts:
                self.series.write_met(snap)
            if pr:
                self.series.write_profile(date, snap)

    def _write_sno(self, snaps: Sequence[PointSnapshot]) -> None:
        if self.profile_io is None or self.snow_write or self.snow_poi_written:
            return
        for snap in snaps:
            self.profile_io.write(snap.meta.station_name, snap.profile)

    def gather_and_write(self, date: datetime, workers: Sequence[SliceWorker]) -> int:
        """Collect snapshots from every worker (ascending order) and write them.

        Returns the number of snapshots written by this process. Worker
        buffers are always cleared afterwards.
        """
        snaps: List[PointSnapshot] = []
        # Sequential on purpose: the output order follows the worker order.
        for w in workers:
            snaps.extend(w.get_output_special_points())

        written = 0
        if self.ctx.local_io or not self.ctx.active:
            self.write_snapshots(date, snaps)
            self._write_sno(snaps)
            self.snow_poi_written = True
            written = len(snaps)
        elif self.ctx.master:
            self.write_snapshots(date, snaps)
            self._write_sno(snaps)
            written = len(snaps)
            for rank in range(self.ctx.size):
                if rank == self.ctx.master_rank:
                    continue
                remote = self.ctx.receive(rank, tag=TAG_SNOW)
                self.write_snapshots(date, remote)
                self._write_sno(remote)
                written += len(remote)
            self.snow_poi_written = True
        else:
            self.ctx.send(snaps, self.ctx.master_rank, tag=TAG_SNOW)
            snaps = []

        for w in workers:
            w.clear_special_points_data()
        return written


__all__ = [
    "Point",
    "prepare_points",
    "points_in_range",
    "is_special",
    "read_points_file",
    "lat_lon",
    "SmetPointWriter",
    "TimeSeriesWriter",
    "SpecialPointOutput",
]
