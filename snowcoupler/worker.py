# -*- coding: utf-8 -*-
"""Worker slice: one contiguous column range of cells and their models."""

from __future__ import annotations

# Import dataclass for snapshot records.
from dataclasses import dataclass

# Import typing primitives.
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

# Import stdlib helpers.
from datetime import datetime
import logging

# Import numpy for slice grids.
import numpy as np

# Import local modules.
from .cellmodel import CellForcing, CellMeta, CellModel, FluxRecord, MeteoRecord
from .grid import NODATA, Grid
from .parameters import CANOPY_PARAMETERS, is_known
from .profiles import SnowProfile

logger = logging.getLogger("snowcoupler.worker")

# Forcing slices a worker expects for each step.
STEP_FORCING = ("psum", "psum_ph", "rh", "ta", "vw", "mns", "iswr", "diffuse", "ilwr")


@dataclass
class PointSnapshot:
    """State of one special point right after a step."""
    meta: CellMeta
    meteo: MeteoRecord
    flux: FluxRecord
    profile: SnowProfile
    landuse: float


class SliceWorker:
    """Owns the cells of columns [offset, offset + width) and steps them.

    ``cells`` is row major over the slice: index ``iy * width + ix_local``,
    ``None`` for skipped cells. Special points are given in slice-local
    column coordinates.
    """

    def __init__(
        self,
        cfg: Dict[str, Any],
        sub_dem: Grid,
        sub_landuse: Grid,
        sub_points: Sequence[Tuple[int, int]],
        cells: Sequence[Optional[CellModel]],
        offset: int,
    ) -> None:
        self.dem = sub_dem
        self.landuse = sub_landuse
        self.ny = sub_dem.ny
        self.width = sub_dem.nx
        if len(cells) != self.ny * self.width:
            raise ValueError(
                f"Worker at column {offset} got {len(cells)} cells for a {self.width}x{self.ny} slice"
            )
        self.cells: List[Optional[CellModel]] = list(cells)
        self.offset = int(offset)
        self.points: List[Tuple[int, int]] = [(int(ix), int(iy)) for ix, iy in sub_points]
        self._point_set = set(self.points)
        self.use_canopy = bool(cfg.get("model", {}).get("canopy", False))
        self.use_drift = False
        self.use_ebalance = False
        self._special: List[PointSnapshot] = []
        self.date: Optional[datetime] = None

    def set_use_drift(self, flag: bool) -> None:
        self.use_drift = bool(flag)

    def set_use_ebalance(self, flag: bool) -> None:
        self.use_ebalance = bool(flag)

    def is_special(self, ix_local: int, iy: int) -> bool:
        return (ix_local, iy) in self._point_set

    def run_step(
        self,
        date: datetime,
        forcing: Mapping[str, np.ndarray],
        solar_elevation: float = 0.0,
        assimilation: Optional[np.ndarray] = None,
    ) -> int:
        """Step every cell of the slice; return the number of failed cells.

        A failing cell is logged and counted; its siblings still run.
        """
        for name in STEP_FORCING:
            arr = forcing[name]
            if arr.shape != (self.ny, self.width):
                raise ValueError(
                    f"Forcing '{name}' slice has shape {arr.shape}, expected {(self.ny, self.width)}"
                )

        failures = 0
        for iy in range(self.ny):
            for ix in range(self.width):
                cell = self.cells[iy * self.width + ix]
                if cell is None:
                    continue
                f = CellForcing(
                    ta=float(forcing["ta"][iy, ix]),
                    rh=float(forcing["rh"][iy, ix]),
                    vw=float(forcing["vw"][iy, ix]),
                    psum=float(forcing["psum"][iy, ix]),
                    psum_ph=float(forcing["psum_ph"][iy, ix]),
                    iswr=float(forcing["iswr"][iy, ix]),
                    ilwr=float(forcing["ilwr"][iy, ix]),
                    diffuse=float(forcing["diffuse"][iy, ix]),
                    mns=float(forcing["mns"][iy, ix]) if self.use_drift else 0.0,
                    solar_elevation=float(solar_elevation),
                    assimilation=float(assimilation[iy, ix]) if assimilation is not None else None,
                )
                try:
                    cell.step(date, f)
                except Exception as exc:
                    failures += 1
                    logger.error(
                        "Cell (%d,%d) failed at %s: %s", ix + self.offset, iy, date.isoformat(), exc
                    )
                    continue
                if self.is_special(ix, iy):
                    self._special.append(
                        PointSnapshot(
                            meta=cell.meta,
                            meteo=cell.meteo_record(),
                            flux=cell.flux_record(),
                            profile=cell.to_profile(date),
                            landuse=float(self.landuse.values[iy, ix]),
                        )
                    )
        self.date = date
        return failures

    def get_grid(self, param: str) -> Optional[np.ndarray]:
        """Slice values of a diagnostic, or None when it is not computed."""
        key = param.upper()
        if not is_known(key):
            return None
        if key in CANOPY_PARAMETERS and not self.use_canopy:
            return None
        out = np.full((self.ny, self.width), NODATA, dtype=np.float64)
        for idx, cell in enumerate(self.cells):
            if cell is None:
                continue
            v = cell.value(key)
            if v is None:
                return None
            iy, ix = divmod(idx, self.width)
            out[iy, ix] = v
        return out

    def get_output_special_points(self) -> List[PointSnapshot]:
        """Snapshots of the special points stepped since the last clear."""
        return list(self._special)

    def clear_special_points_data(self) -> None:
        self._special = []

    def get_output_sno(self, date: datetime) -> List[Tuple[CellMeta, SnowProfile]]:
        """Profiles of every simulated cell, for checkpoints."""
        return [(c.meta, c.to_profile(date)) for c in self.cells if c is not None]
