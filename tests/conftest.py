# -*- coding: utf-8 -*-
"""Shared fixtures: tiny domains, deterministic cell models and a fake multi-rank context."""

from __future__ import annotations

# Import stdlib helpers.
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

# Import numpy and pytest.
import numpy as np
import pytest

# Import package modules.
from snowcoupler.cellmodel import CellForcing, CellMeta, CellModel, FluxRecord, MeteoRecord
from snowcoupler.config import deep_update, default_config
from snowcoupler.coordinator import StepCoordinator
from snowcoupler.domain import Domain
from snowcoupler.errors import CellModelError
from snowcoupler.grid import NODATA, Geolocation, Grid
from snowcoupler.mpi_utils import MPIContext
from snowcoupler.profiles import Layer, SnowProfile

START = datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc)


def make_domain(nx: int = 8, ny: int = 3, landuse: float = 11.0, epsg: Optional[int] = None) -> Domain:
    geo = Geolocation(xllcorner=1000.0, yllcorner=2000.0, cellsize=100.0, epsg=epsg)
    dem = np.full((ny, nx), 1500.0)
    return Domain(
        dem=dem,
        landuse=np.full((ny, nx), float(landuse)),
        slope=np.zeros((ny, nx)),
        azimuth=np.zeros((ny, nx)),
        geo=geo,
        x_name="x",
        y_name="y",
        x_vals=geo.xllcorner + (np.arange(nx) + 0.5) * geo.cellsize,
        y_vals=geo.yllcorner + (np.arange(ny) + 0.5) * geo.cellsize,
        grid_mapping_name=None,
        grid_mapping_attrs={},
    )


def make_meta(ix: int, iy: int, dom: Domain, experiment: str = "test") -> CellMeta:
    easting, northing = dom.geo.cell_xy(ix, iy)
    return CellMeta(
        station_name=f"{ix}_{iy}_{experiment}",
        station_id=f"{ix}_{iy}",
        ix=ix,
        iy=iy,
        easting=easting,
        northing=northing,
        altitude=float(dom.dem[iy, ix]),
        epsg=dom.geo.epsg,
        slope=0.0,
        azimuth=0.0,
        landuse=11,
    )


class FakeCell(CellModel):
    """Cell whose diagnostics encode its position: value = 100 * ix + iy."""

    def __init__(self, meta: CellMeta, fail: bool = False, canopy: bool = False) -> None:
        self.meta = meta
        self.fail = fail
        self.canopy = canopy
        self.steps: List[datetime] = []
        self.last: Optional[CellForcing] = None

    def step(self, date: datetime, forcing: CellForcing) -> None:
        if self.fail:
            raise CellModelError(f"cell ({self.meta.ix},{self.meta.iy}) refuses to step")
        self.steps.append(date)
        self.last = forcing

    def value(self, param: str) -> Optional[float]:
        key = param.upper()
        if key in ("ISWR_BELOW_CAN", "CAN_INT") and not self.canopy:
            return None
        if key == "GLACIER":
            return 1.0
        return float(100 * self.meta.ix + self.meta.iy)

    def meteo_record(self) -> MeteoRecord:
        f = self.last
        return MeteoRecord(
            date=self.steps[-1], ta=f.ta, tss=270.0, ts0=273.15, vw=f.vw, dw=NODATA, vw_max=NODATA,
            iswr=f.iswr, rswr=0.8 * f.iswr, ilwr=f.ilwr, psum=f.psum, psum_ph=f.psum_ph, hs=0.5, rh=f.rh,
        )

    def flux_record(self) -> FluxRecord:
        return FluxRecord(sw_in=self.last.iswr, sw_out=0.8 * self.last.iswr, melt=0.0, runoff=0.0, mass_change=0.0)

    def to_profile(self, date: datetime) -> SnowProfile:
        layer = Layer(thickness=0.5, density=200.0, temperature=270.0, liquid_fraction=0.0, deposition_date=START)
        return SnowProfile(
            date=date, layers=[layer], station_id=self.meta.station_id, station_name=self.meta.station_name
        )


class FakeMultiRankContext(MPIContext):
    """Pretends to be one rank of a larger run; point-to-point traffic is queued in memory."""

    def __init__(self, rank: int = 0, size: int = 3, local_io: bool = False) -> None:
        super().__init__(comm=object(), rank=rank, size=size, world_size=size, local_io=local_io)
        self.inbox: Dict[tuple, deque] = defaultdict(deque)
        self.sent: List[tuple] = []
        self.received: List[int] = []
        self.barriers = 0

    def queue(self, source: int, tag: int, obj: Any) -> None:
        self.inbox[(source, tag)].append(obj)

    def send(self, obj: Any, dest: int, tag: int = 0) -> None:
        self.sent.append((dest, tag, obj))

    def receive(self, source: int, tag: int = 0) -> Any:
        self.received.append(source)
        return self.inbox[(source, tag)].popleft()

    def allreduce_sum(self, arr: np.ndarray) -> np.ndarray:
        return arr

    def allreduce_int(self, value: int) -> int:
        return int(value)

    def bcast(self, obj: Any) -> Any:
        return obj

    def barrier(self) -> None:
        self.barriers += 1


def serial_cells(dom: Domain, failing=(), experiment: str = "test") -> List[Optional[CellModel]]:
    """Row-major cells of the whole domain (serial process)."""
    cells: List[Optional[CellModel]] = []
    for iy in range(dom.ny):
        for ix in range(dom.nx):
            cells.append(FakeCell(make_meta(ix, iy, dom, experiment), fail=(ix, iy) in failing))
    return cells


def forcing_grids(dom: Domain, value: float = 1.0) -> Dict[str, Grid]:
    return {name: dom.template(value) for name in ("psum", "psum_ph", "vw", "rh", "ta", "iswr", "ilwr", "diffuse")}


class RecordingWriter:
    """Grid writer that keeps what it was asked to write."""

    def __init__(self) -> None:
        self.written: List[tuple] = []

    def write(self, grid: Grid, param: str, date: datetime) -> None:
        self.written.append(("param", param, date, grid))

    def write_named(self, grid: Grid, filename: str) -> None:
        self.written.append(("named", filename, None, grid))


@pytest.fixture
def start() -> datetime:
    return START


@pytest.fixture
def dt() -> timedelta:
    return timedelta(hours=1)


@pytest.fixture
def cfg(tmp_path) -> Dict[str, Any]:
    return deep_update(
        default_config(),
        {
            "model": {"start_time": "2024-01-01T00:00:00Z", "end_time": "2024-01-01T03:00:00Z", "dt_s": 3600},
            "input": {"snowpath": str(tmp_path / "snowfiles"), "experiment": "test"},
            "output": {
                "grids_write": False,
                "grid_path": str(tmp_path / "grids"),
                "meteo_path": str(tmp_path / "points"),
            },
            "restart": {"out_dir": str(tmp_path / "restart")},
            "compute": {"workers": 2},
        },
    )


@pytest.fixture
def make_coordinator(cfg):
    """Factory building a serial coordinator over FakeCell models."""

    def _make(dom: Optional[Domain] = None, workers: int = 2, points=(), failing=(), ctx=None, writer=None, **kwargs):
        dom = dom or make_domain()
        cfg["compute"]["workers"] = workers
        return StepCoordinator(
            ctx or MPIContext.serial(),
            cfg,
            dom,
            serial_cells(dom, failing=failing),
            points=list(points),
            start_date=START,
            grid_writer=writer or RecordingWriter(),
            **kwargs,
        )

    return _make
