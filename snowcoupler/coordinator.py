# -*- coding: utf-8 -*-
"""Step coordinator: readiness tracking, worker fan-out and grid reduction.

Producers (meteo, radiation, snow drift, data assimilation) push their
fields tagged with the step timestamp they were computed for. Once every
attached producer delivered data for the expected timestamp the step runs
on all worker slices, special points are written, diagnostics are pushed
to the attached consumers and gridded output is produced.

All ranks must push the same fields in the same order: grid queries end
in a blocking sum-reduction across processes.
"""

from __future__ import annotations

# Import dataclasses.
from dataclasses import dataclass, replace

# Import typing primitives.
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

# Import stdlib helpers.
from datetime import datetime, timedelta
from time import perf_counter
import logging

# Import numpy.
import numpy as np

# Import local modules.
from .cellmodel import CellMeta, CellModel, CellParameters, TemperatureIndexCell
from .domain import Domain, round_landuse, skip_cell
from .errors import (
    GeolocationMismatchError,
    MissingDataError,
    ReadFailureError,
    StepFailedError,
    TimingMismatchError,
)
from .grid import Grid
from .io_netcdf import GridWriter, make_grid_writer
from .mpi_utils import TAG_CELLS, TAG_SNO, MPIContext, array_slice_params
from .parameters import DRIFT_PARAMETERS, is_known, is_recognized, split_names, unique_output_grids
from .profiles import ProfileIO, read_initial_state
from .shared_memory import SharedMemoryConfig, parallel_map
from .special_points import Point, SpecialPointOutput, points_in_range
from .time_utils import iso_label, num_label, output_due, parse_iso8601_to_utc_datetime
from .worker import SliceWorker

logger = logging.getLogger("snowcoupler.coordinator")

CellFactory = Callable[[CellMeta, Any], CellModel]


class DriftConsumer(Protocol):
    def set_snow_surface_data(self, hs: Grid, sp: Grid, rg: Grid, n3: Grid, rb: Grid) -> None: ...


class EnergyBalanceConsumer(Protocol):
    def set_albedo(self, albedo: Grid) -> None: ...


class RunoffConsumer(Protocol):
    def output(self, date: datetime, psum: Grid, ta: Grid) -> None: ...


@dataclass(frozen=True)
class ReadinessFlags:
    """Which producers delivered data for the expected step."""
    meteo: bool = False
    radiation: bool = False
    drift: bool = False
    assimilation: bool = False


class ConsumerHandle:
    """Registration of an attached module; ``detach()`` unregisters it."""

    def __init__(self, kind: str, consumer: Any, on_detach: Callable[[str], None]) -> None:
        self.kind = kind
        self.consumer = consumer
        self._on_detach = on_detach
        self.attached = True

    def detach(self) -> None:
        if self.attached:
            self._on_detach(self.kind)
            self.attached = False


def default_cell_factory(cfg: Dict[str, Any]) -> CellFactory:
    """Build TemperatureIndexCell instances from the model configuration."""
    mcfg = cfg.get("model", {})
    params = CellParameters.from_dict(mcfg.get("cell", {}), float(mcfg.get("dt_s", 3600)))
    canopy = bool(mcfg.get("canopy", False))
    soil = bool(mcfg.get("soil", False))

    def _make(meta: CellMeta, profile: Any) -> CellModel:
        return TemperatureIndexCell(meta, profile, params, canopy=canopy, soil=soil)

    return _make


def read_initial_snow_cover(
    ctx: MPIContext,
    cfg: Dict[str, Any],
    dom: Domain,
    points: Sequence[Point],
    profile_io: ProfileIO,
    start_date: datetime,
    factory: Optional[CellFactory] = None,
) -> List[Optional[CellModel]]:
    """Create the cell models of this process, row major over its column slab.

    The master reads every slab and sends them to their owners, unless each
    process does its own I/O (``local_io``). Skipped cells are ``None``.
    """
    make = factory or default_cell_factory(cfg)
    experiment = str(cfg.get("input", {}).get("experiment", "snowcoupler"))
    is_restart = bool(cfg.get("input", {}).get("restart", False))
    point_set = set(points)
    geo = dom.geo
    ny, nx_total = dom.shape

    if not (ctx.master or ctx.local_io or not ctx.active):
        cells = ctx.receive(ctx.master_rank, tag=TAG_CELLS)
        logger.info("Received initial snow cover for process %d", ctx.rank)
        return cells

    mine: List[Optional[CellModel]] = []
    for rank in range(ctx.size):
        if ctx.local_io and rank != ctx.rank:
            continue
        startx, deltax = ctx.slice_for(nx_total, rank)
        slab: List[Optional[CellModel]] = []
        for iy in range(ny):
            for ix in range(startx, startx + deltax):
                lus = float(dom.landuse[iy, ix])
                if skip_cell(lus, float(dom.dem[iy, ix])):
                    slab.append(None)
                    continue
                code = round_landuse(lus)
                profile = read_initial_state(
                    profile_io, experiment, ix, iy, code,
                    is_special=(ix, iy) in point_set,
                    is_restart=is_restart,
                    start_date=start_date,
                )
                easting, northing = geo.cell_xy(ix, iy)
                meta = CellMeta(
                    station_name=f"{ix}_{iy}_{experiment}",
                    station_id=f"{ix}_{iy}",
                    ix=ix,
                    iy=iy,
                    easting=easting,
                    northing=northing,
                    altitude=float(dom.dem[iy, ix]),
                    epsg=geo.epsg,
                    slope=float(dom.slope[iy, ix]),
                    azimuth=float(dom.azimuth[iy, ix]),
                    landuse=code,
                )
                try:
                    slab.append(make(meta, profile))
                except (ValueError, ArithmeticError) as exc:
                    raise ReadFailureError(f"Can not initialize snow pixel ({ix},{iy}): {exc}") from exc
        if rank == ctx.rank:
            mine = slab
        else:
            ctx.send(slab, rank, tag=TAG_CELLS)
            slab = []
    logger.info("Read initial snow cover for process %d", ctx.rank)
    return mine


class StepCoordinator:
    """Owns the full-domain forcing grids and the worker slices of a process."""

    def __init__(
        self,
        ctx: MPIContext,
        cfg: Dict[str, Any],
        dom: Domain,
        cells: Sequence[Optional[CellModel]],
        points: Sequence[Point] = (),
        start_date: Optional[datetime] = None,
        profile_io: Optional[ProfileIO] = None,
        grid_writer: Optional[GridWriter] = None,
        grids_requirements: str = "",
    ) -> None:
        self.ctx = ctx
        self.cfg = cfg
        self.dom = dom
        self.geo = dom.geo
        self.dimy, self.dimx = dom.shape
        mcfg = cfg.get("model", {})
        ocfg = cfg.get("output", {})
        self.dt_s = float(mcfg.get("dt_s", 3600))
        self.time_step = timedelta(seconds=self.dt_s)
        self.next_timestamp = start_date or parse_iso8601_to_utc_datetime(mcfg.get("start_time"))
        self.use_canopy = bool(mcfg.get("canopy", False))
        self.points: List[Point] = list(points)

        # Coordinator-owned forcing grids.
        self._forcing: Dict[str, Grid] = {
            name: dom.template() for name in ("TA", "RH", "VW", "PSUM", "PSUM_PH", "ISWR", "ILWR", "DIFFUSE", "MNS")
        }
        self.solar_elevation = 0.0
        self.da_grid: Optional[Grid] = None
        self._flags = ReadinessFlags()

        # Attached modules.
        self.drift: Optional[DriftConsumer] = None
        self.eb: Optional[EnergyBalanceConsumer] = None
        self.da: Any = None
        self.runoff: Optional[RunoffConsumer] = None

        # Output settings.
        self.grids_write = bool(ocfg.get("grids_write", True))
        self.grids_start = float(ocfg.get("grids_start", 0.0))
        self.grids_days_between = float(ocfg.get("grids_days_between", 1.0))
        self.mask_glaciers = bool(ocfg.get("mask_glaciers", False))
        self.mask_dynamic = bool(ocfg.get("mask_dynamic", False))
        self.output_grids: List[str] = []
        if self.grids_write:
            self.output_grids = unique_output_grids(split_names(ocfg.get("grids_parameters", "")))
        # Grids other modules query through get_grid; they are not written.
        self.grids_requirements = unique_output_grids(split_names(grids_requirements))
        for name in self.grids_requirements:
            if ctx.master and not is_known(name):
                logger.warning("Grid %s required by another module is not computed by the cells", name)
        self.grid_writer = grid_writer or make_grid_writer(
            ocfg.get("grid_format", "netcdf"),
            ocfg.get("grid_path", "output/grids"),
            **self._writer_kwargs(ocfg),
        )
        self.profile_io = profile_io
        self.special_output = SpecialPointOutput(
            ctx, self.points, ocfg, self.dt_s, profile_io=profile_io, canopy=self.use_canopy
        )

        # Process slab, then worker slices inside it.
        self.startx, self.nx = ctx.slice_for(self.dimx)
        if len(cells) != self.dimy * self.nx:
            raise ValueError(
                f"Process {ctx.rank} got {len(cells)} cells for a {self.nx}x{self.dimy} slab"
            )
        self.nbworkers = SharedMemoryConfig.from_dict(cfg.get("compute", {})).workers
        self.workers: List[SliceWorker] = []
        dem_grid = dom.dem_grid()
        lus_grid = dom.landuse_grid()
        for ii, (local_off, width) in enumerate(array_slice_params(self.nx, self.nbworkers)):
            if width == 0:
                continue
            offset = self.startx + local_off
            thread_cells: List[Optional[CellModel]] = []
            for iy in range(self.dimy):
                base = iy * self.nx + local_off
                thread_cells.extend(cells[base:base + width])
            worker = SliceWorker(
                cfg,
                dem_grid.subgrid(offset, width),
                lus_grid.subgrid(offset, width),
                points_in_range(self.points, offset, width),
                thread_cells,
                offset,
            )
            self.workers.append(worker)
            logger.info(
                "Worker %d on process %d: X range = [%d-%d] %d cells",
                ii, ctx.rank, offset, offset + width - 1, width * self.dimy,
            )
        if ctx.master:
            logger.info(
                "Snow cover coupler initialized on %d process(es) with %d worker(s) each",
                ctx.size, self.nbworkers,
            )

        self.mask_glacier: Optional[Grid] = None
        if self.mask_glaciers:
            self.mask_glacier = self.get_grid("GLACIER")

        self.timing = 0.0
        self.steps_done = 0

    @staticmethod
    def _writer_kwargs(ocfg: Dict[str, Any]) -> Dict[str, Any]:
        if str(ocfg.get("grid_format", "netcdf")).lower() != "netcdf":
            return {}
        return {"out_cfg": ocfg}

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------
    @property
    def flags(self) -> ReadinessFlags:
        return self._flags

    def _check_timestamp(self, producer: str, timestamp: datetime) -> None:
        if timestamp != self.next_timestamp:
            if self.ctx.master:
                logger.error(
                    "Providing %s fields at %s for snow cover timestamp %s",
                    producer.lower(), timestamp.isoformat(), self.next_timestamp.isoformat(),
                )
            raise TimingMismatchError(producer, timestamp, self.next_timestamp)

    def _as_grid(self, value: Grid | np.ndarray, what: str) -> Grid:
        """Validate an incoming field against the domain and copy it."""
        if isinstance(value, Grid):
            if not value.same_geolocation(self.dom.template()):
                raise GeolocationMismatchError(
                    f"Trying to set {what} from a ({value.nx},{value.ny}) grid at {value.geo} "
                    f"when the dem is ({self.dimx},{self.dimy}) at {self.geo}"
                )
            return value.copy()
        arr = np.asarray(value, dtype=np.float64)
        if arr.shape != (self.dimy, self.dimx):
            raise GeolocationMismatchError(
                f"Trying to set {what} from an array of shape {arr.shape} "
                f"when the dem is ({self.dimx},{self.dimy})"
            )
        return Grid(values=arr.copy(), geo=self.geo)

    def set_meteo(
        self,
        psum: Grid,
        psum_ph: Grid,
        vw: Grid,
        rh: Grid,
        ta: Grid,
        timestamp: datetime,
    ) -> bool:
        """Store the meteo fields of the expected step; returns True if a step ran."""
        self._check_timestamp("Meteo", timestamp)
        incoming = {
            "PSUM": self._as_grid(psum, "psum"),
            "PSUM_PH": self._as_grid(psum_ph, "psum_ph"),
            "VW": self._as_grid(vw, "vw"),
            "RH": self._as_grid(rh, "rh"),
            "TA": self._as_grid(ta, "ta"),
        }
        self._forcing.update(incoming)
        if self.mask_dynamic:
            self.mask_glacier = self.get_grid("GLACIER")
        self._flags = replace(self._flags, meteo=True)
        return self.calc_next_step()

    def set_radiation(
        self,
        shortwave: Grid | np.ndarray,
        longwave: Grid | np.ndarray,
        diffuse: Grid | np.ndarray,
        solar_elevation: float,
        timestamp: datetime,
    ) -> bool:
        self._check_timestamp("Radiation", timestamp)
        incoming = {
            "ISWR": self._as_grid(shortwave, "shortwave radiation"),
            "ILWR": self._as_grid(longwave, "longwave radiation"),
            "DIFFUSE": self._as_grid(diffuse, "diffuse radiation"),
        }
        self._forcing.update(incoming)
        self.solar_elevation = float(solar_elevation)
        self._flags = replace(self._flags, radiation=True)
        return self.calc_next_step()

    def set_snow_mass_change(self, mns: Grid, timestamp: datetime) -> bool:
        self._check_timestamp("Snowdrift", timestamp)
        self._forcing["MNS"] = self._as_grid(mns, "snow mass changes")
        self._flags = replace(self._flags, drift=True)
        return self.calc_next_step()

    def assimilate(self, da: Grid, timestamp: datetime) -> bool:
        self._check_timestamp("Assimilation", timestamp)
        self.da_grid = self._as_grid(da, "assimilation data")
        if self.ctx.master:
            logger.info("Updating state variables from data assimilation")
        self._flags = replace(self._flags, assimilation=True)
        return self.calc_next_step()

    def calc_next_step(self) -> bool:
        """Run the step if every attached producer delivered; True if it ran."""
        f = self._flags
        if not f.meteo:
            return False
        if self.drift is not None and not f.drift:
            return False
        if self.da is not None and not f.assimilation:
            return False
        if self.eb is not None and not f.radiation:
            return False
        if not f.radiation:
            raise MissingDataError("Radiation data not available")

        # Producers raise their flags again for the next step.
        self._flags = ReadinessFlags()
        self._run_step()
        return True

    # ------------------------------------------------------------------
    # Attach API
    # ------------------------------------------------------------------
    def _detach(self, kind: str) -> None:
        if kind == "drift":
            self.drift = None
            for w in self.workers:
                w.set_use_drift(False)
        elif kind == "energy_balance":
            self.eb = None
            for w in self.workers:
                w.set_use_ebalance(False)
        elif kind == "data_assimilation":
            self.da = None
        elif kind == "runoff":
            self.runoff = None

    def attach_drift(self, consumer: DriftConsumer) -> ConsumerHandle:
        self.drift = consumer
        for w in self.workers:
            w.set_use_drift(True)
        self._push_drift()
        return ConsumerHandle("drift", consumer, self._detach)

    def attach_energy_balance(self, consumer: EnergyBalanceConsumer) -> ConsumerHandle:
        self.eb = consumer
        for w in self.workers:
            w.set_use_ebalance(True)
        self._push_albedo()
        return ConsumerHandle("energy_balance", consumer, self._detach)

    def attach_data_assimilation(self, consumer: Any) -> ConsumerHandle:
        self.da = consumer
        return ConsumerHandle("data_assimilation", consumer, self._detach)

    def attach_runoff(self, consumer: RunoffConsumer) -> ConsumerHandle:
        self.runoff = consumer
        return ConsumerHandle("runoff", consumer, self._detach)

    def _push_drift(self) -> None:
        if self.drift is None:
            return
        grids = [self.get_grid(p) for p in DRIFT_PARAMETERS]
        self.drift.set_snow_surface_data(*grids)

    def _push_albedo(self) -> None:
        if self.eb is None:
            return
        self.eb.set_albedo(self.get_grid("TOP_ALB"))

    # ------------------------------------------------------------------
    # Step execution
    # ------------------------------------------------------------------
    def _slices(self, worker: SliceWorker) -> Dict[str, np.ndarray]:
        x0, x1 = worker.offset, worker.offset + worker.width
        return {
            "psum": self._forcing["PSUM"].values[:, x0:x1],
            "psum_ph": self._forcing["PSUM_PH"].values[:, x0:x1],
            "rh": self._forcing["RH"].values[:, x0:x1],
            "ta": self._forcing["TA"].values[:, x0:x1],
            "vw": self._forcing["VW"].values[:, x0:x1],
            "mns": self._forcing["MNS"].values[:, x0:x1],
            "iswr": self._forcing["ISWR"].values[:, x0:x1],
            "diffuse": self._forcing["DIFFUSE"].values[:, x0:x1],
            "ilwr": self._forcing["ILWR"].values[:, x0:x1],
        }

    def _run_worker(self, worker: SliceWorker) -> int:
        da = None
        if self.da is not None and self.da_grid is not None:
            da = self.da_grid.values[:, worker.offset:worker.offset + worker.width]
        try:
            return worker.run_step(self.next_timestamp, self._slices(worker), self.solar_elevation, da)
        except Exception as exc:
            logger.error("Worker at column %d failed: %s", worker.offset, exc)
            return 1

    def _run_step(self) -> None:
        t0 = perf_counter()
        date = self.next_timestamp

        # Slices touch disjoint columns; results are joined before reduction.
        failures = int(sum(parallel_map(self._run_worker, self.workers, self.nbworkers)))

        # Special points are written even when cells failed.
        if self.points:
            self.special_output.gather_and_write(date, self.workers)

        # Every process learns the global count, so all of them stop together.
        total_failures = self.ctx.allreduce_int(failures)
        if total_failures > 0:
            # Point files are closed on every rank before any of them stops.
            self.ctx.barrier()
            self.timing = perf_counter() - t0
            raise StepFailedError(date, total_failures)

        self._push_drift()
        self._push_albedo()
        self.write_output(date)

        self.timing = perf_counter() - t0
        self.steps_done += 1
        if self.ctx.master:
            logger.info("Snow simulations done for %s", iso_label(date))
        self.next_timestamp = date + self.time_step

    # ------------------------------------------------------------------
    # Grid queries and output
    # ------------------------------------------------------------------
    def get_grid(self, param: str) -> Grid:
        """Full-domain grid of a parameter (empty if no worker computes it)."""
        key = param.upper()
        if key in ("TA", "RH", "VW", "PSUM", "PSUM_PH", "ISWR", "ILWR"):
            return self._forcing[key].copy()

        out = Grid.full(self.geo, (self.dimy, self.dimx), 0.0)
        subs = parallel_map(lambda w: w.get_grid(key), self.workers, self.nbworkers)
        missing = 0
        for worker, sub in zip(self.workers, subs):
            if sub is None:
                missing += 1
            else:
                out.fill(sub, worker.offset)

        out.values = self.ctx.allreduce_sum(out.values)
        missing = self.ctx.allreduce_int(missing)
        if missing > 0:
            if self.ctx.master:
                logger.warning("Requested %s but this was not available in the workers", key)
            return Grid.empty(self.geo)
        return out

    def do_grid_output(self, date: datetime) -> bool:
        return self.grids_write and output_due(date, self.grids_start, self.grids_days_between, self.dt_s)

    def write_output(self, date: datetime) -> None:
        """Gridded output at its cadence, runoff every step (master writes)."""
        if self.do_grid_output(date):
            # Not threaded: every rank must issue the reductions in the same order.
            for name in self.output_grids:
                grid = self.get_grid(name)
                if not self.ctx.master or grid.is_empty:
                    continue
                if self.mask_glaciers and self.mask_glacier is not None and not self.mask_glacier.is_empty:
                    grid = grid.masked_by(self.mask_glacier)
                if is_recognized(name):
                    self.grid_writer.write(grid, name, date)
                else:
                    self.grid_writer.write_named(grid, f"{num_label(date)}_{name}.asc")

        if self.ctx.master and self.runoff is not None:
            self.runoff.output(date, self._forcing["PSUM"].copy(), self._forcing["TA"].copy())

    def _write_snow_cover(self, items: Sequence[Tuple[CellMeta, Any]]) -> None:
        if self.profile_io is None:
            raise ReadFailureError("No profile writer configured for snow cover output")
        for meta, profile in items:
            self.profile_io.write(meta.station_name, profile)

    def write_output_sno(self, date: datetime) -> None:
        """Checkpoint every cell profile (gathered on the master unless local_io)."""
        items: List[Tuple[CellMeta, Any]] = []
        for w in self.workers:
            items.extend(w.get_output_sno(date))

        if self.ctx.master:
            logger.info("Writing SNO output for process %d", self.ctx.rank)
            self._write_snow_cover(items)
            if self.ctx.active and not self.ctx.local_io:
                for rank in range(self.ctx.size):
                    if rank == self.ctx.master_rank:
                        continue
                    logger.info("Writing SNO output for process %d", rank)
                    self._write_snow_cover(self.ctx.receive(rank, tag=TAG_SNO))
        elif self.ctx.local_io:
            logger.info("Writing SNO output for process %d", self.ctx.rank)
            self._write_snow_cover(items)
        else:
            self.ctx.send(items, self.ctx.master_rank, tag=TAG_SNO)
