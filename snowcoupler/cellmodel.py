# -*- coding: utf-8 -*-
"""Per-cell snow model contract and a temperature-index reference model.

The coupler treats every cell model as an opaque state machine: it is
built from an initial profile, stepped with per-cell forcing and queried
for diagnostics. ``TemperatureIndexCell`` is a small degree-day model that
satisfies the contract so the coupler can run end to end; it is not meant
to reproduce a physically based snow cover model.
"""

from __future__ import annotations

# Import dataclasses and ABC helpers.
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

# Import typing primitives.
from typing import Any, Dict, List, Optional

# Import stdlib helpers.
from datetime import datetime
import math

# Import local modules.
from .errors import CellModelError
from .grid import NODATA
from .profiles import Layer, SnowProfile

# Assimilation codes: observed snow-free / observed snow.
DA_NO_SNOW = 1.0
DA_SNOW = 4.0


@dataclass
class CellMeta:
    """Identity and position of a simulated cell."""
    station_name: str
    station_id: str
    ix: int
    iy: int
    easting: float
    northing: float
    altitude: float
    epsg: Optional[int]
    slope: float
    azimuth: float
    landuse: int

    @property
    def cos_slope(self) -> float:
        if self.slope == NODATA:
            return 1.0
        return math.cos(math.radians(self.slope))


@dataclass
class CellForcing:
    """Forcing values of one cell for one step."""
    ta: float
    rh: float
    vw: float
    psum: float
    psum_ph: float
    iswr: float
    ilwr: float
    diffuse: float = 0.0
    mns: float = 0.0
    solar_elevation: float = 0.0
    assimilation: Optional[float] = None


@dataclass
class MeteoRecord:
    """Meteorological state of a cell after a step (point time series)."""
    date: datetime
    ta: float
    tss: float
    ts0: float
    vw: float
    dw: float
    vw_max: float
    iswr: float
    rswr: float
    ilwr: float
    psum: float
    psum_ph: float
    hs: float
    rh: float
    ts: List[float] = field(default_factory=list)


@dataclass
class FluxRecord:
    """Surface fluxes of a cell after a step."""
    sw_in: float
    sw_out: float
    melt: float
    runoff: float
    mass_change: float


@dataclass(frozen=True)
class CellParameters:
    """Parameters of the temperature-index model."""
    dt_s: float = 3600.0
    ddf_mm_per_k_day: float = 3.0
    t_melt_k: float = 273.15
    fresh_snow_density: float = 100.0
    max_density: float = 450.0
    densification_per_day: float = 0.02
    albedo_fresh: float = 0.85
    albedo_min: float = 0.5
    albedo_decay_days: float = 10.0
    albedo_ground: float = 0.2
    liquid_holding: float = 0.05
    glacier_swe_kgm2: float = 5000.0
    max_swe_kgm2: float = 1.0e6
    canopy_interception_kgm2: float = 2.0
    canopy_transmissivity: float = 0.6

    @classmethod
    def from_dict(cls, cfg: Dict[str, Any], dt_s: float) -> "CellParameters":
        known = {k: float(v) for k, v in cfg.items() if k in cls.__dataclass_fields__}
        known["dt_s"] = float(dt_s)
        return cls(**known)


class CellModel(ABC):
    """Contract every per-cell model fulfils."""

    meta: CellMeta

    @abstractmethod
    def step(self, date: datetime, forcing: CellForcing) -> None:
        """Advance the cell by one step ending at ``date``; raise on failure."""

    @abstractmethod
    def value(self, param: str) -> Optional[float]:
        """Current value of a diagnostic, ``None`` if never computed here."""

    @abstractmethod
    def meteo_record(self) -> MeteoRecord:
        ...

    @abstractmethod
    def flux_record(self) -> FluxRecord:
        ...

    @abstractmethod
    def to_profile(self, date: datetime) -> SnowProfile:
        ...


class TemperatureIndexCell(CellModel):
    """Single-bucket degree-day snow model."""

    def __init__(
        self,
        meta: CellMeta,
        profile: SnowProfile,
        params: CellParameters,
        canopy: bool = False,
        soil: bool = False,
    ) -> None:
        self.meta = meta
        self.params = params
        self.canopy = bool(canopy)
        self.soil = bool(soil) or profile.soil
        hs = profile.height
        self.liquid = float(sum(l.thickness * l.density * l.liquid_fraction for l in profile.layers))
        self.swe = max(0.0, profile.swe - self.liquid)
        self.density = self.swe / hs if hs > 0.0 and self.swe > 0.0 else params.fresh_snow_density
        top_t = profile.layers[-1].temperature if profile.layers else params.t_melt_k
        self.tss = min(float(top_t), params.t_melt_k)
        self.tsg = params.t_melt_k if self.swe > 0.0 else float(top_t)
        self.albedo = params.albedo_min if self.swe > 0.0 else params.albedo_ground
        self.age_days = 0.0
        self.deposition_date = profile.oldest_deposition()
        self.melt = 0.0
        self.runoff = 0.0
        self.mns = 0.0
        self.can_storage = 0.0
        self.iswr_below = 0.0
        self._meteo: Optional[MeteoRecord] = None
        self._flux = FluxRecord(sw_in=0.0, sw_out=0.0, melt=0.0, runoff=0.0, mass_change=0.0)

    @property
    def hs(self) -> float:
        return self.swe / self.density if self.swe > 0.0 else 0.0

    @property
    def is_glacier(self) -> bool:
        return self.swe > self.params.glacier_swe_kgm2

    def step(self, date: datetime, forcing: CellForcing) -> None:
        p = self.params
        checked = (forcing.ta, forcing.rh, forcing.vw, forcing.psum, forcing.psum_ph, forcing.iswr, forcing.ilwr)
        if any((not math.isfinite(v)) or v == NODATA for v in checked):
            raise CellModelError(
                f"Invalid forcing for cell ({self.meta.ix},{self.meta.iy}) at {date.isoformat()}: {checked}"
            )
        dt_days = p.dt_s / 86400.0

        psum = max(0.0, forcing.psum)
        phase = min(1.0, max(0.0, forcing.psum_ph))
        iswr = max(0.0, forcing.iswr)

        # Canopy interception of the incoming precipitation and shortwave.
        if self.canopy:
            room = max(0.0, p.canopy_interception_kgm2 - self.can_storage)
            caught = min(psum, room)
            self.can_storage = (self.can_storage + caught) * math.exp(-dt_days)
            psum -= caught
            self.iswr_below = iswr * p.canopy_transmissivity
            iswr = self.iswr_below

        snowfall = psum * (1.0 - phase)
        rain = psum * phase

        # Data assimilation overrides the snow presence.
        if forcing.assimilation is not None and forcing.assimilation != NODATA:
            if forcing.assimilation == DA_NO_SNOW and self.swe > 0.0:
                self.swe = 0.0
                self.liquid = 0.0
            elif forcing.assimilation == DA_SNOW and self.swe <= 1e-12:
                snowfall += 40.0 * p.dt_s / 3600.0

        # Fresh snow is mixed into the bucket with its own density.
        if snowfall > 0.0:
            new_hs = snowfall / p.fresh_snow_density
            total_hs = self.hs + new_hs
            self.swe += snowfall
            self.density = self.swe / total_hs
            if self.deposition_date is None:
                self.deposition_date = date

        # Drift erosion/deposition.
        self.mns = 0.0
        if forcing.mns != NODATA and math.isfinite(forcing.mns):
            self.mns = max(forcing.mns, -self.swe)
            self.swe += self.mns

        # Degree-day melt.
        melt = 0.0
        if forcing.ta > p.t_melt_k and self.swe > 0.0:
            melt = min(self.swe, p.ddf_mm_per_k_day * (forcing.ta - p.t_melt_k) * dt_days)
            self.swe -= melt
        self.melt = melt

        # Liquid water retention and runoff.
        if self.swe > 0.0:
            self.liquid += melt + rain
            capacity = p.liquid_holding * self.swe
            self.runoff = max(0.0, self.liquid - capacity)
            self.liquid -= self.runoff
        else:
            self.runoff = self.liquid + melt + rain
            self.liquid = 0.0
            self.deposition_date = None

        # Settling and albedo ageing.
        if self.swe > 0.0:
            self.density += (p.max_density - self.density) * min(1.0, p.densification_per_day * dt_days)
            if snowfall > 0.5:
                self.albedo = p.albedo_fresh
                self.age_days = 0.0
            else:
                self.age_days += dt_days
                decay = math.exp(-dt_days / p.albedo_decay_days)
                base = max(self.albedo, p.albedo_min)
                self.albedo = p.albedo_min + (base - p.albedo_min) * decay
            self.tss = min(forcing.ta, p.t_melt_k)
            self.tsg = p.t_melt_k
        else:
            self.density = p.fresh_snow_density
            self.albedo = p.albedo_ground
            self.age_days = 0.0
            self.tss = forcing.ta
            self.tsg = forcing.ta

        if not math.isfinite(self.swe) or self.swe > p.max_swe_kgm2:
            raise CellModelError(
                f"Snow water equivalent diverged in cell ({self.meta.ix},{self.meta.iy}): {self.swe}"
            )

        rswr = self.albedo * iswr
        self._flux = FluxRecord(sw_in=iswr, sw_out=rswr, melt=melt, runoff=self.runoff, mass_change=self.mns)
        self._meteo = MeteoRecord(
            date=date,
            ta=forcing.ta,
            tss=self.tss,
            ts0=self.tsg,
            vw=forcing.vw,
            dw=NODATA,
            vw_max=NODATA,
            iswr=iswr,
            rswr=rswr,
            ilwr=forcing.ilwr,
            psum=forcing.psum,
            psum_ph=forcing.psum_ph,
            hs=self.hs,
            rh=forcing.rh,
            ts=[self.tsg] if self.soil else [],
        )

    # Grain descriptors derived from the surface age.
    def _rg(self) -> float:
        return min(2.0, 0.2 + 0.05 * self.age_days)

    def value(self, param: str) -> Optional[float]:
        key = param.upper()
        if key in ("ISWR_BELOW_CAN", "CAN_INT"):
            if not self.canopy:
                return None
            return self.iswr_below if key == "ISWR_BELOW_CAN" else self.can_storage
        snowy = self.swe > 0.0
        if key == "HS":
            return self.hs
        if key == "SWE":
            return self.swe
        if key == "TSS":
            return self.tss
        if key == "TSG":
            return self.tsg
        if key == "TOP_ALB":
            return self.albedo
        if key == "SP":
            return max(0.0, 1.0 - self.age_days / 10.0) if snowy else NODATA
        if key == "RG":
            return self._rg() if snowy else NODATA
        if key == "N3":
            return 1.5 + 5.0 * (self.density / 917.0) if snowy else NODATA
        if key == "RB":
            return 0.4 * self._rg() if snowy else NODATA
        if key == "GLACIER":
            return NODATA if self.is_glacier else 1.0
        if key == "MNS":
            return self.mns
        if key == "RUNOFF":
            return self.runoff
        return None

    def meteo_record(self) -> MeteoRecord:
        if self._meteo is None:
            raise CellModelError(f"Cell ({self.meta.ix},{self.meta.iy}) has not been stepped yet")
        return self._meteo

    def flux_record(self) -> FluxRecord:
        return self._flux

    def to_profile(self, date: datetime) -> SnowProfile:
        layers: List[Layer] = []
        if self.swe > 0.0:
            layers.append(
                Layer(
                    thickness=self.hs,
                    density=(self.swe + self.liquid) / self.hs,
                    temperature=self.tss,
                    liquid_fraction=self.liquid / (self.swe + self.liquid) if self.liquid > 0.0 else 0.0,
                    deposition_date=self.deposition_date or date,
                )
            )
        return SnowProfile(
            date=date,
            layers=layers,
            soil=self.soil,
            station_id=self.meta.station_id,
            station_name=self.meta.station_name,
        )
