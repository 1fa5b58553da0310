# -*- coding: utf-8 -*-
"""Georeferenced 2D grids shared by forcing fields and diagnostics."""

from __future__ import annotations

# Import dataclass for structured grid objects.
from dataclasses import dataclass, field, replace

# Import typing primitives.
from typing import Optional

# Import numpy for arrays.
import numpy as np

# Import local errors.
from .errors import GeolocationMismatchError

NODATA = -999.0


@dataclass(frozen=True)
class Geolocation:
    """Lower-left corner, cell size and projection of a grid.

    Rows run from south (row 0) to north, columns from west to east.
    """

    xllcorner: float
    yllcorner: float
    cellsize: float
    epsg: Optional[int] = None

    def shifted(self, dx_cells: int = 0, dy_cells: int = 0) -> "Geolocation":
        """Geolocation of a sub-grid starting `dx_cells` columns / `dy_cells` rows further."""
        return replace(
            self,
            xllcorner=self.xllcorner + dx_cells * self.cellsize,
            yllcorner=self.yllcorner + dy_cells * self.cellsize,
        )

    def cell_xy(self, ix: int, iy: int) -> tuple[float, float]:
        """Return (easting, northing) of the lower-left corner of a cell."""
        return self.xllcorner + ix * self.cellsize, self.yllcorner + iy * self.cellsize


@dataclass
class Grid:
    """2D array over a fixed rectangular domain, indexed values[iy, ix]."""

    values: np.ndarray
    geo: Geolocation
    nodata: float = field(default=NODATA)

    @classmethod
    def full(cls, geo: Geolocation, shape: tuple[int, int], value: float = NODATA) -> "Grid":
        """Allocate a grid filled with a constant."""
        return cls(values=np.full(shape, float(value), dtype=np.float64), geo=geo)

    @classmethod
    def empty(cls, geo: Geolocation) -> "Grid":
        """Return the explicit 'not available' grid."""
        return cls(values=np.zeros((0, 0), dtype=np.float64), geo=geo)

    @property
    def ny(self) -> int:
        return int(self.values.shape[0])

    @property
    def nx(self) -> int:
        return int(self.values.shape[1])

    @property
    def shape(self) -> tuple[int, int]:
        return self.ny, self.nx

    @property
    def is_empty(self) -> bool:
        return self.values.size == 0

    def copy(self) -> "Grid":
        return Grid(values=self.values.copy(), geo=self.geo, nodata=self.nodata)

    def same_geolocation(self, other: "Grid") -> bool:
        """True if both grids cover the same cells with the same projection."""
        return self.shape == other.shape and self.geo == other.geo

    def require_same_geolocation(self, other: "Grid", what: str = "grid") -> None:
        if not self.same_geolocation(other):
            raise GeolocationMismatchError(
                f"Trying to combine a {other.nx}x{other.ny} {what} at {other.geo} "
                f"with a {self.nx}x{self.ny} grid at {self.geo}"
            )

    def subgrid(self, x0: int, width: int) -> "Grid":
        """Column slice [x0, x0+width) covering all rows."""
        if x0 < 0 or width < 0 or x0 + width > self.nx:
            raise GeolocationMismatchError(
                f"Column range [{x0}, {x0 + width}) outside of a grid with {self.nx} columns"
            )
        return Grid(
            values=self.values[:, x0:x0 + width].copy(),
            geo=self.geo.shifted(dx_cells=x0),
            nodata=self.nodata,
        )

    def fill(self, sub: np.ndarray, x0: int) -> None:
        """Splice a (ny, width) block into this grid starting at column x0."""
        sub = np.asarray(sub)
        if sub.ndim != 2 or sub.shape[0] != self.ny or x0 + sub.shape[1] > self.nx:
            raise GeolocationMismatchError(
                f"Cannot place a block of shape {sub.shape} at column {x0} in a grid of shape {self.shape}"
            )
        self.values[:, x0:x0 + sub.shape[1]] = sub

    def nodata_mask(self) -> np.ndarray:
        return self.values == self.nodata

    def masked_by(self, mask: "Grid") -> "Grid":
        """Multiply by `mask`; a nodata cell in either operand yields nodata."""
        self.require_same_geolocation(mask, "mask")
        out = self.values * mask.values
        out[self.nodata_mask() | mask.nodata_mask()] = self.nodata
        return Grid(values=out, geo=self.geo, nodata=self.nodata)

    def __add__(self, other: "Grid") -> "Grid":
        self.require_same_geolocation(other)
        out = self.values + other.values
        out[self.nodata_mask() | other.nodata_mask()] = self.nodata
        return Grid(values=out, geo=self.geo, nodata=self.nodata)
