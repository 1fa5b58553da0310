# -*- coding: utf-8 -*-
"""Georeferenced grids and the parameter registry."""

# Import numpy and pytest.
import numpy as np
import pytest

# Import package modules.
from snowcoupler.errors import GeolocationMismatchError
from snowcoupler.grid import NODATA, Geolocation, Grid
from snowcoupler.parameters import is_known, is_recognized, split_names, unique_output_grids

GEO = Geolocation(xllcorner=100.0, yllcorner=200.0, cellsize=10.0, epsg=2056)


def test_subgrid_shifts_geolocation():
    g = Grid(values=np.arange(12.0).reshape(3, 4), geo=GEO)
    sub = g.subgrid(1, 2)
    assert sub.shape == (3, 2)
    assert sub.geo.xllcorner == 110.0 and sub.geo.yllcorner == 200.0
    np.testing.assert_array_equal(sub.values, g.values[:, 1:3])
    with pytest.raises(GeolocationMismatchError):
        g.subgrid(3, 2)


def test_fill_places_block():
    g = Grid.full(GEO, (2, 5), 0.0)
    g.fill(np.ones((2, 2)), 3)
    np.testing.assert_array_equal(g.values[:, 3:], 1.0)
    assert np.all(g.values[:, :3] == 0.0)
    with pytest.raises(GeolocationMismatchError):
        g.fill(np.ones((1, 2)), 0)


def test_arithmetic_requires_same_geolocation():
    a = Grid.full(GEO, (2, 2), 1.0)
    b = Grid.full(GEO.shifted(dx_cells=1), (2, 2), 1.0)
    with pytest.raises(GeolocationMismatchError):
        _ = a + b
    with pytest.raises(GeolocationMismatchError):
        a.masked_by(Grid.full(GEO, (3, 2), 1.0))


def test_nodata_propagates():
    a = Grid(values=np.array([[1.0, NODATA]]), geo=GEO)
    mask = Grid(values=np.array([[NODATA, 1.0]]), geo=GEO)
    np.testing.assert_array_equal(a.masked_by(mask).values, [[NODATA, NODATA]])
    np.testing.assert_array_equal((a + a).values, [[2.0, NODATA]])


def test_empty_grid():
    e = Grid.empty(GEO)
    assert e.is_empty
    assert not Grid.full(GEO, (1, 1)).is_empty


def test_cell_xy_is_lower_left_corner():
    assert GEO.cell_xy(2, 3) == (120.0, 230.0)


def test_output_grid_names_normalized():
    assert unique_output_grids(split_names("hs SWE  hs top_alb")) == ["HS", "SWE", "TOP_ALB"]
    assert split_names(["a", "b"]) == ["a", "b"]
    assert split_names(None) == []


def test_parameter_registry():
    assert is_recognized("hs") and is_recognized("TA")
    assert not is_recognized("RUNOFF")
    assert is_known("RUNOFF") and is_known("CAN_INT")
    assert not is_known("FOO")
