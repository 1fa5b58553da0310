# -*- coding: utf-8 -*-
"""NetCDF/ASCII grid writers, domain reading and forcing ingestion."""

from __future__ import annotations

# Import stdlib helpers.
from datetime import datetime, timezone

# Import numpy, xarray and pytest.
import numpy as np
import pytest
import xarray as xr

# Import package modules.
from snowcoupler.domain import read_domain_netcdf_rank0, round_landuse, skip_cell, slope_azimuth
from snowcoupler.errors import ConfigurationError
from snowcoupler.forcing import (
    build_forcing_source,
    load_forcing,
    pick_time_index,
    read_forcing_rank0,
    xr_close_cache,
)
from snowcoupler.grid import NODATA, Geolocation, Grid
from snowcoupler.io_netcdf import AsciiGridWriter, NetcdfGridWriter, make_grid_writer
from snowcoupler.mpi_utils import MPIContext

DATE = datetime(2024, 1, 1, 6, tzinfo=timezone.utc)
GEO = Geolocation(xllcorner=0.0, yllcorner=0.0, cellsize=100.0, epsg=32632)


def _grid():
    values = np.array([[1.0, 2.0, NODATA], [4.0, 5.0, 6.0]])
    return Grid(values=values, geo=GEO)


def test_netcdf_writer_recognized_parameter(tmp_path):
    path = NetcdfGridWriter(tmp_path).write(_grid(), "hs", DATE)
    assert path.name == "202401010600_HS.nc"
    with xr.open_dataset(path) as ds:
        assert ds["HS"].attrs["standard_name"] == "surface_snow_thickness"
        vals = ds["HS"].values[0]
        assert np.isnan(vals[0, 2])
        assert vals[1, 1] == pytest.approx(5.0)
        np.testing.assert_allclose(ds["x"].values, [50.0, 150.0, 250.0])


def test_netcdf_writer_named_grid(tmp_path):
    path = NetcdfGridWriter(tmp_path).write_named(_grid(), "202401010600_RUNOFF.asc")
    assert path.suffix == ".nc"
    with xr.open_dataset(path) as ds:
        assert "RUNOFF" in ds


@pytest.mark.parametrize(
    "filename,var",
    [
        ("202401010600_ISWR_BELOW_CAN.asc", "ISWR_BELOW_CAN"),
        ("202401010600_CAN_INT.asc", "CAN_INT"),
        ("snow_mask.asc", "snow_mask"),
    ],
)
def test_netcdf_writer_named_grid_keeps_underscores(tmp_path, filename, var):
    path = NetcdfGridWriter(tmp_path).write_named(_grid(), filename)
    with xr.open_dataset(path) as ds:
        assert list(ds.data_vars) == [var]


def test_ascii_writer_north_row_first(tmp_path):
    path = AsciiGridWriter(tmp_path, precision=1).write(_grid(), "swe", DATE)
    lines = path.read_text().splitlines()
    assert lines[0].split() == ["ncols", "3"]
    assert lines[5].split() == ["NODATA_value", "-999"]
    assert lines[6].split() == ["4.0", "5.0", "6.0"]
    assert lines[7].split() == ["1.0", "2.0", "-999.0"]


def test_grid_writer_selection(tmp_path):
    assert isinstance(make_grid_writer("ASCII", tmp_path), AsciiGridWriter)
    with pytest.raises(ValueError):
        make_grid_writer("geotiff", tmp_path)


def test_landuse_rules():
    assert round_landuse(10011.0) == 11
    assert round_landuse(12.9999) == 13
    assert skip_cell(1.0, 1500.0)
    assert skip_cell(11.0, NODATA)
    assert skip_cell(float("nan"), 1500.0)
    assert not skip_cell(11.0, 1500.0)


def test_slope_azimuth_of_plane():
    # Elevation rising northwards: the slope faces south.
    dem = np.tile(np.arange(4, dtype=float)[:, None] * 100.0, (1, 4))
    slope, azimuth = slope_azimuth(dem, 100.0)
    assert slope[1, 1] == pytest.approx(45.0)
    assert azimuth[1, 1] == pytest.approx(180.0)


def _write_domain(path):
    y = np.array([250.0, 150.0, 50.0])  # north-up
    x = np.array([50.0, 150.0])
    dem = np.array([[3.0, 3.0], [2.0, 2.0], [1.0, np.nan]]) * 100.0
    ds = xr.Dataset(coords={"x": x, "y": y})
    ds["dem"] = (("y", "x"), dem, {"grid_mapping": "crs"})
    ds["landuse"] = (("y", "x"), np.full((3, 2), 11.0))
    ds["crs"] = xr.DataArray(0, attrs={"epsg_code": "EPSG:32632"})
    ds.to_netcdf(path)


def test_read_domain_flips_to_south_first(tmp_path):
    path = tmp_path / "domain.nc"
    _write_domain(path)
    dom = read_domain_netcdf_rank0({"domain": {"domain_nc": str(path), "varmap": {}}})
    assert dom.shape == (3, 2)
    assert dom.dem[0, 0] == 100.0
    assert dom.dem[0, 1] == NODATA
    assert dom.geo == Geolocation(0.0, 0.0, 100.0, 32632)
    assert dom.grid_mapping_name == "crs"


def test_scalar_forcing():
    src = build_forcing_source(
        {"forcing": {"kind": "scalar", "values": {"TA": 270, "RH": 0.8, "VW": 2, "PSUM": 0, "PSUM_PH": 0, "ISWR": 100, "ILWR": 250}}}
    )
    frame = load_forcing(MPIContext.serial(), src, (2, 3), DATE)
    assert frame["ta"].shape == (2, 3)
    assert np.all(frame["DIFFUSE"] == 0.0)
    with pytest.raises(ConfigurationError):
        read_forcing_rank0(build_forcing_source({"forcing": {"kind": "scalar", "values": {}}}), (1, 1), DATE)


def test_unknown_forcing_kind():
    with pytest.raises(ConfigurationError):
        build_forcing_source({"forcing": {"kind": "grib"}})


def test_pick_time_index():
    t = np.array(["2024-01-01T00", "2024-01-01T03", "2024-01-01T06"], dtype="datetime64[ns]")
    assert pick_time_index(t, np.datetime64("2024-01-01T04"), "previous") == 1
    assert pick_time_index(t, np.datetime64("2024-01-01T05"), "nearest") == 2
    assert pick_time_index(t, np.datetime64("2023-12-31T00"), "previous") == 0


def test_netcdf_forcing_read(tmp_path):
    path = tmp_path / "meteo.nc"
    times = np.array(["2024-01-01T00", "2024-01-01T06"], dtype="datetime64[ns]")
    ds = xr.Dataset(coords={"time": times, "y": [150.0, 50.0], "x": [50.0, 150.0, 250.0]})
    for name in ("ta", "rh", "vw", "psum", "psum_ph", "iswr", "ilwr"):
        arr = np.zeros((2, 2, 3))
        arr[1, 0, :] = 1.0  # northern row of the second record
        ds[name] = (("time", "y", "x"), arr)
    ds["solar_elevation"] = (("time",), np.array([0.0, 12.5]))
    ds.to_netcdf(path)
    try:
        src = build_forcing_source({"forcing": {"kind": "netcdf", "path": str(path)}})
        frame = read_forcing_rank0(src, (2, 3), DATE)
        # Rows come back south first.
        np.testing.assert_array_equal(frame["TA"][1], 1.0)
        np.testing.assert_array_equal(frame["TA"][0], 0.0)
        assert np.all(frame["DIFFUSE"] == 0.0)
        assert frame.solar_elevation == pytest.approx(12.5)
    finally:
        xr_close_cache()
