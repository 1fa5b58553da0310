# -*- coding: utf-8 -*-
"""End-to-end runs with the reference cell model."""

from __future__ import annotations

# Import stdlib helpers.
import json
import logging
from datetime import timedelta

# Import numpy, xarray and pytest.
import numpy as np
import pytest
import xarray as xr

# Import package modules.
from snowcoupler.mpi_utils import MPIContext
from snowcoupler.profiles import Layer, SmetProfileIO, SnowProfile
from snowcoupler.simulation import collect_points, run_simulation, summarize

import main as entry
from conftest import START, make_domain

SCALAR_FORCING = {
    "kind": "scalar",
    "values": {"TA": 270.0, "RH": 0.8, "VW": 2.0, "PSUM": 1.0, "PSUM_PH": 0.0, "ISWR": 150.0, "ILWR": 250.0},
}


def _initial_profile(directory, key="test_11"):
    layer = Layer(0.4, 220.0, 268.0, 0.0, START - timedelta(days=3))
    SmetProfileIO(directory).write(key, SnowProfile(date=START, layers=[layer]))


@pytest.fixture
def run_cfg(cfg, tmp_path):
    _initial_profile(tmp_path / "snowfiles")
    cfg["forcing"] = SCALAR_FORCING
    cfg["input"]["special_points"] = [[1, 0], [3, 1], [1, 0]]
    cfg["output"].update(
        {"grids_write": True, "grid_format": "ascii", "grids_parameters": "HS SWE", "grids_days_between": 0.0}
    )
    cfg["restart"]["every_steps"] = 2
    return cfg


def test_collect_points_merges_file(cfg, tmp_path):
    f = tmp_path / "pts.txt"
    f.write_text("4 1\n0 0\n")
    cfg["input"]["special_points"] = [[2, 0]]
    cfg["input"]["points_file"] = str(f)
    assert collect_points(MPIContext.serial(), cfg) == [(0, 0), (2, 0), (4, 1)]


def test_serial_run_end_to_end(run_cfg, tmp_path):
    dom = make_domain(nx=5, ny=2)
    coord = run_simulation(MPIContext.serial(), run_cfg, dom)

    assert summarize(coord) == {
        "next_timestamp": (START + timedelta(hours=3)).isoformat(),
        "steps": 3,
        "workers": 2,
    }
    grids = sorted(p.name for p in (tmp_path / "grids").iterdir())
    assert grids == [f"20240101{h:02d}00_{p}.asc" for h in range(3) for p in ("HS", "SWE")]

    smet = (tmp_path / "points" / "1_0_test.smet").read_text()
    assert len(smet.split("[DATA]\n")[1].splitlines()) == 3
    assert (tmp_path / "points" / "3_1_test.smet").is_file()

    restart = sorted(p.name for p in (tmp_path / "restart").iterdir())
    assert restart == sorted(f"{ix}_{iy}_test.sno" for ix in range(5) for iy in range(2))

    # Three hours of snowfall at 1 kg m-2 on top of the initial pack.
    swe = coord.get_grid("SWE").values
    np.testing.assert_allclose(swe, 0.4 * 220.0 + 3.0)


def test_restart_reads_checkpoint(run_cfg, tmp_path):
    dom = make_domain(nx=5, ny=2)
    first = run_simulation(MPIContext.serial(), run_cfg, dom)
    swe_after = first.get_grid("SWE").values

    run_cfg["input"].update({"restart": True, "snowpath": str(tmp_path / "restart")})
    run_cfg["model"].update({"start_time": "2024-01-01T03:00:00Z", "end_time": "2024-01-01T04:00:00Z"})
    run_cfg["restart"]["out_dir"] = str(tmp_path / "restart2")
    second = run_simulation(MPIContext.serial(), run_cfg, dom)
    np.testing.assert_allclose(second.get_grid("SWE").values, swe_after + 1.0, rtol=1e-5)


def _write_domain_nc(path, nx=4, ny=3):
    ds = xr.Dataset(coords={"x": 50.0 + 100.0 * np.arange(nx), "y": 50.0 + 100.0 * np.arange(ny)[::-1]})
    ds["dem"] = (("y", "x"), np.full((ny, nx), 1800.0))
    ds["landuse"] = (("y", "x"), np.full((ny, nx), 10011.0))
    ds.to_netcdf(path)


def test_main_runs_serial(tmp_path, monkeypatch):
    # setup_logging reconfigures the package logger; restore it afterwards.
    monkeypatch.setattr(logging.getLogger("snowcoupler"), "propagate", True)
    monkeypatch.setattr(logging.getLogger("snowcoupler"), "handlers", [])
    _write_domain_nc(tmp_path / "domain.nc")
    _initial_profile(tmp_path / "snowfiles", key="run_11")
    config = {
        "domain": {"domain_nc": str(tmp_path / "domain.nc")},
        "model": {"start_time": "2024-01-01T00:00:00Z", "end_time": "2024-01-01T02:00:00Z"},
        "forcing": SCALAR_FORCING,
        "input": {"snowpath": str(tmp_path / "snowfiles"), "experiment": "run"},
        "output": {"grid_path": str(tmp_path / "grids"), "meteo_path": str(tmp_path / "points")},
        "restart": {"out_dir": str(tmp_path / "restart")},
    }
    path = tmp_path / "config.json"
    path.write_text(json.dumps(config))
    rc = entry.main(["--config", str(path), "--mpi-mode", "disabled", "--workers", "3", "--log-level", "WARNING"])
    assert rc == 0
    assert len(list((tmp_path / "restart").glob("*.sno"))) == 12


def test_main_aborts_on_failed_step(tmp_path, monkeypatch):
    monkeypatch.setattr(logging.getLogger("snowcoupler"), "propagate", True)
    monkeypatch.setattr(logging.getLogger("snowcoupler"), "handlers", [])
    _write_domain_nc(tmp_path / "domain.nc", nx=2, ny=1)
    _initial_profile(tmp_path / "snowfiles", key="run_11")
    forcing = json.loads(json.dumps(SCALAR_FORCING))
    forcing["values"]["TA"] = -999.0
    config = {
        "domain": {"domain_nc": str(tmp_path / "domain.nc")},
        "model": {"start_time": "2024-01-01T00:00:00Z", "end_time": "2024-01-01T01:00:00Z"},
        "forcing": forcing,
        "input": {"snowpath": str(tmp_path / "snowfiles"), "experiment": "run"},
        "output": {"grids_write": False},
        "restart": {"out_dir": str(tmp_path / "restart")},
    }
    path = tmp_path / "config.json"
    path.write_text(json.dumps(config))
    with pytest.raises(SystemExit) as exc:
        entry.main(["--config", str(path), "--mpi-mode", "disabled", "--log-level", "ERROR"])
    assert exc.value.code == 1
