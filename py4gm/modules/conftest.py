# -*- coding: utf-8 -*-
"""
Shared pytest fixtures: small synthetic grids, point-data files and Parfiles
written to ``tmp_path``.
"""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from py4gm.modules.config import MagneticFieldConfig
from py4gm.modules.grid import ModelGrid, write_model
from py4gm.modules.kernels import GravityKernel, MagneticKernel


def write_points(path, xyz, vals):
    """Point-format data file."""
    xyz = np.atleast_2d(xyz)
    with open(path, "w") as f:
        f.write(f"{len(vals)}\n")
        for (x, y, z), v in zip(xyz, vals):
            f.write(f"{float(x)!r} {float(y)!r} {float(z)!r} {float(v)!r}\n")
    return str(path)


def write_parfile(path, pars):
    with open(path, "w") as f:
        f.write("# test Parfile\n")
        for key, value in pars.items():
            f.write(f"{key} = {value}\n")
    return str(path)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def make_case(tmp_path):
    """
    Factory writing a complete synthetic run.

    Returns ``(parfile, grid, truth)`` where ``truth[p]`` is the model the
    data of physics ``p`` were computed from.
    """

    def _make(physics=("grav",), nx=4, ny=3, nz=3, d=100.0, ndata=8, extra=None,
              seed=7, truth=None):
        gen = np.random.default_rng(seed)
        grid = ModelGrid.regular(nx, ny, nz, d, d, d)
        grid_file = Path(tmp_path) / "grid.txt"
        write_model(grid_file, grid, np.zeros(grid.ncells))

        xyz = np.column_stack((gen.uniform(0.0, nx * d, ndata),
                               gen.uniform(0.0, ny * d, ndata),
                               np.full(ndata, -10.0)))

        truth = {} if truth is None else dict(truth)
        pars = {
            "global.outputFolderPath": str(Path(tmp_path) / "out"),
            "modelGrid.size": f"{nx} {ny} {nz}",
            "inversion.nMajorIterations": 2,
            "inversion.nMinorIterations": 50,
        }
        for p in physics:
            if p not in truth:
                m = np.zeros(grid.ncells)
                m[grid.ind(nx // 2, ny // 2, 1)] = 300.0 if p == "grav" else 0.05
                truth[p] = m
            kern = GravityKernel() if p == "grav" else MagneticKernel(MagneticFieldConfig())
            vals = kern.kernel(xyz, grid.cells()) @ truth[p]
            data_file = write_points(Path(tmp_path) / f"{p}_data.txt", xyz, vals)
            pars.update({
                f"forward.data.{p}.nData": ndata,
                f"forward.data.{p}.dataValuesFile": data_file,
                f"modelGrid.{p}.file": str(grid_file),
                f"inversion.modelDamping.{p}.weight": 1.0e-8 if p == "grav" else 1.0e-4,
            })
        if extra:
            pars.update(extra)
        parfile = write_parfile(Path(tmp_path) / "Parfile.txt", pars)
        return parfile, grid, truth

    return _make
