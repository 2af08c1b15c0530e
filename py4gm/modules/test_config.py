#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Tests for :mod:`py4gm.modules.config`.
"""

from __future__ import annotations

import pytest

from py4gm.modules.config import (PIPELINE_STAGES, InversionConfig, RunContext, describe,
                                  read_parfile)
from py4gm.modules.errors import ConfigError

from .conftest import write_parfile

BASE = {
    "modelGrid.size": "4 3 2",
    "forward.data.grav.nData": "5",
    "forward.data.grav.dataValuesFile": "grav.txt",
    "modelGrid.grav.file": "grid.txt",
}


def _cfg(**extra):
    pars = dict(BASE)
    pars.update({k.replace("__", "."): str(v) for k, v in extra.items()})
    return InversionConfig.from_dict(pars)


def test_defaults():
    cfg = _cfg()
    assert (cfg.nx, cfg.ny, cfg.nz, cfg.ncells) == (4, 3, 2, 24)
    assert cfg.active_physics == ("grav",)
    assert cfg.solver.method == "lsqr"
    assert cfg.solver.n_major == 10
    assert cfg.solver.min_residual == 1.0e-13
    assert cfg.compression.rate == 1.0
    assert cfg.update_pipeline == PIPELINE_STAGES
    grav = cfg.physics["grav"]
    assert grav.problem_weight == 1.0
    assert grav.depth_weighting.type == 1
    assert grav.depth_weighting.power == 2.0
    assert cfg.physics["magn"].depth_weighting.power == 3.0
    assert not cfg.physics["magn"].enabled


def test_read_parfile(tmp_path):
    f = tmp_path / "Parfile.txt"
    f.write_text("# comment\n\nmodelGrid.size = 2 2 2   # trailing\nglobal.description = a = b\n")
    pars = read_parfile(f)
    assert pars == {"modelGrid.size": "2 2 2", "global.description": "a = b"}

    f.write_text("modelGrid.size 2 2 2\n")
    with pytest.raises(ConfigError, match="line 1"):
        read_parfile(f)
    with pytest.raises(ConfigError):
        read_parfile(tmp_path / "missing.txt")


def test_from_parfile(tmp_path):
    parfile = write_parfile(tmp_path / "Parfile.txt", dict(BASE, **{
        "magnetic.field.inclination": "60.5",
        "inversion.updatePipeline": "admm joint",
    }))
    cfg = InversionConfig.from_parfile(parfile)
    assert cfg.mag_field.inclination == 60.5
    assert cfg.update_pipeline == ("admm", "joint")


@pytest.mark.parametrize("extra", [
    {"modelGrid__size": "4 3"},
    {"modelGrid__size": "4 3 0"},
    {"forward__data__grav__nData": "0"},
    {"forward__data__grav__nData": "-1"},
    {"forward__matrixCompression__rate": "0"},
    {"forward__matrixCompression__rate": "1.5"},
    {"inversion__solver": "gmres"},
    {"inversion__nMinorIterations": "0"},
    {"inversion__modelDamping__grav__weight": "-1"},
    {"inversion__updatePipeline": "joint smoothing"},
    {"inversion__crossGradient__weight": "1"},
    {"inversion__crossGradient__derivativeType": "4"},
    {"inversion__clustering__grav__weight": "1"},
    {"inversion__admm__enableADMM": "yes", "inversion__admm__grav__weight": "1"},
    {"forward__depthWeighting__grav__type": "5"},
    {"inversion__startingModel__grav__type": "2"},
    {"inversion__nMajorIterations": "ten"},
])
def test_invalid_configurations(extra):
    with pytest.raises(ConfigError):
        _cfg(**extra)


def test_ect_needs_sensitivity_file():
    with pytest.raises(ConfigError):
        _cfg(forward__data__ect__nData=3, forward__data__ect__dataValuesFile="ect.txt")
    cfg = _cfg(forward__data__ect__nData=3, forward__data__ect__dataValuesFile="ect.txt",
               forward__sensitivity__ect__file="ect.npy")
    assert cfg.active_physics == ("grav", "ect")


def test_config_is_frozen():
    cfg = _cfg()
    with pytest.raises(AttributeError):
        cfg.nx = 5


def test_run_context(tmp_path):
    ctx = RunContext(str(tmp_path / "out"), out=False)
    assert ctx.is_root
    path = ctx.path("costs.txt")
    assert path.endswith("out/costs.txt")
    assert (tmp_path / "out").is_dir()


def test_describe():
    text = describe(_cfg(), out=False)
    assert "4 x 3 x 2 = 24 cells" in text
    assert "grav" in text
