#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Tests for :mod:`py4gm.modules.grid`.
"""

from __future__ import annotations

import numpy as np
import pytest

from py4gm.modules.config import ModelSourceConfig
from py4gm.modules.errors import ConfigError, DataIOError
from py4gm.modules.grid import ModelGrid, model_from_source, read_grid, write_model


def test_regular_grid_geometry():
    g = ModelGrid.regular(3, 2, 4, 10.0, 20.0, 5.0, z0=1.0)
    assert g.ncells == 24
    np.testing.assert_allclose(g.volume, 1000.0)
    assert g.ind(0, 0, 0) == 0
    assert g.ind(1, 0, 0) == 1
    assert g.ind(0, 1, 0) == 3
    assert g.ind(0, 0, 1) == 6
    assert g.zc[g.ind(0, 0, 0)] == pytest.approx(3.5)


def test_neighbours():
    g = ModelGrid.regular(3, 2, 2, 1.0, 1.0, 1.0)
    nb = g.neighbour(0, +1)
    assert nb[g.ind(0, 1, 1)] == g.ind(1, 1, 1)
    assert nb[g.ind(2, 1, 1)] == -1
    assert g.neighbour(2, -1)[g.ind(1, 1, 0)] == -1
    assert g.neighbour(1, +1)[g.ind(2, 0, 1)] == g.ind(2, 1, 1)


def test_write_then_read_grid(tmp_path):
    g = ModelGrid.regular(2, 3, 2, 50.0, 50.0, 25.0)
    vals = np.arange(g.ncells, dtype=float)
    f = tmp_path / "grid.txt"
    write_model(f, g, vals)

    g2, vals2 = read_grid(f, 2, 3, 2)
    np.testing.assert_allclose(vals2, vals)
    np.testing.assert_allclose(g2.X1, g.X1)
    np.testing.assert_allclose(g2.Z2, g.Z2)
    np.testing.assert_array_equal(g2.k, g.k)


def test_grid_size_mismatch(tmp_path):
    g = ModelGrid.regular(2, 2, 2, 1.0, 1.0, 1.0)
    f = tmp_path / "grid.txt"
    write_model(f, g, np.zeros(8))
    with pytest.raises(ConfigError):
        read_grid(f, 2, 2, 3)


def test_grid_premature_eof(tmp_path):
    f = tmp_path / "grid.txt"
    f.write_text("2\n0 1 0 1 0 1 0.0 1 1 1\n")
    with pytest.raises(DataIOError):
        read_grid(f, 2, 1, 1)


def test_model_from_source(tmp_path):
    g = ModelGrid.regular(2, 1, 2, 1.0, 1.0, 1.0)
    m = model_from_source(ModelSourceConfig(type=1, value=2.5), g)
    np.testing.assert_array_equal(m, 2.5)

    f = tmp_path / "m.txt"
    f.write_text("4\n1\n2\n3\n4\n")
    m = model_from_source(ModelSourceConfig(type=2, file=str(f)), g)
    np.testing.assert_array_equal(m, [1.0, 2.0, 3.0, 4.0])

    f.write_text("1\n2\n3\n")
    with pytest.raises(DataIOError):
        model_from_source(ModelSourceConfig(type=2, file=str(f)), g)
