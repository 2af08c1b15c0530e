#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Tests for :mod:`py4gm.modules.kernels`.
"""

from __future__ import annotations

import numpy as np
import pytest

from py4gm.modules.config import MagneticFieldConfig
from py4gm.modules.errors import ConfigError, DataIOError
from py4gm.modules.grid import CellBlock, ModelGrid
from py4gm.modules.kernels import (GRAV_CONST, EctKernel, GravityKernel, MagneticKernel,
                                   get_kernel, mbox)


def _block(*bounds):
    return CellBlock(*(np.atleast_1d(np.asarray(b, dtype=float)) for b in bounds))


def test_gravity_slab_limit():
    # 5 x 5 cells of 400 km, 20 m thick: effectively an infinite slab
    g = ModelGrid.regular(5, 5, 2, 4.0e5, 4.0e5, 10.0, x0=-1.0e6, y0=-1.0e6, z0=0.0)
    row = GravityKernel().kernel([[0.0, 0.0, -1.0]], g.cells())
    assert row.shape == (1, 50)
    assert row.sum() == pytest.approx(2.0 * np.pi * GRAV_CONST * 20.0, rel=1.0e-3)


def test_gravity_sign_below_and_above():
    cell = _block(-1.0e6, 1.0e6, -1.0e6, 1.0e6, 0.0, 20.0)
    k = GravityKernel()
    above = k.kernel([[0.0, 0.0, -5.0]], cell)[0, 0]
    below = k.kernel([[0.0, 0.0, 50.0]], cell)[0, 0]
    assert above > 0.0
    assert below < 0.0
    assert below == pytest.approx(-above, rel=1.0e-3)


def test_gravity_split_prism_is_additive():
    whole = _block(-30.0, 50.0, -20.0, 40.0, 10.0, 70.0)
    halves = _block([-30.0, 10.0], [10.0, 50.0], [-20.0, -20.0], [40.0, 40.0],
                    [10.0, 10.0], [70.0, 70.0])
    pts = [[0.0, 0.0, 0.0], [123.0, -45.0, -8.0], [5.0, 7.0, 3.0]]
    k = GravityKernel()
    np.testing.assert_allclose(k.kernel(pts, halves).sum(axis=1),
                               k.kernel(pts, whole)[:, 0], rtol=1.0e-9)


def test_gravity_far_field_is_point_mass():
    cube = _block(-5.0, 5.0, -5.0, 5.0, 995.0, 1005.0)
    g = GravityKernel().kernel([[0.0, 0.0, 0.0]], cube)[0, 0]
    assert g == pytest.approx(GRAV_CONST * 1000.0 / 1000.0**2, rel=1.0e-3)


def test_mbox_semi_infinite_sheet():
    vertical = (0.0, 0.0, 1.0)
    t = mbox((-1.0e6, 1.0e6), (-1.0e6, 1.0e6), 10.0, vertical, vertical)
    assert float(t) == pytest.approx(2.0 * np.pi, rel=1.0e-4)


def test_magnetic_half_space_vertical_field():
    field = MagneticFieldConfig(inclination=90.0, declination=0.0, intensity=50000.0)
    cell = _block(-1.0e6, 1.0e6, -1.0e6, 1.0e6, 10.0, 1.0e12)
    t = MagneticKernel(field).kernel([[0.0, 0.0, 0.0]], cell)[0, 0]
    assert t == pytest.approx(field.intensity / 2.0, rel=1.0e-3)


def test_magnetic_thin_wide_slab_is_small():
    # far from the edges a laterally infinite layer has no anomaly
    cell = _block(-1.0e6, 1.0e6, -1.0e6, 1.0e6, 10.0, 30.0)
    t = MagneticKernel().kernel([[0.0, 0.0, 0.0]], cell)[0, 0]
    assert abs(t) < 2.0


def test_magnetic_requires_points_above_cells():
    cell = _block(0.0, 1.0, 0.0, 1.0, 0.0, 1.0)
    with pytest.raises(ConfigError):
        MagneticKernel().kernel([[0.5, 0.5, 0.5]], cell)


def test_magnetic_dipole_sign():
    # induced anomaly directly above a compact body in a vertical field is positive
    cube = _block(-10.0, 10.0, -10.0, 10.0, 90.0, 110.0)
    t = MagneticKernel().kernel([[0.0, 0.0, 0.0]], cube)[0, 0]
    assert t > 0.0


def test_ect_from_npy_and_npz(tmp_path):
    table = np.arange(12.0).reshape(3, 4)
    np.save(tmp_path / "s.npy", table)
    np.savez(tmp_path / "s.npz", table)

    for name in ("s.npy", "s.npz"):
        k = EctKernel.from_file(tmp_path / name, 3, 4)
        np.testing.assert_array_equal(k.table, table)

    g = ModelGrid.regular(4, 1, 1, 1.0, 1.0, 1.0)
    k = EctKernel(table)
    block = k.kernel(np.zeros((3, 3)), g.subset(slice(1, 3)), cols=slice(1, 3))
    np.testing.assert_array_equal(block, table[:, 1:3])

    block = k.kernel(np.zeros((2, 3)), g.subset(slice(0, 4)), rows=slice(1, 3))
    np.testing.assert_array_equal(block, table[1:3, :])


def test_ect_count_checks(tmp_path):
    np.save(tmp_path / "s.npy", np.zeros((3, 4)))
    with pytest.raises(ConfigError):
        EctKernel.from_file(tmp_path / "s.npy", 2, 4)
    with pytest.raises(ConfigError):
        EctKernel.from_file(tmp_path / "s.npy", 3, 5)
    with pytest.raises(DataIOError):
        EctKernel.from_file(tmp_path / "missing.npy", 3, 4)


def test_get_kernel():
    assert isinstance(get_kernel("grav"), GravityKernel)
    assert isinstance(get_kernel("magn"), MagneticKernel)
    with pytest.raises(ValueError):
        get_kernel("seismic")
