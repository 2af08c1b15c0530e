#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Tests for :mod:`py4gm.modules.regularization`.
"""

from __future__ import annotations

import numpy as np
import pytest

from py4gm.modules.errors import ConfigError
from py4gm.modules.grid import ModelGrid
from py4gm.modules.parallel import Partition
from py4gm.modules.regularization import (AdmmState, ClusteringState, GaussianMixture,
                                          check_weight, cross_gradient, cross_gradient_block,
                                          gradient_damping_block, gradient_operators,
                                          irls_factor, local_diag, model_damping_block,
                                          prox_indicator_intervals, read_bounds, read_mixture)


@pytest.fixture
def grid():
    return ModelGrid.regular(4, 3, 3, 10.0, 20.0, 5.0)


def test_check_weight():
    assert check_weight("w", 2.0) == 2.0
    with pytest.raises(ValueError):
        check_weight("w", -1.0)
    with pytest.raises(ValueError):
        check_weight("w", [1.0, np.inf])


def test_local_diag_selects_rank_columns():
    part = Partition(5, size=2, rank=1)
    D = local_diag(np.arange(5.0) + 1.0, part).toarray()
    assert D.shape == (5, 2)
    np.testing.assert_array_equal(D[3:, :], np.diag([4.0, 5.0]))
    assert not D[:3].any()


def test_model_damping_block():
    m = np.array([1.0, 2.0, 4.0])
    m0 = np.array([0.0, 2.0, 1.0])
    W = np.array([1.0, 0.5, 2.0])
    blk = model_damping_block("grav", m, m0, W, 0.1, Partition(3))
    np.testing.assert_allclose(blk.rows["grav"].toarray(), np.diag(0.1 * W))
    np.testing.assert_allclose(blk.rhs, -0.1 * W * (m - m0))
    assert blk.cost() == pytest.approx(np.sum((0.1 * W * (m - m0)) ** 2))


def test_irls_factor():
    r = np.array([1.0, 4.0])
    np.testing.assert_array_equal(irls_factor(r, 2.0), 1.0)
    np.testing.assert_allclose(irls_factor(r, 1.0, eps=0.0), [1.0, 0.5])


@pytest.mark.parametrize("stencil", ["forward", "central", "mixed"])
def test_gradient_of_linear_model(grid, stencil):
    Gx, Gy, Gz = gradient_operators(grid, stencil)
    m = 3.0 * grid.xc - 2.0 * grid.yc + 0.5 * grid.zc
    for G, slope in zip((Gx, Gy, Gz), (3.0, -2.0, 0.5)):
        g = G @ m
        filled = np.diff(G.indptr) > 0
        np.testing.assert_allclose(g[filled], slope)
        assert not g[~filled].any()


def test_stencil_coverage(grid):
    fwd = gradient_operators(grid, "forward")[0]
    mixed = gradient_operators(grid, "mixed")[0]
    central = gradient_operators(grid, "central")[0]

    def rows(G):
        return int(np.count_nonzero(np.diff(G.indptr)))

    assert rows(mixed) == grid.ncells
    assert rows(fwd) == grid.ncells - grid.ny * grid.nz
    assert rows(central) == grid.ncells - 2 * grid.ny * grid.nz
    with pytest.raises(ValueError):
        gradient_operators(grid, "upwind")


def test_gradient_damping_block(grid):
    ops = gradient_operators(grid, "forward")
    m = np.arange(grid.ncells, dtype=float)
    part = Partition(grid.ncells, size=2, rank=0)
    blk = gradient_damping_block("grav", m, ops, 0.5, part)
    assert blk.nrows == 3 * grid.ncells
    assert blk.rows["grav"].shape == (3 * grid.ncells, part.nlocal)
    np.testing.assert_allclose(blk.rhs, -0.5 * np.concatenate([G @ m for G in ops]))


def test_cross_gradient_vanishes_for_related_models(grid, rng):
    ops = gradient_operators(grid, "mixed")
    m1 = rng.normal(size=grid.ncells)
    t, _, _ = cross_gradient(m1, 3.0 * m1 + 2.0, ops)
    np.testing.assert_allclose(t, 0.0, atol=1.0e-12)


def test_cross_gradient_jacobian(grid, rng):
    ops = gradient_operators(grid, "forward")
    m1 = rng.normal(size=grid.ncells)
    m2 = rng.normal(size=grid.ncells)
    d = rng.normal(size=grid.ncells)
    t, J1, J2 = cross_gradient(m1, m2, ops)
    # t is linear in each model separately
    np.testing.assert_allclose(cross_gradient(m1 + d, m2, ops)[0] - t, J1 @ d, atol=1.0e-10)
    np.testing.assert_allclose(cross_gradient(m1, m2 + d, ops)[0] - t, J2 @ d, atol=1.0e-10)


def test_cross_gradient_block(grid, rng):
    ops = gradient_operators(grid, "forward")
    m1 = rng.normal(size=grid.ncells)
    m2 = rng.normal(size=grid.ncells)
    part = Partition(grid.ncells, size=3, rank=2)
    blk = cross_gradient_block(("grav", "magn"), m1, m2, ops, 2.0, part)
    t, J1, _ = cross_gradient(m1, m2, ops)
    np.testing.assert_allclose(blk.rhs, -2.0 * t)
    np.testing.assert_allclose(blk.rows["grav"].toarray(),
                               2.0 * J1[:, part.local_slice].toarray())
    assert blk.info["norm"] == pytest.approx(np.linalg.norm(t))


def _mixture():
    return GaussianMixture(weights=np.array([0.5, 0.5]),
                           means=np.array([[0.0], [10.0]]),
                           covs=np.array([[[1.0]], [[4.0]]]))


def test_clustering_assignment_and_block():
    cs = ClusteringState(_mixture(), ["grav"], {"grav": 2.0})
    m = np.array([1.0, 9.0, 2.0])
    np.testing.assert_array_equal(cs.update({"grav": m}), [0, 1, 0])

    blk = cs.block({"grav": m}, Partition(3))
    scale = 2.0 / np.array([1.0, 2.0, 1.0])
    np.testing.assert_allclose(blk.rows["grav"].toarray(), np.diag(scale))
    np.testing.assert_allclose(blk.rhs, -scale * (m - np.array([0.0, 10.0, 0.0])))
    np.testing.assert_array_equal(blk.info["counts"], [2, 1])


def test_clustering_log_domain_needs_positive_values():
    cs = ClusteringState(_mixture(), ["grav"], {"grav": 1.0}, log_domain=True)
    with pytest.raises(ConfigError):
        cs.update({"grav": np.array([1.0, -1.0])})


def test_read_mixture(tmp_path):
    f = tmp_path / "mix.txt"
    f.write_text("# w mu1 mu2 c11 c12 c21 c22\n"
                 "0.4 0 0 1 0 0 1\n"
                 "0.6 300 0.05 100 0 0 0.01\n")
    mix = read_mixture(f, 2, 2)
    assert mix.nclusters == 2
    assert mix.nprops == 2
    np.testing.assert_allclose(mix.means[1], [300.0, 0.05])

    f.write_text("1.0 0 -1\n")
    with pytest.raises(ConfigError):
        read_mixture(f, 1, 1)


def test_prox_indicator_intervals():
    lower = np.array([[0.0, 5.0], [0.0, 5.0], [0.0, 5.0], [0.0, 5.0]])
    upper = np.array([[1.0, 6.0], [1.0, 6.0], [1.0, 6.0], [1.0, 6.0]])
    x = np.array([0.5, 2.0, 4.0, 10.0])
    np.testing.assert_array_equal(prox_indicator_intervals(x, lower, upper),
                                  [0.5, 1.0, 5.0, 6.0])


def test_prox_non_finite_lands_on_a_bound():
    lower = np.array([[0.0, 5.0]] * 3)
    upper = np.array([[1.0, 6.0]] * 3)
    x = np.array([np.nan, np.inf, -np.inf])
    y = prox_indicator_intervals(x, lower, upper)
    np.testing.assert_array_equal(y, [0.0, 6.0, 0.0])
    inside = (y[:, None] >= lower) & (y[:, None] <= upper)
    assert np.all(inside.any(axis=1))


def test_admm_state(tmp_path):
    f = tmp_path / "bounds.txt"
    f.write_text("0 1\n0 1\n0 1\n")
    lower, upper = read_bounds(f, 3, 1)
    m = np.array([-1.0, 0.5, 3.0])
    st = AdmmState("grav", lower, upper, 0.5, m)
    np.testing.assert_array_equal(st.z, [0.0, 0.5, 1.0])
    assert np.all((st.z >= lower[:, 0]) & (st.z <= upper[:, 0]))

    blk = st.block(m, Partition(3))
    np.testing.assert_allclose(blk.rhs, -0.5 * (m - st.z))

    r = st.update(np.array([0.2, 0.4, 0.9]))
    assert r == pytest.approx(0.0)
    np.testing.assert_array_equal(st.u, 0.0)


def test_read_bounds_rejects_inverted_interval(tmp_path):
    f = tmp_path / "bounds.txt"
    f.write_text("2 1\n")
    with pytest.raises(ConfigError):
        read_bounds(f, 1, 1)
