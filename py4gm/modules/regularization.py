#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
regularization.py
=================
Constraint operators of the joint inversion.

Every operator turns the current full (gathered) models into a
:class:`ConstraintBlock`: sparse rows restricted to the rank's local columns,
one matrix per physics, plus the right-hand side, which is the same on all
ranks. The orchestrator scales the columns by the column weights and stacks
the blocks under the data rows; no dense augmented matrix is ever formed.

Operators
---------
- model damping (with IRLS reweighting for norm powers other than 2)
- gradient damping (forward differences, global or per-cell weight)
- cross-gradient coupling of two property models
- petrophysical clustering toward Gaussian-mixture cluster centres
- ADMM lithology bounds (:class:`AdmmState`)

All weights must be non-negative.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import scipy.sparse as sp
from numba import jit
from scipy.stats import multivariate_normal

from .errors import ConfigError, check_count
from .util import read_table


@dataclass
class ConstraintBlock:
    """Rows of one constraint term; ``rows[p]`` has shape (nrows, nlocal)."""

    name: str
    rows: Dict[str, sp.csr_matrix]
    rhs: np.ndarray
    weight: float = 1.0
    info: dict = field(default_factory=dict)

    @property
    def nrows(self) -> int:
        return int(self.rhs.shape[0])

    def cost(self) -> float:
        """Squared norm of the term at the current model."""
        return float(np.dot(self.rhs, self.rhs))


def check_weight(name: str, w) -> np.ndarray | float:
    """Validate a scalar or per-cell weight."""
    arr = np.asarray(w, dtype=float)
    if np.any(arr < 0.0) or not np.all(np.isfinite(arr)):
        raise ValueError(f"{name}: weights must be finite and non-negative.")
    return float(arr) if arr.ndim == 0 else arr


def local_diag(values: np.ndarray, partition) -> sp.csr_matrix:
    """(nglobal x nlocal) matrix with ``values[i]`` at (i, i - offset) for local i."""
    values = np.asarray(values, dtype=float)
    sl = partition.local_slice
    rows = np.arange(sl.start, sl.stop)
    cols = np.arange(partition.nlocal)
    return sp.csr_matrix((values[sl], (rows, cols)), shape=(partition.nglobal, partition.nlocal))


# =============================================================================
# Model damping
# =============================================================================


def irls_factor(r: np.ndarray, p: float, eps: float = 1.0e-8) -> np.ndarray:
    """Reweighting factor ``(|r| + eps)^((p-2)/2)`` of an Lp norm (1 for p = 2)."""
    if p == 2.0:
        return np.ones_like(r, dtype=float)
    return (np.abs(r) + eps) ** (0.5 * (p - 2.0))


def model_damping_block(
    name: str,
    m: np.ndarray,
    m0: np.ndarray,
    W: np.ndarray,
    alpha: float,
    partition,
    norm_power: float = 2.0,
) -> ConstraintBlock:
    """
    Damping of the depth-weighted distance to the prior model.

    Rows ``alpha * W * f``, rhs ``-alpha * W * f * (m - m0)``.
    """
    alpha = check_weight("model damping", alpha)
    check_count("damping model and weights", W.size, m.size)
    r = W * (m - m0)
    diag = alpha * W * irls_factor(r, norm_power)
    return ConstraintBlock(
        name=f"damping_{name}",
        rows={name: local_diag(diag, partition)},
        rhs=-diag * (m - m0),
        weight=alpha,
    )


# =============================================================================
# Gradients
# =============================================================================

STENCILS = {1: "forward", 2: "central", 3: "mixed"}


def _spacing(grid, a: np.ndarray, b: np.ndarray, direction: int) -> np.ndarray:
    centres = (grid.xc, grid.yc, grid.zc)[direction]
    h = np.abs(centres[a] - centres[b])
    return np.where(h > 0.0, h, 1.0)


def gradient_operators(grid, stencil: str = "forward") -> Tuple[sp.csr_matrix, ...]:
    """
    Difference operators (Gx, Gy, Gz), each (ncells x ncells).

    forward:  ``(m[i+1] - m[i]) / h``
    central:  ``(m[i+1] - m[i-1]) / h``
    mixed:    forward inside the grid, backward on the upper boundary

    Rows of cells lacking the required neighbours are empty.
    """
    if stencil not in STENCILS.values():
        raise ValueError(f"gradient_operators: unknown stencil {stencil}.")
    n = grid.ncells
    idx = np.arange(n)
    ops = []
    for d in range(3):
        plus = grid.neighbour(d, +1)
        minus = grid.neighbour(d, -1)
        if stencil == "forward":
            ok = plus >= 0
            hi, lo = plus[ok], idx[ok]
        elif stencil == "central":
            ok = (plus >= 0) & (minus >= 0)
            hi, lo = plus[ok], minus[ok]
        else:
            fwd = plus >= 0
            bwd = (~fwd) & (minus >= 0)
            ok = fwd | bwd
            hi = np.where(fwd, plus, idx)[ok]
            lo = np.where(fwd, idx, minus)[ok]
        rows = idx[ok]
        h = _spacing(grid, hi, lo, d)
        G = sp.csr_matrix(
            (np.concatenate((1.0 / h, -1.0 / h)),
             (np.concatenate((rows, rows)), np.concatenate((hi, lo)))),
            shape=(n, n))
        ops.append(G)
    return tuple(ops)


def gradient_damping_block(
    name: str,
    m: np.ndarray,
    ops: Sequence[sp.csr_matrix],
    beta: float,
    partition,
    cell_weights: Optional[np.ndarray] = None,
) -> ConstraintBlock:
    """Rows ``beta * w * D``, rhs ``-beta * w * (D m)`` for D in (Gx, Gy, Gz)."""
    beta = check_weight("gradient damping", beta)
    n = m.size
    w = np.ones(n) if cell_weights is None else check_weight("gradient cell weights", cell_weights)
    check_count("gradient cell weights and cells", n, np.size(w))
    scale = sp.diags(beta * np.tile(w, 3))
    D = sp.vstack(ops, format="csr")
    rows = (scale @ D).tocsr()
    return ConstraintBlock(
        name=f"gradient_{name}",
        rows={name: rows[:, partition.local_slice]},
        rhs=-(rows @ m),
        weight=beta,
    )


# =============================================================================
# Cross-gradient
# =============================================================================


def cross_gradient(
    m1: np.ndarray,
    m2: np.ndarray,
    ops: Sequence[sp.csr_matrix],
) -> Tuple[np.ndarray, sp.csr_matrix, sp.csr_matrix]:
    """
    Cross product of the gradients of two models and its linearisation.

    Returns
    -------
    t : ndarray, shape (3 * ncells,)
        Components (tx, ty, tz) stacked per direction.
    J1, J2 : scipy.sparse.csr_matrix, shape (3 * ncells, ncells)
        Derivatives of t with respect to m1 and m2.
    """
    Gx, Gy, Gz = ops
    gx1, gy1, gz1 = Gx @ m1, Gy @ m1, Gz @ m1
    gx2, gy2, gz2 = Gx @ m2, Gy @ m2, Gz @ m2

    t = np.concatenate((gy1 * gz2 - gz1 * gy2,
                        gz1 * gx2 - gx1 * gz2,
                        gx1 * gy2 - gy1 * gx2))

    D = sp.diags
    J1 = sp.vstack((D(gz2) @ Gy - D(gy2) @ Gz,
                    D(gx2) @ Gz - D(gz2) @ Gx,
                    D(gy2) @ Gx - D(gx2) @ Gy), format="csr")
    J2 = sp.vstack((D(gy1) @ Gz - D(gz1) @ Gy,
                    D(gz1) @ Gx - D(gx1) @ Gz,
                    D(gx1) @ Gy - D(gy1) @ Gx), format="csr")
    return t, J1, J2


def cross_gradient_block(
    names: Tuple[str, str],
    m1: np.ndarray,
    m2: np.ndarray,
    ops: Sequence[sp.csr_matrix],
    weight: float,
    partition,
) -> ConstraintBlock:
    """Linearised cross-gradient rows ``w * [J1 J2]``, rhs ``-w * t``."""
    weight = check_weight("cross-gradient", weight)
    t, J1, J2 = cross_gradient(m1, m2, ops)
    sl = partition.local_slice
    return ConstraintBlock(
        name="crossgrad",
        rows={names[0]: (weight * J1[:, sl]).tocsr(), names[1]: (weight * J2[:, sl]).tocsr()},
        rhs=-weight * t,
        weight=weight,
        info={"norm": float(np.linalg.norm(t))},
    )


# =============================================================================
# Clustering
# =============================================================================


@dataclass
class GaussianMixture:
    """Cluster weights (K,), means (K, P) and covariances (K, P, P)."""

    weights: np.ndarray
    means: np.ndarray
    covs: np.ndarray

    @property
    def nclusters(self) -> int:
        return self.weights.shape[0]

    @property
    def nprops(self) -> int:
        return self.means.shape[1]

    def assign(self, v: np.ndarray) -> np.ndarray:
        """Most probable cluster of each row of ``v`` (ncells x P)."""
        dens = np.column_stack([
            self.weights[k] * multivariate_normal(self.means[k], self.covs[k],
                                                  allow_singular=True).pdf(v).reshape(-1)
            for k in range(self.nclusters)])
        return np.argmax(dens, axis=1)


def read_mixture(file_name, nclusters: int, nprops: int) -> GaussianMixture:
    """One line per cluster: ``weight mean_1..mean_P cov_11..cov_PP``."""
    ncols = 1 + nprops + nprops * nprops
    table = read_table(file_name, ncols=ncols, nrows=nclusters, what="mixture")
    covs = table[:, 1 + nprops:].reshape(nclusters, nprops, nprops)
    if np.any(np.diagonal(covs, axis1=1, axis2=2) <= 0.0):
        raise ConfigError(f"Mixture file {file_name}: cluster variances must be positive!")
    return GaussianMixture(table[:, 0].copy(), table[:, 1:1 + nprops].copy(), covs)


class ClusteringState:
    """
    Cluster assignment of every cell and the rows pulling cells to their centre.

    ``log_domain`` clusters ``log10`` of the property values.
    """

    def __init__(self, mixture: GaussianMixture, names: Sequence[str],
                 weights: Dict[str, float], cell_weights: Optional[np.ndarray] = None,
                 log_domain: bool = False):
        check_count("physics in clustering and mixture properties", mixture.nprops, len(names))
        self.mixture = mixture
        self.names = tuple(names)
        self.weights = {p: check_weight(f"clustering {p}", weights.get(p, 0.0)) for p in self.names}
        self.cell_weights = None if cell_weights is None else check_weight(
            "clustering cell weights", cell_weights)
        self.log_domain = log_domain
        self.labels: Optional[np.ndarray] = None

    def _transform(self, m: np.ndarray) -> np.ndarray:
        if not self.log_domain:
            return m
        if np.any(m <= 0.0):
            raise ConfigError("Logarithmic clustering needs positive model values!")
        return np.log10(m)

    def update(self, models: Dict[str, np.ndarray]) -> np.ndarray:
        """Reassign every cell to its most probable cluster."""
        v = np.column_stack([self._transform(models[p]) for p in self.names])
        self.labels = self.mixture.assign(v)
        return self.labels

    def block(self, models: Dict[str, np.ndarray], partition) -> ConstraintBlock:
        if self.labels is None:
            self.update(models)
        rows = {q: [] for q in self.names}
        rhs = []
        for ip, p in enumerate(self.names):
            m = models[p]
            n = m.size
            cw = np.ones(n) if self.cell_weights is None else self.cell_weights
            check_count("clustering cell weights and cells", n, np.size(cw))
            mu = self.mixture.means[self.labels, ip]
            sig = np.sqrt(self.mixture.covs[self.labels, ip, ip])
            v = self._transform(m)
            scale = self.weights[p] * cw / sig
            deriv = 1.0 / (m * np.log(10.0)) if self.log_domain else np.ones(n)
            diag = scale * deriv
            blk = local_diag(diag, partition)
            for q in self.names:
                rows[q].append(blk if q == p else sp.csr_matrix(blk.shape))
            rhs.append(-scale * (v - mu))
        return ConstraintBlock(
            name="clustering",
            rows={q: sp.vstack(r, format="csr") for q, r in rows.items()},
            rhs=np.concatenate(rhs),
            info={"counts": np.bincount(self.labels, minlength=self.mixture.nclusters)},
        )


# =============================================================================
# ADMM bounds
# =============================================================================


@jit(nopython=True)
def prox_indicator_intervals(x, lower, upper):
    """
    Project each ``x[i]`` onto the nearest of the intervals
    ``[lower[i, k], upper[i, k]]``.

    NaN maps to the lower bound of the first interval, infinities to the
    outermost bound.
    """
    n, nl = lower.shape
    y = np.empty_like(x)
    for i in range(n):
        val = x[i]
        if np.isnan(val):
            y[i] = lower[i, 0]
            continue
        if np.isinf(val):
            edge = lower[i, 0]
            for k in range(nl):
                if val > 0.0:
                    edge = max(edge, upper[i, k])
                else:
                    edge = min(edge, lower[i, k])
            y[i] = edge
            continue
        best = val
        bestdist = np.inf
        for k in range(nl):
            lo = lower[i, k]
            hi = upper[i, k]
            if lo <= val <= hi:
                best = val
                bestdist = 0.0
                break
            proj = lo if val < lo else hi
            dist = abs(proj - val)
            if dist < bestdist:
                best = proj
                bestdist = dist
        y[i] = best
    return y


def read_bounds(file_name, ncells: int, nlith: int) -> Tuple[np.ndarray, np.ndarray]:
    """Bounds file: one line per cell, ``lower_1 upper_1 ... lower_L upper_L``."""
    table = read_table(file_name, ncols=2 * nlith, nrows=ncells, what="ADMM bounds")
    lower = np.ascontiguousarray(table[:, 0::2])
    upper = np.ascontiguousarray(table[:, 1::2])
    if np.any(lower > upper):
        raise ConfigError(f"ADMM bounds file {file_name}: lower bound above upper bound!")
    return lower, upper


class AdmmState:
    """
    Scaled-form ADMM for lithology bounds on one model.

    Rows ``rho * I``, rhs ``-rho * (m - z + u)``; after each solve
    ``z = P(m + u)`` and ``u = u + m - z``.
    """

    def __init__(self, name: str, lower: np.ndarray, upper: np.ndarray, rho: float,
                 m: np.ndarray):
        self.name = name
        self.lower = np.ascontiguousarray(lower, dtype=float)
        self.upper = np.ascontiguousarray(upper, dtype=float)
        check_count("ADMM bounds and cells", m.size, self.lower.shape[0])
        self.rho = check_weight("ADMM", rho)
        self.z = self.project(m)
        self.u = np.zeros_like(self.z)

    def project(self, x: np.ndarray) -> np.ndarray:
        return prox_indicator_intervals(np.ascontiguousarray(x, dtype=float),
                                        self.lower, self.upper)

    def block(self, m: np.ndarray, partition) -> ConstraintBlock:
        diag = np.full(m.size, self.rho)
        return ConstraintBlock(
            name=f"admm_{self.name}",
            rows={self.name: local_diag(diag, partition)},
            rhs=-self.rho * (m - self.z + self.u),
            weight=self.rho,
        )

    def update(self, m: np.ndarray) -> float:
        """z and u step; returns the primal residual ``||m - z||``."""
        self.z = self.project(m + self.u)
        self.u = self.u + m - self.z
        return float(np.linalg.norm(m - self.z))
