#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
inverse.py
==========
Iterative least-squares solvers for the distributed joint system.

- Soft thresholding (prox of the l1 norm)
- LSQR (Paige & Saunders, 1982)
- CGLS (conjugate gradients on the normal equations)

The solvers only call ``op.matvec``, ``op.rmatvec``, ``op.col_dot`` and
``op.col_norm`` (see :class:`parallel.DistributedOperator`). Row-space
vectors are replicated on every rank, column-space vectors hold the rank's
local block. One LSQR iteration needs exactly two collective reductions:
the sum inside ``matvec`` and the norm of the column-space vector.

Non-convergence is reported in the result, never raised.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

import numpy as np

from .parallel import DistributedOperator, SerialComm

STOP_REASONS = {
    0: "iteration limit reached",
    1: "residual below tolerance",
    2: "least-squares residual below tolerance",
    3: "zero right-hand side",
}


def soft_thresh(x: np.ndarray, lam: float) -> np.ndarray:
    """
    L1 shrinkage of a column-scaled update ``y`` (``dm = c * y``).

    Entries with ``|y| <= lam`` become zero, the rest move toward zero by
    ``lam``; applied after every solve when ``inversion.softThresholdL1 > 0``.
    """
    lam = float(lam)
    if lam < 0.0:
        raise ValueError(f"soft_thresh: threshold {lam} is negative!")
    return np.sign(x) * np.maximum(np.abs(x) - lam, 0.0)


@dataclass
class SolveResult:
    """Solution (local block), residual-norm history and stop code."""

    x: np.ndarray
    residuals: List[float] = field(default_factory=list)
    niter: int = 0
    istop: int = 0

    @property
    def converged(self) -> bool:
        return self.istop in (1, 2, 3)

    @property
    def reason(self) -> str:
        return STOP_REASONS[self.istop]


def as_operator(A, comm=None) -> DistributedOperator:
    """Wrap a matrix (all columns local) as a solver operator."""
    return DistributedOperator(A, SerialComm() if comm is None else comm)


def lsqr(op, b: np.ndarray, niter: int = 100, min_residual: float = 1.0e-13,
         out: bool = False) -> SolveResult:
    """
    Solve ``min ||A x - b||`` with LSQR.

    Parameters
    ----------
    op : DistributedOperator
        Column-distributed operator.
    b : numpy.ndarray
        Right-hand side (replicated).
    niter : int
        Maximum number of iterations.
    min_residual : float
        Stop when ``||r|| / ||b||`` or ``||A^T r|| / (||A|| ||r||)`` drops
        below this value.

    Returns
    -------
    SolveResult
        ``residuals`` holds the estimate of ``||r||`` before the first and
        after every iteration; it is non-increasing.
    """
    b = np.asarray(b, dtype=float)
    x = np.zeros(op.ncols_local)

    beta = float(np.linalg.norm(b))
    res = SolveResult(x=x, residuals=[beta])
    if beta == 0.0:
        res.istop = 3
        return res
    u = b / beta
    bnorm = beta

    v = op.rmatvec(u)
    alpha = op.col_norm(v)
    if alpha == 0.0:
        res.istop = 2
        return res
    v = v / alpha

    w = v.copy()
    phibar = beta
    rhobar = alpha
    anorm = 0.0

    for it in range(1, niter + 1):
        u = op.matvec(v) - alpha * u
        beta = float(np.linalg.norm(u))
        if beta > 0.0:
            u = u / beta
        anorm = np.sqrt(anorm**2 + alpha**2 + beta**2)

        v = op.rmatvec(u) - beta * v
        alpha = op.col_norm(v)
        if alpha > 0.0:
            v = v / alpha

        rho = np.hypot(rhobar, beta)
        c = rhobar / rho
        s = beta / rho
        theta = s * alpha
        rhobar = -c * alpha
        phi = c * phibar
        phibar = s * phibar

        x = x + (phi / rho) * w
        w = v - (theta / rho) * w

        res.residuals.append(float(phibar))
        res.niter = it
        arnorm = phibar * alpha * abs(c)

        if phibar / bnorm < min_residual:
            res.istop = 1
            break
        if anorm * phibar > 0.0 and arnorm / (anorm * phibar) < min_residual:
            res.istop = 2
            break
        if alpha == 0.0:
            res.istop = 2
            break

    res.x = x
    if out:
        print(f"lsqr: {res.niter} iterations, |r|/|b| = {phibar / bnorm:.3e}, {res.reason}")
    return res


def cgls(op, b: np.ndarray, niter: int = 100, min_residual: float = 1.0e-13,
         out: bool = False) -> SolveResult:
    """
    Solve ``min ||A x - b||`` with CGLS. Same interface as :func:`lsqr`.
    """
    b = np.asarray(b, dtype=float)
    x = np.zeros(op.ncols_local)
    bnorm = float(np.linalg.norm(b))
    res = SolveResult(x=x, residuals=[bnorm])
    if bnorm == 0.0:
        res.istop = 3
        return res

    r = b.copy()
    s = op.rmatvec(r)
    p = s.copy()
    gamma = op.col_dot(s, s)
    gamma0 = gamma

    for it in range(1, niter + 1):
        if gamma == 0.0:
            res.istop = 2
            break
        q = op.matvec(p)
        qq = float(np.dot(q, q))
        if qq == 0.0:
            res.istop = 2
            break
        step = gamma / qq
        x = x + step * p
        r = r - step * q
        rnorm = float(np.linalg.norm(r))
        res.residuals.append(rnorm)
        res.niter = it

        s = op.rmatvec(r)
        gamma_new = op.col_dot(s, s)
        if rnorm / bnorm < min_residual:
            res.istop = 1
            break
        if gamma_new <= (min_residual**2) * gamma0:
            res.istop = 2
            break
        p = s + (gamma_new / gamma) * p
        gamma = gamma_new

    res.x = x
    if out:
        print(f"cgls: {res.niter} iterations, |r|/|b| = {res.residuals[-1] / bnorm:.3e}, {res.reason}")
    return res


SOLVERS = {"lsqr": lsqr, "cgls": cgls}


def solve(method: str, op, b, niter=100, min_residual=1.0e-13, out=False) -> SolveResult:
    try:
        fn = SOLVERS[method.lower()]
    except KeyError as exc:
        raise ValueError(f"solve: unknown method {method}, use {tuple(SOLVERS)}.") from exc
    return fn(op, b, niter=niter, min_residual=min_residual, out=out)
