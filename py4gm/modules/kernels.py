#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
kernels.py
==========

Forward kernels: sensitivities of the data to a unit property in each cell.

Every kernel implements

    kernel(points, cells, cols=None, rows=None) -> ndarray, shape (npoints, ncells)

with ``points`` the (npoints, 3) data positions, ``cells`` a
:class:`grid.CellBlock`, and ``cols`` and ``rows`` the global column and data
slices of the block (needed only by kernels that look up a precomputed
table).

Coordinates: x, y horizontal, z positive down, in metres.

- :class:`GravityKernel` - vertical attraction of a right rectangular prism
  (Nagy/Plouff closed form), density in kg/m^3, data in m/s^2.
- :class:`MagneticKernel` - total-field anomaly of a prism with induced
  magnetisation (Bhattacharyya 1964, as coded by Blakely 1995, ``mbox``),
  susceptibility in SI, data in nT.
- :class:`EctKernel` - an externally computed sensitivity table.
"""

from __future__ import annotations

from pathlib import Path

import numpy as np

from .config import DepthWeightingConfig, MagneticFieldConfig
from .errors import ConfigError, DataIOError, check_count

GRAV_CONST = 6.67430e-11

_EPS = 1.0e-20


class ForwardKernel:
    """Common interface of the forward kernels."""

    name = ""
    unit = ""
    default_depth_weighting = DepthWeightingConfig(type=1, power=2.0, z0=0.0)

    def kernel(self, points, cells, cols=None, rows=None) -> np.ndarray:
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}()"


# =============================================================================
# Gravity
# =============================================================================


def _prism_corner(x, y, z):
    """Primitive of the vertical attraction at one prism corner."""
    r = np.sqrt(x * x + y * y + z * z)
    r = np.maximum(r, _EPS)
    zr = z * r
    zatan = np.zeros_like(r)
    nz = zr != 0.0
    zatan[nz] = z[nz] * np.arctan(x[nz] * y[nz] / zr[nz])
    return -(x * np.log(np.abs(y + r) + _EPS) + y * np.log(np.abs(x + r) + _EPS) - zatan)


def _corner_sign(i, j, k):
    """+1 for an even number of lower limits (index 0), -1 otherwise."""
    return 1.0 if (3 - (i + j + k)) % 2 == 0 else -1.0


class GravityKernel(ForwardKernel):
    """
    Vertical gravity of unit-density right rectangular prisms.

    The value is positive for mass below the observation point; an
    infinite slab of thickness h yields ``2 pi G h``.
    """

    name = "grav"
    unit = "m/s^2"
    default_depth_weighting = DepthWeightingConfig(type=1, power=2.0, z0=0.0)

    def kernel(self, points, cells, cols=None, rows=None) -> np.ndarray:
        points = np.atleast_2d(np.asarray(points, dtype=float))
        px, py, pz = (points[:, i][:, None] for i in range(3))

        x = (cells.X1[None, :] - px, cells.X2[None, :] - px)
        y = (cells.Y1[None, :] - py, cells.Y2[None, :] - py)
        z = (cells.Z1[None, :] - pz, cells.Z2[None, :] - pz)
        x = tuple(np.broadcast_to(a, (points.shape[0], cells.ncells)) for a in x)
        y = tuple(np.broadcast_to(a, (points.shape[0], cells.ncells)) for a in y)
        z = tuple(np.broadcast_to(a, (points.shape[0], cells.ncells)) for a in z)

        s = np.zeros((points.shape[0], cells.ncells))
        for i in range(2):
            for j in range(2):
                for k in range(2):
                    s += _corner_sign(i, j, k) * _prism_corner(x[i], y[j], z[k])
        return GRAV_CONST * s


# =============================================================================
# Magnetics
# =============================================================================


def dircos(incl, decl, azim):
    """
    Direction cosines of a vector given in degrees.

    ``azim`` is the azimuth of the x axis measured from north.
    """
    d2rad = np.pi / 180.0
    incl, decl, azim = incl * d2rad, decl * d2rad, azim * d2rad
    a = np.cos(incl) * np.cos(decl - azim)
    b = np.cos(incl) * np.sin(decl - azim)
    c = np.sin(incl)
    return a, b, c


def mbox(alpha, beta, h, mdir, fdir):
    """
    Total-field anomaly factor of a semi-infinite prism.

    Parameters
    ----------
    alpha, beta : tuple of ndarray
        (lower, upper) horizontal prism limits relative to the observation.
    h : ndarray
        Depth of the prism top below the observation (> 0).
    mdir, fdir : tuple of float
        Direction cosines of magnetisation and ambient field.

    Returns
    -------
    ndarray
        Dimensionless factor; multiply by ``M * mu0 / (4 pi)`` for Tesla.
    """
    ma, mb, mc = mdir
    fa, fb, fc = fdir
    fm1 = ma * fb + mb * fa
    fm2 = ma * fc + mc * fa
    fm3 = mb * fc + mc * fb
    fm4 = ma * fa
    fm5 = mb * fb
    fm6 = mc * fc

    hsq = h * h
    t = np.zeros(np.broadcast(alpha[0], beta[0], h).shape)
    for i in range(2):
        asq = alpha[i] * alpha[i]
        for j in range(2):
            sign = 1.0 if i == j else -1.0
            r0sq = asq + beta[j] * beta[j] + hsq
            r0 = np.sqrt(r0sq)
            r0h = r0 * h
            ab = alpha[i] * beta[j]
            arg1 = (r0 - alpha[i]) / (r0 + alpha[i])
            arg2 = (r0 - beta[j]) / (r0 + beta[j])
            arg3 = asq + r0h + hsq
            arg4 = r0sq + r0h - asq
            tlog = (fm3 * np.log(arg1) / 2.0 + fm2 * np.log(arg2) / 2.0
                    - fm1 * np.log(r0 + h))
            tatan = (-fm4 * np.arctan2(ab, arg3) - fm5 * np.arctan2(ab, arg4)
                     + fm6 * np.arctan2(ab, r0h))
            t = t + sign * (tlog + tatan)
    return t


class MagneticKernel(ForwardKernel):
    """
    Total-field anomaly (nT) of unit-susceptibility prisms in an ambient field.

    Magnetisation is induced only, so it is parallel to the field.
    """

    name = "magn"
    unit = "nT"
    default_depth_weighting = DepthWeightingConfig(type=1, power=3.0, z0=0.0)

    def __init__(self, field: MagneticFieldConfig = None):
        self.field = MagneticFieldConfig() if field is None else field
        f = self.field
        self._fdir = dircos(f.inclination, f.declination, f.theta)
        self._mdir = self._fdir

    def __repr__(self):
        f = self.field
        return (f"MagneticKernel(I={f.inclination}, D={f.declination}, "
                f"F={f.intensity}, theta={f.theta})")

    def kernel(self, points, cells, cols=None, rows=None) -> np.ndarray:
        points = np.atleast_2d(np.asarray(points, dtype=float))
        px, py, pz = (points[:, i][:, None] for i in range(3))

        alpha = (cells.X1[None, :] - px, cells.X2[None, :] - px)
        beta = (cells.Y1[None, :] - py, cells.Y2[None, :] - py)
        top = cells.Z1[None, :] - pz
        bot = cells.Z2[None, :] - pz
        if np.any(top <= 0.0):
            raise ConfigError("MagneticKernel: data points must lie above all cells!")

        t = mbox(alpha, beta, top, self._mdir, self._fdir) \
            - mbox(alpha, beta, bot, self._mdir, self._fdir)
        return self.field.intensity / (4.0 * np.pi) * t


# =============================================================================
# ECT
# =============================================================================


class EctKernel(ForwardKernel):
    """Capacitance sensitivities read from a precomputed table."""

    name = "ect"
    unit = "F"
    default_depth_weighting = DepthWeightingConfig(type=2, power=2.0, z0=0.0)

    def __init__(self, table):
        self.table = np.asarray(table, dtype=float)
        if self.table.ndim != 2:
            raise ValueError("EctKernel: sensitivity table must be 2-D!")

    @classmethod
    def from_file(cls, file_name, ndata: int, ncells: int) -> "EctKernel":
        """Load an ``ndata x ncells`` table from ``.npy`` or ``.npz`` (first array)."""
        p = Path(file_name).expanduser()
        if not p.is_file():
            raise DataIOError(f"Error in opening the ECT sensitivity file {p}!")
        try:
            loaded = np.load(p, allow_pickle=False)
        except (ValueError, OSError) as exc:
            raise DataIOError(f"Problem while reading the ECT sensitivity file {p}: {exc}") from exc
        if isinstance(loaded, np.lib.npyio.NpzFile):
            with loaded:
                table = loaded[loaded.files[0]]
        else:
            table = loaded
        table = np.atleast_2d(table)
        check_count("rows in the ECT sensitivity file and nData", ndata, table.shape[0])
        check_count("columns in the ECT sensitivity file and grid cells", ncells, table.shape[1])
        return cls(table)

    def kernel(self, points, cells, cols=None, rows=None) -> np.ndarray:
        npts = np.atleast_2d(points).shape[0]
        cols = slice(0, cells.ncells) if cols is None else cols
        rows = slice(0, npts) if rows is None else rows
        block = self.table[rows, cols]
        if block.shape != (npts, cells.ncells):
            raise ValueError(
                f"EctKernel: table block {block.shape} does not match "
                f"({npts}, {cells.ncells}).")
        return block.copy()


def get_kernel(name: str, cfg=None, ndata: int = 0) -> ForwardKernel:
    """Kernel for physics ``name`` configured from an :class:`config.InversionConfig`."""
    if name == "grav":
        return GravityKernel()
    if name == "magn":
        return MagneticKernel(None if cfg is None else cfg.mag_field)
    if name == "ect":
        if cfg is None:
            raise ValueError("get_kernel: the ECT kernel needs a configuration.")
        return EctKernel.from_file(cfg.physics["ect"].sensitivity_file, ndata, cfg.ncells)
    raise ValueError(f"get_kernel: unknown physics {name}!")
