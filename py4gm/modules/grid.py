#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
grid.py
=======

Regular 3-D model grid consumed by the inversion.

The grid itself is built elsewhere; this module reads it from the grid file
(first line: number of cells, then one line per cell
``X1 X2 Y1 Y2 Z1 Z2 value i j k`` with 1-based indices, z positive down),
writes models back in the same layout, and offers the neighbour lookups the
gradient-type constraints need.

Cells are stored in file order; ``ind(i, j, k)`` maps 0-based grid
indices to that order.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import numpy as np

from .errors import ConfigError, DataIOError, check_count


@dataclass
class ModelGrid:
    """
    Cell geometry of the model.

    Attributes
    ----------
    X1, X2, Y1, Y2, Z1, Z2 : ndarray, shape (ncells,)
        Cell bounds; z positive down.
    i, j, k : ndarray of int, shape (ncells,)
        0-based grid indices of each cell.
    nx, ny, nz : int
        Grid dimensions.
    """

    X1: np.ndarray
    X2: np.ndarray
    Y1: np.ndarray
    Y2: np.ndarray
    Z1: np.ndarray
    Z2: np.ndarray
    i: np.ndarray
    j: np.ndarray
    k: np.ndarray
    nx: int
    ny: int
    nz: int

    def __post_init__(self):
        n = self.nx * self.ny * self.nz
        for name in ("X1", "X2", "Y1", "Y2", "Z1", "Z2", "i", "j", "k"):
            check_count(f"grid cells in {name}", n, np.size(getattr(self, name)))
        self._lookup = np.full((self.nx, self.ny, self.nz), -1, dtype=np.int64)
        self._lookup[self.i, self.j, self.k] = np.arange(n)
        if np.any(self._lookup < 0):
            raise ConfigError("ModelGrid: cell indices do not cover the whole grid!")

    @property
    def ncells(self) -> int:
        return self.nx * self.ny * self.nz

    @property
    def xc(self) -> np.ndarray:
        return 0.5 * (self.X1 + self.X2)

    @property
    def yc(self) -> np.ndarray:
        return 0.5 * (self.Y1 + self.Y2)

    @property
    def zc(self) -> np.ndarray:
        return 0.5 * (self.Z1 + self.Z2)

    @property
    def dx(self) -> np.ndarray:
        return np.abs(self.X2 - self.X1)

    @property
    def dy(self) -> np.ndarray:
        return np.abs(self.Y2 - self.Y1)

    @property
    def dz(self) -> np.ndarray:
        return np.abs(self.Z2 - self.Z1)

    @property
    def volume(self) -> np.ndarray:
        return self.dx * self.dy * self.dz

    def ind(self, i, j, k):
        """File-order index of the cell(s) at 0-based grid position (i, j, k)."""
        return self._lookup[i, j, k]

    def neighbour(self, direction: int, step: int = 1) -> np.ndarray:
        """
        Index of the neighbour of every cell along ``direction`` (0=x, 1=y, 2=z).

        Returns -1 where the neighbour lies outside the grid.
        """
        idx = [self.i.copy(), self.j.copy(), self.k.copy()]
        dims = (self.nx, self.ny, self.nz)
        idx[direction] = idx[direction] + step
        inside = (idx[direction] >= 0) & (idx[direction] < dims[direction])
        nb = np.full(self.ncells, -1, dtype=np.int64)
        nb[inside] = self._lookup[idx[0][inside], idx[1][inside], idx[2][inside]]
        return nb

    def subset(self, sl: slice) -> "CellBlock":
        """Geometry of the cells in ``sl`` (a rank's local block)."""
        return CellBlock(self.X1[sl], self.X2[sl], self.Y1[sl], self.Y2[sl],
                         self.Z1[sl], self.Z2[sl])

    def cells(self) -> "CellBlock":
        return self.subset(slice(0, self.ncells))

    @classmethod
    def regular(cls, nx: int, ny: int, nz: int, dx: float, dy: float, dz: float,
                x0: float = 0.0, y0: float = 0.0, z0: float = 0.0) -> "ModelGrid":
        """Regular grid of equal cells, ordered with i fastest."""
        k, j, i = np.meshgrid(np.arange(nz), np.arange(ny), np.arange(nx), indexing="ij")
        i, j, k = i.ravel(), j.ravel(), k.ravel()
        X1 = x0 + i * dx
        Y1 = y0 + j * dy
        Z1 = z0 + k * dz
        return cls(X1, X1 + dx, Y1, Y1 + dy, Z1, Z1 + dz, i, j, k, nx, ny, nz)


@dataclass(frozen=True)
class CellBlock:
    """Bounds of a contiguous block of cells."""

    X1: np.ndarray
    X2: np.ndarray
    Y1: np.ndarray
    Y2: np.ndarray
    Z1: np.ndarray
    Z2: np.ndarray

    @property
    def ncells(self) -> int:
        return int(np.size(self.X1))

    @property
    def centres(self) -> np.ndarray:
        return np.column_stack((0.5 * (self.X1 + self.X2),
                                0.5 * (self.Y1 + self.Y2),
                                0.5 * (self.Z1 + self.Z2)))


def read_grid(file_name, nx: int, ny: int, nz: int, out: bool = False):
    """
    Read a grid file.

    Returns
    -------
    grid : ModelGrid
    values : ndarray, shape (ncells,)
        The value column of the file.
    """
    p = Path(file_name).expanduser()
    if not p.is_file():
        raise DataIOError(f"Error in opening the grid file {p}!")

    if out:
        print("Reading model grid from file " + p.as_posix())

    with open(p, "r") as f:
        header = f.readline().split()
        if not header:
            raise DataIOError(f"Grid file {p} is empty!")
        try:
            ncells = int(header[0])
        except ValueError as exc:
            raise DataIOError(f"Grid file {p}: bad cell count {header[0]!r}!") from exc
        check_count("cells in the grid file and in modelGrid.size", nx * ny * nz, ncells)
        try:
            table = np.loadtxt(f, ndmin=2, dtype=float)
        except ValueError as exc:
            raise DataIOError(f"Problem while reading the grid file {p}: {exc}") from exc

    if table.shape[0] < ncells:
        raise DataIOError(f"Grid file {p}: premature end of file after {table.shape[0]} cells!")
    if table.shape[1] != 10:
        raise DataIOError(f"Grid file {p}: 10 columns expected, got {table.shape[1]}!")
    table = table[:ncells]

    idx = table[:, 7:10].astype(np.int64) - 1
    for col, n in zip(range(3), (nx, ny, nz)):
        if idx[:, col].min() < 0 or idx[:, col].max() >= n:
            raise ConfigError(f"Grid file {p}: cell index out of range in column {8 + col}!")

    grid = ModelGrid(table[:, 0], table[:, 1], table[:, 2], table[:, 3],
                     table[:, 4], table[:, 5], idx[:, 0], idx[:, 1], idx[:, 2],
                     nx, ny, nz)
    return grid, table[:, 6].copy()


def write_model(file_name, grid: ModelGrid, values, out: bool = False) -> None:
    """Write a full model in grid-file layout."""
    values = np.asarray(values, dtype=float).ravel()
    check_count("model values and grid cells", grid.ncells, values.size)

    p = Path(file_name).expanduser()
    p.parent.mkdir(parents=True, exist_ok=True)
    if out:
        print("Writing model to file " + p.as_posix())

    table = np.column_stack((grid.X1, grid.X2, grid.Y1, grid.Y2, grid.Z1, grid.Z2, values))
    with open(p, "w") as f:
        f.write(f"{grid.ncells}\n")
        for row, i, j, k in zip(table, grid.i, grid.j, grid.k):
            f.write(" ".join(f"{v:.10e}" for v in row) + f" {i + 1} {j + 1} {k + 1}\n")


def model_from_source(src, grid: ModelGrid, what: str = "model") -> np.ndarray:
    """Full model for a :class:`config.ModelSourceConfig` (constant or file)."""
    from .util import read_vector

    if src.type == 1:
        return np.full(grid.ncells, float(src.value))
    return read_vector(src.file, n=grid.ncells, what=what)
