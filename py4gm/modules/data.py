#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
data.py
=======

Point data of one physics: positions, measured and calculated values.

Data files are in *points format*: the first line holds the number of data,
every further line ``X Y Z value``. Reading happens on rank 0; the arrays
(or the error met while reading) are then broadcast to all ranks, so a bad
file stops every rank together.
"""

from __future__ import annotations

from pathlib import Path

import numpy as np

from .errors import DataIOError, InversionError, allocate, check_count


class DataSet:
    """
    Ordered collection of ``ndata`` observations.

    ``X, Y, Z, val_meas`` are fixed after reading; ``val_calc`` is
    updated by the inversion.
    """

    def __init__(self, ndata: int, name: str = ""):
        if ndata < 0:
            raise ValueError("ndata must be non-negative.")
        self.ndata = int(ndata)
        self.name = name
        self.X = allocate(self.ndata, what="data X")
        self.Y = allocate(self.ndata, what="data Y")
        self.Z = allocate(self.ndata, what="data Z")
        self.val_meas = allocate(self.ndata, what="measured data")
        self.val_calc = allocate(self.ndata, what="calculated data")

    @classmethod
    def from_arrays(cls, X, Y, Z, val_meas, name: str = "") -> "DataSet":
        X = np.asarray(X, dtype=float).ravel()
        d = cls(X.size, name=name)
        for attr, arr in (("Y", Y), ("Z", Z), ("val_meas", val_meas)):
            check_count(f"data values in {attr}", d.ndata, np.size(arr))
        d.X[:] = X
        d.Y[:] = np.asarray(Y, dtype=float).ravel()
        d.Z[:] = np.asarray(Z, dtype=float).ravel()
        d.val_meas[:] = np.asarray(val_meas, dtype=float).ravel()
        return d

    @property
    def positions(self) -> np.ndarray:
        return np.column_stack((self.X, self.Y, self.Z))

    # ------------------------------------------------------------
    # reading
    # ------------------------------------------------------------
    def read(self, file_name, comm=None, out: bool = True) -> None:
        """Read on rank 0 and broadcast to all ranks."""
        rank = 0 if comm is None else comm.rank

        error = None
        if rank == 0:
            if out:
                print("Reading data from file " + str(file_name))
            try:
                self._read_points_format(file_name)
            except InversionError as exc:
                error = exc

        if comm is not None:
            error = comm.broadcast_from(error, root=0)
        if error is not None:
            raise error

        if comm is not None:
            self.broadcast(comm)

    def _read_points_format(self, file_name) -> None:
        p = Path(file_name).expanduser()
        if not p.is_file():
            raise DataIOError(f"Error in opening the data file {p}!")

        with open(p, "r") as f:
            first = f.readline().split()
            if not first:
                raise DataIOError(f"Data file {p} is empty!")
            try:
                ndata_in_file = int(first[0])
            except ValueError as exc:
                raise DataIOError(f"Data file {p}: bad data count {first[0]!r}!") from exc

            check_count(f"data in Parfile and in data file {p}", self.ndata, ndata_in_file)

            i = 0
            for lineno, line in enumerate(f, start=2):
                if i == self.ndata:
                    break
                fields = line.split()
                if not fields:
                    continue
                if len(fields) < 4:
                    raise DataIOError(f"Problem while reading the data: {p}, line {lineno}!")
                try:
                    self.X[i], self.Y[i], self.Z[i], self.val_meas[i] = (float(v) for v in fields[:4])
                except ValueError as exc:
                    raise DataIOError(f"Problem while reading the data: {p}, line {lineno}!") from exc
                i += 1

        if i < self.ndata:
            raise DataIOError(f"Data file {p}: premature end of file after {i} of {self.ndata} data!")

    def broadcast(self, comm) -> None:
        """Broadcast positions and measured values from rank 0."""
        payload = comm.broadcast_from((self.X, self.Y, self.Z, self.val_meas), root=0)
        self.X, self.Y, self.Z, self.val_meas = (np.array(a, dtype=float) for a in payload)

    # ------------------------------------------------------------
    # writing
    # ------------------------------------------------------------
    def write(self, ctx, name_prefix: str, which: str = "calc"):
        """
        Write data in points format and as csv (``x,y,z,f``).

        Parameters
        ----------
        ctx : config.RunContext
            Output folder and rank; only rank 0 writes.
        name_prefix : str
            Prefix of the file names ``<prefix>data.txt`` and
            ``<prefix>data_csv.txt``.
        which : {'meas', 'calc'}
            Values to write.

        Returns
        -------
        str or None
            Path of the points-format file (rank 0), else None.
        """
        if not ctx.is_root:
            return None

        if which not in ("meas", "calc"):
            raise ValueError(f"which must be 'meas' or 'calc', got {which!r}.")
        val = self.val_meas if which == "meas" else self.val_calc

        file_name = ctx.path(name_prefix + "data.txt")
        file_name2 = ctx.path(name_prefix + "data_csv.txt")

        if ctx.out:
            print("Writing data to file " + file_name)

        with open(file_name, "w") as f, open(file_name2, "w") as g:
            f.write(f"{self.ndata}\n")
            g.write("x,y,z,f\n")
            for x, y, z, v in zip(self.X, self.Y, self.Z, val):
                row = (repr(float(x)), repr(float(y)), repr(float(z)), repr(float(v)))
                f.write(" ".join(row) + "\n")
                g.write(",".join(row) + "\n")

        return file_name
