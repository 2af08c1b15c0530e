#!/usr/bin/env python3
"""
jacproc.py

Sensitivity matrix construction and processing: column sensitivities, depth
weighting, distance and top-k compression, and the forward-only evaluation
that never stores the matrix.

Every rank builds the block of the sensitivity matrix that belongs to its
own model cells (all data rows, local columns). Rows are evaluated in chunks,
optionally by several joblib workers.

Dependencies
------------
- numpy
- scipy (sparse)
- joblib
- threadpoolctl
"""

from __future__ import annotations

import math

import numpy as np
import scipy.sparse as scs
from joblib import Parallel, delayed
from threadpoolctl import threadpool_limits

from .errors import AllocationError, ConfigError, check_count
from .parallel import Partition, SerialComm

DEFAULT_CHUNK = 256


def calc_sensitivity(Jac=None, Type="euclidean", Small=1.0e-30, OutInfo=False):
    """
    Column sensitivities of an (optionally sparse) sensitivity block.

    Parameters
    ----------
    Jac : array_like or scipy sparse matrix
        Sensitivity block (ndata x ncells).
    Type : str
        'raw' (column sums), 'cov' (sums of magnitudes) or 'euc'
        (Euclidean column norms).
    Small : float
        Lower bound applied to the result.
    OutInfo : bool
        Print min/max.

    Returns
    -------
    S : ndarray, shape (ncells,)
    """
    if Jac is None or 0 in np.shape(Jac):
        raise ValueError("calc_sensitivity: Jacobian size is 0!")
    if not scs.issparse(Jac):
        Jac = np.asarray(Jac, dtype=float)

    t = Type.lower()
    if "raw" in t:
        S = Jac.sum(axis=0)
    elif "cov" in t:
        S = abs(Jac).sum(axis=0)
    elif "euc" in t:
        if scs.issparse(Jac):
            S = np.sqrt(Jac.power(2).sum(axis=0))
        else:
            S = np.sqrt(np.sum(np.asarray(Jac) ** 2, axis=0))
    else:
        raise ValueError(f"calc_sensitivity: Type {Type} not implemented!")

    S = np.asarray(S, dtype=float).ravel()
    if OutInfo:
        print("calc_sensitivity:", np.amin(S), np.amax(S))

    S[np.abs(S) < Small] = Small
    return S


def depth_weights(dw, cells, S=None, Small=1.0e-30, out=False):
    """
    Depth weights of the cells in ``cells``.

    Parameters
    ----------
    dw : config.DepthWeightingConfig
        type 1: ``1 / (zc + Z0)^(power/2)``;
        type 2: ``||S[:, j]||^(1/2)``;
        type 3: ``(||S[:, j]|| / V_j)^(1/2)``.
    cells : grid.CellBlock
    S : array_like or sparse, optional
        Local sensitivity block, needed for types 2 and 3.

    Returns
    -------
    W : ndarray, shape (ncells,), strictly positive
    """
    if dw.type == 1:
        z = 0.5 * (cells.Z1 + cells.Z2) + dw.z0
        if np.any(z <= 0.0):
            raise ConfigError(
                "Depth weighting type 1 needs zc + Z0 > 0 in every cell; increase Z0!")
        W = 1.0 / z ** (0.5 * dw.power)

    elif dw.type in (2, 3):
        if S is None:
            raise ValueError("depth_weights: sensitivity based weighting needs S!")
        check_count("cells in sensitivity block and cell block", cells.ncells, S.shape[1])
        norms = calc_sensitivity(S, Type="euc", Small=Small)
        if dw.type == 3:
            vol = (np.abs(cells.X2 - cells.X1) * np.abs(cells.Y2 - cells.Y1)
                   * np.abs(cells.Z2 - cells.Z1))
            norms = norms / vol
        W = np.sqrt(norms)

    else:
        raise ConfigError(f"Unknown depth weighting type {dw.type}!")

    W = np.maximum(W, Small)
    if out:
        print(f"depth_weights: type {dw.type}, min {np.amin(W):g}, max {np.amax(W):g}")
    return W


def distance_mask(points, centres, threshold):
    """True where the data point to cell centre distance is within ``threshold``."""
    d2 = ((points[:, None, :] - centres[None, :, :]) ** 2).sum(axis=2)
    return d2 <= threshold * threshold


def compress_block(K, rate=1.0, mask=None, keep=None):
    """
    Keep the ``keep`` largest magnitudes of every row of ``K``.

    ``keep`` defaults to ``ceil(rate * ncols)`` and is capped at ``ncols``.
    Entries outside ``mask`` are dropped before ranking. Zeros are never
    stored.

    Returns
    -------
    scipy.sparse.csr_matrix
    """
    K = np.asarray(K, dtype=float)
    if mask is not None:
        K = np.where(mask, K, 0.0)

    nrow, ncol = K.shape
    if keep is None:
        keep = max(1, math.ceil(rate * ncol)) if ncol > 0 else 0
    keep = min(ncol, int(keep))

    if keep >= ncol:
        return scs.csr_matrix(K)

    rows, cols, data = [], [], []
    for i in range(nrow):
        row = K[i]
        idx = np.argpartition(-np.abs(row), keep - 1)[:keep]
        idx = np.sort(idx[row[idx] != 0.0])
        rows.append(np.full(idx.shape, i, dtype=np.int64))
        cols.append(idx.astype(np.int64))
        data.append(row[idx])
    if not rows:
        return scs.csr_matrix((nrow, ncol))
    return scs.csr_matrix(
        (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
        shape=(nrow, ncol))


def row_thresholds(S, keep, partition, comm):
    """
    Magnitude of the ``keep``-th largest entry in every row of the global
    matrix whose rank-local column block is ``S`` (one collective).

    Each rank writes the sorted magnitudes of its local row entries into its
    own slot range of a zero-padded buffer, the buffer is summed over ranks.
    Rows with fewer than ``keep`` non-zeros get threshold 0.
    """
    S = scs.csr_matrix(S)
    widths = np.minimum(partition.counts, keep)
    offsets = np.concatenate(([0], np.cumsum(widths)[:-1]))
    w = int(widths[partition.rank])
    o = int(offsets[partition.rank])

    buf = np.zeros((S.shape[0], int(widths.sum())))
    for i in range(S.shape[0]):
        vals = np.sort(np.abs(S.data[S.indptr[i]:S.indptr[i + 1]]))[::-1][:w]
        buf[i, o:o + vals.size] = vals
    buf = comm.all_reduce_sum(buf)

    if buf.shape[1] < keep or S.shape[0] == 0:
        return np.zeros(S.shape[0])
    return -np.partition(-buf, keep - 1, axis=1)[:, keep - 1]


def prune_rows(S, thresholds):
    """Drop the entries of every row whose magnitude is below its threshold."""
    S = scs.csr_matrix(S, copy=True)
    rows = np.repeat(np.arange(S.shape[0]), np.diff(S.indptr))
    S.data[np.abs(S.data) < np.asarray(thresholds)[rows]] = 0.0
    S.eliminate_zeros()
    return S


def _chunks(n, chunk):
    return [(r0, min(n, r0 + chunk)) for r0 in range(0, n, chunk)]


def _kernel_rows(kernel, points, cells, cols, rows, compression, keep):
    K = kernel.kernel(points, cells, cols, rows)
    mask = None
    if compression is not None and compression.distance_threshold > 0.0:
        mask = distance_mask(points, cells.centres, compression.distance_threshold)
    return compress_block(K, mask=mask, keep=keep)


class SensitivityMatrix:
    """
    Rank-local block of the sensitivity matrix of one physics.

    Attributes
    ----------
    name : str
        Physics tag.
    S : scipy.sparse.csr_matrix, shape (ndata, nlocal)
        Sensitivities of all data to the rank's cells.
    weights : ndarray, shape (nlocal,)
        Depth weights W of the local cells.
    partition : parallel.Partition
    comm : communicator
    """

    def __init__(self, name, S, weights, partition, comm):
        self.name = name
        self.S = scs.csr_matrix(S)
        self.weights = np.asarray(weights, dtype=float)
        self.partition = partition
        self.comm = comm
        check_count("sensitivity columns and local cells", partition.nlocal, self.S.shape[1])
        check_count("depth weights and local cells", partition.nlocal, self.weights.size)

    @property
    def ndata(self):
        return self.S.shape[0]

    @property
    def nnz(self):
        return self.S.nnz

    def forward(self, m_local):
        """``S @ m`` summed over ranks."""
        return self.comm.all_reduce_sum(self.S @ np.asarray(m_local, dtype=float))

    def compression_ratio(self):
        """Stored fraction of the full matrix (collective)."""
        nnz = self.comm.all_reduce_sum(float(self.nnz))
        return nnz / max(1.0, float(self.ndata) * self.partition.nglobal)


def build_sensitivity(kernel, data, grid, partition=None, comm=None,
                      compression=None, depth_weighting=None,
                      n_jobs=1, chunk=DEFAULT_CHUNK, out=False):
    """
    Build the rank-local sensitivity block and depth weights of one physics.

    Parameters
    ----------
    kernel : kernels.ForwardKernel
    data : data.DataSet
    grid : grid.ModelGrid
    partition : parallel.Partition, optional
        Column partition; defaults to one rank owning all cells.
    comm : communicator, optional
    compression : config.CompressionConfig, optional
    depth_weighting : config.DepthWeightingConfig, optional
        Defaults to the kernel's.
    n_jobs : int
        joblib workers evaluating row chunks.
    chunk : int
        Data rows per chunk.

    Returns
    -------
    SensitivityMatrix
    """
    comm = SerialComm() if comm is None else comm
    partition = Partition(grid.ncells) if partition is None else partition
    check_count("grid cells and partition", grid.ncells, partition.nglobal)
    dw = kernel.default_depth_weighting if depth_weighting is None else depth_weighting

    sl = partition.local_slice
    cells = grid.subset(sl)
    points = data.positions
    parts = _chunks(data.ndata, max(1, int(chunk)))

    rate = 1.0 if compression is None else compression.rate
    keep = max(1, math.ceil(rate * partition.nglobal))
    keep = keep if keep < partition.nglobal else None

    if out and comm.rank == 0:
        print(f"build_sensitivity: {kernel!r}, {data.ndata} data x {grid.ncells} cells, "
              f"{len(parts)} row chunks, {comm.size} rank(s)")

    try:
        if n_jobs == 1 or len(parts) < 2:
            blocks = [_kernel_rows(kernel, points[r0:r1], cells, sl, slice(r0, r1),
                                   compression, keep)
                      for r0, r1 in parts]
        else:
            with threadpool_limits(limits=1):
                blocks = Parallel(n_jobs=n_jobs, prefer="threads")(
                    delayed(_kernel_rows)(kernel, points[r0:r1], cells, sl, slice(r0, r1),
                                          compression, keep)
                    for r0, r1 in parts)
        if blocks:
            S = scs.vstack(blocks, format="csr")
        else:
            S = scs.csr_matrix((0, cells.ncells))
        if keep is not None:
            # global top-k per row, independent of the rank count
            thr = [row_thresholds(S[r0:r1], keep, partition, comm) for r0, r1 in parts]
            S = prune_rows(S, np.concatenate(thr) if thr else np.zeros(0))
    except MemoryError as exc:
        raise AllocationError(
            f"build_sensitivity: out of memory for {data.ndata} x {partition.nlocal} "
            f"block of {kernel.name}!") from exc

    W = depth_weights(dw, cells, S=S)
    sm = SensitivityMatrix(kernel.name, S, W, partition, comm)

    if out:
        ratio = sm.compression_ratio()
        if comm.rank == 0:
            print(f"build_sensitivity: {kernel.name} stored fraction {ratio:.4f}")

    return sm


def calc_data_direct(kernel, data, grid, model, partition=None, comm=None,
                     n_jobs=1, chunk=DEFAULT_CHUNK, out=False):
    """
    Forward data ``S m`` evaluated chunk by chunk without storing ``S``.

    ``model`` is the full model (all cells); each rank evaluates its own
    columns, the partial data are summed over ranks.
    """
    comm = SerialComm() if comm is None else comm
    partition = Partition(grid.ncells) if partition is None else partition
    model = np.asarray(model, dtype=float).ravel()
    check_count("model values and grid cells", grid.ncells, model.size)

    sl = partition.local_slice
    cells = grid.subset(sl)
    m_local = model[sl]
    points = data.positions
    parts = _chunks(data.ndata, max(1, int(chunk)))

    def _rows(r0, r1):
        return kernel.kernel(points[r0:r1], cells, sl, slice(r0, r1)) @ m_local

    if out and comm.rank == 0:
        print(f"calc_data_direct: {kernel.name}, {data.ndata} data, {len(parts)} row chunks")

    if n_jobs == 1 or len(parts) < 2:
        pieces = [_rows(r0, r1) for r0, r1 in parts]
    else:
        with threadpool_limits(limits=1):
            pieces = Parallel(n_jobs=n_jobs, prefer="threads")(
                delayed(_rows)(r0, r1) for r0, r1 in parts)

    partial = np.concatenate(pieces) if pieces else np.zeros(0)
    return comm.all_reduce_sum(partial)
