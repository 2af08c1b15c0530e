#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
parallel.py
===========

Domain decomposition and collective communication for the inversion.

Model cells (matrix columns) are split into contiguous blocks, one per rank.
Data rows are replicated on all ranks. With this layout

- ``A @ x``  needs one collective sum of the rank-local partial products,
- ``A.T @ u`` is purely local,
- dot products and norms of model-space vectors need one scalar sum.

The same solver code runs on any of the communicators below:

- :class:`SerialComm` - one rank, no communication
- :class:`ThreadComm` - in-process ranks on threads (tests, small runs)
- :class:`MpiComm`    - ``mpi4py`` ``COMM_WORLD``

All communicators expose ``rank``, ``size``, ``all_reduce_sum``,
``broadcast_from``, ``barrier`` and ``abort``, and count the collective
calls they have performed in ``ncollective``.
"""

from __future__ import annotations

import copy
import threading
from typing import Callable, List, Optional

import numpy as np
import scipy.sparse as scs

from .errors import RankAborted, exit_code_of


# =============================================================================
# Communicators
# =============================================================================


class SerialComm:
    """Single-rank communicator."""

    name = "serial"

    def __init__(self):
        self.rank = 0
        self.size = 1
        self.ncollective = 0

    def all_reduce_sum(self, x):
        self.ncollective += 1
        if np.ndim(x) == 0:
            return float(x)
        return np.array(x, dtype=float, copy=True)

    def broadcast_from(self, obj, root=0):
        self.ncollective += 1
        return obj

    def barrier(self):
        pass

    def abort(self, errorcode=1):
        """Nothing to notify on a single rank; the caller re-raises."""
        return None


class _ThreadGroup:
    """
    Shared state of a thread-rank group: result slots and a reusable barrier.

    A barrier generation that has been released always completes, even if a
    rank aborts right after it; only ranks still waiting see the abort.
    """

    def __init__(self, size: int):
        self.size = int(size)
        self.slots: List[object] = [None] * self.size
        self.abort_code: Optional[int] = None
        self._cond = threading.Condition()
        self._count = 0
        self._generation = 0
        self._aborted = False

    def wait(self):
        with self._cond:
            if self._aborted:
                raise threading.BrokenBarrierError
            gen = self._generation
            self._count += 1
            if self._count == self.size:
                self._count = 0
                self._generation += 1
                self._cond.notify_all()
                return
            while gen == self._generation and not self._aborted:
                self._cond.wait()
            if gen == self._generation:
                raise threading.BrokenBarrierError

    def abort(self):
        with self._cond:
            self._aborted = True
            self._cond.notify_all()


class ThreadComm:
    """
    One rank of an in-process group of thread ranks.

    Collectives are implemented with a shared slot list and the group
    barrier. Reductions add the slots in rank order, so every rank obtains
    bit-identical results. :meth:`abort` breaks the barrier; peers blocked in
    (or later entering) a collective raise :class:`errors.RankAborted`.
    """

    name = "threads"

    def __init__(self, group: _ThreadGroup, rank: int):
        self._group = group
        self.rank = int(rank)
        self.size = group.size
        self.ncollective = 0

    def _wait(self):
        try:
            self._group.wait()
        except threading.BrokenBarrierError as exc:
            raise RankAborted(
                f"rank {self.rank}: run aborted by a peer rank "
                f"(code {self._group.abort_code})!") from exc

    def all_reduce_sum(self, x):
        self.ncollective += 1
        arr = np.array(x, dtype=float, copy=True)
        self._group.slots[self.rank] = arr
        self._wait()
        total = np.zeros_like(arr)
        for part in self._group.slots:
            total = total + part
        self._wait()
        if np.ndim(x) == 0:
            return float(total)
        return total

    def broadcast_from(self, obj, root=0):
        self.ncollective += 1
        if self.rank == root:
            self._group.slots[root] = obj
        self._wait()
        value = self._group.slots[root]
        if self.rank != root:
            value = copy.deepcopy(value)
        self._wait()
        return value

    def barrier(self):
        self._wait()

    def abort(self, errorcode=1):
        if self._group.abort_code is None:
            self._group.abort_code = int(errorcode)
        self._group.abort()


class MpiComm:
    """``mpi4py`` communicator (``COMM_WORLD`` by default)."""

    name = "mpi"

    def __init__(self, comm=None):
        from mpi4py import MPI

        self._MPI = MPI
        self._comm = MPI.COMM_WORLD if comm is None else comm
        self.rank = self._comm.Get_rank()
        self.size = self._comm.Get_size()
        self.ncollective = 0

    def all_reduce_sum(self, x):
        self.ncollective += 1
        if np.ndim(x) == 0:
            return float(self._comm.allreduce(float(x), op=self._MPI.SUM))
        sendbuf = np.ascontiguousarray(x, dtype=float)
        recvbuf = np.empty_like(sendbuf)
        self._comm.Allreduce(sendbuf, recvbuf, op=self._MPI.SUM)
        return recvbuf

    def broadcast_from(self, obj, root=0):
        self.ncollective += 1
        return self._comm.bcast(obj, root=root)

    def barrier(self):
        self._comm.Barrier()

    def abort(self, errorcode=1):
        self._comm.Abort(int(errorcode))


def get_comm(backend="serial"):
    """Return a communicator for ``backend`` in {'serial', 'mpi'}."""
    b = backend.lower()
    if b == "serial":
        return SerialComm()
    if b == "mpi":
        return MpiComm()
    raise ValueError(f"get_comm: backend {backend} not known! Use 'serial' or 'mpi'.")


def run_ranks(nranks: int, fn: Callable, *args, **kwargs) -> list:
    """
    Run ``fn(comm, *args, **kwargs)`` on ``nranks`` thread ranks.

    Returns the list of per-rank results. If any rank fails, the group is
    aborted and the first failure that is not a :class:`RankAborted` is
    re-raised.
    """
    group = _ThreadGroup(nranks)
    results: list = [None] * nranks
    failures: list = [None] * nranks

    def _target(rank):
        comm = ThreadComm(group, rank)
        try:
            results[rank] = fn(comm, *args, **kwargs)
        except BaseException as exc:
            failures[rank] = exc
            comm.abort(exit_code_of(exc))

    threads = [threading.Thread(target=_target, args=(r,), name=f"rank{r}")
               for r in range(nranks)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    errs = [e for e in failures if e is not None]
    if errs:
        root = next((e for e in errs if not isinstance(e, RankAborted)), errs[0])
        raise root
    return results


def root_call(comm, fn, *args, **kwargs):
    """
    Run ``fn`` on rank 0 and broadcast the result to all ranks.

    An exception raised on rank 0 is broadcast instead and re-raised on
    every rank.
    """
    payload = None
    if comm is None or comm.rank == 0:
        try:
            payload = (True, fn(*args, **kwargs))
        except Exception as exc:
            payload = (False, exc)
    if comm is not None:
        payload = comm.broadcast_from(payload, root=0)
    ok, value = payload
    if not ok:
        raise value
    return value


# =============================================================================
# Partitions and distributed arrays
# =============================================================================


class Partition:
    """
    Contiguous block partition of ``nglobal`` items over ``size`` ranks.

    The first ``nglobal % size`` ranks hold one extra item.
    """

    def __init__(self, nglobal: int, size: int = 1, rank: int = 0):
        if nglobal < 0 or size < 1 or not 0 <= rank < size:
            raise ValueError(f"Partition: invalid nglobal={nglobal}, size={size}, rank={rank}.")
        self.nglobal = int(nglobal)
        self.size = int(size)
        self.rank = int(rank)
        counts = np.full(self.size, self.nglobal // self.size, dtype=int)
        counts[: self.nglobal % self.size] += 1
        self.counts = counts
        self.offsets = np.concatenate(([0], np.cumsum(counts)[:-1])).astype(int)
        self.nlocal = int(counts[self.rank])
        self.offset = int(self.offsets[self.rank])

    @classmethod
    def from_comm(cls, nglobal: int, comm) -> "Partition":
        return cls(nglobal, comm.size, comm.rank)

    @property
    def local_slice(self) -> slice:
        return slice(self.offset, self.offset + self.nlocal)

    def owner(self, iglobal: int) -> int:
        """Rank owning global item ``iglobal``."""
        return int(np.searchsorted(self.offsets, iglobal, side="right") - 1)


class DistributedArray:
    """
    A vector split over ranks according to a :class:`Partition`.

    Each rank stores only its local block. ``partition=None`` denotes a
    *partial* vector: every rank holds a full-length buffer of partial sums
    (e.g. a rank's contribution to ``A @ x``), which :meth:`all_reduce_sum`
    turns into the global result.
    """

    def __init__(self, local, comm, partition: Optional[Partition] = None):
        self._local = np.asarray(local, dtype=float)
        self.comm = comm
        self.partition = partition
        if partition is not None and self._local.shape[0] != partition.nlocal:
            raise ValueError(
                f"DistributedArray: local size {self._local.shape[0]} does not "
                f"match partition ({partition.nlocal}).")

    @classmethod
    def from_full(cls, full, partition: Partition, comm) -> "DistributedArray":
        full = np.asarray(full, dtype=float).ravel()
        if full.size != partition.nglobal:
            raise ValueError(
                f"DistributedArray.from_full: got {full.size} values, {partition.nglobal} expected.")
        return cls(full[partition.local_slice].copy(), comm, partition)

    def local_view(self) -> np.ndarray:
        """The rank-local values (no copy)."""
        return self._local

    def all_reduce_sum(self) -> np.ndarray:
        """Element-wise sum of the local buffers over all ranks."""
        return self.comm.all_reduce_sum(self._local)

    def broadcast_from(self, rank: int = 0) -> np.ndarray:
        """Overwrite the local buffer with the one held by ``rank``."""
        self._local = np.asarray(self.comm.broadcast_from(self._local, root=rank), dtype=float)
        return self._local

    def dot(self, other: "DistributedArray") -> float:
        return self.comm.all_reduce_sum(float(np.dot(self._local, other.local_view())))

    def norm(self) -> float:
        return float(np.sqrt(self.dot(self)))

    def gather_full(self) -> np.ndarray:
        """Full-length copy of the vector on every rank (one collective sum)."""
        if self.partition is None:
            return self.all_reduce_sum()
        buf = np.zeros(self.partition.nglobal)
        buf[self.partition.local_slice] = self._local
        return self.comm.all_reduce_sum(buf)

    def __len__(self):
        return self._local.shape[0]


class DistributedOperator:
    """
    Column-distributed sparse operator.

    ``local_matrix`` holds all rows of the system restricted to the rank's
    local columns. :meth:`matvec` performs the one collective reduction of
    a minor iteration; :meth:`rmatvec` is local.
    """

    def __init__(self, local_matrix, comm):
        self.A = scs.csr_matrix(local_matrix)
        self.AT = self.A.T.tocsr()
        self.comm = comm
        self.nrows, self.ncols_local = self.A.shape

    def matvec(self, x_local: np.ndarray) -> np.ndarray:
        return self.comm.all_reduce_sum(self.A @ x_local)

    def rmatvec(self, u: np.ndarray) -> np.ndarray:
        return self.AT @ u

    def col_dot(self, a: np.ndarray, b: np.ndarray) -> float:
        """Global dot product of two model-space (column) vectors."""
        return self.comm.all_reduce_sum(float(np.dot(a, b)))

    def col_norm(self, a: np.ndarray) -> float:
        return float(np.sqrt(max(self.col_dot(a, a), 0.0)))
