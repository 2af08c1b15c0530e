#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Tests for :mod:`py4gm.modules.parallel`.
"""

from __future__ import annotations

import numpy as np
import pytest

from py4gm.modules.errors import DataIOError, RankAborted
from py4gm.modules.parallel import (DistributedArray, DistributedOperator, Partition,
                                    SerialComm, get_comm, root_call, run_ranks)


def test_partition_counts():
    parts = [Partition(10, size=3, rank=r) for r in range(3)]
    assert [p.nlocal for p in parts] == [4, 3, 3]
    assert [p.offset for p in parts] == [0, 4, 7]
    assert parts[2].local_slice == slice(7, 10)
    assert parts[0].owner(3) == 0
    assert parts[0].owner(4) == 1
    assert parts[0].owner(9) == 2
    with pytest.raises(ValueError):
        Partition(5, size=2, rank=2)


def test_partition_more_ranks_than_items():
    parts = [Partition(2, size=4, rank=r) for r in range(4)]
    assert [p.nlocal for p in parts] == [1, 1, 0, 0]


def test_serial_comm_counts_collectives():
    comm = SerialComm()
    assert comm.all_reduce_sum(2.0) == 2.0
    assert comm.broadcast_from("x") == "x"
    assert comm.ncollective == 2


def test_get_comm():
    assert isinstance(get_comm("serial"), SerialComm)
    with pytest.raises(ValueError):
        get_comm("pvm")


def test_distributed_array_reductions():
    full = np.arange(11.0)

    def _rank(comm):
        part = Partition.from_comm(full.size, comm)
        a = DistributedArray.from_full(full, part, comm)
        return a.dot(a), a.norm(), a.gather_full(), len(a)

    results = run_ranks(3, _rank)
    for dot, norm, gathered, _ in results:
        assert dot == pytest.approx(np.dot(full, full))
        assert norm == pytest.approx(np.linalg.norm(full))
        np.testing.assert_array_equal(gathered, full)
    assert sum(r[3] for r in results) == full.size


def test_reductions_are_identical_on_all_ranks(rng):
    vals = rng.normal(size=(4, 6))

    def _rank(comm):
        return comm.all_reduce_sum(vals[comm.rank])

    sums = run_ranks(4, _rank)
    for s in sums[1:]:
        np.testing.assert_array_equal(s, sums[0])
    np.testing.assert_allclose(sums[0], vals.sum(axis=0))


def test_broadcast_from_gives_private_copies():
    def _rank(comm):
        a = DistributedArray(np.full(3, float(comm.rank)), comm)
        a.broadcast_from(2)
        a.local_view()[:] += comm.rank
        return a.local_view()

    for r, v in enumerate(run_ranks(3, _rank)):
        np.testing.assert_array_equal(v, 2.0 + r)


def test_operator_matches_dense(rng):
    A = rng.normal(size=(6, 9))
    x = rng.normal(size=9)
    u = rng.normal(size=6)

    def _rank(comm):
        part = Partition.from_comm(9, comm)
        op = DistributedOperator(A[:, part.local_slice], comm)
        return part.local_slice, op.matvec(x[part.local_slice]), op.rmatvec(u)

    for sl, Ax, ATu in run_ranks(2, _rank):
        np.testing.assert_allclose(Ax, A @ x)
        np.testing.assert_allclose(ATu, A[:, sl].T @ u)


def test_root_call_broadcasts_result():
    calls = []

    def _load(v):
        calls.append(v)
        return {"value": v}

    res = run_ranks(3, lambda comm: root_call(comm, _load, 5))
    assert res == [{"value": 5}] * 3
    assert calls == [5]


def test_root_call_error_reaches_every_rank():
    seen = []

    def _fail():
        raise DataIOError("no such file")

    def _rank(comm):
        try:
            root_call(comm, _fail)
        except DataIOError:
            seen.append(comm.rank)
            raise

    with pytest.raises(DataIOError):
        run_ranks(3, _rank)
    assert sorted(seen) == [0, 1, 2]


def test_failed_rank_releases_peers():
    def _rank(comm):
        if comm.rank == 1:
            raise DataIOError("rank 1 failed")
        comm.all_reduce_sum(1.0)

    with pytest.raises(DataIOError):
        run_ranks(3, _rank)


def test_peers_see_rank_aborted():
    seen = []

    def _rank(comm):
        if comm.rank == 0:
            raise ValueError("boom")
        try:
            comm.barrier()
        except RankAborted:
            seen.append(comm.rank)
            raise

    with pytest.raises(ValueError):
        run_ranks(3, _rank)
    assert sorted(seen) == [1, 2]
