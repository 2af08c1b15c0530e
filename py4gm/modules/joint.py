#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
joint.py
========
Orchestration of a joint gravity/magnetic(/ECT) inversion.

A run is a small state machine::

    BUILD_MATRIX -> MINOR_SOLVE -> UPDATE_WEIGHTS -> CHECK_CONVERGENCE
                        ^                                   |
                        +----------- next major ------------+--> DONE

BUILD_MATRIX (once)
    read grid, data, starting and prior models on rank 0 and broadcast;
    build the rank-local sensitivity blocks and depth weights.
MINOR_SOLVE
    assemble the local column block of the augmented system (data rows,
    damping, gradient damping, cross-gradient, clustering and ADMM rows),
    solve it with LSQR or CGLS and update the models. With cross-gradient
    coupling the solve is repeated ``nIterMethodOfWeight`` times, each time
    linearised at the current models.
UPDATE_WEIGHTS
    run the stages of ``inversion.updatePipeline`` in the configured order.
CHECK_CONVERGENCE
    data costs ``||d - d_calc||^2 / ||d||^2``, status, intermediate output.

The unknown of every solve is the column-scaled update ``y``; the model
update is ``dm = c * y`` with column weights ``c = multiplier / W``.
Physics that are inactive in the current major iteration, or have problem
weight 0, are frozen: they contribute neither columns nor data rows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np
import scipy.sparse as sp

from .config import InversionConfig, RunContext
from .data import DataSet
from .errors import ConfigError, exit_code_of
from .grid import model_from_source, read_grid, write_model
from .inverse import soft_thresh, solve
from .jacproc import build_sensitivity, calc_data_direct
from .kernels import get_kernel
from .parallel import DistributedArray, DistributedOperator, Partition, SerialComm, root_call
from .regularization import (AdmmState, ClusteringState, ConstraintBlock, STENCILS,
                             cross_gradient, cross_gradient_block, gradient_damping_block,
                             gradient_operators, model_damping_block, read_bounds,
                             read_mixture)
from .util import read_vector, rprint


class Stage(Enum):
    BUILD_MATRIX = "build_matrix"
    MINOR_SOLVE = "minor_solve"
    UPDATE_WEIGHTS = "update_weights"
    CHECK_CONVERGENCE = "check_convergence"
    DONE = "done"


@dataclass
class InversionState:
    """Progress of a run, identical on all ranks."""

    models: Dict[str, DistributedArray] = field(default_factory=dict)
    major: int = 0
    stage: Stage = Stage.BUILD_MATRIX
    active: Tuple[str, ...] = ()
    costs: List[Dict[str, float]] = field(default_factory=list)
    lsqr_history: List[List[float]] = field(default_factory=list)
    crossgrad_weight: float = 0.0
    crossgrad_norm: List[float] = field(default_factory=list)
    problem_weights: Dict[str, float] = field(default_factory=dict)
    converged: bool = False
    stalled: bool = False
    status: str = "running"

    def weighted_cost(self, costs: Dict[str, float]) -> float:
        """Sum of the data costs scaled by the problem weights."""
        return float(sum(self.problem_weights.get(p, 1.0) * c for p, c in costs.items()))

    def joint_cost(self, i: int = -1) -> float:
        return self.weighted_cost(self.costs[i]) if self.costs else np.inf


def data_cost(d: np.ndarray, d_calc: np.ndarray) -> float:
    """``||d - d_calc||^2 / ||d||^2`` (unnormalised when ``d == 0``)."""
    r = d - d_calc
    dd = float(np.dot(d, d))
    rr = float(np.dot(r, r))
    return rr / dd if dd > 0.0 else rr


class JointInversion:
    """
    One joint inversion run on one rank.

    Parameters
    ----------
    cfg : InversionConfig
    comm : communicator, optional
        :class:`parallel.SerialComm` by default.
    ctx : RunContext, optional
        Output folder and verbosity; defaults to ``cfg.output_folder``.
    """

    def __init__(self, cfg: InversionConfig, comm=None, ctx: Optional[RunContext] = None,
                 out: bool = True):
        self.cfg = cfg
        self.comm = SerialComm() if comm is None else comm
        self.ctx = RunContext(cfg.output_folder, self.comm, out) if ctx is None else ctx
        self.out = self.ctx.out
        self.partition = Partition.from_comm(cfg.ncells, self.comm)
        self.state = InversionState(
            crossgrad_weight=cfg.cross_gradient.weight,
            problem_weights={p: cfg.physics[p].problem_weight for p in cfg.active_physics})

        self.grid = None
        self.data: Dict[str, DataSet] = {}
        self.kernels = {}
        self.sens = {}
        self.W_full: Dict[str, np.ndarray] = {}
        self.prior: Dict[str, np.ndarray] = {}
        self.grad_ops = None
        self.grad_weights: Dict[str, Optional[np.ndarray]] = {}
        self.cg_ops = None
        self.clustering: Optional[ClusteringState] = None
        self.admm: Dict[str, AdmmState] = {}

    # ------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------
    def _print(self, *args):
        if self.out:
            rprint(self.comm, *args)

    @property
    def physics(self) -> Tuple[str, ...]:
        return self.cfg.active_physics

    def full_models(self) -> Dict[str, np.ndarray]:
        """Gather every model on every rank."""
        return {p: self.state.models[p].gather_full() for p in self.physics}

    def active_at(self, major: int) -> Tuple[str, ...]:
        """Physics inverted in major iteration ``major`` (single-physics stages first)."""
        single = tuple(p for p in self.physics if major < self.cfg.physics[p].n_iter_single)
        return single if single else self.physics

    def solved(self) -> Tuple[str, ...]:
        """Active physics with a positive problem weight."""
        return tuple(p for p in self.state.active if self.cfg.physics[p].problem_weight > 0.0)

    def column_weights(self, p: str) -> np.ndarray:
        """Local column weights; zero for frozen physics."""
        if p not in self.solved():
            return np.zeros(self.partition.nlocal)
        return self.cfg.physics[p].column_weight_multiplier / self.sens[p].weights

    def update_data(self) -> None:
        """Recompute the calculated data of every physics (one reduction each)."""
        for p in self.physics:
            self.data[p].val_calc = self.sens[p].forward(self.state.models[p].local_view())

    # ------------------------------------------------------------
    # BUILD_MATRIX
    # ------------------------------------------------------------
    def _grid_file(self) -> str:
        for p in self.physics:
            if self.cfg.physics[p].grid_file:
                return self.cfg.physics[p].grid_file
        raise ConfigError("No model grid file given: set modelGrid.<physics>.file!")

    def read_inputs(self) -> None:
        cfg = self.cfg
        grid_file = self._grid_file()
        self.grid, _ = root_call(self.comm, read_grid, grid_file, cfg.nx, cfg.ny, cfg.nz,
                                 self.out)

        for p in self.physics:
            pc = cfg.physics[p]
            d = DataSet(pc.ndata, name=p)
            d.read(pc.data_file, comm=self.comm, out=self.out and self.ctx.is_root)
            self.data[p] = d
            self.kernels[p] = root_call(self.comm, get_kernel, p, cfg, pc.ndata)

            m_start = root_call(self.comm, model_from_source, pc.starting_model, self.grid,
                                f"{p} starting model")
            self.prior[p] = root_call(self.comm, model_from_source, pc.prior_model, self.grid,
                                      f"{p} prior model")
            self.state.models[p] = DistributedArray.from_full(m_start, self.partition, self.comm)

    def build_matrix(self) -> None:
        """BUILD_MATRIX stage."""
        cfg = self.cfg
        self.read_inputs()

        for p in self.physics:
            pc = cfg.physics[p]
            self.sens[p] = build_sensitivity(
                self.kernels[p], self.data[p], self.grid, self.partition, self.comm,
                compression=cfg.compression, depth_weighting=pc.depth_weighting,
                n_jobs=cfg.n_jobs, out=self.out)
            self.W_full[p] = DistributedArray(
                self.sens[p].weights, self.comm, self.partition).gather_full()

        self._setup_constraints()

        self.state.active = self.active_at(0) if "joint" in cfg.update_pipeline else self.physics
        self.update_data()
        self.write_costs_header()
        self.record_costs()

        if self.ctx.is_root:
            for p in self.physics:
                self.data[p].write(self.ctx, f"{p}_observed_", which="meas")

    def _setup_constraints(self) -> None:
        cfg = self.cfg
        ncells = self.grid.ncells
        m_full = self.full_models()

        if any(cfg.physics[p].gradient_weight > 0.0 for p in self.physics):
            self.grad_ops = gradient_operators(self.grid, "forward")
            for p in self.physics:
                pc = cfg.physics[p]
                self.grad_weights[p] = None
                if cfg.gradient.weight_type == 2 and pc.gradient_weight > 0.0:
                    self.grad_weights[p] = root_call(self.comm, read_vector,
                                                     pc.gradient_weight_file, ncells,
                                                     f"{p} gradient weights")

        if cfg.cross_gradient.weight > 0.0:
            self.cg_ops = gradient_operators(self.grid,
                                             STENCILS[cfg.cross_gradient.derivative_type])

        cl = cfg.clustering
        if any(cfg.physics[p].clustering_weight > 0.0 for p in self.physics):
            mixture = root_call(self.comm, read_mixture, cl.mixture_file, cl.n_clusters,
                                len(self.physics))
            cell_w = None
            if cl.constraints_type == 2:
                cell_w = root_call(self.comm, read_vector, cl.cell_weights_file, ncells,
                                   "clustering cell weights")
            self.clustering = ClusteringState(
                mixture, self.physics,
                {p: cfg.physics[p].clustering_weight for p in self.physics},
                cell_weights=cell_w, log_domain=cl.optimization_type == 2)
            self.clustering.update(m_full)

        if cfg.admm.enabled:
            for p in self.physics:
                pc = cfg.physics[p]
                if pc.admm_weight > 0.0:
                    lower, upper = root_call(self.comm, read_bounds, pc.admm_bounds_file,
                                             ncells, cfg.admm.n_lithologies)
                    self.admm[p] = AdmmState(p, lower, upper, pc.admm_weight, m_full[p])

    # ------------------------------------------------------------
    # MINOR_SOLVE
    # ------------------------------------------------------------
    def constraint_blocks(self, m_full: Dict[str, np.ndarray],
                          cg_weight: float) -> List[ConstraintBlock]:
        cfg = self.cfg
        solved = self.solved()
        blocks = []

        for p in solved:
            pc = cfg.physics[p]
            lam = pc.problem_weight
            d = self.data[p]
            blocks.append(ConstraintBlock(
                name=f"data_{p}", rows={p: (lam * self.sens[p].S).tocsr()},
                rhs=lam * (d.val_meas - d.val_calc), weight=lam))

        for p in solved:
            pc = cfg.physics[p]
            if pc.damping_weight > 0.0:
                blocks.append(model_damping_block(
                    p, m_full[p], self.prior[p], self.W_full[p], pc.damping_weight,
                    self.partition, norm_power=cfg.damping_norm_power))
            if pc.gradient_weight > 0.0 and self.grad_ops is not None:
                blocks.append(gradient_damping_block(
                    p, m_full[p], self.grad_ops, pc.gradient_weight, self.partition,
                    cell_weights=self.grad_weights.get(p)))

        if cg_weight > 0.0 and self.cg_ops is not None:
            p1, p2 = self.physics[:2]
            if p1 in solved and p2 in solved:
                blocks.append(cross_gradient_block(
                    (p1, p2), m_full[p1], m_full[p2], self.cg_ops, cg_weight, self.partition))

        if self.clustering is not None:
            blocks.append(self.clustering.block(m_full, self.partition))

        for p in solved:
            if p in self.admm:
                blocks.append(self.admm[p].block(m_full[p], self.partition))

        return blocks

    def assemble(self, blocks: List[ConstraintBlock]):
        """Local column block of the augmented system and its rhs."""
        solved = self.solved()
        nloc = self.partition.nlocal
        scale = {p: sp.diags(self.column_weights(p)) for p in solved}

        mats, rhs = [], []
        for blk in blocks:
            if not any(p in blk.rows for p in solved):
                continue
            parts = [(blk.rows[p] @ scale[p]) if p in blk.rows
                     else sp.csr_matrix((blk.nrows, nloc)) for p in solved]
            mats.append(sp.hstack(parts, format="csr"))
            rhs.append(blk.rhs)

        A = sp.vstack(mats, format="csr")
        return DistributedOperator(A, self.comm), np.concatenate(rhs)

    def _sub_solve(self, cg_weight: float) -> None:
        cfg = self.cfg
        solved = self.solved()
        m_full = self.full_models()
        blocks = self.constraint_blocks(m_full, cg_weight)
        op, b = self.assemble(blocks)

        res = solve(cfg.solver.method, op, b, niter=cfg.solver.n_minor,
                    min_residual=cfg.solver.min_residual)
        self.state.lsqr_history.append(res.residuals)
        self._print(f"  {cfg.solver.method}: {res.niter} iterations, "
                    f"|r| {res.residuals[0]:.4e} -> {res.residuals[-1]:.4e} ({res.reason})")

        y = res.x
        if cfg.solver.soft_threshold > 0.0:
            y = soft_thresh(y, cfg.solver.soft_threshold)

        nloc = self.partition.nlocal
        for ip, p in enumerate(solved):
            dm = self.column_weights(p) * y[ip * nloc:(ip + 1) * nloc]
            self.state.models[p].local_view()[:] += dm

        self.update_data()

    def minor_solve(self) -> None:
        """MINOR_SOLVE stage."""
        if not self.solved():
            self._print("  all physics frozen, no update")
            return
        cg = self.cfg.cross_gradient
        nsub = cg.n_iter_mow if (self.cg_ops is not None and len(self.solved()) > 1) else 1
        for k in range(nsub):
            weight = self.state.crossgrad_weight * cg.weight_multiplier ** k
            self._sub_solve(weight)

    # ------------------------------------------------------------
    # UPDATE_WEIGHTS
    # ------------------------------------------------------------
    def update_weights(self) -> None:
        """UPDATE_WEIGHTS stage: the configured pipeline, in order."""
        for stage in self.cfg.update_pipeline:
            getattr(self, f"_stage_{stage}")()

    def _stage_joint(self) -> None:
        nxt = self.active_at(self.state.major + 1)
        if nxt != self.state.active:
            self._print(f"  active physics: {', '.join(self.state.active)} -> {', '.join(nxt)}")
        self.state.active = nxt

    def _stage_crossgrad(self) -> None:
        if self.cg_ops is None:
            return
        cg = self.cfg.cross_gradient
        m_full = self.full_models()
        p1, p2 = self.physics[:2]
        t, _, _ = cross_gradient(m_full[p1], m_full[p2], self.cg_ops)
        self.state.crossgrad_norm.append(float(np.linalg.norm(t)))
        self.state.crossgrad_weight *= cg.weight_multiplier ** cg.n_iter_mow

    def _stage_admm(self) -> None:
        if not self.admm:
            return
        m_full = self.full_models()
        for p, st in self.admm.items():
            r = st.update(m_full[p])
            self._print(f"  admm {p}: primal residual {r:.4e}")

    def _stage_clustering(self) -> None:
        if self.clustering is None:
            return
        labels = self.clustering.update(self.full_models())
        self._print(f"  clustering: cells per cluster "
                    f"{np.bincount(labels, minlength=self.clustering.mixture.nclusters)}")

    # ------------------------------------------------------------
    # CHECK_CONVERGENCE
    # ------------------------------------------------------------
    def record_costs(self) -> Dict[str, float]:
        costs = {p: data_cost(self.data[p].val_meas, self.data[p].val_calc) for p in self.physics}
        self.state.costs.append(costs)
        if self.ctx.is_root:
            with open(self.ctx.path("costs.txt"), "a") as f:
                f.write(f"{self.state.major}" + "".join(f" {costs[p]:.10e}" for p in self.physics)
                        + f" {self.state.weighted_cost(costs):.10e}\n")
        return costs

    def write_costs_header(self) -> None:
        if self.ctx.is_root:
            with open(self.ctx.path("costs.txt"), "w") as f:
                f.write("# major " + " ".join(f"cost_{p}" for p in self.physics) + " joint\n")

    def check_convergence(self) -> None:
        """CHECK_CONVERGENCE stage."""
        st = self.state
        st.major += 1
        prev = st.joint_cost()
        costs = self.record_costs()
        self._print(f"major {st.major}: " + ", ".join(f"{p} {c:.6e}" for p, c in costs.items()))

        target = self.cfg.solver.target_misfit
        weighted = [c for p, c in costs.items() if self.cfg.physics[p].problem_weight > 0.0]
        st.converged = target > 0.0 and bool(weighted) and all(c < target for c in weighted)
        st.stalled = not st.joint_cost() < prev

        every = self.cfg.solver.write_model_every
        if every > 0 and st.major % every == 0:
            self.write_models(f"_iter{st.major}")

        if st.converged or st.major >= self.cfg.solver.n_major:
            st.stage = Stage.DONE
        else:
            st.stage = Stage.MINOR_SOLVE

    # ------------------------------------------------------------
    # output
    # ------------------------------------------------------------
    def write_models(self, suffix: str = "_final") -> None:
        m_full = self.full_models()
        if not self.ctx.is_root:
            return
        for p in self.physics:
            write_model(self.ctx.path(f"model{suffix}_{p}.txt"), self.grid, m_full[p],
                        out=self.out)

    def finish(self) -> None:
        st = self.state
        if st.converged:
            st.status = "converged"
        elif st.stalled:
            st.status = "stalled"
        else:
            st.status = "not_converged"

        self.write_models("_final")
        if self.ctx.is_root:
            for p in self.physics:
                self.data[p].write(self.ctx, f"{p}_calc_final_", which="calc")
            with open(self.ctx.path("inversion_status.txt"), "w") as f:
                f.write(f"status {st.status}\n")
                f.write(f"major_iterations {st.major}\n")
                f.write(f"converged {int(st.converged)}\n")
                for p, c in (st.costs[-1] if st.costs else {}).items():
                    f.write(f"cost_{p} {c:.10e}\n")
            with open(self.ctx.path("lsqr_residuals.txt"), "w") as f:
                for hist in st.lsqr_history:
                    f.write(" ".join(f"{r:.6e}" for r in hist) + "\n")
        self._print(f"inversion finished: {st.status} after {st.major} major iterations")

    # ------------------------------------------------------------
    # driver
    # ------------------------------------------------------------
    def forward_only(self) -> Dict[str, np.ndarray]:
        """Data of the starting models without storing the sensitivities."""
        self.read_inputs()
        for p in self.physics:
            m_full = self.state.models[p].gather_full()
            self.data[p].val_calc = calc_data_direct(
                self.kernels[p], self.data[p], self.grid, m_full, self.partition, self.comm,
                n_jobs=self.cfg.n_jobs, out=self.out)
            if self.ctx.is_root:
                self.data[p].write(self.ctx, f"{p}_calc_", which="calc")
        return {p: self.data[p].val_calc for p in self.physics}

    def run(self) -> InversionState:
        st = self.state
        while st.stage is not Stage.DONE:
            if st.stage is Stage.BUILD_MATRIX:
                self.build_matrix()
                st.stage = Stage.MINOR_SOLVE if self.cfg.solver.n_major > 0 else Stage.DONE
            elif st.stage is Stage.MINOR_SOLVE:
                self._print(f"major {st.major + 1}: solving for {', '.join(self.solved())}")
                self.minor_solve()
                st.stage = Stage.UPDATE_WEIGHTS
            elif st.stage is Stage.UPDATE_WEIGHTS:
                self.update_weights()
                st.stage = Stage.CHECK_CONVERGENCE
            elif st.stage is Stage.CHECK_CONVERGENCE:
                self.check_convergence()
        self.finish()
        return st


def run_inversion(cfg: InversionConfig, comm=None, out: bool = True,
                  ctx: Optional[RunContext] = None) -> InversionState:
    """
    Run a joint inversion on this rank.

    Fatal errors abort the whole communicator group before they are
    re-raised.
    """
    comm = SerialComm() if comm is None else comm
    try:
        inv = JointInversion(cfg, comm=comm, ctx=ctx, out=out)
        if cfg.calc_data_without_sensit:
            inv.forward_only()
            inv.write_costs_header()
            inv.record_costs()
            inv.state.stage = Stage.DONE
            inv.finish()
            return inv.state
        return inv.run()
    except Exception as exc:
        comm.abort(exit_code_of(exc))
        raise
