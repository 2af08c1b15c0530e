#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
config.py
=========

Parfile parsing and the run configuration of a joint inversion.

The Parfile is a flat ``key = value`` list; ``#`` starts a comment and a
value may hold several whitespace separated tokens (``modelGrid.size =
20 20 10``). :func:`read_parfile` returns the raw mapping,
:meth:`InversionConfig.from_parfile` the validated, frozen configuration.

Keys are grouped by physics with the tags ``grav``, ``magn`` and ``ect``,
e.g. ``forward.data.grav.nData`` or ``inversion.modelDamping.magn.weight``.
A physics is active when its ``nData`` is positive.

:class:`RunContext` replaces any module level output state: it carries the
output folder, the communicator and the verbosity, and is handed to every
component that writes files.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .errors import ConfigError

PHYSICS = ("grav", "magn", "ect")

PIPELINE_STAGES = ("joint", "crossgrad", "admm", "clustering")

_DEFAULT_POWER = {"grav": 2.0, "magn": 3.0, "ect": 2.0}
_DEFAULT_DW_TYPE = {"grav": 1, "magn": 1, "ect": 2}


# =============================================================================
# Dataclasses
# =============================================================================


@dataclass(frozen=True)
class DepthWeightingConfig:
    """Depth weighting: 1 power law of depth, 2 sensitivity, 3 integrated sensitivity."""

    type: int = 1
    power: float = 2.0
    z0: float = 0.0


@dataclass(frozen=True)
class ModelSourceConfig:
    """Starting or prior model: type 1 constant value, type 2 from file."""

    type: int = 1
    value: float = 0.0
    file: str = ""


@dataclass(frozen=True)
class PhysicsConfig:
    name: str
    ndata: int = 0
    grid_file: str = ""
    data_file: str = ""
    sensitivity_file: str = ""
    depth_weighting: DepthWeightingConfig = field(default_factory=DepthWeightingConfig)
    starting_model: ModelSourceConfig = field(default_factory=ModelSourceConfig)
    prior_model: ModelSourceConfig = field(default_factory=ModelSourceConfig)
    damping_weight: float = 0.0
    problem_weight: float = 1.0
    column_weight_multiplier: float = 1.0
    n_iter_single: int = 0
    gradient_weight: float = 0.0
    gradient_weight_file: str = ""
    clustering_weight: float = 0.0
    admm_weight: float = 0.0
    admm_bounds_file: str = ""

    @property
    def enabled(self) -> bool:
        return self.ndata > 0


@dataclass(frozen=True)
class MagneticFieldConfig:
    """Ambient field (degrees, nT) and declination of the grid x axis."""

    inclination: float = 90.0
    declination: float = 0.0
    intensity: float = 50000.0
    theta: float = 0.0


@dataclass(frozen=True)
class CompressionConfig:
    """``distance_threshold <= 0`` disables the distance cutoff."""

    distance_threshold: float = 0.0
    rate: float = 1.0


@dataclass(frozen=True)
class SolverConfig:
    method: str = "lsqr"
    n_major: int = 10
    n_minor: int = 100
    min_residual: float = 1.0e-13
    target_misfit: float = 0.0
    soft_threshold: float = 0.0
    write_model_every: int = 0


@dataclass(frozen=True)
class GradientDampingConfig:
    """Gradient damping weight: type 1 global scalar, type 2 local per cell."""

    weight_type: int = 1


@dataclass(frozen=True)
class CrossGradientConfig:
    """Derivative type: 1 forward, 2 central, 3 mixed."""

    weight: float = 0.0
    n_iter_mow: int = 1
    weight_multiplier: float = 1.0
    derivative_type: int = 1


@dataclass(frozen=True)
class ClusteringConfig:
    """Optimization type 1 linear / 2 logarithmic; constraints type 1 global / 2 local."""

    n_clusters: int = 0
    mixture_file: str = ""
    cell_weights_file: str = ""
    optimization_type: int = 1
    constraints_type: int = 1


@dataclass(frozen=True)
class AdmmConfig:
    enabled: bool = False
    n_lithologies: int = 1


@dataclass(frozen=True)
class InversionConfig:
    nx: int
    ny: int
    nz: int
    physics: Dict[str, PhysicsConfig]
    output_folder: str = "output"
    description: str = ""
    mag_field: MagneticFieldConfig = field(default_factory=MagneticFieldConfig)
    compression: CompressionConfig = field(default_factory=CompressionConfig)
    solver: SolverConfig = field(default_factory=SolverConfig)
    damping_norm_power: float = 2.0
    gradient: GradientDampingConfig = field(default_factory=GradientDampingConfig)
    cross_gradient: CrossGradientConfig = field(default_factory=CrossGradientConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    admm: AdmmConfig = field(default_factory=AdmmConfig)
    update_pipeline: Tuple[str, ...] = PIPELINE_STAGES
    calc_data_without_sensit: bool = False
    n_jobs: int = 1

    @property
    def ncells(self) -> int:
        return self.nx * self.ny * self.nz

    @property
    def active_physics(self) -> Tuple[str, ...]:
        return tuple(p for p in PHYSICS if p in self.physics and self.physics[p].enabled)

    @classmethod
    def from_parfile(cls, file_name, out: bool = False) -> "InversionConfig":
        return cls.from_dict(read_parfile(file_name), out=out)

    @classmethod
    def from_dict(cls, pars: Mapping[str, str], out: bool = False) -> "InversionConfig":
        return _build_config(pars, out=out)


@dataclass
class RunContext:
    """
    Everything a component needs to write output.

    Only rank 0 writes; :meth:`path` creates the output folder on first use.
    """

    output_folder: str
    comm: Any = None
    out: bool = True

    @property
    def is_root(self) -> bool:
        return self.comm is None or self.comm.rank == 0

    def path(self, name: str) -> str:
        folder = Path(self.output_folder).expanduser()
        if self.is_root:
            folder.mkdir(parents=True, exist_ok=True)
        return (folder / name).as_posix()


# =============================================================================
# Parsing
# =============================================================================


def read_parfile(file_name) -> Dict[str, str]:
    """Read a ``key = value`` Parfile into a dict of raw strings."""
    p = Path(file_name).expanduser()
    if not p.is_file():
        raise ConfigError(f"read_parfile: Parfile {p} not found!")

    pars: Dict[str, str] = {}
    with open(p, "r") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.split("#", 1)[0].strip()
            if not line:
                continue
            if "=" not in line:
                raise ConfigError(f"read_parfile: line {lineno} of {p} is not 'key = value': {line}")
            key, value = line.split("=", 1)
            pars[key.strip()] = value.strip()
    return pars


def _get(pars: Mapping[str, str], key: str, default: Any, conv: Callable = str,
         required: bool = False) -> Any:
    if key not in pars:
        if required:
            raise ConfigError(f"Missing required Parfile key: {key}")
        return default
    raw = pars[key]
    try:
        if conv is bool:
            return raw.strip().lower() in ("1", "true", "yes", "on")
        return conv(raw)
    except ValueError as exc:
        raise ConfigError(f"Bad value for Parfile key {key}: {raw!r}") from exc


def _nonneg(name: str, value: float) -> float:
    if value < 0.0:
        raise ConfigError(f"{name} must be non-negative, got {value}!")
    return value


def _choice(name: str, value: int, allowed) -> int:
    if value not in allowed:
        raise ConfigError(f"{name} must be one of {tuple(allowed)}, got {value}!")
    return value


def _model_source(pars, kind: str, p: str) -> ModelSourceConfig:
    base = f"inversion.{kind}.{p}"
    src = ModelSourceConfig(
        type=_choice(f"{base}.type", _get(pars, f"{base}.type", 1, int), (1, 2)),
        value=_get(pars, f"{base}.value", 0.0, float),
        file=_get(pars, f"{base}.file", ""),
    )
    if src.type == 2 and not src.file:
        raise ConfigError(f"{base}.type = 2 requires {base}.file!")
    return src


def _physics(pars, p: str) -> PhysicsConfig:
    ndata = _get(pars, f"forward.data.{p}.nData", 0, int)
    if ndata < 0:
        raise ConfigError(f"forward.data.{p}.nData must be non-negative, got {ndata}!")

    dw = DepthWeightingConfig(
        type=_choice(f"forward.depthWeighting.{p}.type",
                     _get(pars, f"forward.depthWeighting.{p}.type", _DEFAULT_DW_TYPE[p], int),
                     (1, 2, 3)),
        power=_get(pars, f"forward.depthWeighting.{p}.power", _DEFAULT_POWER[p], float),
        z0=_get(pars, f"forward.depthWeighting.{p}.Z0", 0.0, float),
    )

    pc = PhysicsConfig(
        name=p,
        ndata=ndata,
        grid_file=_get(pars, f"modelGrid.{p}.file", ""),
        data_file=_get(pars, f"forward.data.{p}.dataValuesFile", "", required=ndata > 0),
        sensitivity_file=_get(pars, f"forward.sensitivity.{p}.file", ""),
        depth_weighting=dw,
        starting_model=_model_source(pars, "startingModel", p),
        prior_model=_model_source(pars, "priorModel", p),
        damping_weight=_nonneg(f"inversion.modelDamping.{p}.weight",
                               _get(pars, f"inversion.modelDamping.{p}.weight", 0.0, float)),
        problem_weight=_nonneg(f"inversion.joint.{p}.problemWeight",
                               _get(pars, f"inversion.joint.{p}.problemWeight", 1.0, float)),
        column_weight_multiplier=_nonneg(
            f"inversion.joint.{p}.columnWeightMultiplier",
            _get(pars, f"inversion.joint.{p}.columnWeightMultiplier", 1.0, float)),
        n_iter_single=_get(pars, f"inversion.joint.{p}.nIterSingle", 0, int),
        gradient_weight=_nonneg(f"inversion.dampingGradient.{p}.weight",
                                _get(pars, f"inversion.dampingGradient.{p}.weight", 0.0, float)),
        gradient_weight_file=_get(pars, f"inversion.dampingGradient.{p}.file", ""),
        clustering_weight=_nonneg(f"inversion.clustering.{p}.weight",
                                  _get(pars, f"inversion.clustering.{p}.weight", 0.0, float)),
        admm_weight=_nonneg(f"inversion.admm.{p}.weight",
                            _get(pars, f"inversion.admm.{p}.weight", 0.0, float)),
        admm_bounds_file=_get(pars, f"inversion.admm.{p}.boundsFile", ""),
    )
    if pc.enabled and p != "ect" and not pc.grid_file:
        raise ConfigError(f"modelGrid.{p}.file is required when forward.data.{p}.nData > 0!")
    if pc.enabled and p == "ect" and not pc.sensitivity_file:
        raise ConfigError("forward.sensitivity.ect.file is required for ECT data!")
    return pc


_KNOWN_PREFIXES = ("global.", "modelGrid.", "forward.", "magnetic.", "inversion.")


def _build_config(pars: Mapping[str, str], out: bool = False) -> InversionConfig:
    size = _get(pars, "modelGrid.size", None, str, required=True).split()
    if len(size) != 3:
        raise ConfigError(f"modelGrid.size needs three integers, got {size}!")
    try:
        nx, ny, nz = (int(s) for s in size)
    except ValueError as exc:
        raise ConfigError(f"modelGrid.size needs three integers, got {size}!") from exc
    if min(nx, ny, nz) < 1:
        raise ConfigError(f"modelGrid.size must be positive, got {size}!")

    physics = {p: _physics(pars, p) for p in PHYSICS}
    if not any(pc.enabled for pc in physics.values()):
        raise ConfigError("No data: set forward.data.<grav|magn|ect>.nData > 0!")

    rate = _get(pars, "forward.matrixCompression.rate", 1.0, float)
    if not 0.0 < rate <= 1.0:
        raise ConfigError(f"forward.matrixCompression.rate must be in (0, 1], got {rate}!")

    solver = SolverConfig(
        method=_get(pars, "inversion.solver", "lsqr").lower(),
        n_major=_get(pars, "inversion.nMajorIterations", 10, int),
        n_minor=_get(pars, "inversion.nMinorIterations", 100, int),
        min_residual=_nonneg("inversion.minResidual",
                             _get(pars, "inversion.minResidual", 1.0e-13, float)),
        target_misfit=_nonneg("inversion.targetMisfit",
                              _get(pars, "inversion.targetMisfit", 0.0, float)),
        soft_threshold=_nonneg("inversion.softThresholdL1",
                               _get(pars, "inversion.softThresholdL1", 0.0, float)),
        write_model_every=_get(pars, "inversion.writeModelEveryNiter", 0, int),
    )
    if solver.method not in ("lsqr", "cgls"):
        raise ConfigError(f"inversion.solver must be 'lsqr' or 'cgls', got {solver.method}!")
    if solver.n_major < 0 or solver.n_minor < 1:
        raise ConfigError("inversion.nMajorIterations >= 0 and inversion.nMinorIterations >= 1 required!")

    pipeline = tuple(_get(pars, "inversion.updatePipeline", " ".join(PIPELINE_STAGES)).split())
    for stage in pipeline:
        if stage not in PIPELINE_STAGES:
            raise ConfigError(f"inversion.updatePipeline: unknown stage {stage}, use {PIPELINE_STAGES}!")

    cfg = InversionConfig(
        nx=nx, ny=ny, nz=nz,
        physics=physics,
        output_folder=_get(pars, "global.outputFolderPath", "output"),
        description=_get(pars, "global.description", ""),
        mag_field=MagneticFieldConfig(
            inclination=_get(pars, "magnetic.field.inclination", 90.0, float),
            declination=_get(pars, "magnetic.field.declination", 0.0, float),
            intensity=_get(pars, "magnetic.field.intensity", 50000.0, float),
            theta=_get(pars, "magnetic.field.theta", 0.0, float),
        ),
        compression=CompressionConfig(
            distance_threshold=_get(pars, "forward.matrixCompression.distanceThreshold", 0.0, float),
            rate=rate,
        ),
        solver=solver,
        damping_norm_power=_get(pars, "inversion.modelDamping.normPower", 2.0, float),
        gradient=GradientDampingConfig(
            weight_type=_choice("inversion.dampingGradient.weightType",
                                _get(pars, "inversion.dampingGradient.weightType", 1, int), (1, 2)),
        ),
        cross_gradient=CrossGradientConfig(
            weight=_nonneg("inversion.crossGradient.weight",
                           _get(pars, "inversion.crossGradient.weight", 0.0, float)),
            n_iter_mow=max(1, _get(pars, "inversion.crossGradient.nIterMethodOfWeight", 1, int)),
            weight_multiplier=_nonneg(
                "inversion.crossGradient.weightMultiplier",
                _get(pars, "inversion.crossGradient.weightMultiplier", 1.0, float)),
            derivative_type=_choice("inversion.crossGradient.derivativeType",
                                    _get(pars, "inversion.crossGradient.derivativeType", 1, int),
                                    (1, 2, 3)),
        ),
        clustering=ClusteringConfig(
            n_clusters=_get(pars, "inversion.clustering.nClusters", 0, int),
            mixture_file=_get(pars, "inversion.clustering.mixtureFile", ""),
            cell_weights_file=_get(pars, "inversion.clustering.cellWeightsFile", ""),
            optimization_type=_choice("inversion.clustering.optimizationType",
                                      _get(pars, "inversion.clustering.optimizationType", 1, int),
                                      (1, 2)),
            constraints_type=_choice("inversion.clustering.constraintsType",
                                     _get(pars, "inversion.clustering.constraintsType", 1, int),
                                     (1, 2)),
        ),
        admm=AdmmConfig(
            enabled=_get(pars, "inversion.admm.enableADMM", False, bool),
            n_lithologies=_get(pars, "inversion.admm.nLithologies", 1, int),
        ),
        update_pipeline=pipeline,
        calc_data_without_sensit=_get(pars, "forward.calcDataWithoutSensit", False, bool),
        n_jobs=_get(pars, "forward.nJobs", 1, int),
    )

    _check_consistency(cfg)

    if out:
        for key in pars:
            if not key.startswith(_KNOWN_PREFIXES):
                print(f"read_parfile: unknown key {key} ignored.")

    return cfg


def _check_consistency(cfg: InversionConfig) -> None:
    if cfg.gradient.weight_type == 2:
        for p in cfg.active_physics:
            pc = cfg.physics[p]
            if pc.gradient_weight > 0.0 and not pc.gradient_weight_file:
                raise ConfigError(f"Local gradient damping needs inversion.dampingGradient.{p}.file!")

    if any(cfg.physics[p].clustering_weight > 0.0 for p in cfg.active_physics):
        if cfg.clustering.n_clusters < 1 or not cfg.clustering.mixture_file:
            raise ConfigError("Clustering needs inversion.clustering.nClusters and mixtureFile!")
        if cfg.clustering.constraints_type == 2 and not cfg.clustering.cell_weights_file:
            raise ConfigError("Local clustering constraints need inversion.clustering.cellWeightsFile!")

    if cfg.admm.enabled:
        if cfg.admm.n_lithologies < 1:
            raise ConfigError("inversion.admm.nLithologies must be >= 1!")
        for p in cfg.active_physics:
            pc = cfg.physics[p]
            if pc.admm_weight > 0.0 and not pc.admm_bounds_file:
                raise ConfigError(f"ADMM needs inversion.admm.{p}.boundsFile!")

    if cfg.cross_gradient.weight > 0.0 and len(cfg.active_physics) < 2:
        raise ConfigError("Cross-gradient coupling needs two active physics!")


def describe(cfg: InversionConfig, out: bool = True) -> Optional[str]:
    """Short human-readable summary of a configuration."""
    lines = [
        f"grid: {cfg.nx} x {cfg.ny} x {cfg.nz} = {cfg.ncells} cells",
        f"physics: {', '.join(cfg.active_physics)}",
        f"solver: {cfg.solver.method}, major {cfg.solver.n_major}, minor {cfg.solver.n_minor}, "
        f"minResidual {cfg.solver.min_residual:g}",
        f"compression: distance {cfg.compression.distance_threshold:g}, rate {cfg.compression.rate:g}",
        f"pipeline: {' '.join(cfg.update_pipeline)}",
    ]
    for p in cfg.active_physics:
        pc = cfg.physics[p]
        lines.append(
            f"{p}: ndata {pc.ndata}, damping {pc.damping_weight:g}, problem weight "
            f"{pc.problem_weight:g}, column multiplier {pc.column_weight_multiplier:g}")
    text = "\n".join(lines)
    if out:
        print(text)
    return text
