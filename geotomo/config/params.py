from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from typing import Literal, Optional, Tuple

import torch

from geotomo.errors import ConfigurationError
from geotomo.parallel.partition import RemainderPolicy

# -------------------------
# Problem kinds
# -------------------------


class ProblemKind(str, enum.Enum):
    """Problem family; the value is the command-line flag."""

    ECT = "-e"
    GRAVITY = "-g"
    MAGNETISM = "-m"
    JOINT = "-j"

    @classmethod
    def from_flag(cls, flag: Optional[str]) -> "ProblemKind":
        """Map ``-e/-g/-m/-j`` to a kind. ``None`` selects ECT."""
        if flag is None:
            return cls.ECT
        try:
            return cls(flag.strip())
        except ValueError:
            raise ConfigurationError(f"unknown problem type flag {flag!r}") from None

    @property
    def title(self) -> str:
        return {
            ProblemKind.ECT: "ECT",
            ProblemKind.GRAVITY: "GRAVITY",
            ProblemKind.MAGNETISM: "MAGNETISM",
            ProblemKind.JOINT: "JOINT GRAV/MAG",
        }[self]

    @property
    def partition_policy(self) -> RemainderPolicy:
        if self is ProblemKind.ECT:
            return RemainderPolicy.LAST_RANK
        return RemainderPolicy.FIRST_RANKS

    @property
    def uses_gravity(self) -> bool:
        return self in (ProblemKind.GRAVITY, ProblemKind.JOINT)

    @property
    def uses_magnetism(self) -> bool:
        return self in (ProblemKind.MAGNETISM, ProblemKind.JOINT)


PrecisionKind = Literal["single", "double"]

DEPTH_WEIGHTING_TYPES = (1, 2, 3)


def precision_dtype(precision: str) -> torch.dtype:
    if precision == "double":
        return torch.float64
    if precision == "single":
        return torch.float32
    raise ConfigurationError("precision must be 'single' or 'double'", value=precision)


def _non_negative(name: str, value: int) -> None:
    if int(value) < 0:
        raise ConfigurationError(f"{name} must be non-negative", value=value)


def _finite(name: str, value: float) -> None:
    if not math.isfinite(float(value)):
        raise ConfigurationError(f"{name} must be finite", value=value)


# -------------------------
# Gravity / magnetism
# -------------------------


@dataclass(frozen=True)
class GravMagBase:
    """Fields shared by the gravity and magnetic problems."""

    nx: int = 0
    ny: int = 0
    nz: int = 0
    ndata: int = 0
    depth_weighting_type: int = 1
    beta: float = 0.0
    Z0: float = 0.0

    # model files: (grid, prior, starting)
    model_files: Tuple[str, str, str] = ("", "", "")
    data_grid_file: str = ""
    data_file: str = ""
    calc_data_directly: int = 0

    prior_model_type: int = 1
    number_prior_models: int = 1
    prior_model_val: float = 0.0
    start_model_type: int = 1
    start_model_val: float = 0.0

    distance_threshold: float = 0.0
    compression_rate: float = 0.0

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        for name in ("nx", "ny", "nz", "ndata"):
            _non_negative(name, getattr(self, name))
        if self.depth_weighting_type not in DEPTH_WEIGHTING_TYPES:
            raise ConfigurationError(
                "unknown depth weighting type", value=self.depth_weighting_type
            )
        _finite("beta", self.beta)
        _finite("Z0", self.Z0)
        if not 0.0 <= self.compression_rate <= 1.0:
            raise ConfigurationError("compression_rate must lie in [0, 1]", value=self.compression_rate)

    @property
    def nelements_total(self) -> int:
        return self.nx * self.ny * self.nz


@dataclass(frozen=True)
class GravityParameters:
    base: GravMagBase = field(default_factory=GravMagBase)
    ncomponents: int = 1

    name = "gravity"


@dataclass(frozen=True)
class MagneticParameters:
    base: GravMagBase = field(default_factory=GravMagBase)
    ncomponents: int = 1

    # magnetisation inclination / declination, field inclination / declination
    mi: float = 0.0
    md: float = 0.0
    fi: float = 0.0
    fd: float = 0.0
    intensity: float = 0.0
    theta: float = 0.0

    name = "magnetic"


# -------------------------
# ECT
# -------------------------


@dataclass(frozen=True)
class ECTParameters:
    """Electrical capacitance tomography: cylindrical grid and sensor."""

    nr: int = 0
    ntheta: int = 0
    nz: int = 0

    nel: int = 0
    nrings: int = 1
    ndata: int = 0
    kguards: int = 0
    ifixed_elecgeo: int = 0
    irefine: int = 0

    radiusin: float = 0.0
    radiusout: float = 0.0
    radiusoutout: float = 0.0
    heicyl: float = 0.0
    space_elec_guards: float = 0.0
    space_electrodes: float = 0.0

    num_bubbles: int = 0
    filename_bubbles: str = ""
    permit0: float = 1.0
    permit_air: float = 1.0
    permit_isolated_tube: float = 1.0
    permit_oil: float = 1.0

    iprecond: int = 0
    omega1: float = 1.0
    itypenorm: int = 1
    itmax: int = 1000
    output_frequency: int = 100
    tol: float = 1.0e-12

    def __post_init__(self) -> None:
        # Parfile conventions: zero means "same as nr" / "a quarter of nz".
        if self.ntheta == 0:
            object.__setattr__(self, "ntheta", self.nr)
        if self.nz == 0:
            object.__setattr__(self, "nz", self.nr)
        if self.kguards == 0:
            object.__setattr__(self, "kguards", self.nz // 4)
        self.validate()

    def validate(self) -> None:
        for name in ("nr", "ntheta", "nz", "nel", "kguards", "ndata"):
            _non_negative(name, getattr(self, name))
        if self.nrings < 1:
            raise ConfigurationError("nrings must be >= 1", value=self.nrings)
        if self.itypenorm not in (1, 2):
            raise ConfigurationError(
                "itypenorm must be 1 (L2 norm) or 2 (max norm)", value=self.itypenorm
            )
        if self.nel > 0:
            per_ring = self.nel // self.nrings
            if per_ring == 0 or self.nel % self.nrings != 0 or self.ntheta % per_ring != 0:
                raise ConfigurationError(
                    "ntheta must be a multiple of the number of electrodes per ring",
                    value=(self.ntheta, self.nel, self.nrings),
                )

    @property
    def nelements_total(self) -> int:
        return self.nr * self.ntheta * (self.nz + 1)


# -------------------------
# Inversion
# -------------------------


@dataclass(frozen=True)
class InversionParameters:
    ninversions: int = 1
    niter: int = 100
    rmin: float = 1.0e-13
    method: int = 1
    gamma: float = 0.0

    alpha: Tuple[float, float] = (1.0, 1.0)
    norm_power: float = 2.0

    problem_weight: Tuple[float, float] = (1.0, 1.0)
    column_weight_multiplier: Tuple[float, float] = (1.0, 1.0)
    niter_single: Tuple[int, int] = (0, 0)

    damp_grad_weight_type: int = 1
    damp_grad_beta: Tuple[float, float] = (0.0, 0.0)

    cross_grad_weight: float = 0.0
    method_of_weights_niter: int = 0
    derivative_type: int = 1

    admm_type: int = 0
    nlithos: int = 0
    rho_admm: Tuple[float, float] = (0.0, 0.0)

    def __post_init__(self) -> None:
        if self.ninversions < 0 or self.niter < 0:
            raise ConfigurationError("ninversions and niter must be non-negative")
        if any(w < 0 for w in self.problem_weight):
            raise ConfigurationError("problem weights must be non-negative", value=self.problem_weight)


# -------------------------
# Aggregate
# -------------------------


@dataclass(frozen=True)
class InversionConfig:
    """
    Immutable per-run configuration, identical on every rank except for the
    rank-local partition fields (``nelements``, ``nz_local``).
    """

    kind: ProblemKind
    inversion: InversionParameters
    ect: Optional[ECTParameters] = None
    gravity: Optional[GravityParameters] = None
    magnetic: Optional[MagneticParameters] = None
    path_output: str = "output"
    precision: PrecisionKind = "double"

    # partition, filled by geotomo.config.loader.derive_partition
    rank: int = 0
    nbproc: int = 1
    nelements_total: int = 0
    nelements: int = 0
    nx: int = 0
    ny: int = 0
    nz_local: int = 0
    ndata: Tuple[int, int] = (0, 0)

    def __post_init__(self) -> None:
        precision_dtype(self.precision)
        if self.kind is ProblemKind.ECT and self.ect is None:
            raise ConfigurationError("ECT problem needs ECT parameters")
        if self.kind.uses_gravity and self.gravity is None:
            raise ConfigurationError(f"{self.kind.title} problem needs gravity parameters")
        if self.kind.uses_magnetism and self.magnetic is None:
            raise ConfigurationError(f"{self.kind.title} problem needs magnetic parameters")

    @property
    def dtype(self) -> torch.dtype:
        return precision_dtype(self.precision)

    @property
    def partition_policy(self) -> RemainderPolicy:
        return self.kind.partition_policy

    def problem_parameters(self) -> Tuple[object, ...]:
        """Gravity and/or magnetic parameter records in use (joint order: grav, mag)."""
        out = []
        if self.kind.uses_gravity:
            out.append(self.gravity)
        if self.kind.uses_magnetism:
            out.append(self.magnetic)
        return tuple(out)


__all__ = [
    "ProblemKind",
    "PrecisionKind",
    "DEPTH_WEIGHTING_TYPES",
    "precision_dtype",
    "GravMagBase",
    "GravityParameters",
    "MagneticParameters",
    "ECTParameters",
    "InversionParameters",
    "InversionConfig",
]
