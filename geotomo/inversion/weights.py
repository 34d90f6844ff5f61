"""Depth / sensitivity weights for the regularized inversion.

The damping weight ``W`` scales the model-damping term; the column weight
``W^{-1}`` rescales the sensitivity-matrix columns. The solver then works on

    | S W^{-1} | d(Wm)
    |    I     |

instead of ``| S ; W | dm``, so both weights are reciprocal views of one scale
factor.

Strategies (``depth_weighting_type``)
-------------------------------------
1  empirical depth law ``(z + Z0) ** (-beta / 2)`` with ``z`` the depth of the
   cell centre (Li & Oldenburg).
2  square root of the sensitivity to the data point located above the cell.
   Not supported: selecting it raises unless the engine is built with
   ``allow_unsupported=True``.
3  square root of the integrated sensitivity ``||S[i, :]||_2``
   (Li & Oldenburg 2000; Portniaguine & Zhdanov 2002).

After any strategy the weights are divided by their global maximum, so the
largest weight over all ranks is 1.
"""

from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import torch
from torch import Tensor

from geotomo.config.params import GravMagBase, InversionConfig
from geotomo.errors import ConfigurationError, GeotomoError, NotFoundError, NumericalError
from geotomo.inversion.arrays import InversionArrays
from geotomo.inversion.grid import Grid
from geotomo.inversion.sensitivity import SensitivityMatrix
from geotomo.parallel.comm import Communicator, SerialCommunicator, raise_if_any_failed
from geotomo.utils.logging import JsonlLogger

logger = logging.getLogger("geotomo.weights")


class DepthWeightingType(enum.IntEnum):
    EMPIRICAL = 1
    SENSITIVITY_BELOW_DATA = 2
    INTEGRATED_SENSITIVITY = 3

    @classmethod
    def parse(cls, value: int) -> "DepthWeightingType":
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            raise ConfigurationError("unknown depth weighting type", value=value) from None


@dataclass(frozen=True)
class WeightingParameters:
    depth_weighting_type: int = 1
    beta: float = 0.0
    Z0: float = 0.0

    @classmethod
    def from_params(cls, params) -> "WeightingParameters":
        """Accept a :class:`GravMagBase` or any record with a ``base`` of that type."""
        base = getattr(params, "base", params)
        if not isinstance(base, GravMagBase):
            raise ConfigurationError(f"no depth-weighting parameters in {type(params).__name__}")
        return cls(base.depth_weighting_type, base.beta, base.Z0)


# ---------------------------------------------------------------------------
# Strategies (rank-local, no communication)
# ---------------------------------------------------------------------------


def depth_weight_empirical(depths: Tensor, beta: float, Z0: float, rank: int = 0) -> Tensor:
    """``(depth + Z0) ** (-beta / 2)`` for every element; ``depth + Z0`` must be > 0."""
    shifted = depths + Z0
    nonfinite = torch.nonzero(~torch.isfinite(shifted))
    if nonfinite.numel() > 0:
        i = int(nonfinite[0])
        raise NumericalError(
            "non-finite depth in empirical depth weighting", rank=rank, index=i, value=float(depths[i])
        )
    bad = torch.nonzero(shifted <= 0)
    if bad.numel() > 0:
        i = int(bad[0])
        raise NumericalError(
            f"non-positive depth in empirical depth weighting (depth={float(depths[i])!r}, Z0={Z0!r})",
            rank=rank,
            index=i,
            value=float(shifted[i]),
        )
    return torch.pow(shifted, -beta / 2.0)


def depth_weight_below_data(
    grid: Grid,
    xdata: Tensor,
    ydata: Tensor,
    sensitivity: SensitivityMatrix,
    rank: int = 0,
) -> Tensor:
    """
    ``sqrt(S[p, d])`` with ``d`` the first data point inside the footprint of
    cell ``p``. Data points are scanned in order; with overlapping footprints
    the first match wins.
    """
    if sensitivity.nelements < grid.nelements:
        raise ConfigurationError(
            "sensitivity matrix has fewer rows than local elements",
            rank=rank,
            value=(sensitivity.nelements, grid.nelements),
        )
    if int(xdata.numel()) != sensitivity.ndata or int(ydata.numel()) != sensitivity.ndata:
        raise ConfigurationError(
            "data positions do not match the sensitivity columns",
            rank=rank,
            value=(int(xdata.numel()), int(ydata.numel()), sensitivity.ndata),
        )
    out = torch.empty(grid.nelements, dtype=grid.X1.dtype)
    for p in range(grid.nelements):
        x1, x2, y1, y2 = grid.footprint(p)
        inside = (xdata >= x1) & (xdata <= x2) & (ydata >= y1) & (ydata <= y2)
        hits = torch.nonzero(inside)
        if hits.numel() == 0:
            raise NotFoundError("no data point above the element", rank=rank, index=p)
        idata = int(hits[0])
        s = sensitivity.value(p, idata)
        if s < 0:
            raise NumericalError(
                f"negative sensitivity to data point {idata}, cannot take its square root",
                rank=rank,
                index=p,
                value=s,
            )
        out[p] = math.sqrt(s)
    return out


def depth_weight_integrated(sensitivity: SensitivityMatrix, dtype: torch.dtype = torch.float64) -> Tensor:
    """``sqrt(||S[i, :]||_2)`` for every local element."""
    out = torch.empty(sensitivity.nelements, dtype=dtype)
    for i in range(sensitivity.nelements):
        column = sensitivity.get_column(i)
        out[i] = torch.sqrt(torch.linalg.vector_norm(column.to(dtype)))
    return out


# ---------------------------------------------------------------------------
# Collective steps
# ---------------------------------------------------------------------------


def normalize_depth_weight(weights: Tensor, comm: Optional[Communicator] = None) -> float:
    """
    Divide ``weights`` in place by the global maximum; return that maximum.

    Collective (all-reduce max) when more than one rank runs.
    """
    comm = comm or SerialCommunicator()
    norm = float(weights.max()) if weights.numel() > 0 else 0.0
    if comm.size > 1:
        norm = float(comm.allreduce_max(norm))
    if not math.isfinite(norm):
        raise NumericalError("non-finite damping weight norm", rank=comm.rank, value=norm)
    if norm == 0.0:
        raise NumericalError("zero damping weight norm", rank=comm.rank, value=norm)
    weights.div_(norm)
    return norm


def _check_finite(weights: Tensor, rank: int) -> None:
    bad = torch.nonzero(~torch.isfinite(weights))
    if bad.numel() > 0:
        i = int(bad[0])
        raise NumericalError("non-finite depth weight", rank=rank, index=i, value=float(weights[i]))


def column_weight_from_damping(damping: Tensor, out: Tensor, rank: int = 0) -> Tensor:
    """``out = 1 / damping``; an exact zero damping weight is fatal."""
    zeros = torch.nonzero(damping == 0)
    if zeros.numel() > 0:
        raise NumericalError("zero damping weight", rank=rank, index=int(zeros[0]), value=0.0)
    torch.reciprocal(damping, out=out)
    return out


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class WeightEngine:
    """
    Computes damping and column weights for one rank.

    ``calculate`` is collective: every rank must call it with the same
    weighting parameters. A failure detected on one rank is agreed on before
    the normalization all-reduce, so every rank raises instead of blocking.
    """

    def __init__(
        self,
        comm: Optional[Communicator] = None,
        logger: Optional[JsonlLogger] = None,
        allow_unsupported: bool = False,
    ):
        self.comm = comm or SerialCommunicator()
        self.jsonl = logger
        self.allow_unsupported = allow_unsupported

    def _local_weights(
        self,
        kind: DepthWeightingType,
        params: WeightingParameters,
        arrays: InversionArrays,
        grid: Optional[Grid],
        sensitivity: Optional[SensitivityMatrix],
        xdata: Optional[Tensor],
        ydata: Optional[Tensor],
    ) -> Tensor:
        rank = self.comm.rank
        if kind is DepthWeightingType.EMPIRICAL:
            if grid is None:
                raise ConfigurationError("empirical depth weighting needs the grid", rank=rank)
            return depth_weight_empirical(grid.vertical_centers(), params.beta, params.Z0, rank=rank)

        if kind is DepthWeightingType.SENSITIVITY_BELOW_DATA:
            if grid is None or sensitivity is None or xdata is None or ydata is None:
                raise ConfigurationError(
                    "sensitivity-below-data weighting needs grid, sensitivity and data positions",
                    rank=rank,
                )
            return depth_weight_below_data(
                grid, torch.as_tensor(xdata), torch.as_tensor(ydata), sensitivity, rank=rank
            )

        if sensitivity is None:
            raise ConfigurationError("integrated-sensitivity weighting needs the sensitivity", rank=rank)
        return depth_weight_integrated(sensitivity, dtype=arrays.damping_weight.dtype)

    def calculate(
        self,
        arrays: InversionArrays,
        params,
        grid: Optional[Grid] = None,
        sensitivity: Optional[SensitivityMatrix] = None,
        xdata: Optional[Tensor] = None,
        ydata: Optional[Tensor] = None,
    ) -> InversionArrays:
        """Fill ``arrays.damping_weight`` and ``arrays.column_weight``."""
        wp = params if isinstance(params, WeightingParameters) else WeightingParameters.from_params(params)
        kind = DepthWeightingType.parse(wp.depth_weighting_type)
        if kind is DepthWeightingType.SENSITIVITY_BELOW_DATA and not self.allow_unsupported:
            raise ConfigurationError("depth weighting type 2 is not supported", value=int(kind))

        if self.jsonl is not None:
            self.jsonl.phase_start("depth_weights", rank=self.comm.rank, type=int(kind))

        error: Optional[GeotomoError] = None
        try:
            local = self._local_weights(kind, wp, arrays, grid, sensitivity, xdata, ydata)
            if int(local.numel()) != arrays.nelements:
                raise ConfigurationError(
                    "weight count does not match the local element count",
                    rank=self.comm.rank,
                    value=(int(local.numel()), arrays.nelements),
                )
            _check_finite(local, self.comm.rank)
            arrays.damping_weight.copy_(local)
        except GeotomoError as exc:
            error = exc
        raise_if_any_failed(self.comm, error)

        norm = normalize_depth_weight(arrays.damping_weight, self.comm)

        error = None
        try:
            column_weight_from_damping(arrays.damping_weight, arrays.column_weight, rank=self.comm.rank)
        except GeotomoError as exc:
            error = exc
        raise_if_any_failed(self.comm, error)

        if self.comm.rank == 0:
            logger.info("depth weights: type=%d norm=%.6e", int(kind), norm)
        if self.jsonl is not None:
            dw = arrays.damping_weight
            self.jsonl.phase_end(
                "depth_weights",
                rank=self.comm.rank,
                type=int(kind),
                norm=norm,
                nelements=arrays.nelements,
                damping_min=float(dw.min()) if dw.numel() else None,
                damping_max=float(dw.max()) if dw.numel() else None,
            )
        return arrays

    def calculate_for_problems(
        self,
        config: InversionConfig,
        arrays: Sequence[InversionArrays],
        grid: Optional[Grid] = None,
        sensitivities: Optional[Sequence[Optional[SensitivityMatrix]]] = None,
        data_xy: Optional[Sequence[Tuple[Tensor, Tensor]]] = None,
    ) -> List[InversionArrays]:
        """
        Run :meth:`calculate` once per gravity/magnetic problem of ``config``
        (gravity first for a joint inversion), each with its own beta / Z0.
        """
        problems = config.problem_parameters()
        if len(arrays) != len(problems):
            raise ConfigurationError(
                f"{config.kind.title} needs {len(problems)} array set(s)", value=len(arrays)
            )
        out = []
        for k, params in enumerate(problems):
            sens = sensitivities[k] if sensitivities is not None else None
            xdata, ydata = data_xy[k] if data_xy is not None else (None, None)
            out.append(self.calculate(arrays[k], params, grid, sens, xdata, ydata))
        return out


__all__ = [
    "DepthWeightingType",
    "WeightingParameters",
    "WeightEngine",
    "depth_weight_empirical",
    "depth_weight_below_data",
    "depth_weight_integrated",
    "normalize_depth_weight",
    "column_weight_from_damping",
]
