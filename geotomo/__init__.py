"""Distributed model partitioning, array exchange and sensitivity weighting
for capacitance, gravity, magnetic and joint gravity/magnetic tomography.

High-level responsibilities
---------------------------
- Split the model elements across ranks (:mod:`geotomo.parallel.partition`).
- Rebuild globally ordered vectors from per-rank slices
  (:mod:`geotomo.parallel.exchange`).
- Compute normalized damping weights and their reciprocal column weights
  (:mod:`geotomo.inversion.weights`).
"""

from __future__ import annotations

from .config import InversionConfig, ProblemKind, initialize_config, load_config
from .errors import (
    CollectiveAbortedError,
    ConfigurationError,
    GeotomoError,
    NotFoundError,
    NumericalError,
    RemoteRankError,
)
from .inversion import DenseSensitivity, Grid, InversionArrays, WeightEngine
from .parallel import (
    PartitionPlan,
    RemainderPolicy,
    elements_for_rank,
    gather_full_array,
    get_communicator,
    run_ranks,
    total_count,
)

__version__ = "0.1.0"

__all__ = [
    "InversionConfig",
    "ProblemKind",
    "initialize_config",
    "load_config",
    "CollectiveAbortedError",
    "ConfigurationError",
    "GeotomoError",
    "NotFoundError",
    "NumericalError",
    "RemoteRankError",
    "DenseSensitivity",
    "Grid",
    "InversionArrays",
    "WeightEngine",
    "PartitionPlan",
    "RemainderPolicy",
    "elements_for_rank",
    "gather_full_array",
    "get_communicator",
    "run_ranks",
    "total_count",
]
