"""Rank partitioning, collective communication and distributed array exchange."""

from __future__ import annotations

from .comm import (
    Communicator,
    MpiCommunicator,
    SerialCommunicator,
    displacements,
    fail_fast,
    get_communicator,
    raise_if_any_failed,
)
from .exchange import (
    broadcast_array,
    counts_on_all_ranks,
    gather_full_array,
    place_local_slice,
    scatter_full_array,
    total_count,
)
from .local import LocalCommGroup, LocalCommunicator, run_ranks
from .partition import (
    PartitionPlan,
    RemainderPolicy,
    check_nz_divisible,
    ect_layers_for_rank,
    elements_for_rank,
)

__all__ = [
    "Communicator",
    "MpiCommunicator",
    "SerialCommunicator",
    "LocalCommGroup",
    "LocalCommunicator",
    "run_ranks",
    "displacements",
    "fail_fast",
    "get_communicator",
    "raise_if_any_failed",
    "broadcast_array",
    "counts_on_all_ranks",
    "gather_full_array",
    "place_local_slice",
    "scatter_full_array",
    "total_count",
    "PartitionPlan",
    "RemainderPolicy",
    "check_nz_divisible",
    "ect_layers_for_rank",
    "elements_for_rank",
]
