"""Reconstruct globally ordered vectors from ragged per-rank slices.

Rank order is global index order: rank 0's elements come first, then rank 1's,
and so on. Every function here is a collective and must be called by all
ranks in the same order.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import torch
from torch import Tensor

from geotomo.errors import ConfigurationError
from geotomo.parallel.comm import Communicator, displacements, raise_if_any_failed

logger = logging.getLogger("geotomo.exchange")


def counts_on_all_ranks(local_count: int, comm: Communicator) -> List[int]:
    """Element count of every rank, in rank order, identical on all ranks."""
    return [int(c) for c in comm.allgather(int(local_count))]


def total_count(local_count: int, comm: Communicator) -> int:
    """Sum of all ranks' local counts (all-reduce sum)."""
    return int(comm.allreduce_sum(int(local_count)))


def _as_vector(values, dtype: Optional[torch.dtype] = None) -> Tensor:
    t = torch.as_tensor(values)
    if dtype is not None:
        t = t.to(dtype)
    return t.reshape(-1)


def gather_full_array(
    local_values,
    local_count: int,
    comm: Communicator,
    in_place: bool = False,
) -> Tensor:
    """
    Assemble the full, globally ordered array on every rank.

    With ``in_place=False`` ``local_values`` holds exactly this rank's
    ``local_count`` values and a new global tensor is returned.

    With ``in_place=True`` ``local_values`` is the global-sized buffer with this
    rank's slice already at its global offset; the other ranks' slices are
    written into it and the same buffer is returned. The own slice is not
    copied.

    A buffer whose size disagrees with the exchanged counts on any rank raises
    :class:`ConfigurationError` on every rank.
    """
    local_count = int(local_count)
    counts = counts_on_all_ranks(local_count, comm)
    total = sum(counts)

    error = None
    if in_place:
        buffer = local_values
        expected = total
        if not isinstance(buffer, Tensor):
            error = ConfigurationError("in-place gather needs a torch.Tensor buffer", rank=comm.rank)
    else:
        buffer = _as_vector(local_values)
        expected = local_count

    if error is None and (buffer.dim() != 1 or int(buffer.numel()) != expected):
        error = ConfigurationError(
            "buffer size does not match the partition "
            f"({'global' if in_place else 'local'} size expected {expected})",
            rank=comm.rank,
            value=tuple(buffer.shape),
        )
    raise_if_any_failed(comm, error)

    if in_place:
        comm.allgatherv_inplace(buffer, counts)
        out = buffer
    else:
        out = comm.allgatherv(buffer, counts)

    if comm.rank == 0:
        logger.debug("gathered %d elements from %d ranks (in_place=%s)", total, comm.size, in_place)
    return out


def place_local_slice(local_values, comm: Communicator, counts: Optional[List[int]] = None) -> Tensor:
    """
    Allocate a global-sized buffer and copy this rank's slice to its offset.

    Prepares the input of ``gather_full_array(..., in_place=True)``.
    Collective when ``counts`` is not given.
    """
    local = _as_vector(local_values)
    if counts is None:
        counts = counts_on_all_ranks(int(local.numel()), comm)
    start = displacements(counts)[comm.rank]
    buffer = torch.zeros(sum(counts), dtype=local.dtype, device=local.device)
    buffer[start:start + int(local.numel())] = local
    return buffer


def broadcast_array(values, comm: Communicator, root: int = 0) -> Tensor:
    """Every rank receives ``root``'s array; other ranks' ``values`` are ignored."""
    payload = _as_vector(values).detach().cpu() if comm.rank == root else None
    out = comm.bcast(payload, root=root)
    return out.clone()


def scatter_full_array(full_values, local_count: int, comm: Communicator, root: int = 0) -> Tensor:
    """
    Inverse of :func:`gather_full_array`: each rank keeps its own slice of
    ``root``'s global array.
    """
    counts = counts_on_all_ranks(int(local_count), comm)
    full = broadcast_array(full_values, comm, root=root)

    error = None
    if int(full.numel()) != sum(counts):
        error = ConfigurationError(
            "scattered array length does not match the partition",
            rank=comm.rank,
            value=(int(full.numel()), sum(counts)),
        )
    raise_if_any_failed(comm, error)

    start = displacements(counts)[comm.rank]
    return full[start:start + counts[comm.rank]].clone()


__all__ = [
    "counts_on_all_ranks",
    "total_count",
    "gather_full_array",
    "place_local_slice",
    "broadcast_array",
    "scatter_full_array",
]
