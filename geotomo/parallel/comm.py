"""Message-passing interface used by the partition / exchange / weighting core.

All cross-rank coordination in :mod:`geotomo` goes through a
:class:`Communicator`. It exposes only blocking collectives:

- ``bcast``           broadcast a Python object from a root rank
- ``allreduce_sum``   global sum of a scalar
- ``allreduce_max``   global maximum of a scalar
- ``allgather``       one Python object per rank, in rank order
- ``allgatherv``      variable-length tensor concatenation, in rank order

plus ``barrier`` and ``abort``. Every collective returns the same logical
result on every rank, or the run is aborted.

Backends
--------
``SerialCommunicator``
    nbproc == 1. Collectives are identities and never communicate.
``MpiCommunicator``
    ``mpi4py`` on ``COMM_WORLD``. ``mpi4py`` is optional: the package imports
    without it and :func:`get_communicator` falls back to serial.
``LocalCommunicator`` (see :mod:`geotomo.parallel.local`)
    In-process fake used by the test-suite.
"""

from __future__ import annotations

import contextlib
import logging
from typing import Any, Iterator, List, Optional, Sequence

import numpy as np
import torch
from torch import Tensor

from geotomo.errors import GeotomoError, RemoteRankError

try:
    from mpi4py import MPI  # type: ignore
except Exception:  # pragma: no cover
    MPI = None  # type: ignore


logger = logging.getLogger("geotomo.comm")


def displacements(counts: Sequence[int]) -> List[int]:
    """Exclusive prefix sum of ``counts``: the global offset of each rank."""
    out: List[int] = []
    acc = 0
    for c in counts:
        out.append(acc)
        acc += int(c)
    return out


class Communicator:
    """Abstract collective interface. Subclasses implement the primitives."""

    rank: int = 0
    size: int = 1

    # ----- primitives -----
    def bcast(self, obj: Any, root: int = 0) -> Any:
        raise NotImplementedError

    def allreduce_sum(self, value: Any) -> Any:
        raise NotImplementedError

    def allreduce_max(self, value: Any) -> Any:
        raise NotImplementedError

    def allgather(self, value: Any) -> List[Any]:
        raise NotImplementedError

    def allgatherv(self, local: Tensor, counts: Sequence[int]) -> Tensor:
        raise NotImplementedError

    def barrier(self) -> None:
        raise NotImplementedError

    def abort(self, errorcode: int = 1) -> None:
        raise NotImplementedError

    # ----- derived -----
    def allgatherv_inplace(self, buffer: Tensor, counts: Sequence[int]) -> Tensor:
        """
        Fill the other ranks' slices of a global-sized ``buffer``.

        This rank's slice must already sit at its offset; it is read but never
        written. Backends with a native in-place gather override this.
        """
        displs = displacements(counts)
        start = displs[self.rank]
        stop = start + int(counts[self.rank])
        full = self.allgatherv(buffer[start:stop].clone(), counts)
        for r in range(self.size):
            if r == self.rank:
                continue
            lo = displs[r]
            hi = lo + int(counts[r])
            buffer[lo:hi] = full[lo:hi]
        return buffer

    def describe(self) -> str:
        return f"{type(self).__name__}(rank={self.rank}, size={self.size})"


class SerialCommunicator(Communicator):
    """Single-rank communicator; no communication ever happens."""

    def __init__(self) -> None:
        self.rank = 0
        self.size = 1

    def bcast(self, obj: Any, root: int = 0) -> Any:
        return obj

    def allreduce_sum(self, value: Any) -> Any:
        return value

    def allreduce_max(self, value: Any) -> Any:
        return value

    def allgather(self, value: Any) -> List[Any]:
        return [value]

    def allgatherv(self, local: Tensor, counts: Sequence[int]) -> Tensor:
        return local.clone()

    def allgatherv_inplace(self, buffer: Tensor, counts: Sequence[int]) -> Tensor:
        return buffer

    def barrier(self) -> None:
        return None

    def abort(self, errorcode: int = 1) -> None:
        raise SystemExit(errorcode)


def _mpi_datatype(arr: np.ndarray) -> Any:
    if MPI is None:  # pragma: no cover
        raise RuntimeError("mpi4py is not available")
    table = {
        np.dtype(np.float64): MPI.DOUBLE,
        np.dtype(np.float32): MPI.FLOAT,
        np.dtype(np.int64): MPI.INT64_T,
        np.dtype(np.int32): MPI.INT32_T,
    }
    try:
        return table[arr.dtype]
    except KeyError:
        raise TypeError(f"unsupported dtype for Allgatherv: {arr.dtype}") from None


class MpiCommunicator(Communicator):
    """Thin wrapper around an ``mpi4py`` communicator (``COMM_WORLD`` by default)."""

    def __init__(self, comm: Optional[Any] = None) -> None:
        if MPI is None:
            raise RuntimeError("mpi4py is not installed; use SerialCommunicator")
        self.comm = comm if comm is not None else MPI.COMM_WORLD
        self.rank = int(self.comm.Get_rank())
        self.size = int(self.comm.Get_size())

    def bcast(self, obj: Any, root: int = 0) -> Any:
        return self.comm.bcast(obj, root=root)

    def allreduce_sum(self, value: Any) -> Any:
        return self.comm.allreduce(value, op=MPI.SUM)

    def allreduce_max(self, value: Any) -> Any:
        return self.comm.allreduce(value, op=MPI.MAX)

    def allgather(self, value: Any) -> List[Any]:
        return list(self.comm.allgather(value))

    def allgatherv(self, local: Tensor, counts: Sequence[int]) -> Tensor:
        send = local.detach().cpu().contiguous().numpy()
        counts_i = [int(c) for c in counts]
        recv = np.empty(sum(counts_i), dtype=send.dtype)
        self.comm.Allgatherv(
            [send, _mpi_datatype(send)],
            [recv, counts_i, displacements(counts_i), _mpi_datatype(recv)],
        )
        return torch.from_numpy(recv).to(device=local.device)

    def allgatherv_inplace(self, buffer: Tensor, counts: Sequence[int]) -> Tensor:
        if buffer.device.type != "cpu" or not buffer.is_contiguous():
            return super().allgatherv_inplace(buffer, counts)
        arr = buffer.detach().numpy()
        counts_i = [int(c) for c in counts]
        self.comm.Allgatherv(
            MPI.IN_PLACE,
            [arr, counts_i, displacements(counts_i), _mpi_datatype(arr)],
        )
        return buffer

    def barrier(self) -> None:
        self.comm.Barrier()

    def abort(self, errorcode: int = 1) -> None:
        self.comm.Abort(errorcode)


def get_communicator(use_mpi: Optional[bool] = None) -> Communicator:
    """
    Return an MPI communicator when mpi4py is importable and more than one
    rank is running, else a serial one.

    ``use_mpi=False`` forces serial; ``use_mpi=True`` requires mpi4py.
    """
    if use_mpi is False:
        return SerialCommunicator()
    if MPI is None:
        if use_mpi:
            raise RuntimeError("use_mpi=True requested but mpi4py is not installed")
        return SerialCommunicator()
    world = MPI.COMM_WORLD
    if world.Get_size() == 1 and not use_mpi:
        return SerialCommunicator()
    return MpiCommunicator(world)


# ---------------------------------------------------------------------------
# Collective failure handling
# ---------------------------------------------------------------------------


def raise_if_any_failed(comm: Communicator, error: Optional[BaseException]) -> None:
    """
    Agree across ranks on whether any rank failed.

    The rank that detected ``error`` re-raises it; every other rank raises
    :class:`RemoteRankError`. Must be called by all ranks at the same point.
    """
    nfailed = int(comm.allreduce_sum(0 if error is None else 1))
    if error is not None:
        raise error
    if nfailed:
        raise RemoteRankError(
            f"{nfailed} other rank(s) failed; terminating", rank=comm.rank
        )


@contextlib.contextmanager
def fail_fast(comm: Communicator, jsonl: Optional[Any] = None) -> Iterator[None]:
    """
    Entry-point guard: log any geotomo error and abort every rank.

    With a single rank the exception simply propagates.
    """
    try:
        yield
    except GeotomoError as exc:
        logger.error("rank %d: fatal: %s", comm.rank, exc)
        if jsonl is not None:
            jsonl.error("Fatal error.", rank=comm.rank, error=type(exc).__name__, detail=str(exc))
        if comm.size > 1 and not isinstance(exc, RemoteRankError):
            comm.abort(1)
        raise


__all__ = [
    "Communicator",
    "SerialCommunicator",
    "MpiCommunicator",
    "get_communicator",
    "displacements",
    "raise_if_any_failed",
    "fail_fast",
    "MPI",
]
