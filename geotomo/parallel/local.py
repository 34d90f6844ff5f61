"""In-process multi-rank communicator.

Simulates ``nbproc`` ranks inside one Python process: each rank runs in its
own thread and every collective is a rendezvous of all ranks. Collectives are
matched by call order, as in MPI, and block until every rank has arrived, so
a rank that never reaches a collective stalls the others until ``abort`` or
the timeout.

Used by the test-suite and for quick experiments without ``mpirun``::

    results = run_ranks(4, lambda comm: total_count(comm.rank + 1, comm))
    assert results == [10, 10, 10, 10]
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

import torch
from torch import Tensor

from geotomo.errors import (
    CollectiveAbortedError,
    ConfigurationError,
    RemoteRankError,
)
from geotomo.parallel.comm import Communicator

T = TypeVar("T")

DEFAULT_TIMEOUT_S = 60.0


class _Round:
    __slots__ = ("slots", "arrived", "read")

    def __init__(self, size: int) -> None:
        self.slots: List[Any] = [None] * size
        self.arrived = 0
        self.read = 0


class LocalCommGroup:
    """Shared state of a group of simulated ranks."""

    def __init__(self, size: int, timeout: float = DEFAULT_TIMEOUT_S) -> None:
        if size < 1:
            raise ConfigurationError("LocalCommGroup needs at least one rank", value=size)
        self.size = int(size)
        self.timeout = float(timeout)
        self._cond = threading.Condition()
        self._rounds: Dict[int, _Round] = {}
        self._aborted: Optional[int] = None

    def communicator(self, rank: int) -> "LocalCommunicator":
        return LocalCommunicator(self, rank)

    @property
    def aborted(self) -> bool:
        return self._aborted is not None

    def abort(self, errorcode: int = 1) -> None:
        with self._cond:
            if self._aborted is None:
                self._aborted = int(errorcode)
            self._cond.notify_all()

    def exchange(self, rank: int, round_id: int, value: Any) -> List[Any]:
        """Deposit ``value`` for round ``round_id`` and return all ranks' values."""
        with self._cond:
            rnd = self._rounds.get(round_id)
            if rnd is None:
                rnd = self._rounds[round_id] = _Round(self.size)
            rnd.slots[rank] = value
            rnd.arrived += 1
            if rnd.arrived == self.size:
                self._cond.notify_all()
            else:
                ok = self._cond.wait_for(
                    lambda: rnd.arrived == self.size or self._aborted is not None,
                    timeout=self.timeout,
                )
                if rnd.arrived != self.size:
                    reason = "aborted" if ok else f"timed out after {self.timeout:g}s"
                    raise CollectiveAbortedError(
                        f"collective #{round_id} {reason}", rank=rank
                    )
            out = list(rnd.slots)
            rnd.read += 1
            if rnd.read == self.size:
                del self._rounds[round_id]
            return out


class LocalCommunicator(Communicator):
    """One simulated rank of a :class:`LocalCommGroup`."""

    def __init__(self, group: LocalCommGroup, rank: int) -> None:
        if not 0 <= rank < group.size:
            raise ConfigurationError("rank out of range", rank=rank, value=group.size)
        self.group = group
        self.rank = int(rank)
        self.size = group.size
        self._round = 0

    def _exchange(self, value: Any) -> List[Any]:
        round_id = self._round
        self._round += 1
        return self.group.exchange(self.rank, round_id, value)

    def bcast(self, obj: Any, root: int = 0) -> Any:
        return self._exchange(obj if self.rank == root else None)[root]

    def allreduce_sum(self, value: Any) -> Any:
        vals = self._exchange(value)
        total = vals[0]
        for v in vals[1:]:
            total = total + v
        return total

    def allreduce_max(self, value: Any) -> Any:
        return max(self._exchange(value))

    def allgather(self, value: Any) -> List[Any]:
        return self._exchange(value)

    def allgatherv(self, local: Tensor, counts: Sequence[int]) -> Tensor:
        parts = self._exchange(local.detach().clone())
        for r, (part, c) in enumerate(zip(parts, counts)):
            if int(part.numel()) != int(c):
                raise ConfigurationError(
                    "allgatherv: contribution size disagrees with counts",
                    rank=r,
                    value=(int(part.numel()), int(c)),
                )
        return torch.cat([p.reshape(-1) for p in parts]).to(device=local.device)

    def barrier(self) -> None:
        self._exchange(None)

    def abort(self, errorcode: int = 1) -> None:
        self.group.abort(errorcode)


def _pick_exception(errors: List[Optional[BaseException]]) -> Optional[BaseException]:
    # The originating error wins over its echoes on other ranks.
    echoes = (RemoteRankError, CollectiveAbortedError)
    for exc in errors:
        if exc is not None and not isinstance(exc, echoes):
            return exc
    for exc in errors:
        if exc is not None:
            return exc
    return None


def run_ranks(
    nbproc: int,
    fn: Callable[[LocalCommunicator], T],
    timeout: float = DEFAULT_TIMEOUT_S,
) -> List[T]:
    """
    Run ``fn(comm)`` once per simulated rank and return results in rank order.

    A rank that raises aborts the group, so ranks blocked in a collective are
    released. The originating exception (lowest rank first) is re-raised.
    """
    group = LocalCommGroup(nbproc, timeout=timeout)

    def _rank_main(rank: int) -> T:
        comm = group.communicator(rank)
        try:
            return fn(comm)
        except BaseException:
            group.abort(1)
            raise

    with ThreadPoolExecutor(max_workers=nbproc, thread_name_prefix="rank") as pool:
        futures = [pool.submit(_rank_main, r) for r in range(nbproc)]
        errors: List[Optional[BaseException]] = [f.exception() for f in futures]

    exc = _pick_exception(errors)
    if exc is not None:
        raise exc
    return [f.result() for f in futures]


__all__ = [
    "LocalCommGroup",
    "LocalCommunicator",
    "run_ranks",
    "DEFAULT_TIMEOUT_S",
]
