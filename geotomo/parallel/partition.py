"""Split the global model elements across ranks.

Each rank owns a contiguous slice of the global element index space; rank
order is global index order. Two remainder policies exist and are selected
per problem family, never unified:

- ``FIRST_RANKS`` (gravity / magnetism / joint): ``q + 1`` elements on each of
  the first ``r`` ranks, ``q`` elsewhere.
- ``LAST_RANK`` (ECT): ``q`` on every rank, the remainder on the last rank.
  ECT slices the model by z-layers; the model has ``nz + 1`` layers and
  ``nz`` is a multiple of ``nbproc``, so the last rank gets exactly one
  extra layer.

Everything here is pure: no communication, every rank computes the same plan.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import List, Tuple

from geotomo.errors import ConfigurationError


class RemainderPolicy(str, enum.Enum):
    FIRST_RANKS = "first_ranks"
    LAST_RANK = "last_rank"


def _check_layout(total: int, rank: int, nbproc: int) -> None:
    if nbproc < 1:
        raise ConfigurationError("nbproc must be >= 1", value=nbproc)
    if not 0 <= rank < nbproc:
        raise ConfigurationError(f"rank must lie in [0, {nbproc})", rank=rank)
    if total < 0:
        raise ConfigurationError("total element count must be non-negative", value=total)


def elements_for_rank(
    total: int,
    rank: int,
    nbproc: int,
    policy: RemainderPolicy = RemainderPolicy.FIRST_RANKS,
    allow_empty: bool = False,
) -> int:
    """Number of elements owned by ``rank`` when ``total`` are split over ``nbproc``."""
    total, rank, nbproc = int(total), int(rank), int(nbproc)
    _check_layout(total, rank, nbproc)
    policy = RemainderPolicy(policy)

    if total < nbproc and not allow_empty:
        raise ConfigurationError(
            f"cannot split {total} elements over {nbproc} ranks without empty ranks",
            value=total,
        )

    q, r = divmod(total, nbproc)
    if policy is RemainderPolicy.FIRST_RANKS:
        return q + 1 if rank < r else q
    return q + r if rank == nbproc - 1 else q


@dataclass(frozen=True)
class PartitionPlan:
    """Counts and global start offsets (0-based) for every rank."""

    total: int
    policy: RemainderPolicy
    counts: Tuple[int, ...]
    starts: Tuple[int, ...]

    @classmethod
    def build(
        cls,
        total: int,
        nbproc: int,
        policy: RemainderPolicy = RemainderPolicy.FIRST_RANKS,
        allow_empty: bool = False,
    ) -> "PartitionPlan":
        counts = tuple(
            elements_for_rank(total, r, nbproc, policy, allow_empty) for r in range(int(nbproc))
        )
        starts: List[int] = []
        acc = 0
        for c in counts:
            starts.append(acc)
            acc += c
        return cls(total=int(total), policy=RemainderPolicy(policy), counts=counts, starts=tuple(starts))

    @property
    def nbproc(self) -> int:
        return len(self.counts)

    def bounds(self, rank: int) -> Tuple[int, int]:
        """Half-open global index range ``[start, stop)`` of ``rank``."""
        return self.starts[rank], self.starts[rank] + self.counts[rank]

    def owner_of(self, index: int) -> int:
        """Rank owning the 0-based global element ``index``."""
        if not 0 <= index < self.total:
            raise ConfigurationError("global index out of range", index=index, value=self.total)
        for rank in range(self.nbproc):
            lo, hi = self.bounds(rank)
            if lo <= index < hi:
                return rank
        raise AssertionError("unreachable: counts do not cover total")  # pragma: no cover

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "policy": self.policy.value,
            "counts": list(self.counts),
            "starts": list(self.starts),
        }


# ---------------------------------------------------------------------------
# ECT layer partition
# ---------------------------------------------------------------------------


def check_nz_divisible(nz: int, nbproc: int) -> None:
    """ECT slices ``nz`` potential layers evenly; ``nz`` must be a multiple of ``nbproc``."""
    if nbproc < 1 or nz % nbproc != 0:
        raise ConfigurationError(
            f"ECT needs nz to be a multiple of the number of ranks (nz={nz}, nbproc={nbproc})",
            value=nz,
        )


def ect_layers_for_rank(nz: int, rank: int, nbproc: int) -> int:
    """
    Model layers owned by ``rank`` for an ECT grid with ``nz`` potential layers.

    The model lives between the ``nz + 2`` potential nodes, i.e. on ``nz + 1``
    layers: ``nz // nbproc`` per rank plus one on the last rank.
    """
    check_nz_divisible(nz, nbproc)
    return elements_for_rank(nz + 1, rank, nbproc, RemainderPolicy.LAST_RANK)


__all__ = [
    "RemainderPolicy",
    "elements_for_rank",
    "PartitionPlan",
    "check_nz_divisible",
    "ect_layers_for_rank",
]
