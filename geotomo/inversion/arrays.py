from __future__ import annotations

from dataclasses import dataclass

import torch
from torch import Tensor

from geotomo.parallel.comm import Communicator
from geotomo.parallel.exchange import gather_full_array


@dataclass
class InversionArrays:
    """
    Per-problem arrays of the inversion on one rank.

    ``damping_weight`` and ``column_weight`` are written only by the weight
    engine and read afterwards by the solver.
    """

    nelements: int
    ndata: int
    damping_weight: Tensor
    column_weight: Tensor
    model: Tensor

    @classmethod
    def allocate(cls, nelements: int, ndata: int, dtype: torch.dtype = torch.float64) -> "InversionArrays":
        return cls(
            nelements=int(nelements),
            ndata=int(ndata),
            damping_weight=torch.zeros(nelements, dtype=dtype),
            column_weight=torch.zeros(nelements, dtype=dtype),
            model=torch.zeros(nelements, dtype=dtype),
        )

    def full_model(self, comm: Communicator) -> Tensor:
        """Globally ordered model vector, identical on every rank (collective)."""
        return gather_full_array(self.model, self.nelements, comm)


__all__ = ["InversionArrays"]
