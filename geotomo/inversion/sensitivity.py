from __future__ import annotations

from typing import Protocol, runtime_checkable

import torch
from torch import Tensor

from geotomo.errors import ConfigurationError


@runtime_checkable
class SensitivityMatrix(Protocol):
    """Read-only access to the rank-local rows of the sensitivity kernel."""

    @property
    def nelements(self) -> int: ...

    @property
    def ndata(self) -> int: ...

    def get_column(self, i: int) -> Tensor:
        """All ``ndata`` sensitivities of local element ``i``."""
        ...

    def value(self, i: int, d: int) -> float: ...


class DenseSensitivity:
    """
    Dense ``(nelements_local, ndata)`` kernel.

    The stored tensor is never written; ``get_column`` returns a copy.
    """

    def __init__(self, matrix) -> None:
        m = torch.as_tensor(matrix)
        if m.dim() != 2:
            raise ConfigurationError("sensitivity matrix must be 2-D", value=tuple(m.shape))
        self._m = m

    @property
    def nelements(self) -> int:
        return int(self._m.shape[0])

    @property
    def ndata(self) -> int:
        return int(self._m.shape[1])

    def get_column(self, i: int) -> Tensor:
        return self._m[i].clone()

    def value(self, i: int, d: int) -> float:
        return float(self._m[i, d])


__all__ = ["SensitivityMatrix", "DenseSensitivity"]
