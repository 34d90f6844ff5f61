from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import torch
from torch import Tensor

from geotomo.errors import ConfigurationError


@dataclass(frozen=True)
class Grid:
    """
    Cell bounds of the rank-local model elements.

    Each of ``X1 .. Z2`` is a 1-D tensor of length ``nelements``; element ``i``
    occupies ``[X1[i], X2[i]] x [Y1[i], Y2[i]] x [Z1[i], Z2[i]]`` with ``Z``
    positive downwards (depth).
    """

    X1: Tensor
    X2: Tensor
    Y1: Tensor
    Y2: Tensor
    Z1: Tensor
    Z2: Tensor

    def __post_init__(self) -> None:
        n = int(self.X1.numel())
        for name in ("X2", "Y1", "Y2", "Z1", "Z2"):
            if int(getattr(self, name).numel()) != n:
                raise ConfigurationError(f"grid bound {name} has the wrong length", value=n)

    @property
    def nelements(self) -> int:
        return int(self.X1.numel())

    def vertical_center(self, i: int) -> float:
        """Depth of the middle of cell ``i``."""
        return 0.5 * float(self.Z1[i] + self.Z2[i])

    def vertical_centers(self) -> Tensor:
        return 0.5 * (self.Z1 + self.Z2)

    def footprint(self, i: int) -> Tuple[float, float, float, float]:
        """Horizontal bounds ``(x1, x2, y1, y2)`` of cell ``i``."""
        return (float(self.X1[i]), float(self.X2[i]), float(self.Y1[i]), float(self.Y2[i]))

    @classmethod
    def regular(
        cls,
        nx: int,
        ny: int,
        nz: int,
        dx: float = 1.0,
        dy: float = 1.0,
        dz: float = 1.0,
        z_offset: float = 0.0,
        element_range: Optional[Tuple[int, int]] = None,
        dtype: torch.dtype = torch.float64,
    ) -> "Grid":
        """
        Regular ``nx * ny * nz`` grid, x fastest, then y, then z.

        ``element_range = (start, stop)`` keeps only the global elements of one
        rank's slice, matching the partition order.
        """
        n = nx * ny * nz
        start, stop = element_range if element_range is not None else (0, n)
        if not 0 <= start <= stop <= n:
            raise ConfigurationError("element range outside the grid", value=(start, stop, n))

        idx = torch.arange(start, stop, dtype=torch.int64)
        ix = idx % nx
        iy = (idx // nx) % ny
        iz = idx // (nx * ny)

        x1 = ix.to(dtype) * dx
        y1 = iy.to(dtype) * dy
        z1 = z_offset + iz.to(dtype) * dz
        return cls(X1=x1, X2=x1 + dx, Y1=y1, Y2=y1 + dy, Z1=z1, Z2=z1 + dz)


__all__ = ["Grid"]
