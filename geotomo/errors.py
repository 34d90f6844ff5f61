"""Error taxonomy for the partitioning / exchange / weighting core.

Every error here is fatal for the whole distributed run. Nothing in the
package retries or substitutes a default value.
"""

from __future__ import annotations

from typing import Any, Optional


class GeotomoError(Exception):
    """Base class; carries optional diagnostic context (rank, element, value)."""

    def __init__(
        self,
        message: str,
        *,
        rank: Optional[int] = None,
        index: Optional[int] = None,
        value: Any = None,
    ):
        self.message = message
        self.rank = rank
        self.index = index
        self.value = value

        ctx = []
        if rank is not None:
            ctx.append(f"rank={rank}")
        if index is not None:
            ctx.append(f"index={index}")
        if value is not None:
            ctx.append(f"value={value!r}")
        text = message if not ctx else f"{message} ({', '.join(ctx)})"
        super().__init__(text)


class ConfigurationError(GeotomoError):
    """Invalid or unsupported parameter value, or an impossible partition."""


class NumericalError(GeotomoError):
    """A computed value violates a required mathematical precondition."""


class NotFoundError(GeotomoError):
    """No data footprint covers an element (sensitivity-below-data weighting)."""


class RemoteRankError(GeotomoError):
    """Raised on ranks that did not fail themselves when another rank did."""


class CollectiveAbortedError(GeotomoError):
    """A collective was interrupted because some rank called ``abort``."""


__all__ = [
    "GeotomoError",
    "ConfigurationError",
    "NumericalError",
    "NotFoundError",
    "RemoteRankError",
    "CollectiveAbortedError",
]
