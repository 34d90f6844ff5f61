"""Problem parameters and their rank-0 read / broadcast."""

from __future__ import annotations

from .loader import build_config, derive_partition, initialize_config, load_config, read_source
from .params import (
    ECTParameters,
    GravityParameters,
    GravMagBase,
    InversionConfig,
    InversionParameters,
    MagneticParameters,
    ProblemKind,
    precision_dtype,
)

__all__ = [
    "ECTParameters",
    "GravityParameters",
    "GravMagBase",
    "InversionConfig",
    "InversionParameters",
    "MagneticParameters",
    "ProblemKind",
    "precision_dtype",
    "build_config",
    "derive_partition",
    "initialize_config",
    "load_config",
    "read_source",
]
