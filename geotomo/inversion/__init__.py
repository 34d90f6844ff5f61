"""Inputs and weights of the regularized inversion on one rank."""

from __future__ import annotations

from .arrays import InversionArrays
from .grid import Grid
from .sensitivity import DenseSensitivity, SensitivityMatrix
from .weights import (
    DepthWeightingType,
    WeightEngine,
    WeightingParameters,
    column_weight_from_damping,
    normalize_depth_weight,
)

__all__ = [
    "InversionArrays",
    "Grid",
    "DenseSensitivity",
    "SensitivityMatrix",
    "DepthWeightingType",
    "WeightEngine",
    "WeightingParameters",
    "column_weight_from_damping",
    "normalize_depth_weight",
]
