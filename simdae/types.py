"""
Shared type definitions for simdae.
"""

from __future__ import annotations

from enum import Enum, auto
from typing import Union

# Numeric scalar accepted by public functions (ints are promoted to float)
Real = Union[int, float]


class Constraint(Enum):
    """Sign constraint on an Unknown, enforced by the integrator."""

    NORMAL = auto()  # Unconstrained
    POSITIVE = auto()  # x > 0
    NON_NEGATIVE = auto()  # x >= 0
    NEGATIVE = auto()  # x < 0
    NON_POSITIVE = auto()  # x <= 0


class InitMode(Enum):
    """How consistent initial values are computed before integration."""

    NONE = auto()  # Use the model's initial values as given
    YA_YDP = auto()  # Given differential y, solve algebraic y and y'
    Y = auto()  # Given y', solve y
