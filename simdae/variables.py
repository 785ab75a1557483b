"""
Unknowns, derivatives and model time.

An Unknown is a placeholder for a quantity the solver determines. Each one
carries a stable integer handle assigned at creation; the elaborator and
the index assembler key every map on that handle, never on the object's
contents.

Unknowns are created by model functions:

    x = Unknown(1.0, "x")
    y = Unknown("y")              # value 0.0, label "y"
    v = Unknown(np.zeros(3), "v")
    eqs = [der(x) - y, y - x**2]
"""

from __future__ import annotations

import itertools
from typing import Any, Optional

import numpy as np
from beartype import beartype

from simdae.expr import ExprKind, Symbolic, mexpr, value
from simdae.types import Constraint

_handles = itertools.count(1)


def new_handle() -> int:
    """Next stable identity handle. Handles are never reused within a process."""
    return next(_handles)


def _as_payload(v: Any) -> Any:
    if isinstance(v, (list, tuple)):
        return np.asarray(v, dtype=float)
    if isinstance(v, (bool, int, np.integer)):
        return float(v)
    return v


class Unknown(Symbolic):
    """
    Placeholder for an unsolved quantity.

    Parameters
    ----------
    value : float, complex, array or symbolic, optional
        Initial value. A symbolic value (built from other unknowns) is a
        placeholder resolved to a concrete value during elaboration.
    label : str, optional
        Column name in simulation output. Unlabeled unknowns are not
        written to the output.
    fixed : bool, optional
        Keep this value during consistent initialization.
    constraint : Constraint, optional
        Sign constraint enforced by the integrator.
    category : str, optional
        Tag used by component libraries for dispatch.

    A string given as the only positional argument is taken as the label.
    """

    category_default = ""

    def __init__(
        self,
        value: Any = 0.0,
        label: str = "",
        fixed: bool = False,
        constraint: Constraint = Constraint.NORMAL,
        category: Optional[str] = None,
    ):
        if isinstance(value, str):
            value, label = 0.0, value
        self.handle = new_handle()
        self.value = _as_payload(value)
        self.label = label
        self.fixed = fixed
        self.constraint = constraint
        self.category = self.category_default if category is None else category

    def __repr__(self) -> str:
        name = self.label or f"u{self.handle}"
        return f"{type(self).__name__}({name})"

    def _current_value(self) -> Any:
        return self.resolve_value()

    def resolve_value(self) -> Any:
        """Replace a symbolic placeholder value with its concrete value."""
        if isinstance(self.value, Symbolic):
            self.value = _as_payload(value(self.value))
        return self.value

    @property
    def size(self) -> int:
        """Number of scalar slots this unknown occupies."""
        return int(np.size(self.resolve_value()))

    @property
    def is_complex(self) -> bool:
        return bool(np.iscomplexobj(self.resolve_value()))

    def __len__(self) -> int:
        return self.size

    def __getitem__(self, index: int) -> Any:
        return mexpr(ExprKind.INDEX, self, index)


class DerUnknown(Symbolic):
    """
    Time derivative of an Unknown.

    Shares its parent's handle and slot; ``value`` is the initial
    derivative used before consistent initialization.
    """

    def __init__(self, parent: Unknown, value: Any = 0.0):
        self.parent = parent
        self.value = _as_payload(value)

    @property
    def handle(self) -> int:
        return self.parent.handle

    def __repr__(self) -> str:
        return f"der({self.parent!r})"

    def _current_value(self) -> Any:
        v = self.value
        size = self.parent.size
        if size > 1 and np.size(v) == 1:
            return np.full(size, float(v))
        return v

    def __getitem__(self, index: int) -> Any:
        return mexpr(ExprKind.INDEX, self, index)


@beartype
def der(x: Unknown, value: Any = 0.0) -> DerUnknown:
    """
    Derivative of an unknown with respect to time.

    ``value`` is the initial derivative; consistent initialization normally
    overwrites it.
    """
    return DerUnknown(x, value)


class TimeVar(Symbolic):
    """Model time. Use the module-level ``MTime`` instance."""

    def __repr__(self) -> str:
        return "MTime"

    def _current_value(self) -> float:
        return 0.0


MTime = TimeVar()
