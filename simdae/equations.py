"""
Model tree node types.

A model is a nested list whose leaves are equations (expressions equated
to zero) and the special entries defined here:

- RefBranch: flow into a node, summed into one balance equation per node
- Event: zero-crossing condition with positive and negative responses
- Reinit: assignment executed inside an event response
- InitialEquation: equations used only for the initial solve
- StructuralEvent: sub-model replaced by another one at a zero crossing

Model functions return lists; zero-argument callables inside a list are
model thunks, called once during elaboration.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from beartype import beartype

from simdae.expr import Symbolic
from simdae.reactive import Discrete
from simdae.variables import DerUnknown, Unknown, new_handle


@dataclass(frozen=True, eq=False)
class RefBranch:
    """
    Flow ``flow`` entering ``node``.

    All RefBranch entries sharing a node are summed into one equation
    ``sum(flows) = 0``. A numeric node (ground) takes no equation.
    """

    node: Any
    flow: Any

    def __repr__(self) -> str:
        return f"RefBranch({self.node!r}, {self.flow!r})"


def branch(n1: Any, n2: Any, v: Any, i: Any) -> list:
    """
    Two-terminal branch from ``n1`` to ``n2`` with voltage ``v`` and current ``i``.

    The current enters the balance of ``n1`` with a positive sign and the
    balance of ``n2`` with a negative sign, and ``v = n1 - n2``.
    """
    return [
        RefBranch(n1, i),
        RefBranch(n2, -i),
        n1 - n2 - v,
    ]


@dataclass(frozen=True, eq=False)
class Reinit:
    """
    Assignment ``target := value`` executed when an event fires.

    ``target`` is an Unknown, a derivative, or a Discrete/Parameter. ``value``
    is a number or an expression evaluated at the event instant.
    """

    target: Any
    value: Any

    def __post_init__(self) -> None:
        if not isinstance(self.target, (Unknown, DerUnknown, Discrete)):
            raise TypeError(f"reinit target must be an Unknown, der() or Discrete, got {type(self.target).__name__}")

    def __repr__(self) -> str:
        return f"reinit({self.target!r}, {self.value!r})"


@beartype
def reinit(target: Any, value: Any) -> Reinit:
    """
    Reinitialize ``target`` to ``value`` inside an event response.

    To change a Discrete from outside a simulation, call ``d.reinit(v)``.
    """
    return Reinit(target, value)


@dataclass(eq=False)
class Event:
    """
    Zero-crossing event.

    ``pos_response`` runs when ``condition`` crosses zero upward and
    ``neg_response`` when it crosses downward. Responses are (nested) lists
    of Reinit entries.
    """

    condition: Any
    pos_response: Any = ()
    neg_response: Any = ()


def bool_event(d: Discrete, condition: Any) -> Event:
    """Event keeping ``d`` true while ``condition`` is positive."""
    return Event(condition, [reinit(d, True)], [reinit(d, False)])


@dataclass(eq=False)
class InitialEquation:
    """Equations that hold only at the initial time."""

    equations: Any


class StructuralEvent:
    """
    Sub-model that is replaced by another one at a zero crossing.

    Until activated, ``default`` is part of the model. When ``condition``
    crosses zero in ``direction`` (1 rising, -1 falling, 0 either) the
    simulation calls ``new_relation()`` once, puts its result in place of
    this event, and elaborates the whole model again.

    Example
    -------
    ::

        StructuralEvent(MTime - 5.0,
                        pendulum(x, y, vx, vy),
                        lambda: free_fall(x, y, vx, vy))
    """

    def __init__(
        self,
        condition: Any,
        default: Any,
        new_relation: Callable[[], Any],
        pos_response: Any = (),
        neg_response: Any = (),
        direction: int = 1,
    ):
        if direction not in (-1, 0, 1):
            raise ValueError(f"direction must be -1, 0 or 1, got {direction}")
        if not callable(new_relation):
            raise TypeError("new_relation must be a zero-argument callable")
        self.handle = new_handle()
        self.condition = condition
        self.default = default
        self.new_relation = new_relation
        self.pos_response = pos_response
        self.neg_response = neg_response
        self.direction = direction
        self.activated = False
        self._default: Optional[Any] = None
        self._replacement: Optional[Any] = None

    def __repr__(self) -> str:
        state = "activated" if self.activated else "pending"
        return f"StructuralEvent(#{self.handle}, {self.condition!r}, {state})"

    def activates(self, direction: int) -> bool:
        """True if a crossing in ``direction`` fires this event."""
        return self.direction == 0 or self.direction == direction

    def resolved_default(self) -> Any:
        """The default sub-model, calling it first if it is a thunk."""
        if self._default is None:
            self._default = self.default() if is_thunk(self.default) else self.default
        return self._default

    def materialize(self) -> Any:
        """The replacement sub-model. ``new_relation`` is called only once."""
        if self._replacement is None:
            self._replacement = self.new_relation()
        return self._replacement


def is_thunk(x: Any) -> bool:
    """True for a zero-argument model function embedded in a model tree."""
    return callable(x) and not isinstance(x, (Symbolic, type))

