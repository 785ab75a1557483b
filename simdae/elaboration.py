"""
Elaboration: flattening a model tree into an EquationSet.

================================================================================
ALGORITHM
================================================================================

elaborate() walks the model tree depth-first, in list order:

1. Zero-argument callables (model thunks) are called and their result is
   walked in their place.
2. RefBranch flows are grouped by the handle of their node. Numeric nodes
   (ground) are skipped.
3. InitialEquation contents go to ``initial_equations``.
4. Events go to the event table in the order they are found.
5. A StructuralEvent that is not activated stays in the resolved model tree
   and its default sub-model is walked. An activated one is replaced by its
   replacement sub-model.
6. After the walk, each node group produces one balance equation: the sum
   of its flows. The flow expression carries the sign.
7. Identity wrappers are stripped; None, empty lists and empty expressions
   are dropped.

Unknowns whose initial value is a placeholder expression are resolved to a
concrete value once the walk is done.

The result is a new immutable EquationSet. Elaborating its ``model`` again
(after activating a StructuralEvent) produces the next generation.

================================================================================
"""

from __future__ import annotations

import functools
import logging
import operator
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
from beartype import beartype

from simdae.config import DEFAULT_CONFIG, SimConfig
from simdae.equations import Event, InitialEquation, RefBranch, Reinit, StructuralEvent, is_thunk
from simdae.errors import ModelBalanceError
from simdae.expr import Expr, Symbolic, iter_leaves, strip, value
from simdae.reactive import Discrete
from simdae.variables import DerUnknown, Unknown

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NodeBalance:
    """All flows entering one node."""

    node: Unknown
    flows: Tuple[Any, ...]

    @property
    def equation(self) -> Any:
        return functools.reduce(operator.add, self.flows)


@dataclass(frozen=True, eq=False)
class EquationSet:
    """
    One elaborated snapshot of a model.

    ``pos_responses`` and ``neg_responses`` are parallel to the full event
    table: the regular events first, then the structural events. Each entry
    is a tuple of Reinit.
    """

    model: Any
    equations: Tuple[Any, ...]
    initial_equations: Tuple[Any, ...]
    events: Tuple[Event, ...]
    pos_responses: Tuple[Tuple[Reinit, ...], ...]
    neg_responses: Tuple[Tuple[Reinit, ...], ...]
    structural_events: Tuple[StructuralEvent, ...]
    node_map: Dict[int, NodeBalance]
    generation: int = 1

    @property
    def n_events(self) -> int:
        return len(self.events) + len(self.structural_events)

    @property
    def conditions(self) -> List[Any]:
        return [ev.condition for ev in self.events] + [se.condition for se in self.structural_events]

    @property
    def unknowns(self) -> List[Unknown]:
        return collect_unknowns(self.equations)

    def __repr__(self) -> str:
        return (
            f"EquationSet(generation={self.generation}, equations={len(self.equations)}, "
            f"events={len(self.events)}, structural_events={len(self.structural_events)})"
        )


# =============================================================================
# Flattening
# =============================================================================


def flatten_model(tree: Any) -> List[Any]:
    """
    Flatten nested lists and call model thunks.

    Every other entry (equations, RefBranch, events, structural events and
    initial-equation blocks) is kept as a leaf of the returned list.
    Flattening a flat list returns an equal list.
    """
    out: List[Any] = []
    _flatten_into(tree, out)
    return out


def _flatten_into(item: Any, out: List[Any]) -> None:
    if item is None:
        return
    if isinstance(item, (list, tuple)):
        for x in item:
            _flatten_into(x, out)
    elif is_thunk(item):
        _flatten_into(item(), out)
    else:
        out.append(item)


class _Walker:
    """Collects equations, events and node groups during one elaboration."""

    def __init__(self) -> None:
        self.equations: List[Any] = []
        self.initial: List[Any] = []
        self.events: List[Event] = []
        self.structural: List[StructuralEvent] = []
        self.groups: Dict[int, Tuple[Unknown, List[Any]]] = {}

    def visit(self, item: Any, initial: bool = False) -> Any:
        """Walk ``item`` and return its resolved form for the model tree."""
        if item is None:
            return None
        if isinstance(item, (list, tuple)):
            return [self.visit(x, initial) for x in item]
        if isinstance(item, StructuralEvent):
            if item.activated:
                return self.visit(item.materialize(), initial)
            self.structural.append(item)
            self.visit(item.resolved_default(), initial)
            return item
        if is_thunk(item):
            return self.visit(item(), initial)
        if isinstance(item, RefBranch):
            self._add_flow(item)
        elif isinstance(item, InitialEquation):
            return InitialEquation(self.visit(item.equations, initial=True))
        elif isinstance(item, Event):
            self.events.append(item)
        elif isinstance(item, Reinit):
            raise TypeError(f"{item!r} is only valid inside an event response")
        else:
            self._add_equation(item, initial)
        return item

    def _add_flow(self, ref: RefBranch) -> None:
        node = ref.node
        if isinstance(node, Unknown):
            if node.handle not in self.groups:
                self.groups[node.handle] = (node, [])
            self.groups[node.handle][1].append(ref.flow)
        elif isinstance(node, Symbolic):
            raise TypeError(f"RefBranch node must be an Unknown or a number, got {node!r}")

    def _add_equation(self, eq: Any, initial: bool) -> None:
        if isinstance(eq, Expr):
            eq = strip(eq)
            if isinstance(eq, Expr) and eq.is_empty:
                return
        elif not isinstance(eq, (Symbolic, int, float, complex, np.ndarray, np.number)):
            raise TypeError(f"Cannot use {type(eq).__name__} as an equation: {eq!r}")
        (self.initial if initial else self.equations).append(eq)


def _response(items: Any) -> Tuple[Reinit, ...]:
    out = []
    for r in flatten_model(items):
        if not isinstance(r, Reinit):
            raise TypeError(f"Event responses may only contain reinit(), got {r!r}")
        out.append(r)
    return tuple(out)


@beartype
def elaborate(
    model: Any,
    generation: int = 1,
    config: SimConfig = DEFAULT_CONFIG,
) -> EquationSet:
    """
    Flatten a model tree into an EquationSet.

    Parameters
    ----------
    model : Equation, list or EquationSet
        Model tree root. An EquationSet elaborates its ``model`` again.
    generation : int, optional
        Generation number stored on the result. Each structural activation
        increases it by one.
    config : SimConfig, optional
        Only used for log verbosity.

    The result is not checked for balance; use check_balance().
    """
    if isinstance(model, EquationSet):
        model = model.model
    walker = _Walker()
    resolved = walker.visit(model)

    node_map: Dict[int, NodeBalance] = {}
    equations = list(walker.equations)
    for h, (node, flows) in walker.groups.items():
        nb = NodeBalance(node, tuple(flows))
        node_map[h] = nb
        equations.append(nb.equation)

    for u in collect_unknowns(equations + walker.initial):
        u.resolve_value()

    table = [(ev.pos_response, ev.neg_response) for ev in walker.events]
    table += [(se.pos_response, se.neg_response) for se in walker.structural]

    eqset = EquationSet(
        model=resolved,
        equations=tuple(equations),
        initial_equations=tuple(walker.initial),
        events=tuple(walker.events),
        pos_responses=tuple(_response(pos) for pos, _ in table),
        neg_responses=tuple(_response(neg) for _, neg in table),
        structural_events=tuple(walker.structural),
        node_map=node_map,
        generation=generation,
    )
    logger.log(
        config.log_level,
        "elaborated generation %d: %d equations, %d nodes, %d events, %d structural events",
        generation,
        len(eqset.equations),
        len(node_map),
        len(eqset.events),
        len(eqset.structural_events),
    )
    return eqset


# =============================================================================
# Unknowns and balance
# =============================================================================


def collect_unknowns(equations: Any) -> List[Unknown]:
    """Unknowns referenced by ``equations``, by first appearance, without duplicates."""
    seen: Dict[int, Unknown] = {}
    for eq in equations:
        for leaf in iter_leaves(eq):
            if isinstance(leaf, DerUnknown):
                leaf = leaf.parent
            if isinstance(leaf, Unknown) and leaf.handle not in seen:
                seen[leaf.handle] = leaf
    return list(seen.values())


def collect_discretes(items: Any) -> List[Discrete]:
    """Discrete values referenced by ``items``, by first appearance."""
    seen: Dict[int, Discrete] = {}
    for x in items:
        for leaf in iter_leaves(x):
            if isinstance(leaf, Discrete) and leaf.handle not in seen:
                seen[leaf.handle] = leaf
    return list(seen.values())


def equation_size(eq: Any) -> int:
    """Number of scalar equations ``eq`` stands for."""
    return int(np.size(value(eq)))


def count_balance(eqset: EquationSet) -> Tuple[int, int]:
    """(number of scalar equations, number of scalar unknowns)."""
    n_eq = sum(equation_size(eq) for eq in eqset.equations)
    n_unknown = sum(u.size for u in collect_unknowns(eqset.equations))
    return n_eq, n_unknown


def check_balance(target: Union[EquationSet, Any], error: Optional[type] = None) -> None:
    """
    Raise ModelBalanceError unless there are as many equations as unknowns.

    ``target`` is an EquationSet or a Sim. ``error`` selects a subclass of
    ModelBalanceError to raise.
    """
    if isinstance(target, EquationSet):
        n_eq, n_unknown = count_balance(target)
    else:
        n_eq, n_unknown = target.n_equations, target.n_unknowns
    if n_eq != n_unknown:
        raise (error or ModelBalanceError)(n_eq, n_unknown)
