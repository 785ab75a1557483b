"""
Reactive discrete values.

Discrete and Parameter values live outside the integrator's state vector.
They change only through reinit: either from outside (``d.reinit(v)``) or
from an event response. Derived values built with lift(), foldl() or
Discrete.bind() are recomputed synchronously, in topological order, every
time one of their inputs changes.

The dependency graph is a networkx DiGraph built from the changed value's
transitive dependents. It must be acyclic; bind() is the only way to close
a loop, and propagation refuses to run on one.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import networkx as nx
import numpy as np
from beartype import beartype

from simdae.errors import CyclicDependencyError
from simdae.expr import Symbolic, value
from simdae.variables import new_handle

logger = logging.getLogger(__name__)


class Discrete(Symbolic):
    """
    Value held constant between events.

    A Discrete may be a root (set only by reinit) or derived from other
    values through a function. Derived values are either lifted (recomputed
    from their inputs) or folded (recomputed from their previous value and
    their inputs).
    """

    def __init__(self, value: Any = 0.0, label: str = ""):
        self.handle = new_handle()
        self.value = value
        self.label = label
        self.dependents: List["Discrete"] = []
        self.inputs: Tuple[Any, ...] = ()
        self._fn: Optional[Callable[..., Any]] = None
        self._folded = False

    def __repr__(self) -> str:
        name = self.label or f"d{self.handle}"
        return f"{type(self).__name__}({name})"

    def _current_value(self) -> Any:
        return self.value

    @property
    def is_derived(self) -> bool:
        return self._fn is not None

    @property
    def is_folded(self) -> bool:
        return self._folded

    def bind(self, fn: Callable[..., Any], *inputs: Any) -> "Discrete":
        """
        Define this value as ``fn(*inputs)``, recomputed when an input changes.

        Binding an existing value allows a derived value to be declared
        before its inputs exist. The value is computed immediately.
        """
        self._attach(fn, inputs, folded=False)
        self.recompute()
        return self

    def reinit(self, v: Any) -> None:
        """Set the value from outside a simulation and update all dependents."""
        self.value = v
        propagate(self)

    def recompute(self) -> None:
        args = [value(i) for i in self.inputs]
        if self._folded:
            self.value = self._fn(self.value, *args)
        else:
            self.value = self._fn(*args)

    def _attach(self, fn: Callable[..., Any], inputs: Tuple[Any, ...], folded: bool) -> None:
        if self.is_derived:
            raise ValueError(f"{self!r} is already derived from other values")
        self._fn = fn
        self.inputs = tuple(inputs)
        self._folded = folded
        for i in self.inputs:
            if isinstance(i, Discrete):
                i.dependents.append(self)


class Parameter(Discrete):
    """A Discrete meant to be set from outside between simulation runs."""


@beartype
def lift(fn: Callable[..., Any], *inputs: Any) -> Discrete:
    """
    Derived value ``fn(*inputs)`` that follows its Discrete inputs.

    Example
    -------
    >>> a = Discrete(1.0)
    >>> b = lift(lambda x: 2 * x, a)
    >>> a.reinit(3.0)
    >>> b.value
    6.0
    """
    return Discrete().bind(fn, *inputs)


@beartype
def foldl(fn: Callable[..., Any], init: Any, *inputs: Any) -> Discrete:
    """
    Derived value that remembers its state.

    Starts at ``init``; every time an input changes the value becomes
    ``fn(previous, *inputs)``.
    """
    d = Discrete(init)
    d._attach(fn, tuple(inputs), folded=True)
    return d


def dependency_graph(roots: Iterable[Discrete]) -> nx.DiGraph:
    """Graph of every value reachable from ``roots`` through dependents."""
    graph = nx.DiGraph()
    stack = list(roots)
    seen = set()
    while stack:
        d = stack.pop()
        if d.handle in seen:
            continue
        seen.add(d.handle)
        graph.add_node(d.handle, node=d)
        for dep in d.dependents:
            graph.add_node(dep.handle, node=dep)
            graph.add_edge(d.handle, dep.handle)
            stack.append(dep)
    return graph


def check_acyclic(graph: nx.DiGraph) -> None:
    """Raise CyclicDependencyError if the dependency graph has a cycle."""
    if nx.is_directed_acyclic_graph(graph):
        return
    cycle = nx.find_cycle(graph)
    names = " -> ".join(repr(graph.nodes[u]["node"]) for u, _ in cycle)
    raise CyclicDependencyError(f"Cyclic dependency between discrete values: {names}")


def propagate(source: Discrete) -> None:
    """Recompute all transitive dependents of ``source`` in topological order."""
    graph = dependency_graph([source])
    check_acyclic(graph)
    logger.debug("reinit %r: updating %d dependents", source, graph.number_of_nodes() - 1)
    for h in nx.topological_sort(graph):
        if h == source.handle:
            continue
        graph.nodes[h]["node"].recompute()


def related(discretes: Iterable[Discrete]) -> List[Discrete]:
    """
    The given values plus everything they depend on and everything that
    depends on them, in a deterministic order.
    """
    found: Dict[int, Discrete] = {}
    stack = list(discretes)
    while stack:
        d = stack.pop(0)
        if d.handle in found:
            continue
        found[d.handle] = d
        stack.extend(i for i in d.inputs if isinstance(i, Discrete))
        stack.extend(d.dependents)
    return [found[h] for h in sorted(found)]


class Snapshot:
    """
    Saved values of a set of discrete values.

    Roots that are not Parameters and folded values are saved; restoring
    them and recomputing lifted values reproduces the state at the time of
    the snapshot. Parameters keep whatever value they were given since.
    """

    def __init__(self, discretes: Iterable[Discrete]):
        self.nodes = related(discretes)
        graph = dependency_graph(self.nodes)
        check_acyclic(graph)
        self._order = [graph.nodes[h]["node"] for h in nx.topological_sort(graph)]
        self._saved = {
            d.handle: _copy(d.value)
            for d in self.nodes
            if d.is_folded or (not d.is_derived and not isinstance(d, Parameter))
        }

    def restore(self) -> None:
        for d in self._order:
            if d.handle in self._saved:
                d.value = _copy(self._saved[d.handle])
            elif d.is_derived:
                d.recompute()


def _copy(v: Any) -> Any:
    return v.copy() if isinstance(v, np.ndarray) else v
