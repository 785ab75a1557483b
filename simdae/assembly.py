"""
Index assembly: EquationSet to numeric callbacks.

create_sim() assigns every retained Unknown a contiguous slot range in the
state vector ``y`` (its derivative uses the same range in ``yp``), in the
order the unknowns are first found while walking the equations. Discrete
and Parameter values become entries of a parameter vector ``p`` read when
a callback is called, so reinit() takes effect without recompiling.

The equations are converted to CasADi SX expressions over the symbols
``t``, ``y``, ``yp`` and ``p`` and compiled into casadi.Function objects:

- residual:        F(t, y, yp)
- linearization:   F, dF/dy, dF/dyp
- initial system:  main and initial equations with their Jacobians
- zero crossings:  one value per entry of the event table
- responses:       one function per reinit value

The event table holds the regular events first, then the structural
events, each group in the order elaboration found them.
"""

from __future__ import annotations

import logging
import operator
from typing import Any, Callable, Dict, List, Optional, Tuple

import casadi as ca
import numpy as np
from beartype import beartype

from simdae.config import DEFAULT_CONFIG, SimConfig
from simdae.elaboration import EquationSet, collect_discretes, collect_unknowns
from simdae.expr import ExprKind, evaluate, iter_leaves, is_symbolic
from simdae.reactive import Discrete
from simdae.types import Constraint
from simdae.variables import DerUnknown, TimeVar, Unknown

logger = logging.getLogger(__name__)


def _make_casadi_ops() -> Dict[ExprKind, Callable[..., Any]]:
    """Dispatch table from expression heads to CasADi operations."""
    unary = {
        ExprKind.IDENTITY: lambda a: a,
        ExprKind.NEG: operator.neg,
        ExprKind.NOT: ca.logic_not,
        ExprKind.SIN: ca.sin,
        ExprKind.COS: ca.cos,
        ExprKind.TAN: ca.tan,
        ExprKind.ASIN: ca.asin,
        ExprKind.ACOS: ca.acos,
        ExprKind.ATAN: ca.atan,
        ExprKind.SQRT: ca.sqrt,
        ExprKind.EXP: ca.exp,
        ExprKind.LOG: ca.log,
        ExprKind.LOG10: ca.log10,
        ExprKind.ABS: ca.fabs,
        ExprKind.SIGN: ca.sign,
        ExprKind.FLOOR: ca.floor,
        ExprKind.CEIL: ca.ceil,
        ExprKind.SINH: ca.sinh,
        ExprKind.COSH: ca.cosh,
        ExprKind.TANH: ca.tanh,
    }

    binary = {
        ExprKind.ADD: operator.add,
        ExprKind.SUB: operator.sub,
        ExprKind.MUL: operator.mul,
        ExprKind.DIV: operator.truediv,
        ExprKind.POW: operator.pow,
        ExprKind.MOD: ca.fmod,
        ExprKind.ATAN2: ca.atan2,
        ExprKind.MIN: ca.fmin,
        ExprKind.MAX: ca.fmax,
        ExprKind.AND: ca.logic_and,
        ExprKind.OR: ca.logic_or,
        ExprKind.INDEX: lambda a, i: a[i],
    }

    relational = {
        ExprKind.LT: operator.lt,
        ExprKind.LE: operator.le,
        ExprKind.GT: operator.gt,
        ExprKind.GE: operator.ge,
    }

    ternary = {
        ExprKind.IF_ELSE: ca.if_else,
    }

    return {**unary, **binary, **relational, **ternary}


_CASADI_OPS = _make_casadi_ops()


def _casadi_const(x: Any) -> Any:
    if isinstance(x, np.ndarray):
        return ca.DM(x.astype(float))
    if isinstance(x, (bool, np.bool_)):
        return float(x)
    return x


def _column(v: Any) -> ca.SX:
    if isinstance(v, (ca.SX, ca.DM)):
        return ca.vec(ca.SX(v))
    arr = np.atleast_1d(np.asarray(v, dtype=float)).reshape(-1, 1)
    return ca.SX(ca.DM(arr))


def _flat(v: Any) -> np.ndarray:
    return np.asarray(ca.DM(v).full(), dtype=float).ravel()


class Sim:
    """
    Numeric form of one EquationSet.

    Attributes
    ----------
    eqset : EquationSet
        The snapshot this Sim was assembled from.
    unknowns : list of Unknown
        Retained unknowns in slot order.
    unknown_index : dict
        Unknown handle to slice of ``y``/``yp``.
    labels : list of str
        Column label per slot; empty for unlabeled unknowns.
    id : ndarray of bool
        True for slots whose derivative appears in the equations.
    y0, yp0 : ndarray
        Initial values taken from the unknowns and their derivatives.
    discretes : list of Discrete
        Discrete values read into the parameter vector, in layout order.
    event_kinds : list of str
        ``"event"`` or ``"structural"`` per entry of the event table.
    """

    def __init__(self, eqset: EquationSet, config: SimConfig = DEFAULT_CONFIG):
        self.eqset = eqset
        self.config = config

        self.unknowns: List[Unknown] = collect_unknowns(eqset.equations)
        self.unknown_index: Dict[int, slice] = {}
        offset = 0
        for u in self.unknowns:
            if u.is_complex:
                raise TypeError(f"{u!r} has a complex value; complex unknowns cannot be simulated")
            self.unknown_index[u.handle] = slice(offset, offset + u.size)
            offset += u.size
        self.n_unknowns = offset

        self.labels: List[str] = []
        for u in self.unknowns:
            if u.size == 1 and np.ndim(u.value) == 0:
                self.labels.append(u.label)
            else:
                self.labels.extend(f"{u.label}[{k}]" if u.label else "" for k in range(u.size))

        self.y0 = np.zeros(self.n_unknowns)
        self.yp0 = np.zeros(self.n_unknowns)
        self.id = np.zeros(self.n_unknowns, dtype=bool)
        self.fixed = np.zeros(self.n_unknowns, dtype=bool)
        self.constraints: List[Constraint] = []
        for u in self.unknowns:
            sl = self.unknown_index[u.handle]
            self.y0[sl] = np.asarray(u.value, dtype=float).ravel()
            self.fixed[sl] = u.fixed
            self.constraints.extend([u.constraint] * u.size)
        seen_der = set()
        for eq in eqset.equations:
            for leaf in iter_leaves(eq):
                if isinstance(leaf, DerUnknown) and leaf.handle not in seen_der:
                    seen_der.add(leaf.handle)
                    sl = self.unknown_index[leaf.handle]
                    self.id[sl] = True
                    self.yp0[sl] = np.broadcast_to(np.asarray(leaf.value, dtype=float), (sl.stop - sl.start,))

        responses = [r for rs in eqset.pos_responses + eqset.neg_responses for r in rs]
        self.discretes: List[Discrete] = collect_discretes(
            list(eqset.equations)
            + list(eqset.initial_equations)
            + eqset.conditions
            + [r.value for r in responses]
        )
        self.targets: List[Discrete] = [r.target for r in responses if isinstance(r.target, Discrete)]
        self._p_index: Dict[int, slice] = {}
        offset = 0
        for d in self.discretes:
            n = int(np.size(d.value))
            self._p_index[d.handle] = slice(offset, offset + n)
            offset += n
        self.n_parameters = offset

        self._t = ca.SX.sym("t")
        self._y = ca.SX.sym("y", self.n_unknowns)
        self._yp = ca.SX.sym("yp", self.n_unknowns)
        self._p = ca.SX.sym("p", self.n_parameters)
        args = [self._t, self._y, self._yp, self._p]

        res = self._stack(eqset.equations, "equation")
        self.n_equations = res.size1()
        init = ca.vertcat(res, self._stack(eqset.initial_equations, "initial equation"))
        zc = self._stack(eqset.conditions, "event condition", scalar=True)

        self._f_res = ca.Function("residual", args, [res])
        self._f_lin = ca.Function(
            "linearization", args, [res, ca.jacobian(res, self._y), ca.jacobian(res, self._yp)]
        )
        self._f_init = ca.Function(
            "initial_system", args, [init, ca.jacobian(init, self._y), ca.jacobian(init, self._yp)]
        )
        self._f_zc = ca.Function("zero_crossings", args, [zc])

        self.event_kinds: List[str] = ["event"] * len(eqset.events) + ["structural"] * len(eqset.structural_events)
        self._pos = [self._compile_response(rs, f"pos{k}") for k, rs in enumerate(eqset.pos_responses)]
        self._neg = [self._compile_response(rs, f"neg{k}") for k, rs in enumerate(eqset.neg_responses)]

        logger.log(
            config.log_level,
            "assembled generation %d: %d unknowns (%d differential), %d equations, %d parameters",
            eqset.generation,
            self.n_unknowns,
            int(self.id.sum()),
            self.n_equations,
            self.n_parameters,
        )

    def __repr__(self) -> str:
        return f"Sim(generation={self.generation}, unknowns={self.n_unknowns}, events={self.n_events})"

    @property
    def generation(self) -> int:
        return self.eqset.generation

    @property
    def n_events(self) -> int:
        return len(self.event_kinds)

    # -------------------------------------------------------------------------
    # Symbolic conversion
    # -------------------------------------------------------------------------

    def _leaf(self, x: Any) -> Any:
        if isinstance(x, Unknown):
            return self._slot(self._y, x, x)
        if isinstance(x, DerUnknown):
            return self._slot(self._yp, x.parent, x)
        if isinstance(x, TimeVar):
            return self._t
        if isinstance(x, Discrete):
            sl = self._p_index[x.handle]
            return self._p[sl.start] if np.ndim(x.value) == 0 else self._p[sl]
        raise TypeError(f"Cannot compile {type(x).__name__}: {x!r}")

    def _slot(self, vec: ca.SX, u: Unknown, ref: Any) -> ca.SX:
        sl = self.unknown_index.get(u.handle)
        if sl is None:
            raise ValueError(
                f"{ref!r} is used in an event condition, response or initial equation "
                "but appears in no model equation"
            )
        if np.ndim(u.value) == 0:
            return vec[sl.start]
        return vec[sl.start : sl.stop]

    def to_casadi(self, x: Any) -> Any:
        """Convert an expression to CasADi over this Sim's symbols."""
        return evaluate(x, self._leaf, _CASADI_OPS, _casadi_const)

    def _stack(self, items: Any, what: str, scalar: bool = False) -> ca.SX:
        cols = []
        for item in items:
            col = _column(self.to_casadi(item))
            if scalar and col.size1() != 1:
                raise ValueError(f"{what} must be scalar, got {col.size1()} values: {item!r}")
            cols.append(col)
        if not cols:
            return ca.SX(0, 1)
        return ca.vertcat(*cols)

    def _compile_response(self, reinits: Tuple[Any, ...], name: str) -> List[Tuple[Any, Any]]:
        out = []
        for k, r in enumerate(reinits):
            if isinstance(r.target, Unknown):
                self._slot(self._y, r.target, r)
            elif isinstance(r.target, DerUnknown):
                self._slot(self._yp, r.target.parent, r)
            if is_symbolic(r.value):
                fn = ca.Function(f"{name}_{k}", [self._t, self._y, self._yp, self._p], [_column(self.to_casadi(r.value))])
                out.append((r.target, fn))
            else:
                out.append((r.target, r.value))
        return out

    # -------------------------------------------------------------------------
    # Callbacks
    # -------------------------------------------------------------------------

    def parameters(self) -> np.ndarray:
        """Current values of the Discrete inputs, in layout order."""
        if not self.discretes:
            return np.zeros(0)
        return np.concatenate([np.asarray(d.value, dtype=float).ravel() for d in self.discretes])

    def residual(self, t: float, y: np.ndarray, yp: np.ndarray) -> np.ndarray:
        return _flat(self._f_res(t, y, yp, self.parameters()))

    def linearize(self, t: float, y: np.ndarray, yp: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Residual and its Jacobians with respect to ``y`` and ``yp``."""
        f, jy, jyp = self._f_lin(t, y, yp, self.parameters())
        return _flat(f), np.asarray(jy.full()), np.asarray(jyp.full())

    def jacobians(self, t: float, y: np.ndarray, yp: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        _, jy, jyp = self.linearize(t, y, yp)
        return jy, jyp

    def initial_system(self, t: float, y: np.ndarray, yp: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Like linearize(), with the initial equations appended."""
        f, jy, jyp = self._f_init(t, y, yp, self.parameters())
        return _flat(f), np.asarray(jy.full()), np.asarray(jyp.full())

    def zero_crossings(self, t: float, y: np.ndarray, yp: np.ndarray) -> np.ndarray:
        return _flat(self._f_zc(t, y, yp, self.parameters()))

    def apply_response(
        self, index: int, direction: int, t: float, y: np.ndarray, yp: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray, Optional[int]]:
        """
        Run the response of event ``index`` for a crossing in ``direction``.

        Reinit values are evaluated one after another, each one seeing the
        assignments made before it. Returns the new ``y`` and ``yp`` and, if
        the entry is a structural event that fires in this direction, its
        index among the structural events.
        """
        y = np.array(y, dtype=float)
        yp = np.array(yp, dtype=float)
        responses = self._pos[index] if direction > 0 else self._neg[index]
        for target, fn in responses:
            if isinstance(fn, ca.Function):
                v = _flat(fn(t, y, yp, self.parameters()))
            else:
                v = fn
            self._assign(target, v, y, yp)

        j = index - len(self.eqset.events)
        if j >= 0 and self.eqset.structural_events[j].activates(direction):
            return y, yp, j
        return y, yp, None

    def _assign(self, target: Any, v: Any, y: np.ndarray, yp: np.ndarray) -> None:
        if isinstance(target, Discrete):
            if isinstance(v, np.ndarray) and np.ndim(target.value) == 0:
                v = v[0]
                if isinstance(target.value, (bool, np.bool_)):
                    v = bool(v)
                else:
                    v = float(v)
            target.reinit(v)
        elif isinstance(target, DerUnknown):
            yp[self.unknown_index[target.handle]] = v
        else:
            y[self.unknown_index[target.handle]] = v


@beartype
def create_sim(eqset: EquationSet, config: SimConfig = DEFAULT_CONFIG) -> Sim:
    """
    Assign slots and compile callbacks for an EquationSet.

    Raises
    ------
    TypeError
        If an unknown has a complex value or an equation entry cannot be
        compiled.
    ValueError
        If an event condition, response or initial equation refers to an
        unknown that no model equation uses.
    """
    return Sim(eqset, config)
