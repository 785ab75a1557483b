"""
Symbolic expression layer.

Unknowns, derivatives, time and discrete values combine into expression
trees instead of evaluating immediately. An expression node is a head
(ExprKind) plus an ordered operand tuple; operands are other expressions,
symbolic leaves or plain numbers.

================================================================================
DESIGN PRINCIPLES
================================================================================

1. IMMEDIATE WHEN POSSIBLE: mexpr() evaluates right away when no operand is
   symbolic, so ordinary arithmetic on numbers inside model functions stays
   ordinary arithmetic.
2. IDENTITY SEMANTICS: Symbolic objects do not override ``==``. Identity is
   what the elaborator groups on (through integer handles), and ``==`` on an
   Unknown must never quietly build an expression.
3. BACKEND-AGNOSTIC: evaluate() walks a tree with a caller-supplied leaf
   function and operator table. The numeric table lives here; the CasADi
   table lives in simdae.assembly.

================================================================================
"""

from __future__ import annotations

import operator
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

import numpy as np
from beartype import beartype


class ExprKind(Enum):
    """Heads of expression nodes."""

    # Wrapper stripped during elaboration
    IDENTITY = auto()

    # Unary
    NEG = auto()
    NOT = auto()

    # Binary arithmetic
    ADD = auto()
    SUB = auto()
    MUL = auto()
    DIV = auto()
    POW = auto()
    MOD = auto()

    # Relational
    LT = auto()
    LE = auto()
    GT = auto()
    GE = auto()

    # Boolean
    AND = auto()
    OR = auto()

    # Conditional: ifelse(condition, a, b)
    IF_ELSE = auto()

    # Element of a vector-valued operand (index stored as second operand)
    INDEX = auto()

    # User function applied to the operands
    CALL = auto()

    # Math functions
    SIN = auto()
    COS = auto()
    TAN = auto()
    ASIN = auto()
    ACOS = auto()
    ATAN = auto()
    ATAN2 = auto()
    SQRT = auto()
    EXP = auto()
    LOG = auto()
    LOG10 = auto()
    ABS = auto()
    SIGN = auto()
    FLOOR = auto()
    CEIL = auto()
    SINH = auto()
    COSH = auto()
    TANH = auto()
    MIN = auto()
    MAX = auto()


_INFIX = {
    ExprKind.ADD: "+",
    ExprKind.SUB: "-",
    ExprKind.MUL: "*",
    ExprKind.DIV: "/",
    ExprKind.POW: "**",
    ExprKind.MOD: "%",
    ExprKind.LT: "<",
    ExprKind.LE: "<=",
    ExprKind.GT: ">",
    ExprKind.GE: ">=",
    ExprKind.AND: "and",
    ExprKind.OR: "or",
}


class Symbolic:
    """
    Mixin for values that stay symbolic inside model expressions.

    Arithmetic and comparison operators build expressions through mexpr().
    Subclasses provide ``_current_value()`` so value() can evaluate a tree
    with the values currently stored on its leaves.
    """

    # Make numpy defer binary operators to us instead of broadcasting
    __array_ufunc__ = None

    def _current_value(self) -> Any:
        raise NotImplementedError

    def __add__(self, other: Any) -> Any:
        return mexpr(ExprKind.ADD, self, other)

    def __radd__(self, other: Any) -> Any:
        return mexpr(ExprKind.ADD, other, self)

    def __sub__(self, other: Any) -> Any:
        return mexpr(ExprKind.SUB, self, other)

    def __rsub__(self, other: Any) -> Any:
        return mexpr(ExprKind.SUB, other, self)

    def __mul__(self, other: Any) -> Any:
        return mexpr(ExprKind.MUL, self, other)

    def __rmul__(self, other: Any) -> Any:
        return mexpr(ExprKind.MUL, other, self)

    def __truediv__(self, other: Any) -> Any:
        return mexpr(ExprKind.DIV, self, other)

    def __rtruediv__(self, other: Any) -> Any:
        return mexpr(ExprKind.DIV, other, self)

    def __pow__(self, other: Any) -> Any:
        return mexpr(ExprKind.POW, self, other)

    def __rpow__(self, other: Any) -> Any:
        return mexpr(ExprKind.POW, other, self)

    def __mod__(self, other: Any) -> Any:
        return mexpr(ExprKind.MOD, self, other)

    def __neg__(self) -> Any:
        return mexpr(ExprKind.NEG, self)

    def __pos__(self) -> Any:
        return mexpr(ExprKind.IDENTITY, self)

    def __abs__(self) -> Any:
        return mexpr(ExprKind.ABS, self)

    def __lt__(self, other: Any) -> Any:
        return mexpr(ExprKind.LT, self, other)

    def __le__(self, other: Any) -> Any:
        return mexpr(ExprKind.LE, self, other)

    def __gt__(self, other: Any) -> Any:
        return mexpr(ExprKind.GT, self, other)

    def __ge__(self, other: Any) -> Any:
        return mexpr(ExprKind.GE, self, other)

    def __and__(self, other: Any) -> Any:
        return mexpr(ExprKind.AND, self, other)

    def __rand__(self, other: Any) -> Any:
        return mexpr(ExprKind.AND, other, self)

    def __or__(self, other: Any) -> Any:
        return mexpr(ExprKind.OR, self, other)

    def __ror__(self, other: Any) -> Any:
        return mexpr(ExprKind.OR, other, self)

    def __invert__(self) -> Any:
        return mexpr(ExprKind.NOT, self)

    __hash__ = object.__hash__


@dataclass(frozen=True, eq=False)
class Expr(Symbolic):
    """
    Immutable expression node.

    ``args`` holds the ordered operands. ``func`` is only used by CALL nodes
    and holds the Python callable applied to the operand values.
    """

    kind: ExprKind
    args: Tuple[Any, ...] = ()
    func: Optional[Callable[..., Any]] = None

    def __repr__(self) -> str:
        if self.kind in _INFIX:
            return f"({self.args[0]!r} {_INFIX[self.kind]} {self.args[1]!r})"
        if self.kind == ExprKind.NEG:
            return f"(-{self.args[0]!r})"
        if self.kind == ExprKind.NOT:
            return f"(not {self.args[0]!r})"
        if self.kind == ExprKind.INDEX:
            return f"{self.args[0]!r}[{self.args[1]}]"
        if self.kind == ExprKind.IF_ELSE:
            c, a, b = self.args
            return f"ifelse({c!r}, {a!r}, {b!r})"
        if self.kind == ExprKind.IDENTITY:
            return f"identity({', '.join(repr(a) for a in self.args)})"
        name = getattr(self.func, "__name__", "call") if self.kind == ExprKind.CALL else self.kind.name.lower()
        return f"{name}({', '.join(repr(a) for a in self.args)})"

    def __bool__(self) -> bool:
        raise TypeError("A symbolic expression has no truth value; use ifelse() for conditionals")

    def __getitem__(self, index: int) -> Any:
        return mexpr(ExprKind.INDEX, self, index)

    def _current_value(self) -> Any:
        return evaluate(self, _leaf_value, NUMERIC_OPS)

    @property
    def is_empty(self) -> bool:
        """True for an identity wrapper around nothing (a no-op equation)."""
        return self.kind == ExprKind.IDENTITY and len(self.args) == 0


# =============================================================================
# Construction
# =============================================================================


def is_symbolic(x: Any) -> bool:
    """True if x is an Unknown, derivative, time, discrete value or expression."""
    return isinstance(x, Symbolic)


def _normalize_operand(x: Any) -> Any:
    if isinstance(x, (list, tuple)) and not any(is_symbolic(v) for v in x):
        return np.asarray(x, dtype=float)
    return x


def mexpr(kind: ExprKind, *args: Any, func: Optional[Callable[..., Any]] = None) -> Any:
    """
    Build an expression node, or evaluate immediately if nothing is symbolic.

    Example
    -------
    >>> mexpr(ExprKind.ADD, 1.0, 2.0)
    3.0
    """
    args = tuple(_normalize_operand(a) for a in args)
    if any(is_symbolic(a) for a in args):
        return Expr(kind, args, func)
    if kind == ExprKind.CALL:
        return func(*args)
    return NUMERIC_OPS[kind](*args)


def call(func: Callable[..., Any], *args: Any) -> Any:
    """Apply a user function to possibly symbolic arguments."""
    return mexpr(ExprKind.CALL, *args, func=func)


def identity(*args: Any) -> Expr:
    """Identity wrapper; ``identity()`` is an empty equation that elaboration drops."""
    return Expr(ExprKind.IDENTITY, tuple(args))


# =============================================================================
# Evaluation
# =============================================================================


def evaluate(
    x: Any,
    leaf: Callable[[Any], Any],
    ops: Dict[ExprKind, Callable[..., Any]],
    const: Optional[Callable[[Any], Any]] = None,
) -> Any:
    """
    Evaluate an expression tree bottom-up.

    ``leaf`` maps symbolic leaves (anything Symbolic that is not an Expr) to
    values; ``ops`` maps expression heads to functions of the operand values.
    Non-symbolic operands go through ``const`` when given and are passed
    unchanged otherwise. INDEX positions are never converted.
    """
    if isinstance(x, Expr):
        if x.kind == ExprKind.INDEX:
            return ops[x.kind](evaluate(x.args[0], leaf, ops, const), x.args[1])
        vals = [evaluate(a, leaf, ops, const) for a in x.args]
        if x.kind == ExprKind.CALL:
            return x.func(*vals)
        return ops[x.kind](*vals)
    if isinstance(x, Symbolic):
        return leaf(x)
    if const is not None:
        return const(x)
    return x


def _leaf_value(x: Symbolic) -> Any:
    v = x._current_value()
    if isinstance(v, float):
        return np.float64(v)
    return v


def value(x: Any) -> Any:
    """
    The current value of an object.

    Plain objects are returned unchanged. Unknowns, derivatives and discrete
    values return their stored value; expressions are evaluated with the
    values currently stored on their leaves. Lists are evaluated elementwise.
    """
    if isinstance(x, (list, tuple)):
        return [value(v) for v in x]
    if isinstance(x, Symbolic):
        with np.errstate(all="ignore"):
            return x._current_value()
    return x


def _ifelse_numeric(c: Any, a: Any, b: Any) -> Any:
    if np.ndim(c) > 0:
        return np.where(c, a, b)
    return a if c else b


def _identity_numeric(*args: Any) -> Any:
    return args[0] if args else None


NUMERIC_OPS: Dict[ExprKind, Callable[..., Any]] = {
    ExprKind.IDENTITY: _identity_numeric,
    ExprKind.NEG: operator.neg,
    ExprKind.NOT: np.logical_not,
    ExprKind.ADD: operator.add,
    ExprKind.SUB: operator.sub,
    ExprKind.MUL: operator.mul,
    ExprKind.DIV: operator.truediv,
    ExprKind.POW: operator.pow,
    ExprKind.MOD: np.fmod,
    ExprKind.LT: operator.lt,
    ExprKind.LE: operator.le,
    ExprKind.GT: operator.gt,
    ExprKind.GE: operator.ge,
    ExprKind.AND: np.logical_and,
    ExprKind.OR: np.logical_or,
    ExprKind.IF_ELSE: _ifelse_numeric,
    ExprKind.INDEX: lambda a, i: a[i],
    ExprKind.SIN: np.sin,
    ExprKind.COS: np.cos,
    ExprKind.TAN: np.tan,
    ExprKind.ASIN: np.arcsin,
    ExprKind.ACOS: np.arccos,
    ExprKind.ATAN: np.arctan,
    ExprKind.ATAN2: np.arctan2,
    ExprKind.SQRT: np.sqrt,
    ExprKind.EXP: np.exp,
    ExprKind.LOG: np.log,
    ExprKind.LOG10: np.log10,
    ExprKind.ABS: np.abs,
    ExprKind.SIGN: np.sign,
    ExprKind.FLOOR: np.floor,
    ExprKind.CEIL: np.ceil,
    ExprKind.SINH: np.sinh,
    ExprKind.COSH: np.cosh,
    ExprKind.TANH: np.tanh,
    ExprKind.MIN: np.minimum,
    ExprKind.MAX: np.maximum,
}


def iter_leaves(x: Any) -> Iterator[Any]:
    """Yield the symbolic leaves of an expression depth-first, left to right."""
    if isinstance(x, Expr):
        for a in x.args:
            yield from iter_leaves(a)
    elif isinstance(x, Symbolic):
        yield x


def strip(x: Any) -> Any:
    """Remove identity wrappers from an expression tree."""
    if not isinstance(x, Expr):
        return x
    if x.kind == ExprKind.IDENTITY and len(x.args) == 1:
        return strip(x.args[0])
    if x.is_empty:
        return x
    return Expr(x.kind, tuple(strip(a) for a in x.args), x.func)


# =============================================================================
# Math functions
# =============================================================================


def _unary(kind: ExprKind, doc: str) -> Callable[[Any], Any]:
    def f(x: Any) -> Any:
        return mexpr(kind, x)

    f.__name__ = kind.name.lower()
    f.__doc__ = doc
    return f


sin = _unary(ExprKind.SIN, "Sine.")
cos = _unary(ExprKind.COS, "Cosine.")
tan = _unary(ExprKind.TAN, "Tangent.")
asin = _unary(ExprKind.ASIN, "Inverse sine.")
acos = _unary(ExprKind.ACOS, "Inverse cosine.")
atan = _unary(ExprKind.ATAN, "Inverse tangent.")
sqrt = _unary(ExprKind.SQRT, "Square root.")
exp = _unary(ExprKind.EXP, "Exponential.")
log = _unary(ExprKind.LOG, "Natural logarithm.")
log10 = _unary(ExprKind.LOG10, "Base-10 logarithm.")
sign = _unary(ExprKind.SIGN, "Sign: -1, 0 or 1.")
floor = _unary(ExprKind.FLOOR, "Floor.")
ceil = _unary(ExprKind.CEIL, "Ceiling.")
sinh = _unary(ExprKind.SINH, "Hyperbolic sine.")
cosh = _unary(ExprKind.COSH, "Hyperbolic cosine.")
tanh = _unary(ExprKind.TANH, "Hyperbolic tangent.")


def atan2(y: Any, x: Any) -> Any:
    """Four-quadrant inverse tangent of y/x."""
    return mexpr(ExprKind.ATAN2, y, x)


def minimum(a: Any, b: Any) -> Any:
    """Elementwise minimum."""
    return mexpr(ExprKind.MIN, a, b)


def maximum(a: Any, b: Any) -> Any:
    """Elementwise maximum."""
    return mexpr(ExprKind.MAX, a, b)


@beartype
def ifelse(condition: Any, a: Any, b: Any) -> Any:
    """
    Conditional expression for model equations.

    A regular ``if`` cannot branch on a symbolic condition; ifelse() keeps the
    choice symbolic until evaluation. With a plain condition it picks a branch
    immediately.

    Example
    -------
    >>> ifelse(True, 1.0, 2.0)
    1.0
    """
    return mexpr(ExprKind.IF_ELSE, condition, a, b)
