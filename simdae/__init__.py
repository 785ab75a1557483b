"""
simdae - equation-based modeling with hybrid and structural events

Models are nested lists of equations over Unknowns. elaborate() flattens a
model into an EquationSet, create_sim() compiles it with CasADi, and sim()
integrates it through events and structural model changes.

    from simdae import Unknown, der, sim

    def decay():
        x = Unknown(1.0, "x")
        return [der(x) + x]

    result = sim(decay(), 5.0)
"""

__version__ = "0.1.0"

from simdae.assembly import Sim, create_sim
from simdae.config import DEFAULT_CONFIG, SimConfig
from simdae.elaboration import EquationSet, NodeBalance, check_balance, collect_unknowns, elaborate, flatten_model
from simdae.equations import Event, InitialEquation, RefBranch, Reinit, StructuralEvent, bool_event, branch, reinit
from simdae.errors import (
    CyclicDependencyError,
    InitializationWarning,
    IntegrationError,
    ModelBalanceError,
    StructuralEventError,
)
from simdae.expr import (
    Expr,
    ExprKind,
    acos,
    asin,
    atan,
    atan2,
    call,
    ceil,
    cos,
    cosh,
    exp,
    floor,
    identity,
    ifelse,
    log,
    log10,
    maximum,
    minimum,
    mexpr,
    sign,
    sin,
    sinh,
    sqrt,
    tan,
    tanh,
    value,
)
from simdae.reactive import Discrete, Parameter, foldl, lift
from simdae.simulation import SimResult, SimState, create_simstate, sim, solve
from simdae.structural import StructuralEventController, StructuralState
from simdae.types import Constraint, InitMode
from simdae.variables import MTime, DerUnknown, Unknown, der

__all__ = [
    "__version__",
    # Symbolic values
    "Unknown",
    "DerUnknown",
    "der",
    "MTime",
    "Discrete",
    "Parameter",
    "lift",
    "foldl",
    "Constraint",
    # Expressions
    "Expr",
    "ExprKind",
    "mexpr",
    "value",
    "call",
    "identity",
    "ifelse",
    "sin",
    "cos",
    "tan",
    "asin",
    "acos",
    "atan",
    "atan2",
    "sqrt",
    "exp",
    "log",
    "log10",
    "sign",
    "floor",
    "ceil",
    "sinh",
    "cosh",
    "tanh",
    "minimum",
    "maximum",
    # Model tree
    "RefBranch",
    "branch",
    "Event",
    "bool_event",
    "Reinit",
    "reinit",
    "InitialEquation",
    "StructuralEvent",
    # Elaboration and assembly
    "EquationSet",
    "NodeBalance",
    "elaborate",
    "flatten_model",
    "collect_unknowns",
    "check_balance",
    "Sim",
    "create_sim",
    # Simulation
    "SimConfig",
    "DEFAULT_CONFIG",
    "InitMode",
    "SimState",
    "SimResult",
    "create_simstate",
    "sim",
    "solve",
    "StructuralEventController",
    "StructuralState",
    # Errors
    "ModelBalanceError",
    "StructuralEventError",
    "CyclicDependencyError",
    "IntegrationError",
    "InitializationWarning",
]
