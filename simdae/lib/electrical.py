"""
Electrical components.

Every component is a function of its terminal nodes returning a list of
equations. Node voltages are Voltage unknowns (or the number 0.0 for
ground); branch() adds the component current to the balance of each node.

    n1 = Voltage("n1")
    g = 0.0
    model = [sine_voltage(n1, g, 10.0, 1.0), resistor(n1, g, 5.0)]
"""

from __future__ import annotations

import math
from typing import Any

from simdae.equations import RefBranch, StructuralEvent, bool_event, branch
from simdae.expr import ifelse, sin
from simdae.reactive import Discrete
from simdae.variables import MTime, Unknown, der


class Voltage(Unknown):
    category_default = "voltage"


class Current(Unknown):
    category_default = "current"


def resistor(n1: Any, n2: Any, R: Any = 1.0) -> list:
    i = Current()
    v = Voltage()
    return [
        branch(n1, n2, v, i),
        R * i - v,
    ]


def capacitor(n1: Any, n2: Any, C: Any = 1.0) -> list:
    i = Current()
    v = Voltage(n1 - n2)
    return [
        branch(n1, n2, v, i),
        C * der(v) - i,
    ]


def inductor(n1: Any, n2: Any, L: Any = 1.0) -> list:
    i = Current()
    v = Voltage()
    return [
        branch(n1, n2, v, i),
        L * der(i) - v,
    ]


def sine_voltage(n1: Any, n2: Any, V: Any = 1.0, f: Any = 1.0, ang: Any = 0.0, offset: Any = 0.0) -> list:
    """Voltage source ``V * sin(2 pi f t + ang) + offset`` from n1 to n2."""
    i = Current()
    v = Voltage()
    return [
        branch(n1, n2, v, i),
        v - (V * sin(2 * math.pi * f * MTime + ang) + offset),
    ]


def signal_current(n1: Any, n2: Any, I: Any) -> list:
    """Current ``I`` flowing through the component from n1 to n2."""
    return [
        RefBranch(n1, I),
        RefBranch(n2, -I),
    ]


def ideal_diode(n1: Any, n2: Any, Vknee: Any = 0.0, Ron: Any = 1e-5, Goff: Any = 1e-5) -> list:
    """
    Piecewise-linear diode switched by an event.

    ``s`` is a curve parameter along the diode characteristic; the
    discrete ``open_diode`` follows the sign of ``s`` through bool_event().
    """
    i = Current()
    v = Voltage()
    s = Unknown()
    open_diode = Discrete(False)
    return [
        branch(n1, n2, v, i),
        bool_event(open_diode, -s),
        v - (s * ifelse(open_diode, 1.0, Ron) + Vknee),
        i - (s * ifelse(open_diode, Goff, 1.0) + Goff * Vknee),
    ]


def _diode_on(v: Any, i: Any, Ron: Any) -> list:
    return [v - Ron * i]


def _diode_off(v: Any, i: Any, Goff: Any) -> list:
    return [i - Goff * v]


def structural_diode(n1: Any, n2: Any, Ron: Any = 1e-3, Goff: Any = 1e-6, conducting: bool = True) -> list:
    """
    Diode whose equation is swapped by structural events.

    While conducting the diode is a small resistance ``Ron``; when the
    current turns negative it is replaced by a small conductance ``Goff``,
    and back again once the voltage turns positive. Each switch produces
    a new generation of the model.
    """
    i = Current()
    v = Voltage()
    return [
        branch(n1, n2, v, i),
        _switching(v, i, Ron, Goff, conducting),
    ]


def _switching(v: Any, i: Any, Ron: Any, Goff: Any, conducting: bool) -> StructuralEvent:
    if conducting:
        return StructuralEvent(
            -i,
            _diode_on(v, i, Ron),
            lambda: _switching(v, i, Ron, Goff, False),
        )
    return StructuralEvent(
        v,
        _diode_off(v, i, Goff),
        lambda: _switching(v, i, Ron, Goff, True),
    )
