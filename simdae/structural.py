"""
Structural event controller.

When a StructuralEvent's condition crosses zero in its activation
direction, the controller swaps the event's default sub-model for its
replacement and rebuilds the whole system:

    STABLE --trigger()--> TRIGGERED --reflatten()--> REFLATTENED

reflatten() marks the event activated, materializes the replacement,
elaborates the entire model tree again as the next generation, checks the
balance, assembles a new Sim and carries current values forward by
unknown handle. REFLATTENED is final for the event that fired; the new
generation gets a fresh controller state through reset().
"""

from __future__ import annotations

import logging
from enum import Enum, auto
from typing import List, Optional, Tuple

import numpy as np

from simdae.assembly import Sim, create_sim
from simdae.config import DEFAULT_CONFIG, SimConfig
from simdae.elaboration import check_balance, elaborate
from simdae.equations import StructuralEvent
from simdae.errors import StructuralEventError

logger = logging.getLogger(__name__)


class StructuralState(Enum):
    STABLE = auto()  # Condition not crossed since the last elaboration
    TRIGGERED = auto()  # Crossing detected, replacement not installed yet
    REFLATTENED = auto()  # Replacement installed, new generation built


def carry_forward(old: Sim, new: Sim, y: np.ndarray, yp: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Initial vectors for ``new``: values of unknowns present in both Sims
    come from ``y``/``yp``, the rest from the new model's initial values.
    """
    y1 = new.y0.copy()
    yp1 = new.yp0.copy()
    for h, sl in new.unknown_index.items():
        old_sl = old.unknown_index.get(h)
        if old_sl is not None and old_sl.stop - old_sl.start == sl.stop - sl.start:
            y1[sl] = y[old_sl]
            yp1[sl] = yp[old_sl]
    return y1, yp1


class StructuralEventController:
    """
    Drives one structural activation at a time.

    ``fired`` collects every StructuralEvent activated through this
    controller, so a simulation run can undo the flags when it ends.
    """

    def __init__(self, config: SimConfig = DEFAULT_CONFIG):
        self.config = config
        self.state = StructuralState.STABLE
        self.pending: Optional[int] = None
        self.fired: List[StructuralEvent] = []

    def trigger(self, index: int) -> None:
        """Record that structural event ``index`` crossed in its activation direction."""
        if self.state != StructuralState.STABLE:
            raise RuntimeError(f"cannot trigger structural event {index} in state {self.state.name}")
        self.state = StructuralState.TRIGGERED
        self.pending = index

    def reflatten(self, sim: Sim, t: float, y: np.ndarray, yp: np.ndarray) -> Tuple[Sim, np.ndarray, np.ndarray]:
        """
        Install the replacement of the triggered event and rebuild.

        Returns the new Sim and the carried-forward ``y`` and ``yp``.

        Raises
        ------
        StructuralEventError
            If the new generation is not balanced.
        """
        if self.state != StructuralState.TRIGGERED:
            raise RuntimeError(f"no structural event triggered (state {self.state.name})")
        event = sim.eqset.structural_events[self.pending]
        event.activated = True
        self.fired.append(event)
        event.materialize()

        generation = sim.generation + 1
        eqset = elaborate(sim.eqset, generation=generation, config=self.config)
        check_balance(eqset, error=StructuralEventError)
        new_sim = create_sim(eqset, self.config)
        check_balance(new_sim, error=StructuralEventError)
        y1, yp1 = carry_forward(sim, new_sim, y, yp)

        self.state = StructuralState.REFLATTENED
        logger.log(
            self.config.log_level,
            "t=%.6g: structural event %r activated, generation %d has %d unknowns",
            t,
            event,
            generation,
            new_sim.n_unknowns,
        )
        return new_sim, y1, yp1

    def reset(self) -> None:
        """Return to STABLE for the next generation."""
        self.state = StructuralState.STABLE
        self.pending = None

    def undo(self) -> None:
        """Clear the activated flag of every event this controller fired."""
        for event in self.fired:
            event.activated = False
        self.fired.clear()
