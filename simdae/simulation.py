"""
Simulation driver and results.

sim() runs a model from its initial time to ``tstop``:

1. Elaborate and assemble the model (unless given a Sim or SimState).
2. Compute consistent initial values.
3. Step the BDF integrator toward each output time, letting it choose
   the step size. When an event condition changes sign inside a step,
   the step is shortened to the crossing, a row is recorded, the
   responses run, each structural event that fired rebuilds the system
   in turn, values are made consistent again, and a second row is
   recorded at the same time.
4. Record a row at every output time.

A run leaves the model as it found it: structural events activated during
the run are reset and Discrete values (other than Parameters) are restored
when it ends, so running the same model twice gives identical results.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
from beartype import beartype

from simdae.assembly import Sim, create_sim
from simdae.config import DEFAULT_CONFIG, SimConfig
from simdae.elaboration import EquationSet, check_balance, elaborate
from simdae.reactive import Snapshot
from simdae.solvers import BDFIntegrator, find_crossings, initialize, locate_crossing, scan_crossings
from simdae.structural import StructuralEventController
from simdae.types import InitMode, Real
from simdae.variables import Unknown

logger = logging.getLogger(__name__)


# =============================================================================
# Results
# =============================================================================


@dataclass
class SimResult:
    """
    Sampled trajectory of a simulation.

    ``y`` has one row per sample; column 0 is time and the remaining
    columns follow ``colnames``. Columns are the labeled unknowns of every
    generation the run went through, in the order they were first seen.
    Samples taken while an unknown was not part of the model are NaN.

    Example
    -------
    >>> result = sim(vanderpol(), 10.0, 500)  # doctest: +SKIP
    >>> result.t, result["x"]  # doctest: +SKIP
    """

    y: np.ndarray
    colnames: List[str]
    event_times: List[float] = field(default_factory=list)
    generations: int = 1
    _keys: Dict[Tuple[int, int], int] = field(default_factory=dict, repr=False)

    @property
    def t(self) -> np.ndarray:
        return self.y[:, 0]

    @property
    def available_names(self) -> List[str]:
        return list(self.colnames)

    def __getitem__(self, key: str) -> np.ndarray:
        """Column by label; ``"t"`` is time."""
        if key == "t":
            return self.t
        if key not in self.colnames:
            raise KeyError(f"'{key}' not in result. Available: {self.available_names}")
        return self.y[:, 1 + self.colnames.index(key)]

    @beartype
    def __call__(self, var: Union[Unknown, str]) -> np.ndarray:
        """
        Trajectory of an unknown, or of a column given by label.

        A vector unknown returns one column per element.
        """
        if isinstance(var, str):
            return self[var]
        cols = [c for (h, _), c in sorted(self._keys.items()) if h == var.handle]
        if not cols:
            raise KeyError(f"{var!r} is not in the result (unlabeled or not part of the model)")
        data = self.y[:, [1 + c for c in cols]]
        return data[:, 0] if len(cols) == 1 and np.ndim(var.value) == 0 else data


class _Recorder:
    """Collects rows; columns grow as new generations add labeled unknowns."""

    def __init__(self) -> None:
        self.keys: Dict[Tuple[int, int], int] = {}
        self.names: List[str] = []
        self.rows: List[Tuple[float, Dict[int, float]]] = []

    def record(self, sim: Sim, t: float, y: np.ndarray) -> None:
        row: Dict[int, float] = {}
        for u in sim.unknowns:
            if not u.label:
                continue
            sl = sim.unknown_index[u.handle]
            vector = np.ndim(u.value) > 0
            for k, slot in enumerate(range(sl.start, sl.stop)):
                key = (u.handle, k)
                if key not in self.keys:
                    self.keys[key] = len(self.names)
                    self.names.append(f"{u.label}[{k}]" if vector else u.label)
                row[self.keys[key]] = float(y[slot])
        self.rows.append((float(t), row))

    def result(self, event_times: List[float], generations: int) -> SimResult:
        y = np.full((len(self.rows), 1 + len(self.names)), np.nan)
        for i, (t, row) in enumerate(self.rows):
            y[i, 0] = t
            for c, v in row.items():
                y[i, 1 + c] = v
        return SimResult(y, list(self.names), list(event_times), generations, dict(self.keys))


# =============================================================================
# State
# =============================================================================


@dataclass(eq=False)
class SimState:
    """
    A Sim plus the values a run starts from.

    ``snapshot`` holds the Discrete values to restore after each run.
    """

    sim: Sim
    t: float
    y: np.ndarray
    yp: np.ndarray
    snapshot: Snapshot

    @property
    def generation(self) -> int:
        return self.sim.generation


def _snapshot(sim: Sim) -> Snapshot:
    return Snapshot(sim.discretes + sim.targets)


def _index_of(items, item) -> Optional[int]:
    for k, other in enumerate(items):
        if other is item:
            return k
    return None


@beartype
def create_simstate(model: Any, config: SimConfig = DEFAULT_CONFIG) -> SimState:
    """
    Build a SimState from a model tree, EquationSet, Sim or SimState.

    Raises ModelBalanceError if the model is not balanced.
    """
    if isinstance(model, SimState):
        return model
    if isinstance(model, Sim):
        sim_ = model
    else:
        eqset = model if isinstance(model, EquationSet) else elaborate(model, config=config)
        check_balance(eqset)
        sim_ = create_sim(eqset, config)
    check_balance(sim_)
    return SimState(sim_, 0.0, sim_.y0.copy(), sim_.yp0.copy(), _snapshot(sim_))


# =============================================================================
# Driver
# =============================================================================


@beartype
def sim(model: Any, tstop: Real = 1.0, nsteps: int = 500, config: SimConfig = DEFAULT_CONFIG) -> SimResult:
    """
    Simulate a model.

    Parameters
    ----------
    model : model tree, EquationSet, Sim or SimState
        What to simulate.
    tstop : float
        End time.
    nsteps : int
        Number of output intervals between the start time and ``tstop``.
    config : SimConfig
        Tolerances, initialization mode and limits.

    Returns
    -------
    SimResult

    Raises
    ------
    ModelBalanceError
        If the model, or a generation produced by a structural event
        (StructuralEventError), is not balanced.
    IntegrationError
        If a step fails after all step size reductions.
    """
    if nsteps < 1:
        raise ValueError(f"nsteps must be >= 1, got {nsteps}")
    state = create_simstate(model, config)
    if tstop <= state.t:
        raise ValueError(f"tstop={tstop} must be after the start time {state.t}")

    controller = StructuralEventController(config)
    snapshots = [state.snapshot]
    try:
        return _run(state, float(tstop), nsteps, config, controller, snapshots)
    finally:
        controller.undo()
        for snap in reversed(snapshots):
            snap.restore()


def _run(
    state: SimState,
    tstop: float,
    nsteps: int,
    config: SimConfig,
    controller: StructuralEventController,
    snapshots: List[Snapshot],
) -> SimResult:
    sim_ = state.sim
    t = state.t
    y, yp, _ = initialize(sim_, t, state.y, state.yp, config)

    recorder = _Recorder()
    recorder.record(sim_, t, y)
    integ = BDFIntegrator(sim_, t, y, yp, config)
    g = sim_.zero_crossings(t, y, yp)

    event_times: List[float] = []
    events_enabled = True
    times = np.linspace(t, tstop, nsteps + 1)
    logger.log(config.log_level, "simulating t=%.6g..%.6g, %d output steps", t, tstop, nsteps)

    for t_prev, t_out in zip(times[:-1], times[1:]):
        h_max = config.max_step if config.max_step is not None else (t_out - t_prev) / config.substeps
        while integ.t < t_out:
            step = integ.attempt(t_out, h_max)
            if events_enabled and sim_.n_events:
                step, g1 = scan_crossings(integ, step, g, config.event_samples)
            else:
                g1 = sim_.zero_crossings(step.t, step.y, step.yp)
            if not (events_enabled and find_crossings(g, g1)):
                integ.accept(step)
                g = g1
                continue

            step, crossed = locate_crossing(integ, step, g, config)
            integ.accept(step)
            recorder.record(sim_, step.t, step.y)

            y, yp = step.y, step.yp
            fired = []
            for index, direction in crossed:
                y, yp, j = sim_.apply_response(index, direction, step.t, y, yp)
                if j is not None:
                    fired.append(sim_.eqset.structural_events[j])
            if fired:
                # One generation per structural event, in table order. An
                # event removed by an earlier replacement is skipped.
                for event in fired:
                    j = _index_of(sim_.eqset.structural_events, event)
                    if j is None or event.activated:
                        continue
                    controller.trigger(j)
                    sim_, y, yp = controller.reflatten(sim_, step.t, y, yp)
                    controller.reset()
                    snapshots.append(_snapshot(sim_))
                integ = BDFIntegrator(sim_, step.t, y, yp, config)

            mode = InitMode.NONE if config.init == InitMode.NONE else InitMode.YA_YDP
            y, yp, _ = initialize(sim_, step.t, y, yp, config, mode=mode, initial_equations=False)
            integ.restart(step.t, y, yp)
            g = sim_.zero_crossings(step.t, y, yp)
            recorder.record(sim_, step.t, y)

            event_times.append(float(step.t))
            logger.log(config.log_level, "t=%.6g: events %s", step.t, crossed)
            if len(event_times) >= config.max_events:
                events_enabled = False
                warnings.warn(
                    f"max_events={config.max_events} reached at t={step.t:.6g}; further events are ignored",
                    RuntimeWarning,
                    stacklevel=3,
                )
        recorder.record(sim_, t_out, integ.y)

    return recorder.result(event_times, sim_.generation)


@beartype
def solve(model: Any, config: SimConfig = DEFAULT_CONFIG) -> Dict[Union[str, int], Any]:
    """
    Solve a model without derivatives.

    Unknowns not marked fixed are solved for, together with the model's
    initial equations, starting from their current values. The solution is
    stored back on the unknowns and returned as a mapping from label (or
    handle, for unlabeled unknowns) to value.

    Example
    -------
    >>> x = Unknown(0.5, "x")  # doctest: +SKIP
    >>> solve([x**2 - 2.0])["x"]  # doctest: +SKIP
    1.4142135623730951
    """
    state = create_simstate(model, config)
    sim_ = state.sim
    if sim_.id.any():
        raise ValueError("solve() needs a model without derivatives; use sim() instead")
    y, _, _ = initialize(sim_, state.t, state.y, state.yp, config, mode=InitMode.Y)

    out: Dict[Union[str, int], Any] = {}
    for u in sim_.unknowns:
        v = y[sim_.unknown_index[u.handle]]
        u.value = float(v[0]) if np.ndim(u.value) == 0 else v.copy()
        out[u.label or u.handle] = u.value
    return out
