"""Feedback and cascade combination of systems.

Both operations return a new model whose state is the concatenation

    [x_c(A), x_c(B), x_d(A), x_d(B)]

so the continuous states stay in front as for any other model. The result
keeps as much structure as possible:

- two LinearSystems in the same time domain give a LinearSystem with
  closed-form matrices (memoryless gains fit either domain),
- if either operand is a HybridAutomaton the result is a HybridAutomaton
  whose modes are the pairwise combinations of the operand modes,
- otherwise a CompositeSystem tagged with the join of the operand tags.

Input limits of the operands are realized (see constraints.saturate)
before combining.
"""

import logging
from typing import Optional

import numpy as np

from hybridsim.constraints import saturate
from hybridsim.exceptions import AlgebraicLoopError, IncompatibleDimensionsError
from hybridsim.hybrid import HybridAutomaton
from hybridsim.signals import VectorSignal
from hybridsim.systems import (
    LinearSystem,
    SystemModel,
    common_period,
    join_structure,
)

logger = logging.getLogger(__name__)


def _check_connection(source: SystemModel, sink: SystemModel):
    """Check that the output of source can drive the input of sink."""
    if source.num_y != sink.num_u:
        raise IncompatibleDimensionsError(
            f"Output of {source.name} has dimension {source.num_y} but "
            f"input of {sink.name} has dimension {sink.num_u}"
        )
    if not source.output_frame.matches(sink.input_frame):
        raise IncompatibleDimensionsError(
            f"Output frame {source.output_frame.name!r} of {source.name} "
            f"does not match input frame {sink.input_frame.name!r} of "
            f"{sink.name}"
        )


def _composite_state_frame(sys_a, sys_b):
    def part(sys, start, stop):
        coords = sys.state_frame.coordinates[start:stop]
        return VectorSignal(len(coords), coordinates=coords)

    return VectorSignal.concat(
        [
            part(sys_a, 0, sys_a.num_xc),
            part(sys_b, 0, sys_b.num_xc),
            part(sys_a, sys_a.num_xc, None),
            part(sys_b, sys_b.num_xc, None),
        ]
    )


class CompositeSystem(SystemModel):
    """Two subsystems simulated as one model.

    Subclasses define how the subsystem inputs and the output are formed
    in subsystem_signals and output.
    """

    def __init__(
        self,
        sys_a: SystemModel,
        sys_b: SystemModel,
        num_inputs: int,
        num_outputs: int,
        direct_feedthrough: bool,
        input_frame: Optional[VectorSignal],
        output_frame: VectorSignal,
        name: str,
    ):
        self.sys_a = sys_a
        self.sys_b = sys_b
        super().__init__(
            num_continuous_states=sys_a.num_xc + sys_b.num_xc,
            num_discrete_states=sys_a.num_xd + sys_b.num_xd,
            num_inputs=num_inputs,
            num_outputs=num_outputs,
            sample_time=common_period(sys_a.sample_time, sys_b.sample_time),
            direct_feedthrough=direct_feedthrough,
            time_invariant=sys_a.time_invariant and sys_b.time_invariant,
            num_constraints=sys_a.num_constraints + sys_b.num_constraints,
            input_frame=input_frame,
            state_frame=_composite_state_frame(sys_a, sys_b),
            output_frame=output_frame,
            name=name,
        )
        self.noise_period = common_period(
            sys_a.noise_period, sys_b.noise_period, "noise"
        )
        self.structure = join_structure(sys_a.structure, sys_b.structure)

    # ------------------------------------------------------------------
    # State layout
    # ------------------------------------------------------------------

    def split_state(self, x):
        """Split a composite state into the two subsystem states."""
        x = np.asarray(x, dtype=float)
        a, b = self.sys_a, self.sys_b
        nc = a.num_xc + b.num_xc
        xa = np.concatenate([x[: a.num_xc], x[nc:nc + a.num_xd]])
        xb = np.concatenate([x[a.num_xc:nc], x[nc + a.num_xd:]])
        return xa, xb

    def join_state(self, xa, xb):
        a = self.sys_a
        xa = np.asarray(xa, dtype=float)
        xb = np.asarray(xb, dtype=float)
        nb = self.sys_b.num_xc
        return np.concatenate(
            [xa[: a.num_xc], xb[:nb], xa[a.num_xc:], xb[nb:]]
        )

    def subsystem_signals(self, t, x, u):
        """Return (xa, xb, ua, ub) for the composite state and input."""
        raise NotImplementedError

    # ------------------------------------------------------------------
    # System functions
    # ------------------------------------------------------------------

    def dynamics(self, t, x, u):
        xa, xb, ua, ub = self.subsystem_signals(t, x, u)
        return np.concatenate(
            [self.sys_a.dynamics(t, xa, ua), self.sys_b.dynamics(t, xb, ub)]
        )

    def update(self, t, x, u):
        xa, xb, ua, ub = self.subsystem_signals(t, x, u)
        parts = []
        for sys, xs, us in ((self.sys_a, xa, ua), (self.sys_b, xb, ub)):
            if sys.sample_time is None:
                parts.append(xs[sys.num_xc:])
            else:
                parts.append(sys.update(t, xs, us))
        return np.concatenate(parts)

    @property
    def num_zero_crossings(self):
        return self.sys_a.num_zero_crossings + self.sys_b.num_zero_crossings

    def zero_crossings(self, t, x, u):
        xa, xb, ua, ub = self.subsystem_signals(t, x, u)
        return np.concatenate(
            [
                self.sys_a.zero_crossings(t, xa, ua),
                self.sys_b.zero_crossings(t, xb, ub),
            ]
        )

    def handle_events(self, t, x, u, active):
        active = np.asarray(active, dtype=bool)
        xa, xb, ua, ub = self.subsystem_signals(t, x, u)
        na = self.sys_a.num_zero_crossings
        if active[:na].any():
            xa = self.sys_a.handle_events(t, xa, ua, active[:na])
        if active[na:].any():
            xb = self.sys_b.handle_events(t, xb, ub, active[na:])
        return self.join_state(xa, xb)

    def armed_at_zero(self, x):
        xa, xb = self.split_state(x)
        return np.concatenate(
            [self.sys_a.armed_at_zero(xa), self.sys_b.armed_at_zero(xb)]
        )

    def init_modes(self, t, x, u):
        xa, xb, ua, _ = self.subsystem_signals(t, x, u)
        xa = self.sys_a.init_modes(t, xa, ua)
        x = self.join_state(xa, xb)
        _, xb, _, ub = self.subsystem_signals(t, x, u)
        xb = self.sys_b.init_modes(t, xb, ub)
        return self.join_state(xa, xb)

    def resample_noise(self, x, rng):
        xa, xb = self.split_state(x)
        return self.join_state(
            self.sys_a.resample_noise(xa, rng),
            self.sys_b.resample_noise(xb, rng),
        )

    def state_constraints(self, x):
        xa, xb = self.split_state(x)
        return np.concatenate(
            [
                self.sys_a.state_constraints(xa),
                self.sys_b.state_constraints(xb),
            ]
        )

    def get_initial_state(self, t=0.0, u=None):
        if u is None:
            u = np.zeros(self.num_u)
        # Input-aware initial conditions need the subsystem inputs, which in
        # turn depend on the subsystem states: start from the zero-input
        # states and refine once.
        xa = self.sys_a.get_initial_state(t, np.zeros(self.sys_a.num_u))
        xb = self.sys_b.get_initial_state(t, np.zeros(self.sys_b.num_u))
        _, _, ua, ub = self.subsystem_signals(t, self.join_state(xa, xb), u)
        return self.join_state(
            self.sys_a.get_initial_state(t, ua),
            self.sys_b.get_initial_state(t, ub),
        )


class FeedbackSystem(CompositeSystem):
    """Negative feedback interconnection.

    u_A = u - y_B,  u_B = y_A,  y = y_A

    Parameters
    ----------
    sys_a : SystemModel
        Forward-path system
    sys_b : SystemModel
        Feedback-path system
    keep_input : bool, default=True
        If False the external input is dropped (zero) and the combined
        system has no inputs.
    """

    def __init__(self, sys_a, sys_b, keep_input=True, name=None):
        if sys_a.direct_feedthrough and sys_b.direct_feedthrough:
            raise AlgebraicLoopError(
                f"Feedback of {sys_a.name} and {sys_b.name} forms an "
                "algebraic loop: both are direct-feedthrough"
            )
        self.keep_input = bool(keep_input)
        super().__init__(
            sys_a,
            sys_b,
            num_inputs=sys_a.num_u if keep_input else 0,
            num_outputs=sys_a.num_y,
            direct_feedthrough=sys_a.direct_feedthrough and self.keep_input,
            input_frame=sys_a.input_frame if keep_input else None,
            output_frame=sys_a.output_frame,
            name=name or f"feedback({sys_a.name}, {sys_b.name})",
        )

    def _external(self, u):
        if self.keep_input:
            return np.asarray(u, dtype=float)
        return np.zeros(self.sys_a.num_u)

    def subsystem_signals(self, t, x, u):
        a, b = self.sys_a, self.sys_b
        xa, xb = self.split_state(x)
        u = self._external(u)
        if not a.direct_feedthrough:
            ya = a.output(t, xa, np.zeros(a.num_u))
            yb = b.output(t, xb, ya)
            ua = u - yb
        else:
            yb = b.output(t, xb, np.zeros(b.num_u))
            ua = u - yb
            ya = a.output(t, xa, ua)
        return xa, xb, ua, ya

    def output(self, t, x, u):
        xa, _, ua, _ = self.subsystem_signals(t, x, u)
        return self.sys_a.output(t, xa, ua)


class CascadeSystem(CompositeSystem):
    """Series interconnection.

    u_A = u,  u_B = y_A,  y = y_B
    """

    def __init__(self, sys_a, sys_b, name=None):
        super().__init__(
            sys_a,
            sys_b,
            num_inputs=sys_a.num_u,
            num_outputs=sys_b.num_y,
            direct_feedthrough=(
                sys_a.direct_feedthrough and sys_b.direct_feedthrough
            ),
            input_frame=sys_a.input_frame,
            output_frame=sys_b.output_frame,
            name=name or f"cascade({sys_a.name}, {sys_b.name})",
        )

    def subsystem_signals(self, t, x, u):
        xa, xb = self.split_state(x)
        ua = np.asarray(u, dtype=float)
        ub = self.sys_a.output(t, xa, ua)
        return xa, xb, ua, ub

    def output(self, t, x, u):
        _, xb, _, ub = self.subsystem_signals(t, x, u)
        return self.sys_b.output(t, xb, ub)


# ----------------------------------------------------------------------
# Closed-form linear combinations
# ----------------------------------------------------------------------


def _both_linear(sys_a, sys_b):
    if not (
        isinstance(sys_a, LinearSystem) and isinstance(sys_b, LinearSystem)
    ):
        return False
    # Memoryless gains fit either time domain
    periods = [s.sample_time for s in (sys_a, sys_b) if s.num_states]
    return len(periods) < 2 or (periods[0] is None) == (periods[1] is None)


def _linear_feedback(sys_a, sys_b, keep_input, name):
    Aa, Ba, Ca, Da = sys_a.A, sys_a.B, sys_a.C, sys_a.D
    Ab, Bb, Cb, Db = sys_b.A, sys_b.B, sys_b.C, sys_b.D
    # One of Da, Db is zero (no algebraic loop), so Da @ Db terms vanish
    A = np.block(
        [
            [Aa - Ba @ Db @ Ca, -Ba @ Cb],
            [Bb @ Ca, Ab - Bb @ Da @ Cb],
        ]
    )
    B = np.vstack([Ba, Bb @ Da])
    C = np.hstack([Ca, -Da @ Cb])
    D = Da
    if not keep_input:
        B = B[:, :0]
        D = D[:, :0]
    return LinearSystem(
        A, B, C, D,
        sample_time=common_period(sys_a.sample_time, sys_b.sample_time),
        input_frame=sys_a.input_frame if keep_input else None,
        state_frame=_composite_state_frame(sys_a, sys_b),
        output_frame=sys_a.output_frame,
        name=name or f"feedback({sys_a.name}, {sys_b.name})",
    )


def _linear_cascade(sys_a, sys_b, name):
    Aa, Ba, Ca, Da = sys_a.A, sys_a.B, sys_a.C, sys_a.D
    Ab, Bb, Cb, Db = sys_b.A, sys_b.B, sys_b.C, sys_b.D
    na, nb = Aa.shape[0], Ab.shape[0]
    A = np.block([[Aa, np.zeros((na, nb))], [Bb @ Ca, Ab]])
    B = np.vstack([Ba, Bb @ Da])
    C = np.hstack([Db @ Ca, Cb])
    D = Db @ Da
    return LinearSystem(
        A, B, C, D,
        sample_time=common_period(sys_a.sample_time, sys_b.sample_time),
        input_frame=sys_a.input_frame,
        state_frame=_composite_state_frame(sys_a, sys_b),
        output_frame=sys_b.output_frame,
        name=name or f"cascade({sys_a.name}, {sys_b.name})",
    )


# ----------------------------------------------------------------------
# Hybrid combinations
# ----------------------------------------------------------------------


def _lift_guard(composite, side, guard, n_user):
    def lifted(t, x, u):
        xa, xb, ua, ub = composite.subsystem_signals(t, x, u)
        xs, us = (xa, ua) if side == "a" else (xb, ub)
        return guard(t, xs[:n_user], us)

    return lifted


def _lift_reset(composite, target, side, reset, n_user, n_target_user):
    def lifted(t, x, u):
        xa, xb, ua, ub = composite.subsystem_signals(t, x, u)
        xs, us = (xa, ua) if side == "a" else (xb, ub)
        sys_target = target.sys_a if side == "a" else target.sys_b
        x_user = np.asarray(reset(t, xs[:n_user], us), dtype=float)
        if x_user.size != n_target_user:
            raise ValueError(
                f"Reset returned {x_user.size} states, expected "
                f"{n_target_user}"
            )
        x_new = np.concatenate(
            [x_user, np.zeros(sys_target.num_states - n_target_user)]
        )
        if side == "a":
            return target.join_state(x_new, xb)
        return target.join_state(xa, x_new)

    return lifted


def _combine_hybrid(sys_a, sys_b, combine, name):
    """Product automaton of two operands, at least one of them hybrid."""

    def parts(sys):
        if isinstance(sys, HybridAutomaton):
            return sys.modes, sys._user_modes, sys.transitions, sys.initial_mode
        return [sys], [sys], [], 0

    modes_a, user_a, trans_a, init_a = parts(sys_a)
    modes_b, user_b, trans_b, init_b = parts(sys_b)
    nb = len(modes_b)

    products = {}
    result = None
    for i, ma in enumerate(modes_a):
        for j, mb in enumerate(modes_b):
            product = combine(ma, mb)
            if result is None:
                result = HybridAutomaton(
                    product.num_u,
                    product.num_y,
                    product.input_frame,
                    product.output_frame,
                    name=name,
                )
            products[i, j] = product
            result.add_mode(product, name=f"{i}.{j}")

    # Lifted guards and resets act on the composite mode state, i.e. the
    # user states of the composite modes; the product modes carry no
    # input limits of their own, so their user and simulated layouts agree.
    for tr in trans_a:
        for j in range(nb):
            src, tgt = products[tr.source, j], products[tr.target, j]
            result.add_transition(
                tr.source * nb + j,
                tr.target * nb + j,
                _lift_guard(src, "a", tr.guard, user_a[tr.source].num_states),
                _lift_reset(
                    src, tgt, "a", tr.reset,
                    user_a[tr.source].num_states,
                    user_a[tr.target].num_states,
                ),
                name=tr.name,
            )
    for tr in trans_b:
        for i in range(len(modes_a)):
            src, tgt = products[i, tr.source], products[i, tr.target]
            result.add_transition(
                i * nb + tr.source,
                i * nb + tr.target,
                _lift_guard(src, "b", tr.guard, user_b[tr.source].num_states),
                _lift_reset(
                    src, tgt, "b", tr.reset,
                    user_b[tr.source].num_states,
                    user_b[tr.target].num_states,
                ),
                name=tr.name,
            )
    result.set_initial_mode(init_a * nb + init_b)
    logger.debug(
        "%s: product automaton with %d modes and %d transitions",
        result.name,
        result.num_modes,
        len(result.transitions),
    )
    return result


# ----------------------------------------------------------------------
# Public operations
# ----------------------------------------------------------------------


def feedback(
    sys_a: SystemModel,
    sys_b: SystemModel,
    keep_input: bool = True,
    name: Optional[str] = None,
) -> SystemModel:
    """Negative feedback of sys_b around sys_a.

    u_A = u - y_B, u_B = y_A and the output is y_A.

    Parameters
    ----------
    sys_a : SystemModel
        Forward-path system
    sys_b : SystemModel
        Feedback-path system
    keep_input : bool, default=True
        Keep the external input u. With False the input is dropped and
        the result has zero inputs.
    name : str, optional

    Returns
    -------
    SystemModel
        LinearSystem, HybridAutomaton or FeedbackSystem

    Raises
    ------
    IncompatibleDimensionsError
        If the signal dimensions or frames do not match
    AlgebraicLoopError
        If both systems are direct-feedthrough
    SampleTimeError
        If the systems have different sample or noise periods

    Examples
    --------
    >>> plant = LinearSystem([[0.0]], [[1.0]], [[1.0]])
    >>> gain = LinearSystem.static_gain([[2.0]])
    >>> closed = feedback(plant, gain)
    >>> closed.A
    array([[-2.]])
    """
    sys_a, sys_b = saturate(sys_a), saturate(sys_b)
    _check_connection(sys_a, sys_b)
    _check_connection(sys_b, sys_a)
    if sys_a.direct_feedthrough and sys_b.direct_feedthrough:
        raise AlgebraicLoopError(
            f"Feedback of {sys_a.name} and {sys_b.name} forms an algebraic "
            "loop: both are direct-feedthrough"
        )
    common_period(sys_a.sample_time, sys_b.sample_time)
    common_period(sys_a.noise_period, sys_b.noise_period, "noise")

    if isinstance(sys_a, HybridAutomaton) or isinstance(sys_b, HybridAutomaton):
        return _combine_hybrid(
            sys_a,
            sys_b,
            lambda a, b: FeedbackSystem(a, b, keep_input=keep_input),
            name or f"feedback({sys_a.name}, {sys_b.name})",
        )
    if _both_linear(sys_a, sys_b):
        return _linear_feedback(sys_a, sys_b, keep_input, name)
    return FeedbackSystem(sys_a, sys_b, keep_input=keep_input, name=name)


def cascade(
    sys_a: SystemModel, sys_b: SystemModel, name: Optional[str] = None
) -> SystemModel:
    """Series connection: sys_a drives sys_b.

    u_A = u, u_B = y_A and the output is y_B. Raises the same errors as
    feedback, except for AlgebraicLoopError.
    """
    sys_a, sys_b = saturate(sys_a), saturate(sys_b)
    _check_connection(sys_a, sys_b)
    common_period(sys_a.sample_time, sys_b.sample_time)
    common_period(sys_a.noise_period, sys_b.noise_period, "noise")

    if isinstance(sys_a, HybridAutomaton) or isinstance(sys_b, HybridAutomaton):
        return _combine_hybrid(
            sys_a,
            sys_b,
            CascadeSystem,
            name or f"cascade({sys_a.name}, {sys_b.name})",
        )
    if _both_linear(sys_a, sys_b):
        return _linear_cascade(sys_a, sys_b, name)
    return CascadeSystem(sys_a, sys_b, name=name)
