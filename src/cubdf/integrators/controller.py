"""Order and step-size control of the BDF integrator.

Published Classes
-----------------
:class:`StepState`
    States of one step attempt, with the permitted transitions in
    :data:`TRANSITIONS`.
:class:`SolverState`
    Time, step, order and counters of an integration.
:class:`IntegratorStatistics`
    Cumulative counters reported by :class:`~cubdf.BDFSolver`.
:class:`RejectDecision`
    Outcome of a rejected step.
:class:`OrderStepController`
    Accepts or rejects trial steps and picks the next order and step.

Notes
-----
The controller rescales and reorders the history itself. A choice made
after an accepted step is applied by :meth:`OrderStepController.begin_step`
when the next attempt starts. Restarting at order one after repeated
rejections needs a fresh right-hand-side evaluation, which the caller
supplies through :meth:`OrderStepController.restart_order_one`.
"""

from enum import IntEnum
from math import inf
from typing import Optional
from warnings import warn

import attrs

from cubdf._utils import (
    getype_validator,
    inrangetype_validator,
    unit_roundoff,
)
from cubdf.errors import StepSizeUnderflow
from cubdf.integrators.bdf_config import BDFConstants
from cubdf.integrators.nordsieck import NordsieckHistory
from cubdf.integrators.norms import WeightedNorm
from cubdf.step_logger import StepLogger


class StepState(IntEnum):
    """Phase of the current step attempt."""

    PREDICTING = 0
    CORRECTING = 1
    ERROR_TESTING = 2
    ACCEPTING = 3
    REJECTING = 4
    ORDER_CHANGING = 5
    FATAL = 6


TRANSITIONS = {
    StepState.PREDICTING: {StepState.CORRECTING, StepState.FATAL},
    StepState.CORRECTING: {StepState.ERROR_TESTING, StepState.REJECTING},
    StepState.ERROR_TESTING: {StepState.ACCEPTING, StepState.REJECTING},
    StepState.ACCEPTING: {StepState.PREDICTING, StepState.ORDER_CHANGING},
    StepState.REJECTING: {
        StepState.PREDICTING,
        StepState.ORDER_CHANGING,
        StepState.FATAL,
    },
    StepState.ORDER_CHANGING: {StepState.PREDICTING},
    StepState.FATAL: set(),
}


@attrs.define
class SolverState:
    """Integration state shared by the controller and the driver.

    Attributes
    ----------
    t : float
        Time of the last accepted step.
    dt : float
        Step the history is currently scaled to.
    dt_next : float
        Step chosen for the next attempt.
    dt_max : float
        Largest permitted step.
    q, q_next : int
        Current and chosen order.
    q_next_change : int
        Steps left before the order is reconsidered.
    nist : int
        Accepted steps.
    n, n_equations : int
        State size and equations per grid point.
    rtol : float
        Relative tolerance.
    """

    n: int = attrs.field(validator=getype_validator(int, 1))
    n_equations: int = attrs.field(validator=getype_validator(int, 1))
    rtol: float = attrs.field(validator=getype_validator(float, 0.0))
    dt_max: float = attrs.field(default=inf)
    t: float = attrs.field(default=0.0)
    dt: float = attrs.field(default=0.0)
    dt_next: float = attrs.field(default=0.0)
    q: int = attrs.field(default=1, validator=inrangetype_validator(int, 1, 5))
    q_next: int = attrs.field(
        default=1, validator=inrangetype_validator(int, 1, 5)
    )
    q_next_change: int = attrs.field(default=2)
    nist: int = attrs.field(default=0, validator=getype_validator(int, 0))


@attrs.define
class IntegratorStatistics:
    """Cumulative counters of one solver instance."""

    n_steps: int = attrs.field(default=0)
    n_f_evals: int = attrs.field(default=0)
    n_j_evals: int = attrs.field(default=0)
    n_nonlinear_iters: int = attrs.field(default=0)
    n_convergence_failures: int = attrs.field(default=0)
    n_error_test_failures: int = attrs.field(default=0)
    n_order_changes: int = attrs.field(default=0)
    n_order_resets: int = attrs.field(default=0)
    last_order: int = attrs.field(default=0)
    current_order: int = attrs.field(default=1)
    max_order_used: int = attrs.field(default=0)
    last_dt: float = attrs.field(default=0.0)
    current_dt: float = attrs.field(default=0.0)


@attrs.define(frozen=True)
class RejectDecision:
    """Outcome of a rejected attempt.

    Attributes
    ----------
    eta : float
        Factor applied to the step.
    dt : float
        Step of the retry.
    force_order_one : bool
        The history must be restarted at order one before the retry.
    """

    eta: float
    dt: float
    force_order_one: bool = False


class OrderStepController:
    """Feedback controller choosing ``(q, dt)`` after every attempt.

    Parameters
    ----------
    state
        Integration state updated in place.
    history
        Nordsieck history rescaled and reordered by the controller.
    norm
        Weighted RMS norm used for the error estimates.
    constants
        Controller constants.
    dt_min
        User lower bound on the step.
    logger
        Receives accept, reject and order events.
    """

    def __init__(
        self,
        state: SolverState,
        history: NordsieckHistory,
        norm: WeightedNorm,
        constants: BDFConstants,
        dt_min: float = 0.0,
        logger: Optional[StepLogger] = None,
    ) -> None:
        self.state = state
        self.history = history
        self.norm = norm
        self.constants = constants
        self.dt_min = dt_min
        self.logger = logger if logger is not None else StepLogger(None)
        self.statistics = IntegratorStatistics()
        self.uround = unit_roundoff(history.kernels.precision)
        self.phase = StepState.PREDICTING
        self.tmax = 0.0
        self.eta_max = constants.eta_max_first
        self.consecutive_rejections = 0
        self.error_test_failures = 0
        self._pending_eta = 1.0

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def transition(self, new_state: StepState) -> None:
        """Move to ``new_state``; raise ``RuntimeError`` if not permitted."""
        if new_state not in TRANSITIONS[self.phase]:
            raise RuntimeError(
                f"Illegal step state transition {self.phase.name} -> "
                f"{new_state.name}"
            )
        self.phase = new_state

    @property
    def fatal(self) -> bool:
        return self.phase == StepState.FATAL

    def start(self, t: float, tmax: float, dt: float) -> None:
        """Reset for a fresh integration at order one with step ``dt``."""
        state = self.state
        state.t = t
        state.dt = dt
        state.dt_next = dt
        state.q = 1
        state.q_next = 1
        state.q_next_change = 2
        state.nist = 0
        self.tmax = tmax
        self.eta_max = self.constants.eta_max_first
        self.consecutive_rejections = 0
        self.error_test_failures = 0
        self._pending_eta = 1.0
        self.phase = StepState.PREDICTING
        self.statistics.current_order = 1
        self.statistics.current_dt = dt

    @property
    def dt_floor(self) -> float:
        """Smallest step distinguishable at the current time."""
        resolution = 16.0 * self.uround * max(
            abs(self.state.t), abs(self.tmax)
        )
        return max(self.dt_min, resolution)

    def clamp_to_target(self) -> bool:
        """Fit the step so it ends exactly at ``tmax``.

        A step past ``tmax`` is shrunk. A step falling short by less than
        ``landing_stretch`` is stretched, unless the last attempt was
        rejected or the stretch would exceed ``dt_max``, so no sliver of
        the interval is left for a final tiny step.

        Returns
        -------
        bool
            ``True`` if the next attempt lands on ``tmax``.
        """
        state = self.state
        remaining = self.tmax - state.t
        if state.dt < remaining:
            reach = min(
                state.dt * self.constants.landing_stretch, state.dt_max
            )
            if self.eta_max == 1.0 or remaining > reach:
                return False
        if state.dt != remaining:
            self.history.rescale(remaining / state.dt, state.q)
            state.dt = remaining
            state.dt_next = remaining
        return True

    # ------------------------------------------------------------------
    # Error test
    # ------------------------------------------------------------------

    def error_test(self, acor, weights, tq2: float) -> float:
        """Return the weighted local error estimate ``dsm`` of the attempt."""
        self.transition(StepState.ERROR_TESTING)
        return self.norm(acor, weights) * tq2

    # ------------------------------------------------------------------
    # Acceptance
    # ------------------------------------------------------------------

    def accept(self, acor, weights, dsm: float, landing: bool) -> None:
        """Complete an accepted step and choose the next ``(q, dt)``."""
        self.transition(StepState.ACCEPTING)
        state = self.state
        history = self.history
        constants = self.constants
        coefficients = history.coefficients
        q = state.q
        dt = state.dt

        state.nist += 1
        history.correct(acor, q)
        history.record_step(dt, q)
        state.t = self.tmax if landing else state.t + dt
        state.q_next_change -= 1
        if state.q_next_change == 1 and q < constants.max_order:
            history.save_correction(acor, coefficients.tq[5])

        stats = self.statistics
        stats.n_steps += 1
        stats.last_order = q
        stats.last_dt = dt
        stats.max_order_used = max(stats.max_order_used, q)
        self.logger.record("accept", state.t, dt, q, error_norm=dsm)

        eta, q_next = self._next_step(acor, weights, dsm)
        self.consecutive_rejections = 0
        self.error_test_failures = 0
        self.eta_max = (
            constants.eta_max_early
            if state.nist <= constants.small_nst
            else constants.eta_max_late
        )

        state.q_next = q_next
        state.dt_next = dt * eta
        self._pending_eta = eta

    def begin_step(self) -> None:
        """Apply the order and step chosen after the last accepted step.

        The history keeps the order and scale of the accepted step until
        the next attempt starts, so dense output in between uses the
        polynomial of that step.
        """
        if self.phase == StepState.PREDICTING:
            return
        state = self.state
        history = self.history
        q = state.q
        if state.q_next != q:
            self.transition(StepState.ORDER_CHANGING)
            if state.q_next > q:
                history.increase_order(q, state.dt)
            else:
                history.decrease_order(q, state.dt)
            state.q = state.q_next
            state.q_next_change = state.q + 1
            self.statistics.n_order_changes += 1
            self.logger.record(
                "order_change", state.t, state.dt, q, new_order=state.q
            )
        history.rescale(self._pending_eta, state.q)
        state.dt = state.dt_next
        self._pending_eta = 1.0
        self.statistics.current_order = state.q
        self.statistics.current_dt = state.dt
        self.transition(StepState.PREDICTING)

    def abandon_attempt(self) -> None:
        """Drop an attempt interrupted by an error outside the retry loop.

        ``t``, ``q`` and ``dt`` are left as they were, so the next call
        retries the same step. A fatal controller stays fatal.
        """
        if self.phase != StepState.FATAL:
            self.phase = StepState.PREDICTING

    def _growth_factor(self, estimate: float, bias: float, power: int):
        addon = self.constants.addon
        return 1.0 / ((bias * estimate) ** (1.0 / power) + addon)

    def _next_step(self, acor, weights, dsm: float):
        """Return ``(eta, q_next)`` after an accepted step."""
        state = self.state
        constants = self.constants
        history = self.history
        q = state.q

        if self.eta_max == 1.0:
            state.q_next_change = max(state.q_next_change, 2)
            return 1.0, q

        etaq = self._growth_factor(dsm, constants.bias2, q + 1)
        if state.q_next_change != 0:
            return self._limit_eta(etaq), q

        state.q_next_change = 2
        tq = history.coefficients.tq
        etaqm1 = 0.0
        if q > 1:
            ddn = self.norm(history.zn[q], weights) * tq[1]
            etaqm1 = self._growth_factor(ddn, constants.bias1, q)
        etaqp1 = 0.0
        if q < constants.max_order and history.saved_tq5 != 0.0:
            cquot = history.error_combination_scale(state.dt, q)
            dup = self.norm(
                acor, weights, history.zn[history.max_order], -cquot
            ) * tq[3]
            etaqp1 = self._growth_factor(dup, constants.bias3, q + 2)

        eta, q_next = self._choose_eta(etaqm1, etaq, etaqp1)
        if q_next > q:
            history.save_correction(acor, history.saved_tq5)
        return self._limit_eta(eta), q_next

    def _choose_eta(self, etaqm1: float, etaq: float, etaqp1: float):
        q = self.state.q
        eta = max(etaqm1, etaq, etaqp1)
        if eta < self.constants.threshold:
            return 1.0, q
        if eta == etaq:
            return etaq, q
        if eta == etaqm1:
            return etaqm1, q - 1
        return etaqp1, q + 1

    def _limit_eta(self, eta: float) -> float:
        """Apply the hysteresis threshold and the growth and size caps."""
        if eta < self.constants.threshold:
            return 1.0
        eta = min(eta, self.eta_max)
        dt_max = self.state.dt_max
        return eta / max(1.0, self.state.dt * eta / dt_max)

    # ------------------------------------------------------------------
    # Rejection
    # ------------------------------------------------------------------

    def reject_error_test(self, dsm: float) -> RejectDecision:
        """Shrink the step after the local error test failed."""
        self.transition(StepState.REJECTING)
        constants = self.constants
        q = self.state.q
        self.error_test_failures += 1
        self.statistics.n_error_test_failures += 1
        self.logger.record(
            "reject_error", self.state.t, self.state.dt, q, error_norm=dsm
        )
        eta = max(
            constants.eta_min,
            self._growth_factor(dsm, constants.bias2, q + 1),
        )
        if self.error_test_failures >= constants.small_nef:
            eta = min(eta, constants.eta_max_error_fail)
        return self._reject(eta)

    def reject_convergence(self) -> RejectDecision:
        """Shrink the step after the corrector failed to converge."""
        self.transition(StepState.REJECTING)
        self.statistics.n_convergence_failures += 1
        self.logger.record(
            "reject_convergence", self.state.t, self.state.dt, self.state.q
        )
        return self._reject(self.constants.eta_convergence_fail)

    def _reject(self, eta: float) -> RejectDecision:
        state = self.state
        floor = self.dt_floor
        self.eta_max = 1.0
        self.consecutive_rejections += 1

        if state.q == 1 and state.dt <= floor:
            self.transition(StepState.FATAL)
            raise StepSizeUnderflow(
                f"Step size {state.dt:.6e} at t={state.t:.6e} cannot be "
                f"reduced below its floor {floor:.6e}"
            )

        dt_new = state.dt * eta
        if dt_new < floor:
            warn(
                f"Step size clamped to its floor {floor:.6e} at "
                f"t={state.t:.6e}",
                RuntimeWarning,
            )
            dt_new = floor
        eta = dt_new / state.dt

        force = (
            self.consecutive_rejections >= self.constants.max_dt_iter
            and state.q > 1
        )
        if force:
            self.consecutive_rejections = 0
            self.transition(StepState.ORDER_CHANGING)
            state.q = 1
            state.q_next = 1
            state.q_next_change = self.constants.long_wait
        else:
            self.transition(StepState.PREDICTING)
            self.history.rescale(eta, state.q)
        state.dt = dt_new
        state.dt_next = dt_new
        self.statistics.current_dt = dt_new
        self.statistics.current_order = state.q
        return RejectDecision(eta=eta, dt=dt_new, force_order_one=force)

    def restart_order_one(self, f0) -> None:
        """Finish a forced fallback: ``zn[1] = dt * f0``, order one.

        ``f0`` must hold ``F(zn[0])``.
        """
        state = self.state
        self.history.restart(f0, state.dt)
        self.statistics.n_order_resets += 1
        self.logger.record("order_reset", state.t, state.dt, 1)
        self.transition(StepState.PREDICTING)
