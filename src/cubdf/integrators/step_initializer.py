"""First step size of an integration.

The estimate is bracketed between a lower bound tied to the integration
span and the representable resolution of ``t``, and an upper bound that
keeps the first step from changing any component by more than a tenth of
its magnitude. Inside that bracket it is refined from a finite-difference
estimate of ``||y''||``.
"""

from math import isfinite, sqrt
from warnings import warn

import numpy as np

from cubdf._utils import unit_roundoff
from cubdf.integrators.bdf_config import BDFConstants
from cubdf.integrators.nordsieck import NordsieckKernels
from cubdf.integrators.norms import WeightedNorm
from cubdf.systems.base import SystemFunctional

# Shrink factor applied when a trial step gives a non-finite estimate
TRIAL_SHRINK = 0.2


class StepSizeInitializer:
    """Chooses the step of the first BDF step.

    Parameters
    ----------
    kernels
        History kernels providing ``axpby``.
    norm
        Weighted RMS norm of the solver.
    atol, weights
        Device tolerance and weight vectors. ``weights`` must hold the
        weights of the initial state before :meth:`initialize_time_step`.
    f0, y_work, f_work
        Device scratch vectors. ``f0`` holds ``F(y0)`` on return.
    constants
        Controller constants (bound factors, refinement iterations, bias).
    dt_max
        Largest permitted step.
    """

    def __init__(
        self,
        kernels: NordsieckKernels,
        norm: WeightedNorm,
        atol,
        weights,
        f0,
        y_work,
        f_work,
        constants: BDFConstants,
        dt_max: float,
    ) -> None:
        self.kernels = kernels
        self.norm = norm
        self.atol = atol
        self.weights = weights
        self.f0 = f0
        self.y_work = y_work
        self.f_work = f_work
        self.constants = constants
        self.dt_max = dt_max
        self.uround = unit_roundoff(kernels.precision)
        self.n_f_evals = 0

    def upper_bound_first_time_step(self, span: float, y0) -> float:
        """Return the upper bound on the first step.

        ``dt_ub_factor * span``, reduced so that
        ``dt * |f_i| <= dt_ub_factor * |y_i| + atol_i`` for every ``i``.
        ``self.f0`` must already hold ``F(y0)``.
        """
        factor = self.constants.dt_ub_factor
        y = np.abs(y0.copy_to_host())
        f = np.abs(self.f0.copy_to_host())
        atol = self.atol.copy_to_host()
        hub_inv = float(np.max(f / (factor * y + atol)))
        hub = factor * span
        if hub * hub_inv > 1.0:
            hub = 1.0 / hub_inv
        return hub

    def second_derivative_norm(self, dt: float, y0, functional) -> float:
        """Return ``||(F(y0 + dt*f0) - f0) / dt||`` in the weighted norm."""
        self.kernels.axpby(1.0, y0, dt, self.f0, self.y_work)
        functional.evaluate(self.y_work, self.f_work)
        self.n_f_evals += 1
        inv_dt = 1.0 / dt
        self.kernels.axpby(
            inv_dt, self.f_work, -inv_dt, self.f0, self.y_work
        )
        return self.norm(self.y_work, self.weights)

    def initialize_time_step(
        self, t: float, tmax: float, y0, functional: SystemFunctional
    ) -> float:
        """Return the first step for integrating from ``t`` to ``tmax``.

        Evaluates ``F(y0)`` into ``self.f0`` as a side effect.
        """
        constants = self.constants
        span = min(tmax - t, self.dt_max)
        t_round = self.uround * max(abs(t), abs(tmax))
        hlb = max(
            span / constants.dt_lb_factor, constants.dt_lb_factor * t_round
        )

        functional.evaluate(y0, self.f0)
        self.n_f_evals += 1
        hub = self.upper_bound_first_time_step(span, y0)

        if hub < hlb:
            return min(hub, span)

        hg = sqrt(hlb * hub)
        hnew = hg
        iterations = constants.first_step_iters
        for count in range(1, iterations + 1):
            yddnrm = self.second_derivative_norm(hg, y0, functional)
            retries = 0
            while not isfinite(yddnrm) and retries < iterations:
                hg *= TRIAL_SHRINK
                retries += 1
                yddnrm = self.second_derivative_norm(hg, y0, functional)
            if not isfinite(yddnrm):
                warn(
                    "Could not estimate the second derivative of the "
                    "initial state; starting from the lower step bound.",
                    RuntimeWarning,
                )
                return hlb

            if yddnrm * hub * hub > 2.0:
                hnew = sqrt(2.0 / yddnrm)
            else:
                hnew = sqrt(hg * hub)
            if count == iterations:
                break
            hrat = hnew / hg
            if 0.5 < hrat < 2.0:
                break
            if count > 1 and hrat > 2.0:
                hnew = hg
                break
            hg = hnew

        h0 = constants.first_step_bias * hnew
        h0 = min(max(h0, hlb), hub)
        return min(h0, span)
