"""Convenience entry point for integrating host-defined problems."""

from math import inf
from typing import Callable, Optional, Sequence

import attrs
import numpy as np
from numba import cuda
from numpy.typing import ArrayLike, NDArray

from cubdf.integrators.bdf_config import BDFConstants
from cubdf.integrators.bdf_solver import BDFSolver
from cubdf.integrators.controller import IntegratorStatistics
from cubdf.nonlinear.base import NonlinearSolver
from cubdf.nonlinear.newton import NewtonSolver
from cubdf.step_logger import StepLogger
from cubdf.systems.base import (
    DifferenceQuotientJacobian,
    HostFunctional,
    HostJacobian,
)


@attrs.define
class BDFResult:
    """Solution of :func:`solve_bdf`.

    Attributes
    ----------
    t : ndarray
        Output times.
    y : ndarray
        Solution, one row per output time.
    statistics : IntegratorStatistics
        Counters of the integration.
    logger : StepLogger
        Step events of the integration.
    """

    t: NDArray = attrs.field(eq=False)
    y: NDArray = attrs.field(eq=False)
    statistics: IntegratorStatistics = attrs.field()
    logger: StepLogger = attrs.field(eq=False)


def solve_bdf(
    f: Callable[[NDArray], NDArray],
    y0: ArrayLike,
    tmax: float,
    jac: Optional[Callable[[NDArray], NDArray]] = None,
    t_eval: Optional[Sequence[float]] = None,
    atol: ArrayLike = 1e-8,
    rtol: float = 1e-6,
    precision=np.float64,
    dt_max: float = inf,
    dt_min: float = 0.0,
    t0: float = 0.0,
    nonlinear_solver: Optional[NonlinearSolver] = None,
    constants: Optional[BDFConstants] = None,
    verbosity: Optional[str] = None,
) -> BDFResult:
    """Integrate ``y' = f(y)`` from ``t0`` to ``tmax``.

    Parameters
    ----------
    f : callable
        ``f(y) -> dy/dt`` on host arrays.
    y0 : array-like
        Initial state.
    tmax : float
        Final time.
    jac : callable, optional
        ``jac(y) -> (n, n)`` dense Jacobian. Approximated by forward
        differences when omitted.
    t_eval : sequence of float, optional
        Increasing output times in ``(t0, tmax]``. Defaults to ``[tmax]``.
    atol, rtol
        Absolute and relative tolerances.
    precision
        Floating point type of the device buffers.
    dt_max, dt_min : float
        Step bounds.
    t0 : float
        Initial time.
    nonlinear_solver : NonlinearSolver, optional
        Defaults to :class:`NewtonSolver`.
    constants : BDFConstants, optional
        Controller constants.
    verbosity : str or None
        Verbosity of the :class:`StepLogger`.

    Returns
    -------
    BDFResult
        Solution at each output time and the integration counters.
    """
    y0 = np.asarray(y0, dtype=precision).reshape(-1)
    n = y0.shape[0]
    functional = HostFunctional(f, n)
    if jac is None:
        jacobian = DifferenceQuotientJacobian(functional)
    else:
        jacobian = HostJacobian(jac, n)
    if nonlinear_solver is None:
        nonlinear_solver = NewtonSolver()
    if t_eval is None:
        t_eval = [tmax]
    t_eval = np.asarray(t_eval, dtype=np.float64)
    if np.any(np.diff(t_eval) < 0) or t_eval[0] < t0 or t_eval[-1] > tmax:
        raise ValueError(
            "t_eval must be increasing and lie within [t0, tmax]"
        )

    logger = StepLogger(verbosity)
    output = np.empty((t_eval.shape[0], n), dtype=precision)
    with BDFSolver(
        functional,
        jacobian,
        nonlinear_solver,
        y0,
        atol,
        rtol=rtol,
        precision=precision,
        dt_max=dt_max,
        dt_min=dt_min,
        t0=t0,
        constants=constants,
        logger=logger,
    ) as solver:
        fv = cuda.device_array(n, dtype=precision)
        d = cuda.device_array(n, dtype=precision)
        y = cuda.device_array(n, dtype=precision)
        jv = jacobian.allocate(precision)
        for index, t_out in enumerate(t_eval):
            solver.compute(functional, jacobian, fv, jv, d, y, t_out)
            output[index] = y.copy_to_host()
        statistics = solver.statistics
    logger.print_summary()
    return BDFResult(t=t_eval, y=output, statistics=statistics, logger=logger)
