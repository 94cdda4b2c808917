"""Adaptive variable-order BDF integrator.

Published Classes
-----------------
:class:`BDFSolver`
    Integrates ``y' = F(y)`` from an initial state to successive target
    times, one host-driven step at a time, with the element-wise work done
    by CUDA kernels on buffers the instance owns.

Notes
-----
Every attempt follows the same cycle: apply the order and step chosen
after the previous acceptance, evaluate the error weights, snapshot the
history, predict, solve the corrector equation, and run the local error
test. A failed attempt restores the snapshot before the controller
shrinks the step, so a retry always starts from the accepted history.
"""

from math import inf
from typing import Optional

import numpy as np

from cubdf._utils import unit_roundoff
from cubdf.cuda_simsafe import is_cuda_array
from cubdf.errors import (
    ConvergenceFailure,
    DimensionMismatch,
    ErrorTestFailure,
    FatalIntegrationFailure,
    StepSizeUnderflow,
)
from cubdf.integrators.bdf_config import BDFConstants, BDFSolverConfig
from cubdf.integrators.controller import (
    IntegratorStatistics,
    OrderStepController,
    SolverState,
    StepState,
)
from cubdf.integrators.corrector import (
    CorrectorSystem,
    iteration_pattern,
    unit_diagonal_values,
)
from cubdf.integrators.nordsieck import NordsieckHistory, NordsieckKernels
from cubdf.integrators.norms import WeightedNorm
from cubdf.integrators.step_initializer import StepSizeInitializer
from cubdf.integrators.tolerances import ErrorWeights
from cubdf.memory import BufferRequest, SolverBuffers
from cubdf.nonlinear.base import NonlinearSolver
from cubdf.step_logger import StepLogger
from cubdf.systems.base import COOMatrix, SystemFunctional, SystemJacobian


class BDFSolver:
    """Stiff ODE integrator using BDF formulas of order one to five.

    Parameters
    ----------
    functional
        Right-hand side ``F``.
    jacobian
        Jacobian of ``F``. Its sparsity pattern is fixed for the lifetime
        of the solver.
    nonlinear_solver
        Root finder for the corrector equation.
    y0
        Initial state, host or device, length ``n``.
    atol
        Absolute tolerance, scalar or length ``n``.
    rtol
        Relative tolerance.
    precision
        Floating point type of every device buffer.
    dt_max, dt_min
        Bounds on the step.
    t0
        Initial time.
    constants
        Controller constants; defaults to :class:`BDFConstants`.
    logger
        Receives step events; a silent logger is created when omitted.

    Raises
    ------
    DimensionMismatch
        If ``y0``, ``atol``, ``functional`` and ``jacobian`` disagree on
        the system size.
    InvalidTolerance
        If the tolerances are invalid or give a non-positive weight
        denominator at ``y0``.
    """

    def __init__(
        self,
        functional: SystemFunctional,
        jacobian: SystemJacobian,
        nonlinear_solver: NonlinearSolver,
        y0,
        atol,
        rtol: float = 1e-6,
        precision=np.float64,
        dt_max: float = inf,
        dt_min: float = 0.0,
        t0: float = 0.0,
        constants: Optional[BDFConstants] = None,
        logger: Optional[StepLogger] = None,
    ) -> None:
        host_y0 = y0.copy_to_host() if is_cuda_array(y0) else y0
        host_y0 = np.asarray(host_y0, dtype=precision)
        if host_y0.ndim != 1:
            raise DimensionMismatch(
                f"Initial state must be one-dimensional, got shape "
                f"{host_y0.shape}"
            )
        n = host_y0.shape[0]
        if functional.n != n or jacobian.n != n:
            raise DimensionMismatch(
                f"Initial state has {n} components but the functional has "
                f"{functional.n} and the Jacobian {jacobian.n}"
            )

        self.config = BDFSolverConfig(
            precision=precision,
            n=n,
            rtol=rtol,
            atol=atol,
            dt_max=dt_max,
            dt_min=dt_min,
        )
        precision = self.config.precision
        self.constants = constants if constants is not None else BDFConstants()
        self.logger = logger if logger is not None else StepLogger(None)
        self.nonlinear_solver = nonlinear_solver
        self.functional = functional
        self.jacobian = jacobian
        self._pattern = tuple(
            np.asarray(index, dtype=np.int32) for index in jacobian.sparsity()
        )
        self.t0 = float(t0)

        lmax = self.constants.lmax
        zn_initial = np.zeros((lmax, n), dtype=precision)
        zn_initial[0] = host_y0
        h_rows, h_cols = iteration_pattern(jacobian)
        self.buffers = SolverBuffers(
            {
                "zn": BufferRequest(precision, (lmax, n), zn_initial),
                "zn_saved": BufferRequest(precision, (lmax, n)),
                "lpoly": BufferRequest(precision, (lmax,)),
                "atol": BufferRequest(precision, (n,), self.config.atol),
                "weights": BufferRequest(precision, (n,)),
                "u": BufferRequest(precision, (n,)),
                "f0": BufferRequest(precision, (n,)),
                "y_work": BufferRequest(precision, (n,)),
                "f_work": BufferRequest(precision, (n,)),
                "h_rows": BufferRequest(np.int32, h_rows.shape, h_rows),
                "h_cols": BufferRequest(np.int32, h_cols.shape, h_cols),
                "h_values": BufferRequest(
                    precision,
                    h_rows.shape,
                    unit_diagonal_values(jacobian, precision),
                ),
            }
        )
        buffers = self.buffers
        self._zeros = np.zeros(n, dtype=precision)

        self.kernels = NordsieckKernels(precision, n, lmax)
        self.weights = ErrorWeights(precision, n, self.config.rtol)
        self.norm = WeightedNorm(precision, n)
        self.history = NordsieckHistory(
            self.kernels, buffers["zn"], buffers["zn_saved"], buffers["lpoly"]
        )
        self.state = SolverState(
            n=n,
            n_equations=functional.n_equations,
            rtol=self.config.rtol,
            dt_max=self.config.dt_max,
            t=self.t0,
        )
        self.controller = OrderStepController(
            self.state,
            self.history,
            self.norm,
            self.constants,
            dt_min=self.config.dt_min,
            logger=self.logger,
        )
        self.initializer = StepSizeInitializer(
            self.kernels,
            self.norm,
            buffers["atol"],
            buffers["weights"],
            buffers["f0"],
            buffers["y_work"],
            buffers["f_work"],
            self.constants,
            self.config.dt_max,
        )
        jv = jacobian.allocate(precision)
        self.corrector = CorrectorSystem(
            functional,
            jacobian,
            buffers["zn"],
            buffers["f_work"],
            jv,
            precision,
            h=COOMatrix(
                rows=buffers["h_rows"],
                cols=buffers["h_cols"],
                values=buffers["h_values"],
                shape=(n, n),
            ),
        )
        self._extra_f_evals = 0
        self._started = False

        # Tolerances that fail at y0 are reported before any step is taken
        self._evaluate_weights()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def release(self) -> None:
        """Release every device buffer owned by this solver."""
        self.buffers.release()

    def __enter__(self) -> "BDFSolver":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.release()

    def _check_usable(self) -> None:
        if self.buffers.released:
            raise RuntimeError("Solver buffers have been released.")
        if self.controller.fatal:
            raise FatalIntegrationFailure(
                f"Integration failed at t={self.state.t:.6e}; this solver "
                "cannot continue."
            )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def n(self) -> int:
        """Number of state components."""
        return self.config.n

    @property
    def precision(self):
        """Floating point type of the device buffers."""
        return self.config.precision

    @property
    def t(self) -> float:
        """Time of the last accepted step."""
        return self.state.t

    @property
    def phase(self) -> StepState:
        """Current phase of the step state machine."""
        return self.controller.phase

    @property
    def statistics(self) -> IntegratorStatistics:
        """Cumulative counters, with evaluation counts brought up to date."""
        stats = self.controller.statistics
        stats.n_f_evals = (
            self.corrector.n_f_evals
            + self.initializer.n_f_evals
            + self._extra_f_evals
        )
        stats.n_j_evals = self.corrector.n_j_evals
        return stats

    # ------------------------------------------------------------------
    # Integration
    # ------------------------------------------------------------------

    def compute(self, F, J, Fv, Jv, d, Y, tmax: float) -> None:
        """Integrate until ``tmax`` and write the solution into ``Y``.

        Parameters
        ----------
        F, J
            Right-hand side and Jacobian to integrate with. They must have
            the size and sparsity pattern given at construction.
        Fv, d
            Device scratch vectors for ``F`` values and the correction.
        Jv
            :class:`COOMatrix` receiving ``J`` values.
        Y
            Device vector overwritten with the solution at ``tmax``.
        tmax
            Target time; must not precede the current time.

        Raises
        ------
        FatalIntegrationFailure
            If the step cannot be reduced further at order one. The solver
            refuses any further call afterwards.
        """
        self._prepare(F, J, Fv, Jv, d, Y, tmax)
        while self.state.t < tmax:
            self._advance(F, d)
        Y.copy_to_device(self.history.zn[0])

    def step(self, F, J, Fv, Jv, d, Y, tmax: float) -> float:
        """Take a single accepted step towards ``tmax``.

        Arguments are those of :meth:`compute`. ``Y`` receives the
        solution at the end of the step, which never passes ``tmax``.

        Returns
        -------
        float
            Time reached.
        """
        self._prepare(F, J, Fv, Jv, d, Y, tmax)
        if self.state.t < tmax:
            self._advance(F, d)
        Y.copy_to_device(self.history.zn[0])
        return self.state.t

    def interpolate(self, t: float, out) -> None:
        """Write the solution at ``t`` inside the last accepted step.

        Raises
        ------
        ValueError
            If ``t`` lies outside ``[t_n - dt_last, t_n]``.
        """
        if self.buffers.released:
            raise RuntimeError("Solver buffers have been released.")
        state = self.state
        tn = state.t
        if self.controller.phase == StepState.ACCEPTING:
            dt_last = self.controller.statistics.last_dt
        else:
            dt_last = 0.0
        slack = 100.0 * unit_roundoff(self.precision) * (abs(tn) + dt_last)
        if t < tn - dt_last - slack or t > tn + slack:
            raise ValueError(
                f"Time {t} is outside the last step "
                f"[{tn - dt_last}, {tn}]"
            )
        if dt_last == 0.0:
            out.copy_to_device(self.history.zn[0])
            return
        self.history.interpolate((t - tn) / state.dt, state.q, out)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _prepare(self, F, J, Fv, Jv, d, Y, tmax: float) -> None:
        self._check_usable()
        n = self.n
        if F.n != n or J.n != n:
            raise DimensionMismatch(
                f"Functional and Jacobian must have {n} components"
            )
        for name, vector in (("Fv", Fv), ("d", d), ("Y", Y)):
            if tuple(vector.shape) != (n,):
                raise DimensionMismatch(
                    f"{name} has shape {tuple(vector.shape)}, expected ({n},)"
                )
        rows, cols = J.sparsity()
        if not (
            np.array_equal(np.asarray(rows), self._pattern[0])
            and np.array_equal(np.asarray(cols), self._pattern[1])
        ):
            raise DimensionMismatch(
                "Jacobian sparsity differs from the pattern given at "
                "construction"
            )
        if Jv.nnz != self._pattern[0].shape[0]:
            raise DimensionMismatch(
                f"Jv stores {Jv.nnz} entries, expected "
                f"{self._pattern[0].shape[0]}"
            )
        if tmax < self.state.t:
            raise ValueError(
                f"tmax ({tmax}) precedes the current time ({self.state.t})"
            )

        self.corrector.bind(F, J, Fv, Jv)
        self.controller.tmax = float(tmax)
        if not self._started and tmax > self.state.t:
            self._initialize(F, float(tmax))

    def _initialize(self, F, tmax: float) -> None:
        """Choose the first step and start the history at order one."""
        history = self.history
        t = self.state.t
        self._evaluate_weights()
        dt = self.initializer.initialize_time_step(t, tmax, history.zn[0], F)
        dt = min(max(dt, self.config.dt_min), tmax - t)
        history.initialize(history.zn[0], self.initializer.f0, dt)
        self.controller.start(t, tmax, dt)
        self.logger.record("initial_step", t, dt, 1)
        self._started = True

    def _evaluate_weights(self) -> None:
        buffers = self.buffers
        self.weights.evaluate(
            self.history.zn[0], buffers["atol"], buffers["weights"]
        )

    def _weighted_norm(self, values) -> float:
        return self.norm(values, self.buffers["weights"])

    def _advance(self, F, d) -> None:
        """Take one accepted step, retrying with smaller steps as needed."""
        controller = self.controller
        while True:
            controller.begin_step()
            landing = controller.clamp_to_target()
            error_norm = None
            try:
                dsm = self._attempt_step(d)
            except ConvergenceFailure:
                pass
            except ErrorTestFailure as failure:
                error_norm = failure.error_norm
            else:
                controller.accept(d, self.buffers["weights"], dsm, landing)
                return

            try:
                if error_norm is None:
                    decision = controller.reject_convergence()
                else:
                    decision = controller.reject_error_test(error_norm)
            except StepSizeUnderflow as exc:
                state = self.state
                self.logger.record(
                    "fatal", state.t, state.dt, state.q, error_norm=error_norm
                )
                raise FatalIntegrationFailure(
                    f"Integration failed at t={state.t:.6e} with "
                    f"dt={state.dt:.6e}: {exc}"
                ) from exc

            if decision.force_order_one:
                f0 = self.buffers["f0"]
                F.evaluate(self.history.zn[0], f0)
                self._extra_f_evals += 1
                controller.restart_order_one(f0)

    def _attempt_step(self, d) -> float:
        """Run one trial step and return its local error estimate.

        The history is restored to its state before the prediction whenever
        the attempt does not succeed. Errors other than the two below also
        return the controller to ``PREDICTING`` before propagating, so the
        solver can be called again.

        Raises
        ------
        ConvergenceFailure
            If the nonlinear solve fails.
        ErrorTestFailure
            If the weighted local error exceeds one.
        """
        state = self.state
        history = self.history
        controller = self.controller
        buffers = self.buffers
        q = state.q

        self._evaluate_weights()
        history.snapshot()
        try:
            history.predict(q)
            coefficients = history.compute_coefficients(
                q, state.dt, state.q_next_change, self.constants.nlscoef
            )
            controller.transition(StepState.CORRECTING)
            corrector = self.corrector
            corrector.configure(coefficients.gamma, state.dt, coefficients.rl1)

            u = buffers["u"]
            u.copy_to_device(history.zn[0])
            d.copy_to_device(self._zeros)
            iterations = self.nonlinear_solver.solve(
                corrector.residual,
                corrector.iteration_matrix,
                corrector.h,
                u,
                d,
                self._weighted_norm,
                coefficients.tq[4],
            )
            controller.statistics.n_nonlinear_iters += iterations

            dsm = controller.error_test(
                d, buffers["weights"], coefficients.tq[2]
            )
            if dsm > 1.0:
                raise ErrorTestFailure(
                    f"Local error {dsm:.3e} exceeds tolerance at "
                    f"t={state.t:.6e}",
                    dsm,
                )
        except (ConvergenceFailure, ErrorTestFailure):
            history.restore()
            raise
        except BaseException:
            history.restore()
            controller.abandon_attempt()
            raise
        return dsm
