import numpy as np
import pytest
from numba import cuda

from cubdf import (
    BDFSolver,
    ConvergenceFailure,
    DimensionMismatch,
    ErrorTestFailure,
    FatalIntegrationFailure,
    HostFunctional,
    HostJacobian,
    InvalidTolerance,
    NewtonSolver,
    StepSizeUnderflow,
    StepState,
)
from tests.system_fixtures import (
    OversizedCorrection,
    ScriptedSolver,
    build_decay_system,
    build_solver,
    run_to,
    step_to,
)


# ========================================
# Accuracy
# ========================================


def test_decay_to_one(decay_system):
    setup = build_solver(decay_system, atol=1e-8, rtol=1e-6)
    y = run_to(setup, 1.0)
    assert setup.solver.t == 1.0
    assert abs(y[0] - np.exp(-1.0)) < 1e-5


def test_stiff_linear_system(stiff_linear_system):
    setup = build_solver(stiff_linear_system, atol=1e-8, rtol=1e-6)
    y = run_to(setup, 1.0)
    np.testing.assert_allclose(
        y, stiff_linear_system.exact(1.0), rtol=1e-4, atol=1e-6
    )
    # The fast mode is resolved with a few steps and then stepped over
    assert setup.solver.statistics.n_steps < 500


def test_successive_targets(decay_system):
    setup = build_solver(decay_system)
    for tmax in (0.25, 0.5, 1.0):
        y = run_to(setup, tmax)
        assert setup.solver.t == tmax
        assert abs(y[0] - np.exp(-tmax)) < 1e-5


def test_target_equal_to_current_time(decay_system):
    setup = build_solver(decay_system)
    y = run_to(setup, 0.0)
    np.testing.assert_array_equal(y, [1.0])
    assert setup.solver.statistics.n_steps == 0


def test_target_before_current_time(decay_system):
    setup = build_solver(decay_system)
    run_to(setup, 0.5)
    with pytest.raises(ValueError):
        run_to(setup, 0.25)


def test_single_precision(decay_system):
    setup = build_solver(
        decay_system, precision=np.float32, atol=1e-6, rtol=1e-4
    )
    y = run_to(setup, 1.0)
    assert y.dtype == np.float32
    assert abs(y[0] - np.exp(-1.0)) < 1e-3


# ========================================
# Order and step behaviour
# ========================================


def test_order_rises_on_smooth_problem(decay_system):
    setup = build_solver(decay_system)
    run_to(setup, 10.0)
    stats = setup.solver.statistics
    assert stats.max_order_used >= 2
    assert all(1 <= e.order <= 5 for e in setup.logger.events_of("accept"))
    assert stats.n_order_changes >= 1


def test_accepted_errors_within_tolerance(stiff_linear_system):
    setup = build_solver(stiff_linear_system)
    run_to(setup, 1.0)
    accepts = setup.logger.events_of("accept")
    assert accepts
    assert all(e.error_norm <= 1.0 for e in accepts)
    times = [e.t for e in accepts]
    assert times == sorted(times)
    assert times[-1] == 1.0


def test_step_never_exceeds_dt_max(decay_system):
    setup = build_solver(decay_system, dt_max=0.05)
    run_to(setup, 2.0)
    accepts = setup.logger.events_of("accept")
    assert max(e.dt for e in accepts) <= 0.05 * (1 + 1e-12)
    assert len(accepts) >= 40


@pytest.mark.parametrize("tmax", [1.3, 2.8, 4.1])
def test_final_step_is_not_a_sliver(decay_system, tmax):
    setup = build_solver(decay_system)
    run_to(setup, tmax)
    accepts = setup.logger.events_of("accept")
    assert accepts[-1].t == tmax
    assert accepts[-1].dt >= 0.05 * accepts[-2].dt


def test_step_method_advances_one_step(decay_system):
    setup = build_solver(decay_system)
    t1 = step_to(setup, 1.0)
    assert 0.0 < t1 < 1.0
    t2 = step_to(setup, 1.0)
    assert t1 < t2 <= 1.0
    assert setup.solver.statistics.n_steps == 2
    np.testing.assert_allclose(
        setup.y.copy_to_host(), [np.exp(-t2)], rtol=1e-5
    )


# ========================================
# Failure handling
# ========================================


def test_convergence_failures_restart_at_order_one(decay_system):
    inner = NewtonSolver()
    scripted = ScriptedSolver(inner)
    setup = build_solver(decay_system, nonlinear_solver=scripted)
    state = setup.solver.state
    for _ in range(200):
        step_to(setup, 10.0)
        if state.q_next >= 2:
            break
    assert state.q_next >= 2

    stats = setup.solver.statistics
    resets = stats.n_order_resets
    failures = stats.n_convergence_failures
    scripted.fail_calls = set(range(scripted.calls, scripted.calls + 4))
    setup.logger.clear()
    step_to(setup, 10.0)

    rejects = setup.logger.events_of("reject_convergence")
    assert len(rejects) == 4
    for previous, current in zip(rejects, rejects[1:]):
        assert current.dt == pytest.approx(0.5 * previous.dt)
    assert all(e.order >= 2 for e in rejects)
    assert len(setup.logger.events_of("order_reset")) == 1
    accepts = setup.logger.events_of("accept")
    assert len(accepts) == 1
    assert accepts[0].order == 1
    assert stats.n_order_resets == resets + 1
    assert stats.n_convergence_failures == failures + 4


@pytest.mark.filterwarnings("ignore::RuntimeWarning")
def test_persistent_failure_is_fatal(decay_system):
    scripted = ScriptedSolver(NewtonSolver(), fail_from=0)
    setup = build_solver(
        decay_system, nonlinear_solver=scripted, dt_min=1e-4
    )
    with pytest.raises(FatalIntegrationFailure) as exc:
        run_to(setup, 1.0)
    assert isinstance(exc.value.__cause__, StepSizeUnderflow)
    assert setup.solver.phase == StepState.FATAL
    fatal = setup.logger.events_of("fatal")
    assert len(fatal) == 1
    assert fatal[0].dt == pytest.approx(1e-4)
    assert fatal[0].order == 1
    assert setup.solver.t == 0.0

    with pytest.raises(FatalIntegrationFailure):
        run_to(setup, 1.0)


@pytest.mark.filterwarnings("ignore::RuntimeWarning")
def test_non_finite_jacobian_is_fatal(decay_system):
    setup = build_solver(decay_system, dt_min=1e-6)
    bad_jacobian = HostJacobian(lambda y: np.array([[np.nan]]), 1)
    with pytest.raises(FatalIntegrationFailure):
        setup.solver.compute(
            setup.functional,
            bad_jacobian,
            setup.fv,
            setup.jv,
            setup.d,
            setup.y,
            1.0,
        )


def test_error_test_failures_shrink_step(decay_system):
    setup = build_solver(decay_system)
    step_to(setup, 10.0)
    newton = setup.solver.nonlinear_solver
    setup.solver.nonlinear_solver = OversizedCorrection()
    setup.logger.clear()
    controller = setup.solver.controller
    controller.begin_step()
    dt = setup.solver.state.dt

    def attempt():
        with pytest.raises(ErrorTestFailure):
            setup.solver._attempt_step(setup.d)

    # Two failures, then let the real solver take the step
    attempt()
    first = controller.reject_error_test(1.0e3)
    attempt()
    second = controller.reject_error_test(1.0e3)
    assert first.eta == pytest.approx(0.1)
    assert second.eta == pytest.approx(0.1)
    assert setup.solver.state.dt == pytest.approx(0.01 * dt)
    setup.solver.nonlinear_solver = newton
    step_to(setup, 10.0)
    assert len(setup.logger.events_of("accept")) == 1


# ========================================
# Rollback
# ========================================


@pytest.mark.parametrize(
    "failing, error",
    [
        (lambda: ScriptedSolver(NewtonSolver(), fail_from=0),
         ConvergenceFailure),
        (lambda: OversizedCorrection(), ErrorTestFailure),
    ],
    ids=["convergence", "error_test"],
)
def test_failed_attempt_restores_history(decay_system, failing, error):
    setup = build_solver(decay_system)
    for _ in range(3):
        step_to(setup, 10.0)
    solver = setup.solver
    solver.controller.begin_step()
    before = solver.history.host_array()
    tau = solver.history.tau.copy()
    t = solver.t
    solver.nonlinear_solver = failing()
    with pytest.raises(error):
        solver._attempt_step(setup.d)
    np.testing.assert_array_equal(solver.history.host_array(), before)
    np.testing.assert_array_equal(solver.history.tau, tau)
    assert solver.t == t


def test_user_error_during_attempt_leaves_solver_usable(decay_system):
    setup = build_solver(decay_system)
    for _ in range(3):
        step_to(setup, 10.0)
    solver = setup.solver
    solver.controller.begin_step()
    before = solver.history.host_array()
    tau = solver.history.tau.copy()
    t, dt, q = solver.t, solver.state.dt, solver.state.q

    def broken(y):
        raise FloatingPointError("overflow in right-hand side")

    rhs = setup.functional.fn
    setup.functional.fn = broken
    with pytest.raises(FloatingPointError):
        step_to(setup, 10.0)

    assert solver.phase == StepState.PREDICTING
    np.testing.assert_array_equal(solver.history.host_array(), before)
    np.testing.assert_array_equal(solver.history.tau, tau)
    assert (solver.t, solver.state.dt, solver.state.q) == (t, dt, q)
    assert solver.statistics.n_steps == 3

    setup.functional.fn = rhs
    t_next = step_to(setup, 10.0)
    assert t_next > t
    assert solver.statistics.n_steps == 4
    np.testing.assert_allclose(
        setup.y.copy_to_host(), [np.exp(-t_next)], rtol=1e-5
    )


# ========================================
# Dense output
# ========================================


def test_interpolate_inside_last_step(decay_system):
    setup = build_solver(decay_system)
    for _ in range(5):
        step_to(setup, 10.0)
    solver = setup.solver
    t = solver.t
    dt_last = solver.statistics.last_dt
    out = cuda.device_array(1, dtype=np.float64)

    solver.interpolate(t, out)
    np.testing.assert_array_equal(out.copy_to_host(), setup.y.copy_to_host())

    t_mid = t - 0.5 * dt_last
    solver.interpolate(t_mid, out)
    assert out.copy_to_host()[0] == pytest.approx(np.exp(-t_mid), abs=1e-4)

    with pytest.raises(ValueError):
        solver.interpolate(t + dt_last, out)
    with pytest.raises(ValueError):
        solver.interpolate(t - 2.0 * dt_last, out)


def test_interpolate_before_first_step(decay_system):
    setup = build_solver(decay_system)
    out = cuda.device_array(1, dtype=np.float64)
    setup.solver.interpolate(0.0, out)
    np.testing.assert_array_equal(out.copy_to_host(), [1.0])
    with pytest.raises(ValueError):
        setup.solver.interpolate(0.1, out)


# ========================================
# Configuration errors
# ========================================


@pytest.mark.parametrize(
    "atol, rtol, y0",
    [
        (-1e-8, 1e-6, [1.0]),
        (0.0, 0.0, [1.0]),
        (0.0, 1e-6, [0.0]),
    ],
    ids=["negative_atol", "zero_tolerances", "zero_state"],
)
def test_invalid_tolerances(atol, rtol, y0):
    system = build_decay_system()
    system.y0 = np.array(y0)
    with pytest.raises(InvalidTolerance):
        build_solver(system, atol=atol, rtol=rtol)


def test_atol_length_mismatch(stiff_linear_system):
    with pytest.raises(DimensionMismatch):
        build_solver(stiff_linear_system, atol=[1e-8, 1e-8, 1e-8])


def test_state_functional_mismatch(decay_system):
    functional = HostFunctional(decay_system.f, 2)
    jacobian = HostJacobian(decay_system.jac, 2)
    with pytest.raises(DimensionMismatch):
        BDFSolver(functional, jacobian, NewtonSolver(), [1.0], 1e-8)


def test_scratch_vector_mismatch(decay_system):
    setup = build_solver(decay_system)
    with pytest.raises(DimensionMismatch):
        setup.solver.compute(
            setup.functional,
            setup.jacobian,
            cuda.device_array(2),
            setup.jv,
            setup.d,
            setup.y,
            1.0,
        )


def test_sparsity_change_rejected(stiff_linear_system):
    setup = build_solver(stiff_linear_system)
    diagonal = HostJacobian(
        lambda y: np.array([-1.0, -1000.0]),
        2,
        rows=np.array([0, 1]),
        cols=np.array([0, 1]),
    )
    with pytest.raises(DimensionMismatch):
        setup.solver.compute(
            setup.functional,
            diagonal,
            setup.fv,
            diagonal.allocate(np.float64),
            setup.d,
            setup.y,
            1.0,
        )


# ========================================
# Lifecycle and statistics
# ========================================


def test_statistics_track_work(stiff_linear_system):
    setup = build_solver(stiff_linear_system)
    run_to(setup, 0.1)
    stats = setup.solver.statistics
    assert stats.n_steps == len(setup.logger.events_of("accept"))
    assert stats.n_f_evals > stats.n_steps
    assert stats.n_j_evals >= 1
    assert stats.n_nonlinear_iters >= stats.n_steps
    assert stats.last_dt > 0.0
    assert 1 <= stats.current_order <= 5


def test_release_refuses_further_use(decay_system):
    setup = build_solver(decay_system)
    with setup.solver as solver:
        run_to(setup, 0.1)
    assert solver.buffers.released
    with pytest.raises(RuntimeError):
        run_to(setup, 0.2)


def test_solver_properties(stiff_linear_system):
    setup = build_solver(stiff_linear_system, precision=np.float32)
    solver = setup.solver
    assert solver.n == 2
    assert solver.precision is np.float32
    assert solver.t == 0.0
    assert solver.phase == StepState.PREDICTING
