import attrs
import numpy as np
import pytest
from numba import cuda

from cubdf.errors import ConvergenceFailure
from cubdf.nonlinear import NewtonConfig, NewtonSolver
from cubdf.systems.base import HostFunctional, HostJacobian


def rms(vector):
    host = vector.copy_to_host()
    return float(np.sqrt(np.mean(host**2)))


def solve(solver, g, h, u0, tolerance=1e-10):
    n = len(u0)
    functional = HostFunctional(g, n)
    jacobian = HostJacobian(h, n)
    matrix = jacobian.allocate(np.float64)
    u = cuda.to_device(np.asarray(u0, dtype=np.float64))
    d = cuda.to_device(np.zeros(n))
    iterations = solver.solve(
        functional, jacobian, matrix, u, d, rms, tolerance
    )
    return iterations, u.copy_to_host(), d.copy_to_host()


def test_config_defaults():
    config = NewtonConfig()
    assert config.max_iters == 3
    assert config.crdown == 0.3
    assert config.rdiv == 2.0


def test_config_overrides():
    solver = NewtonSolver(max_iters=5)
    assert solver.config.max_iters == 5
    solver = NewtonSolver(NewtonConfig(crdown=0.5), max_iters=4)
    assert solver.config == NewtonConfig(max_iters=4, crdown=0.5)
    with pytest.raises(ValueError):
        NewtonConfig(rdiv=0.5)
    with pytest.raises(attrs.exceptions.FrozenInstanceError):
        solver.config.max_iters = 2


def test_linear_system_converges():
    a = np.array([[2.0, 1.0], [0.0, 4.0]])
    b = np.array([1.0, 2.0])
    solver = NewtonSolver()
    iterations, u, d = solve(
        solver, lambda y: a @ y - b, lambda y: a, [0.0, 0.0]
    )
    np.testing.assert_allclose(u, np.linalg.solve(a, b))
    np.testing.assert_allclose(d, u)
    # The second update is zero and confirms convergence
    assert iterations == 2
    assert solver.n_solves == 1
    assert solver.n_iterations == 2


def test_correction_accumulates_from_nonzero_guess():
    iterations, u, d = solve(
        NewtonSolver(), lambda y: y - 3.0, lambda y: np.eye(1), [1.0]
    )
    assert u[0] == pytest.approx(3.0)
    assert d[0] == pytest.approx(2.0)


def test_singular_matrix_raises():
    with pytest.raises(ConvergenceFailure):
        solve(
            NewtonSolver(),
            lambda y: y - 1.0,
            lambda y: np.zeros((1, 1)),
            [0.0],
        )


def test_non_finite_matrix_raises():
    with pytest.raises(ConvergenceFailure):
        solve(
            NewtonSolver(),
            lambda y: y - 1.0,
            lambda y: np.array([[np.nan]]),
            [0.0],
        )


def test_divergence_detected():
    """A matrix ten times too small overshoots with growing updates."""
    with pytest.raises(ConvergenceFailure, match="diverging"):
        solve(
            NewtonSolver(),
            lambda y: y - 1.0,
            lambda y: np.array([[0.1]]),
            [0.0],
        )


def test_slow_contraction_exhausts_iterations():
    """A matrix twice too large halves the error each iteration."""
    with pytest.raises(ConvergenceFailure, match="did not converge"):
        solve(
            NewtonSolver(),
            lambda y: y - 1.0,
            lambda y: np.array([[2.0]]),
            [0.0],
        )


def test_rate_estimate_allows_early_exit():
    """Fast contraction is accepted before the update meets tolerance."""
    iterations, u, _ = solve(
        NewtonSolver(max_iters=10),
        lambda y: y - 1.0,
        lambda y: np.array([[1.1]]),
        [0.0],
        tolerance=0.03,
    )
    assert iterations == 2
    # The last update (about 0.08) is above the tolerance itself
    assert u[0] == pytest.approx(1.0, abs=1e-2)
