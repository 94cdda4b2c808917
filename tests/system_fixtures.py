"""Reusable test systems and solver builders."""

from types import SimpleNamespace
from typing import Iterable, Optional

import numpy as np
from numba import cuda

from cubdf import (
    BDFSolver,
    ConvergenceFailure,
    HostFunctional,
    HostJacobian,
    NewtonSolver,
    NonlinearSolver,
    StepLogger,
)


def build_decay_system(rate: float = 1.0):
    """Scalar decay ``y' = -rate*y`` with ``y(0) = 1``."""

    def f(y):
        return -rate * y

    def jac(y):
        return np.array([[-rate]])

    return SimpleNamespace(
        n=1,
        f=f,
        jac=jac,
        y0=np.array([1.0]),
        exact=lambda t: np.array([np.exp(-rate * t)]),
    )


def build_stiff_linear_system():
    """``y' = A y`` with eigenvalues -1 and -1000.

    With ``y(0) = [1, 2]`` the solution is
    ``y1 = exp(-t)`` and ``y2 = exp(-t) + exp(-1000 t)``.
    """
    a = np.array([[-1.0, 0.0], [999.0, -1000.0]])

    def f(y):
        return a @ y

    def jac(y):
        return a.copy()

    def exact(t):
        slow = np.exp(-t)
        return np.array([slow, slow + np.exp(-1000.0 * t)])

    return SimpleNamespace(
        n=2,
        f=f,
        jac=jac,
        y0=np.array([1.0, 2.0]),
        exact=exact,
    )


def build_solver(
    system,
    precision=np.float64,
    atol=1e-8,
    rtol=1e-6,
    nonlinear_solver: Optional[NonlinearSolver] = None,
    **kwargs,
):
    """Return a solver with host collaborators and device scratch buffers."""
    functional = HostFunctional(system.f, system.n)
    jacobian = HostJacobian(system.jac, system.n)
    if nonlinear_solver is None:
        nonlinear_solver = NewtonSolver()
    logger = kwargs.pop("logger", StepLogger(None))
    solver = BDFSolver(
        functional,
        jacobian,
        nonlinear_solver,
        system.y0,
        atol,
        rtol=rtol,
        precision=precision,
        logger=logger,
        **kwargs,
    )
    return SimpleNamespace(
        solver=solver,
        functional=functional,
        jacobian=jacobian,
        logger=logger,
        fv=cuda.device_array(system.n, dtype=precision),
        jv=jacobian.allocate(precision),
        d=cuda.device_array(system.n, dtype=precision),
        y=cuda.device_array(system.n, dtype=precision),
    )


def run_to(setup, tmax: float) -> np.ndarray:
    """Integrate ``setup`` to ``tmax`` and return the host solution."""
    setup.solver.compute(
        setup.functional,
        setup.jacobian,
        setup.fv,
        setup.jv,
        setup.d,
        setup.y,
        tmax,
    )
    return setup.y.copy_to_host()


def step_to(setup, tmax: float) -> float:
    """Take one accepted step towards ``tmax`` and return the time reached."""
    return setup.solver.step(
        setup.functional,
        setup.jacobian,
        setup.fv,
        setup.jv,
        setup.d,
        setup.y,
        tmax,
    )


class ScriptedSolver(NonlinearSolver):
    """Delegating solver that fails on chosen calls.

    Parameters
    ----------
    inner
        Solver used for the calls that succeed.
    fail_calls
        Zero-based call indices that raise :class:`ConvergenceFailure`.
    fail_from
        Every call with an index at or above this value fails.
    """

    def __init__(
        self,
        inner: NonlinearSolver,
        fail_calls: Iterable[int] = (),
        fail_from: Optional[int] = None,
    ):
        self.inner = inner
        self.fail_calls = set(fail_calls)
        self.fail_from = fail_from
        self.calls = 0

    def solve(self, functional, jacobian, matrix, u, d, norm, tolerance):
        index = self.calls
        self.calls += 1
        failing = index in self.fail_calls or (
            self.fail_from is not None and index >= self.fail_from
        )
        if failing:
            raise ConvergenceFailure(f"Scripted failure on call {index}")
        return self.inner.solve(
            functional, jacobian, matrix, u, d, norm, tolerance
        )


class OversizedCorrection(NonlinearSolver):
    """Solver returning a correction far above any tolerance."""

    def __init__(self, size: float = 1.0e3):
        self.size = size

    def solve(self, functional, jacobian, matrix, u, d, norm, tolerance):
        correction = np.full(d.shape, self.size, dtype=d.dtype)
        d.copy_to_device(correction)
        u.copy_to_device(u.copy_to_host() + correction)
        return 1
