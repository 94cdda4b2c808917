from types import SimpleNamespace

import numpy as np
import pytest

from tests.system_fixtures import build_decay_system, build_solver, step_to


def initial_step(setup, t0, tmax):
    solver = setup.solver
    return solver.initializer.initialize_time_step(
        t0, tmax, solver.history.zn[0], setup.functional
    )


def test_first_step_within_bounds(decay_system):
    setup = build_solver(decay_system)
    dt = initial_step(setup, 0.0, 1.0)
    # Lower bound: span/100. Upper bound: 0.1*|y|/|f| = 0.1.
    assert 1e-2 <= dt <= 0.1 + 1e-9
    np.testing.assert_allclose(
        setup.solver.initializer.f0.copy_to_host(), [-1.0]
    )
    assert setup.solver.initializer.n_f_evals >= 2


def test_first_step_respects_dt_max(decay_system):
    setup = build_solver(decay_system, dt_max=1e-3)
    dt = initial_step(setup, 0.0, 1.0)
    assert dt <= 1e-3


def test_upper_bound_below_lower_bound():
    """A very fast mode makes the upper bound win outright."""
    setup = build_solver(build_decay_system(rate=1.0e6))
    dt = initial_step(setup, 0.0, 1.0)
    assert dt == pytest.approx(0.1 / 1.0e6, rel=1e-6)


def test_upper_bound_first_time_step(decay_system):
    setup = build_solver(decay_system, atol=1e-8)
    initializer = setup.solver.initializer
    setup.functional.evaluate(setup.solver.history.zn[0], initializer.f0)
    hub = initializer.upper_bound_first_time_step(
        10.0, setup.solver.history.zn[0]
    )
    assert hub == pytest.approx(0.1, rel=1e-6)
    hub = initializer.upper_bound_first_time_step(
        0.5, setup.solver.history.zn[0]
    )
    assert hub == pytest.approx(0.05)


def test_non_finite_estimate_falls_back_to_lower_bound():
    def f(y):
        if y[0] == 1.0:
            return -y
        return np.array([np.nan])

    system = SimpleNamespace(
        n=1,
        f=f,
        jac=lambda y: np.array([[-1.0]]),
        y0=np.array([1.0]),
    )
    setup = build_solver(system)
    with pytest.warns(RuntimeWarning):
        dt = initial_step(setup, 0.0, 1.0)
    assert dt == pytest.approx(1e-2)


def test_first_step_logged(decay_system):
    setup = build_solver(decay_system)
    step_to(setup, 1.0)
    events = setup.logger.events_of("initial_step")
    assert len(events) == 1
    assert events[0].t == 0.0
    assert 1e-2 <= events[0].dt <= 0.1 + 1e-9
