"""Modified Newton iteration with a dense host solve.

``H`` is evaluated once at the initial guess and reused for every
iteration of the solve. Each update ``delta`` solves ``H delta = -G(u)``.
The convergence rate estimate ``crate`` lets the test stop before the
update is below tolerance when the iteration is contracting fast:

    crate = max(crdown * crate, del / del_prev)
    converged  <=>  del * min(1, crate) <= tolerance
"""

import attrs
import numpy as np
from numba import cuda

from cubdf._utils import (
    getype_validator,
    gttype_validator,
    inrangetype_validator,
)
from cubdf.errors import ConvergenceFailure
from cubdf.nonlinear.base import NonlinearSolver


@attrs.define(frozen=True)
class NewtonConfig:
    """Settings of :class:`NewtonSolver`.

    Attributes
    ----------
    max_iters : int
        Iterations allowed per solve.
    crdown : float
        Decay of the previous rate estimate.
    rdiv : float
        Growth ratio of successive updates taken as divergence.
    """

    max_iters: int = attrs.field(default=3, validator=getype_validator(int, 1))
    crdown: float = attrs.field(
        default=0.3, validator=inrangetype_validator(float, 0.0, 1.0)
    )
    rdiv: float = attrs.field(
        default=2.0, validator=gttype_validator(float, 1.0)
    )


class NewtonSolver(NonlinearSolver):
    """Reference :class:`NonlinearSolver` for small and medium systems."""

    def __init__(self, config: NewtonConfig = None, **kwargs) -> None:
        if config is None:
            config = NewtonConfig(**kwargs)
        elif kwargs:
            config = attrs.evolve(config, **kwargs)
        self.config = config
        self._residual = None
        self._delta = None
        self.n_solves = 0
        self.n_iterations = 0

    def _scratch(self, u):
        if (
            self._residual is None
            or self._residual.shape != u.shape
            or self._residual.dtype != u.dtype
        ):
            self._residual = cuda.device_array(u.shape, dtype=u.dtype)
            self._delta = cuda.device_array(u.shape, dtype=u.dtype)
        return self._residual, self._delta

    def solve(self, functional, jacobian, matrix, u, d, norm, tolerance):
        config = self.config
        residual, delta_device = self._scratch(u)
        self.n_solves += 1

        jacobian.evaluate(u, matrix)
        dense = matrix.to_dense()
        if not np.all(np.isfinite(dense)):
            raise ConvergenceFailure("Iteration matrix has non-finite entries")

        u_host = u.copy_to_host()
        d_host = d.copy_to_host()
        crate = 1.0
        del_prev = 0.0
        for m in range(config.max_iters):
            functional.evaluate(u, residual)
            rhs = -residual.copy_to_host()
            try:
                delta = np.linalg.solve(dense, rhs)
            except np.linalg.LinAlgError as exc:
                raise ConvergenceFailure(
                    "Iteration matrix is singular"
                ) from exc
            if not np.all(np.isfinite(delta)):
                raise ConvergenceFailure("Newton update is not finite")

            u_host += delta
            d_host += delta
            u.copy_to_device(u_host)
            d.copy_to_device(d_host)
            delta_device.copy_to_device(delta.astype(u_host.dtype))
            self.n_iterations += 1

            del_ = norm(delta_device)
            if m > 0:
                crate = max(config.crdown * crate, del_ / del_prev)
            if del_ * min(1.0, crate) <= tolerance:
                return m + 1
            if m > 0 and del_ > config.rdiv * del_prev:
                raise ConvergenceFailure(
                    f"Newton iteration diverging at iteration {m + 1}"
                )
            del_prev = del_

        raise ConvergenceFailure(
            f"Newton iteration did not converge in {config.max_iters} "
            "iterations"
        )
