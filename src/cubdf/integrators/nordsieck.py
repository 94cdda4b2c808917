"""Nordsieck history of scaled derivatives.

Published Classes
-----------------
:class:`NordsieckKernelsConfig`
    Compile settings (precision, vector length, number of rows).
:class:`NordsieckKernels`
    Factory compiling the predict, correct, rescale and ``axpby`` kernels.
:class:`NordsieckHistory`
    Owner-facing wrapper holding the device array, its snapshot, the L
    polynomial buffer and the past step sizes.

Notes
-----
Row ``j`` of the array holds ``dt**j / j! * y^(j)`` at the current time,
where ``dt`` is the step size the array is currently scaled to. Rows above
the current order are stale except row ``max_order``, which stores the last
saved correction used to evaluate an order increase.
"""

from typing import Callable

import attrs
import numpy as np
from numba import cuda
from numpy.typing import NDArray

from cubdf._utils import getype_validator, launch_config
from cubdf.CUDAFactory import (
    CUDADispatcherCache,
    CUDAFactory,
    CUDAFactoryConfig,
)
from cubdf.cuda_simsafe import is_cuda_array
from cubdf.integrators.base import MultistepHistory
from cubdf.integrators.bdf_coefficients import (
    CorrectorCoefficients,
    corrector_coefficients,
    order_decrease_coefficients,
    order_increase_coefficients,
)


@attrs.define
class NordsieckKernelsConfig(CUDAFactoryConfig):
    """Compile settings for :class:`NordsieckKernels`.

    Attributes
    ----------
    n : int
        Number of state components (columns of the array).
    lmax : int
        Number of history rows, ``max_order + 1``.
    """

    n: int = attrs.field(default=1, validator=getype_validator(int, 1))
    lmax: int = attrs.field(default=6, validator=getype_validator(int, 2))


@attrs.define
class NordsieckKernelsCache(CUDADispatcherCache):
    """Compiled history kernels."""

    predict: Callable = attrs.field()
    correct: Callable = attrs.field()
    rescale: Callable = attrs.field()
    axpby: Callable = attrs.field()


class NordsieckKernels(CUDAFactory):
    """Factory for element-wise history kernels.

    Every kernel assigns one thread per state component and loops over the
    history rows, so the rows of one component are updated in order.
    """

    def __init__(self, precision, n: int, lmax: int) -> None:
        super().__init__()
        self.setup_compile_settings(
            NordsieckKernelsConfig(precision=precision, n=n, lmax=lmax)
        )

    def build(self) -> NordsieckKernelsCache:
        """Compile the history kernels."""
        n = self.compile_settings.n

        # no cover: start
        @cuda.jit
        def predict(zn, q):
            i = cuda.grid(1)
            if i < n:
                for k in range(1, q + 1):
                    for j in range(q, k - 1, -1):
                        zn[j - 1, i] += zn[j, i]

        @cuda.jit
        def correct(zn, lpoly, acor, q):
            i = cuda.grid(1)
            if i < n:
                a = acor[i]
                for j in range(q + 1):
                    zn[j, i] += lpoly[j] * a

        @cuda.jit
        def rescale(zn, eta, q):
            i = cuda.grid(1)
            if i < n:
                factor = eta
                for j in range(1, q + 1):
                    zn[j, i] *= factor
                    factor *= eta

        @cuda.jit
        def axpby(alpha, x, beta, y, out):
            i = cuda.grid(1)
            if i < n:
                out[i] = alpha * x[i] + beta * y[i]
        # no cover: end

        return NordsieckKernelsCache(
            predict=predict,
            correct=correct,
            rescale=rescale,
            axpby=axpby,
        )

    def launch(self, name: str, *args) -> None:
        """Launch kernel ``name`` over ``n`` threads."""
        kernel = self.get_cached_output(name)
        blocks, threads = launch_config(self.compile_settings.n)
        kernel[blocks, threads](*args)

    def axpby(self, alpha: float, x, beta: float, y, out) -> None:
        """``out = alpha*x + beta*y``; ``out`` may alias ``x`` or ``y``."""
        precision = self.precision
        self.launch("axpby", precision(alpha), x, precision(beta), y, out)


class NordsieckHistory(MultistepHistory):
    """Scaled-derivative history of a BDF integration.

    Parameters
    ----------
    kernels
        Compiled history kernels.
    zn
        Device array of shape ``(lmax, n)``.
    zn_saved
        Device array of the same shape holding the rollback snapshot.
    lpoly
        Device vector of length ``lmax`` holding the current L polynomial.
    """

    def __init__(self, kernels: NordsieckKernels, zn, zn_saved, lpoly):
        self.kernels = kernels
        self.zn = zn
        self.zn_saved = zn_saved
        self.lpoly = lpoly
        self.lmax = int(zn.shape[0])
        self.max_order = self.lmax - 1
        self.tau = np.zeros(self.lmax + 1)
        self.saved_tq5 = 0.0
        self.coefficients = None

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    def initialize(self, y0, f0, dt: float) -> None:
        """Start the history at ``y0`` with first derivative ``f0``.

        ``zn[0] = y0`` and ``zn[1] = dt * f0``; higher rows are zeroed.
        ``y0`` may be a host array or a device vector, including ``zn[0]``.
        """
        host = np.zeros(self.zn.shape, dtype=self.kernels.precision)
        if is_cuda_array(y0):
            host[0] = y0.copy_to_host()
        else:
            host[0] = y0
        self.zn.copy_to_device(host)
        self.kernels.axpby(dt, f0, 0.0, f0, self.zn[1])
        self.tau[:] = 0.0
        self.saved_tq5 = 0.0
        self.coefficients = None

    def restart(self, f0, dt: float) -> None:
        """Reset to order one: ``zn[1] = dt * f0``, keep ``zn[0]``."""
        self.kernels.axpby(dt, f0, 0.0, f0, self.zn[1])
        self.saved_tq5 = 0.0

    # ------------------------------------------------------------------
    # Step operations
    # ------------------------------------------------------------------

    def predict(self, q: int) -> None:
        """Advance ``zn`` by one step of the Pascal-triangle predictor."""
        self.kernels.launch("predict", self.zn, q)

    def compute_coefficients(
        self, q: int, dt: float, q_next_change: int, nlscoef: float
    ) -> CorrectorCoefficients:
        """Form the L polynomial for the step and copy it to the device."""
        coefficients = corrector_coefficients(
            q, dt, self.tau, q_next_change, nlscoef, self.lmax
        )
        self.lpoly.copy_to_device(
            coefficients.l.astype(self.kernels.precision)
        )
        self.coefficients = coefficients
        return coefficients

    def correct(self, acor, q: int) -> None:
        """``zn[j] += l[j] * acor`` for ``j = 0..q``."""
        self.kernels.launch("correct", self.zn, self.lpoly, acor, q)

    def rescale(self, eta: float, q: int) -> None:
        """``zn[j] *= eta**j`` for ``j = 1..q``."""
        if eta == 1.0:
            return
        precision = self.kernels.precision
        self.kernels.launch("rescale", self.zn, precision(eta), q)

    def snapshot(self) -> None:
        """Copy ``zn`` into the rollback buffer."""
        self.zn_saved.copy_to_device(self.zn)

    def restore(self) -> None:
        """Copy the rollback buffer back into ``zn``."""
        self.zn.copy_to_device(self.zn_saved)

    def record_step(self, dt: float, q: int) -> None:
        """Shift the past step sizes and record ``dt`` as ``tau[1]``."""
        for i in range(q, 0, -1):
            self.tau[i + 1] = self.tau[i]
        self.tau[1] = dt

    def save_correction(self, acor, tq5: float) -> None:
        """Store ``acor`` in row ``max_order`` for the next order test."""
        self.zn[self.max_order].copy_to_device(acor)
        self.saved_tq5 = tq5

    # ------------------------------------------------------------------
    # Order changes
    # ------------------------------------------------------------------

    def increase_order(self, q: int, dt: float) -> None:
        """Add row ``q + 1`` built from the saved correction."""
        l, a1 = order_increase_coefficients(q, dt, self.tau, self.lmax)
        new_row = self.zn[q + 1]
        self.kernels.axpby(
            a1, self.zn[self.max_order], 0.0, self.zn[self.max_order], new_row
        )
        for j in range(2, q + 1):
            self.kernels.axpby(1.0, self.zn[j], l[j], new_row, self.zn[j])

    def decrease_order(self, q: int, dt: float) -> None:
        """Remove the contribution of row ``q`` from rows ``2..q-1``."""
        if q <= 2:
            return
        l = order_decrease_coefficients(q, dt, self.tau, self.lmax)
        top_row = self.zn[q]
        for j in range(2, q):
            self.kernels.axpby(1.0, self.zn[j], -l[j], top_row, self.zn[j])

    # ------------------------------------------------------------------
    # Read-out
    # ------------------------------------------------------------------

    def error_combination_scale(self, dt: float, q: int) -> float:
        """Return ``cquot`` weighting the saved correction in the q+1 test.

        Zero when no correction has been saved yet.
        """
        if self.saved_tq5 == 0.0 or self.coefficients is None:
            return 0.0
        ratio = dt / self.tau[2]
        return (self.coefficients.tq[5] / self.saved_tq5) * ratio ** (q + 1)

    def interpolate(self, s: float, q: int, out) -> None:
        """Write ``sum_j zn[j] * s**j`` for ``j = 0..q`` into ``out``.

        ``s = (t_query - t) / dt`` is the position relative to the current
        time in units of the current step.
        """
        out.copy_to_device(self.zn[q])
        for j in range(q - 1, -1, -1):
            self.kernels.axpby(1.0, self.zn[j], s, out, out)

    def host_array(self) -> NDArray:
        """Return a host copy of the full array."""
        return self.zn.copy_to_host()
