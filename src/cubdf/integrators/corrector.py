"""Corrector equation of a BDF step.

Published Classes
-----------------
:class:`CorrectorKernels`
    Factory compiling the residual and iteration-matrix kernels.
:class:`BDFFunctional`
    ``G(u) = (u - zn[0]) - gamma*(F(u) - zn[1]/dt)``.
:class:`BDFJacobian`
    ``H(u) = I - gamma*J(u)`` stored in COO form.
:class:`CorrectorSystem`
    Owner of one ``G``/``H`` pair, configured once per step.

Notes
-----
``zn[1]`` holds ``dt * y'`` so ``gamma * zn[1] / dt`` equals ``zn[1] / l[1]``
and the residual kernel uses ``rl1 = 1 / l[1]`` directly. ``H`` stores the
Jacobian entries first, scaled by ``-gamma``, followed by ``n`` unit
diagonal entries; duplicates are summed by :meth:`COOMatrix.to_dense`.
"""

from typing import Callable, Optional

import attrs
import numpy as np
from numba import cuda

from cubdf._utils import getype_validator, launch_config
from cubdf.CUDAFactory import (
    CUDADispatcherCache,
    CUDAFactory,
    CUDAFactoryConfig,
)
from cubdf.integrators.base import ImplicitCorrector
from cubdf.systems.base import COOMatrix, SystemFunctional, SystemJacobian


@attrs.define
class CorrectorKernelsConfig(CUDAFactoryConfig):
    """Compile settings for :class:`CorrectorKernels`.

    Attributes
    ----------
    n : int
        Number of state components.
    nnz : int
        Stored entries of the problem Jacobian.
    """

    n: int = attrs.field(default=1, validator=getype_validator(int, 1))
    nnz: int = attrs.field(default=1, validator=getype_validator(int, 0))


@attrs.define
class CorrectorKernelsCache(CUDADispatcherCache):
    """Compiled corrector kernels."""

    residual: Callable = attrs.field()
    scale_jacobian: Callable = attrs.field()


class CorrectorKernels(CUDAFactory):
    """Factory for the corrector residual and iteration-matrix kernels."""

    def __init__(self, precision, n: int, nnz: int) -> None:
        super().__init__()
        self.setup_compile_settings(
            CorrectorKernelsConfig(precision=precision, n=n, nnz=nnz)
        )

    def build(self) -> CorrectorKernelsCache:
        config = self.compile_settings
        n = config.n
        nnz = config.nnz

        # no cover: start
        @cuda.jit
        def residual(u, zn0, zn1, fv, rl1, gamma, out):
            i = cuda.grid(1)
            if i < n:
                out[i] = (u[i] - zn0[i]) + rl1 * zn1[i] - gamma * fv[i]

        @cuda.jit
        def scale_jacobian(jv, neg_gamma, h_values):
            k = cuda.grid(1)
            if k < nnz:
                h_values[k] = neg_gamma * jv[k]
        # no cover: end

        return CorrectorKernelsCache(
            residual=residual,
            scale_jacobian=scale_jacobian,
        )

    def residual(self, u, zn0, zn1, fv, rl1, gamma, out) -> None:
        """Launch the residual kernel over ``n`` threads."""
        precision = self.precision
        kernel = self.get_cached_output("residual")
        blocks, threads = launch_config(self.compile_settings.n)
        kernel[blocks, threads](
            u, zn0, zn1, fv, precision(rl1), precision(gamma), out
        )

    def scale_jacobian(self, jv, gamma, h_values) -> None:
        """Write ``-gamma * jv`` into the leading entries of ``h_values``."""
        kernel = self.get_cached_output("scale_jacobian")
        blocks, threads = launch_config(self.compile_settings.nnz)
        kernel[blocks, threads](jv, self.precision(-gamma), h_values)


def iteration_pattern(jacobian: SystemJacobian):
    """Return the COO pattern of ``I - gamma*J`` for a problem Jacobian.

    The entries of ``jacobian`` come first, followed by the diagonal.
    """
    rows, cols = jacobian.sparsity()
    diagonal = np.arange(jacobian.n, dtype=np.int32)
    return (
        np.concatenate((np.asarray(rows, dtype=np.int32), diagonal)),
        np.concatenate((np.asarray(cols, dtype=np.int32), diagonal)),
    )


def unit_diagonal_values(jacobian: SystemJacobian, precision):
    """Return initial ``H`` values: zeros for ``J`` entries, ones after."""
    rows, _ = jacobian.sparsity()
    nnz = len(rows)
    values = np.zeros(nnz + jacobian.n, dtype=precision)
    values[nnz:] = 1.0
    return values


class BDFFunctional(SystemFunctional):
    """Corrector residual ``G`` of the current step.

    Parameters
    ----------
    corrector
        Owning :class:`CorrectorSystem`; supplies the problem functional,
        history rows and coefficients.
    """

    def __init__(self, corrector: "CorrectorSystem") -> None:
        super().__init__(corrector.n, corrector.n_equations)
        self.corrector = corrector

    def evaluate(self, y, out) -> None:
        corrector = self.corrector
        corrector.functional.evaluate(y, corrector.fv)
        corrector.n_f_evals += 1
        corrector.kernels.residual(
            y,
            corrector.zn[0],
            corrector.zn[1],
            corrector.fv,
            corrector.rl1,
            corrector.gamma,
            out,
        )


class BDFJacobian(SystemJacobian):
    """Corrector iteration matrix ``H = I - gamma*J``."""

    def __init__(self, corrector: "CorrectorSystem") -> None:
        super().__init__(corrector.n)
        self.corrector = corrector

    def sparsity(self):
        return iteration_pattern(self.corrector.jacobian)

    def allocate(self, precision) -> COOMatrix:
        """Return storage for ``H`` with the unit diagonal already set."""
        rows, cols = self.sparsity()
        return COOMatrix.allocate(
            rows,
            cols,
            (self.n, self.n),
            precision,
            values=unit_diagonal_values(self.corrector.jacobian, precision),
        )

    def evaluate(self, y, out) -> None:
        corrector = self.corrector
        corrector.jacobian.evaluate(y, corrector.jv)
        corrector.n_j_evals += 1
        corrector.kernels.scale_jacobian(
            corrector.jv.values, corrector.gamma, out.values
        )


class CorrectorSystem(ImplicitCorrector):
    """Corrector problem of one BDF step.

    Parameters
    ----------
    functional, jacobian
        The user problem ``F`` and ``J``.
    zn
        Device Nordsieck array; rows 0 and 1 enter the residual.
    fv
        Device scratch vector receiving ``F(u)``.
    jv
        :class:`COOMatrix` receiving ``J(u)``.
    precision
        Floating point type of the device buffers.
    h
        Storage for ``H``; allocated here when omitted.
    """

    def __init__(
        self,
        functional: SystemFunctional,
        jacobian: SystemJacobian,
        zn,
        fv,
        jv: COOMatrix,
        precision,
        h: Optional[COOMatrix] = None,
    ) -> None:
        self.n = functional.n
        self.n_equations = functional.n_equations
        self.kernels = CorrectorKernels(precision, self.n, jv.nnz)
        self.zn = zn
        self.gamma = 0.0
        self.rl1 = 1.0
        self.dt = 0.0
        self.n_f_evals = 0
        self.n_j_evals = 0
        self.bind(functional, jacobian, fv, jv)
        self._residual = BDFFunctional(self)
        self._iteration_matrix = BDFJacobian(self)
        if h is None:
            h = self._iteration_matrix.allocate(precision)
        self.h = h

    def bind(
        self,
        functional: SystemFunctional,
        jacobian: SystemJacobian,
        fv,
        jv: COOMatrix,
    ) -> None:
        """Point the corrector at a problem and its scratch buffers."""
        self.functional = functional
        self.jacobian = jacobian
        self.fv = fv
        self.jv = jv

    def configure(
        self, gamma: float, dt: float, rl1: Optional[float] = None
    ) -> None:
        """Set ``gamma`` and ``dt``; ``rl1`` defaults to ``gamma / dt``."""
        self.gamma = gamma
        self.dt = dt
        self.rl1 = gamma / dt if rl1 is None else rl1

    @property
    def residual(self) -> BDFFunctional:
        return self._residual

    @property
    def iteration_matrix(self) -> BDFJacobian:
        return self._iteration_matrix
