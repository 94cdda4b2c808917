"""Tolerances and per-component error weights.

Published Classes
-----------------
:class:`ErrorWeightsConfig`
    Compile settings for the weight kernel.
:class:`ErrorWeights`
    Factory compiling the kernel ``w_i = 1 / (rtol*|y_i| + atol_i)`` and
    launching it on device buffers.

Published Functions
-------------------
:func:`validate_tolerances`
    Reject tolerance combinations that can produce a zero denominator.
"""

from typing import Callable

import attrs
import numpy as np
from numba import cuda
from numpy.typing import ArrayLike

from cubdf._utils import getype_validator, launch_config
from cubdf.CUDAFactory import (
    CUDADispatcherCache,
    CUDAFactory,
    CUDAFactoryConfig,
)
from cubdf.errors import DimensionMismatch, InvalidTolerance


def validate_tolerances(rtol: float, atol: ArrayLike, n: int) -> None:
    """Check tolerance settings before any weight is computed.

    Raises
    ------
    DimensionMismatch
        If ``atol`` does not have ``n`` entries.
    InvalidTolerance
        If ``rtol`` or any ``atol_i`` is negative, or if ``rtol`` is zero
        while some ``atol_i`` is not positive.
    """
    atol = np.asarray(atol)
    if atol.shape != (n,):
        raise DimensionMismatch(
            f"Absolute tolerance has shape {atol.shape}, expected ({n},)"
        )
    if rtol < 0:
        raise InvalidTolerance(f"Relative tolerance {rtol} is negative")
    negative = np.flatnonzero(atol < 0)
    if negative.size:
        raise InvalidTolerance(
            f"Absolute tolerance is negative at components {negative.tolist()}"
        )
    if rtol == 0:
        zero = np.flatnonzero(atol <= 0)
        if zero.size:
            raise InvalidTolerance(
                "Relative tolerance is zero and absolute tolerance is not "
                f"positive at components {zero.tolist()}"
            )


@attrs.define
class ErrorWeightsConfig(CUDAFactoryConfig):
    """Compile settings for :class:`ErrorWeights`.

    Attributes
    ----------
    n : int
        Number of state components.
    rtol : float
        Scalar relative tolerance baked into the kernel.
    """

    n: int = attrs.field(default=1, validator=getype_validator(int, 1))
    rtol: float = attrs.field(default=1e-6, validator=getype_validator(float, 0))


@attrs.define
class ErrorWeightsCache(CUDADispatcherCache):
    """Cache container for the weight kernel."""

    eval_weights: Callable = attrs.field()


class ErrorWeights(CUDAFactory):
    """Factory for the error-weight kernel."""

    def __init__(self, precision, n: int, rtol: float) -> None:
        super().__init__()
        self.setup_compile_settings(
            ErrorWeightsConfig(precision=precision, n=n, rtol=rtol)
        )
        self._invalid_flag = cuda.to_device(np.zeros(1, dtype=np.int32))

    def build(self) -> ErrorWeightsCache:
        """Compile the weight kernel."""
        config = self.compile_settings
        precision = config.precision
        n = config.n
        rtol = precision(config.rtol)
        zero = precision(0.0)
        one = precision(1.0)

        # no cover: start
        @cuda.jit
        def eval_weights(y, atol, weights, invalid):
            i = cuda.grid(1)
            if i < n:
                y_i = y[i]
                abs_y = y_i if y_i >= zero else -y_i
                denom = rtol * abs_y + atol[i]
                if denom > zero:
                    weights[i] = one / denom
                else:
                    weights[i] = zero
                    invalid[0] = 1
        # no cover: end

        return ErrorWeightsCache(eval_weights=eval_weights)

    def evaluate(self, y, atol, weights):
        """Write the weights of state ``y`` into ``weights``.

        Parameters
        ----------
        y, atol, weights
            Device vectors of length ``n``.

        Returns
        -------
        device array
            ``weights``, for chaining.

        Raises
        ------
        InvalidTolerance
            If ``rtol*|y_i| + atol_i <= 0`` (or is NaN) for any component.
        """
        kernel = self.get_cached_output("eval_weights")
        n = self.compile_settings.n
        self._invalid_flag.copy_to_device(np.zeros(1, dtype=np.int32))
        blocks, threads = launch_config(n)
        kernel[blocks, threads](y, atol, weights, self._invalid_flag)
        if self._invalid_flag.copy_to_host()[0]:
            raise InvalidTolerance(
                "Error weight denominator rtol*|y| + atol is not positive "
                "for at least one component"
            )
        return weights

    @property
    def n(self) -> int:
        """Return vector size."""
        return self.compile_settings.n

    @property
    def rtol(self) -> float:
        """Return the relative tolerance."""
        return self.compile_settings.rtol
