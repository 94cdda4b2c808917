"""Weighted root-mean-square norm.

Published Classes
-----------------
:class:`WeightedNormConfig`
    Configuration container for the norm factory.

:class:`WeightedNorm`
    Factory compiling a block-reduction kernel for
    ``sum(((x_i + beta*y_i) * w_i)**2)`` and returning the RMS value on the
    host.

    >>> from numpy import float64
    >>> norm = WeightedNorm(precision=float64, n=4)
    >>> norm.n
    4

Notes
-----
The same norm judges corrector convergence and local-error acceptance; in
both cases a value of one sits exactly on the tolerance. Each block reduces
its slice in shared memory and the per-block partial sums are added on the
host in block order, so repeated evaluations are bitwise identical.
"""

from math import sqrt
from typing import Callable

import attrs
import numpy as np
from numba import cuda

from cubdf._utils import (
    THREADS_PER_BLOCK,
    getype_validator,
    reduction_launch_config,
)
from cubdf.CUDAFactory import (
    CUDADispatcherCache,
    CUDAFactory,
    CUDAFactoryConfig,
)
from cubdf.cuda_simsafe import from_dtype


@attrs.define
class WeightedNormConfig(CUDAFactoryConfig):
    """Configuration for WeightedNorm compilation.

    Attributes
    ----------
    n : int
        Size of vectors to compute the norm over.
    """

    n: int = attrs.field(default=1, validator=getype_validator(int, 1))

    @property
    def inv_n(self) -> float:
        """Return precomputed 1/n."""
        return 1.0 / self.n


@attrs.define
class WeightedNormCache(CUDADispatcherCache):
    """Cache container for WeightedNorm outputs.

    Attributes
    ----------
    sum_squares : Callable
        Kernel writing each block's sum of ``((x_i + beta*y_i) * w_i)**2``
        into ``partials[block]``.
    """

    sum_squares: Callable = attrs.field()


class WeightedNorm(CUDAFactory):
    """Factory and evaluator for the weighted RMS norm."""

    def __init__(self, precision, n: int) -> None:
        super().__init__()
        self.setup_compile_settings(
            WeightedNormConfig(precision=precision, n=n)
        )
        blocks, _ = reduction_launch_config(n)
        self._partials = cuda.to_device(np.zeros(blocks, dtype=precision))

    def build(self) -> WeightedNormCache:
        """Compile the reduction kernel.

        Returns
        -------
        WeightedNormCache
            Container with the compiled kernel.
        """
        config = self.compile_settings
        n = config.n
        precision = config.precision
        shared_dtype = from_dtype(np.dtype(precision))
        zero = precision(0.0)
        cache_size = THREADS_PER_BLOCK

        # no cover: start
        @cuda.jit
        def sum_squares(x, y, beta, weights, partials):
            cache = cuda.shared.array(cache_size, shared_dtype)
            tid = cuda.threadIdx.x
            i = cuda.grid(1)
            acc = zero
            if i < n:
                scaled = (x[i] + beta * y[i]) * weights[i]
                acc = scaled * scaled
            cache[tid] = acc
            cuda.syncthreads()

            stride = cuda.blockDim.x // 2
            while stride > 0:
                if tid < stride:
                    cache[tid] += cache[tid + stride]
                cuda.syncthreads()
                stride //= 2

            if tid == 0:
                partials[cuda.blockIdx.x] = cache[0]
        # no cover: end

        return WeightedNormCache(sum_squares=sum_squares)

    def __call__(
        self,
        values,
        weights,
        other=None,
        beta: float = 0.0,
    ) -> float:
        """Return ``sqrt(1/n * sum(((values + beta*other) * weights)**2))``.

        Parameters
        ----------
        values, weights
            Device vectors of length ``n``.
        other : device array, optional
            Second vector of the linear combination. Ignored when omitted.
        beta : float, default 0.0
            Coefficient of ``other``.
        """
        kernel = self.get_cached_output("sum_squares")
        precision = self.precision
        if other is None:
            other = values
            beta = 0.0
        blocks, threads = reduction_launch_config(self.n)
        kernel[blocks, threads](
            values, other, precision(beta), weights, self._partials
        )
        total = 0.0
        for partial in self._partials.copy_to_host():
            total += float(partial)
        return sqrt(total * self.compile_settings.inv_n)

    @property
    def n(self) -> int:
        """Return vector size."""
        return self.compile_settings.n
