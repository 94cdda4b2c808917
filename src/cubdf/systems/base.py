"""Problem definitions consumed by the integrator.

Published Classes
-----------------
:class:`SystemFunctional`
    Abstract right-hand side ``F(y)`` writing into a device vector.
:class:`SystemJacobian`
    Abstract Jacobian ``dF/dy`` with a fixed COO sparsity pattern.
:class:`COOMatrix`
    Device-resident coordinate-format matrix.
:class:`HostFunctional`, :class:`HostJacobian`
    Adapters around NumPy callables evaluated on the host.
:class:`DifferenceQuotientJacobian`
    Dense Jacobian approximated from a functional by forward differences.
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional, Tuple

import attrs
import numpy as np
from numba import cuda
from numpy.typing import NDArray

from cubdf._utils import PrecisionDType, unit_roundoff
from cubdf.cuda_simsafe import DeviceNDArrayBase
from cubdf.errors import DimensionMismatch


@attrs.define
class COOMatrix:
    """Sparse matrix in coordinate format with device-resident storage.

    Duplicate ``(row, col)`` entries are summed when densified.
    """

    rows: DeviceNDArrayBase = attrs.field(eq=False)
    cols: DeviceNDArrayBase = attrs.field(eq=False)
    values: DeviceNDArrayBase = attrs.field(eq=False)
    shape: Tuple[int, int] = attrs.field(converter=tuple)

    def __attrs_post_init__(self):
        nnz = self.rows.shape[0]
        if self.cols.shape[0] != nnz or self.values.shape[0] != nnz:
            raise DimensionMismatch(
                "COO rows, cols and values must have equal length"
            )

    @classmethod
    def allocate(
        cls,
        rows: NDArray,
        cols: NDArray,
        shape: Tuple[int, int],
        precision: PrecisionDType,
        values: Optional[NDArray] = None,
    ) -> "COOMatrix":
        """Copy a host sparsity pattern to the device and allocate values."""
        rows = np.ascontiguousarray(rows, dtype=np.int32)
        cols = np.ascontiguousarray(cols, dtype=np.int32)
        if values is None:
            values = np.zeros(rows.shape[0], dtype=precision)
        values = np.ascontiguousarray(values, dtype=precision)
        return cls(
            rows=cuda.to_device(rows),
            cols=cuda.to_device(cols),
            values=cuda.to_device(values),
            shape=shape,
        )

    @property
    def nnz(self) -> int:
        """Number of stored entries."""
        return int(self.values.shape[0])

    def to_dense(self) -> NDArray:
        """Return the matrix as a dense host array."""
        values = self.values.copy_to_host()
        dense = np.zeros(self.shape, dtype=values.dtype)
        np.add.at(
            dense,
            (self.rows.copy_to_host(), self.cols.copy_to_host()),
            values,
        )
        return dense


class SystemFunctional(ABC):
    """Right-hand side ``F`` of the system ``y' = F(y)``.

    Parameters
    ----------
    n
        Number of state components.
    n_equations
        Number of coupled equations per grid point for discretised PDE
        systems. Defaults to ``n``.
    """

    def __init__(self, n: int, n_equations: Optional[int] = None) -> None:
        if int(n) < 1:
            raise ValueError(f"n must be >= 1, got {n}")
        self.n = int(n)
        self.n_equations = int(n_equations) if n_equations else self.n

    @abstractmethod
    def evaluate(self, y: DeviceNDArrayBase, out: DeviceNDArrayBase) -> None:
        """Write ``F(y)`` into ``out``. Both arguments are device vectors."""

    def __call__(self, y, out) -> None:
        self.evaluate(y, out)


class SystemJacobian(ABC):
    """Jacobian ``dF/dy`` with a sparsity pattern fixed at construction."""

    def __init__(self, n: int) -> None:
        if int(n) < 1:
            raise ValueError(f"n must be >= 1, got {n}")
        self.n = int(n)

    @abstractmethod
    def sparsity(self) -> Tuple[NDArray, NDArray]:
        """Return host ``(rows, cols)`` index arrays of the stored entries."""

    @abstractmethod
    def evaluate(self, y: DeviceNDArrayBase, out: COOMatrix) -> None:
        """Write the entries of ``J(y)`` into ``out.values``."""

    def allocate(self, precision: PrecisionDType) -> COOMatrix:
        """Return a :class:`COOMatrix` with this Jacobian's pattern."""
        rows, cols = self.sparsity()
        return COOMatrix.allocate(rows, cols, (self.n, self.n), precision)

    def __call__(self, y, out) -> None:
        self.evaluate(y, out)


def dense_pattern(n: int) -> Tuple[NDArray, NDArray]:
    """Return the row-major COO pattern of a full ``n x n`` matrix."""
    rows, cols = np.divmod(np.arange(n * n, dtype=np.int32), n)
    return rows.astype(np.int32), cols.astype(np.int32)


class HostFunctional(SystemFunctional):
    """Functional evaluated by a NumPy callable ``fn(y) -> F(y)``.

    The state is copied to the host, ``fn`` is called, and the result is
    copied back into the output vector.
    """

    def __init__(
        self,
        fn: Callable[[NDArray], NDArray],
        n: int,
        n_equations: Optional[int] = None,
    ) -> None:
        super().__init__(n, n_equations)
        self.fn = fn

    def evaluate(self, y, out) -> None:
        host_y = y.copy_to_host()
        result = np.asarray(self.fn(host_y), dtype=host_y.dtype).reshape(-1)
        if result.shape[0] != self.n:
            raise DimensionMismatch(
                f"Functional returned {result.shape[0]} values, "
                f"expected {self.n}"
            )
        out.copy_to_device(np.ascontiguousarray(result))


class HostJacobian(SystemJacobian):
    """Jacobian evaluated by a NumPy callable on the host.

    ``fn(y)`` returns either a dense ``(n, n)`` array, from which the
    entries of the pattern are gathered, or a 1D array holding the values
    of the pattern directly.
    """

    def __init__(
        self,
        fn: Callable[[NDArray], NDArray],
        n: int,
        rows: Optional[NDArray] = None,
        cols: Optional[NDArray] = None,
    ) -> None:
        super().__init__(n)
        self.fn = fn
        if rows is None or cols is None:
            rows, cols = dense_pattern(self.n)
        self._rows = np.asarray(rows, dtype=np.int32)
        self._cols = np.asarray(cols, dtype=np.int32)

    def sparsity(self):
        return self._rows, self._cols

    def evaluate(self, y, out) -> None:
        host_y = y.copy_to_host()
        result = np.asarray(self.fn(host_y), dtype=host_y.dtype)
        if result.ndim == 2:
            if result.shape != (self.n, self.n):
                raise DimensionMismatch(
                    f"Jacobian returned shape {result.shape}, expected "
                    f"{(self.n, self.n)}"
                )
            values = result[self._rows, self._cols]
        else:
            values = result.reshape(-1)
        if values.shape[0] != out.nnz:
            raise DimensionMismatch(
                f"Jacobian produced {values.shape[0]} entries for a "
                f"pattern of {out.nnz}"
            )
        out.values.copy_to_device(np.ascontiguousarray(values))


class DifferenceQuotientJacobian(SystemJacobian):
    """Dense forward-difference approximation of ``dF/dy``.

    Column ``j`` is ``(F(y + s_j e_j) - F(y)) / s_j`` with
    ``s_j = sqrt(uround) * max(|y_j|, 1)``.
    """

    def __init__(self, functional: SystemFunctional) -> None:
        super().__init__(functional.n)
        self.functional = functional

    def sparsity(self):
        return dense_pattern(self.n)

    def evaluate(self, y, out) -> None:
        host_y = y.copy_to_host()
        dtype = host_y.dtype
        srur = np.sqrt(unit_roundoff(dtype))
        n = self.n

        f0 = cuda.device_array(n, dtype=dtype)
        f1 = cuda.device_array(n, dtype=dtype)
        self.functional.evaluate(y, f0)
        base = f0.copy_to_host()

        dense = np.empty((n, n), dtype=dtype)
        perturbed = host_y.copy()
        y_work = cuda.to_device(perturbed)
        for j in range(n):
            step = srur * max(abs(host_y[j]), 1.0)
            perturbed[j] = host_y[j] + step
            y_work.copy_to_device(perturbed)
            self.functional.evaluate(y_work, f1)
            dense[:, j] = (f1.copy_to_host() - base) / step
            perturbed[j] = host_y[j]
        rows, cols = dense_pattern(n)
        out.values.copy_to_device(
            np.ascontiguousarray(dense[rows, cols], dtype=dtype)
        )
