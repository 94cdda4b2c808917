"""Device buffers owned by a single solver instance.

:class:`BufferRequest` describes one allocation (shape, dtype, and optional
initial host data). :class:`SolverBuffers` turns a mapping of requests into
device arrays, hands them out by name, and drops every reference at once on
:meth:`SolverBuffers.release`.
"""

from typing import Iterator, Optional
from warnings import warn

import attrs
import attrs.validators as val
import numpy as np
from numba import cuda

from cubdf.cuda_simsafe import DeviceNDArrayBase, current_mem_info


@attrs.define
class BufferRequest:
    """Request for one device allocation.

    Parameters
    ----------
    dtype
        NumPy scalar type of the buffer.
    shape
        Tuple describing the buffer shape.
    initial
        Optional host data copied into the buffer on allocation. Must match
        ``shape`` once cast to ``dtype``.
    """

    dtype = attrs.field(
        validator=val.in_([np.float64, np.float32, np.float16, np.int32]),
    )
    shape: tuple[int, ...] = attrs.field(
        default=(1,),
        converter=tuple,
        validator=val.deep_iterable(
            val.instance_of(int), val.instance_of(tuple)
        ),
    )
    initial: Optional[np.ndarray] = attrs.field(default=None, eq=False)

    def __attrs_post_init__(self):
        if any(dim < 1 for dim in self.shape):
            raise ValueError(
                f"Buffer dimensions must be positive, got {self.shape}"
            )
        if self.initial is not None:
            initial = np.asarray(self.initial, dtype=self.dtype)
            if initial.shape != self.shape:
                raise ValueError(
                    f"Initial data of shape {initial.shape} does not match "
                    f"requested shape {self.shape}"
                )
            self.initial = np.ascontiguousarray(initial)

    @property
    def size(self) -> int:
        """Total size of the buffer in bytes."""
        return int(np.prod(self.shape, dtype=np.int64)) * np.dtype(
            self.dtype
        ).itemsize


class SolverBuffers:
    """Named device arrays sharing one lifetime.

    Parameters
    ----------
    requests
        Mapping from buffer label to :class:`BufferRequest`.
    """

    def __init__(self, requests: dict[str, BufferRequest]) -> None:
        total = sum(request.size for request in requests.values())
        free, _ = current_mem_info()
        if total > free:
            warn(
                f"Requested {total} bytes of device memory but only {free} "
                "are free; allocation may fail.",
                UserWarning,
            )
        self._requests = dict(requests)
        self._arrays: dict[str, DeviceNDArrayBase] = {}
        for label, request in self._requests.items():
            if request.initial is not None:
                array = cuda.to_device(request.initial)
            else:
                array = cuda.to_device(
                    np.zeros(request.shape, dtype=request.dtype)
                )
            self._arrays[label] = array
        self._released = False

    def __getitem__(self, label: str) -> DeviceNDArrayBase:
        if self._released:
            raise RuntimeError("Buffers have been released.")
        try:
            return self._arrays[label]
        except KeyError:
            raise KeyError(f"No buffer named '{label}'") from None

    def __contains__(self, label: str) -> bool:
        return label in self._arrays

    def __iter__(self) -> Iterator[str]:
        return iter(self._arrays)

    @property
    def released(self) -> bool:
        """Return ``True`` once :meth:`release` has been called."""
        return self._released

    @property
    def nbytes(self) -> int:
        """Total device memory requested, in bytes."""
        return sum(request.size for request in self._requests.values())

    def request(self, label: str) -> BufferRequest:
        """Return the request that produced buffer ``label``."""
        return self._requests[label]

    def release(self) -> None:
        """Drop every device array reference held by this instance."""
        self._arrays.clear()
        self._released = True
