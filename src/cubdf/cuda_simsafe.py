"""Simulation-safe CUDA helpers.

This module centralises compatibility utilities for environments running with
``NUMBA_ENABLE_CUDASIM=1``.  It exposes a consistent surface so callers can
import CUDA-facing helpers without branching on simulator state.
"""
from __future__ import annotations

import os
from typing import Any, Tuple

import numba
from numba import cuda
import numpy as np


CUDA_SIMULATION: bool = os.environ.get("NUMBA_ENABLE_CUDASIM") == "1"


if CUDA_SIMULATION:  # pragma: no cover - simulated
    from numba.cuda.simulator.cudadrv.devicearray import FakeCUDAArray

    DeviceNDArrayBase = FakeCUDAArray

    def current_mem_info() -> Tuple[int, int]:
        """Return fake free and total memory values."""

        return 1024 ** 3, 8 * 1024 ** 3

else:  # pragma: no cover - exercised in GPU environments
    from numba.cuda import is_cuda_array as _is_cuda_array
    from numba.cuda.cudadrv.devicearray import (  # type: ignore[attr-defined]
        DeviceNDArrayBase,
    )

    def current_mem_info() -> Tuple[int, int]:
        """Return free and total memory from the active CUDA context."""

        return cuda.current_context().get_memory_info()


def is_cuda_array(value: Any) -> bool:
    """Check whether ``value`` should be treated as a CUDA array."""

    if CUDA_SIMULATION:
        return isinstance(value, DeviceNDArrayBase)
    return _is_cuda_array(value)


def from_dtype(dtype: np.dtype):
    """Return a CUDA-ready dtype or a simulator-safe placeholder."""

    if not CUDA_SIMULATION:
        return numba.from_dtype(dtype)
    return dtype


__all__ = [
    "CUDA_SIMULATION",
    "DeviceNDArrayBase",
    "current_mem_info",
    "from_dtype",
    "is_cuda_array",
]
