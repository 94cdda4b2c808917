import os

# Kernels run in the Numba CUDA simulator unless a device run is requested.
os.environ.setdefault("NUMBA_ENABLE_CUDASIM", "1")

from types import SimpleNamespace

import numpy as np
import pytest

from tests.system_fixtures import (
    build_decay_system,
    build_stiff_linear_system,
)

np.set_printoptions(linewidth=120, precision=12)


# ========================================
# SETTINGS (override -> fixture)
# ========================================

@pytest.fixture(scope="session")
def precision_override(request):
    if hasattr(request, "param"):
        return request.param
    return None


@pytest.fixture(scope="session")
def precision(precision_override):
    """Return precision from the override, defaulting to float64.

    Usage:
    @pytest.mark.parametrize("precision_override", [np.float32],
        indirect=True)
    def test_something(precision):
        # precision will be np.float32 here
    """
    if precision_override is not None:
        return precision_override
    return np.float64


@pytest.fixture(scope="session")
def tolerance(precision):
    if precision == np.float32:
        return SimpleNamespace(
            abs_loose=1e-5,
            abs_tight=1e-6,
            rel_loose=1e-5,
            rel_tight=1e-6,
        )

    if precision == np.float64:
        return SimpleNamespace(
            abs_loose=1e-9,
            abs_tight=1e-12,
            rel_loose=1e-9,
            rel_tight=1e-12,
        )

    raise ValueError("Unsupported precision for tolerance fixture")


# ========================================
# SYSTEMS
# ========================================

@pytest.fixture(scope="function")
def decay_system():
    """y' = -y, y(0) = 1."""
    return build_decay_system()


@pytest.fixture(scope="function")
def stiff_linear_system():
    """Two-state linear system with eigenvalues -1 and -1000."""
    return build_stiff_linear_system()
