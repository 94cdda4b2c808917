"""
cubdf: variable-order BDF integration of stiff systems on CUDA devices
"""

from importlib.metadata import version

# Small systems launch kernels with a handful of threads, which Numba
# reports as a performance warning on every dispatch.
import warnings
from numba.core.errors import NumbaPerformanceWarning
warnings.filterwarnings("ignore", category=NumbaPerformanceWarning)

from cubdf.errors import *              # noqa
from cubdf.integrators import *         # noqa
from cubdf.memory import *              # noqa
from cubdf.nonlinear import *           # noqa
from cubdf.systems import *             # noqa
from cubdf.solve import BDFResult, solve_bdf  # noqa
from cubdf.step_logger import StepEvent, StepLogger  # noqa

__all__ = [
    "BDFConstants",
    "BDFError",
    "BDFResult",
    "BDFSolver",
    "COOMatrix",
    "ConvergenceFailure",
    "DifferenceQuotientJacobian",
    "DimensionMismatch",
    "ErrorTestFailure",
    "FatalIntegrationFailure",
    "HostFunctional",
    "HostJacobian",
    "IntegratorStatistics",
    "InvalidTolerance",
    "NewtonConfig",
    "NewtonSolver",
    "NonlinearSolver",
    "StepEvent",
    "StepLogger",
    "StepSizeUnderflow",
    "StepState",
    "SystemFunctional",
    "SystemJacobian",
    "solve_bdf",
]

try:
    __version__ = version("cubdf")
except ImportError:
    # Package is not installed
    __version__ = "unknown"
