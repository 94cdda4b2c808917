"""BDF integrator components.

The solver composes a Nordsieck history, a corrector system, a step size
initializer and an order/step controller; each is usable on its own.
"""

from cubdf.integrators.bdf_coefficients import (
    CorrectorCoefficients,
    corrector_coefficients,
    order_decrease_coefficients,
    order_increase_coefficients,
)
from cubdf.integrators.bdf_config import BDFConstants, BDFSolverConfig
from cubdf.integrators.bdf_solver import BDFSolver
from cubdf.integrators.controller import (
    IntegratorStatistics,
    OrderStepController,
    RejectDecision,
    SolverState,
    StepState,
)
from cubdf.integrators.corrector import (
    BDFFunctional,
    BDFJacobian,
    CorrectorSystem,
)
from cubdf.integrators.nordsieck import NordsieckHistory, NordsieckKernels
from cubdf.integrators.norms import WeightedNorm
from cubdf.integrators.step_initializer import StepSizeInitializer
from cubdf.integrators.tolerances import ErrorWeights, validate_tolerances

__all__ = [
    "BDFConstants",
    "BDFFunctional",
    "BDFJacobian",
    "BDFSolver",
    "BDFSolverConfig",
    "CorrectorCoefficients",
    "CorrectorSystem",
    "ErrorWeights",
    "IntegratorStatistics",
    "NordsieckHistory",
    "NordsieckKernels",
    "OrderStepController",
    "RejectDecision",
    "SolverState",
    "StepSizeInitializer",
    "StepState",
    "WeightedNorm",
    "corrector_coefficients",
    "order_decrease_coefficients",
    "order_increase_coefficients",
    "validate_tolerances",
]
