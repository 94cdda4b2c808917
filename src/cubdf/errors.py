"""Exceptions raised by the BDF integrator.

``InvalidTolerance`` and ``DimensionMismatch`` are configuration errors and
surface at construction (or at the first weight evaluation).
``ConvergenceFailure``, ``ErrorTestFailure`` and ``StepSizeUnderflow`` are
raised and handled inside the step retry loop; only
``FatalIntegrationFailure`` leaves :meth:`BDFSolver.compute`.
"""


class BDFError(Exception):
    """Base class for integrator errors."""


class InvalidTolerance(BDFError, ValueError):
    """A weight denominator ``rtol*|y_i| + atol_i`` is not positive."""


class DimensionMismatch(BDFError, ValueError):
    """An input vector or matrix does not match the system size."""


class ConvergenceFailure(BDFError):
    """The corrector iteration did not converge for the current step."""


class ErrorTestFailure(BDFError):
    """The local error estimate of a converged step exceeds one."""

    def __init__(self, message: str, error_norm: float):
        super().__init__(message)
        self.error_norm = error_norm


class StepSizeUnderflow(BDFError):
    """The step would have to shrink below its representable floor."""


class FatalIntegrationFailure(BDFError, RuntimeError):
    """Retries are exhausted at order one and minimum step size.

    The solver instance that raised this error refuses further integration.
    """
