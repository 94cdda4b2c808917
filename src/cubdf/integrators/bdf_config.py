"""Configuration containers for the BDF integrator.

Published Classes
-----------------
:class:`BDFConstants`
    Frozen set of numeric constants steering order and step selection.

    >>> constants = BDFConstants()
    >>> constants.max_order, constants.max_dt_iter, constants.threshold
    (5, 4, 1.5)

:class:`BDFSolverConfig`
    Problem-level settings: precision, size, tolerances and step bounds.
"""

from math import inf

import attrs
from attrs import Converter, define, field
from numpy import float64, ndarray

from cubdf._utils import (
    PrecisionDType,
    float_array_validator,
    getype_validator,
    gttype_validator,
    inrangetype_validator,
    precision_converter,
    precision_validator,
    tol_converter,
)
from cubdf.integrators.tolerances import validate_tolerances


@attrs.define(frozen=True)
class BDFConstants:
    """Numeric constants of the order and step-size controller.

    Attributes
    ----------
    max_order : int
        Highest BDF order (``QMAX``).
    max_dt_iter : int
        Consecutive rejections at one order before falling back to order 1.
    threshold : float
        Minimum growth factor for which a step-size change is applied.
    dt_lb_factor, dt_ub_factor : float
        Bounds on the first step as fractions of the integration span.
    eta_max_first, eta_max_early, eta_max_late : float
        Growth limits on the first step, on steps up to ``small_nst``, and
        afterwards.
    small_nst : int
        Step count separating the early and late growth limits.
    eta_min : float
        Smallest shrink factor after an error-test failure.
    eta_max_error_fail : float
        Cap on the shrink factor from the ``small_nef``-th consecutive
        error-test failure on.
    small_nef : int
        See ``eta_max_error_fail``.
    eta_convergence_fail : float
        Shrink factor after a corrector convergence failure.
    bias1, bias2, bias3 : float
        Safety factors on the order q-1, q and q+1 error estimates.
    addon : float
        Keeps growth factors finite when an error estimate vanishes.
    long_wait : int
        Steps to wait before reconsidering the order after a restart.
    nlscoef : float
        Corrector tolerance as a fraction of the local error tolerance.
    first_step_iters : int
        Refinement iterations of the first-step estimate.
    first_step_bias : float
        Factor applied to the refined first-step estimate.
    landing_stretch : float
        A step that falls short of the target by less than this factor is
        stretched to end on the target.
    """

    max_order: int = field(
        default=5, validator=inrangetype_validator(int, 1, 5)
    )
    max_dt_iter: int = field(default=4, validator=getype_validator(int, 1))
    threshold: float = field(
        default=1.5, validator=gttype_validator(float, 1.0)
    )
    dt_lb_factor: float = field(
        default=100.0, validator=gttype_validator(float, 1.0)
    )
    dt_ub_factor: float = field(
        default=0.1, validator=inrangetype_validator(float, 0.0, 1.0)
    )
    eta_max_first: float = field(
        default=1.0e4, validator=gttype_validator(float, 1.0)
    )
    eta_max_early: float = field(
        default=10.0, validator=gttype_validator(float, 1.0)
    )
    eta_max_late: float = field(
        default=10.0, validator=gttype_validator(float, 1.0)
    )
    small_nst: int = field(default=10, validator=getype_validator(int, 0))
    eta_min: float = field(
        default=0.1, validator=inrangetype_validator(float, 0.0, 1.0)
    )
    eta_max_error_fail: float = field(
        default=0.2, validator=inrangetype_validator(float, 0.0, 1.0)
    )
    small_nef: int = field(default=2, validator=getype_validator(int, 1))
    eta_convergence_fail: float = field(
        default=0.5, validator=inrangetype_validator(float, 0.0, 1.0)
    )
    bias1: float = field(default=6.0, validator=gttype_validator(float, 0.0))
    bias2: float = field(default=6.0, validator=gttype_validator(float, 0.0))
    bias3: float = field(default=10.0, validator=gttype_validator(float, 0.0))
    addon: float = field(default=1.0e-6, validator=gttype_validator(float, 0.0))
    long_wait: int = field(default=10, validator=getype_validator(int, 2))
    nlscoef: float = field(
        default=0.1, validator=inrangetype_validator(float, 0.0, 1.0)
    )
    first_step_iters: int = field(default=4, validator=getype_validator(int, 1))
    first_step_bias: float = field(
        default=0.5, validator=inrangetype_validator(float, 0.0, 1.0)
    )
    landing_stretch: float = field(
        default=1.1, validator=getype_validator(float, 1.0)
    )

    @property
    def lmax(self) -> int:
        """Number of Nordsieck rows, ``max_order + 1``."""
        return self.max_order + 1


@define
class BDFSolverConfig:
    """Problem-level settings of a :class:`BDFSolver`.

    Attributes
    ----------
    precision : PrecisionDType
        Floating point type of every device buffer.
    n : int
        Number of state components.
    rtol : float
        Scalar relative tolerance.
    atol : ndarray
        Absolute tolerance per component; scalars are broadcast.
    dt_max : float
        Largest permitted step.
    dt_min : float
        Smallest permitted step. The effective floor is never below the
        representable resolution of the integration time.
    """

    precision: PrecisionDType = field(
        default=float64,
        validator=precision_validator,
        converter=precision_converter,
    )
    n: int = field(default=1, validator=getype_validator(int, 1))
    rtol: float = field(default=1e-6, validator=getype_validator(float, 0.0))
    atol: ndarray = field(
        default=1e-8,
        validator=float_array_validator,
        converter=Converter(tol_converter, takes_self=True),
    )
    _dt_max: float = field(default=inf, validator=gttype_validator(float, 0.0))
    _dt_min: float = field(default=0.0, validator=getype_validator(float, 0.0))

    def __attrs_post_init__(self):
        validate_tolerances(self.rtol, self.atol, self.n)
        if self._dt_min >= self._dt_max:
            raise ValueError(
                f"dt_min ({self._dt_min}) must be smaller than dt_max "
                f"({self._dt_max})"
            )

    @property
    def dt_max(self) -> float:
        """Return the maximum permissible step size."""
        return float(self._dt_max)

    @property
    def dt_min(self) -> float:
        """Return the minimum permissible step size."""
        return float(self._dt_min)
