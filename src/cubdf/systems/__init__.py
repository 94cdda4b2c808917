"""Problem definitions: functionals, Jacobians and COO storage."""

from cubdf.systems.base import (
    COOMatrix,
    DifferenceQuotientJacobian,
    HostFunctional,
    HostJacobian,
    SystemFunctional,
    SystemJacobian,
    dense_pattern,
)

__all__ = [
    "COOMatrix",
    "DifferenceQuotientJacobian",
    "HostFunctional",
    "HostJacobian",
    "SystemFunctional",
    "SystemJacobian",
    "dense_pattern",
]
