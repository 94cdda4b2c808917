"""Nonlinear solvers for the corrector equation."""

from cubdf.nonlinear.base import NonlinearSolver
from cubdf.nonlinear.newton import NewtonConfig, NewtonSolver

__all__ = ["NewtonConfig", "NewtonSolver", "NonlinearSolver"]
