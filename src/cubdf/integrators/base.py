"""Narrow capability interfaces composed by :class:`BDFSolver`.

A linear multistep integrator needs a history it can extrapolate, correct
and rescale; an implicit integrator needs a corrector problem it can hand to
a nonlinear solver. The solver composes one object of each kind instead of
inheriting both roles.
"""

from abc import ABC, abstractmethod


class MultistepHistory(ABC):
    """History of a linear multistep method."""

    @abstractmethod
    def predict(self, q: int) -> None:
        """Extrapolate the history one step ahead at order ``q``."""

    @abstractmethod
    def correct(self, acor, q: int) -> None:
        """Fold the corrector update ``acor`` into every history row."""

    @abstractmethod
    def rescale(self, eta: float, q: int) -> None:
        """Rescale the history for a step size multiplied by ``eta``."""

    @abstractmethod
    def snapshot(self) -> None:
        """Save the history so a rejected step can be undone."""

    @abstractmethod
    def restore(self) -> None:
        """Return the history to the last snapshot."""


class ImplicitCorrector(ABC):
    """Nonlinear corrector problem of an implicit method."""

    @abstractmethod
    def configure(self, gamma: float, dt: float) -> None:
        """Fix the scalar coefficients of the current corrector problem."""

    @property
    @abstractmethod
    def residual(self):
        """Return the corrector functional ``G``."""

    @property
    @abstractmethod
    def iteration_matrix(self):
        """Return the corrector Jacobian ``H``."""
