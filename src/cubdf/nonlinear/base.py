"""Interface of the nonlinear solver consumed by the integrator."""

from abc import ABC, abstractmethod
from typing import Callable

from cubdf.systems.base import COOMatrix, SystemFunctional, SystemJacobian


class NonlinearSolver(ABC):
    """Root finder for the corrector equation ``G(u) = 0``."""

    @abstractmethod
    def solve(
        self,
        functional: SystemFunctional,
        jacobian: SystemJacobian,
        matrix: COOMatrix,
        u,
        d,
        norm: Callable,
        tolerance: float,
    ) -> int:
        """Drive ``functional`` to zero starting from ``u``.

        Parameters
        ----------
        functional, jacobian
            ``G`` and its Jacobian ``H``.
        matrix
            Storage for ``H`` with the pattern of ``jacobian``.
        u
            Device vector holding the initial guess; overwritten with the
            converged iterate.
        d
            Device vector, zero on entry; holds ``u - u_initial`` on exit.
        norm
            ``norm(x) -> float``, the weighted RMS norm of a device vector.
        tolerance
            Convergence threshold on the weighted norm of the update.

        Returns
        -------
        int
            Iterations performed.

        Raises
        ------
        ConvergenceFailure
            If the iteration diverges, stalls or meets a singular or
            non-finite system.
        """
