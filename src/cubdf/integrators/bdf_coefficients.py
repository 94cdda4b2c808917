"""Variable-step BDF coefficients in Nordsieck form.

All functions work on the host with small arrays. ``tau`` is the array of
past accepted step sizes with ``tau[1]`` the most recent; ``tau[0]`` is
unused so indices match derivative orders.

Published Functions
-------------------
:func:`corrector_coefficients`
    L polynomial, ``gamma`` and error-control constants ``tq`` for a step.
:func:`order_increase_coefficients`
    Polynomial and scale used to add a history row when ``q`` grows.
:func:`order_decrease_coefficients`
    Polynomial used to drop the top history row when ``q`` shrinks.

Notes
-----
For constant steps the L polynomial is the coefficient list of
``prod_{i=1..q}(1 + x/i)``; for ``q = 3`` that is ``[1, 11/6, 1, 1/6]``.
"""

from typing import Tuple

import attrs
import numpy as np
from numpy.typing import NDArray


@attrs.define
class CorrectorCoefficients:
    """Coefficients of one BDF step.

    Attributes
    ----------
    l : ndarray
        L polynomial, length ``lmax``; entries above ``q`` are zero.
    tq : ndarray
        Error-control constants, length 6, valid at indices 1..5:
        ``tq[1]`` order q-1 estimate (only when an order change is due),
        ``tq[2]`` order q local error, ``tq[3]`` order q+1 estimate (only
        when an order change is due), ``tq[4]`` corrector tolerance,
        ``tq[5]`` scale for the saved correction of the next order test.
    gamma : float
        ``dt / l[1]``, the scalar in front of ``F`` in the corrector.
    rl1 : float
        ``1 / l[1]``.
    dt_sum : float
        Sum of the step sizes spanned by the coefficients.
    xi_inv : float
        ``dt / dt_sum``.
    """

    l: NDArray = attrs.field(eq=False)
    tq: NDArray = attrs.field(eq=False)
    gamma: float = attrs.field()
    rl1: float = attrs.field()
    dt_sum: float = attrs.field()
    xi_inv: float = attrs.field()


def corrector_coefficients(
    q: int,
    dt: float,
    tau: NDArray,
    q_next_change: int,
    nlscoef: float,
    lmax: int,
) -> CorrectorCoefficients:
    """Return the L polynomial and error constants for a step of order q.

    Parameters
    ----------
    q
        Current order.
    dt
        Step size being attempted.
    tau
        Past step sizes, ``tau[1]`` most recent.
    q_next_change
        Steps left before an order change is considered. The q-1 and q+1
        constants are only formed when this equals one.
    nlscoef
        Corrector tolerance factor.
    lmax
        Length of the returned polynomial.
    """
    l = np.zeros(lmax)
    l[0] = l[1] = 1.0
    xi_inv = xistar_inv = 1.0
    alpha0 = alpha0_hat = -1.0
    hsum = dt

    if q > 1:
        for j in range(2, q):
            hsum += tau[j - 1]
            xi_inv = dt / hsum
            alpha0 -= 1.0 / j
            for i in range(j, 0, -1):
                l[i] += l[i - 1] * xi_inv
        # j = q
        alpha0 -= 1.0 / q
        xistar_inv = -l[1] - alpha0
        hsum += tau[q - 1]
        xi_inv = dt / hsum
        alpha0_hat = -l[1] - xi_inv
        for i in range(q, 0, -1):
            l[i] += l[i - 1] * xistar_inv

    tq = np.zeros(6)
    a1 = 1.0 - alpha0_hat + alpha0
    a2 = 1.0 + q * a1
    tq[2] = abs(a1 / (alpha0 * a2))
    tq[5] = abs(a2 * xistar_inv / (l[q] * xi_inv))
    if q_next_change == 1:
        if q > 1:
            c = xistar_inv / l[q]
            a3 = alpha0 + 1.0 / q
            a4 = alpha0_hat + xi_inv
            cp_inv = (1.0 - a4 + a3) / a3
            tq[1] = abs(c * cp_inv)
        else:
            tq[1] = 1.0
        hsum += tau[q]
        xi_inv = dt / hsum
        a5 = alpha0 - 1.0 / (q + 1)
        a6 = alpha0_hat - xi_inv
        cpp_inv = (1.0 - a6 + a5) / a2
        tq[3] = abs(cpp_inv / (xi_inv * (q + 2) * a5))
    tq[4] = nlscoef / tq[2]

    return CorrectorCoefficients(
        l=l,
        tq=tq,
        gamma=dt / l[1],
        rl1=1.0 / l[1],
        dt_sum=hsum,
        xi_inv=xi_inv,
    )


def order_increase_coefficients(
    q: int, dt: float, tau: NDArray, lmax: int
) -> Tuple[NDArray, float]:
    """Return ``(l, a1)`` for raising the order from ``q`` to ``q + 1``.

    The new row ``q + 1`` is ``a1`` times the saved correction, and rows
    ``2..q`` receive ``l[j]`` times the new row.
    """
    l = np.zeros(lmax)
    l[2] = alpha1 = prod = xiold = 1.0
    alpha0 = -1.0
    hsum = dt
    if q > 1:
        for j in range(1, q):
            hsum += tau[j + 1]
            xi = hsum / dt
            prod *= xi
            alpha0 -= 1.0 / (j + 1)
            alpha1 += 1.0 / xi
            for i in range(j + 2, 1, -1):
                l[i] = l[i] * xiold + l[i - 1]
            xiold = xi
    a1 = (-alpha0 - alpha1) / prod
    return l, a1


def order_decrease_coefficients(
    q: int, dt: float, tau: NDArray, lmax: int
) -> NDArray:
    """Return ``l`` for lowering the order from ``q`` to ``q - 1``.

    Rows ``2..q-1`` are adjusted by ``-l[j]`` times row ``q``.
    """
    l = np.zeros(lmax)
    l[2] = 1.0
    hsum = 0.0
    for j in range(1, q - 1):
        hsum += tau[j]
        xi = hsum / dt
        for i in range(j + 2, 1, -1):
            l[i] = l[i] * xi + l[i - 1]
    return l
