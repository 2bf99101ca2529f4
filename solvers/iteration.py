"""
Bounded iterative solves used inside the per-parcel kernels.

Every routine here runs a fixed maximum number of iterations and returns its
best estimate together with convergence information. Non-convergence is
logged at DEBUG level and never raised: later clipping stages in the
physics absorb the residual drift.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable

import numpy as np

from core.types import FloatArray

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class IterationResult:
    value: float | FloatArray
    iterations: int
    converged: bool


def fixed_point(
    g: Callable[[float], float],
    x0: float,
    *,
    tol: float,
    max_iter: int,
    relative: bool = False,
    name: str = "fixed_point",
) -> IterationResult:
    """
    Iterate x <- g(x) until |dx| <= tol (or |dx|/|x| <= tol when ``relative``).

    Returns the last iterate if ``max_iter`` is reached, and stops at the
    first non-finite iterate.
    """
    x = float(x0)
    for k in range(1, int(max_iter) + 1):
        x_new = float(g(x))
        if not math.isfinite(x_new):
            logger.debug("%s: non-finite iterate at iteration %d", name, k)
            return IterationResult(x_new, k, False)
        dx = abs(x_new - x)
        err = dx / abs(x) if relative and x != 0.0 else dx
        x = x_new
        if err <= tol:
            return IterationResult(x, k, True)
    logger.debug("%s: no convergence after %d iterations (x=%.6e)", name, max_iter, x)
    return IterationResult(x, int(max_iter), False)


def _trilinear_coefficients(nodes: FloatArray, pos: FloatArray) -> FloatArray:
    """
    Coefficients a0..a7 of x(xi, eta, zeta) - pos per axis, shape (8, 3).

    Node ordering: index = ii + 2*jj + 4*kk for the corner (ii, jj, kk).
    """
    n = nodes
    return np.array(
        [
            n[0] - pos,
            n[1] - n[0],
            n[2] - n[0],
            n[4] - n[0],
            n[0] - n[1] + n[3] - n[2],
            n[0] - n[1] - n[4] + n[5],
            n[0] - n[2] - n[4] + n[6],
            n[1] - n[3] + n[2] + n[4] - n[5] + n[7] - n[6] - n[0],
        ]
    )


def invert_trilinear_map(
    pos: FloatArray,
    nodes: FloatArray,
    guess: FloatArray,
    *,
    tol: float = 1.0e-3,
    max_iter: int = 10,
) -> IterationResult:
    """
    Newton solve for reference coordinates (xi, eta, zeta) such that the
    trilinear map through the eight ``nodes`` reaches ``pos``.

    Args:
        pos: Physical position, shape (3,)
        nodes: Corner positions, shape (8, 3), ordered ii + 2*jj + 4*kk
        guess: Initial reference coordinates, shape (3,)

    Returns:
        IterationResult whose value is the (3,) reference coordinate estimate
    """
    a = _trilinear_coefficients(np.asarray(nodes, dtype=np.float64), np.asarray(pos, dtype=np.float64))
    x = np.array(guess, dtype=np.float64)
    for k in range(1, int(max_iter) + 1):
        xi, eta, zeta = x
        f = (
            a[0]
            + a[1] * xi
            + a[2] * eta
            + a[3] * zeta
            + a[4] * xi * eta
            + a[5] * xi * zeta
            + a[6] * eta * zeta
            + a[7] * xi * eta * zeta
        )
        jac = np.column_stack(
            (
                a[1] + a[4] * eta + a[5] * zeta + a[7] * eta * zeta,
                a[2] + a[4] * xi + a[6] * zeta + a[7] * xi * zeta,
                a[3] + a[5] * xi + a[6] * eta + a[7] * xi * eta,
            )
        )
        try:
            dx = np.linalg.solve(jac, f)
        except np.linalg.LinAlgError:
            logger.debug("invert_trilinear_map: singular Jacobian at iteration %d", k)
            return IterationResult(x, k, False)
        x = x - dx
        if float(np.max(np.abs(dx))) <= tol:
            return IterationResult(x, k, True)
    logger.debug("invert_trilinear_map: no convergence after %d iterations", max_iter)
    return IterationResult(x, int(max_iter), False)
