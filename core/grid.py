"""
Mesh construction from CaseConfig domain settings.

Builds a uniform Cartesian mesh and, optionally, embedded-boundary metadata
for an axis-aligned planar wall (volume fractions, centroids, boundary
centroids/normals and cell connectivity).
"""

from __future__ import annotations

import itertools
import logging

import numpy as np

from .types import (
    CELL_COVERED,
    CELL_CUT,
    CELL_REGULAR,
    CaseDomain,
    CartesianGrid,
    CutCellGeometry,
    FloatArray,
)

logger = logging.getLogger(__name__)

_VFRAC_TOL = 1.0e-12


def build_grid(domain: CaseDomain) -> CartesianGrid:
    """Construct the uniform mesh described by the domain block."""
    plo = np.asarray(domain.prob_lo, dtype=np.float64)
    phi = np.asarray(domain.prob_hi, dtype=np.float64)
    n_cell = np.asarray(domain.n_cell, dtype=np.int64)
    if np.any(n_cell <= 0):
        raise ValueError(f"domain.n_cell must be positive (got {domain.n_cell}).")
    dx = (phi - plo) / n_cell
    grid = CartesianGrid(
        plo=plo,
        phi=phi,
        n_cell=n_cell,
        dx=dx,
        bc_lo=np.asarray(domain.bc_lo, dtype=np.int64),
        bc_hi=np.asarray(domain.bc_hi, dtype=np.int64),
    )
    logger.debug("Built grid dim=%d n_cell=%s dx=%s", grid.dim, grid.n_cell, grid.dx)
    return grid


def _connectivity(cell_type: np.ndarray) -> np.ndarray:
    """Two cells are flow-connected when neither is covered."""
    shape = cell_type.shape
    open_cell = cell_type != CELL_COVERED
    connected = np.zeros(shape + (3, 3, 3), dtype=bool)
    for a, b, c in itertools.product(range(3), repeat=3):
        shifted = np.zeros(shape, dtype=bool)
        src = tuple(slice(max(0, o - 1), n + min(0, o - 1)) for o, n in zip((a, b, c), shape))
        dst = tuple(slice(max(0, 1 - o), n + min(0, 1 - o)) for o, n in zip((a, b, c), shape))
        shifted[dst] = open_cell[src]
        connected[..., a, b, c] = open_cell & shifted
    return connected


def planar_wall_geometry(
    grid: CartesianGrid,
    *,
    axis: int,
    position: float,
    solid_side: str = "lo",
) -> CutCellGeometry:
    """
    Embedded-boundary metadata for a solid half-space bounded by a plane
    normal to ``axis`` at ``position``.

    solid_side="lo" means the solid occupies coordinates below ``position``.
    """
    if grid.dim != 3:
        raise ValueError("cut-cell geometry requires a 3-D grid.")
    if not 0 <= axis < 3:
        raise ValueError(f"axis must be 0, 1 or 2 (got {axis}).")
    if solid_side not in ("lo", "hi"):
        raise ValueError(f"solid_side must be 'lo' or 'hi' (got {solid_side!r}).")

    shape = grid.shape
    dxa = float(grid.dx[axis])
    lo_faces = grid.plo[axis] + np.arange(shape[axis]) * dxa
    hi_faces = lo_faces + dxa
    centers = lo_faces + 0.5 * dxa

    if solid_side == "lo":
        frac = np.clip((hi_faces - position) / dxa, 0.0, 1.0)
        fluid_lo = np.maximum(lo_faces, position)
        fluid_hi = hi_faces
        normal_sign = -1.0
    else:
        frac = np.clip((position - lo_faces) / dxa, 0.0, 1.0)
        fluid_lo = lo_faces
        fluid_hi = np.minimum(hi_faces, position)
        normal_sign = 1.0

    cell_type_1d = np.where(
        frac >= 1.0 - _VFRAC_TOL, CELL_REGULAR, np.where(frac <= _VFRAC_TOL, CELL_COVERED, CELL_CUT)
    ).astype(np.int8)
    if not np.any(cell_type_1d == CELL_CUT):
        raise ValueError(
            f"Wall plane at {position} must cut through a cell interior (it lies on a face or outside the domain)."
        )
    ccent_1d = np.where(cell_type_1d == CELL_CUT, (0.5 * (fluid_lo + fluid_hi) - centers) / dxa, 0.0)
    bcent_1d = np.where(cell_type_1d == CELL_CUT, (position - centers) / dxa, 0.0)

    bshape = [1, 1, 1]
    bshape[axis] = shape[axis]
    cell_type = np.broadcast_to(cell_type_1d.reshape(bshape), shape).copy()
    vfrac = np.broadcast_to(np.where(cell_type_1d == CELL_COVERED, 0.0, frac).reshape(bshape), shape).copy()
    ccent = np.zeros(shape + (3,))
    bcent = np.zeros(shape + (3,))
    bnorm = np.zeros(shape + (3,))
    ccent[..., axis] = np.broadcast_to(ccent_1d.reshape(bshape), shape)
    bcent[..., axis] = np.broadcast_to(bcent_1d.reshape(bshape), shape)
    bnorm[..., axis] = np.where(cell_type == CELL_CUT, normal_sign, 0.0)

    logger.debug(
        "Planar wall axis=%d at %.6e (%s solid): %d cut, %d covered cells",
        axis,
        position,
        solid_side,
        int(np.count_nonzero(cell_type == CELL_CUT)),
        int(np.count_nonzero(cell_type == CELL_COVERED)),
    )
    return CutCellGeometry(
        cell_type=cell_type,
        vfrac=vfrac,
        ccent=ccent,
        bcent=bcent,
        bnorm=bnorm,
        connected=_connectivity(cell_type),
    )


def uniform_field(grid: CartesianGrid, values: FloatArray) -> FloatArray:
    """Cell field of shape grid.shape + values.shape filled with ``values``."""
    values = np.asarray(values, dtype=np.float64)
    return np.broadcast_to(values, grid.shape + values.shape).copy()
