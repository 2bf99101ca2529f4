"""
Gas-phase sampling at off-grid parcel positions.

Responsibilities:
- Classify a parcel position against the domain boundaries (check_bounds).
- Build a 2^dim trilinear stencil, degrading to zeroth order along axes
  adjacent to or beyond a non-periodic boundary (trilinear_interp).
- Near embedded (cut-cell) boundaries, build a stencil on the cell centroids
  through an inverse isoparametric map (fe_interp).
- Interpolate face-centred velocities (interpolate_face_velocity).
- Assemble a GasPhaseSample from the stencil (sample_gas_phase).

Boundary flags per axis:
   0 interior / periodic
  -1 / +1 outside the lower / upper reflective boundary
  -2 / +2 within half a cell of the lower / upper non-periodic boundary
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from core.types import (
    BC_PERIODIC,
    BC_REFLECTIVE,
    CartesianGrid,
    CutCellGeometry,
    FloatArray,
    GasField,
    GasPhaseSample,
    IntArray,
    SprayTrackingError,
)
from core.units import SprayUnits
from solvers.iteration import invert_trilinear_map

logger = logging.getLogger(__name__)

# Cells below this volume fraction get no interpolation weight
VFRAC_TOL = 0.05
# Newton controls for the isoparametric inverse map
MAP_TOL = 1.0e-3
MAP_MAX_ITER = 10

_EPS = float(np.finfo(np.float64).eps)


@dataclass(slots=True)
class InterpStencil:
    """Cell indices (m, dim) and weights (m,) plus boundary flags (dim,)."""

    indices: IntArray
    weights: FloatArray
    bflags: IntArray
    cell: IntArray
    outside: bool = False

    def __post_init__(self) -> None:
        if self.indices.shape[0] != self.weights.shape[0]:
            raise ValueError("stencil indices and weights must have the same length")

    def index_tuple(self) -> Tuple[IntArray, ...]:
        """Fancy-index tuple selecting the stencil cells of a field array."""
        return tuple(self.indices.T)


def check_bounds(pos: FloatArray, grid: CartesianGrid) -> Tuple[bool, IntArray, IntArray]:
    """
    Classify ``pos`` against non-periodic boundaries.

    Returns (outside, ijk, dflags) where ijk = floor((pos - plo)/dx + 0.5) is the
    upper corner of the interpolation stencil, shifted inward next to a
    boundary, and ``outside`` is True beyond a non-reflective boundary.
    """
    pos = np.asarray(pos, dtype=np.float64)
    lx = (pos - grid.plo) * grid.dxi + 0.5
    ijk = np.floor(lx).astype(np.int64)
    dflags = np.zeros(grid.dim, dtype=np.int64)
    for hilo in (0, 1):
        fact = 1 if hilo == 0 else -1
        dom_ex = grid.plo if hilo == 0 else grid.phi
        bndry = grid.bc_lo if hilo == 0 else grid.bc_hi
        for d in range(grid.dim):
            bflag = int(bndry[d])
            if bflag == BC_PERIODIC:
                continue
            diff = fact * (pos[d] - dom_ex[d])
            if diff < 0.0:
                if bflag == BC_REFLECTIVE:
                    dflags[d] = -fact
                else:
                    return True, ijk, dflags
            elif diff < 0.5 * grid.dx[d]:
                dflags[d] = -2 * fact
                ijk[d] += fact
    return False, ijk, dflags


def trilinear_interp(
    ijk: IntArray, lx: FloatArray, bflags: IntArray, grid: CartesianGrid
) -> Tuple[IntArray, FloatArray]:
    """
    Trilinear (bilinear in 2-D) stencil over cells ijk-1 .. ijk per axis.

    Axes flagged as adjacent to (|flag| == 2) or beyond (|flag| == 1) a
    boundary collapse to zeroth order on the valid cell. Returned indices are
    always inside the grid (periodic axes wrap).
    """
    dim = grid.dim
    n = grid.n_cell
    ijk = np.array(ijk, dtype=np.int64)
    sx_hi = np.asarray(lx, dtype=np.float64) - ijk
    ssv = np.empty((2, dim))
    for d in range(dim):
        f = int(bflags[d])
        if f == 2 or f == 1:
            ssv[0, d], ssv[1, d] = 0.0, 1.0
            if f == 1:
                ijk[d] = n[d] - 1
        elif f == -2 or f == -1:
            ssv[0, d], ssv[1, d] = 1.0, 0.0
            if f == -1:
                ijk[d] = 1
        else:
            ssv[0, d], ssv[1, d] = 1.0 - sx_hi[d], sx_hi[d]

    corners = list(itertools.product((0, 1), repeat=dim))
    indices = np.empty((len(corners), dim), dtype=np.int64)
    weights = np.empty(len(corners))
    for c, corner in enumerate(corners):
        # corner[0] varies slowest; reverse so x varies fastest
        offs = corner[::-1]
        w = 1.0
        for d in range(dim):
            indices[c, d] = ijk[d] - 1 + offs[d]
            w *= ssv[offs[d], d]
        weights[c] = w
    return _wrap_indices(indices, grid), weights


def _wrap_indices(indices: IntArray, grid: CartesianGrid) -> IntArray:
    out = indices.copy()
    for d in range(grid.dim):
        if int(grid.bc_lo[d]) == BC_PERIODIC:
            out[:, d] = np.mod(out[:, d], grid.n_cell[d])
        else:
            out[:, d] = np.clip(out[:, d], 0, grid.n_cell[d] - 1)
    return out


def _single_cell(ijkc: IntArray, m: int = 1) -> Tuple[IntArray, FloatArray]:
    indices = np.tile(np.asarray(ijkc, dtype=np.int64), (m, 1))
    weights = np.zeros(m)
    weights[0] = 1.0
    return indices, weights


def fe_interp(
    pos: FloatArray, ijkc: IntArray, grid: CartesianGrid, geom: CutCellGeometry
) -> Tuple[IntArray, FloatArray]:
    """
    Stencil on cut-cell centroids around the cell ``ijkc`` containing ``pos``.

    Falls back to the single cell value when a stencil cell is not connected
    to ``ijkc`` or when the parcel lies between the cell centroid and the
    boundary. Weights of cells with volume fraction below VFRAC_TOL are zeroed
    and the rest renormalised.

    Raises:
        SprayTrackingError: If the parcel sits behind the embedded boundary or
            inside a covered cell.
    """
    pos = np.asarray(pos, dtype=np.float64)
    ijkc = np.asarray(ijkc, dtype=np.int64)
    cell = tuple(int(c) for c in ijkc)
    dx = grid.dx
    ccent = geom.ccent[cell]

    if geom.is_covered(cell):
        raise SprayTrackingError(f"Parcel at {pos} is inside covered cell {cell}")

    cdist = float(np.linalg.norm(pos - (ijkc + 0.5 + ccent) * dx - grid.plo))
    if cdist < _EPS:
        return _single_cell(ijkc, 8)

    par_dot_EB = 2.0
    cent_dot_EB = 1.0
    if geom.is_cut(cell):
        normal = -geom.bnorm[cell]
        bcent = geom.bcent[cell]
        par_dot_EB = float(np.dot(pos - (ijkc + 0.5 + bcent) * dx - grid.plo, normal))
        cent_dot_EB = float(np.dot((ccent - bcent) * dx, normal))
        if par_dot_EB <= _EPS:
            raise SprayTrackingError(f"Parcel at {pos} has penetrated the embedded boundary in cell {cell}")

    g = (pos - grid.plo) * grid.dxi - (ijkc + 0.5)
    base = np.where(g < ccent, ijkc, ijkc + 1)
    di = base - ijkc

    corners = [np.array(c[::-1]) for c in itertools.product((0, 1), repeat=3)]
    covered = sum(1 for off in corners if not geom.is_connected(cell, di + off - 1))
    if covered > 0 or par_dot_EB < cent_dot_EB:
        return _single_cell(ijkc, 8)

    raw = np.array([base - 1 + off for off in corners], dtype=np.int64)
    lookup = raw.copy()
    for d in range(3):
        if int(grid.bc_lo[d]) == BC_PERIODIC:
            lookup[:, d] = np.mod(lookup[:, d], grid.n_cell[d])
        elif np.any(lookup[:, d] < 0) or np.any(lookup[:, d] >= grid.n_cell[d]):
            return _single_cell(ijkc, 8)

    nodes = np.array([(raw[lc] + 0.5 + geom.ccent[tuple(lookup[lc])]) * dx for lc in range(8)])
    guess = (pos - nodes[0] - grid.plo) * grid.dxi
    res = invert_trilinear_map(pos - grid.plo, nodes, guess, tol=MAP_TOL, max_iter=MAP_MAX_ITER)
    xi = np.asarray(res.value)

    weights = np.array([np.prod(np.where(off == 1, xi, 1.0 - xi)) for off in corners])
    vfrac = geom.vfrac[tuple(lookup.T)]
    weights[vfrac < VFRAC_TOL] = 0.0
    # TODO: redistribute the weight dropped from small cells to the Eulerian budget
    rw = float(np.sum(weights))
    if abs(rw) <= _EPS:
        return _single_cell(ijkc, 8)
    return lookup, weights / rw


def _use_cut_cell_stencil(
    ijkc: IntArray, indices: IntArray, dflags: IntArray, geom: Optional[CutCellGeometry], dim: int
) -> bool:
    if geom is None or dim != 3 or np.any(dflags != 0):
        return False
    if not geom.in_range(ijkc):
        return False
    if not geom.is_regular(ijkc):
        return True
    return any(not geom.is_regular(idx) for idx in indices)


def build_stencil(
    pos: FloatArray, grid: CartesianGrid, geom: Optional[CutCellGeometry] = None
) -> InterpStencil:
    """Interpolation stencil for ``pos`` (``outside`` set beyond an outflow boundary)."""
    pos = np.asarray(pos, dtype=np.float64)
    outside, ijk, dflags = check_bounds(pos, grid)
    ijkc = grid.cell_index(pos)
    if outside:
        return InterpStencil(
            indices=np.zeros((0, grid.dim), dtype=np.int64),
            weights=np.zeros(0),
            bflags=dflags,
            cell=ijkc,
            outside=True,
        )
    lx = (pos - grid.plo) * grid.dxi + 0.5
    indices, weights = trilinear_interp(ijk, lx, dflags, grid)
    if _use_cut_cell_stencil(ijkc, indices, dflags, geom, grid.dim):
        indices, weights = fe_interp(pos, ijkc, grid, geom)
    elif geom is not None and grid.dim == 3 and any(geom.is_covered(idx) for idx in indices):
        indices, weights = _single_cell(_wrap_indices(ijkc[None, :], grid)[0], indices.shape[0])
    return InterpStencil(indices=indices, weights=weights, bflags=dflags, cell=ijkc)


def interpolate_face_velocity(pos: FloatArray, grid: CartesianGrid, umac: List[FloatArray]) -> FloatArray:
    """
    Velocity at ``pos`` from face-centred components.

    Component d is interpolated on the faces normal to d; indices are clamped
    to the face arrays.
    """
    pos = np.asarray(pos, dtype=np.float64)
    dim = grid.dim
    length = (pos - grid.plo) * grid.dxi + 0.5
    vel = np.zeros(dim)
    for d in range(dim):
        face_len = length + 0.5 * (np.arange(dim) == d)
        indx = np.floor(face_len).astype(np.int64)
        delL = face_len - indx
        hi = np.array(umac[d].shape[:dim], dtype=np.int64) - 1
        pairs = [
            (max(int(indx[a]) - 1, 0), min(int(indx[a]), int(hi[a])), 1.0 - delL[a], delL[a]) for a in range(dim)
        ]
        for corner in itertools.product((0, 1), repeat=dim):
            idx = tuple(pairs[a][corner[a]] for a in range(dim))
            w = 1.0
            for a in range(dim):
                w *= pairs[a][2 + corner[a]]
            vel[d] += umac[d][idx] * w
    return vel


def interpolate(stencil: InterpStencil, values: FloatArray) -> FloatArray:
    """Weighted stencil sum of a cell field (scalar or trailing-vector)."""
    picked = values[stencil.index_tuple()]
    return np.tensordot(stencil.weights, picked, axes=(0, 0))


def sample_gas_phase(
    pos: FloatArray,
    grid: CartesianGrid,
    field: GasField,
    units: SprayUnits,
    n_fuel: int,
    geom: Optional[CutCellGeometry] = None,
) -> Tuple[InterpStencil, Optional[GasPhaseSample]]:
    """
    Interpolate the gas state at ``pos``.

    Returns (stencil, sample); the sample is None when the parcel is outside
    a non-reflective boundary.
    """
    stencil = build_stencil(pos, grid, geom)
    if stencil.outside:
        return stencil, None
    if field.umac is not None:
        vel = interpolate_face_velocity(pos, grid, field.umac)
    else:
        vel = interpolate(stencil, field.vel)
    gas = GasPhaseSample.from_state(
        vel=vel,
        T=float(interpolate(stencil, field.T)),
        rho=float(interpolate(stencil, field.rho)),
        Y=interpolate(stencil, field.Y),
        mw=field.mw,
        ru=units.ru,
        n_fuel=n_fuel,
    )
    return stencil, gas
