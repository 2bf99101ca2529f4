"""
Tests for gas-phase sampling (physics/interpolation.py) and mesh geometry (core/grid.py).

Tests:
1. Boundary classification
2. Trilinear stencil: weights, uniform and linear fields, boundary collapse
3. Cut-cell stencil: isoparametric map, single-cell fallback, penetration
4. Face-centred velocity and full gas sample
"""

from __future__ import annotations

import numpy as np
import pytest

from core.grid import build_grid, planar_wall_geometry, uniform_field
from core.types import (
    BC_OUTFLOW,
    BC_PERIODIC,
    BC_REFLECTIVE,
    CELL_COVERED,
    CELL_CUT,
    CELL_REGULAR,
    CaseDomain,
    GasField,
    SprayTrackingError,
)
from core.units import SprayUnits
from physics.interpolation import (
    build_stencil,
    check_bounds,
    interpolate,
    interpolate_face_velocity,
    sample_gas_phase,
)

L = 2.0e-3
N = 8
DX = L / N
WALL_Z = 5.5e-4


def _make_grid(bc_lo=(BC_PERIODIC,) * 3, bc_hi=(BC_PERIODIC,) * 3, dim=3):
    domain = CaseDomain(
        prob_lo=[0.0] * dim,
        prob_hi=[L] * dim,
        n_cell=[N] * dim,
        bc_lo=list(bc_lo[:dim]),
        bc_hi=list(bc_hi[:dim]),
    )
    return build_grid(domain)


def _make_wall_grid():
    grid = _make_grid(bc_lo=(0, 0, BC_REFLECTIVE), bc_hi=(0, 0, BC_OUTFLOW))
    geom = planar_wall_geometry(grid, axis=2, position=WALL_Z, solid_side="lo")
    return grid, geom


def _centroid_z(geom) -> np.ndarray:
    """Cell-centroid z coordinate as a cell field."""
    k = np.arange(N)[None, None, :]
    return (k + 0.5 + geom.ccent[..., 2]) * DX


# ============================================================================
# Test 1: Boundary classification
# ============================================================================


def test_check_bounds_periodic_interior():
    grid = _make_grid()
    outside, ijk, dflags = check_bounds(np.array([1.0e-3, 2.0e-4, 1.9e-3]), grid)
    assert not outside
    np.testing.assert_array_equal(dflags, 0)
    np.testing.assert_array_equal(ijk, [4, 1, 8])


def test_check_bounds_reflective_flags():
    grid = _make_grid(bc_lo=(BC_REFLECTIVE,) * 3, bc_hi=(BC_REFLECTIVE,) * 3)
    outside, _, dflags = check_bounds(np.array([-1.0e-6, 0.3 * DX, L - 0.2 * DX]), grid)
    assert not outside
    np.testing.assert_array_equal(dflags, [-1, -2, 2])

    outside, _, dflags = check_bounds(np.array([1.0e-3, 1.0e-3, L + 1.0e-6]), grid)
    assert not outside
    assert dflags[2] == 1


def test_check_bounds_outflow_marks_outside():
    grid = _make_grid(bc_lo=(BC_OUTFLOW,) * 3, bc_hi=(BC_OUTFLOW,) * 3)
    outside, _, _ = check_bounds(np.array([1.0e-3, L + 1.0e-6, 1.0e-3]), grid)
    assert outside
    stencil = build_stencil(np.array([1.0e-3, L + 1.0e-6, 1.0e-3]), grid)
    assert stencil.outside
    assert stencil.weights.size == 0


# ============================================================================
# Test 2: Trilinear stencil
# ============================================================================


@pytest.mark.parametrize("dim", [2, 3])
def test_weights_sum_to_one_and_uniform_field_reproduced(dim):
    grid = _make_grid(dim=dim)
    rng = np.random.default_rng(4)
    T = uniform_field(grid, 812.5)
    for _ in range(25):
        pos = rng.uniform(0.0, L, size=dim)
        stencil = build_stencil(pos, grid)
        assert stencil.weights.shape == (2**dim,)
        assert np.all(stencil.weights >= 0.0)
        assert float(np.sum(stencil.weights)) == pytest.approx(1.0, abs=1.0e-14)
        assert float(interpolate(stencil, T)) == pytest.approx(812.5, rel=1.0e-14)


def test_linear_field_reproduced_in_interior():
    grid = _make_grid()
    centers = (np.indices(grid.shape).transpose(1, 2, 3, 0) + 0.5) * DX
    field = 300.0 + centers @ np.array([1.0e4, -2.0e4, 5.0e3])
    rng = np.random.default_rng(11)
    for _ in range(20):
        pos = rng.uniform(0.6 * DX, L - 0.6 * DX, size=3)
        value = float(interpolate(build_stencil(pos, grid), field))
        expected = 300.0 + float(pos @ np.array([1.0e4, -2.0e4, 5.0e3]))
        assert value == pytest.approx(expected, rel=1.0e-12)


def test_periodic_stencil_wraps_indices():
    grid = _make_grid()
    stencil = build_stencil(np.array([0.1 * DX, 1.0e-3, 1.0e-3]), grid)
    assert set(stencil.indices[:, 0]) == {N - 1, 0}
    assert np.all((stencil.indices >= 0) & (stencil.indices < N))


def test_stencil_collapses_next_to_reflective_boundary():
    grid = _make_grid(bc_lo=(BC_REFLECTIVE,) * 3, bc_hi=(BC_REFLECTIVE,) * 3)
    x_field = np.broadcast_to(np.arange(N, dtype=float)[:, None, None], grid.shape).copy()
    for x in (0.3 * DX, -0.5 * DX):
        stencil = build_stencil(np.array([x, 1.0e-3, 1.0e-3]), grid)
        assert float(interpolate(stencil, x_field)) == pytest.approx(0.0, abs=1.0e-15)
        assert float(np.sum(stencil.weights)) == pytest.approx(1.0)
    stencil = build_stencil(np.array([L - 0.2 * DX, 1.0e-3, 1.0e-3]), grid)
    assert float(interpolate(stencil, x_field)) == pytest.approx(N - 1.0)


# ============================================================================
# Test 3: Cut-cell stencil
# ============================================================================


def test_planar_wall_geometry_cell_types():
    grid, geom = _make_wall_grid()
    types = geom.cell_type[0, 0, :]
    assert list(types[:2]) == [CELL_COVERED, CELL_COVERED]
    assert types[2] == CELL_CUT
    assert np.all(types[3:] == CELL_REGULAR)
    assert geom.vfrac[0, 0, 2] == pytest.approx(0.8)
    assert geom.ccent[0, 0, 2, 2] == pytest.approx(0.1)
    assert geom.bcent[0, 0, 2, 2] == pytest.approx(-0.3)
    # bnorm points into the solid
    assert geom.bnorm[0, 0, 2, 2] == -1.0
    assert not geom.is_connected((0, 0, 2), (0, 0, -1))
    assert geom.is_connected((0, 0, 2), (1, 0, 1))


def test_planar_wall_on_face_is_rejected():
    grid = _make_grid()
    with pytest.raises(ValueError, match="must cut through"):
        planar_wall_geometry(grid, axis=2, position=2.0 * DX)


def test_cut_cell_stencil_follows_centroids():
    grid, geom = _make_wall_grid()
    pos = np.array([1.1e-3, 1.05e-3, 7.2e-4])
    stencil = build_stencil(pos, grid, geom)

    assert stencil.weights.shape == (8,)
    assert np.all(stencil.weights >= -1.0e-12)
    assert float(np.sum(stencil.weights)) == pytest.approx(1.0, abs=1.0e-12)
    assert set(stencil.indices[:, 2]) == {2, 3}
    # Linear in z on centroids is reproduced exactly
    value = float(interpolate(stencil, _centroid_z(geom)))
    assert value == pytest.approx(pos[2], rel=1.0e-9)


def test_cut_cell_between_boundary_and_centroid_uses_single_cell():
    grid, geom = _make_wall_grid()
    stencil = build_stencil(np.array([1.1e-3, 1.05e-3, 6.0e-4]), grid, geom)
    np.testing.assert_array_equal(stencil.indices, np.tile([4, 4, 2], (8, 1)))
    assert stencil.weights[0] == 1.0
    assert float(np.sum(stencil.weights)) == 1.0


def test_parcel_behind_embedded_wall_raises():
    grid, geom = _make_wall_grid()
    with pytest.raises(SprayTrackingError, match="penetrated"):
        build_stencil(np.array([1.0e-3, 1.0e-3, 5.4e-4]), grid, geom)


def test_parcel_in_covered_cell_raises():
    grid, geom = _make_wall_grid()
    with pytest.raises(SprayTrackingError, match="covered"):
        build_stencil(np.array([1.0e-3, 1.0e-3, 4.0e-4]), grid, geom)


def test_regular_region_keeps_trilinear_stencil():
    grid, geom = _make_wall_grid()
    pos = np.array([1.1e-3, 1.05e-3, 1.4e-3])
    with_geom = build_stencil(pos, grid, geom)
    without = build_stencil(pos, grid)
    np.testing.assert_array_equal(with_geom.indices, without.indices)
    np.testing.assert_allclose(with_geom.weights, without.weights)


# ============================================================================
# Test 4: Face velocities and gas sample
# ============================================================================


def _make_umac(grid, fn):
    umac = []
    for d in range(grid.dim):
        shape = tuple(n + (1 if a == d else 0) for a, n in enumerate(grid.shape))
        face_pos = np.indices(shape)[d] * DX
        umac.append(fn(d, face_pos))
    return umac


def test_face_velocity_uniform_and_linear():
    grid = _make_grid()
    pos = np.array([7.3e-4, 1.21e-3, 9.9e-4])

    umac = _make_umac(grid, lambda d, x: np.full_like(x, float(d + 1)))
    np.testing.assert_allclose(interpolate_face_velocity(pos, grid, umac), [1.0, 2.0, 3.0])

    # u_d linear in x_d is reproduced on its own faces
    umac = _make_umac(grid, lambda d, x: 1.0e3 * x)
    np.testing.assert_allclose(interpolate_face_velocity(pos, grid, umac), 1.0e3 * pos, rtol=1.0e-12)


def test_sample_gas_phase_recovers_state():
    grid = _make_grid()
    units = SprayUnits.si()
    mw = np.array([0.032, 0.028])
    Y = np.array([0.233, 0.767])
    T, p = 600.0, 2.0e5
    mw_mix = 1.0 / float(np.dot(Y, 1.0 / mw))
    rho = p * mw_mix / (units.ru * T)
    field = GasField(
        vel=uniform_field(grid, [1.0, -2.0, 0.5]),
        T=uniform_field(grid, T),
        rho=uniform_field(grid, rho),
        Y=uniform_field(grid, Y),
        mw=mw,
    )

    stencil, gas = sample_gas_phase(np.array([1.0e-3, 3.3e-4, 1.7e-3]), grid, field, units, n_fuel=1)

    assert not stencil.outside
    assert gas.T == pytest.approx(T)
    assert gas.p == pytest.approx(p, rel=1.0e-12)
    np.testing.assert_allclose(gas.vel, [1.0, -2.0, 0.5])
    np.testing.assert_allclose(gas.Y, Y)
    assert gas.Y_dot.shape == (1,)
    assert gas.mass_src == 0.0


def test_sample_outside_outflow_returns_none():
    grid = _make_grid(bc_lo=(BC_OUTFLOW,) * 3, bc_hi=(BC_OUTFLOW,) * 3)
    field = GasField(
        vel=uniform_field(grid, [0.0, 0.0, 0.0]),
        T=uniform_field(grid, 300.0),
        rho=uniform_field(grid, 1.2),
        Y=uniform_field(grid, [1.0]),
        mw=np.array([0.029]),
    )
    stencil, gas = sample_gas_phase(np.array([-1.0e-5, 1.0e-3, 1.0e-3]), grid, field, SprayUnits.si(), 1)
    assert stencil.outside
    assert gas is None
