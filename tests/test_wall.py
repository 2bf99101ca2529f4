"""
Tests for parcel/wall interaction (physics/wall.py).

Tests:
1. Wall contact detection (domain boundaries and embedded walls)
2. Regime map and ejection-angle statistics
3. Specular rebound
4. Deposit to wall film
5. Splash and thermal breakup: mass bookkeeping (including the fractional droplet
   that is not ejected) and reproducible secondary droplets
"""

from __future__ import annotations

import logging
import math
import pathlib

import numpy as np
import pytest

from core.grid import build_grid, planar_wall_geometry
from core.types import (
    BC_OUTFLOW,
    BC_REFLECTIVE,
    CaseDomain,
    Parcel,
    SplashType,
    SprayReflection,
    SprayTrackingError,
)
from core.units import SprayUnits
from physics.interpolation import check_bounds
from physics.wall import (
    BETA_STDEV_DEG,
    check_wall,
    compute_angles,
    film_dome_height,
    find_tangents,
    impose_wall,
    parcel_rng,
    spawn_splash_droplets,
    splash_criteria,
)
from properties.fuel_db import build_fuel_table, load_fuel_db

FUEL_DB = pathlib.Path(__file__).parent.parent / "mechanism" / "spray_fuels.yaml"
L = 2.0e-3
DX = L / 8
WALL_Z = 5.5e-4
D0 = 8.0e-5


def _make_fuel(sigma: float = 0.0238):
    return build_fuel_table(load_fuel_db(FUEL_DB), ["NC10H22"], ["O2", "N2", "NC10H22"], SprayUnits.si(), sigma=sigma)


def _make_grid(bc_lo=(0, 0, BC_REFLECTIVE), bc_hi=(0, 0, BC_OUTFLOW)):
    return build_grid(CaseDomain([0.0] * 3, [L] * 3, [8] * 3, list(bc_lo), list(bc_hi)))


def _embedded_wall():
    grid = _make_grid()
    return grid, planar_wall_geometry(grid, axis=2, position=WALL_Z, solid_side="lo")


def _impacting_parcel(vel, z=WALL_Z - 1.0e-5) -> Parcel:
    return Parcel(
        pos=np.array([1.0e-3, 1.0e-3, z]),
        vel=np.asarray(vel, dtype=float),
        temperature=300.0,
        diameter=D0,
        Y=np.array([1.0]),
        weight=2.0,
        pid=5,
    )


def _embedded_contact(grid, geom, parcel):
    ijkc = grid.cell_index(parcel.pos)
    return check_wall(np.zeros(3, dtype=np.int64), ijkc, None, geom)


# ============================================================================
# Test 1: Wall contact detection
# ============================================================================


def test_check_wall_reflective_domain_boundary():
    contact = check_wall(np.array([0, 1, 0]), np.array([3, 8, 2]))
    np.testing.assert_array_equal(contact.normal, [0.0, -1.0, 0.0])
    np.testing.assert_array_equal(contact.bcent, [0.0, -0.5, 0.0])
    np.testing.assert_array_equal(contact.bloc, [3, 8, 2])


def test_check_wall_ignores_near_boundary_flags():
    assert check_wall(np.array([-2, 2, 0]), np.array([0, 7, 3])) is None


def test_check_wall_embedded_cut_cell():
    grid, geom = _embedded_wall()
    contact = check_wall(np.zeros(3, dtype=np.int64), np.array([4, 4, 2]), None, geom)
    np.testing.assert_array_equal(contact.normal, [0.0, 0.0, 1.0])
    assert contact.bcent[2] == pytest.approx(-0.3)
    wall_point = (contact.bloc + 0.5 + contact.bcent) * grid.dx + grid.plo
    assert wall_point[2] == pytest.approx(WALL_Z)


def test_check_wall_covered_cell_uses_previous_cut_cell():
    _, geom = _embedded_wall()
    contact = check_wall(np.zeros(3, dtype=np.int64), np.array([4, 4, 1]), np.array([4, 4, 2]), geom)
    np.testing.assert_array_equal(contact.bloc, [4, 4, 2])


def test_check_wall_covered_cell_without_history_raises():
    _, geom = _embedded_wall()
    with pytest.raises(SprayTrackingError, match="covered cell"):
        check_wall(np.zeros(3, dtype=np.int64), np.array([4, 4, 1]), np.array([4, 4, 4]), geom)


def test_check_wall_regular_cell_is_none():
    _, geom = _embedded_wall()
    assert check_wall(np.zeros(3, dtype=np.int64), np.array([4, 4, 5]), None, geom) is None


# ============================================================================
# Test 2: Regime map and angles
# ============================================================================


def test_splash_criteria_cold_wall():
    Kcrit = 54.0 + 76.0 * math.exp(13.0 * (0.9 - 1.0))
    assert splash_criteria(Kcrit - 1.0, 0.9, 0.5 * math.pi) == SplashType.DEPOSIT
    assert splash_criteria(Kcrit + 1.0, 0.9, 0.5 * math.pi) == SplashType.SPLASH
    assert splash_criteria(129.0, 1.05, 0.5 * math.pi) == SplashType.DEPOSIT
    assert splash_criteria(131.0, 1.05, 0.5 * math.pi) == SplashType.SPLASH


def test_splash_criteria_hot_wall_is_monotonic_in_kv():
    for alpha in (0.2, 0.8, 0.5 * math.pi):
        regimes = [splash_criteria(Kv, 1.3, alpha) for Kv in np.linspace(1.0, 100.0, 60)]
        first_breakup = regimes.index(SplashType.THERMAL_BREAKUP)
        assert all(r == SplashType.REBOUND for r in regimes[:first_breakup])
        assert all(r == SplashType.THERMAL_BREAKUP for r in regimes[first_breakup:])


def test_compute_angles_lognormal_mean():
    refl = SprayReflection()
    alpha = math.radians(60.0)
    compute_angles(alpha, 0.9, 300.0, True, 3, refl)
    assert math.exp(refl.beta_mean + 0.5 * refl.beta_stdv**2) == pytest.approx(9.3 + 0.22 * 60.0)
    assert refl.beta_stdv > 0.0
    assert refl.omega > 0.0
    assert refl.expomega == pytest.approx(1.0 - math.exp(-refl.omega))


def test_compute_angles_no_azimuth_bias_for_steep_or_planar_impacts():
    refl = SprayReflection()
    compute_angles(math.radians(85.0), 0.9, 300.0, False, 3, refl)
    assert refl.omega == 0.0
    compute_angles(math.radians(30.0), 0.9, 300.0, True, 2, refl)
    assert refl.omega == 0.0
    assert BETA_STDEV_DEG == 4.0


def test_find_tangents_orthonormal():
    n = np.array([0.0, 0.0, 1.0])
    tb, tp = find_tangents(np.array([-2.0, 0.0, 20.0]), n)
    np.testing.assert_allclose(tp, [0.0, 1.0, 0.0])
    np.testing.assert_allclose(tb, [1.0, 0.0, 0.0])

    tb, tp = find_tangents(n.copy(), n)
    for v in (tb, tp):
        assert np.linalg.norm(v) == pytest.approx(1.0)
        assert float(np.dot(v, n)) == pytest.approx(0.0, abs=1.0e-14)
    assert float(np.dot(tb, tp)) == pytest.approx(0.0, abs=1.0e-14)

    tb2, tp2 = find_tangents(np.array([1.0, 0.0]), np.array([0.0, 1.0]))
    np.testing.assert_array_equal(tb2, [-1.0, 0.0])
    np.testing.assert_array_equal(tp2, [0.0, 0.0])


def test_film_dome_height_hemisphere_fallback():
    volume = 1.0e-12
    r = np.cbrt(3.0 * volume / (2.0 * math.pi))
    assert film_dome_height(volume, 0.0) == pytest.approx(2.0 * r / 3.0)
    # A thin dome spreads wider than the hemisphere
    assert film_dome_height(volume, 1.0e-6) < film_dome_height(volume, 0.0)


# ============================================================================
# Test 3: Rebound
# ============================================================================


def test_rebound_at_reflective_domain_boundary_negates_normal_velocity():
    grid = _make_grid()
    parcel = Parcel(pos=np.array([1.0e-3, 1.0e-3, -1.0e-5]), vel=np.array([0.3, -0.7, -4.0]),
                    temperature=300.0, diameter=D0, Y=np.array([1.0]))
    _, _, dflags = check_bounds(parcel.pos, grid)
    contact = check_wall(dflags, grid.cell_index(parcel.pos))

    splash, refl = impose_wall(parcel, _make_fuel(sigma=-1.0), grid, 300.0, contact)

    assert splash == SplashType.REBOUND
    assert refl is None
    np.testing.assert_array_equal(parcel.vel, [0.3, -0.7, 4.0])
    assert parcel.pos[2] == pytest.approx(1.0e-5)
    assert not parcel.is_film


def test_inactive_parcel_is_reflected_without_splash_model():
    grid, geom = _embedded_wall()
    parcel = _impacting_parcel([2.0, 0.0, -20.0])
    contact = _embedded_contact(grid, geom, parcel)
    splash, refl = impose_wall(parcel, _make_fuel(), grid, 300.0, contact, is_active=False)
    assert splash == SplashType.REBOUND
    assert refl is None
    np.testing.assert_array_equal(parcel.vel, [2.0, 0.0, 20.0])
    assert parcel.pos[2] == pytest.approx(WALL_Z + 1.0e-5)


def test_parcel_in_front_of_wall_is_untouched():
    grid, geom = _embedded_wall()
    parcel = _impacting_parcel([0.0, 0.0, -5.0], z=WALL_Z + 1.0e-5)
    contact = _embedded_contact(grid, geom, parcel)
    splash, refl = impose_wall(parcel, _make_fuel(), grid, 300.0, contact)
    assert splash == SplashType.NO_IMPACT
    assert refl is None
    np.testing.assert_array_equal(parcel.vel, [0.0, 0.0, -5.0])


def test_hot_wall_slow_impact_rebounds():
    grid, geom = _embedded_wall()
    parcel = _impacting_parcel([0.5, 0.0, -1.0])
    contact = _embedded_contact(grid, geom, parcel)
    splash, _ = impose_wall(parcel, _make_fuel(), grid, 600.0, contact, rng=parcel_rng(1, 0, 5))
    assert splash == SplashType.REBOUND
    np.testing.assert_allclose(parcel.vel, [0.5, 0.0, 1.0])


# ============================================================================
# Test 4: Deposit
# ============================================================================


def test_slow_impact_on_cold_wall_deposits_film():
    grid, geom = _embedded_wall()
    fuel = _make_fuel()
    parcel = _impacting_parcel([0.2, 0.0, -1.0])
    contact = _embedded_contact(grid, geom, parcel)

    splash, refl = impose_wall(parcel, fuel, grid, 300.0, contact)

    assert splash == SplashType.DEPOSIT
    assert refl is None
    assert parcel.is_film
    assert parcel.is_alive
    np.testing.assert_array_equal(parcel.vel, 0.0)
    np.testing.assert_array_equal(parcel.wall_normal, [0.0, 0.0, 1.0])
    assert parcel.film_volume == pytest.approx(math.pi / 6.0 * D0**3)
    assert 0.0 < parcel.film_height < D0
    assert parcel.pos[2] > WALL_Z


# ============================================================================
# Test 5: Splash and thermal breakup
# ============================================================================


def test_splash_keeps_film_and_ejects_small_droplets():
    grid, geom = _embedded_wall()
    fuel = _make_fuel()
    parcel = _impacting_parcel([2.0, 0.0, -20.0])
    pmass = fuel.parcel_mass(parcel.Y, D0)
    contact = _embedded_contact(grid, geom, parcel)

    splash, refl = impose_wall(parcel, fuel, grid, 420.0, contact, rng=parcel_rng(3, 1, 5))

    assert splash == SplashType.SPLASH
    assert parcel.is_alive and parcel.is_film
    assert 0.0 < refl.dia_refl < D0
    assert refl.Ns_refl > 0
    assert refl.Unorm > 0.0
    assert refl.dt_pp > 0.0
    np.testing.assert_array_equal(refl.norm, [0.0, 0.0, 1.0])
    assert refl.pos_refl[2] == pytest.approx(WALL_Z)

    film_mass = fuel.mixture_density(parcel.Y) * parcel.film_volume
    m_refl = math.pi / 6.0 * fuel.mixture_density(refl.Y) * refl.dia_refl**3
    ejected = refl.Ns_refl * m_refl
    assert film_mass + ejected <= pmass * (1.0 + 1.0e-12)
    assert film_mass + ejected > pmass - m_refl
    assert film_mass + ejected + refl.mass_lost == pytest.approx(pmass, rel=1.0e-10)
    assert 0.0 <= refl.mass_lost < m_refl


def test_splash_children_are_capped_and_conserve_ejected_mass():
    grid, geom = _embedded_wall()
    parcel = _impacting_parcel([2.0, 0.0, -20.0])
    contact = _embedded_contact(grid, geom, parcel)
    _, refl = impose_wall(parcel, _make_fuel(), grid, 420.0, contact, rng=parcel_rng(3, 1, 5))

    children = spawn_splash_droplets(refl, parcel_rng(3, 1, 5), 3, max_parcels=10, next_pid=100)

    assert len(children) == min(refl.Ns_refl, 10)
    assert [c.pid for c in children] == list(range(100, 100 + len(children)))
    assert sum(c.weight for c in children) == pytest.approx(refl.weight * refl.Ns_refl)
    for c in children:
        assert c.diameter == refl.dia_refl
        assert float(np.dot(c.vel, refl.norm)) > 0.0
        assert c.pos[2] > WALL_Z


def test_splash_droplets_reproducible_from_seed():
    def run(seed):
        grid, geom = _embedded_wall()
        parcel = _impacting_parcel([2.0, 0.0, -20.0])
        contact = _embedded_contact(grid, geom, parcel)
        _, refl = impose_wall(parcel, _make_fuel(), grid, 420.0, contact, rng=parcel_rng(seed, 4, 5))
        kids = spawn_splash_droplets(refl, parcel_rng(seed, 4, 5), 3, max_parcels=6, next_pid=0)
        return parcel.film_volume, np.array([k.pos for k in kids]), np.array([k.vel for k in kids])

    vol_a, pos_a, vel_a = run(42)
    vol_b, pos_b, vel_b = run(42)
    assert vol_a == vol_b
    np.testing.assert_array_equal(pos_a, pos_b)
    np.testing.assert_array_equal(vel_a, vel_b)

    _, pos_c, _ = run(43)
    assert not np.array_equal(pos_a, pos_c)


def test_thermal_breakup_removes_parent(caplog):
    grid, geom = _embedded_wall()
    fuel = _make_fuel()
    parcel = _impacting_parcel([2.0, 0.0, -20.0])
    pmass = fuel.parcel_mass(parcel.Y, D0)
    contact = _embedded_contact(grid, geom, parcel)

    with caplog.at_level(logging.DEBUG, logger="physics.wall"):
        splash, refl = impose_wall(parcel, fuel, grid, 600.0, contact, rng=parcel_rng(0, 0, 5))

    assert splash == SplashType.THERMAL_BREAKUP
    assert not parcel.is_alive
    m_refl = math.pi / 6.0 * fuel.mixture_density(refl.Y) * refl.dia_refl**3
    assert refl.Ns_refl == int(pmass / m_refl)
    assert refl.mass_lost == pytest.approx(pmass - refl.Ns_refl * m_refl, abs=1.0e-12 * pmass)
    assert 0.0 < refl.mass_lost < m_refl
    assert "below one droplet is dropped" in caplog.text
    assert refl.weight == 2.0
