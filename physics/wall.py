"""
Parcel/wall interaction: contact detection, impact regimes and splashing.

Regime map (Kuhnke 2004) on the impact parameter Kv = sqrt(We) Re^(1/4)
and the reduced wall temperature T* = sum_i Y_i T_wall / Tb_i:
- T* < 1.1: deposit below the critical Kv, splash above it.
- T* >= 1.1: rebound below the critical Kv, thermal breakup above it.

Deposited mass becomes a wall-film parcel (dome of height delta, converted
to an equivalent cylinder). Splash and thermal breakup describe secondary
droplets with a SprayReflection record; the caller spawns them with
create_splash_droplet.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from core.types import (
    CartesianGrid,
    CutCellGeometry,
    FloatArray,
    IntArray,
    Parcel,
    ParcelView,
    SplashType,
    SprayReflection,
    SprayTrackingError,
)
from properties.fuel_db import FuelTable

logger = logging.getLogger(__name__)

_TOL = float(np.finfo(np.float64).eps)
# Standard deviation of the ejection angle [deg]
BETA_STDEV_DEG = 4.0
# Secondary droplet size exponent ratio, ranges 1.45-2
NU32 = 1.45
# Parcels are placed slightly off the wall after splashing
WALL_OFFSET = 1.0e-4


@dataclass(slots=True)
class WallContact:
    """Wall plane seen by a parcel: reference cell, fluid-facing normal, boundary centroid offset."""

    bloc: IntArray
    normal: FloatArray
    bcent: FloatArray


def parcel_rng(seed: int, step: int, pid: int) -> np.random.Generator:
    """Independent, reproducible random stream per (seed, step, parcel id)."""
    return np.random.default_rng(np.random.SeedSequence(int(seed), spawn_key=(int(step), int(pid))))


def check_wall(
    bflags: IntArray,
    ijkc: IntArray,
    ijkc_prev: Optional[IntArray] = None,
    geom: Optional[CutCellGeometry] = None,
) -> Optional[WallContact]:
    """
    Locate the wall a parcel may have crossed.

    Domain boundaries come first: the first axis flagged outside a reflective
    boundary (flag -1 or +1) gives the contact. Otherwise the embedded
    boundary of the current cut cell is used, or of the previous cell when
    the parcel moved into a covered cell.

    Raises:
        SprayTrackingError: If the parcel is in a covered cell and the cell it
            came from carries no boundary data.
    """
    ijkc = np.asarray(ijkc, dtype=np.int64)
    dim = ijkc.shape[0]
    for d in range(dim):
        flag = int(bflags[d])
        if flag in (-1, 1):
            normal = np.zeros(dim)
            bcent = np.zeros(dim)
            normal[d] = -flag
            bcent[d] = -0.5 * flag
            return WallContact(bloc=ijkc.copy(), normal=normal, bcent=bcent)

    if geom is None or not geom.in_range(ijkc):
        return None
    cell = tuple(int(c) for c in ijkc)
    if geom.is_cut(cell):
        return WallContact(bloc=ijkc.copy(), normal=-geom.bnorm[cell].copy(), bcent=geom.bcent[cell].copy())
    if geom.is_covered(cell):
        if ijkc_prev is not None and geom.in_range(ijkc_prev):
            prev = tuple(int(c) for c in ijkc_prev)
            if geom.is_cut(prev):
                return WallContact(
                    bloc=np.asarray(ijkc_prev, dtype=np.int64).copy(),
                    normal=-geom.bnorm[prev].copy(),
                    bcent=geom.bcent[prev].copy(),
                )
        raise SprayTrackingError(f"Parcel in covered cell {cell} did not come from a cut cell (prev={ijkc_prev})")
    return None


def splash_criteria(Kv: float, T_star: float, alpha: float) -> SplashType:
    """Impact regime from Kv, reduced wall temperature and inclination angle [rad]."""
    Kcrit = 20.0 + 2.0 * alpha / math.pi * 20.0
    if T_star < 1.1:
        Kcrit = 130.0
        if T_star < 1.0:
            Kcrit = 54.0 + 76.0 * math.exp(13.0 * (T_star - 1.0))
        return SplashType.DEPOSIT if Kv < Kcrit else SplashType.SPLASH
    return SplashType.REBOUND if Kv < Kcrit else SplashType.THERMAL_BREAKUP


def find_tangents(testvec: FloatArray, norm: FloatArray) -> Tuple[FloatArray, FloatArray]:
    """
    Unit tangents (tan_beta, tan_psi) of the wall plane.

    In 3-D tan_psi = testvec x n and tan_beta = tan_psi x n. If testvec is
    parallel to n any orthogonal pair is returned. In 2-D tan_beta is n
    rotated by 90 degrees and tan_psi is zero.
    """
    norm = np.asarray(norm, dtype=np.float64)
    if norm.shape[0] == 2:
        return np.array([-norm[1], norm[0]]), np.zeros(2)
    tan_psi = np.cross(testvec, norm)
    if np.linalg.norm(tan_psi) <= _TOL:
        axis = np.zeros(3)
        axis[int(np.argmin(np.abs(norm)))] = 1.0
        tan_psi = np.cross(axis, norm)
    tan_psi = tan_psi / np.linalg.norm(tan_psi)
    tan_beta = np.cross(tan_psi, norm)
    tan_beta = tan_beta / np.linalg.norm(tan_beta)
    return tan_beta, tan_psi


def compute_angles(alpha: float, T_star: float, We: float, dry_wall: bool, dim: int, refl: SprayReflection) -> None:
    """
    Fill the ejection-angle statistics of ``refl``.

    The elevation angle beta [deg] is log-normal with the mean of Naber and
    Reitz (dry wall) or Kuhnke (wet wall) and a 4 degree deviation. The
    azimuth concentration ``omega`` is nonzero only for inclinations up to
    80 degrees in 3-D.
    """
    alphad = math.degrees(alpha)
    omega = 0.0
    if alphad <= 80.0 and dim == 3:
        omega = math.sqrt((1.0 + 8.872 * math.cos(1.152 * alpha)) / (1.0 - math.cos(alpha)))
    refl.omega = omega
    refl.expomega = 1.0 - math.exp(-omega)
    if dry_wall:
        beta_mean = 9.3 + 0.22 * alphad
    elif T_star > 1.1:
        beta_mean = 0.225 * alphad * math.exp((0.017 * alphad - 0.937) ** 2)
    else:
        beta_mean = 0.96 * alphad * math.exp(-4.5e-3 * We)
    term1 = math.log(beta_mean)
    term2 = math.log(beta_mean * beta_mean + BETA_STDEV_DEG * BETA_STDEV_DEG)
    refl.beta_mean = 2.0 * term1 - 0.5 * term2
    refl.beta_stdv = math.sqrt(max(-2.0 * term1 + term2, 0.0))


def film_dome_height(volume: float, delta: float) -> float:
    """
    Height of a deposited film of ``volume``.

    The deposit is a dome of height delta whose diameter follows from the
    volume; the height is then taken as that of a cylinder of the same
    diameter. A hemisphere is used when the dome cannot hold the volume.
    """
    arg = (6.0 * volume / math.pi - delta**3) / (3.0 * delta) if delta > 0.0 else -1.0
    if arg > 0.0:
        depot_dia = 2.0 * math.sqrt(arg)
    else:
        depot_dia = 2.0 * np.cbrt(3.0 * volume / (2.0 * math.pi))
    return 4.0 * volume / (math.pi * depot_dia * depot_dia)


def convert_to_film(parcel: Parcel | ParcelView, volume: float, height: float, normal: FloatArray) -> None:
    """Turn ``parcel`` into a stationary wall-film parcel."""
    parcel.vel = np.zeros_like(np.asarray(parcel.vel))
    parcel.is_film = True
    parcel.film_volume = float(volume)
    parcel.film_height = float(height)
    parcel.wall_normal = np.asarray(normal, dtype=np.float64)
    parcel.diameter = float(np.cbrt(6.0 * volume / math.pi))


def impose_wall(
    parcel: Parcel | ParcelView,
    fuel: FuelTable,
    grid: CartesianGrid,
    T_wall: float,
    contact: WallContact,
    *,
    is_active: bool = True,
    dry_wall: bool = True,
    rng: Optional[np.random.Generator] = None,
) -> Tuple[SplashType, Optional[SprayReflection]]:
    """
    Apply the wall interaction to a parcel that may have crossed ``contact``.

    Returns (splash_type, reflection). ``reflection`` is set for SPLASH and
    THERMAL_BREAKUP and describes the secondary droplets. The splash model
    runs only when ``is_active`` and the fuel surface tension is positive;
    otherwise the parcel is reflected specularly.
    """
    pos = np.array(parcel.pos, dtype=np.float64)
    vel = np.array(parcel.vel, dtype=np.float64)
    normal = np.asarray(contact.normal, dtype=np.float64)
    wall_point = (contact.bloc + 0.5 + contact.bcent) * grid.dx + grid.plo
    par_dot = float(np.dot(pos - wall_point, normal))
    if par_dot >= _TOL:
        return SplashType.NO_IMPACT, None

    splash = SplashType.REBOUND
    Vn = float(np.dot(vel, normal))
    Vpn = Vn * normal
    Vpt = vel - Vpn
    refl: Optional[SprayReflection] = None
    sigma = fuel.sigma
    splash_model = sigma > 0.0 and is_active

    if splash_model:
        Y = np.asarray(parcel.Y, dtype=np.float64)
        mu_part = float(np.dot(Y, fuel.mu))
        rho_part = fuel.mixture_density(Y)
        T_star = float(np.sum(T_wall * Y / fuel.boilT))
        dia_part = float(parcel.diameter)
        pmass = math.pi / 6.0 * rho_part * dia_part**3
        We = rho_part * dia_part * Vn * Vn / sigma
        Re_L = abs(Vn) * dia_part * rho_part / mu_part
        Kv = math.sqrt(We) * Re_L**0.25
        umag = float(np.linalg.norm(vel))
        alpha = math.asin(min(abs(Vn) / umag, 1.0)) if umag > 0.0 else 0.5 * math.pi
        splash = splash_criteria(Kv, T_star, alpha)
        # Boundary layer thickness, Pasandideh-Fard et al. 1996
        delta = 2.0 * dia_part / math.sqrt(Re_L) if Re_L > 0.0 else 0.0
        logger.debug("Wall impact: We=%.4g Re=%.4g Kv=%.4g T*=%.4g -> %s", We, Re_L, Kv, T_star, splash.name)

        if splash == SplashType.DEPOSIT:
            volume = pmass / rho_part
            convert_to_film(parcel, volume, film_dome_height(volume, delta), normal)
        elif splash in (SplashType.SPLASH, SplashType.THERMAL_BREAKUP):
            if rng is None:
                rng = np.random.default_rng()
            refl = SprayReflection(temperature=float(parcel.temperature), Y=Y.copy(), weight=float(parcel.weight))
            expon = 3.6 * (alpha / math.pi) ** 2
            if dry_wall:
                refl.dia_refl = dia_part * 3.3 * math.exp(expon) * We**-0.65
            else:
                refl.dia_refl = dia_part * 2.2 * math.exp(expon) * We**-0.36
            compute_angles(alpha, T_star, We, dry_wall, grid.dim, refl)
            splash_mass = pmass
            if splash == SplashType.SPLASH:
                # Splashed mass fraction, Kuhnke 2004
                B = 0.2 + 0.6 * float(rng.random())
                splash_mass *= min(1.0, max(0.0, (T_star - 0.8) / 0.3 * (1.0 - B) + B))
                depot_mass = pmass - splash_mass
                if depot_mass > 0.0:
                    volume = depot_mass / rho_part
                    convert_to_film(parcel, volume, film_dome_height(volume, delta), normal)
                else:
                    parcel.kill()
            else:
                parcel.kill()
            mass_refl = math.pi / 6.0 * rho_part * refl.dia_refl**3
            refl.Ns_refl = int(splash_mass / mass_refl)
            # Only whole secondary droplets are ejected; the remainder leaves the spray
            refl.mass_lost = splash_mass - refl.Ns_refl * mass_refl
            if refl.mass_lost > 0.0:
                logger.debug(
                    "Splash ejects %d droplets; %.3e of splashed mass below one droplet is dropped",
                    refl.Ns_refl,
                    refl.mass_lost,
                )
            We_out = refl.dia_refl / dia_part * (We * (1.0 - 0.85 * math.sin(alpha) ** 2) + 12.0) - 12.0 / NU32
            refl.Unorm = math.sqrt(sigma * max(We_out, 0.0) / (rho_part * refl.dia_refl))
            refl.dt_pp = par_dot / Vn if Vn != 0.0 else 0.0
            refl.tan_beta, refl.tan_psi = find_tangents(-vel, normal)

    if not splash_model or splash == SplashType.REBOUND:
        parcel.pos = pos - 2.0 * par_dot * normal
        parcel.vel = -Vpn + Vpt
    else:
        if refl is not None:
            refl.norm = normal.copy()
            refl.pos_refl = pos - par_dot * normal
        parcel.pos = pos - (1.0 + WALL_OFFSET) * par_dot * normal
    return splash, refl


def create_splash_droplet(
    refl: SprayReflection,
    rng: np.random.Generator,
    dim: int,
    pid: int = 0,
) -> Parcel:
    """
    Sample one secondary droplet from a splash descriptor.

    The elevation angle is drawn from the log-normal beta distribution; the
    azimuth is uniform for near-normal impacts and otherwise concentrated
    around the incoming path (modified Naber and Reitz 1988). The droplet is
    advanced by ``dt_pp`` from the impact point.
    """
    rand1 = float(rng.random())
    beta = math.exp(float(rng.normal(refl.beta_mean, refl.beta_stdv))) * math.pi / 180.0
    psi = rand1 * 2.0 * math.pi if dim == 3 else 0.0
    if refl.omega > 0.0:
        rand2 = math.copysign(1.0, 0.5 - float(rng.random()))
        psi = -rand2 / refl.omega * math.log(1.0 - rand1 * refl.expomega) * math.pi
    un = refl.Unorm * math.sin(beta)
    ut_beta = refl.Unorm * math.cos(beta) * math.cos(psi)
    ut_psi = refl.Unorm * math.cos(beta) * math.sin(psi)
    vel = un * refl.norm + ut_beta * refl.tan_beta
    if dim == 3:
        vel = vel + ut_psi * refl.tan_psi
    pos = refl.pos_refl + refl.dt_pp * vel
    return Parcel(
        pos=pos,
        vel=vel,
        temperature=refl.temperature,
        diameter=refl.dia_refl,
        Y=np.array(refl.Y, dtype=np.float64),
        weight=refl.weight,
        pid=int(pid),
    )


def spawn_splash_droplets(
    refl: SprayReflection,
    rng: np.random.Generator,
    dim: int,
    *,
    max_parcels: int,
    next_pid: int,
) -> List[Parcel]:
    """
    Secondary parcels for one splash event.

    Ns_refl droplets are represented by at most ``max_parcels`` parcels; the
    statistical weight is scaled so the ejected mass is preserved.
    """
    n_drops = int(refl.Ns_refl)
    if n_drops <= 0 or refl.dia_refl <= 0.0:
        return []
    n_parcels = min(n_drops, int(max_parcels))
    scale = n_drops / n_parcels
    children = []
    for k in range(n_parcels):
        child = create_splash_droplet(refl, rng, dim, pid=next_pid + k)
        child.weight = refl.weight * scale
        children.append(child)
    logger.debug("Splash: %d droplets of d=%.3e as %d parcels", n_drops, refl.dia_refl, n_parcels)
    return children
