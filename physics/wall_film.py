"""
Evaporation and heat exchange of a wall-film parcel.

The film is a thin layer of area A = V/h on the wall. Species leave the film
surface by diffusion across the gap dy between the film surface and the
centre of the gas cell sampled for the film. The film surface temperature
follows from a steady conduction/evaporation balance between the gas at
T_i and the wall at T_wall; the film temperature is the mean of the surface
and wall temperatures. The film keeps its footprint, so its height scales
with its volume. The parcel is removed once the film height drops below
HT_TOL_CM.
"""

from __future__ import annotations

import logging
import math

import numpy as np

from core.types import GasPhaseSample, Parcel, ParcelView
from core.units import SprayUnits
from properties.adapter import PropertyAdapter
from properties.fuel_db import FuelTable
from physics.drag import DTMOD, calc_boil_temperature, calc_vapor_mass_fractions

logger = logging.getLogger(__name__)

# Film removal threshold [cm], scaled by SprayUnits.length_conv
HT_TOL_CM = 2.0e-6


def calculate_wall_film_source(
    flow_dt: float,
    gas: GasPhaseSample,
    parcel: Parcel | ParcelView,
    fuel: FuelTable,
    adapter: PropertyAdapter,
    T_wall: float,
    diff_cent: float,
    units: SprayUnits,
) -> bool:
    """
    Advance a film parcel by DTMOD * flow_dt and fill the source accumulators of ``gas``.

    Args:
        diff_cent: Distance from the wall to the sampled gas cell centre

    Returns:
        False if the film has vanished (the parcel is killed), True otherwise
    """
    gas.reset_sources()
    fidx = fuel.gas_index
    eng = units.eng_conv
    ht_tol = HT_TOL_CM * units.length_conv
    part_dt = DTMOD * flow_dt

    T_film = float(parcel.temperature)
    vol = float(parcel.film_volume)
    ht_film = float(parcel.film_height)
    Y_film = np.array(parcel.Y, dtype=np.float64)

    T_i = gas.T
    area_film = vol / ht_film
    cBoilT = calc_boil_temperature(fuel, gas, units)
    h_film = adapter.enthalpy(T_film) * eng
    h_ref = adapter.enthalpy(fuel.ref_T) * eng
    Y_vapor, L_fuel = calc_vapor_mass_fractions(fuel, gas, T_film, Y_film, h_film, h_ref, cBoilT, units)
    T_vapor = 0.5 * (T_film + T_i)

    rho_film = fuel.mixture_density(Y_film)
    lambda_film = float(np.dot(Y_film, fuel.lam))
    Y_skin = np.zeros_like(gas.Y)
    Y_skin[fidx] = 0.5 * (Y_vapor + gas.Y[fidx])
    non_fuel = np.ones(gas.Y.shape[0], dtype=bool)
    non_fuel[fidx] = False
    rest_fluid = 1.0 - float(np.sum(gas.Y[fidx]))
    renorm = (1.0 - float(np.sum(Y_skin[fidx]))) / rest_fluid if rest_fluid > 1.0e-15 else 0.0
    Y_skin[non_fuel] = gas.Y[non_fuel] * renorm
    mw_vap = 1.0 / float(np.dot(Y_skin, gas.invmw))
    pmass = vol * rho_film

    trans = adapter.transport(T_vapor, gas.rho / units.rho_conv, Y_skin)
    lambda_skin = trans.lam * units.lambda_conv
    rhoD = trans.rhoD[fidx] * mw_vap * gas.invmw[fidx] * units.rhod_conv

    # Distance from film surface to cell centre
    dy_i = max(diff_cent - ht_film, ht_tol)
    mi_dot = -area_film * rhoD / (1.0 - Y_vapor) * (Y_vapor - gas.Y[fidx]) / dy_i
    m_dot = float(np.sum(mi_dot))
    vanished = pmass + part_dt * m_dot <= 0.0
    if vanished:
        # Cannot evaporate more than the film holds
        mi_dot *= -pmass / (part_dt * m_dot)
        m_dot = -pmass / part_dt
    # Heat consumed by evaporation per unit film area
    q_evap = -float(np.dot(mi_dot, L_fuel)) / area_film
    gas.Y_dot = mi_dot.copy()
    gas.mass_src = m_dot
    gas.eng_src += float(np.dot(mi_dot, h_film[fidx]))

    fs1 = lambda_skin * ht_film
    fs2 = lambda_film * dy_i
    T_s = (fs1 * T_i + fs2 * T_wall - ht_film * dy_i * q_evap) / (fs1 + fs2)
    q_conv = lambda_skin * (T_i - T_s) / dy_i
    gas.eng_src += q_conv * area_film

    new_mass = pmass + part_dt * m_dot
    if vanished:
        logger.debug("Wall film parcel %d fully evaporated", parcel.pid)
        parcel.film_volume = 0.0
        parcel.film_height = 0.0
        parcel.kill()
        return False
    Y_new = np.clip((Y_film * pmass + mi_dot * part_dt) / new_mass, 0.0, 1.0)
    Y_new /= float(np.sum(Y_new))
    new_vol = new_mass / fuel.mixture_density(Y_new)
    new_ht = new_vol / area_film

    parcel.Y = Y_new
    parcel.film_volume = new_vol
    parcel.film_height = new_ht
    parcel.diameter = float(np.cbrt(6.0 * new_vol / math.pi))
    parcel.temperature = 0.5 * (T_s + T_wall)
    if new_ht < ht_tol:
        parcel.kill()
        return False
    return True
