"""
Parcel transport integrator: drag, heat transfer and multi-component evaporation.

One call advances a parcel by half a flow step (the half-step rule: the caller
applies two kicks per flow step) using ``nsub`` explicit sub-steps. ``nsub``
is chosen on the first sub-step from evaporation, momentum and thermal
relaxation rates and is then frozen for the call.

Per sub-step:
1. Skin temperature by the one-third rule; species cp/h from the adapter.
2. Interface vapour mass fractions from the saturation pressure, skin
   composition renormalised to sum to one.
3. Transport at the skin state.
4. Re, Nu_0 (Reynolds/Prandtl correlation).
5. Sherwood number and evaporation rate per fuel (diffusion-limited or
   flash boiling above the pressure-adjusted boiling point).
6. Drag force and momentum/energy feedback.
7. Corrected Nusselt number (B_T from B_M) and net heat source.
8. Explicit update of velocity, temperature, species masses and diameter.

Sources accumulated on the GasPhaseSample are parcel-frame rates for one
physical droplet; see core/types.py for sign conventions.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np

from core.types import FloatArray, GasPhaseSample, Parcel, ParcelView, TransferFlags
from core.units import SprayUnits
from properties.adapter import PropertyAdapter
from properties.fuel_db import FuelTable
from properties.saturation import latent_at_boil, saturation_pressure
from solvers.iteration import fixed_point

logger = logging.getLogger(__name__)

# One-third rule weight for the skin state
RULE = 1.0 / 3.0
# Each call advances half of the flow step
DTMOD = 0.5
C_EPS = 1.0e-15
B_EPS = 1.0e-7
# Mass floor in grams, scaled by SprayUnits.mass_conv
MASS_EPS_G = 8.0e-18
NSUB_MAX = 100
HEAT_COEFF_MAX_ITER = 100
# Largest exponent passed to expm1 before B_T is treated as unbounded
EXP_MAX = 700.0
FLASH_TOL = 1.0e-4
FLASH_MAX_ITER = 100
FLASH_DH_MIN = 1.0e-5


@dataclass(slots=True)
class SprayStepResult:
    """Outcome of one integrator call."""

    nsub: int
    alive: bool
    mass_start: float
    mass_end: float


def drag_coefficient(Re: float) -> float:
    """Stokes drag below Re = 1, Putnam correction above; zero for Re <= 0."""
    if Re <= 0.0:
        return 0.0
    if Re > 1.0:
        return 24.0 / Re * (1.0 + Re ** (2.0 / 3.0) / 6.0)
    return 24.0 / Re


def calc_heat_coeff(ratio: float, B_M: float, Nu_0: float) -> float:
    """
    Corrected Nusselt factor Nu* ln(1 + B_T)/B_T.

    B_T solves B_T = (1 + B_M)^(ratio/Nu*) - 1 with
    Nu* = 2 + (Nu_0 - 2) B_T / (ln(1 + B_T)(1 + B_T)^0.7), by bounded
    fixed-point iteration. Without a mass-transfer potential, or when B_T
    leaves the floating-point range, the factor reduces to Nu_0.
    """
    ratio = float(ratio)
    B_M = float(B_M)
    Nu_0 = float(Nu_0)
    if B_M <= C_EPS:
        return Nu_0
    nu2 = Nu_0 - 2.0
    log_bm1 = math.log1p(B_M)

    def nu_num(B_T: float) -> float:
        if B_T <= C_EPS:
            return Nu_0
        return 2.0 + nu2 * B_T / (math.log1p(B_T) * (1.0 + B_T) ** 0.7)

    def step(B_T: float) -> float:
        expo = ratio / nu_num(B_T) * log_bm1
        return math.expm1(expo) if expo < EXP_MAX else math.inf

    B_T0 = step(0.0)
    if not math.isfinite(B_T0) or B_T0 <= C_EPS:
        return Nu_0
    res = fixed_point(step, B_T0, tol=B_EPS, max_iter=HEAT_COEFF_MAX_ITER, name="heat_coeff")
    B_T = float(res.value)
    if not math.isfinite(B_T) or B_T <= C_EPS:
        return Nu_0
    return nu_num(B_T) * math.log1p(B_T) / B_T


def calc_flash_alpha(delTb: float, units: SprayUnits) -> float:
    """Superheat heat-transfer coefficient (Adachi), converted from W/(m^2 K)."""
    if delTb > 25.0:
        alpha = 13800.0 * delTb**0.39
    elif delTb > 5.0:
        alpha = 27.0 * delTb**2.33
    else:
        alpha = 760.0 * delTb**0.26
    return alpha * 1.0e3 * units.mass_conv


def calc_flash_vapor_rate(dh: float, coeff: float, Gf: float) -> float:
    """
    Flash-boiling vaporisation rate G (Zuo, Gomes and Rutland).

    Solves G = coeff/(1 + Gf/G) ln(1 + (1 + Gf/G) dh) for the ratio Gf/G by
    fixed-point iteration with relative tolerance FLASH_TOL.
    """
    if dh <= FLASH_DH_MIN:
        return 0.0
    if Gf <= 0.0:
        return coeff * math.log1p(dh)

    def step(grat: float) -> float:
        G = coeff / (1.0 + grat) * math.log1p((1.0 + grat) * dh)
        return Gf / G

    res = fixed_point(step, 1.0e-5, tol=FLASH_TOL, max_iter=FLASH_MAX_ITER, relative=True, name="flash_rate")
    return Gf / float(res.value)


def calc_boil_temperature(fuel: FuelTable, gas: GasPhaseSample, units: SprayUnits) -> FloatArray:
    """Boiling temperature of each fuel at the gas pressure (Clausius-Clapeyron), capped at Tc."""
    cBoilT = np.empty(fuel.n_fuel)
    for spf in range(fuel.n_fuel):
        mw = gas.mw[fuel.gas_index[spf]]
        critT = fuel.critT[spf]
        boilT = fuel.boilT[spf]
        h_boil = latent_at_boil(fuel.latent[spf], fuel.ref_T, boilT, critT, fuel.watson_n[spf])
        denom = math.log(units.patm / gas.p) * units.ru / (h_boil * mw) + 1.0 / boilT
        cBoilT[spf] = critT if denom <= 0.0 else min(critT, 1.0 / denom)
    return cBoilT


def calc_vapor_mass_fractions(
    fuel: FuelTable,
    gas: GasPhaseSample,
    T_part: float,
    Y_part: FloatArray,
    h_part: FloatArray,
    h_ref: FloatArray,
    cBoilT: FloatArray,
    units: SprayUnits,
) -> tuple[FloatArray, FloatArray]:
    """
    Interface vapour mass fractions and latent heats (Raoult's law).

    x_v,i = x_l,i psat_i / p with the liquid mole fractions x_l from Y_part.
    The temperature used for psat is capped at the pressure-adjusted boiling
    point. Mass fractions are clipped to [0, 1 - C_EPS].

    Args:
        h_part, h_ref: Gas species enthalpies at T_part and at fuel.ref_T

    Returns:
        (Y_vapor, L_fuel), both shape (Nf,)
    """
    n = fuel.n_fuel
    Y_vapor = np.zeros(n)
    L_fuel = np.zeros(n)
    sum_xv = 0.0
    sum_mw_xv = 0.0
    nt = 0.0
    for spf in range(n):
        k = fuel.gas_index[spf]
        mw = gas.mw[k]
        T_cap = min(T_part, cBoilT[spf])
        latent = fuel.latent[spf] + (h_part[k] - h_ref[k]) - fuel.cp[spf] * (T_cap - fuel.ref_T)
        L_fuel[spf] = latent
        model = fuel.psat_model[spf]
        if model == "watson_integral":
            latent_psat = latent_at_boil(fuel.latent[spf], fuel.ref_T, fuel.boilT[spf], fuel.critT[spf], fuel.watson_n[spf])
        else:
            latent_psat = latent
        psat = saturation_pressure(
            model,
            fuel.psat_coef[spf],
            T_cap,
            latent=latent_psat,
            mw=mw,
            boilT=fuel.boilT[spf],
            critT=fuel.critT[spf],
            units=units,
            watson_n=fuel.watson_n[spf],
        )
        x_l = Y_part[spf] / mw
        x_vc = x_l * psat
        nt += x_l
        sum_xv += x_vc
        Y_vapor[spf] = mw * x_vc
        sum_mw_xv += Y_vapor[spf]
    totalmwx = gas.mw_mix * (nt * gas.p - sum_xv) + sum_mw_xv
    if totalmwx <= 0.0:
        # Vapour pressure exceeds the gas pressure: interface is pure vapour
        Y_vapor = np.where(Y_vapor > 0.0, 1.0 - C_EPS, 0.0)
    else:
        Y_vapor = np.clip(Y_vapor / totalmwx, 0.0, 1.0 - C_EPS)
    return Y_vapor, L_fuel


def _update_nsub(nsub: int, flow_dt: float, inv_tau: float) -> int:
    if not np.isfinite(inv_tau) or inv_tau <= 0.0:
        return nsub
    return min(max(nsub, int(flow_dt * inv_tau) + 1), NSUB_MAX)


def calculate_spray_source(
    flow_dt: float,
    gas: GasPhaseSample,
    parcel: Parcel | ParcelView,
    fuel: FuelTable,
    adapter: PropertyAdapter,
    flags: TransferFlags,
    units: SprayUnits,
) -> SprayStepResult:
    """
    Advance ``parcel`` by DTMOD * flow_dt and fill the source accumulators of ``gas``.

    The parcel is updated in place; it is killed (pid = -1) when its mass
    drops below the floor, in which case its remaining mass is returned to
    the gas through the mass/species sources.
    """
    gas.reset_sources()
    fidx = fuel.gas_index
    nf = fuel.n_fuel
    eng = units.eng_conv
    mass_eps = MASS_EPS_G * units.mass_conv

    vel_part = np.array(parcel.vel, dtype=np.float64)
    T_part = float(parcel.temperature)
    dia_part = float(parcel.diameter)
    Y_part = np.array(parcel.Y, dtype=np.float64)
    Y_start = Y_part.copy()

    rho_part = fuel.mixture_density(Y_part)
    pmass = math.pi / 6.0 * rho_part * dia_part**3
    startmass = pmass

    h_fluid = adapter.enthalpy(gas.T) * eng
    h_ref = adapter.enthalpy(fuel.ref_T) * eng
    h_part = adapter.enthalpy(T_part) * eng
    cBoilT = calc_boil_temperature(fuel, gas, units)
    sumYFuel = float(np.sum(gas.Y[fidx]))
    # Gas made only of fuel cannot take up more vapour
    evap_fuel = sumYFuel < 1.0
    non_fuel = np.ones(gas.Y.shape[0], dtype=bool)
    non_fuel[fidx] = False

    dt = flow_dt
    nsub = 1
    isub = 1
    alive = True
    while isub <= nsub:
        delT = max(gas.T - T_part, 0.0)
        T_skin = T_part + RULE * delT
        cp_n = adapter.heat_capacity(T_skin) * eng
        h_part = adapter.enthalpy(T_part) * eng
        cp_part = float(np.dot(Y_part, fuel.cp))

        mi_dot = np.zeros(nf)
        Sh_num = np.zeros(nf)
        B_M = np.zeros(nf)
        L_fuel = np.zeros(nf)
        if flags.mass_tran:
            Y_vapor, L_fuel = calc_vapor_mass_fractions(fuel, gas, T_part, Y_part, h_part, h_ref, cBoilT, units)
            B_M = np.maximum(C_EPS, (Y_vapor - gas.Y[fidx]) / (1.0 - Y_vapor))
            Y_skin = np.zeros_like(gas.Y)
            Y_skin[fidx] = Y_vapor + RULE * (gas.Y[fidx] - Y_vapor)
            rest_fluid = 1.0 - sumYFuel
            renorm = (1.0 - float(np.sum(Y_skin[fidx]))) / rest_fluid if rest_fluid > C_EPS else 0.0
            Y_skin[non_fuel] = gas.Y[non_fuel] * renorm
            mw_vap = 1.0 / float(np.dot(Y_skin, gas.invmw))
        else:
            Y_skin = gas.Y
            mw_vap = gas.mw_mix
        cp_skin = float(np.dot(Y_skin, cp_n))

        rho_skin = gas.rho
        trans = adapter.transport(T_skin, rho_skin / units.rho_conv, Y_skin)
        mu_skin = trans.mu * units.mu_conv
        lambda_skin = trans.lam * units.lambda_conv

        diff_vel = gas.vel - vel_part
        diff_vel_mag = float(np.linalg.norm(diff_vel))
        Reyn = rho_skin * diff_vel_mag * dia_part / mu_skin
        powR = max(Reyn**0.077, 1.0)
        Pr_skin = mu_skin * cp_skin / lambda_skin
        Nu_0 = 1.0 + powR * np.cbrt(1.0 + Reyn * Pr_skin)

        m_dot = 0.0
        rhoD = np.zeros(nf)
        evaporating = flags.mass_tran and evap_fuel
        if evaporating:
            rhoD = trans.rhoD[fidx] * mw_vap * gas.invmw[fidx] * units.rhod_conv
            hg_s = float(np.dot(gas.Y, h_part))
            hg_g = float(np.dot(gas.Y, h_fluid))
            for spf in range(nf):
                if Y_part[spf] <= 0.0:
                    continue
                Sc_skin = mu_skin / rhoD[spf]
                logB = math.log1p(B_M[spf])
                invFM = B_M[spf] / (logB * (1.0 + B_M[spf]) ** 0.7)
                Sh_0 = 1.0 + powR * np.cbrt(1.0 + Reyn * Sc_skin)
                Sh_num[spf] = 2.0 + (Sh_0 - 2.0) * invFM
                Tboil = cBoilT[spf]
                if T_part > Tboil:
                    delTb = max(0.0, T_part - Tboil)
                    alpha = calc_flash_alpha(delTb, units)
                    Gf = math.pi * dia_part * dia_part * alpha * delTb / L_fuel[spf]
                    dh = (hg_g - hg_s) / L_fuel[spf]
                    coeff = math.pi * lambda_skin / cp_skin * dia_part * Sh_num[spf] * logB
                    G = calc_flash_vapor_rate(dh, coeff, Gf)
                    mi_dot[spf] = -max(G + Gf, 0.0)
                else:
                    mi_dot[spf] = -max(math.pi * rhoD[spf] * dia_part * Sh_num[spf] * logB, 0.0)
                m_dot += mi_dot[spf]
            if isub == 1:
                nsub = _update_nsub(nsub, flow_dt, -m_dot / (3.0 * pmass))

        inv_pmass = 1.0 / pmass
        part_mom_src = np.zeros_like(vel_part)
        if flags.mom_tran:
            drag_force = 0.125 * rho_skin * drag_coefficient(Reyn) * math.pi * dia_part**2 * diff_vel_mag
            part_mom_src = drag_force * diff_vel
            gas.mom_src += part_mom_src
            if not flags.low_mach:
                gas.eng_src += float(np.dot(part_mom_src, vel_part))
            if isub == 1:
                nsub = _update_nsub(nsub, flow_dt, drag_force * inv_pmass)

        part_temp_src = 0.0
        if evaporating or flags.heat_tran:
            inv_pm_cp = inv_pmass / cp_part
            if evaporating:
                heat_c = np.zeros(nf)
                for spf in range(nf):
                    if Y_part[spf] <= 0.0:
                        continue
                    k = fidx[spf]
                    ratio = cp_n[k] * Sh_num[spf] * rhoD[spf] / lambda_skin
                    heat_c[spf] = calc_heat_coeff(ratio, B_M[spf], Nu_0)
                    part_temp_src += mi_dot[spf] * L_fuel[spf]
                active = Y_part > 0.0
                if m_dot < 0.0:
                    coeff_heat = float(np.dot(mi_dot, heat_c) / m_dot)
                else:
                    coeff_heat = float(np.mean(heat_c[active])) if np.any(active) else Nu_0
            else:
                coeff_heat = Nu_0
            conv_src = math.pi * lambda_skin * dia_part * delT * coeff_heat if flags.heat_tran else 0.0
            gas.eng_src += conv_src
            part_temp_src = (part_temp_src + conv_src) * inv_pm_cp
            if isub == 1 and delT > C_EPS:
                nsub = _update_nsub(nsub, flow_dt, conv_src * inv_pm_cp / delT)

        if isub == 1:
            dt = flow_dt / nsub
        part_dt = DTMOD * dt

        vel_part = vel_part + part_dt * part_mom_src * inv_pmass
        T_part += part_dt * part_temp_src
        new_mass = pmass + m_dot * part_dt
        if new_mass > mass_eps:
            Y_new = np.clip((Y_part * pmass + mi_dot * part_dt) / new_mass, 0.0, 1.0)
            Y_part = Y_new / float(np.sum(Y_new))
            rho_part = fuel.mixture_density(Y_part)
            pmass = new_mass
            dia_part = np.cbrt(6.0 * pmass / (math.pi * rho_part))
        else:
            pmass = 0.0
            alive = False
            parcel.kill()
            nsub = isub
            break
        isub += 1

    if nsub > 1:
        gas.eng_src /= nsub
        gas.mom_src /= nsub

    # Mass related sources last, in case species vanish entirely
    inv_dt = 1.0 / (DTMOD * flow_dt)
    mdot_total = (pmass - startmass) * inv_dt
    gas.mass_src = mdot_total
    gas.eng_src += 0.5 * float(np.dot(vel_part, vel_part)) * mdot_total
    if flags.mom_tran:
        gas.mom_src += vel_part * mdot_total
    Y_dot = (Y_part * pmass - Y_start * startmass) * inv_dt
    gas.Y_dot = Y_dot
    gas.eng_src += float(np.dot(Y_dot, h_part[fidx]))

    parcel.vel = vel_part
    parcel.Y = Y_part
    parcel.temperature = T_part
    parcel.diameter = float(dia_part)
    return SprayStepResult(nsub=nsub, alive=alive, mass_start=startmass, mass_end=pmass)
