"""
Saturation pressure correlations for liquid fuel species.

Three forms are available per species:
- "clausius": Clausius-Clapeyron about the normal boiling point,
  psat = patm * exp(L*W/R * (1/Tb - 1/T))
- "antoine": psat = d * 10^(a - b/(T + c)), with d converting to the
  integrator pressure unit
- "watson_integral": Clausius integral with a Watson latent heat,
  ln(psat/patm) = int_{Tb}^{T} L(tau) W / (R tau^2) dtau,
  L(tau) = Lb * ((Tc - tau)/(Tc - Tb))^n

All functions work in the integrator unit system (``SprayUnits``).
"""

from __future__ import annotations

import math

import numpy as np
from scipy.integrate import quad

from core.units import SprayUnits

PSAT_MODELS = ("clausius", "antoine", "watson_integral")

# Exponent in the Watson latent heat correlation
WATSON_N = 0.38


def watson_latent(L_ref: float, T_ref: float, T: float, Tc: float, n: float = WATSON_N) -> float:
    """
    Latent heat at T from a known value L_ref at T_ref.

    L(T) = L_ref * ((Tc - T)/(Tc - T_ref))^n, zero at and above Tc.
    """
    if T_ref >= Tc:
        raise ValueError(f"Reference temperature {T_ref} must be below Tc={Tc}.")
    if T >= Tc:
        return 0.0
    return L_ref * ((Tc - T) / (Tc - T_ref)) ** n


def _watson_integral_psat(
    T: float, latent_boil: float, mw: float, boilT: float, critT: float, n: float, units: SprayUnits
) -> float:
    T = min(T, critT)
    if abs(T - boilT) < 1.0e-10:
        return units.patm

    def integrand(tau: float) -> float:
        """L(tau) W / (R tau^2)"""
        return watson_latent(latent_boil, boilT, tau, critT, n) * mw / (units.ru * tau * tau)

    integral_value, _ = quad(integrand, boilT, T, limit=100, epsabs=1.0e-10, epsrel=1.0e-8)
    return units.patm * math.exp(integral_value)


def saturation_pressure(
    model: str,
    coef: np.ndarray,
    T: float,
    *,
    latent: float,
    mw: float,
    boilT: float,
    critT: float,
    units: SprayUnits,
    watson_n: float = WATSON_N,
) -> float:
    """
    Saturation pressure of one species at temperature T.

    Args:
        model: One of PSAT_MODELS
        coef: Antoine coefficients (a, b, c, d); unused by the other forms
        T: Liquid temperature
        latent: Latent heat at T (clausius) or at boilT (watson_integral)
        mw: Molar mass in integrator units
        boilT: Normal boiling temperature
        critT: Critical temperature
        units: Active unit system

    Returns:
        Saturation pressure in integrator units

    Raises:
        ValueError: If the model name is unknown
    """
    if model == "clausius":
        return units.patm * math.exp(latent * mw / units.ru * (1.0 / boilT - 1.0 / T))
    if model == "antoine":
        a, b, c, d = (float(x) for x in coef)
        return d * 10.0 ** (a - b / (T + c))
    if model == "watson_integral":
        return _watson_integral_psat(T, latent, mw, boilT, critT, watson_n, units)
    raise ValueError(f"Unknown saturation model: {model}. Available: {PSAT_MODELS}")


def latent_at_boil(ref_latent: float, ref_T: float, boilT: float, critT: float, n: float = WATSON_N) -> float:
    """Latent heat at the normal boiling point from the value at ref_T."""
    return ref_latent * ((critT - ref_T) / (critT - boilT)) ** (-n)
