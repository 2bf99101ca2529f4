"""
Gas-phase property adapter backed by Cantera:
- Species enthalpies/heat capacities from the ideal-gas standard state.
- Mixture-averaged viscosity, conductivity and diffusion coefficients.

All values are SI (J/kg, J/(kg K), Pa s, W/(m K)); molar masses are kg/kmol.
Use with SprayUnits.si().
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

try:
    import cantera as ct
except Exception as e:  # pragma: no cover - environment dependent
    ct = None
    _ct_import_error = e
else:
    _ct_import_error = None

from core.types import FloatArray
from properties.adapter import TransportCoeffs

logger = logging.getLogger(__name__)


def _sanitize_mass_fractions(Y: np.ndarray, eps: float = 1.0e-30) -> np.ndarray:
    Y = np.maximum(np.asarray(Y, dtype=np.float64), 0.0)
    s = float(np.sum(Y))
    if s <= eps or not np.isfinite(s):
        raise ValueError(f"Cannot evaluate transport for mass fractions summing to {s}.")
    return Y / s


class CanteraPropertyAdapter:
    """PropertyAdapter implementation wrapping a ``cantera.Solution``."""

    def __init__(self, mech: str, *, phase: Optional[str] = None, P_ref: float = 101325.0) -> None:
        if ct is None:
            raise ImportError(f"Cantera is required for gas properties: {_ct_import_error}")
        self.gas = ct.Solution(mech, phase) if phase else ct.Solution(mech)
        self.species_names = tuple(self.gas.species_names)
        self.P_ref = float(P_ref)
        self._W = np.asarray(self.gas.molecular_weights, dtype=np.float64)
        logger.info("Cantera adapter: %s with %d species", mech, len(self.species_names))

    def molar_masses(self) -> FloatArray:
        return self._W.copy()

    def enthalpy(self, T: float) -> FloatArray:
        self.gas.TP = float(T), self.P_ref
        return self.gas.standard_enthalpies_RT * ct.gas_constant * float(T) / self._W

    def heat_capacity(self, T: float) -> FloatArray:
        self.gas.TP = float(T), self.P_ref
        return self.gas.standard_cp_R * ct.gas_constant / self._W

    def transport(self, T: float, rho: float, Y: FloatArray) -> TransportCoeffs:
        self.gas.TDY = float(T), float(rho), _sanitize_mass_fractions(Y)
        W_mix = float(self.gas.mean_molecular_weight)
        rhoD = float(rho) * np.asarray(self.gas.mix_diff_coeffs) * self._W / W_mix
        return TransportCoeffs(
            mu=float(self.gas.viscosity),
            xi=0.0,
            lam=float(self.gas.thermal_conductivity),
            rhoD=rhoD,
        )
