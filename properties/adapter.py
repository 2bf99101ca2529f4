"""
Thermophysical property adapter interface used by the spray kernels.

The parcel integrator only consumes per-species enthalpies, heat capacities
and mixture transport coefficients. Two implementations exist:
- ConstantPropertyAdapter (here): ideal gas with constant species cp,
  power-law viscosity and constant Prandtl/Schmidt numbers.
- CanteraPropertyAdapter (properties/gas.py): Cantera mixture-averaged transport.

Conventions:
- molar_masses() returns g/mol (numerically kg/kmol); the integrator scales
  them by SprayUnits.mass_conv.
- enthalpy()/heat_capacity() return mass-specific values in adapter units.
- transport() returns rhoD_k = rho * D_k * W_k / W_mix (mixture-averaged),
  the form the integrator converts back to rho * D_k.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Sequence, Tuple

import numpy as np

from core.types import CaseProperties, FloatArray

logger = logging.getLogger(__name__)

# Reference temperature for the constant-cp enthalpy
T_STD = 298.15


@dataclass(slots=True)
class TransportCoeffs:
    """Mixture transport coefficients at one state (adapter units)."""

    mu: float
    xi: float
    lam: float
    rhoD: FloatArray


class PropertyAdapter(Protocol):
    species_names: Tuple[str, ...]

    def molar_masses(self) -> FloatArray: ...

    def enthalpy(self, T: float) -> FloatArray: ...

    def heat_capacity(self, T: float) -> FloatArray: ...

    def transport(self, T: float, rho: float, Y: FloatArray) -> TransportCoeffs: ...


class ConstantPropertyAdapter:
    """
    Ideal-gas mixture with constant species heat capacities.

    h_k(T) = h_ref_k + cp_k (T - 298.15)
    mu(T) = mu_ref (T/T_ref)^n,  lambda = mu cp_mix / Pr,  rho D_k = mu / Sc
    """

    def __init__(
        self,
        species_names: Sequence[str],
        W: Sequence[float],
        cp: Sequence[float],
        *,
        h_ref: Optional[Sequence[float]] = None,
        mu_ref: float = 1.8e-5,
        T_ref: float = 300.0,
        mu_exponent: float = 0.7,
        Pr: float = 0.7,
        Sc: float = 0.7,
    ) -> None:
        self.species_names = tuple(species_names)
        n = len(self.species_names)
        self._W = np.asarray(W, dtype=np.float64)
        self._cp = np.asarray(cp, dtype=np.float64)
        self._h_ref = np.zeros(n) if h_ref is None else np.asarray(h_ref, dtype=np.float64)
        if self._W.shape != (n,) or self._cp.shape != (n,) or self._h_ref.shape != (n,):
            raise ValueError(f"W, cp and h_ref must have one entry per species ({n}).")
        if np.any(self._W <= 0.0) or np.any(self._cp <= 0.0):
            raise ValueError("Molar masses and heat capacities must be positive.")
        if mu_ref <= 0.0 or T_ref <= 0.0 or Pr <= 0.0 or Sc <= 0.0:
            raise ValueError("mu_ref, T_ref, Pr and Sc must be positive.")
        self.mu_ref = float(mu_ref)
        self.T_ref = float(T_ref)
        self.mu_exponent = float(mu_exponent)
        self.Pr = float(Pr)
        self.Sc = float(Sc)

    def molar_masses(self) -> FloatArray:
        return self._W.copy()

    def enthalpy(self, T: float) -> FloatArray:
        return self._h_ref + self._cp * (float(T) - T_STD)

    def heat_capacity(self, T: float) -> FloatArray:
        return self._cp.copy()

    def transport(self, T: float, rho: float, Y: FloatArray) -> TransportCoeffs:
        Y = np.asarray(Y, dtype=np.float64)
        mu = self.mu_ref * (float(T) / self.T_ref) ** self.mu_exponent
        cp_mix = float(np.dot(Y, self._cp))
        lam = mu * cp_mix / self.Pr
        W_mix = 1.0 / float(np.dot(Y, 1.0 / self._W))
        rhoD = (mu / self.Sc) * self._W / W_mix
        return TransportCoeffs(mu=mu, xi=0.0, lam=lam, rhoD=rhoD)


def build_property_adapter(props: CaseProperties, mechanism_dir: Path, gas_mech: Optional[str] = None):
    """Construct the adapter selected by ``properties.backend``."""
    if props.backend == "constant":
        names = list(props.gas_species)
        # W given in kg/mol in the case file; adapters report g/mol
        return ConstantPropertyAdapter(
            names,
            [props.W[s] * 1.0e3 for s in names],
            [props.cp[s] for s in names],
            h_ref=[props.h_ref.get(s, 0.0) for s in names],
            mu_ref=props.mu_ref,
            T_ref=props.T_ref,
            mu_exponent=props.mu_exponent,
            Pr=props.Pr,
            Sc=props.Sc,
        )
    if props.backend == "cantera":
        from properties.gas import CanteraPropertyAdapter

        if not gas_mech:
            raise ValueError("paths.gas_mech is required for the cantera property backend.")
        mech = Path(gas_mech)
        if not mech.is_absolute() and (mechanism_dir / mech).exists():
            mech = mechanism_dir / mech
        return CanteraPropertyAdapter(str(mech), phase=props.phase)
    raise ValueError(f"Unknown property backend: {props.backend}")
