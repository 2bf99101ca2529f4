"""
Unit system used by the spray integrator.

The parcel integrator works in one consistent unit system while the property
adapter may report values in another one. ``SprayUnits`` carries the universal
gas constant, the atmospheric pressure and the multiplicative factors that
bridge the two, so the same physics code runs in SI or CGS.

Conversion factors multiply an adapter value to obtain the integrator value:
- eng_conv: specific enthalpy / heat capacity
- rho_conv: density
- mass_conv: mass (used for absolute mass floors and flash-boiling coefficients)
- rhod_conv: rho*D (diffusion)
- mu_conv: dynamic viscosity
- lambda_conv: thermal conductivity
- length_conv: length per centimetre (absolute length floors are given in cm)
"""

from __future__ import annotations

from dataclasses import dataclass

# Universal gas constant [J/(mol K)]
R_UNIVERSAL_SI = 8.31446261815324
P_ATM_SI = 101325.0


@dataclass(slots=True, frozen=True)
class SprayUnits:
    """Gas constant, reference pressure and adapter->integrator conversion factors."""

    name: str = "si"
    ru: float = R_UNIVERSAL_SI
    patm: float = P_ATM_SI
    eng_conv: float = 1.0
    rho_conv: float = 1.0
    mass_conv: float = 1.0e-3  # floors are given in grams
    rhod_conv: float = 1.0
    mu_conv: float = 1.0
    lambda_conv: float = 1.0
    length_conv: float = 1.0e-2  # length floors are given in cm

    def __post_init__(self) -> None:
        factors = ("ru", "patm", "eng_conv", "rho_conv", "mass_conv", "rhod_conv", "mu_conv", "lambda_conv", "length_conv")
        for name in factors:
            v = getattr(self, name)
            if not v > 0.0:
                raise ValueError(f"SprayUnits.{name} must be positive (got {v!r}).")

    @classmethod
    def si(cls) -> "SprayUnits":
        return cls()

    @classmethod
    def cgs(cls) -> "SprayUnits":
        """CGS integrator with CGS property adapter (grams, cm, erg)."""
        return cls(
            name="cgs",
            ru=R_UNIVERSAL_SI * 1.0e7,
            patm=P_ATM_SI * 10.0,
            mass_conv=1.0,
            length_conv=1.0,
        )

    @classmethod
    def si_with_cgs_properties(cls) -> "SprayUnits":
        """SI integrator fed by an adapter reporting CGS properties."""
        return cls(
            name="si_cgs_props",
            eng_conv=1.0e-4,
            rho_conv=1.0e3,
            mass_conv=1.0e-3,
            rhod_conv=0.1,
            mu_conv=0.1,
            lambda_conv=1.0e-5,
        )


_PRESETS = {
    "si": SprayUnits.si,
    "cgs": SprayUnits.cgs,
    "si_cgs_props": SprayUnits.si_with_cgs_properties,
}


def units_from_name(name: str) -> SprayUnits:
    """Return a unit-system preset by name ("si", "cgs", "si_cgs_props")."""
    key = str(name).strip().lower()
    if key not in _PRESETS:
        raise ValueError(f"Unknown unit system '{name}'. Available: {sorted(_PRESETS)}")
    return _PRESETS[key]()
