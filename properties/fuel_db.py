"""
Liquid fuel property database and the per-run fuel property table.

This module handles loading spray_fuels.yaml and provides:
- Canonical name -> FuelSpeciesParams mapping
- Alias resolution (NC12H26 -> n-Dodecane -> params)
- Case-insensitive, whitespace/hyphen-insensitive matching
- build_fuel_table(): the read-only, unit-converted table used by the
  parcel integrator and the wall models

Usage:
    db = load_fuel_db("mechanism/spray_fuels.yaml")
    table = build_fuel_table(db, ["NC12H26"], gas_species, SprayUnits.si())
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

import numpy as np
import yaml

from core.types import FloatArray
from core.units import SprayUnits
from properties.saturation import PSAT_MODELS, WATSON_N, watson_latent

logger = logging.getLogger(__name__)

# SI -> CGS factors for database quantities
_SI_TO_CGS = {
    "W": 1.0e3,
    "rho": 1.0e-3,
    "cp": 1.0e4,
    "latent": 1.0e4,
    "mu": 10.0,
    "lambda": 1.0e5,
    "sigma": 1.0e3,
    "pressure": 10.0,
}


def _normalize_name(name: str) -> str:
    """
    Normalize species name for matching.

    Examples:
        "n-Dodecane" -> "ndodecane"
        "NC12H26" -> "nc12h26"
    """
    normalized = name.lower()
    normalized = re.sub(r"[-_\s]+", "", normalized)
    return normalized


@dataclass(slots=True)
class FuelSpeciesParams:
    """
    Liquid properties of one fuel species (SI units).

    - W: Molar mass [kg/mol]
    - rho: Liquid density [kg/m^3]
    - cp: Liquid heat capacity [J/(kg K)]
    - Tc, Tb: Critical and normal boiling temperature [K]
    - latent: Latent heat [J/kg] at latent_T [K]
    - mu: Liquid viscosity [Pa s]
    - lam: Liquid thermal conductivity [W/(m K)]
    - psat_model / psat_coef: saturation pressure form and Antoine (a, b, c, d[Pa])
    """

    canonical_name: str
    W: float
    rho: float
    cp: float
    Tc: float
    Tb: float
    latent: float
    latent_T: float
    mu: float
    lam: float
    psat_model: str = "clausius"
    psat_coef: Tuple[float, float, float, float] = (0.0, 0.0, 0.0, 0.0)
    watson_n: float = WATSON_N

    def __post_init__(self):
        for name in ("W", "rho", "cp", "latent", "mu", "lam"):
            if getattr(self, name) <= 0:
                raise ValueError(f"Invalid {name}={getattr(self, name)} for {self.canonical_name}")
        if self.Tb <= 0 or self.Tb >= self.Tc:
            raise ValueError(
                f"Invalid Tb={self.Tb} (must be 0 < Tb < Tc={self.Tc}) for {self.canonical_name}"
            )
        if self.latent_T <= 0 or self.latent_T >= self.Tc:
            raise ValueError(f"Invalid latent_T={self.latent_T} for {self.canonical_name}")
        if self.psat_model not in PSAT_MODELS:
            raise ValueError(
                f"Unknown psat model '{self.psat_model}' for {self.canonical_name}. Available: {PSAT_MODELS}"
            )
        if len(self.psat_coef) != 4:
            raise ValueError(f"psat_coef must have 4 entries for {self.canonical_name}")
        if self.psat_model == "antoine" and self.psat_coef[3] <= 0:
            raise ValueError(f"Antoine pressure factor d must be positive for {self.canonical_name}")
        if self.watson_n <= 0 or self.watson_n > 1.0:
            raise ValueError(f"Invalid watson_n={self.watson_n} for {self.canonical_name}")


class FuelDB:
    """
    Liquid fuel database.

    Stores canonical species data and provides alias-aware lookup.
    """

    def __init__(self):
        self._params: Dict[str, FuelSpeciesParams] = {}  # canonical -> params
        self._alias_map: Dict[str, str] = {}  # normalized alias -> canonical

    def add_species(self, params: FuelSpeciesParams, aliases: List[str]) -> None:
        """
        Add a species to the database.

        Raises:
            ValueError: If the canonical name already exists or an alias collides
        """
        canonical_name = params.canonical_name
        if canonical_name in self._params:
            raise ValueError(f"Duplicate canonical name: {canonical_name}")
        self._params[canonical_name] = params

        for name in [canonical_name] + list(aliases):
            normalized = _normalize_name(name)
            existing = self._alias_map.get(normalized)
            if existing is not None and existing != canonical_name:
                raise ValueError(
                    f"Alias collision: '{name}' (normalized: '{normalized}') "
                    f"already maps to '{existing}', cannot add to '{canonical_name}'"
                )
            self._alias_map[normalized] = canonical_name

    def get_params(self, name: str) -> FuelSpeciesParams:
        """
        Get properties for a species by name (canonical or alias).

        Raises:
            KeyError: If species not found in database
        """
        normalized = _normalize_name(name)
        if normalized not in self._alias_map:
            raise KeyError(
                f"Species '{name}' (normalized: '{normalized}') not found in database. "
                f"Available species: {list(self._params.keys())}"
            )
        return self._params[self._alias_map[normalized]]

    def has_species(self, name: str) -> bool:
        return _normalize_name(name) in self._alias_map

    def list_species(self) -> List[str]:
        return list(self._params.keys())

    def names_for(self, name: str) -> List[str]:
        """All registered names (normalized) that resolve to the same species as ``name``."""
        canonical = self.get_params(name).canonical_name
        return [alias for alias, c in self._alias_map.items() if c == canonical]


def load_fuel_db(yaml_path: str | Path) -> FuelDB:
    """
    Load the fuel database from a YAML file with a top-level 'species' mapping.

    Raises:
        FileNotFoundError: If YAML file doesn't exist
        ValueError: If YAML structure is invalid or parameters are missing
    """
    yaml_path = Path(yaml_path)
    if not yaml_path.exists():
        raise FileNotFoundError(f"Fuel database file not found: {yaml_path}")

    with open(yaml_path, "r") as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict) or "species" not in data:
        raise ValueError(f"Invalid YAML structure in {yaml_path}: expected top-level 'species' key")

    db = FuelDB()
    required_fields = ["W", "rho", "cp", "Tc", "Tb", "latent", "latent_T", "mu", "lambda"]
    for canonical_name, spec_data in data["species"].items():
        if not isinstance(spec_data, dict):
            raise ValueError(
                f"Invalid species data for '{canonical_name}': expected dict, got {type(spec_data)}"
            )
        for key in required_fields:
            if key not in spec_data:
                raise ValueError(
                    f"Missing required field '{key}' for species '{canonical_name}' in {yaml_path}"
                )
        aliases = spec_data.get("aliases", [])
        if not isinstance(aliases, list):
            raise ValueError(f"Invalid 'aliases' for '{canonical_name}': expected list, got {type(aliases)}")

        psat = spec_data.get("psat", {}) or {}
        coef = tuple(float(c) for c in psat.get("coef", (0.0, 0.0, 0.0, 0.0)))
        params = FuelSpeciesParams(
            canonical_name=canonical_name,
            W=float(spec_data["W"]),
            rho=float(spec_data["rho"]),
            cp=float(spec_data["cp"]),
            Tc=float(spec_data["Tc"]),
            Tb=float(spec_data["Tb"]),
            latent=float(spec_data["latent"]),
            latent_T=float(spec_data["latent_T"]),
            mu=float(spec_data["mu"]),
            lam=float(spec_data["lambda"]),
            psat_model=str(psat.get("model", "clausius")),
            psat_coef=coef,
            watson_n=float(spec_data.get("watson_n", WATSON_N)),
        )
        db.add_species(params, aliases)

    logger.debug("Loaded %d fuel species from %s", len(db.list_species()), yaml_path)
    return db


@dataclass(slots=True)
class FuelTable:
    """
    Read-only per-fuel property arrays in integrator units.

    Arrays have shape (Nf,); ``gas_index[spf]`` is the gas species index of
    fuel ``spf``. ``latent`` is the latent heat at the table reference
    temperature ``ref_T``. ``sigma < 0`` disables the splash model.
    """

    names: List[str]
    gas_index: np.ndarray
    W: FloatArray
    rho: FloatArray
    cp: FloatArray
    critT: FloatArray
    boilT: FloatArray
    latent: FloatArray
    mu: FloatArray
    lam: FloatArray
    psat_model: Tuple[str, ...]
    psat_coef: FloatArray
    watson_n: FloatArray
    ref_T: float = 298.15
    sigma: float = -1.0
    num_ppp: float = 1.0

    def __post_init__(self) -> None:
        n = len(self.names)
        if n == 0:
            raise ValueError("FuelTable requires at least one fuel species.")
        for name in ("gas_index", "W", "rho", "cp", "critT", "boilT", "latent", "mu", "lam", "watson_n"):
            if np.shape(getattr(self, name)) != (n,):
                raise ValueError(f"FuelTable.{name} must have shape ({n},)")
        if np.shape(self.psat_coef) != (n, 4):
            raise ValueError(f"FuelTable.psat_coef must have shape ({n}, 4)")
        if np.any(self.ref_T >= self.critT):
            raise ValueError(f"ref_T={self.ref_T} must be below every critical temperature.")

    @property
    def n_fuel(self) -> int:
        return len(self.names)

    def mixture_density(self, Y: FloatArray) -> float:
        """Liquid mixture density, 1/rho = sum_k Y_k/rho_k."""
        return 1.0 / float(np.dot(Y, 1.0 / self.rho))

    def parcel_mass(self, Y: FloatArray, diameter: float) -> float:
        return np.pi / 6.0 * self.mixture_density(Y) * diameter**3


def build_fuel_table(
    db: FuelDB,
    fuels: Sequence[str],
    gas_species: Sequence[str],
    units: SprayUnits,
    *,
    ref_T: float = 298.15,
    sigma: float = -1.0,
    num_ppp: float = 1.0,
) -> FuelTable:
    """
    Assemble the fuel table for the given fuels.

    Each fuel is matched to a gas species through the database aliases.
    ``sigma`` is given in SI [N/m]; a negative value disables splashing.

    Raises:
        KeyError: If a fuel is missing from the database or the gas mechanism
    """
    scale = _SI_TO_CGS if units.name == "cgs" else {}

    def s(key: str) -> float:
        return scale.get(key, 1.0)

    gas_lookup = {_normalize_name(g): k for k, g in enumerate(gas_species)}
    params = [db.get_params(f) for f in fuels]
    gas_index = []
    for fuel, p in zip(fuels, params):
        k = next((gas_lookup[a] for a in db.names_for(fuel) if a in gas_lookup), None)
        if k is None:
            raise KeyError(f"Fuel '{fuel}' ({p.canonical_name}) has no matching gas species in {list(gas_species)}")
        gas_index.append(k)

    latent_ref = [watson_latent(p.latent, p.latent_T, ref_T, p.Tc, p.watson_n) for p in params]
    coef = np.array([p.psat_coef for p in params], dtype=np.float64)
    coef[:, 3] *= s("pressure")

    table = FuelTable(
        names=[p.canonical_name for p in params],
        gas_index=np.asarray(gas_index, dtype=np.int64),
        W=np.array([p.W for p in params]) * s("W"),
        rho=np.array([p.rho for p in params]) * s("rho"),
        cp=np.array([p.cp for p in params]) * s("cp"),
        critT=np.array([p.Tc for p in params]),
        boilT=np.array([p.Tb for p in params]),
        latent=np.array(latent_ref) * s("latent"),
        mu=np.array([p.mu for p in params]) * s("mu"),
        lam=np.array([p.lam for p in params]) * s("lambda"),
        psat_model=tuple(p.psat_model for p in params),
        psat_coef=coef,
        watson_n=np.array([p.watson_n for p in params]),
        ref_T=float(ref_T),
        sigma=float(sigma) * s("sigma") if sigma > 0.0 else float(sigma),
        num_ppp=float(num_ppp),
    )
    logger.info("Fuel table: %s -> gas indices %s", table.names, list(table.gas_index))
    return table
