"""
Output helpers:
- ScalarsWriter: per-step cloud scalars to CSV (flushed after every row).
- write_parcel_snapshot: parcel arrays to a compressed npz file.
- get_run_dir: output directory of the current run.
"""

from __future__ import annotations

import csv
import logging
import math
from pathlib import Path
from typing import Optional

import numpy as np

from core.types import CaseConfig, ParcelArrays
from physics.sources import SpraySourceField
from properties.fuel_db import FuelTable

logger = logging.getLogger(__name__)

SCALAR_FIELDS = [
    "step",
    "t",
    "n_parcels",
    "n_film",
    "liquid_mass",
    "film_mass",
    "mean_diameter",
    "mean_temperature",
    "src_mass",
    "src_eng",
    "n_splash",
    "n_killed",
    "nsub_max",
]


def get_run_dir(cfg: CaseConfig) -> Path:
    """Return the current run directory (created by the driver)."""
    case_dir = Path(cfg.paths.case_dir)
    case_dir.mkdir(parents=True, exist_ok=True)
    return case_dir


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def cloud_mass(parcels: ParcelArrays, fuel: FuelTable) -> tuple[float, float]:
    """Total (airborne, film) liquid mass including parcel weights."""
    alive = parcels.pid >= 0
    if not np.any(alive):
        return 0.0, 0.0
    rho = 1.0 / (parcels.Y[alive] @ (1.0 / fuel.rho))
    drop = np.pi / 6.0 * rho * parcels.diameter[alive] ** 3
    film = parcels.is_film[alive]
    vol_mass = rho * parcels.film_volume[alive]
    w = parcels.weight[alive]
    airborne = float(np.sum(w[~film] * drop[~film]))
    film_mass = float(np.sum(w[film] * vol_mass[film]))
    return airborne, film_mass


def _compute_scalar_row(
    *,
    step_id: int,
    t: float,
    parcels: ParcelArrays,
    fuel: FuelTable,
    sources: Optional[SpraySourceField],
    diag: dict,
) -> list[float]:
    alive = parcels.pid >= 0
    airborne = alive & ~parcels.is_film
    liquid_mass, film_mass = cloud_mass(parcels, fuel)
    mean_d = float(np.mean(parcels.diameter[airborne])) if np.any(airborne) else math.nan
    mean_T = float(np.mean(parcels.temperature[airborne])) if np.any(airborne) else math.nan
    totals = sources.totals() if sources is not None else {"mass": math.nan, "eng": math.nan}
    base = {
        "step": step_id,
        "t": t,
        "n_parcels": int(np.count_nonzero(alive)),
        "n_film": int(np.count_nonzero(alive & parcels.is_film)),
        "liquid_mass": liquid_mass,
        "film_mass": film_mass,
        "mean_diameter": mean_d,
        "mean_temperature": mean_T,
        "src_mass": totals["mass"],
        "src_eng": totals["eng"],
        "n_splash": diag.get("n_splash", 0),
        "n_killed": diag.get("n_killed", 0),
        "nsub_max": diag.get("nsub_max", 0),
    }
    return [float(base[name]) for name in SCALAR_FIELDS]


class ScalarsWriter:
    def __init__(self, cfg: CaseConfig, *, out_dir: Path | str | None = None) -> None:
        self.cfg = cfg
        self.fields = list(SCALAR_FIELDS)
        self.scalars_every = int(getattr(cfg.io, "scalars_write_every", 1) or 0)
        self.enabled = self.scalars_every > 0
        base = Path(out_dir) if out_dir is not None else get_run_dir(cfg)
        self.out_path = base / "scalars.csv"
        self._fh = None
        self._writer = None
        if self.enabled:
            self._open()

    def _open(self) -> None:
        _ensure_parent(self.out_path)
        self._fh = self.out_path.open("w", newline="")
        self._writer = csv.writer(self._fh)
        self._writer.writerow(self.fields)
        self._fh.flush()

    def maybe_write(
        self,
        *,
        step_id: int,
        t: float,
        parcels: ParcelArrays,
        fuel: FuelTable,
        sources: Optional[SpraySourceField] = None,
        diag: Optional[dict] = None,
    ) -> None:
        if not self.enabled:
            return
        if step_id % self.scalars_every != 0:
            return
        if self._writer is None or self._fh is None:
            self._open()
        row = _compute_scalar_row(
            step_id=step_id, t=t, parcels=parcels, fuel=fuel, sources=sources, diag=diag or {}
        )
        self._writer.writerow(row)
        self._fh.flush()

    def close(self) -> None:
        if self._fh is not None:
            try:
                self._fh.close()
            finally:
                self._fh = None
                self._writer = None


def write_parcel_snapshot(path: Path | str, parcels: ParcelArrays, *, step_id: int, t: float) -> Path:
    """Write all parcel arrays plus step/time to ``path`` (npz)."""
    out_path = Path(path)
    _ensure_parent(out_path)
    data = {name: np.asarray(getattr(parcels, name)) for name in ParcelArrays.__dataclass_fields__}
    np.savez_compressed(out_path, step_id=np.asarray(step_id), t=np.asarray(t), **data)
    logger.info("Wrote parcel snapshot (%d parcels): %s", len(parcels), out_path)
    return out_path
