"""
Eulerian source fields receiving parcel feedback.

Each parcel contribution (per-parcel rates in the gas frame) is spread over
the cells of its interpolation stencil with the stencil weights and divided
by the cell volume, so the fields hold volumetric rates.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from core.types import CartesianGrid, FloatArray, GasSourceContribution


@dataclass(slots=True)
class SpraySourceField:
    """Volumetric source rates: mass (grid.shape), mom (+dim), eng, species (+Ns)."""

    mass: FloatArray
    mom: FloatArray
    eng: FloatArray
    species: FloatArray
    cell_volume: float

    @classmethod
    def zeros(cls, grid: CartesianGrid, n_species: int) -> "SpraySourceField":
        shape = grid.shape
        return cls(
            mass=np.zeros(shape),
            mom=np.zeros(shape + (grid.dim,)),
            eng=np.zeros(shape),
            species=np.zeros(shape + (int(n_species),)),
            cell_volume=grid.cell_volume,
        )

    def reset(self) -> None:
        for arr in (self.mass, self.mom, self.eng, self.species):
            arr.fill(0.0)

    def deposit(self, stencil, contribution: GasSourceContribution, scale: float = 1.0) -> None:
        """Add ``scale`` times ``contribution`` over the cells of ``stencil``."""
        if stencil.outside or stencil.weights.size == 0:
            return
        w = stencil.weights * (float(scale) / self.cell_volume)
        idx = stencil.index_tuple()
        np.add.at(self.mass, idx, w * contribution.mass)
        np.add.at(self.eng, idx, w * contribution.eng)
        np.add.at(self.mom, idx, w[:, None] * contribution.mom[None, :])
        np.add.at(self.species, idx, w[:, None] * contribution.species[None, :])

    def totals(self) -> dict:
        """Volume-integrated rates."""
        v = self.cell_volume
        return {
            "mass": float(np.sum(self.mass) * v),
            "eng": float(np.sum(self.eng) * v),
            "mom": np.sum(self.mom.reshape(-1, self.mom.shape[-1]), axis=0) * v,
            "species": np.sum(self.species.reshape(-1, self.species.shape[-1]), axis=0) * v,
        }
