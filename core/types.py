"""
Strongly typed containers for case configuration, mesh, parcels and gas samples.

Global shape and sign conventions:
- dim: spatial dimension (2 or 3); vectors have shape (dim,)
- Nf: number of liquid fuel species; Ns: number of gas species
- Parcel.Y.shape == (Nf,), sum(Y) == 1
- GasPhaseSample.Y.shape == (Ns,)
- Source accumulators on GasPhaseSample are in the parcel frame (what the
  parcel gains). The gas receives -weight times these values.
- Net mass rates are negative for evaporation (parcel loses mass).
- Parcel.pid == -1 marks a dead parcel; removal is done by the storage layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

FloatArray = NDArray[np.float64]
IntArray = NDArray[np.int64]

# Boundary classification per axis and side
BC_PERIODIC = 0
BC_REFLECTIVE = 1
BC_OUTFLOW = 2

# Cut-cell types
CELL_REGULAR = 0
CELL_CUT = 1
CELL_COVERED = 2


class SprayTrackingError(RuntimeError):
    """Raised when a parcel is found inside solid geometry with no usable surface data."""


class SplashType(IntEnum):
    """Outcome of a parcel/wall interaction."""

    REBOUND = 0
    DEPOSIT = 1
    SPLASH = 2
    THERMAL_BREAKUP = 3
    NO_IMPACT = 4
    WALL_FILM = 5


# -----------------------------------------------------------------------------
# Case configuration
# -----------------------------------------------------------------------------
@dataclass(slots=True)
class CaseMeta:
    """Metadata for the case block."""

    id: str
    title: str = ""
    notes: Optional[str] = None


@dataclass(slots=True)
class CasePaths:
    """Case-level paths (resolved by the loader).

    Attributes
    ----------
    output_root : Path
        Root directory for run outputs.
    case_dir : Path
        Directory of the current run (set by the driver).
    mechanism_dir : Path
        Directory containing the fuel database and gas mechanism files.
    fuel_db : str
        Fuel property database file name (relative to mechanism_dir).
    """

    output_root: Path
    case_dir: Path
    mechanism_dir: Path
    fuel_db: str = "spray_fuels.yaml"
    gas_mech: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.fuel_db:
            raise ValueError("fuel_db must be provided.")
        for name in ("output_root", "case_dir", "mechanism_dir"):
            v = getattr(self, name)
            if not isinstance(v, Path):
                raise TypeError(f"{name} must be pathlib.Path (loader must convert str -> Path).")


@dataclass(slots=True)
class CaseDomain:
    """Cartesian domain, resolution and boundary classification."""

    prob_lo: List[float]
    prob_hi: List[float]
    n_cell: List[int]
    bc_lo: List[int]
    bc_hi: List[int]

    def __post_init__(self) -> None:
        dim = len(self.prob_lo)
        if dim not in (2, 3):
            raise ValueError(f"Only 2-D and 3-D domains are supported (got dim={dim}).")
        for name in ("prob_hi", "n_cell", "bc_lo", "bc_hi"):
            if len(getattr(self, name)) != dim:
                raise ValueError(f"domain.{name} must have {dim} entries.")
        for lo, hi in zip(self.prob_lo, self.prob_hi):
            if not hi > lo:
                raise ValueError(f"domain extent must be positive (lo={lo}, hi={hi}).")
        for flags in (self.bc_lo, self.bc_hi):
            for f in flags:
                if f not in (BC_PERIODIC, BC_REFLECTIVE, BC_OUTFLOW):
                    raise ValueError(f"Unknown boundary flag {f}; use 0 periodic, 1 reflective, 2 outflow.")
        for d in range(dim):
            if (self.bc_lo[d] == BC_PERIODIC) != (self.bc_hi[d] == BC_PERIODIC):
                raise ValueError(f"Axis {d}: periodic boundaries must be periodic on both sides.")


@dataclass(slots=True)
class CaseWall:
    """Optional planar embedded wall and wall-interaction settings."""

    enabled: bool = False
    axis: int = 2
    position: float = 0.0
    solid_side: str = "lo"
    T_wall: float = 300.0
    dry_wall: bool = True
    max_splash_parcels: int = 20

    def __post_init__(self) -> None:
        if self.solid_side not in ("lo", "hi"):
            raise ValueError(f"wall.solid_side must be 'lo' or 'hi' (got {self.solid_side!r}).")
        if self.T_wall <= 0.0:
            raise ValueError("wall.T_wall must be positive.")
        if self.max_splash_parcels <= 0:
            raise ValueError("wall.max_splash_parcels must be positive.")


@dataclass(slots=True)
class CaseProperties:
    """Gas property adapter selection and constant-property parameters."""

    backend: str = "constant"
    gas_species: List[str] = field(default_factory=list)
    W: Dict[str, float] = field(default_factory=dict)
    cp: Dict[str, float] = field(default_factory=dict)
    h_ref: Dict[str, float] = field(default_factory=dict)
    mu_ref: float = 1.8e-5
    T_ref: float = 300.0
    mu_exponent: float = 0.7
    Pr: float = 0.7
    Sc: float = 0.7
    phase: Optional[str] = None

    def __post_init__(self) -> None:
        if self.backend not in ("constant", "cantera"):
            raise ValueError(f"properties.backend must be 'constant' or 'cantera' (got {self.backend!r}).")
        if self.backend == "constant":
            if not self.gas_species:
                raise ValueError("properties.gas_species must be provided for the constant backend.")
            missing = [s for s in self.gas_species if s not in self.W or s not in self.cp]
            if missing:
                raise ValueError(f"properties.W/cp missing entries for species {missing}.")


@dataclass(slots=True)
class CaseGas:
    """Initial (uniform) gas state."""

    T: float
    p: float
    vel: List[float]
    Y: Dict[str, float]

    def __post_init__(self) -> None:
        if self.T <= 0.0 or self.p <= 0.0:
            raise ValueError(f"gas.T and gas.p must be positive (T={self.T}, p={self.p}).")
        total = sum(self.Y.values())
        if abs(total - 1.0) > 1.0e-8:
            raise ValueError(f"gas.Y must sum to 1 (got {total}).")


@dataclass(slots=True)
class CaseSpray:
    """Fuel selection and injected parcel cloud."""

    fuels: List[str]
    Y0: List[float]
    n_parcels: int
    diameter: float
    T: float
    vel: List[float]
    box_lo: List[float]
    box_hi: List[float]
    num_ppp: float = 1.0
    sigma: float = -1.0
    ref_T: float = 298.15
    seed: int = 12345

    def __post_init__(self) -> None:
        if not self.fuels:
            raise ValueError("spray.fuels must list at least one fuel species.")
        if len(self.Y0) != len(self.fuels):
            raise ValueError("spray.Y0 must have one entry per fuel.")
        if abs(sum(self.Y0) - 1.0) > 1.0e-8:
            raise ValueError(f"spray.Y0 must sum to 1 (got {sum(self.Y0)}).")
        if self.n_parcels < 0:
            raise ValueError("spray.n_parcels must be non-negative.")
        if self.diameter <= 0.0 or self.T <= 0.0:
            raise ValueError("spray.diameter and spray.T must be positive.")
        if self.num_ppp <= 0.0:
            raise ValueError("spray.num_ppp must be positive.")


@dataclass(slots=True)
class CasePhysics:
    """Transfer flags and unit system."""

    mass_tran: bool = True
    mom_tran: bool = True
    heat_tran: bool = True
    low_mach: bool = True
    units: str = "si"


@dataclass(slots=True)
class CaseTime:
    """Time control settings."""

    dt: float
    n_steps: int

    def __post_init__(self) -> None:
        if self.dt <= 0.0:
            raise ValueError(f"time.dt must be positive (got {self.dt}).")
        if self.n_steps < 0:
            raise ValueError(f"time.n_steps must be non-negative (got {self.n_steps}).")


@dataclass(slots=True)
class CaseIO:
    """Output controls."""

    scalars_write_every: int = 1
    write_final_parcels: bool = True


@dataclass(slots=True)
class CaseConfig:
    """Top-level case configuration container."""

    case: CaseMeta
    paths: CasePaths
    domain: CaseDomain
    properties: CaseProperties
    gas: CaseGas
    spray: CaseSpray
    time: CaseTime
    physics: CasePhysics = field(default_factory=CasePhysics)
    wall: CaseWall = field(default_factory=CaseWall)
    io: CaseIO = field(default_factory=CaseIO)

    def __post_init__(self) -> None:
        dim = len(self.domain.prob_lo)
        for name, vec in (("gas.vel", self.gas.vel), ("spray.vel", self.spray.vel),
                          ("spray.box_lo", self.spray.box_lo), ("spray.box_hi", self.spray.box_hi)):
            if len(vec) != dim:
                raise ValueError(f"{name} must have {dim} entries.")
        if self.wall.enabled and (dim != 3 or not 0 <= self.wall.axis < dim):
            raise ValueError("wall.enabled requires a 3-D domain and a valid wall.axis.")


# -----------------------------------------------------------------------------
# Mesh containers
# -----------------------------------------------------------------------------
@dataclass(slots=True)
class CartesianGrid:
    """Uniform Cartesian mesh container (no generation logic).

    Fields
    ------
    plo, phi : (dim,) float64
        Lower/upper physical domain corners.
    n_cell : (dim,) int
        Cells per axis; cell i spans [plo + i*dx, plo + (i+1)*dx].
    dx : (dim,) float64
        Cell sizes.
    bc_lo, bc_hi : (dim,) int
        Boundary flags per axis (0 periodic, 1 reflective, 2 outflow).
    """

    plo: FloatArray
    phi: FloatArray
    n_cell: IntArray
    dx: FloatArray
    bc_lo: IntArray
    bc_hi: IntArray

    def __post_init__(self) -> None:
        dim = self.plo.shape[0]
        for name in ("phi", "n_cell", "dx", "bc_lo", "bc_hi"):
            if getattr(self, name).shape != (dim,):
                raise ValueError(f"{name} shape {getattr(self, name).shape} != ({dim},)")
        if np.any(self.n_cell <= 0):
            raise ValueError(f"n_cell must be positive (got {self.n_cell}).")

    @property
    def dim(self) -> int:
        return int(self.plo.shape[0])

    @property
    def dxi(self) -> FloatArray:
        return 1.0 / self.dx

    @property
    def cell_volume(self) -> float:
        return float(np.prod(self.dx))

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(int(n) for n in self.n_cell)

    def cell_center(self, ijk: Sequence[int]) -> FloatArray:
        return self.plo + (np.asarray(ijk, dtype=np.float64) + 0.5) * self.dx

    def cell_index(self, pos: FloatArray) -> IntArray:
        """Index of the cell containing pos (may lie outside the valid range)."""
        return np.floor((np.asarray(pos) - self.plo) * self.dxi).astype(np.int64)


@dataclass(slots=True)
class GasField:
    """Cell-centred gas state on a CartesianGrid.

    vel.shape == grid.shape + (dim,); T, rho: grid.shape;
    Y.shape == grid.shape + (Ns,); mw: (Ns,) molar masses in integrator units.
    umac (optional): face-centred velocities, umac[d].shape == grid.shape + e_d.
    """

    vel: FloatArray
    T: FloatArray
    rho: FloatArray
    Y: FloatArray
    mw: FloatArray
    umac: Optional[List[FloatArray]] = None

    def __post_init__(self) -> None:
        shape = self.T.shape
        if self.rho.shape != shape:
            raise ValueError(f"rho shape {self.rho.shape} != {shape}")
        if self.vel.shape != shape + (len(shape),):
            raise ValueError(f"vel shape {self.vel.shape} != {shape + (len(shape),)}")
        if self.Y.shape != shape + (self.mw.shape[0],):
            raise ValueError(f"Y shape {self.Y.shape} != {shape + (self.mw.shape[0],)}")
        if self.umac is not None:
            for d, u in enumerate(self.umac):
                expected = tuple(n + (1 if a == d else 0) for a, n in enumerate(shape))
                if u.shape != expected:
                    raise ValueError(f"umac[{d}] shape {u.shape} != {expected}")


@dataclass(slots=True)
class CutCellGeometry:
    """Embedded-boundary metadata per cell (3-D).

    Offsets (ccent, bcent) are in units of the cell size relative to the cell
    center, in [-0.5, 0.5]. ``bnorm`` is the unit boundary normal pointing from
    the fluid into the solid; the fluid-facing normal is ``-bnorm``.
    ``connected[i, j, k, a, b, c]`` states whether cell (i,j,k) is flow-connected
    to the neighbour at offset (a-1, b-1, c-1).
    """

    cell_type: NDArray[np.int8]
    vfrac: FloatArray
    ccent: FloatArray
    bcent: FloatArray
    bnorm: FloatArray
    connected: NDArray[np.bool_]

    def __post_init__(self) -> None:
        shape = self.cell_type.shape
        if len(shape) != 3:
            raise ValueError(f"cut-cell geometry must be 3-D (got shape {shape}).")
        if self.vfrac.shape != shape:
            raise ValueError(f"vfrac shape {self.vfrac.shape} != {shape}")
        for name in ("ccent", "bcent", "bnorm"):
            if getattr(self, name).shape != shape + (3,):
                raise ValueError(f"{name} shape {getattr(self, name).shape} != {shape + (3,)}")
        if self.connected.shape != shape + (3, 3, 3):
            raise ValueError(f"connected shape {self.connected.shape} != {shape + (3, 3, 3)}")

    def in_range(self, ijk: Sequence[int]) -> bool:
        return all(0 <= int(c) < n for c, n in zip(ijk, self.cell_type.shape))

    def is_regular(self, ijk: Sequence[int]) -> bool:
        return int(self.cell_type[tuple(ijk)]) == CELL_REGULAR

    def is_cut(self, ijk: Sequence[int]) -> bool:
        return int(self.cell_type[tuple(ijk)]) == CELL_CUT

    def is_covered(self, ijk: Sequence[int]) -> bool:
        return int(self.cell_type[tuple(ijk)]) == CELL_COVERED

    def is_connected(self, ijk: Sequence[int], offset: Sequence[int]) -> bool:
        a, b, c = (int(o) + 1 for o in offset)
        if not all(0 <= v <= 2 for v in (a, b, c)):
            return False
        return bool(self.connected[tuple(ijk) + (a, b, c)])


# -----------------------------------------------------------------------------
# Parcels
# -----------------------------------------------------------------------------
@dataclass(slots=True)
class Parcel:
    """One computational droplet (array-of-structs record).

    Film parcels keep ``temperature`` as the film temperature and store the
    film volume/height; ``wall_normal`` is the fluid-facing wall normal.
    """

    pos: FloatArray
    vel: FloatArray
    temperature: float
    diameter: float
    Y: FloatArray
    weight: float = 1.0
    pid: int = 0
    is_film: bool = False
    film_volume: float = 0.0
    film_height: float = 0.0
    wall_normal: Optional[FloatArray] = None

    def __post_init__(self) -> None:
        self.pos = np.array(self.pos, dtype=np.float64)
        self.vel = np.array(self.vel, dtype=np.float64)
        self.Y = np.array(self.Y, dtype=np.float64)
        if self.pos.shape != self.vel.shape:
            raise ValueError(f"pos shape {self.pos.shape} != vel shape {self.vel.shape}")
        if self.wall_normal is None:
            self.wall_normal = np.zeros_like(self.pos)

    @property
    def is_alive(self) -> bool:
        return self.pid >= 0

    def kill(self) -> None:
        self.pid = -1


class ParcelView:
    """Write-through view of one row of a ``ParcelArrays`` store.

    Exposes the same attributes as ``Parcel`` so the physics kernels accept
    either layout.
    """

    __slots__ = ("_store", "_i")

    def __init__(self, store: "ParcelArrays", i: int) -> None:
        self._store = store
        self._i = int(i)

    def _get(self, name: str):
        return getattr(self._store, name)[self._i]

    def _set(self, name: str, value) -> None:
        getattr(self._store, name)[self._i] = value

    pos = property(lambda self: self._get("pos"), lambda self, v: self._set("pos", v))
    vel = property(lambda self: self._get("vel"), lambda self, v: self._set("vel", v))
    Y = property(lambda self: self._get("Y"), lambda self, v: self._set("Y", v))
    wall_normal = property(lambda self: self._get("wall_normal"), lambda self, v: self._set("wall_normal", v))
    temperature = property(
        lambda self: float(self._get("temperature")), lambda self, v: self._set("temperature", v)
    )
    diameter = property(lambda self: float(self._get("diameter")), lambda self, v: self._set("diameter", v))
    weight = property(lambda self: float(self._get("weight")), lambda self, v: self._set("weight", v))
    pid = property(lambda self: int(self._get("pid")), lambda self, v: self._set("pid", v))
    is_film = property(lambda self: bool(self._get("is_film")), lambda self, v: self._set("is_film", v))
    film_volume = property(
        lambda self: float(self._get("film_volume")), lambda self, v: self._set("film_volume", v)
    )
    film_height = property(
        lambda self: float(self._get("film_height")), lambda self, v: self._set("film_height", v)
    )

    @property
    def is_alive(self) -> bool:
        return self.pid >= 0

    def kill(self) -> None:
        self.pid = -1


@dataclass(slots=True)
class ParcelArrays:
    """Struct-of-arrays parcel storage (N parcels, dim axes, Nf fuels)."""

    pos: FloatArray
    vel: FloatArray
    temperature: FloatArray
    diameter: FloatArray
    Y: FloatArray
    weight: FloatArray
    pid: IntArray
    is_film: NDArray[np.bool_]
    film_volume: FloatArray
    film_height: FloatArray
    wall_normal: FloatArray

    def __post_init__(self) -> None:
        n = self.pid.shape[0]
        for name in ("temperature", "diameter", "weight", "is_film", "film_volume", "film_height"):
            if getattr(self, name).shape != (n,):
                raise ValueError(f"{name} shape {getattr(self, name).shape} != ({n},)")
        for name in ("pos", "vel", "Y", "wall_normal"):
            if getattr(self, name).shape[0] != n:
                raise ValueError(f"{name} has {getattr(self, name).shape[0]} rows, expected {n}")

    def __len__(self) -> int:
        return int(self.pid.shape[0])

    def view(self, i: int) -> ParcelView:
        return ParcelView(self, i)

    def __iter__(self) -> Iterator[ParcelView]:
        for i in range(len(self)):
            yield ParcelView(self, i)

    @property
    def n_alive(self) -> int:
        return int(np.count_nonzero(self.pid >= 0))

    @classmethod
    def empty(cls, dim: int, n_fuel: int) -> "ParcelArrays":
        return cls(
            pos=np.zeros((0, dim)),
            vel=np.zeros((0, dim)),
            temperature=np.zeros(0),
            diameter=np.zeros(0),
            Y=np.zeros((0, n_fuel)),
            weight=np.zeros(0),
            pid=np.zeros(0, dtype=np.int64),
            is_film=np.zeros(0, dtype=bool),
            film_volume=np.zeros(0),
            film_height=np.zeros(0),
            wall_normal=np.zeros((0, dim)),
        )

    @classmethod
    def from_parcels(cls, parcels: Iterable[Parcel], dim: int, n_fuel: int) -> "ParcelArrays":
        store = cls.empty(dim, n_fuel)
        store.append(list(parcels))
        return store

    def append(self, parcels: List[Parcel]) -> None:
        if not parcels:
            return
        self.pos = np.vstack([self.pos] + [p.pos[None, :] for p in parcels])
        self.vel = np.vstack([self.vel] + [p.vel[None, :] for p in parcels])
        self.Y = np.vstack([self.Y] + [p.Y[None, :] for p in parcels])
        self.wall_normal = np.vstack([self.wall_normal] + [np.asarray(p.wall_normal)[None, :] for p in parcels])
        self.temperature = np.concatenate([self.temperature, [p.temperature for p in parcels]])
        self.diameter = np.concatenate([self.diameter, [p.diameter for p in parcels]])
        self.weight = np.concatenate([self.weight, [p.weight for p in parcels]])
        self.pid = np.concatenate([self.pid, np.array([p.pid for p in parcels], dtype=np.int64)])
        self.is_film = np.concatenate([self.is_film, np.array([p.is_film for p in parcels], dtype=bool)])
        self.film_volume = np.concatenate([self.film_volume, [p.film_volume for p in parcels]])
        self.film_height = np.concatenate([self.film_height, [p.film_height for p in parcels]])

    def compact(self) -> int:
        """Drop dead parcels in place; return number removed."""
        keep = self.pid >= 0
        removed = int(keep.size - np.count_nonzero(keep))
        if removed:
            for name in ParcelArrays.__dataclass_fields__:
                setattr(self, name, getattr(self, name)[keep])
        return removed


# -----------------------------------------------------------------------------
# Gas-phase sample and sources
# -----------------------------------------------------------------------------
@dataclass(slots=True)
class TransferFlags:
    """Which exchange processes are active."""

    mass_tran: bool = True
    mom_tran: bool = True
    heat_tran: bool = True
    low_mach: bool = True


@dataclass(slots=True)
class GasSourceContribution:
    """Gas-frame source rates from one parcel (per parcel, not per volume)."""

    mass: float
    mom: FloatArray
    eng: float
    species: FloatArray


@dataclass(slots=True)
class GasPhaseSample:
    """Interpolated gas state at a parcel plus parcel-frame source accumulators."""

    vel: FloatArray
    T: float
    rho: float
    p: float
    Y: FloatArray
    mw: FloatArray
    invmw: FloatArray
    mw_mix: float
    mom_src: FloatArray
    eng_src: float = 0.0
    mass_src: float = 0.0
    Y_dot: FloatArray = field(default_factory=lambda: np.zeros(0))

    @classmethod
    def from_state(
        cls,
        vel: FloatArray,
        T: float,
        rho: float,
        Y: FloatArray,
        mw: FloatArray,
        ru: float,
        n_fuel: int,
    ) -> "GasPhaseSample":
        """Build a sample from interpolated primitive values.

        Mass fractions are clipped to [0, 1]; the mixture molar mass and the
        ideal-gas pressure follow from the clipped composition.
        """
        Yc = np.clip(np.asarray(Y, dtype=np.float64), 0.0, 1.0)
        mw = np.asarray(mw, dtype=np.float64)
        invmw = 1.0 / mw
        mw_mix = 1.0 / float(np.dot(Yc, invmw))
        p = float(rho) * ru * float(T) / mw_mix
        v = np.array(vel, dtype=np.float64)
        return cls(
            vel=v,
            T=float(T),
            rho=float(rho),
            p=p,
            Y=Yc,
            mw=mw,
            invmw=invmw,
            mw_mix=mw_mix,
            mom_src=np.zeros_like(v),
            Y_dot=np.zeros(n_fuel),
        )

    def reset_sources(self) -> None:
        self.mom_src = np.zeros_like(self.vel)
        self.eng_src = 0.0
        self.mass_src = 0.0
        self.Y_dot = np.zeros_like(self.Y_dot)

    def gas_contribution(self, weight: float, fuel_indices: Sequence[int]) -> GasSourceContribution:
        """Convert accumulated parcel-frame rates into gas-frame rates for ``weight`` droplets."""
        species = np.zeros_like(self.Y)
        for spf, k in enumerate(fuel_indices):
            species[k] -= weight * self.Y_dot[spf]
        return GasSourceContribution(
            mass=-weight * self.mass_src,
            mom=-weight * self.mom_src,
            eng=-weight * self.eng_src,
            species=species,
        )


@dataclass(slots=True)
class SprayReflection:
    """Descriptor of a splash event used to spawn secondary droplets."""

    dia_refl: float = 0.0
    Unorm: float = 0.0
    beta_mean: float = 0.0
    beta_stdv: float = 0.0
    omega: float = 0.0
    expomega: float = 0.0
    norm: Optional[FloatArray] = None
    tan_beta: Optional[FloatArray] = None
    tan_psi: Optional[FloatArray] = None
    Ns_refl: int = 0
    mass_lost: float = 0.0
    dt_pp: float = 0.0
    pos_refl: Optional[FloatArray] = None
    temperature: float = 0.0
    Y: Optional[FloatArray] = None
    weight: float = 1.0
