"""
Driver for spray parcel cases on a uniform gas field.

Responsibilities:
- Load CaseConfig from YAML.
- Build grid (optionally with a planar embedded wall), gas field, fuel table,
  property adapter and the injected parcel cloud.
- Advance parcels in time: half kick, drift, wall interaction, half kick.
  Film parcels evolve with the wall-film model.
- Deposit per-step gas sources, write scalars CSV and a final parcel snapshot.
"""

from __future__ import annotations

import argparse
import logging
import shutil
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np
import yaml

from core.grid import build_grid, planar_wall_geometry, uniform_field
from core.logging_utils import get_log_level_from_env, setup_logging
from core.types import (
    BC_PERIODIC,
    CaseConfig,
    CaseDomain,
    CaseGas,
    CaseIO,
    CaseMeta,
    CasePaths,
    CasePhysics,
    CaseProperties,
    CaseSpray,
    CaseTime,
    CaseWall,
    CartesianGrid,
    CutCellGeometry,
    GasField,
    Parcel,
    ParcelArrays,
    ParcelView,
    SplashType,
    TransferFlags,
)
from core.units import SprayUnits, units_from_name
from output.writers import ScalarsWriter, write_parcel_snapshot
from physics.drag import calculate_spray_source
from physics.interpolation import build_stencil, check_bounds, sample_gas_phase
from physics.sources import SpraySourceField
from physics.wall import check_wall, impose_wall, parcel_rng, spawn_splash_droplets
from physics.wall_film import calculate_wall_film_source
from properties.adapter import PropertyAdapter, build_property_adapter
from properties.fuel_db import FuelTable, build_fuel_table, load_fuel_db

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Config loading
# -----------------------------------------------------------------------------
def _resolve_path(base: Path, value: str | Path) -> Path:
    """Resolve a possibly relative path against base."""
    path = Path(value)
    return path if path.is_absolute() else (base / path).resolve()


def _read_yaml_text(cfg_file: Path) -> str:
    try:
        return cfg_file.read_text(encoding="utf-8-sig")
    except UnicodeDecodeError:
        return cfg_file.read_text()


def _floats(values) -> List[float]:
    return [float(v) for v in values]


def _load_case_config(cfg_path: str | Path) -> CaseConfig:
    """Load YAML file into CaseConfig with nested dataclasses."""
    cfg_file = Path(cfg_path).expanduser().resolve()
    if not cfg_file.exists():
        raise FileNotFoundError(f"Case file not found: {cfg_file}")
    raw = yaml.safe_load(_read_yaml_text(cfg_file)) or {}
    base = cfg_file.parent

    case_cfg = CaseMeta(**raw["case"])

    paths_raw = raw.get("paths", {}) or {}
    output_root = _resolve_path(base, paths_raw.get("output_root", "out"))
    case_dir = _resolve_path(base, paths_raw.get("case_dir", output_root / case_cfg.id))
    mechanism_dir = _resolve_path(base, paths_raw.get("mechanism_dir", base))
    paths_cfg = CasePaths(
        output_root=output_root,
        case_dir=case_dir,
        mechanism_dir=mechanism_dir,
        fuel_db=paths_raw.get("fuel_db", "spray_fuels.yaml"),
        gas_mech=paths_raw.get("gas_mech"),
    )

    dom_raw = raw["domain"]
    dim = len(dom_raw["prob_lo"])
    domain_cfg = CaseDomain(
        prob_lo=_floats(dom_raw["prob_lo"]),
        prob_hi=_floats(dom_raw["prob_hi"]),
        n_cell=[int(n) for n in dom_raw["n_cell"]],
        bc_lo=[int(b) for b in dom_raw.get("bc_lo", [0] * dim)],
        bc_hi=[int(b) for b in dom_raw.get("bc_hi", [0] * dim)],
    )

    props_raw = raw.get("properties", {}) or {}
    props_cfg = CaseProperties(
        backend=str(props_raw.get("backend", "constant")),
        gas_species=list(props_raw.get("gas_species", [])),
        W={k: float(v) for k, v in (props_raw.get("W", {}) or {}).items()},
        cp={k: float(v) for k, v in (props_raw.get("cp", {}) or {}).items()},
        h_ref={k: float(v) for k, v in (props_raw.get("h_ref", {}) or {}).items()},
        mu_ref=float(props_raw.get("mu_ref", 1.8e-5)),
        T_ref=float(props_raw.get("T_ref", 300.0)),
        mu_exponent=float(props_raw.get("mu_exponent", 0.7)),
        Pr=float(props_raw.get("Pr", 0.7)),
        Sc=float(props_raw.get("Sc", 0.7)),
        phase=props_raw.get("phase"),
    )

    gas_raw = raw["gas"]
    gas_cfg = CaseGas(
        T=float(gas_raw["T"]),
        p=float(gas_raw["p"]),
        vel=_floats(gas_raw.get("vel", [0.0] * dim)),
        Y={k: float(v) for k, v in gas_raw["Y"].items()},
    )

    spray_raw = raw["spray"]
    spray_cfg = CaseSpray(
        fuels=list(spray_raw["fuels"]),
        Y0=_floats(spray_raw.get("Y0", [1.0])),
        n_parcels=int(spray_raw.get("n_parcels", 1)),
        diameter=float(spray_raw["diameter"]),
        T=float(spray_raw["T"]),
        vel=_floats(spray_raw.get("vel", [0.0] * dim)),
        box_lo=_floats(spray_raw.get("box_lo", domain_cfg.prob_lo)),
        box_hi=_floats(spray_raw.get("box_hi", domain_cfg.prob_hi)),
        num_ppp=float(spray_raw.get("num_ppp", 1.0)),
        sigma=float(spray_raw.get("sigma", -1.0)),
        ref_T=float(spray_raw.get("ref_T", 298.15)),
        seed=int(spray_raw.get("seed", 12345)),
    )

    phys_raw = raw.get("physics", {}) or {}
    physics_cfg = CasePhysics(
        mass_tran=bool(phys_raw.get("mass_tran", True)),
        mom_tran=bool(phys_raw.get("mom_tran", True)),
        heat_tran=bool(phys_raw.get("heat_tran", True)),
        low_mach=bool(phys_raw.get("low_mach", True)),
        units=str(phys_raw.get("units", "si")),
    )

    wall_raw = raw.get("wall", {}) or {}
    wall_cfg = CaseWall(
        enabled=bool(wall_raw.get("enabled", False)),
        axis=int(wall_raw.get("axis", 2)),
        position=float(wall_raw.get("position", 0.0)),
        solid_side=str(wall_raw.get("solid_side", "lo")),
        T_wall=float(wall_raw.get("T_wall", 300.0)),
        dry_wall=bool(wall_raw.get("dry_wall", True)),
        max_splash_parcels=int(wall_raw.get("max_splash_parcels", 20)),
    )

    time_raw = raw["time"]
    time_cfg = CaseTime(dt=float(time_raw["dt"]), n_steps=int(time_raw["n_steps"]))

    io_raw = raw.get("io", {}) or {}
    io_cfg = CaseIO(
        scalars_write_every=int(io_raw.get("scalars_write_every", 1)),
        write_final_parcels=bool(io_raw.get("write_final_parcels", True)),
    )

    return CaseConfig(
        case=case_cfg,
        paths=paths_cfg,
        domain=domain_cfg,
        properties=props_cfg,
        gas=gas_cfg,
        spray=spray_cfg,
        time=time_cfg,
        physics=physics_cfg,
        wall=wall_cfg,
        io=io_cfg,
    )


def _prepare_run_dir(cfg: CaseConfig, cfg_path: str | Path) -> Path:
    """Create per-run output directory and copy cfg yaml into it."""
    out_root = Path(cfg.paths.output_root)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    run_dir = out_root / cfg.case.id / stamp
    run_dir.mkdir(parents=True, exist_ok=True)

    cfg.paths.case_dir = run_dir

    try:
        shutil.copy2(cfg_path, run_dir / "config.yaml")
    except OSError as exc:  # pragma: no cover - best-effort copy
        logger.warning("Failed to copy cfg to run dir: %s", exc)
    return run_dir


# -----------------------------------------------------------------------------
# Case assembly
# -----------------------------------------------------------------------------
@dataclass(slots=True)
class SprayCase:
    """Everything the time loop needs."""

    cfg: CaseConfig
    grid: CartesianGrid
    geom: Optional[CutCellGeometry]
    gas_field: GasField
    fuel: FuelTable
    adapter: PropertyAdapter
    units: SprayUnits
    flags: TransferFlags
    parcels: ParcelArrays
    next_pid: int = 0
    t: float = 0.0
    diag: dict = field(default_factory=dict)


def _build_gas_field(cfg: CaseConfig, grid: CartesianGrid, adapter: PropertyAdapter, units: SprayUnits) -> GasField:
    names = list(adapter.species_names)
    missing = [s for s in cfg.gas.Y if s not in names]
    if missing:
        raise KeyError(f"gas.Y species {missing} not in property species {names}")
    Y = np.array([cfg.gas.Y.get(s, 0.0) for s in names])
    mw = adapter.molar_masses() * units.mass_conv
    mw_mix = 1.0 / float(np.dot(Y, 1.0 / mw))
    rho = cfg.gas.p * mw_mix / (units.ru * cfg.gas.T)
    return GasField(
        vel=uniform_field(grid, cfg.gas.vel),
        T=uniform_field(grid, cfg.gas.T),
        rho=uniform_field(grid, rho),
        Y=uniform_field(grid, Y),
        mw=mw,
    )


def _inject_parcels(cfg: CaseConfig, fuel: FuelTable, dim: int) -> ParcelArrays:
    """Uniformly distributed monodisperse cloud inside the injection box."""
    rng = np.random.default_rng(cfg.spray.seed)
    lo = np.asarray(cfg.spray.box_lo)
    hi = np.asarray(cfg.spray.box_hi)
    parcels = [
        Parcel(
            pos=lo + (hi - lo) * rng.random(dim),
            vel=np.asarray(cfg.spray.vel),
            temperature=cfg.spray.T,
            diameter=cfg.spray.diameter,
            Y=np.asarray(cfg.spray.Y0),
            weight=fuel.num_ppp,
            pid=i,
        )
        for i in range(cfg.spray.n_parcels)
    ]
    return ParcelArrays.from_parcels(parcels, dim, fuel.n_fuel)


def build_case(cfg: CaseConfig) -> SprayCase:
    """Assemble grid, gas field, properties and the initial parcel cloud."""
    units = units_from_name(cfg.physics.units)
    grid = build_grid(cfg.domain)
    geom = None
    if cfg.wall.enabled:
        geom = planar_wall_geometry(
            grid, axis=cfg.wall.axis, position=cfg.wall.position, solid_side=cfg.wall.solid_side
        )
    adapter = build_property_adapter(cfg.properties, cfg.paths.mechanism_dir, cfg.paths.gas_mech)
    db_path = _resolve_path(cfg.paths.mechanism_dir, cfg.paths.fuel_db)
    fuel = build_fuel_table(
        load_fuel_db(db_path),
        cfg.spray.fuels,
        adapter.species_names,
        units,
        ref_T=cfg.spray.ref_T,
        sigma=cfg.spray.sigma,
        num_ppp=cfg.spray.num_ppp,
    )
    gas_field = _build_gas_field(cfg, grid, adapter, units)
    parcels = _inject_parcels(cfg, fuel, grid.dim)
    flags = TransferFlags(
        mass_tran=cfg.physics.mass_tran,
        mom_tran=cfg.physics.mom_tran,
        heat_tran=cfg.physics.heat_tran,
        low_mach=cfg.physics.low_mach,
    )
    logger.info(
        "Built case '%s': dim=%d cells=%s parcels=%d fuels=%s units=%s wall=%s",
        cfg.case.id,
        grid.dim,
        list(grid.n_cell),
        len(parcels),
        fuel.names,
        units.name,
        cfg.wall.enabled,
    )
    return SprayCase(
        cfg=cfg,
        grid=grid,
        geom=geom,
        gas_field=gas_field,
        fuel=fuel,
        adapter=adapter,
        units=units,
        flags=flags,
        parcels=parcels,
        next_pid=len(parcels),
    )


# -----------------------------------------------------------------------------
# Time stepping
# -----------------------------------------------------------------------------
def _wrap_periodic(pos: np.ndarray, grid: CartesianGrid) -> np.ndarray:
    out = np.array(pos, dtype=np.float64)
    for d in range(grid.dim):
        if int(grid.bc_lo[d]) == BC_PERIODIC:
            length = grid.phi[d] - grid.plo[d]
            out[d] = grid.plo[d] + np.mod(out[d] - grid.plo[d], length)
    return out


def _film_gap(p: ParcelView, case: SprayCase) -> float:
    """Distance from the wall to the centroid of the gas cell sampled for a film parcel."""
    grid = case.grid
    normal = np.asarray(p.wall_normal)
    ijk = np.clip(grid.cell_index(p.pos), 0, grid.n_cell - 1)
    cent = grid.cell_center(ijk)
    if case.geom is not None:
        cent = cent + case.geom.ccent[tuple(ijk)] * grid.dx
    gap = float(np.dot(cent - np.asarray(p.pos), normal))
    if gap <= 2.0 * p.film_height:
        gap += float(np.dot(np.abs(normal), grid.dx))
    return gap


def _kick(case: SprayCase, p: ParcelView, dt: float, sources: SpraySourceField) -> bool:
    """Half-step update at the current position; returns False if the parcel died or left."""
    stencil, gas = sample_gas_phase(p.pos, case.grid, case.gas_field, case.units, case.fuel.n_fuel, case.geom)
    if gas is None:
        p.kill()
        return False
    if p.is_film:
        alive = calculate_wall_film_source(
            dt, gas, p, case.fuel, case.adapter, case.cfg.wall.T_wall, _film_gap(p, case), case.units
        )
    else:
        res = calculate_spray_source(dt, gas, p, case.fuel, case.adapter, case.flags, case.units)
        case.diag["nsub_max"] = max(case.diag.get("nsub_max", 0), res.nsub)
        alive = res.alive
    sources.deposit(stencil, gas.gas_contribution(p.weight, case.fuel.gas_index), 0.5)
    return alive


def _resolve_walls(case: SprayCase, p: ParcelView, ijkc_prev: np.ndarray, step_id: int) -> List[Parcel]:
    """Apply boundary and embedded-wall interactions after the drift."""
    grid = case.grid
    children: List[Parcel] = []
    for _ in range(grid.dim + 1):
        outside, _, dflags = check_bounds(p.pos, grid)
        if outside:
            p.kill()
            return children
        contact = check_wall(dflags, grid.cell_index(p.pos), ijkc_prev, case.geom)
        if contact is None:
            break
        rng = parcel_rng(case.cfg.spray.seed, step_id, p.pid)
        splash, refl = impose_wall(
            p,
            case.fuel,
            grid,
            case.cfg.wall.T_wall,
            contact,
            is_active=case.cfg.wall.enabled,
            dry_wall=case.cfg.wall.dry_wall,
            rng=rng,
        )
        if splash == SplashType.NO_IMPACT:
            break
        if refl is not None:
            new = spawn_splash_droplets(
                refl, rng, grid.dim, max_parcels=case.cfg.wall.max_splash_parcels, next_pid=case.next_pid
            )
            case.next_pid += len(new)
            children.extend(new)
            case.diag["n_splash"] = case.diag.get("n_splash", 0) + 1
        if splash != SplashType.REBOUND:
            break
    return children


def advance_one_step(case: SprayCase, dt: float, step_id: int, sources: SpraySourceField) -> None:
    """Advance every parcel by one flow step and accumulate gas sources."""
    sources.reset()
    case.diag = {"n_splash": 0, "n_killed": 0, "nsub_max": 0}
    children: List[Parcel] = []
    for p in case.parcels:
        if not p.is_alive:
            continue
        if p.is_film:
            if _kick(case, p, dt, sources):
                _kick(case, p, dt, sources)
            continue
        if not _kick(case, p, dt, sources):
            continue
        ijkc_prev = case.grid.cell_index(p.pos)
        p.pos = _wrap_periodic(np.asarray(p.pos) + dt * np.asarray(p.vel), case.grid)
        children.extend(_resolve_walls(case, p, ijkc_prev, step_id))
        if not p.is_alive:
            continue
        _kick(case, p, dt, sources)
    for child in children:
        stencil = build_stencil(child.pos, case.grid, case.geom)
        if stencil.outside:
            child.kill()
    case.parcels.append([c for c in children if c.is_alive])
    case.diag["n_killed"] = case.parcels.compact()
    case.t += dt


def _log_step(case: SprayCase, step_id: int) -> None:
    """Emit one-line step summary."""
    pa = case.parcels
    airborne = ~pa.is_film
    logger.info(
        "step=%d t=%.6e parcels=%d film=%d d_mean=%.4e T_mean=%.3f nsub_max=%d splash=%d removed=%d",
        step_id,
        case.t,
        len(pa),
        int(np.count_nonzero(pa.is_film)),
        float(np.mean(pa.diameter[airborne])) if np.any(airborne) else float("nan"),
        float(np.mean(pa.temperature[airborne])) if np.any(airborne) else float("nan"),
        case.diag.get("nsub_max", 0),
        case.diag.get("n_splash", 0),
        case.diag.get("n_killed", 0),
    )


def run_case(
    cfg_path: str,
    *,
    dry_run: bool = False,
    max_steps: Optional[int] = None,
    log_level: int | str = logging.INFO,
) -> int:
    """Run one spray case. Return 0 on success, 2 on config errors, 99 on unhandled failure."""
    cfg_path = str(cfg_path)
    scalars_writer = None
    log_handler = None
    try:
        level = get_log_level_from_env(default=log_level)
        setup_logging(level=level)

        try:
            cfg = _load_case_config(cfg_path)
            case = build_case(cfg)
        except (ValueError, KeyError, FileNotFoundError) as exc:
            logger.error("Invalid case %s: %s", cfg_path, exc)
            return 2

        if dry_run:
            logger.info("Dry run: case built, skipping time stepping.")
            return 0

        run_dir = _prepare_run_dir(cfg, cfg_path)
        log_handler = setup_logging(level=level, log_file=run_dir / "run.log")
        logger.info("Run directory: %s", run_dir)
        sources = SpraySourceField.zeros(case.grid, case.gas_field.Y.shape[-1])
        scalars_writer = ScalarsWriter(cfg)
        scalars_writer.maybe_write(step_id=0, t=case.t, parcels=case.parcels, fuel=case.fuel)

        n_steps = cfg.time.n_steps if max_steps is None else min(cfg.time.n_steps, int(max_steps))
        step_id = 0
        for step_id in range(1, n_steps + 1):
            advance_one_step(case, cfg.time.dt, step_id, sources)
            _log_step(case, step_id)
            scalars_writer.maybe_write(
                step_id=step_id, t=case.t, parcels=case.parcels, fuel=case.fuel, sources=sources, diag=case.diag
            )
            if len(case.parcels) == 0:
                logger.info("All parcels removed at step %d.", step_id)
                break

        if cfg.io.write_final_parcels:
            write_parcel_snapshot(run_dir / "parcels_final.npz", case.parcels, step_id=step_id, t=case.t)
        logger.info("Completed run: t=%.6e after %d steps.", case.t, step_id)
        return 0
    except Exception:
        tb = traceback.format_exc()
        logger.error("Unhandled exception:\n%s", tb)
        return 99
    finally:
        if scalars_writer is not None:
            scalars_writer.close()
        if log_handler is not None:
            logging.getLogger().removeHandler(log_handler)
            log_handler.close()


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a spray parcel case.")
    parser.add_argument("case_yaml", help="Path to case YAML file.")
    parser.add_argument(
        "--max_steps",
        type=int,
        default=None,
        help="Stop after this many steps (default: time.n_steps from YAML).",
    )
    parser.add_argument(
        "--dry_run",
        action="store_true",
        help="Load config and build the case only; skip time stepping.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    return run_case(args.case_yaml, max_steps=args.max_steps, dry_run=args.dry_run)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
