"""
Tests for the gas property adapters.

Tests:
1. ConstantPropertyAdapter closures
2. Adapter construction from the case properties block
3. CanteraPropertyAdapter (skipped without Cantera): properties and a water droplet step
"""

from __future__ import annotations

import pathlib

import numpy as np
import pytest

from core.types import CaseProperties, GasPhaseSample, Parcel, TransferFlags
from core.units import SprayUnits
from physics.drag import calculate_spray_source
from properties.adapter import T_STD, ConstantPropertyAdapter, build_property_adapter
from properties.fuel_db import build_fuel_table, load_fuel_db

FUEL_DB = pathlib.Path(__file__).parent.parent / "mechanism" / "spray_fuels.yaml"


# ============================================================================
# Test 1: Constant properties
# ============================================================================


def test_constant_adapter_closures():
    adapter = ConstantPropertyAdapter(["A", "B"], [28.0, 44.0], [1000.0, 800.0], h_ref=[0.0, -9.0e6],
                                      mu_ref=2.0e-5, T_ref=300.0, mu_exponent=0.5, Pr=0.8, Sc=0.5)
    np.testing.assert_allclose(adapter.enthalpy(T_STD + 100.0), [1.0e5, -9.0e6 + 8.0e4])
    np.testing.assert_array_equal(adapter.heat_capacity(500.0), [1000.0, 800.0])

    Y = np.array([0.5, 0.5])
    tr = adapter.transport(1200.0, 0.3, Y)
    assert tr.mu == pytest.approx(4.0e-5)
    assert tr.lam == pytest.approx(4.0e-5 * 900.0 / 0.8)
    W_mix = 1.0 / (0.5 / 28.0 + 0.5 / 44.0)
    np.testing.assert_allclose(tr.rhoD, 4.0e-5 / 0.5 * np.array([28.0, 44.0]) / W_mix)


def test_constant_adapter_validation():
    with pytest.raises(ValueError, match="one entry per species"):
        ConstantPropertyAdapter(["A", "B"], [28.0], [1000.0, 800.0])
    with pytest.raises(ValueError, match="positive"):
        ConstantPropertyAdapter(["A"], [28.0], [-1.0])


# ============================================================================
# Test 2: Construction from case properties
# ============================================================================


def test_build_constant_adapter_converts_molar_mass():
    props = CaseProperties(
        backend="constant",
        gas_species=["N2", "H2O"],
        W={"N2": 0.028014, "H2O": 0.018015},
        cp={"N2": 1040.0, "H2O": 1860.0},
    )
    adapter = build_property_adapter(props, pathlib.Path("."))
    assert adapter.species_names == ("N2", "H2O")
    np.testing.assert_allclose(adapter.molar_masses(), [28.014, 18.015])


def test_case_properties_validation():
    with pytest.raises(ValueError, match="missing entries"):
        CaseProperties(backend="constant", gas_species=["N2"], W={"N2": 0.028}, cp={})
    with pytest.raises(ValueError, match="backend"):
        CaseProperties(backend="coolprop")


def test_cantera_backend_requires_mechanism():
    pytest.importorskip("cantera")
    with pytest.raises(ValueError, match="gas_mech"):
        build_property_adapter(CaseProperties(backend="cantera"), pathlib.Path("."), None)


# ============================================================================
# Test 3: Cantera adapter
# ============================================================================


def _cantera_adapter():
    pytest.importorskip("cantera")
    from properties.gas import CanteraPropertyAdapter

    return CanteraPropertyAdapter("gri30.yaml")


def test_cantera_adapter_properties():
    adapter = _cantera_adapter()
    names = list(adapter.species_names)
    i_n2 = names.index("N2")
    ns = len(names)

    assert adapter.molar_masses()[i_n2] == pytest.approx(28.014, rel=1.0e-3)
    assert adapter.enthalpy(298.15)[i_n2] == pytest.approx(0.0, abs=50.0)
    cp = adapter.heat_capacity(300.0)
    assert cp.shape == (ns,)
    assert cp[i_n2] == pytest.approx(1040.0, rel=0.02)

    Y = np.zeros(ns)
    Y[i_n2] = 0.767
    Y[names.index("O2")] = 0.233
    tr = adapter.transport(800.0, 0.44, Y)
    assert 2.0e-5 < tr.mu < 5.0e-5
    assert 0.03 < tr.lam < 0.08
    assert np.all(tr.rhoD > 0.0)


def test_cantera_adapter_rejects_empty_composition():
    adapter = _cantera_adapter()
    with pytest.raises(ValueError, match="summing"):
        adapter.transport(300.0, 1.0, np.zeros(len(adapter.species_names)))


def test_water_droplet_step_with_cantera_properties():
    adapter = _cantera_adapter()
    units = SprayUnits.si()
    names = list(adapter.species_names)
    fuel = build_fuel_table(load_fuel_db(FUEL_DB), ["Water"], names, units)
    mw = adapter.molar_masses() * units.mass_conv
    Y = np.zeros(len(names))
    Y[names.index("N2")] = 0.767
    Y[names.index("O2")] = 0.233
    T = 600.0
    rho = units.patm / (units.ru * T * float(np.dot(Y, 1.0 / mw)))
    gas = GasPhaseSample.from_state(np.array([5.0, 0.0, 0.0]), T, rho, Y, mw, units.ru, 1)
    parcel = Parcel(pos=np.zeros(3), vel=np.zeros(3), temperature=300.0, diameter=4.0e-5, Y=np.array([1.0]))

    res = calculate_spray_source(2.0e-4, gas, parcel, fuel, adapter, TransferFlags(), units)

    assert res.alive
    assert res.mass_end < res.mass_start
    assert parcel.temperature > 300.0
    assert parcel.vel[0] > 0.0
    assert gas.mass_src < 0.0
