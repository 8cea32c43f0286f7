"""
Tests for individual unit operations, evaluated outside a flowsheet.
"""

import pytest

from flowsim.errors import (
    DidNotConverge,
    Infeasible,
    ParameterOutOfRange,
    PropertyFailure,
    ValidationError,
)
from flowsim.ideal_package import IdealPropertyPackage
from flowsim.schemas import IdealComponentSpec
from flowsim.unit_operations import UNIT_OP_REGISTRY, EvaluationContext, create_operation

P_ATM = 101325.0


def _make_stream(pkg, T, P, flows):
    return EvaluationContext(pkg).stream_pt(T, P, flows)


def _run(kind, params, inlets, pkg, id="op"):
    op = create_operation(kind, params, id=id)
    return op, op.evaluate(inlets, EvaluationContext(pkg, operation_id=id))


def _enthalpy_in(inlets):
    return sum(s.enthalpy_flow for s in inlets)


def _enthalpy_out(output):
    return sum(s.enthalpy_flow for s in output.outlets)


# ---------------------------------------------------------------------------
# Parameter validation
# ---------------------------------------------------------------------------


class TestCreateOperation:
    def test_registry_is_closed_set(self):
        assert set(UNIT_OP_REGISTRY) == {
            "mixer", "splitter", "heater", "heat_exchanger",
            "valve", "flash", "separator", "reactor",
        }

    def test_unknown_kind(self):
        with pytest.raises(ValidationError, match="Unknown operation kind"):
            create_operation("compressor", {}, id="c1")

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError) as info:
            create_operation("heater", {"duty": 1.0, "efficiency": 0.7}, id="h1")
        assert info.value.operation_id == "h1"

    def test_missing_required_field_rejected(self):
        with pytest.raises(ValidationError):
            create_operation("reactor", {"temperature": 300.0}, id="r1")

    def test_wrong_params_model_rejected(self):
        params = create_operation("heater", {"duty": 0.0}).params
        with pytest.raises(ValidationError):
            create_operation("valve", params, id="v1")


class TestDegreesOfFreedom:
    @pytest.mark.parametrize(
        "kind, params, expected",
        [
            ("heater", {"duty": 1.0}, 0),
            ("heater", {}, 1),
            ("heater", {"duty": 1.0, "outlet_temperature": 300.0}, -1),
            ("splitter", {"fractions": [0.4]}, 0),
            ("splitter", {"fractions": [0.4, 0.6]}, 0),
            ("splitter", {"fractions": [0.4, 0.4]}, -1),
            ("splitter", {"outlets": 3, "fractions": [0.4]}, 1),
            ("splitter", {"fractions": [0.4], "outlet_flows": [1.0]}, -1),
            ("heat_exchanger", {"duty": 1.0, "cold_outlet_temperature": 300.0}, -1),
            ("valve", {}, 1),
            ("reactor", {"reactions": [{"stoichiometry": {"A": -1, "B": 1}}]}, 1),
            ("reactor", {"reactions": [{"stoichiometry": {"A": -1, "B": 1}, "conversion": 0.5}]}, 0),
        ],
    )
    def test_dof(self, kind, params, expected):
        assert create_operation(kind, params).degrees_of_freedom(["A", "B"]) == expected

    def test_separator_needs_every_component(self):
        op = create_operation("separator", {"split_fractions": {"A": [1.0]}})
        assert op.degrees_of_freedom(["A", "B"]) == 1
        assert op.unknown_components(["A", "B"]) == []
        assert op.unknown_components(["B"]) == ["A"]


# ---------------------------------------------------------------------------
# Mixer / splitter
# ---------------------------------------------------------------------------


class TestMixer:
    def test_energy_balance_and_lowest_pressure(self, isomers):
        a = _make_stream(isomers, 300.0, 2 * P_ATM, [1.0, 0.0])
        b = _make_stream(isomers, 400.0, P_ATM, [0.0, 1.0])
        _, out = _run("mixer", {}, [a, b], isomers)
        outlet = out.outlets[0]
        assert outlet.pressure == P_ATM
        assert outlet.molar_flows == [1.0, 1.0]
        assert _enthalpy_out(out) == pytest.approx(_enthalpy_in([a, b]), rel=1e-9)
        assert outlet.temperature == pytest.approx(350.0, abs=1e-6)

    def test_empty_inlet_does_not_set_pressure(self, isomers):
        a = _make_stream(isomers, 300.0, 2 * P_ATM, [1.0, 0.0])
        empty = EvaluationContext(isomers).empty(300.0, P_ATM)
        _, out = _run("mixer", {}, [a, empty], isomers)
        assert out.outlets[0].pressure == 2 * P_ATM

    def test_outlet_pressure_above_inlets_is_infeasible(self, isomers):
        a = _make_stream(isomers, 300.0, P_ATM, [1.0, 0.0])
        with pytest.raises(Infeasible) as info:
            _run("mixer", {"outlet_pressure": 2 * P_ATM}, [a], isomers, id="mix")
        assert info.value.operation_id == "mix"


class TestSplitter:
    def test_fractions_close_balance_exactly(self, isomers):
        inlet = _make_stream(isomers, 300.0, P_ATM, [0.3, 0.7])
        _, out = _run("splitter", {"outlets": 3, "fractions": [0.2, 0.5]}, [inlet], isomers)
        flows = [s.molar_flows for s in out.outlets]
        assert flows[0] == pytest.approx([0.06, 0.14])
        assert flows[1] == pytest.approx([0.15, 0.35])
        for i in range(2):
            assert sum(f[i] for f in flows) == pytest.approx(inlet.molar_flows[i], rel=1e-12)
        assert all(s.temperature == 300.0 for s in out.outlets)

    def test_fixed_outlet_flow(self, isomers):
        inlet = _make_stream(isomers, 300.0, P_ATM, [1.0, 1.0])
        _, out = _run("splitter", {"outlet_flows": [0.5]}, [inlet], isomers)
        assert out.outlets[0].molar_flow == pytest.approx(0.5)
        assert out.outlets[1].molar_flow == pytest.approx(1.5)

    def test_fixed_flow_exceeding_inlet_is_infeasible(self, isomers):
        inlet = _make_stream(isomers, 300.0, P_ATM, [1.0, 0.0])
        with pytest.raises(Infeasible):
            _run("splitter", {"outlet_flows": [2.0]}, [inlet], isomers)

    def test_fraction_sum_above_one(self, isomers):
        op = create_operation("splitter", {"outlets": 3, "fractions": [0.7, 0.6]}, id="sp")
        with pytest.raises(ParameterOutOfRange):
            op.check(isomers)

    def test_fraction_sum_message_uses_checked_outlets(self, isomers):
        op = create_operation("splitter", {"outlets": 3, "fractions": [0.7, 0.6, 0.2]}, id="sp")
        with pytest.raises(ParameterOutOfRange, match=r"sum to 1\.300000 > 1"):
            op.check(isomers)


# ---------------------------------------------------------------------------
# Heater / valve / heat exchanger
# ---------------------------------------------------------------------------


class TestHeater:
    def test_outlet_temperature_reports_duty(self, isomers):
        inlet = _make_stream(isomers, 300.0, P_ATM, [1.0, 0.0])
        _, out = _run("heater", {"outlet_temperature": 350.0}, [inlet], isomers)
        assert out.duty == pytest.approx(100.0 * 50.0)

    def test_duty_sets_temperature(self, isomers):
        inlet = _make_stream(isomers, 300.0, P_ATM, [2.0, 0.0])
        _, out = _run("heater", {"duty": -2000.0, "pressure_drop": 1000.0}, [inlet], isomers)
        assert out.outlets[0].temperature == pytest.approx(290.0, abs=1e-6)
        assert out.outlets[0].pressure == P_ATM - 1000.0

    def test_duty_on_empty_stream(self, isomers):
        empty = EvaluationContext(isomers).empty(300.0, P_ATM)
        with pytest.raises(Infeasible):
            _run("heater", {"duty": 10.0}, [empty], isomers)


class TestValve:
    def test_isenthalpic_letdown(self, btx):
        inlet = _make_stream(btx, 380.0, 5 * P_ATM, [0.5, 0.5])
        _, out = _run("valve", {"outlet_pressure": P_ATM}, [inlet], btx)
        outlet = out.outlets[0]
        assert outlet.enthalpy == pytest.approx(inlet.enthalpy, rel=1e-9)
        assert outlet.vapor_fraction > 0.0
        assert outlet.temperature < 380.0

    def test_pressure_increase_is_infeasible(self, btx):
        inlet = _make_stream(btx, 300.0, P_ATM, [0.5, 0.5])
        with pytest.raises(Infeasible):
            _run("valve", {"outlet_pressure": 2 * P_ATM}, [inlet], btx)


class TestHeatExchanger:
    def test_counter_current_balance(self, isomers):
        hot = _make_stream(isomers, 400.0, P_ATM, [1.0, 0.0])
        cold = _make_stream(isomers, 300.0, P_ATM, [1.0, 0.0])
        _, out = _run("heat_exchanger", {"hot_outlet_temperature": 350.0}, [hot, cold], isomers)
        hot_out, cold_out = out.outlets
        assert cold_out.temperature == pytest.approx(350.0, abs=1e-6)
        assert out.duty == 0.0
        assert out.info["duty_transferred"] == pytest.approx(5000.0)
        assert out.info["lmtd_K"] == pytest.approx(50.0)
        assert _enthalpy_out(out) == pytest.approx(_enthalpy_in([hot, cold]), rel=1e-9)

    def test_hot_side_colder_than_cold_side(self, isomers):
        hot = _make_stream(isomers, 300.0, P_ATM, [1.0, 0.0])
        cold = _make_stream(isomers, 350.0, P_ATM, [1.0, 0.0])
        with pytest.raises(Infeasible):
            _run("heat_exchanger", {"cold_outlet_temperature": 360.0}, [hot, cold], isomers)

    def test_co_current_temperature_cross(self, isomers):
        hot = _make_stream(isomers, 400.0, P_ATM, [1.0, 0.0])
        cold = _make_stream(isomers, 300.0, P_ATM, [1.0, 0.0])
        params = {"cold_outlet_temperature": 390.0}
        _, out = _run("heat_exchanger", params, [hot, cold], isomers)
        assert out.info["approach_K"] == pytest.approx(10.0, abs=1e-6)
        with pytest.raises(Infeasible, match="Temperature cross"):
            _run("heat_exchanger", dict(params, flow_arrangement="co"), [hot, cold], isomers)

    def test_minimum_approach(self, isomers):
        hot = _make_stream(isomers, 400.0, P_ATM, [1.0, 0.0])
        cold = _make_stream(isomers, 300.0, P_ATM, [1.0, 0.0])
        with pytest.raises(Infeasible, match="Approach below minimum"):
            _run(
                "heat_exchanger",
                {"cold_outlet_temperature": 390.0, "min_approach": 15.0},
                [hot, cold],
                isomers,
            )


# ---------------------------------------------------------------------------
# Flash / separator
# ---------------------------------------------------------------------------


class TestFlashDrum:
    def test_vapor_liquid_split(self, btx):
        inlet = _make_stream(btx, 300.0, P_ATM, [1.0, 1.0])
        _, out = _run("flash", {"temperature": 368.0}, [inlet], btx)
        vapor, liquid = out.outlets
        assert vapor.phase == "vapor"
        assert liquid.phase == "liquid"
        for i in range(2):
            assert vapor.molar_flows[i] + liquid.molar_flows[i] == pytest.approx(1.0, rel=1e-12)
        assert vapor.zs[0] > liquid.zs[0]
        assert out.duty > 0.0

    def test_adiabatic_flash_has_no_duty(self, btx):
        inlet = _make_stream(btx, 380.0, 5 * P_ATM, [1.0, 1.0])
        _, out = _run("flash", {"pressure": P_ATM}, [inlet], btx)
        assert out.duty == pytest.approx(0.0, abs=1e-6 * abs(inlet.enthalpy_flow))


class TestSeparator:
    def test_split_matrix(self, isomers):
        inlet = _make_stream(isomers, 300.0, P_ATM, [1.0, 2.0])
        params = {"split_fractions": {"A": [0.9], "B": [0.25, 0.75]}, "temperature": 320.0}
        _, out = _run("separator", params, [inlet], isomers)
        top, bottom = out.outlets
        assert top.molar_flows == pytest.approx([0.9, 0.5])
        assert bottom.molar_flows == pytest.approx([0.1, 1.5])
        assert top.temperature == 320.0
        assert out.duty == pytest.approx(3.0 * 100.0 * 20.0)

    def test_fraction_sum_above_one(self, isomers):
        params = {"outlets": 3, "split_fractions": {"A": [0.7, 0.6, 0.2]}}
        op = create_operation("separator", params, id="sep")
        with pytest.raises(ParameterOutOfRange, match=r"'A' sum to 1\.300000 > 1"):
            op.check(isomers)


# ---------------------------------------------------------------------------
# Stoichiometric reactor
# ---------------------------------------------------------------------------


class TestStoichiometricReactor:
    def test_conversion_of_key_component(self, isomers):
        inlet = _make_stream(isomers, 300.0, P_ATM, [2.0, 0.0])
        params = {"reactions": [{"stoichiometry": {"A": -1, "B": 1}, "conversion": 0.25}], "temperature": 300.0}
        _, out = _run("reactor", params, [inlet], isomers)
        assert out.outlets[0].molar_flows == pytest.approx([1.5, 0.5])
        assert out.info["extents"] == pytest.approx([0.5])
        # Exothermic isomerisation at constant temperature rejects heat
        assert out.duty == pytest.approx(-2500.0)

    def test_adiabatic_temperature_rise(self, isomers):
        inlet = _make_stream(isomers, 300.0, P_ATM, [1.0, 0.0])
        params = {"reactions": [{"stoichiometry": {"A": -1, "B": 1}, "conversion": 1.0}]}
        _, out = _run("reactor", params, [inlet], isomers)
        assert out.outlets[0].temperature == pytest.approx(350.0, abs=1e-6)
        assert out.duty == 0.0

    def test_extent_driving_flow_negative(self, isomers):
        inlet = _make_stream(isomers, 300.0, P_ATM, [1.0, 0.0])
        params = {"reactions": [{"stoichiometry": {"A": -1, "B": 1}, "extent": 2.0}]}
        with pytest.raises(Infeasible, match="negative"):
            _run("reactor", params, [inlet], isomers)

    def test_mass_imbalanced_reaction(self, isomers):
        op = create_operation(
            "reactor", {"reactions": [{"stoichiometry": {"A": -1, "B": 2}, "conversion": 0.5}]}, id="r"
        )
        with pytest.raises(ParameterOutOfRange, match="mass"):
            op.check(isomers)

    def test_element_imbalanced_reaction(self):
        pkg = IdealPropertyPackage([
            IdealComponentSpec(name="N2", mw=28.0, formula={"N": 2}),
            IdealComponentSpec(name="CO", mw=28.0, formula={"C": 1, "O": 1}),
        ])
        op = create_operation(
            "reactor", {"reactions": [{"stoichiometry": {"N2": -1, "CO": 1}, "conversion": 0.5}]}, id="r"
        )
        with pytest.raises(ParameterOutOfRange, match="element"):
            op.check(pkg)

    def test_key_component_must_be_reactant(self, isomers):
        op = create_operation(
            "reactor",
            {"reactions": [{"stoichiometry": {"A": -1, "B": 1}, "key_component": "B", "conversion": 0.5}]},
            id="r",
        )
        with pytest.raises(ParameterOutOfRange):
            op.check(isomers)


# ---------------------------------------------------------------------------
# Evaluation context
# ---------------------------------------------------------------------------


class _FailingPHPackage(IdealPropertyPackage):
    def __init__(self, components, failures):
        super().__init__(components)
        self.failures = failures
        self.ph_calls = 0

    def flash(self, spec, cancel=None):
        if spec.kind.value == "PH":
            self.ph_calls += 1
            if self.ph_calls <= self.failures:
                raise DidNotConverge("synthetic failure")
        return super().flash(spec, cancel)


class TestEvaluationContext:
    def test_retry_once_then_succeed(self, isomers):
        pkg = _FailingPHPackage(isomers.components, failures=1)
        ctx = EvaluationContext(pkg, seed=7, operation_id="h")
        state = ctx.stream_ph(P_ATM, 0.0, [1.0, 0.0], T_guess=300.0)
        assert state.temperature == pytest.approx(298.15)
        assert pkg.ph_calls == 2
        assert ctx.flash_retries == 1

    def test_second_failure_is_property_failure(self, isomers):
        pkg = _FailingPHPackage(isomers.components, failures=5)
        ctx = EvaluationContext(pkg, operation_id="h", iteration=3)
        with pytest.raises(PropertyFailure) as info:
            ctx.stream_ph(P_ATM, 0.0, [1.0, 0.0])
        assert pkg.ph_calls == 2
        assert info.value.operation_id == "h"
        assert info.value.iteration == 3

    def test_perturbation_is_deterministic(self, isomers):
        first = EvaluationContext(isomers, seed=3, operation_id="x", iteration=2).rng.random()
        second = EvaluationContext(isomers, seed=3, operation_id="x", iteration=2).rng.random()
        other = EvaluationContext(isomers, seed=4, operation_id="x", iteration=2).rng.random()
        assert first == second != other

    def test_empty_stream_is_never_flashed(self, isomers):
        pkg = _FailingPHPackage(isomers.components, failures=100)
        state = EvaluationContext(pkg).stream_ph(P_ATM, 123.0, [0.0, 0.0])
        assert state.is_empty
        assert pkg.ph_calls == 0
