"""
Unit operation models for the sequential-modular solver.

Each unit operation takes its ordered inlet StreamStates plus a typed
parameter model, performs the mass and energy balance (calling back into
the property package for flashes through an ``EvaluationContext``) and
returns its ordered outlet StreamStates.

Operations are stateless between evaluations: everything an evaluation
needs comes in through its arguments, so the solver may evaluate
independent operations on worker threads.
"""

from __future__ import annotations

import math
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Type

import pydantic
from loguru import logger

from .cancellation import CancellationToken
from .errors import (
    Infeasible,
    OperationError,
    ParameterOutOfRange,
    PropertyError,
    PropertyFailure,
    ValidationError,
)
from .properties import FlashSpec, PhaseState, PropertyPackage
from .schemas import (
    FlashParams,
    HeaterParams,
    HeatExchangerParams,
    MixerParams,
    ReactorParams,
    SeparatorParams,
    SplitterParams,
    ValveParams,
)
from .streams import StreamState

T_DEFAULT = 298.15  # K
_FLOW_EPS = 1e-12


# ---------------------------------------------------------------------------
# Evaluation context
# ---------------------------------------------------------------------------


@dataclass
class OperationOutput:
    outlets: List[StreamState]
    duty: float = 0.0  # W, heat added to the operation
    info: Dict[str, Any] = field(default_factory=dict)


class EvaluationContext:
    """
    Everything an operation may use besides its inlets and parameters:
    the property package, the cancellation token and a seeded random
    generator used to perturb initial guesses when a flash is retried.
    """

    def __init__(
        self,
        properties: PropertyPackage,
        cancel: Optional[CancellationToken] = None,
        seed: int = 0,
        operation_id: Optional[str] = None,
        iteration: Optional[int] = None,
        perturbation: float = 0.05,
    ) -> None:
        self.properties = properties
        self.cancel = cancel
        self.operation_id = operation_id
        self.iteration = iteration
        self.perturbation = perturbation
        # String seeds hash deterministically, independent of thread scheduling
        self.rng = random.Random(f"{seed}:{operation_id}:{iteration}")
        self.component_names = list(properties.component_names)
        self.component_mws = list(properties.molecular_weights)
        self.flash_retries = 0

    def flash(self, spec: FlashSpec) -> PhaseState:
        """Flash ``spec``; on PropertyError retry once with a perturbed T guess."""
        try:
            return self.properties.flash(spec, cancel=self.cancel)
        except PropertyError as exc:
            base = spec.T_guess or spec.T or T_DEFAULT
            guess = base * (1.0 + self.rng.uniform(-self.perturbation, self.perturbation))
            logger.warning(
                "[{}] {} flash failed ({}); retrying with T_guess={:.2f} K",
                self.operation_id, spec.kind.value, exc, guess,
            )
        self.flash_retries += 1
        try:
            return self.properties.flash(spec.with_guess(guess), cancel=self.cancel)
        except PropertyError as exc:
            raise PropertyFailure(
                f"{spec.kind.value} flash failed after retry: {exc}",
                operation_id=self.operation_id,
                iteration=self.iteration,
            ) from exc

    def empty(self, temperature: float, pressure: float) -> StreamState:
        return StreamState.empty(temperature, pressure, self.component_names, self.component_mws)

    def _stream(self, state: PhaseState, flows: Sequence[float]) -> StreamState:
        return StreamState.from_phase(state, flows, self.component_names, self.component_mws)

    def stream_pt(self, T: float, P: float, flows: Sequence[float]) -> StreamState:
        if sum(flows) <= 0.0:
            return self.empty(T, P)
        return self._stream(self.flash(FlashSpec.pt(T, P, flows)), flows)

    def stream_ph(
        self, P: float, H: float, flows: Sequence[float], T_guess: Optional[float] = None
    ) -> StreamState:
        if sum(flows) <= 0.0:
            return self.empty(T_guess or T_DEFAULT, P)
        return self._stream(self.flash(FlashSpec.ph(P, H, flows, T_guess=T_guess)), flows)


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------


class UnitOpBase(ABC):
    """Abstract base for all unit operations."""

    kind: str = ""
    params_model: Type[pydantic.BaseModel]
    min_inlets: int = 1
    max_inlets: Optional[int] = 1  # None = unbounded

    def __init__(self, id: str, params: pydantic.BaseModel, name: Optional[str] = None) -> None:
        self.id = id
        self.name = name or id
        self.params = params

    def outlet_count(self) -> int:
        return 1

    def degrees_of_freedom(self, components: Sequence[str]) -> int:
        """Unspecified minus specified variables; zero when solvable."""
        return 0

    def unknown_components(self, components: Sequence[str]) -> List[str]:
        return []

    def check(self, properties: PropertyPackage) -> None:
        """Parameter checks that need the property package; run before solving."""

    @abstractmethod
    def evaluate(self, inlets: List[StreamState], context: EvaluationContext) -> OperationOutput:
        """
        Calculate outlet streams from inlet streams.

        Parameters
        ----------
        inlets : inlet StreamStates ordered by inlet index
        context : property package, cancellation and RNG for this evaluation

        Returns
        -------
        OperationOutput with outlets ordered by outlet index
        """

    def _error(self, cls: Type[OperationError], message: str) -> OperationError:
        return cls(message, operation_id=self.id)

    @staticmethod
    def _specified(*values) -> int:
        return sum(1 for v in values if v is not None)


# ---------------------------------------------------------------------------
# Mixer
# ---------------------------------------------------------------------------


class MixerOp(UnitOpBase):
    """
    Adiabatic mixer.

    Mixes any number of inlet streams:
      - Component flows are summed
      - Outlet enthalpy from energy balance (sum of H*n_dot)
      - Outlet P = min(non-empty inlet pressures), unless specified
      - PH flash at outlet P with mixed enthalpy to get outlet T and phase
    """

    kind = "mixer"
    params_model = MixerParams
    max_inlets = None

    def evaluate(self, inlets: List[StreamState], context: EvaluationContext) -> OperationOutput:
        flows = [sum(col) for col in zip(*(s.molar_flows for s in inlets))]
        flowing = [s for s in inlets if not s.is_empty]
        P_low = min(s.pressure for s in (flowing or inlets))
        P_out = self.params.outlet_pressure or P_low
        if P_out > P_low * (1.0 + 1e-12):
            raise self._error(
                Infeasible,
                f"Outlet pressure {P_out:.0f} Pa exceeds lowest inlet pressure {P_low:.0f} Pa",
            )

        if not flowing:
            return OperationOutput([context.empty(inlets[0].temperature, P_out)])

        total = sum(flows)
        H_mix = sum(s.enthalpy_flow for s in flowing) / total
        T_guess = sum(s.temperature * s.molar_flow for s in flowing) / total
        outlet = context.stream_ph(P_out, H_mix, flows, T_guess=T_guess)
        return OperationOutput([outlet], info={"outlet_pressure": P_out})


# ---------------------------------------------------------------------------
# Splitter
# ---------------------------------------------------------------------------


class SplitterOp(UnitOpBase):
    """
    Stream splitter.

    Splits one inlet into N outlets at the inlet T, P and composition,
    either by fractions or by fixed molar flows for the first N-1 outlets.
    The last outlet always takes the remainder so the balance closes
    exactly.
    """

    kind = "splitter"
    params_model = SplitterParams

    def outlet_count(self) -> int:
        return self.params.outlets

    def degrees_of_freedom(self, components: Sequence[str]) -> int:
        n_out = self.params.outlets
        fractions, fixed = self.params.fractions, self.params.outlet_flows
        if fractions is not None and fixed is not None:
            return -1
        if fractions is not None:
            if len(fractions) == n_out:
                return 0 if abs(sum(fractions) - 1.0) <= 1e-9 else -1
            return (n_out - 1) - len(fractions)
        if fixed is not None:
            return (n_out - 1) - len(fixed)
        return n_out - 1

    def check(self, properties: PropertyPackage) -> None:
        fractions = self.params.fractions
        if fractions is None:
            return
        total = sum(fractions[: self.params.outlets - 1])
        if total > 1.0 + 1e-12:
            raise self._error(ParameterOutOfRange, f"Split fractions sum to {total:.6f} > 1")

    def _ratios(self, inlet: StreamState) -> List[float]:
        n_out = self.params.outlets
        if self.params.fractions is not None:
            return list(self.params.fractions[: n_out - 1])
        F = inlet.molar_flow
        wanted = sum(self.params.outlet_flows)
        if wanted > F * (1.0 + 1e-12) + _FLOW_EPS:
            raise self._error(
                Infeasible,
                f"Fixed outlet flows {wanted:.6g} mol/s exceed inlet flow {F:.6g} mol/s",
            )
        if F <= 0.0:
            return [0.0] * (n_out - 1)
        return [min(f / F, 1.0) for f in self.params.outlet_flows]

    def evaluate(self, inlets: List[StreamState], context: EvaluationContext) -> OperationOutput:
        inlet = inlets[0]
        ratios = self._ratios(inlet)

        outlets: List[StreamState] = []
        remaining = list(inlet.molar_flows)
        for ratio in ratios:
            flows = [n * ratio for n in inlet.molar_flows]
            remaining = [r - f for r, f in zip(remaining, flows)]
            outlets.append(_with_flows(inlet, flows))
        outlets.append(_with_flows(inlet, _clip(remaining)))
        return OperationOutput(outlets, info={"split_ratios": ratios})


# ---------------------------------------------------------------------------
# Heater / Cooler
# ---------------------------------------------------------------------------


class HeaterOp(UnitOpBase):
    """
    Heater / cooler with a duty or outlet temperature specification.

    Positive duty = heat added to the stream.
    """

    kind = "heater"
    params_model = HeaterParams

    def degrees_of_freedom(self, components: Sequence[str]) -> int:
        return 1 - self._specified(self.params.duty, self.params.outlet_temperature)

    def evaluate(self, inlets: List[StreamState], context: EvaluationContext) -> OperationOutput:
        inlet = inlets[0]
        P_out = inlet.pressure - self.params.pressure_drop
        if P_out <= 0:
            raise self._error(Infeasible, f"Pressure drop leaves outlet pressure {P_out:.0f} Pa <= 0")

        if self.params.outlet_temperature is not None:
            outlet = context.stream_pt(self.params.outlet_temperature, P_out, inlet.molar_flows)
            duty = outlet.enthalpy_flow - inlet.enthalpy_flow
            return OperationOutput([outlet], duty=duty)

        Q = self.params.duty
        if inlet.is_empty:
            if Q != 0.0:
                raise self._error(Infeasible, "Cannot apply a duty to an empty stream")
            return OperationOutput([context.empty(inlet.temperature, P_out)])
        H_out = inlet.enthalpy + Q / inlet.molar_flow
        outlet = context.stream_ph(P_out, H_out, inlet.molar_flows, T_guess=inlet.temperature)
        return OperationOutput([outlet], duty=Q)


# ---------------------------------------------------------------------------
# Heat exchanger
# ---------------------------------------------------------------------------


class HeatExchangerOp(UnitOpBase):
    """
    Two-stream heat exchanger: energy balance between hot and cold sides.

    Inlet/outlet 0 is the hot side, 1 the cold side. Exactly one of duty,
    hot outlet temperature or cold outlet temperature is specified; the
    energy balance determines the other side. Any second-law violation
    (heat against the gradient, temperature cross, approach below the
    minimum) is infeasible.
    """

    kind = "heat_exchanger"
    params_model = HeatExchangerParams
    min_inlets = 2
    max_inlets = 2

    def outlet_count(self) -> int:
        return 2

    def degrees_of_freedom(self, components: Sequence[str]) -> int:
        p = self.params
        return 1 - self._specified(p.duty, p.hot_outlet_temperature, p.cold_outlet_temperature)

    def _side_ph(
        self, context: EvaluationContext, inlet: StreamState, P: float, Q: float
    ) -> StreamState:
        if inlet.is_empty:
            if Q != 0.0:
                raise self._error(Infeasible, "Duty cannot be exchanged with an empty stream")
            return context.empty(inlet.temperature, P)
        H_out = inlet.enthalpy + Q / inlet.molar_flow
        return context.stream_ph(P, H_out, inlet.molar_flows, T_guess=inlet.temperature)

    def evaluate(self, inlets: List[StreamState], context: EvaluationContext) -> OperationOutput:
        hot_in, cold_in = inlets
        p = self.params
        P_hot = hot_in.pressure - p.hot_pressure_drop
        P_cold = cold_in.pressure - p.cold_pressure_drop
        if P_hot <= 0 or P_cold <= 0:
            raise self._error(Infeasible, "Pressure drop leaves a non-positive outlet pressure")

        if p.hot_outlet_temperature is not None:
            hot_out = context.stream_pt(p.hot_outlet_temperature, P_hot, hot_in.molar_flows)
            Q = hot_in.enthalpy_flow - hot_out.enthalpy_flow  # W released by hot side
            cold_out = self._side_ph(context, cold_in, P_cold, Q)
        elif p.cold_outlet_temperature is not None:
            cold_out = context.stream_pt(p.cold_outlet_temperature, P_cold, cold_in.molar_flows)
            Q = cold_out.enthalpy_flow - cold_in.enthalpy_flow  # W absorbed by cold side
            hot_out = self._side_ph(context, hot_in, P_hot, -Q)
        else:
            Q = p.duty
            hot_out = self._side_ph(context, hot_in, P_hot, -Q)
            cold_out = self._side_ph(context, cold_in, P_cold, Q)

        info = self._second_law(hot_in, cold_in, hot_out, cold_out, Q)
        info["duty_transferred"] = Q
        # Heat only moves between the two sides
        return OperationOutput([hot_out, cold_out], duty=0.0, info=info)

    def _second_law(
        self,
        hot_in: StreamState,
        cold_in: StreamState,
        hot_out: StreamState,
        cold_out: StreamState,
        Q: float,
    ) -> Dict[str, Any]:
        if abs(Q) <= 1e-12 or hot_in.is_empty or cold_in.is_empty:
            return {}
        if Q < 0:
            raise self._error(
                Infeasible,
                f"Heat would flow from the cold side to the hot side (duty {Q:.3f} W)",
            )
        if hot_in.temperature < cold_in.temperature:
            raise self._error(
                Infeasible,
                f"Hot inlet {hot_in.temperature:.2f} K is colder than cold inlet "
                f"{cold_in.temperature:.2f} K",
            )

        if self.params.flow_arrangement == "counter":
            dT1 = hot_in.temperature - cold_out.temperature
            dT2 = hot_out.temperature - cold_in.temperature
        else:
            dT1 = hot_in.temperature - cold_in.temperature
            dT2 = hot_out.temperature - cold_out.temperature

        approach = min(dT1, dT2)
        if approach < self.params.min_approach - 1e-9:
            kind = "Temperature cross" if approach < 0 else "Approach below minimum"
            raise self._error(
                Infeasible,
                f"{kind}: approach {approach:.3f} K (minimum {self.params.min_approach:.3f} K)",
            )

        if dT1 > 0 and dT2 > 0 and abs(dT1 - dT2) > 0.01:
            lmtd = (dT1 - dT2) / math.log(dT1 / dT2)
        elif dT1 > 0 and dT2 > 0:
            lmtd = (dT1 + dT2) / 2.0
        else:
            lmtd = None
        return {"approach_K": approach, "lmtd_K": lmtd}


# ---------------------------------------------------------------------------
# Valve (isenthalpic expansion)
# ---------------------------------------------------------------------------


class ValveOp(UnitOpBase):
    """
    Throttling valve: PH flash at the outlet pressure with the inlet
    molar enthalpy.
    """

    kind = "valve"
    params_model = ValveParams

    def degrees_of_freedom(self, components: Sequence[str]) -> int:
        return 1 - self._specified(self.params.outlet_pressure, self.params.pressure_drop)

    def evaluate(self, inlets: List[StreamState], context: EvaluationContext) -> OperationOutput:
        inlet = inlets[0]
        if self.params.outlet_pressure is not None:
            P_out = self.params.outlet_pressure
        else:
            P_out = inlet.pressure - self.params.pressure_drop

        if P_out <= 0:
            raise self._error(Infeasible, f"Outlet pressure {P_out:.0f} Pa <= 0")
        if P_out > inlet.pressure * (1.0 + 1e-12):
            raise self._error(
                Infeasible,
                f"Outlet pressure {P_out:.0f} Pa exceeds inlet pressure {inlet.pressure:.0f} Pa",
            )

        outlet = context.stream_ph(P_out, inlet.enthalpy, inlet.molar_flows, T_guess=inlet.temperature)
        return OperationOutput([outlet], info={"pressure_drop": inlet.pressure - P_out})


# ---------------------------------------------------------------------------
# Flash drum (VLE separator)
# ---------------------------------------------------------------------------


class FlashOp(UnitOpBase):
    """
    Two-phase flash drum.

    Outlet 0 is the vapour, outlet 1 the liquid. Temperature and pressure
    default to the inlet values; without a temperature the drum is
    adiabatic (PH flash with the inlet enthalpy).
    """

    kind = "flash"
    params_model = FlashParams

    def outlet_count(self) -> int:
        return 2

    def evaluate(self, inlets: List[StreamState], context: EvaluationContext) -> OperationOutput:
        inlet = inlets[0]
        P = self.params.pressure or inlet.pressure
        T = self.params.temperature

        if inlet.is_empty:
            T_out = T or inlet.temperature
            return OperationOutput([context.empty(T_out, P), context.empty(T_out, P)])

        if T is not None:
            mixed = context.stream_pt(T, P, inlet.molar_flows)
        else:
            mixed = context.stream_ph(P, inlet.enthalpy, inlet.molar_flows, T_guess=inlet.temperature)

        beta = mixed.vapor_fraction
        F = mixed.molar_flow
        if beta <= 0.0 or mixed.ys is None:
            vapor_flows = [0.0] * len(inlet.molar_flows)
        elif beta >= 1.0 or mixed.xs is None:
            vapor_flows = list(inlet.molar_flows)
        else:
            vapor_flows = [F * beta * y for y in mixed.ys]
        liquid_flows = _clip([n - v for n, v in zip(inlet.molar_flows, vapor_flows)])

        vapor = context.stream_pt(mixed.temperature, P, vapor_flows)
        liquid = context.stream_pt(mixed.temperature, P, liquid_flows)
        duty = vapor.enthalpy_flow + liquid.enthalpy_flow - inlet.enthalpy_flow
        return OperationOutput(
            [vapor, liquid],
            duty=duty,
            info={"vapor_fraction": beta, "temperature": mixed.temperature},
        )


# ---------------------------------------------------------------------------
# Component separator
# ---------------------------------------------------------------------------


class SeparatorOp(UnitOpBase):
    """
    Generic component separator driven by a split-fraction matrix.

    For each component the fractions give the share of its inlet flow
    sent to outlets 0..N-2; the last outlet takes the remainder.
    Outlets leave at the inlet (or specified) temperature and pressure.
    """

    kind = "separator"
    params_model = SeparatorParams

    def outlet_count(self) -> int:
        return self.params.outlets

    def unknown_components(self, components: Sequence[str]) -> List[str]:
        return [c for c in self.params.split_fractions if c not in components]

    def degrees_of_freedom(self, components: Sequence[str]) -> int:
        n_out = self.params.outlets
        dof = 0
        for comp in components:
            fractions = self.params.split_fractions.get(comp)
            if fractions is None:
                dof += n_out - 1
            elif len(fractions) == n_out:
                dof += 0 if abs(sum(fractions) - 1.0) <= 1e-9 else -1
            else:
                dof += (n_out - 1) - len(fractions)
        return dof

    def check(self, properties: PropertyPackage) -> None:
        for comp, fractions in self.params.split_fractions.items():
            total = sum(fractions[: self.params.outlets - 1])
            if total > 1.0 + 1e-12:
                raise self._error(
                    ParameterOutOfRange,
                    f"Split fractions for '{comp}' sum to {total:.6f} > 1",
                )

    def evaluate(self, inlets: List[StreamState], context: EvaluationContext) -> OperationOutput:
        inlet = inlets[0]
        n_out = self.params.outlets
        T = self.params.temperature or inlet.temperature
        P = self.params.pressure or inlet.pressure

        table = [[0.0] * len(inlet.molar_flows) for _ in range(n_out)]
        for i, (comp, n_i) in enumerate(zip(inlet.component_names, inlet.molar_flows)):
            fractions = self.params.split_fractions[comp]
            sent = 0.0
            for k in range(n_out - 1):
                table[k][i] = n_i * fractions[k]
                sent += table[k][i]
            table[n_out - 1][i] = max(n_i - sent, 0.0)

        outlets = [context.stream_pt(T, P, flows) for flows in table]
        duty = sum(s.enthalpy_flow for s in outlets) - inlet.enthalpy_flow
        return OperationOutput(outlets, duty=duty)


# ---------------------------------------------------------------------------
# Stoichiometric reactor
# ---------------------------------------------------------------------------


class StoichiometricReactorOp(UnitOpBase):
    """
    Extent-of-reaction reactor.

    Reactions are applied in order. Each has either a fractional
    conversion of its key component (default: first reactant) or a fixed
    extent in mol/s. Isothermal when an outlet temperature is given,
    otherwise adiabatic. Enthalpies from the property package include
    formation enthalpies, so no separate heat of reaction is needed.
    """

    kind = "reactor"
    params_model = ReactorParams

    def unknown_components(self, components: Sequence[str]) -> List[str]:
        unknown: List[str] = []
        for rxn in self.params.reactions:
            names = list(rxn.stoichiometry)
            if rxn.key_component is not None:
                names.append(rxn.key_component)
            unknown.extend(c for c in names if c not in components and c not in unknown)
        return unknown

    @staticmethod
    def _key(rxn) -> Optional[str]:
        if rxn.key_component is not None:
            return rxn.key_component
        return next((c for c, nu in rxn.stoichiometry.items() if nu < 0), None)

    def degrees_of_freedom(self, components: Sequence[str]) -> int:
        dof = 0
        for rxn in self.params.reactions:
            dof += 1 - self._specified(rxn.conversion, rxn.extent)
            if rxn.conversion is not None and self._key(rxn) is None:
                dof += 1
        return dof

    def check(self, properties: PropertyPackage) -> None:
        names = properties.component_names
        mws = properties.molecular_weights
        formulas = properties.formulas()
        for k, rxn in enumerate(self.params.reactions):
            key = self._key(rxn)
            if rxn.conversion is not None and rxn.stoichiometry.get(key, 0.0) >= 0.0:
                raise self._error(
                    ParameterOutOfRange,
                    f"Reaction {k}: key component '{key}' is not a reactant",
                )
            idx = {c: names.index(c) for c in rxn.stoichiometry}
            mass = sum(nu * mws[idx[c]] for c, nu in rxn.stoichiometry.items())
            scale = sum(abs(nu) * mws[idx[c]] for c, nu in rxn.stoichiometry.items())
            if abs(mass) > 1e-6 * max(scale, 1.0):
                raise self._error(
                    ParameterOutOfRange,
                    f"Reaction {k} does not conserve mass ({mass:+.6g} g/mol extent)",
                )
            if formulas is None:
                continue
            elements = {el for c in rxn.stoichiometry for el in formulas[idx[c]]}
            for el in sorted(elements):
                balance = sum(nu * formulas[idx[c]].get(el, 0.0) for c, nu in rxn.stoichiometry.items())
                if abs(balance) > 1e-9:
                    raise self._error(
                        ParameterOutOfRange,
                        f"Reaction {k} does not balance element {el} ({balance:+.6g})",
                    )

    def evaluate(self, inlets: List[StreamState], context: EvaluationContext) -> OperationOutput:
        inlet = inlets[0]
        names = inlet.component_names
        flows = list(inlet.molar_flows)
        extents: List[float] = []

        for k, rxn in enumerate(self.params.reactions):
            if rxn.extent is not None:
                xi = rxn.extent
            else:
                key = self._key(rxn)
                xi = rxn.conversion * flows[names.index(key)] / -rxn.stoichiometry[key]

            updated = list(flows)
            for comp, nu in rxn.stoichiometry.items():
                updated[names.index(comp)] += nu * xi
            floor = -_FLOW_EPS * max(1.0, sum(flows))
            for comp, n in zip(names, updated):
                if n < floor:
                    raise self._error(
                        Infeasible,
                        f"Reaction {k} (extent {xi:.6g} mol/s) drives '{comp}' negative",
                    )
            flows = _clip(updated)
            extents.append(xi)

        P_out = inlet.pressure - self.params.pressure_drop
        if P_out <= 0:
            raise self._error(Infeasible, f"Pressure drop leaves outlet pressure {P_out:.0f} Pa <= 0")

        if self.params.temperature is not None:
            outlet = context.stream_pt(self.params.temperature, P_out, flows)
            duty = outlet.enthalpy_flow - inlet.enthalpy_flow
        else:
            total = sum(flows)
            H_out = inlet.enthalpy_flow / total if total > 0 else 0.0
            outlet = context.stream_ph(P_out, H_out, flows, T_guess=inlet.temperature)
            duty = 0.0
        return OperationOutput([outlet], duty=duty, info={"extents": extents})


# ---------------------------------------------------------------------------
# Helpers and registry
# ---------------------------------------------------------------------------


def _clip(flows: Sequence[float]) -> List[float]:
    return [n if n > 0.0 else 0.0 for n in flows]


def _with_flows(stream: StreamState, flows: List[float]) -> StreamState:
    out = stream.copy()
    out.molar_flows = flows
    return out


UNIT_OP_REGISTRY: Dict[str, Type[UnitOpBase]] = {
    "mixer": MixerOp,
    "splitter": SplitterOp,
    "heater": HeaterOp,
    "heat_exchanger": HeatExchangerOp,
    "valve": ValveOp,
    "flash": FlashOp,
    "separator": SeparatorOp,
    "reactor": StoichiometricReactorOp,
}


def create_operation(
    kind: str,
    params: Any = None,
    id: str = "",
    name: Optional[str] = None,
) -> UnitOpBase:
    """Instantiate a unit operation, validating ``params`` against its model."""
    cls = UNIT_OP_REGISTRY.get(kind)
    if cls is None:
        raise ValidationError(
            f"Unknown operation kind '{kind}'. Known: {sorted(UNIT_OP_REGISTRY)}",
            operation_id=id or None,
        )
    if isinstance(params, cls.params_model):
        model = params
    elif isinstance(params, pydantic.BaseModel):
        raise ValidationError(
            f"Parameters of type {type(params).__name__} do not belong to kind '{kind}'",
            operation_id=id or None,
        )
    else:
        data = dict(params or {})
        data.setdefault("kind", kind)
        try:
            model = cls.params_model.model_validate(data)
        except pydantic.ValidationError as exc:
            raise ValidationError(
                f"Invalid parameters for {kind} '{id}': {exc}", operation_id=id or None
            ) from exc
    return cls(id=id, params=model, name=name)
