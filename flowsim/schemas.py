from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing_extensions import Annotated


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------------
# Operation parameters (closed, kind-tagged union)
# ---------------------------------------------------------------------------


class MixerParams(_Strict):
    kind: Literal["mixer"] = "mixer"
    outlet_pressure: Optional[float] = Field(default=None, gt=0)  # Pa


class SplitterParams(_Strict):
    kind: Literal["splitter"] = "splitter"
    outlets: int = Field(default=2, ge=2)
    # Either N fractions summing to 1, or N-1 with the remainder to the last outlet
    fractions: Optional[List[Annotated[float, Field(ge=0.0, le=1.0)]]] = None
    # Fixed molar flows (mol/s) for outlets 0..N-2, remainder to the last outlet
    outlet_flows: Optional[List[Annotated[float, Field(ge=0.0)]]] = None


class HeaterParams(_Strict):
    kind: Literal["heater"] = "heater"
    duty: Optional[float] = None  # W, positive = heat added
    outlet_temperature: Optional[float] = Field(default=None, gt=0)  # K
    pressure_drop: float = Field(default=0.0, ge=0)  # Pa


class HeatExchangerParams(_Strict):
    kind: Literal["heat_exchanger"] = "heat_exchanger"
    duty: Optional[float] = None  # W transferred from hot to cold side
    hot_outlet_temperature: Optional[float] = Field(default=None, gt=0)  # K
    cold_outlet_temperature: Optional[float] = Field(default=None, gt=0)  # K
    min_approach: float = Field(default=0.0, ge=0)  # K
    flow_arrangement: Literal["counter", "co"] = "counter"
    hot_pressure_drop: float = Field(default=0.0, ge=0)  # Pa
    cold_pressure_drop: float = Field(default=0.0, ge=0)  # Pa


class ValveParams(_Strict):
    kind: Literal["valve"] = "valve"
    outlet_pressure: Optional[float] = Field(default=None, gt=0)  # Pa
    pressure_drop: Optional[float] = Field(default=None, ge=0)  # Pa


class FlashParams(_Strict):
    kind: Literal["flash"] = "flash"
    temperature: Optional[float] = Field(default=None, gt=0)  # K, None = adiabatic
    pressure: Optional[float] = Field(default=None, gt=0)  # Pa, None = inlet


class SeparatorParams(_Strict):
    kind: Literal["separator"] = "separator"
    outlets: int = Field(default=2, ge=2)
    # component -> fraction of its inlet flow sent to outlets 0..N-2
    # (N values summing to 1 are also accepted)
    split_fractions: Dict[str, List[Annotated[float, Field(ge=0.0, le=1.0)]]] = Field(
        default_factory=dict
    )
    temperature: Optional[float] = Field(default=None, gt=0)  # K
    pressure: Optional[float] = Field(default=None, gt=0)  # Pa


class ReactionSpec(_Strict):
    # Negative coefficients for reactants, positive for products
    stoichiometry: Dict[str, float]
    key_component: Optional[str] = None
    conversion: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    extent: Optional[float] = Field(default=None, ge=0.0)  # mol/s


class ReactorParams(_Strict):
    kind: Literal["reactor"] = "reactor"
    reactions: List[ReactionSpec] = Field(min_length=1)
    temperature: Optional[float] = Field(default=None, gt=0)  # K, None = adiabatic
    pressure_drop: float = Field(default=0.0, ge=0)  # Pa


OperationParams = Annotated[
    Union[
        MixerParams,
        SplitterParams,
        HeaterParams,
        HeatExchangerParams,
        ValveParams,
        FlashParams,
        SeparatorParams,
        ReactorParams,
    ],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Flowsheet definition
# ---------------------------------------------------------------------------


class PortRef(_Strict):
    operation: str
    port: int = Field(default=0, ge=0)


class FeedSpec(_Strict):
    """Boundary-feed specification: P, one thermal spec, component flows."""

    pressure: float = Field(gt=0)  # Pa
    temperature: Optional[float] = Field(default=None, gt=0)  # K
    enthalpy: Optional[float] = None  # J/mol
    flows: Dict[str, Annotated[float, Field(ge=0.0)]]
    basis: Literal["mole", "mass"] = "mole"  # mol/s or kg/s per component

    @model_validator(mode="after")
    def _one_thermal_spec(self) -> "FeedSpec":
        if (self.temperature is None) == (self.enthalpy is None):
            raise ValueError("Specify exactly one of temperature or enthalpy")
        return self


class StreamGuess(_Strict):
    """Initial estimate for a tear stream."""

    temperature: float = Field(gt=0)  # K
    pressure: float = Field(gt=0)  # Pa
    molar_flows: Dict[str, Annotated[float, Field(ge=0.0)]] = Field(default_factory=dict)


class StreamSpec(_Strict):
    id: str
    source: Optional[PortRef] = None
    target: Optional[PortRef] = None
    feed: Optional[FeedSpec] = None
    guess: Optional[StreamGuess] = None


class OperationSpec(_Strict):
    id: str
    name: Optional[str] = None
    params: OperationParams

    @property
    def kind(self) -> str:
        return self.params.kind


class IdealComponentSpec(_Strict):
    """Constant-property component for the ideal-solution package."""

    name: str
    mw: float = Field(gt=0)  # g/mol
    cp_liquid: float = Field(default=75.0, gt=0)  # J/(mol·K)
    cp_vapor: Optional[float] = Field(default=None, gt=0)  # J/(mol·K)
    hvap: float = Field(default=0.0, ge=0)  # J/mol at the reference T
    hf: float = 0.0  # J/mol, formation enthalpy at 298.15 K
    # ln(Psat / Pa) = A - B / (T / K + C); None = non-volatile
    antoine: Optional[List[float]] = Field(default=None, min_length=3, max_length=3)
    liquid_density: float = Field(default=1000.0, gt=0)  # kg/m³
    formula: Optional[Dict[str, float]] = None


class IdealPackageSpec(_Strict):
    kind: Literal["ideal"] = "ideal"
    components: List[IdealComponentSpec] = Field(min_length=1)


class ThermoPackageSpec(_Strict):
    kind: Literal["thermo"] = "thermo"
    package: str = "Peng-Robinson"
    components: List[str] = Field(min_length=1)


PropertyPackageSpec = Annotated[
    Union[IdealPackageSpec, ThermoPackageSpec],
    Field(discriminator="kind"),
]


class FlowsheetDefinition(_Strict):
    name: str = Field(default="flowsheet")
    components: List[str] = Field(min_length=1)
    property_package: Optional[PropertyPackageSpec] = None
    operations: List[OperationSpec] = Field(default_factory=list)
    streams: List[StreamSpec] = Field(default_factory=list)
    tear_streams: List[str] = Field(default_factory=list)
    # SolverSettings overrides
    solver: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Solve report
# ---------------------------------------------------------------------------


class SolveStatus(str, Enum):
    CONVERGED = "converged"
    DIVERGED = "diverged"
    INFEASIBLE = "infeasible"
    VALIDATION_ERROR = "validation_error"
    CANCELLED = "cancelled"


class StreamResult(BaseModel):
    id: str
    source: Optional[str] = None
    target: Optional[str] = None
    temperature: Optional[float] = None  # K
    pressure: Optional[float] = None  # Pa
    enthalpy: Optional[float] = None  # J/mol
    molar_flow: Optional[float] = None  # mol/s
    mass_flow: Optional[float] = None  # kg/s
    phase: Optional[str] = None
    vapor_fraction: Optional[float] = None
    molar_flows: Dict[str, float] = Field(default_factory=dict)
    is_tear: bool = False


class OperationResult(BaseModel):
    id: str
    kind: str
    duty: Optional[float] = None  # W
    mass_residual: Optional[float] = None  # kg/s, in - out
    energy_residual: Optional[float] = None  # W, in + duty - out
    info: Dict[str, Any] = Field(default_factory=dict)


class SolveReport(BaseModel):
    flowsheet_name: str
    status: SolveStatus
    message: str = ""
    operation_id: Optional[str] = None
    iteration: Optional[int] = None
    iterations: int = 0
    streams: List[StreamResult] = Field(default_factory=list)
    operations: List[OperationResult] = Field(default_factory=list)
    tear_streams: List[str] = Field(default_factory=list)
    tear_trace: Dict[str, List[float]] = Field(default_factory=dict)
    mass_balance_error: Optional[float] = None
    energy_balance_error: Optional[float] = None
    warnings: List[str] = Field(default_factory=list)
    diagnostics: Dict[str, Any] = Field(default_factory=dict)
    seed: Optional[int] = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]


class ValidationReport(BaseModel):
    flowsheet_name: str
    valid: bool
    message: str = ""
    operation_id: Optional[str] = None
    recycles: List[List[str]] = Field(default_factory=list)
    tear_streams: List[str] = Field(default_factory=list)
    calculation_order: List[str] = Field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return 0 if self.valid else EXIT_CODES[SolveStatus.VALIDATION_ERROR]


class ScenarioCreateRequest(BaseModel):
    flowsheet: FlowsheetDefinition
    description: Optional[str] = None


class ScenarioRunRequest(BaseModel):
    # SolverSettings overrides for this run only
    solver: Dict[str, Any] = Field(default_factory=dict)
    warm_start: bool = True


class ScenarioRunResponse(BaseModel):
    scenario_id: str
    result: SolveReport


EXIT_CODES: Dict[SolveStatus, int] = {
    SolveStatus.CONVERGED: 0,
    SolveStatus.DIVERGED: 1,
    SolveStatus.VALIDATION_ERROR: 2,
    SolveStatus.INFEASIBLE: 3,
    SolveStatus.CANCELLED: 4,
}
