"""
Definition-in, report-out facade used by the CLI and the HTTP API.

Every engine outcome is mapped onto a machine-readable report status; no
exception escapes ``solve`` except programming errors.
"""

from __future__ import annotations

import json
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import pydantic
from loguru import logger

from . import schemas
from .cancellation import CancellationToken
from .config import SolverSettings
from .errors import (
    ConvergenceError,
    CyclicDependencyError,
    OperationError,
    SolveCancelled,
    ValidationError,
)
from .flowsheet import Flowsheet
from .flowsheet_solver import FlowsheetSolver, SolveResult
from .ideal_package import IdealPropertyPackage
from .properties import PropertyPackage
from .thermo_engine import ThermoPropertyPackage

DefinitionLike = Union[schemas.FlowsheetDefinition, Mapping[str, Any]]


@dataclass
class SolveOutcome:
    report: schemas.SolveReport
    result: Optional[SolveResult] = None


@dataclass
class Scenario:
    flowsheet: Flowsheet
    properties: PropertyPackage
    description: Optional[str] = None
    last_result: Optional[SolveResult] = None
    lock: threading.Lock = field(default_factory=threading.Lock)


def load_definition(path: Union[str, Path]) -> schemas.FlowsheetDefinition:
    """Read a JSON flowsheet definition file."""
    text = Path(path).read_text(encoding="utf-8")
    return schemas.FlowsheetDefinition.model_validate_json(text)


def save_definition(definition: schemas.FlowsheetDefinition, path: Union[str, Path]) -> None:
    Path(path).write_text(definition.model_dump_json(indent=2), encoding="utf-8")


class SimulationService:
    def __init__(self, settings: Optional[SolverSettings] = None) -> None:
        self.settings = settings or SolverSettings()
        self._package_cache: Dict[str, PropertyPackage] = {}
        self._scenario_store: Dict[str, Scenario] = {}

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    def build_property_package(self, spec) -> PropertyPackage:
        """Instantiate (or reuse) the property package described by ``spec``."""
        if spec is None:
            raise ValidationError("Flowsheet definition has no property package")
        cache_key = json.dumps(spec.model_dump(mode="json"), sort_keys=True)
        package = self._package_cache.get(cache_key)
        if package is not None:
            return package
        try:
            if isinstance(spec, schemas.IdealPackageSpec):
                package = IdealPropertyPackage(spec.components)
            else:
                package = ThermoPropertyPackage(spec.components, property_package=spec.package)
        except ValueError as exc:
            raise ValidationError(f"Failed to initialise property package: {exc}") from exc
        self._package_cache[cache_key] = package
        return package

    def build(self, definition: DefinitionLike) -> Tuple[Flowsheet, PropertyPackage]:
        if not isinstance(definition, schemas.FlowsheetDefinition):
            definition = schemas.FlowsheetDefinition.model_validate(definition)
        flowsheet = Flowsheet.from_definition(definition)
        return flowsheet, self.build_property_package(definition.property_package)

    def settings_for(self, flowsheet: Flowsheet, **overrides: Any) -> SolverSettings:
        return self.settings.merged(flowsheet.solver_overrides, **overrides)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def validate(self, definition: DefinitionLike) -> schemas.ValidationReport:
        name = _definition_name(definition)
        try:
            flowsheet, properties = self.build(definition)
            FlowsheetSolver(flowsheet, properties).precheck()
            recycles = flowsheet.recycle_components()
            tears = list(flowsheet.tear_streams)
            for scc in recycles:
                tears.extend(t for t in flowsheet.select_tear_streams(scc) if t not in tears)
            plan = flowsheet.sequencer.plan(tears)
        except pydantic.ValidationError as exc:
            return schemas.ValidationReport(flowsheet_name=name, valid=False, message=str(exc))
        except ValidationError as exc:
            return schemas.ValidationReport(
                flowsheet_name=name, valid=False, message=str(exc), operation_id=exc.operation_id
            )
        except OperationError as exc:
            return schemas.ValidationReport(
                flowsheet_name=name, valid=False, message=exc.message, operation_id=exc.operation_id
            )
        except CyclicDependencyError as exc:
            return schemas.ValidationReport(flowsheet_name=name, valid=False, message=str(exc))
        return schemas.ValidationReport(
            flowsheet_name=flowsheet.name,
            valid=True,
            recycles=[sorted(scc) for scc in recycles],
            tear_streams=tears,
            calculation_order=list(plan.order),
        )

    def solve(
        self,
        definition: DefinitionLike,
        cancel: Optional[CancellationToken] = None,
        **overrides: Any,
    ) -> schemas.SolveReport:
        """Build and solve a definition; ``overrides`` are SolverSettings fields."""
        name = _definition_name(definition)
        try:
            flowsheet, properties = self.build(definition)
            settings = self.settings_for(flowsheet, **overrides)
        except pydantic.ValidationError as exc:
            return schemas.SolveReport(
                flowsheet_name=name, status=schemas.SolveStatus.VALIDATION_ERROR, message=str(exc)
            )
        except ValidationError as exc:
            return schemas.SolveReport(
                flowsheet_name=name,
                status=schemas.SolveStatus.VALIDATION_ERROR,
                message=str(exc),
                operation_id=exc.operation_id,
            )
        return self.solve_flowsheet(flowsheet, properties, settings, cancel=cancel).report

    def solve_flowsheet(
        self,
        flowsheet: Flowsheet,
        properties: PropertyPackage,
        settings: Optional[SolverSettings] = None,
        cancel: Optional[CancellationToken] = None,
        warm_start: Optional[SolveResult] = None,
    ) -> SolveOutcome:
        settings = settings or self.settings_for(flowsheet)
        solver = FlowsheetSolver(flowsheet, properties, settings, cancel=cancel)
        report = dict(flowsheet_name=flowsheet.name, seed=settings.seed)
        try:
            result = solver.solve(initial_guesses=warm_start.streams if warm_start else None)
        except ValidationError as exc:
            return SolveOutcome(schemas.SolveReport(
                status=schemas.SolveStatus.VALIDATION_ERROR,
                message=str(exc),
                operation_id=exc.operation_id,
                **report,
            ))
        except CyclicDependencyError as exc:
            logger.error("Sequencing failed: {}", exc)
            return SolveOutcome(schemas.SolveReport(
                status=schemas.SolveStatus.VALIDATION_ERROR, message=str(exc), **report
            ))
        except OperationError as exc:
            return SolveOutcome(schemas.SolveReport(
                status=schemas.SolveStatus.INFEASIBLE,
                message=f"{type(exc).__name__}: {exc.message}",
                operation_id=exc.operation_id,
                iteration=exc.iteration,
                iterations=exc.iteration or 0,
                tear_trace=exc.trace,
                **report,
            ))
        except ConvergenceError as exc:
            return SolveOutcome(schemas.SolveReport(
                status=schemas.SolveStatus.DIVERGED,
                message=f"{type(exc).__name__}: {exc.message}",
                iteration=exc.iteration,
                iterations=exc.iteration,
                tear_trace=exc.trace,
                diagnostics={"best_residual": exc.best_residual, "best_iterate": exc.best_iterate},
                **report,
            ))
        except SolveCancelled as exc:
            return SolveOutcome(schemas.SolveReport(
                status=schemas.SolveStatus.CANCELLED,
                message=str(exc),
                iteration=exc.iteration,
                **report,
            ))
        return SolveOutcome(self.to_report(flowsheet, result), result)

    # ------------------------------------------------------------------
    # Scenarios (stored flowsheets re-solved from their last result)
    # ------------------------------------------------------------------

    def create_scenario(self, request: schemas.ScenarioCreateRequest) -> str:
        flowsheet, properties = self.build(request.flowsheet)
        scenario_id = f"scn-{uuid.uuid4().hex[:12]}"
        self._scenario_store[scenario_id] = Scenario(flowsheet, properties, request.description)
        logger.info("Created scenario {} for flowsheet '{}'", scenario_id, flowsheet.name)
        return scenario_id

    def run_scenario(
        self,
        scenario_id: str,
        request: Optional[schemas.ScenarioRunRequest] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> schemas.SolveReport:
        scenario = self._scenario_store.get(scenario_id)
        if scenario is None:
            raise KeyError(f"Scenario {scenario_id} not found")
        request = request or schemas.ScenarioRunRequest()
        with scenario.lock:
            try:
                settings = self.settings_for(scenario.flowsheet).merged(request.solver)
            except pydantic.ValidationError as exc:
                return schemas.SolveReport(
                    flowsheet_name=scenario.flowsheet.name,
                    status=schemas.SolveStatus.VALIDATION_ERROR,
                    message=str(exc),
                )
            warm = scenario.last_result if request.warm_start else None
            outcome = self.solve_flowsheet(
                scenario.flowsheet, scenario.properties, settings, cancel=cancel, warm_start=warm
            )
            if outcome.result is not None:
                scenario.last_result = outcome.result
        return outcome.report

    def delete_scenario(self, scenario_id: str) -> None:
        if self._scenario_store.pop(scenario_id, None) is None:
            raise KeyError(f"Scenario {scenario_id} not found")

    # ------------------------------------------------------------------
    # Report conversion
    # ------------------------------------------------------------------

    @staticmethod
    def to_report(flowsheet: Flowsheet, result: SolveResult) -> schemas.SolveReport:
        tears = set(result.tear_streams)
        streams = []
        for sid, stream in flowsheet.streams.items():
            state = result.streams[sid]
            streams.append(schemas.StreamResult(
                id=sid,
                source=f"{stream.source[0]}:{stream.source[1]}" if stream.source else None,
                target=f"{stream.target[0]}:{stream.target[1]}" if stream.target else None,
                temperature=state.temperature,
                pressure=state.pressure,
                enthalpy=state.enthalpy,
                molar_flow=state.molar_flow,
                mass_flow=state.mass_flow,
                phase=state.phase if not state.is_empty else "empty",
                vapor_fraction=state.vapor_fraction,
                molar_flows=state.flows_by_name(),
                is_tear=sid in tears,
            ))

        operations = []
        for op_id, op in flowsheet.operations.items():
            mass_res, energy_res = result.residuals[op_id]
            output = result.outputs[op_id]
            operations.append(schemas.OperationResult(
                id=op_id,
                kind=op.kind,
                duty=output.duty,
                mass_residual=mass_res,
                energy_residual=energy_res,
                info=output.info,
            ))

        diagnostics = dict(result.diagnostics)
        if result.element_balance_error is not None:
            diagnostics["element_balance_error"] = result.element_balance_error
        return schemas.SolveReport(
            flowsheet_name=result.flowsheet_name,
            status=schemas.SolveStatus.CONVERGED,
            message=f"Converged in {result.iterations} iteration(s)",
            iterations=result.iterations,
            streams=streams,
            operations=operations,
            tear_streams=result.tear_streams,
            tear_trace=result.tear_trace,
            mass_balance_error=result.mass_balance_error,
            energy_balance_error=result.energy_balance_error,
            warnings=result.warnings,
            diagnostics=diagnostics,
            seed=result.seed,
        )


def _definition_name(definition: DefinitionLike) -> str:
    if isinstance(definition, schemas.FlowsheetDefinition):
        return definition.name
    return str(definition.get("name", "flowsheet"))
