from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, HTTPException

from . import __version__, schemas
from .errors import ValidationError
from .simulation_service import SimulationService

app = FastAPI(title="Flowsim Flowsheet API", version=__version__)
service = SimulationService()


@app.get("/healthz")
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/solve", response_model=schemas.SolveReport)
def solve_flowsheet(definition: schemas.FlowsheetDefinition) -> schemas.SolveReport:
    # Engine failures are part of the report; only transport errors are HTTP errors
    return service.solve(definition)


@app.post("/validate", response_model=schemas.ValidationReport)
def validate_flowsheet(definition: schemas.FlowsheetDefinition) -> schemas.ValidationReport:
    return service.validate(definition)


@app.post("/scenarios", response_model=dict)
def create_scenario(request: schemas.ScenarioCreateRequest) -> dict[str, str]:
    try:
        scenario_id = service.create_scenario(request)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return {"scenario_id": scenario_id}


@app.post("/scenarios/{scenario_id}/run", response_model=schemas.ScenarioRunResponse)
def run_scenario(
    scenario_id: str, request: Optional[schemas.ScenarioRunRequest] = None
) -> schemas.ScenarioRunResponse:
    try:
        result = service.run_scenario(scenario_id, request)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return schemas.ScenarioRunResponse(scenario_id=scenario_id, result=result)


@app.delete("/scenarios/{scenario_id}", status_code=204)
def delete_scenario(scenario_id: str) -> None:
    try:
        service.delete_scenario(scenario_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
