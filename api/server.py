from __future__ import annotations

import os
import uuid
from datetime import datetime, timezone
from functools import lru_cache
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, field_validator, model_validator

from services.capacity_optimizer import OptimizerConfig
from services.cooling_adjustment import DEFAULT_BASELINE_PUE, FacilityLoad
from services.dispatch_simulator import DispatchConfig
from services.errors import InfeasibleError, ValidationError
from services.pipeline import PipelineOutput, PipelineRequest, run_pipeline
from services.planning_models import (
    DEFAULT_BATTERY_OPEX_RATE,
    DEFAULT_SOLAR_OPEX_RATE,
    DEFAULT_WIND_OPEX_RATE,
    ConstraintSet,
    CostModel,
)
from services.sensitivity import SensitivityOptions, VarianceFactors
from services.vppa import DEFAULT_CONTRACT_YEARS, VPPAOptions
from utils.io import hourly_frame_from_rows
from utils.sample_data import make_synthetic_year

_DEFAULT_OPTIMIZER = OptimizerConfig()
_DEFAULT_DISPATCH = DispatchConfig()
_DEFAULT_CONSTRAINTS = ConstraintSet()
_DEFAULT_VARIANCE = VarianceFactors()


class HourlyRow(BaseModel):
    hour: Optional[int] = None
    demand_kw: float
    solar_yield: float
    wind_yield: float
    price_usd_per_kwh: float
    carbon_g_per_kwh: float
    outdoor_temp_c: Optional[float] = None
    timestamp: Optional[str] = None


class DataSource(BaseModel):
    hourly_rows: Optional[List[HourlyRow]] = None
    use_sample_data: bool = True
    sample_hours: int = Field(default=8760, ge=24, le=8760)
    sample_base_demand_kw: float = Field(default=1000.0, ge=0.0)
    sample_seed: Optional[int] = 7

    @model_validator(mode="after")
    def _at_least_one_source(self) -> "DataSource":
        if not self.hourly_rows and not self.use_sample_data:
            raise ValueError("Provide hourly_rows or enable sample data.")
        return self


class CostPayload(BaseModel):
    """Pydantic mirror of :class:`CostModel`; missing OPEX is derived from CAPEX."""

    solar_capex_per_kw: float = Field(default=1200.0, ge=0.0)
    wind_capex_per_kw: float = Field(default=1500.0, ge=0.0)
    battery_capex_per_kwh: float = Field(default=300.0, ge=0.0)
    solar_opex_per_kw_year: Optional[float] = Field(default=None, ge=0.0)
    wind_opex_per_kw_year: Optional[float] = Field(default=None, ge=0.0)
    battery_opex_per_kwh_year: Optional[float] = Field(default=None, ge=0.0)
    carbon_usd_per_ton: float = Field(default=50.0, ge=0.0)
    discount_rate: float = Field(default=0.08, ge=0.0)
    project_lifetime_years: int = Field(default=20, ge=1)

    def build(self) -> CostModel:
        def _opex(value: Optional[float], capex: float, rate: float) -> float:
            return capex * rate if value is None else value

        return CostModel(
            solar_capex_per_kw=self.solar_capex_per_kw,
            wind_capex_per_kw=self.wind_capex_per_kw,
            battery_capex_per_kwh=self.battery_capex_per_kwh,
            solar_opex_per_kw_year=_opex(self.solar_opex_per_kw_year, self.solar_capex_per_kw, DEFAULT_SOLAR_OPEX_RATE),
            wind_opex_per_kw_year=_opex(self.wind_opex_per_kw_year, self.wind_capex_per_kw, DEFAULT_WIND_OPEX_RATE),
            battery_opex_per_kwh_year=_opex(
                self.battery_opex_per_kwh_year, self.battery_capex_per_kwh, DEFAULT_BATTERY_OPEX_RATE
            ),
            carbon_cost_per_kg_co2=self.carbon_usd_per_ton / 1000.0,
            discount_rate=self.discount_rate,
            project_lifetime_years=self.project_lifetime_years,
        )


class ConstraintPayload(BaseModel):
    max_budget: Optional[float] = None
    max_solar_kw: Optional[float] = None
    max_wind_kw: Optional[float] = None
    max_battery_kwh: Optional[float] = None
    min_renewable_fraction: float = Field(default=_DEFAULT_CONSTRAINTS.min_renewable_fraction, ge=0.0, le=1.0)
    battery_efficiency: float = Field(default=_DEFAULT_CONSTRAINTS.battery_efficiency, gt=0.0, le=1.0)

    def build(self) -> ConstraintSet:
        return ConstraintSet(**self.model_dump())


class OptimizerPayload(BaseModel):
    max_iterations: int = _DEFAULT_OPTIMIZER.max_iterations
    convergence_threshold: float = _DEFAULT_OPTIMIZER.convergence_threshold
    step_size: float = _DEFAULT_OPTIMIZER.step_size
    representative_hours: int = _DEFAULT_OPTIMIZER.representative_hours
    timeout_seconds: Optional[float] = _DEFAULT_OPTIMIZER.timeout_seconds

    def build(self) -> OptimizerConfig:
        return OptimizerConfig(**self.model_dump())


class DispatchPayload(BaseModel):
    max_charge_rate: float = _DEFAULT_DISPATCH.max_charge_rate
    max_discharge_rate: float = _DEFAULT_DISPATCH.max_discharge_rate
    min_soc: float = _DEFAULT_DISPATCH.min_soc
    max_soc: float = _DEFAULT_DISPATCH.max_soc
    initial_soc: float = _DEFAULT_DISPATCH.initial_soc

    def build(self) -> DispatchConfig:
        return DispatchConfig(**self.model_dump())


class FacilityPayload(BaseModel):
    average_it_load_kw: float
    peak_it_load_kw: Optional[float] = None
    baseline_pue: float = DEFAULT_BASELINE_PUE

    def build(self) -> FacilityLoad:
        return FacilityLoad(**self.model_dump())


class VPPAPayload(BaseModel):
    consider_vppa: bool = False
    strike_price_usd_per_mwh: Optional[float] = None
    contract_duration_years: int = Field(default=DEFAULT_CONTRACT_YEARS, ge=1)
    forward_curve: Optional[List[float]] = None
    region: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def build(self) -> VPPAOptions:
        return VPPAOptions.from_dict(self.model_dump())


class SensitivityPayload(BaseModel):
    run_monte_carlo: bool = False
    iterations: int = Field(default=300, ge=1, le=100_000)
    price_volatility: float = Field(default=_DEFAULT_VARIANCE.price_volatility, ge=0.0)
    load_variance: float = Field(default=_DEFAULT_VARIANCE.load_variance, ge=0.0)
    renewable_variance: float = Field(default=_DEFAULT_VARIANCE.renewable_variance, ge=0.0)
    seed: Optional[int] = None

    def build(self) -> SensitivityOptions:
        return SensitivityOptions(
            run_monte_carlo=self.run_monte_carlo,
            iterations=self.iterations,
            variance_factors=VarianceFactors(
                price_volatility=self.price_volatility,
                load_variance=self.load_variance,
                renewable_variance=self.renewable_variance,
            ),
            seed=self.seed,
        )


class PlanRequest(BaseModel):
    name: Optional[str] = None
    data: DataSource = Field(default_factory=DataSource)
    costs: CostPayload = Field(default_factory=CostPayload)
    constraints: ConstraintPayload = Field(default_factory=ConstraintPayload)
    optimizer: OptimizerPayload = Field(default_factory=OptimizerPayload)
    dispatch: DispatchPayload = Field(default_factory=DispatchPayload)
    facility: Optional[FacilityPayload] = None
    vppa: VPPAPayload = Field(default_factory=VPPAPayload)
    sensitivity: SensitivityPayload = Field(default_factory=SensitivityPayload)
    horizon_years: Optional[int] = Field(default=None, ge=1)
    include_trace: bool = False


class ScenarioPayload(BaseModel):
    name: str
    description: Optional[str] = None
    plan: PlanRequest = Field(default_factory=PlanRequest)

    @field_validator("name")
    @classmethod
    def _require_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("name cannot be blank")
        return value.strip()


class ScenarioStore:
    """In-memory scenario and run records (create/read/list only)."""

    def __init__(self) -> None:
        self._scenarios: Dict[str, Dict[str, Any]] = {}
        self._runs: Dict[str, Dict[str, Any]] = {}
        self._lock = Lock()

    def create_scenario(self, payload: ScenarioPayload) -> Dict[str, Any]:
        record = {
            "id": str(uuid.uuid4()),
            "name": payload.name,
            "description": payload.description,
            "created_at": _now(),
            "plan": payload.plan.model_dump(),
        }
        with self._lock:
            self._scenarios[record["id"]] = record
        return record

    def get_scenario(self, scenario_id: str) -> Dict[str, Any]:
        with self._lock:
            if scenario_id not in self._scenarios:
                raise HTTPException(status_code=404, detail=f"Scenario '{scenario_id}' not found.")
            return dict(self._scenarios[scenario_id])

    def list_scenarios(self, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        with self._lock:
            records = sorted(self._scenarios.values(), key=lambda item: item["created_at"], reverse=True)
        return [_scenario_listing(record) for record in records[offset : offset + limit]]

    def store_run(self, scenario_id: Optional[str], response: Dict[str, Any]) -> Dict[str, Any]:
        record = {
            "id": str(uuid.uuid4()),
            "scenario_id": scenario_id,
            "status": "completed" if response["success"] else "failed",
            "created_at": _now(),
            "output": response,
        }
        with self._lock:
            self._runs[record["id"]] = record
        return record

    def get_run(self, run_id: str) -> Dict[str, Any]:
        with self._lock:
            if run_id not in self._runs:
                raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found.")
            return dict(self._runs[run_id])

    def list_runs(self, scenario_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            runs = [run for run in self._runs.values() if scenario_id is None or run["scenario_id"] == scenario_id]
        return [{key: run[key] for key in ("id", "scenario_id", "status", "created_at")} for run in runs]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _scenario_listing(record: Dict[str, Any]) -> Dict[str, Any]:
    return {key: record[key] for key in ("id", "name", "description", "created_at")}


@lru_cache(maxsize=8)
def _sample_data(hours: int, base_demand_kw: float, seed: Optional[int]) -> pd.DataFrame:
    return make_synthetic_year(hours=hours, base_demand_kw=base_demand_kw, seed=seed)


def _resolve_hourly_data(data: DataSource) -> Tuple[pd.DataFrame, List[str]]:
    warnings: List[str] = []
    if data.hourly_rows:
        try:
            df = hourly_frame_from_rows(row.model_dump(exclude_none=True) for row in data.hourly_rows)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return df, warnings
    df = _sample_data(data.sample_hours, data.sample_base_demand_kw, data.sample_seed).copy()
    warnings.append(f"Using synthetic sample data ({data.sample_hours} hours).")
    return df, warnings


def _build_pipeline_request(plan: PlanRequest, hourly_df: pd.DataFrame) -> PipelineRequest:
    return PipelineRequest(
        hourly_df=hourly_df,
        cost_model=plan.costs.build(),
        constraints=plan.constraints.build(),
        optimizer_config=plan.optimizer.build(),
        dispatch_config=plan.dispatch.build(),
        facility=plan.facility.build() if plan.facility is not None else None,
        vppa=plan.vppa.build(),
        sensitivity=plan.sensitivity.build(),
        horizon_years=plan.horizon_years,
        name=plan.name,
    )


def _raise_for_fatal(output: PipelineOutput) -> None:
    error = output.fatal_error
    if error is None:
        return
    if isinstance(error.exception, ValidationError):
        raise HTTPException(status_code=400, detail=error.message)
    if isinstance(error.exception, InfeasibleError):
        raise HTTPException(status_code=422, detail=error.message)
    raise HTTPException(status_code=500, detail=f"Pipeline failed at stage '{error.stage}': {error.message}")


def _execute_plan(plan_request: PlanRequest) -> Tuple[PipelineOutput, Dict[str, Any]]:
    hourly_df, warnings = _resolve_hourly_data(plan_request.data)
    output = run_pipeline(_build_pipeline_request(plan_request, hourly_df))
    response = output.to_dict(include_trace=plan_request.include_trace)
    response["warnings"] = warnings
    return output, response


store = ScenarioStore()
app = FastAPI(
    title="RenewPlan API",
    description="REST API for renewable capacity planning, dispatch and financial analysis.",
    version="0.1.0",
)


_default_cors_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]
_allowed_origins_env = os.getenv("RENEWPLAN_CORS_ORIGINS", "")
_allowed_origins = [
    origin.strip()
    for origin in _allowed_origins_env.split(",")
    if origin.strip()
] or _default_cors_origins

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health() -> Dict[str, str]:
    """Simple liveness probe for container orchestrators."""
    return {"status": "ok"}


@app.post("/plan")
def plan(request: PlanRequest) -> Dict[str, Any]:
    """Run the full planning pipeline once and return the unified output."""

    output, response = _execute_plan(request)
    _raise_for_fatal(output)
    return response


@app.post("/scenarios", status_code=201)
def create_scenario(payload: ScenarioPayload) -> Dict[str, Any]:
    return store.create_scenario(payload)


@app.get("/scenarios")
def list_scenarios(limit: int = 50, offset: int = 0) -> Dict[str, Any]:
    scenarios = store.list_scenarios(limit=limit, offset=offset)
    return {"scenarios": scenarios, "count": len(scenarios)}


@app.get("/scenarios/{scenario_id}")
def get_scenario(scenario_id: str) -> Dict[str, Any]:
    return store.get_scenario(scenario_id)


@app.post("/scenarios/{scenario_id}/runs", status_code=201)
def run_scenario(scenario_id: str) -> Dict[str, Any]:
    """Run a stored scenario; failed pipelines are stored with status 'failed'."""

    scenario = store.get_scenario(scenario_id)
    _, response = _execute_plan(PlanRequest.model_validate(scenario["plan"]))
    return store.store_run(scenario_id, response)


@app.get("/runs")
def list_runs(scenario_id: Optional[str] = None) -> Dict[str, Any]:
    runs = store.list_runs(scenario_id)
    return {"runs": runs, "count": len(runs)}


@app.get("/runs/{run_id}")
def get_run(run_id: str) -> Dict[str, Any]:
    return store.get_run(run_id)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.server:app", host="0.0.0.0", port=8000, reload=False)
