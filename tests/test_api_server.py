from __future__ import annotations

import pytest
from fastapi import HTTPException

from api import server
from api.server import (
    ConstraintPayload,
    DataSource,
    FacilityPayload,
    HourlyRow,
    OptimizerPayload,
    PlanRequest,
    ScenarioPayload,
    SensitivityPayload,
    create_scenario,
    get_run,
    get_scenario,
    health,
    list_runs,
    list_scenarios,
    plan,
    run_scenario,
)


def _small_plan(**overrides) -> PlanRequest:
    values = {
        "data": DataSource(sample_hours=48, sample_base_demand_kw=300.0),
        "optimizer": OptimizerPayload(max_iterations=20),
        "constraints": ConstraintPayload(max_budget=250_000.0),
    }
    values.update(overrides)
    return PlanRequest(**values)


def _rows(hours: int = 24):
    return [
        HourlyRow(
            hour=h,
            demand_kw=120.0,
            solar_yield=0.8 if 7 <= h <= 17 else 0.0,
            wind_yield=0.3,
            price_usd_per_kwh=0.15,
            carbon_g_per_kwh=450.0,
            outdoor_temp_c=18.0,
        )
        for h in range(hours)
    ]


def test_health() -> None:
    assert health() == {"status": "ok"}


def test_plan_with_sample_data() -> None:
    response = plan(_small_plan(sensitivity=SensitivityPayload(run_monte_carlo=True, iterations=100, seed=1)))

    assert response["success"] is True
    assert response["optimizer_status"] in ("optimal", "feasible")
    assert any("sample" in msg for msg in response["warnings"])
    assert response["summary"]["optimal_plan"]["total_cost"] <= 250_000.0
    assert [stage["name"] for stage in response["stages"]][-1] == "sensitivity"
    assert "dispatch_trace" not in response


def test_plan_with_uploaded_rows_and_facility() -> None:
    request = _small_plan(
        data=DataSource(hourly_rows=_rows(), use_sample_data=False),
        facility=FacilityPayload(average_it_load_kw=80.0),
        include_trace=True,
    )
    response = plan(request)

    assert response["success"] is True
    assert response["warnings"] == []
    assert len(response["dispatch_trace"]) == 24
    assert response["load_adjustment"]["status"] == "success"
    assert response["data_quality"]["has_temperature"] is True


def test_infeasible_plan_maps_to_422() -> None:
    request = _small_plan(constraints=ConstraintPayload(max_budget=500.0, min_renewable_fraction=0.95))

    with pytest.raises(HTTPException) as excinfo:
        plan(request)
    assert excinfo.value.status_code == 422


def test_invalid_rows_map_to_400() -> None:
    rows = _rows()
    rows[3] = rows[3].model_copy(update={"solar_yield": 2.0, "demand_kw": -5.0})
    request = _small_plan(data=DataSource(hourly_rows=rows, use_sample_data=False))

    with pytest.raises(HTTPException) as excinfo:
        plan(request)
    assert excinfo.value.status_code == 400


def test_data_source_requires_rows_or_sample() -> None:
    with pytest.raises(ValueError):
        DataSource(use_sample_data=False)


def test_scenario_create_list_get_and_run() -> None:
    created = create_scenario(ScenarioPayload(name="  campus  ", description="pilot", plan=_small_plan()))

    assert created["name"] == "campus"
    assert get_scenario(created["id"])["plan"]["constraints"]["max_budget"] == 250_000.0
    assert created["id"] in [item["id"] for item in list_scenarios()["scenarios"]]

    run = run_scenario(created["id"])
    assert run["status"] == "completed"
    assert run["scenario_id"] == created["id"]
    assert get_run(run["id"])["output"]["success"] is True
    assert [item["id"] for item in list_runs(scenario_id=created["id"])["runs"]] == [run["id"]]


def test_failed_scenario_run_is_stored_as_failed() -> None:
    failing = _small_plan(constraints=ConstraintPayload(max_budget=500.0, min_renewable_fraction=0.95))
    created = create_scenario(ScenarioPayload(name="too-small", plan=failing))

    run = run_scenario(created["id"])

    assert run["status"] == "failed"
    assert run["output"]["optimizer_status"] == "infeasible"


def test_blank_scenario_name_rejected() -> None:
    with pytest.raises(ValueError):
        ScenarioPayload(name="   ")


@pytest.mark.parametrize("lookup", [server.get_scenario, server.get_run])
def test_unknown_ids_return_404(lookup) -> None:
    with pytest.raises(HTTPException) as excinfo:
        lookup("does-not-exist")
    assert excinfo.value.status_code == 404
