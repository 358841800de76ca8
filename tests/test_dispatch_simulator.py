from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from services.dispatch_simulator import (
    BatteryLimits,
    DispatchConfig,
    check_energy_balance,
    dispatch_step,
    dispatch_to_frame,
    simulate_dispatch,
    summarize_dispatch,
)
from services.errors import ValidationError
from services.planning_models import CapacitySolution, ConstraintSet, CostModel
from utils.sample_data import make_synthetic_year

COSTS = CostModel(solar_capex_per_kw=1000.0, wind_capex_per_kw=1500.0, battery_capex_per_kwh=300.0)


def _frame(demand, solar, wind=0.0, price=0.1, carbon=400.0) -> pd.DataFrame:
    n = len(demand)
    return pd.DataFrame(
        {
            "hour": np.arange(n),
            "demand_kw": demand,
            "solar_yield": solar if np.ndim(solar) else [solar] * n,
            "wind_yield": wind if np.ndim(wind) else [wind] * n,
            "price_usd_per_kwh": [price] * n,
            "carbon_g_per_kwh": [carbon] * n,
        }
    )


def _daylight_frame() -> pd.DataFrame:
    solar = [1.0 if 6 <= h <= 18 else 0.0 for h in range(24)]
    return _frame([100.0] * 24, solar)


def test_surplus_charges_battery_then_curtails() -> None:
    limits = BatteryLimits.from_config(100.0, 0.9, DispatchConfig())
    next_soc, record = dispatch_step(50.0, 0, 50.0, 100.0, 0.0, limits)

    assert record.battery_charge_kw == pytest.approx(25.0)
    assert record.curtailment_kw == pytest.approx(25.0)
    assert record.solar_delivered_kw == pytest.approx(50.0)
    assert record.grid_import_kw == 0.0
    assert next_soc == pytest.approx(50.0 + 25.0 * 0.9)


def test_deficit_discharge_stops_at_soc_floor() -> None:
    limits = BatteryLimits.from_config(100.0, 0.9, DispatchConfig())
    next_soc, record = dispatch_step(12.0, 3, 50.0, 0.0, 0.0, limits)

    assert record.battery_discharge_kw == pytest.approx(1.8)
    assert record.grid_import_kw == pytest.approx(48.2)
    assert next_soc == pytest.approx(10.0)


def test_generation_split_between_solar_and_wind_when_surplus() -> None:
    limits = BatteryLimits.from_config(0.0, 0.9, DispatchConfig())
    _, record = dispatch_step(0.0, 0, 60.0, 90.0, 30.0, limits)

    assert record.solar_delivered_kw == pytest.approx(45.0)
    assert record.wind_delivered_kw == pytest.approx(15.0)
    assert record.curtailment_kw == pytest.approx(60.0)


def test_energy_balance_and_soc_bounds_over_synthetic_week() -> None:
    hourly = make_synthetic_year(hours=168, base_demand_kw=500.0, seed=11)
    solution = CapacitySolution.build(400.0, 300.0, 800.0, COSTS)
    config = DispatchConfig()
    trace = simulate_dispatch(solution, hourly, ConstraintSet(battery_efficiency=0.9), config)

    assert len(trace) == 168
    assert check_energy_balance(trace) == []
    frame = dispatch_to_frame(trace)
    assert (frame["battery_soc_kwh"] >= 800.0 * config.min_soc - 1e-9).all()
    assert (frame["battery_soc_kwh"] <= 800.0 * config.max_soc + 1e-9).all()
    assert (frame["battery_charge_kw"] <= 800.0 * config.max_charge_rate + 1e-9).all()
    assert (frame["battery_discharge_kw"] <= 800.0 * config.max_discharge_rate + 1e-9).all()
    assert ((frame["battery_charge_kw"] > 0) & (frame["battery_discharge_kw"] > 0)).sum() == 0
    assert (frame[["grid_import_kw", "curtailment_kw"]] >= 0).all().all()


def test_soc_drop_per_hour_bounded_by_rate_over_efficiency() -> None:
    hourly = _frame([300.0] * 12, 0.0)
    solution = CapacitySolution.build(0.0, 0.0, 400.0, COSTS)
    config = DispatchConfig(initial_soc=0.95)
    trace = simulate_dispatch(solution, hourly, ConstraintSet(battery_efficiency=0.8), config)

    soc = [400.0 * 0.95] + [record.battery_soc_kwh for record in trace]
    drops = np.diff(soc) * -1
    assert drops.max() <= 400.0 * config.max_discharge_rate / 0.8 + 1e-9


def test_simulation_is_idempotent() -> None:
    hourly = make_synthetic_year(hours=72, seed=5)
    solution = CapacitySolution.build(300.0, 200.0, 500.0, COSTS)
    constraints = ConstraintSet()

    assert simulate_dispatch(solution, hourly, constraints) == simulate_dispatch(solution, hourly, constraints)


def test_daylight_only_solar_covers_demand_in_generating_hours() -> None:
    hourly = _daylight_frame()
    solution = CapacitySolution.build(105.0, 0.0, 0.0, COSTS)
    trace = simulate_dispatch(solution, hourly, ConstraintSet())

    for record in trace:
        if 6 <= record.hour <= 18:
            assert record.grid_import_kw == 0.0
        else:
            assert record.grid_import_kw == pytest.approx(100.0)

    summary = summarize_dispatch(trace, hourly)
    assert summary.renewable_fraction == pytest.approx(1300.0 / 2400.0)
    assert summary.flags["grid_import_hours"] == 11
    assert summary.flags["curtailment_hours"] == 13
    assert summary.annualization_factor == pytest.approx(365.0)


def test_summary_costs_use_hourly_prices_and_carbon() -> None:
    hourly = _frame([10.0, 10.0], 0.0)
    hourly["price_usd_per_kwh"] = [0.1, 0.3]
    hourly["carbon_g_per_kwh"] = [1000.0, 0.0]
    trace = simulate_dispatch(CapacitySolution.zero(), hourly, ConstraintSet())
    summary = summarize_dispatch(trace, hourly)

    assert summary.grid_cost_usd == pytest.approx(4.0)
    assert summary.grid_emissions_kg == pytest.approx(10.0)
    assert summary.grid_only_cost_usd == pytest.approx(summary.grid_cost_usd)
    assert summary.renewable_fraction == 0.0


def test_summary_rejects_mismatched_lengths() -> None:
    hourly = _frame([10.0, 10.0, 10.0], 0.5)
    trace = simulate_dispatch(CapacitySolution.zero(), hourly, ConstraintSet())

    with pytest.raises(ValidationError):
        summarize_dispatch(trace[:2], hourly)


def test_invalid_dispatch_config_raises() -> None:
    with pytest.raises(ValidationError):
        DispatchConfig(min_soc=0.9, max_soc=0.5).validate()
