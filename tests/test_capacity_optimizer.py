from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from services.capacity_optimizer import (
    OptimizerConfig,
    evaluate_objective,
    greedy_seed,
    optimize_capacity,
    refine_solution,
)
from services.dispatch_simulator import simulate_dispatch
from services.errors import InfeasibleError, ValidationError
from services.planning_models import CapacitySolution, ConstraintSet, CostModel
from utils.sample_data import make_synthetic_year

COSTS = CostModel.from_capex(1000.0, 1500.0, 300.0, carbon_usd_per_ton=50.0)


def _constant_frame(hours: int = 24, demand: float = 100.0, solar: float = 0.5, price: float = 0.2) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "hour": np.arange(hours),
            "demand_kw": [demand] * hours,
            "solar_yield": [solar] * hours,
            "wind_yield": [0.0] * hours,
            "price_usd_per_kwh": [price] * hours,
            "carbon_g_per_kwh": [400.0] * hours,
        }
    )


def _daylight_frame() -> pd.DataFrame:
    frame = _constant_frame(price=0.15)
    frame["solar_yield"] = [1.0 if 6 <= h <= 18 else 0.0 for h in range(24)]
    return frame


def test_refine_climbs_stub_objective_until_budget_binds() -> None:
    seed = CapacitySolution.zero()
    constraints = ConstraintSet(max_budget=55_000.0)
    calls = []

    def objective(solution: CapacitySolution) -> float:
        calls.append(solution)
        return -solution.solar_kw

    best, value, iterations, evaluations, terminated_by = refine_solution(
        seed, objective, COSTS, constraints, OptimizerConfig()
    )

    assert best.solar_kw == pytest.approx(50.0)
    assert value == pytest.approx(-50.0)
    assert iterations == 5
    assert evaluations == len(calls)
    assert terminated_by == "converged"
    assert all(candidate.total_cost <= 55_000.0 for candidate in calls)


def test_refine_stops_at_iteration_cap() -> None:
    best, _, iterations, _, terminated_by = refine_solution(
        CapacitySolution.zero(),
        lambda solution: -solution.solar_kw,
        COSTS,
        ConstraintSet(),
        OptimizerConfig(max_iterations=2),
    )

    assert iterations == 2
    assert best.solar_kw == pytest.approx(20.0)
    assert terminated_by == "max_iterations"


def test_refine_respects_capacity_ceiling() -> None:
    best, _, _, _, _ = refine_solution(
        CapacitySolution.zero(),
        lambda solution: -solution.solar_kw - solution.battery_kwh,
        COSTS,
        ConstraintSet(max_solar_kw=30.0, max_battery_kwh=10.0),
        OptimizerConfig(),
    )

    assert best.solar_kw == pytest.approx(30.0)
    assert best.battery_kwh == pytest.approx(10.0)


def test_no_improving_move_returns_seed_with_zero_iterations() -> None:
    seed = CapacitySolution.build(10.0, 0.0, 0.0, COSTS)
    best, _, iterations, _, terminated_by = refine_solution(
        seed, lambda solution: 1.0, COSTS, ConstraintSet(), OptimizerConfig()
    )

    assert best == seed
    assert iterations == 0
    assert terminated_by == "converged"


def test_optimize_with_injected_objective_skips_simulation() -> None:
    def exploding_simulator(*args, **kwargs):
        raise AssertionError("simulator should not run when objective_fn is injected")

    result = optimize_capacity(
        _constant_frame(),
        COSTS,
        ConstraintSet(max_budget=20_000.0, max_battery_kwh=0.0),
        simulate_fn=exploding_simulator,
        objective_fn=lambda solution: -solution.solar_kw,
    )

    assert result.status == "optimal"
    # Seed spends 80% of the budget on solar; the next 10 kW step would overshoot.
    assert result.solution.solar_kw == pytest.approx(16.0)
    assert result.solution.total_cost <= 20_000.0


def test_daylight_solar_sized_to_cover_generating_hours() -> None:
    hourly = _daylight_frame()
    result = optimize_capacity(hourly, COSTS, ConstraintSet(max_battery_kwh=0.0))

    solution = result.solution
    assert solution.solar_kw >= 100.0
    assert solution.solar_kw < 115.0
    assert solution.wind_kw == 0.0
    assert solution.battery_kwh == 0.0
    assert result.objective_value <= result.seed_objective_value

    trace = simulate_dispatch(solution, hourly, ConstraintSet())
    for record in trace:
        expected_import = 0.0 if 6 <= record.hour <= 18 else 100.0
        assert record.grid_import_kw == pytest.approx(expected_import)


def test_zero_budget_yields_zero_capacity() -> None:
    result = optimize_capacity(_constant_frame(), COSTS, ConstraintSet(max_budget=0.0))

    assert result.solution == CapacitySolution.zero()
    assert result.iterations == 0
    assert result.status == "optimal"


@pytest.mark.parametrize("budget", [25_000.0, 150_000.0, 600_000.0])
def test_solution_never_exceeds_budget(budget: float) -> None:
    hourly = make_synthetic_year(hours=96, base_demand_kw=300.0, seed=2)
    result = optimize_capacity(hourly, COSTS, ConstraintSet(max_budget=budget), OptimizerConfig(max_iterations=40))

    assert result.solution.total_cost <= budget
    assert result.seed.total_cost <= budget


def test_renewable_fraction_non_decreasing_in_budget() -> None:
    hourly = _constant_frame()
    fractions = []
    for budget in (50_000.0, 100_000.0, 200_000.0, 400_000.0):
        result = optimize_capacity(hourly, COSTS, ConstraintSet(max_budget=budget, max_battery_kwh=0.0))
        trace = simulate_dispatch(result.solution, hourly, ConstraintSet())
        delivered = sum(record.renewable_delivered_kw for record in trace)
        grid = sum(record.grid_import_kw for record in trace)
        fractions.append(delivered / (delivered + grid))

    assert fractions == sorted(fractions)
    assert fractions[0] == pytest.approx(0.25)
    assert fractions[-1] == pytest.approx(1.0)


def test_renewable_fraction_non_decreasing_up_to_unconstrained_budget() -> None:
    hourly = make_synthetic_year(hours=168, seed=2)
    fractions = []
    for budget in (0.0, 250_000.0, 500_000.0, 1_000_000.0, 1_500_000.0, 2_000_000.0, None):
        result = optimize_capacity(hourly, COSTS, ConstraintSet(max_budget=budget))
        trace = simulate_dispatch(result.solution, hourly, ConstraintSet())
        delivered = sum(record.renewable_delivered_kw for record in trace)
        grid = sum(record.grid_import_kw for record in trace)
        fractions.append(delivered / (delivered + grid))

    assert fractions == sorted(fractions)


def test_unconstrained_seed_matches_large_finite_budget() -> None:
    hourly = make_synthetic_year(hours=168, seed=2)

    unconstrained = greedy_seed(hourly, COSTS, ConstraintSet())
    large = greedy_seed(hourly, COSTS, ConstraintSet(max_budget=1e12))

    assert unconstrained == large
    assert unconstrained.total_cost > 0


def test_greedy_seed_splits_budget_between_generation_and_battery() -> None:
    seed = greedy_seed(_constant_frame(), COSTS, ConstraintSet(max_budget=100_000.0))

    assert seed.solar_kw == pytest.approx(80.0)
    assert seed.wind_kw == 0.0
    assert seed.battery_kwh == pytest.approx(20_000.0 / 300.0)
    assert seed.total_cost == pytest.approx(100_000.0)


def test_greedy_seed_scales_up_to_renewable_target() -> None:
    seed = greedy_seed(
        _constant_frame(),
        COSTS,
        ConstraintSet(max_budget=200_000.0, min_renewable_fraction=0.9),
    )

    assert seed.solar_kw * 0.5 / 100.0 >= 0.9 - 1e-9
    assert seed.total_cost <= 200_000.0


def test_unreachable_renewable_target_raises_infeasible() -> None:
    with pytest.raises(InfeasibleError):
        optimize_capacity(
            _constant_frame(),
            COSTS,
            ConstraintSet(max_solar_kw=10.0, max_wind_kw=0.0, min_renewable_fraction=0.9),
        )


def test_renewable_target_over_budget_raises_infeasible() -> None:
    with pytest.raises(InfeasibleError):
        optimize_capacity(
            _constant_frame(),
            COSTS,
            ConstraintSet(max_budget=50_000.0, min_renewable_fraction=0.9),
        )


@pytest.mark.parametrize(
    "constraints, costs, frame",
    [
        (ConstraintSet(max_budget=-1.0), COSTS, _constant_frame()),
        (ConstraintSet(min_renewable_fraction=1.5), COSTS, _constant_frame()),
        (ConstraintSet(battery_efficiency=0.0), COSTS, _constant_frame()),
        (ConstraintSet(), CostModel(-1.0, 1500.0, 300.0), _constant_frame()),
        (ConstraintSet(), COSTS, _constant_frame().iloc[0:0]),
    ],
)
def test_invalid_inputs_raise_before_search(constraints, costs, frame) -> None:
    calls = []

    def objective(solution: CapacitySolution) -> float:
        calls.append(solution)
        return 0.0

    with pytest.raises(ValidationError):
        optimize_capacity(frame, costs, constraints, objective_fn=objective)
    assert calls == []


def test_objective_annualizes_and_discounts_grid_cost() -> None:
    hourly = _constant_frame(hours=24, demand=10.0, solar=0.0, price=0.1)
    costs = CostModel(1000.0, 1500.0, 300.0, discount_rate=0.0, project_lifetime_years=10)
    value = evaluate_objective(CapacitySolution.zero(), hourly, costs, ConstraintSet())

    assert value == pytest.approx(10.0 * 0.1 * 8760 * 10)
