from __future__ import annotations

import math

import numpy as np
import pandas as pd
import pytest

from services.dispatch_simulator import simulate_dispatch
from services.errors import ValidationError
from services.financial_evaluator import evaluate_financials, ownership_lcoe_per_mwh
from services.planning_models import CapacitySolution, ConstraintSet, CostModel
from utils.economics import annuity_factor

COSTS = CostModel(1000.0, 1500.0, 300.0, carbon_cost_per_kg_co2=0.05)


def _constant_frame(hours: int = 24) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "hour": np.arange(hours),
            "demand_kw": [100.0] * hours,
            "solar_yield": [0.5] * hours,
            "wind_yield": [0.0] * hours,
            "price_usd_per_kwh": [0.1] * hours,
            "carbon_g_per_kwh": [500.0] * hours,
        }
    )


def _evaluate(solution: CapacitySolution, **kwargs):
    hourly = _constant_frame()
    trace = simulate_dispatch(solution, hourly, ConstraintSet())
    return evaluate_financials(solution, trace, COSTS, hourly, **kwargs)


def test_zero_capacity_plan_has_no_payback() -> None:
    result = _evaluate(CapacitySolution.zero())

    assert result.capex_usd == 0.0
    assert result.annual_savings_usd == 0.0
    assert math.isinf(result.payback_months)
    assert result.npv_usd == 0.0
    assert result.irr == 0.0
    assert math.isnan(result.irr_solved_pct)
    assert result.renewable_fraction == 0.0


def test_half_covered_demand_matches_hand_computed_economics() -> None:
    solution = CapacitySolution.build(100.0, 0.0, 0.0, COSTS)
    result = _evaluate(solution)

    # 50 kW delivered every hour of an annualized 24-hour day.
    assert result.annual_renewable_kwh == pytest.approx(50.0 * 8760)
    assert result.annual_grid_cost_usd == pytest.approx(43_800.0)
    assert result.annual_grid_only_cost_usd == pytest.approx(87_600.0)
    assert result.annual_savings_usd == pytest.approx(43_800.0)
    assert result.payback_months == pytest.approx(100_000.0 / 43_800.0 * 12.0)
    assert result.irr == pytest.approx(0.438)
    assert result.roi_percent == pytest.approx(43.8)
    assert result.renewable_fraction == pytest.approx(0.5)
    assert result.annual_co2_reduction_tonnes == pytest.approx(219.0)
    assert result.lifetime_co2_reduction_tonnes == pytest.approx(219.0 * 20)
    assert result.carbon_credit_value_usd_year == pytest.approx(219_000.0 * 0.05)
    assert result.annual_carbon_cost_usd == pytest.approx(219_000.0 * 0.05)
    assert result.npv_usd == pytest.approx(-100_000.0 + 43_800.0 * annuity_factor(0.08, 20))
    assert result.irr_solved_pct > 40.0


def test_extra_savings_shift_payback_and_npv() -> None:
    solution = CapacitySolution.build(100.0, 0.0, 0.0, COSTS)
    base = _evaluate(solution)
    boosted = _evaluate(solution, extra_annual_savings=6_200.0)

    assert boosted.annual_savings_usd == pytest.approx(50_000.0)
    assert boosted.payback_months == pytest.approx(24.0)
    assert boosted.npv_usd > base.npv_usd
    assert boosted.extra_annual_savings_usd == 6_200.0


def test_horizon_and_discount_overrides() -> None:
    solution = CapacitySolution.build(100.0, 0.0, 0.0, COSTS)
    result = _evaluate(solution, horizon_years=5, discount_rate=0.0)

    assert result.horizon_years == 5
    assert result.discount_rate == 0.0
    assert result.npv_usd == pytest.approx(-100_000.0 + 5 * 43_800.0)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"horizon_years": 0},
        {"discount_rate": -0.1},
        {"extra_annual_savings": float("inf")},
    ],
)
def test_invalid_financial_inputs_raise(kwargs) -> None:
    with pytest.raises(ValidationError):
        _evaluate(CapacitySolution.build(10.0, 0.0, 0.0, COSTS), **kwargs)


def test_ownership_lcoe_spreads_cost_over_renewable_supply() -> None:
    result = _evaluate(CapacitySolution.build(100.0, 0.0, 0.0, COSTS))

    expected = 100_000.0 / (50.0 * 8760 * 20 / 1000.0)
    assert ownership_lcoe_per_mwh(result) == pytest.approx(expected)
    assert math.isinf(ownership_lcoe_per_mwh(_evaluate(CapacitySolution.zero())))
