from __future__ import annotations

import math

import numpy as np
import pandas as pd
import pytest

from services.dispatch_simulator import simulate_dispatch
from services.errors import ValidationError
from services.financial_evaluator import evaluate_financials
from services.planning_models import CapacitySolution, ConstraintSet, CostModel
from services.vppa import (
    VPPAContract,
    VPPAOptions,
    compare_financing,
    evaluate_vppa,
    region_from_coordinates,
    resolve_forward_curve,
)

COSTS = CostModel(1000.0, 1500.0, 300.0)


def _financials(solar_kw: float):
    hourly = pd.DataFrame(
        {
            "hour": np.arange(24),
            "demand_kw": [100.0] * 24,
            "solar_yield": [0.5] * 24,
            "wind_yield": [0.0] * 24,
            "price_usd_per_kwh": [0.1] * 24,
            "carbon_g_per_kwh": [400.0] * 24,
        }
    )
    solution = CapacitySolution.build(solar_kw, 0.0, 0.0, COSTS)
    trace = simulate_dispatch(solution, hourly, ConstraintSet())
    return evaluate_financials(solution, trace, COSTS, hourly)


def test_strike_equal_to_flat_market_leaves_only_rec_value() -> None:
    contract = VPPAContract(capacity_kw=100.0, strike_price_usd_per_mwh=60.0, duration_years=5, forward_curve=(60.0,))
    result = evaluate_vppa(contract)

    assert result.annual_generation_kwh == pytest.approx(100.0 * 8760 * 0.25)
    assert len(result.cash_flows) == 5
    for flow in result.cash_flows:
        assert flow.settlement_usd == pytest.approx(0.0)
        assert flow.net_cost_usd == pytest.approx(flow.rec_value_usd)
        assert flow.rec_value_usd == pytest.approx(219.0 * 10.0)
    assert result.lcoe_per_mwh == pytest.approx(-10.0)
    assert result.hedge_effectiveness_percent == pytest.approx(100.0)
    assert result.contract_value_usd == pytest.approx(60.0 * 219.0 * 5)


def test_short_forward_curve_extended_with_last_price() -> None:
    assert resolve_forward_curve("eu", 5, [60.0, 70.0]) == [60.0, 70.0, 70.0, 70.0, 70.0]
    assert resolve_forward_curve("us-west", 3) == [80.0, 85.0, 90.0]
    assert len(resolve_forward_curve("unknown", 20)) == 20


def test_forward_curve_rejects_non_finite_prices() -> None:
    with pytest.raises(ValidationError):
        resolve_forward_curve("eu", 3, [60.0, float("nan")])


@pytest.mark.parametrize(
    "latitude, longitude, region",
    [
        (37.0, -120.0, "us-west"),
        (40.0, -75.0, "us-east"),
        (41.0, -105.0, "us-central"),
        (52.0, 13.0, "eu"),
        (19.0, 73.0, "india"),
        (-33.0, 151.0, "asia-pacific"),
    ],
)
def test_region_lookup(latitude: float, longitude: float, region: str) -> None:
    assert region_from_coordinates(latitude, longitude) == region


def test_settlement_and_cumulative_savings_follow_market() -> None:
    contract = VPPAContract(
        capacity_kw=0.0,
        strike_price_usd_per_mwh=50.0,
        duration_years=2,
        region="us-west",
        forward_curve=(60.0, 80.0),
        rec_price_usd_per_mwh=0.0,
    )
    result = evaluate_vppa(contract, annual_generation_kwh=1000_000.0, annual_consumption_kwh=2000_000.0)

    assert [flow.settlement_usd for flow in result.cash_flows] == pytest.approx([10_000.0, 30_000.0])
    assert result.cash_flows[0].cumulative_savings_usd == pytest.approx(60.0 * 2000 - 50.0 * 1000)
    assert result.cash_flows[1].cumulative_savings_usd == pytest.approx(70_000.0 + 80.0 * 2000 - 50.0 * 1000)
    assert result.region == "us-west"
    assert result.hedge_effectiveness_percent < 100.0


def test_zero_generation_gives_infinite_lcoe() -> None:
    result = evaluate_vppa(VPPAContract(capacity_kw=0.0, strike_price_usd_per_mwh=55.0))

    assert math.isinf(result.lcoe_per_mwh)
    assert result.region == "us-central"


def test_invalid_contract_raises() -> None:
    with pytest.raises(ValidationError):
        evaluate_vppa(VPPAContract(capacity_kw=100.0, strike_price_usd_per_mwh=50.0, duration_years=0))


def test_options_default_strike_and_curve_conversion() -> None:
    options = VPPAOptions.from_dict({"consider_vppa": True, "forward_curve": [70, 72], "latitude": 52.0, "longitude": 13.0})
    contract = options.to_contract(250.0, default_strike_usd_per_mwh=120.0)

    assert contract.strike_price_usd_per_mwh == 120.0
    assert contract.forward_curve == (70.0, 72.0)
    assert contract.resolved_region() == "eu"


def test_compare_financing_prefers_lower_lcoe_and_defaults_to_ownership() -> None:
    financial = _financials(100.0)
    cheap = evaluate_vppa(VPPAContract(100.0, 60.0, duration_years=5, forward_curve=(60.0,)))
    expensive = evaluate_vppa(VPPAContract(100.0, 500.0, duration_years=5, forward_curve=(60.0,)))

    assert compare_financing(financial, cheap, COSTS).recommended == "vppa"
    assert compare_financing(financial, expensive, COSTS).recommended == "ownership"

    without = compare_financing(financial, None, COSTS)
    assert without.recommended == "ownership"
    assert math.isnan(without.vppa_lcoe_per_mwh)
    assert without.ownership_capex_usd == pytest.approx(100_000.0)
