"""Discounting and cash-flow helpers shared across the planning services."""
from __future__ import annotations

import math
from typing import Sequence

IRR_LOWER_BOUND = -0.99
IRR_UPPER_LIMIT = 1000.0


def _discount_factor(discount_rate: float, year_index: int) -> float:
    """Present value of 1 USD received at the end of year ``year_index``."""

    return (1.0 + discount_rate) ** -year_index


def _ensure_non_negative_finite(value: float, name: str) -> None:
    if not math.isfinite(value):
        raise ValueError(f"{name} must be finite")
    if value < 0:
        raise ValueError(f"{name} cannot be negative")


def annuity_factor(discount_rate: float, years: int) -> float:
    """Present value of 1 USD received at the end of each year for ``years`` years."""

    return sum(_discount_factor(discount_rate, year) for year in range(1, int(years) + 1))


def _compute_npv(cash_flows: Sequence[float], discount_rate: float) -> float:
    """Net present value with ``cash_flows[0]`` taken as today."""

    return sum(flow * _discount_factor(discount_rate, year) for year, flow in enumerate(cash_flows))


def level_cash_flows(initial_investment: float, annual_cash_flow: float, years: int) -> list[float]:
    """Year-0 outlay followed by ``years`` identical annual cash flows."""

    _ensure_non_negative_finite(initial_investment, "initial_investment")
    return [-float(initial_investment)] + [float(annual_cash_flow)] * int(years)


def payback_months(initial_investment: float, annual_savings: float) -> float:
    """Simple payback in months; ``math.inf`` when savings never recover the outlay."""

    if annual_savings <= 0:
        return math.inf
    return initial_investment / annual_savings * 12.0


def simple_return_ratio(initial_investment: float, annual_savings: float) -> float:
    """Annual savings divided by the investment (0.0 when nothing is invested).

    This is the ratio the planning tool has always reported as "IRR"; it is a
    first-year return, not a discounted rate.
    """

    if initial_investment <= 0:
        return 0.0
    return annual_savings / initial_investment


def _solve_irr_pct(cash_flows: Sequence[float], max_iterations: int = 200) -> float:
    """Internal rate of return in percent, found by bisection.

    The upper bracket doubles from 100% until NPV changes sign (giving up past
    ``IRR_UPPER_LIMIT``). Returns NaN when the flows never change sign or no
    bracket exists. Kept dependency-free because ``numpy.irr`` is gone from
    NumPy 2.
    """

    flows = [float(flow) for flow in cash_flows]
    if min(flows, default=0.0) >= 0 or max(flows, default=0.0) <= 0:
        return math.nan

    low, high = IRR_LOWER_BOUND, 1.0
    npv_low = _compute_npv(flows, low)
    npv_high = _compute_npv(flows, high)
    while npv_low * npv_high > 0:
        if high >= IRR_UPPER_LIMIT:
            return math.nan
        high *= 2.0
        npv_high = _compute_npv(flows, high)

    rate = low
    for _ in range(max_iterations):
        rate = 0.5 * (low + high)
        npv_mid = _compute_npv(flows, rate)
        if abs(npv_mid) < 1e-6:
            break
        if npv_low * npv_mid < 0:
            high = rate
        else:
            low, npv_low = rate, npv_mid
    return rate * 100.0 if math.isfinite(rate) else math.nan


def coefficient_of_variation_pct(values: Sequence[float]) -> float:
    """Population standard deviation over mean, in percent (0 for fewer than two values)."""

    if len(values) < 2:
        return 0.0
    mean = sum(values) / len(values)
    if mean == 0:
        return 0.0
    variance = sum((value - mean) ** 2 for value in values) / len(values)
    return math.sqrt(variance) / mean * 100.0


__all__ = [
    "annuity_factor",
    "coefficient_of_variation_pct",
    "level_cash_flows",
    "payback_months",
    "simple_return_ratio",
]
