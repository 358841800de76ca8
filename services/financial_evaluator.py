"""Ownership economics for a sized plan and its dispatch trace.

Annual figures are taken from the dispatch summary scaled by its
annualization factor, so a representative week or month can stand in for a
full year. NPV discounts a level stream of annual savings; the reported
``irr`` is the simple ``annual_savings / capex`` ratio the planning tool has
always shown, with the root-found rate exposed separately as
``irr_solved_pct``.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
import logging
import math
from typing import Any, Dict, Optional, Sequence

import pandas as pd

from services.dispatch_simulator import DispatchRecord, summarize_dispatch
from services.errors import ValidationError
from services.planning_models import CapacitySolution, CostModel
from utils.economics import (
    _compute_npv,
    _solve_irr_pct,
    level_cash_flows,
    payback_months,
    simple_return_ratio,
)

logger = logging.getLogger(__name__)

KG_PER_TONNE = 1000.0


@dataclass
class FinancialResult:
    """Ownership-path economics.

    Monetary values are USD, energy is kWh per year unless noted. ``payback_months``
    is ``math.inf`` when annual savings are not positive.
    """

    capex_usd: float
    annual_opex_usd: float
    annual_carbon_cost_usd: float
    renewable_fraction: float
    annual_renewable_kwh: float
    annual_grid_kwh: float
    annual_grid_cost_usd: float
    annual_grid_only_cost_usd: float
    annual_savings_usd: float
    annual_co2_reduction_kg: float
    annual_co2_reduction_tonnes: float
    payback_months: float
    npv_usd: float
    irr: float
    irr_solved_pct: float
    roi_percent: float
    horizon_years: int
    discount_rate: float
    lifetime_co2_reduction_tonnes: float
    carbon_credit_value_usd_year: float
    extra_annual_savings_usd: float = 0.0
    vppa: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        if self.vppa is not None and hasattr(self.vppa, "to_dict"):
            payload["vppa"] = self.vppa.to_dict()
        return payload


def evaluate_financials(
    solution: CapacitySolution,
    dispatch_trace: Sequence[DispatchRecord],
    cost_model: CostModel,
    hourly_df: pd.DataFrame,
    horizon_years: Optional[int] = None,
    discount_rate: Optional[float] = None,
    extra_annual_savings: float = 0.0,
) -> FinancialResult:
    """Compute CAPEX/OPEX, savings, emissions, payback, NPV and IRR for a plan.

    Parameters
    ----------
    solution
        Sized capacities; ``total_cost`` is taken as CAPEX.
    dispatch_trace
        Hourly records produced by ``simulate_dispatch`` for ``solution``.
    cost_model
        Unit costs plus the default discount rate and lifetime.
    hourly_df
        The hourly dataset the trace was simulated on (prices and carbon).
    horizon_years
        Years of savings included in NPV; defaults to the project lifetime.
    discount_rate
        Overrides ``cost_model.discount_rate`` when provided.
    extra_annual_savings
        Additional USD/year credited to the plan (e.g., cooling savings).
    """

    horizon = int(cost_model.project_lifetime_years if horizon_years is None else horizon_years)
    rate = float(cost_model.discount_rate if discount_rate is None else discount_rate)
    if horizon < 1:
        raise ValidationError("horizon_years must be at least 1")
    if not math.isfinite(rate) or rate < 0:
        raise ValidationError("discount_rate must be a non-negative finite number")
    if not math.isfinite(extra_annual_savings):
        raise ValidationError("extra_annual_savings must be finite")

    summary = summarize_dispatch(dispatch_trace, hourly_df, battery_kwh=solution.battery_kwh)
    scale = summary.annualization_factor

    capex = float(solution.total_cost)
    opex = cost_model.annual_opex(solution.solar_kw, solution.wind_kw, solution.battery_kwh)
    grid_cost = summary.grid_cost_usd * scale
    grid_only_cost = summary.grid_only_cost_usd * scale
    emissions_kg = summary.grid_emissions_kg * scale
    grid_only_emissions_kg = summary.grid_only_emissions_kg * scale

    savings = grid_only_cost - (grid_cost + opex) + float(extra_annual_savings)
    co2_reduction_kg = grid_only_emissions_kg - emissions_kg
    co2_reduction_tonnes = co2_reduction_kg / KG_PER_TONNE

    cash_flows = level_cash_flows(capex, savings, horizon)
    npv = _compute_npv(cash_flows, rate)
    irr_solved = _solve_irr_pct(cash_flows)

    result = FinancialResult(
        capex_usd=capex,
        annual_opex_usd=opex,
        annual_carbon_cost_usd=emissions_kg * cost_model.carbon_cost_per_kg_co2,
        renewable_fraction=summary.renewable_fraction,
        annual_renewable_kwh=summary.renewable_delivered_kwh * scale,
        annual_grid_kwh=summary.grid_import_kwh * scale,
        annual_grid_cost_usd=grid_cost,
        annual_grid_only_cost_usd=grid_only_cost,
        annual_savings_usd=savings,
        annual_co2_reduction_kg=co2_reduction_kg,
        annual_co2_reduction_tonnes=co2_reduction_tonnes,
        payback_months=payback_months(capex, savings),
        npv_usd=npv,
        irr=simple_return_ratio(capex, savings),
        irr_solved_pct=irr_solved,
        roi_percent=simple_return_ratio(capex, savings) * 100.0,
        horizon_years=horizon,
        discount_rate=rate,
        lifetime_co2_reduction_tonnes=co2_reduction_tonnes * horizon,
        carbon_credit_value_usd_year=co2_reduction_kg * cost_model.carbon_cost_per_kg_co2,
        extra_annual_savings_usd=float(extra_annual_savings),
    )
    logger.info(
        "Financials: capex=%.0f savings=%.0f/yr payback=%s months NPV=%.0f",
        capex,
        savings,
        "inf" if math.isinf(result.payback_months) else f"{result.payback_months:.0f}",
        npv,
    )
    return result


def ownership_lcoe_per_mwh(financial: FinancialResult, years: Optional[int] = None) -> float:
    """CAPEX plus undiscounted OPEX over ``years``, per MWh of renewable supply."""

    years = financial.horizon_years if years is None else int(years)
    energy_mwh = financial.annual_renewable_kwh * years / 1000.0
    if energy_mwh <= 0:
        return math.inf
    total_cost = financial.capex_usd + financial.annual_opex_usd * years
    return total_cost / energy_mwh


__all__ = ["FinancialResult", "evaluate_financials", "ownership_lcoe_per_mwh"]
