"""End-to-end planning pipeline with tagged per-stage outcomes.

Stages run in order::

    data_check -> optimization -> dispatch -> load_adjustment -> financial -> vppa -> sensitivity

Each stage yields ``StageSuccess``, ``StageRecovered`` (a neutral fallback
was substituted) or ``StageFatal``. The first fatal outcome stops the run and
the output is returned with ``success=False``; callers that prefer
exceptions can call :meth:`PipelineOutput.raise_for_status`.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field, is_dataclass
import logging
import math
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from services.capacity_optimizer import (
    OptimizerConfig,
    OptimizerResult,
    SimulateFn,
    optimize_capacity,
    validate_inputs,
)
from services.cooling_adjustment import FacilityLoad, LoadAdjustment, adjust_cooling_load
from services.dispatch_simulator import (
    DispatchConfig,
    DispatchRecord,
    DispatchSummary,
    check_energy_balance,
    simulate_dispatch,
    summarize_dispatch,
)
from services.errors import InfeasibleError
from services.financial_evaluator import FinancialResult, evaluate_financials
from services.planning_models import CapacitySolution, ConstraintSet, CostModel
from services.sensitivity import (
    SensitivityBaseCase,
    SensitivityOptions,
    SensitivityResult,
    analyze_sensitivity,
)
from services.vppa import FinancingComparison, VPPAOptions, VPPAResult, compare_financing, evaluate_vppa
from utils.flags import build_flag_insights
from utils.io import DataQualityReport, build_data_quality_report

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_LEVEL = 0.85
WORST_CASE_PAYBACK_FACTOR = 1.3
BEST_CASE_PAYBACK_FACTOR = 0.7
TONNES_CO2_PER_CAR_YEAR = 4.6


@dataclass(frozen=True)
class PipelineRequest:
    """Everything one planning run needs.

    ``facility`` enables the cooling load adjustment stage; ``simulate_fn`` is
    the dispatch simulator used by both the optimizer and the dispatch stage.
    """

    hourly_df: pd.DataFrame
    cost_model: CostModel
    constraints: ConstraintSet
    optimizer_config: OptimizerConfig = OptimizerConfig()
    dispatch_config: DispatchConfig = DispatchConfig()
    facility: Optional[FacilityLoad] = None
    vppa: VPPAOptions = VPPAOptions()
    sensitivity: SensitivityOptions = SensitivityOptions()
    horizon_years: Optional[int] = None
    simulate_fn: SimulateFn = simulate_dispatch
    name: Optional[str] = None


@dataclass(frozen=True)
class PipelineError:
    stage: str
    message: str
    recoverable: bool
    exception: Optional[BaseException] = field(default=None, compare=False, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"stage": self.stage, "message": self.message, "recoverable": self.recoverable}


@dataclass(frozen=True)
class StageSuccess:
    value: Any


@dataclass(frozen=True)
class StageRecovered:
    fallback: Any
    error: PipelineError


@dataclass(frozen=True)
class StageFatal:
    error: PipelineError


StageOutcome = Union[StageSuccess, StageRecovered, StageFatal]


@dataclass(frozen=True)
class StageRecord:
    name: str
    status: str
    elapsed_ms: float


@dataclass(frozen=True)
class FinancingCase:
    model: str
    total_investment_usd: float
    annual_savings_usd: float
    payback_months: float
    roi_percent: float
    lcoe_per_mwh: float


@dataclass(frozen=True)
class EnvironmentalSummary:
    renewable_fraction: float
    co2_reduction_tonnes_year: float
    equivalent_cars_removed: float


@dataclass(frozen=True)
class RiskProfile:
    confidence_level: float
    worst_case_payback_months: float
    best_case_payback_months: float


@dataclass(frozen=True)
class PipelineSummary:
    """Headline view across stages; ``defaults_used`` names fields filled from fallbacks."""

    optimal_plan: CapacitySolution
    financial_best_case: FinancingCase
    environmental: EnvironmentalSummary
    risk_profile: RiskProfile
    defaults_used: Tuple[str, ...] = ()
    insights: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PipelineOutput:
    success: bool
    execution_time_ms: float
    stages: Tuple[StageRecord, ...]
    errors: Tuple[PipelineError, ...]
    name: Optional[str] = None
    optimizer_status: Optional[str] = None
    data_quality: Optional[DataQualityReport] = None
    optimizer: Optional[OptimizerResult] = None
    dispatch_summary: Optional[DispatchSummary] = None
    dispatch_trace: Tuple[DispatchRecord, ...] = field(default=(), repr=False)
    load_adjustment: Optional[LoadAdjustment] = None
    financial: Optional[FinancialResult] = None
    financing_comparison: Optional[FinancingComparison] = None
    sensitivity: Optional[SensitivityResult] = None
    summary: Optional[PipelineSummary] = None

    @property
    def fatal_error(self) -> Optional[PipelineError]:
        return next((error for error in self.errors if not error.recoverable), None)

    def raise_for_status(self) -> None:
        """Re-raise the exception behind the fatal error, if any."""

        error = self.fatal_error
        if error is None:
            return
        if error.exception is not None:
            raise error.exception
        raise RuntimeError(f"Pipeline failed at stage '{error.stage}': {error.message}")

    def to_dict(self, include_trace: bool = False) -> Dict[str, Any]:
        """JSON-safe dictionary (non-finite floats become ``None``)."""

        payload: Dict[str, Any] = {
            "name": self.name,
            "success": self.success,
            "execution_time_ms": self.execution_time_ms,
            "optimizer_status": self.optimizer_status,
            "stages": [asdict(record) for record in self.stages],
            "errors": [error.to_dict() for error in self.errors],
        }
        for key in (
            "data_quality",
            "optimizer",
            "dispatch_summary",
            "load_adjustment",
            "financial",
            "financing_comparison",
            "sensitivity",
            "summary",
        ):
            value = getattr(self, key)
            payload[key] = None if value is None else asdict(value)
        if include_trace:
            payload["dispatch_trace"] = [asdict(record) for record in self.dispatch_trace]
        return _json_safe(payload)


def _json_safe(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    if is_dataclass(value) and not isinstance(value, type):
        return _json_safe(asdict(value))
    if isinstance(value, (np.floating, float)):
        value = float(value)
        return value if math.isfinite(value) else None
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.bool_):
        return bool(value)
    return value


def _run_stage(
    name: str,
    fn: Callable[[], Any],
    fallback: Optional[Callable[[], Any]] = None,
) -> Tuple[StageOutcome, StageRecord]:
    """Run one stage and tag its outcome.

    Without ``fallback`` a failure is fatal; with one, the fallback value is
    substituted and the error recorded as recoverable.
    """

    started = time.perf_counter()
    outcome: StageOutcome
    try:
        outcome = StageSuccess(fn())
        status = "success"
    except Exception as exc:  # stage boundary: every failure becomes a tagged outcome
        message = str(exc) or type(exc).__name__
        if fallback is None:
            logger.error("Stage %s failed: %s", name, message)
            outcome = StageFatal(PipelineError(name, message, recoverable=False, exception=exc))
            status = "fatal"
        else:
            logger.warning("Stage %s failed, using fallback: %s", name, message)
            outcome = StageRecovered(fallback(), PipelineError(name, message, recoverable=True, exception=exc))
            status = "recovered"
    elapsed_ms = (time.perf_counter() - started) * 1000.0
    return outcome, StageRecord(name=name, status=status, elapsed_ms=elapsed_ms)


def _value(outcome: StageOutcome) -> Any:
    if isinstance(outcome, StageSuccess):
        return outcome.value
    if isinstance(outcome, StageRecovered):
        return outcome.fallback
    return None


def _dispatch_stage(
    request: PipelineRequest, hourly_df: pd.DataFrame, solution: CapacitySolution
) -> Tuple[Tuple[DispatchRecord, ...], DispatchSummary]:
    trace = tuple(request.simulate_fn(solution, hourly_df, request.constraints, request.dispatch_config))
    violations = check_energy_balance(trace)
    if violations:
        raise RuntimeError(f"Energy balance violated in {len(violations)} hours (first: {violations[0]}).")
    summary = summarize_dispatch(trace, hourly_df, solution.battery_kwh, request.dispatch_config)
    return trace, summary


def _vppa_stage(
    request: PipelineRequest,
    hourly_df: pd.DataFrame,
    solution: CapacitySolution,
    summary: DispatchSummary,
) -> VPPAResult:
    default_strike = float(hourly_df["price_usd_per_kwh"].mean()) * 1000.0
    contract = request.vppa.to_contract(solution.solar_kw + solution.wind_kw, default_strike)
    scale = summary.annualization_factor
    return evaluate_vppa(
        contract,
        annual_generation_kwh=(summary.solar_generation_kwh + summary.wind_generation_kwh) * scale,
        annual_consumption_kwh=summary.demand_kwh * scale,
    )


def _best_case(financial: FinancialResult, comparison: FinancingComparison, vppa: Optional[VPPAResult]) -> FinancingCase:
    if comparison.recommended == "vppa" and vppa is not None:
        net = [flow.net_cost_usd for flow in vppa.cash_flows]
        return FinancingCase(
            model="vppa",
            total_investment_usd=0.0,
            annual_savings_usd=sum(net) / len(net) if net else 0.0,
            payback_months=0.0,
            roi_percent=math.nan,
            lcoe_per_mwh=comparison.vppa_lcoe_per_mwh,
        )
    return FinancingCase(
        model="ownership",
        total_investment_usd=financial.capex_usd,
        annual_savings_usd=financial.annual_savings_usd,
        payback_months=financial.payback_months,
        roi_percent=financial.roi_percent,
        lcoe_per_mwh=comparison.ownership_lcoe_per_mwh,
    )


def build_summary(
    solution: CapacitySolution,
    financial: FinancialResult,
    comparison: FinancingComparison,
    dispatch_summary: DispatchSummary,
    vppa: Optional[VPPAResult] = None,
    sensitivity: Optional[SensitivityResult] = None,
    defaults_used: Sequence[str] = (),
) -> PipelineSummary:
    """Assemble the unified summary, filling the risk profile from defaults when needed."""

    defaults = list(defaults_used)
    if sensitivity is not None:
        risk = RiskProfile(
            confidence_level=sensitivity.probability_positive_npv,
            worst_case_payback_months=sensitivity.payback_high_months,
            best_case_payback_months=sensitivity.payback_low_months,
        )
    else:
        risk = RiskProfile(
            confidence_level=DEFAULT_CONFIDENCE_LEVEL,
            worst_case_payback_months=financial.payback_months * WORST_CASE_PAYBACK_FACTOR,
            best_case_payback_months=financial.payback_months * BEST_CASE_PAYBACK_FACTOR,
        )
        defaults.extend(
            [
                "risk_profile.confidence_level",
                "risk_profile.worst_case_payback_months",
                "risk_profile.best_case_payback_months",
            ]
        )

    tonnes = financial.annual_co2_reduction_tonnes
    return PipelineSummary(
        optimal_plan=solution,
        financial_best_case=_best_case(financial, comparison, vppa),
        environmental=EnvironmentalSummary(
            renewable_fraction=financial.renewable_fraction,
            co2_reduction_tonnes_year=tonnes,
            equivalent_cars_removed=tonnes / TONNES_CO2_PER_CAR_YEAR,
        ),
        risk_profile=risk,
        defaults_used=tuple(defaults),
        insights=tuple(build_flag_insights(dispatch_summary.flags, dispatch_summary.hours)),
    )


def run_pipeline(request: PipelineRequest) -> PipelineOutput:
    """Run every stage for one request and return the assembled output."""

    started = time.perf_counter()
    records: List[StageRecord] = []
    errors: List[PipelineError] = []
    partial: Dict[str, Any] = {"name": request.name}

    def finish(success: bool, **extra: Any) -> PipelineOutput:
        elapsed = (time.perf_counter() - started) * 1000.0
        logger.info("Pipeline %s finished in %.0f ms (success=%s).", request.name or "run", elapsed, success)
        return PipelineOutput(
            success=success,
            execution_time_ms=elapsed,
            stages=tuple(records),
            errors=tuple(errors),
            **partial,
            **extra,
        )

    def record(outcome: StageOutcome, stage: StageRecord) -> Any:
        records.append(stage)
        if isinstance(outcome, (StageRecovered, StageFatal)):
            errors.append(outcome.error)
        return _value(outcome)

    def data_check() -> pd.DataFrame:
        partial["data_quality"] = build_data_quality_report(request.hourly_df)
        return validate_inputs(
            request.hourly_df,
            request.cost_model,
            request.constraints,
            request.optimizer_config,
            request.dispatch_config,
        )

    outcome, stage = _run_stage("data_check", data_check)
    hourly_df = record(outcome, stage)
    if isinstance(outcome, StageFatal):
        return finish(False)

    # optimization
    outcome, stage = _run_stage(
        "optimization",
        lambda: optimize_capacity(
            hourly_df,
            request.cost_model,
            request.constraints,
            request.optimizer_config,
            request.dispatch_config,
            simulate_fn=request.simulate_fn,
        ),
    )
    optimizer_result = record(outcome, stage)
    if isinstance(outcome, StageFatal):
        status = "infeasible" if isinstance(outcome.error.exception, InfeasibleError) else "error"
        return finish(False, optimizer_status=status)
    partial["optimizer"] = optimizer_result
    partial["optimizer_status"] = optimizer_result.status
    solution = optimizer_result.solution

    # dispatch
    outcome, stage = _run_stage("dispatch", lambda: _dispatch_stage(request, hourly_df, solution))
    dispatch_value = record(outcome, stage)
    if isinstance(outcome, StageFatal):
        return finish(False)
    trace, dispatch_summary = dispatch_value
    partial["dispatch_trace"] = trace
    partial["dispatch_summary"] = dispatch_summary

    # load_adjustment (auxiliary)
    defaults_used: List[str] = []
    load_adjustment: Optional[LoadAdjustment] = None
    if request.facility is not None:
        facility = request.facility
        outcome, stage = _run_stage(
            "load_adjustment",
            lambda: adjust_cooling_load(
                hourly_df, facility, solution, float(hourly_df["price_usd_per_kwh"].mean())
            ),
            fallback=lambda: LoadAdjustment.neutral(facility.baseline_pue),
        )
        load_adjustment = record(outcome, stage)
        if isinstance(outcome, StageRecovered):
            defaults_used.append("load_adjustment")
        partial["load_adjustment"] = load_adjustment
    extra_savings = load_adjustment.cooling_cost_savings_usd_year if load_adjustment is not None else 0.0

    # financial
    outcome, stage = _run_stage(
        "financial",
        lambda: evaluate_financials(
            solution,
            trace,
            request.cost_model,
            hourly_df,
            horizon_years=request.horizon_years,
            extra_annual_savings=extra_savings,
        ),
    )
    financial = record(outcome, stage)
    if isinstance(outcome, StageFatal):
        return finish(False)

    vppa_result: Optional[VPPAResult] = None
    if request.vppa.consider_vppa:
        outcome, stage = _run_stage(
            "vppa",
            lambda: _vppa_stage(request, hourly_df, solution, dispatch_summary),
            fallback=lambda: None,
        )
        vppa_result = record(outcome, stage)
        if isinstance(outcome, StageRecovered):
            defaults_used.append("vppa")
        financial.vppa = vppa_result
    comparison = compare_financing(financial, vppa_result, request.cost_model)
    partial["financial"] = financial
    partial["financing_comparison"] = comparison

    # sensitivity (optional)
    sensitivity_result: Optional[SensitivityResult] = None
    options = request.sensitivity
    if options.run_monte_carlo:
        outcome, stage = _run_stage(
            "sensitivity",
            lambda: analyze_sensitivity(
                SensitivityBaseCase(financial.npv_usd, financial.payback_months),
                options.variance_factors,
                iterations=options.iterations,
                seed=options.seed,
            ),
            fallback=lambda: None,
        )
        sensitivity_result = record(outcome, stage)
        partial["sensitivity"] = sensitivity_result

    summary = build_summary(
        solution,
        financial,
        comparison,
        dispatch_summary,
        vppa=vppa_result,
        sensitivity=sensitivity_result,
        defaults_used=defaults_used,
    )
    return finish(True, summary=summary)


def run_pipelines(requests: Sequence[PipelineRequest], max_workers: Optional[int] = None) -> List[PipelineOutput]:
    """Run independent requests on a thread pool; results keep request order."""

    if not requests:
        return []
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        return list(executor.map(run_pipeline, requests))


__all__ = [
    "EnvironmentalSummary",
    "FinancingCase",
    "PipelineError",
    "PipelineOutput",
    "PipelineRequest",
    "PipelineSummary",
    "RiskProfile",
    "StageFatal",
    "StageRecord",
    "StageRecovered",
    "StageSuccess",
    "build_summary",
    "run_pipeline",
    "run_pipelines",
]
