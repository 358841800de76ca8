"""Capacity sizing: greedy proportional seed refined by budget-constrained local search.

This is a documented heuristic, not a mixed-integer solver. It converges to a
budget-feasible, low total-cost plan but gives no global optimality guarantee.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
import logging
import math
import time
from typing import Any, Callable, Dict, Optional, Tuple

import numpy as np
import pandas as pd

from services.dispatch_simulator import DispatchConfig, DispatchRecord, simulate_dispatch
from services.errors import InfeasibleError, ValidationError
from services.planning_models import (
    HOURS_PER_YEAR,
    CapacitySolution,
    ConstraintSet,
    CostModel,
    validate_hourly_data,
)
from utils.economics import annuity_factor

logger = logging.getLogger(__name__)

SimulateFn = Callable[..., Tuple[DispatchRecord, ...]]
ObjectiveFn = Callable[[CapacitySolution], float]


@dataclass(frozen=True)
class OptimizerConfig:
    """Search knobs.

    Step sizes are ``step_size * generation_scale_kw`` (solar and wind, kW) and
    ``step_size * battery_scale_kwh`` (battery, kWh). ``representative_hours``
    caps the slice of the dataset simulated per objective evaluation.
    ``timeout_seconds`` bounds wall time; ``None`` disables the deadline.
    """

    max_iterations: int = 100
    convergence_threshold: float = 0.001
    step_size: float = 0.1
    generation_scale_kw: float = 100.0
    battery_scale_kwh: float = 50.0
    generation_budget_share: float = 0.8
    representative_hours: int = HOURS_PER_YEAR
    timeout_seconds: Optional[float] = 60.0

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "OptimizerConfig":
        return cls(**{key: payload[key] for key in payload if key in cls.__dataclass_fields__})

    def validate(self) -> None:
        if int(self.max_iterations) < 0:
            raise ValidationError("max_iterations must be non-negative")
        if self.convergence_threshold < 0:
            raise ValidationError("convergence_threshold must be non-negative")
        if self.step_size <= 0 or self.generation_scale_kw <= 0 or self.battery_scale_kwh <= 0:
            raise ValidationError("step sizes must be positive")
        if not (0.0 <= self.generation_budget_share <= 1.0):
            raise ValidationError("generation_budget_share must be within [0, 1]")
        if int(self.representative_hours) < 1:
            raise ValidationError("representative_hours must be at least 1")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValidationError("timeout_seconds must be positive when provided")


@dataclass(frozen=True)
class OptimizerResult:
    """Accepted capacity plan plus search diagnostics.

    ``status`` is ``"optimal"`` when search stopped at a local optimum and
    ``"feasible"`` when the iteration cap or deadline ended it first.
    """

    status: str
    solution: CapacitySolution
    seed: CapacitySolution
    objective_value: float
    seed_objective_value: float
    iterations: int
    evaluations: int
    wall_time_seconds: float
    terminated_by: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def validate_inputs(
    hourly_df: pd.DataFrame,
    cost_model: CostModel,
    constraints: ConstraintSet,
    config: OptimizerConfig = OptimizerConfig(),
    dispatch_config: DispatchConfig = DispatchConfig(),
) -> pd.DataFrame:
    """Fail fast on malformed inputs and return the validated hourly frame."""

    validated = validate_hourly_data(hourly_df)
    cost_model.validate()
    constraints.validate()
    config.validate()
    dispatch_config.validate()
    return validated


def _lcoe_proxy(capex: float, avg_yield: float, lifetime_years: int) -> float:
    """Capital cost per lifetime kWh for one kW installed."""

    if avg_yield <= 0:
        return math.inf
    return capex / (avg_yield * HOURS_PER_YEAR * lifetime_years)


def _inverse_lcoe_weights(solar_lcoe: float, wind_lcoe: float) -> Tuple[float, float]:
    """Budget shares for solar and wind, proportional to 1 / LCOE."""

    if math.isinf(solar_lcoe) and math.isinf(wind_lcoe):
        return 0.0, 0.0
    if math.isinf(solar_lcoe):
        return 0.0, 1.0
    if math.isinf(wind_lcoe):
        return 1.0, 0.0
    total = solar_lcoe + wind_lcoe
    if total <= 0:
        return 0.5, 0.5
    return wind_lcoe / total, solar_lcoe / total


def _estimated_renewable_fraction(
    solar_kw: float, wind_kw: float, avg_solar: float, avg_wind: float, avg_demand: float
) -> float:
    if avg_demand <= 0:
        return 1.0
    return (solar_kw * avg_solar + wind_kw * avg_wind) / avg_demand


def _capacity_for_budget(tech_budget: float, capex: float, ceiling: float, free_capacity: float) -> float:
    if capex <= 0:
        return ceiling if math.isfinite(ceiling) else free_capacity
    return min(tech_budget / capex, ceiling)


def _reference_budget(
    weights: Tuple[float, float],
    avg_yields: Tuple[float, float],
    capex: Tuple[float, float],
    avg_demand: float,
    generation_share: float,
) -> float:
    """Budget whose generation share buys average output equal to average demand."""

    output_per_usd = 0.0
    for weight, avg_yield, unit_cost in zip(weights, avg_yields, capex):
        if weight <= 0 or avg_yield <= 0:
            continue
        if unit_cost <= 0:
            return 0.0
        output_per_usd += weight * avg_yield / unit_cost
    if output_per_usd <= 0 or generation_share <= 0:
        return 0.0
    return avg_demand / output_per_usd / generation_share


def fit_to_budget(solution: CapacitySolution, budget: float, cost_model: CostModel) -> CapacitySolution:
    """Shrink a solution uniformly until its capital cost does not exceed ``budget``."""

    if solution.total_cost <= budget:
        return solution
    if budget <= 0:
        return CapacitySolution.zero()
    factor = budget / solution.total_cost
    for _ in range(16):
        candidate = CapacitySolution.build(
            solution.solar_kw * factor,
            solution.wind_kw * factor,
            solution.battery_kwh * factor,
            cost_model,
        )
        if candidate.total_cost <= budget:
            return candidate
        factor = float(np.nextafter(factor, 0.0)) * (1.0 - 1e-12)
    return CapacitySolution.zero()


def greedy_seed(
    hourly_df: pd.DataFrame,
    cost_model: CostModel,
    constraints: ConstraintSet,
    config: OptimizerConfig = OptimizerConfig(),
) -> CapacitySolution:
    """Allocate the budget by inverse LCOE and scale up to the renewable target.

    80% of the budget (``generation_budget_share``) goes to generation, split
    between solar and wind in inverse proportion to their LCOE proxies; the
    rest goes to the battery. The allocated budget is capped at the budget
    that matches average renewable output to average demand, so an
    unconstrained budget seeds the same plan as any large finite one.

    Raises ``InfeasibleError`` when the minimum renewable fraction cannot be
    reached within the ceilings and budget.
    """

    avg_solar = float(hourly_df["solar_yield"].mean())
    avg_wind = float(hourly_df["wind_yield"].mean())
    avg_demand = float(hourly_df["demand_kw"].mean())
    lifetime = int(cost_model.project_lifetime_years)

    solar_lcoe = _lcoe_proxy(cost_model.solar_capex_per_kw, avg_solar, lifetime)
    wind_lcoe = _lcoe_proxy(cost_model.wind_capex_per_kw, avg_wind, lifetime)
    solar_weight, wind_weight = _inverse_lcoe_weights(solar_lcoe, wind_lcoe)
    logger.debug("LCOE proxy solar=%.5f wind=%.5f USD/kWh", solar_lcoe, wind_lcoe)

    share = config.generation_budget_share
    budget = constraints.budget
    reference = _reference_budget(
        (solar_weight, wind_weight),
        (avg_solar, avg_wind),
        (cost_model.solar_capex_per_kw, cost_model.wind_capex_per_kw),
        avg_demand,
        share,
    )
    # Every budget at or above the reference starts from the same seed.
    if reference > 0:
        seed_budget = min(budget, reference)
    else:
        seed_budget = budget if math.isfinite(budget) else 0.0

    generation_budget = seed_budget * share
    battery_budget = seed_budget - generation_budget

    solar_ceiling = constraints.ceiling("solar")
    wind_ceiling = constraints.ceiling("wind")
    battery_ceiling = constraints.ceiling("battery")

    solar_kw = _capacity_for_budget(
        generation_budget * solar_weight,
        cost_model.solar_capex_per_kw,
        solar_ceiling,
        avg_demand / avg_solar if avg_solar > 0 and solar_weight > 0 else 0.0,
    )
    wind_kw = _capacity_for_budget(
        generation_budget * wind_weight,
        cost_model.wind_capex_per_kw,
        wind_ceiling,
        avg_demand / avg_wind if avg_wind > 0 and wind_weight > 0 else 0.0,
    )
    battery_kwh = _capacity_for_budget(battery_budget, cost_model.battery_capex_per_kwh, battery_ceiling, 0.0)

    target = float(constraints.min_renewable_fraction)
    if target > 0:
        current = _estimated_renewable_fraction(solar_kw, wind_kw, avg_solar, avg_wind, avg_demand)
        if current < target:
            if current <= 0:
                raise InfeasibleError(
                    "Minimum renewable fraction is unreachable: the seed has no renewable output to scale."
                )
            scale = target / current
            solar_kw = min(solar_kw * scale, solar_ceiling)
            wind_kw = min(wind_kw * scale, wind_ceiling)
            reached = _estimated_renewable_fraction(solar_kw, wind_kw, avg_solar, avg_wind, avg_demand)
            if reached < target - 1e-9:
                raise InfeasibleError(
                    f"Minimum renewable fraction {target:.2%} is unreachable within capacity ceilings "
                    f"(estimated {reached:.2%})."
                )
            generation_cost = cost_model.capital_cost(solar_kw, wind_kw, 0.0)
            if generation_cost > budget:
                raise InfeasibleError(
                    f"Minimum renewable fraction {target:.2%} needs {generation_cost:,.0f} USD of generation, "
                    f"above the {budget:,.0f} USD budget."
                )
            if cost_model.capital_cost(solar_kw, wind_kw, battery_kwh) > budget:
                # Hand the battery allocation back to generation.
                battery_kwh = (budget - generation_cost) / cost_model.battery_capex_per_kwh

    seed = CapacitySolution.build(solar_kw, wind_kw, battery_kwh, cost_model)
    return fit_to_budget(seed, budget, cost_model)


def evaluate_objective(
    solution: CapacitySolution,
    hourly_df: pd.DataFrame,
    cost_model: CostModel,
    constraints: ConstraintSet,
    dispatch_config: DispatchConfig = DispatchConfig(),
    simulate_fn: SimulateFn = simulate_dispatch,
) -> float:
    """CAPEX plus lifetime-discounted OPEX, grid cost and carbon cost.

    Grid and carbon terms come from one dispatch pass over ``hourly_df`` and
    are annualized by ``8760 / hours`` before discounting.
    """

    trace = simulate_fn(solution, hourly_df, constraints, dispatch_config)
    grid = np.fromiter((record.grid_import_kw for record in trace), dtype=float, count=len(trace))
    price = hourly_df["price_usd_per_kwh"].to_numpy(dtype=float)
    carbon_kg = hourly_df["carbon_g_per_kwh"].to_numpy(dtype=float) / 1000.0
    annualization = HOURS_PER_YEAR / len(hourly_df)

    grid_cost = float(np.dot(grid, price)) * annualization
    carbon_cost = float(np.dot(grid, carbon_kg)) * annualization * cost_model.carbon_cost_per_kg_co2
    opex = cost_model.annual_opex(solution.solar_kw, solution.wind_kw, solution.battery_kwh)
    discount = annuity_factor(cost_model.discount_rate, cost_model.project_lifetime_years)
    return solution.total_cost + discount * (opex + grid_cost + carbon_cost)


def _perturbations(config: OptimizerConfig) -> Tuple[Tuple[float, float, float], ...]:
    gen_step = config.step_size * config.generation_scale_kw
    battery_step = config.step_size * config.battery_scale_kwh
    return (
        (gen_step, 0.0, 0.0),
        (-gen_step, 0.0, 0.0),
        (0.0, gen_step, 0.0),
        (0.0, -gen_step, 0.0),
        (0.0, 0.0, battery_step),
        (0.0, 0.0, -battery_step),
    )


def refine_solution(
    seed: CapacitySolution,
    objective_fn: ObjectiveFn,
    cost_model: CostModel,
    constraints: ConstraintSet,
    config: OptimizerConfig = OptimizerConfig(),
    is_feasible: Optional[Callable[[CapacitySolution], bool]] = None,
    seed_objective: Optional[float] = None,
) -> Tuple[CapacitySolution, float, int, int, str]:
    """First-improvement local search around ``seed``.

    Returns ``(best, best_objective, iterations, evaluations, terminated_by)``
    where ``iterations`` counts accepted moves and ``terminated_by`` is one of
    ``"converged"``, ``"max_iterations"`` or ``"timeout"``.
    """

    budget = constraints.budget
    ceilings = (constraints.ceiling("solar"), constraints.ceiling("wind"), constraints.ceiling("battery"))
    directions = _perturbations(config)

    current = seed
    best_objective = objective_fn(seed) if seed_objective is None else seed_objective
    evaluations = 1 if seed_objective is None else 0
    iterations = 0
    deadline = None if config.timeout_seconds is None else time.monotonic() + config.timeout_seconds

    while True:
        if iterations >= config.max_iterations:
            return current, best_objective, iterations, evaluations, "max_iterations"
        if deadline is not None and time.monotonic() > deadline:
            logger.warning("Capacity search hit the %.1fs deadline after %d moves.", config.timeout_seconds, iterations)
            return current, best_objective, iterations, evaluations, "timeout"

        improved = False
        for d_solar, d_wind, d_battery in directions:
            solar_kw = max(0.0, current.solar_kw + d_solar)
            wind_kw = max(0.0, current.wind_kw + d_wind)
            battery_kwh = max(0.0, current.battery_kwh + d_battery)
            if (solar_kw, wind_kw, battery_kwh) == (current.solar_kw, current.wind_kw, current.battery_kwh):
                continue
            if solar_kw > ceilings[0] or wind_kw > ceilings[1] or battery_kwh > ceilings[2]:
                continue

            candidate = CapacitySolution.build(solar_kw, wind_kw, battery_kwh, cost_model)
            if candidate.total_cost > budget:
                continue
            if is_feasible is not None and not is_feasible(candidate):
                continue

            value = objective_fn(candidate)
            evaluations += 1
            if value < best_objective - config.convergence_threshold:
                logger.debug(
                    "Move %d accepted: solar=%.1f kW wind=%.1f kW battery=%.1f kWh objective=%.2f",
                    iterations + 1,
                    candidate.solar_kw,
                    candidate.wind_kw,
                    candidate.battery_kwh,
                    value,
                )
                current = candidate
                best_objective = value
                iterations += 1
                improved = True
                break

        if not improved:
            return current, best_objective, iterations, evaluations, "converged"


def optimize_capacity(
    hourly_df: pd.DataFrame,
    cost_model: CostModel,
    constraints: ConstraintSet,
    config: OptimizerConfig = OptimizerConfig(),
    dispatch_config: DispatchConfig = DispatchConfig(),
    simulate_fn: SimulateFn = simulate_dispatch,
    objective_fn: Optional[ObjectiveFn] = None,
) -> OptimizerResult:
    """Size solar, wind and battery capacity for the hourly dataset.

    ``simulate_fn`` and ``objective_fn`` are injectable so search logic can be
    exercised against cheap synthetic objectives. Validation errors are raised
    before any search; ``InfeasibleError`` is raised when the renewable target
    cannot be met.
    """

    started = time.perf_counter()
    validated = validate_inputs(hourly_df, cost_model, constraints, config, dispatch_config)
    representative = validated.iloc[: int(config.representative_hours)].reset_index(drop=True)

    if objective_fn is None:
        def objective_fn(solution: CapacitySolution) -> float:
            return evaluate_objective(
                solution, representative, cost_model, constraints, dispatch_config, simulate_fn
            )

    logger.info(
        "Optimizing capacity over %d hours (budget=%s, min renewable fraction=%.2f).",
        len(validated),
        "unconstrained" if constraints.max_budget is None else f"{constraints.max_budget:,.0f}",
        constraints.min_renewable_fraction,
    )

    seed = greedy_seed(validated, cost_model, constraints, config)
    seed_objective = objective_fn(seed)

    target = float(constraints.min_renewable_fraction)
    avg_solar = float(validated["solar_yield"].mean())
    avg_wind = float(validated["wind_yield"].mean())
    avg_demand = float(validated["demand_kw"].mean())

    def meets_target(candidate: CapacitySolution) -> bool:
        estimate = _estimated_renewable_fraction(
            candidate.solar_kw, candidate.wind_kw, avg_solar, avg_wind, avg_demand
        )
        return estimate >= target - 1e-9

    best, best_objective, iterations, evaluations, terminated_by = refine_solution(
        seed,
        objective_fn,
        cost_model,
        constraints,
        config,
        is_feasible=meets_target if target > 0 else None,
        seed_objective=seed_objective,
    )

    wall_time = time.perf_counter() - started
    status = "optimal" if terminated_by == "converged" else "feasible"
    logger.info(
        "Capacity search %s after %d moves (%d evaluations, %.2fs): solar=%.1f kW wind=%.1f kW battery=%.1f kWh.",
        status,
        iterations,
        evaluations + 1,
        wall_time,
        best.solar_kw,
        best.wind_kw,
        best.battery_kwh,
    )
    return OptimizerResult(
        status=status,
        solution=best,
        seed=seed,
        objective_value=float(best_objective),
        seed_objective_value=float(seed_objective),
        iterations=iterations,
        evaluations=evaluations + 1,
        wall_time_seconds=wall_time,
        terminated_by=terminated_by,
    )


__all__ = [
    "OptimizerConfig",
    "OptimizerResult",
    "evaluate_objective",
    "fit_to_budget",
    "greedy_seed",
    "optimize_capacity",
    "refine_solution",
    "validate_inputs",
]
