"""Hour-by-hour dispatch of solar, wind, battery and grid for fixed capacities."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd

from services.errors import ValidationError
from services.planning_models import HOURS_PER_YEAR, CapacitySolution, ConstraintSet

BALANCE_REL_TOL = 1e-6


@dataclass(frozen=True)
class DispatchConfig:
    """Battery operating knobs, all expressed as fractions of battery capacity.

    ``max_charge_rate`` / ``max_discharge_rate`` are per hour; ``min_soc`` and
    ``max_soc`` bound the usable window; ``initial_soc`` is the starting point.
    """

    max_charge_rate: float = 0.25
    max_discharge_rate: float = 0.25
    min_soc: float = 0.10
    max_soc: float = 0.95
    initial_soc: float = 0.50

    def validate(self) -> None:
        for name in ("max_charge_rate", "max_discharge_rate", "min_soc", "max_soc", "initial_soc"):
            value = float(getattr(self, name))
            if not (0.0 <= value <= 1.0):
                raise ValidationError(f"{name} must be within [0, 1]")
        if self.min_soc > self.max_soc:
            raise ValidationError("min_soc must not exceed max_soc")


@dataclass(frozen=True)
class BatteryLimits:
    """Absolute battery limits (kW / kWh) derived once per simulation."""

    capacity_kwh: float
    max_charge_kw: float
    max_discharge_kw: float
    min_soc_kwh: float
    max_soc_kwh: float
    efficiency: float

    @classmethod
    def from_config(cls, capacity_kwh: float, efficiency: float, config: DispatchConfig) -> "BatteryLimits":
        return cls(
            capacity_kwh=capacity_kwh,
            max_charge_kw=capacity_kwh * config.max_charge_rate,
            max_discharge_kw=capacity_kwh * config.max_discharge_rate,
            min_soc_kwh=capacity_kwh * config.min_soc,
            max_soc_kwh=capacity_kwh * config.max_soc,
            efficiency=efficiency,
        )


@dataclass(frozen=True)
class DispatchRecord:
    hour: int
    demand_kw: float
    solar_generation_kw: float
    wind_generation_kw: float
    solar_delivered_kw: float
    wind_delivered_kw: float
    battery_charge_kw: float
    battery_discharge_kw: float
    battery_soc_kwh: float
    grid_import_kw: float
    curtailment_kw: float

    @property
    def renewable_delivered_kw(self) -> float:
        return self.solar_delivered_kw + self.wind_delivered_kw + self.battery_discharge_kw


@dataclass(frozen=True)
class DispatchSummary:
    """Energy and cost totals over the simulated hours.

    Totals cover the dataset as given; multiply by ``annualization_factor``
    (8760 / hours) for annual figures.
    """

    hours: int
    annualization_factor: float
    demand_kwh: float
    solar_generation_kwh: float
    wind_generation_kwh: float
    solar_delivered_kwh: float
    wind_delivered_kwh: float
    battery_charge_kwh: float
    battery_discharge_kwh: float
    grid_import_kwh: float
    curtailment_kwh: float
    renewable_delivered_kwh: float
    renewable_fraction: float
    grid_cost_usd: float
    grid_emissions_kg: float
    grid_only_cost_usd: float
    grid_only_emissions_kg: float
    flags: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def dispatch_step(
    soc_kwh: float,
    hour: int,
    demand_kw: float,
    solar_generation_kw: float,
    wind_generation_kw: float,
    limits: BatteryLimits,
) -> Tuple[float, DispatchRecord]:
    """Dispatch a single hour and return the next state of charge with the record.

    Surplus renewables charge the battery up to the rate and ceiling limits and
    the remainder is curtailed. A deficit is served by the battery down to the
    floor and the rest is imported from the grid.
    """

    eff = limits.efficiency
    generation = solar_generation_kw + wind_generation_kw
    charge = discharge = grid_import = curtailment = 0.0

    if generation >= demand_kw:
        excess = generation - demand_kw
        charge = max(0.0, min(excess, limits.max_charge_kw, (limits.max_soc_kwh - soc_kwh) / eff))
        curtailment = excess - charge
        # Split served demand between technologies by their share of generation.
        solar_delivered = demand_kw * solar_generation_kw / generation if generation > 0 else 0.0
        wind_delivered = demand_kw - solar_delivered
    else:
        deficit = demand_kw - generation
        discharge = max(0.0, min(deficit, limits.max_discharge_kw, (soc_kwh - limits.min_soc_kwh) * eff))
        grid_import = deficit - discharge
        solar_delivered = solar_generation_kw
        wind_delivered = wind_generation_kw

    next_soc = soc_kwh + charge * eff - discharge / eff
    next_soc = max(0.0, min(limits.capacity_kwh, next_soc))

    record = DispatchRecord(
        hour=hour,
        demand_kw=demand_kw,
        solar_generation_kw=solar_generation_kw,
        wind_generation_kw=wind_generation_kw,
        solar_delivered_kw=solar_delivered,
        wind_delivered_kw=wind_delivered,
        battery_charge_kw=charge,
        battery_discharge_kw=discharge,
        battery_soc_kwh=next_soc,
        grid_import_kw=grid_import,
        curtailment_kw=curtailment,
    )
    return next_soc, record


def simulate_dispatch(
    capacities: CapacitySolution,
    hourly_df: pd.DataFrame,
    constraints: ConstraintSet,
    config: DispatchConfig = DispatchConfig(),
) -> Tuple[DispatchRecord, ...]:
    """Simulate hourly dispatch for fixed capacities.

    The only state carried between hours is the battery state of charge,
    threaded explicitly through :func:`dispatch_step`. Output is fully
    deterministic for identical inputs.
    """

    limits = BatteryLimits.from_config(
        float(capacities.battery_kwh), float(constraints.battery_efficiency), config
    )
    hours = hourly_df["hour"].to_numpy() if "hour" in hourly_df.columns else np.arange(len(hourly_df))
    demand = hourly_df["demand_kw"].to_numpy(dtype=float).tolist()
    solar = (hourly_df["solar_yield"].to_numpy(dtype=float) * float(capacities.solar_kw)).tolist()
    wind = (hourly_df["wind_yield"].to_numpy(dtype=float) * float(capacities.wind_kw)).tolist()

    soc = limits.capacity_kwh * config.initial_soc
    records: List[DispatchRecord] = []
    for idx in range(len(demand)):
        soc, record = dispatch_step(soc, int(hours[idx]), demand[idx], solar[idx], wind[idx], limits)
        records.append(record)
    return tuple(records)


def dispatch_to_frame(trace: Sequence[DispatchRecord]) -> pd.DataFrame:
    """Return the dispatch trace as a DataFrame (one row per hour)."""

    columns = list(DispatchRecord.__dataclass_fields__)
    if not trace:
        return pd.DataFrame(columns=columns)
    return pd.DataFrame([asdict(record) for record in trace], columns=columns)


def check_energy_balance(trace: Sequence[DispatchRecord], rel_tol: float = BALANCE_REL_TOL) -> List[int]:
    """Return the hours whose supply does not match demand within ``rel_tol``."""

    violations: List[int] = []
    for record in trace:
        supplied = (
            record.solar_delivered_kw
            + record.wind_delivered_kw
            + record.battery_discharge_kw
            + record.grid_import_kw
        )
        if abs(supplied - record.demand_kw) > rel_tol * max(1.0, abs(record.demand_kw)):
            violations.append(record.hour)
    return violations


def summarize_dispatch(
    trace: Sequence[DispatchRecord],
    hourly_df: pd.DataFrame,
    battery_kwh: float = 0.0,
    config: DispatchConfig = DispatchConfig(),
) -> DispatchSummary:
    """Aggregate a dispatch trace into energy, cost and emission totals."""

    n_hours = len(trace)
    if n_hours != len(hourly_df):
        raise ValidationError("Dispatch trace length must match the hourly dataset.")

    frame = dispatch_to_frame(trace)
    price = hourly_df["price_usd_per_kwh"].to_numpy(dtype=float)
    carbon_kg = hourly_df["carbon_g_per_kwh"].to_numpy(dtype=float) / 1000.0

    demand = frame["demand_kw"].to_numpy(dtype=float)
    grid = frame["grid_import_kw"].to_numpy(dtype=float)
    solar_delivered = float(frame["solar_delivered_kw"].sum())
    wind_delivered = float(frame["wind_delivered_kw"].sum())
    discharge = float(frame["battery_discharge_kw"].sum())
    grid_total = float(grid.sum())
    renewable = solar_delivered + wind_delivered + discharge
    denominator = renewable + grid_total

    floor_kwh = battery_kwh * config.min_soc
    ceiling_kwh = battery_kwh * config.max_soc
    soc = frame["battery_soc_kwh"].to_numpy(dtype=float)
    charging = frame["battery_charge_kw"].to_numpy(dtype=float) > 0
    discharging = frame["battery_discharge_kw"].to_numpy(dtype=float) > 0
    flags = {
        "soc_floor_hits": int(np.sum(discharging & (np.abs(soc - floor_kwh) < 1e-6))),
        "soc_ceiling_hits": int(np.sum(charging & (np.abs(soc - ceiling_kwh) < 1e-6))),
        "curtailment_hours": int(np.sum(frame["curtailment_kw"].to_numpy(dtype=float) > 1e-9)),
        "grid_import_hours": int(np.sum(grid > 1e-9)),
    }

    return DispatchSummary(
        hours=n_hours,
        annualization_factor=HOURS_PER_YEAR / n_hours if n_hours else 0.0,
        demand_kwh=float(demand.sum()),
        solar_generation_kwh=float(frame["solar_generation_kw"].sum()),
        wind_generation_kwh=float(frame["wind_generation_kw"].sum()),
        solar_delivered_kwh=solar_delivered,
        wind_delivered_kwh=wind_delivered,
        battery_charge_kwh=float(frame["battery_charge_kw"].sum()),
        battery_discharge_kwh=discharge,
        grid_import_kwh=grid_total,
        curtailment_kwh=float(frame["curtailment_kw"].sum()),
        renewable_delivered_kwh=renewable,
        renewable_fraction=renewable / denominator if denominator > 0 else 0.0,
        grid_cost_usd=float(np.dot(grid, price)),
        grid_emissions_kg=float(np.dot(grid, carbon_kg)),
        grid_only_cost_usd=float(np.dot(demand, price)),
        grid_only_emissions_kg=float(np.dot(demand, carbon_kg)),
        flags=flags,
    )


__all__ = [
    "BALANCE_REL_TOL",
    "BatteryLimits",
    "DispatchConfig",
    "DispatchRecord",
    "DispatchSummary",
    "check_energy_balance",
    "dispatch_step",
    "dispatch_to_frame",
    "simulate_dispatch",
    "summarize_dispatch",
]
