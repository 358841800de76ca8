"""Plain data describing the hourly dataset, costs, constraints and capacity plans."""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

from services.errors import ValidationError

HOURS_PER_YEAR = 8760

REQUIRED_HOURLY_COLUMNS: tuple[str, ...] = (
    "demand_kw",
    "solar_yield",
    "wind_yield",
    "price_usd_per_kwh",
    "carbon_g_per_kwh",
)
OPTIONAL_HOURLY_COLUMNS: tuple[str, ...] = ("outdoor_temp_c", "timestamp")
HOURLY_COLUMNS: tuple[str, ...] = ("hour",) + REQUIRED_HOURLY_COLUMNS + OPTIONAL_HOURLY_COLUMNS

# Default OPEX rates applied by CostModel.from_capex (fraction of CAPEX per year).
DEFAULT_SOLAR_OPEX_RATE = 0.01
DEFAULT_WIND_OPEX_RATE = 0.015
DEFAULT_BATTERY_OPEX_RATE = 0.02


@dataclass(frozen=True)
class HourlyRecord:
    """One hour of exogenous input supplied by the data collaborator.

    Units:
    - ``demand_kw``: facility demand averaged over the hour (kW == kWh per hour).
    - ``solar_yield`` / ``wind_yield``: kW generated per kW installed (0..1).
    - ``price_usd_per_kwh``: grid import price.
    - ``carbon_g_per_kwh``: grid carbon intensity (g CO2 per kWh).
    """

    hour: int
    demand_kw: float
    solar_yield: float
    wind_yield: float
    price_usd_per_kwh: float
    carbon_g_per_kwh: float
    outdoor_temp_c: Optional[float] = None
    timestamp: Optional[str] = None


def hourly_frame_from_records(records: Iterable[HourlyRecord]) -> pd.DataFrame:
    """Return the canonical hourly DataFrame for a sequence of records."""

    rows = [asdict(record) for record in records]
    df = pd.DataFrame(rows, columns=list(HOURLY_COLUMNS))
    if df["outdoor_temp_c"].isna().all():
        df = df.drop(columns=["outdoor_temp_c"])
    if df["timestamp"].isna().all():
        df = df.drop(columns=["timestamp"])
    return df


def records_from_frame(hourly_df: pd.DataFrame) -> List[HourlyRecord]:
    records: List[HourlyRecord] = []
    has_temp = "outdoor_temp_c" in hourly_df.columns
    has_ts = "timestamp" in hourly_df.columns
    for idx, row in enumerate(hourly_df.itertuples(index=False)):
        records.append(
            HourlyRecord(
                hour=int(getattr(row, "hour", idx)),
                demand_kw=float(row.demand_kw),
                solar_yield=float(row.solar_yield),
                wind_yield=float(row.wind_yield),
                price_usd_per_kwh=float(row.price_usd_per_kwh),
                carbon_g_per_kwh=float(row.carbon_g_per_kwh),
                outdoor_temp_c=float(row.outdoor_temp_c) if has_temp else None,
                timestamp=str(row.timestamp) if has_ts else None,
            )
        )
    return records


def validate_hourly_data(hourly_df: pd.DataFrame) -> pd.DataFrame:
    """Validate the hourly dataset and return a copy ordered by hour.

    Raises ``ValidationError`` for an empty dataset, missing columns,
    non-finite values, yields outside [0, 1] or negative demand/price/carbon.
    A missing ``hour`` column is filled with the positional index.
    """

    if hourly_df is None or len(hourly_df) == 0:
        raise ValidationError("Hourly dataset is empty; at least one hour is required.")

    missing = [col for col in REQUIRED_HOURLY_COLUMNS if col not in hourly_df.columns]
    if missing:
        raise ValidationError(f"Hourly dataset is missing columns: {', '.join(missing)}")

    df = hourly_df.copy()
    if "hour" not in df.columns:
        df["hour"] = np.arange(len(df))
    else:
        hours = pd.to_numeric(df["hour"], errors="coerce").to_numpy(dtype=float)
        if not np.all(np.isfinite(hours)) or not np.all(hours == np.floor(hours)):
            raise ValidationError("Column 'hour' must hold whole-number hour indices.")
        df["hour"] = hours.astype(int)

    for col in REQUIRED_HOURLY_COLUMNS:
        values = pd.to_numeric(df[col], errors="coerce").to_numpy(dtype=float)
        if not np.all(np.isfinite(values)):
            raise ValidationError(f"Column '{col}' contains missing or non-numeric values.")
        df[col] = values

    for col in ("solar_yield", "wind_yield"):
        if ((df[col] < 0.0) | (df[col] > 1.0)).any():
            raise ValidationError(f"Column '{col}' must stay within [0, 1].")
    for col in ("demand_kw", "price_usd_per_kwh", "carbon_g_per_kwh"):
        if (df[col] < 0.0).any():
            raise ValidationError(f"Column '{col}' must be non-negative.")

    return df.sort_values("hour", kind="mergesort").reset_index(drop=True)


def _require_non_negative(value: float, name: str) -> None:
    if value is None or not math.isfinite(float(value)):
        raise ValidationError(f"{name} must be a finite number")
    if float(value) < 0:
        raise ValidationError(f"{name} must be non-negative")


@dataclass(frozen=True)
class CostModel:
    """Per-unit capital/operating costs plus the financial assumptions used in sizing.

    Units:
    - CAPEX: USD/kW for solar and wind, USD/kWh for battery.
    - OPEX: USD/kW-year for solar and wind, USD/kWh-year for battery.
    - ``carbon_cost_per_kg_co2``: USD per kg CO2 emitted by grid imports.
    - ``discount_rate``: annual rate used to discount operating costs and savings.
    """

    solar_capex_per_kw: float
    wind_capex_per_kw: float
    battery_capex_per_kwh: float
    solar_opex_per_kw_year: float = 0.0
    wind_opex_per_kw_year: float = 0.0
    battery_opex_per_kwh_year: float = 0.0
    carbon_cost_per_kg_co2: float = 0.0
    discount_rate: float = 0.08
    project_lifetime_years: int = 20

    @classmethod
    def from_capex(
        cls,
        solar_capex_per_kw: float,
        wind_capex_per_kw: float,
        battery_capex_per_kwh: float,
        carbon_usd_per_ton: float = 0.0,
        discount_rate: float = 0.08,
        project_lifetime_years: int = 20,
    ) -> "CostModel":
        """Derive OPEX from CAPEX using the default annual O&M rates."""

        return cls(
            solar_capex_per_kw=solar_capex_per_kw,
            wind_capex_per_kw=wind_capex_per_kw,
            battery_capex_per_kwh=battery_capex_per_kwh,
            solar_opex_per_kw_year=solar_capex_per_kw * DEFAULT_SOLAR_OPEX_RATE,
            wind_opex_per_kw_year=wind_capex_per_kw * DEFAULT_WIND_OPEX_RATE,
            battery_opex_per_kwh_year=battery_capex_per_kwh * DEFAULT_BATTERY_OPEX_RATE,
            carbon_cost_per_kg_co2=carbon_usd_per_ton / 1000.0,
            discount_rate=discount_rate,
            project_lifetime_years=project_lifetime_years,
        )

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "CostModel":
        return cls(**{key: payload[key] for key in payload if key in cls.__dataclass_fields__})

    def validate(self) -> None:
        for name in (
            "solar_capex_per_kw",
            "wind_capex_per_kw",
            "battery_capex_per_kwh",
            "solar_opex_per_kw_year",
            "wind_opex_per_kw_year",
            "battery_opex_per_kwh_year",
            "carbon_cost_per_kg_co2",
            "discount_rate",
        ):
            _require_non_negative(getattr(self, name), name)
        if int(self.project_lifetime_years) < 1:
            raise ValidationError("project_lifetime_years must be at least 1")

    def capital_cost(self, solar_kw: float, wind_kw: float, battery_kwh: float) -> float:
        return (
            solar_kw * self.solar_capex_per_kw
            + wind_kw * self.wind_capex_per_kw
            + battery_kwh * self.battery_capex_per_kwh
        )

    def annual_opex(self, solar_kw: float, wind_kw: float, battery_kwh: float) -> float:
        return (
            solar_kw * self.solar_opex_per_kw_year
            + wind_kw * self.wind_opex_per_kw_year
            + battery_kwh * self.battery_opex_per_kwh_year
        )


@dataclass(frozen=True)
class ConstraintSet:
    """Budget, capacity ceilings and performance targets for a plan.

    ``max_budget`` and the per-technology ceilings may be ``None`` meaning
    unconstrained. ``min_renewable_fraction`` is 0..1 and
    ``battery_efficiency`` is the round-trip efficiency in (0, 1].
    """

    max_budget: Optional[float] = None
    max_solar_kw: Optional[float] = None
    max_wind_kw: Optional[float] = None
    max_battery_kwh: Optional[float] = None
    min_renewable_fraction: float = 0.0
    battery_efficiency: float = 0.9

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ConstraintSet":
        return cls(**{key: payload[key] for key in payload if key in cls.__dataclass_fields__})

    def validate(self) -> None:
        for name in ("max_budget", "max_solar_kw", "max_wind_kw", "max_battery_kwh"):
            value = getattr(self, name)
            if value is not None:
                _require_non_negative(value, name)
        fraction = self.min_renewable_fraction
        if fraction is None or not (0.0 <= float(fraction) <= 1.0):
            raise ValidationError("min_renewable_fraction must be within [0, 1]")
        eff = self.battery_efficiency
        if eff is None or not (0.0 < float(eff) <= 1.0):
            raise ValidationError("battery_efficiency must be within (0, 1]")

    @property
    def budget(self) -> float:
        return math.inf if self.max_budget is None else float(self.max_budget)

    def ceiling(self, technology: str) -> float:
        value = {
            "solar": self.max_solar_kw,
            "wind": self.max_wind_kw,
            "battery": self.max_battery_kwh,
        }[technology]
        return math.inf if value is None else float(value)


@dataclass(frozen=True)
class CapacitySolution:
    """Installed capacities (kW, kW, kWh) and the capital cost they imply."""

    solar_kw: float
    wind_kw: float
    battery_kwh: float
    total_cost: float

    @classmethod
    def build(cls, solar_kw: float, wind_kw: float, battery_kwh: float, cost_model: CostModel) -> "CapacitySolution":
        solar_kw = max(0.0, float(solar_kw))
        wind_kw = max(0.0, float(wind_kw))
        battery_kwh = max(0.0, float(battery_kwh))
        return cls(
            solar_kw=solar_kw,
            wind_kw=wind_kw,
            battery_kwh=battery_kwh,
            total_cost=cost_model.capital_cost(solar_kw, wind_kw, battery_kwh),
        )

    @classmethod
    def zero(cls) -> "CapacitySolution":
        return cls(0.0, 0.0, 0.0, 0.0)

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


__all__ = [
    "HOURS_PER_YEAR",
    "HOURLY_COLUMNS",
    "REQUIRED_HOURLY_COLUMNS",
    "OPTIONAL_HOURLY_COLUMNS",
    "HourlyRecord",
    "CostModel",
    "ConstraintSet",
    "CapacitySolution",
    "hourly_frame_from_records",
    "records_from_frame",
    "validate_hourly_data",
]
