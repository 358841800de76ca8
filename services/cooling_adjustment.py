"""Weather-driven PUE adjustment for data-centre style facility loads.

PUE rises with outdoor temperature:

- below 10 C: 1.2 (free cooling)
- 10-25 C: linear 1.2 -> 1.4
- 25-35 C: linear 1.4 -> 1.6
- above 35 C: 1.6 plus up to 0.2, capped at 1.8

Onsite renewables earn a flat 5% improvement. The stage is auxiliary: any
problem raises ``DegradedResultError`` so the pipeline can fall back to the
baseline PUE with zero savings.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
import logging
import math
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from services.errors import DegradedResultError
from services.planning_models import HOURS_PER_YEAR, CapacitySolution

logger = logging.getLogger(__name__)

DEFAULT_BASELINE_PUE = 1.5
DEFAULT_COOLING_PRICE_USD_PER_KWH = 0.12
RENEWABLE_COOLING_BONUS = 0.95


@dataclass(frozen=True)
class FacilityLoad:
    """IT load and current PUE of the facility the plan serves."""

    average_it_load_kw: float
    peak_it_load_kw: Optional[float] = None
    baseline_pue: float = DEFAULT_BASELINE_PUE

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "FacilityLoad":
        return cls(**{key: payload[key] for key in payload if key in cls.__dataclass_fields__})


@dataclass
class LoadAdjustment:
    baseline_pue: float
    adjusted_pue: float
    pue_improvement_percent: float
    annual_energy_savings_kwh: float
    average_cooling_load_kw: float
    cooling_cost_savings_usd_year: float
    peak_cooling_load_kw: float = 0.0
    status: str = "success"
    hourly_pue: List[float] = field(default_factory=list)

    @classmethod
    def neutral(cls, baseline_pue: float = DEFAULT_BASELINE_PUE) -> "LoadAdjustment":
        """Baseline PUE unchanged and zero savings."""

        return cls(
            baseline_pue=baseline_pue,
            adjusted_pue=baseline_pue,
            pue_improvement_percent=0.0,
            annual_energy_savings_kwh=0.0,
            average_cooling_load_kw=0.0,
            cooling_cost_savings_usd_year=0.0,
            status="fallback",
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def pue_for_temperature(temp_c: np.ndarray | float) -> np.ndarray:
    """Vectorised temperature-to-PUE curve (before the renewable bonus)."""

    temp = np.asarray(temp_c, dtype=float)
    return np.select(
        [temp < 10.0, temp < 25.0, temp < 35.0],
        [
            np.full_like(temp, 1.2),
            1.2 + (temp - 10.0) / 15.0 * 0.2,
            1.4 + (temp - 25.0) / 10.0 * 0.2,
        ],
        default=1.6 + np.minimum((temp - 35.0) / 10.0, 0.2),
    )


def adjust_cooling_load(
    hourly_df: pd.DataFrame,
    facility: FacilityLoad,
    solution: CapacitySolution,
    price_usd_per_kwh: float = DEFAULT_COOLING_PRICE_USD_PER_KWH,
) -> LoadAdjustment:
    """Estimate the annual cooling energy and cost change versus the baseline PUE."""

    if "outdoor_temp_c" not in hourly_df.columns:
        raise DegradedResultError("Hourly dataset has no outdoor_temp_c column.")
    temps = pd.to_numeric(hourly_df["outdoor_temp_c"], errors="coerce").to_numpy(dtype=float)
    if len(temps) == 0 or not np.all(np.isfinite(temps)):
        raise DegradedResultError("Outdoor temperature series has missing values.")

    it_load = float(facility.average_it_load_kw)
    baseline = float(facility.baseline_pue)
    if not math.isfinite(it_load) or it_load < 0:
        raise DegradedResultError("average_it_load_kw must be a non-negative finite number.")
    # Without a stated peak the hottest hour is sized on the average IT load.
    peak_it_load = it_load if facility.peak_it_load_kw is None else float(facility.peak_it_load_kw)
    if not math.isfinite(peak_it_load) or peak_it_load < it_load:
        raise DegradedResultError("peak_it_load_kw must be a finite number no lower than average_it_load_kw.")
    if not math.isfinite(baseline) or baseline < 1.0:
        raise DegradedResultError("baseline_pue must be a finite number >= 1.0.")
    if not math.isfinite(price_usd_per_kwh) or price_usd_per_kwh < 0:
        raise DegradedResultError("Cooling price must be a non-negative finite number.")

    hourly = pue_for_temperature(temps)
    if solution.solar_kw + solution.wind_kw > 0:
        hourly = hourly * RENEWABLE_COOLING_BONUS

    adjusted = float(hourly.mean())
    savings_kwh = it_load * (baseline - adjusted) * HOURS_PER_YEAR
    result = LoadAdjustment(
        baseline_pue=baseline,
        adjusted_pue=adjusted,
        pue_improvement_percent=(baseline - adjusted) / baseline * 100.0,
        annual_energy_savings_kwh=savings_kwh,
        average_cooling_load_kw=float(np.mean(it_load * (hourly - 1.0))),
        cooling_cost_savings_usd_year=savings_kwh * price_usd_per_kwh,
        peak_cooling_load_kw=peak_it_load * (float(hourly.max()) - 1.0),
        hourly_pue=hourly.tolist(),
    )
    logger.info("PUE %.2f -> %.2f (%.1f%% improvement)", baseline, adjusted, result.pue_improvement_percent)
    return result


__all__ = [
    "DEFAULT_BASELINE_PUE",
    "FacilityLoad",
    "LoadAdjustment",
    "adjust_cooling_load",
    "pue_for_temperature",
]
