"""Synthetic hourly datasets for demos, API defaults and tests.

The generator produces a deterministic representative year (given a seed)
with a diurnal/seasonal solar profile, a noisy wind profile run through a
generic turbine power curve, time-of-use grid prices and peak/off-peak
carbon intensity.
"""
from __future__ import annotations

from typing import Optional

import numpy as np
import pandas as pd

from services.planning_models import HOURS_PER_YEAR

STC_IRRADIANCE_W_M2 = 1000.0
PV_TEMP_COEFFICIENT = -0.004
WIND_CUT_IN_M_S = 3.0
WIND_RATED_M_S = 12.0
WIND_CUT_OUT_M_S = 25.0


def time_of_use_price(base_price: float, hour_of_day: np.ndarray | int) -> np.ndarray:
    """Peak (14-21h) x2.0, off-peak (21-7h) x0.6, mid-peak x1.2."""

    hod = np.asarray(hour_of_day)
    factor = np.where((hod >= 14) & (hod < 21), 2.0, np.where((hod >= 21) | (hod < 7), 0.6, 1.2))
    return base_price * factor


def grid_carbon_intensity(base_intensity: float, hour_of_day: np.ndarray | int) -> np.ndarray:
    """Daytime peak hours (8-18h) run dirtier (x1.2) than the rest (x0.85)."""

    hod = np.asarray(hour_of_day)
    return base_intensity * np.where((hod >= 8) & (hod < 18), 1.2, 0.85)


def solar_yield_from_irradiance(irradiance_w_m2: np.ndarray, temperature_c: np.ndarray) -> np.ndarray:
    """kW per kW installed from plane irradiance and cell temperature, clipped to [0, 1]."""

    temp_factor = 1.0 + PV_TEMP_COEFFICIENT * (np.asarray(temperature_c, dtype=float) - 25.0)
    output = np.asarray(irradiance_w_m2, dtype=float) / STC_IRRADIANCE_W_M2 * temp_factor
    return np.clip(output, 0.0, 1.0)


def wind_yield_from_speed(speed_m_s: np.ndarray) -> np.ndarray:
    """Generic IEC class II curve: cubic between cut-in and rated speed, zero beyond cut-out."""

    speed = np.asarray(speed_m_s, dtype=float)
    cubic = np.clip((speed / WIND_RATED_M_S) ** 3, 0.0, 1.0)
    return np.where((speed < WIND_CUT_IN_M_S) | (speed > WIND_CUT_OUT_M_S), 0.0, cubic)


def make_synthetic_year(
    hours: int = HOURS_PER_YEAR,
    base_demand_kw: float = 1000.0,
    base_price_usd_per_kwh: float = 0.12,
    base_carbon_g_per_kwh: float = 400.0,
    mean_wind_speed_m_s: float = 7.0,
    seed: Optional[int] = 7,
) -> pd.DataFrame:
    """Build a canonical hourly frame with temperature for ``hours`` hours."""

    if hours < 1:
        raise ValueError("hours must be at least 1")
    rng = np.random.default_rng(seed)
    hour = np.arange(hours)
    hod = hour % 24
    day = hour // 24

    season = np.cos(2.0 * np.pi * (day - 172) / 365.0)  # +1 at the June solstice
    daylight = np.clip(np.sin(np.pi * (hod - 6) / 12.0), 0.0, None)
    clouds = np.clip(1.0 - 0.35 * rng.random(hours), 0.4, 1.0)
    irradiance = 1000.0 * daylight * (0.75 + 0.25 * season) * clouds

    temperature = 15.0 + 10.0 * season + 6.0 * np.sin(np.pi * (hod - 9) / 12.0) + rng.normal(0.0, 1.5, hours)

    speed = mean_wind_speed_m_s * (1.0 - 0.15 * season) + rng.normal(0.0, 2.5, hours)
    wind_speed = np.clip(speed, 0.0, None)

    demand = base_demand_kw * (0.85 + 0.15 * daylight + 0.05 * np.clip(temperature - 20.0, 0.0, None) / 10.0)

    return pd.DataFrame(
        {
            "hour": hour,
            "demand_kw": demand,
            "solar_yield": solar_yield_from_irradiance(irradiance, temperature),
            "wind_yield": wind_yield_from_speed(wind_speed),
            "price_usd_per_kwh": time_of_use_price(base_price_usd_per_kwh, hod),
            "carbon_g_per_kwh": grid_carbon_intensity(base_carbon_g_per_kwh, hod),
            "outdoor_temp_c": temperature,
        }
    )


__all__ = [
    "grid_carbon_intensity",
    "make_synthetic_year",
    "solar_yield_from_irradiance",
    "time_of_use_price",
    "wind_yield_from_speed",
]
