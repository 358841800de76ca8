"""Input parsing utilities for hourly planning datasets."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
import logging
from typing import Any, Dict, Iterable, List, Mapping

import numpy as np
import pandas as pd

from services.planning_models import OPTIONAL_HOURLY_COLUMNS, REQUIRED_HOURLY_COLUMNS

logger = logging.getLogger(__name__)

# Alternate headers accepted in uploaded files.
COLUMN_ALIASES: Dict[str, str] = {
    "hour_index": "hour",
    "load_kw": "demand_kw",
    "demand": "demand_kw",
    "solar_cf": "solar_yield",
    "pv_output_kw_per_kw": "solar_yield",
    "wind_cf": "wind_yield",
    "wind_output_kw_per_kw": "wind_yield",
    "price": "price_usd_per_kwh",
    "grid_price_usd_per_kwh": "price_usd_per_kwh",
    "carbon_intensity": "carbon_g_per_kwh",
    "carbon_intensity_g_co2_kwh": "carbon_g_per_kwh",
    "temperature_c": "outdoor_temp_c",
    "temp_c": "outdoor_temp_c",
}


@dataclass
class DataQualityReport:
    """Availability summary of an hourly dataset before planning starts."""

    hours: int
    first_hour: int | None
    last_hour: int | None
    missing_hours: int
    duplicate_hours: int
    available_hours: Dict[str, int] = field(default_factory=dict)
    gap_counts: Dict[str, int] = field(default_factory=dict)
    has_temperature: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_data_quality_report(hourly_df: pd.DataFrame) -> DataQualityReport:
    """Count usable values per signal and holes in the hour sequence."""

    available: Dict[str, int] = {}
    gaps: Dict[str, int] = {}
    for col in REQUIRED_HOURLY_COLUMNS + ("outdoor_temp_c",):
        if col not in hourly_df.columns:
            available[col] = 0
            gaps[col] = len(hourly_df)
            continue
        values = pd.to_numeric(hourly_df[col], errors="coerce").to_numpy(dtype=float)
        usable = int(np.isfinite(values).sum())
        available[col] = usable
        gaps[col] = len(values) - usable

    first_hour = last_hour = None
    missing = duplicates = 0
    if "hour" in hourly_df.columns and len(hourly_df):
        hours = pd.to_numeric(hourly_df["hour"], errors="coerce").dropna().astype(int)
        if not hours.empty:
            first_hour, last_hour = int(hours.min()), int(hours.max())
            unique = hours.nunique()
            missing = (last_hour - first_hour + 1) - unique
            duplicates = len(hours) - unique

    return DataQualityReport(
        hours=len(hourly_df),
        first_hour=first_hour,
        last_hour=last_hour,
        missing_hours=missing,
        duplicate_hours=duplicates,
        available_hours=available,
        gap_counts=gaps,
        has_temperature=available.get("outdoor_temp_c", 0) == len(hourly_df) and len(hourly_df) > 0,
    )


def clean_hourly_frame(df: pd.DataFrame) -> pd.DataFrame:
    """Normalise headers, coerce numerics, average duplicate hours and interpolate gaps.

    Raises ``ValueError`` when required columns are absent or nothing usable
    remains after cleaning.
    """

    df = df.rename(columns={col: COLUMN_ALIASES.get(str(col).strip().lower(), str(col).strip().lower()) for col in df.columns})
    missing = [col for col in REQUIRED_HOURLY_COLUMNS if col not in df.columns]
    if missing:
        raise ValueError(f"Hourly data must contain columns: {', '.join(missing)}")

    keep = ["hour"] if "hour" in df.columns else []
    keep += list(REQUIRED_HOURLY_COLUMNS) + [col for col in OPTIONAL_HOURLY_COLUMNS if col in df.columns]
    df = df[keep].copy()
    if "hour" not in df.columns:
        df.insert(0, "hour", np.arange(len(df)))

    numeric_cols = ["hour"] + [col for col in keep if col not in ("hour", "timestamp")]
    for col in numeric_cols:
        df[col] = pd.to_numeric(df[col], errors="coerce")

    invalid_rows = ~np.isfinite(df["hour"].to_numpy(dtype=float))
    if invalid_rows.any():
        logger.warning("Dropping %d rows with a missing or non-numeric hour.", int(invalid_rows.sum()))
        df = df.loc[~invalid_rows].copy()
    if df.empty:
        raise ValueError("No valid hourly rows after cleaning.")

    if (df["hour"] % 1 != 0).any():
        raise ValueError("hour must be an integer index.")
    df["hour"] = df["hour"].astype(int)

    if df["hour"].min() == 1 and 0 not in df["hour"].values:
        df["hour"] = df["hour"] - 1

    if df["hour"].duplicated(keep=False).any():
        logger.warning("Duplicate hour values found; averaging numeric columns for each hour.")
        agg = {col: "mean" for col in numeric_cols if col != "hour"}
        if "timestamp" in df.columns:
            agg["timestamp"] = "first"
        df = df.groupby("hour", as_index=False).agg(agg)

    df = df.sort_values("hour").set_index("hour")
    full_index = pd.RangeIndex(int(df.index.min()), int(df.index.max()) + 1, name="hour")
    missing_hours = full_index.difference(df.index)
    if len(missing_hours) > 0:
        logger.warning("Hourly data is missing %d hours; interpolating neighbouring values.", len(missing_hours))
        df = df.reindex(full_index)

    value_cols = [col for col in numeric_cols if col != "hour"]
    gaps = df[value_cols].isna()
    if gaps.any().any():
        logger.warning(
            "Filling %d missing values by linear interpolation: %s",
            int(gaps.sum().sum()),
            {col: int(count) for col, count in gaps.sum().items() if count},
        )
        df[value_cols] = df[value_cols].interpolate(method="linear", limit_direction="both")
    if df[list(REQUIRED_HOURLY_COLUMNS)].isna().any().any():
        raise ValueError("Required columns contain no numeric values to interpolate from.")

    for col in ("solar_yield", "wind_yield"):
        out_of_range = (df[col] < 0.0) | (df[col] > 1.0)
        if out_of_range.any():
            logger.warning("Clipping %d %s values into [0, 1].", int(out_of_range.sum()), col)
            df[col] = df[col].clip(0.0, 1.0)

    return df.reset_index()


def hourly_frame_from_rows(rows: Iterable[Mapping[str, Any]]) -> pd.DataFrame:
    """Build and clean an hourly frame from JSON-style row dictionaries."""

    rows = list(rows)
    if not rows:
        raise ValueError("Hourly rows cannot be empty.")
    return clean_hourly_frame(pd.DataFrame(rows))


def read_hourly_dataset(path_candidates: List[Any]) -> pd.DataFrame:
    """Read the first readable CSV among ``path_candidates`` and clean it."""

    last_err = None
    for candidate in path_candidates:
        try:
            df = pd.read_csv(candidate)
            return clean_hourly_frame(df)
        except (OSError, ValueError, pd.errors.ParserError) as e:
            logger.debug("Could not read hourly data from %s: %s", candidate, e)
            last_err = e
    raise RuntimeError(
        "Failed to read hourly dataset. "
        f"Looked for: {path_candidates}. Last error: {last_err}"
    )


__all__ = [
    "COLUMN_ALIASES",
    "DataQualityReport",
    "build_data_quality_report",
    "clean_hourly_frame",
    "hourly_frame_from_rows",
    "read_hourly_dataset",
]
