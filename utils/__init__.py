"""Utility helpers shared across the planning services and API."""

from utils.flags import FLAG_DEFINITIONS, build_flag_insights
from utils.io import build_data_quality_report, clean_hourly_frame, read_hourly_dataset
from utils.sample_data import make_synthetic_year

__all__ = [
    "FLAG_DEFINITIONS",
    "build_data_quality_report",
    "build_flag_insights",
    "clean_hourly_frame",
    "make_synthetic_year",
    "read_hourly_dataset",
]
