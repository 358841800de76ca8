"""Dispatch flag metadata and insights helpers."""

from __future__ import annotations

from typing import Dict, List

FLAG_DEFINITIONS: Dict[str, Dict[str, str]] = {
    "grid_import_hours": {
        "label": "Grid import hours",
        "meaning": "Hours when renewables plus battery could not cover demand.",
        "knobs": "Add generation, add battery energy, or raise the budget.",
        "insight": (
            "Frequent imports point to a generation or storage shortfall; check whether imports"
            " cluster at night (storage) or across whole days (generation)."
        ),
    },
    "curtailment_hours": {
        "label": "Curtailment hours",
        "meaning": "Renewable output was neither consumed nor stored.",
        "knobs": "Add battery energy or charge rate, or trim the oversized technology.",
        "insight": (
            "Sustained curtailment means generation is oversized for the load or storage is too"
            " small to shift the surplus; extra capacity here is paid for but unused."
        ),
    },
    "soc_floor_hits": {
        "label": "SOC floor hits",
        "meaning": "Battery discharged down to its minimum reserve.",
        "knobs": "Increase energy, lower the floor, or add generation to recharge sooner.",
        "insight": (
            "Consistent floor hits indicate the battery is energy-limited; more kWh or more"
            " surplus generation before the evening peak would extend coverage."
        ),
    },
    "soc_ceiling_hits": {
        "label": "SOC ceiling hits",
        "meaning": "Battery reached its upper SOC limit while charging.",
        "knobs": "Raise the ceiling, add energy, or reduce the surplus technology.",
        "insight": (
            "Ceiling hits suggest the battery fills early and further surplus is curtailed;"
            " storage energy rather than charge rate is the binding limit."
        ),
    },
}


def build_flag_insights(flag_totals: Dict[str, int], hours: int | None = None) -> List[str]:
    """Translate flag counts into short, actionable insights."""

    insights: List[str] = []
    ordered_keys = sorted(flag_totals, key=flag_totals.get, reverse=True)

    for key in ordered_keys:
        count = flag_totals.get(key, 0)
        if count <= 0:
            continue

        meta = FLAG_DEFINITIONS.get(key)
        if not meta:
            continue

        share = f" ({count / hours:.0%} of hours)" if hours else ""
        insights.append(f"{meta['label']} occurred {count:,} times{share}. {meta['insight']}")

    if flag_totals.get("soc_floor_hits", 0) > 0 and flag_totals.get("soc_ceiling_hits", 0) > 0:
        insights.append(
            "Both SOC floor and ceiling were hit; the battery cycles across its full window and"
            " more energy capacity would likely pay off."
        )

    if not insights:
        insights.append("No dispatch flags were triggered across the simulated hours.")

    return insights
