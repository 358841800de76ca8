"""Monte Carlo risk profile around a base-case NPV and payback.

This is a closed-form, single-pass model: each trial scales the base-case
NPV by price and load multipliers and the payback by price and renewable
multipliers. Dispatch is not re-simulated per trial, so correlation between
load and generation variance is not captured. Outputs stay comparable with
earlier releases of the planning tool because of that.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
import logging
import math
from typing import Any, Dict, List, Optional, Protocol

import numpy as np

from services.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_ITERATIONS = 300

# Relative weight of each driver in the tornado ranking.
TORNADO_WEIGHTS: Dict[str, float] = {
    "Electricity Price": 2.0,
    "Renewable Generation": 1.5,
    "Facility Load": 1.2,
}


class NormalSampler(Protocol):
    """Source of independent standard-normal draws."""

    def standard_normal(self) -> float:
        ...


class BoxMullerSampler:
    """Box-Muller transform over a numpy ``Generator`` (seedable for tests)."""

    def __init__(self, rng: Optional[np.random.Generator] = None, seed: Optional[int] = None) -> None:
        self.rng = rng if rng is not None else np.random.default_rng(seed)

    def standard_normal(self) -> float:
        # 1 - U keeps u1 in (0, 1] so the log is finite.
        u1 = 1.0 - float(self.rng.random())
        u2 = float(self.rng.random())
        return math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)


@dataclass(frozen=True)
class VarianceFactors:
    """One-sigma relative variance per driver (0.15 = +/-15%)."""

    price_volatility: float = 0.15
    load_variance: float = 0.10
    renewable_variance: float = 0.12

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "VarianceFactors":
        return cls(**{key: payload[key] for key in payload if key in cls.__dataclass_fields__})

    def validate(self) -> None:
        for name in ("price_volatility", "load_variance", "renewable_variance"):
            value = float(getattr(self, name))
            if not math.isfinite(value) or value < 0:
                raise ValidationError(f"{name} must be a non-negative finite number")


@dataclass(frozen=True)
class SensitivityOptions:
    """Pipeline switch for the Monte Carlo stage."""

    run_monte_carlo: bool = False
    iterations: int = DEFAULT_ITERATIONS
    variance_factors: VarianceFactors = VarianceFactors()
    seed: Optional[int] = None

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SensitivityOptions":
        values = {key: payload[key] for key in payload if key in cls.__dataclass_fields__}
        factors = values.get("variance_factors")
        if isinstance(factors, dict):
            values["variance_factors"] = VarianceFactors.from_dict(factors)
        return cls(**values)


@dataclass(frozen=True)
class SensitivityBaseCase:
    npv_usd: float
    payback_months: float


@dataclass(frozen=True)
class TornadoEntry:
    variable: str
    impact_on_npv: float
    rank: int


@dataclass
class SensitivityResult:
    """Distribution summary over all trials.

    ``npv_low_usd`` / ``npv_high_usd`` and the payback pair are the sorted
    trial values at indices floor(n * 0.025) and floor(n * 0.975).
    ``value_at_risk_usd`` is the value at floor(n * 0.05).
    """

    iterations: int
    npv_low_usd: float
    npv_high_usd: float
    payback_low_months: float
    payback_high_months: float
    probability_positive_npv: float
    expected_npv_usd: float
    value_at_risk_usd: float
    tornado: List[TornadoEntry] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def tornado_ranking(base_npv: float, factors: VarianceFactors) -> List[TornadoEntry]:
    """Rank drivers by ``|base NPV x variance x weight|``, largest first."""

    variances = {
        "Electricity Price": factors.price_volatility,
        "Renewable Generation": factors.renewable_variance,
        "Facility Load": factors.load_variance,
    }
    impacts = [
        (name, abs(base_npv * variances[name] * weight)) for name, weight in TORNADO_WEIGHTS.items()
    ]
    ordered = sorted(impacts, key=lambda item: -item[1])
    return [TornadoEntry(variable=name, impact_on_npv=impact, rank=idx + 1) for idx, (name, impact) in enumerate(ordered)]


def build_recommendations(
    probability_positive_npv: float,
    payback_low_months: float,
    payback_high_months: float,
    expected_npv_usd: float,
    value_at_risk_usd: float,
    tornado: List[TornadoEntry],
) -> List[str]:
    recommendations: List[str] = []
    if probability_positive_npv < 0.7:
        recommendations.append(
            "High risk: less than 70% probability of positive NPV. "
            "Consider reducing budget or increasing renewable fraction."
        )
    elif probability_positive_npv > 0.9:
        recommendations.append("Low risk: over 90% probability of positive NPV. Strong investment case.")
    else:
        recommendations.append("Moderate risk: 70-90% probability of positive NPV. Acceptable for most scenarios.")

    if (
        math.isfinite(payback_high_months)
        and payback_low_months > 0
        and payback_high_months / payback_low_months > 2
    ):
        recommendations.append(
            f"High payback uncertainty: payback ranges from {payback_low_months:.0f} to "
            f"{payback_high_months:.0f} months. Consider hedging strategies like VPPAs."
        )

    if abs(value_at_risk_usd) > abs(expected_npv_usd) * 0.5:
        recommendations.append(
            f"Significant downside risk: the 5th percentile NPV is {value_at_risk_usd:,.0f} USD. "
            "Consider insurance or phased deployment."
        )

    if tornado:
        top = tornado[0]
        recommendations.append(
            f"Most sensitive to: {top.variable}. A 10% change moves NPV by {top.impact_on_npv * 0.1:,.0f} USD."
        )
    return recommendations


def analyze_sensitivity(
    base_case: SensitivityBaseCase,
    variance_factors: VarianceFactors = VarianceFactors(),
    iterations: int = DEFAULT_ITERATIONS,
    sampler: Optional[NormalSampler] = None,
    seed: Optional[int] = None,
) -> SensitivityResult:
    """Run ``iterations`` perturbed trials of the base case.

    Each trial draws three independent standard normals (price, load,
    renewable) from ``sampler``; without one, a ``BoxMullerSampler`` seeded
    with ``seed`` is used.
    """

    iterations = int(iterations)
    if iterations < 1:
        raise ValidationError("iterations must be at least 1")
    variance_factors.validate()
    if not math.isfinite(base_case.npv_usd):
        raise ValidationError("base case NPV must be finite")
    if sampler is None:
        sampler = BoxMullerSampler(seed=seed)

    price = np.empty(iterations)
    load = np.empty(iterations)
    renewable = np.empty(iterations)
    for idx in range(iterations):
        price[idx] = 1.0 + sampler.standard_normal() * variance_factors.price_volatility
        load[idx] = 1.0 + sampler.standard_normal() * variance_factors.load_variance
        renewable[idx] = 1.0 + sampler.standard_normal() * variance_factors.renewable_variance

    npv = np.sort(base_case.npv_usd * price * load)
    with np.errstate(divide="ignore", invalid="ignore"):
        payback = np.sort(base_case.payback_months / (price * renewable))

    low_idx = int(math.floor(iterations * 0.025))
    high_idx = min(int(math.floor(iterations * 0.975)), iterations - 1)
    var_idx = int(math.floor(iterations * 0.05))

    probability_positive = float(np.count_nonzero(npv > 0)) / iterations
    expected = float(npv.mean())
    value_at_risk = float(npv[var_idx])
    tornado = tornado_ranking(base_case.npv_usd, variance_factors)

    result = SensitivityResult(
        iterations=iterations,
        npv_low_usd=float(npv[low_idx]),
        npv_high_usd=float(npv[high_idx]),
        payback_low_months=float(payback[low_idx]),
        payback_high_months=float(payback[high_idx]),
        probability_positive_npv=probability_positive,
        expected_npv_usd=expected,
        value_at_risk_usd=value_at_risk,
        tornado=tornado,
    )
    result.recommendations = build_recommendations(
        probability_positive,
        result.payback_low_months,
        result.payback_high_months,
        expected,
        value_at_risk,
        tornado,
    )
    logger.info(
        "Sensitivity over %d trials: P(NPV>0)=%.1f%% expected NPV=%.0f",
        iterations,
        probability_positive * 100.0,
        expected,
    )
    return result


__all__ = [
    "BoxMullerSampler",
    "NormalSampler",
    "SensitivityBaseCase",
    "SensitivityOptions",
    "SensitivityResult",
    "TornadoEntry",
    "VarianceFactors",
    "analyze_sensitivity",
    "build_recommendations",
    "tornado_ranking",
]
