"""Virtual power purchase agreement (VPPA) settlement model.

A VPPA is a financial hedge: the buyer pays ``strike - market`` on contracted
generation (or receives the difference when the market is higher) and keeps
the renewable energy certificates. Nothing here touches physical delivery.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
import logging
import math
from typing import Any, Dict, List, Optional, Sequence

from services.errors import ValidationError
from services.financial_evaluator import FinancialResult, ownership_lcoe_per_mwh
from services.planning_models import HOURS_PER_YEAR, CostModel
from utils.economics import coefficient_of_variation_pct

logger = logging.getLogger(__name__)

DEFAULT_REGION = "us-central"
DEFAULT_CONTRACT_YEARS = 15
DEFAULT_CAPACITY_FACTOR = 0.25
DEFAULT_REC_PRICE = 10.0

# Market price projections by region, USD/MWh for contract years 1..15.
MARKET_PRICE_PROJECTIONS: Dict[str, tuple[float, ...]] = {
    "us-west": (80, 85, 90, 95, 100, 105, 110, 116, 122, 128, 135, 142, 149, 157, 165),
    "us-east": (70, 74, 78, 82, 86, 91, 96, 101, 106, 112, 118, 124, 130, 137, 144),
    "us-central": (55, 58, 61, 64, 67, 71, 75, 79, 83, 88, 93, 98, 103, 108, 114),
    "eu": (120, 126, 132, 139, 146, 153, 161, 169, 178, 187, 196, 206, 217, 228, 240),
    "asia-pacific": (95, 100, 105, 110, 116, 122, 128, 135, 142, 149, 157, 165, 173, 182, 191),
    "india": (65, 68, 71, 75, 78, 82, 86, 90, 95, 100, 105, 110, 116, 122, 128),
}

# REC prices by region, USD/MWh.
REC_VALUES: Dict[str, float] = {
    "us-west": 15.0,
    "us-east": 12.0,
    "us-central": 10.0,
    "eu": 20.0,
    "asia-pacific": 12.0,
    "india": 5.0,
}


def region_from_coordinates(latitude: float, longitude: float) -> str:
    """Map coordinates onto one of the tabulated market regions."""

    if 25 <= latitude <= 50 and -125 <= longitude <= -110:
        return "us-west"
    if 25 <= latitude <= 50 and -100 <= longitude <= -67:
        return "us-east"
    if 25 <= latitude <= 50 and -110 <= longitude <= -95:
        return "us-central"
    if 35 <= latitude <= 70 and -10 <= longitude <= 40:
        return "eu"
    if 8 <= latitude <= 35 and 68 <= longitude <= 98:
        return "india"
    return "asia-pacific"


def resolve_forward_curve(
    region: str,
    duration_years: int,
    forward_curve: Optional[Sequence[float]] = None,
) -> List[float]:
    """Return one market price per contract year.

    A caller-supplied curve overrides the regional table. Curves shorter than
    the contract are extended with their last value; longer ones are cut.
    """

    if forward_curve is not None and len(forward_curve) > 0:
        curve = [float(value) for value in forward_curve]
        if not all(math.isfinite(value) for value in curve):
            raise ValidationError("forward_curve must contain finite prices")
    else:
        curve = [float(value) for value in MARKET_PRICE_PROJECTIONS.get(region, MARKET_PRICE_PROJECTIONS[DEFAULT_REGION])]

    years = int(duration_years)
    if len(curve) < years:
        logger.debug("Extending %d-year forward curve to %d years with its last price.", len(curve), years)
        curve = curve + [curve[-1]] * (years - len(curve))
    return curve[:years]


@dataclass(frozen=True)
class VPPAContract:
    """Contract terms.

    ``strike_price_usd_per_mwh`` is the fixed price; ``forward_curve`` (USD/MWh
    per year) overrides the regional market table. ``region`` wins over
    coordinates; with neither, the default region is used.
    """

    capacity_kw: float
    strike_price_usd_per_mwh: float
    duration_years: int = DEFAULT_CONTRACT_YEARS
    region: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    forward_curve: Optional[tuple[float, ...]] = None
    rec_price_usd_per_mwh: Optional[float] = None
    capacity_factor: float = DEFAULT_CAPACITY_FACTOR

    def validate(self) -> None:
        if not math.isfinite(self.capacity_kw) or self.capacity_kw < 0:
            raise ValidationError("capacity_kw must be a non-negative finite number")
        if not math.isfinite(self.strike_price_usd_per_mwh) or self.strike_price_usd_per_mwh < 0:
            raise ValidationError("strike_price_usd_per_mwh must be a non-negative finite number")
        if int(self.duration_years) < 1:
            raise ValidationError("duration_years must be at least 1")
        if not (0.0 <= self.capacity_factor <= 1.0):
            raise ValidationError("capacity_factor must be within [0, 1]")
        if self.rec_price_usd_per_mwh is not None and self.rec_price_usd_per_mwh < 0:
            raise ValidationError("rec_price_usd_per_mwh must be non-negative")

    def resolved_region(self) -> str:
        if self.region:
            return self.region
        if self.latitude is not None and self.longitude is not None:
            return region_from_coordinates(float(self.latitude), float(self.longitude))
        return DEFAULT_REGION


@dataclass(frozen=True)
class VPPAYearCashFlow:
    year: int
    market_price_usd_per_mwh: float
    settlement_usd: float
    rec_value_usd: float
    net_cost_usd: float
    cumulative_savings_usd: float


@dataclass
class VPPAResult:
    """Settlement cash flows and headline metrics for one contract.

    ``net_cost_usd`` per year is settlement plus REC value (positive means the
    buyer comes out ahead). ``lcoe_per_mwh`` is the negated sum of net cash
    flows over contracted MWh.
    """

    capacity_kw: float
    strike_price_usd_per_mwh: float
    duration_years: int
    region: str
    annual_generation_kwh: float
    rec_price_usd_per_mwh: float
    cash_flows: List[VPPAYearCashFlow] = field(default_factory=list)
    contract_value_usd: float = 0.0
    lcoe_per_mwh: float = 0.0
    hedge_effectiveness_percent: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class VPPAOptions:
    """Pipeline-level switch and overrides for the VPPA comparison.

    ``strike_price_usd_per_mwh`` defaults to the average grid price in the
    hourly dataset converted to USD/MWh.
    """

    consider_vppa: bool = False
    strike_price_usd_per_mwh: Optional[float] = None
    contract_duration_years: int = DEFAULT_CONTRACT_YEARS
    forward_curve: Optional[tuple[float, ...]] = None
    region: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "VPPAOptions":
        values = {key: payload[key] for key in payload if key in cls.__dataclass_fields__}
        if values.get("forward_curve") is not None:
            values["forward_curve"] = tuple(float(v) for v in values["forward_curve"])
        return cls(**values)

    def to_contract(self, capacity_kw: float, default_strike_usd_per_mwh: float) -> VPPAContract:
        strike = self.strike_price_usd_per_mwh
        return VPPAContract(
            capacity_kw=capacity_kw,
            strike_price_usd_per_mwh=float(default_strike_usd_per_mwh if strike is None else strike),
            duration_years=int(self.contract_duration_years),
            region=self.region,
            latitude=self.latitude,
            longitude=self.longitude,
            forward_curve=self.forward_curve,
        )


def evaluate_vppa(
    contract: VPPAContract,
    annual_generation_kwh: Optional[float] = None,
    annual_consumption_kwh: float = 0.0,
) -> VPPAResult:
    """Build the yearly settlement schedule for ``contract``.

    ``annual_generation_kwh`` defaults to capacity x 8760 x capacity factor.
    ``annual_consumption_kwh`` drives the cumulative savings column, which
    compares buying that consumption at market against paying strike on the
    contracted generation.
    """

    contract.validate()
    region = contract.resolved_region()
    years = int(contract.duration_years)
    generation_kwh = (
        contract.capacity_kw * HOURS_PER_YEAR * contract.capacity_factor
        if annual_generation_kwh is None
        else float(annual_generation_kwh)
    )
    if not math.isfinite(generation_kwh) or generation_kwh < 0:
        raise ValidationError("annual_generation_kwh must be a non-negative finite number")

    curve = resolve_forward_curve(region, years, contract.forward_curve)
    rec_price = (
        contract.rec_price_usd_per_mwh
        if contract.rec_price_usd_per_mwh is not None
        else REC_VALUES.get(region, DEFAULT_REC_PRICE)
    )
    strike = contract.strike_price_usd_per_mwh
    generation_mwh = generation_kwh / 1000.0
    consumption_mwh = float(annual_consumption_kwh) / 1000.0

    cash_flows: List[VPPAYearCashFlow] = []
    cumulative = 0.0
    for year, market in enumerate(curve, start=1):
        settlement = (market - strike) * generation_mwh
        rec_value = rec_price * generation_mwh
        cumulative += market * consumption_mwh - strike * generation_mwh
        cash_flows.append(
            VPPAYearCashFlow(
                year=year,
                market_price_usd_per_mwh=market,
                settlement_usd=settlement,
                rec_value_usd=rec_value,
                net_cost_usd=settlement + rec_value,
                cumulative_savings_usd=cumulative,
            )
        )

    total_mwh = generation_mwh * years
    net_total = sum(flow.net_cost_usd for flow in cash_flows)
    hedge = max(0.0, min(100.0, 100.0 - 2.0 * coefficient_of_variation_pct(curve)))
    result = VPPAResult(
        capacity_kw=contract.capacity_kw,
        strike_price_usd_per_mwh=strike,
        duration_years=years,
        region=region,
        annual_generation_kwh=generation_kwh,
        rec_price_usd_per_mwh=rec_price,
        cash_flows=cash_flows,
        contract_value_usd=strike * generation_mwh * years,
        lcoe_per_mwh=-net_total / total_mwh if total_mwh > 0 else math.inf,
        hedge_effectiveness_percent=hedge,
    )
    logger.info(
        "VPPA %s: strike %.1f USD/MWh over %d years, hedge effectiveness %.0f%%",
        region,
        strike,
        years,
        hedge,
    )
    return result


@dataclass(frozen=True)
class FinancingComparison:
    recommended: str
    ownership_lcoe_per_mwh: float
    vppa_lcoe_per_mwh: float
    ownership_capex_usd: float
    vppa_capex_usd: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compare_financing(
    financial: FinancialResult,
    vppa: Optional[VPPAResult],
    cost_model: CostModel,
) -> FinancingComparison:
    """Pick the financing structure with the lower LCOE.

    Ownership LCOE spreads CAPEX plus OPEX over the project lifetime's
    renewable supply. Ties and a missing VPPA favour ownership.
    """

    ownership = ownership_lcoe_per_mwh(financial, cost_model.project_lifetime_years)
    if vppa is None:
        return FinancingComparison("ownership", ownership, math.nan, financial.capex_usd)
    recommended = "vppa" if vppa.lcoe_per_mwh < ownership else "ownership"
    return FinancingComparison(recommended, ownership, vppa.lcoe_per_mwh, financial.capex_usd)


__all__ = [
    "FinancingComparison",
    "MARKET_PRICE_PROJECTIONS",
    "REC_VALUES",
    "VPPAContract",
    "VPPAOptions",
    "VPPAResult",
    "VPPAYearCashFlow",
    "compare_financing",
    "evaluate_vppa",
    "region_from_coordinates",
    "resolve_forward_curve",
]
