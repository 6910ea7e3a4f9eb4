"""
Simulation Configuration

Centralizes all tunable parameters for the round-resolution engine.
Every balancing constant the market, orchestrator and collaborator modules
read lives here instead of being scattered as magic numbers.
"""

from dataclasses import dataclass, field
from typing import Dict, Tuple


# Fixed iteration order matters: demand noise is drawn per segment in this order.
SEGMENTS: Tuple[str, ...] = (
    "Budget",
    "General",
    "Enthusiast",
    "Professional",
    "Active Lifestyle",
)

REGIONS: Tuple[str, ...] = ("North America", "Europe", "Asia", "MENA")

WEIGHT_KEYS: Tuple[str, ...] = ("price", "quality", "brand", "esg", "features")


def _default_segment_weights() -> Dict[str, Dict[str, float]]:
    return {
        "Budget": {"price": 65, "quality": 15, "brand": 5, "esg": 5, "features": 10},
        "General": {"price": 30, "quality": 25, "brand": 15, "esg": 10, "features": 20},
        "Enthusiast": {"price": 12, "quality": 30, "brand": 8, "esg": 5, "features": 45},
        "Professional": {"price": 8, "quality": 50, "brand": 5, "esg": 20, "features": 17},
        "Active Lifestyle": {"price": 20, "quality": 30, "brand": 12, "esg": 10, "features": 28},
    }


@dataclass
class MarketConfig:
    """Competitive scoring and share allocation."""

    # Softmax: lower = more winner-take-all
    softmax_temperature: float = 10.0

    segment_weights: Dict[str, Dict[str, float]] = field(default_factory=_default_segment_weights)
    quality_expectations: Dict[str, float] = field(default_factory=lambda: {
        "Budget": 50.0,
        "General": 65.0,
        "Enthusiast": 80.0,
        "Professional": 90.0,
        "Active Lifestyle": 70.0,
    })
    price_elasticities: Dict[str, float] = field(default_factory=lambda: {
        "Budget": 2.5,
        "General": 1.8,
        "Enthusiast": 1.2,
        "Professional": 0.8,
        "Active Lifestyle": 1.5,
    })

    # Price scoring
    quality_price_tolerance: float = 0.002  # Max price headroom per quality point (0.2 at Q=100)
    price_floor_penalty_threshold: float = 0.15  # 15% below segment min = penalty zone
    price_floor_penalty_max: float = 0.30  # Max 30% price-score reduction

    # Diminishing returns above expectations (quality and features)
    excess_ratio_factor: float = 0.5  # 50% of excess via sqrt
    score_multiplier_cap: float = 1.3
    feature_reference: float = 100.0

    # Additive incentive for raw quality (0.1 per 100 quality points)
    quality_share_bonus_per_point: float = 0.001

    # Demand noise band (+/-5%)
    demand_noise_min: float = 0.95
    demand_noise_span: float = 0.10
    confidence_reference: float = 75.0
    inflation_demand_sensitivity: float = 0.5


@dataclass
class RubberBandConfig:
    """Catch-up mechanics for trailing and leading teams."""

    start_round: int = 3
    trailing_threshold: float = 0.5  # Boost when avg share < cross-team avg * threshold
    leading_threshold: float = 2.0  # Penalize when avg share > cross-team avg * threshold
    trailing_boost: float = 1.15
    leading_penalty: float = 0.92


@dataclass
class ESGConfig:
    """Revenue penalty for low ESG scores (risk model, no bonus)."""

    penalty_threshold: float = 300.0
    penalty_max: float = 0.08  # At score 0
    penalty_min: float = 0.01  # Near the threshold
    score_scale: float = 1000.0  # esg / scale feeds the competitive score


@dataclass
class MacroConfig:
    """Next-round evolution of the shared market state."""

    # Random walk amplitudes: value += (u - 0.5) * amplitude
    gdp_walk: float = 1.0
    inflation_walk: float = 0.5
    confidence_walk: float = 5.0
    unemployment_walk: float = 0.3
    price_competition_walk: float = 0.1

    # Natural drift clamps
    gdp_range: Tuple[float, float] = (-5.0, 10.0)
    inflation_range: Tuple[float, float] = (0.0, 15.0)
    confidence_range: Tuple[float, float] = (20.0, 100.0)
    unemployment_range: Tuple[float, float] = (2.0, 15.0)

    # FX
    fx_volatility_min: float = 0.15
    fx_volatility_max: float = 0.25
    currency_crisis_volatility: float = 0.35

    # Interest rates follow inflation
    rate_step: float = 0.25
    rate_hike_inflation: float = 3.0
    rate_cut_inflation: float = 1.5
    federal_rate_range: Tuple[float, float] = (0.0, 10.0)
    ten_year_spread: float = -0.5
    corporate_spread: float = 1.0

    # Market pressure drift
    quality_expectation_drift: float = 0.02
    sustainability_drift: float = 0.01
    price_competition_range: Tuple[float, float] = (0.2, 0.9)
    quality_expectation_range: Tuple[float, float] = (0.3, 0.95)
    sustainability_range: Tuple[float, float] = (0.1, 0.6)

    # Wider clamps after an event has been applied
    event_gdp_range: Tuple[float, float] = (-10.0, 15.0)
    event_inflation_range: Tuple[float, float] = (0.0, 20.0)
    event_confidence_range: Tuple[float, float] = (10.0, 100.0)
    event_unemployment_range: Tuple[float, float] = (1.0, 20.0)
    event_price_competition_range: Tuple[float, float] = (0.1, 1.0)
    event_quality_expectation_range: Tuple[float, float] = (0.2, 1.0)
    event_sustainability_range: Tuple[float, float] = (0.0, 0.8)


@dataclass
class FinanceConfig:
    """Valuation, costs and balance sheet constants."""

    new_factory_cost: float = 50_000_000.0
    default_starting_cash: float = 200_000_000.0
    default_market_cap: float = 500_000_000.0
    default_shares_issued: float = 10_000_000.0
    default_share_price: float = 50.0

    # PE model
    base_pe: float = 15.0
    pe_range: Tuple[float, float] = (5.0, 30.0)
    neutral_sentiment: float = 50.0
    min_price_to_sales: float = 0.5
    book_value_floor: float = 0.5
    asset_floor: float = 0.3

    # Debt
    bond_rate_premium: float = 0.01  # Over the corporate bond rate
    tbill_rate_discount: float = 0.01  # Under the federal rate

    # Investor sentiment (0-100, 50 = neutral)
    high_esg_sentiment_threshold: float = 600.0
    high_esg_sentiment_bonus: float = 8.0
    low_esg_sentiment_threshold: float = 300.0
    low_esg_sentiment_penalty: float = 10.0


@dataclass
class OperationsConfig:
    """Per-unit costs and collaborator module constants."""

    raw_material_cost_per_unit: Dict[str, float] = field(default_factory=lambda: {
        "Budget": 50.0,
        "General": 100.0,
        "Enthusiast": 200.0,
        "Professional": 350.0,
        "Active Lifestyle": 150.0,
    })
    labor_cost_per_unit: float = 20.0
    overhead_cost_per_unit: float = 15.0
    inventory_holding_rate: float = 0.02  # 2% of value per round
    # Import tariffs on materials, (supplier region, factory region) -> rate on order value
    tariff_rates: Dict[Tuple[str, str], float] = field(default_factory=lambda: {
        ("Asia", "North America"): 0.25,
        ("North America", "Asia"): 0.20,
        ("Asia", "Europe"): 0.10,
        ("Asia", "MENA"): 0.15,
    })

    # Factory
    base_defect_rate: float = 0.05
    efficiency_per_million: float = 0.01
    efficiency_diminish_threshold: float = 10_000_000.0
    efficiency_diminished_rate: float = 0.5  # Fraction of the gain past the threshold
    green_brand_per_hundred_million: float = 0.1
    max_efficiency: float = 1.0
    min_efficiency: float = 0.1
    esg_points_per_green_million: float = 10.0

    # HR
    hiring_cost: float = 10_000.0
    base_salaries: Dict[str, float] = field(default_factory=lambda: {
        "worker": 45_000.0,
        "engineer": 85_000.0,
        "supervisor": 75_000.0,
    })
    training_cost: float = 50_000.0
    training_morale_gain: float = 3.0
    max_trainings_per_year: int = 2  # Further programs give half the morale gain
    severance_fraction: float = 1.0 / 12.0  # One month of salary
    salary_morale_sensitivity: float = 50.0  # Morale points per 1.0 change in salary multiplier
    annual_turnover_rate: float = 0.12
    low_morale_threshold: float = 50.0
    low_morale_turnover_rate: float = 0.15  # Added annually below the threshold
    rounds_per_year: int = 4

    # R&D
    rd_points_per_engineer: float = 10.0
    patent_threshold: float = 500.0
    product_dev_base_rounds: float = 2.0
    product_dev_quality_factor: float = 0.02
    product_dev_engineer_speedup: float = 0.05
    product_dev_base_costs: Dict[str, float] = field(default_factory=lambda: {
        "Budget": 5_000_000.0,
        "General": 10_000_000.0,
        "Enthusiast": 20_000_000.0,
        "Professional": 35_000_000.0,
        "Active Lifestyle": 15_000_000.0,
    })
    quality_point_cost: float = 1_000_000.0
    feature_point_cost: float = 500_000.0
    rd_points_per_quality_point: float = 10.0

    # Marketing / brand
    advertising_impact_per_million: float = 0.0015
    advertising_chunk_millions: float = 3.0
    advertising_chunk_decay: float = 0.4  # Effectiveness drops 60% per chunk
    advertising_segment_multipliers: Dict[str, float] = field(default_factory=lambda: {
        "Budget": 1.1,
        "General": 1.0,
        "Enthusiast": 0.75,
        "Professional": 0.5,
        "Active Lifestyle": 0.85,
    })
    branding_impact_per_million: float = 0.0025
    branding_linear_millions: float = 5.0
    brand_decay_rate: float = 0.025
    brand_max_growth_per_round: float = 0.02


@dataclass
class EngineConfig:
    """Versioning and determinism policy."""

    engine_version: str = "2.0.0"
    schema_version: str = "2.0.0"
    # Refuse to process a round without an explicit match seed
    require_match_seed: bool = True
    market_scope: str = "__market__"


@dataclass
class SimulationConfig:
    """Master configuration for the round-resolution engine."""

    market: MarketConfig = field(default_factory=MarketConfig)
    rubber_band: RubberBandConfig = field(default_factory=RubberBandConfig)
    esg: ESGConfig = field(default_factory=ESGConfig)
    macro: MacroConfig = field(default_factory=MacroConfig)
    finance: FinanceConfig = field(default_factory=FinanceConfig)
    operations: OperationsConfig = field(default_factory=OperationsConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)

    def __post_init__(self):
        """Validation of cross-field invariants."""
        if self.market.softmax_temperature <= 0:
            raise ValueError("softmax_temperature must be positive")

        # Segment weight vectors: five non-negative weights summing to 100
        for segment in SEGMENTS:
            weights = self.market.segment_weights.get(segment)
            if weights is None:
                raise ValueError(f"missing scoring weights for segment {segment!r}")
            if set(weights) != set(WEIGHT_KEYS):
                raise ValueError(f"weights for {segment!r} must define exactly {WEIGHT_KEYS}")
            if any(w < 0 for w in weights.values()):
                raise ValueError(f"weights for {segment!r} must be non-negative")
            if abs(sum(weights.values()) - 100.0) > 1e-9:
                raise ValueError(f"weights for {segment!r} must sum to 100")
            if self.market.quality_expectations.get(segment, 0.0) <= 0:
                raise ValueError(f"quality expectation for {segment!r} must be positive")

        if self.rubber_band.trailing_boost <= 1.0:
            raise ValueError("trailing_boost must be > 1")
        if not (0.0 < self.rubber_band.leading_penalty < 1.0):
            raise ValueError("leading_penalty must be in (0, 1)")
        if self.rubber_band.trailing_threshold >= self.rubber_band.leading_threshold:
            raise ValueError("trailing_threshold must be below leading_threshold")

        if not (0.0 <= self.esg.penalty_min <= self.esg.penalty_max <= 1.0):
            raise ValueError("ESG penalty rates must satisfy 0 <= min <= max <= 1")
        if self.esg.penalty_threshold <= 0:
            raise ValueError("ESG penalty threshold must be positive")

        if self.macro.fx_volatility_min > self.macro.fx_volatility_max:
            raise ValueError("fx_volatility_min cannot exceed fx_volatility_max")

        for (origin, destination), rate in self.operations.tariff_rates.items():
            if origin not in REGIONS or destination not in REGIONS:
                raise ValueError(f"unknown tariff route {origin!r} -> {destination!r}")
            if not (0.0 <= rate <= 1.0):
                raise ValueError(f"tariff rate for {origin!r} -> {destination!r} must be in [0,1]")


# Global configuration instance
CONFIG = SimulationConfig()
